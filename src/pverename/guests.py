"""Stop running guests before a rename and bring them back afterwards.

The set of guests that were running is written to ``stopped_guests.list``
inside the snapshot (one ``kind:id`` per line) and narrowed to the guests that
actually stopped. The resume rewrites it after every start, so the file only
ever lists guests still waiting to be started, and disappears once none are left.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

from .config import TimeoutsConfig
from .providers import GuestInventory, GuestKind, GuestToolError
from .retry import Sleeper
from .snapshot import Snapshot

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class GuestRef:
    """A VM or container identified by kind and numeric id."""

    kind: GuestKind
    guest_id: str

    def __str__(self) -> str:
        """Return the ``kind:id`` form used in the persisted list."""
        return f"{self.kind.value}:{self.guest_id}"

    @classmethod
    def parse(cls, text: str) -> GuestRef:
        """Parse a ``kind:id`` entry."""
        kind, sep, guest_id = text.strip().partition(":")
        if not sep or not guest_id:
            raise ValueError(f"Malformed guest entry: {text!r}")
        return cls(GuestKind(kind), guest_id)


@dataclass(frozen=True, slots=True)
class GuestRunningSet:
    """Guests that were running when the rename started."""

    guests: tuple[GuestRef, ...] = ()

    def __iter__(self) -> Iterator[GuestRef]:
        """Iterate over the guests in discovery order."""
        return iter(self.guests)

    def __len__(self) -> int:
        """Return the number of guests."""
        return len(self.guests)

    def count(self, kind: GuestKind) -> int:
        """Return how many guests of *kind* are in the set."""
        return sum(1 for guest in self.guests if guest.kind is kind)

    def to_text(self) -> str:
        """Return the persisted file representation."""
        return "".join(f"{guest}\n" for guest in self.guests)

    @classmethod
    def from_text(cls, text: str) -> GuestRunningSet:
        """Parse the persisted file representation, skipping bad lines."""
        guests: list[GuestRef] = []
        for line in text.splitlines():
            if not line.strip():
                continue
            try:
                guests.append(GuestRef.parse(line))
            except ValueError:
                LOGGER.warning("Ignoring malformed guest entry %r", line)
        return cls(tuple(guests))


@dataclass(slots=True)
class GuestStopReport:
    """Guests stopped (or not) before the services went down."""

    stopped: list[GuestRef] = field(default_factory=list)
    failed: list[GuestRef] = field(default_factory=list)


@dataclass(slots=True)
class GuestResumeReport:
    """Outcome of replaying the persisted guest list."""

    started: list[GuestRef] = field(default_factory=list)
    failed: list[GuestRef] = field(default_factory=list)


class GuestLifecycleController:
    """Discover, stop and resume guests through a :class:`GuestInventory`."""

    def __init__(
        self,
        inventory: GuestInventory,
        timeouts: TimeoutsConfig,
        *,
        sleep: Sleeper = time.sleep,
    ) -> None:
        """Initialise the controller."""
        self.inventory = inventory
        self.timeouts = timeouts
        self._sleep = sleep

    def snapshot_running(self) -> GuestRunningSet:
        """Return every guest currently in ``running`` state."""
        guests: list[GuestRef] = []
        for kind in GuestKind:
            for guest_id in self.inventory.list_running(kind):
                guests.append(GuestRef(kind, guest_id))
        return GuestRunningSet(tuple(guests))

    def stop_all(self, running: GuestRunningSet) -> GuestStopReport:
        """Stop every guest in *running*, falling back to a clean shutdown.

        Guests that refuse both are recorded as failed; they are never
        force-stopped.
        """
        report = GuestStopReport()
        if not running:
            return report
        for guest in running:
            LOGGER.info("Stopping %s %s...", guest.kind.label, guest.guest_id)
            try:
                self.inventory.stop(guest.kind, guest.guest_id)
                report.stopped.append(guest)
                continue
            except GuestToolError as exc:
                LOGGER.warning("Stop of %s failed (%s); requesting shutdown", guest, exc)
            try:
                self.inventory.soft_stop(guest.kind, guest.guest_id)
                report.stopped.append(guest)
            except GuestToolError as exc:
                LOGGER.warning("Could not stop %s %s: %s", guest.kind.label, guest.guest_id, exc)
                report.failed.append(guest)
        LOGGER.info("Waiting %ss for guests to settle...", self.timeouts.guest_settle)
        self._sleep(self.timeouts.guest_settle)
        return report

    def persist(self, snapshot: Snapshot, running: GuestRunningSet) -> Path:
        """Write *running* into the snapshot."""
        path = snapshot.stopped_guests_path
        path.write_text(running.to_text(), encoding="utf-8")
        return path

    def load(self, snapshot: Snapshot) -> GuestRunningSet:
        """Return the persisted guest list (empty when absent)."""
        path = snapshot.stopped_guests_path
        try:
            return GuestRunningSet.from_text(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return GuestRunningSet()

    def resume(self, snapshot: Snapshot) -> GuestResumeReport:
        """Start every persisted guest, keeping failures in the pending list."""
        report = GuestResumeReport()
        try:
            pending = self.load(snapshot)
        except OSError as exc:
            LOGGER.warning("Could not read stopped guest list: %s", exc)
            return report
        queue = list(pending)
        for position, guest in enumerate(queue):
            if position:
                self._sleep(self.timeouts.guest_resume_delay)
            LOGGER.info("Starting %s %s...", guest.kind.label, guest.guest_id)
            try:
                self.inventory.start(guest.kind, guest.guest_id)
            except GuestToolError as exc:
                LOGGER.warning("Failed to start %s %s: %s", guest.kind.label, guest.guest_id, exc)
                report.failed.append(guest)
                continue
            report.started.append(guest)
            self._write_pending(snapshot, report.failed + queue[position + 1 :])
        self._write_pending(snapshot, report.failed)
        return report

    def _write_pending(self, snapshot: Snapshot, remaining: list[GuestRef]) -> None:
        path = snapshot.stopped_guests_path
        try:
            if remaining:
                path.write_text(GuestRunningSet(tuple(remaining)).to_text(), encoding="utf-8")
            else:
                path.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.warning("Could not update stopped guest list %s: %s", path, exc)


__all__ = [
    "GuestLifecycleController",
    "GuestRef",
    "GuestResumeReport",
    "GuestRunningSet",
    "GuestStopReport",
]
