"""Guest inventory provider backed by the ``qm`` and ``pct`` tools."""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum


class GuestToolError(RuntimeError):
    """Raised when a guest management command fails."""


class GuestKind(str, Enum):
    """Guest flavours managed on a PVE host."""

    VM = "vm"
    CONTAINER = "ct"

    @property
    def label(self) -> str:
        """Return a human readable label."""
        return "VM" if self is GuestKind.VM else "container"


# Column holding the status in ``qm list`` / ``pct list`` output (header skipped).
_STATUS_COLUMN = {GuestKind.VM: 2, GuestKind.CONTAINER: 1}


@dataclass(slots=True)
class ProxmoxGuestProvider:
    """Query and drive guests through ``qm`` (VMs) and ``pct`` (containers)."""

    qm_bin: str = "qm"
    pct_bin: str = "pct"

    def binary_for(self, kind: GuestKind) -> str:
        """Return the management binary for *kind*."""
        return self.qm_bin if kind is GuestKind.VM else self.pct_bin

    def available(self, kind: GuestKind) -> bool:
        """Return ``True`` when the tool for *kind* is installed."""
        return shutil.which(self.binary_for(kind)) is not None

    def list_running(self, kind: GuestKind) -> list[str]:
        """Return identifiers of guests of *kind* in ``running`` state.

        A missing tool or a failing listing yields an empty list.
        """
        if not self.available(kind):
            return []
        try:
            result = self._run(kind, ["list"], check=False)
        except GuestToolError:
            return []
        if result.returncode != 0:
            return []
        return parse_running(result.stdout or "", kind)

    def stop(self, kind: GuestKind, guest_id: str) -> None:
        """Stop the guest immediately."""
        self._run(kind, ["stop", guest_id])

    def soft_stop(self, kind: GuestKind, guest_id: str) -> None:
        """Request a clean guest shutdown."""
        self._run(kind, ["shutdown", guest_id])

    def start(self, kind: GuestKind, guest_id: str) -> None:
        """Start the guest."""
        self._run(kind, ["start", guest_id])

    # ------------------------------------------------------------------
    def _run(
        self,
        kind: GuestKind,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.binary_for(kind), *args]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise GuestToolError(f"{command[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip() or "no output"
            raise GuestToolError(
                f"{' '.join(command)} failed (exit {result.returncode}): {message}"
            )
        return result


def parse_running(output: str, kind: GuestKind) -> list[str]:
    """Extract running guest identifiers from ``qm list``/``pct list`` output."""
    column = _STATUS_COLUMN[kind]
    running: list[str] = []
    for index, line in enumerate(output.splitlines()):
        if index == 0:
            continue
        fields = line.split()
        if len(fields) <= column:
            continue
        if fields[column] == "running":
            running.append(fields[0])
    return running


__all__ = ["GuestKind", "GuestToolError", "ProxmoxGuestProvider", "parse_running"]
