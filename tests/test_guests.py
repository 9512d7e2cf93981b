"""Tests for the guest lifecycle controller."""
from __future__ import annotations

from pathlib import Path

import pytest
from fakes import FakeClock, FakeGuestInventory

from pverename.config import TimeoutsConfig
from pverename.guests import GuestLifecycleController, GuestRef, GuestRunningSet
from pverename.providers import GuestKind
from pverename.snapshot import Snapshot


@pytest.fixture
def snapshot(tmp_path: Path) -> Snapshot:
    """Return a bare snapshot directory."""
    root = tmp_path / "snap"
    root.mkdir()
    return Snapshot(root=root, snapshot_id="snap", created_at="", old="pve1", new="pve2")


def _controller(inventory: FakeGuestInventory, clock: FakeClock) -> GuestLifecycleController:
    timeouts = TimeoutsConfig(guest_settle=10, guest_resume_delay=2)
    return GuestLifecycleController(inventory, timeouts, sleep=clock.sleep)


def test_guest_ref_round_trip() -> None:
    """``kind:id`` strings parse back into references."""
    ref = GuestRef.parse("ct:200")

    assert ref == GuestRef(GuestKind.CONTAINER, "200")
    assert str(ref) == "ct:200"
    with pytest.raises(ValueError):
        GuestRef.parse("vm")


def test_running_set_skips_malformed_lines() -> None:
    """Garbage in the persisted list is ignored."""
    running = GuestRunningSet.from_text("vm:101\n\nnonsense\nct:200\nxx:1\n")

    assert [str(guest) for guest in running] == ["vm:101", "ct:200"]
    assert running.count(GuestKind.VM) == 1
    assert running.count(GuestKind.CONTAINER) == 1


def test_snapshot_running_lists_vms_and_containers(fake_clock: FakeClock) -> None:
    """Both guest kinds are discovered."""
    inventory = FakeGuestInventory(vms=["101", "102"], containers=["200"])

    running = _controller(inventory, fake_clock).snapshot_running()

    assert [str(guest) for guest in running] == ["vm:101", "vm:102", "ct:200"]


def test_stop_all_falls_back_to_shutdown(fake_clock: FakeClock) -> None:
    """A failing stop is followed by a clean shutdown; double failures are recorded."""
    inventory = FakeGuestInventory(vms=["101", "102"], containers=["200"])
    inventory.fail_stop = {"102", "200"}
    inventory.fail_soft_stop = {"200"}
    controller = _controller(inventory, fake_clock)

    report = controller.stop_all(controller.snapshot_running())

    assert [str(guest) for guest in report.stopped] == ["vm:101", "vm:102"]
    assert [str(guest) for guest in report.failed] == ["ct:200"]
    assert ("shutdown", "vm", "102") in inventory.calls
    assert fake_clock.sleeps == [10]


def test_stop_all_without_guests_does_not_wait(fake_clock: FakeClock) -> None:
    """No settle delay when nothing was running."""
    controller = _controller(FakeGuestInventory(), fake_clock)

    report = controller.stop_all(GuestRunningSet())

    assert report.stopped == []
    assert fake_clock.sleeps == []


def test_persist_and_resume(snapshot: Snapshot, fake_clock: FakeClock) -> None:
    """Resuming starts every guest and removes the pending list."""
    inventory = FakeGuestInventory(vms=["101"], containers=["200"])
    controller = _controller(inventory, fake_clock)
    running = controller.snapshot_running()
    controller.persist(snapshot, running)
    controller.stop_all(running)
    assert snapshot.stopped_guests_path.read_text(encoding="utf-8") == "vm:101\nct:200\n"

    report = controller.resume(snapshot)

    assert [str(guest) for guest in report.started] == ["vm:101", "ct:200"]
    assert report.failed == []
    assert not snapshot.stopped_guests_path.exists()
    assert inventory.running[GuestKind.VM] == ["101"]
    assert fake_clock.sleeps == [10, 2]


def test_resume_keeps_failures_pending(snapshot: Snapshot, fake_clock: FakeClock) -> None:
    """Guests that fail to start stay in the persisted list."""
    inventory = FakeGuestInventory()
    inventory.fail_start = {"200"}
    controller = _controller(inventory, fake_clock)
    controller.persist(
        snapshot,
        GuestRunningSet(
            (GuestRef(GuestKind.VM, "101"), GuestRef(GuestKind.CONTAINER, "200"))
        ),
    )

    report = controller.resume(snapshot)

    assert [str(guest) for guest in report.failed] == ["ct:200"]
    assert snapshot.stopped_guests_path.read_text(encoding="utf-8") == "ct:200\n"
    assert controller.load(snapshot).count(GuestKind.CONTAINER) == 1


def test_resume_without_list_is_noop(snapshot: Snapshot, fake_clock: FakeClock) -> None:
    """No persisted list means nothing to start."""
    inventory = FakeGuestInventory()

    report = _controller(inventory, fake_clock).resume(snapshot)

    assert report.started == [] and report.failed == []
    assert inventory.calls == []


class _CrashingInventory(FakeGuestInventory):
    """Inventory whose host dies while starting a given guest."""

    def __init__(self, crash_on: str) -> None:
        super().__init__()
        self.crash_on = crash_on

    def start(self, kind: GuestKind, guest_id: str) -> None:
        if guest_id == self.crash_on:
            raise KeyboardInterrupt
        super().start(kind, guest_id)


def test_resume_rewrites_list_after_each_start(
    snapshot: Snapshot, fake_clock: FakeClock
) -> None:
    """An interrupted resume leaves only the guests that were not yet started."""
    inventory = _CrashingInventory(crash_on="300")
    inventory.fail_start = {"102"}
    controller = _controller(inventory, fake_clock)
    controller.persist(
        snapshot,
        GuestRunningSet.from_text("vm:101\nvm:102\nct:200\nct:300\nct:301\n"),
    )

    with pytest.raises(KeyboardInterrupt):
        controller.resume(snapshot)

    assert snapshot.stopped_guests_path.read_text(encoding="utf-8") == (
        "vm:102\nct:300\nct:301\n"
    )
    assert inventory.running[GuestKind.VM] == ["101"]
    assert inventory.running[GuestKind.CONTAINER] == ["200"]
