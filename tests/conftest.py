"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
from fakes import (
    FakeClock,
    FakeGuestInventory,
    FakeHost,
    FakeServiceManager,
    HostState,
    PveTree,
    build_pve_tree,
    config_values,
)

from pverename.config import AppConfig, load_config
from pverename.orchestrator import RenameOrchestrator


@pytest.fixture
def pve_tree(tmp_path: Path) -> PveTree:
    """Return a standalone node ``pve1`` laid out below ``tmp_path/host``."""
    return build_pve_tree(tmp_path / "host")


@pytest.fixture
def host_state() -> HostState:
    """Return a healthy host with every PVE service running."""
    return HostState()


@pytest.fixture
def fake_clock() -> FakeClock:
    """Return a clock that only advances when slept on."""
    return FakeClock()


@pytest.fixture
def fake_guests() -> FakeGuestInventory:
    """Return an inventory with VM 101 running."""
    return FakeGuestInventory(vms=["101"])


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., AppConfig]:
    """Return a factory building an :class:`AppConfig` for a fake tree."""

    def _factory(tree: PveTree, **overrides: object) -> AppConfig:
        values = config_values(tmp_path, tree)
        values.update(overrides)
        return load_config(tmp_path / "missing.yml", env={}, overrides=values)

    return _factory


@pytest.fixture
def make_orchestrator(
    host_state: HostState,
    fake_guests: FakeGuestInventory,
    fake_clock: FakeClock,
) -> Callable[[AppConfig], RenameOrchestrator]:
    """Return a factory wiring a :class:`RenameOrchestrator` to the fakes."""

    def _factory(config: AppConfig) -> RenameOrchestrator:
        return RenameOrchestrator(
            config,
            services=FakeServiceManager(host_state),
            guests=fake_guests,
            host=FakeHost(host_state),
            sleep=fake_clock.sleep,
            clock=fake_clock,
        )

    return _factory
