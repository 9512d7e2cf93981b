"""Adapters for the external systems a rename drives.

The controllers depend on the small protocols below rather than on the
concrete adapters so that tests can substitute in-memory fakes.
"""
from __future__ import annotations

from pathlib import Path
from typing import Protocol

from .guests import GuestKind, GuestToolError, ProxmoxGuestProvider
from .host import HostCommandError, LinuxHost
from .systemd import SystemdError, SystemdProvider


class ServiceManager(Protocol):
    """Subset of systemd used by the service lifecycle controller."""

    def is_active(self, unit: str) -> bool: ...

    def start(self, unit: str) -> object: ...

    def stop(self, unit: str) -> object: ...

    def kill(self, unit: str) -> object: ...

    def restart(self, unit: str) -> object: ...


class GuestInventory(Protocol):
    """Guest listing and power control."""

    def list_running(self, kind: GuestKind) -> list[str]: ...

    def stop(self, kind: GuestKind, guest_id: str) -> None: ...

    def soft_stop(self, kind: GuestKind, guest_id: str) -> None: ...

    def start(self, kind: GuestKind, guest_id: str) -> None: ...


class HostSystem(Protocol):
    """Host operations outside of systemd and the guest tools."""

    def get_hostname(self) -> str: ...

    def set_hostname_persistent(self, name: str) -> None: ...

    def set_hostname_transient(self, name: str) -> None: ...

    def primary_ipv4(self) -> str | None: ...

    def is_mountpoint(self, path: Path) -> bool: ...

    def unmount(self, path: Path, mode: str = "normal") -> None: ...

    def process_running(self, name: str) -> bool: ...

    def signal_process(self, name: str, signal: str) -> None: ...

    def free_bytes(self, path: Path) -> int: ...

    def tree_size(self, path: Path) -> int: ...

    def is_root(self) -> bool: ...

    def cluster_status_ok(self) -> bool: ...


__all__ = [
    "GuestInventory",
    "GuestKind",
    "GuestToolError",
    "HostCommandError",
    "HostSystem",
    "LinuxHost",
    "ProxmoxGuestProvider",
    "ServiceManager",
    "SystemdError",
    "SystemdProvider",
]
