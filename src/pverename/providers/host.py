"""Host adapter: hostname, addresses, mounts, processes and disk usage."""
from __future__ import annotations

import ipaddress
import os
import shutil
import socket
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

UNMOUNT_FLAGS = {"normal": (), "force": ("-f",), "lazy": ("-l",)}
SIGNAL_NAMES = {"TERM", "KILL"}


class HostCommandError(RuntimeError):
    """Raised when a host-level command fails."""


@dataclass(slots=True)
class LinuxHost:
    """Execute host operations through the usual Linux userland tools."""

    hostnamectl_bin: str = "hostnamectl"
    hostname_bin: str = "hostname"
    ip_bin: str = "ip"
    umount_bin: str = "umount"
    pvecm_bin: str = "pvecm"

    # hostname ---------------------------------------------------------
    def get_hostname(self) -> str:
        """Return the current (short) hostname."""
        return socket.gethostname().split(".", 1)[0]

    def set_hostname_persistent(self, name: str) -> None:
        """Set the static hostname through ``hostnamectl``."""
        self._run([self.hostnamectl_bin, "set-hostname", name])

    def set_hostname_transient(self, name: str) -> None:
        """Set the kernel hostname through ``hostname``."""
        self._run([self.hostname_bin, name])

    # network ----------------------------------------------------------
    def primary_ipv4(self) -> str | None:
        """Return the IPv4 address of the default-route interface.

        Falls back to the first non-loopback IPv4 address; ``None`` when the
        host has none.
        """
        interface = None
        route = self._run([self.ip_bin, "route", "show", "default"], check=False)
        if route.returncode == 0:
            interface = parse_default_interface(route.stdout or "")
        if interface:
            addr = self._run([self.ip_bin, "-4", "addr", "show", "dev", interface], check=False)
            if addr.returncode == 0:
                found = parse_ipv4_addresses(addr.stdout or "")
                if found:
                    return found[0]
        addr = self._run([self.ip_bin, "-4", "addr", "show"], check=False)
        if addr.returncode != 0:
            return None
        found = parse_ipv4_addresses(addr.stdout or "")
        return found[0] if found else None

    # mounts -----------------------------------------------------------
    def is_mountpoint(self, path: Path) -> bool:
        """Return ``True`` when *path* is a mount point."""
        return os.path.ismount(path)

    def unmount(self, path: Path, mode: str = "normal") -> None:
        """Unmount *path* using ``normal``, ``force`` or ``lazy`` semantics."""
        if mode not in UNMOUNT_FLAGS:
            raise ValueError(f"Unsupported unmount mode: {mode}")
        self._run([self.umount_bin, *UNMOUNT_FLAGS[mode], str(path)])

    # processes --------------------------------------------------------
    def process_running(self, name: str) -> bool:
        """Return ``True`` when a process named exactly *name* exists."""
        try:
            result = self._run(["pgrep", "-x", name], check=False)
        except HostCommandError:
            return False
        return result.returncode == 0

    def signal_process(self, name: str, signal: str) -> None:
        """Send ``SIG<signal>`` to every process named exactly *name*."""
        if signal not in SIGNAL_NAMES:
            raise ValueError(f"Unsupported signal: {signal}")
        result = self._run(["pkill", f"-{signal}", "-x", name], check=False)
        # pkill exits 1 when nothing matched.
        if result.returncode not in (0, 1):
            message = (result.stderr or "").strip() or "no output"
            raise HostCommandError(f"pkill -{signal} {name} failed: {message}")

    # storage ----------------------------------------------------------
    def free_bytes(self, path: Path) -> int:
        """Return the free space available on the filesystem holding *path*."""
        return shutil.disk_usage(path).free

    def tree_size(self, path: Path) -> int:
        """Return the apparent size in bytes of everything below *path*."""
        if not path.exists():
            return 0
        if path.is_file():
            return path.stat().st_size
        total = 0
        for dirpath, _dirnames, filenames in os.walk(path):
            for filename in filenames:
                try:
                    total += os.lstat(os.path.join(dirpath, filename)).st_size
                except OSError:
                    continue
        return total

    # privileges and cluster -------------------------------------------
    def is_root(self) -> bool:
        """Return ``True`` when running with effective uid 0."""
        return os.geteuid() == 0

    def cluster_status_ok(self) -> bool:
        """Return ``True`` when ``pvecm status`` succeeds."""
        try:
            result = self._run([self.pvecm_bin, "status"], check=False)
        except HostCommandError:
            return False
        return result.returncode == 0

    # ------------------------------------------------------------------
    def _run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise HostCommandError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip() or "no output"
            raise HostCommandError(
                f"{' '.join(args)} failed (exit {result.returncode}): {message}"
            )
        return result


def parse_default_interface(output: str) -> str | None:
    """Return the ``dev`` of the first ``default`` route in ``ip route`` output."""
    for line in output.splitlines():
        fields = line.split()
        if not fields or fields[0] != "default":
            continue
        if "dev" in fields:
            index = fields.index("dev")
            if index + 1 < len(fields):
                return fields[index + 1]
    return None


def parse_ipv4_addresses(output: str) -> list[str]:
    """Return non-loopback IPv4 addresses listed in ``ip -4 addr`` output."""
    found: list[str] = []
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 2 or fields[0] != "inet":
            continue
        address = fields[1].split("/", 1)[0]
        try:
            parsed = ipaddress.IPv4Address(address)
        except ValueError:
            continue
        if parsed.is_loopback:
            continue
        found.append(address)
    return found


__all__ = [
    "HostCommandError",
    "LinuxHost",
    "parse_default_interface",
    "parse_ipv4_addresses",
]
