"""Post-rename consistency checks."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .config import PathsConfig
from .migration import contains_word
from .providers import HostSystem, ServiceManager
from .services import MANAGED_SERVICES
from .snapshot import GUEST_CONFIG_DIRS

LOGGER = logging.getLogger(__name__)


class VerificationError(RuntimeError):
    """Raised when the renamed system fails verification."""

    def __init__(self, errors: list[str]) -> None:
        """Record every failed check."""
        super().__init__("Verification failed: " + "; ".join(errors))
        self.errors = list(errors)


@dataclass(slots=True)
class VerificationReport:
    """Checks run after the rename; empty ``errors`` means the rename passed."""

    checks: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        """Return ``True`` when every check succeeded."""
        return not self.errors

    def check(self, name: str, ok: bool, error: str) -> None:
        """Record the outcome of check *name*."""
        self.checks.append(name)
        if not ok:
            self.errors.append(error)

    def raise_for_errors(self) -> None:
        """Raise :class:`VerificationError` when any check failed."""
        if self.errors:
            raise VerificationError(self.errors)


class Verifier:
    """Confirm that a rename left the host in a consistent state."""

    def __init__(self, paths: PathsConfig, host: HostSystem, services: ServiceManager) -> None:
        """Initialise the verifier."""
        self.paths = paths
        self.host = host
        self.services = services

    def verify(self, old: str, new: str) -> VerificationReport:
        """Run every check, accumulating all failures."""
        report = VerificationReport()
        paths = self.paths

        current = self.host.get_hostname()
        report.check("hostname", current == new, f"Hostname is '{current}', expected '{new}'")

        new_dir = paths.node_dir(new)
        report.check("node_dir", new_dir.is_dir(), f"Node directory {new_dir} does not exist")
        has_configs = any((new_dir / subdir).is_dir() for subdir in GUEST_CONFIG_DIRS)
        report.check(
            "node_dir_contents",
            has_configs,
            f"Node directory {new_dir} has no qemu-server or lxc directory",
        )

        old_dir = paths.node_dir(old)
        report.check(
            "old_node_dir", not old_dir.exists(), f"Old node directory {old_dir} still exists"
        )

        for unit in MANAGED_SERVICES:
            report.check(
                f"service:{unit}", self.services.is_active(unit), f"Service {unit} is not active"
            )

        report.check(
            "cluster_mount",
            self.host.is_mountpoint(paths.pve_mount),
            f"{paths.pve_mount} is not mounted",
        )

        try:
            hosts_text = paths.hosts_file.read_text(encoding="utf-8")
        except OSError as exc:
            report.check("hosts", False, f"Cannot read {paths.hosts_file}: {exc}")
        else:
            report.check(
                "hosts",
                contains_word(hosts_text, new),
                f"{paths.hosts_file} does not mention '{new}'",
            )

        if report.passed:
            LOGGER.info("Verification passed (%d checks)", len(report.checks))
        else:
            for error in report.errors:
                LOGGER.error("Verification: %s", error)
        return report


__all__ = ["VerificationError", "VerificationReport", "Verifier"]
