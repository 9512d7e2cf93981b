"""Best-effort restoration of the pre-rename state from a snapshot.

Rollback never raises. Every sub-step runs independently; failures are
logged and collected in :class:`RollbackReport`, and a non-empty error list
means the operator has to finish the recovery by hand from the retained
snapshot.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .cluster import CLUSTER_SERVICE
from .config import PathsConfig
from .migration import apply_hostname
from .providers import HostSystem
from .services import ServiceLifecycleController, clear_directory
from .snapshot import (
    RRD_CATEGORIES,
    Snapshot,
    SnapshotManager,
    remove_path,
    restore_entry,
    rrd_item_name,
)

if TYPE_CHECKING:
    from .orchestrator import RenameContext

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class RollbackReport:
    """Outcome of a rollback; ``errors`` lists every failed sub-step."""

    snapshot_root: str | None = None
    steps: list[tuple[str, str]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def manual_intervention_required(self) -> bool:
        """Return ``True`` when any sub-step failed."""
        return bool(self.errors)


class RollbackCoordinator:
    """Restore the host from the snapshot taken before the rename."""

    def __init__(
        self,
        services: ServiceLifecycleController,
        host: HostSystem,
        paths: PathsConfig,
        snapshots: SnapshotManager,
    ) -> None:
        """Initialise the coordinator."""
        self.services = services
        self.host = host
        self.paths = paths
        self.snapshots = snapshots

    def rollback(self, context: RenameContext) -> RollbackReport:
        """Restore everything the rename may have touched."""
        report = RollbackReport()
        snapshot = context.snapshot
        if snapshot is None:
            report.errors.append("No snapshot available; nothing can be restored.")
            return report
        report.snapshot_root = str(snapshot.root)
        old, new = context.old, context.new
        LOGGER.warning("Rolling back rename %s -> %s from %s", old, new, snapshot.root)

        def _step(name: str, action: Callable[[], None]) -> bool:
            try:
                action()
            except Exception as exc:  # noqa: BLE001 - rollback keeps going
                LOGGER.error("Rollback step %s failed: %s", name, exc)
                report.steps.append((name, "error"))
                report.errors.append(f"{name}: {exc}")
                return False
            report.steps.append((name, "success"))
            return True

        _step("stop_services", self._stop_services)
        _step("stop_cluster_filesystem", self.services.stop_cluster_filesystem)
        if self.services.cluster.reset_database_on_rollback:
            _step("reset_cluster_database", self._reset_cluster_database)
        _step("hostname", lambda: apply_hostname(self.host, self.paths.hostname_file, old))
        _step("system_files", lambda: self._restore_system_files(snapshot))
        _step("rrd", lambda: self._restore_rrd(snapshot, old, new))

        mounted = _step("start_cluster_filesystem", self._start_cluster_filesystem)
        if mounted:
            _step("node_tree", lambda: self._restore_node_tree(snapshot, new))
            _step("membership", lambda: self._restore_optional(snapshot, "corosync.conf"))
            _step("storage", lambda: self._restore_optional(snapshot, "storage.cfg"))
            _step("restart_cluster", self._restart_cluster)
        else:
            report.errors.append(
                "Cluster filesystem not mounted; node tree, membership and storage "
                f"configuration must be restored manually from {snapshot.root}"
            )
        _step("start_services", self._start_services)
        _step("retain_snapshot", lambda: self.snapshots.retain(snapshot, reason="rollback"))

        if report.errors:
            LOGGER.error(
                "Rollback finished with %d error(s); manual intervention required. "
                "Snapshot: %s",
                len(report.errors),
                snapshot.root,
            )
        else:
            LOGGER.info("Rollback completed; snapshot retained at %s", snapshot.root)
        return report

    # Sub-steps --------------------------------------------------------------
    def _stop_services(self) -> None:
        stop_report = self.services.stop_all()
        for detail in stop_report.details:
            LOGGER.info("Ignoring during rollback: %s", detail)

    def _restore_system_files(self, snapshot: Snapshot) -> None:
        hosts = snapshot.path_for("hosts")
        if hosts is None:
            raise RuntimeError("hosts file missing from snapshot")
        restore_entry(hosts, self.paths.hosts_file, "file")
        hostname = snapshot.path_for("hostname")
        if hostname is not None:
            restore_entry(hostname, self.paths.hostname_file, "file")
        for item in snapshot.items:
            if item.name.startswith("extra:") and item.present:
                restore_entry(snapshot.root / item.relative, item.source, "file")

    def _restore_rrd(self, snapshot: Snapshot, old: str, new: str) -> None:
        for category in RRD_CATEGORIES:
            backup = snapshot.path_for(rrd_item_name(category))
            if backup is None:
                continue
            base = self.paths.rrd_base / f"pve2-{category}"
            remove_path(base / new)
            restore_entry(backup, base / old, "dir")

    def _reset_cluster_database(self) -> None:
        clear_directory(self.paths.cluster_db_dir)

    def _start_cluster_filesystem(self) -> None:
        self.services.start_cluster_filesystem()
        self.services.wait_for_cluster_filesystem()

    def _restore_node_tree(self, snapshot: Snapshot, new: str) -> None:
        backup = snapshot.path_for("nodes")
        if backup is None:
            raise RuntimeError("node tree missing from snapshot")
        remove_path(self.paths.node_dir(new))
        restore_entry(backup, self.paths.nodes_dir, "dir")

    def _restore_optional(self, snapshot: Snapshot, name: str) -> None:
        item = snapshot.item(name)
        if item is None or not item.present:
            LOGGER.debug("Snapshot has no %s; nothing to restore", name)
            return
        restore_entry(snapshot.root / item.relative, item.source, "file")

    def _restart_cluster(self) -> None:
        self.services.services.restart(CLUSTER_SERVICE)
        self.services.wait_for_cluster_filesystem()

    def _start_services(self) -> None:
        start_report = self.services.start_services()
        if start_report.failed:
            raise RuntimeError(f"services not active: {', '.join(start_report.failed)}")


__all__ = ["RollbackCoordinator", "RollbackReport"]
