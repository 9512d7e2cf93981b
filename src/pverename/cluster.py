"""Cluster membership detection.

Whether a node belongs to a cluster is inferred from four independent
signals. The node counts as clustered when at least ``threshold`` of them
fire; the heuristic can be overridden through configuration.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import ClusterConfig, PathsConfig
from .providers import HostSystem, ServiceManager

LOGGER = logging.getLogger(__name__)

CLUSTER_SERVICE = "pve-cluster"
CLUSTER_PROCESS = "pmxcfs"

SIGNAL_MEMBERSHIP_FILE = "membership_file"
SIGNAL_MULTIPLE_NODES = "multiple_nodes"
SIGNAL_SERVICE_ACTIVE = "cluster_service_active"
SIGNAL_STATUS_QUERY = "cluster_status_query"


@dataclass(frozen=True, slots=True)
class ClusterState:
    """Outcome of cluster detection."""

    clustered: bool
    signals: tuple[str, ...] = ()
    threshold: int = 2
    source: str = "detected"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "clustered": self.clustered,
            "signals": list(self.signals),
            "threshold": self.threshold,
            "source": self.source,
        }


def find_membership_file(paths: PathsConfig) -> str | None:
    """Return the first existing corosync configuration path."""
    for candidate in paths.corosync_candidates:
        if candidate.is_file():
            return str(candidate)
    return None


def collect_signals(
    paths: PathsConfig,
    services: ServiceManager,
    host: HostSystem,
) -> list[str]:
    """Return the names of the cluster signals that fire on this host."""
    signals: list[str] = []
    if find_membership_file(paths):
        signals.append(SIGNAL_MEMBERSHIP_FILE)
    if paths.nodes_dir.is_dir():
        node_dirs = [entry for entry in paths.nodes_dir.iterdir() if entry.is_dir()]
        if len(node_dirs) > 1:
            signals.append(SIGNAL_MULTIPLE_NODES)
    if services.is_active(CLUSTER_SERVICE) and host.process_running(CLUSTER_PROCESS):
        signals.append(SIGNAL_SERVICE_ACTIVE)
    if host.cluster_status_ok():
        signals.append(SIGNAL_STATUS_QUERY)
    return signals


def detect_cluster(
    paths: PathsConfig,
    services: ServiceManager,
    host: HostSystem,
    policy: ClusterConfig,
) -> ClusterState:
    """Return the :class:`ClusterState` for this host under *policy*."""
    if policy.detection == "clustered":
        return ClusterState(True, threshold=policy.threshold, source="override")
    if policy.detection == "standalone":
        return ClusterState(False, threshold=policy.threshold, source="override")
    signals = collect_signals(paths, services, host)
    clustered = len(signals) >= policy.threshold
    LOGGER.info(
        "Cluster detection: %d of %d required signals (%s)",
        len(signals),
        policy.threshold,
        ", ".join(signals) or "none",
    )
    return ClusterState(clustered, tuple(signals), policy.threshold, "detected")


__all__ = [
    "CLUSTER_PROCESS",
    "CLUSTER_SERVICE",
    "ClusterState",
    "collect_signals",
    "detect_cluster",
    "find_membership_file",
]
