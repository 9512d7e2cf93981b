"""Tests for cluster membership detection."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

from fakes import FakeHost, FakeServiceManager, HostState, PveTree, build_pve_tree

from pverename.cluster import (
    SIGNAL_MEMBERSHIP_FILE,
    SIGNAL_MULTIPLE_NODES,
    SIGNAL_SERVICE_ACTIVE,
    SIGNAL_STATUS_QUERY,
    ClusterState,
    collect_signals,
    detect_cluster,
)
from pverename.config import AppConfig, ClusterConfig


def _detect(
    config: AppConfig, state: HostState, policy: ClusterConfig | None = None
) -> ClusterState:
    return detect_cluster(
        config.paths,
        FakeServiceManager(state),
        FakeHost(state),
        policy or config.cluster,
    )


def test_standalone_node_has_single_signal(
    pve_tree: PveTree, make_config: Callable[..., AppConfig], host_state: HostState
) -> None:
    """A lone node with a running pmxcfs stays below the threshold."""
    config = make_config(pve_tree)

    state = _detect(config, host_state)

    assert state.clustered is False
    assert state.signals == (SIGNAL_SERVICE_ACTIVE,)
    assert state.source == "detected"


def test_clustered_node_detected(
    tmp_path: Path, make_config: Callable[..., AppConfig], host_state: HostState
) -> None:
    """Membership file plus several node directories mark a cluster."""
    tree = build_pve_tree(tmp_path / "cluster", clustered=True)
    config = make_config(tree)
    host_state.pvecm_ok = True

    state = _detect(config, host_state)

    assert state.clustered is True
    assert set(state.signals) == {
        SIGNAL_MEMBERSHIP_FILE,
        SIGNAL_MULTIPLE_NODES,
        SIGNAL_SERVICE_ACTIVE,
        SIGNAL_STATUS_QUERY,
    }


def test_status_query_counts_without_cluster_process(
    pve_tree: PveTree, make_config: Callable[..., AppConfig], host_state: HostState
) -> None:
    """``pvecm status`` is an independent signal."""
    config = make_config(pve_tree)
    host_state.pmxcfs_running = False
    host_state.pvecm_ok = True

    signals = collect_signals(config.paths, FakeServiceManager(host_state), FakeHost(host_state))

    assert signals == [SIGNAL_STATUS_QUERY]


def test_threshold_is_configurable(
    pve_tree: PveTree, make_config: Callable[..., AppConfig], host_state: HostState
) -> None:
    """Lowering the threshold to one signal flips the decision."""
    config = make_config(pve_tree, cluster={"threshold": 1})

    assert _detect(config, host_state).clustered is True


def test_overrides_skip_detection(
    tmp_path: Path, make_config: Callable[..., AppConfig], host_state: HostState
) -> None:
    """Explicit detection modes win over the signals."""
    tree = build_pve_tree(tmp_path / "cluster", clustered=True)
    config = make_config(tree)

    standalone = _detect(config, host_state, ClusterConfig(detection="standalone"))
    bare = make_config(PveTree(tmp_path / "none"))
    clustered = _detect(bare, host_state, ClusterConfig(detection="clustered"))

    assert standalone.clustered is False
    assert standalone.source == "override"
    assert standalone.signals == ()
    assert clustered.clustered is True
    assert clustered.to_dict()["source"] == "override"
