"""Tests for post-rename verification."""
from __future__ import annotations

import os
import shutil
from collections.abc import Callable

import pytest
from fakes import FakeHost, FakeServiceManager, HostState, PveTree

from pverename.config import AppConfig
from pverename.verification import VerificationError, Verifier


def _renamed(tree: PveTree, state: HostState) -> None:
    os.rename(tree.nodes_dir / "pve1", tree.nodes_dir / "pve2")
    tree.hosts_file.write_text("192.168.1.10 pve2.localdomain pve2\n", encoding="utf-8")
    state.hostname = "pve2"


def _verifier(config: AppConfig, state: HostState) -> Verifier:
    return Verifier(config.paths, FakeHost(state), FakeServiceManager(state))


def test_verification_passes_on_renamed_host(
    pve_tree: PveTree, make_config: Callable[..., AppConfig], host_state: HostState
) -> None:
    """Every check passes after a complete rename."""
    _renamed(pve_tree, host_state)

    report = _verifier(make_config(pve_tree), host_state).verify("pve1", "pve2")

    assert report.passed
    assert "hostname" in report.checks
    assert "service:pve-cluster" in report.checks
    report.raise_for_errors()


def test_verification_collects_every_failure(
    pve_tree: PveTree, make_config: Callable[..., AppConfig], host_state: HostState
) -> None:
    """All failing checks are reported together."""
    host_state.active.discard("pveproxy")
    host_state.mounted = False

    report = _verifier(make_config(pve_tree), host_state).verify("pve1", "pve2")

    assert not report.passed
    joined = "\n".join(report.errors)
    assert "Hostname is 'pve1'" in joined
    assert "does not exist" in joined
    assert "still exists" in joined
    assert "pveproxy" in joined
    assert "not mounted" in joined
    assert "does not mention 'pve2'" in joined
    with pytest.raises(VerificationError) as excinfo:
        report.raise_for_errors()
    assert excinfo.value.errors == report.errors


def test_verification_requires_guest_config_dirs(
    pve_tree: PveTree, make_config: Callable[..., AppConfig], host_state: HostState
) -> None:
    """A node directory without qemu-server or lxc fails the contents check."""
    _renamed(pve_tree, host_state)
    shutil.rmtree(pve_tree.nodes_dir / "pve2" / "qemu-server")
    shutil.rmtree(pve_tree.nodes_dir / "pve2" / "lxc")

    report = _verifier(make_config(pve_tree), host_state).verify("pve1", "pve2")

    assert len(report.errors) == 1
    assert "no qemu-server or lxc" in report.errors[0]
