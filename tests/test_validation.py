"""Tests for identifier validation and host preconditions."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
from fakes import FakeHost, HostState, PveTree, build_pve_tree

from pverename.config import AppConfig
from pverename.validation import (
    ValidationError,
    ValidationKind,
    check_preconditions,
    required_space,
    validate_identifier,
    validate_rename,
)


@pytest.mark.parametrize("name", ["pve1", "PVE-node-2", "a", "x" * 63, "9lives"])
def test_valid_identifiers(name: str) -> None:
    """RFC 1123 labels are accepted unchanged."""
    assert validate_identifier(name, "New node name") == name


def test_identifier_is_stripped() -> None:
    """Surrounding whitespace is ignored."""
    assert validate_identifier("  pve2 \n", "New node name") == "pve2"


@pytest.mark.parametrize(
    ("name", "kind"),
    [
        ("", ValidationKind.INVALID_FORMAT),
        ("-pve", ValidationKind.INVALID_FORMAT),
        ("pve-", ValidationKind.INVALID_FORMAT),
        ("pve_2", ValidationKind.INVALID_FORMAT),
        ("pve.example", ValidationKind.INVALID_FORMAT),
        ("x" * 64, ValidationKind.INVALID_FORMAT),
        ("localhost", ValidationKind.RESERVED),
        ("LocalHost", ValidationKind.RESERVED),
        ("ip6-loopback", ValidationKind.RESERVED),
    ],
)
def test_invalid_identifiers(name: str, kind: ValidationKind) -> None:
    """Malformed and reserved names are refused with their kind."""
    with pytest.raises(ValidationError) as excinfo:
        validate_identifier(name, "New node name")
    assert excinfo.value.kind is kind
    assert not excinfo.value.kind.is_environment


def test_rename_accepts_existing_source(
    pve_tree: PveTree, make_config: Callable[..., AppConfig]
) -> None:
    """A rename of an existing node to a free name validates."""
    config = make_config(pve_tree)

    assert validate_rename("pve1", "pve2", config.paths) == ("pve1", "pve2")


def test_rename_allows_reserved_current_name(
    tmp_path: Path, make_config: Callable[..., AppConfig]
) -> None:
    """A node currently called ``localhost`` may still be renamed away."""
    tree = build_pve_tree(tmp_path / "lh", node="localhost")
    config = make_config(tree)

    assert validate_rename("localhost", "pve2", config.paths) == ("localhost", "pve2")


@pytest.mark.parametrize(
    ("old", "new", "kind"),
    [
        ("pve1", "pve1", ValidationKind.SAME_IDENTIFIER),
        ("ghost", "pve2", ValidationKind.SOURCE_MISSING),
        ("pve1", "localhost", ValidationKind.RESERVED),
    ],
)
def test_rename_refusals(
    pve_tree: PveTree,
    make_config: Callable[..., AppConfig],
    old: str,
    new: str,
    kind: ValidationKind,
) -> None:
    """Same names, missing sources and reserved targets are refused."""
    config = make_config(pve_tree)

    with pytest.raises(ValidationError) as excinfo:
        validate_rename(old, new, config.paths)
    assert excinfo.value.kind is kind


def test_rename_refuses_existing_target(
    pve_tree: PveTree, make_config: Callable[..., AppConfig]
) -> None:
    """A leftover target directory points at an incomplete earlier rename."""
    (pve_tree.nodes_dir / "pve2").mkdir()
    config = make_config(pve_tree)

    with pytest.raises(ValidationError) as excinfo:
        validate_rename("pve1", "pve2", config.paths)
    assert excinfo.value.kind is ValidationKind.TARGET_EXISTS


def test_validation_is_repeatable(
    pve_tree: PveTree, make_config: Callable[..., AppConfig]
) -> None:
    """Running the checks twice gives the same answer and changes nothing."""
    config = make_config(pve_tree)
    before = sorted(str(p.relative_to(pve_tree.root)) for p in pve_tree.root.rglob("*"))

    first = validate_rename("pve1", "pve2", config.paths)
    second = validate_rename("pve1", "pve2", config.paths)

    after = sorted(str(p.relative_to(pve_tree.root)) for p in pve_tree.root.rglob("*"))
    assert first == second
    assert before == after


def test_preconditions_pass_on_healthy_host(
    pve_tree: PveTree,
    make_config: Callable[..., AppConfig],
    host_state: HostState,
    tmp_path: Path,
) -> None:
    """A privileged host with the cluster filesystem mounted passes."""
    config = make_config(pve_tree)

    check_preconditions(
        config.paths, FakeHost(host_state), backup_root=tmp_path, min_free_bytes=1024
    )


@pytest.mark.parametrize(
    ("mutate", "kind"),
    [
        (lambda state: setattr(state, "root", False), ValidationKind.NOT_PRIVILEGED),
        (lambda state: setattr(state, "mounted", False), ValidationKind.FILESYSTEM_NOT_MOUNTED),
        (lambda state: setattr(state, "free_bytes", 10), ValidationKind.INSUFFICIENT_SPACE),
    ],
)
def test_precondition_failures(
    pve_tree: PveTree,
    make_config: Callable[..., AppConfig],
    host_state: HostState,
    tmp_path: Path,
    mutate: Callable[[HostState], None],
    kind: ValidationKind,
) -> None:
    """Each host precondition maps to an environment failure kind."""
    config = make_config(pve_tree)
    mutate(host_state)

    with pytest.raises(ValidationError) as excinfo:
        check_preconditions(
            config.paths, FakeHost(host_state), backup_root=tmp_path, min_free_bytes=1024
        )
    assert excinfo.value.kind is kind
    assert excinfo.value.kind.is_environment


def test_preconditions_require_pve_directory(
    tmp_path: Path,
    make_config: Callable[..., AppConfig],
    host_state: HostState,
) -> None:
    """Hosts without the cluster directory are not Proxmox hosts."""
    config = make_config(PveTree(tmp_path / "empty"))

    with pytest.raises(ValidationError) as excinfo:
        check_preconditions(
            config.paths, FakeHost(host_state), backup_root=tmp_path, min_free_bytes=0
        )
    assert excinfo.value.kind is ValidationKind.SYSTEM_NOT_DETECTED


def test_required_space_scales_with_data(
    pve_tree: PveTree, make_config: Callable[..., AppConfig], host_state: HostState
) -> None:
    """Three times the data size is required, never less than the floor."""
    config = make_config(pve_tree)
    host = FakeHost(host_state)

    assert required_space(config.paths, host, floor=0) == 3 * 2 * 4096
    assert required_space(config.paths, host, floor=10**9) == 10**9
