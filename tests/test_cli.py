"""Tests for the pverename CLI."""
from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml
from fakes import HostState, PveTree, build_pve_tree, config_values
from typer.testing import CliRunner

from pverename import __version__, cli
from pverename.cli import app
from pverename.config import AppConfig
from pverename.migration import MigrationStepError, MigrationSteps
from pverename.orchestrator import RenameContext, RenameOrchestrator

runner = CliRunner()


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _prepare_environment(
    tmp_path: Path,
    tree: PveTree,
    *,
    config_overrides: dict[str, object] | None = None,
) -> dict[str, str]:
    config = config_values(tmp_path, tree)
    config.update(config_overrides or {})
    config_path = tmp_path / "config.yml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    return {"PVERENAME_CONFIG_FILE": str(config_path)}


def _last_operation(tmp_path: Path) -> dict[str, object]:
    lines = (tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    return json.loads(lines[-1])


@pytest.fixture
def cli_env(
    tmp_path: Path,
    pve_tree: PveTree,
    make_orchestrator: Callable[[AppConfig], RenameOrchestrator],
    monkeypatch: pytest.MonkeyPatch,
) -> dict[str, str]:
    """Point the CLI at the fake host and return its environment."""

    def _build(runtime: cli.RuntimeContext, config: AppConfig) -> RenameOrchestrator:
        orchestrator = make_orchestrator(config)
        orchestrator.locks = runtime.locks
        return orchestrator

    monkeypatch.setattr(cli, "_build_orchestrator", _build)
    return _prepare_environment(tmp_path, pve_tree)


def test_version_option(cli_env: dict[str, str]) -> None:
    """``--version`` prints the package version."""
    result = runner.invoke(app, ["--version"], env=cli_env)

    assert result.exit_code == 0
    assert f"pverename {__version__}" in result.stdout


def test_help_lists_commands(cli_env: dict[str, str]) -> None:
    """Running without a command shows the help text."""
    result = runner.invoke(app, [], env=cli_env)

    assert result.exit_code == 0
    assert "Proxmox VE node rename tool" in result.stdout
    assert "rename" in result.stdout
    assert "snapshots" in result.stdout


def test_config_show_json(cli_env: dict[str, str], pve_tree: PveTree) -> None:
    """The effective configuration is emitted as JSON."""
    result = runner.invoke(app, ["config", "show", "--json"], env=cli_env)

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    paths = payload["paths"]
    assert isinstance(paths, dict)
    assert paths["pve_mount"] == str(pve_tree.pve_mount)
    assert paths["nodes_dir"] == str(pve_tree.nodes_dir)
    timeouts = payload["timeouts"]
    assert isinstance(timeouts, dict)
    assert timeouts["service_stop"] == 3


def test_invalid_config_file_exits_with_validation_code(
    tmp_path: Path, pve_tree: PveTree
) -> None:
    """A broken config file stops every command with exit code 2."""
    env = _prepare_environment(
        tmp_path, pve_tree, config_overrides={"cluster": {"detection": "sometimes"}}
    )

    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == 2
    assert "Configuration error" in result.stdout


def test_rename_with_yes_renames_node(
    cli_env: dict[str, str],
    pve_tree: PveTree,
    host_state: HostState,
    tmp_path: Path,
) -> None:
    """``rename --yes`` runs end to end without prompting."""
    result = runner.invoke(app, ["rename", "pve1", "pve2", "--yes"], env=cli_env)

    assert result.exit_code == 0, result.stdout
    assert "Node directories: pve1" in result.stdout
    assert "Node renamed from 'pve1' to 'pve2'." in result.stdout
    assert host_state.hostname == "pve2"
    assert (pve_tree.nodes_dir / "pve2").is_dir()

    record = _last_operation(tmp_path)
    assert record["operation"] == "rename"
    result_block = record["result"]
    assert isinstance(result_block, dict)
    assert result_block["status"] == "success"
    assert result_block["changed"] == 1
    context = result_block["context"]
    assert isinstance(context, dict)
    assert context["status"] == "committed"
    assert context["guests"] == ["vm:101"]
    assert context["snapshot_retained"] is True
    step_names = [step["name"] for step in record["steps"]]
    assert "preflight" in step_names
    assert "commit" in step_names


def test_rename_prompts_for_missing_names(
    cli_env: dict[str, str], host_state: HostState
) -> None:
    """Missing identifiers are asked for; the current hostname is the default."""
    result = runner.invoke(app, ["rename", "--yes"], input="\npve2\n", env=cli_env)

    assert result.exit_code == 0, result.stdout
    assert "Current node name [pve1]" in result.stdout
    assert host_state.hostname == "pve2"


def test_rename_interactive_confirmation(
    cli_env: dict[str, str], host_state: HostState
) -> None:
    """Typing CONFIRM and accepting the defaults completes the rename."""
    result = runner.invoke(
        app, ["rename", "pve1", "pve2"], input="CONFIRM\n\n\n", env=cli_env
    )

    assert result.exit_code == 0, result.stdout
    assert "Type CONFIRM to proceed" in result.stdout
    assert "Stop the running guests and continue?" in result.stdout
    assert host_state.hostname == "pve2"


def test_rename_cancelled_at_confirmation(
    cli_env: dict[str, str],
    pve_tree: PveTree,
    host_state: HostState,
    tmp_path: Path,
) -> None:
    """Anything other than CONFIRM cancels without touching the host."""
    result = runner.invoke(app, ["rename", "pve1", "pve2"], input="nope\n", env=cli_env)

    assert result.exit_code == 0
    assert "Rename cancelled." in result.stdout
    assert host_state.hostname == "pve1"
    assert (pve_tree.nodes_dir / "pve1").is_dir()
    assert not (tmp_path / "backups").exists()

    record = _last_operation(tmp_path)
    result_block = record["result"]
    assert isinstance(result_block, dict)
    assert result_block["status"] == "warning"
    assert result_block["warnings"] == ["user-cancelled"]


def test_rename_guest_prompt_declined(
    cli_env: dict[str, str], host_state: HostState
) -> None:
    """Declining the guest shutdown aborts cleanly."""
    result = runner.invoke(app, ["rename", "pve1", "pve2"], input="CONFIRM\nn\n", env=cli_env)

    assert result.exit_code == 0
    assert "running guests must be stopped" in result.stdout
    assert host_state.hostname == "pve1"


def test_rename_hostname_mismatch_declined(
    cli_env: dict[str, str], pve_tree: PveTree, host_state: HostState
) -> None:
    """A node name that is not the running hostname needs an explicit go-ahead."""
    host_state.hostname = "pve9"

    result = runner.invoke(app, ["rename", "pve1", "pve2"], input="\n", env=cli_env)

    assert result.exit_code == 0
    assert "differs from the current hostname" in result.stdout
    assert "Continue anyway?" in result.stdout
    assert "Rename cancelled." in result.stdout
    assert "Type CONFIRM to proceed" not in result.stdout
    assert host_state.hostname == "pve9"
    assert (pve_tree.nodes_dir / "pve1").is_dir()


def test_rename_hostname_mismatch_accepted(
    cli_env: dict[str, str], host_state: HostState
) -> None:
    """Answering yes to the mismatch prompt continues to the usual confirmation."""
    host_state.hostname = "pve9"

    result = runner.invoke(
        app, ["rename", "pve1", "pve2"], input="y\nCONFIRM\n\n\n", env=cli_env
    )

    assert result.exit_code == 0, result.stdout
    assert "Continue anyway?" in result.stdout
    assert host_state.hostname == "pve2"


def test_rename_clustered_node_requires_typed_yes(
    cli_env: dict[str, str], tmp_path: Path, host_state: HostState
) -> None:
    """A clustered node is only renamed after the operator types yes."""
    tree = build_pve_tree(tmp_path / "cluster", clustered=True)
    host_state.pvecm_ok = True
    env = _prepare_environment(tmp_path, tree)

    result = runner.invoke(app, ["rename", "pve1", "pve2"], input="y\n", env=env)

    assert result.exit_code == 0
    assert "part of a Proxmox cluster" in result.stdout
    assert "Type 'yes' to rename a clustered node" in result.stdout
    assert "Rename cancelled." in result.stdout
    assert host_state.hostname == "pve1"
    assert (tree.nodes_dir / "pve1").is_dir()

    record = _last_operation(tmp_path)
    result_block = record["result"]
    assert isinstance(result_block, dict)
    assert result_block["warnings"] == ["user-cancelled"]


def test_rename_clustered_node_confirmed(
    cli_env: dict[str, str], tmp_path: Path, host_state: HostState
) -> None:
    """Typing yes and CONFIRM renames a clustered node."""
    tree = build_pve_tree(tmp_path / "cluster", clustered=True)
    host_state.pvecm_ok = True
    env = _prepare_environment(tmp_path, tree)

    result = runner.invoke(
        app, ["rename", "pve1", "pve2"], input="yes\nCONFIRM\n\n\n", env=env
    )

    assert result.exit_code == 0, result.stdout
    assert host_state.hostname == "pve2"
    assert "name: pve2" in tree.corosync_conf.read_text(encoding="utf-8")


def test_rename_dry_run_changes_nothing(
    cli_env: dict[str, str], pve_tree: PveTree, host_state: HostState
) -> None:
    """``--dry-run`` prints the plan and stops."""
    result = runner.invoke(app, ["rename", "pve1", "pve2", "--dry-run"], env=cli_env)

    assert result.exit_code == 0, result.stdout
    assert "Rename plan" in result.stdout
    assert "Dry run" in result.stdout
    assert host_state.hostname == "pve1"
    assert not (pve_tree.nodes_dir / "pve2").exists()


def test_rename_rejects_reserved_name(cli_env: dict[str, str], tmp_path: Path) -> None:
    """Reserved hostnames exit with the validation code."""
    result = runner.invoke(app, ["rename", "pve1", "localhost", "--yes"], env=cli_env)

    assert result.exit_code == 2
    assert "reserved" in result.stdout
    record = _last_operation(tmp_path)
    result_block = record["result"]
    assert isinstance(result_block, dict)
    assert result_block["status"] == "error"
    assert result_block["errors"] == ["reserved"]


def test_rename_requires_root(cli_env: dict[str, str], host_state: HostState) -> None:
    """Missing privileges exit with the environment code."""
    host_state.root = False

    result = runner.invoke(app, ["rename", "pve1", "pve2", "--yes"], env=cli_env)

    assert result.exit_code == 3


def test_rename_rejects_bad_cluster_mode(cli_env: dict[str, str]) -> None:
    """Unknown ``--cluster-mode`` values are configuration errors."""
    result = runner.invoke(
        app, ["rename", "pve1", "pve2", "--yes", "--cluster-mode", "sometimes"], env=cli_env
    )

    assert result.exit_code == 2
    assert "Configuration error" in result.stdout


def test_rename_failure_reports_rollback(
    cli_env: dict[str, str],
    host_state: HostState,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failed step rolls back and exits with code 1."""

    def broken_move(self: MigrationSteps, context: RenameContext) -> None:
        raise MigrationStepError("node_dir", "simulated move failure")

    monkeypatch.setattr(MigrationSteps, "migrate_node_dir", broken_move)

    result = runner.invoke(app, ["rename", "pve1", "pve2", "--yes"], env=cli_env)

    assert result.exit_code == 1
    assert "Rename failed at step 'node_dir'" in result.stdout
    assert "System rolled back to 'pve1'." in result.stdout
    assert host_state.hostname == "pve1"

    record = _last_operation(tmp_path)
    result_block = record["result"]
    assert isinstance(result_block, dict)
    assert result_block["status"] == "error"
    assert result_block["rc"] == 1
    context = result_block["context"]
    assert isinstance(context, dict)
    assert context["failed_step"] == "node_dir"
    assert context["rollback_errors"] == []


def test_rename_discard_snapshot(cli_env: dict[str, str], tmp_path: Path) -> None:
    """``--discard-snapshot`` removes the snapshot after a successful rename."""
    result = runner.invoke(
        app, ["rename", "pve1", "pve2", "--yes", "--discard-snapshot"], env=cli_env
    )

    assert result.exit_code == 0, result.stdout
    listing = runner.invoke(app, ["snapshots", "list", "--json"], env=cli_env)
    entries = _extract_json(listing.stdout)["snapshots"]
    assert isinstance(entries, list)
    assert [entry["status"] for entry in entries] == ["discarded"]
    assert not Path(str(entries[0]["path"])).exists()


def test_check_reports_standalone(cli_env: dict[str, str], host_state: HostState) -> None:
    """``check`` runs the pre-flight checks only."""
    result = runner.invoke(app, ["check", "pve1", "pve2"], env=cli_env)

    assert result.exit_code == 0, result.stdout
    assert "standalone" in result.stdout
    assert "1 VM(s), 0 CT(s)" in result.stdout
    assert host_state.hostname == "pve1"


def test_check_rejects_identical_names(cli_env: dict[str, str]) -> None:
    """Renaming a node to itself is a validation error."""
    result = runner.invoke(app, ["check", "pve1", "pve1"], env=cli_env)

    assert result.exit_code == 2


def test_snapshots_list_empty(cli_env: dict[str, str]) -> None:
    """An empty index lists no snapshots."""
    result = runner.invoke(app, ["snapshots", "list", "--json"], env=cli_env)

    assert result.exit_code == 0
    assert _extract_json(result.stdout) == {"snapshots": []}

    table = runner.invoke(app, ["snapshots", "list"], env=cli_env)
    assert table.exit_code == 0
    assert "(none)" in table.stdout


def test_snapshots_list_and_show_after_rename(cli_env: dict[str, str]) -> None:
    """A committed rename leaves a retained snapshot that can be inspected."""
    renamed = runner.invoke(app, ["rename", "pve1", "pve2", "--yes"], env=cli_env)
    assert renamed.exit_code == 0, renamed.stdout

    listing = runner.invoke(app, ["snapshots", "list", "--json"], env=cli_env)
    assert listing.exit_code == 0
    entries = _extract_json(listing.stdout)["snapshots"]
    assert isinstance(entries, list) and len(entries) == 1
    entry = entries[0]
    assert entry["status"] == "retained"
    assert entry["old"] == "pve1"
    assert entry["new"] == "pve2"
    snapshot_id = str(entry["id"])
    assert snapshot_id.startswith("pve_rollback_backup_")

    shown = runner.invoke(app, ["snapshots", "show", snapshot_id, "--json"], env=cli_env)
    assert shown.exit_code == 0, shown.stdout
    payload = _extract_json(shown.stdout)
    manifest = payload["manifest"]
    assert isinstance(manifest, dict)
    names = [item["name"] for item in manifest["items"]]
    assert "nodes" in names
    assert "hosts" in names

    table = runner.invoke(app, ["snapshots", "show", snapshot_id], env=cli_env)
    assert table.exit_code == 0
    assert "Items" in table.stdout


def test_snapshots_show_unknown_id(cli_env: dict[str, str]) -> None:
    """Unknown snapshot identifiers exit with code 2."""
    result = runner.invoke(app, ["snapshots", "show", "missing"], env=cli_env)

    assert result.exit_code == 2
    assert "Snapshot 'missing' not found." in result.stdout
