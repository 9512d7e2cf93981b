"""Typer-powered command line interface for ``pverename``.

The CLI owns every interactive decision (which node to rename, a hostname
mismatch, the typed ``yes`` for clustered nodes, the typed ``CONFIRM``, guest
shutdown and snapshot retention) and hands the orchestrator two identifiers
plus callbacks; ``--yes`` answers all of them for non-interactive runs.
Progress from the library is rendered through Rich; every command appends a
structured record to the operations log.
"""
from __future__ import annotations

import json
import logging
import textwrap
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .guests import GuestRunningSet
from .locking import LockManager
from .logging import ROOT_LOGGER_NAME, OperationScope, StructuredLogger
from .orchestrator import (
    STATUS_ABORTED,
    STATUS_COMMITTED,
    STATUS_PLANNED,
    STATUS_ROLLED_BACK,
    STATUS_UNVERIFIED,
    RenameOptions,
    RenameOrchestrator,
    RenameOutcome,
)
from .providers import GuestKind
from .snapshot import Snapshot, SnapshotIndex, SnapshotIndexError
from .validation import ValidationError

console = Console()

CONFIRM_WORD = "CONFIRM"
CLUSTER_CONFIRM_WORD = "yes"

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to pverename's YAML config file.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Proxmox VE node rename tool.

        Renames a PVE node: hostname, hosts file, node directory, RRD history,
        storage and corosync configuration. A snapshot is taken first and the
        host is rolled back automatically when any step fails.
        """
    ).strip(),
)
snapshots_app = typer.Typer(help="Inspect rename snapshots.")
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(snapshots_app, name="snapshots")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    snapshots: SnapshotIndex


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        snapshots=SnapshotIndex(config.snapshot_index),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _build_orchestrator(runtime: RuntimeContext, config: AppConfig) -> RenameOrchestrator:
    """Return the orchestrator for *config* driving the real host tools."""
    orchestrator = RenameOrchestrator.from_config(config)
    orchestrator.locks = runtime.locks
    return orchestrator


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the pverename version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"pverename {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _validation_exit_code(exc: ValidationError) -> int:
    return int(ExitCode.ENVIRONMENT if exc.kind.is_environment else ExitCode.VALIDATION)


@contextmanager
def _console_logging(level: int = logging.INFO) -> Iterator[None]:
    """Render ``pverename`` log records on the console while the block runs."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    handler = RichHandler(console=console, show_path=False, markup=False)
    handler.setLevel(level)
    previous_level = logger.level
    logger.addHandler(handler)
    if logger.level == logging.NOTSET or logger.level > level:
        logger.setLevel(level)
    try:
        yield
    finally:
        logger.removeHandler(handler)
        logger.setLevel(previous_level)


# Rename ---------------------------------------------------------------------
def _node_directories(config: AppConfig) -> list[str]:
    nodes_dir = config.paths.nodes_dir
    if not nodes_dir.is_dir():
        return []
    return sorted(entry.name for entry in nodes_dir.iterdir() if entry.is_dir())


def _render_plan(old: str, new: str, orchestrator: RenameOrchestrator, clustered: bool) -> None:
    config = orchestrator.config
    table = Table(show_header=True, header_style="bold magenta", title="Rename plan")
    table.add_column("Item", style="bold")
    table.add_column("Change")
    table.add_row("Hostname", f"{old} -> {new}")
    table.add_row("Node directory", f"{config.paths.node_dir(old)} -> {config.paths.node_dir(new)}")
    table.add_row("Hosts file", str(config.paths.hosts_file))
    table.add_row("RRD data", f"{config.paths.rrd_base}/pve2-{{node,storage,vm}}/{old}")
    table.add_row("Storage config", str(config.paths.storage_cfg))
    table.add_row("Corosync config", "updated" if clustered else "unchanged (standalone)")
    table.add_row("Snapshot root", str(config.backup_root))
    console.print(table)


def _render_cluster_warning() -> None:
    console.print(
        textwrap.dedent(
            """
            [bold red]WARNING: this node appears to be part of a Proxmox cluster.[/bold red]
            Renaming a clustered node can cause temporary cluster communication
            issues and may require restarting other members. Make sure every node
            is healthy and have a recovery plan ready.
            """
        ).strip()
    )


def _cancelled(op: OperationScope) -> None:
    console.print("[yellow]Rename cancelled.[/yellow]")
    op.warning("Rename cancelled by operator.", warnings=["user-cancelled"])


def _render_outcome(outcome: RenameOutcome) -> None:
    if outcome.status == STATUS_PLANNED:
        console.print(
            f"[yellow]Dry run[/yellow]: '{outcome.old}' would be renamed to '{outcome.new}' "
            f"({len(outcome.running)} running guest(s) would be stopped)."
        )
        return
    if outcome.status == STATUS_COMMITTED:
        console.print(f"[green]Node renamed from '{outcome.old}' to '{outcome.new}'.[/green]")
    elif outcome.status == STATUS_UNVERIFIED:
        console.print(
            "[bold red]Rename finished but verification failed; the system was left "
            "as-is.[/bold red]"
        )
    elif outcome.status == STATUS_ROLLED_BACK:
        console.print(
            f"[red]Rename failed at step '{outcome.failed_step}': {outcome.error}[/red]"
        )
        rollback = outcome.rollback
        if rollback is not None and rollback.errors:
            console.print("[bold red]Rollback incomplete; manual intervention required:[/bold red]")
            for error in rollback.errors:
                console.print(f"  - {error}")
        else:
            console.print(f"[yellow]System rolled back to '{outcome.old}'.[/yellow]")
    elif outcome.status == STATUS_ABORTED:
        console.print(f"[red]{outcome.error}[/red]")

    if outcome.verification is not None and outcome.verification.errors:
        for error in outcome.verification.errors:
            console.print(f"  verification: {error}")
    for warning in outcome.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")
    if outcome.snapshot is not None:
        state = "retained" if outcome.snapshot_retained else "discarded"
        console.print(f"Snapshot {state}: {outcome.snapshot.root}")
    if outcome.follow_up:
        console.print("[bold]Follow-up on the other cluster nodes:[/bold]")
        for index, item in enumerate(outcome.follow_up, start=1):
            console.print(f"  {index}. {item}")


def _outcome_context(outcome: RenameOutcome) -> dict[str, object]:
    context: dict[str, object] = {
        "status": outcome.status,
        "state": outcome.state.value if outcome.state else None,
        "history": [state.value for state in outcome.history],
        "clustered": outcome.cluster.clustered if outcome.cluster else None,
        "guests": [str(guest) for guest in outcome.running],
        "snapshot": str(outcome.snapshot.root) if outcome.snapshot else None,
        "snapshot_retained": outcome.snapshot_retained,
    }
    if outcome.failed_step:
        context["failed_step"] = outcome.failed_step
    if outcome.rollback is not None:
        context["rollback_errors"] = list(outcome.rollback.errors)
    if outcome.verification is not None:
        context["verification_errors"] = list(outcome.verification.errors)
    return context


@app.command()
def rename(
    ctx: typer.Context,
    old: str | None = typer.Argument(None, help="Current node name."),
    new: str | None = typer.Argument(None, help="New node name."),
    yes: bool = typer.Option(
        False,
        "--yes",
        help="Skip confirmation prompts and proceed non-interactively.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Validate and show the plan without changing anything.",
    ),
    cluster_mode: str | None = typer.Option(
        None,
        "--cluster-mode",
        help="Cluster detection: auto, clustered or standalone.",
    ),
    service_timeout: int | None = typer.Option(
        None, "--service-timeout", help="Seconds to wait for each service to stop."
    ),
    cluster_timeout: int | None = typer.Option(
        None, "--cluster-timeout", help="Seconds to wait for pve-cluster to start."
    ),
    mount_timeout: int | None = typer.Option(
        None, "--mount-timeout", help="Seconds to wait for /etc/pve to mount."
    ),
    on_verify_failure: str | None = typer.Option(
        None,
        "--on-verify-failure",
        help="What to do when verification fails: rollback or keep.",
    ),
    keep_snapshot: bool | None = typer.Option(
        None,
        "--keep-snapshot/--discard-snapshot",
        help="Keep or discard the snapshot after a successful rename.",
    ),
) -> None:
    """Rename this Proxmox VE node."""
    runtime = _get_runtime(ctx)
    overrides: dict[str, object] = {}
    timeouts: dict[str, object] = {}
    if service_timeout is not None:
        timeouts["service_stop"] = service_timeout
    if cluster_timeout is not None:
        timeouts["cluster_start"] = cluster_timeout
    if mount_timeout is not None:
        timeouts["mount"] = mount_timeout
    if timeouts:
        overrides["timeouts"] = timeouts
    if cluster_mode is not None:
        overrides["cluster"] = {"detection": cluster_mode}
    if on_verify_failure is not None:
        overrides["verification"] = {"on_failure": on_verify_failure}

    with runtime.logger.operation(
        "rename",
        args={
            "old": old,
            "new": new,
            "dry_run": dry_run,
            "yes": yes,
            "cluster_mode": cluster_mode,
            "on_verify_failure": on_verify_failure,
        },
        target={"kind": "node", "old": old, "new": new},
    ) as op:
        config = runtime.config
        if overrides:
            try:
                config = load_config(
                    config_file=runtime.config.config_file,
                    overrides={"lock_timeout": runtime.config.lock_timeout, **overrides},
                )
            except ConfigError as exc:
                _command_error(op, f"Configuration error: {exc}", rc=int(ExitCode.VALIDATION))
        orchestrator = _build_orchestrator(runtime, config)

        nodes = _node_directories(config)
        if nodes:
            console.print(f"Node directories: {', '.join(nodes)}")
        current = orchestrator.host.get_hostname()
        if old is None:
            old = typer.prompt("Current node name", default=current)
        if new is None:
            new = typer.prompt("New node name")
        if old != current:
            console.print(
                f"[yellow]Warning:[/yellow] '{old}' differs from the current hostname "
                f"'{current}'."
            )
            if not yes and not dry_run and not typer.confirm("Continue anyway?", default=False):
                _cancelled(op)
                return

        try:
            old, new, cluster = orchestrator.check(old, new)
        except ValidationError as exc:
            _command_error(op, str(exc), rc=_validation_exit_code(exc), errors=[exc.kind.value])
        op.add_step("preflight", status="success", detail=f"clustered={cluster.clustered}")

        if cluster.clustered:
            _render_cluster_warning()
            if not yes and not dry_run:
                answer = typer.prompt(f"Type '{CLUSTER_CONFIRM_WORD}' to rename a clustered node")
                if answer.strip() != CLUSTER_CONFIRM_WORD:
                    _cancelled(op)
                    return
                op.add_step("cluster.confirm", status="success")
        _render_plan(old, new, orchestrator, cluster.clustered)

        if not dry_run and not yes:
            answer = typer.prompt(f"Type {CONFIRM_WORD} to proceed")
            if answer.strip() != CONFIRM_WORD:
                _cancelled(op)
                return

        def _confirm_guests(running: GuestRunningSet) -> bool:
            vms = running.count(GuestKind.VM)
            cts = running.count(GuestKind.CONTAINER)
            console.print(
                f"{vms} running VM(s) and {cts} running container(s) must be stopped; "
                "they are restarted after the rename."
            )
            if yes:
                return True
            return typer.confirm("Stop the running guests and continue?", default=True)

        def _retain(snapshot: Snapshot) -> bool:
            if keep_snapshot is not None:
                return keep_snapshot
            if yes:
                return True
            return typer.confirm(f"Keep the snapshot at {snapshot.root}?", default=True)

        options = RenameOptions(
            dry_run=dry_run,
            confirm_guest_shutdown=_confirm_guests,
            retain_snapshot=_retain,
        )
        with _console_logging():
            outcome = orchestrator.run(old, new, options, op=op)
        _render_outcome(outcome)

        context = _outcome_context(outcome)
        code = int(outcome.exit_code)
        backups = None
        if outcome.snapshot is not None and outcome.snapshot_retained:
            backups = [str(outcome.snapshot.root)]
        if outcome.status == STATUS_PLANNED:
            op.success("Rename dry-run complete.", changed=0, context=context)
        elif outcome.status == STATUS_COMMITTED:
            if outcome.warnings:
                op.warning(
                    "Node renamed with warnings.",
                    warnings=outcome.warnings,
                    changed=1,
                    backups=backups,
                    context=context,
                )
            else:
                op.success("Node renamed.", changed=1, backups=backups, context=context)
        elif outcome.status == STATUS_ABORTED and outcome.exception is None:
            op.warning("Rename cancelled.", warnings=["user-cancelled"], context=context)
        else:
            errors = [outcome.error] if outcome.error else []
            if outcome.rollback is not None:
                errors.extend(outcome.rollback.errors)
            op.error(
                f"Rename {outcome.status}.",
                errors=errors or None,
                rc=code,
                backups=backups,
                context=context,
            )
        if code:
            raise typer.Exit(code=code)


@app.command()
def check(
    ctx: typer.Context,
    old: str = typer.Argument(..., help="Current node name."),
    new: str = typer.Argument(..., help="New node name."),
) -> None:
    """Run the pre-flight checks for a rename without changing anything."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "check",
        args={"old": old, "new": new},
        target={"kind": "node", "old": old, "new": new},
    ) as op:
        orchestrator = _build_orchestrator(runtime, runtime.config)
        try:
            old, new, cluster = orchestrator.check(old, new)
        except ValidationError as exc:
            _command_error(op, str(exc), rc=_validation_exit_code(exc), errors=[exc.kind.value])
        running = orchestrator.guests.snapshot_running()
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Check", style="bold")
        table.add_column("Result")
        table.add_row("Identifiers", f"{old} -> {new}")
        table.add_row("Preconditions", "ok")
        signals = ", ".join(cluster.signals) or "none"
        table.add_row(
            "Cluster",
            f"{'clustered' if cluster.clustered else 'standalone'} "
            f"({cluster.source}; signals: {signals})",
        )
        table.add_row(
            "Running guests",
            f"{running.count(GuestKind.VM)} VM(s), {running.count(GuestKind.CONTAINER)} CT(s)",
        )
        console.print(table)
        op.success(
            "Pre-flight checks passed.",
            changed=0,
            context={"cluster": cluster.to_dict(), "guests": [str(g) for g in running]},
        )


# Snapshots ------------------------------------------------------------------
def _read_snapshot_entries(runtime: RuntimeContext, op: OperationScope) -> list[dict[str, object]]:
    try:
        return runtime.snapshots.list_entries()
    except SnapshotIndexError as exc:
        _command_error(op, f"Failed to read snapshot index: {exc}", errors=[str(exc)])


@snapshots_app.command("list")
def snapshots_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit snapshot details as JSON.",
    ),
) -> None:
    """List recorded rename snapshots."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshots list",
        args={"json": json_output},
        target={"kind": "snapshot", "scope": "index"},
    ) as op:
        entries = _read_snapshot_entries(runtime, op)
        entries.sort(key=lambda item: str(item.get("created_at", "")), reverse=True)

        if json_output:
            console.print_json(data={"snapshots": entries})
            op.success("Reported snapshot list (JSON).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Rename")
        table.add_column("Created At")
        table.add_column("Status")
        table.add_column("Path")

        if not entries:
            table.add_row("(none)", "", "", "", "")
        else:
            for entry in entries:
                table.add_row(
                    str(entry.get("id", "")),
                    f"{entry.get('old', '')} -> {entry.get('new', '')}",
                    str(entry.get("created_at", "")),
                    str(entry.get("status", "")),
                    str(entry.get("path", "")),
                )

        console.print(table)
        op.success("Reported snapshot list.", changed=0)


@snapshots_app.command("show")
def snapshots_show(
    ctx: typer.Context,
    snapshot_id: str = typer.Argument(..., help="Snapshot identifier to inspect."),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit snapshot details as JSON.",
    ),
) -> None:
    """Show the index entry and manifest of a snapshot."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "snapshots show",
        args={"id": snapshot_id, "json": json_output},
        target={"kind": "snapshot", "id": snapshot_id},
    ) as op:
        try:
            entry = runtime.snapshots.find_by_id(snapshot_id)
        except SnapshotIndexError as exc:
            _command_error(op, f"Failed to read snapshot index: {exc}", errors=[str(exc)])
        if entry is None:
            _command_error(op, f"Snapshot '{snapshot_id}' not found.")

        manifest: Mapping[str, object] | None = None
        manifest_path = Path(str(entry.get("path", ""))) / "manifest.json"
        if manifest_path.is_file():
            try:
                manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                console.print(f"[yellow]Could not read manifest: {exc}[/yellow]")
        payload = {"entry": entry, "manifest": manifest}

        if json_output:
            console.print_json(data=payload)
            op.success("Reported snapshot details (JSON).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Field", style="bold")
        table.add_column("Value")
        for key, value in entry.items():
            rendered = json.dumps(value) if isinstance(value, (list, dict)) else str(value)
            table.add_row(key, rendered)
        console.print(table)

        if manifest is not None:
            items = Table(show_header=True, header_style="bold magenta", title="Items")
            items.add_column("Name", style="bold")
            items.add_column("Source")
            items.add_column("Present")
            raw_items = manifest.get("items", [])
            if isinstance(raw_items, list):
                for item in raw_items:
                    if isinstance(item, Mapping):
                        items.add_row(
                            str(item.get("name", "")),
                            str(item.get("source", "")),
                            "yes" if item.get("present") else "no",
                        )
            console.print(items)
        op.success("Reported snapshot details.", changed=0)


# Config ---------------------------------------------------------------------
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
