"""Drive a node rename from validation to commit or rollback.

The orchestrator owns the snapshot's lifecycle and the state machine::

    VALIDATED -> BACKED_UP -> GUESTS_STOPPED -> SERVICES_STOPPED
      -> HOSTNAME_CHANGED -> HOSTS_UPDATED -> RRD_MIGRATED -> CLUSTER_UPDATED
      -> NODE_DIR_MIGRATED -> SERVICES_STARTED -> VERIFIED -> COMMITTED

Any failure after ``BACKED_UP`` moves to ``ROLLING_BACK`` and then
``ROLLED_BACK``. Failures before the snapshot exists abort the run without
touching anything. Every transition is an explicit branch in :meth:`run`.
Before verification the services get a settling period for cluster
synchronisation, and any managed service that died in the meantime is restarted.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .cluster import ClusterState, detect_cluster
from .config import AppConfig
from .exit_codes import ExitCode
from .guests import (
    GuestLifecycleController,
    GuestResumeReport,
    GuestRunningSet,
    GuestStopReport,
)
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, attach_run_log
from .migration import MigrationSteps, RrdMigrationReport
from .providers import (
    GuestInventory,
    HostSystem,
    LinuxHost,
    ProxmoxGuestProvider,
    ServiceManager,
    SystemdProvider,
)
from .retry import Clock, Sleeper
from .rollback import RollbackCoordinator, RollbackReport
from .services import ServiceError, ServiceLifecycleController, ServiceReport
from .snapshot import (
    BackupError,
    Snapshot,
    SnapshotIndex,
    SnapshotIndexError,
    SnapshotManager,
)
from .validation import (
    ValidationError,
    check_preconditions,
    validate_identifier,
    validate_rename,
)
from .verification import VerificationError, VerificationReport, Verifier

LOGGER = logging.getLogger(__name__)

STATUS_COMMITTED = "committed"
STATUS_ROLLED_BACK = "rolled_back"
STATUS_ABORTED = "aborted"
STATUS_UNVERIFIED = "unverified"
STATUS_PLANNED = "planned"


class RenameState(str, Enum):
    """States of a rename run."""

    VALIDATED = "validated"
    BACKED_UP = "backed_up"
    GUESTS_STOPPED = "guests_stopped"
    SERVICES_STOPPED = "services_stopped"
    HOSTNAME_CHANGED = "hostname_changed"
    HOSTS_UPDATED = "hosts_updated"
    RRD_MIGRATED = "rrd_migrated"
    CLUSTER_UPDATED = "cluster_updated"
    NODE_DIR_MIGRATED = "node_dir_migrated"
    SERVICES_STARTED = "services_started"
    VERIFIED = "verified"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        """Return ``True`` for states a run ends in."""
        return self in (RenameState.COMMITTED, RenameState.ROLLED_BACK)


@dataclass(slots=True)
class RenameOptions:
    """Operator decisions handed to the orchestrator.

    ``confirm_guest_shutdown`` is asked when guests are running; returning
    ``False`` cancels the rename before anything changes.
    ``retain_snapshot`` is asked after a successful commit; returning
    ``False`` discards the snapshot. Without a callback the snapshot is kept.
    """

    on_verify_failure: str | None = None
    dry_run: bool = False
    confirm_guest_shutdown: Callable[[GuestRunningSet], bool] | None = None
    retain_snapshot: Callable[[Snapshot], bool] | None = None


@dataclass(slots=True)
class RenameContext:
    """Everything the steps of one rename share."""

    old: str
    new: str
    options: RenameOptions = field(default_factory=RenameOptions)
    cluster: ClusterState = field(default_factory=lambda: ClusterState(False))
    snapshot: Snapshot | None = None
    staging_dir: Path | None = None
    running: GuestRunningSet = field(default_factory=GuestRunningSet)
    state: RenameState | None = None
    history: list[RenameState] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    rrd_report: RrdMigrationReport | None = None

    def advance(self, state: RenameState) -> None:
        """Record a transition to *state*."""
        self.state = state
        self.history.append(state)
        LOGGER.info("State: %s", state.value)

    def warn(self, message: str) -> None:
        """Record a non-fatal problem."""
        self.warnings.append(message)
        LOGGER.warning(message)


@dataclass(slots=True)
class RenameOutcome:
    """Final disposition of a rename run."""

    status: str
    old: str
    new: str
    state: RenameState | None = None
    history: list[RenameState] = field(default_factory=list)
    cluster: ClusterState | None = None
    running: GuestRunningSet = field(default_factory=GuestRunningSet)
    snapshot: Snapshot | None = None
    snapshot_retained: bool = False
    guest_stop: GuestStopReport | None = None
    guest_resume: GuestResumeReport | None = None
    service_stop: ServiceReport | None = None
    verification: VerificationReport | None = None
    rollback: RollbackReport | None = None
    rrd: RrdMigrationReport | None = None
    warnings: list[str] = field(default_factory=list)
    follow_up: list[str] = field(default_factory=list)
    error: str | None = None
    failed_step: str | None = None
    exception: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when the rename committed."""
        return self.status == STATUS_COMMITTED

    @property
    def exit_code(self) -> ExitCode:
        """Translate the outcome into a process exit code."""
        if self.status in (STATUS_COMMITTED, STATUS_PLANNED):
            return ExitCode.OK
        if self.status == STATUS_ABORTED:
            if isinstance(self.exception, ValidationError):
                if self.exception.kind.is_environment:
                    return ExitCode.ENVIRONMENT
                return ExitCode.VALIDATION
            if self.exception is None:
                return ExitCode.OK
            return ExitCode.PROVIDER
        if self.rollback is not None and self.rollback.manual_intervention_required:
            return ExitCode.MANUAL_RECOVERY
        return ExitCode.ROLLED_BACK


StepAction = Callable[["RenameContext"], object]


class RenameOrchestrator:
    """Sequence validation, snapshot, migration, verification and rollback."""

    def __init__(
        self,
        config: AppConfig,
        *,
        services: ServiceManager,
        guests: GuestInventory,
        host: HostSystem,
        locks: LockManager | None = None,
        snapshots: SnapshotManager | None = None,
        poll_interval: float = 1.0,
        sleep: Sleeper = time.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        """Wire the controllers for *config* over the given adapters."""
        self.config = config
        self.service_manager = services
        self.host = host
        self.locks = locks or LockManager(config.runtime_dir, config.lock_timeout)
        self.snapshots = snapshots or SnapshotManager(
            config.backup_root, config.paths, index=SnapshotIndex(config.snapshot_index)
        )
        self.services = ServiceLifecycleController(
            services,
            host,
            config.paths,
            config.timeouts,
            config.cluster,
            poll_interval=poll_interval,
            sleep=sleep,
            clock=clock,
        )
        self.guests = GuestLifecycleController(guests, config.timeouts, sleep=sleep)
        self.steps = MigrationSteps(config.paths, host)
        self.verifier = Verifier(config.paths, host, services)
        self.rollback_coordinator = RollbackCoordinator(
            self.services, host, config.paths, self.snapshots
        )

    @classmethod
    def from_config(cls, config: AppConfig) -> RenameOrchestrator:
        """Build an orchestrator driving the real host tools."""
        return cls(
            config,
            services=SystemdProvider(systemctl_bin=config.systemd.systemctl_bin),
            guests=ProxmoxGuestProvider(
                qm_bin=config.guest_tools.qm_bin, pct_bin=config.guest_tools.pct_bin
            ),
            host=LinuxHost(),
        )

    # Pre-flight ------------------------------------------------------------
    def check(self, old: str, new: str) -> tuple[str, str, ClusterState]:
        """Run every pre-flight check without changing anything."""
        old_name, new_name = validate_rename(old, new, self.config.paths)
        check_preconditions(
            self.config.paths,
            self.host,
            backup_root=self.config.backup_root,
            min_free_bytes=self.config.min_free_bytes,
        )
        cluster = detect_cluster(
            self.config.paths, self.service_manager, self.host, self.config.cluster
        )
        return old_name, new_name, cluster

    # Run -------------------------------------------------------------------
    def run(
        self,
        old: str,
        new: str,
        options: RenameOptions | None = None,
        *,
        op: OperationScope | None = None,
    ) -> RenameOutcome:
        """Rename node *old* to *new* and return the disposition."""
        options = options or RenameOptions()
        try:
            old = validate_identifier(old, "Current node name", allow_reserved=True)
            new = validate_identifier(new, "New node name")
        except ValidationError as exc:
            _record(op, "validate", "error", str(exc))
            return RenameOutcome(
                STATUS_ABORTED, old, new, error=str(exc), failed_step="validate", exception=exc
            )
        try:
            with self.locks.rename_lock([old, new], timeout=self.config.lock_timeout) as bundle:
                if op is not None:
                    op.set_lock_wait_ms(bundle.wait_ms)
                return self._run_locked(old, new, options, op)
        except LockTimeoutError as exc:
            LOGGER.error("%s", exc)
            return RenameOutcome(
                STATUS_ABORTED, old, new, error=str(exc), failed_step="lock", exception=exc
            )

    def _run_locked(
        self,
        old: str,
        new: str,
        options: RenameOptions,
        op: OperationScope | None,
    ) -> RenameOutcome:
        try:
            old, new, cluster = self.check(old, new)
        except ValidationError as exc:
            _record(op, "validate", "error", str(exc))
            return RenameOutcome(
                STATUS_ABORTED, old, new, error=str(exc), failed_step="validate", exception=exc
            )
        context = RenameContext(old, new, options, cluster=cluster)
        context.advance(RenameState.VALIDATED)
        _record(op, "validate", "success", f"clustered={cluster.clustered}")
        context.running = self.guests.snapshot_running()

        if options.dry_run:
            _record(op, "plan", "info", "dry-run")
            return self._outcome(STATUS_PLANNED, context)

        if (
            context.running
            and options.confirm_guest_shutdown is not None
            and not options.confirm_guest_shutdown(context.running)
        ):
            _record(op, "guests.confirm", "skipped", "operator declined guest shutdown")
            outcome = self._outcome(STATUS_ABORTED, context)
            outcome.error = "Cancelled: running guests must be stopped to rename the node."
            return outcome

        try:
            snapshot = self.snapshots.create_snapshot(old, new)
        except BackupError as exc:
            _record(op, "snapshot", "error", str(exc))
            outcome = self._outcome(STATUS_ABORTED, context)
            outcome.error = str(exc)
            outcome.failed_step = "snapshot"
            outcome.exception = exc
            return outcome
        context.snapshot = snapshot
        context.advance(RenameState.BACKED_UP)
        _record(op, "snapshot", "success", str(snapshot.root))

        with attach_run_log(snapshot.run_log_path):
            outcome = self._migrate(context, op)
        self._finalise_snapshot(context, outcome)
        return outcome

    def _migrate(self, context: RenameContext, op: OperationScope | None) -> RenameOutcome:
        outcome = self._outcome(STATUS_COMMITTED, context)
        steps: list[tuple[RenameState, StepAction]] = [
            (RenameState.GUESTS_STOPPED, lambda ctx: self._stop_guests(ctx, outcome)),
            (RenameState.SERVICES_STOPPED, lambda ctx: self._stop_services(ctx, outcome)),
            (RenameState.HOSTNAME_CHANGED, self.steps.change_hostname),
            (RenameState.HOSTS_UPDATED, self._update_hosts),
            (RenameState.RRD_MIGRATED, self.steps.migrate_rrd),
            (RenameState.CLUSTER_UPDATED, self._update_cluster),
            (RenameState.NODE_DIR_MIGRATED, self.steps.migrate_node_dir),
            (RenameState.SERVICES_STARTED, lambda _ctx: self.services.start_all(strict=True)),
        ]
        for state, action in steps:
            try:
                action(context)
            except Exception as exc:  # noqa: BLE001 - every step failure triggers rollback
                _record(op, state.value, "error", str(exc))
                return self._roll_back(context, outcome, state, exc, op)
            context.advance(state)
            _record(op, state.value, "success")

        settle = self.services.settle()
        for detail in settle.details:
            context.warn(detail)
        _record(
            op, "settle", "success" if settle.ok else "warning", "; ".join(settle.details) or None
        )

        verification = self.verifier.verify(context.old, context.new)
        outcome.verification = verification
        if not verification.passed:
            error = VerificationError(verification.errors)
            _record(op, "verify", "error", "; ".join(verification.errors))
            policy = context.options.on_verify_failure or self.config.verification.on_failure
            if policy == "keep":
                context.warn(
                    "Verification failed but the renamed system was left running as "
                    "configured; the snapshot is retained for manual recovery."
                )
                self.steps.cleanup_staging(context)
                outcome.status = STATUS_UNVERIFIED
                outcome.error = str(error)
                outcome.failed_step = "verify"
                outcome.exception = error
                return self._sync(outcome, context)
            return self._roll_back(context, outcome, RenameState.VERIFIED, error, op)
        context.advance(RenameState.VERIFIED)
        _record(op, "verify", "success")

        snapshot = _require_snapshot(context)
        self.steps.cleanup_staging(context)
        outcome.guest_resume = self.guests.resume(snapshot)
        for guest in outcome.guest_resume.failed:
            context.warn(f"Guest {guest} did not start; start it manually")
        context.advance(RenameState.COMMITTED)
        _record(op, "commit", "success")
        if context.cluster.clustered:
            outcome.follow_up.extend(cluster_follow_up(context.old, context.new))
        return self._sync(outcome, context)

    # Steps -----------------------------------------------------------------
    def _stop_guests(self, context: RenameContext, outcome: RenameOutcome) -> None:
        snapshot = _require_snapshot(context)
        self.guests.persist(snapshot, context.running)
        report = self.guests.stop_all(context.running)
        outcome.guest_stop = report
        self.guests.persist(snapshot, GuestRunningSet(tuple(report.stopped)))
        for guest in report.failed:
            context.warn(f"Guest {guest} could not be stopped and was left running")

    def _stop_services(self, context: RenameContext, outcome: RenameOutcome) -> None:
        self.steps.stage_guest_configs(context)
        report = self.services.stop_all()
        outcome.service_stop = report
        if not report.filesystem_ok:
            raise ServiceError(
                "Cluster filesystem could not be stopped: " + "; ".join(report.details),
                failed=report.failed,
            )
        for detail in report.details:
            context.warn(detail)

    def _update_hosts(self, context: RenameContext) -> None:
        self.steps.update_hosts(context)
        self.steps.update_extra_files(context)

    def _update_cluster(self, context: RenameContext) -> None:
        self.services.start_cluster_filesystem()
        self.services.wait_for_cluster_filesystem()
        self.steps.update_cluster(context)

    # Failure and completion ------------------------------------------------
    def _roll_back(
        self,
        context: RenameContext,
        outcome: RenameOutcome,
        state: RenameState,
        exc: BaseException,
        op: OperationScope | None,
    ) -> RenameOutcome:
        step = getattr(exc, "step", None) or state.value
        LOGGER.error("Step %s failed: %s", step, exc)
        context.advance(RenameState.ROLLING_BACK)
        report = self.rollback_coordinator.rollback(context)
        context.advance(RenameState.ROLLED_BACK)
        _record(
            op,
            "rollback",
            "error" if report.errors else "success",
            "; ".join(report.errors) or None,
        )
        if not report.errors:
            self.steps.cleanup_staging(context)
        elif context.staging_dir is not None:
            context.warn(f"Staged guest configuration kept in {context.staging_dir}")
        snapshot = context.snapshot
        pending = len(self.guests.load(snapshot)) if snapshot is not None else 0
        if snapshot is not None and pending:
            context.warn(
                f"{pending} guest(s) stopped for the rename are listed in "
                f"{snapshot.stopped_guests_path}; start them manually"
            )
        outcome.status = STATUS_ROLLED_BACK
        outcome.rollback = report
        outcome.error = str(exc)
        outcome.failed_step = step
        outcome.exception = exc
        return self._sync(outcome, context)

    def _finalise_snapshot(self, context: RenameContext, outcome: RenameOutcome) -> None:
        snapshot = context.snapshot
        if snapshot is None:
            return
        if outcome.status != STATUS_COMMITTED:
            outcome.snapshot_retained = True
            if outcome.status == STATUS_UNVERIFIED:
                self._retain(context, snapshot, "verification failed")
                outcome.warnings = list(context.warnings)
            return
        keep = True
        callback = context.options.retain_snapshot
        if callback is not None:
            keep = callback(snapshot)
        if outcome.guest_resume is not None and outcome.guest_resume.failed:
            if not keep:
                context.warn("Snapshot kept: it lists guests that still need to be started")
            keep = True
        if keep:
            self._retain(context, snapshot, "operator")
        else:
            try:
                self.snapshots.discard(snapshot)
            except SnapshotIndexError as exc:
                context.warn(f"Snapshot removed but the index could not be updated: {exc}")
            except BackupError as exc:
                context.warn(str(exc))
                keep = True
        outcome.snapshot_retained = keep
        outcome.warnings = list(context.warnings)

    def _retain(self, context: RenameContext, snapshot: Snapshot, reason: str) -> None:
        try:
            self.snapshots.retain(snapshot, reason=reason)
        except SnapshotIndexError as exc:
            context.warn(
                f"Snapshot kept at {snapshot.root} but the index could not be updated: {exc}"
            )

    def _outcome(self, status: str, context: RenameContext) -> RenameOutcome:
        outcome = RenameOutcome(status, context.old, context.new)
        return self._sync(outcome, context)

    @staticmethod
    def _sync(outcome: RenameOutcome, context: RenameContext) -> RenameOutcome:
        outcome.state = context.state
        outcome.history = list(context.history)
        outcome.cluster = context.cluster
        outcome.running = context.running
        outcome.snapshot = context.snapshot
        outcome.rrd = context.rrd_report
        outcome.warnings = list(context.warnings)
        return outcome


def cluster_follow_up(old: str, new: str) -> list[str]:
    """Return the manual steps other cluster members need after a rename."""
    return [
        f"On every other cluster node, replace '{old}' with '{new}' in /etc/hosts.",
        "Check cluster health with 'pvecm status' on each node.",
        f"Remove the stale '/etc/pve/nodes/{old}' directory if it reappears.",
        "Restart pve-cluster and corosync on the other nodes if membership looks stale.",
    ]


def _require_snapshot(context: RenameContext) -> Snapshot:
    if context.snapshot is None:
        raise RuntimeError(
            f"No snapshot exists for the rename of {context.old}; refusing to continue."
        )
    return context.snapshot


def _record(op: OperationScope | None, name: str, status: str, detail: str | None = None) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


__all__ = [
    "RenameContext",
    "RenameOptions",
    "RenameOrchestrator",
    "RenameOutcome",
    "RenameState",
    "cluster_follow_up",
]
