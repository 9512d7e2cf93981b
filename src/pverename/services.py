"""Stop and start the PVE service stack around a rename.

Services stop in reverse dependency order (``pvestatd``, ``pvedaemon``,
``pveproxy``, ``pve-cluster``) and start in forward order with the cluster
filesystem first. Every wait is a bounded poll; timeouts escalate to a kill
(stopping) or a restart (starting) and are collected in a
:class:`ServiceReport` rather than raised, leaving the caller to decide
whether a failure is fatal.
"""
from __future__ import annotations

import logging
import os
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .cluster import CLUSTER_PROCESS, CLUSTER_SERVICE
from .config import ClusterConfig, PathsConfig, TimeoutsConfig
from .providers import HostCommandError, HostSystem, ServiceManager, SystemdError
from .retry import Clock, RetryExhaustedError, RetryPolicy, Sleeper, retry, wait_until

LOGGER = logging.getLogger(__name__)

STOP_ORDER = ("pvestatd", "pvedaemon", "pveproxy", CLUSTER_SERVICE)
START_ORDER = ("pveproxy", "pvedaemon", "pvestatd")
MANAGED_SERVICES = STOP_ORDER

PROCESS_TERM_WAIT = 10
PROCESS_KILL_WAIT = 2
SERVICE_START_WAIT = 30
SERVICE_RESTART_WAIT = 15
CLUSTER_START_ATTEMPTS = 3
UNMOUNT_STRATEGIES = ("normal", "force", "lazy")


class ServiceError(RuntimeError):
    """Raised when services cannot be brought into the required state."""

    def __init__(self, message: str, *, failed: list[str] | None = None) -> None:
        """Record the services that failed."""
        super().__init__(message)
        self.failed = list(failed or [])


@dataclass(slots=True)
class ServiceReport:
    """Outcome of a bulk stop or start."""

    action: str
    failed: list[str] = field(default_factory=list)
    details: list[str] = field(default_factory=list)
    filesystem_ok: bool = True

    @property
    def ok(self) -> bool:
        """Return ``True`` when nothing failed."""
        return not self.failed and self.filesystem_ok

    def record(self, unit: str, detail: str) -> None:
        """Record a failure of *unit*."""
        if unit not in self.failed:
            self.failed.append(unit)
        self.details.append(detail)
        LOGGER.warning(detail)


class ServiceLifecycleController:
    """Drive the PVE services through a :class:`ServiceManager`."""

    def __init__(
        self,
        services: ServiceManager,
        host: HostSystem,
        paths: PathsConfig,
        timeouts: TimeoutsConfig,
        cluster: ClusterConfig,
        *,
        poll_interval: float = 1.0,
        sleep: Sleeper = time.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        """Initialise the controller."""
        self.services = services
        self.host = host
        self.paths = paths
        self.timeouts = timeouts
        self.cluster = cluster
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    def _wait(self, predicate: Callable[[], bool], timeout: float) -> bool:
        return wait_until(
            predicate,
            timeout=timeout,
            interval=self.poll_interval,
            sleep=self._sleep,
            clock=self._clock,
        )

    # Stopping -----------------------------------------------------------
    def stop_all(self) -> ServiceReport:
        """Stop every managed service, then the cluster filesystem."""
        report = ServiceReport("stop")
        for unit in STOP_ORDER:
            self._stop_unit(unit, report)
        try:
            self.stop_cluster_filesystem()
        except ServiceError as exc:
            report.filesystem_ok = False
            report.record(CLUSTER_PROCESS, str(exc))
        return report

    def _stop_unit(self, unit: str, report: ServiceReport) -> None:
        if not self.services.is_active(unit):
            LOGGER.info("Service %s is not active", unit)
            return
        LOGGER.info("Stopping %s...", unit)
        try:
            self.services.stop(unit)
        except SystemdError as exc:
            report.record(unit, f"Stop command for {unit} failed: {exc}")
        timeout = self.timeouts.service_stop
        if self._wait(lambda: not self.services.is_active(unit), timeout):
            LOGGER.info("Service %s stopped", unit)
            return
        try:
            self.services.kill(unit)
        except SystemdError as exc:
            LOGGER.debug("Kill of %s failed: %s", unit, exc)
        report.record(unit, f"Service {unit} did not stop within {timeout}s; killed")

    def stop_cluster_filesystem(self) -> None:
        """Terminate ``pmxcfs`` and unmount the cluster filesystem.

        Raises :class:`ServiceError` when the mount point survives every
        unmount strategy.
        """
        host = self.host

        def _exited() -> bool:
            return not host.process_running(CLUSTER_PROCESS)

        if not _exited():
            LOGGER.info("Terminating %s...", CLUSTER_PROCESS)
            self._signal(CLUSTER_PROCESS, "TERM")
            if not self._wait(_exited, PROCESS_TERM_WAIT):
                LOGGER.warning("%s ignored SIGTERM; sending SIGKILL", CLUSTER_PROCESS)
                self._signal(CLUSTER_PROCESS, "KILL")
                self._wait(_exited, PROCESS_KILL_WAIT)

        mount = self.paths.pve_mount
        if not host.is_mountpoint(mount):
            return
        for strategy in UNMOUNT_STRATEGIES:
            LOGGER.info("Unmounting %s (%s)", mount, strategy)
            try:
                host.unmount(mount, strategy)
            except HostCommandError as exc:
                LOGGER.warning("Unmount (%s) failed: %s", strategy, exc)
            if not host.is_mountpoint(mount):
                return
        raise ServiceError(
            f"{mount} is still mounted after all unmount attempts.", failed=[CLUSTER_PROCESS]
        )

    def _signal(self, name: str, signal: str) -> None:
        try:
            self.host.signal_process(name, signal)
        except HostCommandError as exc:
            LOGGER.warning("Signalling %s with %s failed: %s", name, signal, exc)

    # Starting -----------------------------------------------------------
    def start_cluster_filesystem(self) -> None:
        """Start ``pve-cluster`` with up to three attempts.

        Attempts after the first run a cleanup: the service is stopped, the
        filesystem torn down and (when configured) the local cluster database
        cleared.
        """
        policy = RetryPolicy(
            attempts=CLUSTER_START_ATTEMPTS,
            interval=float(self.timeouts.cluster_retry_wait),
        )

        def _attempt(_attempt: int) -> bool | None:
            try:
                self.services.start(CLUSTER_SERVICE)
            except SystemdError as exc:
                LOGGER.warning("Starting %s failed: %s", CLUSTER_SERVICE, exc)
                return None
            active = self._wait(
                lambda: self.services.is_active(CLUSTER_SERVICE),
                self.timeouts.cluster_start,
            )
            return True if active else None

        try:
            retry(
                _attempt,
                policy=policy,
                description=f"Start of {CLUSTER_SERVICE}",
                cleanup=self._cleanup_cluster,
                sleep=self._sleep,
            )
        except RetryExhaustedError as exc:
            raise ServiceError(str(exc), failed=[CLUSTER_SERVICE]) from exc
        LOGGER.info("Service %s is active", CLUSTER_SERVICE)

    def _cleanup_cluster(self, _attempt: int) -> None:
        try:
            self.services.stop(CLUSTER_SERVICE)
        except SystemdError as exc:
            LOGGER.debug("Stop of %s during cleanup failed: %s", CLUSTER_SERVICE, exc)
        try:
            self.stop_cluster_filesystem()
        except ServiceError as exc:
            LOGGER.warning("Cluster filesystem cleanup incomplete: %s", exc)
        if self.cluster.reset_database_on_retry:
            clear_directory(self.paths.cluster_db_dir)

    def wait_for_cluster_filesystem(self) -> None:
        """Wait until the cluster mount point and its node tree are usable."""
        mount = self.paths.pve_mount
        nodes_dir = self.paths.nodes_dir

        def _ready() -> bool:
            return (
                self.host.is_mountpoint(mount)
                and nodes_dir.is_dir()
                and os.access(nodes_dir, os.R_OK)
            )

        if not self._wait(_ready, self.timeouts.mount):
            raise ServiceError(
                f"{mount} did not become available within {self.timeouts.mount}s.",
                failed=[CLUSTER_SERVICE],
            )
        LOGGER.info("Cluster filesystem mounted at %s", mount)

    def start_services(self, report: ServiceReport | None = None) -> ServiceReport:
        """Start the services that depend on the cluster filesystem."""
        report = report or ServiceReport("start")
        for unit in START_ORDER:
            self._start_unit(unit, report)
        return report

    def _start_unit(self, unit: str, report: ServiceReport) -> None:
        LOGGER.info("Starting %s...", unit)
        try:
            self.services.start(unit)
        except SystemdError as exc:
            LOGGER.warning("Start of %s failed: %s", unit, exc)
        if self._wait(lambda: self.services.is_active(unit), SERVICE_START_WAIT):
            return
        LOGGER.warning("Service %s not active; restarting", unit)
        try:
            self.services.restart(unit)
        except SystemdError as exc:
            LOGGER.warning("Restart of %s failed: %s", unit, exc)
        if self._wait(lambda: self.services.is_active(unit), SERVICE_RESTART_WAIT):
            return
        report.record(unit, f"Service {unit} failed to start")

    def start_all(self, *, strict: bool = True) -> ServiceReport:
        """Start the cluster filesystem and every dependent service.

        With *strict* a :class:`ServiceError` is raised when anything failed;
        otherwise failures are only collected in the report.
        """
        report = ServiceReport("start")
        try:
            self.start_cluster_filesystem()
            self.wait_for_cluster_filesystem()
        except ServiceError as exc:
            report.filesystem_ok = False
            report.record(CLUSTER_SERVICE, str(exc))
            if strict:
                raise
        self.start_services(report)
        if strict and not report.ok:
            raise ServiceError(
                f"Services failed to start: {', '.join(report.failed)}", failed=report.failed
            )
        return report

    def settle(self) -> ServiceReport:
        """Wait for the cluster to synchronise, then restart any service that died.

        Failures are only collected in the report; verification decides
        whether the rename stands.
        """
        report = ServiceReport("settle")
        LOGGER.info("Waiting %ss for cluster synchronisation...", self.timeouts.cluster_sync)
        self._sleep(self.timeouts.cluster_sync)
        inactive = self.inactive_services()
        if inactive:
            LOGGER.warning("Services need a restart: %s", ", ".join(inactive))
        for unit in (CLUSTER_SERVICE, *START_ORDER):
            if unit not in inactive:
                continue
            try:
                self.services.restart(unit)
            except SystemdError as exc:
                LOGGER.warning("Restart of %s failed: %s", unit, exc)
            active = self._wait(
                lambda unit=unit: self.services.is_active(unit), SERVICE_RESTART_WAIT
            )
            if not active:
                report.record(unit, f"Service {unit} is not running after a restart")
        return report

    def inactive_services(self) -> list[str]:
        """Return the managed services that are not active."""
        return [unit for unit in MANAGED_SERVICES if not self.services.is_active(unit)]


def clear_directory(path: os.PathLike[str] | str) -> None:
    """Remove every entry inside *path*, keeping the directory itself."""
    directory = os.fspath(path)
    if not os.path.isdir(directory):
        return
    LOGGER.warning("Clearing %s", directory)
    for entry in os.scandir(directory):
        try:
            if entry.is_dir(follow_symlinks=False):
                shutil.rmtree(entry.path)
            else:
                os.unlink(entry.path)
        except OSError as exc:
            LOGGER.warning("Could not remove %s: %s", entry.path, exc)


__all__ = [
    "MANAGED_SERVICES",
    "START_ORDER",
    "STOP_ORDER",
    "ServiceError",
    "ServiceLifecycleController",
    "ServiceReport",
    "clear_directory",
]
