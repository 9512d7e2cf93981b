"""Structured operation logging for pverename.

Every CLI operation appends one JSON record to ``operations.jsonl`` under the
configured logs directory. The record captures the invocation arguments, the
target, every step reported through :meth:`OperationScope.add_step` and the
final result. Logging must never break a rename: when the log directory is
unavailable or a write fails, the logger disables itself and carries on.

Human-readable progress goes through the standard :mod:`logging` module under
the ``pverename`` logger; :func:`attach_run_log` mirrors it into a plain text
file for the duration of a run.
"""
from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

ROOT_LOGGER_NAME = "pverename"
RUN_LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
RUN_LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collect steps and the final result for a single logged operation."""

    def __init__(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope for operation *name*."""
        self.name = name
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.started_at = _now_iso()
        self._start = time.perf_counter()
        self.steps: list[dict[str, object]] = []
        self.lock_wait_ms: int | None = None
        self.result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record a step outcome."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, value: int) -> None:
        """Record how long the operation waited for its lock."""
        self.lock_wait_ms = int(value)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, backups=backups, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=list(warnings or []),
            errors=list(errors or []),
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        error_list = list(errors) if errors else [message]
        self._set_result(
            "error",
            message,
            errors=error_list,
            rc=rc,
            backups=backups,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        changed: int | None = None,
        rc: int | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if warnings:
            result["warnings"] = warnings
        if errors:
            result["errors"] = errors
        if changed is not None:
            result["changed"] = changed
        if rc is not None:
            result["rc"] = rc
        if backups:
            result["backups"] = [str(item) for item in backups]
        if context:
            result["context"] = _sanitize(dict(context))
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON-serialisable record for this operation."""
        record: dict[str, object] = {
            "operation": self.name,
            "started_at": self.started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "pid": os.getpid(),
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "steps": self.steps,
            "result": self.result or {"status": "unknown"},
        }
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return record


class StructuredLogger:
    """Append operation records to ``operations.jsonl``."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling the logger when unavailable."""
        self.logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self.logs_dir / "operations.jsonl"
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(name, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}", errors=[repr(exc)])
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError:
            self._enabled = False


@contextmanager
def attach_run_log(path: Path, *, level: int = logging.DEBUG) -> Iterator[Path]:
    """Mirror ``pverename`` log records into *path* while the block runs."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(RUN_LOG_FORMAT, datefmt=RUN_LOG_DATEFMT))
    previous_level = logger.level
    logger.addHandler(handler)
    if logger.level == logging.NOTSET or logger.level > level:
        logger.setLevel(level)
    try:
        yield path
    finally:
        logger.removeHandler(handler)
        handler.close()
        logger.setLevel(previous_level)


__all__ = ["OperationScope", "StructuredLogger", "attach_run_log"]
