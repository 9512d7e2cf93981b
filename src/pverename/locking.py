"""Advisory file locks guarding destructive operations.

Only one rename may run per host. The global lock lives at
``<runtime_dir>/pverename.lock``; per-node locks (``<runtime_dir>/nodes/<name>.lock``)
are taken after it, in sorted order, so two invocations can never interleave
filesystem operations on the same node-scope tree.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import AbstractContextManager, ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "pverename.lock"
POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """A held lock and the time spent waiting for it."""

    path: Path
    wait_ms: int
    fd: int


@dataclass(slots=True)
class LockBundle:
    """A set of held locks acquired together."""

    handles: list[LockHandle] = field(default_factory=list)

    @property
    def wait_ms(self) -> int:
        """Return the cumulative wait across all locks."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire the global and per-node rename locks."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 5.0) -> None:
        """Initialise the manager rooted at *runtime_dir*."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout

    def global_lock(
        self, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Hold the host-wide rename lock."""
        return self._lock(self.runtime_dir / GLOBAL_LOCK_NAME, timeout)

    def node_lock(
        self, node: str, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Hold the lock for a single node identifier.

        Names that could escape ``<runtime_dir>/nodes`` are rejected with
        :class:`ValueError`.
        """
        if not node or "/" in node or "\0" in node or node in (".", ".."):
            raise ValueError(f"Invalid node name for a lock file: {node!r}")
        return self._lock(self.runtime_dir / "nodes" / f"{node}.lock", timeout)

    @contextmanager
    def rename_lock(
        self,
        nodes: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by per-node locks for *nodes*."""
        bundle = LockBundle()
        with ExitStack() as stack:
            bundle.handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for node in sorted(set(nodes)):
                bundle.handles.append(stack.enter_context(self.node_lock(node, timeout=timeout)))
            yield bundle

    @contextmanager
    def _lock(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        budget = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        start = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= budget:
                        raise LockTimeoutError(
                            f"Timed out after {budget:.1f}s waiting for lock {path}; "
                            "another rename appears to be running."
                        ) from None
                    time.sleep(POLL_INTERVAL)
            wait_ms = int((time.monotonic() - start) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms, fd=fd)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
    }
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.pwrite(fd, data, 0)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
