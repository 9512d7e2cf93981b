"""Bounded polling and retry helpers.

Every wait against external state (a service reaching ``inactive``, the
cluster filesystem appearing, a process exiting) goes through
:func:`wait_until`, which polls at a fixed interval against a decrementing
budget. :func:`retry` wraps an action with a fixed number of attempts, an
optional cleanup between attempts and a growing delay.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

Sleeper = Callable[[float], None]
Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Attempt count, base delay and backoff factor for :func:`retry`."""

    attempts: int = 3
    interval: float = 5.0
    backoff: float = 1.0

    def delay_for(self, attempt: int) -> float:
        """Return the delay to apply before *attempt* (1-based)."""
        if attempt <= 1:
            return 0.0
        return self.interval * (self.backoff ** (attempt - 2))


class RetryExhaustedError(RuntimeError):
    """Raised when every attempt of :func:`retry` failed."""

    def __init__(self, message: str, *, attempts: int, last_error: Exception | None) -> None:
        """Record the number of attempts and the final error."""
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def wait_until(
    predicate: Callable[[], bool],
    *,
    timeout: float,
    interval: float = 1.0,
    sleep: Sleeper = time.sleep,
    clock: Clock = time.monotonic,
) -> bool:
    """Poll *predicate* until it returns ``True`` or *timeout* seconds elapse.

    The predicate is evaluated at least once, even with a zero timeout.
    Returns ``True`` when the predicate succeeded within the budget.
    """
    deadline = clock() + max(timeout, 0)
    while True:
        if predicate():
            return True
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        sleep(min(interval, remaining))


def retry(
    action: Callable[[int], T | None],
    *,
    policy: RetryPolicy,
    description: str,
    cleanup: Callable[[int], None] | None = None,
    sleep: Sleeper = time.sleep,
) -> T:
    """Run *action* until it returns a non-``None`` value.

    *action* receives the 1-based attempt number and signals failure by
    returning ``None`` or raising. Before every attempt after the first,
    *cleanup* runs (its errors are logged, not raised) and the policy delay is
    applied.
    """
    last_error: Exception | None = None
    for attempt in range(1, policy.attempts + 1):
        if attempt > 1:
            if cleanup is not None:
                try:
                    cleanup(attempt)
                except Exception as exc:  # noqa: BLE001 - cleanup is best effort
                    LOGGER.warning(
                        "Cleanup before %s attempt %d failed: %s", description, attempt, exc
                    )
            delay = policy.delay_for(attempt)
            if delay > 0:
                LOGGER.info("Waiting %.0f seconds before retrying %s...", delay, description)
                sleep(delay)
        LOGGER.info("%s attempt %d of %d", description, attempt, policy.attempts)
        try:
            result = action(attempt)
        except Exception as exc:  # noqa: BLE001 - recorded and retried
            last_error = exc
            LOGGER.warning("%s attempt %d failed: %s", description, attempt, exc)
            continue
        if result is not None:
            return result
        LOGGER.warning("%s attempt %d failed", description, attempt)
    raise RetryExhaustedError(
        f"{description} failed after {policy.attempts} attempts",
        attempts=policy.attempts,
        last_error=last_error,
    )


__all__ = ["RetryExhaustedError", "RetryPolicy", "retry", "wait_until"]
