"""
Retry executor — bounded retries with exponential backoff + jitter.

Only ``TransientError`` consumes retry budget.  ``PermanentError`` and
every other exception propagate on the first occurrence.

    delay_n = min(base_delay × 2^(n-1), max_delay) + uniform(0, delay_n × jitter)

Waits are interruptible: a set cancel event aborts the wait with
``FetchCancelled``, and a shared ``Deadline`` turns a wait that would
overrun it into ``NetworkExhausted(reason="deadline")``.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from src.core.models.config import RetrySettings
from src.core.services.fetch.errors import FetchCancelled, NetworkExhausted, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently to retry."""

    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.1

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            jitter=settings.jitter,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retrying after failed attempt ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


class Deadline:
    """An absolute time budget shared by all calls for one artifact."""

    def __init__(self, seconds: float | None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.seconds = seconds
        self._expires_at = None if seconds is None else clock() + seconds

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0


class RetryExecutor:
    """Run an operation until it succeeds, fails permanently, or runs out.

    Args:
        policy: Attempt budget and backoff.
        cancel: Optional event; once set, the next wait (or attempt) aborts.
        deadline: Optional budget shared across executors.
        sleep: Wait function used when no cancel event is given.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        cancel: threading.Event | None = None,
        deadline: Deadline | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self.cancel = cancel
        self.deadline = deadline
        self._sleep = sleep

    def execute(
        self,
        operation: Callable[[], T],
        *,
        description: str = "operation",
        on_failure: Callable[[int, TransientError], None] | None = None,
    ) -> T:
        """Run ``operation``; return its result.

        Raises:
            NetworkExhausted: Attempts or deadline ran out on transient errors.
            FetchCancelled: The cancel event was set.
        """
        policy = self.policy
        last_error: TransientError | None = None

        for attempt in range(1, policy.max_attempts + 1):
            self._check_cancelled(description)
            if self.deadline is not None and self.deadline.expired:
                raise self._deadline_exhausted(description, attempt - 1, last_error)

            try:
                result = operation()
            except TransientError as exc:
                last_error = exc
                if on_failure is not None:
                    on_failure(attempt, exc)

                if attempt >= policy.max_attempts:
                    logger.error(
                        "✗ %s failed after %d attempts: %s", description, attempt, exc
                    )
                    break

                delay = self._next_delay(attempt, exc)
                remaining = self.deadline.remaining() if self.deadline else None
                if remaining is not None and delay > remaining:
                    raise self._deadline_exhausted(description, attempt, exc)

                logger.warning(
                    "⚠ %s: attempt %d/%d failed (%s); retrying in %.1fs",
                    description,
                    attempt,
                    policy.max_attempts,
                    exc,
                    delay,
                )
                self._wait(delay, description)
                continue

            if attempt > 1:
                logger.info("✓ %s succeeded on attempt %d", description, attempt)
            return result

        raise NetworkExhausted(
            f"{description} failed after {policy.max_attempts} attempts",
            attempts=policy.max_attempts,
            last_error=last_error,
            hint="Check network connectivity or raise RETRY_MAX_ATTEMPTS.",
        )

    # ── Internals ────────────────────────────────────────────────

    def _next_delay(self, attempt: int, exc: TransientError) -> float:
        delay = self.policy.delay_for(attempt)
        if exc.retry_after is not None:
            delay = max(delay, min(exc.retry_after, self.policy.max_delay))
        if self.policy.jitter and delay:
            delay += random.uniform(0, delay * self.policy.jitter)
        return delay

    def _wait(self, delay: float, description: str) -> None:
        if delay <= 0:
            return
        if self.cancel is not None:
            if self.cancel.wait(delay):
                raise FetchCancelled(f"{description} cancelled during retry wait")
            return
        self._sleep(delay)

    def _check_cancelled(self, description: str) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise FetchCancelled(f"{description} cancelled")

    def _deadline_exhausted(
        self,
        description: str,
        attempts: int,
        last_error: BaseException | None,
    ) -> NetworkExhausted:
        seconds = self.deadline.seconds if self.deadline else None
        return NetworkExhausted(
            f"{description} exceeded its {seconds}s deadline",
            attempts=attempts,
            last_error=last_error,
            reason="deadline",
            hint="Raise settings.deadline or check the mirror's availability.",
        )


def execute(
    operation: Callable[[], T],
    max_attempts: int = 3,
    base_delay: float = 2.0,
    *,
    max_delay: float = 30.0,
    description: str = "operation",
    cancel: threading.Event | None = None,
    deadline: Deadline | None = None,
) -> T:
    """Convenience wrapper: ``execute(op, max_attempts, base_delay)``."""
    policy = RetryPolicy(max_attempts=max_attempts, base_delay=base_delay, max_delay=max_delay)
    executor = RetryExecutor(policy, cancel=cancel, deadline=deadline)
    return executor.execute(operation, description=description)
