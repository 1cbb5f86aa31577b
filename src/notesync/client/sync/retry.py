"""Retry policies and the retry controller.

This module provides:
- RetryPolicy: Delay schedule and attempt budget for one operation class
- FIBONACCI_POLICY: Sync push/pull (1s, 1s, 2s, 3s, 5s ... 55s)
- EXPONENTIAL_POLICY: Binary uploads (2s * 2^n, capped, with jitter)
- RetryController: Error classification gate + scheduling decision
- retry_with_policy: Blocking retry helper for uploads

Policies are pure: they compute delays, they never sleep. The orchestrator
turns a RETRY decision into a due time on the outbox entry; only
retry_with_policy actually waits.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, auto
from typing import TypeVar

from notesync.core.errors import DeadLetterError, NetworkError, SyncError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_DELAY_MS = 5 * 60 * 1000  # 5 minutes

FIBONACCI_DELAYS_MS: tuple[int, ...] = (
    1000,
    1000,
    2000,
    3000,
    5000,
    8000,
    13000,
    21000,
    34000,
    55000,
)

EXPONENTIAL_BASE_DELAY_MS = 2000
DEFAULT_MAX_RETRIES = 5

# Jitter bounds (±20%)
JITTER_MIN = 0.8
JITTER_MAX = 1.2


def is_retryable_status(status_code: int) -> bool:
    """Check if an HTTP status should be retried (5xx, 408, 429)."""
    return status_code >= 500 or status_code in (408, 429)


def exponential_backoff_delay(
    n: int,
    jitter: bool = False,
    rng: random.Random | None = None,
) -> int:
    """Compute ``min(2000 * 2^n, 300000)`` milliseconds.

    Args:
        n: Zero-based retry index.
        jitter: Apply a uniform factor in [0.8, 1.2].
        rng: Random source (for deterministic tests).

    Returns:
        Delay in milliseconds.
    """
    delay = min(EXPONENTIAL_BASE_DELAY_MS * (2**n), MAX_DELAY_MS)
    if jitter:
        factor = (rng or random).uniform(JITTER_MIN, JITTER_MAX)
        delay = int(delay * factor)
    return delay


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for one operation class.

    Shared read-only by every retry of that class.

    Attributes:
        name: Human-readable policy name (for logs).
        max_attempts: Number of retries allowed before dead-lettering.
        delay_schedule: Either explicit delays in milliseconds, or a
            function of the zero-based retry index.
        jitter_enabled: Randomize delays by ±20%.
        max_delay_ms: Upper bound applied to every delay.
    """

    name: str
    max_attempts: int
    delay_schedule: tuple[int, ...] | Callable[[int], int]
    jitter_enabled: bool = False
    max_delay_ms: int = MAX_DELAY_MS

    def base_delay(self, attempt: int) -> int | None:
        """Unjittered delay before retry number ``attempt`` (1-based).

        Returns:
            Delay in milliseconds, or None once the budget is exhausted.
        """
        if attempt < 1 or attempt > self.max_attempts:
            return None
        schedule = self.delay_schedule
        if callable(schedule):
            delay = schedule(attempt - 1)
        else:
            # Past the end of an explicit schedule, keep the last value
            delay = schedule[min(attempt - 1, len(schedule) - 1)]
        return min(delay, self.max_delay_ms)

    def get_retry_delay(
        self,
        attempt: int,
        rng: random.Random | None = None,
    ) -> int | None:
        """Delay before retry number ``attempt`` (1-based), jitter applied.

        Returns:
            Delay in milliseconds, or None meaning "no retry".
        """
        delay = self.base_delay(attempt)
        if delay is None:
            return None
        if self.jitter_enabled:
            factor = (rng or random).uniform(JITTER_MIN, JITTER_MAX)
            delay = int(delay * factor)
        return delay


FIBONACCI_POLICY = RetryPolicy(
    name="fibonacci",
    max_attempts=len(FIBONACCI_DELAYS_MS),
    delay_schedule=FIBONACCI_DELAYS_MS,
)

EXPONENTIAL_POLICY = RetryPolicy(
    name="exponential",
    max_attempts=DEFAULT_MAX_RETRIES,
    delay_schedule=exponential_backoff_delay,
    jitter_enabled=True,
)


class RetryAction(Enum):
    """Outcome of a retry decision."""

    RETRY = auto()  # Schedule another attempt
    DEAD_LETTER = auto()  # Budget exhausted
    FAIL = auto()  # Permanent error, no attempt consumed


@dataclass(frozen=True)
class RetryDecision:
    """What to do after a failed attempt."""

    action: RetryAction
    attempt: int
    delay_ms: int | None = None
    reason: str = ""

    @property
    def should_retry(self) -> bool:
        return self.action is RetryAction.RETRY


class RetryController:
    """Decides whether and when to retry a failed operation.

    Only NetworkError is retryable. Every other error fails immediately
    without consuming a retry slot.
    """

    def __init__(self, policy: RetryPolicy, rng: random.Random | None = None) -> None:
        self._policy = policy
        self._rng = rng

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @staticmethod
    def is_retryable(error: BaseException) -> bool:
        """Error classification gate."""
        return isinstance(error, NetworkError)

    def decide(self, attempt: int, error: BaseException) -> RetryDecision:
        """Decide what follows failed attempt number ``attempt`` (1-based).

        Args:
            attempt: Failed attempts so far, this one included.
            error: The failure.

        Returns:
            A RetryDecision.
        """
        if not self.is_retryable(error):
            return RetryDecision(
                action=RetryAction.FAIL,
                attempt=attempt,
                reason=f"{type(error).__name__}: {error}",
            )

        delay = self._policy.get_retry_delay(attempt, self._rng)
        if delay is None:
            return RetryDecision(
                action=RetryAction.DEAD_LETTER,
                attempt=attempt,
                reason=(
                    f"{self._policy.name} policy exhausted after "
                    f"{self._policy.max_attempts} retries: {error}"
                ),
            )

        return RetryDecision(
            action=RetryAction.RETRY,
            attempt=attempt,
            delay_ms=delay,
            reason=str(error),
        )


def retry_with_policy(
    func: Callable[[], T],
    controller: RetryController,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, int], None] | None = None,
) -> T:
    """Execute a function, retrying transient failures per policy.

    Args:
        func: Function to execute.
        controller: Retry controller holding the policy.
        sleep: Sleep function (seconds), injectable for tests.
        on_retry: Optional callback (attempt, delay_ms) before each wait.

    Returns:
        Result of the function.

    Raises:
        DeadLetterError: If the retry budget is exhausted.
        SyncError: Any non-retryable error, unchanged.
    """
    attempt = 0
    while True:
        try:
            return func()
        except SyncError as e:
            attempt += 1
            decision = controller.decide(attempt, e)

            if decision.action is RetryAction.FAIL:
                raise

            if decision.action is RetryAction.DEAD_LETTER:
                logger.error("All %d retries failed: %s", attempt - 1, e)
                raise DeadLetterError(decision.reason, attempts=attempt, last_error=e) from e

            delay_ms = decision.delay_ms or 0
            logger.warning(
                "Attempt %d failed: %s. Retrying in %.1fs...",
                attempt,
                e,
                delay_ms / 1000,
            )
            if on_retry:
                on_retry(attempt, delay_ms)
            sleep(delay_ms / 1000)
