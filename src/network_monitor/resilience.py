"""
Retry and circuit breaker helpers.

retry() re-runs an async operation on transient failures with exponential
backoff. CircuitBreaker is stateful and meant to be shared: the
orchestrator owns one instance per class of protected operation.

Circuit breaker states:
- CLOSED: normal operation, calls pass through
- OPEN: too many consecutive failures, calls rejected immediately
- HALF_OPEN: reset timeout elapsed, one trial call allowed

Transition rules:
- CLOSED -> OPEN: after failure_threshold consecutive failures
- OPEN -> HALF_OPEN: after reset_timeout seconds
- HALF_OPEN -> CLOSED: trial call succeeds
- HALF_OPEN -> OPEN: trial call fails
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from .exceptions import CircuitOpenError, InfrastructureError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(error: BaseException) -> bool:
    """Errors worth retrying: infrastructure failures flagged retryable."""
    return isinstance(error, InfrastructureError) and error.retryable


def compute_backoff(
    attempt: int,
    base_delay: float,
    max_delay: float,
    multiplier: float = 2.0,
) -> float:
    """Delay before retry number `attempt` (0-based), capped at max_delay."""
    return min(base_delay * (multiplier ** attempt), max_delay)


async def retry(
    op: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 0.5,
    backoff_multiplier: float = 2.0,
    max_delay: float = 30.0,
    retry_on: Callable[[BaseException], bool] = is_transient,
    description: str = "operation",
) -> T:
    """
    Run `op` until it succeeds or max_attempts is reached.

    Only errors accepted by `retry_on` are retried; anything else
    propagates immediately. The last transient error is re-raised once
    attempts are exhausted.
    """
    last_error: Optional[BaseException] = None

    for attempt in range(max_attempts):
        try:
            return await op()
        except Exception as e:
            if not retry_on(e):
                raise
            last_error = e
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{max_attempts}): {e}"
            )
            if attempt < max_attempts - 1:
                backoff = compute_backoff(attempt, base_delay, max_delay, backoff_multiplier)
                logger.debug(f"Backing off {backoff} seconds")
                await asyncio.sleep(backoff)

    assert last_error is not None
    raise last_error


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stateful circuit breaker shared by all callers of one operation class.

    Only failures accepted by `counts_as_failure` (transient infrastructure
    errors by default) move the breaker; domain errors such as NotFoundError
    pass through and count as a healthy round trip.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        counts_as_failure: Callable[[BaseException], bool] = lambda e: isinstance(
            e, InfrastructureError
        ),
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._counts_as_failure = counts_as_failure

        self._state = BreakerState.CLOSED
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self._trial_in_flight = False

        # Counters for health reporting
        self.total_calls = 0
        self.total_failures = 0
        self.total_rejections = 0

    @property
    def state(self) -> BreakerState:
        if self._state == BreakerState.OPEN and self._reset_elapsed():
            self._state = BreakerState.HALF_OPEN
            self._trial_in_flight = False
            logger.info(f"Circuit {self.name} half-open, allowing trial call")
        return self._state

    def _reset_elapsed(self) -> bool:
        return self.opened_at is not None and (
            self._clock() - self.opened_at >= self.reset_timeout
        )

    def _retry_after(self) -> float:
        if self.opened_at is None:
            return 0.0
        return max(0.0, self.reset_timeout - (self._clock() - self.opened_at))

    def is_open(self) -> bool:
        """True while calls are being rejected."""
        state = self.state
        if state == BreakerState.OPEN:
            return True
        return state == BreakerState.HALF_OPEN and self._trial_in_flight

    def record_success(self) -> None:
        if self._state == BreakerState.HALF_OPEN:
            logger.info(f"Circuit {self.name} closed after successful trial")
        self._state = BreakerState.CLOSED
        self.failure_count = 0
        self.opened_at = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self.total_failures += 1
        if self._state == BreakerState.HALF_OPEN:
            self._open()
            return

        self.failure_count += 1
        if self._state == BreakerState.CLOSED and self.failure_count >= self.failure_threshold:
            self._open()

    def _open(self) -> None:
        self._state = BreakerState.OPEN
        self.opened_at = self._clock()
        self._trial_in_flight = False
        logger.warning(
            f"Circuit {self.name} opened after {self.failure_count} consecutive failures"
        )

    async def call(self, op: Callable[[], Awaitable[T]]) -> T:
        """Run `op` through the breaker, raising CircuitOpenError while open."""
        if self.is_open():
            self.total_rejections += 1
            raise CircuitOpenError(
                f"Circuit {self.name} is open",
                retry_after=self._retry_after(),
                details={"circuit": self.name},
            )

        if self._state == BreakerState.HALF_OPEN:
            self._trial_in_flight = True

        self.total_calls += 1
        try:
            result = await op()
        except asyncio.CancelledError:
            self._trial_in_flight = False
            raise
        except Exception as e:
            if self._counts_as_failure(e):
                self.record_failure()
            else:
                self.record_success()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        """Manually close the circuit."""
        self._state = BreakerState.CLOSED
        self.failure_count = 0
        self.opened_at = None
        self._trial_in_flight = False

    def get_state(self) -> dict:
        """Get circuit breaker state for health reporting."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "retry_after": self._retry_after() if self._state == BreakerState.OPEN else 0.0,
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_rejections": self.total_rejections,
        }
