"""Rate limiting and circuit breaking for GitHub API calls."""

import asyncio
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from loguru import logger
from pydantic import BaseModel, Field

from .cancellation import CancellationToken, cancellable_sleep
from .exceptions import CircuitBreakerOpenError, OperationCancelledError

T = TypeVar('T')

DEFAULT_RATE_LIMIT = 5000


class RateLimitSnapshot(BaseModel):
    """Primary quota as last reported by the platform."""

    remaining: int = Field(..., description='Requests left in the current window')
    limit: int = Field(..., description='Requests allowed per window')
    reset_at: Optional[datetime] = Field(
        default=None, description='When the window resets (UTC)'
    )


class RateLimiter:
    """Primary quota tracker and request spacer shared by concurrent workers.

    The lock only guards bookkeeping; it is never held while sleeping, so one
    caller waiting out a quota reset does not serialize the others.
    """

    def __init__(
        self,
        min_interval: float = 0.1,
        backoff_floor: float = 1.0,
        backoff_cap: float = 300.0,
        low_quota_warning: int = 100,
    ):
        """Initialize rate limiter.

        Args:
            min_interval: Minimum seconds between two permitted requests
            backoff_floor: Starting delay of the doubling backoff
            backoff_cap: Upper bound of the doubling backoff
            low_quota_warning: Remaining quota below which updates log a warning
        """
        self.min_interval = min_interval
        self.backoff_floor = backoff_floor
        self.backoff_cap = backoff_cap
        self.low_quota_warning = low_quota_warning

        self._remaining = DEFAULT_RATE_LIMIT
        self._limit = DEFAULT_RATE_LIMIT
        self._reset_at: Optional[datetime] = None
        self._last_request: Optional[float] = None
        self._backoff = backoff_floor
        self._lock = asyncio.Lock()
        self.logger = logger.bind(component='RateLimiter')

    async def wait(self, cancel_token: Optional[CancellationToken] = None) -> None:
        """Block until another request may be sent.

        Waits out an exhausted quota until its reset time, then enforces the
        minimum spacing since the previous permitted request.

        Raises:
            OperationCancelledError: If ``cancel_token`` fires while waiting
        """
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        async with self._lock:
            reset_at = self._reset_at
            reset_wait = self._seconds_until_reset()
            if reset_wait <= 0:
                self._restore_after_reset()

        if reset_wait > 0:
            self.logger.bind(wait_seconds=round(reset_wait, 3), reset_at=reset_at).warning(
                'Rate limit exhausted, waiting for reset'
            )
            await cancellable_sleep(reset_wait, cancel_token)
            async with self._lock:
                if self._remaining <= 0:
                    self._remaining = self._limit

        while True:
            async with self._lock:
                spacing = self._seconds_until_spacing_elapsed()
                if spacing <= 0:
                    self._last_request = time.monotonic()
                    self._remaining = max(0, self._remaining - 1)
                    return
            await cancellable_sleep(spacing, cancel_token)

    def update_limits(
        self, remaining: int, limit: int, reset_at: Optional[datetime]
    ) -> None:
        """Overwrite the quota snapshot with values from the latest response.

        Last write wins; values are never merged with earlier state.
        """
        self._remaining = max(0, remaining)
        self._limit = limit
        self._reset_at = _as_utc(reset_at)

        bound = self.logger.bind(remaining=remaining, limit=limit, reset_at=reset_at)
        if remaining < self.low_quota_warning:
            bound.warning('GitHub API rate limit running low')
        else:
            bound.debug('Rate limit updated')

    def get_status(self) -> Tuple[int, int, Optional[datetime]]:
        """Return ``(remaining, limit, reset_at)``."""
        return self._remaining, self._limit, self._reset_at

    def snapshot(self) -> RateLimitSnapshot:
        """Current quota as an immutable model."""
        remaining, limit, reset_at = self.get_status()
        return RateLimitSnapshot(remaining=remaining, limit=limit, reset_at=reset_at)

    @property
    def current_backoff(self) -> float:
        """Delay the next ``start_backoff`` call will sleep for."""
        return self._backoff

    async def start_backoff(
        self, cancel_token: Optional[CancellationToken] = None
    ) -> None:
        """Sleep for the current backoff and double it for next time."""
        async with self._lock:
            delay = min(self._backoff, self.backoff_cap)
            self._backoff = min(self._backoff * 2, self.backoff_cap)

        self.logger.bind(backoff_seconds=delay).info('Starting backoff')
        await cancellable_sleep(delay, cancel_token)

    def reset_backoff(self) -> None:
        """Return the backoff to its floor after a successful request."""
        if self._backoff != self.backoff_floor:
            self.logger.debug('Backoff reset')
        self._backoff = self.backoff_floor

    async def handle_rate_limit_error(
        self, cancel_token: Optional[CancellationToken] = None
    ) -> None:
        """Wait after a primary rate limit error.

        Uses the authoritative reset time when one is known, otherwise falls
        back to the doubling backoff.
        """
        async with self._lock:
            reset_at = self._reset_at
            reset_wait = self._seconds_until_reset(ignore_remaining=True)

        if reset_wait <= 0:
            await self.start_backoff(cancel_token)
            return

        self.logger.bind(wait_seconds=round(reset_wait, 3), reset_at=reset_at).warning(
            'Rate limit hit, waiting for reset'
        )
        await cancellable_sleep(reset_wait, cancel_token)
        async with self._lock:
            self._remaining = self._limit

    def _seconds_until_reset(self, ignore_remaining: bool = False) -> float:
        if self._reset_at is None:
            return 0.0
        if not ignore_remaining and self._remaining > 0:
            return 0.0
        return (self._reset_at - datetime.now(timezone.utc)).total_seconds()

    def _restore_after_reset(self) -> None:
        if self._remaining > 0 or self._reset_at is None:
            return
        if datetime.now(timezone.utc) >= self._reset_at:
            self._remaining = self._limit

    def _seconds_until_spacing_elapsed(self) -> float:
        if self._last_request is None:
            return 0.0
        return self.min_interval - (time.monotonic() - self._last_request)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = 'closed'
    OPEN = 'open'
    HALF_OPEN = 'half_open'


class CircuitBreaker:
    """Circuit breaker pattern for handling API failures.

    Independent of retries: it protects later, unrelated calls from hammering
    a downstream already known to be failing.
    """

    def __init__(
        self,
        max_failures: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize circuit breaker.

        Args:
            max_failures: Consecutive failures before opening circuit
            reset_timeout: Seconds to wait before letting a probe through
            clock: Monotonic time source
        """
        self.max_failures = max_failures
        self.reset_timeout = reset_timeout
        self._clock = clock

        self.failure_count = 0
        self.last_failure_at: Optional[float] = None
        self.state = CircuitState.CLOSED
        self._lock = threading.Lock()
        self.logger = logger.bind(component='CircuitBreaker')

    def allow_request(self) -> bool:
        """Check if a request should be allowed.

        An open circuit whose reset timeout has elapsed moves to half-open and
        admits the request.
        """
        with self._lock:
            if self.state == CircuitState.CLOSED:
                return True
            if self.state == CircuitState.HALF_OPEN:
                return True
            if self._should_attempt_reset():
                self.logger.info('Circuit breaker transitioning to half-open state')
                self.state = CircuitState.HALF_OPEN
                return True
            return False

    def record_success(self) -> None:
        """Handle successful function call."""
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.logger.info('Circuit breaker recovered, closing circuit')
            self.failure_count = 0
            self.state = CircuitState.CLOSED

    def record_failure(self) -> None:
        """Handle failed function call."""
        with self._lock:
            self.failure_count += 1
            self.last_failure_at = self._clock()

            if self.failure_count >= self.max_failures:
                if self.state != CircuitState.OPEN:
                    self.logger.bind(
                        failures=self.failure_count, max_failures=self.max_failures
                    ).warning('Circuit breaker opened due to excessive failures')
                self.state = CircuitState.OPEN

    def reset(self) -> None:
        """Force the breaker closed."""
        with self._lock:
            self.failure_count = 0
            self.state = CircuitState.CLOSED
        self.logger.info('Circuit breaker manually reset')

    def time_until_retry(self) -> float:
        """Seconds until an open circuit admits a probe."""
        if self.state != CircuitState.OPEN or self.last_failure_at is None:
            return 0.0
        return max(0.0, self.reset_timeout - (self._clock() - self.last_failure_at))

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """Call function with circuit breaker protection.

        Args:
            func: Zero-argument coroutine function to call

        Returns:
            Function result

        Raises:
            CircuitBreakerOpenError: If circuit is open
            Original exception: If function fails
        """
        if not self.allow_request():
            retry_in = self.time_until_retry()
            raise CircuitBreakerOpenError(
                f'Circuit breaker is open. Try again in {retry_in:.1f} seconds',
                retry_in=retry_in,
            )

        try:
            result = await func()
        except (OperationCancelledError, asyncio.CancelledError):
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def _should_attempt_reset(self) -> bool:
        return (
            self.last_failure_at is not None
            and self._clock() - self.last_failure_at > self.reset_timeout
        )


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
