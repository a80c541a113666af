"""Bounded retry loop for GitHub API operations."""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from .cancellation import CancellationToken, cancellable_sleep
from .classifier import classify, is_retryable
from .exceptions import (
    ErrorKind,
    GitHubAPIError,
    OperationCancelledError,
    RetryExhaustedError,
)
from .rate_limiter import RateLimiter

T = TypeVar('T')

# Extra time added to a parsed reset countdown before retrying
RATE_LIMIT_RESET_BUFFER = 5.0
MIN_RATE_LIMIT_WAIT = 10.0
MAX_RATE_LIMIT_WAIT = 15 * 60.0
SECONDARY_RATE_LIMIT_BACKOFF = 60.0


class RetryPolicy(BaseModel):
    """Immutable retry tunables, one instance per client."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, description='Attempts per operation')
    initial_backoff: float = Field(default=1.0, ge=0, description='First backoff in seconds')
    max_backoff: float = Field(default=30.0, ge=0, description='Backoff ceiling in seconds')
    backoff_multiplier: float = Field(default=2.0, ge=1, description='Backoff growth factor')


class Retryer:
    """Drives the retry loop of one logical operation.

    Every attempt first passes through the shared rate limiter. Failures are
    classified; terminal classifications surface immediately, retryable ones
    wait according to their kind before the next attempt.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        rate_limiter: RateLimiter,
        secondary_rate_limit_wait: float = SECONDARY_RATE_LIMIT_BACKOFF,
    ):
        """Initialize retryer.

        Args:
            policy: Retry tunables
            rate_limiter: Rate limiter shared with every client using the same quota
            secondary_rate_limit_wait: Fixed wait after a secondary rate limit
        """
        self.policy = policy
        self.rate_limiter = rate_limiter
        self.secondary_rate_limit_wait = secondary_rate_limit_wait
        self.logger = logger.bind(component='Retryer')

    async def do(
        self,
        operation: str,
        fn: Callable[[], Awaitable[object]],
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        """Run ``fn`` with retries, discarding its result.

        Raises:
            GitHubAPIError: On a non-retryable failure
            RetryExhaustedError: When every attempt failed with retryable errors
            OperationCancelledError: When ``cancel_token`` fires
        """
        await self.do_with_result(operation, fn, cancel_token)

    async def do_with_result(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        cancel_token: Optional[CancellationToken] = None,
    ) -> T:
        """Run ``fn`` with retries and return the result of the successful attempt.

        Args:
            operation: Name used in logs and in the exhaustion error
            fn: Zero-argument coroutine function performing one attempt
            cancel_token: Optional cancellation token honoured at every wait

        Returns:
            Result of the first successful attempt
        """
        backoff = self.policy.initial_backoff
        last_error: Optional[GitHubAPIError] = None

        for attempt in range(1, self.policy.max_attempts + 1):
            await self.rate_limiter.wait(cancel_token)

            try:
                result = await fn()
            except (OperationCancelledError, asyncio.CancelledError):
                raise
            except Exception as exc:
                error = classify(exc)
            else:
                self.rate_limiter.reset_backoff()
                if attempt > 1:
                    self.logger.bind(operation=operation, attempt=attempt).info(
                        'Operation succeeded after retry'
                    )
                return result

            last_error = error
            bound = self.logger.bind(
                operation=operation, attempt=attempt, error_kind=error.kind.value
            )

            if not is_retryable(error):
                bound.debug(f'Non-retryable error encountered: {error}')
                raise error

            if attempt == self.policy.max_attempts:
                break

            await self._wait_before_retry(bound, error, backoff, cancel_token)
            if error.kind not in (
                ErrorKind.RATE_LIMIT_BLOCKED,
                ErrorKind.SECONDARY_RATE_LIMIT_EXCEEDED,
                ErrorKind.RATE_LIMIT_EXCEEDED,
            ):
                backoff = min(
                    backoff * self.policy.backoff_multiplier, self.policy.max_backoff
                )

        self.logger.bind(operation=operation, attempts=self.policy.max_attempts).error(
            f'Operation exhausted its retry budget: {last_error}'
        )
        raise RetryExhaustedError(operation, self.policy.max_attempts, last_error)

    def rate_limit_blocked_wait(self, error: GitHubAPIError) -> float:
        """Seconds to wait after a pre-emptive rate limit block.

        The parsed countdown plus a safety buffer, bounded to
        ``[MIN_RATE_LIMIT_WAIT, MAX_RATE_LIMIT_WAIT]``. Without a countdown the
        secondary rate limit wait is used.
        """
        if error.reset_in is None:
            wait = self.secondary_rate_limit_wait
        else:
            wait = error.reset_in + RATE_LIMIT_RESET_BUFFER
        return max(MIN_RATE_LIMIT_WAIT, min(wait, MAX_RATE_LIMIT_WAIT))

    async def _wait_before_retry(
        self,
        bound,
        error: GitHubAPIError,
        backoff: float,
        cancel_token: Optional[CancellationToken],
    ) -> None:
        if error.kind == ErrorKind.RATE_LIMIT_BLOCKED:
            wait = self.rate_limit_blocked_wait(error)
            bound.bind(wait_seconds=wait).warning(
                'Request blocked until rate limit reset, waiting before retry'
            )
            await cancellable_sleep(wait, cancel_token)
        elif error.kind == ErrorKind.SECONDARY_RATE_LIMIT_EXCEEDED:
            bound.bind(wait_seconds=self.secondary_rate_limit_wait).warning(
                'Secondary rate limit hit, waiting before retry'
            )
            await cancellable_sleep(self.secondary_rate_limit_wait, cancel_token)
        elif error.kind == ErrorKind.RATE_LIMIT_EXCEEDED:
            bound.warning('Rate limit error, waiting for reset before retry')
            await self.rate_limiter.handle_rate_limit_error(cancel_token)
        else:
            bound.bind(backoff_seconds=backoff).info(
                f'Retryable error, backing off: {error}'
            )
            await cancellable_sleep(backoff, cancel_token)
