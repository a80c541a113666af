"""Tests for the retry loop."""

from unittest.mock import AsyncMock, patch

import pytest

from github_migrate.api.cancellation import CancellationToken
from github_migrate.api.exceptions import (
    ErrorKind,
    GitHubNotFoundError,
    GitHubRateLimitBlockedError,
    HTTPResponseError,
    OperationCancelledError,
    RetryExhaustedError,
)
from github_migrate.api.rate_limiter import RateLimiter
from github_migrate.api.retry import (
    MAX_RATE_LIMIT_WAIT,
    MIN_RATE_LIMIT_WAIT,
    Retryer,
    RetryPolicy,
)


@pytest.fixture
def limiter():
    limiter = RateLimiter(min_interval=0)
    limiter.handle_rate_limit_error = AsyncMock()
    return limiter


@pytest.fixture
def mock_sleep():
    with patch('github_migrate.api.retry.cancellable_sleep', new_callable=AsyncMock) as sleep:
        yield sleep


def make_retryer(limiter, **policy):
    defaults = {'max_attempts': 3, 'initial_backoff': 1.0, 'max_backoff': 30.0}
    defaults.update(policy)
    return Retryer(RetryPolicy(**defaults), limiter)


class TestRetryPolicy:
    """Test retry policy model."""

    def test_defaults(self):
        """Test default tunables."""
        policy = RetryPolicy()

        assert policy.max_attempts == 3
        assert policy.initial_backoff == 1.0
        assert policy.max_backoff == 30.0
        assert policy.backoff_multiplier == 2.0

    def test_immutable(self):
        """Test the policy cannot be changed after creation."""
        policy = RetryPolicy()

        with pytest.raises(Exception):
            policy.max_attempts = 10


class TestRetryer:
    """Test the retry loop."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, limiter, mock_sleep):
        """Test a successful attempt returns its result."""
        retryer = make_retryer(limiter)
        fn = AsyncMock(return_value={'id': 1})

        result = await retryer.do_with_result('get_repo', fn)

        assert result == {'id': 1}
        fn.assert_awaited_once()
        mock_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_do_discards_result(self, limiter, mock_sleep):
        """Test the untyped variant returns None."""
        retryer = make_retryer(limiter)

        assert await retryer.do('op', AsyncMock(return_value=42)) is None

    @pytest.mark.asyncio
    async def test_each_attempt_waits_on_limiter(self, limiter, mock_sleep):
        """Test the rate limiter gates every attempt."""
        retryer = make_retryer(limiter)
        fn = AsyncMock(side_effect=[HTTPResponseError(502, 'Bad Gateway'), 'ok'])

        with patch.object(limiter, 'wait', new_callable=AsyncMock) as wait:
            await retryer.do_with_result('op', fn)

        assert wait.await_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_returns_immediately(self, limiter, mock_sleep):
        """Test terminal errors are raised without another attempt."""
        retryer = make_retryer(limiter)
        fn = AsyncMock(side_effect=HTTPResponseError(404, 'Not Found'))

        with pytest.raises(GitHubNotFoundError):
            await retryer.do_with_result('op', fn)

        fn.assert_awaited_once()
        mock_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_exhaustion(self, limiter, mock_sleep):
        """Test exhausted retries wrap the last cause."""
        retryer = make_retryer(limiter)
        fn = AsyncMock(side_effect=HTTPResponseError(503, 'Service Unavailable'))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await retryer.do_with_result('list_repos', fn)

        error = exc_info.value
        assert fn.await_count == 3
        assert error.operation == 'list_repos'
        assert error.attempts == 3
        assert error.kind == ErrorKind.SERVER_ERROR
        assert error.last_error.status_code == 503
        # No sleep after the final attempt
        assert mock_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_exponential_backoff(self, limiter, mock_sleep):
        """Test backoff grows by the multiplier up to the cap."""
        retryer = make_retryer(
            limiter, max_attempts=5, initial_backoff=1.0, max_backoff=5.0
        )
        fn = AsyncMock(side_effect=ConnectionResetError('connection reset by peer'))

        with pytest.raises(RetryExhaustedError):
            await retryer.do_with_result('op', fn)

        delays = [call.args[0] for call in mock_sleep.call_args_list]
        assert delays == [1.0, 2.0, 4.0, 5.0]

    @pytest.mark.asyncio
    async def test_success_resets_limiter_backoff(self, limiter, mock_sleep):
        """Test a success returns the limiter backoff to its floor."""
        retryer = make_retryer(limiter)

        with patch.object(limiter, 'reset_backoff') as reset_backoff:
            await retryer.do_with_result('op', AsyncMock(return_value=None))

        reset_backoff.assert_called_once()

    @pytest.mark.asyncio
    async def test_secondary_rate_limit_waits_fixed(self, limiter, mock_sleep):
        """Test secondary rate limits wait a fixed minute."""
        retryer = make_retryer(limiter)
        fn = AsyncMock(
            side_effect=[HTTPResponseError(403, 'You have exceeded a secondary rate limit'), 'ok']
        )

        assert await retryer.do_with_result('op', fn) == 'ok'

        mock_sleep.assert_awaited_once_with(60.0, None)

    @pytest.mark.asyncio
    async def test_primary_rate_limit_delegates_to_limiter(self, limiter, mock_sleep):
        """Test primary rate limits wait for the authoritative reset."""
        retryer = make_retryer(limiter)
        token = CancellationToken()
        fn = AsyncMock(side_effect=[HTTPResponseError(429, 'Too Many Requests'), 'ok'])

        assert await retryer.do_with_result('op', fn, token) == 'ok'

        limiter.handle_rate_limit_error.assert_awaited_once_with(token)
        mock_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_blocked_waits_for_countdown(self, limiter, mock_sleep):
        """Test pre-emptive blocks wait for the parsed countdown plus buffer."""
        retryer = make_retryer(limiter)
        fn = AsyncMock(
            side_effect=[Exception('request blocked [rate reset in 1m56s]'), 'ok']
        )

        assert await retryer.do_with_result('op', fn) == 'ok'

        mock_sleep.assert_awaited_once_with(121.0, None)

    @pytest.mark.parametrize(
        'reset_in, expected',
        [
            (1.0, MIN_RATE_LIMIT_WAIT),
            (100.0, 105.0),
            (3600.0, MAX_RATE_LIMIT_WAIT),
            (None, 60.0),
        ],
    )
    def test_blocked_wait_bounds(self, limiter, reset_in, expected):
        """Test the blocked wait is clamped to its bounds."""
        retryer = make_retryer(limiter)
        error = GitHubRateLimitBlockedError('blocked', reset_in=reset_in)

        assert retryer.rate_limit_blocked_wait(error) == expected

    @pytest.mark.asyncio
    async def test_rate_limit_waits_do_not_grow_backoff(self, limiter, mock_sleep):
        """Test rate limit waits leave the exponential backoff untouched."""
        retryer = make_retryer(limiter, max_attempts=4, initial_backoff=1.0)
        fn = AsyncMock(
            side_effect=[
                HTTPResponseError(429, 'Too Many Requests'),
                HTTPResponseError(500, 'Internal Server Error'),
                HTTPResponseError(500, 'Internal Server Error'),
                'ok',
            ]
        )

        await retryer.do_with_result('op', fn)

        delays = [call.args[0] for call in mock_sleep.call_args_list]
        assert delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_cancellation_during_backoff(self, limiter, mock_sleep):
        """Test cancellation while sleeping stops the loop."""
        retryer = make_retryer(limiter)
        mock_sleep.side_effect = OperationCancelledError('cancelled')
        fn = AsyncMock(side_effect=HTTPResponseError(500, 'Internal Server Error'))

        with pytest.raises(OperationCancelledError):
            await retryer.do_with_result('op', fn, CancellationToken())

        fn.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancelled_before_first_attempt(self, limiter, mock_sleep):
        """Test a fired token prevents any attempt."""
        retryer = make_retryer(limiter)
        token = CancellationToken()
        token.cancel()
        fn = AsyncMock()

        with pytest.raises(OperationCancelledError):
            await retryer.do_with_result('op', fn, token)

        fn.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancellation_from_attempt_propagates(self, limiter, mock_sleep):
        """Test cancellation raised by an attempt is not retried."""
        retryer = make_retryer(limiter)
        fn = AsyncMock(side_effect=OperationCancelledError('cancelled'))

        with pytest.raises(OperationCancelledError):
            await retryer.do_with_result('op', fn)

        fn.assert_awaited_once()
