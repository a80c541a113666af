"""Tests for cancellation tokens."""

import asyncio

import pytest

from github_migrate.api.cancellation import (
    CancellationToken,
    cancellable_sleep,
    run_cancellable,
)
from github_migrate.api.exceptions import OperationCancelledError


class TestCancellationToken:
    """Test token behaviour at suspend points."""

    @pytest.mark.asyncio
    async def test_sleep_completes(self):
        """Test an untriggered token sleeps the full delay."""
        token = CancellationToken()

        await token.sleep(0.01)

        assert not token.cancelled

    @pytest.mark.asyncio
    async def test_sleep_interrupted(self):
        """Test cancellation wakes a sleeper early."""
        token = CancellationToken()
        token.cancel_after(0.01)

        with pytest.raises(OperationCancelledError, match='deadline exceeded'):
            await asyncio.wait_for(token.sleep(60), timeout=1)

    @pytest.mark.asyncio
    async def test_raise_if_cancelled(self):
        """Test the carried reason."""
        token = CancellationToken()
        token.raise_if_cancelled()

        token.cancel('shutting down')

        with pytest.raises(OperationCancelledError, match='shutting down'):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_guard_abandons_work(self):
        """Test guarded work stops at its suspend point when cancelled."""
        token = CancellationToken()
        finished = []

        async def work():
            await asyncio.sleep(60)
            finished.append(True)

        token.cancel_after(0.01)

        with pytest.raises(OperationCancelledError):
            await run_cancellable(work(), token)

        assert finished == []

    @pytest.mark.asyncio
    async def test_guard_finishes_work_when_task_cancelled(self):
        """Test cancelling the caller's task unwinds the guarded work first."""
        token = CancellationToken()
        started = asyncio.Event()
        cleaned = []

        async def work():
            started.set()
            try:
                await asyncio.sleep(60)
            finally:
                cleaned.append(True)

        caller = asyncio.ensure_future(run_cancellable(work(), token))
        await started.wait()
        caller.cancel()

        with pytest.raises(asyncio.CancelledError):
            await caller

        assert cleaned == [True]
        assert not token.cancelled

    @pytest.mark.asyncio
    async def test_guard_returns_result(self):
        """Test guarded work returns normally when not cancelled."""
        async def work():
            return 42

        assert await run_cancellable(work(), CancellationToken()) == 42

    @pytest.mark.asyncio
    async def test_guard_already_cancelled(self):
        """Test a fired token never starts the work."""
        token = CancellationToken()
        token.cancel()
        started = []

        async def work():
            started.append(True)

        with pytest.raises(OperationCancelledError):
            await run_cancellable(work(), token)

        assert started == []

    @pytest.mark.asyncio
    async def test_sleep_without_token(self):
        """Test the token-less sleep."""
        await cancellable_sleep(0)
        await cancellable_sleep(0.001)
