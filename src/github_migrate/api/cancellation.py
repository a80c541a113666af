"""Cancellation support for blocking waits and in-flight API calls."""

import asyncio
from typing import Awaitable, Optional, TypeVar

from .exceptions import OperationCancelledError

T = TypeVar('T')


class CancellationToken:
    """Cooperative cancellation signal shared by every suspend point of an operation."""

    def __init__(self):
        """Initialize an untriggered token."""
        self._event = asyncio.Event()
        self._timer: Optional[asyncio.TimerHandle] = None
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        """Whether cancellation has been requested."""
        return self._event.is_set()

    def cancel(self, reason: str = 'operation cancelled') -> None:
        """Request cancellation.

        Args:
            reason: Human-readable reason carried by the raised error
        """
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def cancel_after(self, delay: float) -> None:
        """Cancel the token once ``delay`` seconds have passed.

        Must be called from within a running event loop.
        """
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self.cancel, 'deadline exceeded')

    def raise_if_cancelled(self) -> None:
        """Raise OperationCancelledError if cancellation was requested."""
        if self._event.is_set():
            raise OperationCancelledError(self.reason or 'operation cancelled')

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds unless cancelled first."""
        self.raise_if_cancelled()
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Run ``awaitable`` and abandon it if the token fires first.

        The abandoned task is cancelled and awaited, so nothing it would have
        done after its current suspend point ever happens.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await _abandon(task)
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        await _abandon(task)
        raise OperationCancelledError(self.reason or 'operation cancelled')


async def _abandon(task: 'asyncio.Future') -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


async def cancellable_sleep(
    delay: float, cancel_token: Optional[CancellationToken] = None
) -> None:
    """Sleep that honours an optional cancellation token.

    Without a token this is a plain ``asyncio.sleep``, which still responds to
    task cancellation.
    """
    if cancel_token is None:
        if delay > 0:
            await asyncio.sleep(delay)
        return
    await cancel_token.sleep(delay)


async def run_cancellable(
    awaitable: Awaitable[T], cancel_token: Optional[CancellationToken] = None
) -> T:
    """Await ``awaitable``, abandoning it if ``cancel_token`` fires."""
    if cancel_token is None:
        return await awaitable
    return await cancel_token.guard(awaitable)
