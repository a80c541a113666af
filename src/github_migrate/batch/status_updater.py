"""Periodic roll-up of repository migration phases into batch statuses."""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, List, Optional, Protocol, TypeVar

from loguru import logger

from ..api.cancellation import CancellationToken, cancellable_sleep, run_cancellable
from ..api.exceptions import OperationCancelledError
from ..config.config import BatchStatusConfig
from ..models.batch import Batch, BatchStatus
from ..models.repository import Repository, RepositoryMigrationPhase

T = TypeVar('T')

_P = RepositoryMigrationPhase

COMPLETED_PHASES = frozenset({_P.COMPLETE})
FAILED_PHASES = frozenset({_P.MIGRATION_FAILED, _P.DRY_RUN_FAILED})
IN_PROGRESS_PHASES = frozenset(
    {
        _P.DRY_RUN_QUEUED,
        _P.DRY_RUN_IN_PROGRESS,
        _P.QUEUED_FOR_MIGRATION,
        _P.MIGRATING_CONTENT,
        _P.ARCHIVE_GENERATING,
        _P.PRE_MIGRATION,
        _P.POST_MIGRATION,
        _P.MIGRATION_COMPLETE,
    }
)

# Stored statuses the periodic tick leaves alone
STABLE_BATCH_STATUSES = frozenset({BatchStatus.READY, BatchStatus.PENDING})


class BatchStore(Protocol):
    """Persistence collaborator for batches and their repositories."""

    async def list_batches(self) -> List[Batch]:
        ...

    async def get_batch(self, batch_id: int) -> Optional[Batch]:
        ...

    async def list_batch_repositories(self, batch_id: int) -> List[Repository]:
        ...

    async def update_batch(self, batch: Batch) -> None:
        ...


def calculate_batch_status(phases: Iterable[RepositoryMigrationPhase]) -> BatchStatus:
    """Roll member repository phases up into a batch status.

    Precedence, first match wins: any in-progress member, all completed, all
    failed, completed and failed mixed, all dry runs complete. Anything else,
    including an empty batch, is ready.
    """
    phases = [RepositoryMigrationPhase(phase) for phase in phases]
    if not phases:
        return BatchStatus.READY

    total = len(phases)
    completed = sum(1 for phase in phases if phase in COMPLETED_PHASES)
    failed = sum(1 for phase in phases if phase in FAILED_PHASES)
    in_progress = sum(1 for phase in phases if phase in IN_PROGRESS_PHASES)

    if in_progress:
        return BatchStatus.IN_PROGRESS
    if completed == total:
        return BatchStatus.COMPLETED
    if failed == total:
        return BatchStatus.FAILED
    if completed and failed:
        return BatchStatus.COMPLETED_WITH_ERRORS
    # Every dry run complete, or nothing started yet
    return BatchStatus.READY


class BatchStatusUpdater:
    """Recomputes batch statuses on a fixed interval or on demand.

    Only talks to the batch store, never to the remote platform, so it shares
    no state with API rate limiting.
    """

    def __init__(
        self,
        store: BatchStore,
        config: Optional[BatchStatusConfig] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """Initialize batch status updater.

        Args:
            store: Batch and repository persistence
            config: Schedule and storage retry settings
            clock: Source of completion timestamps
        """
        self.store = store
        self.config = config or BatchStatusConfig()
        self._clock = clock
        self._stop_token: Optional[CancellationToken] = None
        self.logger = logger.bind(component='BatchStatusUpdater')

    @property
    def interval(self) -> float:
        """Seconds between two ticks."""
        return self.config.interval

    async def start(self, cancel_token: Optional[CancellationToken] = None) -> None:
        """Run one tick immediately, then one every ``interval`` seconds.

        Returns when ``stop`` is called or ``cancel_token`` fires.
        """
        self._stop_token = CancellationToken()
        stop_token = self._stop_token
        self.logger.bind(interval=self.interval).info('Starting batch status updater')

        try:
            while True:
                await run_cancellable(self._tick(), cancel_token)
                await run_cancellable(stop_token.sleep(self.interval), cancel_token)
        except OperationCancelledError:
            pass
        finally:
            self.logger.info('Batch status updater stopped')

    def stop(self) -> None:
        """Stop a running ``start`` loop."""
        if self._stop_token is not None:
            self._stop_token.cancel('batch status updater stopped')

    async def _tick(self) -> None:
        try:
            await self.update_batch_statuses()
        except (OperationCancelledError, asyncio.CancelledError):
            raise
        except Exception as e:
            self.logger.error(f'Batch status update failed: {e}')

    async def update_batch_statuses(self) -> int:
        """Recompute every batch not in a stable ready or pending state.

        Failures of one batch are logged and do not stop the others.

        Returns:
            Number of batches whose status changed
        """
        try:
            batches = await self._with_storage_retry('list_batches', self.store.list_batches)
        except (OperationCancelledError, asyncio.CancelledError):
            raise
        except Exception as e:
            self.logger.error(f'Failed to list batches for status update: {e}')
            return 0

        updated = 0
        for batch in batches:
            if batch.status in STABLE_BATCH_STATUSES:
                continue
            try:
                if await self._recompute(batch) != batch.status:
                    updated += 1
            except (OperationCancelledError, asyncio.CancelledError):
                raise
            except Exception as e:
                self.logger.bind(batch_id=batch.id, batch_name=batch.name).error(
                    f'Failed to update batch status: {e}'
                )

        if updated > 0:
            self.logger.bind(updated_count=updated).info('Batch status update complete')
        return updated

    async def recompute_batch_status(self, batch_id: int) -> BatchStatus:
        """Recompute one batch now, whatever its stored status.

        Raises:
            LookupError: If the batch does not exist
        """
        batch = await self._with_storage_retry(
            'get_batch', lambda: self.store.get_batch(batch_id)
        )
        if batch is None:
            raise LookupError(f'Batch not found: {batch_id}')

        return await self._recompute(batch)

    async def _recompute(self, batch: Batch) -> BatchStatus:
        """Store the aggregated status of ``batch`` if it changed and return it."""
        repositories = await self._with_storage_retry(
            'list_batch_repositories',
            lambda: self.store.list_batch_repositories(batch.id),
        )
        new_status = calculate_batch_status(repo.status for repo in repositories)
        if new_status == batch.status:
            return new_status

        changes = {'status': new_status}
        if new_status.is_terminal and batch.completed_at is None:
            changes['completed_at'] = self._clock()

        self.logger.bind(
            batch_id=batch.id,
            batch_name=batch.name,
            old_status=batch.status.value,
            new_status=new_status.value,
        ).info('Updating batch status')

        updated = batch.model_copy(update=changes)
        await self._with_storage_retry('update_batch', lambda: self.store.update_batch(updated))
        return new_status

    async def _with_storage_retry(
        self, operation: str, fn: Callable[[], Awaitable[T]]
    ) -> T:
        backoff = self.config.storage_backoff
        for attempt in range(1, self.config.storage_max_attempts + 1):
            try:
                return await fn()
            except (OperationCancelledError, asyncio.CancelledError):
                raise
            except Exception as e:
                if attempt == self.config.storage_max_attempts:
                    raise
                self.logger.bind(operation=operation, attempt=attempt).warning(
                    f'Storage call failed, retrying in {backoff}s: {e}'
                )
                await cancellable_sleep(backoff)
                backoff *= 2
