"""Phase transitions the migration core drives itself."""

from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from loguru import logger

from ..api.cancellation import CancellationToken
from ..api.dual_client import DualClient
from ..api.exceptions import InvalidPhaseTransitionError
from ..models.repository import Repository, RepositoryMigrationPhase


class RepositoryStore(Protocol):
    """Persistence collaborator for repository migration state."""

    async def update_repository(self, repository: Repository) -> None:
        ...


class MigrationLifecycle:
    """Applies lifecycle transitions and the API calls that accompany them.

    Repository models are never mutated in place; every method returns the
    updated copy after persisting it.
    """

    def __init__(
        self,
        dual_client: DualClient,
        store: RepositoryStore,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """Initialize lifecycle helper.

        Args:
            dual_client: Source instance clients; unlocks use its migration client
            store: Repository persistence
            clock: Source of phase change timestamps
        """
        self.dual_client = dual_client
        self.store = store
        self._clock = clock
        self.logger = logger.bind(component='MigrationLifecycle')

    async def transition(
        self, repository: Repository, target: RepositoryMigrationPhase
    ) -> Repository:
        """Move ``repository`` to ``target`` and persist it.

        Raises:
            InvalidPhaseTransitionError: If ``target`` is not reachable from the current phase
        """
        current = repository.status
        if not current.can_transition_to(target):
            raise InvalidPhaseTransitionError(current, target)

        updated = repository.model_copy(
            update={'status': target, 'updated_at': self._clock()}
        )
        await self.store.update_repository(updated)
        self.logger.bind(
            repo=repository.full_name, old_status=current.value, new_status=target.value
        ).info('Repository phase changed')
        return updated

    async def unlock_after_failure(
        self,
        repository: Repository,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Repository:
        """Unlock a source repository left locked by a failed migration.

        Always goes through the personal-token client, since the platform
        only accepts migration-control calls made with one.

        Raises:
            ValueError: If the repository is locked but has no migration ID
        """
        if not repository.is_source_locked:
            self.logger.bind(repo=repository.full_name).debug('Repository is not locked')
            return repository

        if repository.source_migration_id is None:
            raise ValueError(
                f'No migration ID found for repository {repository.full_name}'
            )

        org, name = repository.owner_and_name
        await self.dual_client.migration_client().unlock_repository(
            org, name, repository.source_migration_id, cancel_token
        )

        updated = repository.model_copy(update={'is_source_locked': False})
        await self.store.update_repository(updated)
        return updated

    async def retry_failed_migration(
        self,
        repository: Repository,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Repository:
        """Send a failed migration back to ``pre_migration``, unlocking it first.

        Raises:
            InvalidPhaseTransitionError: If the repository is not in ``migration_failed``
        """
        target = RepositoryMigrationPhase.PRE_MIGRATION
        if repository.status != RepositoryMigrationPhase.MIGRATION_FAILED:
            raise InvalidPhaseTransitionError(repository.status, target)

        repository = await self.unlock_after_failure(repository, cancel_token)
        return await self.transition(repository, target)
