"""Repository migration state models."""

from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RepositoryMigrationPhase(str, Enum):
    """Ordered lifecycle of a single repository migration."""

    PENDING = 'pending'
    DRY_RUN_QUEUED = 'dry_run_queued'
    DRY_RUN_IN_PROGRESS = 'dry_run_in_progress'
    DRY_RUN_COMPLETE = 'dry_run_complete'
    DRY_RUN_FAILED = 'dry_run_failed'
    PRE_MIGRATION = 'pre_migration'
    ARCHIVE_GENERATING = 'archive_generating'
    QUEUED_FOR_MIGRATION = 'queued_for_migration'
    MIGRATING_CONTENT = 'migrating_content'
    MIGRATION_COMPLETE = 'migration_complete'
    MIGRATION_FAILED = 'migration_failed'
    POST_MIGRATION = 'post_migration'
    COMPLETE = 'complete'

    def can_transition_to(self, target: 'RepositoryMigrationPhase') -> bool:
        """Whether moving from this phase to ``target`` is a legal lifecycle edge."""
        return target in PHASE_TRANSITIONS.get(self, frozenset())

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is possible."""
        return not PHASE_TRANSITIONS.get(self)

    @property
    def is_failed(self) -> bool:
        """Whether the phase records a failure."""
        return self in (
            RepositoryMigrationPhase.DRY_RUN_FAILED,
            RepositoryMigrationPhase.MIGRATION_FAILED,
        )


_P = RepositoryMigrationPhase

PHASE_TRANSITIONS: Dict[RepositoryMigrationPhase, FrozenSet[RepositoryMigrationPhase]] = {
    _P.PENDING: frozenset({_P.DRY_RUN_QUEUED, _P.PRE_MIGRATION}),
    _P.DRY_RUN_QUEUED: frozenset({_P.DRY_RUN_IN_PROGRESS, _P.DRY_RUN_FAILED}),
    _P.DRY_RUN_IN_PROGRESS: frozenset({_P.DRY_RUN_COMPLETE, _P.DRY_RUN_FAILED}),
    _P.DRY_RUN_COMPLETE: frozenset({_P.PRE_MIGRATION, _P.DRY_RUN_QUEUED}),
    _P.DRY_RUN_FAILED: frozenset({_P.DRY_RUN_QUEUED}),
    _P.PRE_MIGRATION: frozenset({_P.ARCHIVE_GENERATING, _P.MIGRATION_FAILED}),
    _P.ARCHIVE_GENERATING: frozenset({_P.QUEUED_FOR_MIGRATION, _P.MIGRATION_FAILED}),
    _P.QUEUED_FOR_MIGRATION: frozenset({_P.MIGRATING_CONTENT, _P.MIGRATION_FAILED}),
    _P.MIGRATING_CONTENT: frozenset({_P.MIGRATION_COMPLETE, _P.MIGRATION_FAILED}),
    _P.MIGRATION_COMPLETE: frozenset({_P.POST_MIGRATION}),
    # Retrying a failed migration is the only way back
    _P.MIGRATION_FAILED: frozenset({_P.PRE_MIGRATION}),
    _P.POST_MIGRATION: frozenset({_P.COMPLETE}),
    _P.COMPLETE: frozenset(),
}


class Repository(BaseModel):
    """Repository tracked through a migration."""

    model_config = ConfigDict(validate_assignment=True)

    id: int = Field(..., description='Repository record ID')
    full_name: str = Field(..., description='owner/name on the source instance')
    status: RepositoryMigrationPhase = Field(
        default=RepositoryMigrationPhase.PENDING, description='Current migration phase'
    )
    batch_id: Optional[int] = Field(default=None, description='Owning batch ID')

    # Source-side migration bookkeeping
    source_migration_id: Optional[int] = Field(
        default=None, description='ID of the source organization migration'
    )
    is_source_locked: bool = Field(
        default=False, description='Source repository locked by the migration'
    )

    updated_at: Optional[datetime] = Field(
        default=None, description='Last phase change timestamp'
    )

    @field_validator('full_name')
    @classmethod
    def validate_full_name(cls, v):
        """Validate owner/name format."""
        owner, _, name = v.strip('/').partition('/')
        if not owner or not name:
            raise ValueError('full_name must be in owner/name format')
        return v.strip('/')

    @property
    def owner_and_name(self) -> Tuple[str, str]:
        """Split ``full_name`` into owner and repository name."""
        owner, _, name = self.full_name.partition('/')
        return owner, name
