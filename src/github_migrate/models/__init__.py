"""Data models for migration state."""

from .batch import Batch, BatchStatus, TERMINAL_BATCH_STATUSES
from .repository import PHASE_TRANSITIONS, Repository, RepositoryMigrationPhase

__all__ = [
    'Batch',
    'BatchStatus',
    'PHASE_TRANSITIONS',
    'Repository',
    'RepositoryMigrationPhase',
    'TERMINAL_BATCH_STATUSES',
]
