"""Batch models."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class BatchStatus(str, Enum):
    """Rolled-up status of a batch.

    Every value except ``PENDING`` is produced by aggregation; ``PENDING`` only
    marks a stored batch that was never scheduled.
    """

    PENDING = 'pending'
    READY = 'ready'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    FAILED = 'failed'
    COMPLETED_WITH_ERRORS = 'completed_with_errors'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        """Whether the batch has finished, successfully or not."""
        return self in TERMINAL_BATCH_STATUSES


TERMINAL_BATCH_STATUSES = frozenset(
    {
        BatchStatus.COMPLETED,
        BatchStatus.FAILED,
        BatchStatus.COMPLETED_WITH_ERRORS,
        BatchStatus.CANCELLED,
    }
)


class Batch(BaseModel):
    """Named group of repositories migrated together."""

    model_config = ConfigDict(validate_assignment=True)

    id: int = Field(..., description='Batch ID')
    name: str = Field(..., description='Batch name')
    status: BatchStatus = Field(default=BatchStatus.PENDING, description='Batch status')
    completed_at: Optional[datetime] = Field(
        default=None, description='When the batch reached a terminal status'
    )
