"""Batch status aggregation."""

from .status_updater import BatchStatusUpdater, BatchStore, calculate_batch_status

__all__ = ['BatchStatusUpdater', 'BatchStore', 'calculate_batch_status']
