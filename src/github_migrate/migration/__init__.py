"""Migration lifecycle helpers."""

from .lifecycle import MigrationLifecycle, RepositoryStore

__all__ = ['MigrationLifecycle', 'RepositoryStore']
