"""Repository pattern implementation for ledger persistence."""

from .base_repository import (
    BaseRepository,
    RepositoryError,
    PersistenceError,
    DataValidationError,
    DataCorruptionError
)
from .json_repository import JSONRepository
from .memory_repository import InMemoryRepository
from .csv_repository import CSVRepository, export_ledger, import_ledger
from .repository_factory import RepositoryFactory, create_repository_from_settings

__all__ = [
    # Base repository interface
    'BaseRepository',
    'RepositoryError',
    'PersistenceError',
    'DataValidationError',
    'DataCorruptionError',

    # Concrete implementations
    'JSONRepository',
    'InMemoryRepository',
    'CSVRepository',

    # Export format
    'export_ledger',
    'import_ledger',

    # Factory
    'RepositoryFactory',
    'create_repository_from_settings',
]
