"""Abstract base repository interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from ..models.ledger_state import LedgerState


class BaseRepository(ABC):
    """Abstract base class for ledger persistence.

    A repository stores exactly one ledger snapshot. The ledger writes the
    complete state after every mutation, so implementations only need to
    replace the stored snapshot as a whole, never merge.
    """

    @abstractmethod
    def save(self, state: LedgerState) -> None:
        """Persist a complete ledger snapshot, replacing any previous one.

        Args:
            state: LedgerState to save

        Raises:
            PersistenceError: If the snapshot could not be written
        """
        pass

    @abstractmethod
    def load(self) -> Optional[LedgerState]:
        """Load the stored ledger snapshot.

        Returns:
            LedgerState, or None when nothing has been stored yet

        Raises:
            DataCorruptionError: If stored data exists but cannot be read
            RepositoryError: If data access fails
        """
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove the stored snapshot.

        Raises:
            PersistenceError: If the stored data could not be removed
        """
        pass

    def describe(self) -> str:
        """Human-readable description of where data is stored."""
        return type(self).__name__


class RepositoryError(Exception):
    """Base exception for repository operations."""
    pass


class PersistenceError(RepositoryError):
    """Exception raised when a snapshot cannot be written."""
    pass


class DataValidationError(RepositoryError):
    """Exception raised when data validation fails."""
    pass


class DataCorruptionError(RepositoryError):
    """Exception raised when data corruption is detected."""
    pass
