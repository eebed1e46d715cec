"""In-memory repository implementation."""

from __future__ import annotations

import copy
from typing import Optional
import logging

from utils.timezone_utils import utc_now
from .base_repository import BaseRepository, PersistenceError
from ..models.ledger_state import LedgerState

logger = logging.getLogger(__name__)


class InMemoryRepository(BaseRepository):
    """Repository that keeps the snapshot in process memory.

    Snapshots are deep-copied on the way in and out so callers can never
    mutate the stored state. ``fail_saves`` makes every save raise
    ``PersistenceError``, which is how tests simulate a full or unavailable
    store.
    """

    def __init__(self, initial_state: Optional[LedgerState] = None, fail_saves: bool = False):
        self._state: Optional[LedgerState] = copy.deepcopy(initial_state)
        self.fail_saves = fail_saves
        self.save_count = 0

    def describe(self) -> str:
        return "in-memory store"

    def save(self, state: LedgerState) -> None:
        if self.fail_saves:
            raise PersistenceError("In-memory store is configured to reject writes")
        state.saved_at = utc_now()
        self._state = copy.deepcopy(state)
        self.save_count += 1

    def load(self) -> Optional[LedgerState]:
        return copy.deepcopy(self._state)

    def clear(self) -> None:
        if self.fail_saves:
            raise PersistenceError("In-memory store is configured to reject writes")
        self._state = None
