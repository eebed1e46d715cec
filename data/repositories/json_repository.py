"""JSON file repository implementation."""

from __future__ import annotations

import json
import os
import tempfile
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional
import logging

from config.constants import (
    STORAGE_FORMAT_VERSION,
    STORAGE_KEY_ASSETS,
    STORAGE_KEY_BALANCE,
    STORAGE_KEY_DEPOSITS,
    STORAGE_KEY_META,
    STORAGE_KEY_REALIZED,
    STORAGE_KEY_TRANSACTIONS,
)
from utils.timezone_utils import format_timestamp, parse_timestamp, utc_now
from .base_repository import BaseRepository, DataCorruptionError, PersistenceError
from ..models.holding import Holding
from ..models.instrument import instrument_from_dict
from ..models.ledger_state import LedgerState
from ..models.transaction import Transaction

logger = logging.getLogger(__name__)


class JSONRepository(BaseRepository):
    """Key-value JSON document on disk.

    The document keeps one top-level key per piece of ledger state
    (``assets``, ``transactions``, ``realized``, ``balance``, ``deposits``)
    plus a ``meta`` block with the format version, sequence counter and the
    instrument registry. Writes go to a temporary file in the same directory
    and are moved into place with ``os.replace`` so a crash never leaves a
    half-written ledger behind.
    """

    def __init__(self, path: str):
        """Initialize JSON repository.

        Args:
            path: Path of the JSON ledger file
        """
        if not path:
            raise ValueError("path is required for JSONRepository")
        self.path = Path(path)

    def describe(self) -> str:
        return f"JSON file {self.path}"

    def save(self, state: LedgerState) -> None:
        saved_at = utc_now()
        document = self._to_document(state, saved_at)

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp",
                                            dir=str(self.path.parent))
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(document, f, indent=2)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save ledger to {self.path}: {e}")
            raise PersistenceError(f"Failed to save ledger to {self.path}: {e}") from e

        state.saved_at = saved_at
        logger.debug(f"Saved ledger snapshot ({len(state.transactions)} transactions) to {self.path}")

    def load(self) -> Optional[LedgerState]:
        if not self.path.exists():
            logger.info(f"Ledger file does not exist yet: {self.path}")
            return None

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                document = json.load(f)
        except json.JSONDecodeError as e:
            raise DataCorruptionError(f"Ledger file {self.path} is not valid JSON: {e}") from e
        except OSError as e:
            raise DataCorruptionError(f"Failed to read ledger file {self.path}: {e}") from e

        if not isinstance(document, dict):
            raise DataCorruptionError(f"Ledger file {self.path} does not contain an object")

        try:
            state = self._from_document(document)
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            raise DataCorruptionError(f"Ledger file {self.path} contains invalid data: {e}") from e

        logger.info(f"Loaded ledger from {self.path}: {len(state.holdings)} holdings, "
                    f"{len(state.transactions)} transactions")
        return state

    def clear(self) -> None:
        try:
            if self.path.exists():
                self.path.unlink()
                logger.info(f"Removed ledger file {self.path}")
        except OSError as e:
            raise PersistenceError(f"Failed to remove ledger file {self.path}: {e}") from e

    def _to_document(self, state: LedgerState, saved_at) -> Dict[str, Any]:
        return {
            STORAGE_KEY_ASSETS: [h.to_dict() for h in state.holdings],
            STORAGE_KEY_TRANSACTIONS: [t.to_dict() for t in state.transactions],
            STORAGE_KEY_REALIZED: str(state.realized_pnl),
            STORAGE_KEY_BALANCE: str(state.cash_balance) if state.cash_balance is not None else None,
            STORAGE_KEY_DEPOSITS: str(state.total_deposited),
            STORAGE_KEY_META: {
                'version': STORAGE_FORMAT_VERSION,
                'next_sequence': state.next_sequence,
                'instruments': [i.to_dict() for i in state.instruments],
                'saved_at': format_timestamp(saved_at),
            },
        }

    def _from_document(self, document: Dict[str, Any]) -> LedgerState:
        meta = document.get(STORAGE_KEY_META) or {}
        version = meta.get('version', STORAGE_FORMAT_VERSION)
        if version > STORAGE_FORMAT_VERSION:
            raise ValueError(f"Unsupported ledger format version {version}")

        transactions = [Transaction.from_dict(t) for t in document.get(STORAGE_KEY_TRANSACTIONS) or []]
        next_sequence = meta.get('next_sequence')
        if next_sequence is None:
            next_sequence = max((t.sequence for t in transactions), default=0) + 1

        balance = document.get(STORAGE_KEY_BALANCE)
        return LedgerState(
            holdings=[Holding.from_dict(h) for h in document.get(STORAGE_KEY_ASSETS) or []],
            transactions=transactions,
            realized_pnl=Decimal(str(document.get(STORAGE_KEY_REALIZED) or '0')),
            cash_balance=Decimal(str(balance)) if balance is not None else None,
            total_deposited=Decimal(str(document.get(STORAGE_KEY_DEPOSITS) or '0')),
            next_sequence=int(next_sequence),
            instruments=[instrument_from_dict(i) for i in meta.get('instruments') or []],
            saved_at=parse_timestamp(meta.get('saved_at')),
        )
