"""Ledger aggregate root.

The ledger owns the holdings, the transaction log, cumulative realized P&L
and the optional cash balance. Every operation validates its input and
computes the complete new state before assigning anything, so a rejected
operation leaves the ledger exactly as it was. Each successful mutation is
followed by a full snapshot save through the injected repository.
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from config.constants import (
    ERROR_INVALID_AMOUNT,
    ERROR_INVALID_PRICE,
    ERROR_INVALID_QUANTITY,
    QUANTITY_TOLERANCE,
    REFERENCE_CURRENCY,
    WARNING_PERSISTENCE_FAILED,
)
from data.models.holding import Holding
from data.models.instrument import Instrument, NonLiquidInstrument
from data.models.ledger_state import LedgerState
from data.models.transaction import Transaction, TransactionType, new_transaction_id
from data.repositories.base_repository import BaseRepository, PersistenceError
from financial.calculations import calculate_gross_amount, estimate_non_liquid_price, to_decimal
from portfolio.position_calculator import replay_cash
from portfolio.trade_processor import apply_buy, apply_sell, remove_units, restore_units
from utils.timezone_utils import parse_timestamp, utc_now

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base exception for ledger operations."""
    pass


class InvalidArgumentError(LedgerError):
    """Exception raised for non-positive or non-numeric quantities, prices or amounts."""
    pass


class InsufficientQuantityError(LedgerError):
    """Exception raised when selling or removing more units than are held."""
    pass


class InsufficientBalanceError(LedgerError):
    """Exception raised when an operation would take the cash balance below zero."""
    pass


class AlreadyReversedError(LedgerError):
    """Exception raised when reversing a transaction that was already reversed."""
    pass


class HoldingNotFoundError(LedgerError):
    """Exception raised when an operation refers to an instrument that is not held."""
    pass


class TransactionNotFoundError(LedgerError):
    """Exception raised when a transaction id is not in the log."""
    pass


def _positive(value: Any, message: str) -> Decimal:
    try:
        number = to_decimal(value)
    except (ValueError, TypeError) as e:
        raise InvalidArgumentError(f"{message}: {value!r}") from e
    if number <= 0:
        raise InvalidArgumentError(f"{message}: {value!r}")
    return number


def _timestamp(value: Any) -> datetime:
    if value is None:
        return utc_now()
    try:
        parsed = parse_timestamp(value)
    except ValueError as e:
        raise InvalidArgumentError(str(e)) from e
    if parsed is None:
        raise InvalidArgumentError(f"Invalid timestamp: {value!r}")
    return parsed


class Ledger:
    """Single-user portfolio ledger.

    Mutations are synchronous and assume a single writer; there is no
    locking. The in-memory state is authoritative: when a save fails the
    error is logged and kept in ``last_persistence_error``, and the next
    successful save carries every change made since.
    """

    def __init__(self, repository: Optional[BaseRepository] = None,
                 state: Optional[LedgerState] = None,
                 track_cash: bool = True,
                 reference_currency: str = REFERENCE_CURRENCY):
        """Initialize the ledger.

        Args:
            repository: Where snapshots are saved (None keeps the ledger in memory only)
            state: Initial state (defaults to an empty ledger)
            track_cash: Whether buys are limited by a cash balance
            reference_currency: Currency all ledger amounts are kept in
        """
        self.repository = repository
        self.reference_currency = reference_currency
        self._track_cash = track_cash
        self._last_persistence_error: Optional[PersistenceError] = None
        self._saved_at: Optional[datetime] = None
        self._adopt(state or LedgerState())

    @classmethod
    def load(cls, repository: BaseRepository, track_cash: bool = True,
             reference_currency: str = REFERENCE_CURRENCY) -> Ledger:
        """Restore a ledger from a repository (empty when nothing is stored).

        Raises:
            RepositoryError: If stored data exists but cannot be read
        """
        state = repository.load()
        ledger = cls(repository=repository, state=state, track_cash=track_cash,
                     reference_currency=reference_currency)
        if state is None:
            logger.info(f"Starting a new ledger ({repository.describe()})")
        return ledger

    def _adopt(self, state: LedgerState) -> None:
        """Take over a snapshot, aligning its cash mode with this ledger's."""
        cash_balance = state.cash_balance
        if self._track_cash and cash_balance is None:
            cash_balance = replay_cash(state.transactions)
            logger.info(f"Cash tracking enabled; balance rebuilt from the log: {cash_balance}")
        elif not self._track_cash:
            cash_balance = None

        holdings: Dict[str, Holding] = {}
        for holding in state.holdings:
            holdings[holding.instrument_id] = copy.deepcopy(holding)

        instruments: Dict[str, Instrument] = {i.id: i for i in state.instruments}
        for holding in holdings.values():
            instruments.setdefault(holding.instrument_id, holding.instrument)

        transactions = list(state.transactions)
        self._holdings = holdings
        self._instruments = instruments
        self._transactions = transactions
        self._tx_index = {t.transaction_id: i for i, t in enumerate(transactions)}
        self._realized_pnl = state.realized_pnl
        self._cash_balance = cash_balance
        self._total_deposited = state.total_deposited
        self._next_sequence = max(state.next_sequence,
                                  max((t.sequence for t in transactions), default=0) + 1)
        self._saved_at = state.saved_at

    # ------------------------------------------------------------------
    # Queries

    @property
    def holdings(self) -> List[Holding]:
        return list(self._holdings.values())

    def get_holding(self, instrument_id: str) -> Optional[Holding]:
        return self._holdings.get(instrument_id)

    @property
    def transactions(self) -> List[Transaction]:
        """Active (non-reversed) transactions ordered by timestamp, then insertion."""
        return sorted((t for t in self._transactions if not t.is_reversed), key=lambda t: t.sort_key)

    @property
    def all_transactions(self) -> List[Transaction]:
        """Entire log, reversed transactions included."""
        return sorted(self._transactions, key=lambda t: t.sort_key)

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        index = self._tx_index.get(transaction_id)
        return self._transactions[index] if index is not None else None

    @property
    def instruments(self) -> Dict[str, Instrument]:
        """Every instrument the ledger has held, by id."""
        return dict(self._instruments)

    def get_instrument(self, instrument_id: str) -> Optional[Instrument]:
        return self._instruments.get(instrument_id)

    @property
    def realized_pnl(self) -> Decimal:
        return self._realized_pnl

    @property
    def cash_balance(self) -> Optional[Decimal]:
        return self._cash_balance

    @property
    def total_deposited(self) -> Decimal:
        return self._total_deposited

    @property
    def tracks_cash(self) -> bool:
        return self._track_cash

    @property
    def last_persistence_error(self) -> Optional[PersistenceError]:
        return self._last_persistence_error

    def snapshot(self) -> LedgerState:
        """Deep copy of the current state."""
        return copy.deepcopy(self._build_state())

    def _build_state(self) -> LedgerState:
        return LedgerState(
            holdings=list(self._holdings.values()),
            transactions=list(self._transactions),
            realized_pnl=self._realized_pnl,
            cash_balance=self._cash_balance,
            total_deposited=self._total_deposited,
            next_sequence=self._next_sequence,
            instruments=list(self._instruments.values()),
            saved_at=self._saved_at,
        )

    # ------------------------------------------------------------------
    # Mutations

    def buy(self, instrument: Instrument, quantity: Any, price_per_unit: Any,
            timestamp: Any = None, note: Optional[str] = None) -> Transaction:
        """Buy units of an instrument at weighted-average cost.

        Args:
            instrument: Instrument to buy (new or already held)
            quantity: Units to buy (> 0)
            price_per_unit: Price per unit in the reference currency (> 0)
            timestamp: Trade time (defaults to now)
            note: Optional free-text note

        Returns:
            The appended BUY transaction

        Raises:
            InvalidArgumentError: For invalid quantity, price or instrument
            InsufficientBalanceError: If cash is tracked and would go negative
        """
        q = _positive(quantity, ERROR_INVALID_QUANTITY)
        p = _positive(price_per_unit, ERROR_INVALID_PRICE)
        when = _timestamp(timestamp)
        self._check_trade_time(instrument.id, when)

        known = self._instruments.get(instrument.id)
        if known is not None and known.kind is not instrument.kind:
            raise InvalidArgumentError(
                f"Instrument {instrument.id} is already registered as {known.kind.value}, not {instrument.kind.value}"
            )
        existing = self._holdings.get(instrument.id)
        if existing is None and isinstance(instrument, NonLiquidInstrument) and instrument.acquired_at is None:
            instrument = NonLiquidInstrument(
                id=instrument.id,
                display_symbol=instrument.display_symbol,
                display_name=instrument.display_name,
                assumed_annual_growth_pct=instrument.assumed_annual_growth_pct,
                acquired_at=when,
                description=instrument.description,
            )
        target = existing.instrument if existing is not None else instrument

        gross = calculate_gross_amount(q, p)
        new_cash = self._cash_balance
        if self._track_cash:
            if gross > self._cash_balance:
                raise InsufficientBalanceError(
                    f"Buying {q} {target.display_symbol} costs {gross} {self.reference_currency} "
                    f"but the cash balance is {self._cash_balance}"
                )
            new_cash = self._cash_balance - gross

        new_holding = apply_buy(existing, target, q, p, when)
        tx = Transaction(
            transaction_id=new_transaction_id(),
            type=TransactionType.BUY,
            instrument_id=target.id,
            symbol=target.display_symbol,
            quantity=q,
            price_per_unit=p,
            gross_amount=gross,
            timestamp=when,
            sequence=self._next_sequence,
            currency=self.reference_currency,
            note=note or '',
        )

        self._holdings[target.id] = new_holding
        self._instruments[target.id] = target
        self._cash_balance = new_cash
        self._append(tx)
        logger.info(f"Bought {q} {target.display_symbol} @ {p} (gross {gross})")
        self._persist()
        return tx

    def sell(self, instrument_id: str, quantity: Any, price_per_unit: Any,
             timestamp: Any = None, note: Optional[str] = None) -> Transaction:
        """Sell units of a held instrument.

        Returns:
            The appended SELL transaction, carrying realized P&L and cost basis

        Raises:
            InvalidArgumentError: For invalid quantity or price
            HoldingNotFoundError: If the instrument is not held
            InsufficientQuantityError: If more units are sold than held

        A trade may not be dated before the latest active trade on the same
        instrument; replaying the log in time order must reproduce the holding.
        """
        q = _positive(quantity, ERROR_INVALID_QUANTITY)
        p = _positive(price_per_unit, ERROR_INVALID_PRICE)
        return self._close_position(instrument_id, q, p, _timestamp(timestamp), note)

    def _close_position(self, instrument_id: str, q: Decimal, p: Decimal, when: datetime,
                        note: Optional[str]) -> Transaction:
        holding = self._holdings.get(instrument_id)
        if holding is None:
            raise HoldingNotFoundError(f"No holding for instrument {instrument_id}")
        self._check_trade_time(instrument_id, when)
        if q > holding.quantity + QUANTITY_TOLERANCE:
            raise InsufficientQuantityError(
                f"Cannot sell {q} {holding.symbol}; only {holding.quantity} held"
            )

        new_holding, sale = apply_sell(holding, q, p)
        tx = Transaction(
            transaction_id=new_transaction_id(),
            type=TransactionType.SELL,
            instrument_id=instrument_id,
            symbol=holding.symbol,
            quantity=q,
            price_per_unit=p,
            gross_amount=sale.proceeds,
            realized_pnl=sale.realized_pnl,
            cost_basis=sale.cost_of_sold,
            timestamp=when,
            sequence=self._next_sequence,
            currency=self.reference_currency,
            note=note or '',
        )

        self._set_holding(instrument_id, new_holding)
        self._realized_pnl += sale.realized_pnl
        if self._track_cash:
            self._cash_balance += sale.proceeds
        self._append(tx)
        logger.info(f"Sold {q} {holding.symbol} @ {p}: realized {sale.realized_pnl}")
        self._persist()
        return tx

    def liquidate(self, instrument_id: str, price_per_unit: Any = None,
                  timestamp: Any = None) -> Transaction:
        """Sell a whole holding.

        Without an explicit price the holding's last known price is used;
        non-liquid holdings use their estimated price, and a holding with no
        price information at all is closed at its average cost. A non-liquid
        holding whose estimate has fallen to zero (growth of -100% or worse) is
        written off: it closes with zero proceeds.
        """
        holding = self._holdings.get(instrument_id)
        if holding is None:
            raise HoldingNotFoundError(f"No holding for instrument {instrument_id}")
        when = _timestamp(timestamp)

        if price_per_unit is not None:
            price = _positive(price_per_unit, ERROR_INVALID_PRICE)
        elif holding.is_non_liquid:
            price = estimate_non_liquid_price(holding.average_cost, holding.assumed_annual_growth_pct,
                                              holding.acquired_at, when)
            if price <= 0:
                logger.warning(f"{holding.symbol} is valued at zero; writing it off")
                price = Decimal('0')
        else:
            fallback = holding.last_price if holding.last_price is not None else holding.average_cost
            price = _positive(fallback, ERROR_INVALID_PRICE)
        return self._close_position(instrument_id, holding.quantity, price, when, 'liquidated')

    def _check_trade_time(self, instrument_id: str, when: datetime) -> None:
        latest = max((t.timestamp for t in self._transactions
                      if t.instrument_id == instrument_id and not t.is_reversed), default=None)
        if latest is not None and when < latest:
            raise InvalidArgumentError(
                f"Trade time {when.isoformat()} is before the latest trade on {instrument_id} ({latest.isoformat()})"
            )

    def deposit(self, amount: Any, currency: Optional[str] = None, exchange_rate: Any = 1,
                timestamp: Any = None, note: Optional[str] = None) -> Transaction:
        """Add capital.

        Args:
            amount: Amount in ``currency`` (> 0)
            currency: Currency of the amount (defaults to the reference currency)
            exchange_rate: Reference-currency units per unit of ``currency``

        Returns:
            The appended DEPOSIT transaction
        """
        tx = self._cash_movement(TransactionType.DEPOSIT, amount, currency, exchange_rate, timestamp, note)
        if self._track_cash:
            self._cash_balance += tx.gross_amount
        self._total_deposited += tx.gross_amount
        self._append(tx)
        logger.info(f"Deposited {tx.quantity} {tx.currency} ({tx.gross_amount} {self.reference_currency})")
        self._persist()
        return tx

    def withdraw(self, amount: Any, currency: Optional[str] = None, exchange_rate: Any = 1,
                 timestamp: Any = None, note: Optional[str] = None) -> Transaction:
        """Take capital out.

        Raises:
            InsufficientBalanceError: If the withdrawal exceeds the cash
                balance (or, without cash tracking, the net capital deposited)
        """
        tx = self._cash_movement(TransactionType.WITHDRAWAL, amount, currency, exchange_rate, timestamp, note)
        available = self._cash_balance if self._track_cash else self._total_deposited
        if tx.gross_amount > available:
            raise InsufficientBalanceError(
                f"Cannot withdraw {tx.gross_amount} {self.reference_currency}; only {available} available"
            )
        if self._track_cash:
            self._cash_balance -= tx.gross_amount
        self._total_deposited -= tx.gross_amount
        self._append(tx)
        logger.info(f"Withdrew {tx.quantity} {tx.currency} ({tx.gross_amount} {self.reference_currency})")
        self._persist()
        return tx

    def _cash_movement(self, tx_type: TransactionType, amount: Any, currency: Optional[str],
                       exchange_rate: Any, timestamp: Any, note: Optional[str]) -> Transaction:
        value = _positive(amount, ERROR_INVALID_AMOUNT)
        rate = _positive(exchange_rate, "Exchange rate must be greater than zero")
        when = _timestamp(timestamp)
        return Transaction(
            transaction_id=new_transaction_id(),
            type=tx_type,
            quantity=value,
            price_per_unit=rate,
            gross_amount=value * rate,
            timestamp=when,
            sequence=self._next_sequence,
            currency=(currency or self.reference_currency).upper(),
            note=note or '',
        )

    def reverse_transaction(self, transaction_id: str) -> Transaction:
        """Undo a transaction by applying its inverse and marking it reversed.

        When later transactions touched the same instrument the inverse is
        still applied as-is, so the result can differ from the history
        without the transaction.

        Returns:
            The transaction, now marked reversed

        Raises:
            TransactionNotFoundError: If the id is unknown
            AlreadyReversedError: If the transaction was already reversed
            InsufficientQuantityError: If a buy's units are no longer held
            InsufficientBalanceError: If undoing would take cash below zero
        """
        index = self._tx_index.get(transaction_id)
        if index is None:
            raise TransactionNotFoundError(f"Transaction not found: {transaction_id}")
        tx = self._transactions[index]
        if tx.is_reversed:
            raise AlreadyReversedError(f"Transaction {transaction_id} was already reversed")

        holding = self._holdings.get(tx.instrument_id) if tx.instrument_id else None
        new_holding = holding
        realized = self._realized_pnl
        cash = self._cash_balance
        deposited = self._total_deposited

        if tx.is_buy():
            if holding is None or tx.quantity > holding.quantity + QUANTITY_TOLERANCE:
                held = holding.quantity if holding is not None else Decimal('0')
                raise InsufficientQuantityError(
                    f"Cannot reverse buy {transaction_id}: {tx.quantity} {tx.symbol} bought but {held} held"
                )
            new_holding = remove_units(holding, tx.quantity, tx.price_per_unit)
            if new_holding is not None and new_holding.total_invested < 0:
                logger.warning(f"Reversing buy {transaction_id} leaves {tx.symbol} with negative invested "
                               f"capital; later trades changed the position")
            if self._track_cash:
                cash = cash + tx.gross_amount

        elif tx.type is TransactionType.SELL:
            instrument = holding.instrument if holding is not None else self._instruments.get(tx.instrument_id)
            if instrument is None:
                raise HoldingNotFoundError(f"Cannot reverse sell {transaction_id}: instrument {tx.instrument_id} unknown")
            new_holding = restore_units(holding, instrument, tx.quantity, self._sold_unit_cost(tx), tx.timestamp)
            realized = realized - (tx.realized_pnl or Decimal('0'))
            if self._track_cash:
                if tx.gross_amount > cash:
                    raise InsufficientBalanceError(
                        f"Cannot reverse sell {transaction_id}: proceeds {tx.gross_amount} exceed cash balance {cash}"
                    )
                cash = cash - tx.gross_amount

        elif tx.type is TransactionType.DEPOSIT:
            available = cash if self._track_cash else deposited
            if tx.gross_amount > available:
                raise InsufficientBalanceError(
                    f"Cannot reverse deposit {transaction_id}: {tx.gross_amount} exceeds available {available}"
                )
            if self._track_cash:
                cash = cash - tx.gross_amount
            deposited = deposited - tx.gross_amount

        elif tx.type is TransactionType.WITHDRAWAL:
            if self._track_cash:
                cash = cash + tx.gross_amount
            deposited = deposited + tx.gross_amount

        else:
            raise InvalidArgumentError(f"Unsupported transaction type: {tx.type}")

        reversed_tx = tx.mark_reversed(utc_now())
        if tx.instrument_id:
            self._set_holding(tx.instrument_id, new_holding)
        self._realized_pnl = realized
        self._cash_balance = cash
        self._total_deposited = deposited
        self._transactions[index] = reversed_tx
        logger.info(f"Reversed {tx.type.value} {transaction_id} ({tx.symbol or tx.currency})")
        self._persist()
        return reversed_tx

    def _sold_unit_cost(self, tx: Transaction) -> Decimal:
        """Average cost per unit at the time of a sell."""
        if tx.cost_basis is not None:
            return tx.cost_basis / tx.quantity
        if tx.realized_pnl is not None:
            return (tx.gross_amount - tx.realized_pnl) / tx.quantity
        raise InvalidArgumentError(f"Sell {tx.transaction_id} carries no cost basis; it cannot be reversed")

    def record_price(self, instrument_id: str, price: Any, as_of: Any = None) -> bool:
        """Remember the last known market price of a holding.

        Older prices never replace newer ones.

        Returns:
            True if the holding was updated
        """
        holding = self._holdings.get(instrument_id)
        if holding is None:
            raise HoldingNotFoundError(f"No holding for instrument {instrument_id}")
        value = _positive(price, ERROR_INVALID_PRICE)
        when = _timestamp(as_of)
        if holding.last_price_at is not None and when < holding.last_price_at:
            return False

        updated = copy.copy(holding)
        updated.last_price = value
        updated.last_price_at = when
        self._holdings[instrument_id] = updated
        self._persist()
        return True

    def clear(self) -> None:
        """Erase all holdings, transactions and balances."""
        self._adopt(LedgerState(cash_balance=Decimal('0') if self._track_cash else None))
        logger.info("Ledger cleared")
        self._persist()

    def replace_state(self, state: LedgerState) -> None:
        """Replace the whole ledger (used by import)."""
        self._adopt(copy.deepcopy(state))
        logger.info(f"Ledger replaced: {len(self._holdings)} holdings, {len(self._transactions)} transactions")
        self._persist()

    # ------------------------------------------------------------------
    # Internals

    def _set_holding(self, instrument_id: str, holding: Optional[Holding]) -> None:
        if holding is None:
            self._holdings.pop(instrument_id, None)
        else:
            self._holdings[instrument_id] = holding
            self._instruments.setdefault(instrument_id, holding.instrument)

    def _append(self, tx: Transaction) -> None:
        self._tx_index[tx.transaction_id] = len(self._transactions)
        self._transactions.append(tx)
        self._next_sequence = max(self._next_sequence, tx.sequence) + 1

    def _persist(self) -> None:
        if self.repository is None:
            return
        state = self._build_state()
        try:
            self.repository.save(state)
        except PersistenceError as e:
            self._last_persistence_error = e
            logger.warning(f"{WARNING_PERSISTENCE_FAILED}: {e}")
            return
        self._saved_at = state.saved_at
        self._last_persistence_error = None
