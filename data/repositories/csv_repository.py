"""CSV export/import format and CSV-backed repository.

The export is one text file holding three tables and a metadata line::

    # holdings
    id,kind,symbol,...
    ...

    # transactions
    id,type,instrument_id,...
    ...

    # instruments
    id,kind,symbol,...          (only instruments no longer held)

    # metadata realized_pnl=12.5,display_currency=IDR,exchange_rate=16000,...

Tables are written and read with pandas. Every value is kept as text so
Decimals survive the round trip exactly.
"""

from __future__ import annotations

import io
import os
import tempfile
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple
import logging

import pandas as pd

from config.constants import (
    DEFAULT_DISPLAY_CURRENCY,
    DEFAULT_USD_IDR_RATE,
    FLOAT_TOLERANCE,
    HOLDING_CSV_COLUMNS,
    TRANSACTION_CSV_COLUMNS,
)
from utils.timezone_utils import format_timestamp, parse_timestamp, utc_now
from .base_repository import BaseRepository, DataValidationError, PersistenceError
from ..models.holding import Holding
from ..models.instrument import Instrument, instrument_from_dict
from ..models.ledger_state import LedgerState
from ..models.transaction import Transaction

logger = logging.getLogger(__name__)

INSTRUMENT_CSV_COLUMNS = [
    'id', 'kind', 'symbol', 'name', 'price_feed_key', 'quote_currency',
    'assumed_annual_growth_pct', 'acquired_at', 'description'
]

SECTION_HOLDINGS = 'holdings'
SECTION_TRANSACTIONS = 'transactions'
SECTION_INSTRUMENTS = 'instruments'
SECTION_METADATA = 'metadata'

# Column names used by exports from the earlier browser version
_LEGACY_HOLDING_COLUMNS = {
    'type': 'kind',
    'shares': 'quantity',
    'avgPriceUSD': 'average_cost',
    'avgPrice': 'average_cost',
    'investedUSD': 'total_invested',
    'lastPriceUSD': 'last_price',
}
_LEGACY_TRANSACTION_COLUMNS = {
    'assetId': 'instrument_id',
    'qty': 'quantity',
    'pricePerUnit': 'price_per_unit',
    'realized': 'realized_pnl',
    'date': 'timestamp',
}


def _text(value: Any) -> str:
    if value is None:
        return ''
    return str(value)


def _decimal(value: Any, field_name: str, default: Optional[Decimal] = None) -> Optional[Decimal]:
    text = _text(value).strip()
    if not text:
        return default
    try:
        number = Decimal(text)
    except ArithmeticError as e:
        raise DataValidationError(f"Invalid number for {field_name}: {value!r}") from e
    if not number.is_finite():
        raise DataValidationError(f"Invalid number for {field_name}: {value!r}")
    return number


def _holding_row(holding: Holding, market_price: Optional[Decimal]) -> Dict[str, str]:
    instrument = holding.instrument.to_dict()
    price = market_price if market_price is not None else holding.last_price
    market_value = holding.quantity * price if price is not None else None
    return {
        'id': holding.instrument_id,
        'kind': holding.kind.value,
        'symbol': holding.symbol,
        'name': holding.instrument.display_name,
        'price_feed_key': _text(instrument.get('price_feed_key')),
        'quote_currency': _text(instrument.get('quote_currency')),
        'quantity': str(holding.quantity),
        'average_cost': str(holding.average_cost),
        'total_invested': str(holding.total_invested),
        'last_price': _text(holding.last_price),
        'last_price_at': format_timestamp(holding.last_price_at),
        'market_value': _text(market_value),
        'created_at': format_timestamp(holding.created_at),
        'assumed_annual_growth_pct': _text(instrument.get('assumed_annual_growth_pct')),
        'acquired_at': _text(instrument.get('acquired_at')),
        'description': _text(instrument.get('description')),
    }


def _transaction_row(transaction: Transaction) -> Dict[str, str]:
    data = transaction.to_dict()
    return {column: _text(data.get(column)) for column in TRANSACTION_CSV_COLUMNS}


def _instrument_row(instrument: Instrument) -> Dict[str, str]:
    data = instrument.to_dict()
    return {column: _text(data.get(column)) for column in INSTRUMENT_CSV_COLUMNS}


def _table_to_csv(rows: List[Dict[str, str]], columns: List[str]) -> str:
    df = pd.DataFrame(rows, columns=columns)
    return df.to_csv(index=False, lineterminator='\n').rstrip('\n')


def export_ledger(state: LedgerState,
                  display_currency: str = DEFAULT_DISPLAY_CURRENCY,
                  exchange_rate: Decimal = DEFAULT_USD_IDR_RATE,
                  prices: Optional[Mapping[str, Decimal]] = None) -> str:
    """Serialize a ledger snapshot to the export text format.

    Args:
        state: Snapshot to export
        display_currency: Display currency recorded in the metadata line
        exchange_rate: Reference-to-display rate recorded in the metadata line
        prices: Optional current prices by instrument id, used for the
            market_value column (falls back to each holding's last price)

    Returns:
        Export text
    """
    prices = prices or {}
    held_ids = {h.instrument_id for h in state.holdings}

    holdings_csv = _table_to_csv(
        [_holding_row(h, prices.get(h.instrument_id)) for h in state.holdings],
        HOLDING_CSV_COLUMNS,
    )
    transactions_csv = _table_to_csv(
        [_transaction_row(t) for t in sorted(state.transactions, key=lambda t: t.sort_key)],
        TRANSACTION_CSV_COLUMNS,
    )
    instruments_csv = _table_to_csv(
        [_instrument_row(i) for i in state.instruments if i.id not in held_ids],
        INSTRUMENT_CSV_COLUMNS,
    )

    metadata = {
        'realized_pnl': str(state.realized_pnl),
        'display_currency': display_currency,
        'exchange_rate': str(exchange_rate),
        'cash_balance': _text(state.cash_balance),
        'total_deposited': str(state.total_deposited),
        'next_sequence': str(state.next_sequence),
        'exported_at': format_timestamp(utc_now()),
    }
    metadata_line = ','.join(f"{key}={value}" for key, value in metadata.items())

    return (
        f"# {SECTION_HOLDINGS}\n{holdings_csv}\n\n"
        f"# {SECTION_TRANSACTIONS}\n{transactions_csv}\n\n"
        f"# {SECTION_INSTRUMENTS}\n{instruments_csv}\n\n"
        f"# {SECTION_METADATA} {metadata_line}\n"
    )


def _split_sections(text: str) -> Tuple[Dict[str, List[str]], Dict[str, str]]:
    sections: Dict[str, List[str]] = {}
    metadata: Dict[str, str] = {}
    mode: Optional[str] = None
    # Inside a quoted field a line starting with '#' is data, not a header
    in_quotes = False

    for raw_line in text.split('\n'):
        line = raw_line.strip()
        if not in_quotes and line.startswith('#'):
            header = line.lstrip('#').strip()
            name = header.split(' ', 1)[0].lower()
            if name == 'assets':
                name = SECTION_HOLDINGS
            if name == SECTION_METADATA:
                mode = None
                rest = header[len(SECTION_METADATA):].strip()
                for pair in rest.split(','):
                    if '=' in pair:
                        key, value = pair.split('=', 1)
                        metadata[key.strip()] = value.strip()
                continue
            mode = name if name in (SECTION_HOLDINGS, SECTION_TRANSACTIONS, SECTION_INSTRUMENTS) else None
            if mode:
                sections.setdefault(mode, [])
            continue
        if mode is not None:
            sections[mode].append(raw_line)
            if raw_line.count('"') % 2:
                in_quotes = not in_quotes

    return sections, metadata


def _read_table(lines: List[str], aliases: Mapping[str, str]) -> List[Dict[str, str]]:
    body = '\n'.join(lines).strip()
    if not body:
        return []
    try:
        df = pd.read_csv(io.StringIO(body), dtype=str, keep_default_na=False)
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise DataValidationError(f"Malformed CSV table: {e}") from e
    df.columns = [str(c).strip() for c in df.columns]
    df = df.rename(columns={k: v for k, v in aliases.items() if v not in df.columns})
    return df.to_dict(orient='records')


def _holding_from_row(row: Dict[str, str]) -> Optional[Holding]:
    try:
        instrument = instrument_from_dict(row)
    except (ValueError, ArithmeticError) as e:
        raise DataValidationError(f"Invalid holding row {row.get('id')!r}: {e}") from e

    quantity = _decimal(row.get('quantity'), 'quantity', Decimal('0'))
    if quantity < 0:
        raise DataValidationError(f"Holding {instrument.id} has negative quantity {quantity}")
    if quantity == 0:
        logger.warning(f"Skipping holding {instrument.id} with zero quantity")
        return None

    average_cost = _decimal(row.get('average_cost'), 'average_cost')
    total_invested = _decimal(row.get('total_invested'), 'total_invested')
    if average_cost is None and total_invested is None:
        raise DataValidationError(f"Holding {instrument.id} has neither average_cost nor total_invested")
    if average_cost is None:
        average_cost = total_invested / quantity
    expected_invested = quantity * average_cost
    if total_invested is None or abs(total_invested - expected_invested) > FLOAT_TOLERANCE:
        if total_invested is not None:
            logger.warning(f"Holding {instrument.id}: total_invested {total_invested} does not match "
                           f"quantity x average_cost; using {expected_invested}")
        total_invested = expected_invested

    try:
        created_at = parse_timestamp(row.get('created_at'), default=utc_now())
        last_price_at = parse_timestamp(row.get('last_price_at'))
    except ValueError as e:
        raise DataValidationError(f"Invalid timestamp on holding {instrument.id}: {e}") from e

    return Holding(
        instrument=instrument,
        quantity=quantity,
        average_cost=average_cost,
        total_invested=total_invested,
        created_at=created_at,
        last_price=_decimal(row.get('last_price'), 'last_price'),
        last_price_at=last_price_at,
    )


def _transaction_from_row(row: Dict[str, str], position: int) -> Transaction:
    data: Dict[str, Any] = dict(row)
    quantity = _decimal(row.get('quantity'), 'quantity', Decimal('0'))
    price = _decimal(row.get('price_per_unit'), 'price_per_unit', Decimal('0'))
    if not _text(row.get('gross_amount')).strip():
        # Older exports split the gross amount into cost/proceeds columns
        legacy_gross = _text(row.get('cost')).strip() or _text(row.get('proceeds')).strip()
        data['gross_amount'] = legacy_gross or str(quantity * price)
    if not _text(row.get('sequence')).strip():
        data['sequence'] = position
    _decimal(data.get('gross_amount'), 'gross_amount')
    _decimal(row.get('realized_pnl'), 'realized_pnl')
    _decimal(row.get('cost_basis'), 'cost_basis')

    try:
        return Transaction.from_dict(data)
    except (ValueError, ArithmeticError) as e:
        raise DataValidationError(f"Invalid transaction row {row.get('id')!r}: {e}") from e


def import_ledger(text: str) -> Tuple[LedgerState, Dict[str, str]]:
    """Parse export text back into a ledger snapshot.

    Args:
        text: Export text produced by ``export_ledger`` (older browser
            exports with an ``# assets`` section are accepted too)

    Returns:
        Tuple of (LedgerState, metadata dictionary)

    Raises:
        DataValidationError: If the text is not a valid export
    """
    sections, metadata = _split_sections(text)
    if SECTION_HOLDINGS not in sections and SECTION_TRANSACTIONS not in sections:
        raise DataValidationError("No holdings or transactions section found in import data")

    holdings: List[Holding] = []
    for row in _read_table(sections.get(SECTION_HOLDINGS, []), _LEGACY_HOLDING_COLUMNS):
        holding = _holding_from_row(row)
        if holding is not None:
            holdings.append(holding)

    ids = [h.instrument_id for h in holdings]
    if len(ids) != len(set(ids)):
        raise DataValidationError("Duplicate instrument ids in holdings table")

    transactions = [
        _transaction_from_row(row, position)
        for position, row in enumerate(
            _read_table(sections.get(SECTION_TRANSACTIONS, []), _LEGACY_TRANSACTION_COLUMNS), start=1)
    ]
    tx_ids = [t.transaction_id for t in transactions]
    if len(tx_ids) != len(set(tx_ids)):
        raise DataValidationError("Duplicate transaction ids in transactions table")

    instruments: List[Instrument] = [h.instrument for h in holdings]
    for row in _read_table(sections.get(SECTION_INSTRUMENTS, []), {}):
        try:
            instruments.append(instrument_from_dict(row))
        except (ValueError, ArithmeticError) as e:
            raise DataValidationError(f"Invalid instrument row {row.get('id')!r}: {e}") from e

    realized_pnl = _decimal(metadata.get('realized_pnl'), 'realized_pnl')
    if realized_pnl is None:
        realized_pnl = sum((t.realized_pnl or Decimal('0') for t in transactions
                            if t.is_sell() and not t.is_reversed), Decimal('0'))

    if 'cash_balance' in metadata:
        cash_balance = _decimal(metadata.get('cash_balance'), 'cash_balance')
    else:
        cash_balance = Decimal('0')

    next_sequence = _decimal(metadata.get('next_sequence'), 'next_sequence')
    if next_sequence is None:
        next_sequence = Decimal(max((t.sequence for t in transactions), default=0) + 1)

    state = LedgerState(
        holdings=holdings,
        transactions=transactions,
        realized_pnl=realized_pnl,
        cash_balance=cash_balance,
        total_deposited=_decimal(metadata.get('total_deposited'), 'total_deposited', Decimal('0')),
        next_sequence=int(next_sequence),
        instruments=instruments,
    )
    logger.info(f"Imported {len(holdings)} holdings and {len(transactions)} transactions")
    return state, metadata


class CSVRepository(BaseRepository):
    """Repository that stores the ledger in the export format.

    Useful for keeping a human-readable ledger under version control. The
    display currency and exchange rate are only recorded in the metadata
    line; they do not affect the stored amounts.
    """

    def __init__(self, path: str, display_currency: str = DEFAULT_DISPLAY_CURRENCY,
                 exchange_rate: Decimal = DEFAULT_USD_IDR_RATE):
        """Initialize CSV repository.

        Args:
            path: Path of the CSV ledger file
            display_currency: Currency written to the metadata line
            exchange_rate: Exchange rate written to the metadata line
        """
        if not path:
            raise ValueError("path is required for CSVRepository")
        self.path = Path(path)
        self.display_currency = display_currency
        self.exchange_rate = Decimal(str(exchange_rate))

    def describe(self) -> str:
        return f"CSV file {self.path}"

    def save(self, state: LedgerState) -> None:
        text = export_ledger(state, self.display_currency, self.exchange_rate)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp",
                                            dir=str(self.path.parent))
            try:
                with os.fdopen(fd, 'w', encoding='utf-8', newline='') as f:
                    f.write(text)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            logger.error(f"Failed to save ledger to {self.path}: {e}")
            raise PersistenceError(f"Failed to save ledger to {self.path}: {e}") from e
        state.saved_at = utc_now()

    def load(self) -> Optional[LedgerState]:
        if not self.path.exists():
            logger.info(f"Ledger file does not exist yet: {self.path}")
            return None
        try:
            text = self.path.read_text(encoding='utf-8')
        except OSError as e:
            raise PersistenceError(f"Failed to read ledger file {self.path}: {e}") from e
        state, _ = import_ledger(text)
        return state

    def clear(self) -> None:
        try:
            if self.path.exists():
                self.path.unlink()
        except OSError as e:
            raise PersistenceError(f"Failed to remove ledger file {self.path}: {e}") from e
