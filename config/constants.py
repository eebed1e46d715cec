"""System constants and default values."""

from decimal import Decimal

# File paths and names
DEFAULT_DATA_DIR = "ledger_data"
LEDGER_JSON_NAME = "ledger.json"
LEDGER_CSV_NAME = "ledger_export.csv"
PRICE_CACHE_JSON_NAME = "price_cache.json"
EXPORT_FILE_PREFIX = "bloomboard_export"

# Storage keys inside the ledger JSON document
STORAGE_KEY_ASSETS = "assets"
STORAGE_KEY_TRANSACTIONS = "transactions"
STORAGE_KEY_REALIZED = "realized"
STORAGE_KEY_BALANCE = "balance"
STORAGE_KEY_DEPOSITS = "deposits"
STORAGE_KEY_META = "meta"
STORAGE_FORMAT_VERSION = 1

# Currency configuration
REFERENCE_CURRENCY = "USD"
DEFAULT_DISPLAY_CURRENCY = "IDR"
DEFAULT_USD_IDR_RATE = Decimal("16000")
CURRENCY_SYMBOLS = {
    "USD": "$",
    "IDR": "Rp.",
}

# Accounting tolerances
FLOAT_TOLERANCE = Decimal("0.000001")
QUANTITY_TOLERANCE = Decimal("0.000000001")

# Non-liquid growth model
DAYS_PER_YEAR = Decimal("365.25")
MICROSECONDS_PER_YEAR = DAYS_PER_YEAR * 24 * 60 * 60 * 1_000_000

# Market data configuration
DEFAULT_PRICE_TIMEOUT_SECONDS = 10
DEFAULT_PRICE_WORKERS = 4
DEFAULT_CACHE_TTL_MINUTES = 15
COINGECKO_API_URL = "https://api.coingecko.com/api/v3"
FINNHUB_API_URL = "https://finnhub.io/api/v1"
EXCHANGE_RATE_API_URL = "https://api.exchangerate-api.com/v4/latest"

# Equity series
DEFAULT_EQUITY_SAMPLES = 60

# Repository configuration
DEFAULT_REPOSITORY_TYPE = "json"

# Logging configuration
LOG_FILE = "bloomboard.log"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Version information
VERSION = "1.0.0"

# Export table columns
HOLDING_CSV_COLUMNS = [
    'id', 'kind', 'symbol', 'name', 'price_feed_key', 'quote_currency',
    'quantity', 'average_cost', 'total_invested', 'last_price', 'last_price_at', 'market_value',
    'created_at', 'assumed_annual_growth_pct', 'acquired_at', 'description'
]

TRANSACTION_CSV_COLUMNS = [
    'id', 'type', 'instrument_id', 'symbol', 'quantity', 'price_per_unit',
    'gross_amount', 'realized_pnl', 'cost_basis', 'timestamp', 'sequence',
    'currency', 'note', 'reversed_at'
]

# Error messages
ERROR_INVALID_QUANTITY = "Quantity must be greater than zero"
ERROR_INVALID_PRICE = "Price must be greater than zero"
ERROR_INVALID_AMOUNT = "Amount must be greater than zero"

# Warning messages
WARNING_STALE_PRICES = "Price data may be stale"
WARNING_PERSISTENCE_FAILED = "Ledger changes could not be saved"
