"""Runtime configuration for TradeTrace perpetuals reconstruction."""

import os

from pydantic import BaseModel

# Solana RPC
SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com")
RPC_TIMEOUT_SECONDS = float(os.getenv("RPC_TIMEOUT_SECONDS", "30"))

# Perpetuals program accounts
PERPETUALS_PROGRAM_ID = "PERPHjGBqRHArX4DySjwM6UJHiR3sWAatqfdBS2qQJu"
JLP_POOL_ACCOUNT = "5BUwFW4nRbftYTDMbgxykoFWqWHPzahFSNAaaaJtVKsq"

# Fixed-point scales
USD_DECIMALS = 6
BPS_POWER = 10_000
RATE_POWER = 1_000_000_000
LAMPORTS_PER_SOL = 1_000_000_000

# Pagination
PAGE_SIZE = int(os.getenv("PAGE_SIZE", "100"))
MAX_RECORDS_PER_IDENTIFIER = int(os.getenv("MAX_RECORDS_PER_IDENTIFIER", "1000"))

# Mandatory pauses between requests (seconds)
PAGE_DELAY_SECONDS = float(os.getenv("PAGE_DELAY_SECONDS", "5"))
RECORD_DELAY_SECONDS = float(os.getenv("RECORD_DELAY_SECONDS", "5"))
IDENTIFIER_DELAY_SECONDS = float(os.getenv("IDENTIFIER_DELAY_SECONDS", "10"))

# Retry / backoff
MAX_RETRIES = 5
BACKOFF_INITIAL_SECONDS = 0.5
BACKOFF_FACTOR = 2.0
BACKOFF_JITTER = (0.85, 1.15)
RECORD_BACKOFF_CEILING_SECONDS = 10.0
PAGE_BACKOFF_CEILING_SECONDS = 15.0

# Storage (both optional)
REDIS_URL = os.getenv("REDIS_URL")
DATABASE_URL = os.getenv("DATABASE_URL")

# Custody account -> asset symbol
CUSTODY_SYMBOLS = {
    "7xS2gz2bTp3fwCC7knJvUWTEU9Tycczu6VhJYKgi1wdz": "SOL",
    "AQCGyheWPLeo6Qp9WpYS9m3Qj479t7R636N9ey1rEjEn": "ETH",
    "5Pv3gM9JrFFH883SWAhvJC9RPYmo8UNxuFtv5bMMALkm": "BTC",
    "G18jKKXQwBbrHeiK3C9MRXhkHsLHf7XgCSisykV46EZa": "USDC",
    "4vkNeXiYEUizLdrpdPS1eC2mccyM4NUPRtERrk6ZETkk": "USDT",
}

# Numeric enum lookups. Values were inferred from observed events, not from a
# published schema, so anything outside these tables is reported as UNKNOWN.
SIDE_VALUES = {1: "long", 2: "short"}
REQUEST_TYPE_VALUES = {0: "market", 1: "trigger"}
REQUEST_CHANGE_VALUES = {1: "increase", 2: "decrease"}


class BackoffPolicy(BaseModel):
    max_retries: int = MAX_RETRIES
    initial_delay: float = BACKOFF_INITIAL_SECONDS
    factor: float = BACKOFF_FACTOR
    jitter_low: float = BACKOFF_JITTER[0]
    jitter_high: float = BACKOFF_JITTER[1]
    max_delay: float = RECORD_BACKOFF_CEILING_SECONDS


class IngestionSettings(BaseModel):
    """Per-run ingestion knobs. Defaults mirror the module constants."""
    page_size: int = PAGE_SIZE
    max_records_per_identifier: int = MAX_RECORDS_PER_IDENTIFIER
    page_delay: float = PAGE_DELAY_SECONDS
    record_delay: float = RECORD_DELAY_SECONDS
    identifier_delay: float = IDENTIFIER_DELAY_SECONDS
    page_backoff: BackoffPolicy = BackoffPolicy(max_delay=PAGE_BACKOFF_CEILING_SECONDS)
    record_backoff: BackoffPolicy = BackoffPolicy(max_delay=RECORD_BACKOFF_CEILING_SECONDS)
