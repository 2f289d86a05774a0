"""Configuration loaded from environment variables."""

import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("true", "1", "yes")


# --- Environment ---
APP_ENV: str = os.getenv("APP_ENV", "development").lower()
IS_PRODUCTION: bool = APP_ENV == "production"

# --- Kill switches ---
# Default to disabled in production unless explicitly switched on.
TRADING_ENABLED: bool = _env_bool("TRADING_ENABLED", not IS_PRODUCTION)
ARBITRAGE_ENABLED: bool = _env_bool("ARBITRAGE_ENABLED", not IS_PRODUCTION)
SETTLEMENT_ENABLED: bool = _env_bool("SETTLEMENT_ENABLED", not IS_PRODUCTION)
POLYMARKET_ENABLED: bool = _env_bool("POLYMARKET_ENABLED", True)
KALSHI_ENABLED: bool = _env_bool("KALSHI_ENABLED", True)

# --- Trade limits (CRwN, 1 CRwN ~ $1) ---
MAX_SINGLE_TRADE: float = float(os.getenv("MAX_SINGLE_TRADE", "1000"))
MAX_DAILY_VOLUME: float = float(os.getenv("MAX_DAILY_VOLUME", "5000"))
# Minimum potential profit (%) an opportunity must still show at execution
MIN_PROFIT_MARGIN_PCT: float = float(os.getenv("MIN_PROFIT_MARGIN_PCT", "2.0"))

# --- Monitoring budgets ---
FILL_POLL_INTERVAL_S: float = float(os.getenv("FILL_POLL_INTERVAL_S", "5"))
MAX_FILL_ATTEMPTS: int = int(os.getenv("MAX_FILL_ATTEMPTS", "60"))
RESOLUTION_POLL_INTERVAL_S: float = float(os.getenv("RESOLUTION_POLL_INTERVAL_S", "5"))
# 720 * 5s = 1 hour, after which a scheduled job settles out of band
MAX_RESOLUTION_ATTEMPTS: int = int(os.getenv("MAX_RESOLUTION_ATTEMPTS", "720"))

# --- Circuit breaker ---
CIRCUIT_BREAKER_THRESHOLD: int = int(os.getenv("CIRCUIT_BREAKER_THRESHOLD", "5"))
CIRCUIT_BREAKER_COOLDOWN_S: float = float(os.getenv("CIRCUIT_BREAKER_COOLDOWN_S", "60"))
CIRCUIT_BREAKER_BACKOFF: float = float(os.getenv("CIRCUIT_BREAKER_BACKOFF", "2.0"))
CIRCUIT_BREAKER_MAX_COOLDOWN_S: float = float(os.getenv("CIRCUIT_BREAKER_MAX_COOLDOWN_S", "600"))

# --- Rate limits (requests per window) ---
POLY_RATE_LIMIT: int = int(os.getenv("POLY_RATE_LIMIT", "100"))
KALSHI_RATE_LIMIT: int = int(os.getenv("KALSHI_RATE_LIMIT", "50"))
RATE_LIMIT_WINDOW_S: float = float(os.getenv("RATE_LIMIT_WINDOW_S", "60"))
# Warn once remaining quota drops below this fraction of the limit
RATE_LIMIT_LOW_WATER: float = float(os.getenv("RATE_LIMIT_LOW_WATER", "0.2"))

# --- HTTP ---
HTTP_TIMEOUT_S: float = float(os.getenv("HTTP_TIMEOUT_S", "15"))

# --- Polymarket credentials ---
POLY_PRIVATE_KEY: str = os.getenv("POLY_PRIVATE_KEY", "")
POLY_SIGNATURE_TYPE: int = int(os.getenv("POLY_SIGNATURE_TYPE", "0"))
POLY_FUNDER_ADDRESS: str = os.getenv("POLY_FUNDER_ADDRESS", "")
POLY_CHAIN_ID: int = int(os.getenv("POLY_CHAIN_ID", "137"))

# --- Kalshi credentials ---
KALSHI_API_KEY_ID: str = os.getenv("KALSHI_API_KEY_ID", "")
# PEM text; literal "\n" sequences are accepted
KALSHI_PRIVATE_KEY: str = os.getenv("KALSHI_PRIVATE_KEY", "")
KALSHI_PRIVATE_KEY_PATH: str = os.getenv("KALSHI_PRIVATE_KEY_PATH", "")

# --- Persistence ---
TRADE_STATE_FILE: str = os.getenv("TRADE_STATE_FILE", "trade_state.json")
ESCROW_STATE_FILE: str = os.getenv("ESCROW_STATE_FILE", "escrow_state.json")

# --- Logging ---
LOG_DIR: str = os.getenv("LOG_DIR", "logs")

# --- API endpoints ---
POLY_CLOB_BASE: str = os.getenv("POLY_CLOB_BASE", "https://clob.polymarket.com")
KALSHI_API_BASE: str = os.getenv(
    "KALSHI_API_BASE", "https://api.elections.kalshi.com/trade-api/v2"
)
