"""Application configuration."""

import os
from pathlib import Path
from typing import Any, Dict, Tuple

from dotenv import load_dotenv


class ConfigError(ValueError):
    """Fatal configuration problem detected at startup."""


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_BOT_ENV_FILE = os.getenv("BOT_ENV_FILE", "").strip()
if _BOT_ENV_FILE:
    _bot_env_path = Path(_BOT_ENV_FILE).expanduser()
    if not _bot_env_path.is_absolute():
        _bot_env_path = (Path.cwd() / _bot_env_path).resolve()
    if not _bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {_bot_env_path}")
    if not _bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {_bot_env_path}")
    try:
        _load_dotenv_safe(str(_bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{_bot_env_path}': {exc}") from exc


def _parse_source_rate_limits(raw: str) -> Dict[str, Tuple[int, float]]:
    out: Dict[str, Tuple[int, float]] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, rate_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source or "/" not in rate_part:
            continue
        count_part, window_part = rate_part.split("/", 1)
        try:
            count = max(1, int(float(count_part.strip())))
            window_seconds = max(1.0, float(window_part.strip()))
        except ValueError:
            continue
        out[source] = (count, window_seconds)
    return out


def _parse_source_float_map(raw: str) -> Dict[str, float]:
    out: Dict[str, float] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, value_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source:
            continue
        try:
            out[source] = max(0.0, float(value_part.strip()))
        except ValueError:
            continue
    return out


def _resolve_path(raw: str) -> str:
    path = Path(str(raw or "").strip()).expanduser()
    if not path.is_absolute():
        path = (APP_ROOT / path).resolve()
    return str(path)


APP_ROOT = Path(os.getenv("APP_ROOT", "") or Path.cwd()).expanduser().resolve()

# Runtime mode and endpoints.
MODE = os.getenv("MODE", "paper").strip().lower() or "paper"
RPC_URL = os.getenv("RPC_URL", "").strip()
RPC_TIMEOUT_SECONDS = max(1.0, float(os.getenv("RPC_TIMEOUT_SECONDS", "20")))
WALLET_KEYPAIR_PATH = os.getenv("WALLET_KEYPAIR_PATH", "").strip()
if WALLET_KEYPAIR_PATH:
    WALLET_KEYPAIR_PATH = _resolve_path(WALLET_KEYPAIR_PATH)
HELIUS_API_KEY = os.getenv("HELIUS_API_KEY", "").strip()
HELIUS_RPC_URL_TEMPLATE = os.getenv(
    "HELIUS_RPC_URL_TEMPLATE",
    "https://mainnet.helius-rpc.com/?api-key={api_key}",
)
JUPITER_BASE_URL = os.getenv("JUPITER_BASE_URL", "https://lite-api.jup.ag/swap/v1").strip().rstrip("/")
GECKO_TERMINAL_BASE_URL = (
    os.getenv("GECKO_TERMINAL_BASE_URL", "https://api.geckoterminal.com/api/v2").strip().rstrip("/")
)
GECKO_NETWORK = os.getenv("GECKO_NETWORK", "solana").strip().lower() or "solana"

# Sizing and exposure caps.
TRADE_SIZE_SOL = float(os.getenv("TRADE_SIZE_SOL", "0.02"))
TRADE_SIZE_SOL_MIN = float(os.getenv("TRADE_SIZE_SOL_MIN", "0.01"))
TRADE_SIZE_SOL_MAX = float(os.getenv("TRADE_SIZE_SOL_MAX", "0.03"))
DYNAMIC_POSITION_SIZING = os.getenv("DYNAMIC_POSITION_SIZING", "false").strip().lower() in (
    "1",
    "true",
    "yes",
    "y",
    "on",
)
MAX_SOL_AT_RISK = float(os.getenv("MAX_SOL_AT_RISK", "0.1"))
MAX_TRADES_PER_HOUR = int(os.getenv("MAX_TRADES_PER_HOUR", "3"))
TOKEN_COOLDOWN_MINUTES = max(0, int(os.getenv("TOKEN_COOLDOWN_MINUTES", "180")))
KILL_SWITCH_FILE_PATH = _resolve_path(os.getenv("KILL_SWITCH_FILE_PATH", "./KILL_SWITCH"))
FAILURE_CIRCUIT_BREAKER_N = max(1, int(os.getenv("FAILURE_CIRCUIT_BREAKER_N", "3")))
CIRCUIT_BREAKER_COOLDOWN_MINUTES = max(1, int(os.getenv("CIRCUIT_BREAKER_COOLDOWN_MINUTES", "30")))
CIRCUIT_BREAKER_PERSIST = os.getenv("CIRCUIT_BREAKER_PERSIST", "true").strip().lower() in (
    "1",
    "true",
    "yes",
    "y",
    "on",
)

# Candidate filters.
MIN_LIQUIDITY_SOL = max(0.0, float(os.getenv("MIN_LIQUIDITY_SOL", "8")))
MIN_MC_USD = max(0.0, float(os.getenv("MIN_MC_USD", "0")))
MAX_MC_USD = max(0.0, float(os.getenv("MAX_MC_USD", "5000000")))
MIN_HOLDER_COUNT = max(0, int(os.getenv("MIN_HOLDER_COUNT", "0")))
MIN_VOLUME_M5_USD = max(0.0, float(os.getenv("MIN_VOLUME_M5_USD", "0")))
SLIPPAGE_BPS = int(os.getenv("SLIPPAGE_BPS", "100"))
SCORE_THRESHOLD = float(os.getenv("SCORE_THRESHOLD", "70"))
AUTHORITY_POLICY = os.getenv("AUTHORITY_POLICY", "permissive").strip().lower() or "permissive"
PRICE_IMPACT_PCT_CAP = max(0.0, float(os.getenv("PRICE_IMPACT_PCT_CAP", "5")))
QUOTE_STABILITY_PCT_CAP = max(0.0, float(os.getenv("QUOTE_STABILITY_PCT_CAP", "8")))
FRESH_POOL_WINDOW_MINUTES = max(1, int(os.getenv("FRESH_POOL_WINDOW_MINUTES", "60")))
HOLDER_CHECK_TIMEOUT_SECONDS = max(0.05, float(os.getenv("HOLDER_CHECK_TIMEOUT_SECONDS", "0.6")))
AUTHORITY_CACHE_TTL_SECONDS = max(0, int(os.getenv("AUTHORITY_CACHE_TTL_SECONDS", "300")))

# Quote sampling and retries.
QUOTE_SAMPLE_COUNT = max(1, int(os.getenv("QUOTE_SAMPLE_COUNT", "3")))
QUOTE_SAMPLE_SPACING_SECONDS = max(0.0, float(os.getenv("QUOTE_SAMPLE_SPACING_SECONDS", "0.65")))
QUOTE_RETRY_ATTEMPTS = max(1, int(os.getenv("QUOTE_RETRY_ATTEMPTS", "3")))
QUOTE_RETRY_BACKOFF_SECONDS = max(0.0, float(os.getenv("QUOTE_RETRY_BACKOFF_SECONDS", "0.3")))
SELL_ROUTE_PROBE_ATTEMPTS = max(1, int(os.getenv("SELL_ROUTE_PROBE_ATTEMPTS", "2")))
SELL_ROUTE_PROBE_BACKOFF_SECONDS = max(0.0, float(os.getenv("SELL_ROUTE_PROBE_BACKOFF_SECONDS", "0.2")))

# Execution.
EXECUTION_MAX_ATTEMPTS = max(1, int(os.getenv("EXECUTION_MAX_ATTEMPTS", "3")))
EXECUTION_BACKOFF_SECONDS = max(0.0, float(os.getenv("EXECUTION_BACKOFF_SECONDS", "0.4")))
PRIORITY_FEE_LAMPORTS = max(0, int(os.getenv("PRIORITY_FEE_LAMPORTS", "0")))

# Exit policy (snapshotted into each position at open time).
TP1_PCT = float(os.getenv("TP1_PCT", "30"))
TP2_PCT = float(os.getenv("TP2_PCT", "80"))
TP3_PCT = float(os.getenv("TP3_PCT", "150"))
TP1_SELL_RATIO = float(os.getenv("TP1_SELL_RATIO", "0.5"))
TRAILING_STOP_PCT = max(0.0, float(os.getenv("TRAILING_STOP_PCT", "15")))
SL_PCT = float(os.getenv("SL_PCT", "25"))
TIME_STOP_MINUTES = int(os.getenv("TIME_STOP_MINUTES", "30"))

# Loop cadence and scanner.
BOT_POLL_SECONDS = int(os.getenv("BOT_POLL_SECONDS", "15"))
MAX_CANDIDATES_PER_SCAN = max(1, int(os.getenv("MAX_CANDIDATES_PER_SCAN", "4")))
MAX_SCAN_POOL_FETCH = max(1, int(os.getenv("MAX_SCAN_POOL_FETCH", "20")))
SCANNER_BACKOFF_BASE_SECONDS = max(1.0, float(os.getenv("SCANNER_BACKOFF_BASE_SECONDS", "20")))
SCANNER_BACKOFF_MAX_SECONDS = max(
    SCANNER_BACKOFF_BASE_SECONDS,
    float(os.getenv("SCANNER_BACKOFF_MAX_SECONDS", "300")),
)
SOL_PRICE_CACHE_SECONDS = max(1, int(os.getenv("SOL_PRICE_CACHE_SECONDS", "120")))
SOL_PRICE_FALLBACK_USD = max(0.0, float(os.getenv("SOL_PRICE_FALLBACK_USD", "120")))
SOL_PRICE_FALLBACK_TTL_SECONDS = max(1, int(os.getenv("SOL_PRICE_FALLBACK_TTL_SECONDS", "30")))
DATA_POLICY_DEGRADED_ERROR_PERCENT = max(1.0, float(os.getenv("DATA_POLICY_DEGRADED_ERROR_PERCENT", "35")))

# Shared HTTP client.
HTTP_CONNECTOR_LIMIT = max(1, int(os.getenv("HTTP_CONNECTOR_LIMIT", "30")))
HTTP_DEFAULT_CONCURRENCY = max(1, int(os.getenv("HTTP_DEFAULT_CONCURRENCY", "8")))
HTTP_TIMEOUT_SECONDS = max(1.0, float(os.getenv("HTTP_TIMEOUT_SECONDS", "10")))
HTTP_RETRY_ATTEMPTS = max(1, int(os.getenv("HTTP_RETRY_ATTEMPTS", "2")))
HTTP_BACKOFF_BASE_SECONDS = max(0.05, float(os.getenv("HTTP_BACKOFF_BASE_SECONDS", "0.30")))
HTTP_BACKOFF_MAX_SECONDS = max(0.10, float(os.getenv("HTTP_BACKOFF_MAX_SECONDS", "4.00")))
HTTP_JITTER_SECONDS = max(0.0, float(os.getenv("HTTP_JITTER_SECONDS", "0.15")))
HTTP_RATE_LIMIT_DELAY_SECONDS = max(0.0, float(os.getenv("HTTP_RATE_LIMIT_DELAY_SECONDS", "1.00")))
HTTP_429_COOLDOWN_SECONDS = max(0.0, float(os.getenv("HTTP_429_COOLDOWN_SECONDS", "5")))
HTTP_SOURCE_RATE_LIMITS = _parse_source_rate_limits(
    os.getenv(
        "HTTP_SOURCE_RATE_LIMITS",
        "geckoterminal:25/60,jupiter:60/60,helius:10/1",
    )
)
HTTP_SOURCE_429_COOLDOWNS = _parse_source_float_map(
    os.getenv(
        "HTTP_SOURCE_429_COOLDOWNS",
        "geckoterminal:0,jupiter:2,helius:0",
    )
)

# Persistence.
DB_PATH = _resolve_path(os.getenv("DB_PATH", "./data/autotrader.db"))
DATABASE_URL = os.getenv("DATABASE_URL", "").strip() or f"sqlite:///{DB_PATH}"

# Logging.
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")
LOG_TO_DB = os.getenv("LOG_TO_DB", "true").strip().lower() in ("1", "true", "yes", "y", "on")

_SECRET_KEYS = {"HELIUS_API_KEY", "RPC_URL", "DATABASE_URL"}


def _mask_secret(value: str) -> str:
    text = str(value or "")
    if len(text) <= 8:
        return "***" if text else ""
    return f"{text[:4]}***{text[-4:]}"


def snapshot() -> dict[str, Any]:
    """Public settings as a JSON-able dict, secrets masked."""
    out: dict[str, Any] = {}
    for key, value in sorted(globals().items()):
        if not key.isupper() or key.startswith("_"):
            continue
        if isinstance(value, Path):
            value = str(value)
        if isinstance(value, dict):
            value = {str(k): list(v) if isinstance(v, tuple) else v for k, v in value.items()}
        if not isinstance(value, (str, int, float, bool, dict, list)) and value is not None:
            continue
        if key in _SECRET_KEYS:
            value = _mask_secret(str(value))
        out[key] = value
    return out


def validate() -> None:
    """Raise ConfigError for settings the bot cannot start with."""
    errors: list[str] = []
    if not RPC_URL:
        errors.append("RPC_URL is required")
    if MODE not in ("paper", "live"):
        errors.append(f"MODE must be paper|live, got {MODE!r}")
    if MODE == "live" and not WALLET_KEYPAIR_PATH:
        errors.append("MODE=live requires WALLET_KEYPAIR_PATH")
    if AUTHORITY_POLICY not in ("strict", "permissive"):
        errors.append(f"AUTHORITY_POLICY must be strict|permissive, got {AUTHORITY_POLICY!r}")
    if BOT_POLL_SECONDS < 5:
        errors.append("BOT_POLL_SECONDS must be >= 5")
    for key in ("TRADE_SIZE_SOL", "MAX_SOL_AT_RISK", "MAX_TRADES_PER_HOUR", "SLIPPAGE_BPS"):
        if float(globals()[key]) <= 0:
            errors.append(f"{key} must be > 0")
    for key in ("TP1_PCT", "TP2_PCT", "TP3_PCT", "SL_PCT", "TIME_STOP_MINUTES"):
        if float(globals()[key]) <= 0:
            errors.append(f"{key} must be > 0")
    if not 0 <= SCORE_THRESHOLD <= 100:
        errors.append("SCORE_THRESHOLD must be 0..100")
    if not 0 < TP1_SELL_RATIO <= 1:
        errors.append("TP1_SELL_RATIO must be in (0, 1]")
    if DYNAMIC_POSITION_SIZING and TRADE_SIZE_SOL_MAX < TRADE_SIZE_SOL_MIN:
        errors.append("TRADE_SIZE_SOL_MAX must be >= TRADE_SIZE_SOL_MIN")
    if errors:
        raise ConfigError("; ".join(errors))
