import json, logging, os
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, List

logger = logging.getLogger(__name__)

# Rates are quoted as units of currency per 1 USD.
FIAT_BASKET = [
    {"code": "USD", "name": "US Dollar",          "weight": 0.20},
    {"code": "EUR", "name": "Euro",               "weight": 0.18},
    {"code": "CNY", "name": "Chinese Yuan",       "weight": 0.12},
    {"code": "JPY", "name": "Japanese Yen",       "weight": 0.10},
    {"code": "GBP", "name": "British Pound",      "weight": 0.08},
    {"code": "INR", "name": "Indian Rupee",       "weight": 0.07},
    {"code": "CAD", "name": "Canadian Dollar",    "weight": 0.05},
    {"code": "AUD", "name": "Australian Dollar",  "weight": 0.05},
    {"code": "CHF", "name": "Swiss Franc",        "weight": 0.05},
    {"code": "BRL", "name": "Brazilian Real",     "weight": 0.04},
    {"code": "KRW", "name": "South Korean Won",   "weight": 0.03},
    {"code": "SGD", "name": "Singapore Dollar",   "weight": 0.03},
]

CRYPTO_BASKET = [
    {"id": "bitcoin",      "symbol": "BTC",  "name": "Bitcoin",   "weight": 0.40},
    {"id": "ethereum",     "symbol": "ETH",  "name": "Ethereum",  "weight": 0.25},
    {"id": "binancecoin",  "symbol": "BNB",  "name": "BNB",       "weight": 0.08},
    {"id": "solana",       "symbol": "SOL",  "name": "Solana",    "weight": 0.08},
    {"id": "ripple",       "symbol": "XRP",  "name": "XRP",       "weight": 0.06},
    {"id": "cardano",      "symbol": "ADA",  "name": "Cardano",   "weight": 0.05},
    {"id": "chainlink",    "symbol": "LINK", "name": "Chainlink", "weight": 0.04},
    {"id": "avalanche-2",  "symbol": "AVAX", "name": "Avalanche", "weight": 0.04},
]

# Stability formula
ALPHA_F = 0.2
ALPHA_C = 0.1
V_TARGET = 0.10
CLAMP_PERCENT = 0.015
VOLATILITY_WINDOW = 30
ANNUALIZATION_DAYS = 365

# Basket refresh
FRESHNESS_SECONDS = 60
RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY = 1.0
RETRY_MAX_DELAY = 10.0
REQUEST_TIMEOUT = 20

COINGECKO_BASE = "https://api.coingecko.com/api/v3"
EXCHANGERATE_BASE = "https://api.exchangerate.host"

# Persistence
DATA_DIR = Path(os.environ.get("AVGX_DATA_DIR", "data"))
HISTORY_CAP = 720            # ~30 days of hourly samples
SMOOTHED_HISTORY_CAP = 100
HISTORY_INTERVAL_SECONDS = 3600

TIMEFRAMES = {"24h": 1, "7d": 7, "30d": 30}


@dataclass(frozen=True)
class StabilityConfig:
    alpha_f: float = ALPHA_F
    alpha_c: float = ALPHA_C
    v_target: float = V_TARGET
    clamp_percent: float = CLAMP_PERCENT
    volatility_window: int = VOLATILITY_WINDOW

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


def load_weight_config(path) -> List[Dict]:
    """Read a JSON list of basket weight entries.

    A missing or unreadable file is not fatal: the basket is treated as empty.
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Could not load weight config {path}: {e}")
        return []
    if not isinstance(data, list):
        logger.warning(f"Weight config {path} is not a list, ignoring")
        return []
    return data
