import time, logging, requests
from typing import Callable, Dict, Iterable, Mapping, Optional, TypeVar

from avgx_index import config
from avgx_index.errors import FeedUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _cg_base_and_headers(secrets):
    key = secrets.get("COINGECKO_API_KEY", "")
    base = secrets.get("COINGECKO_BASE", config.COINGECKO_BASE)
    headers = {"x-cg-pro-api-key": key} if key else {}
    return base, headers


def _get_json(url, headers=None, params=None, timeout=config.REQUEST_TIMEOUT):
    try:
        r = requests.get(url, headers=headers or {}, params=params, timeout=timeout)
    except requests.RequestException as e:
        raise FeedUnavailable(f"request to {url} failed: {e}") from e
    if r.status_code != 200:
        raise FeedUnavailable(f"{url} returned HTTP {r.status_code}")
    try:
        return r.json()
    except ValueError as e:
        raise FeedUnavailable(f"{url} returned a malformed body") from e


def fetch_simple_prices(ids: Iterable[str], secrets: Mapping) -> Dict[str, Dict]:
    """Fetch USD prices via CoinGecko /simple/price.

    Returns {id: {"price", "market_cap", "change_24h"}} for every id in the
    response. Entries are passed through as-is; callers decide whether a
    price is usable.
    """
    ids = sorted(set([cid for cid in ids if cid]))
    if not ids:
        return {}
    base, headers = _cg_base_and_headers(secrets)
    params = {
        "ids": ",".join(ids),
        "vs_currencies": "usd",
        "include_market_cap": "true",
        "include_24hr_change": "true",
    }
    data = _get_json(f"{base}/simple/price", headers=headers, params=params)
    if not isinstance(data, dict):
        raise FeedUnavailable("Invalid CoinGecko response structure")
    out = {}
    for cid, obj in data.items():
        if not isinstance(obj, dict):
            continue
        out[cid] = {
            "price": obj.get("usd"),
            "market_cap": obj.get("usd_market_cap"),
            "change_24h": obj.get("usd_24h_change"),
        }
    return out


def fetch_latest_rates(codes: Iterable[str], secrets: Mapping) -> Dict[str, object]:
    """Fetch latest fiat rates (units per 1 USD) from exchangerate.host."""
    codes = sorted(set([c for c in codes if c]))
    if not codes:
        return {}
    base = secrets.get("EXCHANGERATE_BASE", config.EXCHANGERATE_BASE)
    params = {"base": "USD", "symbols": ",".join(codes)}
    key = secrets.get("EXCHANGERATE_API_KEY", "")
    if key:
        params["access_key"] = key
    data = _get_json(f"{base}/latest", params=params)
    if not isinstance(data, dict) or not isinstance(data.get("rates"), dict):
        raise FeedUnavailable("Invalid exchange rate response structure")
    return dict(data["rates"])


def with_retry(
    fn: Callable[[], T],
    max_attempts: int = config.RETRY_ATTEMPTS,
    base_delay: float = config.RETRY_BASE_DELAY,
    max_delay: float = config.RETRY_MAX_DELAY,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """Call fn, retrying FeedUnavailable with capped exponential backoff.

    Delays are base_delay * 2**(attempt-1), capped at max_delay. The last
    failure is re-raised once attempts are exhausted.
    """
    sleep = sleep or time.sleep
    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except FeedUnavailable as e:
            if attempt >= max_attempts:
                raise
            delay = min(base_delay * 2 ** (attempt - 1), max_delay)
            logger.warning(f"Attempt {attempt} failed, retrying in {delay:.1f}s: {e}")
            sleep(delay)
    raise FeedUnavailable("no attempts made")
