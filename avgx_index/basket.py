import math, os, logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from avgx_index import config
from avgx_index.config import load_weight_config
from avgx_index.errors import EmptyBasketError, FeedUnavailable, InvalidWeightsError
from avgx_index.feeds import fetch_latest_rates, fetch_simple_prices, with_retry
from avgx_index.store import HistoryStore, utcnow

logger = logging.getLogger(__name__)

Feed = Callable[[Sequence[str], Mapping], Mapping]


def _usable(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if math.isfinite(value) and value > 0 else None


@dataclass(frozen=True)
class AssetWeight:
    code: str
    name: str
    weight: float
    symbol: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Mapping) -> "AssetWeight":
        code = d.get("code") or d.get("id")
        if not code:
            raise ValueError(f"weight entry without code/id: {d!r}")
        weight = float(d.get("weight", 0))
        if not math.isfinite(weight) or weight < 0:
            raise ValueError(f"invalid weight for {code}: {weight}")
        return cls(code=str(code), name=str(d.get("name", code)), weight=weight, symbol=d.get("symbol"))


@dataclass(frozen=True)
class PricedAsset:
    code: str
    name: str
    weight: float
    value: float
    source: str = "live"            # "live" or "baseline"
    symbol: Optional[str] = None
    market_cap: Optional[float] = None
    change_24h: Optional[float] = None

    @classmethod
    def of(cls, asset: AssetWeight, value: float, source: str = "live", **extra) -> "PricedAsset":
        return cls(code=asset.code, name=asset.name, weight=asset.weight,
                   value=value, source=source, symbol=asset.symbol, **extra)


@dataclass(frozen=True)
class CacheCell:
    value: Tuple[PricedAsset, ...] = ()
    fetched_at: Optional[datetime] = None

    def is_fresh(self, now: datetime, window_seconds: float) -> bool:
        if self.fetched_at is None:
            return False
        return now - self.fetched_at < timedelta(seconds=window_seconds)


class BasketProvider:
    """
    Weighted basket backed by a live feed with baseline fallback.

    Per refresh, each configured asset is priced from the feed if it supplies
    a usable value, otherwise from the baseline's last-known value (flagged
    source="baseline"), otherwise it is left out and reported by
    get_missing_assets(). If the feed fails outright after retries, the whole
    basket is rebuilt from the baseline; without any baseline the
    FeedUnavailable is re-raised.
    """

    label = "assets"
    baseline_field = ""

    def __init__(
        self,
        weights: Union[Sequence[Mapping], str, Path],
        store: HistoryStore,
        feed: Feed,
        secrets: Optional[Mapping] = None,
        freshness_seconds: float = config.FRESHNESS_SECONDS,
        retry_attempts: int = config.RETRY_ATTEMPTS,
        retry_base_delay: float = config.RETRY_BASE_DELAY,
        retry_max_delay: float = config.RETRY_MAX_DELAY,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._weights_source = weights
        self.store = store
        self.feed = feed
        self.secrets = secrets if secrets is not None else os.environ
        self.freshness_seconds = freshness_seconds
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.sleep = sleep
        self.clock = clock
        self.assets: Optional[Tuple[AssetWeight, ...]] = None
        self._cell = CacheCell()

    # --- hooks ---
    def _requested_codes(self) -> List[str]:
        return [a.code for a in self.assets]

    def _intrinsic(self, asset: AssetWeight) -> Optional[float]:
        return None

    def _live(self, asset: AssetWeight, payload: Mapping) -> Tuple[Optional[float], Dict]:
        raise NotImplementedError

    def _unit_value(self, asset: PricedAsset) -> float:
        return asset.value

    # --- lifecycle ---
    def initialize(self) -> None:
        if self.assets is not None:
            return
        source = self._weights_source
        entries = load_weight_config(source) if isinstance(source, (str, Path)) else list(source or [])
        assets = []
        for entry in entries:
            try:
                assets.append(AssetWeight.from_dict(entry))
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring {self.label} config entry: {e}")
        self.assets = tuple(assets)
        logger.info(f"Loaded {len(self.assets)} {self.label} from config")

    @property
    def prices(self) -> List[PricedAsset]:
        return list(self._cell.value)

    @property
    def fetched_at(self) -> Optional[datetime]:
        return self._cell.fetched_at

    def get_weighted_prices_with_freshness(self) -> List[PricedAsset]:
        self.initialize()
        if self._cell.value and self._cell.is_fresh(self.clock(), self.freshness_seconds):
            return self.prices
        return self.refresh()

    def _baseline_prices(self) -> Optional[Dict[str, float]]:
        baseline = self.store.read_baseline() or {}
        prices = baseline.get(self.baseline_field)
        return prices if isinstance(prices, dict) and prices else None

    def refresh(self) -> List[PricedAsset]:
        self.initialize()
        baseline_prices = self._baseline_prices() or {}
        try:
            payload = with_retry(
                lambda: self.feed(self._requested_codes(), self.secrets),
                max_attempts=self.retry_attempts,
                base_delay=self.retry_base_delay,
                max_delay=self.retry_max_delay,
                sleep=self.sleep,
            )
        except FeedUnavailable as e:
            return self._fall_back_to_baseline(baseline_prices, e)

        priced, missing = [], []
        for asset in self.assets:
            value, extra = self._intrinsic(asset), {}
            if value is None:
                value, extra = self._live(asset, payload)
            if value is not None:
                priced.append(PricedAsset.of(asset, value, **extra))
                continue
            fallback = _usable(baseline_prices.get(asset.code))
            if fallback is not None:
                logger.warning(f"Using baseline value for {asset.code}: {fallback}")
                priced.append(PricedAsset.of(asset, fallback, source="baseline"))
            else:
                missing.append(asset.code)

        if missing:
            logger.warning(f"Missing {self.label}: {', '.join(missing)}")
        self._cell = CacheCell(tuple(priced), self.clock())
        live = {p.code: p.value for p in priced if p.source == "live"}
        if live:
            self.store.merge_baseline_prices(self.baseline_field, live)
        logger.info(f"Fetched {self.label} for {len(priced)}/{len(self.assets)} entries")
        return self.prices

    def _fall_back_to_baseline(self, baseline_prices: Mapping, error: FeedUnavailable) -> List[PricedAsset]:
        if not baseline_prices:
            logger.error(f"{self.label} feed unavailable and no baseline to fall back on: {error}")
            raise error
        logger.warning(f"Falling back to baseline {self.label}: {error}")
        priced = []
        for asset in self.assets:
            value = self._intrinsic(asset)
            if value is None:
                value = _usable(baseline_prices.get(asset.code))
            if value is not None:
                priced.append(PricedAsset.of(asset, value, source="baseline"))
        # fetched_at stays unset so the next read retries the feed
        self._cell = CacheCell(tuple(priced), None)
        return self.prices

    # --- accessors ---
    def get_weighted_average(self) -> float:
        assets = self.prices
        if not assets:
            raise EmptyBasketError(f"No {self.label} data available")
        total_weight = sum(a.weight for a in assets)
        if total_weight == 0:
            raise InvalidWeightsError(f"Invalid {self.label} weights (total is zero)")
        return sum(self._unit_value(a) * a.weight for a in assets) / total_weight

    def get_missing_assets(self) -> List[str]:
        self.initialize()
        cached = {p.code for p in self._cell.value}
        return [a.code for a in self.assets if a.code not in cached]


class FiatBasket(BasketProvider):
    """Fiat currencies quoted per 1 USD; averaged in USD terms (1/rate)."""

    label = "fiat currencies"
    baseline_field = "fiat_rates"

    def __init__(self, weights=None, store=None, feed: Optional[Feed] = None, **kwargs):
        super().__init__(
            config.FIAT_BASKET if weights is None else weights,
            store,
            feed or fetch_latest_rates,
            **kwargs,
        )

    def _requested_codes(self):
        return [a.code for a in self.assets if a.code != "USD"]

    def _intrinsic(self, asset):
        return 1.0 if asset.code == "USD" else None

    def _live(self, asset, payload):
        return _usable(payload.get(asset.code)), {}

    def _unit_value(self, asset):
        return 1.0 / asset.value


class CryptoBasket(BasketProvider):
    label = "cryptocurrencies"
    baseline_field = "crypto_prices"

    def __init__(self, weights=None, store=None, feed: Optional[Feed] = None, **kwargs):
        super().__init__(
            config.CRYPTO_BASKET if weights is None else weights,
            store,
            feed or fetch_simple_prices,
            **kwargs,
        )

    def _live(self, asset, payload):
        obj = payload.get(asset.code)
        if not isinstance(obj, Mapping):
            return None, {}
        extra = {
            "market_cap": _usable(obj.get("market_cap")),
            "change_24h": obj.get("change_24h") if isinstance(obj.get("change_24h"), (int, float)) else None,
        }
        return _usable(obj.get("price")), extra
