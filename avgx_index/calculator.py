import logging, math, threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from avgx_index import config
from avgx_index.basket import BasketProvider, CryptoBasket, FiatBasket, PricedAsset
from avgx_index.config import StabilityConfig
from avgx_index.stability import SmoothedSample, clamp_change, compose, smooth_or_passthrough
from avgx_index.store import HistoryStore, IndexSample, JsonFileStore, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Calculation:
    timestamp: datetime
    wf_raw: float
    wc_raw: float
    smoothed: SmoothedSample
    avgx_raw: float
    avgx_final: float
    last: Optional[IndexSample]
    anchor: Optional[float]


class AvgxCalculator:
    """
    AVGX pipeline: baskets -> EWMA/volatility -> geometric mean -> clamp -> store.

    One instance per process is the single writer of its HistoryStore; a
    cycle runs to completion under an instance lock before the next starts.

    Every cycle publishes a value, but index history is only appended once per
    history interval. The clamp is therefore anchored to the baseline's
    avgx_value, rewritten each cycle, and falls back to the last index sample
    when the baseline has none.
    """

    def __init__(
        self,
        fiat: BasketProvider,
        crypto: BasketProvider,
        store: HistoryStore,
        stability: StabilityConfig = StabilityConfig(),
        history_interval_seconds: float = config.HISTORY_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.fiat = fiat
        self.crypto = crypto
        self.store = store
        self.stability = stability
        self.history_interval = timedelta(seconds=history_interval_seconds)
        self.clock = clock
        self._lock = threading.Lock()

    def _fetch_baskets(self) -> Tuple[List[PricedAsset], List[PricedAsset]]:
        with ThreadPoolExecutor(max_workers=2) as pool:
            fiat = pool.submit(self.fiat.get_weighted_prices_with_freshness)
            crypto = pool.submit(self.crypto.get_weighted_prices_with_freshness)
            return fiat.result(), crypto.result()

    def _calculate(self) -> Calculation:
        self._fetch_baskets()
        wf_raw = self.fiat.get_weighted_average()
        wc_raw = self.crypto.get_weighted_average()
        now = self.clock()

        smoothed = smooth_or_passthrough(
            wf_raw, wc_raw, self.store.smoothed_history(), self.stability, now
        )
        avgx_raw = compose(smoothed.wf_smoothed, smoothed.wc_adjusted)
        last = self.store.last_index_sample()
        anchor = self._last_published(last)
        avgx_final = clamp_change(avgx_raw, anchor, self.stability.clamp_percent)
        return Calculation(now, wf_raw, wc_raw, smoothed, avgx_raw, avgx_final, last, anchor)

    def _last_published(self, last: Optional[IndexSample]) -> Optional[float]:
        value = (self.store.read_baseline() or {}).get("avgx_value")
        if isinstance(value, (int, float)) and not isinstance(value, bool) \
                and math.isfinite(value) and value > 0:
            return float(value)
        return last.avgx_usd if last else None

    def _change_24h(self, value: float, now: datetime) -> float:
        window = list(self.store.read_history("24h", now))
        if not window or window[0].avgx_usd <= 0:
            return 0.0
        day_ago = window[0].avgx_usd
        return (value - day_ago) / day_ago * 100

    def _history_due(self, calc: Calculation) -> bool:
        return calc.last is None or calc.timestamp - calc.last.timestamp >= self.history_interval

    def compute_current_index(self) -> Dict:
        with self._lock:
            calc = self._calculate()
            change24h = self._change_24h(calc.avgx_final, calc.timestamp)

            self.store.append_smoothed_sample(calc.smoothed)
            if self._history_due(calc):
                self.store.append_index_sample(IndexSample(
                    timestamp=calc.timestamp,
                    avgx_usd=calc.avgx_final,
                    wf_value=calc.smoothed.wf_smoothed,
                    wc_value=calc.smoothed.wc_adjusted,
                ))
            self.store.write_baseline({
                "avgx_value": calc.avgx_final,
                "wf_value": calc.smoothed.wf_smoothed,
                "wc_value": calc.smoothed.wc_adjusted,
            })

        logger.info(
            f"AVGX calculated: ${calc.avgx_final:.4f} "
            f"(WF: {calc.smoothed.wf_smoothed:.4f}, WC: ${calc.smoothed.wc_adjusted:.2f}, "
            f"sigma: {calc.smoothed.volatility_index:.4f})"
        )
        return {
            "avgx_usd": calc.avgx_final,
            "wf_value": calc.smoothed.wf_smoothed,
            "wc_value": calc.smoothed.wc_adjusted,
            "change24h": change24h,
            "timestamp": calc.timestamp.isoformat(),
        }

    def get_detailed_breakdown(self) -> Dict:
        avgx = self.compute_current_index()
        return {
            "avgx": avgx,
            "fiat_basket": self.fiat.prices,
            "crypto_basket": self.crypto.prices,
        }

    def get_historical_data(self, timeframe: str = "24h") -> List[IndexSample]:
        return list(self.store.read_history(timeframe))

    def get_debug_info(self) -> Dict:
        """Intermediate values of the stability formula. Nothing is persisted."""
        with self._lock:
            calc = self._calculate()
        s = calc.smoothed
        return {
            "wf_raw": calc.wf_raw,
            "wf_smoothed": s.wf_smoothed,
            "wc_raw": calc.wc_raw,
            "wc_smoothed": s.wc_smoothed,
            "volatility_index": s.volatility_index,
            "wc_adjusted": s.wc_adjusted,
            "avgx_raw": calc.avgx_raw,
            "avgx_final": calc.avgx_final,
            "config": self.stability.as_dict(),
            "timestamp": calc.timestamp.isoformat(),
        }

    def convert_to_all_currencies(self, avgx: Optional[Mapping] = None) -> List[Dict]:
        """1 AVGX in every fiat of the basket.

        Pass the result of compute_current_index() to reuse it; otherwise a
        fresh cycle is run.
        """
        if avgx is None:
            avgx = self.compute_current_index()
        avgx_usd = avgx["avgx_usd"]
        return [
            {
                "currency": fiat.code,
                "name": fiat.name,
                "rate": fiat.value,
                "avgx_rate": avgx_usd * fiat.value,  # 1 AVGX in units of this currency
            }
            for fiat in self.fiat.prices
        ]

    def get_baseline_status(self) -> Dict:
        baseline = self.store.read_baseline() or {}
        self.fiat.initialize()
        self.crypto.initialize()
        return {
            "baseline_timestamp": baseline.get("timestamp"),
            "config": {
                "total_fiats": len(self.fiat.assets),
                "total_cryptos": len(self.crypto.assets),
            },
            "missing_data": {
                "fiat_currencies": self.fiat.get_missing_assets(),
                "cryptocurrencies": self.crypto.get_missing_assets(),
            },
            "baseline_values": {
                "avgx_value": baseline.get("avgx_value"),
                "wf_value": baseline.get("wf_value"),
                "wc_value": baseline.get("wc_value"),
            },
        }


def history_frame(samples: Sequence[IndexSample]) -> pd.DataFrame:
    cols = ["timestamp", "avgx_usd", "wf_value", "wc_value"]
    if not samples:
        return pd.DataFrame(columns=cols)
    df = pd.DataFrame([asdict(s) for s in samples], columns=cols)
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    return df


def basket_frame(assets: Sequence[PricedAsset]) -> pd.DataFrame:
    cols = ["code", "symbol", "name", "weight", "value", "source", "market_cap", "change_24h"]
    return pd.DataFrame([asdict(a) for a in assets], columns=cols)


def build_calculator(
    data_dir: Optional[Path] = None,
    secrets: Optional[Mapping] = None,
    fiat_weights=None,
    crypto_weights=None,
    stability: StabilityConfig = StabilityConfig(),
) -> AvgxCalculator:
    """Wire the default file-backed store and live feeds."""
    store = HistoryStore(JsonFileStore(data_dir or config.DATA_DIR))
    fiat = FiatBasket(fiat_weights, store, secrets=secrets)
    crypto = CryptoBasket(crypto_weights, store, secrets=secrets)
    return AvgxCalculator(fiat, crypto, store, stability=stability)
