"""
Stability formula.

    AVGX(t) = sqrt( WF_smoothed(t) * WC_smoothed(t) * (1 - sigma_t) )

clamped to +/- clamp_percent of the previous published value. Everything in
here is pure computation; persistence is the caller's job.
"""
import math, logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Dict, Optional, Sequence

import numpy as np

from avgx_index.config import ANNUALIZATION_DAYS, StabilityConfig
from avgx_index.errors import DomainError

logger = logging.getLogger(__name__)


def parse_ts(value) -> datetime:
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class SmoothedSample:
    timestamp: datetime
    wf_smoothed: float
    wc_smoothed: float
    volatility_index: float
    wc_adjusted: float

    def to_dict(self) -> Dict:
        out = asdict(self)
        out["timestamp"] = self.timestamp.isoformat()
        return out

    @classmethod
    def from_dict(cls, d: Dict) -> "SmoothedSample":
        return cls(
            timestamp=parse_ts(d["timestamp"]),
            wf_smoothed=float(d["wf_smoothed"]),
            wc_smoothed=float(d["wc_smoothed"]),
            volatility_index=float(d["volatility_index"]),
            wc_adjusted=float(d["wc_adjusted"]),
        )


def ewma(raw: float, prev: Optional[float], alpha: float) -> float:
    if prev is None:
        return raw
    return alpha * raw + (1 - alpha) * prev


def volatility_index(
    wc_smoothed: float,
    history: Sequence[float],
    window: int,
    v_target: float,
    annualization_days: int = ANNUALIZATION_DAYS,
) -> float:
    """sigma_t = min(1, annualized std of log-returns / v_target).

    Uses the last `window` historical values plus the current one. Population
    standard deviation, annualized by sqrt(annualization_days).
    """
    recent = list(history[-window:]) if window > 0 else []
    values = np.asarray(recent + [wc_smoothed], dtype=float)
    if len(values) < 2:
        return 0.0
    if not np.all(np.isfinite(values)) or np.any(values <= 0):
        raise ValueError("volatility needs finite positive basket values")
    if v_target <= 0:
        raise ValueError(f"v_target must be positive, got {v_target}")

    log_returns = np.diff(np.log(values))
    annual = float(np.std(log_returns)) * math.sqrt(annualization_days)
    return float(min(1.0, max(0.0, annual / v_target)))


def smooth(
    wf_raw: float,
    wc_raw: float,
    history: Sequence[SmoothedSample],
    cfg: StabilityConfig,
    timestamp: datetime,
) -> SmoothedSample:
    """One EWMA + volatility step against the previous smoothing state.

    Raises ValueError when any intermediate is non-finite.
    """
    prev = history[-1] if history else None
    wf_smoothed = ewma(wf_raw, prev.wf_smoothed if prev else None, cfg.alpha_f)
    wc_smoothed = ewma(wc_raw, prev.wc_smoothed if prev else None, cfg.alpha_c)
    if not (math.isfinite(wf_smoothed) and math.isfinite(wc_smoothed)):
        raise ValueError(f"non-finite smoothed values wf={wf_smoothed} wc={wc_smoothed}")

    sigma = volatility_index(
        wc_smoothed,
        [h.wc_smoothed for h in history],
        cfg.volatility_window,
        cfg.v_target,
    )
    return SmoothedSample(
        timestamp=timestamp,
        wf_smoothed=wf_smoothed,
        wc_smoothed=wc_smoothed,
        volatility_index=sigma,
        wc_adjusted=wc_smoothed * (1 - sigma),
    )


def passthrough(wf_raw: float, wc_raw: float, timestamp: datetime) -> SmoothedSample:
    return SmoothedSample(
        timestamp=timestamp,
        wf_smoothed=wf_raw,
        wc_smoothed=wc_raw,
        volatility_index=0.0,
        wc_adjusted=wc_raw,
    )


def smooth_or_passthrough(
    wf_raw: float,
    wc_raw: float,
    history: Sequence[SmoothedSample],
    cfg: StabilityConfig,
    timestamp: datetime,
) -> SmoothedSample:
    """smooth(), degrading to the raw inputs if the smoothing state is unusable."""
    try:
        return smooth(wf_raw, wc_raw, history, cfg, timestamp)
    except (ValueError, ZeroDivisionError, OverflowError) as e:
        logger.warning(f"Smoothing failed, using raw basket values: {e}")
        return passthrough(wf_raw, wc_raw, timestamp)


def compose(wf_smoothed: float, wc_adjusted: float) -> float:
    """Geometric mean of the two baskets."""
    if wf_smoothed < 0 or wc_adjusted < 0:
        raise DomainError(
            f"negative basket value (wf={wf_smoothed}, wc={wc_adjusted}); refusing sqrt"
        )
    return math.sqrt(wf_smoothed * wc_adjusted)


def clamp_change(avgx_raw: float, last: Optional[float], clamp_percent: float) -> float:
    """Bound the move from `last` to +/- last * clamp_percent. No-op without `last`."""
    if last is None:
        return avgx_raw
    max_change = last * clamp_percent
    delta = max(-max_change, min(max_change, avgx_raw - last))
    return last + delta
