"""
History and baseline persistence.

Three documents live behind a small key-value interface:
  - "baseline"          singleton dict, shallow-merged on every write
  - "history"           index samples, capped at HISTORY_CAP
  - "smoothed_history"  smoothing samples, capped at SMOOTHED_HISTORY_CAP

Backends raise PersistenceError; HistoryStore logs those and reports
"no data" so the pipeline can fall back to unsmoothed / unclamped values.
"""
import copy, json, logging, math, os, threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from avgx_index import config
from avgx_index.errors import PersistenceError
from avgx_index.stability import SmoothedSample, parse_ts

logger = logging.getLogger(__name__)

BASELINE = "baseline"
HISTORY = "history"
SMOOTHED_HISTORY = "smoothed_history"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IndexSample:
    timestamp: datetime
    avgx_usd: float
    wf_value: float
    wc_value: float

    def to_dict(self) -> Dict:
        out = asdict(self)
        out["timestamp"] = self.timestamp.isoformat()
        return out

    @classmethod
    def from_dict(cls, d: Dict) -> "IndexSample":
        avgx_usd = float(d["avgx_usd"])
        if not math.isfinite(avgx_usd) or avgx_usd <= 0:
            raise ValueError(f"avgx_usd must be finite and positive, got {avgx_usd}")
        return cls(
            timestamp=parse_ts(d["timestamp"]),
            avgx_usd=avgx_usd,
            wf_value=float(d["wf_value"]),
            wc_value=float(d["wc_value"]),
        )


class KeyValueStore(ABC):
    """Minimal document store: JSON-compatible values addressed by key."""

    @abstractmethod
    def get(self, key: str):
        ...

    @abstractmethod
    def put_merged(self, key: str, partial: Dict) -> Dict:
        ...

    @abstractmethod
    def append_capped(self, key: str, item, cap: int) -> List:
        ...


class MemoryStore(KeyValueStore):
    def __init__(self, initial: Optional[Dict] = None):
        self._data = copy.deepcopy(initial) if initial else {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            return copy.deepcopy(self._data.get(key))

    def put_merged(self, key, partial):
        with self._lock:
            doc = self._data.get(key)
            doc = dict(doc) if isinstance(doc, dict) else {}
            doc.update(copy.deepcopy(partial))
            self._data[key] = doc
            return copy.deepcopy(doc)

    def append_capped(self, key, item, cap):
        with self._lock:
            items = self._data.get(key)
            items = list(items) if isinstance(items, list) else []
            items.append(copy.deepcopy(item))
            items = items[-cap:] if cap > 0 else []
            self._data[key] = items
            return copy.deepcopy(items)


class JsonFileStore(KeyValueStore):
    """One pretty-printed JSON file per key under a data directory."""

    def __init__(self, data_dir=config.DATA_DIR):
        self.data_dir = Path(data_dir)
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        return self.data_dir / f"{key}.json"

    def _read(self, key):
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read {path.name}: {e}") from e

    def _write(self, key, value):
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(value, indent=2), encoding="utf-8")
            os.replace(tmp, path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write {path.name}: {e}") from e

    def _read_for_update(self, key):
        # an unreadable document is replaced by the next write
        try:
            return self._read(key)
        except PersistenceError as e:
            logger.warning(f"{e}; overwriting {key}")
            return None

    def get(self, key):
        with self._lock:
            return self._read(key)

    def put_merged(self, key, partial):
        with self._lock:
            doc = self._read_for_update(key)
            doc = doc if isinstance(doc, dict) else {}
            doc.update(partial)
            self._write(key, doc)
            return doc

    def append_capped(self, key, item, cap):
        with self._lock:
            items = self._read_for_update(key)
            items = items if isinstance(items, list) else []
            items.append(item)
            items = items[-cap:] if cap > 0 else []
            self._write(key, items)
            return items


class HistoryWindow:
    """Index samples newer than a cutoff, ascending by timestamp.

    Nothing is read until iteration; iterating again re-reads the store.
    """

    def __init__(self, store: "HistoryStore", cutoff: datetime):
        self._store = store
        self.cutoff = cutoff

    def __iter__(self) -> Iterator[IndexSample]:
        samples = [s for s in self._store.index_history() if s.timestamp >= self.cutoff]
        return iter(sorted(samples, key=lambda s: s.timestamp))


class HistoryStore:
    def __init__(
        self,
        kv: KeyValueStore,
        history_cap: int = config.HISTORY_CAP,
        smoothed_cap: int = config.SMOOTHED_HISTORY_CAP,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.kv = kv
        self.history_cap = history_cap
        self.smoothed_cap = smoothed_cap
        self.clock = clock
        # serialises read-modify-write sequences across pipeline threads
        self._lock = threading.RLock()

    def _load_list(self, key: str, parse) -> List:
        try:
            raw = self.kv.get(key)
        except PersistenceError as e:
            logger.warning(f"{e}; treating {key} as empty")
            return []
        if not isinstance(raw, list):
            return []
        out = []
        for entry in raw:
            try:
                out.append(parse(entry))
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Skipping malformed {key} entry: {entry!r}")
        return out

    # --- smoothing state ---
    def smoothed_history(self) -> List[SmoothedSample]:
        return self._load_list(SMOOTHED_HISTORY, SmoothedSample.from_dict)

    def append_smoothed_sample(self, sample: SmoothedSample) -> bool:
        with self._lock:
            try:
                self.kv.append_capped(SMOOTHED_HISTORY, sample.to_dict(), self.smoothed_cap)
            except PersistenceError as e:
                logger.error(f"Error storing smoothed values: {e}")
                return False
        return True

    # --- index history ---
    def index_history(self) -> List[IndexSample]:
        return self._load_list(HISTORY, IndexSample.from_dict)

    def last_index_sample(self) -> Optional[IndexSample]:
        history = self.index_history()
        return history[-1] if history else None

    def append_index_sample(self, sample: IndexSample) -> bool:
        with self._lock:
            try:
                self.kv.append_capped(HISTORY, sample.to_dict(), self.history_cap)
            except PersistenceError as e:
                logger.error(f"Failed to append to history: {e}")
                return False
        return True

    def read_history(self, timeframe: str, now: Optional[datetime] = None) -> HistoryWindow:
        if timeframe not in config.TIMEFRAMES:
            raise ValueError(f"Unknown timeframe {timeframe!r}; expected one of {sorted(config.TIMEFRAMES)}")
        now = now or self.clock()
        return HistoryWindow(self, now - timedelta(days=config.TIMEFRAMES[timeframe]))

    # --- baseline ---
    def read_baseline(self) -> Optional[Dict]:
        try:
            baseline = self.kv.get(BASELINE)
        except PersistenceError as e:
            logger.warning(f"{e}; no baseline available")
            return None
        return baseline if isinstance(baseline, dict) else None

    def write_baseline(self, partial: Dict) -> bool:
        partial = dict(partial)
        partial["timestamp"] = self.clock().isoformat()
        with self._lock:
            try:
                self.kv.put_merged(BASELINE, partial)
            except PersistenceError as e:
                logger.error(f"Failed to write baseline: {e}")
                return False
        return True

    def merge_baseline_prices(self, field: str, prices: Dict[str, float]) -> bool:
        """Merge per-asset values into one of the baseline's price maps."""
        with self._lock:
            baseline = self.read_baseline() or {}
            current = baseline.get(field)
            merged = dict(current) if isinstance(current, dict) else {}
            merged.update(prices)
            return self.write_baseline({field: merged})
