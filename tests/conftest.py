from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Mapping, Sequence

import pytest

from avgx_index.basket import CryptoBasket, FiatBasket
from avgx_index.calculator import AvgxCalculator
from avgx_index.errors import FeedUnavailable, PersistenceError
from avgx_index.store import HistoryStore, KeyValueStore, MemoryStore

T0 = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)

FIAT_WEIGHTS = [
    {"code": "USD", "name": "US Dollar", "weight": 1},
    {"code": "EUR", "name": "Euro", "weight": 1},
]
CRYPTO_WEIGHTS = [
    {"id": "bitcoin", "symbol": "BTC", "name": "Bitcoin", "weight": 1},
]


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeFeed:
    """Feed callable returning a fixed payload, or raising when `fail` is set."""

    def __init__(self, payload: Mapping | None = None, fail: bool = False) -> None:
        self.payload = dict(payload or {})
        self.fail = fail
        self.calls: list[list[str]] = []

    def __call__(self, codes: Sequence[str], secrets: Mapping) -> Mapping:
        self.calls.append(list(codes))
        if self.fail:
            raise FeedUnavailable("malformed body")
        return dict(self.payload)


class BrokenStore(KeyValueStore):
    def get(self, key):
        raise PersistenceError("disk on fire")

    def put_merged(self, key, partial):
        raise PersistenceError("disk on fire")

    def append_capped(self, key, item, cap):
        raise PersistenceError("disk on fire")


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def kv() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def store(kv, clock) -> HistoryStore:
    return HistoryStore(kv, clock=clock)


@pytest.fixture
def fiat_feed() -> FakeFeed:
    return FakeFeed({"EUR": 0.9})


@pytest.fixture
def crypto_feed() -> FakeFeed:
    return FakeFeed({"bitcoin": {"price": 60000.0, "market_cap": 1.2e12, "change_24h": 1.5}})


@pytest.fixture
def make_fiat(store, clock, sleep, fiat_feed):
    def factory(weights=FIAT_WEIGHTS, feed=None):
        return FiatBasket(weights, store, feed=feed or fiat_feed, secrets={}, sleep=sleep, clock=clock)
    return factory


@pytest.fixture
def make_crypto(store, clock, sleep, crypto_feed):
    def factory(weights=CRYPTO_WEIGHTS, feed=None):
        return CryptoBasket(weights, store, feed=feed or crypto_feed, secrets={}, sleep=sleep, clock=clock)
    return factory


@pytest.fixture
def calculator(make_fiat, make_crypto, store, clock) -> AvgxCalculator:
    return AvgxCalculator(make_fiat(), make_crypto(), store, clock=clock)
