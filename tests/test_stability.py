"""Stability formula: EWMA, volatility index, geometric mean and clamp."""

from __future__ import annotations

import math

import pytest

from avgx_index.config import StabilityConfig
from avgx_index.errors import DomainError
from avgx_index.stability import (
    SmoothedSample,
    clamp_change,
    compose,
    ewma,
    smooth,
    smooth_or_passthrough,
    volatility_index,
)

from tests.conftest import T0


def _sample(wf: float, wc: float, sigma: float = 0.0) -> SmoothedSample:
    return SmoothedSample(T0, wf, wc, sigma, wc * (1 - sigma))


def test_ewma_without_previous_returns_raw_exactly() -> None:
    assert ewma(1.0555, None, 0.2) == 1.0555


def test_ewma_blends_with_previous() -> None:
    assert ewma(110.0, 100.0, 0.1) == pytest.approx(101.0)


def test_volatility_is_zero_for_identical_values() -> None:
    assert volatility_index(100.0, [100.0] * 10, window=30, v_target=0.1) == 0.0


def test_volatility_is_zero_without_history() -> None:
    assert volatility_index(100.0, [], window=30, v_target=0.1) == 0.0


def test_volatility_saturates_for_alternating_values() -> None:
    history = [100.0, 200.0] * 10
    assert volatility_index(100.0, history, window=30, v_target=0.1) == 1.0


def test_volatility_matches_annualized_population_std() -> None:
    values = [100.0, 100.01, 100.0]
    returns = [math.log(values[1] / values[0]), math.log(values[2] / values[1])]
    mean = sum(returns) / 2
    std = math.sqrt(sum((r - mean) ** 2 for r in returns) / 2)
    expected = std * math.sqrt(365) / 0.1

    assert volatility_index(values[-1], values[:-1], window=30, v_target=0.1) == pytest.approx(expected)


def test_volatility_only_looks_at_window() -> None:
    history = [1000.0, 10.0, 100.0, 100.0, 100.0]
    assert volatility_index(100.0, history, window=3, v_target=0.1) == 0.0


@pytest.mark.parametrize(
    "history",
    [
        [100.0],
        [100.0, 100.5, 99.8, 101.2],
        [1.0, 1e6, 1.0, 1e6],
        [50000.0 + i for i in range(40)],
    ],
)
def test_volatility_stays_in_unit_interval(history) -> None:
    sigma = volatility_index(history[-1] * 1.01, history, window=30, v_target=0.1)
    assert 0.0 <= sigma <= 1.0


def test_volatility_rejects_non_positive_values() -> None:
    with pytest.raises(ValueError):
        volatility_index(100.0, [0.0, 100.0], window=30, v_target=0.1)


def test_smooth_first_step_passes_raw_values_through() -> None:
    s = smooth(1.0556, 60000.0, [], StabilityConfig(), T0)

    assert s.wf_smoothed == 1.0556
    assert s.wc_smoothed == 60000.0
    assert s.volatility_index == 0.0
    assert s.wc_adjusted == 60000.0


def test_smooth_applies_separate_decay_constants() -> None:
    cfg = StabilityConfig(alpha_f=0.2, alpha_c=0.1)
    s = smooth(2.0, 200.0, [_sample(1.0, 100.0)], cfg, T0)

    assert s.wf_smoothed == pytest.approx(0.2 * 2.0 + 0.8 * 1.0)
    assert s.wc_smoothed == pytest.approx(0.1 * 200.0 + 0.9 * 100.0)


def test_smooth_adjusts_crypto_by_volatility() -> None:
    history = [_sample(1.0, wc) for wc in (100.0, 104.0, 98.0, 103.0)]
    s = smooth(1.0, 101.0, history, StabilityConfig(), T0)

    assert 0.0 < s.volatility_index <= 1.0
    assert s.wc_adjusted == s.wc_smoothed * (1 - s.volatility_index)


def test_corrupt_history_degrades_to_raw_values() -> None:
    history = [_sample(float("nan"), 100.0)]
    s = smooth_or_passthrough(1.05, 60000.0, history, StabilityConfig(), T0)

    assert (s.wf_smoothed, s.wc_smoothed, s.volatility_index, s.wc_adjusted) == (1.05, 60000.0, 0.0, 60000.0)


def test_non_positive_history_degrades_to_raw_values() -> None:
    history = [_sample(1.0, 0.0), _sample(1.0, 0.0)]
    s = smooth_or_passthrough(1.05, 60000.0, history, StabilityConfig(), T0)

    assert s.wc_adjusted == 60000.0
    assert s.volatility_index == 0.0


def test_compose_is_geometric_mean() -> None:
    wf = (1 + 1 / 0.9) / 2
    assert compose(wf, 60000.0) == pytest.approx(math.sqrt(wf * 60000.0))
    assert compose(wf, 60000.0) == pytest.approx(251.66, abs=0.01)


@pytest.mark.parametrize("wf, wc", [(-1.0, 100.0), (1.0, -100.0)])
def test_compose_rejects_negative_operands(wf, wc) -> None:
    with pytest.raises(DomainError):
        compose(wf, wc)


def test_clamp_is_noop_without_previous_value() -> None:
    assert clamp_change(251.6, None, 0.015) == 251.6


def test_clamp_limits_upward_move() -> None:
    assert clamp_change(260.0, 250.0, 0.015) == pytest.approx(253.75, abs=1e-12)


def test_clamp_limits_downward_move() -> None:
    assert clamp_change(200.0, 250.0, 0.015) == pytest.approx(246.25, abs=1e-12)


def test_clamp_keeps_small_moves() -> None:
    assert clamp_change(251.0, 250.0, 0.015) == 251.0


@pytest.mark.parametrize("last", [0.5, 1.0, 250.0, 62500.0])
@pytest.mark.parametrize("raw", [0.0, 0.9, 1.0, 249.0, 1e9])
def test_clamp_bound_holds(last, raw) -> None:
    out = clamp_change(raw, last, 0.015)
    max_change = last * 0.015

    assert last - max_change <= out <= last + max_change
    assert abs(out - last) <= max_change + 1e-12
