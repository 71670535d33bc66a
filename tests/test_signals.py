from __future__ import annotations

import pytest

from signal_trader.strategy.signals import (
    SignalThresholds,
    compute_votes,
    evaluate,
    signal_from_total,
)
from signal_trader.types import IndicatorSnapshot, Signal


def _snapshot(
    *,
    ma: float = 100.0,
    ema: float = 101.0,
    upper: float = 110.0,
    lower: float = 90.0,
    rsi: float = 50.0,
) -> IndicatorSnapshot:
    return IndicatorSnapshot(
        ma=ma,
        ema=ema,
        bb_upper=upper,
        bb_mid=(upper + lower) / 2,
        bb_lower=lower,
        rsi=rsi,
        atr=2.0,
    )


def test_hold_during_warmup() -> None:
    assert evaluate(IndicatorSnapshot(), 100.0) == Signal.HOLD
    partial = IndicatorSnapshot(ma=100.0, ema=101.0, rsi=20.0)
    assert evaluate(partial, 120.0) == Signal.HOLD


def test_hold_without_usable_price() -> None:
    assert evaluate(_snapshot(), None) == Signal.HOLD
    assert evaluate(_snapshot(), 0.0) == Signal.HOLD


def test_trend_vote_alone_is_buy() -> None:
    votes = compute_votes(_snapshot(), 102.0)
    assert votes is not None
    assert (votes.trend, votes.mean_reversion, votes.momentum) == (1, 0, 0)
    assert evaluate(_snapshot(), 102.0) == Signal.BUY


def test_oversold_band_touch_is_strong_buy() -> None:
    snapshot = _snapshot(rsi=25.0)
    votes = compute_votes(snapshot, 90.0)
    assert votes is not None
    assert votes.mean_reversion == 1
    assert votes.momentum == 1
    assert evaluate(snapshot, 90.0) == Signal.STRONG_BUY


def test_downtrend_and_overbought_is_strong_sell() -> None:
    snapshot = _snapshot(ma=100.0, ema=99.0, rsi=75.0)
    assert evaluate(snapshot, 98.0) == Signal.STRONG_SELL


def test_downtrend_alone_is_sell() -> None:
    snapshot = _snapshot(ma=100.0, ema=99.0)
    assert evaluate(snapshot, 98.0) == Signal.SELL


def test_upper_band_touch_votes_down() -> None:
    votes = compute_votes(_snapshot(), 110.0)
    assert votes is not None
    assert votes.mean_reversion == -1
    # Trend up, band down: they cancel.
    assert evaluate(_snapshot(), 110.0) == Signal.HOLD


@pytest.mark.parametrize(
    ("total", "expected"),
    [
        (-3, Signal.STRONG_SELL),
        (-2, Signal.STRONG_SELL),
        (-1, Signal.SELL),
        (0, Signal.HOLD),
        (1, Signal.BUY),
        (2, Signal.STRONG_BUY),
        (3, Signal.STRONG_BUY),
    ],
)
def test_signal_from_total(total: int, expected: Signal) -> None:
    assert signal_from_total(total) == expected


def test_configurable_thresholds() -> None:
    strict = SignalThresholds(rsi_oversold=20.0, rsi_overbought=80.0, strong_vote_threshold=3)
    snapshot = _snapshot(rsi=25.0)
    assert evaluate(snapshot, 90.0) == Signal.STRONG_BUY
    # RSI 25 is no longer oversold; band vote alone is a plain buy.
    assert evaluate(snapshot, 90.0, strict) == Signal.BUY


def test_evaluate_is_deterministic() -> None:
    snapshot = _snapshot(rsi=28.0)
    results = {evaluate(snapshot, 95.5) for _ in range(20)}
    assert len(results) == 1


def test_signal_ordering_and_labels() -> None:
    assert Signal.STRONG_SELL < Signal.SELL < Signal.HOLD < Signal.BUY < Signal.STRONG_BUY
    assert Signal.STRONG_BUY.label == "Strong Buy"
    assert Signal.HOLD.side is None
    assert Signal.SELL.side is not None and Signal.SELL.side.value == "SHORT"
