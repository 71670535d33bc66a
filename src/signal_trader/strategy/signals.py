"""Deterministic signal evaluation from an indicator snapshot."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from signal_trader.types import IndicatorSnapshot, Signal

if TYPE_CHECKING:
    from signal_trader.config import Settings


@dataclass(frozen=True, slots=True)
class SignalThresholds:
    """Tunable vote thresholds."""

    rsi_oversold: float = 30.0
    rsi_overbought: float = 70.0
    strong_vote_threshold: int = 2

    @classmethod
    def from_settings(cls, settings: Settings) -> SignalThresholds:
        return cls(
            rsi_oversold=settings.rsi_oversold,
            rsi_overbought=settings.rsi_overbought,
            strong_vote_threshold=settings.strong_vote_threshold,
        )


@dataclass(frozen=True, slots=True)
class SignalVotes:
    """Directional votes, each in {-1, 0, +1}."""

    trend: int
    mean_reversion: int
    momentum: int

    @property
    def total(self) -> int:
        return self.trend + self.mean_reversion + self.momentum


def compute_votes(
    snapshot: IndicatorSnapshot,
    current_price: float,
    thresholds: SignalThresholds | None = None,
) -> SignalVotes | None:
    """Compute the three votes, or None while a required indicator is warming up."""
    thresholds = thresholds or SignalThresholds()
    ma, ema, upper, lower, rsi = (
        snapshot.ma,
        snapshot.ema,
        snapshot.bb_upper,
        snapshot.bb_lower,
        snapshot.rsi,
    )
    if ma is None or ema is None or upper is None or lower is None or rsi is None:
        return None

    if current_price > ema > ma:
        trend = 1
    elif current_price < ema < ma:
        trend = -1
    else:
        trend = 0

    if current_price <= lower:
        mean_reversion = 1
    elif current_price >= upper:
        mean_reversion = -1
    else:
        mean_reversion = 0

    if rsi < thresholds.rsi_oversold:
        momentum = 1
    elif rsi > thresholds.rsi_overbought:
        momentum = -1
    else:
        momentum = 0

    return SignalVotes(trend=trend, mean_reversion=mean_reversion, momentum=momentum)


def signal_from_total(total: int, strong_threshold: int = 2) -> Signal:
    if total >= strong_threshold:
        return Signal.STRONG_BUY
    if total >= 1:
        return Signal.BUY
    if total <= -strong_threshold:
        return Signal.STRONG_SELL
    if total <= -1:
        return Signal.SELL
    return Signal.HOLD


def evaluate(
    snapshot: IndicatorSnapshot,
    current_price: float | None,
    thresholds: SignalThresholds | None = None,
) -> Signal:
    """Map snapshot + latest price to a signal. Hold during warm-up or on a bad price."""
    thresholds = thresholds or SignalThresholds()
    if current_price is None or current_price <= 0:
        return Signal.HOLD
    votes = compute_votes(snapshot, current_price, thresholds)
    if votes is None:
        return Signal.HOLD
    return signal_from_total(votes.total, thresholds.strong_vote_threshold)
