"""Indicator computation: incremental engine for the live loop plus batch helpers."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Sequence

import numpy as np
import pandas as pd  # type: ignore[import-untyped]

from signal_trader.errors import FeedDiscontinuity
from signal_trader.types import IndicatorSnapshot, PriceObservation
from signal_trader.utils.logging import get_logger, log_feed_event

if TYPE_CHECKING:
    from signal_trader.config import Settings


@dataclass(frozen=True, slots=True)
class IndicatorParams:
    """Periods and multipliers for the indicator set."""

    ma_period: int = 14
    ema_period: int = 12
    bb_period: int = 12
    bb_std_dev_multiplier: float = 2.0
    rsi_period: int = 9
    atr_period: int = 7

    def __post_init__(self) -> None:
        for name in ("ma_period", "ema_period", "bb_period", "rsi_period", "atr_period"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name}_must_be_positive")
        if self.bb_std_dev_multiplier <= 0:
            raise ValueError("bb_std_dev_multiplier_must_be_positive")

    @classmethod
    def from_settings(cls, settings: Settings) -> IndicatorParams:
        return cls(
            ma_period=settings.ma_period,
            ema_period=settings.ema_period,
            bb_period=settings.bb_period,
            bb_std_dev_multiplier=settings.bb_std_dev_multiplier,
            rsi_period=settings.rsi_period,
            atr_period=settings.atr_period,
        )


class _WilderAverage:
    """Running mean seeded by a simple average, then smoothed with weight 1/p."""

    __slots__ = ("_period", "_seed_sum", "_count", "value")

    def __init__(self, period: int) -> None:
        self._period = period
        self._seed_sum = 0.0
        self._count = 0
        self.value: float | None = None

    def update(self, x: float) -> None:
        if self.value is None:
            self._seed_sum += x
            self._count += 1
            if self._count == self._period:
                self.value = self._seed_sum / self._period
            return
        self.value = (self.value * (self._period - 1) + x) / self._period


class _ExponentialAverage:
    """EMA seeded with the SMA of the first p values, k = 2/(p+1)."""

    __slots__ = ("_period", "_k", "_seed_sum", "_count", "value")

    def __init__(self, period: int) -> None:
        self._period = period
        self._k = 2.0 / (period + 1)
        self._seed_sum = 0.0
        self._count = 0
        self.value: float | None = None

    def update(self, x: float) -> None:
        if self.value is None:
            self._seed_sum += x
            self._count += 1
            if self._count == self._period:
                self.value = self._seed_sum / self._period
            return
        self.value = x * self._k + self.value * (1.0 - self._k)


def rsi_from_averages(avg_gain: float, avg_loss: float) -> float:
    """RSI from smoothed gain/loss; 100 with no losses, 50 on a flat market."""
    if avg_loss == 0.0:
        return 100.0 if avg_gain > 0.0 else 50.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def true_range_value(high: float, low: float, prev_close: float | None) -> float:
    if prev_close is None:
        return high - low
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


class IndicatorEngine:
    """Incremental MA/EMA/BB/RSI/ATR over completed candles.

    ``update`` consumes only candles newer than the last one it has seen, so a
    recompute costs O(new candles + window) instead of a pass over full
    history. A timestamp jump larger than ``gap_tolerance`` candle intervals
    resets every recursion; that cycle publishes an empty snapshot and the
    indicators re-warm from the candles after the gap.
    """

    def __init__(
        self,
        params: IndicatorParams,
        *,
        candle_interval_seconds: float | None = None,
        gap_tolerance: float = 1.5,
    ) -> None:
        self._params = params
        self._max_gap_seconds = (
            candle_interval_seconds * gap_tolerance if candle_interval_seconds else None
        )
        self._logger = get_logger("signal_trader.features.indicators")
        self._snapshot = IndicatorSnapshot()
        self.last_discontinuity: FeedDiscontinuity | None = None
        self._reset()

    @property
    def params(self) -> IndicatorParams:
        return self._params

    @property
    def snapshot(self) -> IndicatorSnapshot:
        return self._snapshot

    @property
    def candles_seen(self) -> int:
        """Candles ingested since the last (re)start."""
        return self._count

    def update(self, candles: Iterable[PriceObservation]) -> IndicatorSnapshot:
        """Fold new completed candles into the state and publish a fresh snapshot."""
        self.last_discontinuity = None
        for candle in candles:
            if not candle.is_candle_close:
                continue
            if self._last_timestamp is not None and candle.timestamp <= self._last_timestamp:
                continue
            gap = self._detect_gap(candle)
            if gap is not None:
                self.last_discontinuity = gap
                log_feed_event(
                    self._logger,
                    event_type="discontinuity",
                    gap_seconds=round(gap.gap_seconds, 3),
                    previous_at=self._last_timestamp.isoformat() if self._last_timestamp else None,
                    current_at=candle.timestamp.isoformat(),
                    action="rewarm_indicators",
                )
                self._reset()
            self._ingest(candle)

        if self.last_discontinuity is not None:
            self._snapshot = IndicatorSnapshot()
        else:
            self._snapshot = self._build_snapshot()
        return self._snapshot

    def _reset(self) -> None:
        p = self._params
        self._closes: deque[float] = deque(maxlen=max(p.ma_period, p.bb_period))
        self._ema = _ExponentialAverage(p.ema_period)
        self._avg_gain = _WilderAverage(p.rsi_period)
        self._avg_loss = _WilderAverage(p.rsi_period)
        self._atr = _WilderAverage(p.atr_period)
        self._prev_close: float | None = None
        self._last_timestamp = None
        self._count = 0

    def _detect_gap(self, candle: PriceObservation) -> FeedDiscontinuity | None:
        if self._max_gap_seconds is None or self._last_timestamp is None:
            return None
        gap_seconds = (candle.timestamp - self._last_timestamp).total_seconds()
        if gap_seconds > self._max_gap_seconds:
            return FeedDiscontinuity(self._last_timestamp, candle.timestamp, gap_seconds)
        return None

    def _ingest(self, candle: PriceObservation) -> None:
        close = candle.close
        self._closes.append(close)
        self._ema.update(close)

        delta = 0.0 if self._prev_close is None else close - self._prev_close
        self._avg_gain.update(max(delta, 0.0))
        self._avg_loss.update(max(-delta, 0.0))
        self._atr.update(true_range_value(candle.high, candle.low, self._prev_close))

        self._prev_close = close
        self._last_timestamp = candle.timestamp
        self._count += 1

    def _build_snapshot(self) -> IndicatorSnapshot:
        p = self._params
        closes = list(self._closes)

        ma = float(np.mean(closes[-p.ma_period :])) if len(closes) >= p.ma_period else None

        bb_upper = bb_mid = bb_lower = None
        if len(closes) >= p.bb_period:
            window = np.asarray(closes[-p.bb_period :], dtype=np.float64)
            bb_mid = float(window.mean())
            band = p.bb_std_dev_multiplier * float(window.std())
            bb_upper = bb_mid + band
            bb_lower = bb_mid - band

        rsi = None
        if self._avg_gain.value is not None and self._avg_loss.value is not None:
            rsi = rsi_from_averages(self._avg_gain.value, self._avg_loss.value)

        return IndicatorSnapshot(
            ma=ma,
            ema=self._ema.value,
            bb_upper=bb_upper,
            bb_mid=bb_mid,
            bb_lower=bb_lower,
            rsi=rsi,
            atr=self._atr.value,
        )


# ---------------------------------------------------------------------------
# Batch (from-scratch) computation over a DataFrame of candles
# ---------------------------------------------------------------------------


def candles_to_frame(candles: Sequence[PriceObservation]) -> pd.DataFrame:
    """Build an OHLC frame from completed candles."""
    rows = [c for c in candles if c.is_candle_close]
    return pd.DataFrame(
        {
            "open_time": [c.timestamp for c in rows],
            "open": [c.open for c in rows],
            "high": [c.high for c in rows],
            "low": [c.low for c in rows],
            "close": [c.close for c in rows],
        }
    )


def sma(closes: pd.Series, period: int) -> float | None:
    if len(closes) < period:
        return None
    return float(closes.iloc[-period:].mean())


def ema(closes: pd.Series, period: int) -> float | None:
    if len(closes) < period:
        return None
    return float(_seeded_ewm(closes.astype(float), period, alpha=2.0 / (period + 1)).iloc[-1])


def bollinger_bands(
    closes: pd.Series, period: int, multiplier: float
) -> tuple[float, float, float] | None:
    """Return (upper, mid, lower) using the population standard deviation."""
    if len(closes) < period:
        return None
    window = closes.iloc[-period:].astype(float)
    mid = float(window.mean())
    band = multiplier * float(window.std(ddof=0))
    return mid + band, mid, mid - band


def rsi(closes: pd.Series, period: int) -> float | None:
    if len(closes) < period:
        return None
    delta = closes.astype(float).diff().fillna(0.0)
    avg_gain = _seeded_ewm(delta.clip(lower=0.0), period, alpha=1.0 / period).iloc[-1]
    avg_loss = _seeded_ewm((-delta).clip(lower=0.0), period, alpha=1.0 / period).iloc[-1]
    return rsi_from_averages(float(avg_gain), float(avg_loss))


def true_range(df: pd.DataFrame) -> pd.Series:
    high = df["high"].astype(float)
    low = df["low"].astype(float)
    prev_close = df["close"].astype(float).shift(1)
    tr_components = pd.concat(
        [
            (high - low).abs(),
            (high - prev_close).abs(),
            (low - prev_close).abs(),
        ],
        axis=1,
    )
    # First row has no previous close; NaN components are skipped.
    return tr_components.max(axis=1)


def atr(df: pd.DataFrame, period: int) -> float | None:
    if len(df) < period:
        return None
    return float(_seeded_ewm(true_range(df), period, alpha=1.0 / period).iloc[-1])


def compute_indicators(df: pd.DataFrame, params: IndicatorParams) -> IndicatorSnapshot:
    """Compute a full snapshot from scratch over an ascending OHLC frame."""
    if not df.empty and not _is_time_ascending(df):
        raise ValueError("ohlcv_timestamp_not_ascending")

    closes = df["close"] if not df.empty else pd.Series(dtype=float)
    bands = bollinger_bands(closes, params.bb_period, params.bb_std_dev_multiplier)
    upper, mid, lower = bands if bands is not None else (None, None, None)
    return IndicatorSnapshot(
        ma=sma(closes, params.ma_period),
        ema=ema(closes, params.ema_period),
        bb_upper=upper,
        bb_mid=mid,
        bb_lower=lower,
        rsi=rsi(closes, params.rsi_period),
        atr=atr(df, params.atr_period) if not df.empty else None,
    )


def _seeded_ewm(series: pd.Series, period: int, *, alpha: float) -> pd.Series:
    """Recursive average whose first value is the SMA of the first ``period`` points."""
    seeded = series.iloc[period - 1 :].astype(float).copy()
    seeded.iloc[0] = float(series.iloc[:period].mean())
    return seeded.ewm(alpha=alpha, adjust=False).mean()


def _is_time_ascending(df: pd.DataFrame) -> bool:
    open_time = df.get("open_time")
    if open_time is None:
        return False
    index = pd.Index(open_time)
    return bool(index.is_monotonic_increasing and index.is_unique)
