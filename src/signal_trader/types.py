"""Shared domain types for the signal trading pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum


class Signal(IntEnum):
    """Discrete trading signal, ordered from most bearish to most bullish."""

    STRONG_SELL = -2
    SELL = -1
    HOLD = 0
    BUY = 1
    STRONG_BUY = 2

    @property
    def side(self) -> Side | None:
        if self > 0:
            return Side.LONG
        if self < 0:
            return Side.SHORT
        return None

    @property
    def is_strong(self) -> bool:
        return abs(int(self)) == 2

    @property
    def label(self) -> str:
        return _SIGNAL_LABELS[self]


class Side(str, Enum):
    """Position direction."""

    LONG = "LONG"
    SHORT = "SHORT"


_SIGNAL_LABELS = {
    Signal.STRONG_SELL: "Strong Sell",
    Signal.SELL: "Sell",
    Signal.HOLD: "Hold",
    Signal.BUY: "Buy",
    Signal.STRONG_BUY: "Strong Buy",
}


@dataclass(frozen=True, slots=True)
class PriceObservation:
    """One market price observation.

    Completed candles carry full OHLC with ``is_candle_close=True``; ticks
    carry only a last price, stored in all four price fields.
    """

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    is_candle_close: bool

    @classmethod
    def tick(cls, timestamp: datetime, price: float) -> PriceObservation:
        return cls(
            timestamp=timestamp,
            open=price,
            high=price,
            low=price,
            close=price,
            is_candle_close=False,
        )

    @classmethod
    def candle(
        cls,
        timestamp: datetime,
        open: float,
        high: float,
        low: float,
        close: float,
    ) -> PriceObservation:
        return cls(
            timestamp=timestamp,
            open=float(open),
            high=float(high),
            low=float(low),
            close=float(close),
            is_candle_close=True,
        )


@dataclass(frozen=True, slots=True)
class IndicatorSnapshot:
    """Immutable indicator values published by the indicator engine."""

    ma: float | None = None
    ema: float | None = None
    bb_upper: float | None = None
    bb_mid: float | None = None
    bb_lower: float | None = None
    rsi: float | None = None
    atr: float | None = None

    @property
    def is_warm(self) -> bool:
        return None not in (
            self.ma,
            self.ema,
            self.bb_upper,
            self.bb_mid,
            self.bb_lower,
            self.rsi,
            self.atr,
        )

    def as_dict(self) -> dict[str, float | None]:
        return {
            "ma": self.ma,
            "ema": self.ema,
            "bb_upper": self.bb_upper,
            "bb_mid": self.bb_mid,
            "bb_lower": self.bb_lower,
            "rsi": self.rsi,
            "atr": self.atr,
        }


@dataclass(frozen=True, slots=True)
class RiskDecision:
    """A sized, risk-bounded order proposal for one signal."""

    signal: Signal
    quantity: float
    entry_price_hint: float
    stop_loss: float
    take_profit: float

    @property
    def side(self) -> Side:
        side = self.signal.side
        if side is None:
            raise ValueError("hold_signal_has_no_side")
        return side

    @property
    def notional(self) -> float:
        return self.quantity * self.entry_price_hint


@dataclass(slots=True)
class PositionState:
    """Open-position state guarded by the execution coordinator."""

    is_open: bool = False
    side: Side | None = None
    position_id: str | None = None
    quantity: float = 0.0
    entry_price: float | None = None
    last_trade_at: datetime | None = None


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one execution step."""

    status: str
    orders: list[dict[str, object]] = field(default_factory=list)
    error: str | None = None


@dataclass(slots=True)
class CycleResult:
    """Outcome of one recompute → signal → sizing → execution cycle."""

    status: str
    cycle: int = 0
    signal: Signal = Signal.HOLD
    price: float | None = None
    snapshot: IndicatorSnapshot | None = None
    decision: RiskDecision | None = None
    execution: ExecutionResult | None = None
    warnings: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0
