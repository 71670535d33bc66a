"""Bounded price history shared between feed ingestion and recompute."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass

from signal_trader.types import PriceObservation
from signal_trader.utils.logging import get_logger


@dataclass(frozen=True, slots=True)
class BufferSnapshot:
    """Consistent copy of the buffer taken at one instant."""

    version: int
    candles: tuple[PriceObservation, ...]
    last_tick: PriceObservation | None

    @property
    def current_price(self) -> float | None:
        """Latest known price: newest tick, else the last candle close."""
        latest_candle = self.candles[-1] if self.candles else None
        if self.last_tick is None:
            return latest_candle.close if latest_candle else None
        if latest_candle is not None and latest_candle.timestamp > self.last_tick.timestamp:
            return latest_candle.close
        return self.last_tick.close


class PriceBuffer:
    """Ordered FIFO of the last N completed candles plus the newest tick.

    Candle timestamps are strictly increasing; stale or duplicate candles are
    dropped. Ticks only move the provisional current price and never occupy
    candle slots.
    """

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity_must_be_positive")
        self._capacity = capacity
        self._candles: deque[PriceObservation] = deque(maxlen=capacity)
        self._last_tick: PriceObservation | None = None
        self._version = 0
        self._logger = get_logger("signal_trader.data.buffer")

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def version(self) -> int:
        return self._version

    def __len__(self) -> int:
        return len(self._candles)

    def append(self, observation: PriceObservation) -> bool:
        """Append one observation. Returns False when it was rejected as stale."""
        if observation.is_candle_close:
            last = self._candles[-1] if self._candles else None
            if last is not None and observation.timestamp <= last.timestamp:
                self._logger.debug(
                    "stale_candle_dropped",
                    timestamp=observation.timestamp.isoformat(),
                    last_timestamp=last.timestamp.isoformat(),
                )
                return False
            self._candles.append(observation)
        else:
            if self._last_tick is not None and observation.timestamp < self._last_tick.timestamp:
                return False
            self._last_tick = observation
        self._version += 1
        return True

    def extend(self, observations: list[PriceObservation]) -> int:
        """Append many observations in order, returning how many were kept."""
        return sum(1 for obs in observations if self.append(obs))

    def snapshot(self) -> BufferSnapshot:
        """Copy-on-read view for one recompute cycle."""
        return BufferSnapshot(
            version=self._version,
            candles=tuple(self._candles),
            last_tick=self._last_tick,
        )
