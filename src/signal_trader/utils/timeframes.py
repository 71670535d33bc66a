"""Candle interval parsing and boundary alignment."""

from __future__ import annotations

from datetime import datetime, timezone

_UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 3_600,
    "d": 86_400,
    "w": 604_800,
    "M": 2_592_000,
}

# Numeric range codes used by the exchange's OHLC history endpoint.
_RANGE_CODES = {
    "1": "1m",
    "3": "3m",
    "5": "5m",
    "10": "10m",
    "15": "15m",
    "30": "30m",
    "45": "45m",
    "60": "1h",
    "120": "2h",
    "180": "3h",
    "240": "4h",
    "1D": "1d",
    "1W": "1w",
    "1M": "1M",
    "3M": "3M",
}


def normalize_interval(interval: str) -> str:
    """Map a range code such as ``"60"`` or ``"1D"`` to ``"1h"``/``"1d"`` form."""
    value = interval.strip()
    return _RANGE_CODES.get(value, value)


def interval_seconds(interval: str) -> int:
    """Return the length of one candle in seconds."""
    value = normalize_interval(interval)
    if len(value) < 2:
        raise ValueError(f"unsupported_interval: {interval}")
    count, unit = value[:-1], value[-1]
    if unit not in _UNIT_SECONDS or not count.isdigit() or int(count) <= 0:
        raise ValueError(f"unsupported_interval: {interval}")
    return int(count) * _UNIT_SECONDS[unit]


def seconds_until_next_boundary(
    interval_secs: float,
    now: datetime | None = None,
    *,
    settle_seconds: float = 1.0,
) -> float:
    """Delay until the next candle boundary plus a settle margin.

    Boundaries are multiples of the interval since the unix epoch, so a
    one-minute interval fires one second past every full minute.
    """
    if interval_secs <= 0:
        raise ValueError("interval_must_be_positive")
    current = (now or datetime.now(timezone.utc)).timestamp()
    next_boundary = (current // interval_secs + 1) * interval_secs
    return next_boundary - current + settle_seconds
