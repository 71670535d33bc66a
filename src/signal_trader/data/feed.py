"""Live price feed over the Binance futures combined websocket stream."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Protocol

import websockets
from websockets.exceptions import WebSocketException

from signal_trader.types import PriceObservation
from signal_trader.utils.logging import get_logger, log_feed_event
from signal_trader.utils.timeframes import normalize_interval

if TYPE_CHECKING:
    from signal_trader.config import Settings

_logger = get_logger("signal_trader.data.feed")


class PriceFeed(Protocol):
    """Feed collaborator: yields observations until closed."""

    def stream(self) -> AsyncIterator[PriceObservation]: ...

    async def close(self) -> None: ...


def _from_ms(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def parse_message(raw: str | bytes) -> PriceObservation | None:
    """Turn one stream message into a tick or a completed candle.

    Closed klines become candles stamped with their close time; open kline
    updates and aggregate trades become ticks. Anything else is ignored, and
    a kline or trade with missing or unparsable fields is dropped.
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    data = payload.get("data", payload)
    if not isinstance(data, dict):
        return None

    event = data.get("e")
    try:
        if event == "kline":
            return _from_kline(data)
        if event == "aggTrade":
            return PriceObservation.tick(_from_ms(data["T"]), float(data["p"]))
    except (AttributeError, KeyError, TypeError, ValueError, OverflowError) as exc:
        log_feed_event(
            _logger,
            event_type="malformed_message",
            stream_event=event,
            error=f"{type(exc).__name__}: {exc}",
        )
    return None


def _from_kline(data: dict[str, Any]) -> PriceObservation:
    k = data["k"]
    if k.get("x"):
        return PriceObservation.candle(
            timestamp=_from_ms(k["T"]),
            open=float(k["o"]),
            high=float(k["h"]),
            low=float(k["l"]),
            close=float(k["c"]),
        )
    return PriceObservation.tick(_from_ms(data.get("E", k.get("t"))), float(k["c"]))


class BinanceFuturesFeed:
    """Kline + aggTrade stream with reconnect backoff and heartbeat pings."""

    def __init__(
        self,
        symbol: str,
        interval: str,
        *,
        base_url: str = "wss://fstream.binance.com/stream",
        reconnect_initial_delay: float = 1.0,
        reconnect_max_delay: float = 60.0,
        heartbeat_interval: float = 5.0,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self._symbol = symbol.lower()
        self._interval = normalize_interval(interval)
        self._base_url = base_url
        self._initial_delay = reconnect_initial_delay
        self._reconnect_delay = reconnect_initial_delay
        self._max_reconnect_delay = reconnect_max_delay
        self._heartbeat_interval = heartbeat_interval
        self._connect = connect
        self._ws: Any = None
        self._closed = False
        self._logger = get_logger("signal_trader.data.feed")

    @classmethod
    def from_settings(cls, settings: Settings) -> BinanceFuturesFeed:
        return cls(
            settings.symbol,
            settings.candle_interval,
            base_url=settings.ws_base_url,
            reconnect_max_delay=settings.reconnect_max_delay,
            heartbeat_interval=settings.heartbeat_interval,
        )

    @property
    def stream_url(self) -> str:
        streams = f"{self._symbol}@kline_{self._interval}/{self._symbol}@aggTrade"
        return f"{self._base_url}?streams={streams}"

    async def stream(self) -> AsyncIterator[PriceObservation]:
        """Yield observations, reconnecting with exponential backoff until closed."""
        while not self._closed:
            try:
                async with self._connect(self.stream_url, ping_interval=None) as ws:
                    self._ws = ws
                    self._reconnect_delay = self._initial_delay
                    log_feed_event(self._logger, event_type="connected", url=self.stream_url)
                    async for observation in self._read(ws):
                        yield observation
            except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
                if self._closed:
                    break
                log_feed_event(
                    self._logger,
                    event_type="disconnected",
                    error=str(exc),
                    retry_in=self._reconnect_delay,
                )
            finally:
                self._ws = None

            if self._closed:
                break
            await asyncio.sleep(self._reconnect_delay)
            self._reconnect_delay = min(self._reconnect_delay * 2, self._max_reconnect_delay)

        log_feed_event(self._logger, event_type="closed", recoverable=False)

    async def _read(self, ws: Any) -> AsyncIterator[PriceObservation]:
        while not self._closed:
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=self._heartbeat_interval)
            except asyncio.TimeoutError:
                # Silent connection: a ping that goes unanswered forces a reconnect.
                pong_waiter = await ws.ping()
                await asyncio.wait_for(pong_waiter, timeout=self._heartbeat_interval)
                continue
            observation = parse_message(raw)
            if observation is not None:
                yield observation

    async def close(self) -> None:
        """Stop reconnecting and close the live connection."""
        self._closed = True
        ws = self._ws
        if ws is not None:
            await ws.close()
