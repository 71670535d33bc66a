from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from typing import Any

import pytest

from signal_trader.data.feed import BinanceFuturesFeed, parse_message
from signal_trader.types import PriceObservation


def _kline(closed: bool, close: str = "101.5") -> str:
    return json.dumps(
        {
            "stream": "btcusdt@kline_1m",
            "data": {
                "e": "kline",
                "E": 1_704_067_230_000,
                "k": {
                    "t": 1_704_067_200_000,
                    "T": 1_704_067_259_999,
                    "o": "100.0",
                    "h": "102.0",
                    "l": "99.5",
                    "c": close,
                    "x": closed,
                },
            },
        }
    )


def _agg_trade(price: str, ts: int) -> str:
    return json.dumps({"stream": "btcusdt@aggTrade", "data": {"e": "aggTrade", "p": price, "T": ts}})


def test_closed_kline_becomes_candle() -> None:
    observation = parse_message(_kline(closed=True))

    assert observation is not None
    assert observation.is_candle_close
    assert (observation.open, observation.high, observation.low, observation.close) == (
        100.0,
        102.0,
        99.5,
        101.5,
    )
    assert observation.timestamp == datetime.fromtimestamp(1_704_067_259.999, tz=UTC)


def test_open_kline_and_trades_become_ticks() -> None:
    update = parse_message(_kline(closed=False, close="101.0"))
    trade = parse_message(_agg_trade("101.25", 1_704_067_231_000))

    assert update is not None and not update.is_candle_close
    assert update.close == 101.0
    assert trade is not None and not trade.is_candle_close
    assert trade.close == 101.25


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2, 3]",
        json.dumps({"result": None, "id": 1}),
        json.dumps({"data": {"e": "markPriceUpdate", "p": "1"}}),
        json.dumps({"e": "kline", "k": {"x": True, "c": "1"}}),
        json.dumps({"data": {"e": "kline", "E": None, "k": {"x": False, "c": "1"}}}),
        json.dumps({"data": {"e": "aggTrade", "p": "abc", "T": 1_704_067_231_000}}),
        json.dumps({"data": {"e": "aggTrade", "p": "1.0"}}),
        json.dumps({"data": {"e": "kline", "k": "oops"}}),
    ],
)
def test_other_messages_are_ignored(raw: str) -> None:
    assert parse_message(raw) is None


def test_stream_url_combines_kline_and_trades() -> None:
    feed = BinanceFuturesFeed("BTCUSDT", "1", base_url="wss://example.test/stream")
    assert feed.stream_url == "wss://example.test/stream?streams=btcusdt@kline_1m/btcusdt@aggTrade"


class _FakeSocket:
    def __init__(self, messages: list[str], *, idle_pings: int = 0) -> None:
        self._messages = list(messages)
        self._idle_pings = idle_pings
        self.pings = 0
        self.closed = False

    async def recv(self) -> str:
        if self.pings < self._idle_pings or not self._messages:
            await asyncio.sleep(3600)
        return self._messages.pop(0)

    async def ping(self) -> asyncio.Future[None]:
        self.pings += 1
        pong: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        pong.set_result(None)
        return pong

    async def close(self) -> None:
        self.closed = True


class _FakeConnect:
    """Stands in for websockets.connect; each call consumes one scripted outcome."""

    def __init__(self, outcomes: list[Any]) -> None:
        self._outcomes = list(outcomes)
        self.urls: list[str] = []

    def __call__(self, url: str, **kwargs: Any) -> _FakeConnect:
        self.urls.append(url)
        self._current = self._outcomes.pop(0)
        return self

    async def __aenter__(self) -> _FakeSocket:
        if isinstance(self._current, Exception):
            raise self._current
        return self._current

    async def __aexit__(self, *exc_info: object) -> None:
        return None


async def _take(feed: BinanceFuturesFeed, count: int) -> list[PriceObservation]:
    stream = feed.stream()
    received = []
    async for observation in stream:
        received.append(observation)
        if len(received) == count:
            break
    await stream.aclose()
    return received


@pytest.mark.asyncio
async def test_reconnects_after_connection_error() -> None:
    socket = _FakeSocket([_kline(closed=True), _agg_trade("101.0", 1_704_067_260_500)])
    connect = _FakeConnect([OSError("connection refused"), socket])
    feed = BinanceFuturesFeed(
        "BTCUSDT",
        "1m",
        reconnect_initial_delay=0.01,
        heartbeat_interval=1.0,
        connect=connect,
    )

    received = await asyncio.wait_for(_take(feed, 2), timeout=2.0)

    assert len(connect.urls) == 2
    assert [o.is_candle_close for o in received] == [True, False]


@pytest.mark.asyncio
async def test_malformed_frame_does_not_end_the_stream() -> None:
    bad = json.dumps({"data": {"e": "aggTrade", "p": "abc", "T": 1_704_067_231_000}})
    socket = _FakeSocket([bad, _agg_trade("101.0", 1_704_067_232_000)])
    connect = _FakeConnect([socket])
    feed = BinanceFuturesFeed("BTCUSDT", "1m", heartbeat_interval=1.0, connect=connect)

    received = await asyncio.wait_for(_take(feed, 1), timeout=2.0)

    assert [o.close for o in received] == [101.0]
    assert len(connect.urls) == 1


@pytest.mark.asyncio
async def test_pings_when_connection_is_silent() -> None:
    socket = _FakeSocket([_agg_trade("100.0", 1_704_067_260_000)], idle_pings=2)
    feed = BinanceFuturesFeed(
        "BTCUSDT",
        "1m",
        heartbeat_interval=0.01,
        connect=_FakeConnect([socket]),
    )

    received = await asyncio.wait_for(_take(feed, 1), timeout=2.0)

    assert socket.pings >= 2
    assert received[0].close == 100.0


@pytest.mark.asyncio
async def test_close_stops_the_stream() -> None:
    socket = _FakeSocket([])
    feed = BinanceFuturesFeed(
        "BTCUSDT", "1m", heartbeat_interval=0.01, connect=_FakeConnect([socket])
    )

    async def _consume() -> list[PriceObservation]:
        return [observation async for observation in feed.stream()]

    consumer = asyncio.create_task(_consume())
    await asyncio.sleep(0.05)
    await feed.close()

    assert await asyncio.wait_for(consumer, timeout=2.0) == []
    assert socket.closed
