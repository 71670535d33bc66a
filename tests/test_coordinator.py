from __future__ import annotations

import asyncio
import threading
import time
from datetime import UTC, datetime, timedelta

import pytest

from signal_trader.errors import OrderPlacementError
from signal_trader.exec.coordinator import ExecutionCoordinator
from signal_trader.types import PositionState, RiskDecision, Side, Signal

_T0 = datetime(2024, 5, 1, 9, 30, tzinfo=UTC)


class _FakeGateway:
    def __init__(self, *, open_failures: int = 0, close_failures: int = 0, delay: float = 0.0) -> None:
        self.opened: list[tuple[Side, float]] = []
        self.closed: list[str] = []
        self.open_attempts = 0
        self.client_order_ids: list[str | None] = []
        self._open_failures = open_failures
        self._close_failures = close_failures
        self._delay = delay

    async def open_position(
        self,
        side: Side,
        quantity: float,
        stop_loss: float,
        take_profit: float,
        *,
        client_order_id: str | None = None,
    ) -> str:
        self.open_attempts += 1
        self.client_order_ids.append(client_order_id)
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._open_failures > 0:
            self._open_failures -= 1
            raise OrderPlacementError("rejected")
        self.opened.append((side, quantity))
        return f"pos-{len(self.opened)}"

    async def close_position(self, position_id: str) -> None:
        if self._close_failures > 0:
            self._close_failures -= 1
            raise OrderPlacementError("close_rejected")
        self.closed.append(position_id)


def _decision(signal: Signal = Signal.BUY, quantity: float = 0.4) -> RiskDecision:
    long = signal > 0
    return RiskDecision(
        signal=signal,
        quantity=quantity,
        entry_price_hint=100.0,
        stop_loss=50.0 if long else 150.0,
        take_profit=140.0 if long else 60.0,
    )


def _coordinator(gateway: _FakeGateway, **kwargs: object) -> ExecutionCoordinator:
    options: dict[str, object] = {"trade_gap": 5.0, "symbol": "BTCUSDT", "retry_wait": 0.0}
    options.update(kwargs)
    return ExecutionCoordinator(gateway, **options)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_idle_buy_opens_long() -> None:
    gateway = _FakeGateway()
    coordinator = _coordinator(gateway)

    result = await coordinator.execute(Signal.BUY, _decision(), now=_T0)
    position = await coordinator.position()

    assert result.status == "opened"
    assert result.orders[0]["action"] == "open"
    assert result.orders[0]["side"] == "LONG"
    assert position.is_open and position.side is Side.LONG
    assert position.position_id == "pos-1"
    assert position.last_trade_at == _T0


@pytest.mark.asyncio
async def test_repeated_same_side_signal_is_idempotent() -> None:
    gateway = _FakeGateway()
    coordinator = _coordinator(gateway)

    await coordinator.execute(Signal.BUY, _decision(), now=_T0)
    second = await coordinator.execute(
        Signal.STRONG_BUY, _decision(Signal.STRONG_BUY), now=_T0 + timedelta(seconds=1)
    )
    later = await coordinator.execute(Signal.BUY, _decision(), now=_T0 + timedelta(minutes=5))

    assert second.status == "hold_position"
    assert later.status == "hold_position"
    assert len(gateway.opened) == 1


@pytest.mark.asyncio
async def test_hold_and_missing_decision_do_nothing() -> None:
    gateway = _FakeGateway()
    coordinator = _coordinator(gateway)

    assert (await coordinator.execute(Signal.HOLD, None, now=_T0)).status == "idle"
    assert (await coordinator.execute(Signal.BUY, None, now=_T0)).status == "no_decision"
    assert gateway.open_attempts == 0


@pytest.mark.asyncio
async def test_reversal_after_cooldown_closes_then_reopens() -> None:
    gateway = _FakeGateway()
    coordinator = _coordinator(gateway)

    await coordinator.execute(Signal.BUY, _decision(), now=_T0)
    result = await coordinator.execute(
        Signal.SELL, _decision(Signal.SELL), now=_T0 + timedelta(seconds=10)
    )
    position = await coordinator.position()

    assert result.status == "reversed"
    assert [o["action"] for o in result.orders] == ["close", "open"]
    assert gateway.closed == ["pos-1"]
    assert position.side is Side.SHORT
    assert position.position_id == "pos-2"


@pytest.mark.asyncio
async def test_reversal_inside_cooldown_only_closes() -> None:
    gateway = _FakeGateway()
    coordinator = _coordinator(gateway)

    await coordinator.execute(Signal.BUY, _decision(), now=_T0)
    reversed_early = await coordinator.execute(
        Signal.SELL, _decision(Signal.SELL), now=_T0 + timedelta(seconds=2)
    )
    assert reversed_early.status == "closed"
    assert not (await coordinator.position()).is_open

    blocked = await coordinator.execute(
        Signal.SELL, _decision(Signal.SELL), now=_T0 + timedelta(seconds=4)
    )
    assert blocked.status == "cooldown"

    reopened = await coordinator.execute(
        Signal.SELL, _decision(Signal.SELL), now=_T0 + timedelta(seconds=5)
    )
    assert reopened.status == "opened"
    assert len(gateway.opened) == 2


@pytest.mark.asyncio
async def test_reverse_signal_without_decision_goes_idle() -> None:
    gateway = _FakeGateway()
    coordinator = _coordinator(gateway)

    await coordinator.execute(Signal.BUY, _decision(), now=_T0)
    result = await coordinator.execute(Signal.SELL, None, now=_T0 + timedelta(minutes=1))

    assert result.status == "closed"
    assert gateway.closed == ["pos-1"]
    assert not (await coordinator.position()).is_open


@pytest.mark.asyncio
async def test_transient_failures_are_retried() -> None:
    gateway = _FakeGateway(open_failures=2)
    coordinator = _coordinator(gateway, max_attempts=3)

    result = await coordinator.execute(Signal.BUY, _decision(), now=_T0)

    assert result.status == "opened"
    assert gateway.open_attempts == 3
    assert len(set(gateway.client_order_ids)) == 1
    assert gateway.client_order_ids[0] is not None


@pytest.mark.asyncio
async def test_exhausted_retries_leave_state_unchanged() -> None:
    gateway = _FakeGateway(open_failures=10)
    coordinator = _coordinator(gateway, max_attempts=3)

    result = await coordinator.execute(Signal.BUY, _decision(), now=_T0)
    position = await coordinator.position()

    assert result.status == "failed"
    assert result.error is not None and "rejected" in result.error
    assert gateway.open_attempts == 3
    assert position == PositionState()


@pytest.mark.asyncio
async def test_failed_close_keeps_position_open() -> None:
    gateway = _FakeGateway(close_failures=10)
    coordinator = _coordinator(gateway, max_attempts=2)

    await coordinator.execute(Signal.BUY, _decision(), now=_T0)
    result = await coordinator.execute(
        Signal.SELL, _decision(Signal.SELL), now=_T0 + timedelta(minutes=1)
    )
    position = await coordinator.position()

    assert result.status == "failed"
    assert position.is_open and position.side is Side.LONG
    assert position.last_trade_at == _T0


async def _wait_until_open(coordinator: ExecutionCoordinator, limit: float = 2.0) -> None:
    deadline = time.monotonic() + limit
    while not (await coordinator.position()).is_open:
        assert time.monotonic() < deadline, "position never resolved"
        await asyncio.sleep(0.01)


class _ThreadedGateway:
    """Blocking client calls run in worker threads that a timeout cannot stop."""

    def __init__(self, latency: float) -> None:
        self.placed: list[tuple[Side, float]] = []
        self._latency = latency
        self._lock = threading.Lock()

    async def open_position(
        self,
        side: Side,
        quantity: float,
        stop_loss: float,
        take_profit: float,
        *,
        client_order_id: str | None = None,
    ) -> str:
        return await asyncio.to_thread(self._send, side, quantity)

    def _send(self, side: Side, quantity: float) -> str:
        time.sleep(self._latency)
        with self._lock:
            self.placed.append((side, quantity))
            return f"ord-{len(self.placed)}"

    async def close_position(self, position_id: str) -> None:
        return None


@pytest.mark.asyncio
async def test_slow_gateway_attempt_times_out() -> None:
    gateway = _FakeGateway(delay=0.2)
    coordinator = _coordinator(gateway, max_attempts=2, order_timeout=0.01)

    result = await coordinator.execute(Signal.BUY, _decision(), now=_T0)

    assert result.status == "failed"
    assert gateway.open_attempts == 1
    assert not (await coordinator.position()).is_open
    await _wait_until_open(coordinator)


@pytest.mark.asyncio
async def test_timed_out_open_is_awaited_not_resent() -> None:
    gateway = _ThreadedGateway(latency=0.05)
    coordinator = _coordinator(gateway, max_attempts=2, order_timeout=0.04)

    result = await coordinator.execute(Signal.BUY, _decision(), now=_T0)
    position = await coordinator.position()

    assert result.status == "opened"
    assert gateway.placed == [(Side.LONG, 0.4)]
    assert position.is_open and position.position_id == "ord-1"


@pytest.mark.asyncio
async def test_unresolved_open_blocks_then_adopts_late_fill() -> None:
    gateway = _ThreadedGateway(latency=0.2)
    coordinator = _coordinator(gateway, max_attempts=2, order_timeout=0.02)

    result = await coordinator.execute(Signal.BUY, _decision(), now=_T0)
    blocked = await coordinator.execute(
        Signal.BUY, _decision(), now=_T0 + timedelta(minutes=1)
    )

    assert result.status == "failed"
    assert blocked.status == "busy"

    await _wait_until_open(coordinator)
    position = await coordinator.position()
    again = await coordinator.execute(Signal.BUY, _decision(), now=_T0 + timedelta(minutes=2))

    assert position.side is Side.LONG and position.position_id == "ord-1"
    assert position.last_trade_at == _T0
    assert again.status == "hold_position"
    assert len(gateway.placed) == 1


@pytest.mark.asyncio
async def test_concurrent_signals_open_once() -> None:
    gateway = _FakeGateway(delay=0.05)
    coordinator = _coordinator(gateway)

    first, second = await asyncio.gather(
        coordinator.execute(Signal.BUY, _decision(), now=_T0),
        coordinator.execute(Signal.BUY, _decision(), now=_T0),
    )

    assert sorted([first.status, second.status]) == ["busy", "opened"]
    assert len(gateway.opened) == 1


@pytest.mark.asyncio
async def test_restored_state_respects_cooldown() -> None:
    gateway = _FakeGateway()
    restored = PositionState(last_trade_at=_T0)
    coordinator = _coordinator(gateway, initial_state=restored)

    assert not coordinator.cooldown_elapsed(_T0 + timedelta(seconds=3))
    result = await coordinator.execute(Signal.BUY, _decision(), now=_T0 + timedelta(seconds=3))
    assert result.status == "cooldown"
