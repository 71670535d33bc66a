"""Execution coordinator: position state machine, cooldown and order retries."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from signal_trader.errors import ExecutionFailed, OrderPlacementError
from signal_trader.types import ExecutionResult, PositionState, RiskDecision, Side, Signal
from signal_trader.utils.logging import get_logger, log_order_execution

if TYPE_CHECKING:
    from signal_trader.config import Settings

T = TypeVar("T")


class OrderGateway(Protocol):
    """Order-placement collaborator."""

    async def open_position(
        self,
        side: Side,
        quantity: float,
        stop_loss: float,
        take_profit: float,
        *,
        client_order_id: str | None = None,
    ) -> str: ...

    async def close_position(self, position_id: str) -> None: ...


class BalanceProvider(Protocol):
    """Account-balance collaborator."""

    async def current_balance(self) -> float: ...


@dataclass(frozen=True, slots=True)
class _Plan:
    action: str
    close_id: str | None = None
    reopen: bool = False
    decision: RiskDecision | None = None


class ExecutionCoordinator:
    """Idle/PositionOpen state machine for one instrument.

    The lock covers only the state check and the state update. Network calls
    to the gateway happen between the two critical sections; an in-flight
    flag keeps a concurrent caller from planning on a stale state.
    """

    def __init__(
        self,
        gateway: OrderGateway,
        *,
        trade_gap: float,
        symbol: str = "",
        max_attempts: int = 3,
        order_timeout: float = 10.0,
        retry_wait: float = 0.5,
        initial_state: PositionState | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._gateway = gateway
        self._trade_gap = trade_gap
        self._symbol = symbol
        self._max_attempts = max_attempts
        self._order_timeout = order_timeout
        self._retry_wait = retry_wait
        self._state = replace(initial_state) if initial_state else PositionState()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = asyncio.Lock()
        self._in_flight = False
        self._unresolved: asyncio.Future[Any] | None = None
        self._logger = get_logger("signal_trader.exec.coordinator")

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        gateway: OrderGateway,
        *,
        initial_state: PositionState | None = None,
    ) -> ExecutionCoordinator:
        return cls(
            gateway,
            trade_gap=settings.trade_gap,
            symbol=settings.symbol,
            max_attempts=settings.order_max_attempts,
            order_timeout=settings.order_timeout,
            initial_state=initial_state,
        )

    async def position(self) -> PositionState:
        """Copy of the current position state."""
        async with self._lock:
            return replace(self._state)

    def cooldown_elapsed(self, now: datetime) -> bool:
        last = self._state.last_trade_at
        if last is None:
            return True
        return (now - last).total_seconds() >= self._trade_gap

    async def execute(
        self,
        signal: Signal,
        decision: RiskDecision | None,
        now: datetime | None = None,
    ) -> ExecutionResult:
        """Apply one signal/decision pair. Never raises for gateway failures."""
        now = now or self._clock()
        async with self._lock:
            plan = self._plan(signal, decision, now)
            if plan.action not in ("open", "reverse"):
                return ExecutionResult(status=plan.action)
            self._in_flight = True

        try:
            if plan.action == "open" and plan.decision is not None:
                return await self._open(plan.decision, now)
            return await self._reverse(plan, now)
        finally:
            async with self._lock:
                self._in_flight = False

    def _plan(self, signal: Signal, decision: RiskDecision | None, now: datetime) -> _Plan:
        if self._in_flight or self._unresolved is not None:
            return _Plan("busy")
        state = self._state
        side = signal.side
        if not state.is_open:
            if side is None:
                return _Plan("idle")
            if decision is None:
                return _Plan("no_decision")
            if not self.cooldown_elapsed(now):
                self._logger.info(
                    "trade_skipped_cooldown",
                    signal=signal.name,
                    trade_gap=self._trade_gap,
                )
                return _Plan("cooldown")
            return _Plan("open", decision=decision)

        if side is None or side == state.side:
            return _Plan("hold_position")
        reopen = decision is not None and self.cooldown_elapsed(now)
        return _Plan(
            "reverse", close_id=state.position_id, reopen=reopen, decision=decision
        )

    async def _open(self, decision: RiskDecision, now: datetime) -> ExecutionResult:
        side = decision.side
        client_order_id = self._client_order_id(side, now)
        try:
            position_id = await self._place(
                "open",
                lambda: self._gateway.open_position(
                    side,
                    decision.quantity,
                    decision.stop_loss,
                    decision.take_profit,
                    client_order_id=client_order_id,
                ),
                on_late=lambda late_id: self._record_open(decision, late_id, now, "opened_late"),
            )
        except ExecutionFailed as exc:
            return self._report_failure(exc)

        async with self._lock:
            order = self._record_open(decision, position_id, now, "opened")
        return ExecutionResult(status="opened", orders=[order])

    def _record_open(
        self, decision: RiskDecision, position_id: str, now: datetime, status: str
    ) -> dict[str, object]:
        side = decision.side
        self._state = PositionState(
            is_open=True,
            side=side,
            position_id=position_id,
            quantity=decision.quantity,
            entry_price=decision.entry_price_hint,
            last_trade_at=now,
        )
        log_order_execution(
            self._logger,
            symbol=self._symbol,
            side=side.value,
            quantity=decision.quantity,
            price=decision.entry_price_hint,
            order_id=position_id,
            status=status,
            stop_loss=decision.stop_loss,
            take_profit=decision.take_profit,
        )
        return self._order_record("open", side, decision.quantity, position_id, now, decision)

    def _record_close(self) -> None:
        self._state = PositionState(last_trade_at=self._state.last_trade_at)

    async def _reverse(self, plan: _Plan, now: datetime) -> ExecutionResult:
        closed_side = self._state.side
        closed_qty = self._state.quantity
        if plan.close_id is not None:
            close_id = plan.close_id
            try:
                await self._place(
                    "close",
                    lambda: self._gateway.close_position(close_id),
                    on_late=lambda _: self._record_close(),
                )
            except ExecutionFailed as exc:
                return self._report_failure(exc)

        async with self._lock:
            self._record_close()
        close_order = self._order_record(
            "close", closed_side, closed_qty, plan.close_id, now, None
        )
        log_order_execution(
            self._logger,
            symbol=self._symbol,
            side=closed_side.value if closed_side else "",
            quantity=closed_qty,
            order_id=plan.close_id,
            status="closed",
        )

        if not plan.reopen or plan.decision is None:
            return ExecutionResult(status="closed", orders=[close_order])

        opened = await self._open(plan.decision, now)
        if opened.status != "opened":
            return ExecutionResult(
                status="closed_reopen_failed",
                orders=[close_order],
                error=opened.error,
            )
        return ExecutionResult(status="reversed", orders=[close_order, *opened.orders])

    def _client_order_id(self, side: Side, now: datetime) -> str:
        return f"st-{side.value.lower()}-{int(now.timestamp() * 1000)}"

    async def _place(
        self,
        action: str,
        call: Callable[[], Awaitable[T]],
        on_late: Callable[[T], None] | None = None,
    ) -> T:
        """Run one gateway call with bounded retries and a per-attempt timeout.

        A timed-out attempt is not abandoned: the gateway call keeps running
        and the next attempt waits on that same call. Only a call that failed
        is started again. If attempts run out while the call is still pending,
        its outcome is applied through ``on_late`` once it resolves and the
        coordinator reports ``busy`` until then.
        """
        pending: asyncio.Future[T] | None = None

        async def attempt() -> T:
            nonlocal pending
            if pending is None or (
                pending.done() and (pending.cancelled() or pending.exception() is not None)
            ):
                pending = asyncio.ensure_future(call())
            return await asyncio.wait_for(asyncio.shield(pending), timeout=self._order_timeout)

        retrying = AsyncRetrying(
            retry=retry_if_exception_type((OrderPlacementError, asyncio.TimeoutError)),
            wait=wait_exponential(
                multiplier=self._retry_wait,
                min=self._retry_wait,
                max=self._retry_wait * 8,
            ),
            stop=stop_after_attempt(self._max_attempts),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            return await retrying(attempt)
        except (OrderPlacementError, asyncio.TimeoutError) as exc:
            raise ExecutionFailed(action, exc) from exc
        finally:
            if pending is not None and not pending.done():
                self._await_outcome(action, pending, on_late)

    def _await_outcome(
        self,
        action: str,
        pending: asyncio.Future[T],
        on_late: Callable[[T], None] | None,
    ) -> None:
        self._unresolved = pending
        self._logger.warning("order_outcome_pending", action=action)

        # Done callbacks run on the loop between awaits; no lock section awaits.
        def resolve(future: asyncio.Future[T]) -> None:
            if self._unresolved is future:
                self._unresolved = None
            if future.cancelled() or future.exception() is not None:
                self._logger.error(
                    "late_order_failed",
                    action=action,
                    error=None if future.cancelled() else str(future.exception()),
                )
                return
            self._logger.warning("late_order_completed", action=action)
            if on_late is not None:
                on_late(future.result())

        pending.add_done_callback(resolve)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        self._logger.warning(
            "order_retry",
            attempt=retry_state.attempt_number,
            error=str(outcome.exception()) if outcome is not None else None,
        )

    def _report_failure(self, exc: ExecutionFailed) -> ExecutionResult:
        self._logger.error(
            "execution_failed",
            action=exc.action,
            error=str(exc.cause),
            attempts=self._max_attempts,
        )
        return ExecutionResult(status="failed", error=str(exc))

    def _order_record(
        self,
        action: str,
        side: Side | None,
        quantity: float,
        position_id: str | None,
        now: datetime,
        decision: RiskDecision | None,
    ) -> dict[str, object]:
        record: dict[str, object] = {
            "action": action,
            "symbol": self._symbol,
            "side": side.value if side else None,
            "qty": float(quantity),
            "position_id": position_id,
            "status": "filled",
            "timestamp": now.isoformat(),
        }
        if decision is not None:
            record.update(
                {
                    "price": decision.entry_price_hint,
                    "stop_loss": decision.stop_loss,
                    "take_profit": decision.take_profit,
                    "signal": decision.signal.name,
                }
            )
        return record
