"""Live pipeline: feed → buffer → indicators → signal → sizing → execution."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from time import perf_counter
from typing import Callable, Iterable

from signal_trader.config import Settings
from signal_trader.data.buffer import PriceBuffer
from signal_trader.data.feed import PriceFeed
from signal_trader.exec.coordinator import BalanceProvider, ExecutionCoordinator
from signal_trader.features.indicators import IndicatorEngine, IndicatorParams
from signal_trader.journal.store import JournalStore
from signal_trader.risk.sizing import RiskEngine, SizingParams
from signal_trader.strategy.signals import SignalThresholds, evaluate
from signal_trader.types import (
    CycleResult,
    IndicatorSnapshot,
    PriceObservation,
    RiskDecision,
    Signal,
)
from signal_trader.utils.logging import get_logger, log_trade_signal
from signal_trader.utils.timeframes import seconds_until_next_boundary


@dataclass(frozen=True, slots=True)
class _Recomputed:
    cycle: int
    snapshot: IndicatorSnapshot
    price: float | None
    started: float


@dataclass(frozen=True, slots=True)
class _Proposal:
    cycle: int
    snapshot: IndicatorSnapshot
    price: float | None
    signal: Signal
    decision: RiskDecision | None
    started: float


class Orchestrator:
    """Owns the task graph and the shared market state of one instrument.

    Four tasks run concurrently: feed ingestion, a fixed-interval indicator
    recompute, signal + sizing, and execution. Stages hand work to each other
    through single-slot queues, so every signal is evaluated on the snapshot
    produced by the recompute of the same cycle.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        feed: PriceFeed,
        balance: BalanceProvider,
        coordinator: ExecutionCoordinator,
        journal: JournalStore | None = None,
        engine: IndicatorEngine | None = None,
        risk_engine: RiskEngine | None = None,
        thresholds: SignalThresholds | None = None,
        buffer: PriceBuffer | None = None,
        on_price: Callable[[float], None] | None = None,
        shutdown_timeout: float | None = None,
    ) -> None:
        self._settings = settings
        self._feed = feed
        self._balance = balance
        self._coordinator = coordinator
        self._journal = journal
        self._engine = engine or IndicatorEngine(
            IndicatorParams.from_settings(settings),
            candle_interval_seconds=settings.candle_seconds,
            gap_tolerance=settings.gap_tolerance,
        )
        self._risk_engine = risk_engine or RiskEngine(SizingParams.from_settings(settings))
        self._thresholds = thresholds or SignalThresholds.from_settings(settings)
        self._buffer = buffer or PriceBuffer(settings.buffer_capacity)
        self._on_price = on_price
        self._shutdown_timeout = (
            shutdown_timeout
            if shutdown_timeout is not None
            else settings.order_timeout * settings.order_max_attempts + 5.0
        )
        self._snapshot = IndicatorSnapshot()
        self._cycle = 0
        self._stop = asyncio.Event()
        self.ready = asyncio.Event()
        self.last_result: CycleResult | None = None
        self._logger = get_logger("signal_trader.orchestrator")

    @property
    def snapshot(self) -> IndicatorSnapshot:
        """Most recently published indicator snapshot."""
        return self._snapshot

    @property
    def cycle(self) -> int:
        return self._cycle

    # ------------------------------------------------------------------
    # Stage operations
    # ------------------------------------------------------------------

    def seed(self, candles: Iterable[PriceObservation]) -> IndicatorSnapshot:
        """Load historical candles so indicators are warm before the feed starts."""
        kept = self._buffer.extend(list(candles))
        snapshot = self._engine.update(self._buffer.snapshot().candles)
        self._snapshot = snapshot
        if kept:
            price = self._buffer.snapshot().current_price
            if self._on_price is not None and price is not None:
                self._on_price(price)
            self.ready.set()
        self._logger.info("warmup_seeded", candles=kept, warm=snapshot.is_warm)
        self._record("warmup", {"candles": kept, "warm": snapshot.is_warm, **snapshot.as_dict()})
        return snapshot

    def ingest(self, observation: PriceObservation) -> bool:
        """Append one feed observation to the buffer and signal readiness."""
        accepted = self._buffer.append(observation)
        if accepted:
            if self._on_price is not None:
                self._on_price(observation.close)
            self.ready.set()
        return accepted

    def recompute(self) -> _Recomputed:
        """Rebuild indicators from a consistent buffer copy and publish them."""
        started = perf_counter()
        view = self._buffer.snapshot()
        snapshot = self._engine.update(view.candles)
        self._snapshot = snapshot
        self._cycle += 1

        gap = self._engine.last_discontinuity
        if gap is not None:
            self._record(
                "feed_discontinuity",
                {
                    "cycle": self._cycle,
                    "previous_at": gap.previous_at,
                    "current_at": gap.current_at,
                    "gap_seconds": gap.gap_seconds,
                },
            )
        self._record("indicator_snapshot", {"cycle": self._cycle, **snapshot.as_dict()})
        return _Recomputed(
            cycle=self._cycle,
            snapshot=snapshot,
            price=view.current_price,
            started=started,
        )

    async def evaluate_and_size(self, work: _Recomputed) -> _Proposal:
        """Derive the signal for one cycle and size it when it may lead to an order."""
        signal = evaluate(work.snapshot, work.price, self._thresholds)
        decision: RiskDecision | None = None

        if signal != Signal.HOLD and work.price is not None:
            log_trade_signal(
                self._logger,
                symbol=self._settings.symbol,
                signal=signal.label,
                price=work.price,
                cycle=work.cycle,
            )
            self._record(
                "signal",
                {"cycle": work.cycle, "signal": signal.name, "price": work.price},
            )
            position = await self._coordinator.position()
            if not (position.is_open and position.side == signal.side):
                balance = await self._balance.current_balance()
                decision = self._risk_engine.size(signal, balance, work.snapshot.atr, work.price)
                self._record(
                    "risk_decision",
                    {
                        "cycle": work.cycle,
                        "signal": signal.name,
                        "balance": balance,
                        "accepted": decision is not None,
                        "quantity": decision.quantity if decision else None,
                        "notional": decision.notional if decision else None,
                        "stop_loss": decision.stop_loss if decision else None,
                        "take_profit": decision.take_profit if decision else None,
                    },
                )

        return _Proposal(
            cycle=work.cycle,
            snapshot=work.snapshot,
            price=work.price,
            signal=signal,
            decision=decision,
            started=work.started,
        )

    async def execute(self, proposal: _Proposal) -> CycleResult:
        """Hand one proposal to the coordinator and close out the cycle."""
        result = CycleResult(
            status="unknown",
            cycle=proposal.cycle,
            signal=proposal.signal,
            price=proposal.price,
            snapshot=proposal.snapshot,
            decision=proposal.decision,
        )
        if not proposal.snapshot.is_warm:
            result.warnings.append("indicators_warming_up")
            return self._finish_cycle(result, proposal.started, status="warming_up")

        execution = await self._coordinator.execute(proposal.signal, proposal.decision)
        result.execution = execution
        for order in execution.orders:
            self._record("order", {"cycle": proposal.cycle, **order})
        if execution.error is not None:
            result.warnings.append(execution.error)
            self._record(
                "execution_failed",
                {"cycle": proposal.cycle, "status": execution.status, "error": execution.error},
            )
        return self._finish_cycle(result, proposal.started, status=execution.status)

    async def run_cycle(self) -> CycleResult:
        """One recompute → signal → sizing → execution pass, in order."""
        work = self.recompute()
        proposal = await self.evaluate_and_size(work)
        return await self.execute(proposal)

    # ------------------------------------------------------------------
    # Task graph
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        """Run all tasks until ``request_stop`` is called or the feed ends."""
        self._stop.clear()
        self._record(
            "session_start",
            {
                "symbol": self._settings.symbol,
                "mode": self._settings.mode.value,
                "interval": self._settings.candle_interval,
                "started_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        self._logger.info(
            "orchestrator_started",
            symbol=self._settings.symbol,
            recompute_interval=self._settings.effective_recompute_interval,
        )

        signals: asyncio.Queue[_Recomputed | None] = asyncio.Queue(maxsize=1)
        executions: asyncio.Queue[_Proposal | None] = asyncio.Queue(maxsize=1)
        tasks = [
            asyncio.create_task(self._ingestion_task(), name="feed_ingestion"),
            asyncio.create_task(self._recompute_task(signals), name="indicator_recompute"),
            asyncio.create_task(self._signal_task(signals, executions), name="signal_sizing"),
            asyncio.create_task(self._execution_task(executions), name="execution"),
        ]
        try:
            await self._stop.wait()
        finally:
            await self._shutdown(tasks)

    async def _shutdown(self, tasks: list[asyncio.Task[None]]) -> None:
        self._stop.set()
        await self._feed.close()
        done, pending = await asyncio.wait(tasks, timeout=self._shutdown_timeout)
        for task in pending:
            self._logger.warning("task_cancelled_on_shutdown", task=task.get_name())
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                self._logger.error(
                    "task_failed", task=task.get_name(), error=str(task.exception())
                )
        self._record("session_end", {"cycles": self._cycle})
        self._logger.info("orchestrator_stopped", cycles=self._cycle)

    async def _ingestion_task(self) -> None:
        try:
            async for observation in self._feed.stream():
                self.ingest(observation)
                if self._stop.is_set():
                    break
        except Exception as exc:  # noqa: BLE001 - feed errors end the session, not the process.
            self._logger.exception("feed_ingestion_failed", error=str(exc))
            self._record("error", {"stage": "feed_ingestion", "error": str(exc)})
        finally:
            if not self._stop.is_set():
                self._logger.warning("feed_ended")
                self.request_stop()

    async def _recompute_task(self, outbox: asyncio.Queue[_Recomputed | None]) -> None:
        await self._recompute_loop(outbox)
        # Downstream stages drain what is queued, then stop on the sentinel.
        await outbox.put(None)

    async def _recompute_loop(self, outbox: asyncio.Queue[_Recomputed | None]) -> None:
        if not await self._wait_ready():
            return
        interval = self._settings.effective_recompute_interval
        if self._settings.align_recompute:
            first_delay = seconds_until_next_boundary(self._settings.candle_seconds)
            self._logger.info("recompute_aligned", first_delay=round(first_delay, 3))
            if await self._sleep(first_delay):
                return

        while not self._stop.is_set():
            try:
                work = self.recompute()
            except Exception as exc:  # noqa: BLE001 - isolate one failed cycle.
                self._logger.exception("recompute_cycle_failed", error=str(exc))
                self._record("error", {"stage": "recompute", "error": str(exc)})
            else:
                await outbox.put(work)
            if await self._sleep(interval):
                return

    async def _signal_task(
        self,
        inbox: asyncio.Queue[_Recomputed | None],
        outbox: asyncio.Queue[_Proposal | None],
    ) -> None:
        while True:
            work = await inbox.get()
            if work is None:
                await outbox.put(None)
                return
            try:
                proposal = await self.evaluate_and_size(work)
            except Exception as exc:  # noqa: BLE001 - isolate one failed cycle.
                self._logger.exception("signal_cycle_failed", cycle=work.cycle, error=str(exc))
                self._record("error", {"stage": "signal", "cycle": work.cycle, "error": str(exc)})
                continue
            await outbox.put(proposal)

    async def _execution_task(self, inbox: asyncio.Queue[_Proposal | None]) -> None:
        while True:
            proposal = await inbox.get()
            if proposal is None:
                return
            try:
                self.last_result = await self.execute(proposal)
            except Exception as exc:  # noqa: BLE001 - isolate one failed cycle.
                self._logger.exception(
                    "execution_cycle_failed", cycle=proposal.cycle, error=str(exc)
                )
                self._record(
                    "error", {"stage": "execution", "cycle": proposal.cycle, "error": str(exc)}
                )

    async def _sleep(self, delay: float) -> bool:
        """Sleep up to ``delay`` seconds. Returns True when stop was requested."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _wait_ready(self) -> bool:
        """Wait for the first observation. Returns False when stop came first."""
        if self.ready.is_set():
            return True
        ready = asyncio.create_task(self.ready.wait())
        stopped = asyncio.create_task(self._stop.wait())
        _, pending = await asyncio.wait({ready, stopped}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        return self.ready.is_set() and not self._stop.is_set()

    def _finish_cycle(self, result: CycleResult, started: float, *, status: str) -> CycleResult:
        result.status = status
        result.elapsed_ms = (perf_counter() - started) * 1000
        self._record(
            "cycle_end",
            {
                "cycle": result.cycle,
                "status": status,
                "signal": result.signal.name,
                "price": result.price,
                "elapsed_ms": result.elapsed_ms,
            },
        )
        self._logger.debug(
            "cycle_completed",
            cycle=result.cycle,
            status=status,
            signal=result.signal.name,
            elapsed_ms=round(result.elapsed_ms, 2),
        )
        return result

    def _record(self, event_type: str, payload: dict[str, object]) -> None:
        if self._journal is not None:
            self._journal.append(event_type, payload)
