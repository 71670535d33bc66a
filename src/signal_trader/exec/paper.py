"""Paper trading executor with persistent local state."""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from signal_trader.errors import OrderPlacementError
from signal_trader.types import PositionState, Side


@dataclass(slots=True)
class PaperPosition:
    """One simulated leveraged position."""

    position_id: str
    side: str
    qty: float
    entry_price: float
    stop_loss: float
    take_profit: float
    margin: float
    opened_at: str
    unrealized_pnl: float = 0.0


@dataclass(slots=True)
class _PaperState:
    equity: float
    initial_equity: float
    positions: dict[str, PaperPosition] = field(default_factory=dict)


class PaperExecutor:
    """Simulated order placement and balance for one symbol.

    Implements both the order gateway and the balance provider. Fills use the
    last marked price shifted by ``slippage_bps`` against the trader.
    """

    def __init__(
        self,
        journal_dir: Path,
        *,
        leverage: float,
        slippage_bps: float = 2.0,
        initial_equity: float = 10_000.0,
        persist: bool = True,
    ) -> None:
        self._leverage = leverage
        self._slippage_bps = slippage_bps
        self._persist_enabled = persist
        self._state_file = journal_dir / "paper_state.json"
        self._state = self._load_state(initial_equity)
        self._last_price: float | None = None
        self._client_orders: dict[str, str] = {}

    @property
    def equity(self) -> float:
        return self._state.equity

    @property
    def positions(self) -> dict[str, PaperPosition]:
        return dict(self._state.positions)

    def mark_price(self, price: float) -> None:
        """Update the reference price and unrealized PnL."""
        if price <= 0:
            return
        self._last_price = float(price)
        for position in self._state.positions.values():
            position.unrealized_pnl = self._pnl(position, price)

    def position_state(self) -> PositionState:
        """Position state for restoring the execution coordinator after restart."""
        if not self._state.positions:
            return PositionState()
        position = next(iter(self._state.positions.values()))
        return PositionState(
            is_open=True,
            side=Side(position.side),
            position_id=position.position_id,
            quantity=position.qty,
            entry_price=position.entry_price,
            last_trade_at=datetime.fromisoformat(position.opened_at),
        )

    async def current_balance(self) -> float:
        """Equity not locked as margin by open positions."""
        locked = sum(p.margin for p in self._state.positions.values())
        return max(0.0, self._state.equity - locked)

    async def open_position(
        self,
        side: Side,
        quantity: float,
        stop_loss: float,
        take_profit: float,
        *,
        client_order_id: str | None = None,
    ) -> str:
        """Open a position at the marked price with configured slippage.

        A repeated ``client_order_id`` returns the position it already opened.
        """
        if client_order_id in self._client_orders:
            return self._client_orders[client_order_id]
        if quantity <= 0:
            raise OrderPlacementError("qty_must_be_positive")
        if self._last_price is None:
            raise OrderPlacementError("no_reference_price")
        direction = 1.0 if side is Side.LONG else -1.0
        fill_price = self._last_price * (1.0 + direction * self._slippage_bps / 10_000.0)
        margin = quantity * fill_price / self._leverage
        if margin > await self.current_balance():
            raise OrderPlacementError("insufficient_margin")

        position = PaperPosition(
            position_id=uuid.uuid4().hex,
            side=side.value,
            qty=float(quantity),
            entry_price=float(fill_price),
            stop_loss=float(stop_loss),
            take_profit=float(take_profit),
            margin=float(margin),
            opened_at=datetime.now(timezone.utc).isoformat(),
        )
        self._state.positions[position.position_id] = position
        self._persist()
        if client_order_id is not None:
            self._client_orders[client_order_id] = position.position_id
        return position.position_id

    async def close_position(self, position_id: str) -> None:
        """Close a position at the marked price and realize PnL."""
        position = self._state.positions.get(position_id)
        if position is None:
            raise OrderPlacementError(f"unknown_position: {position_id}")
        raw_exit = self._last_price if self._last_price is not None else position.entry_price
        direction = 1.0 if position.side == Side.LONG.value else -1.0
        fill_price = raw_exit * (1.0 - direction * self._slippage_bps / 10_000.0)
        self._state.equity += self._pnl(position, fill_price)
        del self._state.positions[position_id]
        self._persist()

    def _pnl(self, position: PaperPosition, price: float) -> float:
        if position.side == Side.LONG.value:
            return (price - position.entry_price) * position.qty
        return (position.entry_price - price) * position.qty

    def _load_state(self, initial_equity: float) -> _PaperState:
        if not self._persist_enabled or not self._state_file.exists():
            return _PaperState(equity=initial_equity, initial_equity=initial_equity)

        raw = json.loads(self._state_file.read_text(encoding="utf-8"))
        positions_payload = raw.get("positions") or {}
        positions = {
            key: PaperPosition(**value)
            for key, value in positions_payload.items()
            if isinstance(value, dict)
        }
        return _PaperState(
            equity=float(raw.get("equity", initial_equity)),
            initial_equity=float(raw.get("initial_equity", initial_equity)),
            positions=positions,
        )

    def _persist(self) -> None:
        if not self._persist_enabled:
            return
        payload: dict[str, Any] = {
            "equity": self._state.equity,
            "initial_equity": self._state.initial_equity,
            "positions": {key: asdict(value) for key, value in self._state.positions.items()},
        }
        serialized = json.dumps(payload, ensure_ascii=True, indent=2)
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        self._state_file.write_text(serialized, encoding="utf-8")
