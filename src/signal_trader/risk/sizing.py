"""Risk-bounded position sizing with ATR stops."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

from signal_trader.errors import InsufficientData, SizingRejected
from signal_trader.types import RiskDecision, Side, Signal
from signal_trader.utils.logging import get_logger, log_risk_event

if TYPE_CHECKING:
    from signal_trader.config import Settings


@dataclass(frozen=True, slots=True)
class SizingParams:
    """Risk and exchange lot parameters."""

    atr_stop_multiplier: float = 0.75
    risk_reward_ratio: float = 0.8
    risk_per_trade: float = 0.01
    leverage: float = 20.0
    strength_multiplier: float = 1.5
    min_qty: float = 0.001
    max_qty: float = 1000.0
    qty_step: float = 0.001

    @classmethod
    def from_settings(cls, settings: Settings) -> SizingParams:
        return cls(
            atr_stop_multiplier=settings.atr_stop_multiplier,
            risk_reward_ratio=settings.risk_reward_ratio,
            risk_per_trade=settings.risk_per_trade,
            leverage=settings.leverage,
            strength_multiplier=settings.strength_multiplier,
            min_qty=settings.min_qty,
            max_qty=settings.max_qty,
            qty_step=settings.qty_step,
        )


class RiskEngine:
    """Turns a directional signal into quantity, stop-loss and take-profit.

    Sizing fails closed: any violated constraint drops the decision instead of
    shrinking it to fit.
    """

    def __init__(self, params: SizingParams) -> None:
        self._params = params
        self._logger = get_logger("signal_trader.risk.sizing")

    @property
    def params(self) -> SizingParams:
        return self._params

    def size(
        self,
        signal: Signal,
        account_balance: float,
        atr: float | None,
        entry_price: float,
    ) -> RiskDecision | None:
        """Size one signal. Returns None for Hold, missing ATR or a rejected decision."""
        if signal == Signal.HOLD:
            return None
        try:
            return self.build_decision(signal, account_balance, atr, entry_price)
        except InsufficientData:
            self._logger.debug("sizing_skipped_atr_warming_up", signal=signal.name)
            return None
        except SizingRejected as exc:
            log_risk_event(
                self._logger,
                event_type="sizing_rejected",
                action="drop_decision",
                reason=exc.reason,
                signal=signal.name,
                **exc.context,
            )
            return None

    def build_decision(
        self,
        signal: Signal,
        account_balance: float,
        atr: float | None,
        entry_price: float,
    ) -> RiskDecision:
        """Size a directional signal, raising SizingRejected on any violated constraint."""
        side = signal.side
        if side is None:
            raise SizingRejected("hold_signal")
        if atr is None:
            raise InsufficientData("atr_warming_up")
        if entry_price <= 0:
            raise SizingRejected("invalid_entry_price", entry_price=entry_price)
        if atr <= 0:
            raise SizingRejected("atr_non_positive", atr=atr)
        if account_balance <= 0:
            raise SizingRejected("no_balance", account_balance=account_balance)

        p = self._params
        stop_distance = atr * p.atr_stop_multiplier
        stop_loss, take_profit = self.build_exit_levels(entry_price, stop_distance, side)
        if stop_loss <= 0 or take_profit <= 0:
            raise SizingRejected(
                "exit_level_non_positive",
                stop_loss=stop_loss,
                take_profit=take_profit,
            )

        quantity = self.compute_position_size(account_balance, stop_distance)
        if signal.is_strong:
            quantity *= p.strength_multiplier
        quantity = self.apply_lot_limits(quantity)

        margin = self.required_margin(quantity, entry_price)
        if margin > account_balance:
            raise SizingRejected(
                "margin_exceeds_balance",
                quantity=quantity,
                margin=margin,
                account_balance=account_balance,
            )

        return RiskDecision(
            signal=signal,
            quantity=quantity,
            entry_price_hint=entry_price,
            stop_loss=stop_loss,
            take_profit=take_profit,
        )

    def build_exit_levels(
        self, entry_price: float, stop_distance: float, side: Side
    ) -> tuple[float, float]:
        """Return (stop_loss, take_profit) around the entry."""
        reward_distance = stop_distance * self._params.risk_reward_ratio
        if side is Side.LONG:
            return entry_price - stop_distance, entry_price + reward_distance
        return entry_price + stop_distance, entry_price - reward_distance

    def compute_position_size(self, account_balance: float, stop_distance: float) -> float:
        """Quantity whose stop-out loses exactly the risk budget."""
        risk_capital = account_balance * self._params.risk_per_trade
        return risk_capital / stop_distance

    def apply_lot_limits(self, quantity: float) -> float:
        """Floor to the lot step, then clamp to the exchange min/max."""
        p = self._params
        steps = math.floor(quantity / p.qty_step + 1e-9)
        decimals = max(0, -math.floor(math.log10(p.qty_step))) + 2
        stepped = round(steps * p.qty_step, decimals)
        return min(max(stepped, p.min_qty), p.max_qty)

    def required_margin(self, quantity: float, entry_price: float) -> float:
        return quantity * entry_price / self._params.leverage
