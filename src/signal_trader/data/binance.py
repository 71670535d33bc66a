"""Binance futures REST access: candle history, balance and order placement."""

from __future__ import annotations

import asyncio
from typing import Any

import pandas as pd  # type: ignore[import-untyped]
from binance.client import Client  # type: ignore[import-untyped]
from binance.exceptions import BinanceAPIException, BinanceRequestException  # type: ignore[import-untyped]

from signal_trader.config import Settings
from signal_trader.errors import OrderPlacementError
from signal_trader.types import PriceObservation, Side
from signal_trader.utils.logging import get_logger
from signal_trader.utils.timeframes import normalize_interval

_KLINE_COLUMNS = [
    "open_time",
    "open",
    "high",
    "low",
    "close",
    "volume",
    "close_time",
    "quote_asset_volume",
    "number_of_trades",
    "taker_buy_base_asset_volume",
    "taker_buy_quote_asset_volume",
    "ignore",
]

_UNKNOWN_ORDER = -2013
_DEAD_ORDER_STATUSES = frozenset({"REJECTED", "EXPIRED", "CANCELED"})


def build_client(settings: Settings) -> Client:
    return Client(
        api_key=settings.binance_api_key or None,
        api_secret=settings.binance_api_secret or None,
        testnet=settings.binance_testnet,
    )


class BinanceDataClient:
    """Read-only client for futures candle history."""

    def __init__(self, settings: Settings, client: Client | None = None) -> None:
        self._settings = settings
        self._logger = get_logger("signal_trader.data.binance")
        self._client = client or build_client(settings)

    def fetch_ohlcv(self, symbol: str, interval: str, limit: int) -> pd.DataFrame:
        """Fetch futures klines and return normalized dataframe."""
        rows = self._client.futures_klines(
            symbol=symbol,
            interval=normalize_interval(interval),
            limit=limit,
        )
        df = pd.DataFrame(rows, columns=_KLINE_COLUMNS)
        if df.empty:
            raise RuntimeError("empty_ohlcv_response")

        numeric_cols = ["open", "high", "low", "close", "volume"]
        for col in numeric_cols:
            df[col] = pd.to_numeric(df[col], errors="coerce")
        df["open_time"] = pd.to_datetime(df["open_time"], unit="ms", utc=True)
        df["close_time"] = pd.to_datetime(df["close_time"], unit="ms", utc=True)
        df = df.dropna(subset=numeric_cols).reset_index(drop=True)
        return df[["open_time", "open", "high", "low", "close", "volume", "close_time"]]

    def fetch_candles(
        self, symbol: str, interval: str, limit: int
    ) -> list[PriceObservation]:
        """Completed candles only, stamped with their close time."""
        df = completed_only(self.fetch_ohlcv(symbol, interval, limit))
        self._logger.info("history_fetched", symbol=symbol, interval=interval, rows=len(df))
        return frame_to_candles(df)


def completed_only(df: pd.DataFrame, now: pd.Timestamp | None = None) -> pd.DataFrame:
    """Drop the still-forming last candle."""
    now = now if now is not None else pd.Timestamp.now(tz="UTC")
    return df[df["close_time"] < now].reset_index(drop=True)


def frame_to_candles(df: pd.DataFrame) -> list[PriceObservation]:
    return [
        PriceObservation.candle(
            timestamp=row.close_time.to_pydatetime(),
            open=row.open,
            high=row.high,
            low=row.low,
            close=row.close,
        )
        for row in df.itertuples(index=False)
    ]


class BinanceFuturesGateway:
    """Live order gateway and balance provider over python-binance.

    Calls run in worker threads so the event loop keeps serving the feed.
    Entries are market orders with reduce-only stop-market and
    take-profit-market legs that close the whole position.
    """

    def __init__(
        self,
        settings: Settings,
        client: Client | None = None,
        *,
        quote_asset: str = "USDT",
        price_precision: int = 2,
    ) -> None:
        if not float(settings.leverage).is_integer():
            raise ValueError(f"fractional_leverage_not_supported: {settings.leverage}")
        self._symbol = settings.symbol
        self._leverage = int(settings.leverage)
        self._quote_asset = quote_asset
        self._price_precision = price_precision
        self._client = client or build_client(settings)
        self._logger = get_logger("signal_trader.data.binance")
        self._open: dict[str, tuple[Side, float]] = {}
        self._submitted: set[str] = set()
        self._leverage_set = False

    async def current_balance(self) -> float:
        rows = await self._call(self._client.futures_account_balance)
        for row in rows:
            if row.get("asset") == self._quote_asset:
                return float(row.get("availableBalance", row.get("balance", 0.0)))
        return 0.0

    async def open_position(
        self,
        side: Side,
        quantity: float,
        stop_loss: float,
        take_profit: float,
        *,
        client_order_id: str | None = None,
    ) -> str:
        """Market entry plus protective legs.

        An entry already submitted under ``client_order_id`` is looked up on
        the exchange and reused instead of being sent again.
        """
        if not self._leverage_set:
            await self._call(
                self._client.futures_change_leverage,
                symbol=self._symbol,
                leverage=self._leverage,
            )
            self._leverage_set = True

        entry_side = "BUY" if side is Side.LONG else "SELL"
        exit_side = "SELL" if side is Side.LONG else "BUY"
        order: dict[str, Any] | None = None
        if client_order_id is not None and client_order_id in self._submitted:
            order = await self._find_order(client_order_id)
            if order is not None:
                self._logger.info("entry_order_recovered", client_order_id=client_order_id)
        if order is None:
            params: dict[str, Any] = {
                "symbol": self._symbol,
                "side": entry_side,
                "type": "MARKET",
                "quantity": quantity,
            }
            if client_order_id is not None:
                params["newClientOrderId"] = client_order_id
                self._submitted.add(client_order_id)
            order = await self._call(self._client.futures_create_order, **params)
        position_id = str(order["orderId"])
        self._open[position_id] = (side, quantity)

        # The entry is filled at this point; a failed exit leg must not make the
        # caller retry the whole open.
        for order_type, price in (("STOP_MARKET", stop_loss), ("TAKE_PROFIT_MARKET", take_profit)):
            try:
                await self._call(
                    self._client.futures_create_order,
                    symbol=self._symbol,
                    side=exit_side,
                    type=order_type,
                    stopPrice=round(price, self._price_precision),
                    closePosition=True,
                )
            except OrderPlacementError as exc:
                self._logger.error(
                    "protective_order_failed",
                    position_id=position_id,
                    order_type=order_type,
                    error=str(exc),
                )
        return position_id

    async def close_position(self, position_id: str) -> None:
        opened = self._open.get(position_id)
        if opened is None:
            raise OrderPlacementError(f"unknown_position: {position_id}")
        side, quantity = opened
        await self._call(self._client.futures_cancel_all_open_orders, symbol=self._symbol)
        await self._call(
            self._client.futures_create_order,
            symbol=self._symbol,
            side="SELL" if side is Side.LONG else "BUY",
            type="MARKET",
            quantity=quantity,
            reduceOnly=True,
        )
        del self._open[position_id]

    async def _find_order(self, client_order_id: str) -> dict[str, Any] | None:
        """Entry order accepted under ``client_order_id``, or None if there is none."""
        try:
            order: dict[str, Any] = await asyncio.to_thread(
                self._client.futures_get_order,
                symbol=self._symbol,
                origClientOrderId=client_order_id,
            )
        except BinanceAPIException as exc:
            if exc.code == _UNKNOWN_ORDER:
                return None
            raise OrderPlacementError(str(exc)) from exc
        except BinanceRequestException as exc:
            raise OrderPlacementError(str(exc)) from exc
        if order.get("status") in _DEAD_ORDER_STATUSES:
            return None
        return order

    async def _call(self, fn: Any, /, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, **kwargs)
        except (BinanceAPIException, BinanceRequestException) as exc:
            self._logger.warning("binance_call_failed", call=getattr(fn, "__name__", "?"), error=str(exc))
            raise OrderPlacementError(str(exc)) from exc
