import time
import uuid
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from strategy.execution_types import OrderTicket
from strategy.models import AccountInfo, Candle, ExchangePosition, Side


@dataclass
class PaperPosition:
    symbol: str
    side: Side
    qty: float
    entry_price: float
    margin: float
    opened_at: float = 0.0


class PaperExchange:
    """In-process exchange: fills every order at its limit price and keeps a cash account.

    Candles come from ``candles`` or, when given, from a ``market_data`` gateway
    (typically an unauthenticated ccxt adapter for public OHLCV).
    """

    def __init__(
        self,
        initial_equity: float = 1000.0,
        leverage: float = 5.0,
        candles: Optional[Mapping[str, Sequence[Candle]]] = None,
        market_data: Optional[Any] = None,
        fees: Tuple[Optional[float], Optional[float]] = (0.0002, 0.0006),
    ) -> None:
        self.leverage = float(leverage)
        self._balance = float(initial_equity)
        self._candles: Dict[str, List[Candle]] = {k: list(v) for k, v in (candles or {}).items()}
        self._market_data = market_data
        self._fees = fees
        self._orders: Dict[str, OrderTicket] = {}
        self._positions: Dict[str, PaperPosition] = {}
        self.fail_next: Dict[str, int] = {}

    @property
    def orders(self) -> Mapping[str, OrderTicket]:
        return MappingProxyType(self._orders)

    @property
    def positions(self) -> Mapping[str, PaperPosition]:
        return MappingProxyType(self._positions)

    def set_candles(self, symbol: str, candles: Sequence[Candle]) -> None:
        self._candles[symbol] = list(candles)

    def _maybe_fail(self, operation: str) -> None:
        remaining = self.fail_next.get(operation, 0)
        if remaining > 0:
            self.fail_next[operation] = remaining - 1
            raise ConnectionError(f"paper {operation} unavailable")

    async def load_markets(self) -> Dict[str, Any]:
        if self._market_data is not None:
            return await self._market_data.load_markets()
        return {symbol: {"symbol": symbol} for symbol in self._candles}

    async def fetch_ohlcv(self, symbol: str, timeframe: str = "1h", limit: int = 1000) -> List[Candle]:
        self._maybe_fail("fetch_ohlcv")
        if self._market_data is not None:
            return await self._market_data.fetch_ohlcv(symbol, timeframe, limit)
        return list(self._candles.get(symbol, []))[-limit:]

    async def fetch_account(self) -> AccountInfo:
        self._maybe_fail("fetch_account")
        used = sum(p.margin for p in self._positions.values())
        return AccountInfo(
            total_balance=self._balance,
            available_balance=self._balance - used,
            used_margin=used,
        )

    async def fetch_position(self, symbol: str) -> Optional[ExchangePosition]:
        self._maybe_fail("fetch_position")
        pos = self._positions.get(symbol)
        if pos is None:
            return None
        return ExchangePosition(
            symbol=symbol,
            side=pos.side,
            contracts=pos.qty,
            entry_price=pos.entry_price,
            margin=pos.margin,
            notional=pos.qty * pos.entry_price,
            timestamp=pos.opened_at or None,
        )

    async def create_order(
        self,
        symbol: str,
        side: str,
        amount: float,
        price: Optional[float] = None,
        reduce_only: bool = False,
    ) -> OrderTicket:
        self._maybe_fail("create_order")
        if amount <= 0:
            raise ValueError("order amount must be positive")
        fill = self._coerce_float(price)
        if fill is None:
            candles = self._candles.get(symbol)
            if not candles:
                raise ValueError(f"no reference price for market order on {symbol}")
            fill = candles[-1].close
        order_id = f"paper-{uuid.uuid4().hex[:8]}"
        ticket = OrderTicket(
            symbol=symbol,
            side=side.lower(),
            type="limit" if price else "market",
            amount=amount,
            status="closed",
            price=fill,
            exchange_order_id=order_id,
            reduce_only=reduce_only,
        )
        self._orders[order_id] = ticket
        if reduce_only:
            self._settle(symbol, fill)
        else:
            direction = Side.LONG if side.lower() == "buy" else Side.SHORT
            self._positions[symbol] = PaperPosition(
                symbol=symbol,
                side=direction,
                qty=amount,
                entry_price=fill,
                margin=amount * fill / self.leverage,
                opened_at=time.time(),
            )
        return ticket

    def _settle(self, symbol: str, exit_price: float) -> None:
        pos = self._positions.pop(symbol, None)
        if pos is None:
            return
        self._balance += pos.side.sign * (exit_price - pos.entry_price) * pos.qty

    def market_fees(self, symbol: str) -> Tuple[Optional[float], Optional[float]]:
        return self._fees

    async def close(self) -> None:
        if self._market_data is not None:
            await self._market_data.close()

    @staticmethod
    def _coerce_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
