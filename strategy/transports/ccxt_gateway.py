import functools
import logging
from typing import Any, Dict, List, Optional, Tuple

import ccxt.async_support as ccxt

from strategy.errors import ConfigurationError
from strategy.execution_types import OrderTicket
from strategy.models import AccountInfo, Candle, ExchangePosition, Side


__all__ = ["CcxtGateway"]

logger = logging.getLogger(__name__)


def _auth_guard(func):
    """Surface credential failures as configuration errors so they are not retried."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except ccxt.AuthenticationError as exc:
            raise ConfigurationError(f"Exchange rejected credentials: {exc}") from exc

    return wrapper


class CcxtGateway:
    """Thin adapter around a ccxt async exchange with typed responses."""

    def __init__(
        self,
        exchange_id: str = "bitget",
        api_key: Optional[str] = None,
        secret: Optional[str] = None,
        password: Optional[str] = None,
        default_type: str = "swap",
        enable_rate_limit: bool = True,
        quote_asset: str = "USDT",
        exchange: Optional[Any] = None,
    ) -> None:
        self.exchange_id = exchange_id
        self.quote_asset = quote_asset
        self._credentials = (api_key, secret, password)
        if exchange is None:
            exchange_cls = getattr(ccxt, exchange_id, None)
            if exchange_cls is None:
                raise ConfigurationError(f"Unknown exchange id '{exchange_id}'")
            params: Dict[str, Any] = {
                "enableRateLimit": enable_rate_limit,
                "options": {"defaultType": default_type},
            }
            if api_key:
                params["apiKey"] = api_key
            if secret:
                params["secret"] = secret
            if password:
                params["password"] = password
            exchange = exchange_cls(params)
        self.exchange = exchange
        self._markets_loaded = False

    @classmethod
    def from_config(cls, exchange_cfg, public: bool = False) -> "CcxtGateway":
        return cls(
            exchange_id=exchange_cfg.get("id", "bitget"),
            api_key=None if public else exchange_cfg.get("api_key"),
            secret=None if public else exchange_cfg.get("secret"),
            password=None if public else exchange_cfg.get("password"),
            default_type=exchange_cfg.get("default_type", "swap"),
            enable_rate_limit=bool(exchange_cfg.get("enable_rate_limit", True)),
            quote_asset=exchange_cfg.get("quote_asset", "USDT"),
        )

    @property
    def has_credentials(self) -> bool:
        api_key, secret, password = self._credentials
        return bool(api_key and secret and password)

    def require_credentials(self) -> None:
        if not self.has_credentials:
            raise ConfigurationError(
                "Exchange credentials missing: set ACCOUNT_API_KEY_MAIN, ACCOUNT_SECRET_KEY_MAIN and API_PASS"
            )

    @_auth_guard
    async def load_markets(self) -> Dict[str, Any]:
        markets = await self.exchange.load_markets()
        self._markets_loaded = True
        logger.info("%s markets loaded (%s)", self.exchange_id, len(markets or {}))
        return markets

    @_auth_guard
    async def fetch_ohlcv(self, symbol: str, timeframe: str = "1h", limit: int = 1000) -> List[Candle]:
        rows = await self.exchange.fetch_ohlcv(symbol, timeframe, limit=limit)
        return [Candle.from_ohlcv(row) for row in rows or []]

    @_auth_guard
    async def fetch_account(self) -> AccountInfo:
        balance = await self.exchange.fetch_balance()
        asset = balance.get(self.quote_asset) or {}
        positions = await self.exchange.fetch_positions()
        unrealized = sum(self._as_float(p.get("unrealizedPnl")) for p in positions or [])
        return AccountInfo(
            total_balance=self._as_float(asset.get("total")),
            available_balance=self._as_float(asset.get("free")),
            used_margin=self._as_float(asset.get("used")),
            unrealized_pnl=unrealized,
        )

    @_auth_guard
    async def fetch_position(self, symbol: str) -> Optional[ExchangePosition]:
        positions = await self.exchange.fetch_positions([symbol])
        for pos in positions or []:
            if pos.get("symbol") != symbol:
                continue
            contracts = self._as_float(pos.get("contracts"))
            if contracts <= 0:
                continue
            return self._parse_position(symbol, pos, contracts)
        return None

    @_auth_guard
    async def create_order(
        self,
        symbol: str,
        side: str,
        amount: float,
        price: Optional[float] = None,
        reduce_only: bool = False,
    ) -> OrderTicket:
        order_type = "limit" if price else "market"
        params: Dict[str, Any] = {"reduceOnly": True} if reduce_only else {}
        order = await self.exchange.create_order(symbol, order_type, side, amount, price, params)
        return OrderTicket.from_ccxt(order or {}, reduce_only=reduce_only)

    def market_fees(self, symbol: str) -> Tuple[Optional[float], Optional[float]]:
        market = self.exchange.market(symbol)
        return market.get("maker"), market.get("taker")

    async def close(self) -> None:
        await self.exchange.close()

    def _parse_position(self, symbol: str, pos: Dict[str, Any], contracts: float) -> ExchangePosition:
        side = Side.SHORT if str(pos.get("side") or "").lower() == "short" else Side.LONG
        return ExchangePosition(
            symbol=pos.get("symbol") or symbol,
            side=side,
            contracts=contracts,
            entry_price=self._as_float(pos.get("entryPrice")),
            margin=self._as_float(pos.get("initialMargin")),
            notional=abs(self._as_float(pos.get("notional"))),
            unrealized_pnl=self._as_float(pos.get("unrealizedPnl")),
            timestamp=self._as_seconds(pos.get("timestamp")),
        )

    @classmethod
    def _as_seconds(cls, millis: Any) -> Optional[float]:
        value = cls._as_float(millis)
        return value / 1000.0 if value > 0 else None

    @staticmethod
    def _as_float(value: Any) -> float:
        if value is None:
            return 0.0
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0
