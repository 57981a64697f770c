import logging
import time
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from api.metrics import metrics
from monitoring.async_utils import RetryPolicy, retry_with_timeout
from risk.position_manager import FeeRates
from strategy.errors import ConfigurationError, GatewayError
from strategy.execution_types import OrderTicket
from strategy.models import AccountInfo, Candle, ExchangePosition
from strategy.simulators.paper import PaperExchange
from strategy.transports.ccxt_gateway import CcxtGateway


logger = logging.getLogger(__name__)

T = TypeVar('T')


class ExecutionManager:
    """Route exchange calls through the retry policy, for live and paper gateways."""

    def __init__(
        self,
        gateway: Any,
        policy: Optional[RetryPolicy] = None,
        ohlcv_timeout_s: float = 10.0,
        default_fees: Optional[FeeRates] = None,
        paper_mode: bool = False,
    ):
        self.gateway = gateway
        self.policy = policy or RetryPolicy()
        self.ohlcv_policy = self.policy.with_timeout(ohlcv_timeout_s)
        self.default_fees = default_fees or FeeRates()
        self.paper_mode = paper_mode

    @classmethod
    def from_config(cls, cfg, gateway: Optional[Any] = None) -> 'ExecutionManager':
        exchange_cfg = cfg.get('exchange') or {}
        trading = cfg.get('trading') or {}
        execution = cfg.get('execution') or {}
        paper_mode = bool(exchange_cfg.get('paper', True))
        if gateway is None:
            if paper_mode:
                gateway = PaperExchange(
                    initial_equity=float(trading.get('start_capital', 1000.0)),
                    leverage=float(trading.get('leverage', 5)),
                    market_data=CcxtGateway.from_config(exchange_cfg, public=True),
                )
            else:
                gateway = CcxtGateway.from_config(exchange_cfg)
                gateway.require_credentials()
        return cls(
            gateway,
            policy=RetryPolicy.from_config(execution),
            ohlcv_timeout_s=float(execution.get('ohlcv_timeout_s', 10.0)),
            default_fees=FeeRates(
                maker=float(trading.get('maker_fee', 0.0002)),
                taker=float(trading.get('taker_fee', 0.0006)),
            ),
            paper_mode=paper_mode,
        )

    async def _call(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        symbol: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> T:
        started = time.perf_counter()
        try:
            result = await retry_with_timeout(
                operation if symbol is None else f"{operation} {symbol}",
                fn,
                policy or self.policy,
                on_retry=lambda _name, _attempt, _exc: metrics.record_gateway_retry(operation),
                no_retry=(ConfigurationError,),
            )
        except ConfigurationError:
            raise
        except Exception as exc:
            metrics.record_gateway_failure(operation)
            self._log_transport_error(operation, exc, symbol)
            raise GatewayError(operation, exc, symbol) from exc
        metrics.record_gateway_latency(operation, time.perf_counter() - started)
        return result

    async def initialize(self) -> None:
        await self._call('load_markets', self.gateway.load_markets)

    async def fetch_candles(self, symbol: str, timeframe: str = '1h', limit: int = 1000) -> List[Candle]:
        return await self._call(
            'fetch_ohlcv',
            lambda: self.gateway.fetch_ohlcv(symbol, timeframe, limit),
            symbol,
            self.ohlcv_policy,
        )

    async def fetch_account_info(self) -> AccountInfo:
        return await self._call('fetch_balance', self.gateway.fetch_account)

    async def fetch_position(self, symbol: str) -> Optional[ExchangePosition]:
        return await self._call('fetch_positions', lambda: self.gateway.fetch_position(symbol), symbol)

    async def submit_order(
        self,
        symbol: str,
        side: str,
        amount: float,
        price: Optional[float] = None,
        reduce_only: bool = False,
    ) -> OrderTicket:
        ticket = await self._call(
            'create_order',
            lambda: self.gateway.create_order(symbol, side, amount, price, reduce_only),
            symbol,
        )
        metrics.record_order_placed(side)
        logger.info(
            "Order %s %s %.6f @ %s accepted (%s)",
            side,
            symbol,
            amount,
            f"{price:.6f}" if price else "market",
            ticket.id,
        )
        return ticket

    def fee_rates(self, symbol: str) -> FeeRates:
        try:
            maker, taker = self.gateway.market_fees(symbol)
        except Exception as exc:
            logger.warning("Fee lookup failed for %s, using static rates: %s", symbol, exc)
            return self.default_fees
        return FeeRates(
            maker=float(maker) if maker else self.default_fees.maker,
            taker=float(taker) if taker else self.default_fees.taker,
        )

    async def close(self) -> None:
        try:
            await self.gateway.close()
        except Exception as exc:
            logger.warning("Gateway close failed: %s", exc)

    def _log_transport_error(self, action: str, exc: Exception, symbol: Optional[str] = None) -> None:
        target = f" for {symbol}" if symbol else ""
        logger.error("%s failed%s after retries: %s", action, target, exc)
