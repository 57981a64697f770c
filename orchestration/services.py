import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from analytics.performance import MetricsSnapshot, compute_metrics
from api.metrics import metrics
from orchestration.persistence import TradeStore
from orchestration.trade_ledger import TradeLedger
from strategy.models import AccountInfo, ClosedTrade

if TYPE_CHECKING:
    from config.symbols import SymbolRegistry
    from risk.capital_pool import CapitalPool
    from risk.position_sizer import RiskManager
    from strategy.execution import ExecutionManager


logger = logging.getLogger(__name__)


class MetricsService:
    """Record closed trades and keep the persisted metrics snapshot current.

    Everything past the in-memory ledger append is best-effort: store and
    recompute failures are logged and never reach the trading path.
    """

    def __init__(self, ledger: TradeLedger, store: TradeStore):
        self.ledger = ledger
        self.store = store
        self.latest: Optional[MetricsSnapshot] = None

    async def record_trade(self, trade: ClosedTrade) -> str:
        trade_id = self.ledger.append(trade)
        metrics.record_trade_closed(trade.reason.value, trade.pnl_usd)
        try:
            await self.store.insert_trade(trade)
            history = self.ledger.equity_history()
            if history:
                await self.store.upsert_equity_point(history[-1])
        except Exception as exc:
            logger.warning("Trade persistence failed for %s: %s", trade.symbol, exc)
        await self.recompute()
        return trade_id

    async def _trades_for_metrics(self) -> List[ClosedTrade]:
        if self.store.durable and self.store.available:
            try:
                trades = await self.store.fetch_trades()
                if trades:
                    return trades
            except Exception as exc:
                logger.warning("Reading persisted trades failed, using ledger: %s", exc)
        return self.ledger.all_trades()

    async def recompute(self) -> Optional[MetricsSnapshot]:
        try:
            trades = await self._trades_for_metrics()
            if not trades:
                return None
            snapshot = compute_metrics(trades, self.ledger.initial_capital)
            stored = await self.store.upsert_metrics_snapshot(snapshot)
            if not stored:
                logger.debug("Metrics snapshot for this second already stored")
            self.latest = snapshot
            metrics.update_performance(snapshot.max_drawdown, snapshot.sharpe_ratio, snapshot.win_rate)
            return snapshot
        except Exception as exc:
            logger.warning("Metrics recompute failed: %s", exc)
            return None

    async def latest_metrics(self) -> MetricsSnapshot:
        try:
            snapshot = await self.store.latest_metrics_snapshot()
            if snapshot is not None:
                return snapshot
        except Exception as exc:
            logger.warning("Loading latest metrics failed: %s", exc)
        return self.ledger.calculate_metrics()


class SnapshotService:
    """Dashboard view of the account, cached for ``ttl_s`` seconds."""

    def __init__(
        self,
        ledger: TradeLedger,
        metrics_service: MetricsService,
        symbols: 'SymbolRegistry',
        pool: 'CapitalPool',
        risk: 'RiskManager',
        execution: Optional['ExecutionManager'] = None,
        ttl_s: float = 10.0,
        trade_limit: int = 200,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ledger = ledger
        self.metrics_service = metrics_service
        self.symbols = symbols
        self.pool = pool
        self.risk = risk
        self.execution = execution
        self.ttl_s = ttl_s
        self.trade_limit = trade_limit
        self._clock = clock
        self._cached: Optional[Dict[str, Any]] = None
        self._expires = 0.0

    def invalidate(self) -> None:
        self._cached = None

    async def _account(self) -> AccountInfo:
        if self.execution is not None:
            try:
                return await self.execution.fetch_account_info()
            except Exception as exc:
                logger.warning("Account fetch for snapshot failed, using pool view: %s", exc)
        return AccountInfo(
            total_balance=self.pool.equity,
            available_balance=self.pool.free_margin,
            used_margin=self.pool.used_margin,
        )

    async def _positions(self) -> Dict[str, Any]:
        if self.execution is None:
            return {}

        async def _one(symbol: str):
            try:
                return symbol, await self.execution.fetch_position(symbol)
            except Exception:
                return symbol, None

        pairs = await asyncio.gather(*(_one(s) for s in self.symbols.symbols()))
        return dict(pairs)

    async def _trades(self) -> List[Dict[str, Any]]:
        trades: List[ClosedTrade] = []
        store = self.metrics_service.store
        if store.durable and store.available:
            try:
                trades = list(reversed(await store.fetch_trades(self.trade_limit)))
            except Exception as exc:
                logger.warning("Loading persisted trades failed: %s", exc)
        if not trades:
            trades = self.ledger.all_trades()[: self.trade_limit]
        return [t.to_dict() for t in trades]

    async def get_snapshot(self, force: bool = False) -> Dict[str, Any]:
        now = self._clock()
        if not force and self._cached is not None and now < self._expires:
            return self._cached

        account = await self._account()
        positions = await self._positions()
        perf = await self.metrics_service.latest_metrics()
        health = self.risk.check_account_health(account)
        initial = self.ledger.initial_capital

        allocation = []
        symbol_stats = self.ledger.symbol_metrics()
        for cfg in self.symbols:
            pos = positions.get(cfg.symbol)
            stats = symbol_stats.get(cfg.symbol, {})
            allocation.append({
                'symbol': cfg.symbol,
                'allocation': cfg.allocation,
                'notional': cfg.notional,
                'mode': cfg.mode.value,
                'unrealized_pnl': pos.unrealized_pnl if pos else 0.0,
                'realized_pnl': stats.get('pnl', 0.0),
                'trades': stats.get('trades', 0),
                'status': pos.side.value if pos else 'NONE',
            })

        snapshot = {
            'summary': {
                'initial_capital': initial,
                'final_equity': account.total_balance,
                'total_pnl': perf.total_pnl,
                'total_pnl_pct': perf.total_pnl / initial * 100.0 if initial else 0.0,
                'total_trades': perf.total_trades,
                'winning_trades': perf.winning_trades,
                'losing_trades': perf.losing_trades,
                'win_rate': perf.win_rate,
                'max_drawdown': perf.max_drawdown,
                'sharpe_ratio': perf.sharpe_ratio,
                'profit_factor': perf.profit_factor,
                'last_update': datetime.now(timezone.utc).isoformat(),
            },
            'pool': self.pool.snapshot(),
            'allocation': allocation,
            'performance': [p.to_dict() for p in self.ledger.equity_history()],
            'trades': await self._trades(),
            'account_health': health.to_dict(),
        }
        self._cached = snapshot
        self._expires = now + self.ttl_s
        return snapshot
