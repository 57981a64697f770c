import argparse
import asyncio
import json
import logging
import sys
from typing import Dict, List, Optional

from api.alerts import TelegramNotifier
from api.metrics import metrics, start_metrics_server
from backtest.engine import BacktestEngine
from config import config
from config.symbols import SymbolRegistry, load_symbols
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from orchestration.persistence import InMemoryTradeStore, TradeStore, create_trade_store
from orchestration.services import MetricsService, SnapshotService
from orchestration.trade_ledger import TradeLedger
from risk.capital_pool import CapitalPool
from risk.position_manager import PositionManager
from risk.position_sizer import RiskManager
from strategy.execution import ExecutionManager
from strategy.models import RunResult
from strategy.orchestrator import SymbolOrchestrator
from strategy.transports.ccxt_gateway import CcxtGateway


logger = logging.getLogger(__name__)


class TradingSystem:
    """Wire configuration, gateway, shared pool, ledger and sinks; run symbols on a schedule."""

    def __init__(
        self,
        config_obj=None,
        execution: Optional[ExecutionManager] = None,
        store: Optional[TradeStore] = None,
        notifier: Optional[TelegramNotifier] = None,
        symbols: Optional[SymbolRegistry] = None,
    ):
        self.config = config_obj or config
        self.trading_cfg = self.config.get('trading') or {}
        self.monitoring_cfg = self.config.get('monitoring') or {}

        self.symbols = symbols or load_symbols(self.config)
        self.execution = execution or ExecutionManager.from_config(self.config)
        self.pool = CapitalPool(float(self.trading_cfg.get('start_capital', 1000.0)))
        self.positions = PositionManager.from_config(self.pool, self.trading_cfg)
        self.risk = RiskManager.from_config(self.trading_cfg)
        self.ledger = TradeLedger(
            self.pool.equity,
            int(self.monitoring_cfg.get('equity_history_limit', 1000)),
        )
        self.store: TradeStore = store or InMemoryTradeStore()
        self._store_injected = store is not None
        self.notifier = notifier or TelegramNotifier.from_config(self.config)
        self.metrics_service = MetricsService(self.ledger, self.store)
        self.orchestrator = SymbolOrchestrator(
            self.symbols,
            self.execution,
            self.positions,
            self.metrics_service,
            self.notifier,
            risk=self.risk,
            timeframe=self.trading_cfg.get('timeframe', '1h'),
            history_limit=int(self.trading_cfg.get('history_limit', 1000)),
            min_bars=int(self.trading_cfg.get('min_bars', 50)),
            sync_pool_from_account=not self.execution.paper_mode,
            enforce_risk_budget=bool(self.trading_cfg.get('enforce_risk_budget', False)),
        )
        self.snapshots = SnapshotService(
            self.ledger,
            self.metrics_service,
            self.symbols,
            self.pool,
            self.risk,
            execution=self.execution,
            ttl_s=float(self.monitoring_cfg.get('snapshot_ttl_s', 10)),
            trade_limit=int(self.monitoring_cfg.get('snapshot_trade_limit', 200)),
        )
        self.run_interval_s = float(self.trading_cfg.get('run_interval_s', 3600))
        self.running = False
        self._initialized = False
        self._stop_event: Optional[asyncio.Event] = None

    async def initialize(self):
        if self._initialized:
            return
        if not self._store_injected:
            self.store = await create_trade_store(self.config.get('database'))
            self.metrics_service.store = self.store
        if self.store.durable and not len(self.ledger):
            try:
                for trade in await self.store.fetch_trades(self.ledger.max_equity_points):
                    self.ledger.append(trade)
            except Exception as exc:
                logger.warning("Ledger hydration from store failed: %s", exc)
        await self.execution.initialize()
        self._initialized = True
        logger.info(
            "Trading system ready: %s symbols, equity %.2f, paper=%s",
            len(self.symbols),
            self.pool.equity,
            self.execution.paper_mode,
        )

    async def run_symbol(self, symbol: str) -> RunResult:
        await self.initialize()
        result = await self.orchestrator.run_symbol(symbol)
        self.snapshots.invalidate()
        return result

    async def run_once(self) -> List[RunResult]:
        await self.initialize()
        symbols = self.symbols.symbols()
        outcomes = await asyncio.gather(
            *(self.orchestrator.run_symbol(s) for s in symbols),
            return_exceptions=True,
        )
        results: List[RunResult] = []
        for symbol, outcome in zip(symbols, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Symbol task %s crashed: %s", symbol, outcome)
                outcome = RunResult.error(symbol, str(outcome))
            results.append(outcome)
        self.snapshots.invalidate()
        self._update_position_gauges()
        return results

    def _update_position_gauges(self) -> None:
        counts: Dict[str, int] = {'LONG': 0, 'SHORT': 0}
        for pos in self.positions.positions.values():
            counts[pos.side.value] += 1
        metrics.update_positions(counts)
        metrics.update_pool(self.pool.snapshot())

    async def _schedule_loop(self):
        while self.running:
            results = await self.run_once()
            summary = ', '.join(f"{r.symbol}={r.action.value}" for r in results)
            logger.info("Tick complete: %s", summary)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.run_interval_s)
            except asyncio.TimeoutError:
                continue

    async def start(self):
        await self.initialize()
        self.running = True
        self._stop_event = asyncio.Event()
        port = self.monitoring_cfg.get('prometheus_port')
        if port:
            try:
                start_metrics_server(int(port))
            except Exception as exc:
                logger.warning("Metrics server unavailable: %s", exc)
        loop_task = asyncio.create_task(self._schedule_loop())
        await run_tasks_with_cleanup([loop_task])

    async def stop(self):
        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()
        await self.notifier.flush()
        await self.execution.close()
        await self.store.close()
        logger.info("Trading system stopped")


async def _run_backtest(csv_path: Optional[str]) -> Dict:
    engine = BacktestEngine.from_config(config)
    execution = ExecutionManager.from_config(
        config,
        gateway=CcxtGateway.from_config(config.get('exchange') or {}, public=True),
    )
    backtest_cfg = config.section('backtest')
    try:
        await execution.initialize()
        summary = await engine.run_from_exchange(
            execution,
            config.section('trading').get('timeframe', '1h'),
            int(backtest_cfg.get('history_limit', 1000)),
        )
    finally:
        await execution.close()
    path = csv_path or backtest_cfg.get('csv_path')
    if path:
        engine.export_trades_csv(path)
    return summary


async def _run_single(symbol: str) -> RunResult:
    system = TradingSystem()
    try:
        result = await system.run_symbol(symbol)
        system.notifier.notify_manual_run(symbol, result)
        return result
    finally:
        await system.stop()


async def _run_live():
    system = TradingSystem()
    try:
        await system.start()
    finally:
        await system.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="MACD cross-margin allocation trader")
    sub = parser.add_subparsers(dest='command', required=True)
    sub.add_parser('live', help='evaluate every symbol on the configured interval')
    run = sub.add_parser('run', help='evaluate one symbol once')
    run.add_argument('symbol')
    bt = sub.add_parser('backtest', help='simulate all symbols over recent history')
    bt.add_argument('--csv', default=None, help='write closed trades to this CSV file')
    sub.add_parser('serve', help='start the HTTP API with the scheduler')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(config.section('monitoring').get('log_level', 'INFO'))
    config.validate()

    if args.command == 'backtest':
        summary = asyncio.run(_run_backtest(args.csv))
        print(json.dumps(summary, indent=2, default=str))
        return 0
    if args.command == 'run':
        result = asyncio.run(_run_single(args.symbol))
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return 0 if result.success else 1
    if args.command == 'serve':
        import uvicorn
        from api.fastapi_server import app
        uvicorn.run(app, host=config.api['host'], port=int(config.api['port']), log_level="info")
        return 0
    try:
        asyncio.run(_run_live())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
