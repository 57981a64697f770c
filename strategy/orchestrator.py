import logging
import time
from typing import List, Optional

from analytics.indicators import macd
from api.alerts import TelegramNotifier
from api.metrics import metrics
from config.symbols import SymbolConfig, SymbolRegistry
from orchestration.services import MetricsService
from risk.capital_pool import CapitalPool
from risk.position_manager import Decision, DecisionKind, PositionManager
from risk.position_sizer import RiskManager
from strategy.cross import CrossSignal, cross_at
from strategy.errors import DataInsufficiencyError
from strategy.execution import ExecutionManager
from strategy.models import (
    AccountInfo,
    ClosedTrade,
    CloseReason,
    ExchangePosition,
    Position,
    RunAction,
    RunResult,
    closes,
)


logger = logging.getLogger(__name__)


class SymbolOrchestrator:
    """One live evaluation of one symbol: data, signal, decision, orders, records.

    The pool lock is held from the account read until the last commit so
    symbols evaluated concurrently never spend the same free margin twice.
    """

    def __init__(
        self,
        symbols: SymbolRegistry,
        execution: ExecutionManager,
        positions: PositionManager,
        metrics_service: MetricsService,
        notifier: TelegramNotifier,
        risk: Optional[RiskManager] = None,
        timeframe: str = '1h',
        history_limit: int = 1000,
        min_bars: int = 50,
        sync_pool_from_account: bool = False,
        enforce_risk_budget: bool = False,
    ):
        self.symbols = symbols
        self.execution = execution
        self.positions = positions
        self.metrics_service = metrics_service
        self.notifier = notifier
        self.risk = risk or RiskManager(leverage=positions.leverage)
        self.timeframe = timeframe
        self.history_limit = history_limit
        self.min_bars = min_bars
        self.sync_pool_from_account = sync_pool_from_account
        self.enforce_risk_budget = enforce_risk_budget

    @property
    def pool(self) -> CapitalPool:
        return self.positions.pool

    async def run_symbol(self, symbol: str) -> RunResult:
        try:
            cfg = self.symbols.get(symbol)
            result = await self._evaluate(cfg)
        except Exception as exc:
            logger.error("run_symbol %s failed: %s", symbol, exc)
            self.notifier.notify_error('run_symbol', symbol, str(exc))
            result = RunResult.error(symbol, str(exc))
        metrics.record_run(symbol, result.action.value)
        metrics.update_pool(self.pool.snapshot())
        return result

    async def _evaluate(self, cfg: SymbolConfig) -> RunResult:
        symbol = cfg.symbol
        candles = await self.execution.fetch_candles(symbol, self.timeframe, self.history_limit)
        if len(candles) < self.min_bars:
            raise DataInsufficiencyError(symbol, len(candles), self.min_bars)

        oscillator = macd(closes(candles), cfg.fast, cfg.slow, cfg.signal)
        cross = cross_at(oscillator, -1)
        price = candles[-1].close
        main, signal, _ = oscillator.at(-1)
        logger.info(
            "%s price=%.6f macd=%.6f signal=%.6f cross=%s",
            symbol,
            price,
            main,
            signal,
            cross.value,
        )

        async with self.pool.lock:
            account = await self.execution.fetch_account_info()
            exchange_position = await self.execution.fetch_position(symbol)
            self._reconcile(cfg, exchange_position)
            if self.sync_pool_from_account:
                self.pool.sync(account.total_balance, account.used_margin)
            self._log_account_status(account)

            decisions = self.positions.plan(cfg, price, cross)
            if not decisions:
                self.notifier.notify_no_action(symbol, price, None if cross is CrossSignal.NONE else cross.value)
                return RunResult(symbol, RunAction.NO_ACTION, message=f"no signal ({cross.value})")

            closed: List[ClosedTrade] = []
            opened: Optional[Position] = None
            denied_reason = ""
            for decision in decisions:
                if decision.kind is DecisionKind.CLOSE:
                    trade = await self._execute_close(cfg, decision)
                    if trade is None:
                        return RunResult(
                            symbol,
                            RunAction.ERROR,
                            side=decision.side,
                            exit_price=decision.price,
                            reason=CloseReason.ERROR,
                            success=False,
                            message=f"close order failed for {symbol}",
                        )
                    closed.append(trade)
                    await self._record_close(trade)
                else:
                    opened, denied_reason = await self._execute_open(cfg, decision, account)

        if opened is not None:
            return RunResult(
                symbol,
                RunAction.OPENED,
                side=opened.side,
                entry_price=opened.entry_price,
                exit_price=0.0,
                pnl_pct=0.0,
                pnl_usd=0.0,
                trade=closed[-1] if closed else None,
                message=f"{opened.side.value} opened",
            )
        if closed:
            return RunResult.from_trade(closed[-1])
        self.notifier.notify_no_action(symbol, price, cross.value)
        return RunResult(symbol, RunAction.NO_ACTION, message=denied_reason or "open skipped")

    def _reconcile(self, cfg: SymbolConfig, exchange_position: Optional[ExchangePosition]) -> None:
        tracked = self.positions.position(cfg.symbol)
        if exchange_position is None:
            if tracked is not None:
                logger.warning("%s position closed outside the engine; dropping local state", cfg.symbol)
                lost = self.positions.forget(cfg.symbol)
                if lost is not None and not self.sync_pool_from_account:
                    self.pool.release(lost.margin)
            return
        if tracked is not None and tracked.side is exchange_position.side:
            return
        if tracked is not None:
            self.positions.forget(cfg.symbol)
            if not self.sync_pool_from_account:
                self.pool.release(tracked.margin)
        margin = exchange_position.margin or cfg.notional / self.positions.leverage
        if not self.sync_pool_from_account and not self.pool.reserve(margin):
            logger.warning("%s: adopted position margin %.2f exceeds free pool margin", cfg.symbol, margin)
        notional = exchange_position.notional or exchange_position.contracts * exchange_position.entry_price
        self.positions.adopt(Position(
            symbol=cfg.symbol,
            side=exchange_position.side,
            entry_price=exchange_position.entry_price,
            qty=exchange_position.contracts,
            notional=notional,
            margin=margin,
            stop_loss_pct=self.positions.stop_loss_pct,
            entry_time=exchange_position.timestamp or time.time(),
        ))
        logger.info(
            "%s adopted exchange %s position @ %.6f",
            cfg.symbol,
            exchange_position.side.value,
            exchange_position.entry_price,
        )

    async def _execute_close(self, cfg: SymbolConfig, decision: Decision) -> Optional[ClosedTrade]:
        position = self.positions.position(cfg.symbol)
        if position is None:
            return None
        try:
            await self.execution.submit_order(
                cfg.symbol,
                decision.order_side,
                position.qty,
                decision.price,
                reduce_only=True,
            )
        except Exception as exc:
            logger.error("Close order for %s failed: %s", cfg.symbol, exc)
            self.notifier.notify_error('close_position', cfg.symbol, str(exc))
            return None
        return self.positions.close_position(
            cfg.symbol,
            decision.price,
            decision.reason or CloseReason.SIGNAL_FLIP,
            exit_time=time.time(),
            fees=self.execution.fee_rates(cfg.symbol),
        )

    async def _execute_open(self, cfg: SymbolConfig, decision: Decision, account: AccountInfo):
        margin = self.positions.required_margin(cfg)
        if not self.pool.can_afford(margin):
            logger.info(
                "%s: %s skipped, free margin %.2f < required %.2f",
                cfg.symbol,
                decision.side.value,
                self.pool.free_margin,
                margin,
            )
            metrics.record_margin_denied(cfg.symbol)
            return None, "insufficient margin"
        if self.enforce_risk_budget:
            sizing = self.risk.calculate_position_size(account, cfg.notional)
            if not sizing.can_open:
                logger.info("%s: %s", cfg.symbol, sizing.reason)
                metrics.record_margin_denied(cfg.symbol)
                return None, sizing.reason or "risk budget"

        qty = (margin * self.positions.leverage) / decision.price
        await self.execution.submit_order(cfg.symbol, decision.order_side, qty, decision.price)
        position = self.positions.open_position(cfg, decision.side, decision.price, entry_time=time.time())
        if position is not None:
            self.notifier.notify_trade_open(
                cfg.symbol,
                position.side,
                position.entry_price,
                self.positions.leverage,
                position.notional,
            )
        return position, ""

    async def _record_close(self, trade: ClosedTrade) -> None:
        if trade.reason is CloseReason.STOP_LOSS:
            self.notifier.notify_stop_loss(trade.symbol, trade.side, trade.exit_price)
        self.notifier.notify_trade_close(trade)
        await self.metrics_service.record_trade(trade)

    def _log_account_status(self, account: AccountInfo) -> None:
        health = self.risk.check_account_health(account)
        logger.info(
            "Account: balance=%.2f free=%.2f used=%.2f unrealized=%.2f margin_ratio=%.1f%% pool_free=%.2f",
            account.total_balance,
            account.free_margin,
            account.used_margin,
            account.unrealized_pnl,
            health.margin_ratio * 100,
            self.pool.free_margin,
        )
        self.notifier.notify_account_health(health)
