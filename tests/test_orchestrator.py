#!/usr/bin/env python
"""
Orchestration tests against the in-process paper exchange
"""
import sys
sys.path.insert(0, '.')

import asyncio

import pytest

from api.alerts import TelegramNotifier
from config.symbols import SymbolConfig, SymbolRegistry, TradeMode
from monitoring.async_utils import RetryPolicy
from orchestration.persistence import InMemoryTradeStore
from orchestration.services import MetricsService
from orchestration.trade_ledger import TradeLedger
from risk.capital_pool import CapitalPool
from risk.position_manager import FeeRates, PositionManager
from strategy.execution import ExecutionManager
from strategy.models import CloseReason, RunAction, Side
from strategy.orchestrator import SymbolOrchestrator
from strategy.simulators.paper import PaperExchange
from tests.market_fixtures import (
    bear_on_last_bar,
    bull_on_last_bar,
    candles_from_closes,
    flat,
)


FAST = RetryPolicy(retries=2, timeout_s=1.0, backoff_s=0.0)

FOUR_SYMBOLS = [
    SymbolConfig('IP', 1250.0, TradeMode.LONG_SHORT, 0.5),
    SymbolConfig('PEOPLE', 750.0, TradeMode.LONG_ONLY, 0.3),
    SymbolConfig('AVNT', 250.0, TradeMode.LONG_ONLY, 0.1),
    SymbolConfig('0G', 250.0, TradeMode.LONG_ONLY, 0.1),
]


class RecordingNotifier(TelegramNotifier):
    def __init__(self):
        super().__init__('token', 'chat', dedupe_window_s=0, deliver=False)
        self.messages = []

    def send(self, text):
        self.messages.append(text)
        return True


class Harness:
    def __init__(self, closes_by_symbol, symbols=None, equity=1000.0):
        self.registry = SymbolRegistry(symbols or FOUR_SYMBOLS[:1])
        self.paper = PaperExchange(
            initial_equity=equity,
            leverage=5,
            candles={s: candles_from_closes(c) for s, c in closes_by_symbol.items()},
        )
        self.execution = ExecutionManager(self.paper, policy=FAST, ohlcv_timeout_s=1.0, paper_mode=True)
        self.pool = CapitalPool(equity)
        self.positions = PositionManager(
            self.pool, leverage=5, stop_loss_pct=0.22, fees=FeeRates(0.0002, 0.0006), slippage=0.0002
        )
        self.ledger = TradeLedger(equity)
        self.store = InMemoryTradeStore()
        self.notifier = RecordingNotifier()
        self.orchestrator = SymbolOrchestrator(
            self.registry,
            self.execution,
            self.positions,
            MetricsService(self.ledger, self.store),
            self.notifier,
            min_bars=50,
        )

    def set_closes(self, symbol, closes):
        self.paper.set_candles(symbol, candles_from_closes(closes))

    def run(self, symbol='IP'):
        return asyncio.run(self.orchestrator.run_symbol(symbol))


def test_bull_cross_opens_long():
    h = Harness({'IP': bull_on_last_bar()})
    result = h.run()
    assert result.action is RunAction.OPENED
    assert result.success
    assert result.side is Side.LONG
    assert result.entry_price == pytest.approx(90.0 * 1.0002)
    assert h.pool.used_margin == pytest.approx(250.0)
    assert h.paper.positions['IP'].side is Side.LONG
    order = list(h.paper.orders.values())[0]
    assert order.side == 'buy'
    assert order.amount == pytest.approx(1250.0 / (90.0 * 1.0002))
    assert any('Open' in m for m in h.notifier.messages)


def test_flat_market_is_no_action():
    h = Harness({'IP': flat()})
    result = h.run()
    assert result.action is RunAction.NO_ACTION
    assert result.success
    assert h.pool.used_margin == 0.0
    assert not h.paper.orders


def test_insufficient_history_is_error():
    h = Harness({'IP': flat(30)})
    result = h.run()
    assert result.action is RunAction.ERROR
    assert not result.success
    assert result.reason is CloseReason.ERROR
    assert '30 bars' in result.message
    assert any('Error' in m for m in h.notifier.messages)


def test_unknown_symbol_is_error():
    h = Harness({'IP': flat()})
    result = h.run('DOGE')
    assert result.action is RunAction.ERROR
    assert 'DOGE' in result.message


def test_transient_gateway_failure_is_retried():
    h = Harness({'IP': bull_on_last_bar()})
    h.paper.fail_next['fetch_ohlcv'] = 2
    result = h.run()
    assert result.action is RunAction.OPENED


def test_persistent_gateway_failure_surfaces_as_error():
    h = Harness({'IP': bull_on_last_bar()})
    h.paper.fail_next['fetch_account'] = 3
    result = h.run()
    assert result.action is RunAction.ERROR
    assert 'fetch_balance' in result.message
    assert h.pool.used_margin == 0.0
    assert not h.positions.positions


def test_stop_loss_closes_and_records_trade():
    h = Harness({'IP': bull_on_last_bar()})
    assert h.run().action is RunAction.OPENED
    h.set_closes('IP', flat(60, 60.0))
    result = h.run()
    assert result.action is RunAction.CLOSED
    assert result.reason is CloseReason.STOP_LOSS
    assert result.exit_price == pytest.approx(60.0 * (1 - 0.0002))
    assert result.pnl_usd < 0
    assert h.pool.used_margin == 0.0
    assert h.pool.equity == pytest.approx(1000.0 + result.pnl_usd)
    assert len(h.ledger) == 1
    assert len(h.store.trades) == 1
    assert 'IP' not in h.paper.positions
    assert any('Stop-Loss' in m for m in h.notifier.messages)


def test_bear_cross_flips_long_into_short():
    h = Harness({'IP': bull_on_last_bar()})
    h.run()
    h.set_closes('IP', bear_on_last_bar())
    result = h.run()
    assert result.action is RunAction.OPENED
    assert result.side is Side.SHORT
    assert result.trade is not None
    assert result.trade.reason is CloseReason.SIGNAL_FLIP
    assert result.trade.exit_price == pytest.approx(95.0 * 1.0002)
    assert result.trade.pnl_usd > 0
    assert h.positions.position('IP').side is Side.SHORT
    assert h.paper.positions['IP'].side is Side.SHORT
    assert len(h.ledger) == 1


def test_long_only_bear_closes_without_shorting():
    symbols = [FOUR_SYMBOLS[1]]
    h = Harness({'PEOPLE': bull_on_last_bar()}, symbols=symbols)
    assert h.run('PEOPLE').action is RunAction.OPENED
    h.set_closes('PEOPLE', bear_on_last_bar())
    result = h.run('PEOPLE')
    assert result.action is RunAction.CLOSED
    assert result.reason is CloseReason.SIGNAL_FLIP
    assert not h.positions.has_position('PEOPLE')
    assert h.pool.used_margin == 0.0


def test_failed_close_order_keeps_position():
    h = Harness({'IP': bull_on_last_bar()})
    h.run()
    h.set_closes('IP', bear_on_last_bar())
    h.paper.fail_next['create_order'] = 3
    result = h.run()
    assert result.action is RunAction.ERROR
    assert not result.success
    assert h.positions.position('IP').side is Side.LONG
    assert h.pool.used_margin == pytest.approx(250.0)
    assert len(h.ledger) == 0


def test_concurrent_symbols_never_overspend_pool():
    closes = {cfg.symbol: bull_on_last_bar() for cfg in FOUR_SYMBOLS}
    h = Harness(closes, symbols=FOUR_SYMBOLS, equity=400.0)

    async def _run():
        return await asyncio.gather(*(h.orchestrator.run_symbol(s) for s in h.registry.symbols()))

    results = asyncio.run(_run())
    opened = [r for r in results if r.action is RunAction.OPENED]
    skipped = [r for r in results if r.action is RunAction.NO_ACTION]
    assert opened
    assert len(opened) + len(skipped) == 4
    assert all(r.message == 'insufficient margin' for r in skipped)
    assert h.pool.used_margin <= h.pool.equity
    committed = sum(p.margin for p in h.positions.positions.values())
    assert committed == pytest.approx(h.pool.used_margin)
    assert len(h.paper.positions) == len(opened)


def test_position_closed_outside_engine_is_dropped():
    h = Harness({'IP': bull_on_last_bar()})
    h.run()
    asyncio.run(h.paper.create_order('IP', 'sell', h.paper.positions['IP'].qty, 90.0, reduce_only=True))
    h.set_closes('IP', flat())
    result = h.run()
    assert result.action is RunAction.NO_ACTION
    assert not h.positions.has_position('IP')
    assert h.pool.used_margin == 0.0


def test_adopted_position_keeps_exchange_open_time():
    h = Harness({'IP': flat(60, 100.0)})
    asyncio.run(h.paper.create_order('IP', 'buy', 12.5, 100.0))
    h.paper.positions['IP'].opened_at = 1_650_000_000.0
    assert h.run().action is RunAction.NO_ACTION
    adopted = h.positions.position('IP')
    assert adopted.side is Side.LONG
    assert adopted.entry_time == 1_650_000_000.0
    assert h.pool.used_margin == pytest.approx(250.0)

    h.set_closes('IP', flat(60, 70.0))
    result = h.run()
    assert result.reason is CloseReason.STOP_LOSS
    assert result.trade.entry_time == 1_650_000_000.0
