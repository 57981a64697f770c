#!/usr/bin/env python
"""
Unit tests for the shared margin pool and the per-symbol position state machine
"""
import sys
sys.path.insert(0, '.')

import pytest

from config.symbols import SymbolConfig, SymbolRegistry, TradeMode
from risk.capital_pool import CapitalPool
from risk.position_manager import (
    DecisionKind,
    FeeRates,
    PositionManager,
    adverse_exit_price,
    entry_fill_price,
    flip_exit_price,
)
from strategy.cross import CrossSignal
from strategy.models import CloseReason, Side


def _cfg(symbol='IP', notional=1250.0, mode=TradeMode.LONG_SHORT, allocation=0.5):
    return SymbolConfig(symbol, notional, mode, allocation)


def _manager(equity=1000.0, slippage=0.0002):
    pool = CapitalPool(equity)
    return pool, PositionManager(pool, leverage=5, stop_loss_pct=0.22, fees=FeeRates(0.0002, 0.0006), slippage=slippage)


def _assert_pool_consistent(pool):
    assert pool.used_margin >= 0
    assert pool.free_margin >= -1e-9
    assert pool.used_margin + pool.free_margin == pytest.approx(pool.equity)


def test_pool_reserve_and_release():
    pool = CapitalPool(1000)
    assert pool.reserve(250)
    assert pool.used_margin == 250
    assert pool.free_margin == 750
    assert not pool.reserve(800)
    assert pool.used_margin == 250
    pool.release(250, pnl=12.5)
    assert pool.used_margin == 0
    assert pool.equity == pytest.approx(1012.5)
    _assert_pool_consistent(pool)


def test_pool_rejects_non_positive_margin():
    pool = CapitalPool(1000)
    assert not pool.can_afford(0)
    assert not pool.reserve(-5)


def test_pool_release_clamps_dust():
    pool = CapitalPool(100)
    pool.reserve(0.1 + 0.2)
    pool.release(0.3)
    assert pool.used_margin == 0.0


def test_slippage_helpers():
    assert entry_fill_price(Side.LONG, 100, 0.001) == pytest.approx(100.1)
    assert entry_fill_price(Side.SHORT, 100, 0.001) == pytest.approx(99.9)
    assert flip_exit_price(Side.LONG, 100, 0.001) == pytest.approx(100.1)
    assert flip_exit_price(Side.SHORT, 100, 0.001) == pytest.approx(99.9)
    assert adverse_exit_price(Side.LONG, 100, 0.001) == pytest.approx(99.9)
    assert adverse_exit_price(Side.SHORT, 100, 0.001) == pytest.approx(100.1)


def test_long_stop_loss_boundary():
    pool, manager = _manager()
    cfg = _cfg()
    manager.open_position(cfg, Side.LONG, 100.0)
    assert not manager.check_stop_loss(cfg.symbol, 78.01)
    assert manager.check_stop_loss(cfg.symbol, 78.00)

    outcome = manager.step(cfg, 78.00, CrossSignal.BULL)
    assert outcome.stopped
    assert len(outcome.closed) == 1
    assert outcome.closed[0].reason is CloseReason.STOP_LOSS
    assert outcome.opened is None
    assert not manager.has_position(cfg.symbol)
    _assert_pool_consistent(pool)


def test_short_stop_loss_boundary():
    _, manager = _manager()
    cfg = _cfg()
    manager.open_position(cfg, Side.SHORT, 100.0)
    assert not manager.check_stop_loss(cfg.symbol, 121.99)
    assert manager.check_stop_loss(cfg.symbol, 122.00)


def test_stop_loss_exit_uses_adverse_slippage():
    _, manager = _manager(slippage=0.001)
    cfg = _cfg()
    manager.open_position(cfg, Side.LONG, 100.0)
    decisions = manager.plan(cfg, 70.0, CrossSignal.NONE)
    assert len(decisions) == 1
    assert decisions[0].reason is CloseReason.STOP_LOSS
    assert decisions[0].price == pytest.approx(70.0 * 0.999)


def test_insufficient_margin_is_silent_denial():
    pool, manager = _manager(equity=100.0)
    cfg = _cfg(notional=1250.0)
    before = pool.snapshot()
    outcome = manager.step(cfg, 10.0, CrossSignal.BULL)
    assert outcome.denied
    assert outcome.opened is None
    assert not outcome.closed
    assert pool.snapshot() == before
    assert not manager.has_position(cfg.symbol)


def test_same_tick_opens_never_exceed_equity():
    registry = SymbolRegistry([
        _cfg('IP', 1250.0, allocation=0.5),
        _cfg('PEOPLE', 750.0, allocation=0.3),
        _cfg('AVNT', 250.0, allocation=0.1),
        _cfg('0G', 250.0, allocation=0.1),
    ])
    pool, manager = _manager(equity=400.0)
    opened = []
    for cfg in registry:
        outcome = manager.step(cfg, 1.0, CrossSignal.BULL)
        if outcome.opened is not None:
            opened.append(cfg.symbol)
        assert pool.used_margin <= pool.equity
        _assert_pool_consistent(pool)
    assert opened == ['IP', 'PEOPLE']
    assert pool.used_margin == pytest.approx(400.0)


def test_full_allocation_fits_default_capital():
    registry = SymbolRegistry([
        _cfg('IP', 1250.0, allocation=0.5),
        _cfg('PEOPLE', 750.0, allocation=0.3),
        _cfg('AVNT', 250.0, allocation=0.1),
        _cfg('0G', 250.0, allocation=0.1),
    ])
    pool, manager = _manager(equity=1000.0)
    for cfg in registry:
        assert manager.step(cfg, 2.0, CrossSignal.BULL).opened is not None
    assert pool.used_margin == pytest.approx(registry.planned_margin(5))
    assert pool.free_margin == pytest.approx(500.0)


def test_bull_flips_short_into_long():
    pool, manager = _manager(slippage=0.0)
    cfg = _cfg()
    manager.open_position(cfg, Side.SHORT, 100.0, entry_index=3)
    outcome = manager.step(cfg, 90.0, CrossSignal.BULL, index=10)
    assert len(outcome.closed) == 1
    trade = outcome.closed[0]
    assert trade.side is Side.SHORT
    assert trade.reason is CloseReason.SIGNAL_FLIP
    assert trade.bars_held == 7
    # 10% favourable move on 250 margin at 5x, minus 0.08% fees on 1250 notional
    assert trade.pnl_usd == pytest.approx(125.0 - 1.0)
    assert trade.pnl_pct == pytest.approx(124.0 / 250.0 * 100)
    assert outcome.opened is not None
    assert outcome.opened.side is Side.LONG
    assert manager.position(cfg.symbol).side is Side.LONG
    assert pool.equity == pytest.approx(1124.0)
    assert pool.used_margin == pytest.approx(250.0)
    _assert_pool_consistent(pool)


def test_bear_closes_long_and_shorts_only_when_allowed():
    _, manager = _manager()
    long_only = _cfg('AVNT', 250.0, mode=TradeMode.LONG_ONLY, allocation=0.1)
    manager.open_position(long_only, Side.LONG, 10.0)
    decisions = manager.plan(long_only, 11.0, CrossSignal.BEAR)
    assert [d.kind for d in decisions] == [DecisionKind.CLOSE]
    assert decisions[0].order_side == 'sell'

    both = _cfg('PEOPLE', 750.0, mode=TradeMode.LONG_SHORT, allocation=0.3)
    manager.open_position(both, Side.LONG, 10.0)
    decisions = manager.plan(both, 11.0, CrossSignal.BEAR)
    assert [d.kind for d in decisions] == [DecisionKind.CLOSE, DecisionKind.OPEN]
    assert decisions[1].side is Side.SHORT
    assert decisions[1].order_side == 'sell'


def test_long_only_never_shorts_from_flat():
    _, manager = _manager()
    cfg = _cfg(mode=TradeMode.LONG_ONLY)
    assert manager.plan(cfg, 5.0, CrossSignal.BEAR) == []


def test_same_side_signal_holds_position():
    pool, manager = _manager()
    cfg = _cfg()
    manager.open_position(cfg, Side.LONG, 100.0)
    outcome = manager.step(cfg, 105.0, CrossSignal.BULL)
    assert not outcome.closed
    assert outcome.opened is None
    assert pool.used_margin == pytest.approx(250.0)


def test_losing_trade_reduces_equity():
    pool, manager = _manager(slippage=0.0)
    cfg = _cfg()
    manager.open_position(cfg, Side.LONG, 100.0)
    trade = manager.close_position(cfg.symbol, 95.0, CloseReason.SIGNAL_FLIP)
    assert trade.pnl_usd == pytest.approx(-62.5 - 1.0)
    assert pool.equity == pytest.approx(1000.0 - 63.5)
    assert pool.used_margin == 0.0


def test_force_close_all_uses_adverse_slippage():
    pool, manager = _manager(slippage=0.001)
    a = _cfg('IP', 1250.0, allocation=0.5)
    b = _cfg('PEOPLE', 750.0, allocation=0.3)
    manager.open_position(a, Side.LONG, 100.0)
    manager.open_position(b, Side.SHORT, 50.0)
    trades = manager.force_close_all({'IP': 100.0, 'PEOPLE': 50.0}, index=9)
    assert {t.reason for t in trades} == {CloseReason.FORCE_CLOSE_END}
    prices = {t.symbol: t.exit_price for t in trades}
    assert prices['IP'] == pytest.approx(99.9)
    assert prices['PEOPLE'] == pytest.approx(50.05)
    assert pool.used_margin == 0.0
    assert not manager.positions


def test_open_refuses_duplicate_and_bad_price():
    pool, manager = _manager()
    cfg = _cfg()
    assert manager.open_position(cfg, Side.LONG, 0.0) is None
    assert manager.open_position(cfg, Side.LONG, 10.0) is not None
    assert manager.open_position(cfg, Side.SHORT, 10.0) is None
    assert pool.used_margin == pytest.approx(250.0)
