#!/usr/bin/env python
"""
Unit tests for trade statistics and the trade ledger
"""
import sys
sys.path.insert(0, '.')

import math
import statistics

import pytest

from analytics.performance import (
    PROFIT_FACTOR_CAP,
    compute_max_drawdown,
    compute_metrics,
    compute_profit_factor,
    compute_sharpe,
    compute_streaks,
    equity_curve,
    trades_frame,
)
from orchestration.trade_ledger import TradeLedger
from strategy.models import ClosedTrade, CloseReason, RunAction, RunResult, Side


def _trade(pnl_usd, exit_time, symbol='IP', margin=250.0):
    return ClosedTrade(
        symbol=symbol,
        side=Side.LONG,
        entry_price=1.0,
        exit_price=1.0,
        pnl_pct=pnl_usd / margin * 100.0,
        pnl_usd=pnl_usd,
        reason=CloseReason.SIGNAL_FLIP,
        exit_time=exit_time,
        margin=margin,
    )


def test_empty_metrics():
    snapshot = compute_metrics([])
    assert snapshot.total_trades == 0
    assert snapshot.win_rate == 0.0
    assert snapshot.profit_factor == 0.0
    assert snapshot.max_drawdown == 0.0


def test_all_winners_have_no_drawdown_and_capped_profit_factor():
    trades = [_trade(10, 1), _trade(20, 2), _trade(5, 3)]
    snapshot = compute_metrics(trades)
    assert snapshot.max_drawdown == 0.0
    assert snapshot.profit_factor == PROFIT_FACTOR_CAP
    assert snapshot.win_rate == 100.0
    assert snapshot.max_consecutive_wins == 3
    assert snapshot.average_loss == 0.0


def test_drawdown_from_initial_capital():
    trades = [_trade(100, 1), _trade(-220, 2), _trade(50, 3)]
    dd = compute_max_drawdown(trades, 1000.0)
    assert dd == pytest.approx(-20.0)
    assert compute_max_drawdown(trades, 1000.0) == dd


def test_drawdown_is_order_independent_of_input():
    trades = [_trade(-50, 2), _trade(100, 1), _trade(30, 3)]
    forward = compute_metrics(trades)
    backward = compute_metrics(list(reversed(trades)))
    assert forward.max_drawdown == backward.max_drawdown
    assert forward.max_drawdown == pytest.approx(-50 / 1100 * 100)


def test_profit_factor_edges():
    assert compute_profit_factor(0.0, 0.0) == 0.0
    assert compute_profit_factor(50.0, 0.0) == PROFIT_FACTOR_CAP
    assert compute_profit_factor(50.0, 25.0) == pytest.approx(2.0)


def test_breakeven_counts_as_loss():
    trades = [_trade(10, 1), _trade(0, 2), _trade(-5, 3), _trade(7, 4)]
    snapshot = compute_metrics(trades)
    assert snapshot.winning_trades == 2
    assert snapshot.losing_trades == 2
    assert snapshot.win_rate == pytest.approx(50.0)
    assert snapshot.average_loss == pytest.approx(2.5)
    assert snapshot.average_win == pytest.approx(8.5)
    assert compute_streaks(sorted(trades, key=lambda t: t.exit_time)) == (1, 2)


def test_sharpe_zero_for_constant_returns():
    trades = [_trade(10, i) for i in range(5)]
    assert compute_sharpe(trades) == 0.0
    assert compute_sharpe([]) == 0.0


def test_sharpe_annualised_population_std():
    trades = [_trade(25, 1), _trade(-25, 2), _trade(50, 3)]
    returns = [0.1, -0.1, 0.2]
    mean = sum(returns) / 3
    std = math.sqrt(sum((r - mean) ** 2 for r in returns) / 3)
    assert compute_sharpe(trades) == pytest.approx(mean / std * math.sqrt(252))


def test_ledger_orders_newest_first_and_tracks_equity():
    ledger = TradeLedger(1000.0)
    ledger.append(_trade(50, 10))
    ledger.append(_trade(-100, 20, symbol='PEOPLE'))
    ledger.append(_trade(30, 15))
    assert [t.exit_time for t in ledger.all_trades()] == [20, 15, 10]
    assert len(ledger) == 3
    assert ledger.total_pnl == pytest.approx(-20.0)
    assert ledger.equity == pytest.approx(980.0)
    history = ledger.equity_history()
    assert len(history) == 3
    assert history[0].equity == pytest.approx(1050.0)
    assert history[1].drawdown < 0


def test_ledger_equity_history_is_bounded():
    ledger = TradeLedger(1000.0, max_equity_points=5)
    for i in range(12):
        ledger.append(_trade(1, i))
    assert len(ledger.equity_history()) == 5
    assert len(ledger) == 12
    assert ledger.equity_history()[-1].equity == pytest.approx(1012.0)


def test_ledger_symbol_metrics_and_snapshot_roundtrip():
    ledger = TradeLedger(1000.0)
    ledger.append(_trade(10, 1))
    ledger.append(_trade(-4, 2))
    ledger.append(_trade(6, 3, symbol='0G'))
    stats = ledger.symbol_metrics()
    assert stats['IP']['trades'] == 2
    assert stats['IP']['win_rate'] == pytest.approx(50.0)
    assert stats['0G']['pnl'] == pytest.approx(6.0)

    restored = TradeLedger()
    restored.import_snapshot(ledger.export_snapshot())
    assert len(restored) == 3
    assert restored.total_pnl == pytest.approx(12.0)
    assert restored.calculate_metrics().total_trades == 3


def test_ledger_records_only_successful_results():
    ledger = TradeLedger()
    trade = _trade(5, 1)
    assert ledger.record_result(RunResult.from_trade(trade)) == trade.id
    assert ledger.record_result(RunResult.error('IP', 'boom')) is None
    assert ledger.record_result(RunResult('IP', RunAction.NO_ACTION)) is None
    assert len(ledger) == 1


def test_metrics_match_a_walk_of_the_equity_path():
    pnls = [30.0, -20.0, 0.0, 45.0, -60.0, 15.0]
    trades = [_trade(p, i + 1) for i, p in enumerate(pnls)]

    equity, peak, worst = 1000.0, 1000.0, 0.0
    for p in pnls:
        equity += p
        peak = max(peak, equity)
        worst = min(worst, (equity - peak) / peak * 100.0)
    returns = [p / 250.0 for p in pnls]
    sharpe = statistics.fmean(returns) / statistics.pstdev(returns) * math.sqrt(252)

    snapshot = compute_metrics(list(reversed(trades)))
    assert snapshot.max_drawdown == pytest.approx(worst)
    assert snapshot.sharpe_ratio == pytest.approx(sharpe)
    assert snapshot.total_pnl == pytest.approx(10.0)
    assert snapshot.losing_trades == 3
    assert snapshot.average_loss == pytest.approx(80.0 / 3)
    assert snapshot.profit_factor == pytest.approx(90.0 / 80.0)
    assert (snapshot.max_consecutive_wins, snapshot.max_consecutive_losses) == (1, 2)
    assert isinstance(snapshot.max_drawdown, float)
    assert isinstance(snapshot.max_consecutive_losses, int)


def test_equity_curve_floors_peak_at_initial_capital():
    frame = trades_frame([_trade(-100, 1), _trade(40, 2), _trade(80, 3), _trade(-54, 4)])
    curve = equity_curve(frame, 1000.0)
    assert curve['equity'].tolist() == pytest.approx([900.0, 940.0, 1020.0, 966.0])
    assert curve['drawdown'].tolist() == pytest.approx([-10.0, -6.0, 0.0, -54 / 1020 * 100])
    assert curve['total_pnl'].iloc[-1] == pytest.approx(-34.0)


def test_trades_frame_sorts_stably_by_exit_time():
    first, second, third = _trade(1, 5), _trade(2, 5), _trade(3, 1)
    frame = trades_frame([first, second, third])
    assert frame['pnl_usd'].tolist() == [3.0, 1.0, 2.0]
    assert trades_frame([first, second, third], sort=False)['pnl_usd'].tolist() == [1.0, 2.0, 3.0]
    assert trades_frame([]).empty


def test_ledger_curve_starts_below_initial_capital():
    ledger = TradeLedger(1000.0)
    ledger.append(_trade(-100, 1))
    ledger.append(_trade(150, 2))
    history = ledger.equity_history()
    assert history[0].drawdown == pytest.approx(-10.0)
    assert history[1].drawdown == 0.0
    assert history[1].total_pnl == pytest.approx(50.0)
    ledger.clear()
    assert ledger.equity_history() == []
    assert ledger.total_pnl == 0.0
