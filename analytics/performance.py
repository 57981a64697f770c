import time
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, Tuple

import numpy as np
import pandas as pd

from strategy.models import ClosedTrade


TRADING_DAYS = 252
PROFIT_FACTOR_CAP = 999.0
DEFAULT_INITIAL_EQUITY = 1000.0

TRADE_COLUMNS = ['exit_time', 'pnl_usd', 'pnl_pct']


@dataclass
class MetricsSnapshot:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    profit_factor: float = 0.0
    max_consecutive_wins: int = 0
    max_consecutive_losses: int = 0
    computed_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict:
        return asdict(self)


def trades_frame(trades: Iterable[ClosedTrade], sort: bool = True) -> pd.DataFrame:
    """One row per trade; sorted by exit time unless ``sort`` is False (stable on ties)."""
    frame = pd.DataFrame(
        [(t.exit_time, t.pnl_usd, t.pnl_pct) for t in trades],
        columns=TRADE_COLUMNS,
        dtype=float,
    )
    if sort:
        frame = frame.sort_values('exit_time', kind='mergesort', ignore_index=True)
    return frame


def equity_curve(frame: pd.DataFrame, initial_equity: float = DEFAULT_INITIAL_EQUITY) -> pd.DataFrame:
    """Equity after each row of ``frame`` and its drawdown (percent, <= 0) from the running peak."""
    total_pnl = frame['pnl_usd'].cumsum()
    equity = initial_equity + total_pnl
    peak = equity.cummax().clip(lower=initial_equity)
    drawdown = ((equity - peak) / peak * 100.0).where(peak > 0, 0.0)
    return pd.DataFrame({
        'timestamp': frame['exit_time'],
        'equity': equity,
        'drawdown': drawdown,
        'total_pnl': total_pnl,
    })


def _max_drawdown(frame: pd.DataFrame, initial_equity: float) -> float:
    if frame.empty:
        return 0.0
    return float(equity_curve(frame, initial_equity)['drawdown'].min())


def _sharpe(returns: pd.Series) -> float:
    # identical returns have zero variance
    if returns.nunique() < 2:
        return 0.0
    std = returns.std(ddof=0)
    if not std > 0:
        return 0.0
    sharpe = returns.mean() / std * np.sqrt(TRADING_DAYS)
    return float(sharpe) if np.isfinite(sharpe) else 0.0


def _streaks(won: pd.Series) -> Tuple[int, int]:
    if won.empty:
        return 0, 0
    runs = won.groupby((won != won.shift()).cumsum()).agg(['first', 'size'])
    winning = runs['first'].astype(bool)
    longest_win = runs.loc[winning, 'size'].max() if winning.any() else 0
    longest_loss = runs.loc[~winning, 'size'].max() if (~winning).any() else 0
    return int(longest_win), int(longest_loss)


def compute_max_drawdown(trades: Iterable[ClosedTrade], initial_equity: float = DEFAULT_INITIAL_EQUITY) -> float:
    """Most negative peak-to-trough move of the equity path, in percent (<= 0)."""
    return _max_drawdown(trades_frame(trades), initial_equity)


def compute_sharpe(trades: Iterable[ClosedTrade]) -> float:
    return _sharpe(trades_frame(trades)['pnl_pct'] / 100.0)


def compute_streaks(trades: Iterable[ClosedTrade]) -> Tuple[int, int]:
    # breakeven trades count as losses
    return _streaks(trades_frame(trades)['pnl_usd'] > 0)


def compute_profit_factor(gross_profit: float, gross_loss: float) -> float:
    if gross_loss > 0:
        return gross_profit / gross_loss
    if gross_profit > 0:
        return PROFIT_FACTOR_CAP
    return 0.0


def compute_metrics(trades: Iterable[ClosedTrade], initial_equity: float = DEFAULT_INITIAL_EQUITY) -> MetricsSnapshot:
    frame = trades_frame(trades)
    if frame.empty:
        return MetricsSnapshot()

    pnl = frame['pnl_usd']
    won = pnl > 0
    winners = pnl[won]
    losers = pnl[~won]
    gross_profit = float(winners.sum())
    gross_loss = abs(float(losers.sum()))
    max_wins, max_losses = _streaks(won)

    return MetricsSnapshot(
        total_trades=len(frame),
        winning_trades=len(winners),
        losing_trades=len(losers),
        win_rate=len(winners) / len(frame) * 100.0,
        total_pnl=float(pnl.sum()),
        max_drawdown=_max_drawdown(frame, initial_equity),
        sharpe_ratio=_sharpe(frame['pnl_pct'] / 100.0),
        average_win=gross_profit / len(winners) if len(winners) else 0.0,
        average_loss=gross_loss / len(losers) if len(losers) else 0.0,
        profit_factor=compute_profit_factor(gross_profit, gross_loss),
        max_consecutive_wins=max_wins,
        max_consecutive_losses=max_losses,
    )
