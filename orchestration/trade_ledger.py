import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import pandas as pd

from analytics.performance import MetricsSnapshot, compute_metrics, equity_curve, trades_frame
from strategy.models import ClosedTrade, RunResult


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EquityPoint:
    timestamp: float
    equity: float
    drawdown: float
    total_pnl: float

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


class TradeLedger:
    """Append-only record of closed trades plus the derived equity curve."""

    def __init__(self, initial_capital: float = 1000.0, max_equity_points: int = 1000):
        self.initial_capital = float(initial_capital)
        self.max_equity_points = int(max_equity_points)
        self._trades: List[ClosedTrade] = []
        self._curve = self._rebuild_curve()

    def __len__(self) -> int:
        return len(self._trades)

    @property
    def total_pnl(self) -> float:
        if self._curve.empty:
            return 0.0
        return float(self._curve['total_pnl'].iloc[-1])

    @property
    def equity(self) -> float:
        return self.initial_capital + self.total_pnl

    def append(self, trade: ClosedTrade) -> str:
        self._trades.append(trade)
        self._curve = self._rebuild_curve()
        logger.debug("Ledger recorded %s %s pnl=%.2f", trade.symbol, trade.reason.value, trade.pnl_usd)
        return trade.id

    def record_result(self, result: RunResult) -> Optional[str]:
        if not result.success or result.trade is None:
            return None
        return self.append(result.trade)

    def _rebuild_curve(self) -> pd.DataFrame:
        # recording order; running sums cover every trade before the tail is cut
        curve = equity_curve(trades_frame(self._trades, sort=False), self.initial_capital)
        return curve.tail(self.max_equity_points)

    def all_trades(self) -> List[ClosedTrade]:
        return sorted(self._trades, key=lambda t: t.exit_time, reverse=True)

    def trades_by_symbol(self, symbol: str) -> List[ClosedTrade]:
        return [t for t in self._trades if t.symbol == symbol]

    def equity_history(self) -> List[EquityPoint]:
        return [
            EquityPoint(float(row.timestamp), float(row.equity), float(row.drawdown), float(row.total_pnl))
            for row in self._curve.itertuples(index=False)
        ]

    def calculate_metrics(self) -> MetricsSnapshot:
        return compute_metrics(self._trades, self.initial_capital)

    def symbol_metrics(self) -> Dict[str, Dict[str, float]]:
        out: Dict[str, Dict[str, float]] = {}
        for trade in self._trades:
            stats = out.setdefault(trade.symbol, {'trades': 0, 'pnl': 0.0, 'wins': 0, 'win_rate': 0.0})
            stats['trades'] += 1
            stats['pnl'] += trade.pnl_usd
            if trade.pnl_usd > 0:
                stats['wins'] += 1
        for stats in out.values():
            stats['win_rate'] = stats['wins'] / stats['trades'] * 100.0
        return out

    def export_snapshot(self) -> Dict[str, Any]:
        return {
            'initial_capital': self.initial_capital,
            'trades': [t.to_dict() for t in self._trades],
            'equity_history': [p.to_dict() for p in self.equity_history()],
        }

    def import_snapshot(self, data: Dict[str, Any]) -> None:
        self.initial_capital = float(data.get('initial_capital', self.initial_capital))
        self._trades = [ClosedTrade.from_dict(item) for item in data.get('trades') or []]
        self._curve = self._rebuild_curve()
        logger.info("Imported %s trades into ledger", len(self._trades))

    def clear(self) -> None:
        self._trades.clear()
        self._curve = self._rebuild_curve()
