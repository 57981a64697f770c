import logging
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

import pandas as pd

from analytics.indicators import MACDResult, macd, warmup_bars
from analytics.performance import compute_metrics
from config.symbols import SymbolRegistry
from orchestration.trade_ledger import TradeLedger
from risk.capital_pool import CapitalPool
from risk.position_manager import FeeRates, PositionManager
from strategy.cross import cross_at
from strategy.errors import DataInsufficiencyError
from strategy.models import Candle, ClosedTrade, closes


logger = logging.getLogger(__name__)

CSV_COLUMNS = ['symbol', 'side', 'entryPrice', 'exitPrice', 'pnlPct', 'pnlUsd', 'reason', 'barsHeld']


class BacktestEngine:
    """Bar-by-bar simulation of every configured symbol against one shared pool."""

    def __init__(
        self,
        symbols: SymbolRegistry,
        initial_equity: float = 1000.0,
        leverage: float = 5.0,
        stop_loss_pct: float = 0.22,
        fees: Optional[FeeRates] = None,
        slippage: float = 0.0002,
        min_bars: int = 50,
    ):
        self.symbols = symbols
        self.initial_equity = initial_equity
        self.leverage = leverage
        self.stop_loss_pct = stop_loss_pct
        self.fees = fees or FeeRates()
        self.slippage = slippage
        self.min_bars = min_bars
        self._reset()

    @classmethod
    def from_config(cls, cfg, symbols: Optional[SymbolRegistry] = None) -> 'BacktestEngine':
        from config.symbols import load_symbols
        trading = cfg.get('trading') or {}
        return cls(
            symbols or load_symbols(cfg),
            initial_equity=float(trading.get('start_capital', 1000.0)),
            leverage=float(trading.get('leverage', 5)),
            stop_loss_pct=float(trading.get('stop_loss_pct', 0.22)),
            fees=FeeRates(
                maker=float(trading.get('maker_fee', 0.0002)),
                taker=float(trading.get('taker_fee', 0.0006)),
            ),
            slippage=float(trading.get('slippage', 0.0002)),
            min_bars=int(trading.get('min_bars', 50)),
        )

    def _reset(self) -> None:
        self.pool = CapitalPool(self.initial_equity)
        self.positions = PositionManager(
            self.pool,
            leverage=self.leverage,
            stop_loss_pct=self.stop_loss_pct,
            fees=self.fees,
            slippage=self.slippage,
        )
        self.ledger = TradeLedger(self.initial_equity)
        self.trades: List[ClosedTrade] = []
        self.max_used_margin = 0.0

    async def load_candles(self, execution, timeframe: str = '1h', limit: int = 1000) -> Dict[str, List[Candle]]:
        data: Dict[str, List[Candle]] = {}
        for symbol in self.symbols.symbols():
            data[symbol] = await execution.fetch_candles(symbol, timeframe, limit)
            logger.info("Loaded %s candles for %s", len(data[symbol]), symbol)
        return data

    async def run_from_exchange(self, execution, timeframe: str = '1h', limit: int = 1000) -> Dict:
        candles = await self.load_candles(execution, timeframe, limit)
        return self.run(candles)

    def _align(self, candles: Mapping[str, Sequence[Candle]]) -> Dict[str, List[Candle]]:
        symbols = self.symbols.symbols()
        lengths = {s: len(candles.get(s) or []) for s in symbols}
        shortest = min(lengths, key=lengths.get) if lengths else ''
        min_len = lengths.get(shortest, 0)
        if min_len < self.min_bars:
            raise DataInsufficiencyError(shortest or 'backtest', min_len, self.min_bars)
        logger.info("Common history length: %s bars", min_len)
        # keep the most recent bars so every series ends on the same candle
        return {s: list(candles[s])[-min_len:] for s in symbols}

    def run(self, candles: Mapping[str, Sequence[Candle]]) -> Dict:
        self._reset()
        data = self._align(candles)
        symbols = self.symbols.symbols()
        min_len = len(data[symbols[0]])

        oscillators: Dict[str, MACDResult] = {}
        for cfg in self.symbols:
            oscillators[cfg.symbol] = macd(closes(data[cfg.symbol]), cfg.fast, cfg.slow, cfg.signal)

        planned = self.symbols.planned_margin(self.leverage)
        logger.info(
            "Planned margin %.2f (buffer %.2f)",
            planned,
            self.initial_equity - planned,
        )

        start = max(warmup_bars(cfg.slow) for cfg in self.symbols)
        for i in range(start, min_len):
            for cfg in self.symbols:
                bar = data[cfg.symbol][i]
                cross = cross_at(oscillators[cfg.symbol], i)
                outcome = self.positions.step(cfg, bar.close, cross, index=i, timestamp=bar.time / 1000.0)
                for trade in outcome.closed:
                    self._record(trade)
                self.max_used_margin = max(self.max_used_margin, self.pool.used_margin)

        last = min_len - 1
        last_prices = {s: data[s][last].close for s in symbols}
        end_ts = data[symbols[0]][last].time / 1000.0
        for trade in self.positions.force_close_all(last_prices, index=last, timestamp=end_ts):
            self._record(trade)

        return self.summary(planned)

    def _record(self, trade: ClosedTrade) -> None:
        self.trades.append(trade)
        self.ledger.append(trade)

    def summary(self, planned_margin: Optional[float] = None) -> Dict:
        if planned_margin is None:
            planned_margin = self.symbols.planned_margin(self.leverage)
        wins = sum(1 for t in self.trades if t.pnl_usd > 0)
        per_symbol = {}
        for cfg in self.symbols:
            symbol_trades = [t for t in self.trades if t.symbol == cfg.symbol]
            per_symbol[cfg.symbol] = {
                'allocation': cfg.allocation,
                'notional': cfg.notional,
                'trades': len(symbol_trades),
                'pnl_usd': sum(t.pnl_usd for t in symbol_trades),
            }
        equity = self.pool.equity
        return {
            'initial_equity': self.initial_equity,
            'final_equity': equity,
            'net_pnl': equity - self.initial_equity,
            'net_pnl_pct': (equity / self.initial_equity - 1) * 100 if self.initial_equity else 0.0,
            'trades': len(self.trades),
            'wins': wins,
            'losses': len(self.trades) - wins,
            'planned_margin': planned_margin,
            'planned_buffer': self.initial_equity - planned_margin,
            'max_used_margin': self.max_used_margin,
            'per_symbol': per_symbol,
            'metrics': compute_metrics(self.trades, self.initial_equity).to_dict(),
        }

    def trades_frame(self) -> pd.DataFrame:
        rows = [
            {
                'symbol': t.symbol,
                'side': t.side.value,
                'entryPrice': t.entry_price,
                'exitPrice': t.exit_price,
                'pnlPct': t.pnl_pct,
                'pnlUsd': t.pnl_usd,
                'reason': t.reason.value,
                'barsHeld': t.bars_held,
            }
            for t in self.trades
        ]
        return pd.DataFrame(rows, columns=CSV_COLUMNS)

    def export_trades_csv(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.trades_frame().to_csv(path, index=False)
        logger.info("Wrote %s trades to %s", len(self.trades), path)
        return path
