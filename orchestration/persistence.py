import abc
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import asyncpg

from analytics.performance import MetricsSnapshot
from orchestration.trade_ledger import EquityPoint
from strategy.models import ClosedTrade


logger = logging.getLogger(__name__)

SCHEMA = (
    '''CREATE TABLE IF NOT EXISTS trades (
           id TEXT PRIMARY KEY,
           symbol TEXT NOT NULL,
           side TEXT NOT NULL,
           entry_price DOUBLE PRECISION NOT NULL,
           exit_price DOUBLE PRECISION NOT NULL,
           pnl_pct DOUBLE PRECISION NOT NULL,
           pnl_usd DOUBLE PRECISION NOT NULL,
           reason TEXT NOT NULL,
           bars_held INTEGER NOT NULL DEFAULT 0,
           entry_time TIMESTAMPTZ NOT NULL,
           exit_time TIMESTAMPTZ NOT NULL,
           margin DOUBLE PRECISION NOT NULL DEFAULT 0,
           fees DOUBLE PRECISION NOT NULL DEFAULT 0
       )''',
    '''CREATE TABLE IF NOT EXISTS metric_snapshots (
           ts TIMESTAMPTZ PRIMARY KEY,
           total_trades INTEGER NOT NULL,
           winning_trades INTEGER NOT NULL,
           losing_trades INTEGER NOT NULL,
           win_rate DOUBLE PRECISION NOT NULL,
           total_pnl DOUBLE PRECISION NOT NULL,
           max_drawdown DOUBLE PRECISION NOT NULL,
           sharpe_ratio DOUBLE PRECISION NOT NULL,
           average_win DOUBLE PRECISION NOT NULL,
           average_loss DOUBLE PRECISION NOT NULL,
           profit_factor DOUBLE PRECISION NOT NULL,
           max_consecutive_wins INTEGER NOT NULL,
           max_consecutive_losses INTEGER NOT NULL
       )''',
    '''CREATE TABLE IF NOT EXISTS equity_snapshots (
           ts TIMESTAMPTZ PRIMARY KEY,
           equity DOUBLE PRECISION NOT NULL,
           drawdown DOUBLE PRECISION NOT NULL,
           total_pnl DOUBLE PRECISION NOT NULL
       )''',
)

METRIC_FIELDS = (
    'total_trades',
    'winning_trades',
    'losing_trades',
    'win_rate',
    'total_pnl',
    'max_drawdown',
    'sharpe_ratio',
    'average_win',
    'average_loss',
    'profit_factor',
    'max_consecutive_wins',
    'max_consecutive_losses',
)


def second_bucket(ts: float) -> int:
    return int(ts)


def _to_dt(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class TradeStore(abc.ABC):
    """Where closed trades and derived snapshots are kept between runs."""

    durable = False

    @property
    def available(self) -> bool:
        return True

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abc.abstractmethod
    async def insert_trade(self, trade: ClosedTrade) -> None:
        ...

    @abc.abstractmethod
    async def fetch_trades(self, limit: Optional[int] = None) -> List[ClosedTrade]:
        """Closed trades, oldest exit first."""

    @abc.abstractmethod
    async def upsert_metrics_snapshot(self, snapshot: MetricsSnapshot) -> bool:
        """Store a snapshot; returns False when its second bucket was already taken."""

    @abc.abstractmethod
    async def latest_metrics_snapshot(self) -> Optional[MetricsSnapshot]:
        ...

    @abc.abstractmethod
    async def upsert_equity_point(self, point: EquityPoint) -> None:
        ...


class InMemoryTradeStore(TradeStore):
    def __init__(self):
        self.trades: Dict[str, ClosedTrade] = {}
        self.snapshots: Dict[int, MetricsSnapshot] = {}
        self.equity_points: Dict[float, EquityPoint] = {}

    async def insert_trade(self, trade: ClosedTrade) -> None:
        self.trades.setdefault(trade.id, trade)

    async def fetch_trades(self, limit: Optional[int] = None) -> List[ClosedTrade]:
        ordered = sorted(self.trades.values(), key=lambda t: t.exit_time)
        if limit is not None:
            ordered = ordered[-limit:]
        return ordered

    async def upsert_metrics_snapshot(self, snapshot: MetricsSnapshot) -> bool:
        bucket = second_bucket(snapshot.computed_at)
        if bucket in self.snapshots:
            return False
        self.snapshots[bucket] = snapshot
        return True

    async def latest_metrics_snapshot(self) -> Optional[MetricsSnapshot]:
        if not self.snapshots:
            return None
        return self.snapshots[max(self.snapshots)]

    async def upsert_equity_point(self, point: EquityPoint) -> None:
        self.equity_points[point.timestamp] = point


class PostgresTradeStore(TradeStore):
    durable = True

    def __init__(self, db_config: Dict[str, Any]):
        self.db_config = db_config
        self.pool: Optional[asyncpg.Pool] = None

    @property
    def available(self) -> bool:
        return self.pool is not None

    async def initialize(self) -> None:
        cfg = self.db_config
        self.pool = await asyncpg.create_pool(
            host=cfg.get('host', 'localhost'),
            port=int(cfg.get('port', 5432)),
            database=cfg.get('database'),
            user=cfg.get('user'),
            password=cfg.get('password'),
            min_size=int(cfg.get('min_size', 1)),
            max_size=int(cfg.get('max_size', 5)),
        )
        async with self.pool.acquire() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)
        logger.info("Postgres trade store ready (%s)", cfg.get('database'))

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def insert_trade(self, trade: ClosedTrade) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                '''INSERT INTO trades (id, symbol, side, entry_price, exit_price, pnl_pct, pnl_usd,
                                       reason, bars_held, entry_time, exit_time, margin, fees)
                   VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                   ON CONFLICT (id) DO NOTHING''',
                trade.id,
                trade.symbol,
                trade.side.value,
                trade.entry_price,
                trade.exit_price,
                trade.pnl_pct,
                trade.pnl_usd,
                trade.reason.value,
                trade.bars_held,
                _to_dt(trade.entry_time),
                _to_dt(trade.exit_time),
                trade.margin,
                trade.fees,
            )

    async def fetch_trades(self, limit: Optional[int] = None) -> List[ClosedTrade]:
        query = '''SELECT * FROM (
                       SELECT * FROM trades ORDER BY exit_time DESC LIMIT $1
                   ) recent ORDER BY exit_time ASC'''
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, limit)
        trades = []
        for row in rows:
            data = dict(row)
            data['entry_time'] = data['entry_time'].timestamp()
            data['exit_time'] = data['exit_time'].timestamp()
            trades.append(ClosedTrade.from_dict(data))
        return trades

    async def upsert_metrics_snapshot(self, snapshot: MetricsSnapshot) -> bool:
        values = [getattr(snapshot, name) for name in METRIC_FIELDS]
        placeholders = ', '.join(f'${i}' for i in range(2, len(METRIC_FIELDS) + 2))
        async with self.pool.acquire() as conn:
            status = await conn.execute(
                f'''INSERT INTO metric_snapshots (ts, {', '.join(METRIC_FIELDS)})
                    VALUES ($1, {placeholders})
                    ON CONFLICT (ts) DO NOTHING''',
                _to_dt(second_bucket(snapshot.computed_at)),
                *values,
            )
        return status.endswith(' 1')

    async def latest_metrics_snapshot(self) -> Optional[MetricsSnapshot]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow('SELECT * FROM metric_snapshots ORDER BY ts DESC LIMIT 1')
        if row is None:
            return None
        data = dict(row)
        computed_at = data.pop('ts').timestamp()
        return MetricsSnapshot(computed_at=computed_at, **data)

    async def upsert_equity_point(self, point: EquityPoint) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                '''INSERT INTO equity_snapshots (ts, equity, drawdown, total_pnl)
                   VALUES ($1, $2, $3, $4)
                   ON CONFLICT (ts) DO UPDATE SET
                       equity = EXCLUDED.equity,
                       drawdown = EXCLUDED.drawdown,
                       total_pnl = EXCLUDED.total_pnl''',
                _to_dt(point.timestamp),
                point.equity,
                point.drawdown,
                point.total_pnl,
            )


async def create_trade_store(db_config=None) -> TradeStore:
    """Durable store when the database is enabled and reachable, else in-memory."""
    db_config = db_config or {}
    if db_config.get('enabled'):
        store = PostgresTradeStore(db_config)
        try:
            await store.initialize()
            return store
        except Exception as exc:
            logger.warning("Postgres unavailable, falling back to in-memory store: %s", exc)
    else:
        logger.info("Database disabled; using in-memory trade store")
    return InMemoryTradeStore()
