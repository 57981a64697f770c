import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence


class Side(Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is Side.LONG else -1

    @property
    def entry_order_side(self) -> str:
        return "buy" if self is Side.LONG else "sell"

    @property
    def exit_order_side(self) -> str:
        return "sell" if self is Side.LONG else "buy"


class CloseReason(Enum):
    STOP_LOSS = "STOP_LOSS"
    SIGNAL_FLIP = "SIGNAL_FLIP"
    FORCE_CLOSE_END = "FORCE_CLOSE_END"
    ERROR = "ERROR"


class RunAction(Enum):
    OPENED = "POSITION_OPENED"
    CLOSED = "POSITION_CLOSED"
    NO_ACTION = "NO_ACTION"
    ERROR = "ERROR"


def _coerce_float(value: Any) -> float:
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


@dataclass(frozen=True)
class Candle:
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_ohlcv(cls, row: Sequence[Any]) -> 'Candle':
        padded = list(row) + [None] * (6 - len(row))
        return cls(
            time=int(_coerce_float(padded[0])),
            open=_coerce_float(padded[1]),
            high=_coerce_float(padded[2]),
            low=_coerce_float(padded[3]),
            close=_coerce_float(padded[4]),
            volume=_coerce_float(padded[5]),
        )


def closes(candles: Sequence[Candle]) -> List[float]:
    return [c.close for c in candles]


@dataclass
class Position:
    symbol: str
    side: Side
    entry_price: float
    qty: float
    notional: float
    margin: float
    stop_loss_pct: float
    entry_time: float = field(default_factory=time.time)
    entry_index: int = 0

    @property
    def stop_price(self) -> float:
        return self.entry_price * (1.0 - self.side.sign * self.stop_loss_pct)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'side': self.side.value,
            'entry_price': self.entry_price,
            'qty': self.qty,
            'notional': self.notional,
            'margin': self.margin,
            'stop_loss_pct': self.stop_loss_pct,
            'stop_price': self.stop_price,
            'entry_time': self.entry_time,
            'entry_index': self.entry_index,
        }


@dataclass(frozen=True)
class ClosedTrade:
    symbol: str
    side: Side
    entry_price: float
    exit_price: float
    pnl_pct: float
    pnl_usd: float
    reason: CloseReason
    bars_held: int = 0
    entry_time: float = 0.0
    exit_time: float = field(default_factory=time.time)
    margin: float = 0.0
    fees: float = 0.0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'side': self.side.value,
            'entry_price': self.entry_price,
            'exit_price': self.exit_price,
            'pnl_pct': self.pnl_pct,
            'pnl_usd': self.pnl_usd,
            'reason': self.reason.value,
            'bars_held': self.bars_held,
            'entry_time': self.entry_time,
            'exit_time': self.exit_time,
            'margin': self.margin,
            'fees': self.fees,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClosedTrade':
        return cls(
            symbol=data['symbol'],
            side=Side(data['side']),
            entry_price=float(data['entry_price']),
            exit_price=float(data['exit_price']),
            pnl_pct=float(data['pnl_pct']),
            pnl_usd=float(data['pnl_usd']),
            reason=CloseReason(data['reason']),
            bars_held=int(data.get('bars_held') or 0),
            entry_time=float(data.get('entry_time') or 0.0),
            exit_time=float(data.get('exit_time') or 0.0),
            margin=float(data.get('margin') or 0.0),
            fees=float(data.get('fees') or 0.0),
            id=str(data.get('id') or uuid.uuid4().hex),
        )


@dataclass
class AccountInfo:
    total_balance: float
    available_balance: float
    used_margin: float
    unrealized_pnl: float = 0.0

    @property
    def free_margin(self) -> float:
        return self.available_balance

    def to_dict(self) -> Dict[str, float]:
        return {
            'total_balance': self.total_balance,
            'available_balance': self.available_balance,
            'used_margin': self.used_margin,
            'free_margin': self.free_margin,
            'unrealized_pnl': self.unrealized_pnl,
        }


@dataclass
class ExchangePosition:
    """Open position as reported by the exchange."""

    symbol: str
    side: Side
    contracts: float
    entry_price: float
    margin: float = 0.0
    notional: float = 0.0
    unrealized_pnl: float = 0.0
    # opening time in epoch seconds, when the venue reports one
    timestamp: Optional[float] = None


@dataclass
class RunResult:
    symbol: str
    action: RunAction
    side: Optional[Side] = None
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    pnl_pct: Optional[float] = None
    pnl_usd: Optional[float] = None
    reason: Optional[CloseReason] = None
    success: bool = True
    message: str = ""
    trade: Optional[ClosedTrade] = None
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def error(cls, symbol: str, message: str) -> 'RunResult':
        return cls(
            symbol=symbol,
            action=RunAction.ERROR,
            reason=CloseReason.ERROR,
            success=False,
            message=message,
        )

    @classmethod
    def from_trade(cls, trade: ClosedTrade) -> 'RunResult':
        return cls(
            symbol=trade.symbol,
            action=RunAction.CLOSED,
            side=trade.side,
            entry_price=trade.entry_price,
            exit_price=trade.exit_price,
            pnl_pct=trade.pnl_pct,
            pnl_usd=trade.pnl_usd,
            reason=trade.reason,
            trade=trade,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'action': self.action.value,
            'side': self.side.value if self.side else None,
            'entry_price': self.entry_price,
            'exit_price': self.exit_price,
            'pnl_pct': self.pnl_pct,
            'pnl_usd': self.pnl_usd,
            'reason': self.reason.value if self.reason else None,
            'success': self.success,
            'message': self.message,
            'timestamp': self.timestamp,
        }
