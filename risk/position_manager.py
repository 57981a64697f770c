import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from config.symbols import SymbolConfig
from risk.capital_pool import CapitalPool
from strategy.cross import CrossSignal
from strategy.models import ClosedTrade, CloseReason, Position, Side


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeRates:
    maker: float = 0.0002
    taker: float = 0.0006

    @property
    def round_trip(self) -> float:
        return self.maker + self.taker


class DecisionKind(Enum):
    OPEN = "open"
    CLOSE = "close"


@dataclass(frozen=True)
class Decision:
    kind: DecisionKind
    symbol: str
    side: Side
    price: float
    reason: Optional[CloseReason] = None

    @property
    def order_side(self) -> str:
        if self.kind is DecisionKind.OPEN:
            return self.side.entry_order_side
        return self.side.exit_order_side


@dataclass
class StepOutcome:
    closed: List[ClosedTrade] = field(default_factory=list)
    opened: Optional[Position] = None
    stopped: bool = False
    denied: bool = False


def entry_fill_price(side: Side, price: float, slippage: float) -> float:
    return price * (1.0 + side.sign * slippage)


def flip_exit_price(side: Side, price: float, slippage: float) -> float:
    # signal-driven exits: LONG closes at price*(1+s), SHORT at price*(1-s)
    return price * (1.0 + side.sign * slippage)


def adverse_exit_price(side: Side, price: float, slippage: float) -> float:
    return price * (1.0 - side.sign * slippage)


def price_move(side: Side, entry_price: float, exit_price: float) -> float:
    if entry_price <= 0:
        return 0.0
    return side.sign * (exit_price - entry_price) / entry_price


class PositionManager:
    """Per-symbol FLAT/LONG/SHORT state machine over a shared :class:`CapitalPool`."""

    def __init__(
        self,
        pool: CapitalPool,
        leverage: float = 5.0,
        stop_loss_pct: float = 0.22,
        fees: Optional[FeeRates] = None,
        slippage: float = 0.0002,
    ):
        if leverage <= 0:
            raise ValueError("leverage must be positive")
        self.pool = pool
        self.leverage = float(leverage)
        self.stop_loss_pct = float(stop_loss_pct)
        self.fees = fees or FeeRates()
        self.slippage = float(slippage)
        self._positions: Dict[str, Position] = {}

    @classmethod
    def from_config(cls, pool: CapitalPool, trading) -> 'PositionManager':
        return cls(
            pool,
            leverage=float(trading.get('leverage', 5)),
            stop_loss_pct=float(trading.get('stop_loss_pct', 0.22)),
            fees=FeeRates(
                maker=float(trading.get('maker_fee', 0.0002)),
                taker=float(trading.get('taker_fee', 0.0006)),
            ),
            slippage=float(trading.get('slippage', 0.0002)),
        )

    @property
    def positions(self) -> Mapping[str, Position]:
        return MappingProxyType(self._positions)

    def position(self, symbol: str) -> Optional[Position]:
        return self._positions.get(symbol)

    def has_position(self, symbol: str) -> bool:
        return symbol in self._positions

    def required_margin(self, cfg: SymbolConfig) -> float:
        return cfg.notional / self.leverage

    def check_stop_loss(self, symbol: str, price: float) -> bool:
        pos = self._positions.get(symbol)
        if pos is None:
            return False
        if pos.side is Side.LONG:
            return price <= pos.entry_price * (1.0 - pos.stop_loss_pct)
        return price >= pos.entry_price * (1.0 + pos.stop_loss_pct)

    def plan(self, cfg: SymbolConfig, price: float, cross: CrossSignal) -> List[Decision]:
        """Ordered actions for one bar, assuming every close goes through.

        Opens are not checked against the pool here; :meth:`open_position`
        applies the budget check when the decision is executed.
        """
        symbol = cfg.symbol
        pos = self._positions.get(symbol)
        if pos is not None and self.check_stop_loss(symbol, price):
            return [Decision(
                DecisionKind.CLOSE,
                symbol,
                pos.side,
                adverse_exit_price(pos.side, price, self.slippage),
                CloseReason.STOP_LOSS,
            )]

        decisions: List[Decision] = []
        if cross is CrossSignal.BULL:
            if pos is not None and pos.side is Side.SHORT:
                decisions.append(Decision(
                    DecisionKind.CLOSE,
                    symbol,
                    Side.SHORT,
                    flip_exit_price(Side.SHORT, price, self.slippage),
                    CloseReason.SIGNAL_FLIP,
                ))
                pos = None
            if pos is None and cfg.mode.allows_long:
                decisions.append(Decision(
                    DecisionKind.OPEN,
                    symbol,
                    Side.LONG,
                    entry_fill_price(Side.LONG, price, self.slippage),
                ))
        elif cross is CrossSignal.BEAR:
            if pos is not None and pos.side is Side.LONG:
                decisions.append(Decision(
                    DecisionKind.CLOSE,
                    symbol,
                    Side.LONG,
                    flip_exit_price(Side.LONG, price, self.slippage),
                    CloseReason.SIGNAL_FLIP,
                ))
                pos = None
            if pos is None and cfg.mode.allows_short:
                decisions.append(Decision(
                    DecisionKind.OPEN,
                    symbol,
                    Side.SHORT,
                    entry_fill_price(Side.SHORT, price, self.slippage),
                ))
        return decisions

    def open_position(
        self,
        cfg: SymbolConfig,
        side: Side,
        fill_price: float,
        entry_time: Optional[float] = None,
        entry_index: int = 0,
    ) -> Optional[Position]:
        if cfg.symbol in self._positions:
            logger.warning("%s already has an open position; ignoring open", cfg.symbol)
            return None
        if fill_price <= 0:
            logger.warning("%s: refusing to open at non-positive price %s", cfg.symbol, fill_price)
            return None
        margin = self.required_margin(cfg)
        if not self.pool.reserve(margin):
            logger.info(
                "%s: insufficient margin for %s (need %.2f, free %.2f)",
                cfg.symbol,
                side.value,
                margin,
                self.pool.free_margin,
            )
            return None
        notional = margin * self.leverage
        pos = Position(
            symbol=cfg.symbol,
            side=side,
            entry_price=fill_price,
            qty=notional / fill_price,
            notional=notional,
            margin=margin,
            stop_loss_pct=self.stop_loss_pct,
            entry_time=entry_time if entry_time is not None else time.time(),
            entry_index=entry_index,
        )
        self._positions[cfg.symbol] = pos
        logger.info(
            "Opened %s %s @ %.6f margin=%.2f notional=%.2f (used %.2f / equity %.2f)",
            side.value,
            cfg.symbol,
            fill_price,
            margin,
            notional,
            self.pool.used_margin,
            self.pool.equity,
        )
        return pos

    def close_position(
        self,
        symbol: str,
        exit_price: float,
        reason: CloseReason,
        exit_time: Optional[float] = None,
        exit_index: Optional[int] = None,
        fees: Optional[FeeRates] = None,
    ) -> Optional[ClosedTrade]:
        pos = self._positions.pop(symbol, None)
        if pos is None:
            return None
        rates = fees or self.fees
        move = price_move(pos.side, pos.entry_price, exit_price)
        gross = pos.margin * move * self.leverage
        fee_usd = pos.notional * rates.round_trip
        net = gross - fee_usd
        self.pool.release(pos.margin, net)
        bars_held = exit_index - pos.entry_index if exit_index is not None else 0
        trade = ClosedTrade(
            symbol=symbol,
            side=pos.side,
            entry_price=pos.entry_price,
            exit_price=exit_price,
            pnl_pct=net / pos.margin * 100.0,
            pnl_usd=net,
            reason=reason,
            bars_held=bars_held,
            entry_time=pos.entry_time,
            exit_time=exit_time if exit_time is not None else time.time(),
            margin=pos.margin,
            fees=fee_usd,
        )
        logger.info(
            "Closed %s %s @ %.6f reason=%s pnl=%.2f (%.2f%%) equity=%.2f",
            pos.side.value,
            symbol,
            exit_price,
            reason.value,
            net,
            trade.pnl_pct,
            self.pool.equity,
        )
        return trade

    def apply(
        self,
        cfg: SymbolConfig,
        decision: Decision,
        timestamp: Optional[float] = None,
        index: int = 0,
        fees: Optional[FeeRates] = None,
    ):
        if decision.kind is DecisionKind.CLOSE:
            return self.close_position(
                decision.symbol,
                decision.price,
                decision.reason or CloseReason.SIGNAL_FLIP,
                exit_time=timestamp,
                exit_index=index,
                fees=fees,
            )
        return self.open_position(cfg, decision.side, decision.price, entry_time=timestamp, entry_index=index)

    def step(
        self,
        cfg: SymbolConfig,
        price: float,
        cross: CrossSignal,
        index: int = 0,
        timestamp: Optional[float] = None,
    ) -> StepOutcome:
        outcome = StepOutcome()
        for decision in self.plan(cfg, price, cross):
            result = self.apply(cfg, decision, timestamp=timestamp, index=index)
            if decision.kind is DecisionKind.CLOSE:
                if result is not None:
                    outcome.closed.append(result)
                    outcome.stopped = decision.reason is CloseReason.STOP_LOSS
            elif result is None:
                outcome.denied = True
            else:
                outcome.opened = result
        return outcome

    def force_close_all(
        self,
        prices: Mapping[str, float],
        index: Optional[int] = None,
        timestamp: Optional[float] = None,
    ) -> List[ClosedTrade]:
        trades: List[ClosedTrade] = []
        for symbol in list(self._positions):
            price = prices.get(symbol)
            if price is None:
                logger.warning("No closing price for %s; position left open", symbol)
                continue
            pos = self._positions[symbol]
            trade = self.close_position(
                symbol,
                adverse_exit_price(pos.side, price, self.slippage),
                CloseReason.FORCE_CLOSE_END,
                exit_time=timestamp,
                exit_index=index,
            )
            if trade is not None:
                trades.append(trade)
        return trades

    def adopt(self, position: Position) -> None:
        """Track a position opened outside this manager (exchange restart)."""
        self._positions[position.symbol] = position

    def forget(self, symbol: str) -> Optional[Position]:
        return self._positions.pop(symbol, None)
