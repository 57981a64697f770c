import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from strategy.errors import ConfigurationError


logger = logging.getLogger(__name__)

DEFAULT_FAST = 12
DEFAULT_SLOW = 26
DEFAULT_SIGNAL = 9
ALLOCATION_TOLERANCE = 1e-9


class TradeMode(Enum):
    LONG_ONLY = "LONG_ONLY"
    LONG_SHORT = "LONG_SHORT"

    @property
    def allows_short(self) -> bool:
        return self is TradeMode.LONG_SHORT

    @property
    def allows_long(self) -> bool:
        return True


@dataclass(frozen=True)
class SymbolConfig:
    symbol: str
    notional: float
    mode: TradeMode
    allocation: float
    fast: int = DEFAULT_FAST
    slow: int = DEFAULT_SLOW
    signal: int = DEFAULT_SIGNAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'notional': self.notional,
            'mode': self.mode.value,
            'allocation': self.allocation,
            'fast': self.fast,
            'slow': self.slow,
            'signal': self.signal,
        }


def parse_symbol(entry: Mapping[str, Any], defaults: Optional[Mapping[str, Any]] = None) -> SymbolConfig:
    defaults = defaults or {}
    try:
        symbol = str(entry['symbol'])
        notional = float(entry['notional'])
        mode = TradeMode(str(entry.get('mode', TradeMode.LONG_ONLY.value)).upper())
        allocation = float(entry.get('allocation', 0.0))
        fast = int(entry.get('fast') or defaults.get('default_fast', DEFAULT_FAST))
        slow = int(entry.get('slow') or defaults.get('default_slow', DEFAULT_SLOW))
        signal = int(entry.get('signal') or defaults.get('default_signal', DEFAULT_SIGNAL))
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid symbol entry {dict(entry)!r}: {exc}") from exc

    if notional <= 0:
        raise ConfigurationError(f"{symbol}: notional must be positive")
    if not 0.0 <= allocation <= 1.0:
        raise ConfigurationError(f"{symbol}: allocation must be within [0, 1]")
    if min(fast, slow, signal) <= 0:
        raise ConfigurationError(f"{symbol}: oscillator periods must be positive")
    return SymbolConfig(symbol, notional, mode, allocation, fast, slow, signal)


class SymbolRegistry:
    """Ordered, immutable set of tradeable symbols."""

    def __init__(self, symbols: Iterable[SymbolConfig]):
        self._symbols: Dict[str, SymbolConfig] = {}
        for cfg in symbols:
            if cfg.symbol in self._symbols:
                raise ConfigurationError(f"Duplicate symbol {cfg.symbol}")
            self._symbols[cfg.symbol] = cfg
        total = sum(cfg.allocation for cfg in self._symbols.values())
        if total > 1.0 + ALLOCATION_TOLERANCE:
            raise ConfigurationError(f"Symbol allocations sum to {total:.4f}, above 1.0")
        self.total_allocation = total

    @classmethod
    def from_config(cls, entries: Iterable[Mapping[str, Any]], defaults: Optional[Mapping[str, Any]] = None) -> 'SymbolRegistry':
        return cls(parse_symbol(entry, defaults) for entry in entries or [])

    def get(self, symbol: str) -> SymbolConfig:
        cfg = self._symbols.get(symbol)
        if cfg is None:
            raise ConfigurationError(f"Unknown symbol {symbol}")
        return cfg

    def symbols(self) -> List[str]:
        return list(self._symbols)

    def planned_margin(self, leverage: float) -> float:
        return sum(cfg.notional / leverage for cfg in self._symbols.values())

    def __contains__(self, symbol: object) -> bool:
        return symbol in self._symbols

    def __iter__(self):
        return iter(self._symbols.values())

    def __len__(self) -> int:
        return len(self._symbols)


def load_symbols(cfg=None) -> SymbolRegistry:
    if cfg is None:
        from config import config as cfg
    registry = SymbolRegistry.from_config(cfg.get('symbols') or [], cfg.get('trading') or {})
    logger.info(
        "Loaded %s symbols (allocation %.2f)",
        len(registry),
        registry.total_allocation,
    )
    return registry
