import asyncio
import logging
from typing import Dict, Optional


logger = logging.getLogger(__name__)

# float dust tolerated when releasing margin back to the pool
MARGIN_EPSILON = 1e-9


class CapitalPool:
    """Shared cross-margin account: one equity figure, one committed-margin figure.

    ``free_margin`` is always derived, so ``used_margin + free_margin == equity``
    cannot drift. Only the position manager mutates the pool. In live mode the
    orchestrator holds :attr:`lock` around decide-submit-commit for a symbol so
    concurrent symbol tasks see each other's commitments.
    """

    def __init__(self, equity: float = 1000.0):
        if equity < 0:
            raise ValueError("equity must be non-negative")
        self._equity = float(equity)
        self._used = 0.0
        self._lock: Optional[asyncio.Lock] = None

    @property
    def lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @property
    def equity(self) -> float:
        return self._equity

    @property
    def used_margin(self) -> float:
        return self._used

    @property
    def free_margin(self) -> float:
        return self._equity - self._used

    def can_afford(self, margin: float) -> bool:
        return margin > 0 and self.free_margin >= margin

    def reserve(self, margin: float) -> bool:
        if not self.can_afford(margin):
            return False
        self._used += margin
        return True

    def release(self, margin: float, pnl: float = 0.0) -> None:
        self._used -= margin
        if self._used < MARGIN_EPSILON:
            if self._used < -MARGIN_EPSILON:
                logger.warning("Released more margin than committed (%.8f); clamping", self._used)
            self._used = 0.0
        self._equity += pnl

    def sync(self, equity: float, used_margin: float) -> None:
        """Adopt the exchange's view of the account."""
        self._equity = float(equity)
        self._used = max(0.0, float(used_margin))

    def snapshot(self) -> Dict[str, float]:
        return {
            'equity': self._equity,
            'used_margin': self._used,
            'free_margin': self.free_margin,
        }
