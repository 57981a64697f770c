from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

from strategy.models import AccountInfo


logger = logging.getLogger(__name__)

MARGIN_RATIO_WARN = 0.8
MARGIN_RATIO_HEALTHY = 0.7
FREE_MARGIN_WARN = 0.1
UNREALIZED_LOSS_WARN = 0.15


@dataclass
class SizingDecision:
    position_size: float
    margin_required: float
    can_open: bool
    reason: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'position_size': self.position_size,
            'margin_required': self.margin_required,
            'can_open': self.can_open,
            'reason': self.reason,
        }


@dataclass
class AccountHealth:
    is_healthy: bool
    margin_ratio: float
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'is_healthy': self.is_healthy,
            'margin_ratio': self.margin_ratio,
            'warnings': list(self.warnings),
        }


class RiskManager:
    def __init__(self, leverage: float = 5.0, risk_percent: float = 0.02):
        self.leverage = float(leverage)
        self.risk_percent = float(risk_percent)

    @classmethod
    def from_config(cls, trading) -> 'RiskManager':
        return cls(
            leverage=float(trading.get('leverage', 5)),
            risk_percent=float(trading.get('risk_percent', 0.02)),
        )

    def calculate_position_size(self, account: AccountInfo, target_notional: float) -> SizingDecision:
        margin_required = target_notional / self.leverage
        free = account.free_margin

        if margin_required > free:
            return SizingDecision(
                0.0,
                margin_required,
                False,
                f"Insufficient free margin: need {margin_required:.2f}, have {free:.2f}",
            )

        max_risk = free * self.risk_percent * 10
        if margin_required > max_risk:
            return SizingDecision(
                0.0,
                margin_required,
                False,
                f"Position too large for risk budget: margin {margin_required:.2f} > {max_risk:.2f}",
            )

        return SizingDecision(target_notional, margin_required, True)

    def check_account_health(self, account: AccountInfo) -> AccountHealth:
        total = account.total_balance
        warnings: List[str] = []
        margin_ratio = account.used_margin / total if total > 0 else 0.0

        if margin_ratio > MARGIN_RATIO_WARN:
            warnings.append(f"High margin usage: {margin_ratio * 100:.1f}%")
        if total > 0 and account.free_margin < total * FREE_MARGIN_WARN:
            warnings.append(f"Low free margin: {account.free_margin:.2f} USDT")
        if total > 0 and account.unrealized_pnl < -total * UNREALIZED_LOSS_WARN:
            warnings.append(f"Large unrealized loss: {account.unrealized_pnl:.2f} USDT")

        healthy = not warnings and margin_ratio < MARGIN_RATIO_HEALTHY
        if warnings:
            logger.warning("Account health warnings: %s", "; ".join(warnings))
        return AccountHealth(healthy, margin_ratio, warnings)
