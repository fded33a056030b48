"""
Rebalance-rule engine: advisory leverage / health-factor / drawdown checks.

Compares the portfolio against thresholds and emits actions:
    - CLOSE    : a position is insolvent (health factor < 1)
    - REDUCE   : portfolio health factor below the minimum, leverage above the
                 maximum, or drawdown beyond the limit
    - INCREASE : leverage below an optional floor while the book is healthy

Nothing is executed here; callers decide what to do with the actions.
"""
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional, Sequence

from ..backtest.portfolio import Portfolio, Position
from ..config import MAX_DRAWDOWN_PCT, MAX_LEVERAGE, MIN_HEALTH_FACTOR
from ..errors import ConfigurationError
from .metrics import RiskCalculator, position_health_factor

logger = logging.getLogger(__name__)


class RebalanceActionType(Enum):
    """Recommended adjustment for one position."""
    REDUCE = "reduce"
    CLOSE = "close"
    INCREASE = "increase"


_SEVERITY = {RebalanceActionType.CLOSE: 2, RebalanceActionType.REDUCE: 1,
             RebalanceActionType.INCREASE: 0}


@dataclass(frozen=True)
class RebalanceAction:
    position_id: str
    action: RebalanceActionType
    target_amount: float
    reason: str

    def to_dict(self) -> Dict:
        return {
            "position_id": self.position_id,
            "action": self.action.value,
            "target_amount": self.target_amount,
            "reason": self.reason,
        }


@dataclass
class RebalanceThresholds:
    max_leverage: float = MAX_LEVERAGE
    min_health_factor: float = MIN_HEALTH_FACTOR
    max_drawdown: float = MAX_DRAWDOWN_PCT     # percent
    min_leverage: Optional[float] = None

    def __post_init__(self):
        if self.max_leverage < 1:
            raise ConfigurationError(f"max_leverage must be >= 1, got {self.max_leverage}")
        if self.min_health_factor <= 0:
            raise ConfigurationError("min_health_factor must be positive")
        if not 0 < self.max_drawdown <= 100:
            raise ConfigurationError(f"max_drawdown must be a percentage in (0, 100], got {self.max_drawdown}")
        if self.min_leverage is not None and not 0 < self.min_leverage <= self.max_leverage:
            raise ConfigurationError("min_leverage must be in (0, max_leverage]")


class RebalanceRuleEngine:
    """
    Threshold checks over a portfolio producing advisory rebalance actions.
    """

    def __init__(self, risk_calculator: Optional[RiskCalculator] = None):
        self.risk = risk_calculator or RiskCalculator()

    def check_rebalance_needed(
        self,
        portfolio: Portfolio,
        thresholds: Optional[RebalanceThresholds] = None,
        values: Optional[Sequence[float]] = None,
    ) -> List[RebalanceAction]:
        """Evaluate all rules; at most one (the most severe) action per position."""
        th = thresholds or RebalanceThresholds()
        candidates: List[RebalanceAction] = []

        # ── Insolvency ──
        for p in portfolio.positions:
            hf = position_health_factor(p)
            if not hf.is_healthy(1.0):
                candidates.append(RebalanceAction(
                    p.id, RebalanceActionType.CLOSE, 0.0,
                    f"Health factor {hf.value:.2f} below 1.0: position is insolvent",
                ))

        # ── Portfolio health factor ──
        portfolio_hf = self.risk.portfolio_health_factor(portfolio)
        if portfolio_hf < th.min_health_factor:
            for p in portfolio.positions:
                if not p.is_leveraged():
                    continue
                target = self.deleverage(portfolio, p, th.min_health_factor)
                candidates.append(RebalanceAction(
                    p.id, RebalanceActionType.REDUCE, target.amount,
                    f"Portfolio health factor {portfolio_hf:.2f} below minimum {th.min_health_factor:.2f}",
                ))

        # ── Leverage ──
        leverage = self.risk.leverage(portfolio)
        if leverage > th.max_leverage:
            scale = th.max_leverage / leverage
            for p in portfolio.positions:
                if not p.is_leveraged():
                    continue
                candidates.append(RebalanceAction(
                    p.id, RebalanceActionType.REDUCE, p.amount * scale,
                    f"Leverage {leverage:.2f}x exceeds maximum {th.max_leverage:.2f}x",
                ))
        elif (
            th.min_leverage is not None
            and leverage < th.min_leverage
            and portfolio_hf >= th.min_health_factor
        ):
            scale = th.min_leverage / max(leverage, 1e-12)
            for p in portfolio.positions:
                if not p.is_leveraged():
                    continue
                candidates.append(RebalanceAction(
                    p.id, RebalanceActionType.INCREASE, p.amount * scale,
                    f"Leverage {leverage:.2f}x below target floor {th.min_leverage:.2f}x with healthy book",
                ))

        # ── Drawdown ──
        if values is not None and len(values) > 0:
            dd = self.risk.current_drawdown(values)
            if dd > th.max_drawdown:
                scale = th.max_drawdown / dd
                for p in portfolio.positions:
                    candidates.append(RebalanceAction(
                        p.id, RebalanceActionType.REDUCE, p.amount * scale,
                        f"Drawdown {dd:.2f}% exceeds limit {th.max_drawdown:.2f}%",
                    ))

        actions = self._most_severe(candidates)
        for a in actions:
            logger.info("Rebalance advice %s %s: %s", a.action.value, a.position_id, a.reason)
        return actions

    @staticmethod
    def _most_severe(candidates: List[RebalanceAction]) -> List[RebalanceAction]:
        chosen: Dict[str, RebalanceAction] = {}
        for a in candidates:
            cur = chosen.get(a.position_id)
            if cur is None:
                chosen[a.position_id] = a
                continue
            if _SEVERITY[a.action] > _SEVERITY[cur.action] or (
                a.action is cur.action and a.target_amount < cur.target_amount
            ):
                chosen[a.position_id] = a
        return list(chosen.values())

    @staticmethod
    def deleverage(portfolio: Portfolio, position: Position,
                   target_health_factor: float = 1.5) -> Position:
        """Position after selling supplied assets to repay debt until HF == target.

        Returns the input unchanged when it already meets the target.  The
        portfolio is not modified.
        """
        if target_health_factor <= 1:
            raise ConfigurationError("target_health_factor must be above 1.0")
        if not position.is_leveraged():
            return position
        value = position.market_value()
        debt = position.borrowed_amount
        if value / debt >= target_health_factor:
            return position
        repay = (target_health_factor * debt - value) / (target_health_factor - 1.0)
        repay = min(max(repay, 0.0), debt, value)
        new_amount = position.amount - repay / position.unit_price()
        return replace(position, amount=max(new_amount, 0.0), borrowed_amount=debt - repay)
