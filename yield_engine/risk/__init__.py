"""
Risk Management Module

Components:
    - RiskCalculator: Sharpe/Sortino, drawdown, VaR, leverage, health factor
    - RebalanceRuleEngine: advisory reduce/close/increase actions
    - RangeOptimizer: cost-aware range-width grid search
"""

from .metrics import RiskCalculator, RiskReport, position_health_factor
from .range_optimizer import RangeEstimate, RangeOptimizer
from .rebalance_rules import (
    RebalanceAction,
    RebalanceActionType,
    RebalanceRuleEngine,
    RebalanceThresholds,
)

__all__ = [
    "RiskCalculator",
    "RiskReport",
    "position_health_factor",
    "RangeOptimizer",
    "RangeEstimate",
    "RebalanceAction",
    "RebalanceActionType",
    "RebalanceRuleEngine",
    "RebalanceThresholds",
]
