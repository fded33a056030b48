"""
Risk Metrics: Sharpe/Sortino, drawdown, VaR, leverage and health factor.

Computed post hoc over the engine's value and return series and the final
portfolio.  Drawdowns and VaR are reported as positive percentages.
"""
import math
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

import numpy as np

from ..backtest.portfolio import Portfolio, Position
from ..backtest.sharpe_utils import compute_sharpe, compute_sortino
from ..config_structured import get_config
from ..value_objects import HealthFactor


@dataclass
class RiskReport:
    """Portfolio risk snapshot."""
    sharpe_ratio: float
    sortino_ratio: float
    max_drawdown: float          # % peak-to-trough, running peak
    current_drawdown: float      # % below the global peak
    var_95: float                # % historical, floor-index percentile
    var_95_parametric: float = 0.0   # % under a normal fit
    health_factor: float = math.inf
    total_exposure: float = 0.0
    leverage: float = 1.0

    details: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "sharpe_ratio": self.sharpe_ratio,
            "sortino_ratio": self.sortino_ratio,
            "max_drawdown": self.max_drawdown,
            "current_drawdown": self.current_drawdown,
            "var_95": self.var_95,
            "var_95_parametric": self.var_95_parametric,
            "health_factor": self.health_factor,
            "total_exposure": self.total_exposure,
            "leverage": self.leverage,
        }


def position_health_factor(position: Position) -> HealthFactor:
    """Collateral value (the supplied assets, marked to market) / debt value."""
    if not position.is_leveraged():
        return HealthFactor.unleveraged()
    value = position.market_value()
    if value <= 0:
        # Fully wiped out collateral against outstanding debt.
        return HealthFactor(1e-12)
    return HealthFactor(value / position.borrowed_amount)


class RiskCalculator:
    """
    Computes risk metrics from value/return series and a portfolio.
    """

    def __init__(self, risk_free_rate: Optional[float] = None,
                 var_confidence: Optional[float] = None):
        cfg = get_config().risk
        self.risk_free_rate = cfg.risk_free_rate if risk_free_rate is None else risk_free_rate
        self.var_confidence = cfg.var_confidence if var_confidence is None else var_confidence

    # ── Return-based ratios ──

    def sharpe_ratio(self, returns: Sequence[float]) -> float:
        return compute_sharpe(returns, self.risk_free_rate)

    def sortino_ratio(self, returns: Sequence[float]) -> float:
        return compute_sortino(returns, self.risk_free_rate)

    # ── Drawdown ──

    @staticmethod
    def max_drawdown(values: Sequence[float]) -> float:
        """Largest peak-to-trough decline, in percent."""
        v = np.asarray(values, dtype=float)
        if len(v) == 0:
            return 0.0
        peaks = np.maximum.accumulate(v)
        with np.errstate(divide="ignore", invalid="ignore"):
            dd = np.where(peaks > 0, (peaks - v) / peaks, 0.0)
        return float(dd.max() * 100.0)

    @staticmethod
    def current_drawdown(values: Sequence[float]) -> float:
        """Decline of the last value from the global peak, in percent."""
        v = np.asarray(values, dtype=float)
        if len(v) == 0:
            return 0.0
        peak = float(v.max())
        if peak <= 0:
            return 0.0
        return (peak - float(v[-1])) / peak * 100.0

    # ── Value at Risk ──

    def value_at_risk(self, returns: Sequence[float], confidence: Optional[float] = None) -> float:
        """Historical VaR: |sorted[floor((1 - c) * n)]| in percent."""
        r = np.sort(np.asarray(returns, dtype=float))
        if len(r) == 0:
            return 0.0
        c = self.var_confidence if confidence is None else confidence
        idx = min(int(math.floor((1.0 - c) * len(r))), len(r) - 1)
        return abs(float(r[idx])) * 100.0

    def parametric_var(self, returns: Sequence[float], confidence: Optional[float] = None) -> float:
        """Normal-distribution VaR in percent (0 when the loss quantile is positive)."""
        r = np.asarray(returns, dtype=float)
        if len(r) < 2:
            return 0.0
        from scipy.stats import norm

        c = self.var_confidence if confidence is None else confidence
        mu, sigma = float(r.mean()), float(r.std(ddof=1))
        if sigma < 1e-12:
            return 0.0
        quantile = mu + sigma * norm.ppf(1.0 - c)
        return max(-quantile, 0.0) * 100.0

    # ── Leverage ──

    @staticmethod
    def health_factor(position: Position) -> HealthFactor:
        return position_health_factor(position)

    @staticmethod
    def portfolio_health_factor(portfolio: Portfolio) -> float:
        leveraged = [p for p in portfolio.positions if p.is_leveraged()]
        if not leveraged:
            return math.inf
        debt = sum(p.borrowed_amount for p in leveraged)
        if debt == 0:
            return math.inf
        return sum(p.market_value() for p in leveraged) / debt

    @staticmethod
    def leverage(portfolio: Portfolio) -> float:
        total = portfolio.total_value()
        return portfolio.gross_exposure() / total if total > 0 else 1.0

    def calculate_risk_metrics(
        self,
        portfolio: Portfolio,
        values: Sequence[float],
        returns: Sequence[float],
    ) -> RiskReport:
        return RiskReport(
            sharpe_ratio=self.sharpe_ratio(returns),
            sortino_ratio=self.sortino_ratio(returns),
            max_drawdown=self.max_drawdown(values),
            current_drawdown=self.current_drawdown(values),
            var_95=self.value_at_risk(returns),
            var_95_parametric=self.parametric_var(returns),
            health_factor=self.portfolio_health_factor(portfolio),
            total_exposure=portfolio.gross_exposure(),
            leverage=self.leverage(portfolio),
        )
