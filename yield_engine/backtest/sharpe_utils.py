"""Canonical Sharpe and Sortino ratio calculations.

All risk-adjusted return metrics in the engine use these functions so the
conventions stay consistent.

Convention: population stdev (ddof=0), per-period risk-free rate, ratios
reported per period unless ``periods_per_year`` is given for annualization.
Sortino's downside variance sums squared deviations of the negative returns
only, divided by the full sample size N.
"""
import math
from typing import Optional, Sequence

import numpy as np

from ..config import RISK_FREE_RATE


def compute_sharpe(
    returns: Sequence[float],
    rf_per_period: float = RISK_FREE_RATE,
    periods_per_year: Optional[float] = None,
    ddof: int = 0,
) -> float:
    """Compute Sharpe ratio with consistent conventions.

    Args:
        returns: Array of period returns.
        rf_per_period: Risk-free rate per period (default from config).
        periods_per_year: When given, the ratio is annualized by sqrt(periods).
        ddof: Delta degrees of freedom for the stdev.

    Returns:
        Sharpe ratio; 0.0 for empty or zero-variance input.
    """
    r = np.asarray(returns, dtype=float)
    if len(r) <= ddof:
        return 0.0

    excess = float(np.mean(r)) - rf_per_period
    sigma = float(np.std(r, ddof=ddof))
    if sigma < 1e-15:
        return 0.0

    sharpe = excess / sigma
    if periods_per_year:
        sharpe *= math.sqrt(periods_per_year)
    return float(sharpe)


def compute_sortino(
    returns: Sequence[float],
    rf_per_period: float = RISK_FREE_RATE,
    periods_per_year: Optional[float] = None,
) -> float:
    """Compute Sortino ratio using downside deviation.

    Returns ``inf`` when there are no negative returns and the excess return
    is positive, 0.0 when there are none and it is not.
    """
    r = np.asarray(returns, dtype=float)
    if len(r) == 0:
        return 0.0

    mean = float(np.mean(r))
    excess = mean - rf_per_period
    negatives = r[r < 0]
    if len(negatives) == 0:
        return math.inf if excess > 0 else 0.0

    downside_var = float(np.sum((negatives - mean) ** 2)) / len(r)
    downside_std = math.sqrt(downside_var)
    if downside_std < 1e-15:
        return 0.0

    sortino = excess / downside_std
    if periods_per_year:
        sortino *= math.sqrt(periods_per_year)
    return float(sortino)
