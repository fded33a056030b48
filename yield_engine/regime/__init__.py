"""Volatility and regime estimators."""

from .analyst import RegimeAnalysis, RegimeAnalyst, compute_macd, ema_series, hurst_rescaled_range
from .garch import GARCHFitResult, GARCHVolatilityEstimator

__all__ = [
    "GARCHFitResult",
    "GARCHVolatilityEstimator",
    "RegimeAnalysis",
    "RegimeAnalyst",
    "compute_macd",
    "ema_series",
    "hurst_rescaled_range",
]
