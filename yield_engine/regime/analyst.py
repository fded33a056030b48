"""
Statistical regime analysis over a rolling candle window.

Computes, from the log returns of the close series:
    - Hurst exponent (rescaled range, single window)
    - simple annualized volatility (population stdev)
    - GARCH(1,1) volatility, falling back to the simple estimate when the
      window is too short for a fit
    - drift velocity: mean absolute log return, annualized and capped
    - MACD(12, 26, 9), neutral when fewer than 26 closes are available

Annualization uses the candles' native spacing (median timestamp delta).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from ..config_structured import get_config
from ..data.types import Candle
from ..errors import InsufficientDataError
from ..indicators.volatility import SECONDS_PER_YEAR
from ..value_objects import MACD, DriftVelocity, HurstExponent, Volatility
from .garch import GARCHVolatilityEstimator

logger = logging.getLogger(__name__)


@dataclass
class RegimeAnalysis:
    """Output of :meth:`RegimeAnalyst.analyze`."""
    hurst: HurstExponent
    volatility: Volatility           # simple stdev estimate
    garch_volatility: Volatility     # GARCH, or the simple estimate on fallback
    drift: DriftVelocity
    macd: MACD
    periods_per_year: float
    garch_fallback: bool = False
    n_candles: int = 0

    @property
    def is_trending(self) -> bool:
        return self.hurst.is_trending

    @property
    def is_mean_reverting(self) -> bool:
        return self.hurst.is_mean_reverting


def log_returns(prices: Sequence[float]) -> np.ndarray:
    p = np.asarray(prices, dtype=float)
    if len(p) < 2:
        return np.empty(0)
    return np.diff(np.log(p))


def hurst_rescaled_range(returns: np.ndarray) -> float:
    """H = log(R/S) / log(N) over a single window, clipped to [0, 1].

    A zero-variance window carries no persistence information and maps to 0.5.
    """
    n = len(returns)
    if n < 2:
        return 0.5
    deviations = returns - returns.mean()
    cumulative = np.cumsum(deviations)
    r = cumulative.max() - cumulative.min()
    s = returns.std()
    if s == 0 or r == 0:
        return 0.5
    h = np.log(r / s) / np.log(n)
    return float(np.clip(h, 0.0, 1.0))


def ema_series(values: np.ndarray, period: int) -> np.ndarray:
    """Running EMA seeded with the SMA of the first ``period`` values.

    Entries before index ``period - 1`` hold the SMA of the values seen so far.
    """
    values = np.asarray(values, dtype=float)
    n = len(values)
    out = np.empty(n)
    if n == 0:
        return out
    head = min(period, n)
    out[:head] = np.cumsum(values[:head]) / np.arange(1, head + 1)
    k = 2.0 / (period + 1.0)
    for i in range(period, n):
        out[i] = (values[i] - out[i - 1]) * k + out[i - 1]
    return out


def compute_macd(prices: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9) -> MACD:
    """MACD line, signal line (EMA of the historical MACD line) and histogram."""
    p = np.asarray(prices, dtype=float)
    if len(p) < slow:
        return MACD.neutral()
    macd_hist = ema_series(p, fast) - ema_series(p, slow)
    macd_values = macd_hist[slow - 1:]
    signal_line = float(ema_series(macd_values, signal)[-1])
    macd_line = float(macd_hist[-1])
    return MACD(macd_line, signal_line, macd_line - signal_line)


def infer_candle_periods_per_year(candles: Sequence[Candle], default: float) -> float:
    if len(candles) < 2:
        return default
    stamps = np.array([c.timestamp.timestamp() for c in candles], dtype=float)
    spacing = float(np.median(np.diff(stamps)))
    if spacing <= 0:
        return default
    return SECONDS_PER_YEAR / spacing


class RegimeAnalyst:
    """Trend persistence, volatility, drift and momentum for a candle window.

    Parameters
    ----------
    volatility_estimator : GARCHVolatilityEstimator, optional
        Shared estimator; a default one is built from config when omitted.
    min_candles : int, optional
        Minimum window length; shorter windows raise ``InsufficientDataError``.
    periods_per_year : float, optional
        Fixed annualization factor.  When omitted it is inferred per call from
        the candle spacing.
    """

    def __init__(
        self,
        volatility_estimator: Optional[GARCHVolatilityEstimator] = None,
        min_candles: Optional[int] = None,
        periods_per_year: Optional[float] = None,
    ):
        cfg = get_config().estimators
        self.cfg = cfg
        self.volatility_estimator = volatility_estimator
        self.min_candles = int(min_candles) if min_candles is not None else cfg.analyst_min_candles
        self.periods_per_year = periods_per_year

    def analyze(self, candles: Sequence[Candle]) -> RegimeAnalysis:
        """Analyze candles sorted oldest-first."""
        if len(candles) < self.min_candles:
            raise InsufficientDataError(
                f"Regime analysis needs at least {self.min_candles} candles, got {len(candles)}",
                required=self.min_candles,
                received=len(candles),
            )

        ppy = self.periods_per_year or infer_candle_periods_per_year(
            candles, self.cfg.periods_per_year
        )
        closes = np.array([c.close for c in candles], dtype=float)
        returns = log_returns(closes)

        hurst = hurst_rescaled_range(returns)
        simple_vol = float(returns.std() * np.sqrt(ppy)) if len(returns) else 0.0

        estimator = self.volatility_estimator or GARCHVolatilityEstimator(periods_per_year=ppy)
        fallback = False
        try:
            garch_vol = estimator.estimate(returns)
        except InsufficientDataError as e:
            logger.debug("GARCH fallback to simple volatility: %s", e)
            garch_vol = Volatility(simple_vol)
            fallback = True

        drift = self.drift(returns, ppy)
        macd = compute_macd(closes, self.cfg.macd_fast, self.cfg.macd_slow, self.cfg.macd_signal)

        return RegimeAnalysis(
            hurst=HurstExponent(hurst),
            volatility=Volatility(simple_vol),
            garch_volatility=garch_vol,
            drift=DriftVelocity(drift),
            macd=macd,
            periods_per_year=ppy,
            garch_fallback=fallback,
            n_candles=len(candles),
        )

    def drift(self, returns: np.ndarray, periods_per_year: float) -> float:
        """Mean absolute log return, annualized, hard-capped at ``drift_cap``."""
        if len(returns) == 0:
            return 0.0
        annualized = float(np.mean(np.abs(returns)) * periods_per_year)
        return min(annualized, self.cfg.drift_cap)
