"""
GARCH(1,1) volatility estimator fitted by grid-search maximum likelihood.

Model
-----
    sigma^2_t = omega + alpha * r^2_{t-1} + beta * sigma^2_{t-1}

with the variance-targeting constraint ``omega = var(r) * (1 - alpha - beta)``
so the long-run variance always matches the sample.  Each (alpha, beta) pair
on a fixed grid with ``alpha + beta < 1`` is scored by its Gaussian
log-likelihood and the best pair wins.  A grid is used instead of a numerical
optimizer because the sample windows are short and the likelihood surface is
flat; the grid gives deterministic, reproducible fits.

The conditional variance recursion is a first-order IIR filter, evaluated
with ``scipy.signal.lfilter``.

The one-step-ahead variance forecast is annualized with ``periods_per_year``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np
from scipy.signal import lfilter

from ..config_structured import get_config
from ..errors import InsufficientDataError
from ..value_objects import Volatility

logger = logging.getLogger(__name__)

# Starting candidate checked before the grid
_INITIAL_ALPHA = 0.10
_INITIAL_BETA = 0.85
_INITIAL_OMEGA_SCALE = 0.05


@dataclass
class GARCHFitResult:
    """Fitted GARCH(1,1) parameters.

    Attributes
    ----------
    omega, alpha, beta : float
        Model parameters.
    log_likelihood : float
        Gaussian log-likelihood at the fitted parameters (``-inf`` if degenerate).
    sample_variance : float
        Population variance of the input returns.
    conditional_variance : np.ndarray
        In-sample sigma^2_t path, same length as the returns.
    last_return : float
        Final return in the sample, used by the one-step forecast.
    """

    omega: float
    alpha: float
    beta: float
    log_likelihood: float
    sample_variance: float
    conditional_variance: np.ndarray = field(repr=False, default=None)
    last_return: float = 0.0

    @property
    def persistence(self) -> float:
        return self.alpha + self.beta

    def forecast_variance(self) -> float:
        """One-step-ahead variance forecast (per period)."""
        if self.conditional_variance is None or len(self.conditional_variance) == 0:
            return self.sample_variance
        last_var = float(self.conditional_variance[-1])
        return self.omega + self.alpha * self.last_return ** 2 + self.beta * last_var


def conditional_variance(
    returns: np.ndarray, omega: float, alpha: float, beta: float, initial_variance: float,
) -> np.ndarray:
    """sigma^2 path seeded with ``initial_variance`` at t=0."""
    n = len(returns)
    out = np.empty(n)
    if n == 0:
        return out
    out[0] = initial_variance
    if n > 1:
        x = omega + alpha * returns[:-1] ** 2
        y, _ = lfilter([1.0], [1.0, -beta], x, zi=[beta * initial_variance])
        out[1:] = y
    return out


def log_likelihood(returns: np.ndarray, sigma2: np.ndarray) -> float:
    """Gaussian log-likelihood up to a constant; ``-inf`` on non-positive variance."""
    if np.any(sigma2 <= 0) or not np.all(np.isfinite(sigma2)):
        return -np.inf
    return float(-0.5 * np.sum(np.log(sigma2) + returns ** 2 / sigma2))


class GARCHVolatilityEstimator:
    """Annualized volatility from a GARCH(1,1) fit.

    Parameters
    ----------
    alphas, betas : sequence of float, optional
        Parameter grid.  Defaults come from ``EstimatorConfig``.
    min_samples : int, optional
        Minimum number of returns; fewer raises ``InsufficientDataError``.
    periods_per_year : float, optional
        Annualization factor for the per-period forecast.
    """

    def __init__(
        self,
        alphas: Optional[Sequence[float]] = None,
        betas: Optional[Sequence[float]] = None,
        min_samples: Optional[int] = None,
        periods_per_year: Optional[float] = None,
    ):
        cfg = get_config().estimators
        self.alphas = tuple(alphas) if alphas is not None else cfg.garch_alphas
        self.betas = tuple(betas) if betas is not None else cfg.garch_betas
        self.min_samples = int(min_samples) if min_samples is not None else cfg.garch_min_samples
        self.periods_per_year = float(periods_per_year or cfg.periods_per_year)

    def fit(self, returns: Sequence[float]) -> GARCHFitResult:
        """Grid-search MLE fit.

        Raises
        ------
        InsufficientDataError
            If fewer than ``min_samples`` finite returns are supplied.
        """
        r = np.asarray(returns, dtype=float)
        r = r[np.isfinite(r)]
        if len(r) < self.min_samples:
            raise InsufficientDataError(
                f"GARCH needs at least {self.min_samples} returns, got {len(r)}",
                required=self.min_samples,
                received=len(r),
            )

        sample_var = float(np.var(r))
        if sample_var <= 0:
            # A constant series has no variance to cluster.
            return GARCHFitResult(
                omega=0.0, alpha=0.0, beta=0.0, log_likelihood=-np.inf,
                sample_variance=0.0, conditional_variance=np.zeros(len(r)),
                last_return=float(r[-1]),
            )

        best_alpha, best_beta = _INITIAL_ALPHA, _INITIAL_BETA
        best_omega = sample_var * _INITIAL_OMEGA_SCALE
        best_ll = log_likelihood(
            r, conditional_variance(r, best_omega, best_alpha, best_beta, sample_var)
        )

        for alpha in self.alphas:
            for beta in self.betas:
                if alpha + beta >= 1.0:
                    continue
                omega = sample_var * (1.0 - alpha - beta)
                ll = log_likelihood(r, conditional_variance(r, omega, alpha, beta, sample_var))
                if ll > best_ll:
                    best_alpha, best_beta, best_omega, best_ll = alpha, beta, omega, ll

        sigma2 = conditional_variance(r, best_omega, best_alpha, best_beta, sample_var)
        logger.debug(
            "GARCH fit: omega=%.3e alpha=%.2f beta=%.2f ll=%.2f (n=%d)",
            best_omega, best_alpha, best_beta, best_ll, len(r),
        )
        return GARCHFitResult(
            omega=best_omega,
            alpha=best_alpha,
            beta=best_beta,
            log_likelihood=best_ll,
            sample_variance=sample_var,
            conditional_variance=sigma2,
            last_return=float(r[-1]),
        )

    def estimate(self, returns: Sequence[float]) -> Volatility:
        """Annualized one-step-ahead volatility."""
        fit = self.fit(returns)
        variance = max(fit.forecast_variance(), 0.0)
        return Volatility(float(np.sqrt(variance * self.periods_per_year)))
