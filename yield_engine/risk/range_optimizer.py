"""
Range-width optimizer for concentrated liquidity positions.

Model
-----
Efficiency (share of time price stays inside the range) is a piecewise-linear
function of ``width / volatility``:

    ratio >= 2.0        -> 0.95
    1.0 <= ratio < 2.0  -> 0.75 .. 0.95
    0.5 <= ratio < 1.0  -> 0.40 .. 0.75
    ratio < 0.5         -> 0.10 .. 0.40

clamped to [efficiency_floor, efficiency_cap].

Fee density relative to the reference width:  ``(reference_width / width) ** exponent``.

Rebalances per year (quadratic diffusion + linear drift):

    effective = width * trigger_fraction
    freq = max(1, (vol / effective)^2 * scalar + |drift| / effective)

Cost drag = cost_per_rebalance * freq / position_value * 100 (APR points).

Both searches walk a fixed grid of ``grid_steps`` intervals.  The efficiency
curve is not smooth, so no gradient method is used.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from ..backtest.costs import RebalanceCostModel
from ..config_structured import RangeOptimizerConfig, get_config
from ..errors import ComputationError, ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class RangeEstimate:
    """Yield estimate for one range width.  APR figures are percentages."""
    optimal_range_width: float
    expected_apy: float
    rebalance_frequency: float          # rebalances per year
    fee_capture_efficiency: float       # % of time in range
    effective_fee_apr: float
    net_apy: Optional[float] = None
    annual_cost_drag: Optional[float] = None


class RangeOptimizer:
    """Cost-aware grid search over range widths.

    Parameters
    ----------
    config : RangeOptimizerConfig, optional
        Calibration constants; defaults to the global config.
    """

    def __init__(self, config: Optional[RangeOptimizerConfig] = None):
        self.config = config or get_config().range_optimizer

    # ── Model components ──────────────────────────────────────────────

    def efficiency_ratio(self, width: float, volatility: float) -> float:
        cfg = self.config
        ratio = math.inf if volatility <= 0 else width / volatility
        if ratio >= 2.0:
            eff = 0.95
        elif ratio >= 1.0:
            eff = 0.75 + (ratio - 1.0) * 0.20
        elif ratio >= 0.5:
            eff = 0.40 + (ratio - 0.5) * 0.70
        else:
            eff = 0.10 + ratio * 0.60
        return min(max(eff, cfg.efficiency_floor), cfg.efficiency_cap)

    def fee_density_multiplier(self, width: float) -> float:
        cfg = self.config
        return (cfg.reference_width / width) ** cfg.fee_density_exponent

    def rebalance_frequency(self, width: float, volatility: float,
                            trend_velocity: float = 0.0) -> float:
        cfg = self.config
        effective = width * cfg.rebalance_trigger_fraction
        diffusion = (volatility / effective) ** 2 * cfg.rebalance_frequency_scalar
        drift = abs(trend_velocity) / effective
        return max(1.0, diffusion + drift)

    # ── Public API ────────────────────────────────────────────────────

    def estimate_apy_for_range(
        self,
        width: float,
        fee_apr: float,
        incentive_apr: float,
        funding_apr: float,
        volatility: Optional[float] = None,
        cost_model: Optional[RebalanceCostModel] = None,
        trend_velocity: float = 0.0,
    ) -> RangeEstimate:
        """Expected (and, with a cost model and position value, net) APY for a width."""
        if volatility is None:
            volatility = self.config.default_volatility
        if not math.isfinite(width) or width <= 0:
            raise ConfigurationError(f"Range width must be positive, got {width}")
        if not math.isfinite(volatility) or volatility < 0:
            raise ConfigurationError(f"Volatility must be non-negative, got {volatility}")

        efficiency = self.efficiency_ratio(width, volatility)
        effective_fee_apr = fee_apr * self.fee_density_multiplier(width) * efficiency
        total_apr = effective_fee_apr + incentive_apr + funding_apr
        frequency = self.rebalance_frequency(width, volatility, trend_velocity)

        net_apy = None
        drag = None
        if cost_model is not None and (cost_model.position_value_usd or 0) > 0:
            annual_costs = cost_model.cost_per_rebalance() * frequency
            drag = annual_costs / cost_model.position_value_usd * 100.0
            net_apy = total_apr - drag

        return RangeEstimate(
            optimal_range_width=width,
            expected_apy=total_apr,
            rebalance_frequency=frequency,
            fee_capture_efficiency=efficiency * 100.0,
            effective_fee_apr=effective_fee_apr,
            net_apy=net_apy,
            annual_cost_drag=drag,
        )

    def _grid(self, min_range: float, max_range: float) -> np.ndarray:
        if not (math.isfinite(min_range) and math.isfinite(max_range)):
            raise ConfigurationError("Range bounds must be finite")
        if min_range <= 0:
            raise ConfigurationError(f"min_range must be positive, got {min_range}")
        if min_range > max_range:
            raise ConfigurationError(f"min_range {min_range} exceeds max_range {max_range}")
        grid = np.linspace(min_range, max_range, self.config.grid_steps + 1)
        return np.clip(grid, min_range, max_range)

    def find_optimal_range(
        self,
        target_apy: float,
        fee_apr: float,
        incentive_apr: float,
        funding_apr: float,
        volatility: Optional[float] = None,
        min_range: float = 0.01,
        max_range: float = 0.20,
        cost_model: Optional[RebalanceCostModel] = None,
        trend_velocity: float = 0.0,
    ) -> RangeEstimate:
        """Width whose expected APY is closest to ``target_apy`` (narrowest on ties)."""
        best: Optional[RangeEstimate] = None
        best_diff = math.inf
        for width in self._grid(min_range, max_range):
            est = self.estimate_apy_for_range(
                float(width), fee_apr, incentive_apr, funding_apr,
                volatility, cost_model, trend_velocity,
            )
            diff = abs(est.expected_apy - target_apy)
            if diff < best_diff:
                best, best_diff = est, diff
        return best

    def find_optimal_narrowest_range(
        self,
        fee_apr: float,
        incentive_apr: float,
        funding_apr: float,
        volatility: Optional[float] = None,
        min_range: float = 0.005,
        max_range: float = 0.20,
        cost_model: Optional[RebalanceCostModel] = None,
        trend_velocity: float = 0.0,
    ) -> RangeEstimate:
        """Width maximizing net APY after rebalance costs (narrowest on ties).

        Raises
        ------
        ComputationError
            If no cost model with a positive position value is supplied.
        """
        if cost_model is None or not (cost_model.position_value_usd or 0) > 0:
            raise ComputationError(
                "Cost-aware range search requires a cost model with a positive position value"
            )
        best: Optional[RangeEstimate] = None
        for width in self._grid(min_range, max_range):
            est = self.estimate_apy_for_range(
                float(width), fee_apr, incentive_apr, funding_apr,
                volatility, cost_model, trend_velocity,
            )
            if best is None or est.net_apy > best.net_apy:
                best = est
        logger.debug(
            "Optimal range %.4f: net %.2f%% (gross %.2f%%, %.1f rebalances/yr)",
            best.optimal_range_width, best.net_apy, best.expected_apy, best.rebalance_frequency,
        )
        return best
