"""Tests for the range-width optimizer.

Covers the efficiency curve, the rebalance-frequency model, grid bounds
(including the degenerate single-point grid), cost drag monotonicity and the
cost-aware search contract.
"""
from __future__ import annotations

import pytest


@pytest.fixture
def optimizer():
    from yield_engine.risk.range_optimizer import RangeOptimizer

    return RangeOptimizer()


@pytest.fixture
def cost_model():
    from yield_engine.backtest.costs import RebalanceCostModel

    return RebalanceCostModel(gas_cost_per_rebalance=50.0, pool_fee_tier=0.003,
                              position_value_usd=100_000.0)


class TestModelComponents:
    """Piecewise efficiency, fee density and rebalance frequency."""

    @pytest.mark.parametrize("ratio,expected", [
        (3.0, 0.95),
        (2.0, 0.95),
        (1.5, 0.85),
        (1.0, 0.75),
        (0.75, 0.575),
        (0.25, 0.25),
    ])
    def test_efficiency_curve(self, optimizer, ratio, expected):
        assert optimizer.efficiency_ratio(ratio * 0.5, 0.5) == pytest.approx(expected)

    def test_efficiency_floor(self, optimizer):
        assert optimizer.efficiency_ratio(1e-6, 1.0) == pytest.approx(0.10, abs=1e-5)

    def test_fee_density_at_reference(self, optimizer):
        assert optimizer.fee_density_multiplier(0.05) == pytest.approx(1.0)
        assert optimizer.fee_density_multiplier(0.025) == pytest.approx(2 ** 0.8)

    def test_frequency_quadratic_in_vol_linear_in_drift(self, optimizer):
        base = optimizer.rebalance_frequency(0.05, 0.6)
        assert optimizer.rebalance_frequency(0.05, 1.2) == pytest.approx(base * 4)
        with_drift = optimizer.rebalance_frequency(0.05, 0.6, 0.2)
        assert with_drift - base == pytest.approx(0.2 / (0.05 * 0.95))

    def test_frequency_floor_is_one(self, optimizer):
        assert optimizer.rebalance_frequency(0.2, 0.0) == 1.0

    def test_calibration_constants_are_configurable(self):
        from yield_engine.config_structured import RangeOptimizerConfig
        from yield_engine.risk.range_optimizer import RangeOptimizer

        custom = RangeOptimizer(RangeOptimizerConfig(rebalance_frequency_scalar=2.4))
        default = RangeOptimizer()
        assert custom.rebalance_frequency(0.05, 0.6) == pytest.approx(
            default.rebalance_frequency(0.05, 0.6) * 2
        )


class TestEstimate:
    def test_components_add_up(self, optimizer):
        est = optimizer.estimate_apy_for_range(0.05, 20, 15, 5, 0.6)
        assert est.expected_apy == pytest.approx(est.effective_fee_apr + 15 + 5)
        assert est.net_apy is None and est.annual_cost_drag is None

    def test_net_apy_subtracts_drag(self, optimizer, cost_model):
        est = optimizer.estimate_apy_for_range(0.05, 20, 15, 5, 0.6, cost_model)
        assert est.net_apy == pytest.approx(est.expected_apy - est.annual_cost_drag)
        assert est.annual_cost_drag > 0

    def test_cost_drag_grows_as_width_narrows(self, optimizer, cost_model):
        drags = [
            optimizer.estimate_apy_for_range(w, 20, 15, 5, 0.6, cost_model).annual_cost_drag
            for w in (0.20, 0.10, 0.05, 0.02, 0.01)
        ]
        assert drags == sorted(drags)

    def test_rejects_non_positive_width(self, optimizer):
        from yield_engine.errors import ConfigurationError

        with pytest.raises(ConfigurationError):
            optimizer.estimate_apy_for_range(0.0, 20, 15, 5, 0.6)


class TestSearch:
    """Grid searches stay inside their bounds."""

    @pytest.mark.parametrize("target", [5.0, 40.0, 80.0, 500.0])
    def test_target_search_within_bounds(self, optimizer, target):
        est = optimizer.find_optimal_range(target, 20, 15, 5, 0.6, 0.01, 0.20)
        assert 0.01 <= est.optimal_range_width <= 0.20

    def test_degenerate_bounds(self, optimizer, cost_model):
        est = optimizer.find_optimal_range(40.0, 20, 15, 5, 0.6, 0.05, 0.05)
        assert est.optimal_range_width == pytest.approx(0.05)
        est = optimizer.find_optimal_narrowest_range(
            20, 15, 5, 0.6, 0.03, 0.03, cost_model,
        )
        assert est.optimal_range_width == pytest.approx(0.03)

    def test_inverted_bounds_rejected(self, optimizer):
        from yield_engine.errors import ConfigurationError

        with pytest.raises(ConfigurationError):
            optimizer.find_optimal_range(40.0, 20, 15, 5, 0.6, 0.2, 0.1)

    def test_cost_aware_search(self, optimizer, cost_model):
        est = optimizer.find_optimal_narrowest_range(20, 15, 5, 0.6, cost_model=cost_model)
        assert 0.005 <= est.optimal_range_width <= 0.20
        assert est.net_apy <= est.expected_apy

    def test_cost_aware_search_is_the_grid_maximum(self, optimizer, cost_model):
        import numpy as np

        best = optimizer.find_optimal_narrowest_range(20, 15, 5, 0.6, cost_model=cost_model)
        for w in np.linspace(0.005, 0.20, 101):
            est = optimizer.estimate_apy_for_range(float(w), 20, 15, 5, 0.6, cost_model)
            assert est.net_apy <= best.net_apy + 1e-9

    def test_cost_aware_search_requires_position_value(self, optimizer):
        from yield_engine.backtest.costs import RebalanceCostModel
        from yield_engine.errors import ComputationError

        with pytest.raises(ComputationError):
            optimizer.find_optimal_narrowest_range(20, 15, 5, 0.6)
        with pytest.raises(ComputationError):
            optimizer.find_optimal_narrowest_range(
                20, 15, 5, 0.6, cost_model=RebalanceCostModel(50.0, 0.003, 0.0),
            )
