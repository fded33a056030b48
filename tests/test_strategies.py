"""
Strategy catalogue tests.

Each strategy is driven directly against a Portfolio with hand-built
MarketData snapshots; the engine is not involved.
"""
from datetime import datetime, timedelta

import pytest

from yield_engine.backtest.costs import RebalanceCostModel
from yield_engine.backtest.portfolio import Portfolio, PositionKind, TradeSide
from yield_engine.config_structured import load_config
from yield_engine.data.types import MarketData
from yield_engine.errors import ConfigurationError
from yield_engine.value_objects import IV, FundingRate

T0 = datetime(2024, 1, 1)


def _md(price, ts=T0, asset="ETH-USDC", **kw):
    return MarketData(timestamp=ts, price=price, asset=asset, **kw)


def _open(strategy, portfolio, md, cfg=None):
    """Execute once and book the returned positions into the portfolio."""
    result = strategy.execute(portfolio, md, cfg)
    for p in result.positions:
        portfolio.add_position(p)
    return result


class TestBaseContract:
    def test_unknown_config_key_rejected(self):
        from yield_engine.strategies import StablePairStrategy

        s = StablePairStrategy("sp")
        with pytest.raises(ConfigurationError):
            s.parse_config({"range_widht": 0.001})
        assert not s.validate_config({"range_widht": 0.001})

    def test_allocation_filled_from_caller(self):
        from yield_engine.strategies import StablePairStrategy

        cfg = StablePairStrategy("sp").resolve_config({}, allocation=0.5)
        assert cfg.allocation == 0.5

    def test_empty_id_rejected(self):
        from yield_engine.strategies import StablePairStrategy

        with pytest.raises(ConfigurationError):
            StablePairStrategy("")

    def test_price_range(self):
        from yield_engine.strategies import PriceRange

        band = PriceRange(100.0, 0.05)
        assert band.lower == pytest.approx(95.0) and band.upper == pytest.approx(105.0)
        assert band.contains(105.0) and not band.contains(105.1)


class TestRegistry:
    def test_every_kind_registered(self):
        from yield_engine.strategies import STRATEGY_REGISTRY

        assert set(STRATEGY_REGISTRY) == {
            "stable_pair", "volatile_pair", "trend_aware", "options_overlay",
            "leveraged_lending", "funding_rate", "rwa_carry", "iv_regime_switcher",
        }

    def test_create(self):
        from yield_engine.strategies import FundingRateCaptureStrategy, create_strategy

        s = create_strategy("funding_rate", "f1", "Funding")
        assert isinstance(s, FundingRateCaptureStrategy)
        assert s.strategy_id == "f1" and s.name == "Funding"
        with pytest.raises(ConfigurationError):
            create_strategy("martingale", "x")


class TestStablePair:
    @pytest.fixture
    def strategy(self):
        from yield_engine.strategies import StablePairStrategy

        return StablePairStrategy("sp")

    def test_open_levered(self, strategy):
        pf = Portfolio(100_000.0)
        result = strategy.execute(pf, _md(1.0, asset="USDC-USDT"), {"leverage": 2.0})
        (pos,) = result.positions
        assert pos.kind is PositionKind.LP
        assert pos.amount == pytest.approx(60_000.0)
        assert pos.borrowed_amount == pytest.approx(30_000.0)
        assert pos.collateral_amount == pytest.approx(30_000.0)
        assert [t.asset for t in result.trades] == ["USDC", "USDT"]

    def test_rebalance_outside_band(self, strategy):
        pf = Portfolio(100_000.0)
        _open(strategy, pf, _md(1.0, asset="USDC-USDT"))
        inside = strategy.execute(pf, _md(1.0015, asset="USDC-USDT"), None)
        outside = strategy.execute(pf, _md(0.9975, asset="USDC-USDT"), None)
        assert not inside.should_rebalance
        assert outside.should_rebalance and "depegged" in outside.rebalance_reason
        assert outside.positions[0].entry_price == 1.0

    @pytest.mark.parametrize("cfg", [
        {"range_width": 0.02},
        {"leverage": 3.5},
        {"leverage": 3.0, "collateral_ratio": 1.6},
        {"borrow_apr": -1.0},
        {"allocation": 1.5},
    ])
    def test_invalid(self, strategy, cfg):
        assert not strategy.validate_config(cfg)

    def test_expected_yield(self, strategy):
        md = _md(1.0, asset="USDC-USDT")
        assert strategy.calculate_expected_yield({}, md).value == pytest.approx(25.0)
        assert strategy.calculate_expected_yield({"leverage": 2.0}, md).value == pytest.approx(47.0)
        with_fees = _md(1.0, asset="USDC-USDT", fee_apr=20.0)
        assert strategy.calculate_expected_yield({}, with_fees).value == pytest.approx(35.0)

    def test_zero_allocation_closes(self, strategy):
        pf = Portfolio(100_000.0)
        _open(strategy, pf, _md(1.0, asset="USDC-USDT"))
        result = strategy.execute(pf, _md(1.0, asset="USDC-USDT"), {"allocation": 0.0})
        assert result.positions == []
        assert result.trades[0].side is TradeSide.SELL


class TestVolatilePair:
    @pytest.fixture
    def strategy(self):
        from yield_engine.strategies import VolatilePairStrategy

        return VolatilePairStrategy("vp")

    def test_open_with_default_width(self, strategy):
        pf = Portfolio(100_000.0)
        result = strategy.execute(pf, _md(2000.0), None)
        band = result.ranges["vp-ETH-USDC"]
        assert band.center == 2000.0 and band.width == 0.05
        assert result.positions[0].amount == pytest.approx(25_000.0)

    def test_trigger_at_width_times_threshold(self, strategy):
        pf = Portfolio(100_000.0)
        _open(strategy, pf, _md(2000.0))
        # 5% width * 0.9 -> 4.5% trigger
        assert not strategy.execute(pf, _md(2088.0), None).should_rebalance
        assert not strategy.execute(pf, _md(1912.0), None).should_rebalance
        assert strategy.execute(pf, _md(2092.0), None).should_rebalance

    def test_reference_moves_only_on_rebalance(self, strategy):
        pf = Portfolio(100_000.0)
        _open(strategy, pf, _md(2000.0))
        strategy.execute(pf, _md(2050.0), None)
        assert strategy.reference_price(pf.get_position("vp-ETH-USDC")) == 2000.0
        first = strategy.execute(pf, _md(2100.0), None)
        second = strategy.execute(pf, _md(2100.0), None)
        assert first.should_rebalance and not second.should_rebalance
        assert second.ranges["vp-ETH-USDC"].center == 2100.0
        assert second.positions[0].entry_price == 2000.0

    def test_cost_aware_width_resolved_once(self, strategy):
        cfg = {"cost_model": RebalanceCostModel(50.0, 0.003)}
        pf = Portfolio(100_000.0)
        result = _open(strategy, pf, _md(2000.0), cfg)
        width = result.ranges["vp-ETH-USDC"].width
        assert 0.01 <= width <= 0.20
        assert strategy.current_width(strategy.parse_config(cfg)) == width

    def test_cost_model_mapping_is_coerced(self, strategy):
        cfg = {"cost_model": {"gas_cost_per_rebalance": 5.0}}
        assert strategy.validate_config(cfg)
        assert strategy.parse_config(cfg).cost_model == RebalanceCostModel(5.0)
        result = strategy.execute(Portfolio(100_000.0), _md(2000.0), cfg)
        assert 0.01 <= result.ranges["vp-ETH-USDC"].width <= 0.20

    def test_threshold_follows_installed_config(self, strategy, tmp_path):
        from yield_engine.strategies import VolatilePairConfig

        path = tmp_path / "engine.yaml"
        path.write_text("strategies:\n  rebalance_threshold: 0.5\n")
        load_config(path)
        assert strategy.threshold(VolatilePairConfig()) == 0.5
        pf = Portfolio(100_000.0)
        _open(strategy, pf, _md(2000.0))
        # 5% width * 0.5 -> 2.5% trigger
        assert strategy.execute(pf, _md(2060.0), None).should_rebalance

    def test_target_apy_width(self, strategy):
        pf = Portfolio(100_000.0)
        result = strategy.execute(pf, _md(2000.0), {"target_apy": 60.0})
        assert 0.01 <= result.ranges["vp-ETH-USDC"].width <= 0.20

    def test_expected_yield_is_pure(self, strategy):
        md = _md(2000.0)
        first = strategy.calculate_expected_yield({}, md)
        second = strategy.calculate_expected_yield({}, md)
        assert first == second
        assert strategy._resolved_width is None

    def test_width_override_bounds(self, strategy):
        with pytest.raises(ConfigurationError):
            strategy.set_range_width(0.5)

    @pytest.mark.parametrize("cfg", [
        {"range_width": 0.3},
        {"hedge_ratio": 0.5},
        {"target_apy": 0.0},
        {"rebalance_threshold": 1.5},
        {"cost_model": {"gas": 5.0}},
        {"cost_model": 5.0},
    ])
    def test_invalid(self, strategy, cfg):
        assert not strategy.validate_config(cfg)


class TestTrendAware:
    def test_lookback_below_analyst_minimum(self):
        from yield_engine.strategies import TrendAwarePairStrategy

        assert not TrendAwarePairStrategy("ta").validate_config({"lookback": 5})
        assert not TrendAwarePairStrategy("ta").validate_config({"trend_multiplier": 0.5})

    def test_width_repicked_on_rebalance(self):
        from yield_engine.strategies import TrendAwarePairStrategy
        from yield_engine.strategies.volatile_pair import MAX_RANGE_WIDTH, MIN_RANGE_WIDTH

        s = TrendAwarePairStrategy("ta")
        pf = Portfolio(100_000.0)
        first = _open(s, pf, _md(2000.0))
        assert s.last_analysis is None
        assert first.ranges["ta-ETH-USDC"].width == 0.05

        for h in range(1, 20):
            s.execute(pf, _md(2000.0 + (h % 3), T0 + timedelta(hours=h)), None)
        result = s.execute(pf, _md(2200.0, T0 + timedelta(hours=20)), None)
        assert result.should_rebalance
        assert s.last_analysis is not None
        assert MIN_RANGE_WIDTH <= result.ranges["ta-ETH-USDC"].width <= MAX_RANGE_WIDTH

    def test_cost_model_mapping(self):
        from yield_engine.strategies import TrendAwarePairStrategy

        s = TrendAwarePairStrategy("ta")
        cfg = s.parse_config({"cost_model": {"gas_cost_per_rebalance": 5.0, "pool_fee_tier": 0.003}})
        assert cfg.cost_model == RebalanceCostModel(5.0, 0.003)
        assert not s.validate_config({"cost_model": [5.0]})

    def test_lookback_follows_installed_config(self, tmp_path):
        from yield_engine.strategies import TrendAwareConfig, TrendAwarePairStrategy

        path = tmp_path / "engine.yaml"
        path.write_text("strategies:\n  trend_lookback: 40\n")
        load_config(path)
        assert TrendAwarePairStrategy._lookback(TrendAwareConfig()) == 40

    def test_expected_yield_delegates(self):
        from yield_engine.strategies import TrendAwarePairStrategy, VolatilePairStrategy

        md = _md(2000.0)
        assert TrendAwarePairStrategy("ta").calculate_expected_yield({}, md) == \
            VolatilePairStrategy("vp").calculate_expected_yield({}, md)


class TestOptionsOverlay:
    @pytest.fixture
    def strategy(self):
        from yield_engine.strategies import OptionsOverlayStrategy

        return OptionsOverlayStrategy("oo")

    def test_strike_must_sit_outside_range(self, strategy):
        assert not strategy.validate_config({"lp_range_width": 0.05, "option_strike_distance": 0.05})
        assert strategy.validate_config({"lp_range_width": 0.03, "option_strike_distance": 0.05})

    def test_open_writes_calls(self, strategy):
        pf = Portfolio(100_000.0)
        result = strategy.execute(pf, _md(2000.0), None)
        lp, calls = result.trades
        assert lp.side is TradeSide.BUY
        assert calls.side is TradeSide.SELL and calls.asset == "ETH-USDC-OPTIONS"
        assert calls.value() == pytest.approx(20_000.0 * 0.4)

    def test_roll_after_tenor(self, strategy):
        pf = Portfolio(100_000.0)
        _open(strategy, pf, _md(2000.0))
        assert strategy.execute(pf, _md(2010.0, T0 + timedelta(days=3)), None).trades == []
        rolled = strategy.execute(pf, _md(2010.0, T0 + timedelta(days=7)), None)
        assert [t.asset for t in rolled.trades] == ["ETH-USDC-OPTIONS"]
        assert not rolled.should_rebalance
        assert rolled.ranges["oo-ETH-USDC"].center == 2000.0

    def test_strike_breach_rebalances(self, strategy):
        pf = Portfolio(100_000.0)
        _open(strategy, pf, _md(2000.0))
        result = strategy.execute(pf, _md(2101.0, T0 + timedelta(days=1)), None)
        assert result.should_rebalance and "strike" in result.rebalance_reason
        assert result.ranges["oo-ETH-USDC"].center == 2101.0

    def test_expected_yield(self, strategy):
        apr = strategy.calculate_expected_yield({}, _md(2000.0)).value
        assert apr == pytest.approx(15.0 + 100 * 0.4 * 0.5 * 0.01 * 365 / 7)
        higher = strategy.calculate_expected_yield({}, _md(2000.0, implied_volatility=IV(100.0)))
        assert higher.value > apr


class TestLeveragedLending:
    @pytest.fixture
    def strategy(self):
        from yield_engine.strategies import LeveragedLendingStrategy

        return LeveragedLendingStrategy("ll")

    def test_effective_leverage(self):
        from yield_engine.strategies import effective_leverage

        assert effective_leverage(3, 0.8) == pytest.approx(1 / (1 - 0.8 * 2 / 3))
        assert effective_leverage(2, 0.5) == pytest.approx(4 / 3)

    def test_expected_yield(self, strategy):
        lev = 1 / (1 - 0.8 * 2 / 3)
        expected = 16.0 * lev - 8.0 * (lev - 1)
        assert strategy.calculate_expected_yield({}, _md(2000.0, asset="ETH")).value == pytest.approx(expected)

    @pytest.mark.parametrize("cfg", [
        {"loops": 6},
        {"loops": 2.5},
        {"ltv": 1.0},
        {"health_factor_threshold": 3.0},
    ])
    def test_invalid(self, strategy, cfg):
        assert not strategy.validate_config(cfg)

    def test_threshold_follows_installed_config(self, strategy, tmp_path):
        assert strategy.validate_config({})
        path = tmp_path / "engine.yaml"
        path.write_text("strategies:\n  health_factor_threshold: 3.0\n")
        load_config(path)
        assert strategy.threshold(strategy.parse_config({})) == 3.0
        assert not strategy.validate_config({})

    def test_deleverages_below_threshold(self, strategy):
        pf = Portfolio(100_000.0)
        opened = _open(strategy, pf, _md(2000.0, asset="ETH"))
        pos = opened.positions[0]
        assert pos.kind is PositionKind.SPOT
        assert pos.market_value() / pos.borrowed_amount == pytest.approx(
            strategy.target_health_factor(strategy.parse_config({}))
        )

        calm = strategy.execute(pf, _md(1950.0, T0 + timedelta(days=1), asset="ETH"), None)
        assert not calm.should_rebalance

        crash = strategy.execute(pf, _md(1500.0, T0 + timedelta(days=2), asset="ETH"), None)
        assert crash.should_rebalance
        (reduced,) = crash.positions
        assert reduced.market_value() / reduced.borrowed_amount == pytest.approx(1.875)
        assert crash.trades[0].side is TradeSide.SELL


class TestRWACarry:
    def test_yield_and_validation(self):
        from yield_engine.strategies import LeveragedRWACarryStrategy

        s = LeveragedRWACarryStrategy("rwa")
        assert s.calculate_expected_yield({}, _md(1.0, asset="USDY")).value == pytest.approx(18.0)
        assert not s.validate_config({"leverage": 6.0})
        assert not s.validate_config({"coupon_apr": 20.0})
        assert s.validate_config({"leverage": 5.0})


class TestFundingRate:
    @pytest.fixture
    def strategy(self):
        from yield_engine.strategies import FundingRateCaptureStrategy

        return FundingRateCaptureStrategy("fr")

    def _md(self, price=2000.0, funding=None, days=0):
        rate = None if funding is None else FundingRate(funding)
        return _md(price, T0 + timedelta(days=days), asset="ETH", funding_rate=rate)

    def test_no_entry_without_funding_or_below_threshold(self, strategy):
        pf = Portfolio(100_000.0)
        assert strategy.execute(pf, self._md(), None).positions == []
        assert strategy.execute(pf, self._md(funding=0.00005), None).positions == []

    def test_entry_threshold_follows_installed_config(self, strategy, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("strategies:\n  funding_rate_threshold: 0.00001\n")
        load_config(path)
        pf = Portfolio(100_000.0)
        assert len(strategy.execute(pf, self._md(funding=0.00005), None).positions) == 1

    def test_entry(self, strategy):
        pf = Portfolio(100_000.0)
        result = strategy.execute(pf, self._md(funding=0.0002), None)
        (pos,) = result.positions
        assert pos.kind is PositionKind.HEDGED
        assert pos.amount == pytest.approx(30_000.0)
        assert pos.borrowed_amount == pytest.approx(15_000.0)
        assert [(t.asset, t.side) for t in result.trades] == [
            ("ETH", TradeSide.BUY), ("ETH-PERP", TradeSide.SELL),
        ]

    def test_hold_then_close(self, strategy):
        pf = Portfolio(100_000.0)
        _open(strategy, pf, self._md(funding=0.0002))
        held = strategy.execute(pf, self._md(2100.0, days=1), None)
        assert [p.id for p in held.positions] == ["fr-ETH"]
        low = strategy.execute(pf, self._md(funding=0.00001, days=2), None)
        assert len(low.positions) == 1
        closed = strategy.execute(pf, self._md(funding=-0.0001, days=3), None)
        assert closed.positions == []
        assert [t.asset for t in closed.trades] == ["ETH", "ETH-PERP"]

    def test_expected_yield(self, strategy):
        assert strategy.calculate_expected_yield({}, self._md(funding=0.0001)).value == pytest.approx(21.9)
        assert strategy.calculate_expected_yield({}, self._md()).value == 0.0


class TestIVRegimeSwitcher:
    @pytest.mark.parametrize("iv,current,expected", [
        (25.0, None, "low"),
        (50.0, None, "mid"),
        (75.0, None, "high"),
        (33.0, "low", "low"),
        (36.0, "low", "mid"),
        (27.0, "mid", "mid"),
        (24.0, "mid", "low"),
        (73.0, "mid", "mid"),
        (76.0, "mid", "high"),
        (67.0, "high", "high"),
        (64.0, "high", "mid"),
        (20.0, "high", "low"),
    ])
    def test_hysteresis(self, iv, current, expected):
        from yield_engine.strategies import classify_regime

        assert classify_regime(iv, 30.0, 70.0, 5.0, current) == expected

    def test_min_hold_period(self):
        from yield_engine.strategies import IVRegimeSwitcherStrategy

        s = IVRegimeSwitcherStrategy("sw")
        cfg = s.parse_config({"min_hold_days": 3.0})
        assert s.update_regime(50.0, T0, cfg) is False
        assert s.regime == "mid"
        assert s.update_regime(20.0, T0 + timedelta(days=1), cfg) is False
        assert s.regime == "mid"
        assert s.update_regime(20.0, T0 + timedelta(days=4), cfg) is True
        assert s.regime == "low"

    def test_thresholds_follow_installed_config(self, tmp_path):
        from yield_engine.strategies import IVRegimeSwitcherConfig

        path = tmp_path / "engine.yaml"
        path.write_text(
            "strategies:\n  iv_low_threshold: 20\n  iv_high_threshold: 80\n  iv_min_hold_days: 1\n"
        )
        load_config(path)
        cfg = IVRegimeSwitcherConfig()
        assert (cfg.low, cfg.high, cfg.band, cfg.hold_days) == (20.0, 80.0, 5.0, 1.0)
        assert IVRegimeSwitcherConfig(iv_low_threshold=25.0).low == 25.0

    def test_overlapping_bands_rejected(self):
        from yield_engine.strategies import IVRegimeSwitcherStrategy

        s = IVRegimeSwitcherStrategy("sw")
        assert not s.validate_config({"iv_low_threshold": 30.0, "iv_high_threshold": 40.0,
                                      "hysteresis": 5.0})
        assert not s.validate_config({"option_strike_distance": 0.01})

    def test_owned_ids_and_assets(self):
        from yield_engine.strategies import IVRegimeSwitcherStrategy

        s = IVRegimeSwitcherStrategy("sw")
        assert s.owned_strategy_ids == ("sw-lp", "sw-options")
        assert s.assets({}) == ["ETH-USDC", "USDC-USDT"]

    def test_low_iv_runs_lp_leg_only(self):
        from yield_engine.strategies import IVRegimeSwitcherStrategy

        s = IVRegimeSwitcherStrategy("sw")
        lp_md = _md(1.0, asset="USDC-USDT")
        md = MarketData(T0, 2000.0, asset="ETH-USDC", implied_volatility=IV(20.0),
                        peers={"USDC-USDT": lp_md})
        result = s.execute(Portfolio(100_000.0), md, None)
        assert {p.strategy_id for p in result.positions} == {"sw-lp"}
        assert sum(p.net_value() for p in result.positions) == pytest.approx(30_000.0)

    def test_missing_leg_data_holds(self):
        from yield_engine.strategies import IVRegimeSwitcherStrategy

        s = IVRegimeSwitcherStrategy("sw")
        pf = Portfolio(100_000.0)
        lp_md = _md(1.0, asset="USDC-USDT")
        md = MarketData(T0, 2000.0, asset="ETH-USDC", implied_volatility=IV(20.0),
                        peers={"USDC-USDT": lp_md})
        _open(s, pf, md)
        lonely = MarketData(T0 + timedelta(days=1), 2000.0, asset="ETH-USDC",
                            implied_volatility=IV(20.0))
        result = s.execute(pf, lonely, None)
        assert [p.id for p in result.positions] == ["sw-lp-USDC-USDT"]

    def test_expected_yield_by_regime(self):
        from yield_engine.strategies import IVRegimeSwitcherStrategy

        s = IVRegimeSwitcherStrategy("sw")
        assert s.calculate_expected_yield({}, _md(2000.0)).value == 26.0
        assert s.calculate_expected_yield({}, _md(2000.0, implied_volatility=IV(80.0))).value == 35.0
