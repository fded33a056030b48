"""
Trend-aware volatile-pair LP.

Wraps a :class:`VolatilePairStrategy` and re-picks its range width whenever a
position is opened or about to rebalance, from a rolling window of tick
prices:

    1. RegimeAnalyst -> GARCH volatility, capped drift, Hurst exponent
    2. RangeOptimizer (cost-aware) -> base width
    3. widen in trending regimes, narrow in mean-reverting ones
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional

import numpy as np

from ..backtest.costs import RebalanceCostModel
from ..backtest.portfolio import Portfolio
from ..config_structured import get_config
from ..data.types import Candle, MarketData
from ..errors import ConfigurationError, InsufficientDataError
from ..regime.analyst import RegimeAnalysis, RegimeAnalyst
from ..risk.range_optimizer import RangeOptimizer
from ..value_objects import APR
from .base import Strategy, StrategyResult
from .volatile_pair import (
    MAX_RANGE_WIDTH,
    MIN_RANGE_WIDTH,
    VolatilePairConfig,
    VolatilePairStrategy,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrendAwareConfig:
    pair: str = "ETH-USDC"
    range_width: Optional[float] = None
    fee_apr: float = 20.0
    incentive_apr: float = 15.0
    funding_apr: float = 5.0
    hedge_ratio: float = 1.0
    cost_model: Optional[RebalanceCostModel] = None
    rebalance_threshold: Optional[float] = None
    lookback: Optional[int] = None
    trend_multiplier: float = 1.5
    mean_revert_multiplier: float = 0.75
    allocation: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, "cost_model", RebalanceCostModel.coerce(self.cost_model))

    def pair_config(self) -> VolatilePairConfig:
        return VolatilePairConfig(
            pair=self.pair,
            range_width=self.range_width,
            fee_apr=self.fee_apr,
            incentive_apr=self.incentive_apr,
            funding_apr=self.funding_apr,
            hedge_ratio=self.hedge_ratio,
            rebalance_threshold=self.rebalance_threshold,
            allocation=self.allocation,
        )


class TrendAwarePairStrategy(Strategy):
    kind = "trend_aware"
    config_class = TrendAwareConfig
    default_allocation = 0.25

    def __init__(self, strategy_id: str, name: Optional[str] = None,
                 analyst: Optional[RegimeAnalyst] = None,
                 optimizer: Optional[RangeOptimizer] = None):
        super().__init__(strategy_id, name)
        self.analyst = analyst or RegimeAnalyst()
        self.optimizer = optimizer or RangeOptimizer()
        self.pair_strategy = VolatilePairStrategy(strategy_id, name, optimizer=self.optimizer)
        self._window: Optional[Deque[Candle]] = None
        self.last_analysis: Optional[RegimeAnalysis] = None

    def check_config(self, cfg: TrendAwareConfig) -> None:
        super().check_config(cfg)
        self.pair_strategy.check_config(cfg.pair_config())
        lookback = self._lookback(cfg)
        if lookback < self.analyst.min_candles:
            raise ConfigurationError(
                f"lookback {lookback} is shorter than the analyst minimum {self.analyst.min_candles}"
            )
        if cfg.trend_multiplier < 1:
            raise ConfigurationError(f"trend_multiplier must be >= 1, got {cfg.trend_multiplier}")
        if not 0 < cfg.mean_revert_multiplier <= 1:
            raise ConfigurationError(
                f"mean_revert_multiplier must be in (0, 1], got {cfg.mean_revert_multiplier}"
            )

    def assets(self, config) -> List[str]:
        return [self.parse_config(config).pair]

    @staticmethod
    def _lookback(cfg: TrendAwareConfig) -> int:
        return cfg.lookback if cfg.lookback is not None else get_config().strategies.trend_lookback

    def _observe(self, cfg: TrendAwareConfig, market_data: MarketData) -> None:
        if self._window is None:
            self._window = deque(maxlen=self._lookback(cfg))
        p = market_data.price
        self._window.append(Candle(market_data.timestamp, p, p, p, p, market_data.volume or 0.0))

    def pick_width(self, analysis: RegimeAnalysis, cfg: TrendAwareConfig,
                   position_value: float) -> float:
        """Cost-aware optimal width for the analysed regime, scaled by trend."""
        cost_model = cfg.cost_model or RebalanceCostModel(
            gas_cost_per_rebalance=get_config().costs.gas_cost_usd
        )
        if not cost_model.position_value_usd:
            cost_model = RebalanceCostModel(
                cost_model.gas_cost_per_rebalance, cost_model.pool_fee_tier, position_value,
            )
        est = self.optimizer.find_optimal_narrowest_range(
            cfg.fee_apr, cfg.incentive_apr, cfg.funding_apr * cfg.hedge_ratio,
            analysis.garch_volatility.value, MIN_RANGE_WIDTH, MAX_RANGE_WIDTH,
            cost_model, analysis.drift.clamped_value,
        )
        width = est.optimal_range_width
        if analysis.is_trending:
            width *= cfg.trend_multiplier
        elif analysis.is_mean_reverting:
            width *= cfg.mean_revert_multiplier
        return float(np.clip(width, MIN_RANGE_WIDTH, MAX_RANGE_WIDTH))

    def execute(self, portfolio: Portfolio, market_data: MarketData, config) -> StrategyResult:
        cfg = self.resolve_config(config)
        self._observe(cfg, market_data)
        pair_cfg = cfg.pair_config()
        existing = portfolio.get_position(self.position_id(cfg.pair))

        repick = existing is None or self.pair_strategy.would_rebalance(
            existing, market_data.price, pair_cfg
        )
        if repick and self.allocation_of(cfg) > 0:
            try:
                analysis = self.analyst.analyze(list(self._window))
            except InsufficientDataError as e:
                logger.debug("%s: keeping current width, %s", self.strategy_id, e)
            else:
                self.last_analysis = analysis
                value = portfolio.total_value() * self.allocation_of(cfg)
                width = self.pick_width(analysis, cfg, value)
                logger.info(
                    "%s: width %.4f (H=%.2f, vol=%.3f, drift=%.3f)",
                    self.strategy_id, width, analysis.hurst.value,
                    analysis.garch_volatility.value, analysis.drift.value,
                )
                self.pair_strategy.set_range_width(width)

        return self.pair_strategy.execute(portfolio, market_data, pair_cfg)

    def calculate_expected_yield(self, config, market_data: MarketData) -> APR:
        cfg = self.parse_config(config)
        return self.pair_strategy.calculate_expected_yield(cfg.pair_config(), market_data)
