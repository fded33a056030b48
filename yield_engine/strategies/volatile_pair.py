"""
Volatile-pair liquidity provision with a reference-price rebalance trigger.

The range width is resolved once per instance: cost-aware optimization when a
cost model is configured, target-APY optimization when a target is set,
otherwise the configured (or default 5%) width.  The reference price only
moves on an actual rebalance::

    rebalance when |pct_change(price, reference)| >= width * threshold * 100
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from ..backtest.costs import RebalanceCostModel
from ..backtest.portfolio import Portfolio, Position, PositionKind, TradeSide
from ..config_structured import get_config
from ..data.types import MarketData
from ..errors import ConfigurationError
from ..risk.range_optimizer import RangeOptimizer
from ..value_objects import APR
from .base import PriceRange, Strategy, StrategyResult

logger = logging.getLogger(__name__)

DEFAULT_RANGE_WIDTH = 0.05
MIN_RANGE_WIDTH = 0.01
MAX_RANGE_WIDTH = 0.20


def percentage_change(current: float, reference: float) -> float:
    return (current - reference) / reference * 100.0


@dataclass(frozen=True)
class VolatilePairConfig:
    pair: str = "ETH-USDC"
    range_width: Optional[float] = None
    fee_apr: float = 20.0
    incentive_apr: float = 15.0
    funding_apr: float = 5.0
    hedge_ratio: float = 1.0
    target_apy: Optional[float] = None
    cost_model: Optional[RebalanceCostModel] = None
    volatility: Optional[float] = None
    rebalance_threshold: Optional[float] = None
    allocation: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, "cost_model", RebalanceCostModel.coerce(self.cost_model))


class VolatilePairStrategy(Strategy):
    """Range LP on a volatile pair; funding from the hedge leg scales with ``hedge_ratio``."""

    kind = "volatile_pair"
    config_class = VolatilePairConfig
    default_allocation = 0.25

    def __init__(self, strategy_id: str, name: Optional[str] = None,
                 optimizer: Optional[RangeOptimizer] = None):
        super().__init__(strategy_id, name)
        self.optimizer = optimizer or RangeOptimizer()
        self._reference_prices: Dict[str, float] = {}
        self._resolved_width: Optional[float] = None
        self._width_override: Optional[float] = None

    def check_config(self, cfg: VolatilePairConfig) -> None:
        super().check_config(cfg)
        if cfg.range_width is not None and not MIN_RANGE_WIDTH <= cfg.range_width <= MAX_RANGE_WIDTH:
            raise ConfigurationError(
                f"range_width must be in [{MIN_RANGE_WIDTH}, {MAX_RANGE_WIDTH}], got {cfg.range_width}"
            )
        if not 0.8 <= cfg.hedge_ratio <= 1.2:
            raise ConfigurationError(f"hedge_ratio must be in [0.8, 1.2], got {cfg.hedge_ratio}")
        if cfg.target_apy is not None and not 0 < cfg.target_apy < 200:
            raise ConfigurationError(f"target_apy must be in (0, 200), got {cfg.target_apy}")
        if cfg.rebalance_threshold is not None and not 0 < cfg.rebalance_threshold <= 1:
            raise ConfigurationError(
                f"rebalance_threshold must be in (0, 1], got {cfg.rebalance_threshold}"
            )
        if cfg.volatility is not None and cfg.volatility < 0:
            raise ConfigurationError(f"volatility must be non-negative, got {cfg.volatility}")

    def assets(self, config) -> List[str]:
        return [self.parse_config(config).pair]

    # ── Range width ──────────────────────────────────────────────────

    def set_range_width(self, width: float) -> None:
        """Pin the width used from now on (overrides any optimization)."""
        if not MIN_RANGE_WIDTH <= width <= MAX_RANGE_WIDTH:
            raise ConfigurationError(
                f"range width must be in [{MIN_RANGE_WIDTH}, {MAX_RANGE_WIDTH}], got {width}"
            )
        self._width_override = float(width)

    def current_width(self, cfg: VolatilePairConfig) -> float:
        """Width in force without triggering an optimization."""
        if self._width_override is not None:
            return self._width_override
        if self._resolved_width is not None:
            return self._resolved_width
        return cfg.range_width if cfg.range_width is not None else DEFAULT_RANGE_WIDTH

    def _resolve_width(self, cfg: VolatilePairConfig, position_value: float) -> float:
        if self._width_override is not None:
            return self._width_override
        if self._resolved_width is not None:
            return self._resolved_width

        funding = cfg.funding_apr * cfg.hedge_ratio
        if cfg.cost_model is not None:
            cost_model = cfg.cost_model
            if not cost_model.position_value_usd:
                cost_model = replace(cost_model, position_value_usd=position_value)
            est = self.optimizer.find_optimal_narrowest_range(
                cfg.fee_apr, cfg.incentive_apr, funding, cfg.volatility,
                MIN_RANGE_WIDTH, MAX_RANGE_WIDTH, cost_model,
            )
            width = est.optimal_range_width
            logger.info("%s: cost-aware width %.4f (net %.2f%%)", self.strategy_id, width, est.net_apy)
        elif cfg.target_apy is not None:
            est = self.optimizer.find_optimal_range(
                cfg.target_apy, cfg.fee_apr, cfg.incentive_apr, funding, cfg.volatility,
                MIN_RANGE_WIDTH, MAX_RANGE_WIDTH,
            )
            width = est.optimal_range_width
            logger.info("%s: width %.4f for target %.1f%%", self.strategy_id, width, cfg.target_apy)
        else:
            width = cfg.range_width if cfg.range_width is not None else DEFAULT_RANGE_WIDTH
        self._resolved_width = width
        return width

    # ── Trigger ──────────────────────────────────────────────────────

    def reference_price(self, position: Position) -> float:
        return self._reference_prices.get(position.id, position.entry_price)

    def threshold(self, cfg: VolatilePairConfig) -> float:
        if cfg.rebalance_threshold is not None:
            return cfg.rebalance_threshold
        return get_config().strategies.rebalance_threshold

    def would_rebalance(self, position: Position, price: float, cfg: VolatilePairConfig) -> bool:
        change = percentage_change(price, self.reference_price(position))
        trigger = self.current_width(cfg) * self.threshold(cfg) * 100.0
        return abs(change) >= trigger

    # ── Capability interface ─────────────────────────────────────────

    def execute(self, portfolio: Portfolio, market_data: MarketData, config) -> StrategyResult:
        cfg = self.resolve_config(config)
        pid = self.position_id(cfg.pair)
        existing = portfolio.get_position(pid)
        allocation = self.allocation_of(cfg)
        price = market_data.price

        if allocation == 0:
            self._reference_prices.pop(pid, None)
            trades = [self._close(existing, market_data)] if existing else []
            return StrategyResult(trades=trades)

        if existing is None:
            notional = portfolio.total_value() * allocation
            width = self._resolve_width(cfg, notional)
            self._reference_prices[pid] = price
            position = Position.create(
                id=pid,
                strategy_id=self.strategy_id,
                asset=cfg.pair,
                amount=notional,
                entry_price=price,
                kind=PositionKind.LP,
                opened_at=market_data.timestamp,
            )
            trade = self._trade(cfg.pair, TradeSide.BUY, notional, price, market_data.timestamp, pid)
            return StrategyResult(
                trades=[trade], positions=[position], ranges={pid: PriceRange(price, width)},
            )

        width = self.current_width(cfg)
        reference = self.reference_price(existing)
        result = StrategyResult(positions=[existing.update_price(price)])
        if self.would_rebalance(existing, price, cfg):
            change = percentage_change(price, reference)
            result.should_rebalance = True
            result.rebalance_reason = (
                f"{cfg.pair} moved {change:+.2f}% from reference {reference:.4f} "
                f"(trigger {width * self.threshold(cfg) * 100:.2f}%)"
            )
            self._reference_prices[pid] = price
            reference = price
        result.ranges[pid] = PriceRange(reference, width)
        return result

    def calculate_expected_yield(self, config, market_data: MarketData) -> APR:
        cfg = self.parse_config(config)
        fee_apr = market_data.fee_apr if market_data.fee_apr is not None else cfg.fee_apr
        est = self.optimizer.estimate_apy_for_range(
            self.current_width(cfg), fee_apr, cfg.incentive_apr,
            cfg.funding_apr * cfg.hedge_ratio, cfg.volatility,
        )
        return APR(est.expected_apy)
