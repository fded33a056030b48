"""
Leveraged real-world-asset carry: hold a coupon-bearing token bought with
borrowed stablecoins.

    yield = coupon * L - borrow * (L - 1)

Rebalances (deleverages back to the opening health factor) when the health
factor drops below the threshold.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from ..backtest.portfolio import Portfolio, Position, PositionKind, TradeSide
from ..data.types import MarketData
from ..errors import ConfigurationError
from ..value_objects import APR
from .base import Strategy, StrategyResult, restore_health

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RWACarryConfig:
    asset: str = "USDY"
    coupon_apr: float = 8.0
    leverage: float = 3.5
    borrow_apr: float = 4.0
    health_factor_threshold: float = 1.2
    allocation: Optional[float] = None


class LeveragedRWACarryStrategy(Strategy):
    kind = "rwa_carry"
    config_class = RWACarryConfig
    default_allocation = 0.15

    def check_config(self, cfg: RWACarryConfig) -> None:
        super().check_config(cfg)
        if not 5.0 <= cfg.coupon_apr <= 15.0:
            raise ConfigurationError(f"coupon_apr must be in [5, 15], got {cfg.coupon_apr}")
        if not 2.0 <= cfg.leverage <= 5.0:
            raise ConfigurationError(f"leverage must be in [2, 5], got {cfg.leverage}")
        if cfg.borrow_apr < 0:
            raise ConfigurationError("borrow_apr must be non-negative")
        if cfg.health_factor_threshold <= 1:
            raise ConfigurationError(
                f"health_factor_threshold must exceed 1, got {cfg.health_factor_threshold}"
            )
        if self.target_health_factor(cfg) < cfg.health_factor_threshold:
            raise ConfigurationError(
                f"leverage {cfg.leverage} opens below health factor {cfg.health_factor_threshold}"
            )

    def assets(self, config) -> List[str]:
        return [self.parse_config(config).asset]

    @staticmethod
    def target_health_factor(cfg: RWACarryConfig) -> float:
        return cfg.leverage / (cfg.leverage - 1.0)

    def execute(self, portfolio: Portfolio, market_data: MarketData, config) -> StrategyResult:
        cfg = self.resolve_config(config)
        pid = self.position_id(cfg.asset)
        existing = portfolio.get_position(pid)
        allocation = self.allocation_of(cfg)
        price = market_data.price

        if allocation == 0:
            trades = [self._close(existing, market_data)] if existing else []
            return StrategyResult(trades=trades)

        if existing is None:
            equity = portfolio.total_value() * allocation
            notional = equity * cfg.leverage
            position = Position.create(
                id=pid,
                strategy_id=self.strategy_id,
                asset=cfg.asset,
                amount=notional / price,
                entry_price=price,
                collateral_amount=equity,
                borrowed_amount=notional - equity,
                kind=PositionKind.SPOT,
                opened_at=market_data.timestamp,
            )
            trade = self._trade(cfg.asset, TradeSide.BUY, notional, price, market_data.timestamp, pid)
            return StrategyResult(trades=[trade], positions=[position])

        marked = existing.update_price(price)
        position, reason = restore_health(
            portfolio, marked, cfg.health_factor_threshold, self.target_health_factor(cfg)
        )
        result = StrategyResult(positions=[position])
        if reason:
            result.should_rebalance = True
            result.rebalance_reason = reason
            sold = (marked.amount - position.amount) * price
            result.trades.append(
                self._trade(cfg.asset, TradeSide.SELL, sold, price, market_data.timestamp, pid)
            )
        return result

    def calculate_expected_yield(self, config, market_data: MarketData) -> APR:
        cfg = self.parse_config(config)
        return APR(cfg.coupon_apr * cfg.leverage - cfg.borrow_apr * (cfg.leverage - 1.0))
