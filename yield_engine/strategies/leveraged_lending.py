"""
Recursive lending loop: supply, borrow at ``ltv``, resupply, ``loops`` times.

Effective leverage of an n-loop position::

    L = 1 / (1 - ltv * (n - 1) / n)

The supplied asset is held as a spot position (units of the asset) against a
USD-denominated debt, so price drops erode the health factor.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from ..backtest.portfolio import Portfolio, Position, PositionKind, TradeSide
from ..config_structured import get_config
from ..data.types import MarketData
from ..errors import ConfigurationError
from ..value_objects import APR
from .base import Strategy, StrategyResult, restore_health

logger = logging.getLogger(__name__)


def effective_leverage(loops: int, ltv: float) -> float:
    return 1.0 / (1.0 - ltv * (loops - 1) / loops)


@dataclass(frozen=True)
class LeveragedLendingConfig:
    asset: str = "ETH"
    loops: int = 3
    ltv: float = 0.8
    supply_apr: float = 6.0
    incentive_apr: float = 10.0
    borrow_apr: float = 8.0
    health_factor_threshold: Optional[float] = None
    allocation: Optional[float] = None


class LeveragedLendingStrategy(Strategy):
    kind = "leveraged_lending"
    config_class = LeveragedLendingConfig
    default_allocation = 0.2

    def check_config(self, cfg: LeveragedLendingConfig) -> None:
        super().check_config(cfg)
        if not isinstance(cfg.loops, int) or not 2 <= cfg.loops <= 5:
            raise ConfigurationError(f"loops must be an integer in [2, 5], got {cfg.loops}")
        if not 0 < cfg.ltv < 1:
            raise ConfigurationError(f"ltv must be in (0, 1), got {cfg.ltv}")
        if min(cfg.supply_apr, cfg.incentive_apr, cfg.borrow_apr) < 0:
            raise ConfigurationError("APR inputs must be non-negative")
        threshold = self.threshold(cfg)
        if threshold <= 1:
            raise ConfigurationError(f"health_factor_threshold must exceed 1, got {threshold}")
        if self.target_health_factor(cfg) < threshold:
            raise ConfigurationError(
                f"{cfg.loops} loops at ltv {cfg.ltv} open below health factor {threshold}"
            )

    def assets(self, config) -> List[str]:
        return [self.parse_config(config).asset]

    @staticmethod
    def threshold(cfg: LeveragedLendingConfig) -> float:
        if cfg.health_factor_threshold is not None:
            return cfg.health_factor_threshold
        return get_config().strategies.health_factor_threshold

    @staticmethod
    def target_health_factor(cfg: LeveragedLendingConfig) -> float:
        lev = effective_leverage(cfg.loops, cfg.ltv)
        return lev / (lev - 1.0)

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
            lev = effective_leverage(cfg.loops, cfg.ltv)
            notional = equity * lev
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
            portfolio, marked, self.threshold(cfg), self.target_health_factor(cfg)
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
        lev = effective_leverage(cfg.loops, cfg.ltv)
        return APR((cfg.supply_apr + cfg.incentive_apr) * lev - cfg.borrow_apr * (lev - 1.0))
