"""
Delta-neutral funding capture: long spot, short the perpetual.

Enters only when the funding rate is known and at least the threshold,
closes when funding turns negative, and holds through ticks where the
adapter has no funding data.
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
from .base import Strategy, StrategyResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FundingRateConfig:
    asset: str = "ETH"
    leverage: float = 2.0
    funding_rate_threshold: Optional[float] = None
    allocation: Optional[float] = None


class FundingRateCaptureStrategy(Strategy):
    kind = "funding_rate"
    config_class = FundingRateConfig
    default_allocation = 0.15

    def check_config(self, cfg: FundingRateConfig) -> None:
        super().check_config(cfg)
        if not 1.0 <= cfg.leverage <= 3.0:
            raise ConfigurationError(f"leverage must be in [1, 3], got {cfg.leverage}")
        if self.threshold(cfg) < 0:
            raise ConfigurationError("funding_rate_threshold must be non-negative")

    def assets(self, config) -> List[str]:
        return [self.parse_config(config).asset]

    @staticmethod
    def threshold(cfg: FundingRateConfig) -> float:
        if cfg.funding_rate_threshold is not None:
            return cfg.funding_rate_threshold
        return get_config().strategies.funding_rate_threshold

    @staticmethod
    def perp_asset(cfg: FundingRateConfig) -> str:
        return f"{cfg.asset}-PERP"

    def execute(self, portfolio: Portfolio, market_data: MarketData, config) -> StrategyResult:
        cfg = self.resolve_config(config)
        pid = self.position_id(cfg.asset)
        existing = portfolio.get_position(pid)
        funding = market_data.funding_rate
        price = market_data.price
        ts = market_data.timestamp

        if existing is not None:
            if self.allocation_of(cfg) == 0 or (funding is not None and funding.is_negative):
                if funding is not None and funding.is_negative:
                    logger.info("%s: funding %.6f turned negative, unwinding", self.strategy_id, funding.value)
                return StrategyResult(trades=[
                    self._close(existing, market_data),
                    self._trade(self.perp_asset(cfg), TradeSide.BUY, existing.market_value(), price, ts, pid),
                ])
            return StrategyResult(positions=[existing.update_price(price)])

        if self.allocation_of(cfg) == 0 or funding is None or funding.value < self.threshold(cfg):
            return StrategyResult()

        equity = portfolio.total_value() * self.allocation_of(cfg)
        notional = equity * cfg.leverage
        position = Position.create(
            id=pid,
            strategy_id=self.strategy_id,
            asset=cfg.asset,
            amount=notional,
            entry_price=price,
            collateral_amount=equity,
            borrowed_amount=notional - equity,
            kind=PositionKind.HEDGED,
            opened_at=ts,
        )
        trades = [
            self._trade(cfg.asset, TradeSide.BUY, notional, price, ts, pid),
            self._trade(self.perp_asset(cfg), TradeSide.SELL, notional, price, ts, pid),
        ]
        return StrategyResult(trades=trades, positions=[position])

    def calculate_expected_yield(self, config, market_data: MarketData) -> APR:
        cfg = self.parse_config(config)
        funding = market_data.funding_rate
        if funding is None:
            return APR(0.0)
        return APR(funding.to_apr() * cfg.leverage)
