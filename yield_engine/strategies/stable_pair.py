"""
Stable-pair liquidity provision (e.g. USDC-USDT) in a tight band around the peg.

Optionally levered: the LP notional is ``equity * leverage`` with the excess
borrowed.  Rebalance is flagged whenever the pair trades outside the band.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from ..backtest.portfolio import Portfolio, Position, PositionKind, TradeSide
from ..data.types import MarketData
from ..errors import ConfigurationError
from ..value_objects import APR
from .base import PriceRange, Strategy, StrategyResult, split_pair

logger = logging.getLogger(__name__)

PEG = 1.0


@dataclass(frozen=True)
class StablePairConfig:
    pair: str = "USDC-USDT"
    range_width: float = 0.002
    leverage: float = 1.0
    collateral_ratio: float = 1.5
    fee_apr: float = 10.0
    incentive_apr: float = 15.0
    borrow_apr: float = 3.0
    allocation: Optional[float] = None


class StablePairStrategy(Strategy):
    kind = "stable_pair"
    config_class = StablePairConfig
    default_allocation = 0.3

    def check_config(self, cfg: StablePairConfig) -> None:
        super().check_config(cfg)
        if not 0 < cfg.range_width <= 0.01:
            raise ConfigurationError(f"range_width must be in (0, 0.01], got {cfg.range_width}")
        if not 1.0 <= cfg.leverage <= 3.0:
            raise ConfigurationError(f"leverage must be in [1, 3], got {cfg.leverage}")
        if not 1.2 <= cfg.collateral_ratio <= 2.0:
            raise ConfigurationError(
                f"collateral_ratio must be in [1.2, 2.0], got {cfg.collateral_ratio}"
            )
        if cfg.leverage > 1 and cfg.leverage / (cfg.leverage - 1) < cfg.collateral_ratio:
            raise ConfigurationError(
                f"leverage {cfg.leverage} breaches collateral_ratio {cfg.collateral_ratio}"
            )
        if min(cfg.fee_apr, cfg.incentive_apr, cfg.borrow_apr) < 0:
            raise ConfigurationError("APR inputs must be non-negative")

    def assets(self, config) -> List[str]:
        return [self.parse_config(config).pair]

    def price_range(self, cfg: StablePairConfig) -> PriceRange:
        return PriceRange(PEG, cfg.range_width)

    def execute(self, portfolio: Portfolio, market_data: MarketData, config) -> StrategyResult:
        cfg = self.resolve_config(config)
        pid = self.position_id(cfg.pair)
        existing = portfolio.get_position(pid)
        allocation = self.allocation_of(cfg)
        price = market_data.price

        if allocation == 0:
            trades = [self._close(existing, market_data)] if existing else []
            return StrategyResult(trades=trades)

        band = self.price_range(cfg)
        if existing is None:
            equity = portfolio.total_value() * allocation
            notional = equity * cfg.leverage
            position = Position.create(
                id=pid,
                strategy_id=self.strategy_id,
                asset=cfg.pair,
                amount=notional,
                entry_price=price,
                collateral_amount=equity,
                borrowed_amount=equity * (cfg.leverage - 1.0),
                kind=PositionKind.LP,
                opened_at=market_data.timestamp,
            )
            base, quote = split_pair(cfg.pair)
            trades = [
                self._trade(base, TradeSide.BUY, notional / 2, price, market_data.timestamp, pid),
                self._trade(quote, TradeSide.BUY, notional / 2, PEG, market_data.timestamp, pid),
            ]
            return StrategyResult(trades=trades, positions=[position], ranges={pid: band})

        depeg = abs(price - PEG)
        result = StrategyResult(positions=[existing.update_price(price)], ranges={pid: band})
        if depeg > cfg.range_width:
            result.should_rebalance = True
            result.rebalance_reason = (
                f"{cfg.pair} depegged {depeg * 100:.3f}% (band {cfg.range_width * 100:.2f}%)"
            )
        return result

    def calculate_expected_yield(self, config, market_data: MarketData) -> APR:
        cfg = self.parse_config(config)
        fee_apr = market_data.fee_apr if market_data.fee_apr is not None else cfg.fee_apr
        gross = (fee_apr + cfg.incentive_apr) * cfg.leverage
        return APR(max(0.0, gross - cfg.borrow_apr * (cfg.leverage - 1.0)))
