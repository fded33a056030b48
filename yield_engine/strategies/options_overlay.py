"""
LP position with a covered-call overlay.

A share (``overlay_sizing``) of the LP notional backs short calls struck
``option_strike_distance`` away, rolled every ``option_tenor_days``.  The
strike must sit outside the LP range so the option only pays out after the
LP has already left its band.

    premium per roll = notional * overlay_sizing * iv_decimal * 0.01
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from ..backtest.portfolio import Portfolio, Position, PositionKind, TradeSide
from ..config import DAYS_PER_YEAR
from ..data.types import MarketData
from ..errors import ConfigurationError
from ..value_objects import APR
from .base import PriceRange, Strategy, StrategyResult

logger = logging.getLogger(__name__)

DEFAULT_IV = 50.0
PREMIUM_FACTOR = 0.01


@dataclass(frozen=True)
class OptionsOverlayConfig:
    pair: str = "ETH-USDC"
    lp_range_width: float = 0.03
    option_strike_distance: float = 0.05
    option_tenor_days: float = 7.0
    overlay_sizing: float = 0.4
    fee_apr: float = 15.0
    allocation: Optional[float] = None


class OptionsOverlayStrategy(Strategy):
    kind = "options_overlay"
    config_class = OptionsOverlayConfig
    default_allocation = 0.2

    def __init__(self, strategy_id: str, name: Optional[str] = None):
        super().__init__(strategy_id, name)
        self._last_roll: Dict[str, datetime] = {}
        self._strikes: Dict[str, float] = {}
        self._centers: Dict[str, float] = {}

    def check_config(self, cfg: OptionsOverlayConfig) -> None:
        super().check_config(cfg)
        if not 0 < cfg.lp_range_width <= 0.2:
            raise ConfigurationError(f"lp_range_width must be in (0, 0.2], got {cfg.lp_range_width}")
        if cfg.option_strike_distance <= cfg.lp_range_width:
            raise ConfigurationError(
                f"option_strike_distance ({cfg.option_strike_distance}) must exceed "
                f"lp_range_width ({cfg.lp_range_width})"
            )
        if cfg.option_tenor_days <= 0:
            raise ConfigurationError(f"option_tenor_days must be positive, got {cfg.option_tenor_days}")
        if not 0 < cfg.overlay_sizing <= 1:
            raise ConfigurationError(f"overlay_sizing must be in (0, 1], got {cfg.overlay_sizing}")
        if cfg.fee_apr < 0:
            raise ConfigurationError("fee_apr must be non-negative")

    def assets(self, config) -> List[str]:
        return [self.parse_config(config).pair]

    @staticmethod
    def options_asset(cfg: OptionsOverlayConfig) -> str:
        return f"{cfg.pair}-OPTIONS"

    @staticmethod
    def iv_decimal(market_data: MarketData) -> float:
        iv = market_data.implied_volatility
        return iv.to_decimal() if iv is not None else DEFAULT_IV / 100.0

    def premium(self, notional: float, iv_decimal: float, cfg: OptionsOverlayConfig) -> float:
        """USD premium collected per roll on ``notional`` of LP."""
        return notional * cfg.overlay_sizing * iv_decimal * PREMIUM_FACTOR

    def _write_calls(self, position: Position, cfg: OptionsOverlayConfig,
                     market_data: MarketData) -> List:
        price = market_data.price
        self._last_roll[position.id] = market_data.timestamp
        self._strikes[position.id] = price * (1.0 + cfg.option_strike_distance)
        logger.debug(
            "%s: wrote calls strike %.2f, premium %.2f", self.strategy_id,
            self._strikes[position.id],
            self.premium(position.market_value(), self.iv_decimal(market_data), cfg),
        )
        return [self._trade(
            self.options_asset(cfg), TradeSide.SELL,
            position.market_value() * cfg.overlay_sizing, price, market_data.timestamp, position.id,
        )]

    def execute(self, portfolio: Portfolio, market_data: MarketData, config) -> StrategyResult:
        cfg = self.resolve_config(config)
        pid = self.position_id(cfg.pair)
        existing = portfolio.get_position(pid)
        allocation = self.allocation_of(cfg)
        price = market_data.price

        if allocation == 0:
            self._last_roll.pop(pid, None)
            self._strikes.pop(pid, None)
            self._centers.pop(pid, None)
            trades = [self._close(existing, market_data)] if existing else []
            return StrategyResult(trades=trades)

        if existing is None:
            notional = portfolio.total_value() * allocation
            position = Position.create(
                id=pid,
                strategy_id=self.strategy_id,
                asset=cfg.pair,
                amount=notional,
                entry_price=price,
                kind=PositionKind.LP,
                opened_at=market_data.timestamp,
            )
            trades = [self._trade(cfg.pair, TradeSide.BUY, notional, price, market_data.timestamp, pid)]
            trades += self._write_calls(position, cfg, market_data)
            self._centers[pid] = price
            return StrategyResult(
                trades=trades, positions=[position],
                ranges={pid: PriceRange(price, cfg.lp_range_width)},
            )

        position = existing.update_price(price)
        result = StrategyResult(positions=[position])
        strike = self._strikes.get(pid)
        last_roll = self._last_roll.get(pid, existing.opened_at or market_data.timestamp)
        elapsed_days = (market_data.timestamp - last_roll).total_seconds() / 86400.0

        if strike is not None and price >= strike:
            result.should_rebalance = True
            result.rebalance_reason = f"{cfg.pair} {price:.2f} through call strike {strike:.2f}"
            result.trades += self._write_calls(position, cfg, market_data)
            self._centers[pid] = price
        elif strike is None or elapsed_days >= cfg.option_tenor_days:
            result.trades += self._write_calls(position, cfg, market_data)

        center = self._centers.setdefault(pid, existing.entry_price)
        result.ranges[pid] = PriceRange(center, cfg.lp_range_width)
        return result

    def calculate_expected_yield(self, config, market_data: MarketData) -> APR:
        """LP fee APR plus the annualized call premium on the overlay share."""
        cfg = self.parse_config(config)
        rolls_per_year = DAYS_PER_YEAR / cfg.option_tenor_days
        premium_apr = self.premium(100.0, self.iv_decimal(market_data), cfg) * rolls_per_year
        fee_apr = market_data.fee_apr if market_data.fee_apr is not None else cfg.fee_apr
        return APR(fee_apr + premium_apr)
