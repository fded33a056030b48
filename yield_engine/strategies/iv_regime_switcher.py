"""
Implied-volatility regime switcher.

Delegates to two sub-strategies and weights them by IV regime:

    low   IV  -> stable-pair LP only
    mid   IV  -> LP 60% / options overlay 40%
    high  IV  -> options overlay only

Each threshold carries a symmetric hysteresis band, and a regime must be held
for ``min_hold_days`` (measured on tick timestamps) before it can change.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..backtest.portfolio import Portfolio, TradeSide
from ..config_structured import get_config
from ..data.types import MarketData
from ..errors import ConfigurationError
from ..value_objects import APR, IV
from .base import Strategy, StrategyResult, scale_position
from .options_overlay import DEFAULT_IV, OptionsOverlayConfig, OptionsOverlayStrategy
from .stable_pair import StablePairConfig, StablePairStrategy

logger = logging.getLogger(__name__)

LOW, MID, HIGH = "low", "mid", "high"

# (lp weight, options weight)
REGIME_WEIGHTS: Dict[str, Tuple[float, float]] = {
    LOW: (1.0, 0.0),
    MID: (0.6, 0.4),
    HIGH: (0.0, 1.0),
}
REGIME_YIELDS: Dict[str, float] = {LOW: 18.0, MID: 26.0, HIGH: 35.0}


@dataclass(frozen=True)
class IVRegimeSwitcherConfig:
    lp_pair: str = "USDC-USDT"
    lp_range_width: float = 0.002
    options_pair: str = "ETH-USDC"
    options_lp_range_width: float = 0.03
    option_strike_distance: float = 0.05
    iv_low_threshold: Optional[float] = None
    iv_high_threshold: Optional[float] = None
    hysteresis: Optional[float] = None
    min_hold_days: Optional[float] = None
    allocation: Optional[float] = None

    @property
    def low(self) -> float:
        if self.iv_low_threshold is not None:
            return self.iv_low_threshold
        return get_config().strategies.iv_low_threshold

    @property
    def high(self) -> float:
        if self.iv_high_threshold is not None:
            return self.iv_high_threshold
        return get_config().strategies.iv_high_threshold

    @property
    def band(self) -> float:
        return self.hysteresis if self.hysteresis is not None else get_config().strategies.iv_hysteresis

    @property
    def hold_days(self) -> float:
        if self.min_hold_days is not None:
            return self.min_hold_days
        return get_config().strategies.iv_min_hold_days


def classify_regime(iv: float, low: float, high: float, band: float,
                    current: Optional[str] = None) -> str:
    """IV regime with hysteresis around both thresholds.

    Without a current regime the plain thresholds apply.  Leaving a regime
    requires crossing its threshold by ``band``; so does entering one.
    """
    if current is None:
        if iv < low:
            return LOW
        if iv > high:
            return HIGH
        return MID
    if current == LOW:
        if iv <= low + band:
            return LOW
        return HIGH if iv > high + band else MID
    if current == HIGH:
        if iv >= high - band:
            return HIGH
        return LOW if iv < low - band else MID
    if iv < low - band:
        return LOW
    if iv > high + band:
        return HIGH
    return MID


class IVRegimeSwitcherStrategy(Strategy):
    kind = "iv_regime_switcher"
    config_class = IVRegimeSwitcherConfig
    default_allocation = 0.3

    def __init__(self, strategy_id: str, name: Optional[str] = None):
        super().__init__(strategy_id, name)
        self.lp_strategy = StablePairStrategy(f"{strategy_id}-lp")
        self.options_strategy = OptionsOverlayStrategy(f"{strategy_id}-options")
        self.regime: Optional[str] = None
        self.last_switch: Optional[datetime] = None

    @property
    def owned_strategy_ids(self) -> Tuple[str, ...]:
        return (self.lp_strategy.strategy_id, self.options_strategy.strategy_id)

    def check_config(self, cfg: IVRegimeSwitcherConfig) -> None:
        super().check_config(cfg)
        if not 0 <= cfg.low < cfg.high:
            raise ConfigurationError(
                f"iv_low_threshold ({cfg.low}) must be below iv_high_threshold ({cfg.high})"
            )
        if cfg.band < 0 or cfg.hold_days < 0:
            raise ConfigurationError("hysteresis and min_hold_days must be non-negative")
        if cfg.low + cfg.band >= cfg.high - cfg.band:
            raise ConfigurationError("hysteresis bands around the IV thresholds overlap")
        self.lp_strategy.check_config(self._lp_config(cfg, 1.0))
        self.options_strategy.check_config(self._options_config(cfg, 1.0))

    def assets(self, config) -> List[str]:
        cfg = self.parse_config(config)
        return [cfg.options_pair, cfg.lp_pair]

    @staticmethod
    def _lp_config(cfg: IVRegimeSwitcherConfig, allocation: float) -> StablePairConfig:
        return StablePairConfig(pair=cfg.lp_pair, range_width=cfg.lp_range_width, allocation=allocation)

    @staticmethod
    def _options_config(cfg: IVRegimeSwitcherConfig, allocation: float) -> OptionsOverlayConfig:
        return OptionsOverlayConfig(
            pair=cfg.options_pair,
            lp_range_width=cfg.options_lp_range_width,
            option_strike_distance=cfg.option_strike_distance,
            allocation=allocation,
        )

    @staticmethod
    def iv_value(market_data: MarketData) -> float:
        iv: Optional[IV] = market_data.implied_volatility
        return iv.value if iv is not None else DEFAULT_IV

    # ── Regime state ─────────────────────────────────────────────────

    def update_regime(self, iv: float, timestamp: datetime, cfg: IVRegimeSwitcherConfig) -> bool:
        """Advance the regime; returns True when it switched."""
        candidate = classify_regime(iv, cfg.low, cfg.high, cfg.band, self.regime)
        if self.regime is None:
            self.regime, self.last_switch = candidate, timestamp
            logger.info("%s: initial IV regime %s (IV %.1f)", self.strategy_id, candidate, iv)
            return False
        if candidate == self.regime:
            return False
        held_days = (timestamp - self.last_switch).total_seconds() / 86400.0
        if held_days < cfg.hold_days:
            logger.debug(
                "%s: %s -> %s suppressed, held %.2f of %.2f days",
                self.strategy_id, self.regime, candidate, held_days, cfg.hold_days,
            )
            return False
        logger.info("%s: IV regime %s -> %s (IV %.1f)", self.strategy_id, self.regime, candidate, iv)
        self.regime, self.last_switch = candidate, timestamp
        return True

    # ── Capability interface ─────────────────────────────────────────

    def _run_leg(self, leg: Strategy, leg_cfg, weight: float, previous_weight: Optional[float],
                 portfolio: Portfolio, market_data: Optional[MarketData]) -> StrategyResult:
        owned = portfolio.positions_for([leg.strategy_id])
        if market_data is None:
            # No data for this leg's pair this tick: hold what it has.
            return StrategyResult(positions=owned)
        result = leg.execute(portfolio, market_data, leg_cfg)
        if weight > 0 and previous_weight and weight != previous_weight and owned:
            factor = weight / previous_weight
            resized = []
            for position in result.positions:
                scaled = scale_position(position, factor)
                delta = scaled.market_value() - position.market_value()
                side = TradeSide.BUY if delta > 0 else TradeSide.SELL
                result.trades.append(leg._trade(
                    position.asset, side, abs(delta), market_data.price,
                    market_data.timestamp, position.id,
                ))
                resized.append(scaled)
            result.positions = resized
        return result

    def execute(self, portfolio: Portfolio, market_data: MarketData, config) -> StrategyResult:
        cfg = self.resolve_config(config)
        allocation = self.allocation_of(cfg)
        previous = self.regime
        switched = self.update_regime(self.iv_value(market_data), market_data.timestamp, cfg)
        lp_weight, options_weight = REGIME_WEIGHTS[self.regime]
        prev_lp, prev_options = REGIME_WEIGHTS[previous] if switched else (None, None)

        if market_data.asset in (None, cfg.options_pair):
            options_md = market_data
        else:
            options_md = market_data.peer(cfg.options_pair)
        lp_md = market_data if market_data.asset == cfg.lp_pair else market_data.peer(cfg.lp_pair)

        lp = self._run_leg(
            self.lp_strategy, self._lp_config(cfg, allocation * lp_weight),
            lp_weight, prev_lp, portfolio, lp_md,
        )
        options = self._run_leg(
            self.options_strategy, self._options_config(cfg, allocation * options_weight),
            options_weight, prev_options, portfolio, options_md,
        )
        result = lp.merge(options)
        if switched:
            result.should_rebalance = True
            reason = f"IV regime {previous} -> {self.regime}"
            result.rebalance_reason = "; ".join(filter(None, [reason, result.rebalance_reason]))
        return result

    def calculate_expected_yield(self, config, market_data: MarketData) -> APR:
        cfg = self.parse_config(config)
        regime = self.regime or classify_regime(self.iv_value(market_data), cfg.low, cfg.high, cfg.band)
        return APR(REGIME_YIELDS[regime])
