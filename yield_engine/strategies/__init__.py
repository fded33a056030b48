"""
Strategy catalogue.

Every strategy implements the same capability interface
(``execute``, ``calculate_expected_yield``, ``validate_config``) and is
registered under its ``kind`` tag for config-driven construction.
"""

from typing import Dict, Optional, Type

from ..errors import ConfigurationError
from .base import PriceRange, Strategy, StrategyResult
from .funding_rate import FundingRateCaptureStrategy, FundingRateConfig
from .iv_regime_switcher import IVRegimeSwitcherConfig, IVRegimeSwitcherStrategy, classify_regime
from .leveraged_lending import LeveragedLendingConfig, LeveragedLendingStrategy, effective_leverage
from .options_overlay import OptionsOverlayConfig, OptionsOverlayStrategy
from .rwa_carry import LeveragedRWACarryStrategy, RWACarryConfig
from .stable_pair import StablePairConfig, StablePairStrategy
from .trend_aware import TrendAwareConfig, TrendAwarePairStrategy
from .volatile_pair import VolatilePairConfig, VolatilePairStrategy

STRATEGY_REGISTRY: Dict[str, Type[Strategy]] = {
    cls.kind: cls
    for cls in (
        StablePairStrategy,
        VolatilePairStrategy,
        TrendAwarePairStrategy,
        OptionsOverlayStrategy,
        LeveragedLendingStrategy,
        FundingRateCaptureStrategy,
        LeveragedRWACarryStrategy,
        IVRegimeSwitcherStrategy,
    )
}


def create_strategy(kind: str, strategy_id: str, name: Optional[str] = None) -> Strategy:
    """Instantiate a registered strategy by its ``kind`` tag."""
    try:
        cls = STRATEGY_REGISTRY[kind]
    except KeyError:
        raise ConfigurationError(
            f"Unknown strategy kind {kind!r}; expected one of {', '.join(sorted(STRATEGY_REGISTRY))}"
        ) from None
    return cls(strategy_id, name)


__all__ = [
    "STRATEGY_REGISTRY",
    "create_strategy",
    "PriceRange",
    "Strategy",
    "StrategyResult",
    "StablePairStrategy",
    "StablePairConfig",
    "VolatilePairStrategy",
    "VolatilePairConfig",
    "TrendAwarePairStrategy",
    "TrendAwareConfig",
    "OptionsOverlayStrategy",
    "OptionsOverlayConfig",
    "LeveragedLendingStrategy",
    "LeveragedLendingConfig",
    "effective_leverage",
    "FundingRateCaptureStrategy",
    "FundingRateConfig",
    "LeveragedRWACarryStrategy",
    "RWACarryConfig",
    "IVRegimeSwitcherStrategy",
    "IVRegimeSwitcherConfig",
    "classify_regime",
]
