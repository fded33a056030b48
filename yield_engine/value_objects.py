"""
Immutable scalar value objects.

Construction is the only validation point: every object rejects
out-of-range input in ``__post_init__`` and is frozen afterwards.
"""
from __future__ import annotations

import math
import numbers
from dataclasses import dataclass

from .config import DAYS_PER_YEAR, DRIFT_CAP, HURST_MEAN_REVERTING, HURST_TRENDING

FUNDING_PERIODS_PER_DAY = 3  # 8-hour perpetual funding intervals


def _require_number(name: str, value: float) -> None:
    if not isinstance(value, numbers.Real) or math.isnan(value):
        raise ValueError(f"{name} must be a number, got {value!r}")


@dataclass(frozen=True)
class Volatility:
    """Annualized volatility as a decimal (0.6 == 60%)."""
    value: float

    def __post_init__(self):
        _require_number("Volatility", self.value)
        if self.value < 0:
            raise ValueError(f"Volatility cannot be negative, got {self.value}")

    @property
    def annualized(self) -> float:
        return float(self.value)

    def to_percent(self) -> float:
        return self.value * 100.0


@dataclass(frozen=True)
class HurstExponent:
    """Rescaled-range statistic; >0.55 trending, <0.45 mean-reverting."""
    value: float

    def __post_init__(self):
        _require_number("HurstExponent", self.value)
        if not 0.0 <= self.value <= 1.0:
            raise ValueError(f"Hurst exponent must be in [0, 1], got {self.value}")

    @property
    def is_trending(self) -> bool:
        return self.value > HURST_TRENDING

    @property
    def is_mean_reverting(self) -> bool:
        return self.value < HURST_MEAN_REVERTING

    @property
    def is_random_walk(self) -> bool:
        return not (self.is_trending or self.is_mean_reverting)


@dataclass(frozen=True)
class DriftVelocity:
    """Annualized directional drift (decimal, signed)."""
    value: float

    def __post_init__(self):
        _require_number("DriftVelocity", self.value)
        if math.isinf(self.value):
            raise ValueError("DriftVelocity must be finite")

    @property
    def clamped_value(self) -> float:
        """Magnitude capped at DRIFT_CAP, sign preserved."""
        return math.copysign(min(DRIFT_CAP, abs(self.value)), self.value)

    @property
    def is_trending_up(self) -> bool:
        return self.value > 0

    @property
    def is_trending_down(self) -> bool:
        return self.value < 0


@dataclass(frozen=True)
class MACD:
    macd_line: float
    signal_line: float
    histogram: float

    def __post_init__(self):
        for name in ("macd_line", "signal_line", "histogram"):
            _require_number(name, getattr(self, name))

    @classmethod
    def neutral(cls) -> "MACD":
        return cls(0.0, 0.0, 0.0)

    @property
    def is_bullish(self) -> bool:
        return self.histogram > 0

    @property
    def is_bearish(self) -> bool:
        return self.histogram < 0


@dataclass(frozen=True)
class HealthFactor:
    """Collateral value / debt value.  ``inf`` when there is no debt."""
    value: float

    def __post_init__(self):
        _require_number("HealthFactor", self.value)
        if self.value <= 0:
            raise ValueError(f"Health factor must be positive, got {self.value}")

    @classmethod
    def unleveraged(cls) -> "HealthFactor":
        return cls(math.inf)

    def is_healthy(self, threshold: float = 1.0) -> bool:
        return self.value >= threshold

    def is_at_risk(self, threshold: float = 1.5) -> bool:
        return self.value < threshold


@dataclass(frozen=True)
class FundingRate:
    """Perpetual funding rate per 8-hour period, as a decimal."""
    value: float

    def __post_init__(self):
        _require_number("FundingRate", self.value)
        if math.isinf(self.value):
            raise ValueError("FundingRate must be finite")

    @classmethod
    def from_basis_points(cls, bps: float) -> "FundingRate":
        return cls(bps / 10_000.0)

    def to_apr(self) -> float:
        """Annualized rate in percent."""
        return self.value * FUNDING_PERIODS_PER_DAY * DAYS_PER_YEAR * 100.0

    @property
    def is_positive(self) -> bool:
        return self.value > 0

    @property
    def is_negative(self) -> bool:
        return self.value < 0


@dataclass(frozen=True)
class Delta:
    """Net directional exposure as a fraction of notional."""
    value: float

    def __post_init__(self):
        _require_number("Delta", self.value)

    def add(self, other: "Delta") -> "Delta":
        return Delta(self.value + other.value)

    def subtract(self, other: "Delta") -> "Delta":
        return Delta(self.value - other.value)

    def is_neutral(self, tolerance: float = 0.01) -> bool:
        return abs(self.value) <= tolerance


@dataclass(frozen=True)
class APR:
    """Simple (non-compounding) annual rate in percent."""
    value: float

    def __post_init__(self):
        _require_number("APR", self.value)
        if math.isinf(self.value):
            raise ValueError("APR must be finite")

    @classmethod
    def from_decimal(cls, decimal: float) -> "APR":
        return cls(decimal * 100.0)

    def to_decimal(self) -> float:
        return self.value / 100.0

    def period_return(self, days: float) -> float:
        """Decimal return accrued over ``days`` at this rate."""
        return self.to_decimal() * days / DAYS_PER_YEAR


@dataclass(frozen=True)
class IV:
    """Implied volatility in percent points (50.0 == 50%)."""
    value: float

    def __post_init__(self):
        _require_number("IV", self.value)
        if not 0.0 <= self.value <= 1000.0:
            raise ValueError(f"IV must be in [0, 1000], got {self.value}")

    def is_low(self, threshold: float = 30.0) -> bool:
        return self.value < threshold

    def is_high(self, threshold: float = 70.0) -> bool:
        return self.value > threshold

    def is_mid(self, low: float = 30.0, high: float = 70.0) -> bool:
        return low <= self.value <= high

    def to_decimal(self) -> float:
        return self.value / 100.0
