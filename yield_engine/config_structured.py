"""
Structured configuration for the yield engine using typed dataclasses.

This is the AUTHORITATIVE source of truth for all configuration values.
``config.py`` derives its flat constants from here.

Each subsystem gets its own dataclass; ``SystemConfig`` aggregates them.

Usage:
    from yield_engine.config_structured import get_config
    cfg = get_config()
    cfg.range_optimizer.fee_density_exponent
    cfg.costs.slippage_bps

Overrides can be loaded from YAML:

    from yield_engine.config_structured import load_config
    cfg = load_config("backtest.yaml")          # also installs the singleton
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml

from .errors import ConfigurationError


# ── Range Optimizer ───────────────────────────────────────────────────


@dataclass
class RangeOptimizerConfig:
    """Calibration constants for the range-width optimizer.

    The defaults were fitted against historical backtests; no reproducible
    calibration procedure ships with the engine, so they stay overridable.
    """
    reference_width: float = 0.05            # width at which fee density == 1.0
    fee_density_exponent: float = 0.8
    rebalance_frequency_scalar: float = 1.20
    rebalance_trigger_fraction: float = 0.95  # rebalance before the range is fully exited
    grid_steps: int = 100
    default_volatility: float = 0.6
    efficiency_floor: float = 0.10
    efficiency_cap: float = 0.98

    def __post_init__(self):
        if self.reference_width <= 0:
            raise ValueError(f"reference_width must be positive, got {self.reference_width}")
        if not 0 < self.fee_density_exponent <= 2:
            raise ValueError(
                f"fee_density_exponent must be in (0, 2], got {self.fee_density_exponent}"
            )
        if self.rebalance_frequency_scalar <= 0:
            raise ValueError("rebalance_frequency_scalar must be positive")
        if not 0 < self.rebalance_trigger_fraction <= 1:
            raise ValueError(
                f"rebalance_trigger_fraction must be in (0, 1], got {self.rebalance_trigger_fraction}"
            )
        if not isinstance(self.grid_steps, int) or self.grid_steps < 1:
            raise ValueError(f"grid_steps must be a positive integer, got {self.grid_steps}")
        if not 0 <= self.efficiency_floor < self.efficiency_cap <= 1:
            raise ValueError("efficiency bounds must satisfy 0 <= floor < cap <= 1")


# ── Estimators ────────────────────────────────────────────────────────


@dataclass
class EstimatorConfig:
    """Volatility / regime estimator parameters."""
    garch_min_samples: int = 30
    garch_alphas: Tuple[float, ...] = (0.05, 0.10, 0.15, 0.20)
    garch_betas: Tuple[float, ...] = (0.70, 0.75, 0.80, 0.85, 0.90, 0.95)
    analyst_min_candles: int = 10
    periods_per_year: float = 365.0 * 24.0   # hourly candles unless inferred otherwise
    drift_cap: float = 0.20
    hurst_trending: float = 0.55
    hurst_mean_reverting: float = 0.45
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9

    def __post_init__(self):
        self.garch_alphas = tuple(float(a) for a in self.garch_alphas)
        self.garch_betas = tuple(float(b) for b in self.garch_betas)
        if self.garch_min_samples < 2:
            raise ValueError("garch_min_samples must be at least 2")
        if not self.garch_alphas or not self.garch_betas:
            raise ValueError("GARCH parameter grids must be non-empty")
        if any(a <= 0 for a in self.garch_alphas) or any(b <= 0 for b in self.garch_betas):
            raise ValueError("GARCH grid values must be positive")
        if self.analyst_min_candles < 3:
            raise ValueError("analyst_min_candles must be at least 3")
        if self.periods_per_year <= 0:
            raise ValueError("periods_per_year must be positive")
        if self.drift_cap <= 0:
            raise ValueError("drift_cap must be positive")
        if not self.hurst_mean_reverting < self.hurst_trending:
            raise ValueError("hurst_mean_reverting must be below hurst_trending")
        if not 0 < self.macd_fast < self.macd_slow:
            raise ValueError("MACD fast period must be positive and below the slow period")
        if self.macd_signal < 1:
            raise ValueError("macd_signal must be positive")


# ── Costs ─────────────────────────────────────────────────────────────


@dataclass
class CostConfig:
    """Transaction cost defaults."""
    slippage_bps: float = 10.0
    gas_cost_usd: float = 50.0
    pool_fee_swap_fraction: float = 0.5      # share of position value swapped per rebalance
    fallback_gas_price_gwei: float = 0.1

    def __post_init__(self):
        if self.slippage_bps < 0:
            raise ValueError(f"slippage_bps must be non-negative, got {self.slippage_bps}")
        if self.gas_cost_usd < 0:
            raise ValueError(f"gas_cost_usd must be non-negative, got {self.gas_cost_usd}")
        if not 0 <= self.pool_fee_swap_fraction <= 1:
            raise ValueError("pool_fee_swap_fraction must be in [0, 1]")
        if self.fallback_gas_price_gwei < 0:
            raise ValueError("fallback_gas_price_gwei must be non-negative")


@dataclass
class GasConfig:
    """Live gas-price lookup."""
    request_timeout_s: float = 5.0
    cache_ttl_seconds: float = 300.0

    def __post_init__(self):
        if self.request_timeout_s <= 0:
            raise ValueError("request_timeout_s must be positive")
        if self.cache_ttl_seconds < 0:
            raise ValueError("cache_ttl_seconds must be non-negative")


# ── Strategies ────────────────────────────────────────────────────────


@dataclass
class StrategyDefaultsConfig:
    """Defaults shared by the strategy catalogue."""
    rebalance_threshold: float = 0.9
    health_factor_threshold: float = 1.5
    funding_rate_threshold: float = 0.0001
    iv_low_threshold: float = 30.0
    iv_high_threshold: float = 70.0
    iv_hysteresis: float = 5.0
    iv_min_hold_days: float = 3.0
    trend_lookback: int = 72

    def __post_init__(self):
        if not 0 < self.rebalance_threshold <= 1:
            raise ValueError(
                f"rebalance_threshold must be in (0, 1], got {self.rebalance_threshold}"
            )
        if self.health_factor_threshold <= 0:
            raise ValueError("health_factor_threshold must be positive")
        if self.funding_rate_threshold < 0:
            raise ValueError("funding_rate_threshold must be non-negative")
        if not 0 <= self.iv_low_threshold < self.iv_high_threshold:
            raise ValueError("iv_low_threshold must be below iv_high_threshold")
        if self.iv_hysteresis < 0 or self.iv_min_hold_days < 0:
            raise ValueError("iv_hysteresis and iv_min_hold_days must be non-negative")
        if self.trend_lookback < 10:
            raise ValueError("trend_lookback must be at least 10 ticks")


# ── Risk ──────────────────────────────────────────────────────────────


@dataclass
class RiskConfig:
    """Post-hoc risk metrics and rebalance-rule thresholds."""
    risk_free_rate: float = 0.0              # per-period
    var_confidence: float = 0.95
    max_leverage: float = 3.0
    min_health_factor: float = 1.5
    max_drawdown_pct: float = 25.0
    alert_drawdown_pct: float = 20.0

    def __post_init__(self):
        if not 0.5 < self.var_confidence < 1:
            raise ValueError(f"var_confidence must be in (0.5, 1), got {self.var_confidence}")
        if self.max_leverage < 1:
            raise ValueError("max_leverage must be >= 1")
        if self.min_health_factor <= 0:
            raise ValueError("min_health_factor must be positive")
        if not 0 < self.max_drawdown_pct <= 100 or not 0 < self.alert_drawdown_pct <= 100:
            raise ValueError("drawdown thresholds must be percentages in (0, 100]")


# ── Engine ────────────────────────────────────────────────────────────


@dataclass
class EngineConfig:
    """Backtest driver defaults."""
    step_hours: float = 24.0
    use_real_fees: bool = False
    apply_il: bool = True
    apply_costs: bool = True

    def __post_init__(self):
        if self.step_hours <= 0:
            raise ValueError(f"step_hours must be positive, got {self.step_hours}")


@dataclass
class SystemConfig:
    """Top-level configuration aggregating all subsystems."""

    range_optimizer: RangeOptimizerConfig = field(default_factory=RangeOptimizerConfig)
    estimators: EstimatorConfig = field(default_factory=EstimatorConfig)
    costs: CostConfig = field(default_factory=CostConfig)
    gas: GasConfig = field(default_factory=GasConfig)
    strategies: StrategyDefaultsConfig = field(default_factory=StrategyDefaultsConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)


# ── YAML loading ────────────────────────────────────────────────────


def config_from_mapping(data: Dict[str, Any]) -> SystemConfig:
    """Build a SystemConfig from a nested mapping of section -> overrides."""
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a mapping at the top level.")

    section_types = {f.name: f.default_factory for f in fields(SystemConfig)}
    sections = {}
    for name, overrides in data.items():
        if name not in section_types:
            raise ConfigurationError(
                f"Unknown configuration section '{name}'. "
                f"Expected one of: {', '.join(sorted(section_types))}"
            )
        if overrides is None:
            continue
        if not isinstance(overrides, dict):
            raise ConfigurationError(f"Section '{name}' must be a mapping")
        section_cls = section_types[name]
        known = {f.name for f in fields(section_cls)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown keys in section '{name}': {', '.join(sorted(unknown))}"
            )
        try:
            sections[name] = section_cls(**overrides)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid '{name}' configuration: {e}") from e
    return SystemConfig(**sections)


def load_config(path: Union[str, Path], install: bool = True) -> SystemConfig:
    """Load overrides from a YAML file.

    Args:
        path: YAML file whose top-level keys are SystemConfig section names.
        install: When True, the loaded config replaces the module singleton.

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Config file not found at {path}")
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse {path.name}: {e}") from e

    cfg = config_from_mapping(data or {})
    if install:
        global _CONFIG
        _CONFIG = cfg
    return cfg


# ── Module-level singleton ──────────────────────────────────────────

_CONFIG: Optional[SystemConfig] = None


def get_config() -> SystemConfig:
    """Return the singleton SystemConfig instance.

    On first call, instantiates the default SystemConfig. Subsequent
    calls return the same instance so all callers share one source of
    truth.
    """
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = SystemConfig()
    return _CONFIG


def reset_config() -> None:
    """Drop the singleton so the next get_config() rebuilds defaults."""
    global _CONFIG
    _CONFIG = None
