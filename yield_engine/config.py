"""
Central configuration for the yield engine.

Flat-constant interface.  Every value is derived from the structured config
singleton in ``config_structured.py`` so there is a single source of truth.
Components that must honour a YAML override loaded at runtime read
``get_config()`` when they are constructed; the constants below are fixed
at import time.

Config Status Legend
====================
  ACTIVE      — Imported and used by running code.
  PLACEHOLDER — Defined for future use; safe to change.

Search for ``# STATUS:`` to locate all annotations.
"""
from pathlib import Path

from .config_structured import get_config as _get_config

_cfg = _get_config()

# ── Paths ──────────────────────────────────────────────────────────────
ROOT_DIR = Path(__file__).parent                  # STATUS: ACTIVE — package root
DATA_DIR = ROOT_DIR.parent / "data_files"         # STATUS: PLACEHOLDER — default CSV directory for DataFrameAdapter.from_csv_dir

# ── Time ──────────────────────────────────────────────────────────────
HOURS_PER_YEAR = 365.0 * 24.0                     # STATUS: ACTIVE — annualization for hourly accrual
DAYS_PER_YEAR = 365.0                             # STATUS: ACTIVE — APR period returns

# ── Range Optimizer ───────────────────────────────────────────────────
RANGE_REFERENCE_WIDTH = _cfg.range_optimizer.reference_width                 # STATUS: ACTIVE — risk/range_optimizer.py
RANGE_FEE_DENSITY_EXPONENT = _cfg.range_optimizer.fee_density_exponent       # STATUS: ACTIVE — risk/range_optimizer.py
RANGE_REBALANCE_SCALAR = _cfg.range_optimizer.rebalance_frequency_scalar     # STATUS: ACTIVE — risk/range_optimizer.py
RANGE_TRIGGER_FRACTION = _cfg.range_optimizer.rebalance_trigger_fraction     # STATUS: ACTIVE — risk/range_optimizer.py
RANGE_GRID_STEPS = _cfg.range_optimizer.grid_steps                           # STATUS: ACTIVE — risk/range_optimizer.py

# ── Estimators ────────────────────────────────────────────────────────
GARCH_MIN_SAMPLES = _cfg.estimators.garch_min_samples        # STATUS: ACTIVE — regime/garch.py sample floor
ANALYST_MIN_CANDLES = _cfg.estimators.analyst_min_candles    # STATUS: ACTIVE — regime/analyst.py candle floor
PERIODS_PER_YEAR = _cfg.estimators.periods_per_year          # STATUS: ACTIVE — fallback annualization when spacing is unknown
DRIFT_CAP = _cfg.estimators.drift_cap                        # STATUS: ACTIVE — annual drift magnitude cap
HURST_TRENDING = _cfg.estimators.hurst_trending              # STATUS: ACTIVE — value_objects.HurstExponent
HURST_MEAN_REVERTING = _cfg.estimators.hurst_mean_reverting  # STATUS: ACTIVE — value_objects.HurstExponent

# ── Costs ─────────────────────────────────────────────────────────────
DEFAULT_SLIPPAGE_BPS = _cfg.costs.slippage_bps               # STATUS: ACTIVE — backtest/costs.py
POOL_FEE_SWAP_FRACTION = _cfg.costs.pool_fee_swap_fraction   # STATUS: ACTIVE — swap notional share per rebalance
FALLBACK_GAS_PRICE_GWEI = _cfg.costs.fallback_gas_price_gwei  # STATUS: ACTIVE — used when a network has no default
GAS_REQUEST_TIMEOUT_S = _cfg.gas.request_timeout_s           # STATUS: ACTIVE — backtest/gas_price.py
GAS_CACHE_TTL_SECONDS = _cfg.gas.cache_ttl_seconds           # STATUS: ACTIVE — backtest/gas_price.py

# ── Strategies ────────────────────────────────────────────────────────
# Strategy defaults are read from get_config().strategies when a strategy
# resolves its config, so a YAML override loaded at runtime reaches them.

# ── Risk ──────────────────────────────────────────────────────────────
RISK_FREE_RATE = _cfg.risk.risk_free_rate          # STATUS: ACTIVE — per-period, Sharpe/Sortino
VAR_CONFIDENCE = _cfg.risk.var_confidence          # STATUS: ACTIVE — historical/parametric VaR
MAX_LEVERAGE = _cfg.risk.max_leverage              # STATUS: ACTIVE — rebalance rules
MIN_HEALTH_FACTOR = _cfg.risk.min_health_factor    # STATUS: ACTIVE — rebalance rules
MAX_DRAWDOWN_PCT = _cfg.risk.max_drawdown_pct      # STATUS: ACTIVE — rebalance rules
ALERT_DRAWDOWN_PCT = _cfg.risk.alert_drawdown_pct  # STATUS: ACTIVE — utils/logging.RunMetricsEmitter

# ── Engine ────────────────────────────────────────────────────────────
DEFAULT_STEP_HOURS = _cfg.engine.step_hours        # STATUS: ACTIVE — backtest/engine.py tick size
USE_REAL_FEES = _cfg.engine.use_real_fees          # STATUS: ACTIVE — backtest/engine.py
APPLY_IL = _cfg.engine.apply_il                    # STATUS: ACTIVE — backtest/engine.py
APPLY_COSTS = _cfg.engine.apply_costs              # STATUS: ACTIVE — backtest/engine.py


def validate_config() -> list:
    """Check config for common misconfigurations.

    Returns a list of dicts: [{"level": "WARNING"|"ERROR", "message": str}].
    """
    cfg = _get_config()
    issues = []

    # 1. Calibration constants moved away from their fitted values
    ro = cfg.range_optimizer
    if (ro.fee_density_exponent, ro.rebalance_frequency_scalar, ro.rebalance_trigger_fraction) != (
        0.8, 1.20, 0.95,
    ):
        issues.append({
            "level": "WARNING",
            "message": (
                "Range optimizer calibration constants differ from the fitted defaults "
                f"(exponent={ro.fee_density_exponent}, scalar={ro.rebalance_frequency_scalar}, "
                f"trigger={ro.rebalance_trigger_fraction}). Results are not comparable "
                "with previously published optimizer output."
            ),
        })

    # 2. Coarse optimizer grid
    if ro.grid_steps < 20:
        issues.append({
            "level": "WARNING",
            "message": (
                f"range_optimizer.grid_steps={ro.grid_steps} is coarse; "
                "the piecewise efficiency curve may be under-sampled."
            ),
        })

    # 3. GARCH grid containing non-stationary combinations only
    est = cfg.estimators
    if not any(a + b < 1 for a in est.garch_alphas for b in est.garch_betas):
        issues.append({
            "level": "ERROR",
            "message": "Every GARCH (alpha, beta) pair has alpha + beta >= 1; no stationary fit is possible.",
        })

    # 4. MACD needs more history than the analyst floor
    if est.macd_slow > cfg.strategies.trend_lookback:
        issues.append({
            "level": "WARNING",
            "message": (
                f"strategies.trend_lookback={cfg.strategies.trend_lookback} is shorter than "
                f"macd_slow={est.macd_slow}; the trend-aware strategy will only ever see a neutral MACD."
            ),
        })

    # 5. Minimum health factor below insolvency
    if cfg.risk.min_health_factor < 1.0:
        issues.append({
            "level": "ERROR",
            "message": (
                f"risk.min_health_factor={cfg.risk.min_health_factor} is below 1.0; "
                "positions would only be flagged after becoming insolvent."
            ),
        })

    # 6. Alert fires after the rule engine already acted
    if cfg.risk.alert_drawdown_pct > cfg.risk.max_drawdown_pct:
        issues.append({
            "level": "WARNING",
            "message": "risk.alert_drawdown_pct exceeds risk.max_drawdown_pct; drawdown alerts arrive late.",
        })

    return issues
