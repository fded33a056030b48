"""
Structured logging for the yield engine.

Provides:
    - StructuredFormatter: JSON formatter for machine-parseable log output.
    - get_logger: Factory for structured loggers.
    - RunMetricsEmitter: Emit the end-of-run metrics and check alert thresholds.
"""
from __future__ import annotations

import json
import logging
import math
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..config import ALERT_DRAWDOWN_PCT


class StructuredFormatter(logging.Formatter):
    """JSON formatter for machine-parseable log output.

    Each record becomes a single JSON line with timestamp, level, module and
    message.  A ``metrics`` attribute (set via ``extra={"metrics": {...}}``)
    is included under the ``"metrics"`` key.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.module,
            "message": record.getMessage(),
        }
        if hasattr(record, "metrics"):
            log_entry["metrics"] = record.metrics
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def get_logger(name: str, level: str = "INFO") -> logging.Logger:
    """Get a structured logger.

    Parameters
    ----------
    name : str
        Logger name (typically ``__name__`` of the calling module).
    level : str
        Minimum log level.  One of DEBUG, INFO, WARNING, ERROR, CRITICAL.

    Returns
    -------
    logging.Logger
        Logger with a ``StructuredFormatter`` stderr handler.  Repeated calls
        do not add duplicate handlers.
    """
    logger = logging.getLogger(name)
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(numeric_level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(numeric_level)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)

    return logger


def _round(value: Optional[float], digits: int) -> Optional[float]:
    if value is None or not math.isfinite(value):
        return value
    return round(value, digits)


class RunMetricsEmitter:
    """Emit the summary of a backtest run and check alert thresholds.

    Usage::

        emitter = RunMetricsEmitter()
        emitter.emit_run_metrics(result.metrics, degraded_ticks=2, cancelled=False)
        alerts = emitter.check_alerts(max_drawdown=22.0, sharpe=-0.4, degraded_ticks=2)
    """

    def __init__(self, logger_name: str = "yield_engine.metrics",
                 alert_drawdown_pct: Optional[float] = None) -> None:
        self.logger = get_logger(logger_name)
        self.alert_drawdown_pct = (
            ALERT_DRAWDOWN_PCT if alert_drawdown_pct is None else alert_drawdown_pct
        )

    def emit_run_metrics(self, metrics: Dict[str, Any], degraded_ticks: int = 0,
                         cancelled: bool = False) -> Dict[str, Any]:
        """Log a structured metrics payload for a finished run and return it."""
        payload: Dict[str, Any] = {
            k: _round(v, 6) if isinstance(v, float) else v for k, v in metrics.items()
        }
        payload["degraded_ticks"] = degraded_ticks
        payload["cancelled"] = cancelled
        self.logger.info("run_metrics", extra={"metrics": payload})
        return payload

    def check_alerts(self, max_drawdown: float, sharpe: float,
                     degraded_ticks: int = 0) -> List[str]:
        """Check alert thresholds and log each breach.

        Parameters
        ----------
        max_drawdown : float
            Peak-to-trough drawdown in percent (25.0 == 25%).
        sharpe : float
            Per-period Sharpe ratio of the run.
        degraded_ticks : int
            Ticks on which at least one asset had no data.

        Returns
        -------
        list of str
            Human-readable alert messages for each threshold breach.
        """
        alerts: List[str] = []
        if max_drawdown > self.alert_drawdown_pct:
            alerts.append(
                f"Drawdown exceeding {self.alert_drawdown_pct:.0f}%: {max_drawdown:.2f}%"
            )
        if sharpe < 0:
            alerts.append(f"Negative Sharpe: {sharpe:.4f}")
        if degraded_ticks > 0:
            alerts.append(f"{degraded_ticks} degraded ticks (missing market data)")

        for alert in alerts:
            self.logger.warning(alert, extra={"metrics": {"alert": alert}})
        return alerts
