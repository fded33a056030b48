"""
Error taxonomy for the yield engine.

    ConfigurationError    — invalid strategy / cost-model / engine parameters (fatal)
    InsufficientDataError — too few samples for an estimator (caller falls back)
    DataUnavailable       — a single asset/tick fetch failed (tick degrades)
    ComputationError      — a numeric request that cannot produce a meaningful answer
    BacktestError         — fatal run failure, tagged with the tick and strategy
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional


class YieldEngineError(Exception):
    """Base class for all yield engine errors."""


class ConfigurationError(YieldEngineError, ValueError):
    """Raised when strategy, cost-model or engine parameters are invalid."""


class InsufficientDataError(YieldEngineError):
    """Raised when an estimator receives fewer samples than it requires."""

    def __init__(self, message: str, required: int = 0, received: int = 0):
        super().__init__(message)
        self.required = required
        self.received = received


class DataUnavailable(YieldEngineError):
    """Raised by a DataAdapter when an asset has no data for a timestamp."""

    def __init__(self, asset: str, timestamp: Optional[datetime] = None, reason: str = ""):
        msg = f"No data for {asset}"
        if timestamp is not None:
            msg += f" at {timestamp.isoformat()}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.asset = asset
        self.timestamp = timestamp


class ComputationError(YieldEngineError):
    """Raised when a computation is requested with inputs that make it meaningless."""


class BacktestError(YieldEngineError):
    """Fatal backtest failure, reported with the originating tick and strategy."""

    def __init__(self, message: str, timestamp: Optional[datetime] = None,
                 strategy_id: Optional[str] = None):
        where = []
        if strategy_id is not None:
            where.append(f"strategy={strategy_id}")
        if timestamp is not None:
            where.append(f"tick={timestamp.isoformat()}")
        if where:
            message = f"{message} ({', '.join(where)})"
        super().__init__(message)
        self.timestamp = timestamp
        self.strategy_id = strategy_id
