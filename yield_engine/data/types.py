"""
Market data records shared by adapters, estimators and strategies.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Mapping, Optional, Sequence

import pandas as pd

from ..value_objects import IV, FundingRate

OHLCV_COLUMNS = ["open", "high", "low", "close", "volume"]


@dataclass(frozen=True)
class Candle:
    """One OHLCV bar.  Immutable once produced."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def __post_init__(self):
        for name in ("open", "high", "low", "close"):
            value = getattr(self, name)
            if not math.isfinite(value) or value <= 0:
                raise ValueError(f"Candle {name} must be a positive finite price, got {value}")
        if self.high < self.low:
            raise ValueError(f"Candle high {self.high} is below low {self.low}")
        if self.volume < 0:
            raise ValueError(f"Candle volume cannot be negative, got {self.volume}")


@dataclass(frozen=True)
class MarketData:
    """Tick snapshot passed to exactly one strategy invocation.

    ``implied_volatility``, ``funding_rate``, ``volume`` and ``fee_apr`` are
    optional: ``None`` means the adapter had nothing for this tick.  ``peers``
    holds the same tick's snapshots for the other configured assets.
    """
    timestamp: datetime
    price: float
    asset: Optional[str] = None
    volume: Optional[float] = None
    implied_volatility: Optional[IV] = None
    funding_rate: Optional[FundingRate] = None
    fee_apr: Optional[float] = None
    peers: Mapping[str, "MarketData"] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self):
        if not math.isfinite(self.price) or self.price <= 0:
            raise ValueError(f"MarketData price must be positive and finite, got {self.price}")

    def peer(self, asset: str) -> Optional["MarketData"]:
        """Snapshot for another asset at the same tick, or None."""
        if asset == self.asset:
            return self
        return self.peers.get(asset)

    def with_price(self, price: float) -> "MarketData":
        return replace(self, price=price)


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    """Candles -> DataFrame with a DatetimeIndex and lowercase OHLCV columns."""
    if not candles:
        return pd.DataFrame(columns=OHLCV_COLUMNS, index=pd.DatetimeIndex([], name="timestamp"))
    df = pd.DataFrame(
        [[c.open, c.high, c.low, c.close, c.volume] for c in candles],
        columns=OHLCV_COLUMNS,
        index=pd.DatetimeIndex([c.timestamp for c in candles], name="timestamp"),
    )
    return df.sort_index()


def frame_to_candles(df: pd.DataFrame) -> List[Candle]:
    """Inverse of :func:`candles_to_frame`.  Rows with missing prices are dropped."""
    out: List[Candle] = []
    clean = df.dropna(subset=["open", "high", "low", "close"])
    for ts, row in clean.iterrows():
        out.append(Candle(
            timestamp=pd.Timestamp(ts).to_pydatetime(),
            open=float(row["open"]),
            high=float(row["high"]),
            low=float(row["low"]),
            close=float(row["close"]),
            volume=0.0 if pd.isna(row.get("volume")) else float(row["volume"]),
        ))
    return out
