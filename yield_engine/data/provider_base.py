"""
Protocol for the market-data collaborators the backtest engine consumes.
"""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from ..value_objects import IV, FundingRate
from .types import Candle


class DataAdapter(Protocol):
    """Minimal interface expected from pluggable market-data adapters.

    ``fetch_price`` raises :class:`~yield_engine.errors.DataUnavailable` when
    nothing is known for the asset at that time.  Funding rate and IV are
    optional per adapter: ``None`` is a valid, non-error response.

    Adapters may additionally implement ``fetch_fee_apr(asset, timestamp)``;
    the engine calls it only when fee realism is enabled.
    """

    def fetch_price(self, asset: str, timestamp: datetime) -> float:
        ...

    def fetch_ohlcv(self, asset: str, start: datetime, end: datetime) -> List[Candle]:
        ...

    def fetch_funding_rate(self, asset: str, timestamp: datetime) -> Optional[FundingRate]:
        ...

    def fetch_iv(self, asset: str, timestamp: datetime) -> Optional[IV]:
        ...

    def fetch_volume(self, asset: str, timestamp: datetime) -> float:
        ...
