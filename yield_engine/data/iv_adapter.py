"""
DataAdapter decorator that fills in implied volatility from realized volatility.

When the wrapped adapter has no IV for a tick, a Garman-Klass estimate over a
lookback window of candles stands in for it.  Estimates are memoized per
(asset, calendar day) in an instance-owned LRU cache; ``clear_cache()`` drops it.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple

from ..errors import ConfigurationError, DataUnavailable
from ..indicators.volatility import GarmanKlassVolatility
from ..value_objects import IV, FundingRate
from .provider_base import DataAdapter
from .types import Candle, candles_to_frame

logger = logging.getLogger(__name__)

MAX_IV = 1000.0


class IVCalculatorAdapter:
    """Wraps a DataAdapter; derives IV from OHLC ranges when the source has none.

    Parameters
    ----------
    inner : DataAdapter
        Source of prices and candles.
    lookback : timedelta
        Candle window fed to the estimator.
    period : int
        Rolling window (in bars) of the Garman-Klass estimator.
    max_entries : int
        Cache bound; the least recently used entry is evicted first.
    """

    def __init__(
        self,
        inner: DataAdapter,
        lookback: timedelta = timedelta(days=30),
        period: int = 20,
        max_entries: int = 4096,
    ):
        if max_entries < 1:
            raise ConfigurationError("max_entries must be positive")
        self.inner = inner
        self.lookback = lookback
        self.estimator = GarmanKlassVolatility(period=period)
        self.max_entries = max_entries
        self._cache: "OrderedDict[Tuple[str, date], Optional[IV]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def clear_cache(self) -> None:
        self._cache.clear()
        self.hits = 0
        self.misses = 0

    def _estimate(self, asset: str, timestamp: datetime) -> Optional[IV]:
        try:
            candles = self.inner.fetch_ohlcv(asset, timestamp - self.lookback, timestamp)
        except DataUnavailable:
            return None
        if len(candles) <= self.estimator.period:
            logger.debug("Only %d candles for %s; no IV estimate", len(candles), asset)
            return None
        vol = self.estimator.latest(candles_to_frame(candles))
        if vol is None:
            return None
        return IV(min(vol * 100.0, MAX_IV))

    def fetch_iv(self, asset: str, timestamp: datetime) -> Optional[IV]:
        try:
            iv = self.inner.fetch_iv(asset, timestamp)
        except DataUnavailable as e:
            logger.debug("Source IV unusable for %s at %s: %s", asset, timestamp, e)
            iv = None
        if iv is not None:
            return iv
        key = (asset, timestamp.date())
        if key in self._cache:
            self.hits += 1
            self._cache.move_to_end(key)
            return self._cache[key]
        self.misses += 1
        iv = self._estimate(asset, timestamp)
        self._cache[key] = iv
        if len(self._cache) > self.max_entries:
            self._cache.popitem(last=False)
        return iv

    # Pass-through fetches

    def fetch_price(self, asset: str, timestamp: datetime) -> float:
        return self.inner.fetch_price(asset, timestamp)

    def fetch_ohlcv(self, asset: str, start: datetime, end: datetime) -> List[Candle]:
        return self.inner.fetch_ohlcv(asset, start, end)

    def fetch_funding_rate(self, asset: str, timestamp: datetime) -> Optional[FundingRate]:
        return self.inner.fetch_funding_rate(asset, timestamp)

    def fetch_volume(self, asset: str, timestamp: datetime) -> float:
        return self.inner.fetch_volume(asset, timestamp)

    def fetch_fee_apr(self, asset: str, timestamp: datetime) -> Optional[float]:
        fetch = getattr(self.inner, "fetch_fee_apr", None)
        return None if fetch is None else fetch(asset, timestamp)
