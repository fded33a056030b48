"""
In-memory DataAdapter backed by pandas OHLCV frames.

Each asset maps to a frame with a DatetimeIndex and lowercase columns
``open, high, low, close, volume``; optional ``funding_rate``, ``iv`` and
``fee_apr`` columns feed the optional fetches.  Lookups are as-of: the last
bar at or before the requested timestamp.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

import pandas as pd

from ..errors import DataUnavailable
from ..value_objects import IV, FundingRate
from .types import OHLCV_COLUMNS, Candle, candles_to_frame, frame_to_candles

logger = logging.getLogger(__name__)

OPTIONAL_COLUMNS = ["funding_rate", "iv", "fee_apr"]
DATE_COLUMNS = ["timestamp", "date", "datetime", "time"]


def asset_file_stem(asset: str) -> str:
    """``ETH/USDC`` -> ``ETH-USDC`` (file-system safe)."""
    return asset.replace("/", "-")


def _to_naive_utc(ts) -> pd.Timestamp:
    ts = pd.Timestamp(ts)
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts


def _normalize_frame(df: pd.DataFrame, asset: str) -> pd.DataFrame:
    """Lowercase columns, build a sorted naive-UTC DatetimeIndex, fill OHLC from close."""
    out = df.rename(columns={c: str(c).strip().lower() for c in df.columns})
    if not isinstance(out.index, pd.DatetimeIndex):
        date_col = next((c for c in DATE_COLUMNS if c in out.columns), None)
        if date_col is None:
            raise ValueError(f"Frame for {asset} has no DatetimeIndex or timestamp column")
        raw = out.pop(date_col)
        if pd.api.types.is_numeric_dtype(raw):
            stamps = pd.to_datetime(raw, unit="ms", utc=True)
        else:
            stamps = pd.to_datetime(raw, errors="coerce", utc=True)
        out.index = pd.DatetimeIndex(stamps)
    if out.index.tz is not None:
        out.index = out.index.tz_convert("UTC").tz_localize(None)
    out = out[~out.index.isna()]
    if "close" not in out.columns:
        raise ValueError(f"Frame for {asset} has no 'close' column")
    for col in ("open", "high", "low"):
        if col not in out.columns:
            out[col] = out["close"]
    if "volume" not in out.columns:
        out["volume"] = 0.0
    keep = OHLCV_COLUMNS + [c for c in OPTIONAL_COLUMNS if c in out.columns]
    out = out[keep].sort_index()
    out = out[~out.index.duplicated(keep="last")]
    out = out.dropna(subset=["close"])
    out = out[out["close"] > 0]
    return out


class DataFrameAdapter:
    """DataAdapter over a mapping of asset -> OHLCV DataFrame.

    Parameters
    ----------
    frames : mapping of str to DataFrame
        One frame per asset.
    max_staleness : timedelta, optional
        When set, a bar older than this relative to the requested timestamp
        counts as unavailable rather than being carried forward.
    """

    def __init__(
        self,
        frames: Mapping[str, pd.DataFrame],
        max_staleness: Optional[timedelta] = None,
    ):
        self._frames: Dict[str, pd.DataFrame] = {
            asset: _normalize_frame(df, asset) for asset, df in frames.items()
        }
        self.max_staleness = max_staleness

    @classmethod
    def from_candles(
        cls,
        candles: Mapping[str, Sequence[Candle]],
        max_staleness: Optional[timedelta] = None,
    ) -> "DataFrameAdapter":
        return cls({asset: candles_to_frame(list(c)) for asset, c in candles.items()}, max_staleness)

    @classmethod
    def from_csv_dir(
        cls,
        directory: Union[str, Path],
        assets: Optional[Iterable[str]] = None,
        max_staleness: Optional[timedelta] = None,
    ) -> "DataFrameAdapter":
        """Load ``<asset>.csv`` files (``/`` in asset names replaced by ``-``)."""
        directory = Path(directory)
        frames: Dict[str, pd.DataFrame] = {}
        if assets is None:
            paths = {p.stem: p for p in sorted(directory.glob("*.csv"))}
        else:
            paths = {a: directory / f"{asset_file_stem(a)}.csv" for a in assets}
        for asset, path in paths.items():
            try:
                frames[asset] = pd.read_csv(path)
            except (OSError, pd.errors.ParserError, UnicodeDecodeError) as e:
                logger.warning("Could not read CSV %s: %s", path.name, e)
        return cls(frames, max_staleness)

    @property
    def assets(self) -> List[str]:
        return sorted(self._frames)

    def _row(self, asset: str, timestamp: datetime) -> pd.Series:
        df = self._frames.get(asset)
        if df is None or df.empty:
            raise DataUnavailable(asset, timestamp, "unknown asset")
        ts = _to_naive_utc(timestamp)
        pos = df.index.searchsorted(ts, side="right") - 1
        if pos < 0:
            raise DataUnavailable(asset, timestamp, "before first bar")
        bar_ts = df.index[pos]
        if self.max_staleness is not None and ts - bar_ts > self.max_staleness:
            raise DataUnavailable(asset, timestamp, f"last bar at {bar_ts} is stale")
        return df.iloc[pos]

    def _optional(self, asset: str, timestamp: datetime, column: str) -> Optional[float]:
        df = self._frames.get(asset)
        if df is None or column not in df.columns:
            return None
        try:
            value = self._row(asset, timestamp)[column]
        except DataUnavailable:
            return None
        return None if pd.isna(value) else float(value)

    def fetch_price(self, asset: str, timestamp: datetime) -> float:
        return float(self._row(asset, timestamp)["close"])

    def fetch_ohlcv(self, asset: str, start: datetime, end: datetime) -> List[Candle]:
        df = self._frames.get(asset)
        if df is None:
            raise DataUnavailable(asset, start, "unknown asset")
        window = df.loc[_to_naive_utc(start):_to_naive_utc(end)]
        return frame_to_candles(window)

    def fetch_funding_rate(self, asset: str, timestamp: datetime) -> Optional[FundingRate]:
        value = self._optional(asset, timestamp, "funding_rate")
        if value is None:
            return None
        try:
            return FundingRate(value)
        except ValueError as e:
            raise DataUnavailable(asset, timestamp, f"invalid funding_rate: {e}") from e

    def fetch_iv(self, asset: str, timestamp: datetime) -> Optional[IV]:
        value = self._optional(asset, timestamp, "iv")
        if value is None:
            return None
        try:
            return IV(value)
        except ValueError as e:
            raise DataUnavailable(asset, timestamp, f"invalid iv: {e}") from e

    def fetch_volume(self, asset: str, timestamp: datetime) -> float:
        return float(self._row(asset, timestamp)["volume"])

    def fetch_fee_apr(self, asset: str, timestamp: datetime) -> Optional[float]:
        return self._optional(asset, timestamp, "fee_apr")
