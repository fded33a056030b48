"""
Data layer: market data records and DataAdapter implementations.

Components:
    - Candle, MarketData: immutable tick and bar records
    - DataAdapter: protocol consumed by the backtest engine
    - DataFrameAdapter: in-memory / CSV-backed adapter over pandas frames
    - IVCalculatorAdapter: fills missing IV from Garman-Klass realized volatility
"""

from .frame_adapter import DataFrameAdapter, asset_file_stem
from .iv_adapter import IVCalculatorAdapter
from .provider_base import DataAdapter
from .types import Candle, MarketData, candles_to_frame, frame_to_candles

__all__ = [
    "Candle",
    "MarketData",
    "DataAdapter",
    "DataFrameAdapter",
    "IVCalculatorAdapter",
    "asset_file_stem",
    "candles_to_frame",
    "frame_to_candles",
]
