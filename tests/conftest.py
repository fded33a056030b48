"""Shared test fixtures for the yield_engine test suite."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd
import pytest

START = datetime(2024, 1, 1)


@pytest.fixture(autouse=True)
def _fresh_config():
    """Every test starts (and ends) on the default configuration."""
    from yield_engine.config_structured import reset_config

    reset_config()
    yield
    reset_config()


@pytest.fixture
def rng():
    """Deterministic random number generator."""
    return np.random.default_rng(42)


# ── Data fixtures ────────────────────────────────────────────────────


def price_frame(
    prices: Sequence[float],
    start: datetime = START,
    step: timedelta = timedelta(days=1),
    **extra: Sequence[Optional[float]],
) -> pd.DataFrame:
    """OHLCV frame with open == close and a +/-0.5% high/low band."""
    close = np.asarray(prices, dtype=float)
    index = pd.date_range(start, periods=len(close), freq=step)
    df = pd.DataFrame(
        {
            "open": close,
            "high": close * 1.005,
            "low": close * 0.995,
            "close": close,
            "volume": np.full(len(close), 1_000_000.0),
        },
        index=index,
    )
    for col, values in extra.items():
        df[col] = list(values)
    return df


@pytest.fixture
def make_adapter():
    """Factory: ``make_adapter({"ETH-USDC": [..prices..]}, step=..., iv=..)``."""
    from yield_engine.data.frame_adapter import DataFrameAdapter

    def _make(series: Dict[str, Sequence[float]], step: timedelta = timedelta(days=1),
              extras: Optional[Dict[str, Dict[str, Sequence]]] = None) -> DataFrameAdapter:
        extras = extras or {}
        frames = {
            asset: price_frame(prices, step=step, **extras.get(asset, {}))
            for asset, prices in series.items()
        }
        return DataFrameAdapter(frames)

    return _make


@pytest.fixture
def random_walk_prices(rng):
    """500 hourly prices following a geometric random walk from 2000."""
    returns = rng.normal(0.0, 0.01, 500)
    return 2000.0 * np.exp(np.cumsum(returns))


@pytest.fixture
def market_data():
    """Factory for single-asset MarketData snapshots."""
    from yield_engine.data.types import MarketData

    def _make(price: float = 2000.0, ts: datetime = START, asset: str = "ETH-USDC", **kw):
        return MarketData(timestamp=ts, price=price, asset=asset, **kw)

    return _make
