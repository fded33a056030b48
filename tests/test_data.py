"""
Data layer tests: frame-backed adapter, IV fallback adapter, records and
realized-volatility indicators.
"""
from datetime import datetime, timedelta, timezone

import numpy as np
import pandas as pd
import pytest

from yield_engine.data import (
    Candle,
    DataFrameAdapter,
    IVCalculatorAdapter,
    MarketData,
    candles_to_frame,
    frame_to_candles,
)
from yield_engine.errors import DataUnavailable
from yield_engine.indicators import (
    EWMAVolatility,
    GarmanKlassVolatility,
    HistoricalVolatility,
    ParkinsonVolatility,
    infer_periods_per_year,
)
from yield_engine.value_objects import IV

START = datetime(2024, 1, 1)


def _daily(n, price=2000.0, **extra):
    index = pd.date_range(START, periods=n, freq="D")
    close = np.full(n, price)
    df = pd.DataFrame({
        "open": close, "high": close * 1.005, "low": close * 0.995,
        "close": close, "volume": np.full(n, 1e6),
    }, index=index)
    for col, values in extra.items():
        df[col] = values
    return df


class TestDataFrameAdapter:
    def test_as_of_lookup(self):
        df = _daily(5)
        df["close"] = [100.0, 101.0, 102.0, 103.0, 104.0]
        adapter = DataFrameAdapter({"ETH": df})
        assert adapter.fetch_price("ETH", START + timedelta(days=2)) == 102.0
        assert adapter.fetch_price("ETH", START + timedelta(days=2, hours=23)) == 102.0
        assert adapter.fetch_price("ETH", START + timedelta(days=30)) == 104.0

    def test_unavailable(self):
        adapter = DataFrameAdapter({"ETH": _daily(3)})
        with pytest.raises(DataUnavailable):
            adapter.fetch_price("ETH", START - timedelta(hours=1))
        with pytest.raises(DataUnavailable) as exc:
            adapter.fetch_price("BTC", START)
        assert exc.value.asset == "BTC"

    def test_staleness_limit(self):
        adapter = DataFrameAdapter({"ETH": _daily(3)}, max_staleness=timedelta(hours=1))
        assert adapter.fetch_price("ETH", START + timedelta(minutes=30)) == 2000.0
        with pytest.raises(DataUnavailable):
            adapter.fetch_price("ETH", START + timedelta(hours=2))

    def test_optional_columns(self):
        df = _daily(3, funding_rate=[0.0001, np.nan, 0.0002], iv=[55.0, 60.0, 65.0])
        adapter = DataFrameAdapter({"ETH": df, "BTC": _daily(3)})
        assert adapter.fetch_funding_rate("ETH", START).value == 0.0001
        assert adapter.fetch_funding_rate("ETH", START + timedelta(days=1)) is None
        assert adapter.fetch_iv("ETH", START + timedelta(days=2)) == IV(65.0)
        assert adapter.fetch_iv("BTC", START) is None
        assert adapter.fetch_fee_apr("ETH", START) is None
        assert adapter.fetch_volume("ETH", START) == 1e6

    def test_invalid_optional_value_unavailable(self):
        df = _daily(3, funding_rate=[0.0001, np.inf, 0.0001], iv=[50.0, -1.0, 50.0])
        adapter = DataFrameAdapter({"ETH": df})
        day = START + timedelta(days=1)
        with pytest.raises(DataUnavailable) as exc:
            adapter.fetch_iv("ETH", day)
        assert exc.value.asset == "ETH"
        assert "iv" in str(exc.value)
        with pytest.raises(DataUnavailable):
            adapter.fetch_funding_rate("ETH", day)
        assert adapter.fetch_iv("ETH", START + timedelta(days=2)) == IV(50.0)

    def test_timezone_aware_lookup(self):
        adapter = DataFrameAdapter({"ETH": _daily(3)})
        ts = datetime(2024, 1, 2, 1, tzinfo=timezone(timedelta(hours=2)))
        # 01:00 +02:00 is 23:00 UTC on Jan 1
        assert adapter.fetch_price("ETH", ts) == 2000.0

    def test_timestamp_column_in_milliseconds(self):
        ms = [int(pd.Timestamp(START + timedelta(days=i), tz="UTC").value // 1_000_000) for i in range(3)]
        raw = pd.DataFrame({"Timestamp": ms, "Close": [1.0, 2.0, 3.0]})
        adapter = DataFrameAdapter({"ETH": raw})
        assert adapter.fetch_price("ETH", START + timedelta(days=1)) == 2.0

    def test_rejects_frame_without_close(self):
        with pytest.raises(ValueError):
            DataFrameAdapter({"ETH": pd.DataFrame({"open": [1.0]}, index=[START])})

    def test_ohlcv_window(self):
        adapter = DataFrameAdapter({"ETH": _daily(10)})
        candles = adapter.fetch_ohlcv("ETH", START + timedelta(days=2), START + timedelta(days=5))
        assert len(candles) == 4
        assert candles[0].timestamp == START + timedelta(days=2)

    def test_from_csv_dir(self, tmp_path):
        pd.DataFrame({
            "date": ["2024-01-01", "2024-01-02"], "close": [2000.0, 2100.0],
        }).to_csv(tmp_path / "ETH-USDC.csv", index=False)
        adapter = DataFrameAdapter.from_csv_dir(tmp_path, assets=["ETH/USDC"])
        assert adapter.assets == ["ETH/USDC"]
        assert adapter.fetch_price("ETH/USDC", datetime(2024, 1, 2)) == 2100.0

    def test_from_csv_dir_skips_missing_files(self, tmp_path):
        adapter = DataFrameAdapter.from_csv_dir(tmp_path, assets=["BTC-USDC"])
        assert adapter.assets == []


class TestRecords:
    def test_candle_validation(self):
        with pytest.raises(ValueError):
            Candle(START, 100.0, 99.0, 101.0, 100.0)
        with pytest.raises(ValueError):
            Candle(START, 100.0, 100.0, 100.0, 0.0)

    def test_frame_round_trip_sorted(self):
        candles = [Candle(START + timedelta(hours=h), 1.0, 1.1, 0.9, 1.0, 5.0) for h in (2, 0, 1)]
        df = candles_to_frame(candles)
        assert df.index.is_monotonic_increasing
        assert [c.timestamp.hour for c in frame_to_candles(df)] == [0, 1, 2]
        assert candles_to_frame([]).empty

    def test_market_data_peers(self):
        other = MarketData(START, 1.0, asset="USDC-USDT")
        md = MarketData(START, 2000.0, asset="ETH-USDC", peers={"USDC-USDT": other})
        assert md.peer("ETH-USDC") is md
        assert md.peer("USDC-USDT") is other
        assert md.peer("BTC") is None
        with pytest.raises(ValueError):
            MarketData(START, float("nan"))


class TestIVCalculatorAdapter:
    EXPECTED_IV = np.sqrt(0.5 * np.log(1.005 / 0.995) ** 2 * 365) * 100

    def test_estimates_when_source_has_none(self):
        adapter = IVCalculatorAdapter(DataFrameAdapter({"ETH": _daily(60)}))
        iv = adapter.fetch_iv("ETH", START + timedelta(days=40))
        assert iv.value == pytest.approx(self.EXPECTED_IV, rel=1e-3)

    def test_cached_per_asset_and_day(self):
        adapter = IVCalculatorAdapter(DataFrameAdapter({"ETH": _daily(60)}))
        day = START + timedelta(days=40)
        adapter.fetch_iv("ETH", day)
        adapter.fetch_iv("ETH", day + timedelta(hours=6))
        assert (adapter.hits, adapter.misses) == (1, 1)
        adapter.clear_cache()
        adapter.fetch_iv("ETH", day)
        assert (adapter.hits, adapter.misses) == (0, 1)

    def test_lru_bound(self):
        adapter = IVCalculatorAdapter(DataFrameAdapter({"ETH": _daily(60)}), max_entries=2)
        for d in (40, 41, 42):
            adapter.fetch_iv("ETH", START + timedelta(days=d))
        adapter.fetch_iv("ETH", START + timedelta(days=40))
        assert adapter.misses == 4

    def test_source_iv_passes_through(self):
        inner = DataFrameAdapter({"ETH": _daily(60, iv=np.full(60, 80.0))})
        adapter = IVCalculatorAdapter(inner)
        assert adapter.fetch_iv("ETH", START + timedelta(days=40)) == IV(80.0)
        assert adapter.misses == 0

    def test_invalid_source_iv_falls_back_to_estimate(self):
        iv = np.full(60, 80.0)
        iv[40] = -1.0
        adapter = IVCalculatorAdapter(DataFrameAdapter({"ETH": _daily(60, iv=iv)}))
        estimate = adapter.fetch_iv("ETH", START + timedelta(days=40))
        assert estimate.value == pytest.approx(self.EXPECTED_IV, rel=1e-3)
        assert adapter.misses == 1
        assert adapter.fetch_iv("ETH", START + timedelta(days=41)) == IV(80.0)

    def test_invalid_source_iv_with_short_history_gives_none(self):
        iv = np.full(60, 80.0)
        iv[3] = -1.0
        adapter = IVCalculatorAdapter(DataFrameAdapter({"ETH": _daily(60, iv=iv)}))
        assert adapter.fetch_iv("ETH", START + timedelta(days=3)) is None

    def test_short_history_gives_none(self):
        adapter = IVCalculatorAdapter(DataFrameAdapter({"ETH": _daily(60)}))
        assert adapter.fetch_iv("ETH", START + timedelta(days=5)) is None
        assert adapter.fetch_iv("SOL", START + timedelta(days=40)) is None

    def test_pass_through_fetches(self):
        adapter = IVCalculatorAdapter(DataFrameAdapter({"ETH": _daily(3)}))
        assert adapter.fetch_price("ETH", START) == 2000.0
        assert adapter.fetch_funding_rate("ETH", START) is None
        assert adapter.fetch_fee_apr("ETH", START) is None


class TestIndicators:
    def test_periods_per_year_from_spacing(self):
        hourly = pd.date_range(START, periods=10, freq=timedelta(hours=1))
        assert infer_periods_per_year(hourly) == pytest.approx(8760.0)
        assert infer_periods_per_year(pd.RangeIndex(3), default=52.0) == 52.0

    def test_constant_prices_have_no_close_to_close_vol(self):
        df = _daily(40)
        assert HistoricalVolatility(period=20).latest(df) == pytest.approx(0.0)
        assert EWMAVolatility(period=20).latest(df) == pytest.approx(0.0)

    def test_range_estimators(self):
        df = _daily(40)
        park = ParkinsonVolatility(period=20).latest(df)
        gk = GarmanKlassVolatility(period=20).latest(df)
        log_hl = np.log(1.005 / 0.995)
        assert park == pytest.approx(np.sqrt(log_hl ** 2 / (4 * np.log(2)) * 365))
        assert gk == pytest.approx(np.sqrt(0.5 * log_hl ** 2 * 365))

    def test_unfilled_window(self):
        assert HistoricalVolatility(period=20).latest(_daily(5)) is None

    def test_random_walk_vol_recovered(self, rng):
        returns = rng.normal(0.0, 0.01, 400)
        close = 100 * np.exp(np.cumsum(returns))
        df = pd.DataFrame({"close": close}, index=pd.date_range(START, periods=400, freq="D"))
        hv = HistoricalVolatility(period=200).latest(df)
        assert hv == pytest.approx(0.01 * np.sqrt(365), rel=0.15)

    def test_ewma_decay_validation(self):
        with pytest.raises(ValueError):
            EWMAVolatility(decay=1.0)
