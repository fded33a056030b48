"""
Realized-volatility indicators used to derive implied-volatility proxies.
"""

from .volatility import (
    EWMAVolatility,
    GarmanKlassVolatility,
    HistoricalVolatility,
    Indicator,
    ParkinsonVolatility,
    infer_periods_per_year,
)

__all__ = [
    "Indicator",
    "HistoricalVolatility",
    "EWMAVolatility",
    "ParkinsonVolatility",
    "GarmanKlassVolatility",
    "infer_periods_per_year",
]
