"""
Yield Engine: backtesting for on-chain yield strategies.

Subpackages:
    - data: market data records and adapters
    - indicators: realized volatility estimators
    - regime: GARCH volatility and regime analysis
    - risk: range optimizer, risk metrics, rebalance rules
    - strategies: the strategy catalogue
    - backtest: portfolio, costs, position tracking, engine
"""

__version__ = "0.1.0"
