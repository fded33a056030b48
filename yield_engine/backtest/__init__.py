"""
Backtest layer: portfolio entities, costs, impermanent loss, per-position
tracking and the tick-driven engine (``yield_engine.backtest.engine``).
"""
