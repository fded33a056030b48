"""
Backtest engine: drives strategies over a historical window, tick by tick.

Per tick (strictly sequential, deterministic for identical inputs):
    1. Fetch a snapshot per asset from the DataAdapter.  A DataUnavailable
       (or I/O) failure degrades that asset for this tick only: its positions
       carry their last price forward and their trackers record a gap.
       A failed or invalid optional field (IV, funding, volume, fee APR) is
       logged and treated as absent.
    2. Mark open positions: new price, impermanent loss on LP principal,
       tracker record for the elapsed period, yield accrual while in range.
    3. Run strategies in registration order.  Later strategies see positions
       opened earlier in the same tick.  Returned positions are inserted or
       replaced, previously returned ones that are now omitted are closed.
       Trades and rebalances are priced through the CostCalculator.
    4. Append the total portfolio value and the period return.

Yield accrual uses the whole of the owning strategy's expected APR, fee,
incentive and funding parts alike, and only for periods the position spends
inside its range.  The LP strategies already discount their APR by the
optimizer's efficiency ratio, so for them out-of-range time is discounted
twice and accrued yield is a conservative lower bound.  Expected fees always
accrue, which keeps the fee-capture rate meaningful.

Cancellation is only checked between ticks.  Any exception escaping a
strategy aborts the run as a BacktestError tagged with the tick and strategy.
"""
from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

import numpy as np
import pandas as pd

from ..config import APPLY_COSTS, APPLY_IL, DEFAULT_STEP_HOURS, HOURS_PER_YEAR, USE_REAL_FEES
from ..data.provider_base import DataAdapter
from ..data.types import MarketData
from ..errors import BacktestError, ComputationError, ConfigurationError, DataUnavailable
from ..risk.metrics import RiskCalculator
from ..strategies.base import Strategy, StrategyResult
from ..utils.logging import RunMetricsEmitter
from .costs import CostCalculator, CostModel
from .impermanent_loss import calculate_il
from .portfolio import Portfolio, Position, Trade
from .position_tracker import PositionMetrics, PositionTracker

logger = logging.getLogger(__name__)


@dataclass
class StrategyAllocation:
    """A strategy instance with its config and share of portfolio value."""
    strategy: Strategy
    config: Any = None
    allocation: Optional[float] = None

    @property
    def strategy_id(self) -> str:
        return self.strategy.strategy_id


@dataclass
class BacktestConfig:
    """Inputs for one backtest run.

    ``step`` defaults to ``DEFAULT_STEP_HOURS``; sub-daily steps are allowed.
    ``assets`` defaults to the union of the assets the strategies declare.
    ``should_stop`` is polled between ticks.
    """
    start: datetime
    end: datetime
    initial_capital: float
    strategies: List[StrategyAllocation]
    step: Optional[timedelta] = None
    cost_model: Optional[CostModel] = None
    apply_costs: bool = APPLY_COSTS
    apply_il: bool = APPLY_IL
    use_real_fees: bool = USE_REAL_FEES
    assets: Optional[List[str]] = None
    should_stop: Optional[Callable[[], bool]] = field(default=None, repr=False)

    def __post_init__(self):
        if self.step is None:
            self.step = timedelta(hours=DEFAULT_STEP_HOURS)
        if self.step <= timedelta(0):
            raise ConfigurationError(f"step must be positive, got {self.step}")
        if self.end < self.start:
            raise ConfigurationError(f"end {self.end} precedes start {self.start}")
        if not self.initial_capital > 0:
            raise ConfigurationError(f"initial_capital must be positive, got {self.initial_capital}")
        if not self.strategies:
            raise ConfigurationError("at least one strategy is required")
        seen: Set[str] = set()
        for alloc in self.strategies:
            for sid in alloc.strategy.owned_strategy_ids:
                if sid in seen:
                    raise ConfigurationError(f"duplicate strategy id {sid!r}")
                seen.add(sid)
            if alloc.allocation is not None and not 0 <= alloc.allocation <= 1:
                raise ConfigurationError(
                    f"{alloc.strategy_id}: allocation must be in [0, 1], got {alloc.allocation}"
                )

    def tick_times(self) -> List[datetime]:
        times = []
        ts = self.start
        while ts <= self.end:
            times.append(ts)
            ts = ts + self.step
        return times


@dataclass
class BacktestResult:
    """Serializable output of a run."""
    metrics: Dict[str, Any]
    trades: List[Trade] = field(repr=False, default_factory=list)
    positions: Dict[str, Any] = field(repr=False, default_factory=dict)
    position_metrics: Dict[str, PositionMetrics] = field(repr=False, default_factory=dict)
    value_series: pd.Series = field(repr=False, default=None)
    return_series: pd.Series = field(repr=False, default=None)
    costs_by_position: Dict[str, float] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    degraded_ticks: int = 0
    cancelled: bool = False

    @property
    def rebalance_count(self) -> int:
        return sum(m.rebalance_count for m in self.position_metrics.values())

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable view (timestamps as ISO strings, non-finite floats as None)."""
        def clean(v):
            if isinstance(v, (float, np.floating)):
                return float(v) if math.isfinite(v) else None
            return v

        values = self.value_series if self.value_series is not None else pd.Series(dtype=float)
        returns = self.return_series if self.return_series is not None else pd.Series(dtype=float)
        return {
            "metrics": {k: clean(v) for k, v in self.metrics.items()},
            "trades": [t.to_dict() for t in self.trades],
            "positions": self.positions,
            "position_metrics": {k: m.to_dict() for k, m in self.position_metrics.items()},
            "value_series": [[ts.isoformat(), clean(v)] for ts, v in values.items()],
            "return_series": [[ts.isoformat(), clean(v)] for ts, v in returns.items()],
            "costs_by_position": dict(self.costs_by_position),
            "warnings": list(self.warnings),
            "degraded_ticks": self.degraded_ticks,
            "cancelled": self.cancelled,
        }


class _RunState:
    """Mutable state owned by one ``run`` call."""

    def __init__(self, config: BacktestConfig):
        self.portfolio = Portfolio(config.initial_capital)
        self.trackers: Dict[str, PositionTracker] = {}
        self.archived: Dict[str, PositionMetrics] = {}
        self.principals: Dict[str, float] = {}
        self.anchors: Dict[str, float] = {}
        self.ranges: Dict[str, Any] = {}
        self.owners: Dict[str, int] = {}
        self.returned: Dict[int, Set[str]] = defaultdict(set)
        self.last_snapshot: Dict[str, MarketData] = {}
        self.trades: List[Trade] = []
        self.costs: Dict[str, float] = defaultdict(float)
        self.timestamps: List[datetime] = []
        self.values: List[float] = []
        self.returns: List[float] = []
        self.warnings: List[str] = []
        self.degraded_ticks = 0


class BacktestEngine:
    """Sequential tick-driven simulator over a DataAdapter.

    Parameters
    ----------
    data_adapter : DataAdapter
        Market data source.
    cost_calculator : CostCalculator, optional
        Prices trades and rebalances.  Built from ``BacktestConfig.cost_model``
        when omitted.
    risk_calculator : RiskCalculator, optional
    metrics_emitter : RunMetricsEmitter, optional
        Receives the end-of-run summary and alert checks.
    """

    def __init__(
        self,
        data_adapter: DataAdapter,
        cost_calculator: Optional[CostCalculator] = None,
        risk_calculator: Optional[RiskCalculator] = None,
        metrics_emitter: Optional[RunMetricsEmitter] = None,
    ):
        self.data_adapter = data_adapter
        self.cost_calculator = cost_calculator
        self.risk_calculator = risk_calculator or RiskCalculator()
        self.metrics_emitter = metrics_emitter

    # ── Run ──────────────────────────────────────────────────────────

    def run(self, config: BacktestConfig) -> BacktestResult:
        costs = self.cost_calculator or CostCalculator(config.cost_model)
        costs.reset_run_cache()
        state = _RunState(config)
        resolved = self._resolve_configs(config)
        assets = config.assets or self._declared_assets(config, resolved)
        period_hours = config.step.total_seconds() / 3600.0
        logger.info(
            "Backtest %s -> %s, %d strategies, %d assets, step %.2fh",
            config.start.isoformat(), config.end.isoformat(),
            len(config.strategies), len(assets), period_hours,
        )

        cancelled = False
        prev_value = state.portfolio.total_value()
        for ts in config.tick_times():
            if config.should_stop is not None and config.should_stop():
                logger.info("Backtest cancelled before tick %s", ts.isoformat())
                cancelled = True
                break

            snapshots = self._fetch_tick(state, ts, assets, config.use_real_fees)
            self._mark_positions(state, config, resolved, snapshots, ts)
            for idx, alloc in enumerate(config.strategies):
                self._run_strategy(state, config, costs, idx, alloc, resolved[idx], snapshots, ts)

            value = state.portfolio.total_value()
            state.timestamps.append(ts)
            state.values.append(value)
            state.returns.append(value / prev_value - 1.0 if prev_value > 0 else 0.0)
            prev_value = value

        return self._build_result(state, config, cancelled)

    def _resolve_configs(self, config: BacktestConfig) -> List[Any]:
        resolved = []
        for alloc in config.strategies:
            try:
                resolved.append(alloc.strategy.resolve_config(alloc.config, alloc.allocation))
            except ConfigurationError as e:
                raise BacktestError(
                    f"Invalid configuration: {e}", config.start, alloc.strategy_id
                ) from e
        return resolved

    @staticmethod
    def _declared_assets(config: BacktestConfig, resolved: Sequence[Any]) -> List[str]:
        assets: List[str] = []
        for alloc, cfg in zip(config.strategies, resolved):
            for asset in alloc.strategy.assets(cfg):
                if asset not in assets:
                    assets.append(asset)
        return assets

    # ── Data ─────────────────────────────────────────────────────────

    def _optional_fetch(self, state: _RunState, fetch: Callable, asset: str, ts: datetime):
        try:
            return fetch(asset, ts)
        except (DataUnavailable, OSError, ValueError) as e:
            logger.warning("Optional field dropped for %s at %s: %s", asset, ts.isoformat(), e)
            field_name = getattr(fetch, "__name__", "optional field")
            state.warnings.append(f"{ts.isoformat()}: {asset} {field_name} dropped ({e})")
            return None

    def _fetch_tick(self, state: _RunState, ts: datetime, assets: Sequence[str],
                    use_real_fees: bool) -> Dict[str, MarketData]:
        raw: Dict[str, MarketData] = {}
        missing: List[str] = []
        adapter = self.data_adapter
        fee_fetch = getattr(adapter, "fetch_fee_apr", None) if use_real_fees else None
        for asset in assets:
            try:
                price = adapter.fetch_price(asset, ts)
            except (DataUnavailable, OSError) as e:
                missing.append(asset)
                logger.warning("Tick %s degraded for %s: %s", ts.isoformat(), asset, e)
                continue
            raw[asset] = MarketData(
                timestamp=ts,
                price=price,
                asset=asset,
                volume=self._optional_fetch(state, adapter.fetch_volume, asset, ts),
                implied_volatility=self._optional_fetch(state, adapter.fetch_iv, asset, ts),
                funding_rate=self._optional_fetch(state, adapter.fetch_funding_rate, asset, ts),
                fee_apr=self._optional_fetch(state, fee_fetch, asset, ts) if fee_fetch else None,
            )
        if missing:
            state.degraded_ticks += 1
            state.warnings.append(f"{ts.isoformat()}: no data for {', '.join(missing)}")

        snapshots = {asset: replace(md, peers=raw) for asset, md in raw.items()}
        state.last_snapshot.update(snapshots)
        return snapshots

    # ── Marking, IL, accrual ─────────────────────────────────────────

    def _mark_positions(self, state: _RunState, config: BacktestConfig, resolved: Sequence[Any],
                        snapshots: Dict[str, MarketData], ts: datetime) -> None:
        portfolio = state.portfolio
        aprs: Dict[int, float] = {}
        for position in portfolio.positions:
            tracker = state.trackers[position.id]
            md = snapshots.get(position.asset)
            if md is None:
                tracker.record_gap()
                continue

            marked = position.update_price(md.price)
            if position.is_lp and config.apply_il:
                il = calculate_il(position.entry_price, md.price)
                principal = state.principals.get(position.id, position.amount)
                marked = replace(marked, amount=principal * (1.0 + il / 100.0))
                tracker.record_il(il)
            portfolio.mark_position(marked)

            owner = state.owners.get(position.id)
            if owner is not None and owner not in aprs:
                aprs[owner] = self._expected_apr(state, config, resolved, owner, snapshots)
            apr = aprs.get(owner, 0.0)

            hours = tracker.hours_since_last_record(ts)
            band = state.ranges.get(position.id)
            in_range = band is None or band.contains(md.price)
            basis = marked.collateral_amount if marked.collateral_amount > 0 else marked.market_value()
            expected = basis * apr / 100.0 * hours / HOURS_PER_YEAR
            earned = expected if in_range else 0.0
            if earned:
                portfolio.credit(earned, f"yield {position.id}")
            tracker.record_hour(
                ts, md.price, in_range,
                range_width=band.width if band is not None else None,
                fees_earned=earned,
                expected_fees=expected,
            )

    @staticmethod
    def _primary_snapshot(alloc: StrategyAllocation, cfg,
                          snapshots: Dict[str, MarketData]) -> Optional[MarketData]:
        assets = alloc.strategy.assets(cfg)
        if not assets:
            return None
        return snapshots.get(assets[0])

    def _expected_apr(self, state: _RunState, config: BacktestConfig, resolved: Sequence[Any],
                      owner: int, snapshots: Dict[str, MarketData]) -> float:
        alloc = config.strategies[owner]
        cfg = resolved[owner]
        assets = alloc.strategy.assets(cfg)
        md = snapshots.get(assets[0]) or state.last_snapshot.get(assets[0])
        if md is None:
            return 0.0
        return alloc.strategy.calculate_expected_yield(cfg, md).value

    # ── Strategy execution ───────────────────────────────────────────

    def _run_strategy(self, state: _RunState, config: BacktestConfig, costs: CostCalculator,
                      idx: int, alloc: StrategyAllocation, cfg, snapshots: Dict[str, MarketData],
                      ts: datetime) -> None:
        md = self._primary_snapshot(alloc, cfg, snapshots)
        if md is None:
            logger.debug("%s skipped at %s: no data for its primary asset", alloc.strategy_id, ts)
            return
        try:
            result = alloc.strategy.execute(state.portfolio, md, cfg)
        except BacktestError:
            raise
        except (ConfigurationError, ComputationError) as e:
            raise BacktestError(f"{type(e).__name__}: {e}", ts, alloc.strategy_id) from e
        except Exception as e:
            logger.exception("%s failed at %s", alloc.strategy_id, ts.isoformat())
            raise BacktestError(
                f"Unexpected {type(e).__name__} in strategy: {e}", ts, alloc.strategy_id
            ) from e

        opened = self._merge_positions(state, idx, alloc, result, ts)
        for trade in result.trades:
            self._book_trade(state, config, costs, trade)
        if result.should_rebalance:
            self._book_rebalance(state, config, costs, result, opened, ts)

    def _merge_positions(self, state: _RunState, idx: int, alloc: StrategyAllocation,
                         result: StrategyResult, ts: datetime) -> Set[str]:
        portfolio = state.portfolio
        owned = set(alloc.strategy.owned_strategy_ids)
        returned: Set[str] = set()
        opened: Set[str] = set()
        for position in result.positions:
            if position.strategy_id not in owned:
                raise BacktestError(
                    f"position {position.id} is stamped with foreign strategy id "
                    f"{position.strategy_id!r}", ts, alloc.strategy_id,
                )
            returned.add(position.id)
            old = portfolio.get_position(position.id)
            if old is None:
                portfolio.add_position(position)
                self._open_tracker(state, position, ts)
                opened.add(position.id)
            else:
                if position.amount != old.amount and position.id in state.principals and old.amount > 0:
                    state.principals[position.id] *= position.amount / old.amount
                portfolio.update_position(position)
            state.owners[position.id] = idx
            if position.id in result.ranges:
                state.ranges[position.id] = result.ranges[position.id]

        for pid in state.returned[idx] - returned:
            if portfolio.has_position(pid):
                closed = portfolio.close_position(pid)
                logger.info("%s closed %s at %.4f", alloc.strategy_id, pid, closed.current_price)
            self._release(state, pid)
        state.returned[idx] = returned
        return opened

    def _open_tracker(self, state: _RunState, position: Position, ts: datetime) -> None:
        pid = position.id
        if pid in state.trackers:
            self._archive(state, pid)
        state.trackers[pid] = PositionTracker(ts, position.entry_price, track_il=position.is_lp)
        state.anchors[pid] = position.entry_price
        if position.is_lp:
            state.principals[pid] = position.amount

    def _archive(self, state: _RunState, pid: str) -> None:
        n = 1
        while f"{pid}#{n}" in state.archived:
            n += 1
        state.archived[f"{pid}#{n}"] = state.trackers.pop(pid).get_metrics()

    @staticmethod
    def _release(state: _RunState, pid: str) -> None:
        state.principals.pop(pid, None)
        state.anchors.pop(pid, None)
        state.ranges.pop(pid, None)
        state.owners.pop(pid, None)

    def _book_trade(self, state: _RunState, config: BacktestConfig, costs: CostCalculator,
                    trade: Trade) -> None:
        if config.apply_costs:
            tc = costs.calculate_total_cost(trade)
            trade = trade.with_costs(tc.fees, tc.slippage)
            key = trade.position_id or trade.strategy_id
            state.portfolio.debit(tc.total, f"trade costs {key}")
            state.costs[key] += tc.total
        state.trades.append(trade)

    def _book_rebalance(self, state: _RunState, config: BacktestConfig, costs: CostCalculator,
                        result: StrategyResult, opened: Set[str], ts: datetime) -> None:
        reason = result.rebalance_reason or "rebalance"
        for position in result.positions:
            pid = position.id
            if pid in opened or not state.portfolio.has_position(pid):
                continue
            current = state.portfolio.get_position(pid)
            if config.apply_costs:
                cost = costs.estimate_total_rebalance_cost(current.market_value())
                state.portfolio.debit(cost, f"rebalance {pid}")
                state.costs[pid] += cost
            before = state.anchors.get(pid, current.entry_price)
            state.trackers[pid].record_rebalance(ts, reason, before, current.current_price)
            state.anchors[pid] = current.current_price
            logger.info("Rebalanced %s at %s: %s", pid, ts.isoformat(), reason)

    # ── Result ───────────────────────────────────────────────────────

    def _build_result(self, state: _RunState, config: BacktestConfig,
                      cancelled: bool) -> BacktestResult:
        portfolio = state.portfolio
        index = pd.DatetimeIndex(state.timestamps)
        values = pd.Series(state.values, index=index, dtype=float, name="total_value")
        returns = pd.Series(state.returns, index=index, dtype=float, name="return")

        report = self.risk_calculator.calculate_risk_metrics(portfolio, state.values, state.returns)
        final_value = portfolio.total_value()
        total_return = (final_value / config.initial_capital - 1.0) * 100.0
        years = 0.0
        if len(state.timestamps) >= 2:
            years = (state.timestamps[-1] - state.timestamps[0]).total_seconds() / (HOURS_PER_YEAR * 3600.0)
        if years > 0 and final_value > 0:
            annualized = ((final_value / config.initial_capital) ** (1.0 / years) - 1.0) * 100.0
        else:
            annualized = 0.0

        position_metrics = dict(state.archived)
        position_metrics.update({pid: t.get_metrics() for pid, t in state.trackers.items()})

        metrics = {
            "final_value": final_value,
            "total_return": total_return,
            "annualized_return": annualized,
            "sharpe_ratio": report.sharpe_ratio,
            "sortino_ratio": report.sortino_ratio,
            "max_drawdown": report.max_drawdown,
            "current_drawdown": report.current_drawdown,
            "var_95": report.var_95,
            "var_95_parametric": report.var_95_parametric,
            "total_costs": float(sum(state.costs.values())),
            "trade_count": len(state.trades),
            "rebalance_count": sum(m.rebalance_count for m in position_metrics.values()),
            "health_factor": report.health_factor,
            "leverage": report.leverage,
        }

        result = BacktestResult(
            metrics=metrics,
            trades=state.trades,
            positions=portfolio.snapshot(),
            position_metrics=position_metrics,
            value_series=values,
            return_series=returns,
            costs_by_position=dict(state.costs),
            warnings=state.warnings,
            degraded_ticks=state.degraded_ticks,
            cancelled=cancelled,
        )
        if self.metrics_emitter is not None:
            self.metrics_emitter.emit_run_metrics(metrics, state.degraded_ticks, cancelled)
            self.metrics_emitter.check_alerts(
                report.max_drawdown, report.sharpe_ratio, state.degraded_ticks
            )
        logger.info(
            "Backtest done: final %.2f (%.2f%%), %d trades, %d degraded ticks%s",
            final_value, total_return, len(state.trades), state.degraded_ticks,
            ", cancelled" if cancelled else "",
        )
        return result
