"""
Per-position lifecycle ledger.

Tracks, from a fixed entry (date, price):
    - elapsed hours split into in-range / out-of-range buckets
    - fees earned (in-range time only) versus fees expected had the
      position always been in range
    - running max/min absolute deviation from the entry price
    - impermanent loss, with a monotonic worst-IL watermark
    - the rebalance event log

Elapsed time is always the delta between consecutive records, so the two
buckets sum to the time since initialization regardless of tick spacing.
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from .impermanent_loss import calculate_il

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RebalanceEvent:
    date: datetime
    reason: str
    price_before: float
    price_after: float
    percentage_change: float

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["date"] = self.date.isoformat()
        return d


@dataclass
class PositionMetrics:
    """Snapshot emitted by :meth:`PositionTracker.get_metrics`."""
    entry_date: datetime
    entry_price: float
    current_price: float
    total_price_change_pct: float
    max_deviation_pct: float
    min_deviation_pct: float
    rebalance_count: int
    rebalance_events: List[RebalanceEvent]
    current_il_pct: float
    max_il_pct: float
    hours_in_range: float
    hours_out_of_range: float
    total_hours: float
    fee_capture_efficiency: float            # % of time in range
    fees_earned: float
    expected_fees: float
    fee_capture_rate: Optional[float]        # actual / expected fees, %; None if nothing expected
    current_range_width: Optional[float] = None
    missing_ticks: int = 0

    @property
    def days_in_range(self) -> float:
        return self.hours_in_range / 24.0

    @property
    def days_out_of_range(self) -> float:
        return self.hours_out_of_range / 24.0

    @property
    def degraded(self) -> bool:
        """True when some ticks had no market data for this position."""
        return self.missing_ticks > 0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["entry_date"] = self.entry_date.isoformat()
        d["rebalance_events"] = [e.to_dict() for e in self.rebalance_events]
        d["days_in_range"] = self.days_in_range
        d["days_out_of_range"] = self.days_out_of_range
        d["degraded"] = self.degraded
        return d


class PositionTracker:
    """Running ledger for one position.

    Parameters
    ----------
    entry_date : datetime
        Time the position was opened; elapsed hours are measured from here.
    entry_price : float
        Write-once reference price for deviation and IL.
    track_il : bool
        False for positions that carry no impermanent loss (spot, hedged).
    """

    def __init__(self, entry_date: datetime, entry_price: float, track_il: bool = True):
        if not math.isfinite(entry_price) or entry_price <= 0:
            raise ValueError(f"entry_price must be positive, got {entry_price}")
        self.entry_date = entry_date
        self.entry_price = float(entry_price)
        self.track_il = track_il

        self.current_price = self.entry_price
        self._last_record: datetime = entry_date
        self.hours_in_range = 0.0
        self.hours_out_of_range = 0.0
        self.fees_earned = 0.0
        self.expected_fees = 0.0
        self.max_deviation_pct = 0.0
        self.min_deviation_pct: Optional[float] = None
        self.current_range_width: Optional[float] = None
        self.rebalance_events: List[RebalanceEvent] = []
        self.current_il_pct: Optional[float] = None
        self.max_il_pct = 0.0
        self.missing_ticks = 0

    @property
    def last_record_time(self) -> datetime:
        return self._last_record

    @property
    def elapsed_hours(self) -> float:
        """Hours between initialization and the latest record."""
        return (self._last_record - self.entry_date).total_seconds() / 3600.0

    def hours_since_last_record(self, timestamp: datetime) -> float:
        return (timestamp - self._last_record).total_seconds() / 3600.0

    def record_hour(
        self,
        timestamp: datetime,
        price: float,
        in_range: bool,
        range_width: Optional[float] = None,
        fees_earned: float = 0.0,
        expected_fees: float = 0.0,
    ) -> None:
        """Record the period ending at ``timestamp``.

        ``fees_earned`` and ``expected_fees`` are totals for the period since the
        previous record; earned fees only count while in range.
        """
        hours = self.hours_since_last_record(timestamp)
        if hours < 0:
            raise ValueError(
                f"Record at {timestamp} precedes the previous record at {self._last_record}"
            )
        if not math.isfinite(price) or price <= 0:
            logger.warning("Skipping tracker record at %s: invalid price %r", timestamp, price)
            return

        self._last_record = timestamp
        self.current_price = price
        if range_width is not None:
            self.current_range_width = range_width

        if in_range:
            self.hours_in_range += hours
            self.fees_earned += max(fees_earned, 0.0)
        else:
            self.hours_out_of_range += hours
        self.expected_fees += max(expected_fees, 0.0)

        deviation = abs(price - self.entry_price) / self.entry_price * 100.0
        self.max_deviation_pct = max(self.max_deviation_pct, deviation)
        if self.min_deviation_pct is None or deviation < self.min_deviation_pct:
            self.min_deviation_pct = deviation

    def record_day(
        self,
        timestamp: datetime,
        price: float,
        in_range: bool,
        range_width: Optional[float] = None,
        fees_earned: float = 0.0,
        expected_daily_fee: float = 0.0,
    ) -> None:
        """Daily-rate variant: the expected fee is a per-day rate scaled by elapsed time."""
        hours = max(self.hours_since_last_record(timestamp), 0.0)
        self.record_hour(
            timestamp, price, in_range, range_width,
            fees_earned=fees_earned,
            expected_fees=expected_daily_fee * hours / 24.0,
        )

    def record_gap(self) -> None:
        """Note a tick with no market data; time is attributed at the next record."""
        self.missing_ticks += 1

    def record_rebalance(self, date: datetime, reason: str,
                         price_before: float, price_after: float) -> RebalanceEvent:
        pct = (price_after - price_before) / price_before * 100.0 if price_before else 0.0
        event = RebalanceEvent(date, reason, price_before, price_after, pct)
        self.rebalance_events.append(event)
        return event

    def record_il(self, il_pct: float) -> None:
        self.current_il_pct = il_pct
        self.max_il_pct = min(self.max_il_pct, il_pct)

    def get_metrics(self) -> PositionMetrics:
        if not self.track_il:
            current_il = 0.0
        elif self.current_il_pct is not None:
            current_il = self.current_il_pct
        else:
            current_il = calculate_il(self.entry_price, self.current_price)

        total_hours = self.hours_in_range + self.hours_out_of_range
        efficiency = self.hours_in_range / total_hours * 100.0 if total_hours > 0 else 0.0
        rate = self.fees_earned / self.expected_fees * 100.0 if self.expected_fees > 0 else None

        return PositionMetrics(
            entry_date=self.entry_date,
            entry_price=self.entry_price,
            current_price=self.current_price,
            total_price_change_pct=(self.current_price - self.entry_price) / self.entry_price * 100.0,
            max_deviation_pct=self.max_deviation_pct,
            min_deviation_pct=self.min_deviation_pct or 0.0,
            rebalance_count=len(self.rebalance_events),
            rebalance_events=list(self.rebalance_events),
            current_il_pct=current_il,
            max_il_pct=min(self.max_il_pct, current_il),
            hours_in_range=self.hours_in_range,
            hours_out_of_range=self.hours_out_of_range,
            total_hours=total_hours,
            fee_capture_efficiency=efficiency,
            fees_earned=self.fees_earned,
            expected_fees=self.expected_fees,
            fee_capture_rate=rate,
            current_range_width=self.current_range_width,
            missing_ticks=self.missing_ticks,
        )
