"""
Portfolio entities: Position, Trade and the cash-plus-positions Portfolio.

Position kinds
--------------
    spot    — ``amount`` is in asset units; value = amount * current_price
    lp      — ``amount`` is a USD notional of a liquidity position; value = amount.
              Prices are the underlying's and drive impermanent loss.
    hedged  — ``amount`` is a USD notional whose price exposure is hedged away
              (funding carry); value = amount.

``entry_price`` is write-once: ``update_price`` only changes ``current_price``.
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


class PositionKind(Enum):
    SPOT = "spot"
    LP = "lp"
    HEDGED = "hedged"


class TradeSide(Enum):
    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True)
class Position:
    id: str
    strategy_id: str
    asset: str
    amount: float
    entry_price: float
    current_price: float
    collateral_amount: float = 0.0
    borrowed_amount: float = 0.0
    kind: PositionKind = PositionKind.SPOT
    cost_basis: float = 0.0
    opened_at: Optional[datetime] = None

    def __post_init__(self):
        if isinstance(self.kind, str):
            object.__setattr__(self, "kind", PositionKind(self.kind))
        if not self.id:
            raise ValueError("Position id must be non-empty")
        if not math.isfinite(self.amount) or self.amount < 0:
            raise ValueError(f"Position amount must be a non-negative number, got {self.amount}")
        for name in ("entry_price", "current_price"):
            value = getattr(self, name)
            if not math.isfinite(value) or value <= 0:
                raise ValueError(f"Position {name} must be positive, got {value}")
        if self.collateral_amount < 0 or self.borrowed_amount < 0:
            raise ValueError("collateral_amount and borrowed_amount must be non-negative")

    @classmethod
    def create(
        cls,
        id: str,
        strategy_id: str,
        asset: str,
        amount: float,
        entry_price: float,
        current_price: Optional[float] = None,
        collateral_amount: float = 0.0,
        borrowed_amount: float = 0.0,
        kind: PositionKind = PositionKind.SPOT,
        cost_basis: Optional[float] = None,
        opened_at: Optional[datetime] = None,
    ) -> "Position":
        """Build a position, defaulting ``current_price`` to the entry price
        and ``cost_basis`` to the entry value."""
        kind = PositionKind(kind)
        if cost_basis is None:
            cost_basis = amount * entry_price if kind is PositionKind.SPOT else amount
        return cls(
            id=id,
            strategy_id=strategy_id,
            asset=asset,
            amount=amount,
            entry_price=entry_price,
            current_price=entry_price if current_price is None else current_price,
            collateral_amount=collateral_amount,
            borrowed_amount=borrowed_amount,
            kind=kind,
            cost_basis=cost_basis,
            opened_at=opened_at,
        )

    @property
    def is_lp(self) -> bool:
        return self.kind is PositionKind.LP

    def is_leveraged(self) -> bool:
        return self.borrowed_amount != 0

    def unit_price(self) -> float:
        """USD value of one unit of ``amount``."""
        return self.current_price if self.kind is PositionKind.SPOT else 1.0

    def market_value(self) -> float:
        return self.amount * self.unit_price()

    def entry_value(self) -> float:
        return self.cost_basis

    def net_value(self) -> float:
        """Market value less borrowed principal (the equity in the position)."""
        return self.market_value() - self.borrowed_amount

    def unrealized_pnl(self) -> float:
        return self.market_value() - self.cost_basis

    def update_price(self, price: float) -> "Position":
        return replace(self, current_price=price)

    def with_amount(self, amount: float) -> "Position":
        return replace(self, amount=amount)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["kind"] = self.kind.value
        d["opened_at"] = self.opened_at.isoformat() if self.opened_at else None
        d["market_value"] = self.market_value()
        d["unrealized_pnl"] = self.unrealized_pnl()
        return d


@dataclass(frozen=True)
class Trade:
    """Append-only ledger entry."""
    strategy_id: str
    asset: str
    side: TradeSide
    amount: float
    price: float
    timestamp: datetime
    fees: float = 0.0
    slippage: float = 0.0
    position_id: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.side, str):
            object.__setattr__(self, "side", TradeSide(self.side))
        if self.amount < 0:
            raise ValueError(f"Trade amount must be non-negative, got {self.amount}")
        if self.price <= 0:
            raise ValueError(f"Trade price must be positive, got {self.price}")

    def value(self) -> float:
        return self.amount * self.price

    def total_cost(self) -> float:
        return self.value() + self.fees + self.slippage

    def with_costs(self, fees: float, slippage: float) -> "Trade":
        return replace(self, fees=fees, slippage=slippage)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["side"] = self.side.value
        d["timestamp"] = self.timestamp.isoformat()
        return d


class Portfolio:
    """Cash balance plus positions keyed by id (insertion-ordered)."""

    def __init__(self, initial_capital: float):
        if initial_capital <= 0:
            raise ValueError(f"initial_capital must be positive, got {initial_capital}")
        self.initial_capital = float(initial_capital)
        self.cash = float(initial_capital)
        self._positions: Dict[str, Position] = {}

    @property
    def positions(self) -> List[Position]:
        return list(self._positions.values())

    def get_position(self, position_id: str) -> Optional[Position]:
        return self._positions.get(position_id)

    def has_position(self, position_id: str) -> bool:
        return position_id in self._positions

    def positions_for(self, strategy_ids: Iterable[str]) -> List[Position]:
        ids = set(strategy_ids)
        return [p for p in self._positions.values() if p.strategy_id in ids]

    def add_position(self, position: Position) -> None:
        """Insert a new position, paying its equity out of cash."""
        if position.id in self._positions:
            raise ValueError(f"Position {position.id} already exists")
        self._positions[position.id] = position
        self.cash -= position.net_value()

    def update_position(self, position: Position) -> None:
        """Replace an existing position.

        Changes in size or debt settle against cash at the new price; pure
        price moves do not touch cash.
        """
        old = self._positions.get(position.id)
        if old is None:
            self.add_position(position)
            return
        size_change = (position.amount - old.amount) * position.unit_price()
        debt_change = position.borrowed_amount - old.borrowed_amount
        self.cash -= size_change - debt_change
        self._positions[position.id] = position

    def mark_position(self, position: Position) -> None:
        """Replace a position without any cash flow (accruals, IL, price marks)."""
        if position.id not in self._positions:
            raise KeyError(position.id)
        self._positions[position.id] = position

    def close_position(self, position_id: str) -> Position:
        """Remove a position and release its equity to cash."""
        position = self._positions.pop(position_id)
        self.cash += position.net_value()
        return position

    def debit(self, amount: float, reason: str = "") -> None:
        """Take ``amount`` out of cash (costs, fees)."""
        self.cash -= amount
        if reason:
            logger.debug("debit %.4f: %s", amount, reason)

    def credit(self, amount: float, reason: str = "") -> None:
        """Add ``amount`` to cash (harvested yield)."""
        self.cash += amount
        if reason:
            logger.debug("credit %.4f: %s", amount, reason)

    def total_value(self) -> float:
        return self.cash + sum(p.net_value() for p in self._positions.values())

    def gross_exposure(self) -> float:
        return sum(p.market_value() for p in self._positions.values())

    def total_pnl(self) -> float:
        return sum(p.unrealized_pnl() for p in self._positions.values())

    def snapshot(self) -> Dict[str, Any]:
        return {
            "cash": self.cash,
            "total_value": self.total_value(),
            "positions": [p.to_dict() for p in self._positions.values()],
        }
