"""
Strategy capability interface shared by every strategy variant.

A strategy turns one tick of market data plus the current portfolio into
trades and the set of positions it wants open:

    execute(portfolio, market_data, config) -> StrategyResult
    calculate_expected_yield(config, market_data) -> APR
    validate_config(config) -> bool

Positions a strategy returned on an earlier tick but omits now are closed by
the engine.  Strategies keep only their own minimal state (reference prices,
current regime); no state is shared between instances.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Type

from ..backtest.portfolio import Portfolio, Position, Trade, TradeSide
from ..data.types import MarketData
from ..errors import ConfigurationError
from ..risk.metrics import position_health_factor
from ..risk.rebalance_rules import RebalanceRuleEngine
from ..value_objects import APR

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceRange:
    """Symmetric price band ``center * (1 ± width)``."""
    center: float
    width: float

    @property
    def lower(self) -> float:
        return self.center * (1.0 - self.width)

    @property
    def upper(self) -> float:
        return self.center * (1.0 + self.width)

    def contains(self, price: float) -> bool:
        return abs(price - self.center) <= self.center * self.width * (1.0 + 1e-12)


@dataclass
class StrategyResult:
    """Output of one ``execute`` call.

    ``ranges`` maps position id to the active price band for range-bound
    positions; positions without an entry are treated as always earning.
    """
    trades: List[Trade] = field(default_factory=list)
    positions: List[Position] = field(default_factory=list)
    should_rebalance: bool = False
    rebalance_reason: Optional[str] = None
    ranges: Dict[str, PriceRange] = field(default_factory=dict)

    def merge(self, other: "StrategyResult") -> "StrategyResult":
        reasons = [r for r in (self.rebalance_reason, other.rebalance_reason) if r]
        return StrategyResult(
            trades=self.trades + other.trades,
            positions=self.positions + other.positions,
            should_rebalance=self.should_rebalance or other.should_rebalance,
            rebalance_reason="; ".join(reasons) or None,
            ranges={**self.ranges, **other.ranges},
        )


def split_pair(pair: str) -> Tuple[str, str]:
    for sep in ("-", "/"):
        if sep in pair:
            base, quote = pair.split(sep, 1)
            return base, quote
    return pair, "USD"


class Strategy(ABC):
    """Base class for all strategies.

    Subclasses declare ``kind`` (a registry tag), ``config_class`` (a
    dataclass) and ``default_allocation``.
    """

    kind: ClassVar[str] = ""
    config_class: ClassVar[Type] = object
    default_allocation: ClassVar[float] = 0.25

    def __init__(self, strategy_id: str, name: Optional[str] = None):
        if not strategy_id:
            raise ConfigurationError("strategy_id must be non-empty")
        self.strategy_id = strategy_id
        self.name = name or self.__class__.__name__

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(strategy_id={self.strategy_id!r})"

    # ── Configuration ──────────────────────────────────────────────────

    def parse_config(self, config: Any):
        """Coerce a mapping (or the config dataclass itself) into ``config_class``."""
        if isinstance(config, self.config_class):
            return config
        if config is None:
            config = {}
        if isinstance(config, Mapping):
            known = {f.name for f in fields(self.config_class)}
            unknown = set(config) - known
            if unknown:
                raise ConfigurationError(
                    f"{self.name}: unknown config keys {', '.join(sorted(unknown))}"
                )
            try:
                return self.config_class(**config)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"{self.name}: {e}") from e
        raise ConfigurationError(
            f"{self.name}: expected {self.config_class.__name__} or a mapping, "
            f"got {type(config).__name__}"
        )

    def resolve_config(self, config: Any, allocation: Optional[float] = None):
        """Parse and validate; fill ``allocation`` from the caller when unset."""
        cfg = self.parse_config(config)
        if allocation is not None and getattr(cfg, "allocation", None) is None:
            cfg = replace(cfg, allocation=allocation)
        self.check_config(cfg)
        return cfg

    def validate_config(self, config: Any) -> bool:
        try:
            self.check_config(self.parse_config(config))
        except ConfigurationError as e:
            logger.debug("%s rejected config: %s", self.name, e)
            return False
        return True

    def check_config(self, cfg) -> None:
        """Raise ConfigurationError when ``cfg`` is invalid."""
        allocation = getattr(cfg, "allocation", None)
        if allocation is not None and not 0.0 <= allocation <= 1.0:
            raise ConfigurationError(f"{self.name}: allocation must be in [0, 1], got {allocation}")

    def allocation_of(self, cfg) -> float:
        allocation = getattr(cfg, "allocation", None)
        return self.default_allocation if allocation is None else allocation

    # ── Capability interface ─────────────────────────────────────────

    @abstractmethod
    def assets(self, config: Any) -> List[str]:
        """Assets whose market data this strategy reads; the first is primary."""

    @abstractmethod
    def execute(self, portfolio: Portfolio, market_data: MarketData, config: Any) -> StrategyResult:
        """Decide trades and target positions for one tick."""

    @abstractmethod
    def calculate_expected_yield(self, config: Any, market_data: MarketData) -> APR:
        """Forward-looking APR estimate on the strategy's equity.  Must not mutate state."""

    @property
    def owned_strategy_ids(self) -> Tuple[str, ...]:
        """Strategy ids stamped on positions this instance manages."""
        return (self.strategy_id,)

    # ── Helpers ───────────────────────────────────────────────────────

    def position_id(self, asset: str) -> str:
        return f"{self.strategy_id}-{asset}"

    def _trade(self, asset: str, side: TradeSide, notional: float, price: float,
               timestamp: datetime, position_id: Optional[str] = None) -> Trade:
        return Trade(
            strategy_id=self.strategy_id,
            asset=asset,
            side=side,
            amount=notional / price,
            price=price,
            timestamp=timestamp,
            position_id=position_id,
        )

    def _close(self, position: Position, market_data: MarketData) -> Trade:
        """Exit trade for a position the strategy is dropping."""
        return self._trade(
            position.asset, TradeSide.SELL, position.market_value(), market_data.price,
            market_data.timestamp, position.id,
        )


def restore_health(portfolio: Portfolio, position: Position, threshold: float,
                   target: float) -> Tuple[Position, Optional[str]]:
    """Deleverage ``position`` back to ``target`` when its health factor is below ``threshold``.

    Returns the (possibly reduced) position and a rebalance reason, or ``None``
    when no action was needed.
    """
    hf = position_health_factor(position)
    if not hf.is_at_risk(threshold):
        return position, None
    reduced = RebalanceRuleEngine.deleverage(portfolio, position, target)
    reason = (
        f"{position.asset} health factor {hf.value:.3f} below {threshold:.2f}; "
        f"repaid {position.borrowed_amount - reduced.borrowed_amount:.2f}"
    )
    return reduced, reason


def scale_position(position: Position, factor: float) -> Position:
    """Resize a position's notional, debt, collateral and basis by ``factor``."""
    return replace(
        position,
        amount=position.amount * factor,
        borrowed_amount=position.borrowed_amount * factor,
        collateral_amount=position.collateral_amount * factor,
        cost_basis=position.cost_basis * factor,
    )
