"""
Transaction cost model for the backtest engine and the range optimizer.

    slippage      = trade notional * slippage_bps / 10,000
    gas           = fixed USD per transaction, or
                    gas_units * gas_price_gwei / 1e9 * native_token_price_usd
    pool fee      = position value * swap fraction (0.5) * pool fee tier
    rebalance     = gas + pool fee

:func:`rebalance_cost_usd` is the single rebalance cost function; the range
optimizer prices rebalances through it too, so both stay numerically consistent.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from ..config import (
    DEFAULT_SLIPPAGE_BPS,
    FALLBACK_GAS_PRICE_GWEI,
    POOL_FEE_SWAP_FRACTION,
)
from ..config_structured import get_config
from ..errors import ConfigurationError, DataUnavailable
from .gas_price import GasPriceService, get_network_config
from .portfolio import Trade

logger = logging.getLogger(__name__)

GWEI_PER_ETH = 1e9


def rebalance_cost_usd(
    gas_cost_usd: float,
    position_value_usd: float = 0.0,
    pool_fee_tier: Optional[float] = None,
    swap_fraction: float = POOL_FEE_SWAP_FRACTION,
) -> float:
    """Gas plus the pool fee paid on the swapped half of the position."""
    pool_fee = 0.0
    if pool_fee_tier and position_value_usd > 0:
        pool_fee = position_value_usd * swap_fraction * pool_fee_tier
    return gas_cost_usd + pool_fee


@dataclass(frozen=True)
class GasModel:
    """Gas priced from units and a gwei price (fixed, or looked up per network)."""
    gas_units_per_rebalance: float
    native_token_price_usd: float
    gas_price_gwei: Optional[float] = None
    network: Optional[str] = None

    def __post_init__(self):
        if self.gas_units_per_rebalance <= 0:
            raise ConfigurationError(
                f"gas_units_per_rebalance must be positive, got {self.gas_units_per_rebalance}"
            )
        if self.native_token_price_usd <= 0:
            raise ConfigurationError(
                f"native_token_price_usd must be positive, got {self.native_token_price_usd}"
            )
        if self.gas_price_gwei is not None and self.gas_price_gwei < 0:
            raise ConfigurationError(f"gas_price_gwei must be non-negative, got {self.gas_price_gwei}")
        if self.network is not None:
            get_network_config(self.network)


@dataclass(frozen=True)
class CostModel:
    """Cost parameters for one backtest run.

    ``pool_fee_tier`` is a decimal (0.003 for a 30 bp pool).
    """
    slippage_bps: float = DEFAULT_SLIPPAGE_BPS
    gas_cost_usd: Optional[float] = None
    gas_model: Optional[GasModel] = None
    pool_fee_tier: Optional[float] = None

    def __post_init__(self):
        if self.slippage_bps < 0 or self.slippage_bps > 10_000:
            raise ConfigurationError(f"slippage_bps must be in [0, 10000], got {self.slippage_bps}")
        if self.gas_cost_usd is not None and self.gas_cost_usd < 0:
            raise ConfigurationError(f"gas_cost_usd must be non-negative, got {self.gas_cost_usd}")
        if self.pool_fee_tier is not None and not 0 <= self.pool_fee_tier < 1:
            raise ConfigurationError(f"pool_fee_tier must be in [0, 1), got {self.pool_fee_tier}")


@dataclass(frozen=True)
class RebalanceCostModel:
    """Cost inputs for the range optimizer."""
    gas_cost_per_rebalance: float
    pool_fee_tier: Optional[float] = None
    position_value_usd: Optional[float] = None

    def __post_init__(self):
        if self.gas_cost_per_rebalance < 0:
            raise ConfigurationError("gas_cost_per_rebalance must be non-negative")
        if self.pool_fee_tier is not None and not 0 <= self.pool_fee_tier < 1:
            raise ConfigurationError(f"pool_fee_tier must be in [0, 1), got {self.pool_fee_tier}")

    def cost_per_rebalance(self) -> float:
        return rebalance_cost_usd(
            self.gas_cost_per_rebalance, self.position_value_usd or 0.0, self.pool_fee_tier
        )

    @classmethod
    def coerce(cls, value: Any) -> Optional["RebalanceCostModel"]:
        """Accept a model, a mapping of its fields, or None."""
        if value is None or isinstance(value, cls):
            return value
        if isinstance(value, Mapping):
            try:
                return cls(**value)
            except TypeError as e:
                raise ConfigurationError(f"invalid cost_model: {e}") from e
        raise ConfigurationError(
            f"cost_model must be a RebalanceCostModel or a mapping, got {type(value).__name__}"
        )


@dataclass(frozen=True)
class TradeCost:
    fees: float
    slippage: float

    @property
    def total(self) -> float:
        return self.fees + self.slippage


class CostCalculator:
    """Translate trades and rebalances into USD cost.

    When the gas model names a network without a fixed gwei price, the price
    is fetched once and reused for the rest of the run; a failed fetch falls
    back to the network default (also reused).
    """

    def __init__(self, cost_model: Optional[CostModel] = None,
                 gas_service: Optional[GasPriceService] = None):
        self.cost_model = cost_model or CostModel()
        self._gas_service = gas_service
        self._run_gas_price_gwei: Optional[float] = None

    def reset_run_cache(self) -> None:
        self._run_gas_price_gwei = None

    def _gas_price_gwei(self, gas_model: GasModel) -> float:
        if gas_model.gas_price_gwei is not None:
            return gas_model.gas_price_gwei
        if self._run_gas_price_gwei is not None:
            return self._run_gas_price_gwei
        if gas_model.network is None:
            price = FALLBACK_GAS_PRICE_GWEI
        else:
            if self._gas_service is None:
                self._gas_service = GasPriceService()
            try:
                price = self._gas_service.fetch_gas_price(gas_model.network)
            except DataUnavailable as exc:
                price = get_network_config(gas_model.network).default_gas_price_gwei
                logger.warning(
                    "Gas price lookup failed for %s (%s); using default %.4f gwei",
                    gas_model.network, exc, price,
                )
        self._run_gas_price_gwei = price
        return price

    def get_gas_cost(self) -> float:
        """USD gas cost of one on-chain transaction."""
        gm = self.cost_model.gas_model
        if gm is not None:
            return gm.gas_units_per_rebalance * (self._gas_price_gwei(gm) / GWEI_PER_ETH) \
                * gm.native_token_price_usd
        if self.cost_model.gas_cost_usd is not None:
            return self.cost_model.gas_cost_usd
        return get_config().costs.gas_cost_usd

    def calculate_slippage(self, trade: Trade) -> float:
        return trade.value() * self.cost_model.slippage_bps / 10_000.0

    def calculate_total_cost(self, trade: Trade) -> TradeCost:
        return TradeCost(fees=self.get_gas_cost(), slippage=self.calculate_slippage(trade))

    def estimate_rebalance_fee_cost(self, position_value: float) -> float:
        return rebalance_cost_usd(0.0, position_value, self.cost_model.pool_fee_tier)

    def estimate_total_rebalance_cost(self, position_value: float) -> float:
        return rebalance_cost_usd(self.get_gas_cost(), position_value, self.cost_model.pool_fee_tier)
