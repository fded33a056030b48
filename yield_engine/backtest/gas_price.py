"""
Live gas-price lookup over Ethereum JSON-RPC (``eth_gasPrice``).

Results are cached per network inside the service instance for
``cache_ttl_seconds``; ``clear_cache()`` forces the next call to refetch.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import requests

from ..config_structured import get_config
from ..errors import ConfigurationError, DataUnavailable

logger = logging.getLogger(__name__)

WEI_PER_GWEI = 1e9


@dataclass(frozen=True)
class NetworkConfig:
    name: str
    rpc_url: str
    chain_id: int
    default_gas_price_gwei: float


NETWORKS: Dict[str, NetworkConfig] = {
    "mainnet": NetworkConfig("mainnet", "https://eth.llamarpc.com", 1, 30.0),
    "base": NetworkConfig("base", "https://mainnet.base.org", 8453, 0.1),
    "arbitrum": NetworkConfig("arbitrum", "https://arb1.arbitrum.io/rpc", 42161, 0.1),
    "optimism": NetworkConfig("optimism", "https://mainnet.optimism.io", 10, 0.1),
}


def get_network_config(network: str) -> NetworkConfig:
    try:
        return NETWORKS[network.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown network '{network}'. Supported: {', '.join(sorted(NETWORKS))}"
        ) from None


class GasPriceService:
    """Fetch current gas prices (in gwei) per network.

    Parameters
    ----------
    session : requests.Session, optional
        HTTP session; one is created when omitted.
    timeout : float, optional
        Request timeout in seconds.
    cache_ttl_seconds : float, optional
        How long a fetched price stays valid.  0 disables caching.
    clock : callable, optional
        Monotonic clock used for cache expiry.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
        cache_ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        cfg = get_config().gas
        self._session = session or requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})
        self.timeout = timeout if timeout is not None else cfg.request_timeout_s
        self.cache_ttl_seconds = (
            cache_ttl_seconds if cache_ttl_seconds is not None else cfg.cache_ttl_seconds
        )
        self._clock = clock
        self._cache: Dict[str, Tuple[float, float]] = {}

    def clear_cache(self) -> None:
        self._cache.clear()

    def _cached(self, network: str) -> Optional[float]:
        entry = self._cache.get(network)
        if entry is None:
            return None
        price, fetched_at = entry
        if self._clock() - fetched_at > self.cache_ttl_seconds:
            del self._cache[network]
            return None
        return price

    def fetch_gas_price(self, network: str) -> float:
        """Current gas price in gwei.

        Raises
        ------
        ConfigurationError
            If the network is not supported.
        DataUnavailable
            If the RPC call fails or returns an unusable payload.
        """
        net = get_network_config(network)
        cached = self._cached(net.name)
        if cached is not None:
            return cached

        payload = {"jsonrpc": "2.0", "method": "eth_gasPrice", "params": [], "id": 1}
        try:
            resp = self._session.post(net.rpc_url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.exceptions.RequestException as exc:
            raise DataUnavailable(f"gas:{net.name}", reason=str(exc)) from exc
        except ValueError as exc:
            raise DataUnavailable(f"gas:{net.name}", reason=f"invalid JSON: {exc}") from exc

        if not isinstance(data, dict) or "error" in data or "result" not in data:
            error = data.get("error") if isinstance(data, dict) else data
            raise DataUnavailable(f"gas:{net.name}", reason=f"RPC error: {error!r}")
        try:
            wei = int(data["result"], 16)
        except (TypeError, ValueError) as exc:
            raise DataUnavailable(
                f"gas:{net.name}", reason=f"bad result {data['result']!r}"
            ) from exc

        gwei = wei / WEI_PER_GWEI
        if self.cache_ttl_seconds > 0:
            self._cache[net.name] = (gwei, self._clock())
        logger.debug("Fetched gas price for %s: %.4f gwei", net.name, gwei)
        return gwei
