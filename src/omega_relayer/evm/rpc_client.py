"""
Omega JSON-RPC client with failover and health checking.

Features:
- Multi-RPC endpoint support with automatic failover
- Chain ID validation on connection (security)
- Health-based endpoint selection
- Log filter lifecycle (eth_newFilter / eth_getFilterChanges)
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..config import OmegaSettings
from ..exceptions import AllEndpointsFailedError, ChainIDMismatchError, RPCError

logger = logging.getLogger(__name__)

CHAIN_NAME = "omega"

# Server errors and rate limits worth trying on the next endpoint
FAILOVER_ERROR_CODES = (-32000, -32005, 429)


class EndpointStatus(str, Enum):
    """Health status of an RPC endpoint."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # High latency but working
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class EndpointHealth:
    """Health tracking for an RPC endpoint."""
    url: str
    priority: int = 0
    status: EndpointStatus = EndpointStatus.UNKNOWN
    consecutive_failures: int = 0
    total_requests: int = 0
    total_failures: int = 0
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None
    avg_latency_ms: float = 0.0
    last_error: Optional[str] = None

    max_consecutive_failures: int = 3
    degraded_latency_ms: float = 5000.0

    def record_success(self, latency_ms: float) -> None:
        """Record a successful request."""
        self.consecutive_failures = 0
        self.total_requests += 1
        self.last_success = datetime.now(timezone.utc)

        # Exponential moving average
        if self.avg_latency_ms == 0:
            self.avg_latency_ms = latency_ms
        else:
            self.avg_latency_ms = 0.9 * self.avg_latency_ms + 0.1 * latency_ms

        if latency_ms > self.degraded_latency_ms:
            self.status = EndpointStatus.DEGRADED
        else:
            self.status = EndpointStatus.HEALTHY

    def record_failure(self, error: str) -> None:
        """Record a failed request."""
        self.consecutive_failures += 1
        self.total_requests += 1
        self.total_failures += 1
        self.last_failure = datetime.now(timezone.utc)
        self.last_error = error

        if self.consecutive_failures >= self.max_consecutive_failures:
            self.status = EndpointStatus.UNHEALTHY

    def get_priority_score(self) -> float:
        """Lower score = higher priority."""
        score = float(self.priority * 100)

        if self.status == EndpointStatus.UNHEALTHY:
            score += 10000
        elif self.status == EndpointStatus.DEGRADED:
            score += 1000
        elif self.status == EndpointStatus.UNKNOWN:
            score += 500

        score += self.avg_latency_ms / 10.0
        score += self.consecutive_failures * 100
        return score


def _is_revert(error: Dict[str, Any]) -> bool:
    return error.get("code") == 3 or "revert" in str(error.get("message", "")).lower()


class OmegaRPCClient:
    """
    JSON-RPC client for the Omega chain with failover and health checking.

    Endpoints are tried in priority order (configuration order, adjusted by
    health). A JSON-RPC error that indicates a node-side problem moves on
    to the next endpoint; any other error, including reverts, is raised
    immediately as RPCError.
    """

    def __init__(
        self,
        settings: Optional[OmegaSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings or OmegaSettings()
        self._validate_chain_id = self._settings.validate_chain_id
        self._request_id = 0
        self._http_client = http_client
        self._connected = False
        self._verified_chain_id: Optional[int] = None

        self._endpoints: List[EndpointHealth] = [
            EndpointHealth(url=url, priority=index)
            for index, url in enumerate(self._settings.rpc_urls)
        ]
        if not self._endpoints:
            raise ValueError("No RPC endpoints configured for Omega")

        logger.debug(f"Initialized Omega RPC client with {len(self._endpoints)} endpoints")

    @property
    def chain_id(self) -> int:
        return self._settings.chain_id

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.timeout_seconds, connect=10.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
        return self._http_client

    async def connect(self) -> None:
        """
        Connect to RPC and validate chain ID.

        SECURITY: Chain ID validation prevents signing for the wrong network.
        """
        if self._connected:
            return

        if self._validate_chain_id:
            chain_id = await self._fetch_chain_id()
            if chain_id != self._settings.chain_id:
                raise ChainIDMismatchError(
                    chain=CHAIN_NAME,
                    expected=self._settings.chain_id,
                    received=chain_id,
                )
            self._verified_chain_id = chain_id
            logger.debug(f"Chain ID validated for {CHAIN_NAME}: {chain_id}")

        self._connected = True

    async def _fetch_chain_id(self) -> int:
        result = await self._call_internal("eth_chainId", [], skip_chain_validation=True)
        return int(result, 16)

    def _ordered_endpoints(self) -> List[EndpointHealth]:
        return sorted(self._endpoints, key=lambda h: h.get_priority_score())

    async def _call_internal(
        self,
        method: str,
        params: List[Any],
        skip_chain_validation: bool = False,
    ) -> Any:
        """Internal call implementation with endpoint selection and failover."""
        if not skip_chain_validation and self._validate_chain_id and not self._connected:
            await self.connect()

        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

        errors: List[Tuple[str, str]] = []

        for health in self._ordered_endpoints():
            start_time = time.time()

            try:
                response = await self._get_client().post(
                    health.url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )
                latency_ms = (time.time() - start_time) * 1000
                response.raise_for_status()
                result = response.json()
            except (httpx.HTTPError, ValueError) as e:
                latency_ms = (time.time() - start_time) * 1000
                health.record_failure(str(e))
                errors.append((health.url, str(e)))
                logger.warning(
                    f"RPC call {method} to {health.url} failed after {latency_ms:.0f}ms: {e}"
                )
                continue

            if "error" in result:
                error = result["error"]
                error_msg = str(error)
                error_code = error.get("code", 0)

                if error_code in FAILOVER_ERROR_CODES and not _is_revert(error):
                    health.record_failure(error_msg)
                    errors.append((health.url, error_msg))
                    logger.warning(
                        f"RPC error from {health.url}: {error_msg}, trying next endpoint"
                    )
                    continue

                health.record_success(latency_ms)
                raise RPCError(
                    message=f"{method}: {error.get('message', error_msg)}",
                    code=error_code,
                    data=error.get("data"),
                    chain=CHAIN_NAME,
                )

            health.record_success(latency_ms)
            logger.debug(f"RPC call {method} to {health.url} succeeded in {latency_ms:.0f}ms")
            return result.get("result")

        raise AllEndpointsFailedError(chain=CHAIN_NAME, errors=errors)

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Make a JSON-RPC call with automatic failover.

        Raises:
            ChainIDMismatchError: If chain ID validation fails
            RPCError: If RPC returns a non-transient error
            AllEndpointsFailedError: If all endpoints fail
        """
        return await self._call_internal(method, params or [])

    async def get_block_number(self) -> int:
        """Get current block number."""
        result = await self.call("eth_blockNumber")
        return int(result, 16)

    async def get_gas_price(self) -> int:
        """Get current gas price in wei."""
        result = await self.call("eth_gasPrice")
        return int(result, 16)

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        """Estimate gas for a transaction."""
        result = await self.call("eth_estimateGas", [tx])
        return int(result, 16)

    async def get_nonce(self, address: str, block: str = "pending") -> int:
        """Get transaction count (nonce) for address."""
        result = await self.call("eth_getTransactionCount", [address, block])
        return int(result, 16)

    async def send_raw_transaction(self, signed_tx: str) -> str:
        """Broadcast signed transaction."""
        if not signed_tx.startswith("0x"):
            signed_tx = "0x" + signed_tx
        return await self.call("eth_sendRawTransaction", [signed_tx])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Get transaction receipt."""
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def get_logs(self, filter_params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Get logs matching filter."""
        return await self.call("eth_getLogs", [filter_params]) or []

    async def eth_call(self, tx: Dict[str, Any], block: str = "latest") -> str:
        """Execute a call without creating a transaction."""
        return await self.call("eth_call", [tx, block])

    # Filters live on a single node; after a failover the next poll reports an
    # unknown filter and the listener installs a new one.
    async def new_filter(self, filter_params: Dict[str, Any]) -> str:
        """Install a log filter and return its id."""
        return await self.call("eth_newFilter", [filter_params])

    async def get_filter_changes(self, filter_id: str) -> List[Dict[str, Any]]:
        """Logs matched by a filter since the previous poll."""
        return await self.call("eth_getFilterChanges", [filter_id]) or []

    async def uninstall_filter(self, filter_id: str) -> bool:
        return bool(await self.call("eth_uninstallFilter", [filter_id]))

    def get_endpoint_stats(self) -> List[Dict[str, Any]]:
        """Get statistics for all endpoints."""
        return [
            {
                "url": health.url,
                "priority": health.priority,
                "status": health.status.value,
                "consecutive_failures": health.consecutive_failures,
                "total_requests": health.total_requests,
                "total_failures": health.total_failures,
                "avg_latency_ms": round(health.avg_latency_ms, 2),
                "last_error": health.last_error,
            }
            for health in self._endpoints
        ]

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        self._connected = False

    async def __aenter__(self) -> "OmegaRPCClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
