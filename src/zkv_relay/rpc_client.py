"""
Destination chain JSON-RPC client with failover and health checking.

Features:
- Multi-RPC endpoint support with automatic failover
- Optional chain ID validation on connection
- Health-based endpoint selection
- Latency-based prioritization
- Request timeout handling
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .config import RPCEndpointConfig

logger = logging.getLogger(__name__)


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
    status: EndpointStatus = EndpointStatus.UNKNOWN
    consecutive_failures: int = 0
    total_requests: int = 0
    total_failures: int = 0
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None
    avg_latency_ms: float = 0.0
    last_error: Optional[str] = None

    # Thresholds
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

    def get_priority_score(self, base_priority: int) -> float:
        """
        Calculate priority score for endpoint selection.
        Lower score = higher priority.
        """
        score = float(base_priority * 100)

        if self.status == EndpointStatus.UNHEALTHY:
            score += 10000
        elif self.status == EndpointStatus.DEGRADED:
            score += 1000
        elif self.status == EndpointStatus.UNKNOWN:
            score += 500

        score += self.avg_latency_ms / 10.0
        score += self.consecutive_failures * 100

        return score


class ChainIDMismatchError(Exception):
    """Raised when chain ID doesn't match expected value."""

    def __init__(self, expected: int, received: int):
        self.expected = expected
        self.received = received
        super().__init__(
            f"Chain ID mismatch: expected {expected}, got {received}. "
            f"The RPC endpoint may belong to a different network."
        )


class RPCError(Exception):
    """JSON-RPC error returned by a node."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        self.code = code
        self.data = data
        super().__init__(message)


class AllEndpointsFailedError(Exception):
    """Raised when all RPC endpoints have failed."""

    def __init__(self, errors: List[Tuple[str, str]], timed_out: bool = False):
        self.errors = errors
        self.timed_out = timed_out
        error_summary = "; ".join([f"{url}: {err}" for url, err in errors[:3]])
        super().__init__(f"All RPC endpoints failed. Errors: {error_summary}")


# Server errors and rate limits: try the next endpoint
RETRYABLE_RPC_CODES = (-32000, -32005)


class EvmRPCClient:
    """
    JSON-RPC client for the destination chain with failover.

    Node errors that describe the request itself (reverts, nonce or funds
    problems) are raised as RPCError without failover.
    """

    def __init__(
        self,
        endpoints: List[RPCEndpointConfig],
        expected_chain_id: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not endpoints:
            raise ValueError("No RPC endpoints configured for destination chain")

        self._expected_chain_id = expected_chain_id
        self._request_id = 0
        self._http_client = http_client
        self._owns_client = http_client is None
        self._connected = False
        self._chain_id: Optional[int] = None

        self._endpoints: List[Tuple[RPCEndpointConfig, EndpointHealth]] = [
            (
                config,
                EndpointHealth(
                    url=config.url,
                    max_consecutive_failures=config.max_consecutive_failures,
                ),
            )
            for config in endpoints
        ]

        logger.info(f"Initialized destination RPC client with {len(self._endpoints)} endpoints")

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._endpoints[0][0].timeout_seconds, connect=10.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
        return self._http_client

    async def connect(self) -> None:
        """Connect to RPC and validate chain ID when one is expected."""
        if self._connected:
            return

        chain_id = await self._fetch_chain_id()
        if self._expected_chain_id is not None and chain_id != self._expected_chain_id:
            raise ChainIDMismatchError(expected=self._expected_chain_id, received=chain_id)

        self._chain_id = chain_id
        self._connected = True
        logger.info(f"Connected to destination chain {chain_id}")

    async def _fetch_chain_id(self) -> int:
        result = await self._call_internal("eth_chainId", [])
        return int(result, 16)

    def _ordered_endpoints(self) -> List[Tuple[RPCEndpointConfig, EndpointHealth]]:
        """Endpoints sorted by health score (best first)."""
        return sorted(
            self._endpoints,
            key=lambda pair: pair[1].get_priority_score(pair[0].priority),
        )

    async def _call_internal(self, method: str, params: List[Any]) -> Any:
        """Call with endpoint selection and failover."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

        errors: List[Tuple[str, str]] = []
        all_timed_out = True

        for config, health in self._ordered_endpoints():
            start_time = time.time()

            try:
                client = self._get_client()
                response = await client.post(
                    config.url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                    timeout=config.timeout_seconds,
                )

                latency_ms = (time.time() - start_time) * 1000
                response.raise_for_status()
                result = response.json()

                if "error" in result:
                    error = result["error"]
                    error_msg = str(error)
                    error_code = error.get("code", 0) if isinstance(error, dict) else 0
                    health.record_failure(error_msg)
                    errors.append((config.url, error_msg))
                    all_timed_out = False

                    if error_code in RETRYABLE_RPC_CODES and not _describes_request(error):
                        logger.warning(
                            f"RPC error from {config.url}: {error_msg}, trying next endpoint"
                        )
                        continue

                    raise RPCError(
                        message=error.get("message", error_msg) if isinstance(error, dict) else error_msg,
                        code=error_code,
                        data=error.get("data") if isinstance(error, dict) else None,
                    )

                health.record_success(latency_ms)
                logger.debug(f"RPC call {method} to {config.url} succeeded in {latency_ms:.0f}ms")
                return result.get("result")

            except RPCError:
                raise
            except httpx.TimeoutException as e:
                health.record_failure(f"timeout: {e}")
                errors.append((config.url, f"timeout: {e}"))
                logger.warning(f"RPC call {method} to {config.url} timed out")
                continue
            except (httpx.HTTPError, ValueError) as e:
                latency_ms = (time.time() - start_time) * 1000
                all_timed_out = False
                health.record_failure(str(e))
                errors.append((config.url, str(e)))
                logger.warning(f"RPC call to {config.url} failed after {latency_ms:.0f}ms: {e}")
                continue

        raise AllEndpointsFailedError(errors=errors, timed_out=all_timed_out and bool(errors))

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Make a JSON-RPC call with automatic failover.

        Raises:
            ChainIDMismatchError: If chain ID validation fails
            RPCError: If the node rejects the request
            AllEndpointsFailedError: If all endpoints fail
        """
        if not self._connected:
            await self.connect()
        return await self._call_internal(method, params or [])

    async def get_chain_id(self) -> int:
        """Get chain ID (cached after connect)."""
        if self._chain_id is None:
            await self.connect()
        return self._chain_id

    async def get_block_number(self) -> int:
        result = await self.call("eth_blockNumber")
        return int(result, 16)

    async def get_gas_price(self) -> int:
        result = await self.call("eth_gasPrice")
        return int(result, 16)

    async def get_max_priority_fee(self) -> Optional[int]:
        """Get max priority fee for EIP-1559, None if unsupported."""
        try:
            result = await self.call("eth_maxPriorityFeePerGas")
            return int(result, 16)
        except (RPCError, AllEndpointsFailedError):
            return None

    async def get_base_fee(self) -> Optional[int]:
        """Base fee of the latest block, None on pre-London chains."""
        block = await self.call("eth_getBlockByNumber", ["latest", False])
        if block and block.get("baseFeePerGas"):
            return int(block["baseFeePerGas"], 16)
        return None

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        result = await self.call("eth_estimateGas", [tx])
        return int(result, 16)

    async def get_nonce(self, address: str, block: str = "pending") -> int:
        result = await self.call("eth_getTransactionCount", [address, block])
        return int(result, 16)

    async def send_raw_transaction(self, signed_tx: str) -> str:
        """Broadcast signed transaction."""
        if not signed_tx.startswith("0x"):
            signed_tx = "0x" + signed_tx
        return await self.call("eth_sendRawTransaction", [signed_tx])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def get_logs(self, filter_params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Get logs matching filter."""
        return await self.call("eth_getLogs", [filter_params]) or []

    async def eth_call(self, tx: Dict[str, Any], block: str = "latest") -> str:
        """Execute a call without creating a transaction."""
        return await self.call("eth_call", [tx, block])

    def get_endpoint_stats(self) -> List[Dict[str, Any]]:
        """Get statistics for all endpoints."""
        return [
            {
                "url": config.url,
                "priority": config.priority,
                "status": health.status.value,
                "consecutive_failures": health.consecutive_failures,
                "total_requests": health.total_requests,
                "total_failures": health.total_failures,
                "avg_latency_ms": round(health.avg_latency_ms, 2),
                "last_error": health.last_error,
            }
            for config, health in self._endpoints
        ]

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
        self._connected = False

    async def __aenter__(self) -> "EvmRPCClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def _describes_request(error: Any) -> bool:
    """Node errors about the request itself; another endpoint would say the same."""
    if not isinstance(error, dict):
        return False
    message = str(error.get("message", "")).lower()
    return any(
        marker in message
        for marker in (
            "revert",
            "nonce",
            "insufficient funds",
            "already known",
            "underpriced",
            "intrinsic gas",
        )
    )
