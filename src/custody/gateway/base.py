"""Base interface for chain RPC clients.

Every chain family implements ``ChainClient``. Amounts are integers in the
chain's minimal unit (wei, drops). Services receive clients explicitly, so
tests can hand in a fake.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from custody.chains import ChainSpec
from custody.errors import NetworkError, RateLimitError
from custody.gateway.retry import RateLimiter, RetryPolicy, with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class TransactionMeta:
    """Data needed to build the next transaction from an address."""

    nonce: int      # EVM pending nonce or XRP account Sequence
    fee_rate: int   # EVM gas price in wei, XRP fee in drops


@dataclass
class TransactionStatus:
    """On-chain state of a submitted transaction."""

    tx_hash: str
    validated: bool
    success: Optional[bool] = None   # None until validated
    result: str = "pending"          # tesSUCCESS, success, reverted, not_found, ...
    confirmations: Optional[int] = None


class ChainClient(ABC):
    """Abstract RPC client for one (chain, network) pair."""

    def __init__(self, spec: ChainSpec):
        self.spec = spec

    @property
    def chain(self) -> str:
        return self.spec.chain

    @property
    def network(self) -> str:
        return self.spec.network

    @abstractmethod
    async def get_balance(self, address: str) -> int:
        """Get native balance in minimal units."""
        raise NotImplementedError()

    @abstractmethod
    async def get_transaction_meta(self, address: str) -> TransactionMeta:
        """Get nonce/sequence and current fee rate for an address."""
        raise NotImplementedError()

    @abstractmethod
    async def broadcast(self, signed_tx: str) -> str:
        """Submit a signed transaction.

        Returns:
            Transaction hash

        Raises:
            ChainRejectionError: if the node rejects the transaction
        """
        raise NotImplementedError()

    @abstractmethod
    async def get_transaction_status(self, tx_hash: str) -> TransactionStatus:
        raise NotImplementedError()

    @abstractmethod
    async def get_confirmations(self, tx_hash: str) -> Optional[int]:
        """Confirmation depth, or None if the transaction cannot be located."""
        raise NotImplementedError()

    @abstractmethod
    def validate_address(self, address: str) -> bool:
        raise NotImplementedError()

    async def close(self) -> None:
        pass


class HttpChainClient(ChainClient):
    """ChainClient over JSON HTTP with timeout, retry and rate limiting."""

    def __init__(
        self,
        spec: ChainSpec,
        rpc_url: str,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(spec)
        self.rpc_url = rpc_url
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limiter = rate_limiter or RateLimiter(0)
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def _post(self, payload: dict[str, Any], label: str) -> dict[str, Any]:
        """Single HTTP round trip, mapping transport failures to NetworkError."""
        await self.rate_limiter.acquire()

        try:
            resp = await self._client.post(self.rpc_url, json=payload)
        except httpx.TimeoutException:
            raise NetworkError(f"{label} timed out", chain=self.chain)
        except httpx.HTTPError as e:
            raise NetworkError(f"{label} transport error: {e}", chain=self.chain)

        if resp.status_code == 429:
            raise RateLimitError(
                f"{label} rate limited by node",
                retry_after=_parse_retry_after(resp.headers.get("Retry-After")),
                chain=self.chain,
            )
        if resp.status_code >= 400:
            raise NetworkError(f"{label} HTTP {resp.status_code}", chain=self.chain)

        try:
            body = resp.json()
        except ValueError:
            raise NetworkError(f"{label} returned invalid JSON", chain=self.chain)
        if not isinstance(body, dict):
            raise NetworkError(f"{label} returned unexpected payload", chain=self.chain)
        return body

    async def _retry(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        return await with_retry(
            operation,
            self.retry_policy,
            f"{self.chain}:{self.network} {label}",
            chain=self.chain,
        )

    async def close(self) -> None:
        await self._client.aclose()


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None
