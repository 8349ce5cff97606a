"""Chain RPC gateway."""

from custody.gateway.base import ChainClient, TransactionMeta, TransactionStatus
from custody.gateway.evm import EvmClient
from custody.gateway.factory import ClientRegistry
from custody.gateway.retry import RateLimiter, RetryPolicy, with_retry
from custody.gateway.xrp import XrpClient

__all__ = [
    "ChainClient",
    "TransactionMeta",
    "TransactionStatus",
    "EvmClient",
    "XrpClient",
    "ClientRegistry",
    "RateLimiter",
    "RetryPolicy",
    "with_retry",
]
