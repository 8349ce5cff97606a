"""Registry building chain clients from settings.

Clients are created on first use and owned by the registry; there is no
module-level cache.
"""

import logging

from custody.chains import get_chain_spec
from custody.config import Settings
from custody.errors import ValidationError
from custody.gateway.base import ChainClient
from custody.gateway.evm import EvmClient
from custody.gateway.retry import RateLimiter, RetryPolicy
from custody.gateway.xrp import XrpClient

logger = logging.getLogger(__name__)


class ClientRegistry:
    """Holds one ChainClient per (chain, network)."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._clients: dict[tuple[str, str], ChainClient] = {}

    def register(self, client: ChainClient) -> None:
        """Install a pre-built client (used by tests and custom transports)."""
        self._clients[(client.chain, client.network)] = client

    def get(self, chain: str, network: str) -> ChainClient:
        """Get or build the client for a pair.

        Raises:
            ValidationError: unsupported pair
            ConfigurationError: no RPC URL configured
        """
        key = (chain.lower(), network.lower())
        client = self._clients.get(key)
        if client is None:
            client = self._build(*key)
            self._clients[key] = client
        return client

    def _build(self, chain: str, network: str) -> ChainClient:
        spec = get_chain_spec(chain, network)
        rpc_url = self.settings.require_rpc(chain, network)
        kwargs = dict(
            retry_policy=RetryPolicy.from_settings(self.settings),
            rate_limiter=RateLimiter(self.settings.rpc_rate_limit_per_second),
            timeout=self.settings.rpc_timeout_seconds,
        )

        if spec.chain == "evm":
            client: ChainClient = EvmClient(spec, rpc_url, **kwargs)
        elif spec.chain == "xrp":
            client = XrpClient(spec, rpc_url, **kwargs)
        else:
            raise ValidationError(f"No client for chain family {spec.chain}")

        logger.info(f"Created {spec.chain}:{spec.network} client")
        return client

    def loaded(self) -> list[ChainClient]:
        return list(self._clients.values())

    async def close_all(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
