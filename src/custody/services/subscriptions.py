"""Address event subscriptions with the indexing provider.

Deposit addresses are registered with a Tatum-style REST API so that
incoming transfers are pushed to our webhook.
"""

import logging
from typing import Any, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from custody.chains import get_chain_spec
from custody.config import Settings
from custody.errors import NetworkError, RateLimitError, ValidationError
from custody.gateway.retry import RetryPolicy, with_retry
from custody.ledger.database import session_scope
from custody.ledger.repository import LedgerRepository

logger = logging.getLogger(__name__)


class SubscriptionManager:
    """Ensures each deposit address has exactly one provider subscription."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.retry_policy = RetryPolicy.from_settings(settings)
        self._transport = transport

    async def _create_remote(self, address: str, chain_name: str, testnet: bool) -> str:
        self.settings.require("subscription_api_key", "webhook_url")
        url = f"{self.settings.subscription_api_url.rstrip('/')}/subscription"
        payload = {
            "type": "ADDRESS_EVENT",
            "attr": {"address": address, "chain": chain_name, "url": self.settings.webhook_url},
        }

        async def attempt() -> str:
            try:
                async with httpx.AsyncClient(
                    timeout=self.settings.rpc_timeout_seconds, transport=self._transport
                ) as client:
                    resp = await client.post(
                        url,
                        json=payload,
                        params={"type": "testnet" if testnet else "mainnet"},
                        headers={"x-api-key": self.settings.subscription_api_key},
                    )
            except httpx.HTTPError as e:
                raise NetworkError(f"Subscription request failed: {e}")

            if resp.status_code == 429:
                raise RateLimitError("Subscription provider rate limited")
            if resp.status_code >= 500:
                raise NetworkError(f"Subscription provider HTTP {resp.status_code}")
            if resp.status_code >= 400:
                raise ValidationError(f"Subscription rejected: HTTP {resp.status_code} {resp.text[:200]}")

            subscription_id = resp.json().get("id")
            if not subscription_id:
                raise NetworkError("Subscription provider returned no id")
            return str(subscription_id)

        return await with_retry(attempt, self.retry_policy, "subscription create")

    async def ensure_subscription(
        self, address: str, chain: str, network: str, asset: Optional[str] = None
    ) -> dict[str, Any]:
        """Create the subscription for an address unless one is recorded.

        Returns:
            {"subscription_id": ..., "status": "existing" | "created"}
        """
        spec = get_chain_spec(chain, network)
        if not spec.subscription_chain:
            raise ValidationError(f"Subscriptions are not available for {spec.chain}:{spec.network}")

        async with session_scope(self.session_factory) as session:
            existing = await LedgerRepository(session).get_subscription(spec.chain, spec.network, address)
        if existing is not None:
            return {"subscription_id": existing.subscription_id, "status": "existing"}

        testnet = spec.network in ("sepolia", "testnet")
        subscription_id = await self._create_remote(address, spec.subscription_chain, testnet)

        async with session_scope(self.session_factory) as session:
            repo = LedgerRepository(session)
            # Another caller may have recorded it while the request was in flight
            existing = await repo.get_subscription(spec.chain, spec.network, address)
            if existing is not None:
                return {"subscription_id": existing.subscription_id, "status": "existing"}
            await repo.create_subscription(
                spec.chain, spec.network, asset or spec.native_asset, address, subscription_id
            )

        logger.info(f"Created subscription {subscription_id} for {address} on {spec.subscription_chain}")
        return {"subscription_id": subscription_id, "status": "created"}
