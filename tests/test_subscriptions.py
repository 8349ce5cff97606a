"""Tests for webhook subscription management."""

import json

import httpx
import pytest

from conftest import DEPOSIT_ADDRESS_0
from custody.errors import ConfigurationError, ValidationError
from custody.services.subscriptions import SubscriptionManager


class Provider:
    """Scripted subscription provider."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        return httpx.Response(200, json={"id": "sub-default"})


class TestSubscriptionManager:
    """Tests for SubscriptionManager.ensure_subscription."""

    @pytest.mark.asyncio
    async def test_created_then_existing(self, session_factory, settings):
        provider = Provider(httpx.Response(200, json={"id": "sub-123"}))
        manager = SubscriptionManager(session_factory, settings, transport=httpx.MockTransport(provider))

        first = await manager.ensure_subscription(DEPOSIT_ADDRESS_0, "evm", "ethereum")
        second = await manager.ensure_subscription(DEPOSIT_ADDRESS_0, "evm", "ethereum")

        assert first == {"subscription_id": "sub-123", "status": "created"}
        assert second == {"subscription_id": "sub-123", "status": "existing"}
        assert len(provider.requests) == 1

        request = provider.requests[0]
        assert request.url.path.endswith("/subscription")
        assert request.url.params["type"] == "mainnet"
        assert request.headers["x-api-key"] == "test-key"
        body = json.loads(request.content)
        assert body == {
            "type": "ADDRESS_EVENT",
            "attr": {
                "address": DEPOSIT_ADDRESS_0,
                "chain": "ethereum-mainnet",
                "url": "https://custody.test/webhooks/deposits",
            },
        }

    @pytest.mark.asyncio
    async def test_testnet_flag(self, session_factory, settings):
        provider = Provider()
        manager = SubscriptionManager(session_factory, settings, transport=httpx.MockTransport(provider))

        await manager.ensure_subscription("rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh", "xrp", "testnet")

        assert provider.requests[0].url.params["type"] == "testnet"
        assert json.loads(provider.requests[0].content)["attr"]["chain"] == "ripple-testnet"

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, session_factory, settings):
        provider = Provider(httpx.Response(503), httpx.Response(200, json={"id": "sub-9"}))
        manager = SubscriptionManager(session_factory, settings, transport=httpx.MockTransport(provider))

        result = await manager.ensure_subscription(DEPOSIT_ADDRESS_0, "evm", "ethereum")

        assert result["subscription_id"] == "sub-9"
        assert len(provider.requests) == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, session_factory, settings):
        provider = Provider(httpx.Response(400, json={"message": "bad address"}))
        manager = SubscriptionManager(session_factory, settings, transport=httpx.MockTransport(provider))

        with pytest.raises(ValidationError):
            await manager.ensure_subscription(DEPOSIT_ADDRESS_0, "evm", "ethereum")
        assert len(provider.requests) == 1

    @pytest.mark.asyncio
    async def test_requires_credentials(self, session_factory, settings):
        unconfigured = settings.model_copy(update={"subscription_api_key": ""})
        provider = Provider()
        manager = SubscriptionManager(session_factory, unconfigured, transport=httpx.MockTransport(provider))

        with pytest.raises(ConfigurationError):
            await manager.ensure_subscription(DEPOSIT_ADDRESS_0, "evm", "ethereum")
        assert provider.requests == []
