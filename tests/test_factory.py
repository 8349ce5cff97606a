"""Tests for the chain client registry."""

import pytest

from custody.errors import ConfigurationError, ValidationError
from custody.gateway.evm import EvmClient
from custody.gateway.factory import ClientRegistry
from custody.gateway.xrp import XrpClient


class TestClientRegistry:
    """Tests for ClientRegistry."""

    @pytest.mark.asyncio
    async def test_builds_and_caches(self, settings):
        registry = ClientRegistry(settings)

        evm = registry.get("EVM", "Ethereum")
        assert isinstance(evm, EvmClient)
        assert evm.rpc_url == "http://eth.node.test"
        assert registry.get("evm", "ethereum") is evm
        assert isinstance(registry.get("xrp", "mainnet"), XrpClient)
        assert len(registry.loaded()) == 2

        await registry.close_all()
        assert registry.loaded() == []

    def test_missing_rpc_url(self, settings):
        registry = ClientRegistry(settings)
        with pytest.raises(ConfigurationError):
            registry.get("evm", "polygon")

    def test_unsupported_pair(self, settings):
        with pytest.raises(ValidationError):
            ClientRegistry(settings).get("btc", "mainnet")

    def test_registered_client_wins(self, settings, evm_client):
        registry = ClientRegistry(settings)
        registry.register(evm_client)
        assert registry.get("evm", "ethereum") is evm_client
