"""Tests for settings and chain configuration."""

import pytest

from custody.chains import get_chain_spec, get_supported_chains
from custody.config import Settings
from custody.errors import ConfigurationError, ValidationError


class TestSettings:
    """Tests for Settings helpers."""

    def test_chain_pairs(self):
        settings = Settings(_env_file=None, enabled_chains="evm:ethereum, XRP:Testnet,")
        assert settings.chain_pairs == [("evm", "ethereum"), ("xrp", "testnet")]

    def test_rpc_lookup(self, settings):
        assert settings.get_rpc_url("evm", "ethereum") == "http://eth.node.test"
        assert settings.get_rpc_url("evm", "polygon") == ""

    def test_require_rpc_missing(self, settings):
        with pytest.raises(ConfigurationError):
            settings.require_rpc("evm", "polygon")

    def test_require_names_missing_setting(self):
        settings = Settings(_env_file=None, wallet_master_password=None)
        with pytest.raises(ConfigurationError) as exc_info:
            settings.require("wallet_master_password")
        assert "wallet_master_password" in str(exc_info.value)

    def test_safe_dict_redacts_secrets(self, settings):
        safe = settings.get_safe_dict()
        assert safe["master_password"] == "***"
        assert safe["deposit_seed"] == "***"
        assert "test-master-password" not in str(safe)

    def test_redact_database_url(self):
        settings = Settings(_env_file=None, database_url="postgresql+asyncpg://app:secret@db/custody")
        assert "secret" not in settings.get_safe_dict()["database_url"]


class TestChainSpecs:
    """Tests for chain specs."""

    def test_ethereum(self):
        spec = get_chain_spec("evm", "ethereum")
        assert spec.chain_id == 1
        assert spec.gas_limit == 21000
        assert spec.required_confirmations == 12

    def test_sepolia_chain_id(self):
        assert get_chain_spec("EVM", "Sepolia").chain_id == 11155111

    def test_xrp_reserve(self):
        spec = get_chain_spec("xrp", "mainnet")
        assert spec.decimals == 6
        assert spec.base_reserve == 10_000_000

    def test_unsupported(self):
        with pytest.raises(ValidationError):
            get_chain_spec("btc", "mainnet")

    def test_supported_list(self):
        assert ("xrp", "testnet") in get_supported_chains()
