"""Static configuration for every supported (chain, network) pair.

Chains are grouped by family: ``evm`` (account/nonce model, gas priced in wei)
and ``xrp`` (account/sequence model, fees in drops).
"""

from dataclasses import dataclass
from typing import Optional

from custody.errors import ValidationError


@dataclass(frozen=True)
class ChainSpec:
    """Configuration for a blockchain network."""

    chain: str                      # family: evm | xrp
    network: str                    # ethereum, sepolia, mainnet, testnet, ...
    native_asset: str
    decimals: int
    required_confirmations: int
    coin_type: int                  # BIP44 coin type (SLIP-44)

    chain_id: Optional[int] = None  # EVM chains only
    gas_limit: int = 21000          # plain value transfer
    base_reserve: int = 0           # minimal units that must stay on the account
    subscription_chain: Optional[str] = None
    explorer_url: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.chain, self.network)

    @property
    def is_evm(self) -> bool:
        return self.chain == "evm"


CHAINS: dict[tuple[str, str], ChainSpec] = {
    ("evm", "ethereum"): ChainSpec(
        chain="evm",
        network="ethereum",
        native_asset="ETH",
        decimals=18,
        required_confirmations=12,
        coin_type=60,
        chain_id=1,
        subscription_chain="ethereum-mainnet",
        explorer_url="https://etherscan.io",
    ),
    ("evm", "sepolia"): ChainSpec(
        chain="evm",
        network="sepolia",
        native_asset="ETH",
        decimals=18,
        required_confirmations=1,
        coin_type=60,
        chain_id=11155111,
        subscription_chain="ethereum-sepolia",
        explorer_url="https://sepolia.etherscan.io",
    ),
    ("evm", "bsc"): ChainSpec(
        chain="evm",
        network="bsc",
        native_asset="BNB",
        decimals=18,
        required_confirmations=15,
        coin_type=60,
        chain_id=56,
        subscription_chain="bsc-mainnet",
        explorer_url="https://bscscan.com",
    ),
    ("evm", "polygon"): ChainSpec(
        chain="evm",
        network="polygon",
        native_asset="MATIC",
        decimals=18,
        required_confirmations=64,
        coin_type=60,
        chain_id=137,
        subscription_chain="polygon-mainnet",
        explorer_url="https://polygonscan.com",
    ),
    ("xrp", "mainnet"): ChainSpec(
        chain="xrp",
        network="mainnet",
        native_asset="XRP",
        decimals=6,
        required_confirmations=1,
        coin_type=144,
        gas_limit=1,
        base_reserve=10_000_000,  # 10 XRP in drops
        subscription_chain="ripple-mainnet",
        explorer_url="https://xrpscan.com",
    ),
    ("xrp", "testnet"): ChainSpec(
        chain="xrp",
        network="testnet",
        native_asset="XRP",
        decimals=6,
        required_confirmations=1,
        coin_type=144,
        gas_limit=1,
        base_reserve=10_000_000,
        subscription_chain="ripple-testnet",
        explorer_url="https://testnet.xrpl.org",
    ),
}


def get_chain_spec(chain: str, network: str) -> ChainSpec:
    """Look up a chain spec.

    Raises:
        ValidationError: if the pair is not supported
    """
    spec = CHAINS.get((chain.lower(), network.lower()))
    if spec is None:
        raise ValidationError(f"Unsupported chain/network: {chain}/{network}")
    return spec


def get_supported_chains() -> list[tuple[str, str]]:
    """List supported (chain, network) pairs."""
    return list(CHAINS.keys())
