"""Pytest configuration and fixtures."""

import os
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from eth_utils import is_address
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from xrpl.core.addresscodec import is_valid_classic_address

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "false"
os.environ["ADMIN_TOKEN"] = ""
os.environ["WEBHOOK_SECRET"] = "test-webhook-secret"

from custody.api.deps import sign_payload
from custody.chains import get_chain_spec
from custody.config import Settings
from custody.errors import ChainRejectionError
from custody.gateway.base import ChainClient, TransactionMeta, TransactionStatus
from custody.gateway.factory import ClientRegistry
from custody.keystore.encryption import encrypt_secret
from custody.keystore.store import KeyCustodyStore
from custody.ledger.models import Base
from custody.ledger.repository import LedgerRepository

MASTER_PASSWORD = "test-master-password"
TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)
# m/44'/60'/0'/0/0 for TEST_MNEMONIC
DEPOSIT_ADDRESS_0 = "0x9858EfFD232B4033E47d90003D41EC34EcaEda94"
ADMIN_ADDRESS = "0x1111111111111111111111111111111111111111"


class FakeChainClient(ChainClient):
    """In-memory ChainClient recording every call."""

    def __init__(self, chain: str, network: str):
        super().__init__(get_chain_spec(chain, network))
        self.balances: dict[str, int] = {}
        self.balance_errors: dict[str, Exception] = {}
        self.nonces: dict[str, int] = {}
        self.fee_rate = 20 * 10**9 if self.spec.is_evm else 12
        self.confirmations: dict[str, Optional[int]] = {}
        self.statuses: dict[str, TransactionStatus] = {}
        self.broadcast_errors: list[Exception] = []
        self.broadcasts: list[str] = []
        self.calls: list[tuple[str, str]] = []
        self._tx_counter = 0

    async def get_balance(self, address: str) -> int:
        self.calls.append(("get_balance", address))
        if address in self.balance_errors:
            raise self.balance_errors[address]
        return self.balances.get(address, 0)

    async def get_transaction_meta(self, address: str) -> TransactionMeta:
        self.calls.append(("get_transaction_meta", address))
        return TransactionMeta(nonce=self.nonces.get(address, 0), fee_rate=self.fee_rate)

    async def broadcast(self, signed_tx: str) -> str:
        self.calls.append(("broadcast", signed_tx))
        self.broadcasts.append(signed_tx)
        if self.broadcast_errors:
            raise self.broadcast_errors.pop(0)
        self._tx_counter += 1
        return f"0xfeed{self._tx_counter:060x}" if self.spec.is_evm else f"{self._tx_counter:064X}"

    async def get_transaction_status(self, tx_hash: str) -> TransactionStatus:
        self.calls.append(("get_transaction_status", tx_hash))
        return self.statuses.get(tx_hash, TransactionStatus(tx_hash=tx_hash, validated=False))

    async def get_confirmations(self, tx_hash: str) -> Optional[int]:
        self.calls.append(("get_confirmations", tx_hash))
        return self.confirmations.get(tx_hash)

    def validate_address(self, address: str) -> bool:
        if self.spec.is_evm:
            return is_address(address)
        return is_valid_classic_address(address)


def webhook_headers(body: bytes, secret: str = "test-webhook-secret") -> dict[str, str]:
    """Headers carrying a valid HMAC-SHA512 signature for ``body``."""
    return {"Content-Type": "application/json", "X-Webhook-Signature": sign_payload(body, secret).hex()}


def rejection(message: str = "tecUNFUNDED_PAYMENT") -> ChainRejectionError:
    return ChainRejectionError(f"submit rejected: {message}", code=message)


@pytest_asyncio.fixture
async def db_engine():
    """Create in-memory database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def ledger_repo(db_session: AsyncSession) -> LedgerRepository:
    """Create ledger repository for testing."""
    return LedgerRepository(db_session)


@pytest.fixture(scope="session")
def encrypted_mnemonic() -> str:
    return encrypt_secret(TEST_MNEMONIC, MASTER_PASSWORD)


@pytest.fixture
def settings(encrypted_mnemonic) -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        wallet_master_password=MASTER_PASSWORD,
        deposit_seed_encrypted=encrypted_mnemonic,
        eth_rpc_url="http://eth.node.test",
        xrp_rpc_url="http://xrp.node.test",
        rpc_max_retries=2,
        rpc_initial_delay_ms=0,
        rpc_jitter=0,
        retry_delay_ms=0,
        subscription_api_key="test-key",
        webhook_url="https://custody.test/webhooks/deposits",
    )


@pytest.fixture
def keystore(settings) -> KeyCustodyStore:
    return KeyCustodyStore.from_settings(settings)


@pytest.fixture
def evm_client() -> FakeChainClient:
    return FakeChainClient("evm", "ethereum")


@pytest.fixture
def xrp_client() -> FakeChainClient:
    return FakeChainClient("xrp", "mainnet")


@pytest.fixture
def clients(settings, evm_client, xrp_client) -> ClientRegistry:
    registry = ClientRegistry(settings)
    registry.register(evm_client)
    registry.register(xrp_client)
    return registry


async def make_confirmed_deposit(
    repo: LedgerRepository,
    address: str = DEPOSIT_ADDRESS_0,
    amount: Decimal = Decimal("2"),
    tx_hash: str = "0xabc",
    user_id: str = "user-1",
):
    """Create a confirmed EVM deposit directly in the ledger."""
    deposit = await repo.create_deposit(
        user_id=user_id,
        chain="evm",
        network="ethereum",
        asset="ETH",
        address=address,
        amount=amount,
        tx_hash=tx_hash,
        required_confirmations=12,
        confirmations=12,
    )
    await repo.confirm_deposit(deposit.id)
    return deposit
