"""Tests for hot wallet balance monitoring."""

from decimal import Decimal

import pytest

from custody.errors import NetworkError
from custody.ledger.database import session_scope
from custody.ledger.models import AuditAction
from custody.ledger.repository import LedgerRepository
from custody.services.audit import AuditLogger
from custody.services.hot_wallet_monitor import HotWalletMonitor
from custody.services.withdrawal_processor import HotWalletRegistry

LOW = "rLowBalanceWa11etxxxxxxxxxxxxxxxxx"
HIGH = "rHighBalanceWa11etxxxxxxxxxxxxxxxx"


async def add_wallets(session_factory, *addresses):
    async with session_scope(session_factory) as session:
        repo = LedgerRepository(session)
        for address in addresses:
            await repo.create_hot_wallet(
                chain="xrp", network="mainnet", asset="XRP", address=address, encrypted_secret="x:y"
            )


@pytest.fixture
def monitor(session_factory, clients) -> HotWalletMonitor:
    return HotWalletMonitor(
        HotWalletRegistry(session_factory, clients), AuditLogger(session_factory), Decimal("1000")
    )


class TestHotWalletMonitor:
    """Tests for HotWalletMonitor.check_balances."""

    @pytest.mark.asyncio
    async def test_alerts_below_minimum(self, monitor, session_factory, xrp_client):
        await add_wallets(session_factory, LOW, HIGH)
        xrp_client.balances[LOW] = 500 * 10**6
        xrp_client.balances[HIGH] = 5000 * 10**6

        entries = await monitor.check_balances("xrp", "mainnet")

        flags = {entry["address"]: entry["below_minimum"] for entry in entries}
        assert flags == {LOW: True, HIGH: False}

        async with session_scope(session_factory) as session:
            alerts = await LedgerRepository(session).list_audit_logs(AuditAction.SECURITY_ALERT)
        assert len(alerts) == 1
        assert alerts[0].risk_level == "high"
        assert alerts[0].details["address"] == LOW
        assert alerts[0].details["balance"] == "500"

    @pytest.mark.asyncio
    async def test_lookup_errors_do_not_alert(self, monitor, session_factory, xrp_client):
        await add_wallets(session_factory, LOW)
        xrp_client.balance_errors[LOW] = NetworkError("node down")

        [entry] = await monitor.check_balances("xrp", "mainnet")

        assert entry["balance"] is None
        assert entry["below_minimum"] is False
        assert "node down" in entry["error"]

    @pytest.mark.asyncio
    async def test_never_raises(self, monitor):
        assert await monitor.check_balances("btc", "mainnet") == []
