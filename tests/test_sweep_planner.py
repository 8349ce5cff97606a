"""Tests for sweep planning."""

from decimal import Decimal

import pytest

from conftest import ADMIN_ADDRESS, DEPOSIT_ADDRESS_0, make_confirmed_deposit
from custody.errors import NetworkError, ValidationError
from custody.ledger.database import session_scope
from custody.ledger.models import SweepStatus
from custody.ledger.repository import LedgerRepository
from custody.services.sweep_planner import PlanStatus, SweepPlanner

SECOND_ADDRESS = "0x2222222222222222222222222222222222222222"
GAS_COST = 21000 * 20 * 10**9


async def seed(session_factory, *deposits, admin: bool = True) -> list[int]:
    """Create confirmed deposits (address, tx_hash) and optionally the admin wallet."""
    ids = []
    async with session_scope(session_factory) as session:
        repo = LedgerRepository(session)
        if admin:
            await repo.create_admin_wallet("evm", "ethereum", "ETH", ADMIN_ADDRESS)
        for address, tx_hash in deposits:
            deposit = await make_confirmed_deposit(repo, address=address, tx_hash=tx_hash)
            ids.append(deposit.id)
    return ids


async def jobs(session_factory):
    async with session_scope(session_factory) as session:
        return await LedgerRepository(session).list_sweep_jobs()


class TestSweepPlanner:
    """Tests for SweepPlanner.plan."""

    @pytest.mark.asyncio
    async def test_plans_balance_minus_gas(self, session_factory, clients, evm_client):
        [deposit_id] = await seed(session_factory, (DEPOSIT_ADDRESS_0, "0x01"))
        evm_client.balances[DEPOSIT_ADDRESS_0] = 2 * 10**18
        evm_client.nonces[DEPOSIT_ADDRESS_0] = 3

        outcomes = await SweepPlanner(session_factory, clients).plan("evm", "ethereum")

        assert len(outcomes) == 1
        outcome = outcomes[0]
        assert outcome.status == PlanStatus.PLANNED
        assert outcome.deposit_id == deposit_id
        assert outcome.gas_cost == GAS_COST
        assert outcome.sweep_amount + outcome.gas_cost == 2 * 10**18

        [job] = await jobs(session_factory)
        assert job.status == SweepStatus.PLANNED
        assert job.from_address == DEPOSIT_ADDRESS_0
        assert job.to_address == ADMIN_ADDRESS
        assert job.unsigned_tx == {
            "from": DEPOSIT_ADDRESS_0,
            "to": ADMIN_ADDRESS,
            "value": hex(2 * 10**18 - 420000000000000),
            "gas": hex(21000),
            "gasPrice": hex(20 * 10**9),
            "nonce": hex(3),
            "chainId": 1,
        }

    @pytest.mark.asyncio
    async def test_replanning_is_idempotent(self, session_factory, clients, evm_client):
        await seed(session_factory, (DEPOSIT_ADDRESS_0, "0x01"))
        evm_client.balances[DEPOSIT_ADDRESS_0] = 10**18
        planner = SweepPlanner(session_factory, clients)

        first = await planner.plan("evm", "ethereum")
        second = await planner.plan("evm", "ethereum")

        assert second[0].status == PlanStatus.ALREADY_PLANNED
        assert second[0].job_id == first[0].job_id
        assert len(await jobs(session_factory)) == 1

    @pytest.mark.asyncio
    async def test_insufficient_gas(self, session_factory, clients, evm_client):
        await seed(session_factory, (DEPOSIT_ADDRESS_0, "0x01"))
        evm_client.balances[DEPOSIT_ADDRESS_0] = GAS_COST
        planner = SweepPlanner(session_factory, clients)

        [outcome] = await planner.plan("evm", "ethereum")

        assert outcome.status == PlanStatus.INSUFFICIENT_GAS
        [job] = await jobs(session_factory)
        assert job.status == SweepStatus.FAILED
        assert job.error_message == "insufficient_gas"
        assert job.unsigned_tx is None

        # A failed job does not block a later plan once the address is funded
        evm_client.balances[DEPOSIT_ADDRESS_0] = 2 * 10**18
        [outcome] = await planner.plan("evm", "ethereum")
        assert outcome.status == PlanStatus.PLANNED

    @pytest.mark.asyncio
    async def test_insufficient_gas_rechecks_reuse_one_job(self, session_factory, clients, evm_client):
        await seed(session_factory, (DEPOSIT_ADDRESS_0, "0x01"))
        evm_client.balances[DEPOSIT_ADDRESS_0] = GAS_COST
        planner = SweepPlanner(session_factory, clients)

        outcomes = [await planner.plan("evm", "ethereum") for _ in range(5)]

        assert {o.status for [o] in outcomes} == {PlanStatus.INSUFFICIENT_GAS}
        assert len({o.job_id for [o] in outcomes}) == 1
        [job] = await jobs(session_factory)
        assert job.error_message == "insufficient_gas"
        assert job.attempts == 4

    @pytest.mark.asyncio
    async def test_no_admin_wallet(self, session_factory, clients, evm_client):
        await seed(session_factory, (DEPOSIT_ADDRESS_0, "0x01"), admin=False)
        evm_client.balances[DEPOSIT_ADDRESS_0] = 10**18

        [outcome] = await SweepPlanner(session_factory, clients).plan("evm", "ethereum")

        assert outcome.status == PlanStatus.NO_ADMIN_WALLET
        assert await jobs(session_factory) == []
        assert evm_client.calls == []

    @pytest.mark.asyncio
    async def test_gateway_error_does_not_stop_batch(self, session_factory, clients, evm_client):
        await seed(session_factory, (DEPOSIT_ADDRESS_0, "0x01"), (SECOND_ADDRESS, "0x02"))
        evm_client.balance_errors[DEPOSIT_ADDRESS_0] = NetworkError("node down")
        evm_client.balances[SECOND_ADDRESS] = 10**18

        outcomes = await SweepPlanner(session_factory, clients).plan("evm", "ethereum")

        statuses = {o.deposit_id: o.status for o in outcomes}
        assert sorted(statuses.values()) == [PlanStatus.ERROR, PlanStatus.PLANNED]
        [job] = await jobs(session_factory)
        assert job.from_address == SECOND_ADDRESS

    @pytest.mark.asyncio
    async def test_deposit_id_filter(self, session_factory, clients, evm_client):
        first, _ = await seed(session_factory, (DEPOSIT_ADDRESS_0, "0x01"), (SECOND_ADDRESS, "0x02"))
        evm_client.balances[DEPOSIT_ADDRESS_0] = 10**18
        evm_client.balances[SECOND_ADDRESS] = 10**18

        outcomes = await SweepPlanner(session_factory, clients).plan("evm", "ethereum", deposit_ids=[first])

        assert [o.deposit_id for o in outcomes] == [first]

    @pytest.mark.asyncio
    async def test_xrp_not_supported(self, session_factory, clients):
        with pytest.raises(ValidationError):
            await SweepPlanner(session_factory, clients).plan("xrp", "mainnet")

    @pytest.mark.asyncio
    async def test_token_not_supported(self, session_factory, clients):
        with pytest.raises(ValidationError):
            await SweepPlanner(session_factory, clients).plan("evm", "ethereum", asset="USDT")

    @pytest.mark.asyncio
    async def test_planned_amount_in_display_units(self, session_factory, clients, evm_client):
        await seed(session_factory, (DEPOSIT_ADDRESS_0, "0x01"))
        evm_client.balances[DEPOSIT_ADDRESS_0] = 2 * 10**18 + GAS_COST

        await SweepPlanner(session_factory, clients).plan("evm", "ethereum")

        [job] = await jobs(session_factory)
        assert job.planned_amount == Decimal("2")
