"""Tests for sweep signing, broadcast and confirmation."""

import pytest
from eth_account import Account

from conftest import ADMIN_ADDRESS, DEPOSIT_ADDRESS_0, make_confirmed_deposit, rejection
from custody.gateway.base import TransactionStatus
from custody.ledger.database import session_scope
from custody.ledger.models import AuditAction, SweepStatus
from custody.ledger.repository import LedgerRepository
from custody.services.sweep_executor import SweepExecutor
from custody.services.sweep_planner import SweepPlanner


async def plan_one(session_factory, clients, evm_client, derivation_index=0) -> int:
    async with session_scope(session_factory) as session:
        repo = LedgerRepository(session)
        await repo.create_admin_wallet("evm", "ethereum", "ETH", ADMIN_ADDRESS)
        await repo.create_deposit_address(
            "user-1", "evm", "ethereum", "ETH", DEPOSIT_ADDRESS_0, "m/44'/60'/0'/0/0", derivation_index
        )
        await make_confirmed_deposit(repo)
    evm_client.balances[DEPOSIT_ADDRESS_0] = 2 * 10**18
    [outcome] = await SweepPlanner(session_factory, clients).plan("evm", "ethereum")
    return outcome.job_id


async def get_job(session_factory, job_id):
    async with session_scope(session_factory) as session:
        return await LedgerRepository(session).get_sweep_job(job_id)


@pytest.fixture
def executor(session_factory, clients, keystore) -> SweepExecutor:
    return SweepExecutor(session_factory, clients, keystore, max_broadcast_attempts=3)


class TestSweepExecutor:
    """Tests for the sweep job lifecycle."""

    @pytest.mark.asyncio
    async def test_sign_broadcast_confirm(self, executor, session_factory, clients, evm_client):
        job_id = await plan_one(session_factory, clients, evm_client)

        assert await executor.sign_planned("evm", "ethereum") == 1
        job = await get_job(session_factory, job_id)
        assert job.status == SweepStatus.SIGNED
        assert Account.recover_transaction(job.signed_tx).lower() == DEPOSIT_ADDRESS_0.lower()

        assert await executor.broadcast_signed("evm", "ethereum") == 1
        job = await get_job(session_factory, job_id)
        assert job.status == SweepStatus.BROADCASTED
        assert job.attempts == 1
        assert job.broadcasted_at is not None
        assert evm_client.broadcasts == [job.signed_tx]

        # Not validated yet
        assert await executor.poll_confirmations("evm", "ethereum") == 0

        evm_client.statuses[job.tx_hash] = TransactionStatus(
            tx_hash=job.tx_hash, validated=True, success=True, result="success", confirmations=12
        )
        assert await executor.poll_confirmations("evm", "ethereum") == 1

        job = await get_job(session_factory, job_id)
        assert job.status == SweepStatus.CONFIRMED
        assert job.confirmations == 12

        async with session_scope(session_factory) as session:
            repo = LedgerRepository(session)
            assert len(await repo.list_audit_logs(AuditAction.SWEEP_BROADCAST)) == 1
            assert len(await repo.list_audit_logs(AuditAction.SWEEP_CONFIRM)) == 1

    @pytest.mark.asyncio
    async def test_reverted_sweep_fails(self, executor, session_factory, clients, evm_client):
        job_id = await plan_one(session_factory, clients, evm_client)
        await executor.sign_planned()
        await executor.broadcast_signed()
        job = await get_job(session_factory, job_id)
        evm_client.statuses[job.tx_hash] = TransactionStatus(
            tx_hash=job.tx_hash, validated=True, success=False, result="reverted"
        )

        assert await executor.poll_confirmations() == 1

        job = await get_job(session_factory, job_id)
        assert job.status == SweepStatus.FAILED
        assert "reverted" in job.error_message

    @pytest.mark.asyncio
    async def test_rejections_exhaust_attempts(self, executor, session_factory, clients, evm_client):
        job_id = await plan_one(session_factory, clients, evm_client)
        await executor.sign_planned()
        evm_client.broadcast_errors.extend([rejection("nonce too low")] * 3)

        for expected_attempts in (1, 2):
            assert await executor.broadcast_signed() == 0
            job = await get_job(session_factory, job_id)
            assert job.status == SweepStatus.SIGNED
            assert job.attempts == expected_attempts

        assert await executor.broadcast_signed() == 0
        job = await get_job(session_factory, job_id)
        assert job.status == SweepStatus.FAILED
        assert job.attempts == 3
        assert "nonce too low" in job.error_message

    @pytest.mark.asyncio
    async def test_already_known_counts_as_broadcast(self, executor, session_factory, clients, evm_client):
        job_id = await plan_one(session_factory, clients, evm_client)
        await executor.sign_planned()
        signed = await get_job(session_factory, job_id)
        evm_client.broadcast_errors.append(rejection("already known"))

        assert await executor.broadcast_signed() == 1

        job = await get_job(session_factory, job_id)
        assert job.status == SweepStatus.BROADCASTED
        assert job.tx_hash == signed.tx_hash

    @pytest.mark.asyncio
    async def test_wrong_derivation_index_fails_job(self, executor, session_factory, clients, evm_client):
        job_id = await plan_one(session_factory, clients, evm_client, derivation_index=5)

        assert await executor.sign_planned() == 0

        job = await get_job(session_factory, job_id)
        assert job.status == SweepStatus.FAILED
        assert job.signed_tx is None

    @pytest.mark.asyncio
    async def test_run_once(self, executor, session_factory, clients, evm_client):
        await plan_one(session_factory, clients, evm_client)

        result = await executor.run_once("evm", "ethereum")

        assert result == {"signed": 1, "broadcasted": 1, "resolved": 0}
