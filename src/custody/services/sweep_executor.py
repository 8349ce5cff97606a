"""Sweep execution: sign, broadcast and confirm planned sweep jobs."""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from custody.errors import ChainRejectionError, CustodyError
from custody.gateway.factory import ClientRegistry
from custody.keystore.store import KeyCustodyStore
from custody.ledger.database import session_scope
from custody.ledger.models import AuditAction, SweepJob, SweepStatus
from custody.ledger.repository import LedgerRepository
from custody.services.audit import AuditLogger

logger = logging.getLogger(__name__)

# Node replies meaning the same signed tx is already in the mempool
_ALREADY_KNOWN = ("already known", "known transaction", "alreadyknown")


class SweepExecutor:
    """Moves sweep jobs through signed -> broadcasted -> confirmed."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clients: ClientRegistry,
        keystore: KeyCustodyStore,
        audit: Optional[AuditLogger] = None,
        max_broadcast_attempts: int = 3,
    ):
        self.session_factory = session_factory
        self.clients = clients
        self.keystore = keystore
        self.audit = audit or AuditLogger(session_factory)
        self.max_broadcast_attempts = max_broadcast_attempts

    async def _jobs(self, status: SweepStatus, chain: Optional[str], network: Optional[str]) -> list[SweepJob]:
        async with session_scope(self.session_factory) as session:
            return await LedgerRepository(session).list_sweep_jobs(status, chain=chain, network=network)

    async def _update(self, job_id: int, expected: SweepStatus, **fields) -> bool:
        """Apply fields if the job is still in the expected state."""
        async with session_scope(self.session_factory) as session:
            repo = LedgerRepository(session)
            job = await repo.get_sweep_job(job_id)
            if job is None or job.status != expected:
                return False
            await repo.update_sweep_job(job, **fields)
            return True

    async def sign_planned(self, chain: Optional[str] = None, network: Optional[str] = None) -> int:
        """Sign every planned job. Returns the number signed."""
        signed_count = 0
        for job in await self._jobs(SweepStatus.PLANNED, chain, network):
            async with session_scope(self.session_factory) as session:
                record = await LedgerRepository(session).get_deposit_address_record(job.from_address)
            index = record.derivation_index if record else None

            try:
                signed = self.keystore.sign_evm(
                    job.unsigned_tx or {}, derivation_index=index, expected_address=job.from_address
                )
            except (CustodyError, KeyError) as e:
                reason = e.message if isinstance(e, CustodyError) else f"Malformed unsigned tx: missing {e}"
                logger.error(f"Could not sign sweep job {job.id}: {reason}")
                await self._update(job.id, SweepStatus.PLANNED, status=SweepStatus.FAILED, error_message=reason)
                continue

            if await self._update(
                job.id,
                SweepStatus.PLANNED,
                status=SweepStatus.SIGNED,
                signed_tx=signed.raw,
                tx_hash=signed.tx_hash,
            ):
                signed_count += 1
                logger.info(f"Signed sweep job {job.id}: {signed.tx_hash}")
        return signed_count

    async def broadcast_signed(self, chain: Optional[str] = None, network: Optional[str] = None) -> int:
        """Broadcast signed jobs, failing a job after the attempt budget."""
        broadcast_count = 0
        for job in await self._jobs(SweepStatus.SIGNED, chain, network):
            client = self.clients.get(job.chain, job.network)
            attempts = job.attempts + 1

            try:
                tx_hash = await client.broadcast(job.signed_tx)
            except ChainRejectionError as e:
                if any(marker in e.message.lower() for marker in _ALREADY_KNOWN):
                    tx_hash = job.tx_hash
                else:
                    await self._record_broadcast_failure(job, attempts, e.message)
                    continue
            except CustodyError as e:
                await self._record_broadcast_failure(job, attempts, e.message)
                continue

            if await self._update(
                job.id,
                SweepStatus.SIGNED,
                status=SweepStatus.BROADCASTED,
                tx_hash=tx_hash,
                attempts=attempts,
                error_message=None,
                broadcasted_at=datetime.now(timezone.utc),
            ):
                broadcast_count += 1
                logger.info(f"Broadcast sweep job {job.id}: {tx_hash}")
                await self.audit.log(
                    AuditAction.SWEEP_BROADCAST,
                    f"sweep_job:{job.id}",
                    {"tx_hash": tx_hash, "amount": str(job.planned_amount), "to": job.to_address},
                )
        return broadcast_count

    async def _record_broadcast_failure(self, job: SweepJob, attempts: int, reason: str) -> None:
        if attempts >= self.max_broadcast_attempts:
            logger.error(f"Sweep job {job.id} failed after {attempts} broadcast attempts: {reason}")
            await self._update(
                job.id, SweepStatus.SIGNED, status=SweepStatus.FAILED, attempts=attempts, error_message=reason
            )
        else:
            logger.warning(f"Sweep job {job.id} broadcast attempt {attempts} failed: {reason}")
            await self._update(job.id, SweepStatus.SIGNED, attempts=attempts, error_message=reason)

    async def poll_confirmations(self, chain: Optional[str] = None, network: Optional[str] = None) -> int:
        """Resolve broadcast jobs once their transaction is validated."""
        resolved = 0
        for job in await self._jobs(SweepStatus.BROADCASTED, chain, network):
            client = self.clients.get(job.chain, job.network)
            try:
                status = await client.get_transaction_status(job.tx_hash)
            except CustodyError as e:
                logger.warning(f"Could not poll sweep job {job.id}: {e}")
                continue

            if not status.validated:
                continue

            if status.success:
                fields = dict(status=SweepStatus.CONFIRMED, confirmations=status.confirmations or 1)
            else:
                fields = dict(status=SweepStatus.FAILED, error_message=f"Transaction {status.result}")

            if await self._update(job.id, SweepStatus.BROADCASTED, **fields):
                resolved += 1
                logger.info(f"Sweep job {job.id} {fields['status'].value}: {job.tx_hash}")
                if status.success:
                    await self.audit.log(
                        AuditAction.SWEEP_CONFIRM,
                        f"sweep_job:{job.id}",
                        {"tx_hash": job.tx_hash, "amount": str(job.planned_amount)},
                    )
        return resolved

    async def run_once(self, chain: Optional[str] = None, network: Optional[str] = None) -> dict[str, int]:
        """One pass of sign, broadcast and poll."""
        return {
            "signed": await self.sign_planned(chain, network),
            "broadcasted": await self.broadcast_signed(chain, network),
            "resolved": await self.poll_confirmations(chain, network),
        }
