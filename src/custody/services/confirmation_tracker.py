"""Deposit confirmation tracking.

Deposits enter through ``observe`` (webhook or scanner) and are re-checked
by ``poll_pending``. The stored confirmation count never decreases, and a
deposit is credited exactly once, in the same transaction that marks it
confirmed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from custody.chains import get_chain_spec
from custody.errors import CustodyError, ValidationError
from custody.gateway.factory import ClientRegistry
from custody.ledger.database import session_scope
from custody.ledger.models import AuditAction, Deposit, DepositStatus
from custody.ledger.repository import LedgerRepository
from custody.services.audit import AuditLogger
from custody.utils.locks import KeyedLocks

logger = logging.getLogger(__name__)


@dataclass
class DepositObservation:
    """A deposit seen on chain."""

    chain: str
    network: str
    address: str
    tx_hash: str
    amount: Decimal
    confirmations: int = 0
    asset: Optional[str] = None
    user_id: Optional[str] = None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ConfirmationTracker:
    """Advances pending deposits to confirmed or failed."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clients: ClientRegistry,
        audit: Optional[AuditLogger] = None,
        timeout_minutes: int = 60,
    ):
        self.session_factory = session_factory
        self.clients = clients
        self.audit = audit or AuditLogger(session_factory)
        self.timeout = timedelta(minutes=timeout_minutes)
        self.locks = KeyedLocks("deposit")

    async def observe(self, observation: DepositObservation) -> DepositStatus:
        """Record a deposit observation and apply its confirmation depth.

        Returns:
            The deposit status after the observation is applied

        Raises:
            ValidationError: unsupported chain, bad amount or unknown address
        """
        spec = get_chain_spec(observation.chain, observation.network)
        if observation.amount <= 0:
            raise ValidationError("Deposit amount must be positive")

        key = (spec.chain, spec.network, observation.tx_hash, observation.address)
        async with self.locks.hold(key, operation="observe"):
            async with session_scope(self.session_factory) as session:
                repo = LedgerRepository(session)
                deposit = await repo.get_deposit_by_tx(
                    spec.chain, spec.network, observation.tx_hash, observation.address
                )

                if deposit is None:
                    user_id = observation.user_id
                    if user_id is None:
                        record = await repo.get_deposit_address_record(observation.address)
                        if record is None:
                            raise ValidationError(f"Unknown deposit address {observation.address}")
                        user_id = record.user_id

                    deposit = await repo.create_deposit(
                        user_id=user_id,
                        chain=spec.chain,
                        network=spec.network,
                        asset=observation.asset or spec.native_asset,
                        address=observation.address,
                        amount=observation.amount,
                        tx_hash=observation.tx_hash,
                        required_confirmations=spec.required_confirmations,
                        confirmations=observation.confirmations,
                    )
                    logger.info(
                        f"New deposit {deposit.id}: {observation.amount} {deposit.asset} "
                        f"to {observation.address} ({observation.confirmations}/"
                        f"{spec.required_confirmations} confirmations)"
                    )

                return await self._apply(repo, deposit, observation.confirmations)

    async def _apply(self, repo: LedgerRepository, deposit: Deposit, observed: int) -> DepositStatus:
        if deposit.status != DepositStatus.PENDING:
            return DepositStatus(deposit.status)

        await repo.raise_confirmations(deposit.id, observed)

        if observed >= deposit.required_confirmations:
            if await repo.confirm_deposit(deposit.id):
                logger.info(f"Deposit {deposit.id} confirmed, credited {deposit.amount} {deposit.asset}")
                await self.audit.record(
                    repo,
                    AuditAction.DEPOSIT_CONFIRM,
                    f"deposit:{deposit.id}",
                    {
                        "tx_hash": deposit.tx_hash,
                        "amount": str(deposit.amount),
                        "asset": deposit.asset,
                        "confirmations": observed,
                    },
                    user_id=deposit.user_id,
                )
            return DepositStatus.CONFIRMED

        return DepositStatus.PENDING

    async def poll_pending(self, chain: str, network: str) -> dict[str, int]:
        """Re-query confirmation depth for every pending deposit on a chain."""
        spec = get_chain_spec(chain, network)
        client = self.clients.get(spec.chain, spec.network)
        stats = {"checked": 0, "confirmed": 0, "failed": 0, "errors": 0}

        async with session_scope(self.session_factory) as session:
            deposits = await LedgerRepository(session).list_deposits(
                DepositStatus.PENDING, chain=spec.chain, network=spec.network
            )

        for deposit in deposits:
            stats["checked"] += 1
            try:
                confirmations = await client.get_confirmations(deposit.tx_hash)
            except CustodyError as e:
                stats["errors"] += 1
                logger.warning(f"Could not check deposit {deposit.id}: {e}")
                continue

            key = (deposit.chain, deposit.network, deposit.tx_hash, deposit.address)
            async with self.locks.hold(key, operation="poll"):
                async with session_scope(self.session_factory) as session:
                    repo = LedgerRepository(session)

                    if confirmations is None:
                        age = datetime.now(timezone.utc) - _as_utc(deposit.created_at)
                        if age > self.timeout:
                            minutes = int(self.timeout.total_seconds() // 60)
                            if await repo.fail_deposit(
                                deposit.id, f"Transaction not found after {minutes} minutes"
                            ):
                                stats["failed"] += 1
                                logger.warning(f"Deposit {deposit.id} failed: tx {deposit.tx_hash} not found")
                        continue

                    status = await self._apply(repo, deposit, confirmations)
                    if status == DepositStatus.CONFIRMED:
                        stats["confirmed"] += 1

        if stats["checked"]:
            logger.info(f"Polled {spec.chain}:{spec.network} deposits: {stats}")
        return stats
