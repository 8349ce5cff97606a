"""Sweep planning: builds unsigned consolidation transactions.

For each confirmed deposit without a live sweep job the planner reads the
deposit address balance, nonce and gas price, and persists a job that moves
``balance - gas_limit * gas_price`` to the active admin wallet.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from custody.chains import ChainSpec, get_chain_spec
from custody.errors import CustodyError, ValidationError
from custody.gateway.factory import ClientRegistry
from custody.ledger.database import session_scope
from custody.ledger.models import Deposit, DepositStatus, SweepStatus
from custody.ledger.repository import LedgerRepository
from custody.units import to_display

logger = logging.getLogger(__name__)

INSUFFICIENT_GAS = "insufficient_gas"


class PlanStatus(str, Enum):
    PLANNED = "planned"
    ALREADY_PLANNED = "already_planned"
    INSUFFICIENT_GAS = "insufficient_gas"
    NO_ADMIN_WALLET = "no_admin_wallet"
    ERROR = "error"


@dataclass
class PlanOutcome:
    """Result of planning one deposit."""

    deposit_id: int
    status: PlanStatus
    job_id: Optional[int] = None
    sweep_amount: Optional[int] = None   # minimal units
    gas_cost: Optional[int] = None
    error: Optional[str] = None


def build_unsigned_transfer(
    spec: ChainSpec,
    from_address: str,
    to_address: str,
    value: int,
    gas_price: int,
    nonce: int,
) -> dict:
    """Unsigned legacy transfer with hex quantities."""
    return {
        "from": from_address,
        "to": to_address,
        "value": hex(value),
        "gas": hex(spec.gas_limit),
        "gasPrice": hex(gas_price),
        "nonce": hex(nonce),
        "chainId": spec.chain_id,
    }


class SweepPlanner:
    """Plans sweeps from deposit addresses to the admin wallet."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clients: ClientRegistry):
        self.session_factory = session_factory
        self.clients = clients

    async def plan(
        self,
        chain: str,
        network: str,
        asset: Optional[str] = None,
        deposit_ids: Optional[Iterable[int]] = None,
    ) -> list[PlanOutcome]:
        """Plan sweeps for confirmed deposits.

        A failure on one deposit is reported in its outcome and does not stop
        the batch.

        Raises:
            ValidationError: unsupported chain, or a chain without sweeps
        """
        spec = get_chain_spec(chain, network)
        if not spec.is_evm:
            raise ValidationError(f"Sweeps are not supported on {spec.chain}")
        asset = (asset or spec.native_asset).upper()
        if asset != spec.native_asset:
            raise ValidationError(f"Only native {spec.native_asset} sweeps are supported")

        async with session_scope(self.session_factory) as session:
            deposits = await LedgerRepository(session).list_deposits(
                DepositStatus.CONFIRMED,
                chain=spec.chain,
                network=spec.network,
                asset=asset,
                deposit_ids=deposit_ids,
            )

        outcomes = []
        for deposit in deposits:
            outcome = await self.plan_deposit(spec, deposit)
            outcomes.append(outcome)

        planned = sum(1 for o in outcomes if o.status == PlanStatus.PLANNED)
        if outcomes:
            logger.info(f"Sweep planning {spec.chain}:{spec.network} {asset}: {planned}/{len(outcomes)} planned")
        return outcomes

    async def plan_deposit(self, spec: ChainSpec, deposit: Deposit) -> PlanOutcome:
        async with session_scope(self.session_factory) as session:
            repo = LedgerRepository(session)
            existing = await repo.get_blocking_sweep_job(deposit.id)
            if existing is not None:
                return PlanOutcome(deposit.id, PlanStatus.ALREADY_PLANNED, job_id=existing.id)

            admin = await repo.get_active_admin_wallet(spec.chain, spec.network, deposit.asset)
            if admin is None:
                logger.warning(
                    f"No active admin wallet for {spec.chain}:{spec.network} {deposit.asset}, "
                    f"skipping deposit {deposit.id}"
                )
                return PlanOutcome(deposit.id, PlanStatus.NO_ADMIN_WALLET)
            admin_address = admin.address

        client = self.clients.get(spec.chain, spec.network)
        try:
            balance = await client.get_balance(deposit.address)
            meta = await client.get_transaction_meta(deposit.address)
        except CustodyError as e:
            logger.error(f"Sweep planning failed for deposit {deposit.id}: {e}")
            return PlanOutcome(deposit.id, PlanStatus.ERROR, error=e.message)

        gas_cost = spec.gas_limit * meta.fee_rate
        job_fields = dict(
            deposit_id=deposit.id,
            chain=spec.chain,
            network=spec.network,
            asset=deposit.asset,
            from_address=deposit.address,
            to_address=admin_address,
            currency=spec.native_asset,
        )

        if balance <= gas_cost:
            async with session_scope(self.session_factory) as session:
                repo = LedgerRepository(session)
                latest = await repo.get_latest_sweep_job(deposit.id)
                if (
                    latest is not None
                    and latest.status == SweepStatus.FAILED
                    and latest.error_message == INSUFFICIENT_GAS
                ):
                    # One dust record per deposit, refreshed on each recheck
                    job = await repo.update_sweep_job(latest, attempts=latest.attempts + 1, to_address=admin_address)
                    return PlanOutcome(
                        deposit.id, PlanStatus.INSUFFICIENT_GAS, job_id=job.id, sweep_amount=0, gas_cost=gas_cost
                    )
                job = await repo.create_sweep_job(
                    **job_fields,
                    planned_amount=to_display(0, spec.decimals),
                    status=SweepStatus.FAILED,
                    error_message=INSUFFICIENT_GAS,
                )
            logger.warning(
                f"Deposit {deposit.id}: balance {balance} does not cover gas {gas_cost}, not sweeping"
            )
            return PlanOutcome(
                deposit.id, PlanStatus.INSUFFICIENT_GAS, job_id=job.id, sweep_amount=0, gas_cost=gas_cost
            )

        sweep_amount = balance - gas_cost
        unsigned_tx = build_unsigned_transfer(
            spec, deposit.address, admin_address, sweep_amount, meta.fee_rate, meta.nonce
        )

        try:
            async with session_scope(self.session_factory) as session:
                repo = LedgerRepository(session)
                existing = await repo.get_blocking_sweep_job(deposit.id)
                if existing is not None:
                    return PlanOutcome(deposit.id, PlanStatus.ALREADY_PLANNED, job_id=existing.id)

                job = await repo.create_sweep_job(
                    **job_fields,
                    planned_amount=to_display(sweep_amount, spec.decimals),
                    status=SweepStatus.PLANNED,
                    unsigned_tx=unsigned_tx,
                )
        except IntegrityError:
            # Another planner inserted a live job first
            logger.info(f"Deposit {deposit.id} was planned concurrently")
            return PlanOutcome(deposit.id, PlanStatus.ALREADY_PLANNED)

        logger.info(
            f"Planned sweep job {job.id}: {to_display(sweep_amount, spec.decimals)} {spec.native_asset} "
            f"from {deposit.address} to {admin_address}"
        )
        return PlanOutcome(
            deposit.id, PlanStatus.PLANNED, job_id=job.id, sweep_amount=sweep_amount, gas_cost=gas_cost
        )
