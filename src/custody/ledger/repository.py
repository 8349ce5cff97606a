"""Repository for ledger operations."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from custody.errors import InsufficientFundsError, ValidationError
from custody.ledger.models import (
    AddressSubscription,
    AdminWallet,
    AuditAction,
    AuditLog,
    Deposit,
    DepositAddress,
    DepositStatus,
    HotWallet,
    SweepJob,
    SweepStatus,
    UserBalance,
    Withdrawal,
    WithdrawalStatus,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerRepository:
    """Repository for all ledger-related database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Deposit address operations
    async def create_deposit_address(
        self,
        user_id: str,
        chain: str,
        network: str,
        asset: str,
        address: str,
        derivation_path: Optional[str] = None,
        derivation_index: Optional[int] = None,
    ) -> DepositAddress:
        """Record an allocated deposit address."""
        addr = DepositAddress(
            user_id=user_id,
            chain=chain,
            network=network,
            asset=asset.upper(),
            address=address,
            derivation_path=derivation_path,
            derivation_index=derivation_index,
        )
        self.session.add(addr)
        await self.session.flush()
        return addr

    async def get_deposit_address_record(self, address: str) -> Optional[DepositAddress]:
        """Get deposit address record by address string."""
        stmt = select(DepositAddress).where(DepositAddress.address == address)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_deposit_addresses(
        self,
        chain: Optional[str] = None,
        network: Optional[str] = None,
        asset: Optional[str] = None,
    ) -> list[DepositAddress]:
        """Filtered select over deposit addresses."""
        stmt = select(DepositAddress)
        if chain:
            stmt = stmt.where(DepositAddress.chain == chain)
        if network:
            stmt = stmt.where(DepositAddress.network == network)
        if asset:
            stmt = stmt.where(DepositAddress.asset == asset.upper())
        result = await self.session.execute(stmt.order_by(DepositAddress.id))
        return list(result.scalars().all())

    # Deposit operations
    async def get_deposit(self, deposit_id: int) -> Optional[Deposit]:
        return await self.session.get(Deposit, deposit_id)

    async def get_deposit_by_tx(
        self, chain: str, network: str, tx_hash: str, address: str
    ) -> Optional[Deposit]:
        """Find a deposit by its natural key."""
        stmt = select(Deposit).where(
            Deposit.chain == chain,
            Deposit.network == network,
            Deposit.tx_hash == tx_hash,
            Deposit.address == address,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create_deposit(
        self,
        user_id: str,
        chain: str,
        network: str,
        asset: str,
        address: str,
        amount: Decimal,
        tx_hash: str,
        required_confirmations: int,
        confirmations: int = 0,
    ) -> Deposit:
        """Create a pending deposit record."""
        deposit = Deposit(
            user_id=user_id,
            chain=chain,
            network=network,
            asset=asset.upper(),
            address=address,
            amount=amount,
            tx_hash=tx_hash,
            required_confirmations=required_confirmations,
            confirmations=max(0, confirmations),
            status=DepositStatus.PENDING,
        )
        self.session.add(deposit)
        await self.session.flush()
        return deposit

    async def list_deposits(
        self,
        status: DepositStatus,
        chain: Optional[str] = None,
        network: Optional[str] = None,
        asset: Optional[str] = None,
        deposit_ids: Optional[Iterable[int]] = None,
        limit: int = 200,
    ) -> list[Deposit]:
        """Filtered select by (chain, network, asset, status), oldest first."""
        stmt = select(Deposit).where(Deposit.status == status)
        if chain:
            stmt = stmt.where(Deposit.chain == chain)
        if network:
            stmt = stmt.where(Deposit.network == network)
        if asset:
            stmt = stmt.where(Deposit.asset == asset.upper())
        if deposit_ids is not None:
            stmt = stmt.where(Deposit.id.in_(list(deposit_ids)))
        stmt = stmt.order_by(Deposit.created_at, Deposit.id).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def raise_confirmations(self, deposit_id: int, confirmations: int) -> bool:
        """Increase the observed confirmation count, never decrease it.

        Returns:
            True if the stored counter changed
        """
        stmt = (
            update(Deposit)
            .where(
                Deposit.id == deposit_id,
                Deposit.status == DepositStatus.PENDING,
                Deposit.confirmations < confirmations,
            )
            .values(confirmations=confirmations, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def confirm_deposit(self, deposit_id: int) -> bool:
        """Flip a pending deposit to confirmed and credit the owner once.

        Returns:
            True if this call performed the transition
        """
        stmt = (
            update(Deposit)
            .where(Deposit.id == deposit_id, Deposit.status == DepositStatus.PENDING)
            .values(status=DepositStatus.CONFIRMED, confirmed_at=utcnow(), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            return False

        deposit = await self.get_deposit(deposit_id)
        await self.session.refresh(deposit)
        await self.credit_balance(deposit.user_id, deposit.asset, deposit.amount)
        return True

    async def fail_deposit(self, deposit_id: int, reason: str) -> bool:
        """Mark a pending deposit as failed."""
        stmt = (
            update(Deposit)
            .where(Deposit.id == deposit_id, Deposit.status == DepositStatus.PENDING)
            .values(status=DepositStatus.FAILED, error_message=reason, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    # Admin wallet operations
    async def get_active_admin_wallet(
        self, chain: str, network: str, asset: str
    ) -> Optional[AdminWallet]:
        stmt = select(AdminWallet).where(
            AdminWallet.chain == chain,
            AdminWallet.network == network,
            AdminWallet.asset == asset.upper(),
            AdminWallet.active.is_(True),
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def create_admin_wallet(
        self, chain: str, network: str, asset: str, address: str, active: bool = True
    ) -> AdminWallet:
        wallet = AdminWallet(
            chain=chain, network=network, asset=asset.upper(), address=address, active=active
        )
        self.session.add(wallet)
        await self.session.flush()
        return wallet

    # Sweep job operations
    async def get_sweep_job(self, job_id: int) -> Optional[SweepJob]:
        return await self.session.get(SweepJob, job_id)

    async def get_blocking_sweep_job(self, deposit_id: int) -> Optional[SweepJob]:
        """Get the job that prevents re-planning a deposit (any status but failed)."""
        stmt = select(SweepJob).where(
            SweepJob.deposit_id == deposit_id,
            SweepJob.status != SweepStatus.FAILED,
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_latest_sweep_job(self, deposit_id: int) -> Optional[SweepJob]:
        stmt = (
            select(SweepJob)
            .where(SweepJob.deposit_id == deposit_id)
            .order_by(SweepJob.id.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create_sweep_job(self, **fields: Any) -> SweepJob:
        job = SweepJob(**fields)
        self.session.add(job)
        await self.session.flush()
        return job

    async def list_sweep_jobs(
        self,
        status: Optional[SweepStatus] = None,
        chain: Optional[str] = None,
        network: Optional[str] = None,
        limit: int = 100,
    ) -> list[SweepJob]:
        stmt = select(SweepJob)
        if status:
            stmt = stmt.where(SweepJob.status == status)
        if chain:
            stmt = stmt.where(SweepJob.chain == chain)
        if network:
            stmt = stmt.where(SweepJob.network == network)
        stmt = stmt.order_by(SweepJob.id).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def update_sweep_job(self, job: SweepJob, **fields: Any) -> SweepJob:
        for key, value in fields.items():
            setattr(job, key, value)
        await self.session.flush()
        return job

    # Hot wallet operations
    async def get_hot_wallet(self, wallet_id: int) -> Optional[HotWallet]:
        return await self.session.get(HotWallet, wallet_id)

    async def list_active_hot_wallets(
        self, chain: str, network: str, asset: Optional[str] = None
    ) -> list[HotWallet]:
        stmt = select(HotWallet).where(
            HotWallet.chain == chain,
            HotWallet.network == network,
            HotWallet.active.is_(True),
        )
        if asset:
            stmt = stmt.where(HotWallet.asset == asset.upper())
        result = await self.session.execute(stmt.order_by(HotWallet.id))
        return list(result.scalars().all())

    async def create_hot_wallet(self, **fields: Any) -> HotWallet:
        wallet = HotWallet(**fields)
        self.session.add(wallet)
        await self.session.flush()
        return wallet

    async def set_hot_wallet_sequence(self, wallet_id: int, sequence: int) -> None:
        stmt = (
            update(HotWallet)
            .where(HotWallet.id == wallet_id)
            .values(sequence=sequence, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    # Balance operations
    async def get_balance(self, user_id: str, asset: str) -> Optional[UserBalance]:
        """Get user balance for a specific asset."""
        stmt = select(UserBalance).where(
            UserBalance.user_id == user_id, UserBalance.asset == asset.upper()
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_balance(self, user_id: str, asset: str) -> UserBalance:
        """Get or create a balance record for user/asset."""
        balance = await self.get_balance(user_id, asset)
        if balance is None:
            balance = UserBalance(
                user_id=user_id,
                asset=asset.upper(),
                amount=Decimal("0"),
                locked_amount=Decimal("0"),
            )
            self.session.add(balance)
            await self.session.flush()
        return balance

    async def credit_balance(self, user_id: str, asset: str, amount: Decimal) -> UserBalance:
        """Add amount to user balance."""
        balance = await self.get_or_create_balance(user_id, asset)
        balance.amount += amount
        await self.session.flush()
        return balance

    async def lock_balance(self, user_id: str, asset: str, amount: Decimal) -> UserBalance:
        """Lock amount for a pending withdrawal. Raises if insufficient."""
        balance = await self.get_or_create_balance(user_id, asset)
        if balance.available < amount:
            raise InsufficientFundsError(
                f"Insufficient available balance: have {balance.available} {asset}, need {amount}"
            )
        balance.locked_amount += amount
        await self.session.flush()
        return balance

    async def unlock_balance(self, user_id: str, asset: str, amount: Decimal) -> UserBalance:
        """Release previously locked amount."""
        balance = await self.get_or_create_balance(user_id, asset)
        balance.locked_amount = max(Decimal("0"), balance.locked_amount - amount)
        await self.session.flush()
        return balance

    async def settle_locked_balance(self, user_id: str, asset: str, amount: Decimal) -> UserBalance:
        """Debit a locked amount once the withdrawal is final on-chain."""
        balance = await self.get_or_create_balance(user_id, asset)
        balance.amount -= amount
        balance.locked_amount = max(Decimal("0"), balance.locked_amount - amount)
        await self.session.flush()
        return balance

    # Withdrawal operations
    async def get_withdrawal(self, withdrawal_id: str) -> Optional[Withdrawal]:
        return await self.session.get(Withdrawal, withdrawal_id)

    async def request_withdrawal(
        self,
        withdrawal_id: str,
        user_id: str,
        chain: str,
        network: str,
        asset: str,
        destination_address: str,
        amount: Decimal,
        destination_tag: Optional[int] = None,
        memo: Optional[str] = None,
        priority: str = "medium",
        max_fee: Optional[Decimal] = None,
        status: WithdrawalStatus = WithdrawalStatus.QUEUED,
        risk_score: Optional[int] = None,
    ) -> Withdrawal:
        """Atomically lock the requested balance and record the withdrawal.

        Raises:
            InsufficientFundsError: if available balance is below amount
            ValidationError: if the withdrawal id already exists
        """
        if await self.get_withdrawal(withdrawal_id) is not None:
            raise ValidationError(f"Withdrawal {withdrawal_id} already exists")

        await self.lock_balance(user_id, asset, amount)

        withdrawal = Withdrawal(
            id=withdrawal_id,
            user_id=user_id,
            chain=chain,
            network=network,
            asset=asset.upper(),
            destination_address=destination_address,
            destination_tag=destination_tag,
            memo=memo,
            amount=amount,
            priority=priority,
            max_fee=max_fee,
            risk_score=risk_score,
            status=status,
            balance_locked=True,
        )
        self.session.add(withdrawal)
        await self.session.flush()
        return withdrawal

    async def record_rejected_withdrawal(
        self,
        withdrawal_id: str,
        user_id: str,
        chain: str,
        network: str,
        asset: str,
        destination_address: str,
        amount: Decimal,
        reason: str,
        destination_tag: Optional[int] = None,
    ) -> Withdrawal:
        """Store a withdrawal that failed validation. No balance is locked.

        An existing row with the same id is returned untouched.
        """
        existing = await self.get_withdrawal(withdrawal_id)
        if existing is not None:
            return existing

        withdrawal = Withdrawal(
            id=withdrawal_id,
            user_id=user_id,
            chain=chain,
            network=network,
            asset=asset.upper(),
            destination_address=destination_address,
            destination_tag=destination_tag,
            amount=amount,
            status=WithdrawalStatus.REJECTED,
            balance_locked=False,
            error_message=reason,
            completed_at=utcnow(),
        )
        self.session.add(withdrawal)
        await self.session.flush()
        return withdrawal

    async def update_withdrawal(self, withdrawal: Withdrawal, **fields: Any) -> Withdrawal:
        for key, value in fields.items():
            setattr(withdrawal, key, value)
        await self.session.flush()
        return withdrawal

    async def list_withdrawals(
        self,
        status: WithdrawalStatus,
        chain: Optional[str] = None,
        network: Optional[str] = None,
        limit: int = 200,
    ) -> list[Withdrawal]:
        stmt = select(Withdrawal).where(Withdrawal.status == status)
        if chain:
            stmt = stmt.where(Withdrawal.chain == chain)
        if network:
            stmt = stmt.where(Withdrawal.network == network)
        stmt = stmt.order_by(Withdrawal.created_at).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_daily_withdrawal_total(
        self, user_id: str, chain: str, network: str, since: datetime
    ) -> Decimal:
        """Sum of today's withdrawals that still count against the daily limit."""
        stmt = select(func.coalesce(func.sum(Withdrawal.amount), 0)).where(
            Withdrawal.user_id == user_id,
            Withdrawal.chain == chain,
            Withdrawal.network == network,
            Withdrawal.created_at >= since,
            Withdrawal.status.not_in([WithdrawalStatus.FAILED, WithdrawalStatus.REJECTED]),
        )
        result = await self.session.execute(stmt)
        return Decimal(str(result.scalar_one()))

    async def count_withdrawals_since(self, user_id: str, since: datetime) -> int:
        """Withdrawals requested by a user since ``since``, rejected ones excluded."""
        stmt = select(func.count(Withdrawal.id)).where(
            Withdrawal.user_id == user_id,
            Withdrawal.created_at >= since,
            Withdrawal.status != WithdrawalStatus.REJECTED,
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def get_average_withdrawal(self, user_id: str, asset: str) -> Optional[Decimal]:
        """Mean amount of a user's confirmed withdrawals, None without history."""
        stmt = select(func.avg(Withdrawal.amount)).where(
            Withdrawal.user_id == user_id,
            Withdrawal.asset == asset.upper(),
            Withdrawal.status == WithdrawalStatus.CONFIRMED,
        )
        result = await self.session.execute(stmt)
        average = result.scalar_one()
        return Decimal(str(average)) if average is not None else None

    async def has_sent_to(self, user_id: str, chain: str, destination_address: str) -> bool:
        stmt = (
            select(Withdrawal.id)
            .where(
                Withdrawal.user_id == user_id,
                Withdrawal.chain == chain,
                Withdrawal.destination_address == destination_address,
                Withdrawal.status == WithdrawalStatus.CONFIRMED,
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def get_pending_withdrawal_stats(
        self, chain: str, network: str, status: WithdrawalStatus = WithdrawalStatus.PENDING
    ) -> tuple[int, Decimal]:
        """Count and total amount of withdrawals in ``status`` (default: awaiting validation)."""
        stmt = select(
            func.count(Withdrawal.id),
            func.coalesce(func.sum(Withdrawal.amount), 0),
        ).where(
            Withdrawal.chain == chain,
            Withdrawal.network == network,
            Withdrawal.status == status,
        )
        result = await self.session.execute(stmt)
        count, total = result.one()
        return int(count), Decimal(str(total))

    # Audit log
    async def add_audit_log(
        self,
        action: AuditAction,
        resource: str,
        details: Optional[dict[str, Any]] = None,
        user_id: Optional[str] = None,
        risk_level: str = "low",
    ) -> AuditLog:
        entry = AuditLog(
            action=action,
            resource=resource,
            details=details or {},
            user_id=user_id,
            risk_level=risk_level,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_audit_logs(self, action: Optional[AuditAction] = None) -> list[AuditLog]:
        stmt = select(AuditLog)
        if action:
            stmt = stmt.where(AuditLog.action == action)
        result = await self.session.execute(stmt.order_by(AuditLog.id))
        return list(result.scalars().all())

    # Subscription operations
    async def get_subscription(
        self, chain: str, network: str, address: str
    ) -> Optional[AddressSubscription]:
        stmt = select(AddressSubscription).where(
            AddressSubscription.chain == chain,
            AddressSubscription.network == network,
            AddressSubscription.address == address,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create_subscription(
        self, chain: str, network: str, asset: str, address: str, subscription_id: str
    ) -> AddressSubscription:
        sub = AddressSubscription(
            chain=chain,
            network=network,
            asset=asset.upper(),
            address=address,
            subscription_id=subscription_id,
            status="active",
        )
        self.session.add(sub)
        await self.session.flush()
        return sub
