"""SQLAlchemy models for the custody ledger."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class DepositStatus(str, Enum):
    """Status of a deposit."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class SweepStatus(str, Enum):
    """Status of a sweep job."""

    PLANNED = "planned"
    SIGNED = "signed"
    BROADCASTED = "broadcasted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


NON_TERMINAL_SWEEP_STATUSES = (SweepStatus.PLANNED, SweepStatus.SIGNED, SweepStatus.BROADCASTED)


class WithdrawalStatus(str, Enum):
    """Status of a withdrawal."""

    REQUIRES_APPROVAL = "requires_approval"  # Balance locked, held for manual review
    QUEUED = "queued"                  # Balance locked, not yet broadcast
    PENDING = "pending"                # Broadcast, waiting for validation
    PENDING_RETRY = "pending_retry"    # Broadcast attempts exhausted, needs reconciliation
    CONFIRMED = "confirmed"            # Validated on-chain
    FAILED = "failed"                  # Failed on-chain or before broadcast
    REJECTED = "rejected"              # Failed validation, no chain call made


class AuditAction(str, Enum):
    """Kinds of audit events."""

    WITHDRAWAL_REQUEST = "withdrawal_request"
    WITHDRAWAL_CONFIRM = "withdrawal_confirm"
    WITHDRAWAL_FAILED = "withdrawal_failed"
    WITHDRAWAL_APPROVE = "withdrawal_approve"
    WITHDRAWAL_REJECT = "withdrawal_reject"
    DEPOSIT_CONFIRM = "deposit_confirm"
    SWEEP_BROADCAST = "sweep_broadcast"
    SWEEP_CONFIRM = "sweep_confirm"
    SECURITY_ALERT = "security_alert"


class DepositAddress(Base):
    """Per-user deposit address. Immutable once allocated."""

    __tablename__ = "deposit_addresses"
    __table_args__ = (
        Index("ix_deposit_addresses_chain_network_asset", "chain", "network", "asset"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    network: Mapped[str] = mapped_column(String(20), nullable=False)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)
    address: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    # HD wallet derivation info
    derivation_path: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    derivation_index: Mapped[Optional[int]] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class Deposit(Base):
    """Inbound transfer to a deposit address."""

    __tablename__ = "deposits"
    __table_args__ = (
        UniqueConstraint("chain", "network", "tx_hash", "address", name="uq_deposits_tx_address"),
        Index("ix_deposits_chain_network_status", "chain", "network", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    network: Mapped[str] = mapped_column(String(20), nullable=False)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)
    address: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    confirmations: Mapped[int] = mapped_column(default=0)
    required_confirmations: Mapped[int] = mapped_column(default=1)
    status: Mapped[DepositStatus] = mapped_column(
        String(20), default=DepositStatus.PENDING, nullable=False
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class AdminWallet(Base):
    """Aggregation target for sweeps. One active wallet per (chain, network, asset)."""

    __tablename__ = "admin_wallets"
    __table_args__ = (
        UniqueConstraint("chain", "network", "asset", "address", name="uq_admin_wallets_address"),
        Index(
            "uq_admin_wallets_active",
            "chain",
            "network",
            "asset",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    network: Mapped[str] = mapped_column(String(20), nullable=False)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)
    address: Mapped[str] = mapped_column(String(255), nullable=False)
    active: Mapped[bool] = mapped_column(default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class SweepJob(Base):
    """Consolidation of one deposit into the admin wallet.

    The partial unique index allows any number of failed jobs per deposit but
    only one job in any other status.
    """

    __tablename__ = "sweep_jobs"
    __table_args__ = (
        Index(
            "uq_sweep_jobs_deposit_active",
            "deposit_id",
            unique=True,
            sqlite_where=text("status != 'failed'"),
            postgresql_where=text("status != 'failed'"),
        ),
        Index("ix_sweep_jobs_status", "status"),
        Index("ix_sweep_jobs_chain_network", "chain", "network", "asset"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    deposit_id: Mapped[int] = mapped_column(nullable=False, index=True)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    network: Mapped[str] = mapped_column(String(20), nullable=False)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)
    from_address: Mapped[str] = mapped_column(String(255), nullable=False)
    to_address: Mapped[str] = mapped_column(String(255), nullable=False)
    planned_amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    currency: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[SweepStatus] = mapped_column(
        String(20), default=SweepStatus.PLANNED, nullable=False
    )
    unsigned_tx: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    signed_tx: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    confirmations: Mapped[int] = mapped_column(default=0)
    attempts: Mapped[int] = mapped_column(default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    broadcasted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class HotWallet(Base):
    """Online wallet used for withdrawals. Key material is stored encrypted."""

    __tablename__ = "hot_wallets"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    network: Mapped[str] = mapped_column(String(20), nullable=False)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)
    address: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    encrypted_secret: Mapped[str] = mapped_column(Text, nullable=False)
    public_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    max_balance: Mapped[Decimal] = mapped_column(Numeric(36, 18), default=Decimal("1000"))
    sequence: Mapped[int] = mapped_column(default=0)
    active: Mapped[bool] = mapped_column(default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UserBalance(Base):
    """Ledger balance for a user and asset."""

    __tablename__ = "user_balances"
    __table_args__ = (UniqueConstraint("user_id", "asset", name="uq_user_balances_user_asset"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), default=Decimal("0"))
    locked_amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), default=Decimal("0"))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def available(self) -> Decimal:
        """Get available (unlocked) balance."""
        return self.amount - self.locked_amount


class Withdrawal(Base):
    """Outbound transfer from a hot wallet."""

    __tablename__ = "withdrawals"
    __table_args__ = (
        Index("ix_withdrawals_chain_network_status", "chain", "network", "status"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    network: Mapped[str] = mapped_column(String(20), nullable=False)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)
    destination_address: Mapped[str] = mapped_column(String(255), nullable=False)
    destination_tag: Mapped[Optional[int]] = mapped_column(nullable=True)
    memo: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), default=Decimal("0"))
    priority: Mapped[str] = mapped_column(String(10), default="medium")
    status: Mapped[WithdrawalStatus] = mapped_column(
        String(20), default=WithdrawalStatus.QUEUED, nullable=False
    )
    balance_locked: Mapped[bool] = mapped_column(default=False)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    signed_tx: Mapped[Optional[str]] = mapped_column(Text, nullable=True)   # blob behind tx_hash, resent as-is
    hot_wallet_id: Mapped[Optional[int]] = mapped_column(nullable=True)
    sequence: Mapped[Optional[int]] = mapped_column(nullable=True)   # nonce or Sequence of signed_tx
    max_fee: Mapped[Optional[Decimal]] = mapped_column(Numeric(36, 18), nullable=True)
    risk_score: Mapped[Optional[int]] = mapped_column(nullable=True)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    review_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class AuditLog(Base):
    """Append-only audit trail."""

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    action: Mapped[AuditAction] = mapped_column(String(40), nullable=False, index=True)
    resource: Mapped[str] = mapped_column(String(100), nullable=False)
    risk_level: Mapped[str] = mapped_column(String(10), default="low")
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class AddressSubscription(Base):
    """Webhook subscription registered with the chain-indexing provider."""

    __tablename__ = "address_subscriptions"
    __table_args__ = (
        UniqueConstraint("chain", "network", "address", name="uq_address_subscriptions"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    network: Mapped[str] = mapped_column(String(20), nullable=False)
    asset: Mapped[str] = mapped_column(String(20), nullable=False)
    address: Mapped[str] = mapped_column(String(255), nullable=False)
    subscription_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
