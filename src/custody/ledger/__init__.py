"""Ledger module for tracking deposits, sweeps, withdrawals and balances."""

from custody.ledger.database import get_db, init_db, session_scope
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
from custody.ledger.repository import LedgerRepository

__all__ = [
    "get_db",
    "init_db",
    "session_scope",
    "AddressSubscription",
    "AdminWallet",
    "AuditAction",
    "AuditLog",
    "Deposit",
    "DepositAddress",
    "DepositStatus",
    "HotWallet",
    "SweepJob",
    "SweepStatus",
    "UserBalance",
    "Withdrawal",
    "WithdrawalStatus",
    "LedgerRepository",
]
