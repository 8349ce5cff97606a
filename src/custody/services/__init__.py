"""Custody services and their wiring."""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from custody.config import Settings
from custody.gateway.factory import ClientRegistry
from custody.keystore.store import KeyCustodyStore
from custody.services.audit import AuditLogger
from custody.services.balance_aggregator import BalanceAggregator
from custody.services.confirmation_tracker import ConfirmationTracker, DepositObservation
from custody.services.hot_wallet_monitor import HotWalletMonitor
from custody.services.subscriptions import SubscriptionManager
from custody.services.sweep_executor import SweepExecutor
from custody.services.sweep_planner import PlanOutcome, PlanStatus, SweepPlanner
from custody.services.withdrawal_processor import (
    HotWalletRegistry,
    WithdrawalLimits,
    WithdrawalOutcome,
    WithdrawalProcessor,
    WithdrawalRequest,
)
from custody.services.withdrawal_risk import RiskAssessment, RiskPolicy, WithdrawalRiskAssessor


@dataclass
class CustodyServices:
    """Every service, built once per process and shared by workers and the API."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    clients: ClientRegistry
    keystore: KeyCustodyStore
    audit: AuditLogger
    tracker: ConfirmationTracker
    planner: SweepPlanner
    executor: SweepExecutor
    hot_wallets: HotWalletRegistry
    withdrawals: WithdrawalProcessor
    monitor: HotWalletMonitor
    aggregator: BalanceAggregator
    subscriptions: SubscriptionManager

    async def close(self) -> None:
        await self.clients.close_all()


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    clients: Optional[ClientRegistry] = None,
    keystore: Optional[KeyCustodyStore] = None,
) -> CustodyServices:
    """Wire services explicitly from settings."""
    clients = clients or ClientRegistry(settings)
    keystore = keystore or KeyCustodyStore.from_settings(settings)
    audit = AuditLogger(session_factory)
    hot_wallets = HotWalletRegistry(session_factory, clients)
    limits = WithdrawalLimits.from_settings(settings)
    risk = WithdrawalRiskAssessor(RiskPolicy.from_settings(settings))

    return CustodyServices(
        settings=settings,
        session_factory=session_factory,
        clients=clients,
        keystore=keystore,
        audit=audit,
        tracker=ConfirmationTracker(
            session_factory, clients, audit, timeout_minutes=settings.deposit_timeout_minutes
        ),
        planner=SweepPlanner(session_factory, clients),
        executor=SweepExecutor(
            session_factory,
            clients,
            keystore,
            audit,
            max_broadcast_attempts=settings.sweep_broadcast_attempts,
        ),
        hot_wallets=hot_wallets,
        withdrawals=WithdrawalProcessor(
            session_factory, clients, keystore, limits, hot_wallets, audit, risk
        ),
        monitor=HotWalletMonitor(hot_wallets, audit, settings.hot_wallet_min_balance),
        aggregator=BalanceAggregator(session_factory, clients),
        subscriptions=SubscriptionManager(session_factory, settings),
    )


__all__ = [
    "CustodyServices",
    "build_services",
    "AuditLogger",
    "BalanceAggregator",
    "ConfirmationTracker",
    "DepositObservation",
    "HotWalletMonitor",
    "HotWalletRegistry",
    "PlanOutcome",
    "PlanStatus",
    "RiskAssessment",
    "RiskPolicy",
    "SubscriptionManager",
    "SweepExecutor",
    "SweepPlanner",
    "WithdrawalLimits",
    "WithdrawalOutcome",
    "WithdrawalProcessor",
    "WithdrawalRequest",
    "WithdrawalRiskAssessor",
]
