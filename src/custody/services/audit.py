"""Audit event recording."""

import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from custody.ledger.database import session_scope
from custody.ledger.models import AuditAction
from custody.ledger.repository import LedgerRepository

logger = logging.getLogger(__name__)


class AuditLogger:
    """Writes audit events to the ledger and the application log."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory

    async def record(
        self,
        repo: LedgerRepository,
        action: AuditAction,
        resource: str,
        details: Optional[dict[str, Any]] = None,
        user_id: Optional[str] = None,
        risk_level: str = "low",
    ) -> None:
        """Record an event inside the caller's transaction."""
        await repo.add_audit_log(action, resource, details, user_id=user_id, risk_level=risk_level)
        logger.info(f"AUDIT {action.value} {resource} risk={risk_level}")

    async def log(
        self,
        action: AuditAction,
        resource: str,
        details: Optional[dict[str, Any]] = None,
        user_id: Optional[str] = None,
        risk_level: str = "low",
    ) -> bool:
        """Record an event in its own transaction.

        Failures to persist are logged; the event is still written to the
        application log.
        """
        try:
            async with session_scope(self.session_factory) as session:
                await self.record(
                    LedgerRepository(session), action, resource, details, user_id, risk_level
                )
            return True
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist audit event {action.value} for {resource}: {e}")
            return False
