"""Tests for audit event recording."""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import SQLAlchemyError

from custody.ledger.database import session_scope
from custody.ledger.models import AuditAction
from custody.ledger.repository import LedgerRepository
from custody.services.audit import AuditLogger


class TestAuditLogger:
    """Tests for AuditLogger."""

    @pytest.mark.asyncio
    async def test_log_persists(self, session_factory):
        audit = AuditLogger(session_factory)

        assert await audit.log(
            AuditAction.SECURITY_ALERT, "hot_wallet:1", {"alert": "low_balance"}, risk_level="high"
        )

        async with session_scope(session_factory) as session:
            [entry] = await LedgerRepository(session).list_audit_logs()
        assert entry.action == AuditAction.SECURITY_ALERT
        assert entry.resource == "hot_wallet:1"
        assert entry.details == {"alert": "low_balance"}
        assert entry.risk_level == "high"

    @pytest.mark.asyncio
    async def test_log_failure_is_reported(self, session_factory):
        audit = AuditLogger(session_factory)

        with patch.object(
            LedgerRepository, "add_audit_log", AsyncMock(side_effect=SQLAlchemyError("disk full"))
        ):
            assert not await audit.log(AuditAction.SWEEP_CONFIRM, "sweep_job:1")

    @pytest.mark.asyncio
    async def test_record_joins_caller_transaction(self, session_factory):
        audit = AuditLogger(session_factory)

        with pytest.raises(RuntimeError):
            async with session_scope(session_factory) as session:
                await audit.record(LedgerRepository(session), AuditAction.DEPOSIT_CONFIRM, "deposit:1")
                raise RuntimeError("rolled back")

        async with session_scope(session_factory) as session:
            assert await LedgerRepository(session).list_audit_logs() == []
