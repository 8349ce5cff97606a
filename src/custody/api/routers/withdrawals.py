"""Withdrawal endpoints (token-protected)."""

import logging
import uuid
from decimal import Decimal
from typing import Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from custody.api.deps import get_services, require_admin_token, run_on_worker
from custody.ledger.database import session_scope
from custody.ledger.repository import LedgerRepository
from custody.services import CustodyServices, WithdrawalOutcome, WithdrawalRequest
from custody.units import format_amount
from custody.workers import EventKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/withdrawals", tags=["Withdrawals"])


class WithdrawalCreate(BaseModel):
    """Request to create a withdrawal."""
    user_id: str
    chain: str
    network: str
    destination_address: str
    amount: str  # Decimal as string
    asset: Optional[str] = None
    destination_tag: Optional[Union[int, str]] = None
    memo: Optional[str] = None
    max_fee: Optional[str] = None
    priority: str = "medium"
    withdrawal_id: Optional[str] = None


class WithdrawalResponse(BaseModel):
    """Withdrawal outcome."""
    withdrawal_id: str
    status: str
    tx_hash: Optional[str] = None
    fee: Optional[str] = None
    error: Optional[str] = None


class WithdrawalReview(BaseModel):
    """Operator decision on a held withdrawal."""
    reviewer: str
    comment: Optional[str] = None


def _decimal(value: Optional[str], field: str) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(value)
    except ArithmeticError:
        raise HTTPException(status_code=400, detail=f"Invalid {field}: {value}")


def _response(outcome: WithdrawalOutcome) -> WithdrawalResponse:
    return WithdrawalResponse(
        withdrawal_id=outcome.withdrawal_id,
        status=outcome.status.value,
        tx_hash=outcome.tx_hash,
        fee=format_amount(outcome.fee) if outcome.fee is not None else None,
        error=outcome.error,
    )


@router.post("", response_model=WithdrawalResponse)
async def create_withdrawal(
    body: WithdrawalCreate,
    request: Request,
    services: CustodyServices = Depends(get_services),
    _: bool = Depends(require_admin_token),
) -> WithdrawalResponse:
    """Validate, lock funds and broadcast a withdrawal."""
    withdrawal = WithdrawalRequest(
        withdrawal_id=body.withdrawal_id or uuid.uuid4().hex,
        user_id=body.user_id,
        chain=body.chain.lower(),
        network=body.network.lower(),
        destination_address=body.destination_address,
        amount=_decimal(body.amount, "amount"),
        asset=body.asset,
        destination_tag=body.destination_tag,
        memo=body.memo,
        max_fee=_decimal(body.max_fee, "max_fee"),
        priority=body.priority,
    )

    outcome = await run_on_worker(
        request,
        withdrawal.chain,
        withdrawal.network,
        EventKind.WITHDRAWAL_REQUESTED,
        withdrawal,
        lambda: services.withdrawals.process_withdrawal(withdrawal),
    )
    return _response(outcome)


@router.get("/statistics")
async def withdrawal_statistics(
    chain: Optional[str] = Query(None),
    network: Optional[str] = Query(None),
    services: CustodyServices = Depends(get_services),
    _: bool = Depends(require_admin_token),
):
    """Pending withdrawals and hot wallet balances, for one pair or all enabled pairs."""
    return await services.withdrawals.get_statistics(
        chain.lower() if chain else None, network.lower() if network else None
    )


@router.get("/{withdrawal_id}", response_model=WithdrawalResponse)
async def get_withdrawal(
    withdrawal_id: str,
    services: CustodyServices = Depends(get_services),
    _: bool = Depends(require_admin_token),
) -> WithdrawalResponse:
    """Get withdrawal status."""
    async with session_scope(services.session_factory) as session:
        withdrawal = await LedgerRepository(session).get_withdrawal(withdrawal_id)

    if withdrawal is None:
        raise HTTPException(status_code=404, detail="Withdrawal not found")

    return WithdrawalResponse(
        withdrawal_id=withdrawal.id,
        status=withdrawal.status,
        tx_hash=withdrawal.tx_hash,
        fee=format_amount(withdrawal.fee_amount) if withdrawal.fee_amount is not None else None,
        error=withdrawal.error_message,
    )


@router.post("/{withdrawal_id}/approve", response_model=WithdrawalResponse)
async def approve_withdrawal(
    withdrawal_id: str,
    body: WithdrawalReview,
    request: Request,
    services: CustodyServices = Depends(get_services),
    _: bool = Depends(require_admin_token),
) -> WithdrawalResponse:
    """Release a withdrawal held for review and broadcast it."""
    async with session_scope(services.session_factory) as session:
        withdrawal = await LedgerRepository(session).get_withdrawal(withdrawal_id)
    if withdrawal is None:
        raise HTTPException(status_code=404, detail="Withdrawal not found")

    payload = {"withdrawal_id": withdrawal_id, "approved_by": body.reviewer, "comment": body.comment}
    outcome = await run_on_worker(
        request,
        withdrawal.chain,
        withdrawal.network,
        EventKind.WITHDRAWAL_APPROVED,
        payload,
        lambda: services.withdrawals.approve_withdrawal(**payload),
    )
    return _response(outcome)


@router.post("/{withdrawal_id}/reject", response_model=WithdrawalResponse)
async def reject_withdrawal(
    withdrawal_id: str,
    body: WithdrawalReview,
    services: CustodyServices = Depends(get_services),
    _: bool = Depends(require_admin_token),
) -> WithdrawalResponse:
    """Refuse a withdrawal held for review and release the user's funds."""
    if not body.comment:
        raise HTTPException(status_code=400, detail="A rejection reason is required")
    outcome = await services.withdrawals.reject_withdrawal(withdrawal_id, body.reviewer, body.comment)
    return _response(outcome)
