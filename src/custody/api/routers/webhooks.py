"""Deposit webhook endpoint.

Receives address-event notifications from the indexing provider and feeds
them to the confirmation tracker, which handles duplicates idempotently.
"""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from custody.api.deps import get_services, require_webhook_signature, run_on_worker
from custody.services import CustodyServices, DepositObservation
from custody.workers import EventKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


class DepositWebhookPayload(BaseModel):
    """Deposit notification."""
    chain: str
    network: str
    address: str
    tx_hash: str
    amount: str  # Decimal as string
    confirmations: int = 0
    asset: Optional[str] = None


class WebhookResponse(BaseModel):
    """Webhook response."""
    success: bool
    status: str


@router.post("/deposits", response_model=WebhookResponse)
async def deposit_webhook(
    payload: DepositWebhookPayload,
    request: Request,
    services: CustodyServices = Depends(get_services),
    _: bool = Depends(require_webhook_signature),
) -> WebhookResponse:
    """Record a signed deposit observation."""
    try:
        amount = Decimal(payload.amount)
    except ArithmeticError:
        raise HTTPException(status_code=400, detail=f"Invalid amount: {payload.amount}")

    observation = DepositObservation(
        chain=payload.chain.lower(),
        network=payload.network.lower(),
        address=payload.address,
        tx_hash=payload.tx_hash,
        amount=amount,
        confirmations=max(0, payload.confirmations),
        asset=payload.asset,
    )
    logger.info(f"Deposit webhook: {observation.tx_hash} -> {observation.address}")

    status = await run_on_worker(
        request,
        observation.chain,
        observation.network,
        EventKind.DEPOSIT_OBSERVED,
        observation,
        lambda: services.tracker.observe(observation),
    )
    return WebhookResponse(success=True, status=status.value)
