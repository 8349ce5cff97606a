"""Address subscription endpoint (token-protected)."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from custody.api.deps import get_services, require_admin_token
from custody.services import CustodyServices

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


class EnsureSubscriptionRequest(BaseModel):
    """Request to ensure an address subscription."""
    address: str
    chain: str
    network: str
    asset: Optional[str] = None


@router.post("/ensure")
async def ensure_subscription(
    body: EnsureSubscriptionRequest,
    services: CustodyServices = Depends(get_services),
    _: bool = Depends(require_admin_token),
):
    """Create the provider subscription for an address if missing."""
    result = await services.subscriptions.ensure_subscription(
        body.address, body.chain.lower(), body.network.lower(), body.asset
    )
    return {"success": True, **result}
