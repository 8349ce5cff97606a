"""Balance aggregation endpoint."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from custody.api.deps import get_services, require_admin_token
from custody.services import CustodyServices

router = APIRouter(prefix="/balances", tags=["Balances"])


@router.get("/aggregate")
async def aggregate_balances(
    chain: Optional[str] = Query(None),
    network: Optional[str] = Query(None),
    asset: Optional[str] = Query(None),
    services: CustodyServices = Depends(get_services),
    _: bool = Depends(require_admin_token),
):
    """Live on-chain balances of deposit addresses."""
    return await services.aggregator.aggregate(chain, network, asset)
