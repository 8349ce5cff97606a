"""Sweep endpoints (token-protected)."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from custody.api.deps import get_services, require_admin_token
from custody.ledger.database import session_scope
from custody.ledger.models import SweepStatus
from custody.ledger.repository import LedgerRepository
from custody.services import CustodyServices
from custody.units import format_amount

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sweep", tags=["Sweeps"])


class PlanRequest(BaseModel):
    """Request to plan sweeps."""
    chain: str = "evm"
    network: str = "ethereum"
    asset: Optional[str] = None
    deposit_ids: Optional[list[int]] = None


class ExecuteRequest(BaseModel):
    """Request to run one sign/broadcast/poll pass."""
    chain: Optional[str] = None
    network: Optional[str] = None


@router.post("/plan")
async def plan_sweeps(
    body: PlanRequest,
    services: CustodyServices = Depends(get_services),
    _: bool = Depends(require_admin_token),
):
    """Plan sweeps for confirmed deposits."""
    outcomes = await services.planner.plan(body.chain, body.network, body.asset, body.deposit_ids)
    return {
        "success": True,
        "results": [
            {
                "deposit_id": o.deposit_id,
                "status": o.status.value,
                "job_id": o.job_id,
                "sweep_amount": str(o.sweep_amount) if o.sweep_amount is not None else None,
                "gas_cost": str(o.gas_cost) if o.gas_cost is not None else None,
                "error": o.error,
            }
            for o in outcomes
        ],
    }


@router.post("/execute")
async def execute_sweeps(
    body: ExecuteRequest,
    services: CustodyServices = Depends(get_services),
    _: bool = Depends(require_admin_token),
):
    """Sign, broadcast and poll sweep jobs once."""
    result = await services.executor.run_once(body.chain, body.network)
    return {"success": True, **result}


@router.get("/jobs")
async def list_jobs(
    status: Optional[SweepStatus] = Query(None),
    chain: Optional[str] = Query(None),
    network: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    services: CustodyServices = Depends(get_services),
    _: bool = Depends(require_admin_token),
):
    """List sweep jobs."""
    async with session_scope(services.session_factory) as session:
        jobs = await LedgerRepository(session).list_sweep_jobs(status, chain, network, limit)

    return [
        {
            "id": job.id,
            "deposit_id": job.deposit_id,
            "chain": job.chain,
            "network": job.network,
            "asset": job.asset,
            "from_address": job.from_address,
            "to_address": job.to_address,
            "planned_amount": format_amount(job.planned_amount),
            "status": job.status,
            "tx_hash": job.tx_hash,
            "attempts": job.attempts,
            "error_message": job.error_message,
        }
        for job in jobs
    ]
