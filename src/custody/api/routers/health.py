"""Health check endpoints."""

from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from custody import __version__
from custody.config import get_settings
from custody.ledger.database import session_scope

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "custody"}


@router.get("/health/detailed")
async def detailed_health(request: Request):
    """Detailed health check with configuration and worker info."""
    settings = get_settings()
    services = getattr(request.app.state, "services", None)
    pool = getattr(request.app.state, "workers", None)

    database = "unknown"
    if services is not None:
        try:
            async with session_scope(services.session_factory) as session:
                await session.execute(text("SELECT 1"))
            database = "ok"
        except SQLAlchemyError:
            database = "error"

    workers = {}
    if pool is not None:
        workers = {worker.name: {"queued": worker.queue.qsize()} for worker in pool.workers.values()}

    return {
        "status": "healthy" if database != "error" else "degraded",
        "service": "custody",
        "version": __version__,
        "database": database,
        "workers": workers,
        "config": settings.get_safe_dict(),
    }
