"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from custody import __version__
from custody.config import get_settings
from custody.errors import (
    BroadcastError,
    ConfigurationError,
    CustodyError,
    InsufficientFundsError,
    NetworkError,
    ValidationError,
)
from custody.ledger.database import close_db, get_session_factory, init_db
from custody.services import CustodyServices, build_services
from custody.utils.locks import LockTimeoutError
from custody.workers import WorkerPool

logger = logging.getLogger(__name__)


def status_for(error: CustodyError) -> int:
    """HTTP status for a custody error."""
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, InsufficientFundsError):
        return 402
    if isinstance(error, (NetworkError, ConfigurationError)):
        return 503
    if isinstance(error, BroadcastError):
        return 502
    return 500


async def custody_error_handler(request: Request, exc: CustodyError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": exc.kind.value, "detail": exc.message},
    )


async def lock_timeout_handler(request: Request, exc: LockTimeoutError) -> JSONResponse:
    return JSONResponse(status_code=503, content={"success": False, "error": "busy", "detail": str(exc)})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler.

    When services were injected (tests, the CLI entry point) the app does
    not own them and leaves startup and shutdown to the caller.
    """
    if app.state.services is not None:
        yield
        return

    # Startup
    settings = get_settings()
    await init_db()
    services = build_services(settings, get_session_factory())
    pool = WorkerPool(services)
    pool.start()
    app.state.services = services
    app.state.workers = pool

    yield

    # Shutdown
    await pool.stop()
    await services.close()
    app.state.services = None
    app.state.workers = None
    await close_db()


def create_app(
    services: Optional[CustodyServices] = None,
    workers: Optional[WorkerPool] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Custody API",
        description="Deposit tracking, sweeps and withdrawals",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.services = services
    app.state.workers = workers

    app.add_exception_handler(CustodyError, custody_error_handler)
    app.add_exception_handler(LockTimeoutError, lock_timeout_handler)

    # Register routes
    from custody.api.routers import balances, health, subscriptions, sweep, webhooks, withdrawals

    app.include_router(health.router, tags=["Health"])
    app.include_router(sweep.router)
    app.include_router(balances.router)
    app.include_router(withdrawals.router)
    app.include_router(webhooks.router)
    app.include_router(subscriptions.router)

    return app
