"""Shared FastAPI dependencies."""

import base64
import hashlib
import hmac
import logging
from typing import Any, Awaitable, Callable, Optional

from fastapi import Header, HTTPException, Request

from custody.config import get_settings
from custody.errors import ConfigurationError
from custody.services import CustodyServices
from custody.workers import EventKind, WorkerPool

logger = logging.getLogger(__name__)


async def require_admin_token(x_admin_token: str = Header(None)) -> bool:
    """Verify admin token from header.

    If ADMIN_TOKEN is not set, allows access (dev mode).
    """
    settings = get_settings()
    if settings.admin_token and x_admin_token != settings.admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")
    return True


def sign_payload(payload: bytes, secret: str, algorithm: str = "sha512") -> bytes:
    """Raw HMAC digest of a webhook body."""
    return hmac.new(secret.encode(), payload, getattr(hashlib, algorithm)).digest()


def verify_webhook_signature(
    payload: bytes,
    signature: str,
    secret: str,
    algorithm: str = "sha512",
) -> bool:
    """Check an HMAC signature sent as hex (optionally ``sha512=`` prefixed) or base64."""
    signature = signature.strip()
    if not signature.isascii():
        return False
    prefix = f"{algorithm}="
    if signature.lower().startswith(prefix):
        signature = signature[len(prefix):]

    digest = sign_payload(payload, secret, algorithm)
    return hmac.compare_digest(digest.hex(), signature.lower()) or hmac.compare_digest(
        base64.b64encode(digest).decode(), signature
    )


async def require_webhook_signature(
    request: Request,
    x_webhook_signature: Optional[str] = Header(None),
    x_payload_hash: Optional[str] = Header(None),
) -> bool:
    """Reject webhook bodies not signed with WEBHOOK_SECRET.

    Raises:
        ConfigurationError: no secret configured, so webhooks are refused
        HTTPException: 401 on a missing or wrong signature
    """
    settings = get_settings()
    if not settings.webhook_secret:
        raise ConfigurationError("WEBHOOK_SECRET is not set; deposit webhooks are disabled")

    signature = x_webhook_signature or x_payload_hash
    if not signature:
        raise HTTPException(status_code=401, detail="Missing webhook signature")

    body = await request.body()
    if not verify_webhook_signature(body, signature, settings.webhook_secret, settings.webhook_signature_algorithm):
        logger.warning(f"Rejected webhook with bad signature from {request.client.host if request.client else '?'}")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    return True


def get_services(request: Request) -> CustodyServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialised")
    return services


async def run_on_worker(
    request: Request,
    chain: str,
    network: str,
    kind: EventKind,
    payload: Any,
    direct: Callable[[], Awaitable[Any]],
) -> Any:
    """Run through the chain worker when one is running, else call directly."""
    pool: Optional[WorkerPool] = getattr(request.app.state, "workers", None)
    if pool is not None and (chain, network) in pool.workers:
        return await pool.dispatch(chain, network, kind, payload)
    return await direct()
