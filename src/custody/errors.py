"""Error taxonomy shared by the gateway, key store and services.

Every error carries an ``ErrorKind`` so callers can branch on the kind
instead of matching message strings. Messages pass through
``sanitize_message`` before they are stored, logged or returned.
"""

import re
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Kind of failure, used to decide retry and reporting policy."""

    VALIDATION = "validation"
    NETWORK = "network"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    RATE_LIMIT = "rate_limit"
    BROADCAST = "broadcast"
    CHAIN_REJECTION = "chain_rejection"
    CONFIGURATION = "configuration"
    KEY_NOT_FOUND = "key_not_found"


_URL_RE = re.compile(r"\b[a-zA-Z][a-zA-Z0-9+.-]*://[^\s'\"]+")
_PATH_RE = re.compile(r"(?<![\w:/])(?:/[\w.\-]+){2,}/?|[A-Za-z]:\\[^\s'\"]+")
_FERNET_RE = re.compile(r"gAAAAA[A-Za-z0-9_\-=]+")
_XRP_SEED_RE = re.compile(r"\bs[1-9A-HJ-NP-Za-km-z]{28}\b")
_KV_SECRET_RE = re.compile(
    r"(?i)\b(password|passwd|secret|api[_-]?key|token|seed|private[_-]?key)(\s*[=:]\s*)[^\s,;]+"
)


def sanitize_message(message: str) -> str:
    """Strip URLs, connection strings, filesystem paths and secrets from text."""
    text = _URL_RE.sub("<redacted-url>", message)
    text = _FERNET_RE.sub("<redacted>", text)
    text = _XRP_SEED_RE.sub("<redacted>", text)
    text = _KV_SECRET_RE.sub(r"\1\2<redacted>", text)
    text = _PATH_RE.sub("<redacted-path>", text)
    return text


class CustodyError(Exception):
    """Base class for all custody errors."""

    kind: ErrorKind = ErrorKind.VALIDATION
    retryable: bool = False

    def __init__(self, message: str, *, chain: Optional[str] = None):
        self.chain = chain
        super().__init__(sanitize_message(message))

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(CustodyError):
    """Malformed input. Never retried."""

    kind = ErrorKind.VALIDATION


class LimitExceededError(ValidationError):
    """A withdrawal limit (single, daily, fee) was exceeded."""


class NetworkError(CustodyError):
    """RPC timeout, connection failure or server error."""

    kind = ErrorKind.NETWORK
    retryable = True


class RateLimitError(NetworkError):
    """HTTP 429 or chain-level equivalent."""

    kind = ErrorKind.RATE_LIMIT

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[float] = None,
        chain: Optional[str] = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, chain=chain)


class InsufficientFundsError(CustodyError):
    """Balance or gas too low. Fatal to the specific job."""

    kind = ErrorKind.INSUFFICIENT_FUNDS


class BroadcastError(CustodyError):
    """Transaction could not be submitted after the allowed attempts."""

    kind = ErrorKind.BROADCAST


class ChainRejectionError(BroadcastError):
    """The node rejected the transaction on submission."""

    kind = ErrorKind.CHAIN_REJECTION

    def __init__(self, message: str, *, code: Optional[str] = None, chain: Optional[str] = None):
        self.code = code
        super().__init__(message, chain=chain)


class ConfigurationError(CustodyError):
    """Missing credentials or URLs. Fatal at startup."""

    kind = ErrorKind.CONFIGURATION


class KeyNotFoundError(CustodyError):
    """No key material is available for the requested address."""

    kind = ErrorKind.KEY_NOT_FOUND
