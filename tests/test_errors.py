"""Tests for the error taxonomy and message sanitising."""

from custody.errors import (
    BroadcastError,
    ChainRejectionError,
    CustodyError,
    ErrorKind,
    InsufficientFundsError,
    LimitExceededError,
    NetworkError,
    RateLimitError,
    ValidationError,
    sanitize_message,
)


class TestSanitizeMessage:
    """Tests for sanitize_message."""

    def test_strips_urls(self):
        text = sanitize_message("POST https://user:pw@node.example.com/v2/abc123 failed")
        assert "node.example.com" not in text
        assert "abc123" not in text
        assert "<redacted-url>" in text

    def test_strips_paths(self):
        text = sanitize_message("cannot open /var/lib/custody/keys.db")
        assert "/var/lib" not in text

    def test_strips_fernet_tokens_and_secrets(self):
        text = sanitize_message("bad blob gAAAAABkZXYtdG9rZW4tZXhhbXBsZQ== password=hunter2")
        assert "gAAAAA" not in text
        assert "hunter2" not in text

    def test_plain_message_untouched(self):
        assert sanitize_message("Amount must be positive") == "Amount must be positive"


class TestErrorKinds:
    """Tests for error classes."""

    def test_message_sanitized_on_construction(self):
        error = NetworkError("timeout calling https://rpc.example.com/key")
        assert "rpc.example.com" not in error.message

    def test_kinds(self):
        assert ValidationError("x").kind == ErrorKind.VALIDATION
        assert LimitExceededError("x").kind == ErrorKind.VALIDATION
        assert InsufficientFundsError("x").kind == ErrorKind.INSUFFICIENT_FUNDS
        assert RateLimitError("x").kind == ErrorKind.RATE_LIMIT
        assert ChainRejectionError("x").kind == ErrorKind.CHAIN_REJECTION

    def test_hierarchy(self):
        assert issubclass(LimitExceededError, ValidationError)
        assert issubclass(RateLimitError, NetworkError)
        assert issubclass(ChainRejectionError, BroadcastError)
        assert issubclass(BroadcastError, CustodyError)

    def test_retryable(self):
        assert NetworkError("x").retryable
        assert RateLimitError("x").retryable
        assert not ValidationError("x").retryable
        assert not ChainRejectionError("x").retryable

    def test_extra_fields(self):
        assert RateLimitError("slow down", retry_after=2.5).retry_after == 2.5
        assert ChainRejectionError("no", code="tecNO_DST").code == "tecNO_DST"
