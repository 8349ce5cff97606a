"""Application configuration using pydantic-settings.

Every RPC endpoint, retry budget, withdrawal limit and worker interval is read
from the environment (or a local ``.env`` file).
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from custody.errors import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/custody.db",
        description="Database connection URL",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")
    admin_token: str = Field(default="", description="Admin API token for protected endpoints")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ======================
    # Chain RPC Endpoints
    # ======================
    eth_rpc_url: str = Field(default="", description="Ethereum mainnet JSON-RPC URL")
    sepolia_rpc_url: str = Field(default="", description="Ethereum Sepolia JSON-RPC URL")
    bsc_rpc_url: str = Field(default="", description="BSC JSON-RPC URL")
    polygon_rpc_url: str = Field(default="", description="Polygon JSON-RPC URL")
    xrp_rpc_url: str = Field(
        default="https://s1.ripple.com:51234/", description="XRP Ledger mainnet JSON-RPC URL"
    )
    xrp_testnet_rpc_url: str = Field(
        default="https://s.altnet.rippletest.net:51234/",
        description="XRP Ledger testnet JSON-RPC URL",
    )

    # ======================
    # RPC retry / rate limiting
    # ======================
    rpc_timeout_seconds: float = Field(default=30.0, description="Per-call RPC timeout")
    rpc_max_retries: int = Field(default=5, description="Retry budget per RPC call")
    rpc_initial_delay_ms: int = Field(default=1000, description="Initial backoff delay")
    rpc_max_delay_ms: int = Field(default=30000, description="Backoff ceiling")
    rpc_jitter: float = Field(default=0.1, description="Backoff jitter factor (0 disables)")
    rpc_rate_limit_per_second: float = Field(default=10.0, description="Requests/second per gateway")

    # ======================
    # Key custody
    # ======================
    wallet_master_password: Optional[str] = Field(
        default=None, description="Master password that unlocks encrypted key material"
    )
    deposit_seed_encrypted: Optional[str] = Field(
        default=None, description="Encrypted BIP39 seed phrase for deposit addresses"
    )

    # ======================
    # Withdrawals
    # ======================
    max_single_amount: Decimal = Field(default=Decimal("10000"), description="Per-request limit")
    max_daily_amount: Decimal = Field(default=Decimal("50000"), description="Per-user daily limit")
    min_reserve: Decimal = Field(default=Decimal("10"), description="Reserve kept on hot wallets")
    max_fee: Decimal = Field(default=Decimal("1"), description="Maximum acceptable network fee")
    default_fee: Decimal = Field(default=Decimal("0.000012"), description="Fallback network fee")
    hot_wallet_min_balance: Decimal = Field(
        default=Decimal("1000"), description="Alert when a hot wallet drops below this"
    )
    retry_attempts: int = Field(default=3, description="Build/sign/broadcast attempts")
    retry_delay_ms: int = Field(default=5000, description="Delay between withdrawal attempts")

    # ======================
    # Withdrawal risk review
    # ======================
    withdrawal_blocklist: str = Field(default="", description="Comma-separated destinations always refused")
    withdrawal_allowlist: str = Field(default="", description="Comma-separated trusted destinations")
    risk_review_score: int = Field(default=60, description="Risk score (0-100) that holds a withdrawal for approval")
    max_withdrawals_per_day: int = Field(default=50, description="Per-user withdrawal count cap over 24h")

    # ======================
    # Sweeps and deposits
    # ======================
    sweep_broadcast_attempts: int = Field(default=3, description="Broadcast attempts per sweep job")
    deposit_timeout_minutes: int = Field(
        default=60, description="Fail a pending deposit not located after this long"
    )

    # ======================
    # Worker loops
    # ======================
    worker_queue_size: int = Field(default=1000, description="Bounded queue size per chain")
    confirmation_interval_seconds: int = Field(default=30)
    sweep_interval_seconds: int = Field(default=300)
    withdrawal_confirmation_interval_seconds: int = Field(default=30)
    hot_wallet_check_interval_seconds: int = Field(default=600)
    enabled_chains: str = Field(
        default="evm:ethereum,xrp:mainnet",
        description="Comma-separated chain:network pairs with worker loops",
    )

    # ======================
    # Chain indexing provider (webhook subscriptions)
    # ======================
    subscription_api_url: str = Field(
        default="https://api.tatum.io/v4", description="Subscription provider base URL"
    )
    subscription_api_key: str = Field(default="", description="Subscription provider API key")
    webhook_url: str = Field(default="", description="Public URL receiving deposit webhooks")
    webhook_secret: str = Field(
        default="", description="HMAC secret for deposit webhooks (webhooks refused when unset)"
    )
    webhook_signature_algorithm: str = Field(
        default="sha512", description="HMAC digest used to sign webhook bodies"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @staticmethod
    def _split_list(value: str) -> list[str]:
        return [item.strip() for item in value.split(",") if item.strip()]

    @property
    def blocklisted_addresses(self) -> list[str]:
        return self._split_list(self.withdrawal_blocklist)

    @property
    def allowlisted_addresses(self) -> list[str]:
        return self._split_list(self.withdrawal_allowlist)

    @property
    def chain_pairs(self) -> list[tuple[str, str]]:
        """Parse ``enabled_chains`` into (chain, network) tuples."""
        pairs = []
        for item in self.enabled_chains.split(","):
            item = item.strip()
            if not item:
                continue
            chain, _, network = item.partition(":")
            pairs.append((chain.strip().lower(), network.strip().lower()))
        return pairs

    def get_rpc_url(self, chain: str, network: str) -> str:
        """Get RPC URL for a (chain, network) pair."""
        rpc_map = {
            ("evm", "ethereum"): self.eth_rpc_url,
            ("evm", "sepolia"): self.sepolia_rpc_url,
            ("evm", "bsc"): self.bsc_rpc_url,
            ("evm", "polygon"): self.polygon_rpc_url,
            ("xrp", "mainnet"): self.xrp_rpc_url,
            ("xrp", "testnet"): self.xrp_testnet_rpc_url,
        }
        return rpc_map.get((chain.lower(), network.lower()), "")

    def require(self, *names: str) -> None:
        """Fail fast when required settings are missing.

        Raises:
            ConfigurationError: naming (never revealing) the missing settings
        """
        missing = [name for name in names if not getattr(self, name, None)]
        if missing:
            raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")

    def require_rpc(self, chain: str, network: str) -> str:
        """Return the RPC URL for a pair or raise ConfigurationError."""
        url = self.get_rpc_url(chain, network)
        if not url:
            raise ConfigurationError(f"RPC URL not configured for {chain}/{network}")
        return url

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "database_url": self._redact_url(self.database_url),
            "admin_token": "***" if self.admin_token else "(not set)",
            "webhook_secret": "***" if self.webhook_secret else "(not set)",
            "master_password": "***" if self.wallet_master_password else "(not set)",
            "deposit_seed": "***" if self.deposit_seed_encrypted else "(not set)",
            "chains": {
                f"{chain}:{network}": "configured" if self.get_rpc_url(chain, network) else "(not set)"
                for chain, network in (
                    ("evm", "ethereum"),
                    ("evm", "sepolia"),
                    ("evm", "bsc"),
                    ("evm", "polygon"),
                    ("xrp", "mainnet"),
                    ("xrp", "testnet"),
                )
            },
            "rpc": {
                "timeout_seconds": self.rpc_timeout_seconds,
                "max_retries": self.rpc_max_retries,
                "initial_delay_ms": self.rpc_initial_delay_ms,
                "max_delay_ms": self.rpc_max_delay_ms,
            },
            "withdrawals": {
                "max_single_amount": str(self.max_single_amount),
                "max_daily_amount": str(self.max_daily_amount),
                "retry_attempts": self.retry_attempts,
                "risk_review_score": self.risk_review_score,
                "blocklisted_addresses": len(self.blocklisted_addresses),
            },
            "enabled_chains": self.chain_pairs,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
