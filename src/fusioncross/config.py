"""Application configuration using pydantic-settings.

Covers the auction pricing schedule, the relay retry policy, chain
endpoints and the resolver profiles used by the simulated agents.
"""

from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug mode")
    dry_run: bool = Field(
        default=True, description="Use simulated chains instead of the signing gateway"
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/fusioncross.db",
        description="Database connection URL",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")

    # ======================
    # Swaps
    # ======================
    slots_per_swap: int = Field(default=10, ge=1, description="Fill slots per swap (N)")
    default_timelock_seconds: int = Field(
        default=1800, gt=0, description="Timelock used when the initiator gives none"
    )

    # ======================
    # Dutch Auction
    # ======================
    auction_duration_seconds: float = Field(default=300.0, gt=0, description="Auction window")
    auction_decay_steps: str = Field(
        default="0.1:0.002,0.3:0.005,0.6:0.010,1.0:0.015",
        description="fill_fraction:decay pairs, ascending",
    )
    auction_min_decay: Decimal = Field(default=Decimal("0.001"), ge=0)
    auction_max_decay: Decimal = Field(default=Decimal("0.015"), ge=0, lt=1)
    auction_time_acceleration: Decimal = Field(default=Decimal("0.5"), ge=0)
    auction_floor_ratio: Decimal = Field(default=Decimal("0.985"), gt=0, le=1)

    # ======================
    # Relay / chain RPC
    # ======================
    rpc_timeout_seconds: float = Field(default=20.0, gt=0, description="Per-call RPC timeout")
    relay_max_attempts: int = Field(default=5, ge=1, description="Claim attempts per slot")
    relay_backoff_initial: float = Field(default=1.0, ge=0)
    relay_backoff_max: float = Field(default=30.0, ge=0)
    relay_backoff_jitter: float = Field(default=1.0, ge=0)
    relay_rate_limit_pause: float = Field(
        default=15.0, ge=0, description="Minimum pause after a rate-limit response"
    )
    relay_max_concurrent_claims: int = Field(default=4, ge=1)
    relay_poll_interval: float = Field(default=5.0, gt=0, description="Feed poll interval")

    # ======================
    # Resolvers
    # ======================
    simulate_resolvers: bool = Field(
        default=True, description="Run in-process resolver agents for each auction"
    )
    resolver_poll_interval: float = Field(default=3.0, gt=0)
    resolvers_json: Optional[str] = Field(
        default=None, description="JSON list of resolver profiles (defaults used if unset)"
    )
    resolver_seed: Optional[int] = Field(
        default=None, description="Seed for stochastic resolver strategies"
    )

    # ======================
    # Maintenance
    # ======================
    auto_refund: bool = Field(default=False, description="Refund expired swaps automatically")
    sweeper_interval_seconds: float = Field(default=30.0, gt=0)

    # ======================
    # Chain endpoints
    # ======================
    chain_a_name: str = Field(default="ethereum", description="Account-based chain (A)")
    chain_b_name: str = Field(default="stellar", description="Transaction-stream chain (B)")
    chain_a_gateway_url: str = Field(
        default="http://127.0.0.1:8545/gateway", description="Signing gateway for chain A"
    )
    chain_b_gateway_url: str = Field(
        default="http://127.0.0.1:8600/gateway", description="Signing gateway for chain B"
    )
    chain_a_feed_url: str = Field(
        default="http://127.0.0.1:8545/feed", description="Transaction feed for chain A"
    )
    chain_b_feed_url: str = Field(
        default="https://horizon-testnet.stellar.org",
        description="Horizon-style transaction feed for chain B",
    )
    gateway_api_key: str = Field(default="", description="API key for the signing gateways")

    # ======================
    # Encryption
    # ======================
    master_key: Optional[str] = Field(
        default=None, description="Fernet key for sealed resolver credentials"
    )

    @field_validator("auction_decay_steps")
    @classmethod
    def _check_decay_steps(cls, value: str) -> str:
        # Parsed again by DecaySchedule; here we only fail fast on garbage
        for pair in value.split(","):
            fill, _, decay = pair.strip().partition(":")
            try:
                Decimal(fill)
                Decimal(decay)
            except InvalidOperation:
                raise ValueError(f"Decay step '{pair}' must look like fill:decay")
        return value

    @model_validator(mode="after")
    def _check_auction_bounds(self) -> "Settings":
        if self.auction_min_decay > self.auction_max_decay:
            raise ValueError("auction_min_decay must not exceed auction_max_decay")
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "database_url": self._redact_url(self.database_url),
            "auction": {
                "slots_per_swap": self.slots_per_swap,
                "duration_seconds": self.auction_duration_seconds,
                "decay_steps": self.auction_decay_steps,
                "max_decay": str(self.auction_max_decay),
                "floor_ratio": str(self.auction_floor_ratio),
            },
            "relay": {
                "max_attempts": self.relay_max_attempts,
                "rpc_timeout_seconds": self.rpc_timeout_seconds,
                "max_concurrent_claims": self.relay_max_concurrent_claims,
            },
            "chains": {
                "A": {"name": self.chain_a_name, "gateway": self.chain_a_gateway_url},
                "B": {"name": self.chain_b_name, "gateway": self.chain_b_gateway_url},
                "api_key": "***" if self.gateway_api_key else "(not set)",
            },
            "resolvers": {
                "simulated": self.simulate_resolvers,
                "custom_profiles": bool(self.resolvers_json),
            },
            "master_key": "***" if self.master_key else "(not set)",
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
