"""
Configuration management using Pydantic Settings.
All environment variables are validated at startup.
"""

from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===================
    # Database Configuration
    # ===================
    database_url: str = Field(..., description="PostgreSQL connection string")

    # ===================
    # Identity Verifier (Privy)
    # ===================
    privy_app_id: Optional[str] = Field(default=None, description="Privy app ID (JWT audience)")
    privy_verification_key: Optional[str] = Field(
        default=None,
        description="PEM-encoded ES256 public key used to verify Privy access tokens"
    )

    # ===================
    # Top-Up Reconciliation
    # ===================
    topup_confirmation_delay_seconds: float = Field(
        default=3.0,
        ge=0,
        description="Delay before a submitted top-up is treated as confirmed on-chain"
    )
    free_tier_topup_amounts: str = Field(
        default="0.005,0.01,0.025",
        description="Comma-separated ETH amounts offered to free-tier agents"
    )

    # ===================
    # API
    # ===================
    rate_limit_global: str = Field(default="300/minute")
    redis_url: Optional[str] = Field(default=None, description="Redis URL for rate limit storage")
    cors_origins: str = Field(default="*", description="Comma-separated allowed origins")

    # ===================
    # Logging
    # ===================
    log_level: str = Field(default="INFO")

    @field_validator("free_tier_topup_amounts")
    @classmethod
    def validate_topup_amounts(cls, v: str) -> str:
        """Ensure every configured amount is a positive decimal."""
        for part in v.split(","):
            part = part.strip()
            if not part:
                continue
            try:
                amount = Decimal(part)
            except InvalidOperation:
                raise ValueError(f"Invalid top-up amount: {part}")
            if amount <= 0:
                raise ValueError(f"Top-up amounts must be positive: {part}")
        return v

    @property
    def topup_amounts(self) -> list[str]:
        """Parse free-tier top-up amounts from comma-separated string."""
        return [a.strip() for a in self.free_tier_topup_amounts.split(",") if a.strip()]

    @property
    def allowed_origins(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
