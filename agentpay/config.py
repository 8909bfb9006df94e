"""
Configuration management using Pydantic Settings.
All environment variables are validated at startup.
"""

import re
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

EVM_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


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
    # Platform Fees
    # ===================
    platform_wallet: str = Field(
        default="0x71483B877c40eb2BF99230176947F5ec1c2351cb",
        description="Platform wallet receiving fees and sending earn payouts",
    )
    platform_fee_percent: Decimal = Field(
        default=Decimal("20"),
        ge=0,
        le=100,
        description="Platform share of every sale (20 = 20%)",
    )
    earn_pool_percent: Decimal = Field(
        default=Decimal("10"),
        ge=0,
        le=100,
        description="Share of monthly platform fees pooled for sellers",
    )

    # ===================
    # Settlement
    # ===================
    facilitator_endpoint: Optional[str] = Field(
        default=None,
        description="Settlement relay base URL (exposes /verify and /settle)",
    )
    facilitator_timeout_seconds: float = Field(default=30.0, gt=0)
    quote_ttl_seconds: int = Field(default=900, ge=1, description="Quote lifetime (15 minutes)")
    preconfirmation_window_seconds: int = Field(
        default=60,
        ge=1,
        description="How long a preconfirmed settlement may stay unresolved",
    )

    # ===================
    # Chain Configuration (Ethereum mainnet USDC)
    # ===================
    eth_rpc_url: str = Field(
        default="https://fastrpc.mev-commit.xyz",
        description="Ethereum RPC endpoint used for receipts and transfer logs",
    )
    chain_id: int = Field(default=1)
    usdc_contract: str = Field(
        default="0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
        description="USDC contract address",
    )
    rpc_timeout_seconds: float = Field(default=20.0, gt=0)
    min_confirmations: int = Field(default=2, ge=0)
    verify_authorization_signatures: bool = Field(
        default=True,
        description="Recover the EIP-712 signer locally before calling the relay",
    )

    # ===================
    # Payout Reconciliation
    # ===================
    payout_match_tolerance_usdc: Decimal = Field(default=Decimal("0.01"), ge=0)
    payout_scan_buffer_seconds: int = Field(default=3600, ge=0)
    seconds_per_block: int = Field(default=12, ge=1)

    # ===================
    # Scheduling
    # ===================
    cron_secret: Optional[str] = Field(default=None, description="Bearer secret for cron endpoints")
    reconcile_interval_seconds: float = Field(default=30.0, gt=0)
    earn_check_interval_seconds: float = Field(default=3600.0, gt=0)

    # ===================
    # Rate Limiting
    # ===================
    rate_limit_global: str = Field(default="120/minute")
    rate_limit_settle: str = Field(default="10/minute")
    redis_url: Optional[str] = Field(default=None)

    # ===================
    # Logging
    # ===================
    log_level: str = Field(default="INFO")

    @field_validator("platform_wallet", "usdc_contract")
    @classmethod
    def validate_address(cls, v: str) -> str:
        """Ensure configured addresses are 20-byte hex."""
        if not EVM_ADDRESS_RE.match(v):
            raise ValueError("Address must be a 0x-prefixed 40-character hex string")
        return v

    @property
    def settlement_configured(self) -> bool:
        """Check if a settlement relay is configured."""
        return bool(self.facilitator_endpoint)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
