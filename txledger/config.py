"""
Configuration management using Pydantic Settings.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Ledger settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===================
    # Storage Configuration
    # ===================
    storage_backend: str = Field(
        default="memory",
        description="Storage medium for the ledger slot (memory or file)"
    )
    storage_dir: str = Field(
        default=".txledger",
        description="Directory holding one JSON file per storage key (file backend)"
    )
    storage_quota_bytes: Optional[int] = Field(
        default=None,
        description="Optional size limit for the memory backend, mimics a browser quota"
    )
    max_transactions: int = Field(
        default=1000,
        description="Maximum records kept in the ledger, oldest are evicted first"
    )

    # ===================
    # Reconciliation
    # ===================
    refresh_interval_seconds: float = Field(
        default=30.0,
        description="Background refresh interval while any record is pending"
    )
    discovery_block_window: int = Field(
        default=1000,
        description="Number of recent blocks scanned when discovering user history"
    )
    price_cache_ttl: float = Field(
        default=60.0,
        description="Seconds a Chainlink price stays cached"
    )

    # ===================
    # EVM Configuration
    # ===================
    sepolia_rpc_url: str = Field(
        default="https://ethereum-sepolia-rpc.publicnode.com",
        description="Sepolia RPC endpoint"
    )
    bsc_testnet_rpc_url: str = Field(
        default="https://data-seed-prebsc-1-s1.binance.org:8545",
        description="BSC Testnet RPC endpoint"
    )

    # ===================
    # Logging
    # ===================
    log_level: str = Field(default="INFO")

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        """Only the in-memory and JSON-file media are supported."""
        v = v.lower()
        if v not in ("memory", "file"):
            raise ValueError("storage_backend must be 'memory' or 'file'")
        return v

    @field_validator(
        "max_transactions",
        "refresh_interval_seconds",
        "discovery_block_window",
        "price_cache_ttl",
    )
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    def get_chain_rpc(self, attr: str) -> str:
        """Get RPC URL by its settings attribute name."""
        return getattr(self, attr, "") or ""


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
