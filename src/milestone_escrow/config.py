"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup, so a malformed value fails fast with a clear error message.

Usage:
    from milestone_escrow.config import get_settings
    settings = get_settings()
    print(settings.ledger_rpc_url)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the milestone escrow service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://escrow:escrow_dev"
        "@localhost:5432/milestone_escrow"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"
    redis_idempotency_ttl_seconds: int = 86400  # 24 hours
    lock_backend: Literal["local", "redis"] = "local"
    lock_ttl_seconds: int = 120

    # --- Ledger ---
    ledger_rpc_url: str = "http://localhost:9933/rpc"
    ledger_api_key: str = ""
    ledger_timeout_seconds: float = 10.0

    # --- Settlement ---
    operation_timeout_seconds: float = 30.0
    token_decimals: int = Field(default=6, ge=0, le=36)
    default_token_address: str = ""
    default_auto_release: bool = True

    # --- Release conditions & disputes ---
    # Comma-separated addresses.
    trusted_verifiers: str = ""
    arbiter_addresses: str = ""
    # JSON object mapping oracle_id -> shared HMAC secret.
    oracle_secrets: dict[str, str] = Field(default_factory=dict)

    # --- Reconciliation ---
    reconciliation_sweep_interval_seconds: int = 60  # 0 disables the background sweep
    reconciliation_batch_size: int = 100

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def trusted_verifier_list(self) -> list[str]:
        """Parse comma-separated verifier addresses into a list."""
        return _split_csv(self.trusted_verifiers)

    @property
    def arbiter_list(self) -> list[str]:
        """Parse comma-separated arbiter addresses into a list."""
        return _split_csv(self.arbiter_addresses)


def _split_csv(value: str) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
