"""Configuration management for the orchestration core."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from ``ISLANDLOAF_*`` environment variables or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="ISLANDLOAF_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    data_dir: Path = Field(
        default=Path.home() / ".islandloaf",
        description="Directory holding the SQLite database and logs",
    )

    # Idempotency ledger
    idempotency_ttl_hours: float = Field(default=24.0, gt=0)
    ledger_wait_seconds: float = Field(
        default=2.0,
        ge=0,
        description="How long a racing caller waits for the key holder to commit",
    )
    ledger_poll_interval: float = Field(default=0.05, gt=0)
    reservation_lease_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Uncommitted reservations older than this are taken over",
    )

    # Task queue and runner
    task_max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=30.0, ge=0)
    backoff_max_seconds: float = Field(default=3600.0, ge=0)
    claim_batch_size: int = Field(default=10, ge=1)
    liveness_timeout_seconds: float = Field(default=600.0, gt=0)
    operation_timeout_seconds: float = Field(default=30.0, gt=0)
    runner_interval_seconds: float = Field(default=30.0, gt=0)

    # Security
    require_owner_approval: bool = Field(
        default=False,
        description="Restrict every high-risk tool to the OWNER role",
    )
    admin_token: str | None = Field(
        default=None, description="Token guarding identity administration endpoints"
    )
    owner_agent_key: str | None = Field(
        default=None, description="Bootstrap secret resolving to a synthetic OWNER agent"
    )
    webhook_secret: str | None = Field(
        default=None, description="Shared secret expected on inbound lead webhooks"
    )

    # Logging
    log_level: str = Field(default="INFO")
    log_file: Path | None = Field(default=None)


def get_settings(**overrides: object) -> Settings:
    """Build settings, letting explicit overrides win over the environment."""
    return Settings(**{k: v for k, v in overrides.items() if v is not None})
