from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./aircrm.db"

    # Static bearer token for POS and back-office integrations
    api_bearer_token: str = ""

    # Point earning
    base_point_rate: float = 0.1
    earned_points_ttl_days: int = 365
    default_max_usage_per_customer: int = 999

    # Push gateway
    push_gateway_url: str | None = None
    push_gateway_api_key: str | None = None
    push_timeout_seconds: float = 10.0
    push_max_concurrency: int = 10
    push_default_icon: str = "/icons/icon-192x192.png"

    # Ledger reconciliation worker
    points_reconciliation_worker_enabled: bool = False
    points_reconciliation_interval_seconds: int = 24 * 60 * 60

    # Point expiry worker
    points_expiry_worker_enabled: bool = False
    points_expiry_interval_seconds: int = 60 * 60

    @field_validator("base_point_rate")
    @classmethod
    def _validate_point_rate(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("base_point_rate must be positive")
        return value

    @field_validator("push_max_concurrency")
    @classmethod
    def _validate_push_concurrency(cls, value: int) -> int:
        if value < 1:
            raise ValueError("push_max_concurrency must be at least 1")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
