from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./gob.db"
    database_echo: bool = False
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    celery_default_queue: str = "gob-default"

    # Application URLs
    frontend_url: str = "http://localhost:3000"

    # Internal API security
    operator_api_key: str = ""

    # Redemption lifecycle
    redemption_ttl_minutes: int = 10
    redemption_qr_prefix: str = "gob:redeem:"
    redemption_history_limit: int = 20
    redemption_sweeper_enabled: bool = True
    redemption_sweeper_batch_size: int = 500

    # Payout settlement
    payout_dispatch_mode: Literal["inline", "celery"] = "inline"
    payout_task_queue: str = "gob-payouts"
    payout_relay_url: str | None = None
    payout_relay_api_key: str | None = None
    payout_relay_timeout_seconds: float = 30.0
    payout_network: Literal["base", "base-sepolia"] = "base-sepolia"
    payout_history_limit: int = 10

    # Rewards automation scheduler
    rewards_job_scheduler_enabled: bool = False
    rewards_job_schedule_path: str = "config/schedules.toml"

    # Email / notification settings
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    smtp_sender_email: str | None = None
    payout_alert_recipients: list[str] = Field(default_factory=list)

    @field_validator("payout_alert_recipients", mode="before")
    @classmethod
    def _parse_recipient_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
