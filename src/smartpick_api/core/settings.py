from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    database_url: str = "sqlite+aiosqlite:///./smartpick.db"
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    celery_default_queue: str = "smartpick-default"

    # Tracing
    otel_exporter_endpoint: str | None = None
    otel_exporter_headers: str | None = None
    otel_console_exporter: bool = False

    # Internal API security (scheduler triggers)
    internal_api_key: str = ""

    # Reservations
    points_per_currency_unit: int = 1
    max_reservation_quantity: int = 10
    max_active_reservations: int = 1

    # Cancellation cooldown
    cancellation_cooldown_threshold: int = 3
    cancellation_cooldown_window_minutes: int = 30
    cancellation_cooldown_minutes: int = 60
    cancellation_cooldown_lift_points: int = 100

    # Pickup confirmation guard
    pickup_rate_limit_per_minute: int = 30
    pickup_ip_rate_limit_per_minute: int = 120
    pickup_replay_threshold: int = 10
    rate_limit_window_seconds: int = 60
    pickup_publish_timeout_seconds: float = 2.0
    pickup_settlement_grace_seconds: int = 60

    # Penalty policy
    penalty_lift_cooldown_seconds: int = 60 * 60
    forgiveness_window_hours: int = 24

    # Expiration sweep
    expiration_sweep_worker_enabled: bool = False
    expiration_sweep_interval_seconds: int = 60
    expiration_sweep_batch_size: int = 100
    expiration_sweep_trigger_label: str = "scheduler"
    expiration_sweep_task_queue: str = "reservation-sweeps"

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> str:
        if value is None:
            return "INFO"
        return str(value).strip().upper() or "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
