from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

CAPTURE_TYPES = ("video", "audio", "screen", "image")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    db_url: str = "sqlite:///./data/capture_relay.db"
    site_url: str = "http://localhost"
    log_level: str = "INFO"

    # Webhook delivery (n8n or any receiver accepting JSON POSTs)
    webhook_enabled: bool = True
    webhook_url: str = ""
    webhook_token: str = ""  # sent as "Authorization: Bearer <token>" when set
    webhook_capture_types: Annotated[list[str], NoDecode] = []  # empty = every type
    webhook_timeout_seconds: float = 30.0
    webhook_send_updates: bool = False

    # Delivery queue
    queue_max_attempts: int = 3
    queue_default_priority: int = 10  # lower value is claimed first
    queue_batch_size: int = 5
    queue_tick_interval_seconds: float = 60.0
    queue_processing_timeout_seconds: int = 300
    queue_retry_base_delay_seconds: int = 30
    queue_retry_max_delay_seconds: int = 3600  # 1 hour cap
    queue_job_retention_days: int = 30
    dispatch_concurrency: int = 1
    dispatcher_enabled: bool = True  # false: ticks only via POST /api/queue/process or the script

    # Media service resolving uploaded artifacts (process_media jobs)
    media_service_url: str = ""
    media_service_token: str = ""

    # SMTP (permanent failure alerts)
    alert_email: str = ""
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""

    @field_validator("webhook_capture_types", mode="before")
    @classmethod
    def _split_capture_types(cls, value: object) -> object:
        if isinstance(value, str):
            return [part for part in value.split(",") if part.strip()]
        return value

    @field_validator("webhook_capture_types")
    @classmethod
    def _check_capture_types(cls, value: list[str]) -> list[str]:
        normalised = [v.strip().lower() for v in value]
        unknown = sorted(set(normalised) - set(CAPTURE_TYPES))
        if unknown:
            raise ValueError(
                f"Unknown capture type(s): {', '.join(unknown)}. "
                f"Allowed: {', '.join(CAPTURE_TYPES)}"
            )
        return normalised

    @model_validator(mode="after")
    def _check_queue_limits(self) -> Settings:
        self.webhook_url = self.webhook_url.strip()
        self.webhook_token = self.webhook_token.strip()
        if self.webhook_url and not self.webhook_url.startswith(("http://", "https://")):
            raise ValueError("WEBHOOK_URL must be an http:// or https:// URL")
        if self.queue_max_attempts < 1:
            raise ValueError("QUEUE_MAX_ATTEMPTS must be at least 1")
        if self.queue_batch_size < 1:
            raise ValueError("QUEUE_BATCH_SIZE must be at least 1")
        if self.dispatch_concurrency < 1:
            raise ValueError("DISPATCH_CONCURRENCY must be at least 1")
        if self.queue_retry_base_delay_seconds > self.queue_retry_max_delay_seconds:
            raise ValueError(
                "QUEUE_RETRY_BASE_DELAY_SECONDS cannot exceed QUEUE_RETRY_MAX_DELAY_SECONDS"
            )
        return self

    @property
    def webhook_active(self) -> bool:
        """True when there is somewhere to deliver to."""
        return self.webhook_enabled and bool(self.webhook_url)


@lru_cache
def get_settings() -> Settings:
    return Settings()
