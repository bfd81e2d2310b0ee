"""storesync configuration."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings

from storesync.sync.retry import RetryPolicy


class Settings(BaseSettings):
    """Environment-driven settings (prefix STORESYNC_)."""

    # Remote API
    api_base_url: str = "https://api.example.com/v1"
    api_key: str = ""
    location_id: str = ""
    request_timeout_seconds: float = 30.0
    page_size: int = 100
    inter_page_delay_ms: int = 250

    # Retry policy (all delays in milliseconds)
    retry_max_attempts: int = 5
    retry_base_delay_ms: int = 1000
    retry_backoff_multiplier: float = 2.0
    retry_max_delay_ms: int = 60_000
    rate_limit_default_delay_ms: int = 5000
    max_retry_after_ms: int = 300_000

    # Inbound webhooks
    webhook_secret: str = ""
    webhook_path: str = "/webhooks/events"
    signature_header: str = "X-Webhook-Signature"
    timestamped_signatures: bool = False  # t=<ts>,v1=<sig> scheme with replay window
    timestamp_tolerance_seconds: int = 300

    # Deduplication
    redis_url: str = "redis://localhost:6379/0"
    pending_lease_seconds: int = 600  # crashed claims become re-claimable after 10 min
    processed_retention_seconds: int = 7 * 86400

    # Background processing
    queue_size: int = 1000
    dead_letter_stream: str = "storesync:webhooks:dead"

    # Sync jobs
    update_concurrency: int = 4

    log_level: str = "INFO"

    model_config = {"env_prefix": "STORESYNC_", "env_file": ".env", "extra": "ignore"}

    def retry_policy(self) -> RetryPolicy:
        """Build the RetryPolicy described by these settings."""
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay_ms=self.retry_base_delay_ms,
            backoff_multiplier=self.retry_backoff_multiplier,
            max_delay_ms=self.retry_max_delay_ms,
            rate_limit_default_delay_ms=self.rate_limit_default_delay_ms,
            max_retry_after_ms=self.max_retry_after_ms,
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
