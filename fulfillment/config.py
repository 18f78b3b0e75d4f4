"""Fulfillment worker configuration."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven settings for the fulfillment pipeline."""

    environment: str = "staging"
    redis_url: str = "redis://localhost:6381/0"
    log_level: str = "INFO"

    # Print provider (Printful v2)
    printful_api_key: str = ""
    printful_base_url: str = "https://api.printful.com/v2"
    printful_store_id: str = ""

    # Email (Resend) and analytics (PostHog)
    resend_api_key: str = ""
    email_from: str = "Investorio <orders@investorio.ai>"
    posthog_api_key: str = ""
    posthog_host: str = "https://us.i.posthog.com"

    # Outbound HTTP
    http_timeout_seconds: float = 30.0

    # Retry policy: attempts 0..max_attempts-1 are retried, then dead-lettered
    max_attempts: int = 3
    base_retry_delay_seconds: int = 5

    # Worker polling
    batch_size: int = 10
    block_ms: int = 2000
    stale_claim_ms: int = 60_000

    staged_order_ttl_seconds: int = 86400

    model_config = {"env_prefix": "FULFILLMENT_", "env_file": ".env", "extra": "ignore"}

    @property
    def token_queue(self) -> str:
        return f"token-fulfillment-{self.environment}"

    @property
    def order_queue(self) -> str:
        return f"order-fulfillment-{self.environment}"


@lru_cache
def get_settings() -> Settings:
    """Get the process-wide Settings (cached)."""
    return Settings()
