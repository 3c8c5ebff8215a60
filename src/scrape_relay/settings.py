from __future__ import annotations

from functools import lru_cache
from typing import Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .batcher import BatchConfig
from .queue.policy import RetryPolicy, RetryStrategy


class RelaySettings(BaseSettings):
    """Environment-driven relay configuration (``RELAY_*`` variables or ``.env``)."""

    model_config = SettingsConfigDict(env_prefix="RELAY_", env_file=".env", extra="ignore")

    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"

    # durable queue
    queue_url: str = "sqlite:///./data-queue/relay-queue.db"
    dead_letter_archive: str = "./data-queue/dead-letters.ndjson"
    dead_letter_retention_seconds: Optional[float] = 7 * 86_400.0

    # retry policy
    retry_interval_seconds: float = 300.0
    retry_strategy: RetryStrategy = "fixed"
    retry_backoff_multiplier: float = 2.0
    retry_max_interval_seconds: float = 86_400.0
    retry_jitter: bool = False
    max_attempts: int = 10

    # scheduler
    scheduler_concurrency: int = 4
    claim_batch_limit: int = 100
    drain_timeout_seconds: float = 10.0

    # batching
    batch_max_items: int = 20
    batch_max_bytes: int = 1_048_576
    batch_flush_interval_seconds: float = 0.25
    batch_window_seconds: float = 60.0

    # ingress
    max_content_bytes: int = 1_048_576
    default_bandwidth_limit: int = 10 * 1_048_576
    rate_window_seconds: float = 60.0
    client_cache_ttl_seconds: float = 300.0
    identity_url: Optional[str] = None
    static_clients: Dict[str, str] = {}

    # backend ledger
    ledger_url: str = "http://localhost:8000"
    ledger_credential: Optional[str] = None
    relay_principal: Optional[str] = None
    dispatch_timeout_seconds: float = 30.0

    # status
    recent_window_seconds: float = 3_600.0

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            retry_interval=self.retry_interval_seconds,
            strategy=self.retry_strategy,
            backoff_multiplier=self.retry_backoff_multiplier,
            max_interval=self.retry_max_interval_seconds,
            jitter=self.retry_jitter,
        )

    def batch_config(self) -> BatchConfig:
        return BatchConfig(
            max_items=self.batch_max_items,
            max_bytes=self.batch_max_bytes,
            flush_interval=self.batch_flush_interval_seconds,
            window_seconds=self.batch_window_seconds,
        )


@lru_cache()
def get_settings() -> RelaySettings:
    return RelaySettings()
