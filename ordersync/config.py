"""
Centralized configuration for the marketplace order sync pipeline.

Configuration is loaded from environment variables (and a local .env file)
with defaults that match the marketplace's documented limits.

Usage:
    from ordersync.config import config

    ceiling = config.marketplace.max_offset
    budget = config.sync.time_budget_seconds
"""

import os
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_int(name: str, default: int, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    """Read an integer env var, falling back to default and clamping to bounds."""
    raw = os.getenv(name, "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class MarketplaceConfig:
    """Upstream marketplace API configuration."""

    base_url: str = field(
        default_factory=lambda: os.getenv("MARKETPLACE_API_URL", "https://api.mercadolibre.com")
    )
    oauth_url: str = field(
        default_factory=lambda: os.getenv(
            "MARKETPLACE_OAUTH_URL", "https://api.mercadolibre.com/oauth/token"
        )
    )
    client_id: str = field(default_factory=lambda: os.getenv("MARKETPLACE_CLIENT_ID", ""))
    client_secret: str = field(default_factory=lambda: os.getenv("MARKETPLACE_CLIENT_SECRET", ""))
    page_limit: int = 50
    max_offset: int = 9950  # offsets past this are rejected with HTTP 400
    request_timeout: float = 30.0
    page_concurrency: int = field(
        default_factory=lambda: _env_int("MARKETPLACE_PAGE_CONCURRENCY", 2, minimum=1, maximum=5)
    )
    shipment_batch_size: int = 10
    # Requests per second, 0 disables the limiter
    rate_limit: float = field(default_factory=lambda: _env_float("MARKETPLACE_RATE_LIMIT", 0.0))
    rate_limit_burst: int = 5


@dataclass(frozen=True)
class RetrySettings:
    """Retry budget for outbound marketplace requests."""

    max_attempts: int = 3
    base_delay: float = 1.0
    exponential_base: float = 2.0
    jitter: float = 1.0


@dataclass(frozen=True)
class SyncConfig:
    """Time budget and window planning for a sync run."""

    time_budget_seconds: float = field(
        default_factory=lambda: _env_float("SYNC_TIME_BUDGET_SECONDS", 30.0)
    )
    history_margin_seconds: float = 10.0
    history_stop_margin_seconds: float = 5.0
    max_orders_per_run: int = field(
        default_factory=lambda: _env_int("SYNC_MAX_ORDERS_PER_RUN", 2500, minimum=1)
    )
    quick_max_orders: int = field(
        default_factory=lambda: _env_int("SYNC_QUICK_MAX_ORDERS", 500, minimum=1)
    )
    max_continuations: int = field(
        default_factory=lambda: _env_int("SYNC_MAX_CONTINUATIONS", 50, minimum=0)
    )
    split_threshold: int = 9950
    dense_threshold: int = 50000
    dense_split_days: int = 7
    sparse_split_days: int = 14
    history_floor: date = date(2010, 1, 1)
    full_sync_history_floor: date = date(2000, 1, 1)
    recent_overlap_hours: int = 24
    continuation_delay_seconds: float = field(
        default_factory=lambda: _env_float("SYNC_CONTINUATION_DELAY_SECONDS", 1.0)
    )
    interval_minutes: int = field(
        default_factory=lambda: _env_int("SYNC_INTERVAL_MINUTES", 0, minimum=0)
    )
    scheduled_user_ids: List[str] = field(
        default_factory=lambda: [
            uid.strip() for uid in os.getenv("SYNC_USER_IDS", "").split(",") if uid.strip()
        ]
    )


@dataclass(frozen=True)
class StoreConfig:
    """DuckDB store configuration."""

    db_path: str = field(
        default_factory=lambda: os.getenv("ORDERSYNC_DB_PATH", "data/orders.duckdb")
    )
    query_timeout: float = 30.0


@dataclass(frozen=True)
class PersistenceConfig:
    """Batch persistence sizing."""

    chunk_size: int = field(
        default_factory=lambda: _env_int("PERSIST_CHUNK_SIZE", 100, minimum=1, maximum=100)
    )
    save_batch_size: int = 50
    sku_max_length: int = 255


@dataclass(frozen=True)
class QueueConfig:
    """Redis order queue configuration."""

    enabled: bool = field(default_factory=lambda: _env_bool("ORDER_QUEUE_ENABLED", False))
    redis_url: str = field(
        default_factory=lambda: os.getenv("REDIS_URL", "redis://localhost:6379/0")
    )
    key_prefix: str = "ordersync:queue"
    ttl_seconds: int = field(
        default_factory=lambda: _env_int("ORDER_QUEUE_TTL_SECONDS", 86400, minimum=1)
    )
    min_ttl_seconds: int = 300
    dequeue_batch_size: int = 50
    worker_max_retries: int = 3
    worker_idle_sleep: float = 0.1


@dataclass(frozen=True)
class WebConfig:
    """HTTP API configuration."""

    host: str = "0.0.0.0"
    port: int = field(default_factory=lambda: _env_int("PORT", 8080))
    rate_limit_per_minute: int = 10


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "0.3.0"
    marketplace: MarketplaceConfig = field(default_factory=MarketplaceConfig)
    retry: RetrySettings = field(default_factory=RetrySettings)
    sync: SyncConfig = field(default_factory=SyncConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    web: WebConfig = field(default_factory=WebConfig)


# Global config instance
config = AppConfig()


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(require_credentials: bool = True) -> None:
    """
    Validate that required configuration is present.

    Call on startup to fail fast instead of failing on the first token refresh.

    Args:
        require_credentials: If True, the OAuth client id/secret must be set

    Raises:
        ConfigurationError: If required configuration is missing
    """
    errors = []

    if require_credentials:
        if not config.marketplace.client_id:
            errors.append("MARKETPLACE_CLIENT_ID is required but not set")
        if not config.marketplace.client_secret:
            errors.append("MARKETPLACE_CLIENT_SECRET is required but not set")

    if config.sync.time_budget_seconds <= config.sync.history_margin_seconds:
        errors.append(
            "SYNC_TIME_BUDGET_SECONDS must exceed the history safety margin "
            f"({config.sync.history_margin_seconds}s)"
        )

    if config.queue.enabled and not config.queue.redis_url.startswith(("redis://", "rediss://", "unix://")):
        errors.append("REDIS_URL must be a redis:// or rediss:// URL when ORDER_QUEUE_ENABLED is set")

    if errors:
        error_msg = "Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
