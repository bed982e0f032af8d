"""
Incremental marketplace order sync.

This package contains the pipeline shared by the web/ API and the scripts/:
- config: Centralized configuration
- exceptions: Error hierarchy
- fetcher / period_splitter: Time-budgeted paginated fetching
- persistence / order_queue / worker: Dedup, queueing and batch writes
- sync_service / scheduler: Orchestration and continuations
"""

# Import in dependency order
from ordersync.exceptions import (
    OrderSyncError,
    MarketplaceError,
    MarketplaceConnectionError,
    MarketplaceAPIError,
    CredentialRejectedError,
    MarketplaceDataError,
    CredentialRefreshError,
    PersistenceError,
    QueueError,
)

from ordersync.config import config, ConfigurationError, validate_config

from ordersync.models import SyncRequest, SyncSummary

__all__ = [
    # Exceptions
    "OrderSyncError",
    "MarketplaceError",
    "MarketplaceConnectionError",
    "MarketplaceAPIError",
    "CredentialRejectedError",
    "MarketplaceDataError",
    "CredentialRefreshError",
    "PersistenceError",
    "QueueError",
    # Config
    "config",
    "ConfigurationError",
    "validate_config",
    # Models
    "SyncRequest",
    "SyncSummary",
]
