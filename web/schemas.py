"""
Pydantic request and response models for API endpoints.

Provides type-safe models with automatic validation and documentation.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════════════════════
# SYNC
# ═══════════════════════════════════════════════════════════════════════════════

class SyncRequestBody(BaseModel):
    """Parameters of a sync run."""
    user_id: str = Field(min_length=1, description="Owner of the seller accounts")
    account_ids: Optional[List[str]] = Field(None, description="Restrict to these accounts")
    full_sync: bool = Field(False, description="Backfill down to the full-sync floor date")
    quick_mode: bool = Field(False, description="Smaller per-run cap, continuations do the rest")


class AccountResultResponse(BaseModel):
    """Outcome for one seller account."""
    account_id: str
    nickname: Optional[str] = None
    expected: int
    fetched: int
    saved: int
    errors: int
    duplicates: int
    forced_stop: bool
    queued: bool
    logistic_stats: Dict[str, int] = {}
    error: Optional[str] = None


class SyncTotals(BaseModel):
    expected: int
    fetched: int
    saved: int
    errors: int
    duplicates: int


class SyncSummaryResponse(BaseModel):
    """Summary returned by every sync run, partial failures included."""
    synced_at: str
    accounts: List[AccountResultResponse]
    errors: List[Dict[str, str]]
    totals: SyncTotals
    more_work_remains: bool
    quick_mode: bool
    full_sync: bool
    continuation_scheduled: bool


# ═══════════════════════════════════════════════════════════════════════════════
# QUEUE
# ═══════════════════════════════════════════════════════════════════════════════

class QueueStatsResponse(BaseModel):
    user_id: str
    connected: bool
    total_orders: int = 0
    entries: int = 0
    oldest_enqueued_at: Optional[str] = None
    approx_bytes: int = 0
    keys: List[str] = []


class QueueClearResponse(BaseModel):
    user_id: str
    removed_entries: int


class DrainResponse(BaseModel):
    user_id: str
    processed: int
    saved: int
    errors: int
    duplicates: int
    batches: int


# ═══════════════════════════════════════════════════════════════════════════════
# JOBS
# ═══════════════════════════════════════════════════════════════════════════════

class JobResponse(BaseModel):
    """Scheduled job status."""
    id: str
    name: str
    description: str
    trigger: str = ""
    pending: bool = False
    next_run: Optional[str] = None
    last_run: Optional[str] = None
    last_status: Optional[str] = None
    run_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None


class JobsResponse(BaseModel):
    scheduler_running: bool
    jobs: List[JobResponse]


# ═══════════════════════════════════════════════════════════════════════════════
# HEALTH CHECK
# ═══════════════════════════════════════════════════════════════════════════════

class StoreStats(BaseModel):
    """DuckDB statistics."""
    status: str
    latency_ms: Optional[float] = None
    orders: Optional[int] = None
    accounts: Optional[int] = None
    sku_costs: Optional[int] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(description="Service status: healthy or degraded")
    version: str = Field(description="Application version")
    uptime_seconds: int = Field(description="Uptime in seconds")
    correlation_id: Optional[str] = Field(None, description="Request correlation ID")
    store: StoreStats
    queue: Dict[str, Any]
    scheduler: Dict[str, Any]
    metrics: Dict[str, Any]
