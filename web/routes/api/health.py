"""Health check endpoint: store, queue and scheduler status."""
import time

from fastapi import APIRouter, Request

from ordersync.observability import Timer, get_correlation_id, metrics
from ordersync.order_queue import get_order_queue
from ordersync.scheduler import get_scheduler
from web.config import VERSION
from web.schemas import HealthResponse
from ._deps import START_TIME, get_logger, get_store, limiter

router = APIRouter()
logger = get_logger(__name__)


@router.get("/health", response_model=HealthResponse)
@limiter.limit("60/minute")
async def health_check(request: Request):
    """Health check endpoint for Docker/load balancer monitoring."""
    uptime_seconds = int(time.time() - START_TIME)

    db_latency_ms = None
    try:
        with Timer("health_check_db") as timer:
            store = await get_store()
            store_stats = await store.get_stats()
        store_status = "connected"
        db_latency_ms = round(timer.elapsed_ms, 2)
    except Exception as e:
        logger.warning(f"Health check could not reach the store: {e}")
        store_stats = None
        store_status = f"error: {e}"

    queue = await get_order_queue()
    scheduler = get_scheduler()

    return {
        "status": "healthy" if store_stats else "degraded",
        "version": VERSION,
        "uptime_seconds": uptime_seconds,
        "correlation_id": get_correlation_id(),
        "store": {
            "status": store_status,
            "latency_ms": db_latency_ms,
            **{k: v for k, v in (store_stats or {}).items() if k in ("orders", "accounts", "sku_costs")},
        },
        "queue": {"enabled": queue.enabled, "connected": queue.is_connected},
        "scheduler": {"running": scheduler.is_running},
        "metrics": metrics.get_stats(),
    }
