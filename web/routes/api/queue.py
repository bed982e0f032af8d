"""Order queue inspection, clearing and draining."""
from fastapi import APIRouter, Query, Request

from ordersync.order_queue import get_order_queue
from ordersync.sync_service import get_sync_service
from web.schemas import DrainResponse, QueueClearResponse, QueueStatsResponse
from ._deps import get_logger, limiter

router = APIRouter()
logger = get_logger(__name__)


@router.get("/sync/queue/{user_id}", response_model=QueueStatsResponse)
@limiter.limit("60/minute")
async def get_queue_stats(request: Request, user_id: str):
    queue = await get_order_queue()
    stats = await queue.get_stats(user_id)
    return {"user_id": user_id, "connected": queue.is_connected, **stats.to_dict()}


@router.delete("/sync/queue/{user_id}", response_model=QueueClearResponse)
@limiter.limit("10/minute")
async def clear_queue(request: Request, user_id: str):
    queue = await get_order_queue()
    removed = await queue.clear_user_queue(user_id)
    logger.info(f"Queue cleared for user {user_id}: {removed} entries")
    return {"user_id": user_id, "removed_entries": removed}


@router.post("/sync/queue/{user_id}/drain", response_model=DrainResponse)
@limiter.limit("10/minute")
async def drain_queue(
    request: Request,
    user_id: str,
    batch_size: int = Query(50, ge=1, le=500),
):
    """Persist everything queued for a user."""
    service = await get_sync_service()
    result = await service.drain_queue(user_id, batch_size)
    return {"user_id": user_id, **result.to_dict()}
