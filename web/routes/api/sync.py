"""Sync trigger endpoint."""
from fastapi import APIRouter, Request

from ordersync.models import SyncRequest
from ordersync.sync_service import get_sync_service
from web.config import SYNC_RATE_LIMIT
from web.schemas import SyncRequestBody, SyncSummaryResponse
from ._deps import get_logger, limiter

router = APIRouter()
logger = get_logger(__name__)


@router.post("/sync", response_model=SyncSummaryResponse)
@limiter.limit(SYNC_RATE_LIMIT)
async def trigger_sync(request: Request, body: SyncRequestBody):
    """
    Run one time-budgeted sync for a user.

    Returns once this run is done; when more work remains a continuation is
    already scheduled and `continuation_scheduled` is true.
    """
    service = await get_sync_service()
    summary = await service.run(SyncRequest(
        user_id=body.user_id,
        account_ids=body.account_ids,
        full_sync=body.full_sync,
        quick_mode=body.quick_mode,
    ))
    return summary.to_dict()
