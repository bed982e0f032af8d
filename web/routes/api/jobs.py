"""Scheduler job listing."""
from fastapi import APIRouter, Request

from ordersync.scheduler import get_scheduler
from web.schemas import JobsResponse
from ._deps import limiter

router = APIRouter()


@router.get("/sync/jobs", response_model=JobsResponse)
@limiter.limit("60/minute")
async def get_jobs(request: Request):
    """Continuations and the periodic sync, with their last outcome."""
    scheduler = get_scheduler()
    return {"scheduler_running": scheduler.is_running, "jobs": scheduler.get_jobs()}
