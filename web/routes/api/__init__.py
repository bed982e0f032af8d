"""
API routes split by domain.

Each sub-module defines its own APIRouter which is composed
into the top-level router exposed by this package.
"""
from fastapi import APIRouter

from .health import router as health_router
from .jobs import router as jobs_router
from .queue import router as queue_router
from .sync import router as sync_router

router = APIRouter(tags=["api"])

router.include_router(health_router)
router.include_router(sync_router)
router.include_router(queue_router)
router.include_router(jobs_router)
