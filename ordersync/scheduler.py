"""
Timer for sync continuations and the optional periodic sync, on APScheduler.

Jobs:
- continue:{user_id}: one-shot follow-up run after a forced stop (DateTrigger)
- periodic_sync: incremental sync of SYNC_USER_IDS every SYNC_INTERVAL_MINUTES

Features:
- Job execution history
- Prevents job pile-up (max_instances=1, coalesce)
- Graceful shutdown
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    JobExecutionEvent,
)
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ordersync.config import SyncConfig, config
from ordersync.models import SyncRequest
from ordersync.observability import correlation_context, get_logger

logger = get_logger(__name__)

PERIODIC_JOB_ID = "periodic_sync"


class JobStatus(Enum):
    """Job execution status."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    MISSED = "missed"


@dataclass
class JobExecution:
    """Record of a job execution."""
    job_id: str
    finished_at: datetime
    status: JobStatus
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


@dataclass
class JobInfo:
    """Information about a scheduled job."""
    id: str
    name: str
    description: str
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_status: Optional[JobStatus] = None
    run_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None


def continuation_job_id(user_id: str) -> str:
    return f"continue:{user_id}"


class SyncScheduler:
    """
    Fires sync continuations and periodic syncs.

    Usage:
        scheduler = SyncScheduler()
        await scheduler.start()
        scheduler.schedule_continuation(request, delay=1.0)
        scheduler.shutdown()
    """

    def __init__(self, settings: Optional[SyncConfig] = None, max_history: int = 50):
        self.settings = settings or config.sync
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._job_history: Dict[str, List[JobExecution]] = {}
        self._job_info: Dict[str, JobInfo] = {}
        self._max_history = max_history
        self._started = False

    async def start(self) -> None:
        """Start the scheduler and register the periodic job if configured."""
        if self._started:
            logger.warning("Scheduler already started")
            return

        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED)
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

        if self.settings.interval_minutes > 0 and self.settings.scheduled_user_ids:
            self._add_job(
                job_id=PERIODIC_JOB_ID,
                name="Periodic Sync",
                description=f"Incremental sync for {len(self.settings.scheduled_user_ids)} users",
                func=self._run_periodic_sync,
                trigger=IntervalTrigger(minutes=self.settings.interval_minutes),
            )

        self._scheduler.start()
        self._started = True
        logger.info(f"Sync scheduler started with {len(self._job_info)} jobs")

    def _add_job(self, job_id: str, name: str, description: str, func, trigger, args=None) -> None:
        job = self._scheduler.add_job(
            func,
            trigger=trigger,
            args=args or [],
            id=job_id,
            name=name,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            misfire_grace_time=60,
        )
        info = self._job_info.setdefault(job_id, JobInfo(id=job_id, name=name, description=description))
        info.next_run = getattr(job, "next_run_time", None)
        self._job_history.setdefault(job_id, [])

    # ═══════════════════════════════════════════════════════════════════════════
    # JOBS
    # ═══════════════════════════════════════════════════════════════════════════

    def schedule_continuation(self, request: SyncRequest, delay: Optional[float] = None) -> bool:
        """
        Schedule a follow-up run with the same parameters.

        A pending continuation for the same user is replaced.

        Returns:
            False when the scheduler is not running
        """
        if not self.is_running:
            return False

        delay = self.settings.continuation_delay_seconds if delay is None else delay
        run_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
        self._add_job(
            job_id=continuation_job_id(request.user_id),
            name="Sync Continuation",
            description=f"Resume sync for user {request.user_id}",
            func=self._run_continuation,
            trigger=DateTrigger(run_date=run_at),
            args=[request.to_dict()],
        )
        logger.info(
            f"Continuation scheduled for user {request.user_id} at {run_at:%H:%M:%S}",
            extra={"user_id": request.user_id},
        )
        return True

    async def _run_continuation(self, request_data: Dict[str, Any]) -> Dict[str, Any]:
        with correlation_context():
            from ordersync.sync_service import get_sync_service

            request = SyncRequest(**request_data)
            service = await get_sync_service()
            summary = await service.run(request, continuation=True)
            return summary.to_dict()

    async def _run_periodic_sync(self) -> Dict[str, Any]:
        with correlation_context():
            from ordersync.sync_service import get_sync_service

            service = await get_sync_service()
            results = {}
            for user_id in self.settings.scheduled_user_ids:
                summary = await service.run(SyncRequest(user_id=user_id))
                results[user_id] = summary.to_dict()["totals"]
            logger.info("Periodic sync job complete", extra={"users": len(results)})
            return results

    # ═══════════════════════════════════════════════════════════════════════════
    # EVENT HANDLERS
    # ═══════════════════════════════════════════════════════════════════════════

    def _record(self, event: JobExecutionEvent, status: JobStatus, error: Optional[str] = None) -> None:
        info = self._job_info.get(event.job_id)
        if info is None:
            return

        now = datetime.now(timezone.utc)
        info.last_status = status
        if status != JobStatus.MISSED:
            info.last_run = now
            info.run_count += 1
        if status == JobStatus.FAILED:
            info.error_count += 1
            info.last_error = error

        job = self._scheduler.get_job(event.job_id) if self._scheduler else None
        info.next_run = job.next_run_time if job else None

        history = self._job_history.setdefault(event.job_id, [])
        history.append(JobExecution(
            job_id=event.job_id,
            finished_at=now,
            status=status,
            error=error,
            result=getattr(event, "retval", None) if status == JobStatus.SUCCESS else None,
        ))
        if len(history) > self._max_history:
            self._job_history[event.job_id] = history[-self._max_history:]

    def _on_job_executed(self, event: JobExecutionEvent) -> None:
        self._record(event, JobStatus.SUCCESS)

    def _on_job_error(self, event: JobExecutionEvent) -> None:
        error = str(event.exception) if event.exception else "Unknown error"
        self._record(event, JobStatus.FAILED, error)
        logger.error(f"Job {event.job_id} failed: {error}", extra={"job_id": event.job_id})

    def _on_job_missed(self, event: JobExecutionEvent) -> None:
        self._record(event, JobStatus.MISSED)
        logger.warning(f"Job {event.job_id} missed scheduled execution", extra={"job_id": event.job_id})

    # ═══════════════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════════════

    def get_jobs(self) -> List[Dict[str, Any]]:
        """All known jobs with their status, finished continuations included."""
        jobs = []
        for job_id, info in self._job_info.items():
            job = self._scheduler.get_job(job_id) if self._scheduler else None
            jobs.append({
                "id": info.id,
                "name": info.name,
                "description": info.description,
                "trigger": str(job.trigger) if job else "",
                "pending": job is not None,
                "next_run": info.next_run.isoformat() if info.next_run else None,
                "last_run": info.last_run.isoformat() if info.last_run else None,
                "last_status": info.last_status.value if info.last_status else None,
                "run_count": info.run_count,
                "error_count": info.error_count,
                "last_error": info.last_error,
            })
        return jobs

    def get_job_history(self, job_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        history = self._job_history.get(job_id, [])[-limit:]
        return [{
            "finished_at": e.finished_at.isoformat(),
            "status": e.status.value,
            "error": e.error,
        } for e in reversed(history)]

    def shutdown(self, wait: bool = False) -> None:
        if self._scheduler and self._started:
            self._scheduler.shutdown(wait=wait)
            self._started = False
            logger.info("Sync scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._started and self._scheduler is not None


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_scheduler: Optional[SyncScheduler] = None


def get_scheduler() -> SyncScheduler:
    """Get the singleton scheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = SyncScheduler()
    return _scheduler


async def start_scheduler() -> SyncScheduler:
    scheduler = get_scheduler()
    await scheduler.start()
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler:
        _scheduler.shutdown()
        _scheduler = None
