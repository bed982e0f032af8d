"""
Drains a user's order queue into the store.

Each batch is dequeued once and handed to the persistence engine; if the
engine raises, the same batch is retried with exponential backoff before it
is reported as failed.
"""
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ordersync.config import QueueConfig, config
from ordersync.events import ProgressReporter, ProgressType
from ordersync.exceptions import OrderSyncError
from ordersync.observability import get_logger
from ordersync.order_queue import OrderQueue
from ordersync.persistence import OrderPersistenceEngine

logger = get_logger(__name__)


@dataclass
class BatchResult:
    dequeued: int = 0
    saved: int = 0
    errors: int = 0
    duplicates: int = 0
    queue_available: bool = True


@dataclass
class DrainResult:
    processed: int = 0
    saved: int = 0
    errors: int = 0
    duplicates: int = 0
    batches: int = 0

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "saved": self.saved,
            "errors": self.errors,
            "duplicates": self.duplicates,
            "batches": self.batches,
        }


class QueueWorker:
    """
    Moves queued orders into the store for one user at a time.

    Args:
        queue: Order queue to drain
        engine: Persistence engine writing the orders
        reporter: Progress sink for save_* events
        sleep: Injectable for tests
    """

    RETRY_DELAY_BASE = 1.0

    def __init__(
        self,
        queue: OrderQueue,
        engine: OrderPersistenceEngine,
        reporter: ProgressReporter,
        settings: Optional[QueueConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.queue = queue
        self.engine = engine
        self.reporter = reporter
        self.settings = settings or config.queue
        self.sleep = sleep

    async def process_batch(self, user_id: str, batch_size: Optional[int] = None) -> BatchResult:
        batch_size = batch_size or self.settings.dequeue_batch_size
        dequeued = await self.queue.try_dequeue(user_id, batch_size)
        if not dequeued.success:
            return BatchResult(queue_available=False)
        if not dequeued.orders:
            return BatchResult()

        orders = dequeued.orders
        logger.info(f"Processing batch of {len(orders)} queued orders", extra={"user_id": user_id})

        max_retries = self.settings.worker_max_retries
        for attempt in range(max_retries + 1):
            try:
                persisted = await self.engine.persist(user_id, orders)
                break
            except OrderSyncError as e:
                if attempt >= max_retries:
                    logger.error(
                        f"Batch from {dequeued.key} failed after {max_retries} retries: {e}",
                        extra={"user_id": user_id},
                    )
                    return BatchResult(dequeued=len(orders), errors=len(orders))
                delay = self.RETRY_DELAY_BASE * (2 ** attempt)
                logger.warning(
                    f"Batch save failed, retrying in {delay:.0f}s "
                    f"(attempt {attempt + 1}/{max_retries}): {e}",
                    extra={"user_id": user_id},
                )
                await self.sleep(delay)

        await self.reporter.emit(
            ProgressType.SAVE_PROGRESS,
            f"{persisted.saved} orders saved",
            current=persisted.saved,
            total=len(orders),
        )
        return BatchResult(
            dequeued=len(orders),
            saved=persisted.saved,
            errors=persisted.errors + persisted.invalid,
            duplicates=persisted.duplicates,
        )

    async def process_all(self, user_id: str, batch_size: Optional[int] = None) -> DrainResult:
        """Drain the user's queue until a dequeue comes back empty."""
        result = DrainResult()
        await self.reporter.emit(ProgressType.SAVE_START, "Saving queued orders")

        while True:
            batch = await self.process_batch(user_id, batch_size)
            if batch.dequeued == 0:
                if not batch.queue_available:
                    logger.warning("Order queue unavailable, stopping drain", extra={"user_id": user_id})
                break

            result.batches += 1
            result.processed += batch.dequeued
            result.saved += batch.saved
            result.errors += batch.errors
            result.duplicates += batch.duplicates
            await self.sleep(self.settings.worker_idle_sleep)

        logger.info(
            f"Drained queue: {result.saved} saved, {result.errors} errors in {result.batches} batches",
            extra={"user_id": user_id},
        )
        await self.reporter.emit(
            ProgressType.SAVE_COMPLETE,
            f"Save complete: {result.saved} orders saved",
            total=result.saved,
            errors=result.errors,
        )
        return result
