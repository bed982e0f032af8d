"""
Unit tests for ordersync/worker.py
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from ordersync.config import QueueConfig
from ordersync.events import ProgressReporter
from ordersync.exceptions import PersistenceError
from ordersync.models import PersistResult
from ordersync.order_queue import DequeueResult
from ordersync.worker import QueueWorker

from conftest import make_enriched


def make_worker(dequeues, persists, bus, max_retries=3):
    queue = MagicMock()
    queue.try_dequeue = AsyncMock(side_effect=dequeues)
    engine = MagicMock()
    engine.persist = AsyncMock(side_effect=persists)
    settings = QueueConfig(worker_max_retries=max_retries, worker_idle_sleep=0.0)
    worker = QueueWorker(queue, engine, ProgressReporter("u1", bus=bus), settings=settings, sleep=AsyncMock())
    return worker, queue, engine


class TestQueueWorker:

    @pytest.mark.asyncio
    async def test_drains_until_empty(self, bus):
        batches = [
            DequeueResult(success=True, orders=[make_enriched(order_id=1), make_enriched(order_id=2)], key="k1"),
            DequeueResult(success=True, orders=[make_enriched(order_id=3)], key="k2"),
            DequeueResult(success=True),
        ]
        worker, queue, engine = make_worker(
            batches, [PersistResult(saved=2), PersistResult(saved=1)], bus
        )

        result = await worker.process_all("u1")

        assert result.batches == 2
        assert result.processed == 3
        assert result.saved == 3
        assert bus.types()[0] == "sync_save_start"
        assert bus.types()[-1] == "sync_save_complete"
        assert bus.types().count("sync_save_progress") == 2

    @pytest.mark.asyncio
    async def test_retries_the_same_batch(self, bus):
        orders = [make_enriched(order_id=1)]
        worker, queue, engine = make_worker(
            [DequeueResult(success=True, orders=orders, key="k1"), DequeueResult(success=True)],
            [PersistenceError("store locked"), PersistenceError("store locked"), PersistResult(saved=1)],
            bus,
        )

        result = await worker.process_all("u1")

        assert result.saved == 1
        assert result.errors == 0
        assert engine.persist.await_count == 3
        assert all(c.args[1] is orders for c in engine.persist.await_args_list)
        # No extra dequeue for the retries
        assert queue.try_dequeue.await_count == 2
        retry_sleeps = [c.args[0] for c in worker.sleep.await_args_list if c.args[0] > 0]
        assert retry_sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, bus):
        orders = [make_enriched(order_id=1), make_enriched(order_id=2)]
        worker, queue, engine = make_worker(
            [DequeueResult(success=True, orders=orders, key="k1"), DequeueResult(success=True)],
            PersistenceError("store offline"),
            bus,
            max_retries=2,
        )

        result = await worker.process_all("u1")

        assert engine.persist.await_count == 3
        assert result.errors == 2
        assert result.saved == 0

    @pytest.mark.asyncio
    async def test_unavailable_queue_stops_drain(self, bus):
        worker, queue, engine = make_worker([DequeueResult(success=False)], [], bus)

        result = await worker.process_all("u1")

        assert result.processed == 0
        engine.persist.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_orders_count_as_errors(self, bus):
        worker, queue, engine = make_worker(
            [DequeueResult(success=True, orders=[make_enriched(order_id=1)], key="k1")],
            [PersistResult(saved=0, invalid=1)],
            bus,
        )

        batch = await worker.process_batch("u1")

        assert batch.errors == 1
