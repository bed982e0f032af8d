"""
Redis buffer between fetching and persisting orders.

Each enqueue writes one entry (a JSON list of enriched orders) under
`{prefix}:{user}:{account}:{timestamp_ms}` with a TTL, and records the key in
the user's index set `{prefix}:index:{user}`. Dequeue reads the index, sorts
it and consumes the first entry: fully when it fits the limit, otherwise the
remainder is written back.

The queue degrades gracefully: when Redis is disabled or unreachable,
try_enqueue/try_dequeue report success=False and callers fall back to
persisting directly. Nothing here raises to the caller.

Usage:
    from ordersync.order_queue import get_order_queue

    queue = await get_order_queue()
    result = await queue.try_enqueue(user_id, account_id, orders)
    if not result.success:
        await engine.persist(user_id, orders)
"""
import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ordersync.config import QueueConfig, config
from ordersync.exceptions import QueueError
from ordersync.models import EnrichedOrder
from ordersync.observability import Timer, get_logger

logger = get_logger(__name__)


@dataclass
class EnqueueResult:
    success: bool
    key: Optional[str] = None
    count: int = 0


@dataclass
class DequeueResult:
    success: bool
    orders: List[EnrichedOrder] = field(default_factory=list)
    key: Optional[str] = None
    remaining_in_entry: int = 0


@dataclass
class QueueStats:
    """Queue statistics for monitoring."""

    total_orders: int = 0
    entries: int = 0
    oldest_enqueued_at: Optional[datetime] = None
    approx_bytes: int = 0
    keys: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "total_orders": self.total_orders,
            "entries": self.entries,
            "oldest_enqueued_at": self.oldest_enqueued_at.isoformat() if self.oldest_enqueued_at else None,
            "approx_bytes": self.approx_bytes,
            "keys": self.keys,
        }


def _timestamp_from_key(key: str) -> Optional[int]:
    try:
        return int(key.rsplit(":", 1)[-1])
    except ValueError:
        return None


class OrderQueue:
    """
    Per-user FIFO of enriched orders on Redis, with graceful degradation.

    Args:
        url: Redis URL
        enabled: When False every operation is a no-op reporting failure
        settings: Queue sizing and TTLs
        client: Pre-built redis client (tests)
    """

    def __init__(
        self,
        url: Optional[str] = None,
        enabled: Optional[bool] = None,
        settings: Optional[QueueConfig] = None,
        client=None,
    ):
        self.settings = settings or config.queue
        self.url = url or self.settings.redis_url
        self.enabled = self.settings.enabled if enabled is None else enabled
        self.prefix = self.settings.key_prefix
        self._client = client
        self._connected = client is not None
        self._lock = asyncio.Lock()

    async def connect(self) -> bool:
        """
        Connect to Redis server.

        Returns:
            True if connected successfully, False otherwise
        """
        if not self.enabled:
            logger.info("Order queue disabled by configuration")
            return False

        try:
            async with self._lock:
                if self._client is None:
                    self._client = redis.from_url(
                        self.url,
                        encoding="utf-8",
                        decode_responses=True,
                        socket_timeout=5.0,
                        socket_connect_timeout=5.0,
                    )
                await self._client.ping()
                self._connected = True
                logger.info(f"Order queue connected: {self.url}")
                return True
        except Exception as e:
            logger.warning(f"Order queue connection failed: {e}")
            self._connected = False

        return False

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
            self._connected = False
            logger.info("Order queue disconnected")

    @property
    def is_connected(self) -> bool:
        return self.enabled and self._connected and self._client is not None

    async def _redis(self, command: str, *args):
        """Run one Redis command, raising QueueError on any Redis or socket failure."""
        try:
            return await getattr(self._client, command)(*args)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise QueueError(f"Redis {command} failed", {"error": str(e)}) from e

    def index_key(self, user_id: str) -> str:
        return f"{self.prefix}:index:{user_id}"

    def entry_key(self, user_id: str, account_id: str, timestamp_ms: Optional[int] = None) -> str:
        ts = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
        return f"{self.prefix}:{user_id}:{account_id}:{ts}"

    # ═══════════════════════════════════════════════════════════════════════════
    # ENQUEUE / DEQUEUE
    # ═══════════════════════════════════════════════════════════════════════════

    async def try_enqueue(
        self,
        user_id: str,
        account_id: str,
        orders: List[EnrichedOrder],
    ) -> EnqueueResult:
        """Write one entry holding `orders`; success=False when Redis is unusable."""
        if not orders:
            return EnqueueResult(success=True, key=None, count=0)
        if not self.is_connected:
            logger.warning("Order queue unavailable, skipping enqueue")
            return EnqueueResult(success=False)

        key = self.entry_key(user_id, account_id)
        ttl = self.settings.ttl_seconds
        try:
            with Timer("queue_enqueue"):
                payload = json.dumps([o.to_dict() for o in orders], default=str)
                await self._redis("setex", key, ttl, payload)
                await self._redis("sadd", self.index_key(user_id), key)
                await self._redis("expire", self.index_key(user_id), ttl)
        except QueueError as e:
            logger.warning(f"Enqueue failed for {key}: {e}")
            return EnqueueResult(success=False)

        logger.info(f"Enqueued {len(orders)} orders to {key}")
        return EnqueueResult(success=True, key=key, count=len(orders))

    async def try_dequeue(self, user_id: str, limit: Optional[int] = None) -> DequeueResult:
        """
        Take up to `limit` orders from the user's oldest entry.

        Vanished entries are dropped from the index and the next key is
        tried; corrupt entries are deleted.
        """
        limit = limit or self.settings.dequeue_batch_size
        if not self.is_connected:
            logger.warning("Order queue unavailable, cannot dequeue")
            return DequeueResult(success=False)

        index_key = self.index_key(user_id)
        try:
            keys = sorted(await self._redis("smembers", index_key))
            for key in keys:
                data = await self._redis("get", key)
                if data is None:
                    await self._redis("srem", index_key, key)
                    continue

                try:
                    entries = json.loads(data)
                    orders = [EnrichedOrder.from_dict(item) for item in entries]
                except (ValueError, KeyError, TypeError) as e:
                    logger.error(f"Corrupt queue entry {key}, deleting: {e}")
                    await self._redis("delete", key)
                    await self._redis("srem", index_key, key)
                    continue

                if len(orders) <= limit:
                    await self._redis("delete", key)
                    await self._redis("srem", index_key, key)
                    logger.info(f"Dequeued all {len(orders)} orders from {key}")
                    return DequeueResult(success=True, orders=orders, key=key)

                batch, rest = orders[:limit], entries[limit:]
                ttl = await self._redis("ttl", key)
                await self._redis(
                    "setex", key, max(ttl, self.settings.min_ttl_seconds), json.dumps(rest, default=str)
                )
                logger.info(f"Dequeued {len(batch)} orders from {key}, {len(rest)} remaining")
                return DequeueResult(success=True, orders=batch, key=key, remaining_in_entry=len(rest))

        except QueueError as e:
            logger.warning(f"Dequeue failed for user {user_id}: {e}")
            return DequeueResult(success=False)

        return DequeueResult(success=True)

    # ═══════════════════════════════════════════════════════════════════════════
    # INSPECTION
    # ═══════════════════════════════════════════════════════════════════════════

    async def get_stats(self, user_id: str) -> QueueStats:
        stats = QueueStats()
        if not self.is_connected:
            return stats

        try:
            keys = sorted(await self._redis("smembers", self.index_key(user_id)))
            stats.keys = keys
            timestamps = []
            for key in keys:
                data = await self._redis("get", key)
                if not data:
                    continue
                try:
                    stats.total_orders += len(json.loads(data))
                except ValueError as e:
                    logger.error(f"Unreadable queue entry {key}: {e}")
                    continue
                stats.entries += 1
                stats.approx_bytes += len(data)
                ts = _timestamp_from_key(key)
                if ts is not None:
                    timestamps.append(ts)
            if timestamps:
                stats.oldest_enqueued_at = datetime.fromtimestamp(min(timestamps) / 1000, tz=timezone.utc)
        except QueueError as e:
            logger.warning(f"Queue stats failed for user {user_id}: {e}")

        return stats

    async def clear_user_queue(self, user_id: str) -> int:
        """Delete every entry of a user; returns the number of entries removed."""
        if not self.is_connected:
            return 0

        index_key = self.index_key(user_id)
        try:
            keys = await self._redis("smembers", index_key)
            if not keys:
                return 0
            await self._redis("delete", *keys, index_key)
        except QueueError as e:
            logger.warning(f"Clearing queue for user {user_id} failed: {e}")
            return 0

        logger.info(f"Cleared {len(keys)} queue entries for user {user_id}")
        return len(keys)

    async def get_account_queue_count(self, user_id: str, account_id: str) -> int:
        if not self.is_connected:
            return 0

        marker = f":{user_id}:{account_id}:"
        total = 0
        try:
            for key in await self._redis("smembers", self.index_key(user_id)):
                if marker not in key:
                    continue
                data = await self._redis("get", key)
                if data:
                    try:
                        total += len(json.loads(data))
                    except ValueError:
                        logger.error(f"Unreadable queue entry {key}")
        except QueueError as e:
            logger.warning(f"Queue count failed for account {account_id}: {e}")
            return 0
        return total


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_queue: Optional[OrderQueue] = None


async def get_order_queue() -> OrderQueue:
    """Get the singleton queue, connecting on first use."""
    global _queue
    if _queue is None:
        _queue = OrderQueue()
        await _queue.connect()
    return _queue


async def close_order_queue() -> None:
    global _queue
    if _queue is not None:
        await _queue.close()
        _queue = None
