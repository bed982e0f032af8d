#!/usr/bin/env python3
"""
Persist every order buffered in the Redis queue for a user.

Usage:
    python scripts/drain_queue.py --user-id u1
    python scripts/drain_queue.py --user-id u1 --batch-size 100
"""
import asyncio
import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from ordersync.duckdb_store import get_store, close_store
from ordersync.observability import setup_logging, get_logger
from ordersync.order_queue import OrderQueue
from ordersync.sync_service import SyncService

setup_logging(level="INFO")
logger = get_logger(__name__)


async def main(user_id: str, batch_size: int) -> int:
    queue = OrderQueue(enabled=True)
    if not await queue.connect():
        logger.error("Redis is not reachable, nothing to drain")
        return 1

    store = await get_store()
    service = SyncService(store, queue=queue)
    try:
        result = await service.drain_queue(user_id, batch_size)
        logger.info(
            f"Drained {result.processed} orders in {result.batches} batches: "
            f"{result.saved} saved, {result.duplicates} duplicates, {result.errors} errors"
        )
        return 1 if result.errors else 0
    finally:
        await service.close()
        await queue.close()
        await close_store()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Drain the order queue into DuckDB")
    parser.add_argument("--user-id", required=True)
    parser.add_argument("--batch-size", type=int, default=50, help="Orders per batch (default: 50)")
    args = parser.parse_args()

    exit_code = asyncio.run(main(args.user_id, args.batch_size))
    sys.exit(exit_code)
