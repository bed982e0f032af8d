#!/usr/bin/env python3
"""
Run one sync for a user from the command line.

Without --once the process stays up until the chain of automatic
continuations has finished (or hit the continuation limit).

Usage:
    python scripts/run_sync.py --user-id u1
    python scripts/run_sync.py --user-id u1 --account acc-1 --full
    python scripts/run_sync.py --user-id u1 --quick --once
"""
import asyncio
import argparse
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from ordersync.config import config
from ordersync.duckdb_store import get_store, close_store
from ordersync.models import SyncRequest
from ordersync.observability import setup_logging, get_logger
from ordersync.order_queue import get_order_queue, close_order_queue
from ordersync.sync_service import SyncService

setup_logging(level="INFO")
logger = get_logger(__name__)


async def main(request: SyncRequest, once: bool = False) -> int:
    store = await get_store()
    queue = await get_order_queue() if config.queue.enabled else None
    # No scheduler: continuations run as in-process tasks
    service = SyncService(store, queue=queue)

    try:
        before = await store.count_orders(user_id=request.user_id)
        summary = await service.run(request)
        print(json.dumps(summary.to_dict(), indent=2))

        if not once and summary.continuation_scheduled:
            logger.info("Waiting for continuations to finish...")
            await service.wait_for_continuations()

        after = await store.count_orders(user_id=request.user_id)
        logger.info(f"Stored orders for {request.user_id}: {before} -> {after}")
        return 1 if summary.errors else 0
    except Exception as e:
        logger.error(f"Sync failed: {e}", exc_info=True)
        return 1
    finally:
        await service.close()
        await close_order_queue()
        await close_store()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Sync marketplace orders into DuckDB")
    parser.add_argument("--user-id", required=True, help="Owner of the seller accounts")
    parser.add_argument(
        "--account",
        action="append",
        dest="accounts",
        help="Restrict to this account id (repeatable)"
    )
    parser.add_argument("--full", action="store_true", help="Backfill to the full-sync floor")
    parser.add_argument("--quick", action="store_true", help="Use the smaller per-run cap")
    parser.add_argument("--once", action="store_true", help="Do not wait for continuations")
    args = parser.parse_args()

    request = SyncRequest(
        user_id=args.user_id,
        account_ids=args.accounts,
        full_sync=args.full,
        quick_mode=args.quick,
    )
    exit_code = asyncio.run(main(request, once=args.once))
    sys.exit(exit_code)
