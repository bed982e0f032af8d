#!/usr/bin/env python3
"""
Show (or clear) what is buffered in the Redis order queue for a user.

Usage:
    python scripts/queue_stats.py --user-id u1
    python scripts/queue_stats.py --user-id u1 --clear
"""
import asyncio
import argparse
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from ordersync.observability import setup_logging, get_logger
from ordersync.order_queue import OrderQueue

setup_logging(level="INFO")
logger = get_logger(__name__)


async def main(user_id: str, clear: bool = False) -> int:
    queue = OrderQueue(enabled=True)
    if not await queue.connect():
        logger.error("Redis is not reachable")
        return 1

    try:
        stats = await queue.get_stats(user_id)
        print(json.dumps(stats.to_dict(), indent=2))
        if clear:
            removed = await queue.clear_user_queue(user_id)
            logger.info(f"Removed {removed} queue entries for {user_id}")
        return 0
    finally:
        await queue.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Inspect the order queue")
    parser.add_argument("--user-id", required=True)
    parser.add_argument("--clear", action="store_true", help="Delete every entry for the user")
    args = parser.parse_args()

    exit_code = asyncio.run(main(args.user_id, clear=args.clear))
    sys.exit(exit_code)
