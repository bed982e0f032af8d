"""Shared dependencies for API route modules."""
import time

from slowapi import Limiter
from slowapi.util import get_remote_address

from ordersync.duckdb_store import get_store
from ordersync.observability import get_logger

# Shared limiter instance
limiter = Limiter(key_func=get_remote_address)

# Track startup time for uptime calculation
START_TIME = time.time()

__all__ = ["limiter", "get_store", "get_logger", "START_TIME"]
