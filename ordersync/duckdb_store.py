"""
DuckDB store for synced marketplace orders.

Holds the orders table (keyed by the marketplace order id), the seller
accounts with their OAuth tokens, and the per-user SKU cost catalog.

Domain-specific methods live in repository mixins:
- OrdersMixin: existence checks, bulk insert, transactional update, watermarks
- CatalogMixin: SKU cost lookup
- AccountsMixin: seller accounts and token persistence

Timestamps are stored as naive UTC and returned as aware UTC datetimes.
"""
import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional, Union

import duckdb

from ordersync.config import config
from ordersync.exceptions import QueryTimeoutError
from ordersync.observability import get_logger
from ordersync.repositories import AccountsMixin, CatalogMixin, OrdersMixin

logger = get_logger(__name__)

IN_MEMORY = ":memory:"


class DuckDBStore(OrdersMixin, CatalogMixin, AccountsMixin):
    """
    Async-compatible DuckDB store.

    All access goes through connection(), which serializes callers on an
    asyncio.Lock because a DuckDB connection must not be shared concurrently.
    """

    def __init__(self, db_path: Union[str, Path, None] = None):
        self.db_path = str(db_path or config.store.db_path)
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = asyncio.Lock()
        self._total_queries = 0

    async def connect(self) -> None:
        """Open the database and create the schema."""
        if self.db_path != IN_MEMORY:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async with self._lock:
            if self._connection is None:
                self._connection = duckdb.connect(self.db_path)
                self._init_schema(self._connection)
                logger.info(f"DuckDB connected: {self.db_path}")

    async def close(self) -> None:
        async with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
                logger.info("DuckDB connection closed")

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    @asynccontextmanager
    async def connection(self, timeout: Optional[float] = None):
        """
        Yield the connection while holding the store lock.

        Raises:
            QueryTimeoutError: If the lock is not free within `timeout` seconds
        """
        if self._connection is None:
            await self.connect()
        timeout = timeout or config.store.query_timeout
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"DuckDB lock not acquired within {timeout}s")
            raise QueryTimeoutError("store connection", timeout)
        try:
            self._total_queries += 1
            yield self._connection
        finally:
            self._lock.release()

    def _init_schema(self, conn: duckdb.DuckDBPyConnection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                id VARCHAR PRIMARY KEY,
                user_id VARCHAR NOT NULL,
                seller_id VARCHAR NOT NULL,
                nickname VARCHAR,
                access_token VARCHAR NOT NULL DEFAULT '',
                refresh_token VARCHAR NOT NULL DEFAULT '',
                expires_at TIMESTAMP,
                updated_at TIMESTAMP
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS sku_costs (
                user_id VARCHAR NOT NULL,
                sku VARCHAR NOT NULL,
                unit_cost DOUBLE,
                item_type VARCHAR,
                PRIMARY KEY (user_id, sku)
            )
        """)

        # Only the primary key is indexed: rows are updated in place on re-sync
        conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                order_id VARCHAR PRIMARY KEY,
                account_id VARCHAR NOT NULL,
                user_id VARCHAR NOT NULL,
                sale_at TIMESTAMP NOT NULL,
                status VARCHAR,
                buyer VARCHAR,
                title VARCHAR,
                sku VARCHAR,
                quantity INTEGER NOT NULL,
                unit_price DOUBLE,
                total_amount DOUBLE,
                platform_fee DOUBLE,
                freight_cost DOUBLE,
                cogs DOUBLE,
                margin DOUBLE,
                is_real_margin BOOLEAN,
                logistic_type VARCHAR,
                account_label VARCHAR,
                shipping_mode VARCHAR,
                shipping_status VARCHAR,
                shipment_id VARCHAR,
                listing_exposure VARCHAR,
                listing_kind VARCHAR,
                is_ads BOOLEAN DEFAULT FALSE,
                tags VARCHAR,
                internal_tags VARCHAR,
                latitude DOUBLE,
                longitude DOUBLE,
                raw VARCHAR,
                synced_at TIMESTAMP
            )
        """)

    async def get_stats(self) -> Dict[str, Any]:
        """Row counts for the health endpoint."""
        async with self.connection() as conn:
            orders = conn.execute("SELECT COUNT(*) FROM orders").fetchone()[0]
            accounts = conn.execute("SELECT COUNT(*) FROM accounts").fetchone()[0]
            skus = conn.execute("SELECT COUNT(*) FROM sku_costs").fetchone()[0]
        return {
            "orders": orders,
            "accounts": accounts,
            "sku_costs": skus,
            "db_path": self.db_path,
            "total_queries": self._total_queries,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_store: Optional[DuckDBStore] = None


async def get_store() -> DuckDBStore:
    """Get the connected singleton store."""
    global _store
    if _store is None:
        _store = DuckDBStore()
        await _store.connect()
    return _store


async def close_store() -> None:
    global _store
    if _store is not None:
        await _store.close()
        _store = None
