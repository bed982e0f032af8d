"""DuckDBStore order methods."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from ordersync.models import OrderRecord


ORDER_COLUMNS = (
    "order_id", "account_id", "user_id", "sale_at", "status", "buyer", "title",
    "sku", "quantity", "unit_price", "total_amount", "platform_fee",
    "freight_cost", "cogs", "margin", "is_real_margin", "logistic_type",
    "account_label", "shipping_mode", "shipping_status", "shipment_id",
    "listing_exposure", "listing_kind", "is_ads", "tags", "internal_tags",
    "latitude", "longitude", "raw", "synced_at",
)

# Everything but the key is rewritten on update
UPDATE_COLUMNS = tuple(c for c in ORDER_COLUMNS if c != "order_id")


def to_db_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    """Aware datetime -> naive UTC for storage."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_db_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    """Stored naive UTC -> aware UTC."""
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _record_row(record: OrderRecord, synced_at: datetime) -> Dict[str, Any]:
    return {
        "order_id": record.order_id,
        "account_id": record.account_id,
        "user_id": record.user_id,
        "sale_at": to_db_timestamp(record.sale_at),
        "status": record.status,
        "buyer": record.buyer,
        "title": record.title,
        "sku": record.sku,
        "quantity": record.quantity,
        "unit_price": record.unit_price,
        "total_amount": record.total_amount,
        "platform_fee": record.platform_fee,
        "freight_cost": record.freight_cost,
        "cogs": record.cogs,
        "margin": record.margin,
        "is_real_margin": record.is_real_margin,
        "logistic_type": record.logistic_type,
        "account_label": record.account_label,
        "shipping_mode": record.shipping_mode,
        "shipping_status": record.shipping_status,
        "shipment_id": record.shipment_id,
        "listing_exposure": record.listing_exposure,
        "listing_kind": record.listing_kind,
        "is_ads": record.is_ads,
        "tags": json.dumps(record.tags),
        "internal_tags": json.dumps(record.internal_tags),
        "latitude": record.latitude,
        "longitude": record.longitude,
        "raw": json.dumps(record.raw, default=str),
        "synced_at": to_db_timestamp(synced_at),
    }


class OrdersMixin:

    async def find_existing_order_ids(self, order_ids: Iterable[str]) -> Set[str]:
        """Subset of order_ids already stored."""
        ids = list(dict.fromkeys(order_ids))
        if not ids:
            return set()
        placeholders = ", ".join("?" for _ in ids)
        async with self.connection() as conn:
            rows = conn.execute(
                f"SELECT order_id FROM orders WHERE order_id IN ({placeholders})", ids
            ).fetchall()
        return {row[0] for row in rows}

    async def insert_orders(self, records: List[OrderRecord]) -> int:
        """
        Bulk insert; rows whose order_id already exists are skipped.

        Returns:
            Number of records submitted
        """
        if not records:
            return 0

        now = datetime.now(timezone.utc)
        rows = [_record_row(r, now) for r in records]
        columns = ", ".join(ORDER_COLUMNS)
        placeholders = ", ".join("?" for _ in ORDER_COLUMNS)

        async with self.connection() as conn:
            conn.execute("BEGIN TRANSACTION")
            try:
                conn.executemany(
                    f"INSERT INTO orders ({columns}) VALUES ({placeholders}) "
                    f"ON CONFLICT (order_id) DO NOTHING",
                    [[row[c] for c in ORDER_COLUMNS] for row in rows],
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        return len(records)

    async def update_orders(self, records: List[OrderRecord]) -> int:
        """
        Rewrite existing orders in one all-or-nothing transaction.

        Returns:
            Number of records updated
        """
        if not records:
            return 0

        now = datetime.now(timezone.utc)
        assignments = ", ".join(f"{c} = ?" for c in UPDATE_COLUMNS)
        params = []
        for record in records:
            row = _record_row(record, now)
            params.append([row[c] for c in UPDATE_COLUMNS] + [row["order_id"]])

        async with self.connection() as conn:
            conn.execute("BEGIN TRANSACTION")
            try:
                conn.executemany(
                    f"UPDATE orders SET {assignments} WHERE order_id = ?",
                    params,
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        return len(records)

    async def upsert_order(self, record: OrderRecord) -> None:
        """Insert or overwrite a single order by its id."""
        row = _record_row(record, datetime.now(timezone.utc))
        columns = ", ".join(ORDER_COLUMNS)
        placeholders = ", ".join("?" for _ in ORDER_COLUMNS)
        assignments = ", ".join(f"{c} = EXCLUDED.{c}" for c in UPDATE_COLUMNS)

        async with self.connection() as conn:
            conn.execute(
                f"INSERT INTO orders ({columns}) VALUES ({placeholders}) "
                f"ON CONFLICT (order_id) DO UPDATE SET {assignments}",
                [row[c] for c in ORDER_COLUMNS],
            )

    async def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        columns = ", ".join(ORDER_COLUMNS)
        async with self.connection() as conn:
            row = conn.execute(
                f"SELECT {columns} FROM orders WHERE order_id = ?", [order_id]
            ).fetchone()

        if not row:
            return None

        data = dict(zip(ORDER_COLUMNS, row))
        data["sale_at"] = from_db_timestamp(data["sale_at"])
        data["synced_at"] = from_db_timestamp(data["synced_at"])
        for key in ("tags", "internal_tags", "raw"):
            data[key] = json.loads(data[key]) if data[key] else None
        return data

    async def get_latest_sale_at(self, account_id: str) -> Optional[datetime]:
        """Most recent stored sale for an account."""
        async with self.connection() as conn:
            row = conn.execute(
                "SELECT MAX(sale_at) FROM orders WHERE account_id = ?", [account_id]
            ).fetchone()
        return from_db_timestamp(row[0]) if row else None

    async def get_oldest_sale_at(self, account_id: str) -> Optional[datetime]:
        """Oldest stored sale for an account: the backfill watermark."""
        async with self.connection() as conn:
            row = conn.execute(
                "SELECT MIN(sale_at) FROM orders WHERE account_id = ?", [account_id]
            ).fetchone()
        return from_db_timestamp(row[0]) if row else None

    async def count_orders(
        self,
        account_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> int:
        conditions = []
        params: List[Any] = []
        if account_id is not None:
            conditions.append("account_id = ?")
            params.append(account_id)
        if user_id is not None:
            conditions.append("user_id = ?")
            params.append(user_id)
        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        async with self.connection() as conn:
            row = conn.execute(f"SELECT COUNT(*) FROM orders {where_clause}", params).fetchone()
        return int(row[0]) if row else 0
