"""
Pytest configuration and shared fixtures.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from ordersync.duckdb_store import DuckDBStore
from ordersync.events import EventBus, ProgressEvent, ProgressReporter
from ordersync.freight import derive_freight
from ordersync.models import Account, EnrichedOrder, parse_timestamp


def make_order(
    order_id: Any = 1001,
    created: str = "2026-03-10T12:00:00.000Z",
    total: Optional[float] = 100.0,
    quantity: int = 2,
    unit_price: Optional[float] = 50.0,
    sale_fee: Optional[float] = 6.0,
    sku: Optional[str] = "SKU-1",
    shipping: Optional[Dict[str, Any]] = None,
    **overrides: Any,
) -> Dict[str, Any]:
    """Raw order shaped like the marketplace order search results."""
    order = {
        "id": order_id,
        "date_created": created,
        "status": "paid",
        "total_amount": total,
        "order_items": [{
            "item": {"id": "MLB1", "title": "Widget", "seller_sku": sku},
            "quantity": quantity,
            "unit_price": unit_price,
            "sale_fee": sale_fee,
            "listing_type_id": "gold_pro",
        }],
        "buyer": {"id": 9, "nickname": "BUYER_ONE"},
        "shipping": shipping if shipping is not None else {"mode": "me2", "cost": 10.0},
        "tags": ["paid"],
        "internal_tags": [],
    }
    order.update(overrides)
    return order


def make_enriched(
    order: Optional[Dict[str, Any]] = None,
    shipment: Optional[Dict[str, Any]] = None,
    account_id: str = "acc-1",
    **order_kwargs: Any,
) -> EnrichedOrder:
    order = order if order is not None else make_order(**order_kwargs)
    return EnrichedOrder(
        account_id=account_id,
        account_label="Main store",
        order=order,
        shipment=shipment,
        freight=derive_freight(order, shipment),
    )


@pytest.fixture
def sample_order() -> Dict[str, Any]:
    """Raw marketplace order with one item."""
    return make_order()


@pytest.fixture
def full_shipment() -> Dict[str, Any]:
    """Fulfillment shipment: seller pays the base cost."""
    return {
        "id": 555,
        "status": "delivered",
        "logistic_type": "fulfillment",
        "base_cost": 7.0,
        "shipping_option": {"cost": 0.0, "list_cost": 25.0},
        "receiver_address": {"latitude": -23.5, "longitude": -46.6},
    }


@pytest.fixture
def account() -> Account:
    return Account(
        id="acc-1",
        user_id="user-1",
        seller_id="777",
        nickname="Main store",
        access_token="token",
        refresh_token="refresh",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=6),
    )


class RecordingBus(EventBus):
    """EventBus that keeps every published event for assertions."""

    def __init__(self):
        super().__init__()
        self.published: List[ProgressEvent] = []

    async def publish(self, event: ProgressEvent) -> None:
        self.published.append(event)
        await super().publish(event)

    def types(self) -> List[str]:
        return [e.type.value for e in self.published]

    def warnings(self) -> List[str]:
        return [e.error_code for e in self.published if e.type.value == "sync_warning"]


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
def reporter(bus) -> ProgressReporter:
    return ProgressReporter("user-1", bus=bus)


@pytest_asyncio.fixture
async def store():
    """In-memory DuckDB store with the schema created."""
    db = DuckDBStore(":memory:")
    await db.connect()
    yield db
    await db.close()


class FakeMarketplace:
    """
    In-process marketplace served through httpx.MockTransport.

    Orders are filtered by the date_created range params, sorted newest
    first and paged by offset/limit. Every order search advances `now` by
    `seconds_per_request`, which tests use as the fetch clock.
    """

    def __init__(self, orders: List[Dict[str, Any]], seconds_per_request: float = 0.0):
        self.orders = orders
        self.seconds_per_request = seconds_per_request
        self.now = 0.0
        self.search_calls = 0

    def clock(self) -> float:
        return self.now

    def _in_range(self, order: Dict[str, Any], date_from, date_to) -> bool:
        created = parse_timestamp(order["date_created"])
        if date_from is not None and created < date_from:
            return False
        if date_to is not None and created > date_to:
            return False
        return True

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/orders/search":
            self.search_calls += 1
            self.now += self.seconds_per_request
            params = request.url.params
            date_from = parse_timestamp(params.get("order.date_created.from"))
            date_to = parse_timestamp(params.get("order.date_created.to"))
            matching = sorted(
                (o for o in self.orders if self._in_range(o, date_from, date_to)),
                key=lambda o: o["date_created"],
                reverse=True,
            )
            offset = int(params.get("offset", 0))
            limit = int(params.get("limit", 50))
            return httpx.Response(200, json={
                "results": matching[offset:offset + limit],
                "paging": {"total": len(matching), "offset": offset, "limit": limit},
            })
        if request.url.path.startswith("/shipments/"):
            return httpx.Response(404, json={"message": "not found"})
        return httpx.Response(404)


def hourly_orders(count: int, newest: datetime) -> List[Dict[str, Any]]:
    """`count` orders one hour apart, ids 1..count from newest to oldest."""
    return [
        make_order(
            order_id=i + 1,
            created=(newest - timedelta(hours=i)).strftime("%Y-%m-%dT%H:%M:%S.000Z"),
            shipping={"mode": "me2", "cost": 5.0},
        )
        for i in range(count)
    ]


class InMemoryRedis:
    """The handful of redis.asyncio commands OrderQueue uses, backed by dicts."""

    def __init__(self):
        self.values: Dict[str, str] = {}
        self.sets: Dict[str, set] = {}
        self.ttls: Dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        pass

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self.values[key] = value
        self.ttls[key] = ttl

    async def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    async def ttl(self, key: str) -> int:
        return self.ttls.get(key, -2)

    async def expire(self, key: str, ttl: int) -> None:
        self.ttls[key] = ttl

    async def sadd(self, key: str, *members: str) -> None:
        self.sets.setdefault(key, set()).update(members)

    async def srem(self, key: str, *members: str) -> None:
        self.sets.get(key, set()).difference_update(members)

    async def smembers(self, key: str) -> set:
        return set(self.sets.get(key, set()))

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            removed += (self.values.pop(key, None) is not None) + (self.sets.pop(key, None) is not None)
            self.ttls.pop(key, None)
        return removed
