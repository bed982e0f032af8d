"""
Unit tests for ordersync/models.py and ordersync/budget.py
"""
from datetime import datetime, timedelta, timezone

from ordersync.budget import TimeBudget
from ordersync.models import (
    AccountSyncResult,
    EnrichedOrder,
    SyncRequest,
    SyncSummary,
    SyncWindow,
    format_timestamp,
    parse_timestamp,
)

from conftest import make_enriched, make_order


class TestTimestamps:

    def test_parse_normalizes_to_utc(self):
        parsed = parse_timestamp("2026-03-10T09:00:00.000-03:00")
        assert parsed == datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        assert parsed.tzinfo == timezone.utc

    def test_parse_rejects_garbage(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None
        assert parse_timestamp("yesterday") is None

    def test_format_uses_milliseconds(self):
        value = datetime(2026, 3, 1, 0, 0, 0, 123456, tzinfo=timezone.utc)
        assert format_timestamp(value) == "2026-03-01T00:00:00.123Z"


class TestEnrichedOrder:

    def test_sale_at_prefers_date_closed(self):
        order = make_order(date_closed="2026-03-11T00:00:00Z")
        assert make_enriched(order=order).sale_at == datetime(2026, 3, 11, tzinfo=timezone.utc)

    def test_sale_at_falls_back_to_created(self):
        assert make_enriched().sale_at == datetime(2026, 3, 10, 12, tzinfo=timezone.utc)

    def test_dict_form_keeps_freight(self, sample_order, full_shipment):
        enriched = make_enriched(order=sample_order, shipment=full_shipment)
        restored = EnrichedOrder.from_dict(enriched.to_dict())

        assert restored.order_id == "1001"
        assert restored.shipment == full_shipment
        assert restored.freight == enriched.freight


class TestSummary:

    def test_totals(self):
        summary = SyncSummary(
            synced_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
            request=SyncRequest(user_id="u1", quick_mode=True),
            accounts=[
                AccountSyncResult(account_id="a", nickname=None, expected=10, fetched=8, saved=7, errors=1),
                AccountSyncResult(account_id="b", nickname="B", expected=5, fetched=5, saved=5, duplicates=2),
            ],
        )

        data = summary.to_dict()

        assert data["totals"] == {"expected": 15, "fetched": 13, "saved": 12, "errors": 1, "duplicates": 2}
        assert data["quick_mode"] is True
        assert data["accounts"][1]["nickname"] == "B"

    def test_window_span(self):
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert SyncWindow(start, start + timedelta(days=2)).span_days == 2
        assert SyncWindow(start, None).span_days == float("inf")


class TestTimeBudget:

    def test_expiry_with_margin(self):
        now = [100.0]
        budget = TimeBudget(30, clock=lambda: now[0])

        now[0] = 120.0
        assert not budget.expired()
        assert budget.expired(margin=10)
        assert budget.remaining == 10

        now[0] = 131.0
        assert budget.expired()
        assert budget.remaining == 0.0
