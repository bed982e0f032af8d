"""
Unit tests for ordersync/period_splitter.py
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from ordersync.budget import TimeBudget
from ordersync.marketplace import OrdersPage
from ordersync.models import SyncWindow, WindowMode
from ordersync.period_splitter import ONE_DAY, ONE_MS, PeriodSplitter, split_window

from conftest import make_enriched

JAN_1 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def window(days: float, start: datetime = JAN_1) -> SyncWindow:
    return SyncWindow(start, start + timedelta(days=days) - ONE_MS, WindowMode.HISTORICAL)


def make_splitter(client, reporter, **kwargs) -> PeriodSplitter:
    enricher = MagicMock()
    enricher.enrich = AsyncMock(
        side_effect=lambda account, orders, stats=None: [make_enriched(order=o) for o in orders]
    )
    return PeriodSplitter(client, enricher, reporter, **kwargs)


class TestSplitWindow:

    def test_pieces_are_contiguous_and_cover_the_window(self):
        month = window(31)
        pieces = split_window(month, timedelta(days=7))

        assert len(pieces) == 5
        assert pieces[0].date_from == month.date_from
        assert pieces[-1].date_to == month.date_to
        for earlier, later in zip(pieces, pieces[1:]):
            assert later.date_from == earlier.date_to + ONE_MS
            assert earlier.date_from < earlier.date_to

    def test_pieces_keep_the_mode(self):
        pieces = split_window(window(14), timedelta(days=7))
        assert all(p.mode == WindowMode.HISTORICAL for p in pieces)

    def test_unbounded_window_cannot_be_split(self):
        with pytest.raises(ValueError):
            split_window(SyncWindow(JAN_1, None), timedelta(days=7))


class TestSubRangeWidth:

    def test_dense_and_sparse_widths(self, reporter):
        splitter = make_splitter(MagicMock(), reporter, dense_threshold=50000)
        month = window(31)
        assert splitter.sub_range_width(month, 60000) == timedelta(days=7)
        assert splitter.sub_range_width(month, 20000) == timedelta(days=14)

    def test_narrow_window_is_halved(self, reporter):
        splitter = make_splitter(MagicMock(), reporter)
        ten_days = window(10)
        width = splitter.sub_range_width(ten_days, 20000)
        assert width == (ten_days.date_to - ten_days.date_from) / 2

    def test_never_below_one_day(self, reporter):
        splitter = make_splitter(MagicMock(), reporter)
        assert splitter.sub_range_width(window(1.5), 20000) == ONE_DAY

    def test_should_split(self, reporter):
        splitter = make_splitter(MagicMock(), reporter, ceiling=100)
        assert splitter.should_split(window(30), 101)
        assert not splitter.should_split(window(30), 100)
        assert not splitter.should_split(window(30), None)
        assert not splitter.should_split(window(1), 5000)


class TestPeriodSplitterFetch:

    @pytest.mark.asyncio
    async def test_splits_large_range_chronologically(self, account, reporter):
        async def count_orders(acc, win):
            return 500 if win.span_days > 20 else 60

        async def search_orders(acc, *, offset, limit, window):
            orders = [
                {"id": f"{window.date_from:%m%d}-{offset + i}"}
                for i in range(min(limit, 60 - offset))
            ]
            return OrdersPage(offset=offset, status_code=200, orders=orders, total=60)

        client = MagicMock()
        client.count_orders = AsyncMock(side_effect=count_orders)
        client.search_orders = AsyncMock(side_effect=search_orders)
        splitter = make_splitter(client, reporter, ceiling=100, page_limit=50)

        result = await splitter.fetch(account, window(28), TimeBudget(1000, clock=lambda: 0.0))

        assert result.probed_total == 500
        assert not result.truncated
        assert len(result.orders) == 120
        assert len(result.windows) == 2
        older, newer = result.windows
        assert newer.date_from > older.date_from
        assert older.date_to + ONE_MS == newer.date_from
        assert len({o.order_id for o in result.orders}) == 120

    @pytest.mark.asyncio
    async def test_newest_first_order(self, account, reporter):
        client = MagicMock()
        client.count_orders = AsyncMock(side_effect=lambda acc, win: 500 if win.span_days > 20 else 0)
        splitter = make_splitter(client, reporter, ceiling=100, newest_first=True)

        result = await splitter.fetch(account, window(28), TimeBudget(1000, clock=lambda: 0.0))

        first, second = result.windows
        assert first.date_from > second.date_from
        assert result.orders == []

    @pytest.mark.asyncio
    async def test_stops_when_budget_expired(self, account, reporter):
        client = MagicMock()
        client.count_orders = AsyncMock(return_value=10)
        splitter = make_splitter(client, reporter)
        clock = iter([0.0] + [100.0] * 10)

        result = await splitter.fetch(account, window(28), TimeBudget(30, clock=lambda: next(clock)))

        assert result.truncated
        assert result.orders == []
        client.count_orders.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_page_is_counted(self, account, reporter, bus):
        client = MagicMock()
        client.count_orders = AsyncMock(return_value=10)
        client.search_orders = AsyncMock(return_value=OrdersPage(offset=0, status_code=500))
        splitter = make_splitter(client, reporter)

        result = await splitter.fetch(account, window(5), TimeBudget(1000, clock=lambda: 0.0))

        assert result.pages_failed == 1
        assert "500" in bus.warnings()
