"""
Integration tests for ordersync/fetcher.py

A FakeMarketplace serves order search through httpx.MockTransport and
advances a fake clock per request, so time budgets are deterministic.
"""
import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from ordersync.config import MarketplaceConfig, SyncConfig
from ordersync.exceptions import CredentialRejectedError
from ordersync.fetcher import AccountFetcher, month_start, previous_month_start
from ordersync.marketplace import MarketplaceClient
from ordersync.persistence import OrderPersistenceEngine
from ordersync.resilience import RetryConfig

from conftest import FakeMarketplace, hourly_orders

NEWEST = datetime(2026, 3, 15, tzinfo=timezone.utc)


def make_client(fake: FakeMarketplace, handler=None) -> MarketplaceClient:
    return MarketplaceClient(
        base_url="https://api.test",
        transport=httpx.MockTransport(handler or fake.handler),
        retry=RetryConfig(max_attempts=1),
        sleep=AsyncMock(),
    )


def make_fetcher(client, store, reporter, fake, page_concurrency=1, **sync_overrides) -> AccountFetcher:
    sync_settings = SyncConfig(**{"time_budget_seconds": 30.0, **sync_overrides})
    marketplace = MarketplaceConfig(
        page_limit=50, page_concurrency=page_concurrency, max_offset=9950, rate_limit=0.0
    )
    return AccountFetcher(
        client,
        store,
        reporter,
        sync_settings=sync_settings,
        marketplace_settings=marketplace,
        clock=fake.clock,
    )


class TestMonthHelpers:

    def test_month_start(self):
        assert month_start(datetime(2026, 3, 15, 10, tzinfo=timezone.utc)) == datetime(2026, 3, 1, tzinfo=timezone.utc)

    def test_previous_month_wraps_year(self):
        assert previous_month_start(datetime(2026, 1, 20, tzinfo=timezone.utc)) == datetime(2025, 12, 1, tzinfo=timezone.utc)


class TestAccountFetcher:

    @pytest.mark.asyncio
    async def test_first_run_fetches_everything_when_time_allows(self, store, reporter, account):
        fake = FakeMarketplace(hourly_orders(120, NEWEST), seconds_per_request=1.0)
        async with make_client(fake) as client:
            result = await make_fetcher(client, store, reporter, fake).fetch(account)

        assert len(result.orders) == 120
        assert result.expected_total == 120
        assert result.account_total == 120
        assert not result.forced_stop
        # Newest first, in upstream order
        assert [o.order_id for o in result.orders[:3]] == ["1", "2", "3"]
        assert result.logistic_stats == {"me2": 120}

    @pytest.mark.asyncio
    async def test_concurrent_pages_completing_out_of_order(self, store, reporter, account):
        fake = FakeMarketplace(hourly_orders(230, NEWEST))
        completed = []

        async def earlier_pages_answer_later(request: httpx.Request) -> httpx.Response:
            offset = int(request.url.params.get("offset", 0))
            await asyncio.sleep(max(0.0, 0.05 - 0.01 * (offset // 50)))
            completed.append(offset)
            return fake.handler(request)

        async with make_client(fake, handler=earlier_pages_answer_later) as client:
            result = await make_fetcher(client, store, reporter, fake, page_concurrency=3).fetch(account)

        assert completed != sorted(completed)
        assert len(result.orders) == 230
        # Reassembled by offset, not by completion order
        assert [o.order_id for o in result.orders] == [str(i) for i in range(1, 231)]
        assert not result.forced_stop
        assert result.pages_failed == 0

    @pytest.mark.asyncio
    async def test_budget_forces_stop(self, store, reporter, account):
        fake = FakeMarketplace(hourly_orders(500, NEWEST), seconds_per_request=10.0)
        async with make_client(fake) as client:
            result = await make_fetcher(client, store, reporter, fake).fetch(account)

        assert result.forced_stop
        assert len(result.orders) == 150
        assert result.expected_total == 500
        assert [o.order_id for o in result.orders] == [str(i) for i in range(1, 151)]

    @pytest.mark.asyncio
    async def test_run_cap_limits_recent_window(self, store, reporter, account):
        fake = FakeMarketplace(hourly_orders(500, NEWEST))
        async with make_client(fake) as client:
            result = await make_fetcher(client, store, reporter, fake, max_orders_per_run=100).fetch(account)

        assert len(result.orders) == 100
        assert result.expected_total == 500
        assert not result.forced_stop

    @pytest.mark.asyncio
    async def test_quick_mode_uses_smaller_cap(self, store, reporter, account):
        fake = FakeMarketplace(hourly_orders(300, NEWEST))
        async with make_client(fake) as client:
            fetcher = make_fetcher(client, store, reporter, fake, quick_max_orders=50)
            result = await fetcher.fetch(account, quick_mode=True)

        assert len(result.orders) == 50

    @pytest.mark.asyncio
    async def test_resumes_until_converged(self, store, reporter, account):
        orders = hourly_orders(500, NEWEST)
        fake = FakeMarketplace(orders, seconds_per_request=1.0)
        engine = OrderPersistenceEngine(store)

        runs = []
        async with make_client(fake) as client:
            fetcher = make_fetcher(client, store, reporter, fake, max_orders_per_run=100)
            for _ in range(10):
                result = await fetcher.fetch(account)
                await engine.persist(account.user_id, result.orders)
                runs.append(result)
                if not result.forced_stop and len(result.orders) >= result.expected_total:
                    break

        assert len(runs) >= 2
        assert runs[-1].history_exhausted
        assert await store.count_orders(account_id=account.id) == 500
        stored_ids = await store.find_existing_order_ids(str(o["id"]) for o in orders)
        assert len(stored_ids) == 500

    @pytest.mark.asyncio
    async def test_incremental_run_uses_overlap_window(self, store, reporter, account):
        fake = FakeMarketplace(hourly_orders(48, NEWEST))
        engine = OrderPersistenceEngine(store)

        async with make_client(fake) as client:
            fetcher = make_fetcher(client, store, reporter, fake)
            first = await fetcher.fetch(account)
            await engine.persist(account.user_id, first.orders)

            fake.orders = hourly_orders(48, NEWEST)
            second = await fetcher.fetch(account)

        # 24h overlap below the newest stored sale, both ends inclusive
        recent_ids = {o.order_id for o in second.orders if int(o.order_id) <= 25}
        assert recent_ids == {str(i) for i in range(1, 26)}
        assert second.account_total == 48

    @pytest.mark.asyncio
    async def test_rejected_credentials_propagate(self, store, reporter, account):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"message": "invalid token"})

        client = MarketplaceClient(
            base_url="https://api.test",
            transport=httpx.MockTransport(handler),
            retry=RetryConfig(max_attempts=1),
        )
        fake = FakeMarketplace([])
        async with client:
            fetcher = make_fetcher(client, store, reporter, fake)
            with pytest.raises(CredentialRejectedError) as exc_info:
                await fetcher.fetch(account)

        assert exc_info.value.status_code == 401
