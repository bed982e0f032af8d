"""
Unit tests for ordersync/credentials.py
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from ordersync.credentials import OAuthCredentialRefresher, RefreshCoordinator
from ordersync.exceptions import CredentialRefreshError, QueryTimeoutError
from ordersync.models import Account

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def expiring_account(expires_in: timedelta = timedelta(minutes=10)) -> Account:
    return Account(
        id="acc-1",
        user_id="user-1",
        seller_id="777",
        access_token="old-token",
        refresh_token="old-refresh",
        expires_at=NOW + expires_in,
    )


def make_refresher(*responses: httpx.Response) -> OAuthCredentialRefresher:
    client = MagicMock()
    client.exchange_refresh_token = AsyncMock(side_effect=list(responses))
    store = MagicMock()
    store.save_account = AsyncMock()
    return OAuthCredentialRefresher(client, store, attempts=3, sleep=AsyncMock(), now=lambda: NOW)


class TestOAuthCredentialRefresher:

    def test_needs_refresh(self):
        refresher = make_refresher()
        assert refresher.needs_refresh(expiring_account(timedelta(minutes=30)))
        assert not refresher.needs_refresh(expiring_account(timedelta(hours=2)))
        assert refresher.needs_refresh(Account(id="a", user_id="u", seller_id="s"))

    @pytest.mark.asyncio
    async def test_valid_token_is_left_alone(self):
        refresher = make_refresher()
        account = expiring_account(timedelta(hours=5))

        assert await refresher.refresh(account) is account
        refresher.client.exchange_refresh_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_successful_refresh_persists_tokens(self):
        refresher = make_refresher(httpx.Response(200, json={
            "access_token": "new-token",
            "refresh_token": "new-refresh",
            "expires_in": 21600,
        }))

        account = await refresher.refresh(expiring_account())

        assert account.access_token == "new-token"
        assert account.refresh_token == "new-refresh"
        assert account.expires_at == NOW + timedelta(seconds=21600)
        refresher.store.save_account.assert_awaited_once_with(account)

    @pytest.mark.asyncio
    async def test_retries_then_raises(self):
        refresher = make_refresher(*[httpx.Response(400, text="invalid_grant")] * 3)

        with pytest.raises(CredentialRefreshError) as exc_info:
            await refresher.refresh(expiring_account())

        assert exc_info.value.status_code == 400
        assert "invalid_grant" in exc_info.value.reason
        assert refresher.client.exchange_refresh_token.await_count == 3
        assert [c.args[0] for c in refresher.sleep.await_args_list] == [1.0, 2.0]
        refresher.store.save_account.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_response_without_token_is_a_failure(self):
        refresher = make_refresher(
            httpx.Response(200, json={"error": "nope"}),
            httpx.Response(200, text="not json"),
            httpx.Response(200, json={"access_token": "recovered", "expires_in": 60}),
        )

        account = await refresher.refresh(expiring_account())

        assert account.access_token == "recovered"
        # Missing refresh token in the response keeps the old one
        assert account.refresh_token == "old-refresh"

    @pytest.mark.asyncio
    async def test_save_failure_becomes_refresh_error(self):
        refresher = make_refresher(*[httpx.Response(200, json={"access_token": "new", "expires_in": 60})] * 3)
        refresher.store.save_account.side_effect = QueryTimeoutError("store connection", 30.0)

        with pytest.raises(CredentialRefreshError) as exc_info:
            await refresher.refresh(Account(id="acc-1", user_id="u", seller_id="s"))

        assert "could not be saved" in exc_info.value.reason
        assert refresher.store.save_account.await_count == 3

    @pytest.mark.asyncio
    async def test_unparseable_expires_in_counts_as_expired(self):
        refresher = make_refresher(httpx.Response(200, json={"access_token": "new", "expires_in": "soon"}))

        account = await refresher.refresh(expiring_account())

        assert account.access_token == "new"
        assert account.expires_at == NOW


class TestRefreshCoordinator:

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_exchange(self):
        gate = asyncio.Event()
        refresher = MagicMock()

        async def slow_refresh(account):
            await gate.wait()
            account.access_token = "fresh"
            return account

        refresher.refresh = AsyncMock(side_effect=slow_refresh)
        coordinator = RefreshCoordinator(refresher)
        account = expiring_account()

        pending = asyncio.ensure_future(asyncio.gather(
            coordinator.refresh(account),
            coordinator.refresh(account),
            coordinator.refresh(account),
        ))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert coordinator.in_flight == 1

        gate.set()
        results = await pending

        assert refresher.refresh.await_count == 1
        assert all(r.access_token == "fresh" for r in results)
        assert coordinator.in_flight == 0

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter(self):
        refresher = MagicMock()
        refresher.refresh = AsyncMock(side_effect=CredentialRefreshError("acc-1", "revoked", 400))
        coordinator = RefreshCoordinator(refresher)
        account = expiring_account()

        results = await asyncio.gather(
            coordinator.refresh(account),
            coordinator.refresh(account),
            return_exceptions=True,
        )

        assert all(isinstance(r, CredentialRefreshError) for r in results)
        assert coordinator.in_flight == 0

        # A later call starts a new refresh
        refresher.refresh.side_effect = None
        refresher.refresh.return_value = account
        assert await coordinator.refresh(account) is account
