"""
Unit tests for ordersync/resilience.py

Requests are served by httpx.MockTransport; backoff sleeps are mocked.
"""
from typing import List
from unittest.mock import AsyncMock

import httpx
import pytest

from ordersync.exceptions import MarketplaceConnectionError
from ordersync.resilience import RateLimiter, RetryConfig, backoff_delay, is_retryable_status, send_with_retry


def scripted_client(statuses: List[int]) -> httpx.AsyncClient:
    """Client answering with the given statuses in order, repeating the last."""
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        index = min(calls["n"], len(statuses) - 1)
        calls["n"] += 1
        return httpx.Response(statuses[index], json={"ok": statuses[index] < 400})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.test")
    client.calls = calls
    return client


class TestBackoff:

    def test_exponential_without_jitter(self):
        config = RetryConfig(base_delay=1.0, exponential_base=2.0, jitter=1.0)
        delays = [backoff_delay(attempt, config, rand=lambda: 0.0) for attempt in range(3)]
        assert delays == [1.0, 2.0, 4.0]

    def test_jitter_is_added(self):
        config = RetryConfig(base_delay=1.0, jitter=1.0)
        assert backoff_delay(0, config, rand=lambda: 0.5) == 1.5

    def test_retryable_statuses(self):
        for status in (429, 500, 502, 503, 504):
            assert is_retryable_status(status)
        for status in (400, 401, 403, 404):
            assert not is_retryable_status(status)


class TestSendWithRetry:

    @pytest.mark.asyncio
    async def test_retries_transient_status_until_success(self):
        client = scripted_client([503, 503, 200])
        sleep = AsyncMock()
        notify = AsyncMock()

        response = await send_with_retry(
            lambda: client.get("/orders"),
            config=RetryConfig(max_attempts=3),
            notify=notify,
            sleep=sleep,
        )

        assert response.status_code == 200
        assert client.calls["n"] == 3
        assert sleep.await_count == 2
        # Only the first retry warns
        notify.assert_awaited_once()
        assert notify.await_args.args[1] == "503"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_auth_errors_return_immediately(self):
        client = scripted_client([401, 200])
        sleep = AsyncMock()
        notify = AsyncMock()

        response = await send_with_retry(lambda: client.get("/orders"), notify=notify, sleep=sleep)

        assert response.status_code == 401
        assert client.calls["n"] == 1
        sleep.assert_not_awaited()
        notify.assert_awaited_once()
        assert notify.await_args.args[1] == "401"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_non_retryable_status_is_returned(self):
        client = scripted_client([404])
        sleep = AsyncMock()

        response = await send_with_retry(lambda: client.get("/orders"), sleep=sleep)

        assert response.status_code == 404
        assert client.calls["n"] == 1
        sleep.assert_not_awaited()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_returns_last_response_when_attempts_exhausted(self):
        client = scripted_client([500])
        sleep = AsyncMock()

        response = await send_with_retry(
            lambda: client.get("/orders"),
            config=RetryConfig(max_attempts=3),
            sleep=sleep,
        )

        assert response.status_code == 500
        assert client.calls["n"] == 3
        assert sleep.await_count == 2
        await client.aclose()

    @pytest.mark.asyncio
    async def test_network_errors_raise_after_last_attempt(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.test")
        sleep = AsyncMock()
        notify = AsyncMock()

        with pytest.raises(MarketplaceConnectionError) as exc_info:
            await send_with_retry(
                lambda: client.get("/orders"),
                config=RetryConfig(max_attempts=3),
                notify=notify,
                sleep=sleep,
            )

        assert exc_info.value.attempts == 3
        assert sleep.await_count == 2
        # First retry warning plus the final failure
        assert notify.await_count == 2
        assert all(call.args[1] == "NETWORK_ERROR" for call in notify.await_args_list)
        await client.aclose()


class TestRateLimiter:

    @pytest.mark.asyncio
    async def test_burst_is_available_immediately(self):
        sleep = AsyncMock()
        limiter = RateLimiter(rate=1.0, burst=3, clock=lambda: 0.0, sleep=sleep)
        for _ in range(3):
            await limiter.acquire()
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_waiters_past_burst_are_spaced_by_rate(self):
        sleep = AsyncMock()
        limiter = RateLimiter(rate=2.0, burst=2, clock=lambda: 0.0, sleep=sleep)
        for _ in range(4):
            await limiter.acquire()
        assert [call.args[0] for call in sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_tokens_refill_with_elapsed_time(self):
        now = {"t": 0.0}
        sleep = AsyncMock()
        limiter = RateLimiter(rate=2.0, burst=2, clock=lambda: now["t"], sleep=sleep)
        for _ in range(3):
            await limiter.acquire()
        now["t"] = 10.0
        await limiter.acquire()
        await limiter.acquire()
        # Only the third call, made at t=0, had to wait
        assert sleep.await_count == 1
