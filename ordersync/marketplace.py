"""
Async HTTP client for the marketplace API.

Every request goes through resilience.send_with_retry, so callers only see
final responses. The client maps them onto page results and raises for
credential rejections.

Usage:
    async with MarketplaceClient(notify=reporter.notify) as client:
        page = await client.search_orders(account, offset=0, limit=50)
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from ordersync.config import config
from ordersync.exceptions import CredentialRejectedError, MarketplaceDataError
from ordersync.models import Account, SyncWindow, format_timestamp
from ordersync.observability import Timer, get_correlation_id, get_logger
from ordersync.resilience import (
    FATAL_STATUSES,
    Notifier,
    RateLimiter,
    RetryConfig,
    send_with_retry,
)

logger = get_logger(__name__)


@dataclass
class OrdersPage:
    """One page of the order search endpoint."""
    offset: int
    status_code: int
    orders: List[Dict[str, Any]] = field(default_factory=list)
    total: Optional[int] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def hit_ceiling(self) -> bool:
        """HTTP 400 is how the upstream refuses offsets past its ceiling."""
        return self.status_code == 400


class MarketplaceClient:
    """
    Marketplace API client bound to one run.

    Args:
        base_url: API root (defaults to config)
        timeout: Per-request timeout in seconds
        retry: Retry budget for every request
        notify: Warning sink for retry/auth problems
        transport: Optional httpx transport (tests use httpx.MockTransport)
        rate_limiter: Optional token bucket shared by all requests
        sleep: Backoff sleep, injectable for tests
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        retry: Optional[RetryConfig] = None,
        notify: Optional[Notifier] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = (base_url or config.marketplace.base_url).rstrip("/")
        self.timeout = timeout or config.marketplace.request_timeout
        self.retry = retry or RetryConfig.from_settings(config.retry)
        self.notify = notify
        self.rate_limiter = rate_limiter
        if self.rate_limiter is None and config.marketplace.rate_limit > 0:
            self.rate_limiter = RateLimiter(
                rate=config.marketplace.rate_limit,
                burst=config.marketplace.rate_limit_burst,
            )
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
            )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "MarketplaceClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _send(
        self,
        method: str,
        url: str,
        *,
        describe: str,
        token: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        if self._client is None:
            await self.connect()

        request_headers = dict(headers or {})
        if token:
            request_headers["Authorization"] = f"Bearer {token}"
        correlation_id = get_correlation_id()
        if correlation_id:
            request_headers["X-Request-ID"] = correlation_id

        async def send() -> httpx.Response:
            if self.rate_limiter is not None:
                await self.rate_limiter.acquire()
            return await self._client.request(
                method, url, params=params, data=data, headers=request_headers
            )

        with Timer(describe, logger):
            return await send_with_retry(
                send,
                config=self.retry,
                describe=describe,
                notify=self.notify,
                sleep=self._sleep,
            )

    # ═══════════════════════════════════════════════════════════════════════════
    # ORDERS
    # ═══════════════════════════════════════════════════════════════════════════

    async def search_orders(
        self,
        account: Account,
        *,
        offset: int = 0,
        limit: int = 50,
        window: Optional[SyncWindow] = None,
    ) -> OrdersPage:
        """
        Fetch one page of the seller's orders, newest first.

        Raises:
            CredentialRejectedError: On 401/403
            MarketplaceDataError: On a 2xx body without a results list
            MarketplaceConnectionError: When network retries are exhausted
        """
        params: Dict[str, Any] = {
            "seller": account.seller_id,
            "sort": "date_desc",
            "limit": limit,
            "offset": offset,
        }
        if window is not None and window.date_from is not None:
            params["order.date_created.from"] = format_timestamp(window.date_from)
        if window is not None and window.date_to is not None:
            params["order.date_created.to"] = format_timestamp(window.date_to)

        response = await self._send(
            "GET",
            "/orders/search",
            describe=f"orders offset={offset}",
            token=account.access_token,
            params=params,
        )

        if response.status_code in FATAL_STATUSES:
            raise CredentialRejectedError(account.id, response.status_code)
        if not response.is_success:
            return OrdersPage(offset=offset, status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError as e:
            raise MarketplaceDataError("Order search returned invalid JSON", expected="object", got=str(e))

        results = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(results, list):
            raise MarketplaceDataError(
                "Order search response has no results list",
                expected="list",
                got=type(results).__name__,
            )

        paging = payload.get("paging") or {}
        total = paging.get("total")
        return OrdersPage(
            offset=offset,
            status_code=response.status_code,
            orders=[o for o in results if isinstance(o, dict)],
            total=int(total) if isinstance(total, (int, float)) else None,
        )

    async def count_orders(self, account: Account, window: Optional[SyncWindow] = None) -> Optional[int]:
        """Total orders in a window via a limit=1 probe; None when the probe fails."""
        page = await self.search_orders(account, offset=0, limit=1, window=window)
        if not page.ok:
            return None
        return page.total

    # ═══════════════════════════════════════════════════════════════════════════
    # SHIPMENTS
    # ═══════════════════════════════════════════════════════════════════════════

    async def get_shipment(self, account: Account, shipment_id: str) -> Optional[Dict[str, Any]]:
        """Shipment detail, or None when the upstream does not return one."""
        response = await self._send(
            "GET",
            f"/shipments/{shipment_id}",
            describe=f"shipment {shipment_id}",
            token=account.access_token,
            headers={"x-format-new": "true"},
        )
        if not response.is_success:
            return None
        try:
            payload = response.json()
        except ValueError:
            return None
        return payload if isinstance(payload, dict) else None

    # ═══════════════════════════════════════════════════════════════════════════
    # OAUTH
    # ═══════════════════════════════════════════════════════════════════════════

    async def exchange_refresh_token(
        self,
        refresh_token: str,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        oauth_url: Optional[str] = None,
    ) -> httpx.Response:
        """POST the refresh_token grant. The raw response is returned to the caller."""
        return await self._send(
            "POST",
            oauth_url or config.marketplace.oauth_url,
            describe="oauth refresh",
            data={
                "grant_type": "refresh_token",
                "client_id": client_id or config.marketplace.client_id,
                "client_secret": client_secret or config.marketplace.client_secret,
                "refresh_token": refresh_token,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
