"""
OAuth credential refresh for seller accounts.

OAuthCredentialRefresher exchanges the refresh token when the access token
is close to expiry and persists the new pair. RefreshCoordinator guarantees a
single in-flight refresh per account: concurrent callers await the same task.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional

from ordersync.exceptions import CredentialRefreshError, MarketplaceError
from ordersync.marketplace import MarketplaceClient
from ordersync.models import Account
from ordersync.money import to_finite_number
from ordersync.observability import get_logger

logger = get_logger(__name__)

# Tokens valid for longer than this are left alone
REFRESH_LEEWAY = timedelta(hours=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OAuthCredentialRefresher:
    """
    Refreshes and persists an account's access token.

    Args:
        client: Marketplace client used for the token exchange
        store: Store with save_account()
        attempts: Exchange attempts before giving up
        sleep: Backoff sleep, injectable for tests
        now: Clock, injectable for tests
    """

    RETRY_DELAY_BASE = 1.0

    def __init__(
        self,
        client: MarketplaceClient,
        store,
        attempts: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.client = client
        self.store = store
        self.attempts = attempts
        self.sleep = sleep
        self.now = now

    def needs_refresh(self, account: Account) -> bool:
        if account.expires_at is None:
            return True
        return account.expires_at <= self.now() + REFRESH_LEEWAY

    async def refresh(self, account: Account) -> Account:
        """
        Return the account with a usable access token.

        Raises:
            CredentialRefreshError: All exchange attempts failed
        """
        if not self.needs_refresh(account):
            return account

        logger.info(f"Refreshing token for {account.label}", extra={"account_id": account.id})

        last_reason = "unknown"
        last_status: Optional[int] = None
        for attempt in range(self.attempts):
            try:
                return await self._exchange(account)
            except CredentialRefreshError as e:
                last_reason, last_status = e.reason, e.status_code
            except MarketplaceError as e:
                last_reason, last_status = e.message, None

            logger.warning(
                f"Token refresh attempt {attempt + 1}/{self.attempts} failed for "
                f"{account.label}: {last_reason}",
                extra={"account_id": account.id},
            )
            if attempt < self.attempts - 1:
                await self.sleep(self.RETRY_DELAY_BASE * (2 ** attempt))

        raise CredentialRefreshError(account.id, last_reason, last_status)

    async def _exchange(self, account: Account) -> Account:
        response = await self.client.exchange_refresh_token(account.refresh_token)
        if not response.is_success:
            raise CredentialRefreshError(account.id, response.text[:200], response.status_code)

        try:
            data = response.json()
        except ValueError:
            raise CredentialRefreshError(account.id, "token response is not JSON", response.status_code)

        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            raise CredentialRefreshError(account.id, "token response has no access_token", response.status_code)

        account.access_token = access_token
        account.refresh_token = data.get("refresh_token") or account.refresh_token
        expires_in = to_finite_number(data.get("expires_in")) or 0.0
        account.expires_at = self.now() + timedelta(seconds=expires_in)
        try:
            await self.store.save_account(account)
        except Exception as e:
            raise CredentialRefreshError(account.id, f"refreshed token could not be saved: {e}") from e

        logger.info(f"Token refreshed for {account.label}", extra={"account_id": account.id})
        return account


class RefreshCoordinator:
    """
    One in-flight refresh per account id.

    The map of running tasks belongs to this instance.
    """

    def __init__(self, refresher: OAuthCredentialRefresher):
        self.refresher = refresher
        self._in_flight: Dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def refresh(self, account: Account) -> Account:
        task = self._in_flight.get(account.id)
        if task is None:
            task = asyncio.create_task(self._run(account))
            self._in_flight[account.id] = task
        else:
            logger.debug(f"Awaiting in-flight refresh for {account.label}")
        # A cancelled waiter must not cancel the refresh others are awaiting
        return await asyncio.shield(task)

    async def _run(self, account: Account) -> Account:
        try:
            return await self.refresher.refresh(account)
        finally:
            self._in_flight.pop(account.id, None)

