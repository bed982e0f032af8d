"""
Sync service: runs one user's sync across their seller accounts.

For each account, strictly one after another:
1. Refresh the access token (one in-flight refresh per account)
2. Fetch recent orders, then backfill history, within the time budget
3. Persist directly, or through the Redis queue and its worker

When any account was cut short, or fewer orders were fetched than the
upstream reported, a continuation with the same parameters is scheduled and
the client channel stays open for it.

Features:
- Per-run correlation id on every log line and outbound request
- Account failures are isolated; the run always returns a SyncSummary
- Bounded chain of automatic continuations per user
"""
import asyncio
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Set

from ordersync.config import SyncConfig, config
from ordersync.credentials import OAuthCredentialRefresher, RefreshCoordinator
from ordersync.duckdb_store import DuckDBStore, get_store
from ordersync.events import EventBus, ProgressReporter
from ordersync.exceptions import CredentialRefreshError, CredentialRejectedError
from ordersync.fetcher import AccountFetcher
from ordersync.marketplace import MarketplaceClient
from ordersync.models import Account, AccountSyncResult, PersistResult, SyncRequest, SyncSummary
from ordersync.observability import Timer, correlation_context, get_logger, log_context, metrics
from ordersync.order_queue import OrderQueue, get_order_queue
from ordersync.persistence import OrderPersistenceEngine, dedupe_orders
from ordersync.resilience import Notifier
from ordersync.scheduler import SyncScheduler, get_scheduler
from ordersync.worker import DrainResult, QueueWorker

logger = get_logger(__name__)

ClientFactory = Callable[[Optional[Notifier]], MarketplaceClient]


def _default_client_factory(notify: Optional[Notifier]) -> MarketplaceClient:
    return MarketplaceClient(notify=notify)


class SyncService:
    """
    Orchestrates sync runs.

    Args:
        store: Connected DuckDBStore
        queue: Optional order queue; None or disconnected means direct persistence
        scheduler: Optional scheduler used for continuations
        client_factory: Builds the per-run marketplace client from a notifier
        refresher: Credential refresher (defaults to OAuth against the marketplace)
        bus: Event bus for progress events
        clock: Monotonic clock for the fetch budget, injectable for tests
    """

    def __init__(
        self,
        store: DuckDBStore,
        *,
        queue: Optional[OrderQueue] = None,
        scheduler: Optional[SyncScheduler] = None,
        client_factory: ClientFactory = _default_client_factory,
        refresher: Optional[OAuthCredentialRefresher] = None,
        bus: Optional[EventBus] = None,
        sync_settings: Optional[SyncConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.queue = queue
        self.scheduler = scheduler
        self.client_factory = client_factory
        self.bus = bus
        self.settings = sync_settings or config.sync
        self.clock = clock

        self._auth_client: Optional[MarketplaceClient] = None
        if refresher is None:
            self._auth_client = client_factory(None)
            refresher = OAuthCredentialRefresher(self._auth_client, store)
        self._refreshes = RefreshCoordinator(refresher)
        self._continuations: Dict[str, int] = {}
        self._background: Set[asyncio.Task] = set()

    # ═══════════════════════════════════════════════════════════════════════════
    # RUN
    # ═══════════════════════════════════════════════════════════════════════════

    async def run(self, request: SyncRequest, *, continuation: bool = False) -> SyncSummary:
        """
        Sync every requested account of a user.

        Never raises for account-level failures; they are reported in the
        summary and as warning events.
        """
        with correlation_context(), log_context(user_id=request.user_id):
            metrics.mark_run()
            reporter = ProgressReporter(request.user_id, bus=self.bus)
            summary = SyncSummary(synced_at=datetime.now(timezone.utc), request=request)
            if not continuation:
                self._continuations.pop(request.user_id, None)

            accounts = await self.store.list_accounts(request.user_id, request.account_ids)
            logger.info(
                f"Sync started for user {request.user_id}: {len(accounts)} accounts",
                extra=request.to_dict(),
            )
            if not accounts:
                await reporter.warning("No accounts to sync", error_code="NO_ACCOUNTS")
                await reporter.close()
                return summary

            await reporter.start(
                f"Syncing {len(accounts)} account(s)",
                total=len(accounts),
                full_sync=request.full_sync,
                quick_mode=request.quick_mode,
            )

            with Timer(f"sync user {request.user_id}", logger, warn_ms=60000):
                async with self.client_factory(reporter.notify) as client:
                    for index, account in enumerate(accounts, start=1):
                        await reporter.progress(
                            f"Syncing {account.label} ({index}/{len(accounts)})",
                            current=index,
                            total=len(accounts),
                            account_id=account.id,
                        )
                        result = await self._sync_account(client, account, request, reporter, summary)
                        summary.accounts.append(result)

            any_forced_stop = any(a.forced_stop for a in summary.accounts)
            incomplete = summary.total_fetched < summary.total_expected
            summary.more_work_remains = any_forced_stop or incomplete

            await reporter.complete(
                f"Sync finished: {summary.total_saved} orders saved",
                current=summary.total_fetched,
                total=summary.total_expected,
                summary=summary.to_dict()["totals"],
            )

            if summary.more_work_remains:
                summary.continuation_scheduled = await self._schedule_continuation(request, reporter)
            else:
                self._continuations.pop(request.user_id, None)

            if not summary.continuation_scheduled:
                await reporter.close()

            logger.info(
                f"Sync finished for user {request.user_id}: "
                f"{summary.total_saved}/{summary.total_expected} saved",
                extra={
                    "user_id": request.user_id,
                    "more_work_remains": summary.more_work_remains,
                    "continuation_scheduled": summary.continuation_scheduled,
                },
            )
            return summary

    async def _sync_account(
        self,
        client: MarketplaceClient,
        account: Account,
        request: SyncRequest,
        reporter: ProgressReporter,
        summary: SyncSummary,
    ) -> AccountSyncResult:
        result = AccountSyncResult(account_id=account.id, nickname=account.nickname)

        try:
            account = await self._refreshes.refresh(account)
        except CredentialRefreshError as e:
            message = f"Token refresh failed for {account.label}: {e.reason}. Continuing with next account"
            logger.warning(message, extra={"account_id": account.id})
            self._record_account_error(result, summary, account, message)
            await reporter.warning(message, error_code="TOKEN_REFRESH_FAILED", account_id=account.id)
            return result
        except Exception as e:
            logger.exception(f"Token refresh crashed for {account.label}: {e}", extra={"account_id": account.id})
            message = f"Token refresh failed for {account.label}: {e}. Continuing with next account"
            self._record_account_error(result, summary, account, message)
            await reporter.warning(message, error_code="TOKEN_REFRESH_FAILED", account_id=account.id)
            return result

        try:
            fetcher = AccountFetcher(client, self.store, reporter, sync_settings=self.settings, clock=self.clock)
            fetched = await fetcher.fetch(
                account, full_sync=request.full_sync, quick_mode=request.quick_mode
            )
            result.expected = fetched.expected_total
            result.fetched = len(fetched.orders)
            result.forced_stop = fetched.forced_stop
            result.logistic_stats = fetched.logistic_stats
            metrics.incr("orders_fetched", result.fetched)

            persisted = await self._store_orders(account, request.user_id, fetched.orders, reporter, result)
            result.saved = persisted.saved
            result.errors = persisted.errors
            result.duplicates = persisted.duplicates

            if persisted.errors:
                await reporter.warning(
                    f"{persisted.errors} orders of {account.label} could not be saved",
                    error_code="SAVE_ERRORS",
                    account_id=account.id,
                )

            await self._report_remaining(account, fetched.account_total, reporter)

        except CredentialRejectedError as e:
            message = f"Access token of {account.label} was rejected (HTTP {e.status_code})"
            self._record_account_error(result, summary, account, message)
            await reporter.warning(message, error_code="ACCOUNT_PROCESSING_ERROR", account_id=account.id)
        except Exception as e:
            logger.exception(f"Account {account.label} failed: {e}", extra={"account_id": account.id})
            message = f"Error syncing {account.label}: {e}. Continuing with next account"
            self._record_account_error(result, summary, account, message)
            await reporter.warning(message, error_code="ACCOUNT_PROCESSING_ERROR", account_id=account.id)

        return result

    @staticmethod
    def _record_account_error(
        result: AccountSyncResult,
        summary: SyncSummary,
        account: Account,
        message: str,
    ) -> None:
        result.error = message
        summary.errors.append({"account_id": account.id, "error": message})

    async def _store_orders(
        self,
        account: Account,
        user_id: str,
        orders,
        reporter: ProgressReporter,
        result: AccountSyncResult,
    ) -> PersistResult:
        """Queue then drain when the queue is up, else persist directly."""
        engine = OrderPersistenceEngine(self.store, reporter)
        if not orders:
            return PersistResult()

        if self.queue is not None and self.queue.is_connected:
            # Worker batches are deduplicated separately, so drop repeats across the whole set here
            unique, duplicates, invalid = dedupe_orders(orders)
            enqueued = await self.queue.try_enqueue(user_id, account.id, unique)
            if enqueued.success:
                result.queued = True
                drained = await QueueWorker(self.queue, engine, reporter).process_all(user_id)
                return PersistResult(
                    saved=drained.saved,
                    errors=drained.errors,
                    duplicates=drained.duplicates + duplicates,
                    invalid=invalid,
                )
            logger.warning(
                f"Enqueue failed for {account.label}, saving directly",
                extra={"account_id": account.id},
            )

        return await engine.persist(user_id, orders)

    async def _report_remaining(
        self,
        account: Account,
        account_total: Optional[int],
        reporter: ProgressReporter,
    ) -> None:
        if not account_total:
            return
        stored = await self.store.count_orders(account_id=account.id)
        if stored < account_total:
            await reporter.warning(
                f"{account.label}: {account_total - stored} orders still to download "
                f"({stored} of {account_total} stored)",
                error_code="REMAINING_ORDERS",
                account_id=account.id,
                current=stored,
                total=account_total,
            )

    # ═══════════════════════════════════════════════════════════════════════════
    # CONTINUATIONS
    # ═══════════════════════════════════════════════════════════════════════════

    async def _schedule_continuation(self, request: SyncRequest, reporter: ProgressReporter) -> bool:
        """Schedule a follow-up run without waiting for it."""
        count = self._continuations.get(request.user_id, 0)
        if count >= self.settings.max_continuations:
            logger.warning(
                f"Continuation limit ({self.settings.max_continuations}) reached for user {request.user_id}",
                extra={"user_id": request.user_id},
            )
            await reporter.warning(
                "Sync paused: too many consecutive continuations, run it again to resume",
                error_code="CONTINUATION_LIMIT",
            )
            self._continuations.pop(request.user_id, None)
            return False

        self._continuations[request.user_id] = count + 1
        metrics.incr("continuations")
        await reporter.continuing(
            "More orders remain, continuing automatically",
            continuation=count + 1,
        )

        delay = self.settings.continuation_delay_seconds
        if self.scheduler is not None and self.scheduler.schedule_continuation(request, delay):
            return True

        task = asyncio.create_task(self._continue_later(request, delay))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return True

    async def _continue_later(self, request: SyncRequest, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.run(request, continuation=True)
        except Exception as e:
            logger.exception(f"Continuation for user {request.user_id} failed: {e}")

    @property
    def pending_continuations(self) -> int:
        return len(self._background)

    async def wait_for_continuations(self) -> None:
        """Block until the in-process continuation chain has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ═══════════════════════════════════════════════════════════════════════════
    # QUEUE
    # ═══════════════════════════════════════════════════════════════════════════

    async def drain_queue(self, user_id: str, batch_size: Optional[int] = None) -> DrainResult:
        """Persist whatever is queued for a user."""
        if self.queue is None or not self.queue.is_connected:
            return DrainResult()
        reporter = ProgressReporter(user_id, bus=self.bus)
        worker = QueueWorker(self.queue, OrderPersistenceEngine(self.store, reporter), reporter)
        return await worker.process_all(user_id, batch_size)

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._auth_client is not None:
            await self._auth_client.close()


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_sync_service: Optional[SyncService] = None


async def get_sync_service() -> SyncService:
    """Get the singleton service wired to the store, queue and scheduler."""
    global _sync_service
    if _sync_service is None:
        store = await get_store()
        queue = await get_order_queue() if config.queue.enabled else None
        _sync_service = SyncService(store, queue=queue, scheduler=get_scheduler())
    return _sync_service


async def close_sync_service() -> None:
    global _sync_service
    if _sync_service is not None:
        await _sync_service.close()
        _sync_service = None
