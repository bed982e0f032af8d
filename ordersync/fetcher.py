"""
Paginated fetch of one account's orders within a fixed time budget.

A fetch has two phases:

1. Recent window: everything created since the newest stored sale (minus an
   overlap buffer), or the whole account on a first run. Pages are requested
   concurrently in increasing offset order.
2. Historical backfill: starting just below the watermark (the oldest stored
   sale), walk back one calendar month at a time through the PeriodSplitter
   until a month comes back empty, the floor date is passed, or time runs out.

When the budget cuts either phase short with orders known to remain, the
result carries forced_stop=True so the caller schedules a continuation.
"""
import asyncio
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, time as dtime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from ordersync.budget import TimeBudget
from ordersync.config import MarketplaceConfig, SyncConfig, config
from ordersync.enrichment import OrderEnricher
from ordersync.events import ProgressReporter
from ordersync.exceptions import CredentialRejectedError, MarketplaceConnectionError, MarketplaceDataError
from ordersync.marketplace import MarketplaceClient
from ordersync.models import Account, AccountFetchResult, EnrichedOrder, SyncWindow, WindowMode
from ordersync.observability import get_logger
from ordersync.period_splitter import ONE_MS, PeriodSplitter

logger = get_logger(__name__)


def month_start(value: datetime) -> datetime:
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def previous_month_start(value: datetime) -> datetime:
    start = month_start(value)
    if start.month == 1:
        return start.replace(year=start.year - 1, month=12)
    return start.replace(month=start.month - 1)


@dataclass
class PageOutcome:
    offset: int
    orders: List[EnrichedOrder] = field(default_factory=list)
    total: Optional[int] = None
    failed: bool = False
    hit_ceiling: bool = False


@dataclass
class PhaseOutcome:
    orders: List[EnrichedOrder] = field(default_factory=list)
    discovered_total: Optional[int] = None
    truncated: bool = False
    pages_failed: int = 0
    exhausted: bool = False


class AccountFetcher:
    """
    Fetches and enriches one account's orders.

    Args:
        client: Marketplace client for this run
        store: Store providing get_latest_sale_at / get_oldest_sale_at
        reporter: Progress sink
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        client: MarketplaceClient,
        store,
        reporter: ProgressReporter,
        *,
        enricher: Optional[OrderEnricher] = None,
        splitter: Optional[PeriodSplitter] = None,
        sync_settings: Optional[SyncConfig] = None,
        marketplace_settings: Optional[MarketplaceConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.store = store
        self.reporter = reporter
        self.settings = sync_settings or config.sync
        self.marketplace = marketplace_settings or config.marketplace
        self.enricher = enricher or OrderEnricher(client, self.marketplace.shipment_batch_size)
        self.splitter = splitter or PeriodSplitter(
            client,
            self.enricher,
            reporter,
            ceiling=self.marketplace.max_offset,
            page_limit=self.marketplace.page_limit,
        )
        self.clock = clock

    async def fetch(
        self,
        account: Account,
        *,
        full_sync: bool = False,
        quick_mode: bool = False,
    ) -> AccountFetchResult:
        """
        Run both phases for one account.

        Raises:
            CredentialRejectedError: The upstream rejected the access token
        """
        budget = TimeBudget(self.settings.time_budget_seconds, self.clock)
        stats: Counter = Counter()
        run_cap = self.settings.quick_max_orders if quick_mode else self.settings.max_orders_per_run

        latest = await self.store.get_latest_sale_at(account.id)
        recent_from = latest - timedelta(hours=self.settings.recent_overlap_hours) if latest else None
        recent_window = SyncWindow(recent_from, None, WindowMode.INITIAL)

        recent = await self._fetch_recent(account, recent_window, budget, stats, run_cap)
        orders = recent.orders
        forced_stop = recent.truncated
        pages_failed = recent.pages_failed
        discovered = recent.discovered_total or 0
        history_exhausted = False

        if forced_stop:
            logger.info(
                f"Time budget reached during recent window for {account.label} "
                f"({len(orders)}/{discovered})",
                extra={"account_id": account.id},
            )

        watermark = await self.store.get_oldest_sale_at(account.id)
        older_known = discovered > len(orders) or watermark is not None
        has_time = budget.remaining > self.settings.history_margin_seconds

        if older_known and has_time and len(orders) < run_cap:
            history = await self._fetch_history(
                account, watermark, orders, budget, stats, full_sync
            )
            orders.extend(history.orders)
            pages_failed += history.pages_failed
            forced_stop = forced_stop or history.truncated
            history_exhausted = history.exhausted
        elif older_known and not has_time and discovered > len(orders):
            forced_stop = True

        account_total = discovered if recent_from is None else await self._probe_account_total(account)

        logger.info(
            f"Fetched {len(orders)} orders for {account.label} in {budget.elapsed:.1f}s",
            extra={
                "account_id": account.id,
                "forced_stop": forced_stop,
                "logistic_stats": dict(stats),
            },
        )

        return AccountFetchResult(
            orders=orders,
            expected_total=max(discovered, len(orders)),
            forced_stop=forced_stop,
            logistic_stats=dict(stats),
            pages_failed=pages_failed,
            history_exhausted=history_exhausted,
            account_total=account_total,
        )

    # ═══════════════════════════════════════════════════════════════════════════
    # RECENT WINDOW
    # ═══════════════════════════════════════════════════════════════════════════

    async def _fetch_recent(
        self,
        account: Account,
        window: SyncWindow,
        budget: TimeBudget,
        stats: Counter,
        run_cap: int,
    ) -> PhaseOutcome:
        """
        Concurrent pagination of the recent window.

        Offsets are scheduled in increasing order, at most `page_concurrency`
        at a time. Pages are kept by offset so the result is in upstream
        order however the requests complete.
        """
        page_limit = self.marketplace.page_limit
        concurrency = self.marketplace.page_concurrency
        offset_limit = min(self.marketplace.max_offset, run_cap)

        outcome = PhaseOutcome()
        pages: Dict[int, List[EnrichedOrder]] = {}
        in_flight: Dict[asyncio.Task, int] = {}
        next_offset = 0
        fetched = 0
        exhausted = False
        rejected: Optional[CredentialRejectedError] = None

        while True:
            while (
                not exhausted
                and rejected is None
                and len(in_flight) < concurrency
                and next_offset < offset_limit
                and not budget.expired()
            ):
                task = asyncio.create_task(self._fetch_page(account, window, next_offset, stats))
                in_flight[task] = next_offset
                next_offset += page_limit

            if not in_flight:
                break

            done, _ = await asyncio.wait(in_flight.keys(), return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                offset = in_flight.pop(task)
                try:
                    page = task.result()
                except CredentialRejectedError as e:
                    rejected = e
                    continue

                if page.failed:
                    outcome.pages_failed += 1
                    continue
                if page.total is not None and outcome.discovered_total is None:
                    outcome.discovered_total = page.total
                    offset_limit = min(self.marketplace.max_offset, page.total, run_cap)
                if page.hit_ceiling or not page.orders:
                    exhausted = True

                pages[offset] = page.orders
                fetched += len(page.orders)
                if page.orders:
                    await self.reporter.progress(
                        f"{account.label}: {fetched} of {outcome.discovered_total or '?'} orders downloaded",
                        current=fetched,
                        total=outcome.discovered_total,
                        account_id=account.id,
                    )

        if rejected is not None:
            raise rejected

        outcome.orders = [order for offset in sorted(pages) for order in pages[offset]]
        outcome.exhausted = exhausted
        remaining_offsets = next_offset < offset_limit
        outcome.truncated = not exhausted and remaining_offsets and budget.expired()
        return outcome

    async def _fetch_page(
        self,
        account: Account,
        window: SyncWindow,
        offset: int,
        stats: Counter,
    ) -> PageOutcome:
        try:
            page = await self.client.search_orders(
                account, offset=offset, limit=self.marketplace.page_limit, window=window
            )
        except (MarketplaceConnectionError, MarketplaceDataError) as e:
            await self.reporter.warning(
                f"Could not fetch orders at offset {offset}: {e}",
                error_code="PAGE_FETCH_ERROR",
                account_id=account.id,
            )
            return PageOutcome(offset=offset, failed=True)

        if page.hit_ceiling:
            return PageOutcome(offset=offset, total=page.total, hit_ceiling=True)
        if not page.ok:
            await self.reporter.warning(
                f"Order page at offset {offset} failed with HTTP {page.status_code}",
                error_code=str(page.status_code),
                account_id=account.id,
            )
            return PageOutcome(offset=offset, failed=True)

        enriched = await self.enricher.enrich(account, page.orders, stats)
        return PageOutcome(offset=offset, orders=enriched, total=page.total)

    # ═══════════════════════════════════════════════════════════════════════════
    # HISTORICAL BACKFILL
    # ═══════════════════════════════════════════════════════════════════════════

    def history_start(
        self,
        watermark: Optional[datetime],
        fetched: List[EnrichedOrder],
    ) -> Optional[datetime]:
        """Upper bound of the backfill: the watermark, else the oldest sale fetched this run."""
        if watermark is not None:
            return watermark
        sale_times = [o.sale_at for o in fetched if o.sale_at is not None]
        return min(sale_times) if sale_times else None

    async def _fetch_history(
        self,
        account: Account,
        watermark: Optional[datetime],
        fetched: List[EnrichedOrder],
        budget: TimeBudget,
        stats: Counter,
        full_sync: bool,
    ) -> PhaseOutcome:
        outcome = PhaseOutcome()
        upper = self.history_start(watermark, fetched)
        if upper is None:
            return outcome

        floor_date: date = self.settings.full_sync_history_floor if full_sync else self.settings.history_floor
        floor = datetime.combine(floor_date, dtime.min, tzinfo=timezone.utc)
        stop_margin = self.settings.history_stop_margin_seconds

        # One day below the watermark decides which month the walk starts in
        start = month_start(upper - timedelta(days=1))

        while start >= floor:
            if budget.expired(stop_margin):
                outcome.truncated = True
                break

            window = SyncWindow(start, upper, WindowMode.HISTORICAL)
            logger.info(
                f"Backfilling {account.label}: {start:%Y-%m-%d} to {upper:%Y-%m-%d}",
                extra={"account_id": account.id},
            )
            result = await self.splitter.fetch(account, window, budget, stats, budget_margin=stop_margin)
            outcome.orders.extend(result.orders)
            outcome.pages_failed += result.pages_failed

            await self.reporter.progress(
                f"{account.label}: {len(fetched) + len(outcome.orders)} orders downloaded "
                f"(history: {start:%Y-%m})",
                current=len(fetched) + len(outcome.orders),
                account_id=account.id,
            )

            if result.truncated:
                outcome.truncated = True
                break
            if not result.orders:
                outcome.exhausted = result.pages_failed == 0
                logger.info(
                    f"No orders in {start:%Y-%m} for {account.label}, history complete",
                    extra={"account_id": account.id},
                )
                break

            upper = start - ONE_MS
            start = previous_month_start(start)
        else:
            outcome.exhausted = True

        return outcome

    async def _probe_account_total(self, account: Account) -> Optional[int]:
        """Account-wide order count, for the 'orders still missing' report."""
        try:
            return await self.client.count_orders(account)
        except (MarketplaceConnectionError, MarketplaceDataError) as e:
            logger.debug(f"Account total probe failed: {e}", extra={"account_id": account.id})
            return None
