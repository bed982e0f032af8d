"""
Period splitting for date ranges that exceed the upstream offset ceiling.

The order search endpoint refuses offsets past ~9,950, so a range holding
more orders than that cannot be paged in one go. The splitter probes the
range with a limit=1 query and, when the total is too large, replaces it with
consecutive sub-ranges on a work queue until every leaf fits (or is one day
wide, in which case the overflow past the ceiling is accepted as lost).

Sub-ranges are inclusive on both ends and separated by one millisecond, so
leaves never overlap. Leaves are fetched in chronological order; newest-first
is available as an option.
"""
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Deque, List, Optional, Tuple

from ordersync.budget import TimeBudget
from ordersync.config import config
from ordersync.enrichment import OrderEnricher
from ordersync.events import ProgressReporter
from ordersync.exceptions import MarketplaceConnectionError, MarketplaceDataError
from ordersync.marketplace import MarketplaceClient
from ordersync.models import Account, EnrichedOrder, SyncWindow
from ordersync.observability import get_logger

logger = get_logger(__name__)

ONE_MS = timedelta(milliseconds=1)
ONE_DAY = timedelta(days=1)


@dataclass
class SplitResult:
    """Orders and the leaf windows that produced them."""
    orders: List[EnrichedOrder] = field(default_factory=list)
    windows: List[SyncWindow] = field(default_factory=list)
    probed_total: Optional[int] = None
    truncated: bool = False
    pages_failed: int = 0


def split_window(window: SyncWindow, width: timedelta) -> List[SyncWindow]:
    """
    Cut a bounded window into consecutive sub-windows of `width`.

    The result is chronological; the last piece may be shorter.
    """
    if window.date_from is None or window.date_to is None:
        raise ValueError("Only bounded windows can be split")

    pieces: List[SyncWindow] = []
    start = window.date_from
    while start <= window.date_to:
        end = min(start + width - ONE_MS, window.date_to)
        pieces.append(SyncWindow(start, end, window.mode))
        start = end + ONE_MS
    return pieces


class PeriodSplitter:
    """
    Fetches every order of a date range without exceeding the offset ceiling.

    Args:
        client: Marketplace client
        enricher: Shipment/freight enricher
        reporter: Progress sink
        newest_first: Fetch sub-ranges newest first instead of chronologically
    """

    def __init__(
        self,
        client: MarketplaceClient,
        enricher: OrderEnricher,
        reporter: ProgressReporter,
        *,
        ceiling: Optional[int] = None,
        dense_threshold: Optional[int] = None,
        dense_split_days: Optional[int] = None,
        sparse_split_days: Optional[int] = None,
        page_limit: Optional[int] = None,
        newest_first: bool = False,
    ):
        self.client = client
        self.enricher = enricher
        self.reporter = reporter
        self.ceiling = ceiling or config.sync.split_threshold
        self.dense_threshold = dense_threshold or config.sync.dense_threshold
        self.dense_split_days = dense_split_days or config.sync.dense_split_days
        self.sparse_split_days = sparse_split_days or config.sync.sparse_split_days
        self.page_limit = page_limit or config.marketplace.page_limit
        self.newest_first = newest_first

    def sub_range_width(self, window: SyncWindow, total: int) -> timedelta:
        """
        Width of the pieces a too-large window is cut into.

        7 days for very dense ranges, 14 otherwise. A window not wider than
        that is halved instead, never below one day, so every split strictly
        shrinks the range.
        """
        days = self.dense_split_days if total > self.dense_threshold else self.sparse_split_days
        width = timedelta(days=days)
        span = window.date_to - window.date_from
        if width >= span:
            width = span / 2
        return max(width, ONE_DAY)

    def should_split(self, window: SyncWindow, total: Optional[int]) -> bool:
        if total is None or total <= self.ceiling:
            return False
        if window.date_from is None or window.date_to is None:
            return False
        return (window.date_to - window.date_from) > ONE_DAY

    async def fetch(
        self,
        account: Account,
        window: SyncWindow,
        budget: TimeBudget,
        logistic_stats: Optional[Counter] = None,
        budget_margin: float = 0.0,
    ) -> SplitResult:
        """
        Fetch all orders in `window`, splitting as needed.

        Stops early (truncated=True) when the budget, minus `budget_margin`,
        runs out. CredentialRejectedError propagates to the caller.
        """
        result = SplitResult()
        pending: Deque[SyncWindow] = deque([window])

        while pending:
            if budget.expired(budget_margin):
                result.truncated = True
                break

            current = pending.popleft()
            total = await self._probe(account, current)
            if current is window:
                result.probed_total = total

            if self.should_split(current, total):
                pieces = split_window(current, self.sub_range_width(current, total))
                logger.info(
                    f"Splitting {current.date_from:%Y-%m-%d}..{current.date_to:%Y-%m-%d} "
                    f"({total} orders) into {len(pieces)} ranges",
                    extra={"account_id": account.id},
                )
                if self.newest_first:
                    pieces.reverse()
                # Pieces go to the front so one range is finished before its siblings
                pending.extendleft(reversed(pieces))
                continue

            if total is not None and total > self.ceiling:
                logger.warning(
                    f"Range {current.date_from} holds {total} orders, "
                    f"only {self.ceiling} are reachable",
                    extra={"account_id": account.id},
                )

            if total == 0:
                result.windows.append(current)
                continue

            orders, failed, truncated = await self._paginate(
                account, current, budget, logistic_stats, budget_margin
            )
            result.orders.extend(orders)
            result.pages_failed += failed
            result.windows.append(current)

            if current is not window:
                await self.reporter.progress(
                    f"{len(result.orders)} orders downloaded "
                    f"({current.date_from:%Y-%m-%d} to {current.date_to:%Y-%m-%d})",
                    current=len(result.orders),
                    total=result.probed_total,
                    account_id=account.id,
                )

            if truncated:
                result.truncated = True
                break

        return result

    async def _probe(self, account: Account, window: SyncWindow) -> Optional[int]:
        try:
            return await self.client.count_orders(account, window)
        except (MarketplaceConnectionError, MarketplaceDataError) as e:
            logger.warning(f"Count probe failed, paging directly: {e}", extra={"account_id": account.id})
            return None

    async def _paginate(
        self,
        account: Account,
        window: SyncWindow,
        budget: TimeBudget,
        logistic_stats: Optional[Counter],
        budget_margin: float,
    ) -> Tuple[List[EnrichedOrder], int, bool]:
        """
        Page through one leaf window sequentially.

        Returns:
            (orders, failed_pages, truncated)
        """
        orders: List[EnrichedOrder] = []
        failed = 0
        offset = 0

        while offset < self.ceiling:
            if budget.expired(budget_margin):
                return orders, failed, True

            try:
                page = await self.client.search_orders(
                    account, offset=offset, limit=self.page_limit, window=window
                )
            except (MarketplaceConnectionError, MarketplaceDataError) as e:
                failed += 1
                await self.reporter.warning(
                    f"Could not fetch orders at offset {offset}: {e}",
                    error_code="PAGE_FETCH_ERROR",
                    account_id=account.id,
                )
                break

            if page.hit_ceiling:
                logger.info(f"Offset ceiling reached at {offset}", extra={"account_id": account.id})
                break
            if not page.ok:
                failed += 1
                await self.reporter.warning(
                    f"Order page at offset {offset} failed with HTTP {page.status_code}",
                    error_code=str(page.status_code),
                    account_id=account.id,
                )
                break
            if not page.orders:
                break

            orders.extend(await self.enricher.enrich(account, page.orders, logistic_stats))
            offset += len(page.orders)
            if page.total is not None and offset >= page.total:
                break

        return orders, failed, False
