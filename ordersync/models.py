"""
Domain models for the order sync pipeline.

Raw marketplace payloads stay as dicts (they are preserved verbatim in the
stored record); everything the pipeline computes or passes between stages is
a dataclass defined here.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from ordersync.freight import FreightDerivation


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an upstream ISO-8601 timestamp into an aware UTC datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime the way the order search endpoint expects it."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class WindowMode(str, Enum):
    """Which phase of a run a window belongs to."""
    INITIAL = "initial"
    HISTORICAL = "historical"


# ═══════════════════════════════════════════════════════════════════════════════
# ACCOUNTS AND WINDOWS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Account:
    """A connected seller account with its OAuth credentials."""
    id: str
    user_id: str
    seller_id: str
    nickname: Optional[str] = None
    access_token: str = ""
    refresh_token: str = ""
    expires_at: Optional[datetime] = None

    @property
    def label(self) -> str:
        return self.nickname or f"Account {self.seller_id}"


@dataclass(frozen=True)
class SyncWindow:
    """One date range to query. date_from/date_to of None means open-ended."""
    date_from: Optional[datetime]
    date_to: Optional[datetime]
    mode: WindowMode = WindowMode.INITIAL

    @property
    def span_days(self) -> float:
        if self.date_from is None or self.date_to is None:
            return float("inf")
        return (self.date_to - self.date_from).total_seconds() / 86400


@dataclass(frozen=True)
class SyncRequest:
    """Parameters of a sync run; a continuation reuses them verbatim."""
    user_id: str
    account_ids: Optional[List[str]] = None
    full_sync: bool = False
    quick_mode: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "account_ids": self.account_ids,
            "full_sync": self.full_sync,
            "quick_mode": self.quick_mode,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# ORDERS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class EnrichedOrder:
    """A raw order joined with its shipment and derived freight."""
    account_id: str
    account_label: str
    order: Dict[str, Any]
    shipment: Optional[Dict[str, Any]]
    freight: FreightDerivation

    @property
    def order_id(self) -> Optional[str]:
        raw = self.order.get("id")
        return str(raw) if raw not in (None, "") else None

    @property
    def sale_at(self) -> Optional[datetime]:
        return (
            parse_timestamp(self.order.get("date_closed"))
            or parse_timestamp(self.order.get("date_created"))
            or parse_timestamp(self.order.get("date_last_updated"))
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "account_label": self.account_label,
            "order": self.order,
            "shipment": self.shipment,
            "freight": self.freight.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnrichedOrder":
        return cls(
            account_id=str(data["account_id"]),
            account_label=data.get("account_label") or "",
            order=data.get("order") or {},
            shipment=data.get("shipment"),
            freight=FreightDerivation.from_dict(data.get("freight") or {}),
        )


@dataclass
class SkuCostEntry:
    """Unit cost of a SKU from the catalog."""
    sku: str
    unit_cost: Optional[float]
    item_type: Optional[str] = None


@dataclass
class OrderRecord:
    """One stored sale, keyed by the marketplace order id."""
    order_id: str
    account_id: str
    user_id: str
    sale_at: datetime
    status: Optional[str]
    buyer: str
    title: str
    sku: Optional[str]
    quantity: int
    unit_price: float
    total_amount: float
    platform_fee: Optional[float]
    freight_cost: float
    cogs: Optional[float]
    margin: float
    is_real_margin: bool
    logistic_type: str
    raw: Dict[str, Any]
    account_label: Optional[str] = None
    shipping_mode: Optional[str] = None
    shipping_status: Optional[str] = None
    shipment_id: Optional[str] = None
    listing_exposure: Optional[str] = None
    listing_kind: Optional[str] = None
    is_ads: bool = False
    tags: List[str] = field(default_factory=list)
    internal_tags: List[str] = field(default_factory=list)
    latitude: Optional[float] = None
    longitude: Optional[float] = None


# ═══════════════════════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class AccountFetchResult:
    """What the fetcher produced for one account in one run."""
    orders: List[EnrichedOrder]
    expected_total: int
    forced_stop: bool
    logistic_stats: Dict[str, int] = field(default_factory=dict)
    pages_failed: int = 0
    history_exhausted: bool = False
    account_total: Optional[int] = None


@dataclass
class PersistResult:
    saved: int = 0
    errors: int = 0
    duplicates: int = 0
    invalid: int = 0

    def merge(self, other: "PersistResult") -> None:
        self.saved += other.saved
        self.errors += other.errors
        self.duplicates += other.duplicates
        self.invalid += other.invalid


@dataclass
class AccountSyncResult:
    account_id: str
    nickname: Optional[str]
    expected: int = 0
    fetched: int = 0
    saved: int = 0
    errors: int = 0
    duplicates: int = 0
    forced_stop: bool = False
    queued: bool = False
    logistic_stats: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "nickname": self.nickname,
            "expected": self.expected,
            "fetched": self.fetched,
            "saved": self.saved,
            "errors": self.errors,
            "duplicates": self.duplicates,
            "forced_stop": self.forced_stop,
            "queued": self.queued,
            "logistic_stats": self.logistic_stats,
            "error": self.error,
        }


@dataclass
class SyncSummary:
    """Aggregate outcome of a sync run, returned even on partial failure."""
    synced_at: datetime
    request: SyncRequest
    accounts: List[AccountSyncResult] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    more_work_remains: bool = False
    continuation_scheduled: bool = False

    @property
    def total_expected(self) -> int:
        return sum(a.expected for a in self.accounts)

    @property
    def total_fetched(self) -> int:
        return sum(a.fetched for a in self.accounts)

    @property
    def total_saved(self) -> int:
        return sum(a.saved for a in self.accounts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synced_at": self.synced_at.isoformat(),
            "accounts": [a.to_dict() for a in self.accounts],
            "errors": self.errors,
            "totals": {
                "expected": self.total_expected,
                "fetched": self.total_fetched,
                "saved": self.total_saved,
                "errors": sum(a.errors for a in self.accounts),
                "duplicates": sum(a.duplicates for a in self.accounts),
            },
            "more_work_remains": self.more_work_remains,
            "quick_mode": self.request.quick_mode,
            "full_sync": self.request.full_sync,
            "continuation_scheduled": self.continuation_scheduled,
        }
