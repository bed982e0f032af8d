"""
Dedup and batch persistence of enriched orders.

One persist() call:
1. Drops repeated order ids (first occurrence wins) and orders without an id
2. Loads the SKU cost lookup for the whole batch in one catalog query
3. Writes chunks: existing ids become updates, the rest bulk inserts
4. Reports cumulative progress after every chunk

A failed insert or update only marks that subset of the chunk as errored.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ordersync.config import config
from ordersync.events import ProgressReporter
from ordersync.exceptions import PersistenceError
from ordersync.models import EnrichedOrder, OrderRecord, PersistResult, SkuCostEntry
from ordersync.money import compute_margin, round_currency, to_finite_number
from ordersync.observability import Timer, get_logger, metrics

logger = get_logger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# RECORD PREPARATION (pure)
# ═══════════════════════════════════════════════════════════════════════════════

def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _truncate(value: Optional[str], length: int) -> Optional[str]:
    if value is None:
        return None
    return value[:length] or None


def listing_exposure(listing_type_id: Optional[str]) -> Optional[str]:
    if not listing_type_id:
        return None
    return "Premium" if listing_type_id.lower() == "gold_pro" else "Classic"


def extract_sku(order: Dict[str, Any], max_length: int = 255) -> Optional[str]:
    """Seller SKU of the first order item, truncated to the column width."""
    items = _as_list(order.get("order_items"))
    item = _as_dict(_as_dict(items[0]).get("item")) if items else {}
    raw = item.get("seller_sku") or item.get("sku")
    if raw in (None, ""):
        return None
    return _truncate(str(raw), max_length)


def dedupe_orders(orders: Iterable[EnrichedOrder]) -> Tuple[List[EnrichedOrder], int, int]:
    """
    Keep the first occurrence of each order id.

    Returns:
        (unique orders, duplicate count, count without an id)
    """
    seen = set()
    unique: List[EnrichedOrder] = []
    duplicates = 0
    invalid = 0
    for enriched in orders:
        order_id = enriched.order_id
        if order_id is None:
            invalid += 1
            continue
        if order_id in seen:
            duplicates += 1
            continue
        seen.add(order_id)
        unique.append(enriched)
    return unique, duplicates, invalid


def prepare_order_record(
    enriched: EnrichedOrder,
    user_id: str,
    sku_costs: Dict[str, SkuCostEntry],
    sku_max_length: int = 255,
) -> OrderRecord:
    """Build the stored record for one enriched order."""
    o = enriched.order
    shipment = _as_dict(enriched.shipment)
    order_shipping = _as_dict(o.get("shipping"))
    freight = enriched.freight

    items = [_as_dict(i) for i in _as_list(o.get("order_items"))]
    first = items[0] if items else {}
    item_data = _as_dict(first.get("item"))

    title = item_data.get("title")
    if not title:
        title = next(
            (_as_dict(i.get("item")).get("title") for i in items if _as_dict(i.get("item")).get("title")),
            None,
        )
    title = str(title or o.get("title") or "Order")[:500]

    quantity = int(sum(to_finite_number(i.get("quantity")) or 0 for i in items))

    total_amount = to_finite_number(o.get("total_amount"))
    if total_amount is None:
        total_amount = sum(
            (to_finite_number(i.get("quantity")) or 0) * (to_finite_number(i.get("unit_price")) or 0)
            for i in items
        )

    buyer_data = _as_dict(o.get("buyer"))
    name_parts = [p for p in (buyer_data.get("first_name"), buyer_data.get("last_name")) if p]
    buyer = buyer_data.get("nickname") or " ".join(name_parts) or "Buyer"

    sale_fee = sum(
        (to_finite_number(i.get("sale_fee")) or 0)
        * (to_finite_number(i.get("quantity")) if to_finite_number(i.get("quantity")) is not None else 1)
        for i in items
    )
    platform_fee = -round_currency(sale_fee) if sale_fee > 0 else None

    unit_price = to_finite_number(first.get("unit_price"))
    if unit_price is None:
        unit_price = round_currency(total_amount / quantity) if quantity > 0 else 0.0

    freight_cost = freight.margin_freight

    sku = extract_sku(o, sku_max_length)
    cogs = None
    entry = sku_costs.get(sku) if sku else None
    if entry is not None and entry.unit_cost is not None:
        cogs = round_currency(entry.unit_cost * quantity)

    margin, is_real = compute_margin(total_amount, platform_fee, freight_cost, cogs)

    tags = [str(t) for t in _as_list(o.get("tags"))]
    internal_tags = [str(t) for t in _as_list(o.get("internal_tags"))]

    receiver = _as_dict(shipment.get("receiver_address") or order_shipping.get("receiver_address"))
    geo = _as_dict(receiver.get("geo"))
    latitude = to_finite_number(receiver.get("latitude", geo.get("latitude")))
    longitude = to_finite_number(receiver.get("longitude", geo.get("longitude")))
    if latitude is None or longitude is None:
        latitude = longitude = None

    shipment_id = shipment.get("id") or order_shipping.get("id")

    return OrderRecord(
        order_id=enriched.order_id,
        account_id=enriched.account_id,
        user_id=user_id,
        sale_at=enriched.sale_at or datetime.now(timezone.utc),
        status=str(o.get("status") or "unknown")[:100],
        buyer=str(buyer)[:255],
        title=title,
        sku=sku,
        quantity=quantity if quantity > 0 else 1,
        unit_price=unit_price,
        total_amount=total_amount,
        platform_fee=platform_fee,
        freight_cost=freight_cost,
        cogs=cogs,
        margin=margin,
        is_real_margin=is_real,
        logistic_type=freight.logistic_label,
        raw={"order": o, "shipment": enriched.shipment, "freight": freight.to_dict()},
        account_label=_truncate(enriched.account_label or enriched.account_id, 255),
        shipping_mode=freight.shipping_mode,
        shipping_status=shipment.get("status") or order_shipping.get("status"),
        shipment_id=str(shipment_id) if shipment_id else None,
        listing_exposure=listing_exposure(first.get("listing_type_id") or item_data.get("listing_type_id")),
        listing_kind="Catalog" if "catalog" in tags else "Own",
        is_ads="ads" in internal_tags,
        tags=tags,
        internal_tags=internal_tags,
        latitude=latitude,
        longitude=longitude,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════════════════════

class OrderPersistenceEngine:
    """
    Writes enriched orders to the store.

    Args:
        store: DuckDBStore (or anything with the same order/catalog methods)
        reporter: Optional progress sink
        chunk_size: Orders per write round trip, capped at 100
    """

    MAX_CHUNK_SIZE = 100

    def __init__(
        self,
        store,
        reporter: Optional[ProgressReporter] = None,
        chunk_size: Optional[int] = None,
        sku_max_length: Optional[int] = None,
    ):
        self.store = store
        self.reporter = reporter
        self.chunk_size = min(chunk_size or config.persistence.chunk_size, self.MAX_CHUNK_SIZE)
        self.sku_max_length = sku_max_length or config.persistence.sku_max_length

    async def load_sku_costs(self, user_id: str, orders: List[EnrichedOrder]) -> Dict[str, SkuCostEntry]:
        """
        SKU -> cost lookup for one batch.

        Raises:
            PersistenceError: The catalog could not be read
        """
        skus = {extract_sku(e.order, self.sku_max_length) for e in orders}
        skus.discard(None)
        if not skus:
            return {}
        try:
            entries = await self.store.find_costs(user_id, sorted(skus))
        except Exception as e:
            raise PersistenceError("SKU cost lookup failed", {"user_id": user_id, "error": str(e)}) from e
        return {entry.sku: entry for entry in entries}

    async def persist(self, user_id: str, orders: List[EnrichedOrder]) -> PersistResult:
        """
        Upsert a batch of enriched orders for one user.

        Partial failures are counted, not raised.

        Raises:
            PersistenceError: Only if the SKU lookup fails
        """
        unique, duplicates, invalid = dedupe_orders(orders)
        result = PersistResult(duplicates=duplicates, invalid=invalid)

        if duplicates or invalid:
            logger.info(
                f"Dropped {duplicates} duplicate and {invalid} id-less orders",
                extra={"user_id": user_id},
            )
        if not unique:
            return result

        sku_costs = await self.load_sku_costs(user_id, unique)
        total = len(unique)
        processed = 0

        with Timer(f"persist {total} orders", logger):
            for start in range(0, total, self.chunk_size):
                chunk = unique[start:start + self.chunk_size]
                result.merge(await self._persist_chunk(user_id, chunk, sku_costs))
                processed += len(chunk)

                if self.reporter is not None:
                    await self.reporter.progress(
                        f"Saving orders: {processed} of {total}",
                        current=processed,
                        total=total,
                    )

        metrics.incr("orders_saved", result.saved)
        metrics.incr("save_errors", result.errors)
        logger.info(
            f"Persisted {result.saved}/{total} orders ({result.errors} errors)",
            extra={"user_id": user_id, "duplicates": duplicates, "invalid": invalid},
        )
        return result

    async def _persist_chunk(
        self,
        user_id: str,
        chunk: List[EnrichedOrder],
        sku_costs: Dict[str, SkuCostEntry],
    ) -> PersistResult:
        result = PersistResult()
        records: List[OrderRecord] = []
        for enriched in chunk:
            try:
                records.append(prepare_order_record(enriched, user_id, sku_costs, self.sku_max_length))
            except (TypeError, ValueError, ZeroDivisionError) as e:
                logger.error(f"Could not prepare order {enriched.order_id}: {e}")
                result.errors += 1

        if not records:
            return result

        try:
            existing = await self.store.find_existing_order_ids([r.order_id for r in records])
        except Exception as e:
            logger.error(f"Existing id lookup failed for {len(records)} orders: {e}")
            result.errors += len(records)
            return result

        creates = [r for r in records if r.order_id not in existing]
        updates = [r for r in records if r.order_id in existing]

        if creates:
            try:
                await self.store.insert_orders(creates)
                result.saved += len(creates)
            except Exception as e:
                logger.error(f"Bulk insert of {len(creates)} orders failed: {e}")
                result.errors += len(creates)

        if updates:
            try:
                await self.store.update_orders(updates)
                result.saved += len(updates)
            except Exception as e:
                logger.error(f"Update transaction for {len(updates)} orders failed: {e}")
                result.errors += len(updates)

        return result
