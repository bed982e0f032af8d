"""
Order enrichment: shipment lookup plus freight derivation.

Shipments are fetched in small concurrent sub-batches. Results come back from
asyncio.gather in submission order, so each shipment is matched to its order
by position regardless of which request finished first.
"""
import asyncio
from collections import Counter
from typing import Any, Dict, List, Optional

import httpx

from ordersync.config import config
from ordersync.exceptions import MarketplaceError
from ordersync.freight import derive_freight
from ordersync.marketplace import MarketplaceClient
from ordersync.models import Account, EnrichedOrder
from ordersync.observability import get_logger

logger = get_logger(__name__)


class OrderEnricher:
    """Joins raw orders with their shipment and computes FreightDerivation."""

    def __init__(self, client: MarketplaceClient, batch_size: Optional[int] = None):
        self.client = client
        self.batch_size = batch_size or config.marketplace.shipment_batch_size

    async def enrich(
        self,
        account: Account,
        orders: List[Dict[str, Any]],
        logistic_stats: Optional[Counter] = None,
    ) -> List[EnrichedOrder]:
        enriched: List[EnrichedOrder] = []

        for start in range(0, len(orders), self.batch_size):
            chunk = orders[start:start + self.batch_size]
            shipments = await asyncio.gather(
                *[self._shipment_for(account, order) for order in chunk]
            )
            for order, shipment in zip(chunk, shipments):
                freight = derive_freight(order, shipment)
                if logistic_stats is not None:
                    logistic_stats[freight.logistic_label] += 1
                enriched.append(EnrichedOrder(
                    account_id=account.id,
                    account_label=account.label,
                    order=order,
                    shipment=shipment,
                    freight=freight,
                ))

        return enriched

    async def _shipment_for(self, account: Account, order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Shipment detail, falling back to the order's inline shipping block."""
        inline = order.get("shipping") if isinstance(order.get("shipping"), dict) else None
        shipment_id = inline.get("id") if inline else None
        if not shipment_id:
            return inline

        try:
            shipment = await self.client.get_shipment(account, str(shipment_id))
        except (MarketplaceError, httpx.HTTPError) as e:
            logger.debug(f"Shipment {shipment_id} unavailable ({e}), using inline shipping")
            shipment = None

        return shipment if shipment is not None else inline
