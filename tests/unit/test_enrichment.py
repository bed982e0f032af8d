"""
Unit tests for ordersync/enrichment.py
"""
import asyncio
from collections import Counter
from unittest.mock import MagicMock

import pytest

from ordersync.enrichment import OrderEnricher
from ordersync.exceptions import MarketplaceConnectionError

from conftest import make_order


def order_with_shipment(index: int) -> dict:
    return make_order(order_id=index, shipping={"id": 9000 + index, "mode": "me2", "cost": 12.0})


class RecordingShipments:
    """get_shipment stand-in: later ids answer first, one id always fails."""

    def __init__(self, failing_id: str):
        self.failing_id = failing_id
        self.active = 0
        self.max_active = 0
        self.completed = []

    async def __call__(self, account, shipment_id):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.001 * (10 - int(shipment_id) % 10))
            if shipment_id == self.failing_id:
                raise MarketplaceConnectionError("timeout", attempts=3)
            self.completed.append(shipment_id)
            return {
                "id": int(shipment_id),
                "logistic_type": "self_service",
                "shipping_option": {"cost": float(int(shipment_id) % 100)},
            }
        finally:
            self.active -= 1


class TestOrderEnricher:

    @pytest.mark.asyncio
    async def test_batches_match_by_position_and_fall_back_inline(self, account):
        shipments = RecordingShipments(failing_id="9003")
        client = MagicMock()
        client.get_shipment = shipments
        orders = [order_with_shipment(i) for i in range(25)]
        stats = Counter()

        enriched = await OrderEnricher(client, batch_size=10).enrich(account, orders, stats)

        assert shipments.max_active == 10
        assert shipments.completed[:2] == ["9009", "9008"]
        assert [e.order_id for e in enriched] == [str(i) for i in range(25)]
        for e in enriched:
            if e.order_id == "3":
                # Failed lookup keeps the order's own shipping block
                assert e.shipment == orders[3]["shipping"]
            else:
                assert e.shipment["id"] == 9000 + int(e.order_id)
        assert stats == Counter({"FLEX": 24, "me2": 1})

    @pytest.mark.asyncio
    async def test_order_without_shipment_id_skips_lookup(self, account):
        client = MagicMock()
        enriched = await OrderEnricher(client).enrich(account, [make_order()])

        client.get_shipment.assert_not_called()
        assert enriched[0].shipment == {"mode": "me2", "cost": 10.0}
        assert enriched[0].freight.logistic_type == "me2"
