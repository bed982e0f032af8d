"""DuckDBStore SKU cost catalog methods."""
from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from ordersync.models import SkuCostEntry


class CatalogMixin:

    async def find_costs(self, user_id: str, skus: Iterable[str]) -> List[SkuCostEntry]:
        """Cost entries for the given SKUs of one user, in a single query."""
        sku_list = [s for s in dict.fromkeys(skus) if s]
        if not sku_list:
            return []

        placeholders = ", ".join("?" for _ in sku_list)
        async with self.connection() as conn:
            rows = conn.execute(f"""
                SELECT sku, unit_cost, item_type
                FROM sku_costs
                WHERE user_id = ? AND sku IN ({placeholders})
            """, [user_id, *sku_list]).fetchall()

        return [
            SkuCostEntry(sku=row[0], unit_cost=row[1], item_type=row[2])
            for row in rows
        ]

    async def upsert_sku_costs(self, user_id: str, costs: Dict[str, Optional[float]], item_type: str = "simple") -> int:
        """Seed or update catalog costs (used by scripts and tests)."""
        if not costs:
            return 0
        async with self.connection() as conn:
            conn.executemany("""
                INSERT INTO sku_costs (user_id, sku, unit_cost, item_type)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (user_id, sku) DO UPDATE SET
                    unit_cost = EXCLUDED.unit_cost,
                    item_type = EXCLUDED.item_type
            """, [[user_id, sku, cost, item_type] for sku, cost in costs.items()])
        return len(costs)
