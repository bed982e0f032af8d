"""
Repository mixins composed into DuckDBStore.

- OrdersMixin: order upserts, existence checks, watermarks
- CatalogMixin: SKU cost lookup for COGS
- AccountsMixin: seller accounts and OAuth tokens
"""
from ordersync.repositories.accounts import AccountsMixin
from ordersync.repositories.catalog import CatalogMixin
from ordersync.repositories.orders import OrdersMixin

__all__ = [
    "AccountsMixin",
    "CatalogMixin",
    "OrdersMixin",
]
