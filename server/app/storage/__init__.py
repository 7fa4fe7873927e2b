"""Metering storage module.

Provides a protocol-based storage layer for the model catalog, user
preferences, the response cache, the usage ledger and token balances,
with SQLite and in-memory backends.
"""

from __future__ import annotations

from server.app.storage.backend import (
    BalanceStore,
    CacheStore,
    CatalogStore,
    MeteringStore,
    PreferenceStore,
    UsageStore,
)
from server.app.storage.factory import create_metering_store

__all__ = [
    "BalanceStore",
    "CacheStore",
    "CatalogStore",
    "MeteringStore",
    "PreferenceStore",
    "UsageStore",
    "create_metering_store",
]
