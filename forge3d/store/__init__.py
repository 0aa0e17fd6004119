"""Persistence backends behind the Store port."""

from forge3d.store.base import LedgerUnit, Store
from forge3d.store.memory import MemoryStore


def create_store(config) -> Store:
    """Build the store selected by config.STORE_BACKEND."""
    if config.STORE_BACKEND == "postgres":
        from forge3d.store.postgres import PostgresStore
        return PostgresStore()
    print("[DB] Using in-memory store - data will not survive a restart")
    return MemoryStore()


__all__ = [
    "LedgerUnit",
    "Store",
    "MemoryStore",
    "create_store",
]
