"""
Persistence Layer for the HerbTrace Ledger

Provides:
- LedgerStore abstraction (InMemory for dev/tests, Postgres for prod)
- Connection configuration

PostgresLedgerStore lives in herbtrace.db.postgres and is imported
on demand so the in-memory store works without a database driver.
"""

from .store import (
    LedgerStore,
    InMemoryLedgerStore,
    StoreError,
    ConcurrencyError,
    TransientStoreError,
    DuplicateRecordError,
    HashMismatchError,
)
from .config import (
    DatabaseConfig,
    LedgerStoreDriver,
    get_database_url,
    get_ledgerstore_driver,
)

__all__ = [
    "LedgerStore",
    "InMemoryLedgerStore",
    "StoreError",
    "ConcurrencyError",
    "TransientStoreError",
    "DuplicateRecordError",
    "HashMismatchError",
    "DatabaseConfig",
    "LedgerStoreDriver",
    "get_database_url",
    "get_ledgerstore_driver",
]
