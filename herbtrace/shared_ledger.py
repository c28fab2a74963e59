"""
Shared Ledger Instance

Holds the process-wide store, ledger and provenance services.
Supports both in-memory (development) and PostgreSQL (production) modes.

Mode is determined by environment variables:
- LEDGERSTORE_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: Use in-memory (default for development)

SEEDING:
- Auto-seeding is DISABLED by default
- Set HERBTRACE_AUTO_SEED=1 to register demo actors/herbs and record
  the sample journeys on startup
- For production, seed via `tools/manage.py seed-demo` instead
"""

import os
from threading import Lock
from typing import Optional

from .core.config import LedgerConfig
from .core.ledger import LedgerService
from .core.provenance import ProvenanceService
from .db.config import DatabaseConfig, LedgerStoreDriver, get_database_url, get_ledgerstore_driver
from .db.store import InMemoryLedgerStore, LedgerStore
from .observability import get_logger

logger = get_logger(__name__)

_init_lock = Lock()
_store: Optional[LedgerStore] = None
_ledger: Optional[LedgerService] = None
_provenance: Optional[ProvenanceService] = None
_seed_attempted = False


def _create_store() -> LedgerStore:
    """
    Create the LedgerStore the environment asks for.

    Falls back to the in-memory store (with an error logged) when
    PostgreSQL is requested but unreachable.
    """
    driver = get_ledgerstore_driver()

    if driver == LedgerStoreDriver.MEMORY:
        logger.info("Using in-memory ledger store (no persistence)")
        return InMemoryLedgerStore()

    db_url = get_database_url()
    if db_url is None:
        logger.warning(
            "Driver requested but no database configured, using in-memory store",
            driver=driver.value,
        )
        return InMemoryLedgerStore()

    config = DatabaseConfig.from_url(db_url)
    return _create_psycopg2_store(config)


def _create_psycopg2_store(config: DatabaseConfig) -> LedgerStore:
    import psycopg2
    from .db.postgres import PostgresLedgerStore

    def connection_factory():
        return psycopg2.connect(config.to_dsn())

    try:
        test_conn = connection_factory()
        test_conn.close()
    except psycopg2.Error as e:
        logger.error(
            "Could not connect to PostgreSQL, using in-memory store",
            database=config.to_url(include_password=False),
            error=str(e),
        )
        return InMemoryLedgerStore()

    store = PostgresLedgerStore(connection_factory)
    store.create_schema()
    logger.info(
        "PostgreSQL ledger store ready",
        database=config.to_url(include_password=False),
    )
    return store


def _ensure_initialized() -> None:
    global _store, _ledger, _provenance
    with _init_lock:
        if _store is None:
            _store = _create_store()
            _ledger = LedgerService(_store, LedgerConfig.from_env())
            _provenance = ProvenanceService(_store)


def get_store() -> LedgerStore:
    _ensure_initialized()
    return _store


def get_ledger() -> LedgerService:
    _ensure_initialized()
    return _ledger


def get_provenance_service() -> ProvenanceService:
    _ensure_initialized()
    return _provenance


def reset() -> None:
    """Forget the shared instances (for tests)."""
    global _store, _ledger, _provenance, _seed_attempted
    with _init_lock:
        _store = _ledger = _provenance = None
        _seed_attempted = False


def seed_demo_data() -> bool:
    """
    Seed demo reference data and sample journeys.

    SAFETY RULES:
    - Disabled unless HERBTRACE_AUTO_SEED is set
    - Runs at most once per process
    - Existing actors, herbs and batches are never touched

    Returns True when seeding ran.
    """
    global _seed_attempted

    if os.getenv("HERBTRACE_AUTO_SEED", "").lower() not in ("1", "true", "yes"):
        logger.debug("Auto-seeding disabled (set HERBTRACE_AUTO_SEED=1 to enable)")
        return False

    from .seed import run_sample_journeys, seed_reference_data

    ledger = get_ledger()
    with _init_lock:
        if _seed_attempted:
            return False
        _seed_attempted = True

    seed_reference_data(ledger.store)
    run_sample_journeys(ledger)
    return True
