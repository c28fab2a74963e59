"""
PostgreSQL LedgerStore

Provides:
- Durability (chains survive restarts)
- Multi-instance appends, arbitrated by a compare-and-swap on batch_heads
- Append-only chain_events (UPDATE/DELETE rejected by trigger)

CONCURRENCY:
No row is locked while the ledger validates and hashes. The append
transaction moves batch_heads from the expected hash to the new one
with a single conditional UPDATE (or INSERT ... ON CONFLICT DO NOTHING
for an empty batch); zero affected rows means another writer won.
Unique indexes on (batch_id, previous_hash) and on genesis events
back this up should the head row ever be bypassed.

THREAD SAFETY:
Every call opens its own connection from connection_factory, so one
store instance can be shared across request threads.

Usage:
    store = PostgresLedgerStore(lambda: psycopg2.connect(config.to_dsn()))
    store.create_schema()
"""

from contextlib import contextmanager
from typing import Any, Callable, Generator, Optional
from uuid import UUID

import psycopg2
import psycopg2.errors
from psycopg2.extras import Json, register_uuid

from ..core.hasher import verify_event_hash
from ..schemas import Actor, ApprovedRegion, ChainEvent, EventType, Herb, Product
from .store import (
    ConcurrencyError,
    DuplicateRecordError,
    HashMismatchError,
    LedgerStore,
    StoreError,
    TransientStoreError,
)

register_uuid()


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS actors (
    id              UUID PRIMARY KEY,
    name            TEXT NOT NULL,
    role            TEXT NOT NULL,
    location        TEXT,
    contact_info    JSONB,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS actors_name_key ON actors (lower(name));

CREATE TABLE IF NOT EXISTS herbs (
    id                  UUID PRIMARY KEY,
    name                TEXT NOT NULL,
    scientific_name     TEXT,
    conservation_status TEXT,
    harvest_season      INTEGER[] NOT NULL DEFAULT '{}',
    approved_regions    JSONB NOT NULL DEFAULT '[]',
    created_at          TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE UNIQUE INDEX IF NOT EXISTS herbs_name_key ON herbs (lower(name));

CREATE TABLE IF NOT EXISTS chain_events (
    id                  UUID PRIMARY KEY,
    batch_id            TEXT NOT NULL,
    herb_id             UUID REFERENCES herbs (id),
    event_type          TEXT NOT NULL CHECK (event_type IN (
                            'harvest', 'collection', 'processing',
                            'quality_test', 'manufacturing')),
    actor_id            UUID NOT NULL REFERENCES actors (id),
    gps_coordinates     TEXT,
    metadata            JSONB NOT NULL DEFAULT '{}',
    occurred_at         TIMESTAMPTZ NOT NULL,
    created_at          TIMESTAMPTZ NOT NULL,
    previous_hash       CHAR(64),
    block_hash          CHAR(64) NOT NULL UNIQUE,
    is_valid            BOOLEAN NOT NULL,
    validation_errors   JSONB NOT NULL DEFAULT '[]',
    validation_warnings JSONB NOT NULL DEFAULT '[]',
    UNIQUE (batch_id, created_at)
);
CREATE UNIQUE INDEX IF NOT EXISTS chain_events_link_key
    ON chain_events (batch_id, previous_hash);
CREATE UNIQUE INDEX IF NOT EXISTS chain_events_genesis_key
    ON chain_events (batch_id) WHERE previous_hash IS NULL;
CREATE INDEX IF NOT EXISTS chain_events_batch_type_idx
    ON chain_events (batch_id, event_type, created_at);

CREATE OR REPLACE FUNCTION chain_events_append_only() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'chain_events is append-only';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS chain_events_no_mutation ON chain_events;
CREATE TRIGGER chain_events_no_mutation
    BEFORE UPDATE OR DELETE ON chain_events
    FOR EACH ROW EXECUTE FUNCTION chain_events_append_only();

CREATE TABLE IF NOT EXISTS batch_heads (
    batch_id            TEXT PRIMARY KEY,
    last_block_hash     CHAR(64) NOT NULL,
    last_created_at     TIMESTAMPTZ NOT NULL,
    event_count         INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS products (
    id                  UUID PRIMARY KEY,
    qr_code             TEXT NOT NULL UNIQUE,
    batch_id            TEXT NOT NULL UNIQUE,
    product_name        TEXT NOT NULL,
    herb_id             UUID REFERENCES herbs (id),
    manufacturer_id     UUID NOT NULL REFERENCES actors (id),
    manufacturing_date  DATE NOT NULL,
    expiry_date         DATE,
    final_tests_passed  BOOLEAN NOT NULL,
    blockchain_hash     CHAR(64) NOT NULL REFERENCES chain_events (block_hash),
    created_at          TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

EVENT_COLUMNS = """
    id, batch_id, herb_id, event_type, actor_id, gps_coordinates, metadata,
    occurred_at, created_at, previous_hash, block_hash, is_valid,
    validation_errors, validation_warnings
"""

PRODUCT_COLUMNS = """
    id, qr_code, batch_id, product_name, herb_id, manufacturer_id,
    manufacturing_date, expiry_date, final_tests_passed, blockchain_hash, created_at
"""

# Violations of these mean another writer extended the batch first
_RACE_CONSTRAINTS = frozenset({
    "chain_events_link_key",
    "chain_events_genesis_key",
    "chain_events_batch_id_created_at_key",
    "batch_heads_pkey",
})


class PostgresLedgerStore(LedgerStore):
    """PostgreSQL implementation of LedgerStore (psycopg2)."""

    STATEMENT_TIMEOUT_MS = 10000

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        self._connection_factory = connection_factory
        self._statement_timeout_ms = statement_timeout_ms

    @contextmanager
    def _transaction(self) -> Generator[Any, None, None]:
        """
        Yield a cursor inside one transaction and translate driver errors.

        Commits on success, rolls back on any exception, always closes.
        """
        try:
            conn = self._connection_factory()
        except psycopg2.OperationalError as e:
            raise TransientStoreError(f"Could not connect to database: {e}") from e

        cursor = conn.cursor()
        try:
            cursor.execute(
                f"SET LOCAL statement_timeout = '{int(self._statement_timeout_ms)}ms'"
            )
            yield cursor
            conn.commit()
        except psycopg2.errors.UniqueViolation as e:
            conn.rollback()
            constraint = getattr(e.diag, "constraint_name", None)
            if constraint in _RACE_CONSTRAINTS:
                raise ConcurrencyError(f"Batch head moved ({constraint})") from e
            raise DuplicateRecordError(f"Duplicate record ({constraint})") from e
        except psycopg2.errors.SerializationFailure as e:
            conn.rollback()
            raise ConcurrencyError("Serialization failure") from e
        except (psycopg2.OperationalError, psycopg2.errors.QueryCanceled) as e:
            try:
                conn.rollback()
            except psycopg2.Error:
                pass  # connection already gone
            raise TransientStoreError(str(e)) from e
        except psycopg2.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()
            conn.close()

    def create_schema(self) -> None:
        """Create tables, indexes and triggers (idempotent)."""
        with self._transaction() as cursor:
            cursor.execute(SCHEMA_SQL)

    # ---- events ----

    def get_event(self, event_id: UUID) -> Optional[ChainEvent]:
        with self._transaction() as cursor:
            cursor.execute(
                f"SELECT {EVENT_COLUMNS} FROM chain_events WHERE id = %s",
                (event_id,),
            )
            row = cursor.fetchone()
        return self._row_to_event(row) if row else None

    def find_latest_event(
        self,
        batch_id: str,
        event_type: Optional[EventType] = None,
    ) -> Optional[ChainEvent]:
        query = f"SELECT {EVENT_COLUMNS} FROM chain_events WHERE batch_id = %s"
        params: tuple = (batch_id,)
        if event_type is not None:
            query += " AND event_type = %s"
            params += (EventType(event_type).value,)
        query += " ORDER BY created_at DESC LIMIT 1"

        with self._transaction() as cursor:
            cursor.execute(query, params)
            row = cursor.fetchone()
        return self._row_to_event(row) if row else None

    def list_batch_events(self, batch_id: str) -> list[ChainEvent]:
        with self._transaction() as cursor:
            cursor.execute(
                f"SELECT {EVENT_COLUMNS} FROM chain_events "
                "WHERE batch_id = %s ORDER BY created_at",
                (batch_id,),
            )
            rows = cursor.fetchall()
        return [self._row_to_event(row) for row in rows]

    def list_batch_ids(self) -> list[str]:
        with self._transaction() as cursor:
            cursor.execute("SELECT batch_id FROM batch_heads ORDER BY batch_id")
            return [row[0] for row in cursor.fetchall()]

    def insert_event_if_head(
        self,
        event: ChainEvent,
        expected_previous_hash: Optional[str],
    ) -> ChainEvent:
        if event.previous_hash != expected_previous_hash:
            raise HashMismatchError(
                f"Event {event.id} links to {event.previous_hash}, "
                f"expected {expected_previous_hash}"
            )
        if not verify_event_hash(event):
            raise HashMismatchError(
                f"Hash verification failed for event {event.id}: "
                f"claimed {event.block_hash[:16]}..."
            )

        with self._transaction() as cursor:
            if expected_previous_hash is None:
                cursor.execute(
                    """
                    INSERT INTO batch_heads (batch_id, last_block_hash, last_created_at, event_count)
                    VALUES (%s, %s, %s, 1)
                    ON CONFLICT (batch_id) DO NOTHING
                    RETURNING last_created_at
                    """,
                    (event.batch_id, event.block_hash, event.created_at),
                )
            else:
                cursor.execute(
                    """
                    UPDATE batch_heads
                    SET last_block_hash = %s,
                        last_created_at = GREATEST(%s, last_created_at + interval '1 microsecond'),
                        event_count = event_count + 1
                    WHERE batch_id = %s AND last_block_hash = %s
                    RETURNING last_created_at
                    """,
                    (event.block_hash, event.created_at, event.batch_id, expected_previous_hash),
                )
            row = cursor.fetchone()
            if row is None:
                raise ConcurrencyError(
                    f"Batch {event.batch_id} head is no longer {expected_previous_hash}"
                )

            stored = event.model_copy(update={"created_at": row[0]})
            cursor.execute(
                f"INSERT INTO chain_events ({EVENT_COLUMNS}) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
                (
                    stored.id,
                    stored.batch_id,
                    stored.herb_id,
                    stored.event_type.value,
                    stored.actor_id,
                    stored.gps_coordinates,
                    Json(stored.metadata),
                    stored.timestamp,
                    stored.created_at,
                    stored.previous_hash,
                    stored.block_hash,
                    stored.is_valid,
                    Json(stored.validation_errors),
                    Json(stored.validation_warnings),
                ),
            )
        return stored

    def count_events(self) -> int:
        with self._transaction() as cursor:
            cursor.execute("SELECT COUNT(*) FROM chain_events")
            return cursor.fetchone()[0]

    # ---- products ----

    def insert_product(self, product: Product) -> Product:
        with self._transaction() as cursor:
            cursor.execute(
                f"INSERT INTO products ({PRODUCT_COLUMNS}) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now())) "
                "RETURNING created_at",
                (
                    product.id,
                    product.qr_code,
                    product.batch_id,
                    product.product_name,
                    product.herb_id,
                    product.manufacturer_id,
                    product.manufacturing_date,
                    product.expiry_date,
                    product.final_tests_passed,
                    product.blockchain_hash,
                    product.created_at,
                ),
            )
            created_at = cursor.fetchone()[0]
        return product.model_copy(update={"created_at": created_at})

    def find_product_by_code(self, qr_code: str) -> Optional[Product]:
        return self._find_product("qr_code", qr_code)

    def find_product_by_batch(self, batch_id: str) -> Optional[Product]:
        return self._find_product("batch_id", batch_id)

    def _find_product(self, column: str, value: str) -> Optional[Product]:
        with self._transaction() as cursor:
            cursor.execute(
                f"SELECT {PRODUCT_COLUMNS} FROM products WHERE {column} = %s",
                (value,),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return Product(
            id=row[0],
            qr_code=row[1],
            batch_id=row[2],
            product_name=row[3],
            herb_id=row[4],
            manufacturer_id=row[5],
            manufacturing_date=row[6],
            expiry_date=row[7],
            final_tests_passed=row[8],
            blockchain_hash=row[9].strip(),
            created_at=row[10],
        )

    # ---- reference data ----

    def add_actor(self, actor: Actor) -> Actor:
        with self._transaction() as cursor:
            cursor.execute(
                "INSERT INTO actors (id, name, role, location, contact_info, created_at) "
                "VALUES (%s, %s, %s, %s, %s, COALESCE(%s, now()))",
                (
                    actor.id,
                    actor.name,
                    actor.role.value,
                    actor.location,
                    Json(actor.contact_info) if actor.contact_info is not None else None,
                    actor.created_at,
                ),
            )
        return actor

    def get_actor(self, actor_id: UUID) -> Optional[Actor]:
        return self._find_actor("id = %s", actor_id)

    def find_actor_by_name(self, name: str) -> Optional[Actor]:
        return self._find_actor("lower(name) = lower(%s)", name.strip())

    def _find_actor(self, where: str, value: Any) -> Optional[Actor]:
        with self._transaction() as cursor:
            cursor.execute(
                f"SELECT id, name, role, location, contact_info, created_at FROM actors WHERE {where}",
                (value,),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return Actor(
            id=row[0],
            name=row[1],
            role=row[2],
            location=row[3],
            contact_info=row[4],
            created_at=row[5],
        )

    def add_herb(self, herb: Herb) -> Herb:
        with self._transaction() as cursor:
            cursor.execute(
                "INSERT INTO herbs (id, name, scientific_name, conservation_status, "
                "harvest_season, approved_regions, created_at) "
                "VALUES (%s, %s, %s, %s, %s, %s, COALESCE(%s, now()))",
                (
                    herb.id,
                    herb.name,
                    herb.scientific_name,
                    herb.conservation_status,
                    list(herb.harvest_season),
                    Json([region.model_dump() for region in herb.approved_regions]),
                    herb.created_at,
                ),
            )
        return herb

    def get_herb(self, herb_id: UUID) -> Optional[Herb]:
        return self._find_herb("id = %s", herb_id)

    def find_herb_by_name(self, name: str) -> Optional[Herb]:
        return self._find_herb("lower(name) = lower(%s)", name.strip())

    def _find_herb(self, where: str, value: Any) -> Optional[Herb]:
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT id, name, scientific_name, conservation_status, harvest_season, "
                f"approved_regions, created_at FROM herbs WHERE {where}",
                (value,),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return Herb(
            id=row[0],
            name=row[1],
            scientific_name=row[2],
            conservation_status=row[3],
            harvest_season=list(row[4] or []),
            approved_regions=[ApprovedRegion(**region) for region in (row[5] or [])],
            created_at=row[6],
        )

    @staticmethod
    def _row_to_event(row: tuple) -> ChainEvent:
        return ChainEvent(
            id=row[0],
            batch_id=row[1],
            herb_id=row[2],
            event_type=EventType(row[3]),
            actor_id=row[4],
            gps_coordinates=row[5],
            metadata=row[6] or {},
            timestamp=row[7],
            created_at=row[8],
            previous_hash=row[9].strip() if row[9] else None,
            block_hash=row[10].strip(),
            is_valid=row[11],
            validation_errors=row[12] or [],
            validation_warnings=row[13] or [],
        )
