"""
Ledger Store Abstraction

This module defines the LedgerStore interface and the in-memory
implementation. The PostgreSQL implementation lives in postgres.py.

The store is responsible for:
- Conditional append: "insert this event only if the batch head is still X"
- Ordering: events of one batch never share a created_at
- Reference data lookups (actors, herbs) and product storage

The LedgerService retains responsibility for:
- Validation
- Hashing
- Retrying lost races

APPEND CONTRACT:

    prior = store.find_latest_event(batch_id)
    # ... validate, hash against prior.block_hash ...
    store.insert_event_if_head(event, expected_previous_hash=prior.block_hash)

If another writer extended the batch in between, insert_event_if_head
raises ConcurrencyError and nothing is written.
"""

from abc import ABC, abstractmethod
from datetime import timedelta
from threading import Lock
from typing import Optional
from uuid import UUID

from ..core.hasher import verify_event_hash
from ..schemas import Actor, ChainEvent, EventType, Herb, Product

# Smallest step between two created_at values of the same batch
CREATED_AT_TICK = timedelta(microseconds=1)


# ============================================================
# EXCEPTIONS
# ============================================================

class StoreError(Exception):
    """Base exception for store errors."""
    pass


class ConcurrencyError(StoreError):
    """Raised when the batch head moved between read and insert."""
    pass


class TransientStoreError(StoreError):
    """Raised for failures that may succeed on retry (connection drops, timeouts)."""
    pass


class DuplicateRecordError(StoreError):
    """Raised when a record with the same identity already exists."""
    pass


class HashMismatchError(StoreError):
    """Raised when an event's block_hash does not match its content."""
    pass


# ============================================================
# INTERFACE
# ============================================================

class LedgerStore(ABC):
    """
    Abstract base class for ledger persistence.

    Reads take no locks. Appends to different batches never contend.
    """

    # ---- events ----

    @abstractmethod
    def get_event(self, event_id: UUID) -> Optional[ChainEvent]:
        """Return one event by id."""
        pass

    @abstractmethod
    def find_latest_event(
        self,
        batch_id: str,
        event_type: Optional[EventType] = None,
    ) -> Optional[ChainEvent]:
        """
        Return the most recent event of a batch (the head), or the most
        recent event of the given type when event_type is set.
        """
        pass

    @abstractmethod
    def list_batch_events(self, batch_id: str) -> list[ChainEvent]:
        """Return a batch's events ordered by created_at ascending."""
        pass

    @abstractmethod
    def list_batch_ids(self) -> list[str]:
        pass

    @abstractmethod
    def insert_event_if_head(
        self,
        event: ChainEvent,
        expected_previous_hash: Optional[str],
    ) -> ChainEvent:
        """
        Append an event if the batch head's block_hash is still
        expected_previous_hash (None: the batch must be empty).

        Returns the stored event. Its created_at may be moved forward to
        keep the batch strictly ordered.

        Raises:
            ConcurrencyError: The head moved
            DuplicateRecordError: An event with this id already exists
            HashMismatchError: block_hash does not match the content
            TransientStoreError: Retryable backend failure
        """
        pass

    @abstractmethod
    def count_events(self) -> int:
        pass

    # ---- products ----

    @abstractmethod
    def insert_product(self, product: Product) -> Product:
        """
        Raises:
            DuplicateRecordError: The batch or the qr_code already has a product
        """
        pass

    @abstractmethod
    def find_product_by_code(self, qr_code: str) -> Optional[Product]:
        pass

    @abstractmethod
    def find_product_by_batch(self, batch_id: str) -> Optional[Product]:
        pass

    # ---- reference data ----

    @abstractmethod
    def add_actor(self, actor: Actor) -> Actor:
        pass

    @abstractmethod
    def get_actor(self, actor_id: UUID) -> Optional[Actor]:
        pass

    @abstractmethod
    def find_actor_by_name(self, name: str) -> Optional[Actor]:
        """Case-insensitive exact match on display name."""
        pass

    @abstractmethod
    def add_herb(self, herb: Herb) -> Herb:
        pass

    @abstractmethod
    def get_herb(self, herb_id: UUID) -> Optional[Herb]:
        pass

    @abstractmethod
    def find_herb_by_name(self, name: str) -> Optional[Herb]:
        """Case-insensitive exact match on common name."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryLedgerStore(LedgerStore):
    """
    In-memory implementation of LedgerStore.

    Suitable for:
    - Development
    - Testing
    - Single-process demos

    NOT suitable for:
    - Production (no durability)
    - Multi-instance deployments (no shared state)

    Each batch has its own lock, held only for the compare-and-insert.
    """

    def __init__(self):
        self._events: dict[str, list[ChainEvent]] = {}
        self._events_by_id: dict[UUID, ChainEvent] = {}
        self._batch_locks: dict[str, Lock] = {}
        self._registry_lock = Lock()

        self._products: dict[str, Product] = {}  # batch_id -> product
        self._product_codes: dict[str, str] = {}  # qr_code -> batch_id

        self._actors: dict[UUID, Actor] = {}
        self._herbs: dict[UUID, Herb] = {}

    def _batch_lock(self, batch_id: str) -> Lock:
        with self._registry_lock:
            lock = self._batch_locks.get(batch_id)
            if lock is None:
                lock = self._batch_locks[batch_id] = Lock()
            return lock

    # ---- events ----

    def get_event(self, event_id: UUID) -> Optional[ChainEvent]:
        return self._events_by_id.get(event_id)

    def find_latest_event(
        self,
        batch_id: str,
        event_type: Optional[EventType] = None,
    ) -> Optional[ChainEvent]:
        events = self._events.get(batch_id, [])
        for event in reversed(events):
            if event_type is None or event.event_type == event_type:
                return event
        return None

    def list_batch_events(self, batch_id: str) -> list[ChainEvent]:
        return list(self._events.get(batch_id, []))

    def list_batch_ids(self) -> list[str]:
        return sorted(self._events)

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

        with self._batch_lock(event.batch_id):
            if event.id in self._events_by_id:
                raise DuplicateRecordError(f"Event {event.id} already exists")

            chain = self._events.get(event.batch_id, [])
            head = chain[-1] if chain else None
            head_hash = head.block_hash if head else None

            if head_hash != expected_previous_hash:
                raise ConcurrencyError(
                    f"Batch {event.batch_id} head is {head_hash}, "
                    f"expected {expected_previous_hash}"
                )

            if head is not None and event.created_at <= head.created_at:
                event = event.model_copy(
                    update={"created_at": head.created_at + CREATED_AT_TICK}
                )

            self._events.setdefault(event.batch_id, []).append(event)
            self._events_by_id[event.id] = event
            return event

    def count_events(self) -> int:
        return len(self._events_by_id)

    # ---- products ----

    def insert_product(self, product: Product) -> Product:
        with self._registry_lock:
            if product.batch_id in self._products:
                raise DuplicateRecordError(f"Batch {product.batch_id} already has a product")
            if product.qr_code in self._product_codes:
                raise DuplicateRecordError(f"Product code {product.qr_code} already exists")
            self._products[product.batch_id] = product
            self._product_codes[product.qr_code] = product.batch_id
            return product

    def find_product_by_code(self, qr_code: str) -> Optional[Product]:
        batch_id = self._product_codes.get(qr_code)
        return self._products.get(batch_id) if batch_id is not None else None

    def find_product_by_batch(self, batch_id: str) -> Optional[Product]:
        return self._products.get(batch_id)

    # ---- reference data ----

    def add_actor(self, actor: Actor) -> Actor:
        with self._registry_lock:
            if self._find_by_name(self._actors.values(), actor.name) is not None:
                raise DuplicateRecordError(f"Actor named {actor.name!r} already exists")
            self._actors[actor.id] = actor
            return actor

    def get_actor(self, actor_id: UUID) -> Optional[Actor]:
        return self._actors.get(actor_id)

    def find_actor_by_name(self, name: str) -> Optional[Actor]:
        return self._find_by_name(self._actors.values(), name)

    def add_herb(self, herb: Herb) -> Herb:
        with self._registry_lock:
            if self._find_by_name(self._herbs.values(), herb.name) is not None:
                raise DuplicateRecordError(f"Herb named {herb.name!r} already exists")
            self._herbs[herb.id] = herb
            return herb

    def get_herb(self, herb_id: UUID) -> Optional[Herb]:
        return self._herbs.get(herb_id)

    def find_herb_by_name(self, name: str) -> Optional[Herb]:
        return self._find_by_name(self._herbs.values(), name)

    @staticmethod
    def _find_by_name(records, name: str):
        wanted = name.strip().casefold()
        for record in records:
            if record.name.casefold() == wanted:
                return record
        return None

    def clear(self) -> None:
        """Drop everything (for testing only)."""
        with self._registry_lock:
            self._events.clear()
            self._events_by_id.clear()
            self._batch_locks.clear()
            self._products.clear()
            self._product_codes.clear()
            self._actors.clear()
            self._herbs.clear()
