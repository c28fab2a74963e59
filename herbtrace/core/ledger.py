"""
Ledger Service - The Heart of the System

An append-only, hash-chained record of supply-chain events, one chain
per batch. Nothing is "edited". Things happen.

The ledger:
- Resolves actors and herbs
- Validates each event against the batch head
- Hashes it onto the head
- Appends it only if the head has not moved meanwhile

Rules (enforced in code):
- Events are never updated or deleted
- The first event of a batch is a harvest (otherwise flagged)
- A product requires an intact chain whose latest quality test passed
- One product per batch

ARCHITECTURE NOTE:
- LedgerService: resolution, validation, hashing, retry policy
- LedgerStore: conditional insert, ordering, durability

The store is the single source of truth for the batch head. The
service reads the head, computes the next event against it, and asks
the store to insert "only if the head is still X". A lost race is
retried against the new head.
"""

import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional, TYPE_CHECKING
from uuid import UUID, uuid4

from ..observability import batch_id_var, get_logger, get_metrics
from ..schemas import (
    Actor,
    BatchStatistics,
    ChainEvent,
    ChainIntegrityReport,
    EventDraft,
    EventType,
    Herb,
    Product,
    QualityOutcome,
)
from ..db.store import (
    ConcurrencyError,
    DuplicateRecordError,
    TransientStoreError,
)
from .config import LedgerConfig
from .errors import (
    ChainIntegrityError,
    DuplicateProductError,
    NoEventsFoundError,
    NotFoundError,
    QualityGateNotPassedError,
    SequenceConflictError,
    ValidationError,
)
from .geo import normalize_coordinates
from .hasher import CanonicalSerializationError, Hasher, compute_hash, verify_chain
from .validation import ValidationEngine, evaluate_quality_gate, require_identifiers

if TYPE_CHECKING:
    from ..db.store import LedgerStore

logger = get_logger(__name__)

# Smallest step between two created_at values of one batch
CREATED_AT_TICK = timedelta(microseconds=1)

# Ambient readings the field apps fill in when the producer leaves them out
HARVEST_DEFAULTS = {"temperature": "25°C", "humidity": "60%", "soil_condition": "Good"}
PROCESSING_DEFAULTS = {"temperature": "40°C", "duration": "24 hours"}
MANUFACTURING_DEFAULTS = {"batch_size": "1000 units", "formulation": "Capsules"}

# Lab portals send these short names; the chain stores the long ones
TEST_RESULT_ALIASES = {"moisture": "moisture_content", "pesticide": "pesticide_residue"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _epoch_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _as_utc(moment: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class LedgerService:
    """
    The core ledger service.

    CHAIN INTEGRITY GUARANTEES:
    - previous_hash is None ONLY for the first event of a batch
    - previous_hash equals the block_hash of the batch head at insert time
    - created_at is strictly increasing within a batch
    - Stored events are never modified

    CONCURRENCY GUARANTEES:
    - Two appends racing for the same head: exactly one wins, the other
      retries against the new head (up to max_append_attempts)
    - Transient store failures are retried up to max_transient_retries;
      a retry that finds its own event already stored returns it
    - Appends to different batches never contend
    """

    def __init__(
        self,
        store: Optional["LedgerStore"] = None,
        config: Optional[LedgerConfig] = None,
        engine: Optional[ValidationEngine] = None,
    ):
        """
        Args:
            store: LedgerStore implementation. Defaults to an in-memory store.
            config: Thresholds and retry budgets. Defaults to LedgerConfig().
            engine: Rule table to validate with. Defaults to the standard rules.
        """
        if store is None:
            from ..db.store import InMemoryLedgerStore
            store = InMemoryLedgerStore()

        self._store = store
        self.config = config or LedgerConfig()
        self.engine = engine or ValidationEngine(self.config)

    @property
    def store(self) -> "LedgerStore":
        return self._store

    # ================================================================
    # RESOLUTION
    # ================================================================

    def resolve_actor(self, name: str) -> Actor:
        actor = self._store.find_actor_by_name(name) if name else None
        if actor is None:
            raise NotFoundError(f"Actor not found: {name!r}")
        return actor

    def resolve_herb(self, name: str) -> Herb:
        herb = self._store.find_herb_by_name(name) if name else None
        if herb is None:
            raise NotFoundError(f"Herb not found: {name!r}")
        return herb

    def _require_chain(self, batch_id: str) -> ChainEvent:
        """Return the batch head, or raise when the batch has no events."""
        head = self._store.find_latest_event(batch_id)
        if head is None:
            raise NoEventsFoundError(f"No previous events found for batch {batch_id}")
        return head

    # ================================================================
    # APPEND
    # ================================================================

    def append_event(
        self,
        batch_id: str,
        event_type: EventType | str,
        actor_id: UUID,
        metadata: Optional[dict[str, Any]] = None,
        gps: Any = None,
        timestamp: Optional[datetime] = None,
        herb_id: Optional[UUID] = None,
        event_id: Optional[UUID] = None,
    ) -> ChainEvent:
        """
        Validate, hash and append one event to a batch chain.

        Business-rule failures do not abort the append; they are recorded
        on the event (is_valid, validation_errors, validation_warnings).
        When herb_id is omitted the batch's herb is inherited from its head.

        Passing an event_id that is already stored returns the stored
        event unchanged, so callers can retry safely.

        Raises:
            ValidationError: batch_id, actor_id or event_type missing or unknown,
                or metadata that cannot be canonically serialized
            NotFoundError: actor_id or herb_id does not resolve
            SequenceConflictError: lost the head race max_append_attempts times
            TransientStoreError: store kept failing after max_transient_retries
        """
        if event_id is not None:
            existing = self._store.get_event(event_id)
            if existing is not None:
                logger.info(
                    "Append replayed, returning stored event",
                    event_id=str(event_id),
                    batch_id=existing.batch_id,
                )
                return existing

        timestamp = _as_utc(timestamp or _utcnow())
        try:
            canonical_metadata = Hasher.to_canonical_dict(metadata or {})
        except CanonicalSerializationError as e:
            raise ValidationError(f"Metadata cannot be recorded: {e}") from e

        draft = EventDraft(
            batch_id=batch_id,
            event_type=event_type,
            actor_id=actor_id,
            timestamp=timestamp,
            metadata=canonical_metadata,
            gps_coordinates=normalize_coordinates(gps),
            herb_id=herb_id,
        )
        event_type = require_identifiers(draft)
        draft.event_type = event_type

        # A lab result is hashed with its outcome; a supplied one is checked by the rule table
        if event_type == EventType.QUALITY_TEST and "test_result" not in canonical_metadata:
            outcome = evaluate_quality_gate(canonical_metadata, self.config)
            canonical_metadata["test_result"] = outcome.result.value

        actor = self._store.get_actor(actor_id)
        if actor is None:
            raise NotFoundError(f"Actor not found: {actor_id}")

        herb = None
        if herb_id is not None:
            herb = self._store.get_herb(herb_id)
            if herb is None:
                raise NotFoundError(f"Herb not found: {herb_id}")

        event_id = event_id or uuid4()
        token = batch_id_var.set(batch_id)
        start = time.perf_counter()
        try:
            for attempt in range(1, self.config.max_append_attempts + 1):
                prior = self._store.find_latest_event(batch_id)

                if herb is None and prior is not None and prior.herb_id is not None:
                    herb = self._store.get_herb(prior.herb_id)
                    draft.herb_id = prior.herb_id

                latest_quality_test = None
                if event_type == EventType.MANUFACTURING:
                    latest_quality_test = self._store.find_latest_event(
                        batch_id, EventType.QUALITY_TEST
                    )

                result = self.engine.validate(
                    draft,
                    prior,
                    herb=herb,
                    actor=actor,
                    latest_quality_test=latest_quality_test,
                )

                previous_hash = prior.block_hash if prior else None
                created_at = _utcnow()
                if prior is not None and created_at <= prior.created_at:
                    created_at = prior.created_at + CREATED_AT_TICK

                event = ChainEvent(
                    id=event_id,
                    batch_id=batch_id,
                    herb_id=draft.herb_id,
                    event_type=event_type,
                    actor_id=actor_id,
                    gps_coordinates=draft.gps_coordinates,
                    metadata=canonical_metadata,
                    timestamp=timestamp,
                    created_at=created_at,
                    previous_hash=previous_hash,
                    block_hash=compute_hash(
                        event_type, batch_id, actor_id, canonical_metadata, timestamp, previous_hash
                    ),
                    is_valid=result.is_valid,
                    validation_errors=result.errors,
                    validation_warnings=result.warnings,
                )

                try:
                    stored = self._insert(event, previous_hash)
                except ConcurrencyError:
                    get_metrics().record_head_conflict()
                    logger.debug(
                        "Batch head moved, retrying append",
                        batch_id=batch_id,
                        attempt=attempt,
                    )
                    continue

                latency_ms = (time.perf_counter() - start) * 1000
                get_metrics().record_append(latency_ms, stored.is_valid)
                if stored.is_valid:
                    logger.info(
                        "Event appended",
                        batch_id=batch_id,
                        event_type=event_type.value,
                        event_id=str(stored.id),
                        block_hash=stored.block_hash[:16],
                    )
                else:
                    logger.warning(
                        "Event appended with validation errors",
                        batch_id=batch_id,
                        event_type=event_type.value,
                        event_id=str(stored.id),
                        errors=stored.validation_errors,
                    )
                return stored

            get_metrics().record_sequence_conflict()
            logger.warning(
                "Append abandoned after repeated head conflicts",
                batch_id=batch_id,
                attempts=self.config.max_append_attempts,
            )
            raise SequenceConflictError(batch_id, self.config.max_append_attempts)
        finally:
            batch_id_var.reset(token)

    def _insert(self, event: ChainEvent, previous_hash: Optional[str]) -> ChainEvent:
        """Conditional insert with transient-failure retries."""
        retries = 0
        while True:
            try:
                return self._store.insert_event_if_head(event, previous_hash)
            except TransientStoreError as e:
                if retries >= self.config.max_transient_retries:
                    raise
                retries += 1
                get_metrics().record_transient_retry()
                logger.warning(
                    "Transient store failure, retrying insert",
                    batch_id=event.batch_id,
                    retry=retries,
                    error=str(e),
                )
            except ConcurrencyError:
                # An earlier try may have landed before its error surfaced
                if retries:
                    existing = self._store.get_event(event.id)
                    if existing is not None:
                        return existing
                raise
            except DuplicateRecordError:
                existing = self._store.get_event(event.id)
                if existing is not None and existing.block_hash == event.block_hash:
                    return existing
                raise

    # ================================================================
    # ROLE OPERATIONS
    # ================================================================

    def append_harvest_event(
        self,
        batch_id: str,
        herb_name: str,
        actor_name: str,
        coordinates: Any = None,
        metadata: Optional[dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> ChainEvent:
        """Record a farmer's harvest; opens the batch chain."""
        actor = self.resolve_actor(actor_name)
        herb = self.resolve_herb(herb_name)
        return self.append_event(
            batch_id,
            EventType.HARVEST,
            actor.id,
            {**HARVEST_DEFAULTS, **(metadata or {})},
            gps=coordinates,
            timestamp=timestamp,
            herb_id=herb.id,
        )

    def append_collection_event(
        self,
        batch_id: str,
        actor_name: str,
        metadata: Optional[dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> ChainEvent:
        """Record weighing and condition at the collection point."""
        actor = self.resolve_actor(actor_name)
        head = self._require_chain(batch_id)
        return self.append_event(
            batch_id,
            EventType.COLLECTION,
            actor.id,
            dict(metadata or {}),
            timestamp=timestamp,
            herb_id=head.herb_id,
        )

    def append_processing_event(
        self,
        batch_id: str,
        actor_name: str,
        metadata: Optional[dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> ChainEvent:
        actor = self.resolve_actor(actor_name)
        head = self._require_chain(batch_id)
        return self.append_event(
            batch_id,
            EventType.PROCESSING,
            actor.id,
            {**PROCESSING_DEFAULTS, **(metadata or {})},
            timestamp=timestamp,
            herb_id=head.herb_id,
        )

    def append_quality_test_event(
        self,
        batch_id: str,
        actor_name: str,
        test_results: dict[str, Any],
        timestamp: Optional[datetime] = None,
    ) -> ChainEvent:
        """
        Record a lab test. test_date and certificate_number are filled
        here and test_result is computed on append; a supplied
        test_result is ignored.
        """
        actor = self.resolve_actor(actor_name)
        head = self._require_chain(batch_id)

        metadata = dict(test_results or {})
        for alias, name in TEST_RESULT_ALIASES.items():
            if alias in metadata and name not in metadata:
                metadata[name] = metadata.pop(alias)

        # append_event computes the outcome
        metadata.pop("test_result", None)
        now = _utcnow()
        metadata.setdefault("test_date", _as_utc(timestamp or now).isoformat())
        metadata.setdefault("certificate_number", f"CERT-{batch_id}-{_epoch_millis(now)}")

        event = self.append_event(
            batch_id,
            EventType.QUALITY_TEST,
            actor.id,
            metadata,
            timestamp=timestamp,
            herb_id=head.herb_id,
        )
        if event.metadata.get("test_result") == QualityOutcome.FAIL.value:
            logger.warning(
                "Quality test failed",
                batch_id=batch_id,
                failures=event.validation_errors,
            )
        return event

    # ================================================================
    # PRODUCTS
    # ================================================================

    def create_product(
        self,
        batch_id: str,
        product_name: str,
        manufacturer_name: str,
        manufacturing_date: Optional[date] = None,
    ) -> Product:
        """
        Mint the product for a batch and close its chain with a
        manufacturing event.

        Raises:
            ValidationError: product_name is blank
            NotFoundError: manufacturer unknown
            NoEventsFoundError: batch has no events
            DuplicateProductError: batch already has a product
            ChainIntegrityError: stored chain fails verification
            QualityGateNotPassedError: latest quality test missing, invalid or failed
        """
        if not product_name or not product_name.strip():
            raise ValidationError("product_name is required")

        manufacturer = self.resolve_actor(manufacturer_name)

        events = self._store.list_batch_events(batch_id)
        if not events:
            raise NoEventsFoundError(f"No events found for batch {batch_id}")

        if self._store.find_product_by_batch(batch_id) is not None:
            raise DuplicateProductError(f"Batch {batch_id} already has a product")

        report = verify_chain(events, batch_id)
        if not report.valid:
            logger.error(
                "Refusing product for tampered chain",
                batch_id=batch_id,
                issues=[issue.detail for issue in report.issues],
            )
            raise ChainIntegrityError(batch_id, [issue.detail for issue in report.issues])

        latest_test = next(
            (e for e in reversed(events) if e.event_type == EventType.QUALITY_TEST),
            None,
        )
        if latest_test is None:
            raise QualityGateNotPassedError(f"Batch {batch_id} has no quality test")
        if not latest_test.test_passed:
            raise QualityGateNotPassedError(
                f"Latest quality test for batch {batch_id} did not pass "
                f"(result: {latest_test.metadata.get('test_result', 'unknown')}, "
                f"valid: {latest_test.is_valid})"
            )

        now = _utcnow()
        manufacturing_date = manufacturing_date or now.date()
        qr_code = f"QR-{batch_id}-{_epoch_millis(now)}"

        event = self.append_event(
            batch_id,
            EventType.MANUFACTURING,
            manufacturer.id,
            {
                "product_name": product_name,
                "manufacturing_date": manufacturing_date.isoformat(),
                "qr_code": qr_code,
                **MANUFACTURING_DEFAULTS,
            },
            timestamp=now,
        )
        if not event.is_valid:
            # A failing test slipped in between the check and the append
            raise QualityGateNotPassedError(
                f"Manufacturing event for batch {batch_id} was flagged: "
                + "; ".join(event.validation_errors)
            )

        product = Product(
            qr_code=qr_code,
            batch_id=batch_id,
            product_name=product_name,
            herb_id=event.herb_id,
            manufacturer_id=manufacturer.id,
            manufacturing_date=manufacturing_date,
            expiry_date=manufacturing_date + timedelta(days=self.config.shelf_life_days),
            final_tests_passed=True,
            blockchain_hash=event.block_hash,
            created_at=now,
        )
        try:
            product = self._store.insert_product(product)
        except DuplicateRecordError as e:
            raise DuplicateProductError(f"Batch {batch_id} already has a product") from e

        get_metrics().record_product()
        logger.info(
            "Product created",
            batch_id=batch_id,
            qr_code=qr_code,
            product_name=product_name,
        )
        return product

    # ================================================================
    # QUERIES
    # ================================================================

    def get_batch_events(self, batch_id: str) -> list[ChainEvent]:
        """Return a batch chain in order. Raises NoEventsFoundError when empty."""
        events = self._store.list_batch_events(batch_id)
        if not events:
            raise NoEventsFoundError(f"No events found for batch {batch_id}")
        return events

    def verify_batch(self, batch_id: str) -> ChainIntegrityReport:
        """Re-verify linkage and hashes of a stored batch chain."""
        report = verify_chain(self.get_batch_events(batch_id), batch_id)
        if not report.valid:
            logger.error(
                "Chain integrity check failed",
                batch_id=batch_id,
                issues=[issue.detail for issue in report.issues],
            )
        return report

    def batch_statistics(self) -> BatchStatistics:
        """Count batches by quality state across the whole ledger."""
        total = verified = pending = flagged = 0
        for batch_id in self._store.list_batch_ids():
            events = self._store.list_batch_events(batch_id)
            if not events:
                continue
            total += 1
            tests = [e for e in events if e.event_type == EventType.QUALITY_TEST]
            if not tests:
                pending += 1
            elif tests[-1].test_passed:
                verified += 1
            if any(not e.is_valid for e in events) or any(not t.test_passed for t in tests):
                flagged += 1
        return BatchStatistics(
            total_batches=total,
            verified_batches=verified,
            pending_batches=pending,
            flagged_batches=flagged,
        )
