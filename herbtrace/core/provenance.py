"""
Provenance Reconstructor

Read model for consumers: turns a batch chain back into the journey
from field to shelf.

Views are derived, never stored. Rebuilding one re-reads the chain,
re-verifies it, and re-derives the summary, so a tampered row shows
up the next time anyone scans the product.
"""

from typing import Optional, TYPE_CHECKING
from uuid import UUID

from ..observability import get_logger, get_metrics
from ..schemas import (
    Actor,
    ActorInfo,
    ChainEvent,
    EventType,
    HerbInfo,
    Product,
    ProductInfo,
    ProvenanceEvent,
    ProvenanceSummary,
    ProvenanceView,
    TimelineStep,
)
from .errors import ChainIntegrityError, NotFoundError
from .geo import parse_coordinates
from .hasher import verify_chain

if TYPE_CHECKING:
    from ..db.store import LedgerStore

logger = get_logger(__name__)

STEP_TITLES = {
    EventType.HARVEST: "Harvest",
    EventType.COLLECTION: "Collection & Weighing",
    EventType.PROCESSING: "Processing",
    EventType.QUALITY_TEST: "Quality Verification",
    EventType.MANUFACTURING: "Product Creation",
}


def _describe(event: ChainEvent, actor_name: Optional[str]) -> str:
    """One line of prose per step, built from whatever metadata is present."""
    md = event.metadata
    who = actor_name or "an unknown actor"

    if event.event_type == EventType.HARVEST:
        parts = [f"Harvested by {who}"]
        if md.get("quantity") is not None:
            parts.append(f"quantity {md['quantity']}")
        if md.get("harvest_method"):
            parts.append(f"method {md['harvest_method']}")
        return ", ".join(parts)

    if event.event_type == EventType.COLLECTION:
        text = f"Collected by {who}"
        if md.get("actual_weight") is not None:
            text += f", weighed at {md['actual_weight']}"
        if md.get("condition"):
            text += f" ({md['condition']})"
        return text

    if event.event_type == EventType.PROCESSING:
        text = f"Processed by {who}"
        if md.get("processing_method"):
            text += f" using {md['processing_method']}"
        if md.get("temperature") and md.get("duration"):
            text += f" at {md['temperature']} for {md['duration']}"
        return text

    if event.event_type == EventType.QUALITY_TEST:
        result = str(md.get("test_result", "unknown")).upper()
        text = f"Tested by {who}: {result}"
        if md.get("certificate_number"):
            text += f" (certificate {md['certificate_number']})"
        return text

    text = f"Manufactured by {who}"
    if md.get("product_name"):
        text += f" as {md['product_name']}"
    return text


def _step_status(event: ChainEvent) -> str:
    if event.is_valid:
        return "verified"
    if event.event_type == EventType.QUALITY_TEST:
        return "failed"
    return "flagged"


class ProvenanceService:
    """Builds ProvenanceViews from a LedgerStore."""

    def __init__(self, store: "LedgerStore"):
        self._store = store

    def _resolve(self, identifier: str) -> tuple[str, Optional[Product]]:
        """Product code first, then batch id."""
        product = self._store.find_product_by_code(identifier)
        if product is not None:
            return product.batch_id, product
        return identifier, self._store.find_product_by_batch(identifier)

    def get_provenance(
        self,
        identifier: str,
        *,
        verify: bool = True,
        strict: bool = False,
    ) -> ProvenanceView:
        """
        Reconstruct the journey of a product code or batch id.

        Args:
            identifier: Product code (QR-...) or batch id
            verify: Re-verify linkage and hashes
            strict: Raise instead of reporting a broken chain

        Raises:
            NotFoundError: Neither a product nor a batch matches
            ChainIntegrityError: strict=True and the chain is broken
        """
        if not identifier or not identifier.strip():
            raise NotFoundError("Empty product code or batch id")

        batch_id, product = self._resolve(identifier.strip())
        events = self._store.list_batch_events(batch_id)
        if product is None and not events:
            raise NotFoundError(f"No product or batch found for {identifier!r}")

        integrity = None
        if verify:
            integrity = verify_chain(events, batch_id)
            if not integrity.valid:
                logger.warning(
                    "Provenance served for broken chain",
                    batch_id=batch_id,
                    issues=len(integrity.issues),
                )
                if strict:
                    get_metrics().record_provenance_query(chain_intact=False)
                    raise ChainIntegrityError(
                        batch_id, [issue.detail for issue in integrity.issues]
                    )

        actors = self._load_actors(events)
        enriched = []
        timeline = []
        for position, event in enumerate(events, start=1):
            actor = actors.get(event.actor_id)
            actor_name = actor.name if actor else None
            enriched.append(self._enrich(event, actor))
            timeline.append(TimelineStep(
                step=position,
                event_id=event.id,
                event_type=event.event_type,
                title=STEP_TITLES.get(event.event_type, event.event_type.value.title()),
                description=_describe(event, actor_name),
                status=_step_status(event),
                occurred_at=event.timestamp,
                actor_name=actor_name,
                coordinates=parse_coordinates(event.gps_coordinates),
            ))

        harvests = [e for e in events if e.event_type == EventType.HARVEST]
        tests = [e for e in events if e.event_type == EventType.QUALITY_TEST]
        summary = ProvenanceSummary(
            total_events=len(events),
            harvest_date=harvests[0].timestamp if harvests else None,
            quality_tests_passed=all(test.test_passed for test in tests),
            quality_test_count=len(tests),
            is_valid_batch=all(event.is_valid for event in events),
            chain_intact=integrity.valid if integrity is not None else None,
        )

        get_metrics().record_provenance_query(summary.chain_intact)
        logger.info(
            "Provenance reconstructed",
            batch_id=batch_id,
            events=len(events),
            product=product.qr_code if product else None,
        )

        return ProvenanceView(
            batch_id=batch_id,
            product=self._product_info(product) if product else None,
            herb=self._herb_info(events, product),
            events=enriched,
            timeline=timeline,
            summary=summary,
            integrity=integrity,
        )

    def _load_actors(self, events: list[ChainEvent]) -> dict[UUID, Actor]:
        actors = {}
        for actor_id in {event.actor_id for event in events}:
            actor = self._store.get_actor(actor_id)
            if actor is not None:
                actors[actor_id] = actor
        return actors

    @staticmethod
    def _enrich(event: ChainEvent, actor: Optional[Actor]) -> ProvenanceEvent:
        return ProvenanceEvent(
            id=event.id,
            event_type=event.event_type,
            batch_id=event.batch_id,
            timestamp=event.timestamp,
            created_at=event.created_at,
            coordinates=parse_coordinates(event.gps_coordinates),
            metadata=event.metadata,
            actor=ActorInfo(
                id=actor.id,
                name=actor.name,
                role=actor.role.value,
                location=actor.location,
            ) if actor else None,
            previous_hash=event.previous_hash,
            block_hash=event.block_hash,
            is_valid=event.is_valid,
            validation_errors=event.validation_errors,
            validation_warnings=event.validation_warnings,
        )

    @staticmethod
    def _product_info(product: Product) -> ProductInfo:
        return ProductInfo(
            id=product.id,
            product_name=product.product_name,
            batch_id=product.batch_id,
            qr_code=product.qr_code,
            manufacturing_date=product.manufacturing_date,
            expiry_date=product.expiry_date,
            final_tests_passed=product.final_tests_passed,
            blockchain_hash=product.blockchain_hash,
        )

    def _herb_info(self, events: list[ChainEvent], product: Optional[Product]) -> Optional[HerbInfo]:
        herb_id = next((e.herb_id for e in events if e.herb_id is not None), None)
        if herb_id is None and product is not None:
            herb_id = product.herb_id
        if herb_id is None:
            return None
        herb = self._store.get_herb(herb_id)
        if herb is None:
            return None
        return HerbInfo(
            id=herb.id,
            name=herb.name,
            scientific_name=herb.scientific_name,
            conservation_status=herb.conservation_status,
        )
