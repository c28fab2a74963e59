"""
Demo Data

Reference actors and herbs, plus the two sample journeys:
- ASH-2024-001: harvest -> processing -> passing test -> product
- ASH-2024-002-FAIL: harvest -> processing -> failing test (no product)

Seeding is idempotent: existing actors, herbs and batches are left alone.
"""

from datetime import datetime, timezone
from typing import Optional

from .core.ledger import LedgerService
from .db.store import LedgerStore
from .observability import get_logger
from .schemas import Actor, ActorRole, ApprovedRegion, Herb, Product

logger = get_logger(__name__)

PASSING_BATCH = "ASH-2024-001"
FAILING_BATCH = "ASH-2024-002-FAIL"

FARMER = "Ravi Kumar"
PROCESSOR = "Ayur Processing Ltd"
LABORATORY = "Quality Labs Pvt Ltd"
MANUFACTURER = "Himalaya Wellness"
HERB = "Ashwagandha"

# Jaipur
FARM_COORDINATES = (26.9124, 75.7873)


def demo_actors() -> list[Actor]:
    return [
        Actor(
            name=FARMER,
            role=ActorRole.FARMER,
            location="Jaipur, Rajasthan",
            contact_info={"phone": "+91-98290-00001"},
        ),
        Actor(name=PROCESSOR, role=ActorRole.PROCESSOR, location="Jodhpur, Rajasthan"),
        Actor(name=LABORATORY, role=ActorRole.LABORATORY, location="Ahmedabad, Gujarat"),
        Actor(name=MANUFACTURER, role=ActorRole.MANUFACTURER, location="Bengaluru, Karnataka"),
    ]


def demo_herbs() -> list[Herb]:
    return [
        Herb(
            name=HERB,
            scientific_name="Withania somnifera",
            conservation_status="Least Concern",
            harvest_season=[1, 2, 3],
            approved_regions=[
                ApprovedRegion(
                    name="Rajasthan",
                    min_lat=23.0,
                    max_lat=30.2,
                    min_lng=69.5,
                    max_lng=78.3,
                ),
            ],
        ),
    ]


def seed_reference_data(store: LedgerStore) -> int:
    """Register demo actors and herbs that are not present yet. Returns how many were added."""
    added = 0
    for actor in demo_actors():
        if store.find_actor_by_name(actor.name) is None:
            store.add_actor(actor)
            added += 1
    for herb in demo_herbs():
        if store.find_herb_by_name(herb.name) is None:
            store.add_herb(herb)
            added += 1
    logger.info("Reference data seeded", added=added)
    return added


def run_sample_journeys(ledger: LedgerService) -> Optional[Product]:
    """
    Record both demo batches. Batches that already have events are skipped.

    Returns the product minted for the passing batch, when it was minted here.
    """
    product = None
    store = ledger.store

    if store.find_latest_event(PASSING_BATCH) is None:
        ledger.append_harvest_event(
            PASSING_BATCH,
            HERB,
            FARMER,
            coordinates=FARM_COORDINATES,
            metadata={"quantity": "100", "harvest_method": "Hand Picking"},
            timestamp=datetime(2024, 2, 10, 6, 30, tzinfo=timezone.utc),
        )
        ledger.append_processing_event(
            PASSING_BATCH,
            PROCESSOR,
            {"processing_method": "Drying", "temperature": "40°C", "duration": "24 hours"},
            timestamp=datetime(2024, 2, 12, 9, 0, tzinfo=timezone.utc),
        )
        ledger.append_quality_test_event(
            PASSING_BATCH,
            LABORATORY,
            {"moisture": 10.5, "pesticide": "Not Detected", "dna_authenticity": "Confirmed"},
            timestamp=datetime(2024, 2, 14, 11, 0, tzinfo=timezone.utc),
        )
        product = ledger.create_product(PASSING_BATCH, "Ashwagandha Capsules", MANUFACTURER)

    if store.find_latest_event(FAILING_BATCH) is None:
        ledger.append_harvest_event(
            FAILING_BATCH,
            HERB,
            FARMER,
            coordinates=FARM_COORDINATES,
            metadata={"quantity": "50", "harvest_method": "Machine Harvesting"},
            timestamp=datetime(2024, 2, 11, 7, 0, tzinfo=timezone.utc),
        )
        ledger.append_processing_event(
            FAILING_BATCH,
            PROCESSOR,
            {"processing_method": "Grinding", "temperature": "45°C", "duration": "12 hours"},
            timestamp=datetime(2024, 2, 13, 9, 0, tzinfo=timezone.utc),
        )
        ledger.append_quality_test_event(
            FAILING_BATCH,
            LABORATORY,
            {"moisture": 15.5, "pesticide": "Detected", "dna_authenticity": "Confirmed"},
            timestamp=datetime(2024, 2, 15, 11, 0, tzinfo=timezone.utc),
        )

    logger.info("Sample journeys recorded", product=product.qr_code if product else None)
    return product
