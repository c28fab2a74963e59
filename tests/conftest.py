"""Shared fixtures: a fresh in-memory ledger with the demo reference data."""

from datetime import datetime, timezone

import pytest

from herbtrace.core.config import LedgerConfig
from herbtrace.core.ledger import LedgerService
from herbtrace.core.provenance import ProvenanceService
from herbtrace.db.store import InMemoryLedgerStore
from herbtrace.observability import reset_metrics
from herbtrace.schemas import Actor, ActorRole
from herbtrace.seed import FARMER, FARM_COORDINATES, HERB, LABORATORY, PROCESSOR, seed_reference_data

COLLECTOR = "Mandi Collection Centre"

# Inside the Ashwagandha season (Jan-Mar)
IN_SEASON = datetime(2024, 2, 10, 6, 30, tzinfo=timezone.utc)

PASSING_RESULTS = {
    "moisture": 10.5,
    "pesticide": "Not Detected",
    "dna_authenticity": "Confirmed",
}

FAILING_RESULTS = {
    "moisture": 15.5,
    "pesticide": "Detected",
    "dna_authenticity": "Confirmed",
}


@pytest.fixture(autouse=True)
def metrics():
    return reset_metrics()


@pytest.fixture
def store():
    store = InMemoryLedgerStore()
    seed_reference_data(store)
    store.add_actor(Actor(name=COLLECTOR, role=ActorRole.COLLECTOR, location="Jaipur"))
    return store


@pytest.fixture
def config():
    return LedgerConfig()


@pytest.fixture
def ledger(store, config):
    return LedgerService(store, config)


@pytest.fixture
def provenance(store):
    return ProvenanceService(store)


@pytest.fixture
def harvest(ledger):
    """Open a batch with a valid, in-season harvest."""
    def _harvest(batch_id="B-1", **overrides):
        kwargs = {
            "coordinates": FARM_COORDINATES,
            "metadata": {"quantity": "100", "harvest_method": "Hand Picking"},
            "timestamp": IN_SEASON,
        }
        kwargs.update(overrides)
        return ledger.append_harvest_event(batch_id, HERB, FARMER, **kwargs)
    return _harvest


@pytest.fixture
def tested_batch(ledger, harvest):
    """Record harvest -> processing -> quality test and return the batch id."""
    def _tested_batch(batch_id="B-1", results=PASSING_RESULTS):
        harvest(batch_id)
        ledger.append_processing_event(batch_id, PROCESSOR, {"processing_method": "Drying"})
        ledger.append_quality_test_event(batch_id, LABORATORY, dict(results))
        return batch_id
    return _tested_batch
