# Canonical Schemas for the HerbTrace Ledger
# These define the contract every recorded supply-chain step must obey.

from .events import (
    ChainEvent,
    CollectionMetadata,
    EventDraft,
    EventMetadata,
    EventType,
    GenericMetadata,
    HarvestMetadata,
    ManufacturingMetadata,
    ProcessingMetadata,
    QualityOutcome,
    QualityTestMetadata,
    parse_metadata,
)
from .reference import Actor, ActorRole, ApprovedRegion, Coordinates, Herb
from .product import Product
from .provenance import (
    ActorInfo,
    BatchStatistics,
    ChainIntegrityIssue,
    ChainIntegrityReport,
    HerbInfo,
    ProductInfo,
    ProvenanceEvent,
    ProvenanceSummary,
    ProvenanceView,
    TimelineStep,
)

__all__ = [
    # Events
    "ChainEvent",
    "EventDraft",
    "EventType",
    "QualityOutcome",
    "EventMetadata",
    "HarvestMetadata",
    "CollectionMetadata",
    "ProcessingMetadata",
    "QualityTestMetadata",
    "ManufacturingMetadata",
    "GenericMetadata",
    "parse_metadata",
    # Reference data
    "Actor",
    "ActorRole",
    "ApprovedRegion",
    "Coordinates",
    "Herb",
    # Product
    "Product",
    # Provenance
    "ActorInfo",
    "BatchStatistics",
    "ChainIntegrityIssue",
    "ChainIntegrityReport",
    "HerbInfo",
    "ProductInfo",
    "ProvenanceEvent",
    "ProvenanceSummary",
    "ProvenanceView",
    "TimelineStep",
]
