"""
Canonical Event Schema

Each batch owns a linear chain of events.
Nothing is "edited". Things happen.

Each event:
- Produces a new immutable record
- Is validated (and flagged, never rejected, when rules fail)
- Is hashed
- Is chained to the previous event of the same batch
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt, StrictStr
from pydantic import ValidationError as PydanticValidationError


class EventType(str, Enum):
    """
    All supply-chain event types.
    You can add more later, never remove.
    """
    HARVEST = "harvest"
    COLLECTION = "collection"
    PROCESSING = "processing"
    QUALITY_TEST = "quality_test"
    MANUFACTURING = "manufacturing"


class QualityOutcome(str, Enum):
    """Outcome recorded on quality_test events."""
    PASS = "pass"
    FAIL = "fail"


# ============================================================
# Event Metadata
# One variant per event type; unknown keys are kept so older
# and newer producers can share a chain.
# ============================================================

class _Metadata(BaseModel):
    model_config = ConfigDict(extra="allow")


class HarvestMetadata(_Metadata):
    """Metadata for HARVEST events (recorded by farmers)."""
    quantity: Optional[Union[float, str]] = None
    harvest_method: Optional[str] = None
    temperature: Optional[str] = None
    humidity: Optional[str] = None
    soil_condition: Optional[str] = None


class CollectionMetadata(_Metadata):
    """Metadata for COLLECTION events (weighing at the collection point)."""
    actual_weight: Optional[Union[float, str]] = None
    condition: Optional[str] = None
    notes: Optional[str] = None


class ProcessingMetadata(_Metadata):
    """Metadata for PROCESSING events."""
    processing_method: Optional[str] = None
    temperature: Optional[str] = None
    duration: Optional[str] = None


class QualityTestMetadata(_Metadata):
    """Metadata for QUALITY_TEST events. test_result is computed on append when absent."""
    test_result: Optional[QualityOutcome] = None
    # Strict so that booleans are not read as 0 or 1
    moisture_content: Optional[Union[StrictFloat, StrictInt, StrictStr]] = None
    pesticide_residue: Optional[str] = None
    dna_authenticity: Optional[str] = None
    test_date: Optional[str] = None
    certificate_number: Optional[str] = None


class ManufacturingMetadata(_Metadata):
    """Metadata for MANUFACTURING events."""
    product_name: Optional[str] = None
    manufacturing_date: Optional[str] = None
    qr_code: Optional[str] = None
    batch_size: Optional[str] = None
    formulation: Optional[str] = None


class GenericMetadata(_Metadata):
    """Fallback bag for payloads that do not fit their typed variant."""
    pass


EventMetadata = Union[
    HarvestMetadata,
    CollectionMetadata,
    ProcessingMetadata,
    QualityTestMetadata,
    ManufacturingMetadata,
    GenericMetadata,
]

METADATA_MODELS: dict[EventType, type[_Metadata]] = {
    EventType.HARVEST: HarvestMetadata,
    EventType.COLLECTION: CollectionMetadata,
    EventType.PROCESSING: ProcessingMetadata,
    EventType.QUALITY_TEST: QualityTestMetadata,
    EventType.MANUFACTURING: ManufacturingMetadata,
}


def parse_metadata(event_type: EventType, data: dict[str, Any]) -> EventMetadata:
    """
    Interpret a raw metadata dict as the variant for its event type.

    Never raises for malformed payloads: anything the typed model
    rejects comes back as GenericMetadata with every key preserved.
    """
    model = METADATA_MODELS.get(event_type, GenericMetadata)
    try:
        return model.model_validate(data)
    except PydanticValidationError:
        return GenericMetadata.model_validate(data)


# ============================================================
# Events
# ============================================================

@dataclass
class EventDraft:
    """
    A candidate event, before validation and hashing.

    Identifiers are Optional on purpose: the validation engine is the
    place that rejects a draft with missing identifiers.
    """
    batch_id: Optional[str]
    event_type: Optional[EventType]
    actor_id: Optional[UUID]
    timestamp: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    gps_coordinates: Optional[str] = None
    herb_id: Optional[UUID] = None


class ChainEvent(BaseModel):
    """
    The immutable event record.

    Rules:
    - No UPDATE
    - No DELETE
    - Ever

    Chain Integrity Rules:
    - previous_hash is None ONLY for the first event of a batch
    - previous_hash equals block_hash of the batch's previous event
    - block_hash is recomputable from (event_type, batch_id, actor_id,
      metadata, timestamp, previous_hash)
    """
    id: UUID = Field(..., description="Unique identifier for this event")
    batch_id: str = Field(..., min_length=1, description="Physical lot this event belongs to")
    herb_id: Optional[UUID] = Field(default=None, description="Herb anchoring the batch")
    event_type: EventType
    actor_id: UUID = Field(..., description="Party that attested the event")
    gps_coordinates: Optional[str] = Field(
        default=None,
        description='Stored as "(lat,lng)"',
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    timestamp: datetime = Field(..., description="When the action happened")
    created_at: datetime = Field(..., description="When the record was appended")

    # Hash chain
    previous_hash: Optional[str] = Field(
        default=None,
        description="block_hash of the previous event in this batch. None for the first event.",
    )
    block_hash: str = Field(..., min_length=64, max_length=64)

    # Validation outcome at insertion time
    is_valid: bool = True
    validation_errors: list[str] = Field(default_factory=list)
    validation_warnings: list[str] = Field(default_factory=list)

    @property
    def is_first(self) -> bool:
        return self.previous_hash is None

    @property
    def test_passed(self) -> bool:
        """True for a valid quality_test event whose recorded result is pass."""
        return (
            self.event_type == EventType.QUALITY_TEST
            and self.is_valid
            and getattr(self.typed_metadata(), "test_result", None) == QualityOutcome.PASS
        )

    def typed_metadata(self) -> EventMetadata:
        return parse_metadata(self.event_type, self.metadata)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "aa0e8400-e29b-41d4-a716-446655440005",
                "batch_id": "ASH-2024-001",
                "event_type": "harvest",
                "actor_id": "880e8400-e29b-41d4-a716-446655440003",
                "gps_coordinates": "(26.9124,75.7873)",
                "metadata": {"quantity": "100", "harvest_method": "Hand Picking"},
                "timestamp": "2024-02-10T06:30:00Z",
                "created_at": "2024-02-10T06:30:01Z",
                "previous_hash": None,
                "block_hash": "def456...",
                "is_valid": True,
                "validation_errors": [],
            }
        }
    )
