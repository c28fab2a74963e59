"""
Provenance View Schemas

Read models handed to the presentation layer.
They are derived from the chain and can be rebuilt at any time.
"""

from datetime import date, datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .events import EventType
from .reference import Coordinates


class ChainIntegrityIssue(BaseModel):
    """One broken link or hash mismatch found while walking a chain."""
    position: int = Field(..., description="1-based position in chain order")
    event_id: UUID
    kind: str = Field(..., description="'linkage' or 'hash'")
    detail: str


class ChainIntegrityReport(BaseModel):
    """
    Result of re-verifying a batch chain.

    A failed report is a warning: the events are still returned
    so the data stays inspectable.
    """
    batch_id: str
    valid: bool
    event_count: int
    head_hash: Optional[str] = None
    issues: list[ChainIntegrityIssue] = Field(default_factory=list)


class ActorInfo(BaseModel):
    """Actor display info attached to each event."""
    id: UUID
    name: str
    role: str
    location: Optional[str] = None


class ProvenanceEvent(BaseModel):
    """A chain event enriched for display."""
    id: UUID
    event_type: EventType
    batch_id: str
    timestamp: datetime
    created_at: datetime
    coordinates: Optional[Coordinates] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    actor: Optional[ActorInfo] = None
    previous_hash: Optional[str] = None
    block_hash: str
    is_valid: bool
    validation_errors: list[str] = Field(default_factory=list)
    validation_warnings: list[str] = Field(default_factory=list)


class TimelineStep(BaseModel):
    """One numbered step of the consumer-facing story."""
    step: int
    event_id: UUID
    event_type: EventType
    title: str
    description: str
    status: str = Field(..., description="'verified', 'flagged' or 'failed'")
    occurred_at: datetime
    actor_name: Optional[str] = None
    coordinates: Optional[Coordinates] = None


class ProvenanceSummary(BaseModel):
    total_events: int
    harvest_date: Optional[datetime] = None
    quality_tests_passed: bool
    quality_test_count: int = 0
    is_valid_batch: bool
    chain_intact: Optional[bool] = Field(
        default=None,
        description="None when verification was skipped",
    )


class ProductInfo(BaseModel):
    id: UUID
    product_name: str
    batch_id: str
    qr_code: str
    manufacturing_date: date
    expiry_date: Optional[date] = None
    final_tests_passed: bool
    blockchain_hash: str


class HerbInfo(BaseModel):
    id: UUID
    name: str
    scientific_name: Optional[str] = None
    conservation_status: Optional[str] = None


class ProvenanceView(BaseModel):
    """Everything needed to tell the story of one batch."""
    batch_id: str
    product: Optional[ProductInfo] = None
    herb: Optional[HerbInfo] = None
    events: list[ProvenanceEvent] = Field(default_factory=list)
    timeline: list[TimelineStep] = Field(default_factory=list)
    summary: ProvenanceSummary
    integrity: Optional[ChainIntegrityReport] = None


class BatchStatistics(BaseModel):
    """
    Ledger-wide batch counts for the analytics view.

    The buckets overlap: a batch with a flagged harvest can still be
    verified by a later passing test.
    """
    total_batches: int
    verified_batches: int = Field(..., description="Latest quality test passed")
    pending_batches: int = Field(..., description="No quality test recorded yet")
    flagged_batches: int = Field(..., description="Any invalid event or failed test")
