"""
API Routes for the HerbTrace Ledger

Command endpoints (append-only, no PATCH/PUT/DELETE):
- POST /batches/{batch_id}/harvest        - Farmer records a harvest
- POST /batches/{batch_id}/collection     - Collector records weighing
- POST /batches/{batch_id}/processing     - Processor records a step
- POST /batches/{batch_id}/quality-tests  - Lab records a test
- POST /batches/{batch_id}/product        - Manufacturer mints the product

Query endpoints (read model):
- GET /batches/{batch_id}/events          - Raw chain
- GET /batches/{batch_id}/verify          - Chain integrity report
- GET /provenance/{identifier}            - Consumer journey (product code or batch id)
- GET /statistics                         - Batch counts by quality state
"""

from datetime import date, datetime
from typing import Any, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..core.errors import (
    ChainIntegrityError,
    DuplicateProductError,
    LedgerError,
    NotFoundError,
    QualityGateNotPassedError,
    SequenceConflictError,
    ValidationError,
)
from ..core.ledger import LedgerService
from ..core.provenance import ProvenanceService
from ..db.store import TransientStoreError
from ..schemas import (
    BatchStatistics,
    ChainEvent,
    ChainIntegrityReport,
    Coordinates,
    Product,
    ProvenanceView,
)
from .. import shared_ledger


router = APIRouter()

# ============================================================
# Dependency Injection
# ============================================================

def get_ledger() -> LedgerService:
    return shared_ledger.get_ledger()


def get_provenance() -> ProvenanceService:
    return shared_ledger.get_provenance_service()


# ============================================================
# Error Translation
# ============================================================

_STATUS_BY_ERROR: list[tuple[type[Exception], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationError, 422),
    (QualityGateNotPassedError, status.HTTP_409_CONFLICT),
    (DuplicateProductError, status.HTTP_409_CONFLICT),
    (SequenceConflictError, status.HTTP_409_CONFLICT),
    (ChainIntegrityError, status.HTTP_409_CONFLICT),
    (TransientStoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def to_http_error(error: Exception) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


# ============================================================
# Request Models
# ============================================================

class HarvestRequest(BaseModel):
    """Request to record a harvest."""
    herb_name: str = Field(..., min_length=1)
    actor_name: str = Field(..., min_length=1)
    # Raw dicts and strings are accepted so malformed readings get flagged, not refused
    coordinates: Optional[Union[Coordinates, dict[str, Any], str]] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None


class StepRequest(BaseModel):
    """Request to record a collection or processing step."""
    actor_name: str = Field(..., min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None


class QualityTestRequest(BaseModel):
    """Request to record a lab test. test_result is computed server-side."""
    actor_name: str = Field(..., min_length=1)
    test_results: dict[str, Any]
    timestamp: Optional[datetime] = None


class ProductRequest(BaseModel):
    """Request to mint the product for a batch."""
    product_name: str = Field(..., min_length=1)
    manufacturer_name: str = Field(..., min_length=1)
    manufacturing_date: Optional[date] = None


# ============================================================
# Command Endpoints (Append-Only Operations)
# ============================================================

@router.post(
    "/batches/{batch_id}/harvest",
    response_model=ChainEvent,
    status_code=status.HTTP_201_CREATED,
    tags=["Ledger Commands"],
    summary="Record a harvest",
)
def record_harvest(
    batch_id: str,
    request: HarvestRequest,
    ledger: LedgerService = Depends(get_ledger),
):
    """
    Open (or extend) a batch chain with a harvest event.

    Geo-fence and season findings are recorded on the event;
    they never reject the request.
    """
    coordinates = request.coordinates
    if isinstance(coordinates, Coordinates):
        coordinates = (coordinates.lat, coordinates.lng)
    try:
        return ledger.append_harvest_event(
            batch_id,
            request.herb_name,
            request.actor_name,
            coordinates=coordinates,
            metadata=request.metadata,
            timestamp=request.timestamp,
        )
    except (LedgerError, TransientStoreError) as e:
        raise to_http_error(e)


@router.post(
    "/batches/{batch_id}/collection",
    response_model=ChainEvent,
    status_code=status.HTTP_201_CREATED,
    tags=["Ledger Commands"],
    summary="Record collection and weighing",
)
def record_collection(
    batch_id: str,
    request: StepRequest,
    ledger: LedgerService = Depends(get_ledger),
):
    try:
        return ledger.append_collection_event(
            batch_id, request.actor_name, request.metadata, timestamp=request.timestamp
        )
    except (LedgerError, TransientStoreError) as e:
        raise to_http_error(e)


@router.post(
    "/batches/{batch_id}/processing",
    response_model=ChainEvent,
    status_code=status.HTTP_201_CREATED,
    tags=["Ledger Commands"],
    summary="Record a processing step",
)
def record_processing(
    batch_id: str,
    request: StepRequest,
    ledger: LedgerService = Depends(get_ledger),
):
    try:
        return ledger.append_processing_event(
            batch_id, request.actor_name, request.metadata, timestamp=request.timestamp
        )
    except (LedgerError, TransientStoreError) as e:
        raise to_http_error(e)


@router.post(
    "/batches/{batch_id}/quality-tests",
    response_model=ChainEvent,
    status_code=status.HTTP_201_CREATED,
    tags=["Ledger Commands"],
    summary="Record a quality test",
)
def record_quality_test(
    batch_id: str,
    request: QualityTestRequest,
    ledger: LedgerService = Depends(get_ledger),
):
    """
    Record lab measurements. The response carries the computed
    test_result; a failing test is still recorded (with is_valid=false).
    """
    try:
        return ledger.append_quality_test_event(
            batch_id, request.actor_name, request.test_results, timestamp=request.timestamp
        )
    except (LedgerError, TransientStoreError) as e:
        raise to_http_error(e)


@router.post(
    "/batches/{batch_id}/product",
    response_model=Product,
    status_code=status.HTTP_201_CREATED,
    tags=["Ledger Commands"],
    summary="Create the product for a batch",
)
def create_product(
    batch_id: str,
    request: ProductRequest,
    ledger: LedgerService = Depends(get_ledger),
):
    """
    Mint the product. Refused with 409 unless the chain is intact and
    its latest quality test passed.
    """
    try:
        return ledger.create_product(
            batch_id,
            request.product_name,
            request.manufacturer_name,
            manufacturing_date=request.manufacturing_date,
        )
    except (LedgerError, TransientStoreError) as e:
        raise to_http_error(e)


# ============================================================
# Query Endpoints (Read Model)
# ============================================================

@router.get(
    "/batches/{batch_id}/events",
    response_model=list[ChainEvent],
    tags=["Queries"],
    summary="List a batch chain",
)
def list_batch_events(
    batch_id: str,
    ledger: LedgerService = Depends(get_ledger),
):
    try:
        return ledger.get_batch_events(batch_id)
    except (LedgerError, TransientStoreError) as e:
        raise to_http_error(e)


@router.get(
    "/batches/{batch_id}/verify",
    response_model=ChainIntegrityReport,
    tags=["Queries"],
    summary="Verify a batch chain",
)
def verify_batch(
    batch_id: str,
    ledger: LedgerService = Depends(get_ledger),
):
    try:
        return ledger.verify_batch(batch_id)
    except (LedgerError, TransientStoreError) as e:
        raise to_http_error(e)


@router.get(
    "/provenance/{identifier}",
    response_model=ProvenanceView,
    tags=["Queries"],
    summary="Trace a product or batch",
)
def get_provenance_view(
    identifier: str,
    verify: bool = Query(True, description="Re-verify the hash chain"),
    strict: bool = Query(False, description="Fail with 409 on a broken chain"),
    provenance: ProvenanceService = Depends(get_provenance),
):
    """
    Reconstruct the journey behind a product code (QR-...) or batch id.
    """
    try:
        return provenance.get_provenance(identifier, verify=verify, strict=strict)
    except (LedgerError, TransientStoreError) as e:
        raise to_http_error(e)


@router.get(
    "/statistics",
    response_model=BatchStatistics,
    tags=["Queries"],
    summary="Batch counts by quality state",
)
def batch_statistics(ledger: LedgerService = Depends(get_ledger)):
    try:
        return ledger.batch_statistics()
    except TransientStoreError as e:
        raise to_http_error(e)
