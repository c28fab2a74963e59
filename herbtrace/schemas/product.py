"""
Finished Product Schema

A product is minted once per batch, after the batch's chain reaches
a passed quality gate. It points back into the chain through the
manufacturing event's block hash.
"""

from datetime import date, datetime
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class Product(BaseModel):
    """A market-ready unit derived from one batch."""
    id: UUID = Field(default_factory=uuid4)
    qr_code: str = Field(..., description="Traceability code printed on the package")
    batch_id: str
    product_name: str = Field(..., min_length=1)
    herb_id: Optional[UUID] = None
    manufacturer_id: UUID
    manufacturing_date: date
    expiry_date: Optional[date] = None
    final_tests_passed: bool = True
    blockchain_hash: str = Field(
        ...,
        min_length=64,
        max_length=64,
        description="block_hash of the manufacturing event",
    )
    created_at: Optional[datetime] = None
