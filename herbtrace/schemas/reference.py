"""
Reference Data Schemas

Actors and herbs are owned by the surrounding platform.
The ledger only reads them: actors to attribute events,
herbs to anchor a batch and to geo-fence harvests.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class ActorRole(str, Enum):
    """Roles a party can hold in the supply chain."""
    FARMER = "farmer"
    COLLECTOR = "collector"
    PROCESSOR = "processor"
    LABORATORY = "laboratory"
    MANUFACTURER = "manufacturer"
    CONSUMER = "consumer"
    ADMIN = "admin"


class Actor(BaseModel):
    """A registered party that can attest supply-chain events."""
    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, description="Display name, unique per directory")
    role: ActorRole
    location: Optional[str] = None
    contact_info: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None


class Coordinates(BaseModel):
    """A WGS84 latitude/longitude pair."""
    lat: float = Field(..., ge=-90.0, le=90.0)
    lng: float = Field(..., ge=-180.0, le=180.0)


class ApprovedRegion(BaseModel):
    """
    A named bounding box where a herb may be harvested.

    Boxes are inclusive on every edge.
    """
    name: str
    min_lat: float = Field(..., ge=-90.0, le=90.0)
    max_lat: float = Field(..., ge=-90.0, le=90.0)
    min_lng: float = Field(..., ge=-180.0, le=180.0)
    max_lng: float = Field(..., ge=-180.0, le=180.0)

    def contains(self, point: Coordinates) -> bool:
        return (
            self.min_lat <= point.lat <= self.max_lat
            and self.min_lng <= point.lng <= self.max_lng
        )


class Herb(BaseModel):
    """
    A herb species known to the catalog.

    harvest_season lists month numbers (1-12). Empty means "any time".
    approved_regions empty means the species is not geo-fenced.
    """
    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1)
    scientific_name: Optional[str] = None
    conservation_status: Optional[str] = None
    harvest_season: list[int] = Field(default_factory=list)
    approved_regions: list[ApprovedRegion] = Field(default_factory=list)
    created_at: Optional[datetime] = None

    def region_containing(self, point: Coordinates) -> Optional[ApprovedRegion]:
        """Return the first approved region containing the point, if any."""
        for region in self.approved_regions:
            if region.contains(point):
                return region
        return None
