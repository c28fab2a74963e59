"""
Coordinate handling.

Coordinates are stored on events as the text "(lat,lng)".
Parsing is forgiving: anything malformed or out of range becomes None,
and callers decide whether that is an error.
"""

import math
import re
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from ..schemas.reference import Coordinates

_PAIR = re.compile(r"^\s*\(?\s*([^,()\s]+)\s*,\s*([^,()\s]+)\s*\)?\s*$")


def format_coordinates(lat: float, lng: float) -> str:
    """Render a lat/lng pair in the stored "(lat,lng)" form."""
    return f"({lat},{lng})"


def parse_coordinates(raw: Any) -> Optional[Coordinates]:
    """
    Parse stored or submitted coordinates.

    Accepts "(lat,lng)" / "lat,lng" strings, (lat, lng) tuples,
    {"lat": .., "lng": ..} dicts and Coordinates instances.
    Order is always latitude first.
    """
    if raw is None:
        return None
    if isinstance(raw, Coordinates):
        return raw

    if isinstance(raw, str):
        match = _PAIR.match(raw)
        if not match:
            return None
        lat, lng = match.group(1), match.group(2)
    elif isinstance(raw, dict):
        lat = raw.get("lat", raw.get("latitude"))
        lng = raw.get("lng", raw.get("longitude"))
    elif isinstance(raw, (list, tuple)) and len(raw) == 2:
        lat, lng = raw
    else:
        return None

    try:
        lat, lng = float(lat), float(lng)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return None

    try:
        return Coordinates(lat=lat, lng=lng)
    except PydanticValidationError:
        return None


def normalize_coordinates(raw: Any) -> Optional[str]:
    """
    Bring submitted coordinates into the stored text form.

    Unparseable input is kept verbatim so the validation engine can
    flag it on the event instead of silently dropping it.
    """
    if raw is None or raw == "":
        return None
    point = parse_coordinates(raw)
    if point is None:
        return raw if isinstance(raw, str) else str(raw)
    return format_coordinates(point.lat, point.lng)
