"""
Hash Chain Primitive

Deterministic serialization and SHA-256 hashing for batch chains.
Same event fields + same previous hash -> same block hash. Always.

If this changes, every stored chain stops verifying.
Breaking changes must bump SERIALIZATION_VERSION.

CANONICAL SERIALIZATION RULES:
1. Version: "__canon_v" injected into every canonical output
2. Dictionary keys: sorted recursively (Unicode codepoint order), strings only
3. Nulls: omitted entirely
4. Empty strings, lists and dicts: preserved
5. Datetimes: timezone-aware, converted to UTC, ISO 8601 with microseconds and Z
6. Dates: YYYY-MM-DD
7. UUIDs: lowercase
8. Enums: value, not name
9. Decimals: string
10. Floats: finite only, shortest round-trip repr (NaN/Infinity rejected).
    Magnitudes of 1e16 and above are rejected too: their exponent form
    comes back from JSONB as an integer. Send those as strings or Decimals.
11. Sets and bytes: rejected (no stable form)
12. JSON output: no whitespace, sorted keys, ASCII only
"""

import hashlib
import hmac
import json
import math
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Optional
from uuid import UUID

from ..schemas.events import ChainEvent, EventType
from ..schemas.provenance import ChainIntegrityIssue, ChainIntegrityReport

_HEX = frozenset("0123456789abcdef")

# repr() switches to exponent notation here
MAX_FLOAT_MAGNITUDE = 1e16


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


class Hasher:
    """
    Canonical serialization and hashing.

    Stateless; everything is a classmethod.
    """

    SERIALIZATION_VERSION = 1

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        if value is None:
            return None

        if isinstance(value, UUID):
            return str(value).lower()

        if isinstance(value, datetime):
            return cls._serialize_datetime(value, path)

        if isinstance(value, date):
            return value.isoformat()

        if isinstance(value, Enum):
            return cls._serialize_value(value.value, path)

        # bool before int: bool is an int subclass
        if isinstance(value, bool):
            return value

        if isinstance(value, int):
            return value

        if isinstance(value, float):
            if not math.isfinite(value):
                raise CanonicalSerializationError(
                    f"Cannot serialize non-finite float {value!r} at {path or '<root>'}"
                )
            if abs(value) >= MAX_FLOAT_MAGNITUDE:
                raise CanonicalSerializationError(
                    f"Cannot serialize float {value!r} at {path or '<root>'}: "
                    f"use a string or Decimal for magnitudes of 1e16 and above"
                )
            return value

        if isinstance(value, Decimal):
            if not value.is_finite():
                raise CanonicalSerializationError(
                    f"Cannot serialize non-finite Decimal {value!r} at {path or '<root>'}"
                )
            return str(value)

        if isinstance(value, str):
            return value

        if isinstance(value, (list, tuple)):
            return [
                cls._serialize_value(v, f"{path}[{i}]")
                for i, v in enumerate(value)
            ]

        if isinstance(value, dict):
            return cls.to_canonical_dict(value, path)

        if hasattr(value, "model_dump"):
            return cls.to_canonical_dict(value.model_dump(mode="python"), path)

        if isinstance(value, (bytes, bytearray)):
            raise CanonicalSerializationError(
                f"Cannot serialize bytes at {path or '<root>'}. Encode to a string first."
            )

        if isinstance(value, (set, frozenset)):
            raise CanonicalSerializationError(
                f"Cannot serialize set at {path or '<root>'}. Sets have no stable ordering."
            )

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path or '<root>'}"
        )

    @classmethod
    def _serialize_datetime(cls, dt: datetime, path: str) -> str:
        """Format: YYYY-MM-DDTHH:MM:SS.ffffffZ"""
        if dt.tzinfo is None:
            raise CanonicalSerializationError(
                f"Datetime at {path or '<root>'} is timezone-naive"
            )
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond:06d}Z"

    @classmethod
    def to_canonical_dict(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        """
        Convert a dict to canonical form: sorted keys, None values dropped,
        every value reduced to a JSON primitive.

        The ledger stores metadata in this form so that what is hashed
        and what is persisted are the same document.
        """
        result = {}
        for key in sorted(data.keys(), key=str):
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Dictionary key at {path or '<root>'} must be string, "
                    f"got {type(key).__name__}"
                )
            key_path = f"{path}.{key}" if path else key
            serialized = cls._serialize_value(data[key], key_path)
            if serialized is not None:
                result[key] = serialized
        return result

    @classmethod
    def canonicalize(cls, data: dict[str, Any] | Any) -> str:
        """Convert a dict (or pydantic model) to its canonical JSON string."""
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")

        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Top-level canonicalization requires a dict, got {type(data).__name__}"
            )

        canonical_dict = {"__canon_v": cls.SERIALIZATION_VERSION, **cls.to_canonical_dict(data)}

        return json.dumps(
            canonical_dict,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def hash_data(cls, data: dict[str, Any] | Any) -> str:
        """Hex SHA-256 of the canonical form (64 lowercase chars)."""
        return hashlib.sha256(cls.canonicalize(data).encode("utf-8")).hexdigest()

    @classmethod
    def hash_event(cls, payload: dict[str, Any], previous_hash: Optional[str] = None) -> str:
        """
        Hash an event payload with chain linkage.

        FORMAT:
        - First event: SHA256(canonical_payload)
        - Chained:     SHA256(previous_hash + ":" + canonical_payload)
        """
        canonical_payload = cls.canonicalize(payload)

        if previous_hash is None:
            chain_input = canonical_payload
        else:
            if not is_block_hash(previous_hash):
                raise CanonicalSerializationError(
                    f"Invalid previous_hash format: {previous_hash!r}. Must be 64 hex characters."
                )
            chain_input = f"{previous_hash.lower()}:{canonical_payload}"

        return hashlib.sha256(chain_input.encode("utf-8")).hexdigest()


def is_block_hash(value: Any) -> bool:
    return isinstance(value, str) and len(value) == 64 and set(value.lower()) <= _HEX


def hash_payload(
    event_type: EventType | str,
    batch_id: str,
    actor_id: UUID | str,
    metadata: dict[str, Any],
    timestamp: datetime,
) -> dict[str, Any]:
    """
    The fields covered by block_hash.

    herb_id and gps_coordinates are deliberately not part of the hash.
    """
    return {
        "event_type": event_type,
        "batch_id": batch_id,
        "actor_id": actor_id,
        "metadata": metadata or {},
        "timestamp": timestamp,
    }


def compute_hash(
    event_type: EventType | str,
    batch_id: str,
    actor_id: UUID | str,
    metadata: dict[str, Any],
    timestamp: datetime,
    previous_hash: Optional[str] = None,
) -> str:
    """Compute the block hash for an event's content and its predecessor's hash."""
    payload = hash_payload(event_type, batch_id, actor_id, metadata, timestamp)
    return Hasher.hash_event(payload, previous_hash)


def verify_event_hash(event: ChainEvent) -> bool:
    """Recompute an event's block hash from its stored fields and compare."""
    try:
        computed = compute_hash(
            event.event_type,
            event.batch_id,
            event.actor_id,
            event.metadata,
            event.timestamp,
            event.previous_hash,
        )
    except CanonicalSerializationError:
        return False
    return hmac.compare_digest(computed, event.block_hash.lower())


def verify_chain(events: Iterable[ChainEvent], batch_id: Optional[str] = None) -> ChainIntegrityReport:
    """
    Walk a batch chain (in created_at order) and report every broken link
    and every block hash that no longer matches its content.

    An empty chain is trivially valid.
    """
    events = list(events)
    if batch_id is None:
        batch_id = events[0].batch_id if events else ""

    issues: list[ChainIntegrityIssue] = []
    expected_previous: Optional[str] = None

    for position, event in enumerate(events, start=1):
        if event.batch_id != batch_id:
            issues.append(ChainIntegrityIssue(
                position=position,
                event_id=event.id,
                kind="linkage",
                detail=f"Event belongs to batch {event.batch_id}, not {batch_id}",
            ))

        if event.previous_hash != expected_previous:
            if expected_previous is None:
                detail = "First event must not reference a previous hash"
            else:
                detail = (
                    f"previous_hash {event.previous_hash} does not match "
                    f"preceding block_hash {expected_previous}"
                )
            issues.append(ChainIntegrityIssue(
                position=position, event_id=event.id, kind="linkage", detail=detail,
            ))

        if not verify_event_hash(event):
            issues.append(ChainIntegrityIssue(
                position=position,
                event_id=event.id,
                kind="hash",
                detail="Recomputed hash does not match stored block_hash",
            ))

        expected_previous = event.block_hash

    return ChainIntegrityReport(
        batch_id=batch_id,
        valid=not issues,
        event_count=len(events),
        head_hash=events[-1].block_hash if events else None,
        issues=issues,
    )
