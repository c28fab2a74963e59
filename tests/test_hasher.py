"""
Tests for canonical serialization and the per-batch hash chain.

Block hashes are the tamper evidence for every batch; a change in
canonical form silently invalidates every stored chain.
"""

import hashlib
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from herbtrace.core.hasher import (
    CanonicalSerializationError,
    Hasher,
    compute_hash,
    is_block_hash,
    verify_chain,
    verify_event_hash,
)
from herbtrace.schemas import ChainEvent, EventType

ACTOR = UUID("550e8400-e29b-41d4-a716-446655440000")
WHEN = datetime(2024, 2, 10, 6, 30, tzinfo=timezone.utc)


def make_chain(batch_id="B-1", count=3):
    """Build a correctly linked chain without touching a store."""
    events = []
    previous = None
    for i in range(count):
        event_type = EventType.HARVEST if i == 0 else EventType.PROCESSING
        metadata = {"step": i}
        timestamp = WHEN + timedelta(hours=i)
        block_hash = compute_hash(event_type, batch_id, ACTOR, metadata, timestamp, previous)
        events.append(ChainEvent(
            id=uuid4(),
            batch_id=batch_id,
            event_type=event_type,
            actor_id=ACTOR,
            metadata=metadata,
            timestamp=timestamp,
            created_at=timestamp,
            previous_hash=previous,
            block_hash=block_hash,
        ))
        previous = block_hash
    return events


class TestCanonicalForm:
    """Same content, same bytes."""

    def test_sorted_keys(self):
        assert Hasher.hash_data({"b": 2, "a": 1}) == Hasher.hash_data({"a": 1, "b": 2})

    def test_recursively_sorted_keys(self):
        data1 = {"outer": {"z": 1, "a": 2}, "inner": {"b": 3, "a": 4}}
        data2 = {"inner": {"a": 4, "b": 3}, "outer": {"a": 2, "z": 1}}
        assert Hasher.canonicalize(data1) == Hasher.canonicalize(data2)

    def test_nulls_omitted(self):
        assert Hasher.canonicalize({"a": 1, "b": None}) == Hasher.canonicalize({"a": 1})

    def test_empty_values_preserved(self):
        assert Hasher.canonicalize({"a": ""}) != Hasher.canonicalize({})
        assert Hasher.canonicalize({"a": []}) != Hasher.canonicalize({})

    def test_version_marker_and_no_whitespace(self):
        canonical = Hasher.canonicalize({"b": 1, "a": "x y"})
        assert canonical == '{"__canon_v":1,"a":"x y","b":1}'

    def test_datetime_normalized_to_utc_with_micros(self):
        ist = timezone(timedelta(hours=5, minutes=30))
        local = datetime(2024, 2, 10, 12, 0, tzinfo=ist)
        assert Hasher.to_canonical_dict({"t": local}) == {"t": "2024-02-10T06:30:00.000000Z"}

    def test_naive_datetime_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="timezone-naive"):
            Hasher.canonicalize({"t": datetime(2024, 2, 10)})

    def test_uuid_lowercase_and_date_iso(self):
        canonical = Hasher.to_canonical_dict({"id": ACTOR, "d": date(2024, 2, 10)})
        assert canonical == {"d": "2024-02-10", "id": str(ACTOR).lower()}

    def test_enum_uses_value(self):
        assert Hasher.to_canonical_dict({"type": EventType.QUALITY_TEST}) == {"type": "quality_test"}

    def test_finite_floats_allowed(self):
        assert Hasher.to_canonical_dict({"moisture": 10.5}) == {"moisture": 10.5}

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), Decimal("NaN")])
    def test_non_finite_numbers_rejected(self, value):
        with pytest.raises(CanonicalSerializationError, match="non-finite"):
            Hasher.canonicalize({"x": value})

    def test_float_below_exponent_form_allowed(self):
        assert Hasher.to_canonical_dict({"x": 9.5e15}) == {"x": 9.5e15}

    @pytest.mark.parametrize("value", [1e16, -2.5e20])
    def test_exponent_form_floats_rejected(self, value):
        with pytest.raises(CanonicalSerializationError, match="string or Decimal"):
            Hasher.canonicalize({"x": value})

    def test_decimal_as_string(self):
        assert Hasher.to_canonical_dict({"x": Decimal("10.50")}) == {"x": "10.50"}

    def test_sets_and_bytes_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="set"):
            Hasher.canonicalize({"x": {1, 2}})
        with pytest.raises(CanonicalSerializationError, match="bytes"):
            Hasher.canonicalize({"x": b"raw"})

    def test_non_string_keys_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="must be string"):
            Hasher.canonicalize({1: "a"})

    def test_top_level_must_be_dict(self):
        with pytest.raises(CanonicalSerializationError, match="requires a dict"):
            Hasher.canonicalize(["a"])

    def test_error_names_the_path(self):
        with pytest.raises(CanonicalSerializationError, match=r"readings\[1\]"):
            Hasher.canonicalize({"readings": [1.0, float("nan")]})


class TestBlockHash:

    def test_first_event_hashes_payload_only(self):
        payload = {
            "event_type": EventType.HARVEST,
            "batch_id": "B-1",
            "actor_id": ACTOR,
            "metadata": {"quantity": "100"},
            "timestamp": WHEN,
        }
        expected = hashlib.sha256(Hasher.canonicalize(payload).encode("utf-8")).hexdigest()
        assert compute_hash(EventType.HARVEST, "B-1", ACTOR, {"quantity": "100"}, WHEN) == expected

    def test_chained_event_prefixes_previous_hash(self):
        previous = "a" * 64
        payload = {
            "event_type": "processing",
            "batch_id": "B-1",
            "actor_id": str(ACTOR),
            "metadata": {},
            "timestamp": WHEN,
        }
        canonical = Hasher.canonicalize(payload)
        expected = hashlib.sha256(f"{previous}:{canonical}".encode("utf-8")).hexdigest()
        assert compute_hash("processing", "B-1", ACTOR, {}, WHEN, previous) == expected

    def test_deterministic(self):
        first = compute_hash(EventType.HARVEST, "B-1", ACTOR, {"a": 1}, WHEN)
        second = compute_hash(EventType.HARVEST, "B-1", ACTOR, {"a": 1}, WHEN)
        assert first == second
        assert is_block_hash(first)

    def test_every_hashed_field_matters(self):
        base = compute_hash(EventType.HARVEST, "B-1", ACTOR, {"a": 1}, WHEN)
        assert compute_hash(EventType.COLLECTION, "B-1", ACTOR, {"a": 1}, WHEN) != base
        assert compute_hash(EventType.HARVEST, "B-2", ACTOR, {"a": 1}, WHEN) != base
        assert compute_hash(EventType.HARVEST, "B-1", uuid4(), {"a": 1}, WHEN) != base
        assert compute_hash(EventType.HARVEST, "B-1", ACTOR, {"a": 2}, WHEN) != base
        assert compute_hash(
            EventType.HARVEST, "B-1", ACTOR, {"a": 1}, WHEN + timedelta(microseconds=1)
        ) != base
        assert compute_hash(EventType.HARVEST, "B-1", ACTOR, {"a": 1}, WHEN, "0" * 64) != base

    def test_malformed_previous_hash_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="64 hex"):
            compute_hash(EventType.HARVEST, "B-1", ACTOR, {}, WHEN, "not-a-hash")

    def test_gps_and_herb_are_not_hashed(self):
        event = make_chain(count=1)[0]
        moved = event.model_copy(update={"gps_coordinates": "(0.0,0.0)", "herb_id": uuid4()})
        assert verify_event_hash(moved)


class TestVerifyChain:

    def test_intact_chain(self):
        events = make_chain()
        report = verify_chain(events, "B-1")
        assert report.valid
        assert report.event_count == 3
        assert report.head_hash == events[-1].block_hash
        assert report.issues == []

    def test_empty_chain_is_valid(self):
        report = verify_chain([], "B-1")
        assert report.valid
        assert report.event_count == 0

    def test_edited_metadata_detected(self):
        events = make_chain()
        events[1] = events[1].model_copy(update={"metadata": {"step": 99}})
        report = verify_chain(events, "B-1")
        assert not report.valid
        assert [(i.position, i.kind) for i in report.issues] == [(2, "hash")]

    def test_broken_link_detected(self):
        events = make_chain()
        del events[1]
        report = verify_chain(events, "B-1")
        assert not report.valid
        assert any(i.kind == "linkage" and i.position == 2 for i in report.issues)

    def test_first_event_must_not_link(self):
        events = make_chain()[1:]
        report = verify_chain(events, "B-1")
        assert not report.valid
        assert "First event" in report.issues[0].detail

    def test_foreign_batch_event_detected(self):
        events = make_chain()
        report = verify_chain(events, "OTHER")
        assert not report.valid
        assert all(i.kind == "linkage" for i in report.issues)
