"""Tests for the quality gate and the validation rule table."""

from datetime import datetime, timezone
from uuid import uuid4

import pytest

from herbtrace.core.config import LedgerConfig
from herbtrace.core.errors import ValidationError
from herbtrace.core.hasher import compute_hash
from herbtrace.core.validation import (
    Rule,
    Severity,
    ValidationEngine,
    evaluate_quality_gate,
    field_value,
    validate,
)
from herbtrace.schemas import (
    Actor,
    ActorRole,
    ApprovedRegion,
    ChainEvent,
    EventDraft,
    EventType,
    GenericMetadata,
    Herb,
    QualityOutcome,
    QualityTestMetadata,
    parse_metadata,
)

IN_SEASON = datetime(2024, 2, 10, 6, 30, tzinfo=timezone.utc)
OUT_OF_SEASON = datetime(2024, 7, 10, 6, 30, tzinfo=timezone.utc)

ASHWAGANDHA = Herb(
    name="Ashwagandha",
    harvest_season=[1, 2, 3],
    approved_regions=[
        ApprovedRegion(name="Rajasthan", min_lat=23.0, max_lat=30.2, min_lng=69.5, max_lng=78.3),
    ],
)
FARMER = Actor(name="Ravi Kumar", role=ActorRole.FARMER)
LAB = Actor(name="Quality Labs", role=ActorRole.LABORATORY)


def draft(event_type, metadata=None, gps=None, timestamp=IN_SEASON, batch_id="B-1", actor_id=None):
    return EventDraft(
        batch_id=batch_id,
        event_type=event_type,
        actor_id=actor_id if actor_id is not None else FARMER.id,
        timestamp=timestamp,
        metadata=metadata or {},
        gps_coordinates=gps,
    )


def stored(event_type, metadata=None, is_valid=True):
    block_hash = compute_hash(event_type, "B-1", FARMER.id, metadata or {}, IN_SEASON)
    return ChainEvent(
        id=uuid4(),
        batch_id="B-1",
        event_type=event_type,
        actor_id=FARMER.id,
        metadata=metadata or {},
        timestamp=IN_SEASON,
        created_at=IN_SEASON,
        block_hash=block_hash,
        is_valid=is_valid,
    )


HARVEST_FIELDS = {"quantity": "100", "harvest_method": "Hand Picking"}
PASSING_TEST = {"moisture_content": 10.5, "pesticide_residue": "Not Detected", "dna_authenticity": "Confirmed"}


class TestQualityGate:

    def test_passing_measurements(self):
        outcome = evaluate_quality_gate(PASSING_TEST)
        assert outcome.passed
        assert outcome.result == QualityOutcome.PASS
        assert outcome.failures == []

    def test_ceiling_is_inclusive(self):
        assert evaluate_quality_gate({**PASSING_TEST, "moisture_content": 12.0}).passed

    def test_every_breach_is_named(self):
        outcome = evaluate_quality_gate({
            "moisture_content": 15.5,
            "pesticide_residue": "Detected",
            "dna_authenticity": "Adulterated",
        })
        assert not outcome.passed
        assert outcome.result == QualityOutcome.FAIL
        assert outcome.failures == [
            "Moisture content 15.5% exceeds maximum 12%",
            "Pesticide residue check failed: Detected (expected 'Not Detected')",
            "DNA authenticity not confirmed: Adulterated",
        ]

    def test_comparisons_ignore_case_and_percent_sign(self):
        outcome = evaluate_quality_gate({
            "moisture_content": "11.2%",
            "pesticide_residue": "not detected",
            "dna_authenticity": "CONFIRMED",
        })
        assert outcome.passed

    def test_short_aliases_accepted(self):
        outcome = evaluate_quality_gate({
            "moisture": 10.5,
            "pesticide": "Not Detected",
            "dna_authenticity": "Confirmed",
        })
        assert outcome.passed

    def test_missing_measurement_fails_silently(self):
        outcome = evaluate_quality_gate({"moisture_content": 10.5, "dna_authenticity": "Confirmed"})
        assert not outcome.passed
        assert outcome.failures == []

    def test_non_numeric_moisture(self):
        outcome = evaluate_quality_gate({**PASSING_TEST, "moisture_content": "dry"})
        assert not outcome.passed
        assert "not numeric" in outcome.failures[0]

    def test_configured_ceiling(self):
        outcome = evaluate_quality_gate(PASSING_TEST, LedgerConfig(moisture_ceiling=10.0))
        assert outcome.failures == ["Moisture content 10.5% exceeds maximum 10%"]


class TestRules:

    def test_valid_harvest(self):
        result = validate(
            draft(EventType.HARVEST, HARVEST_FIELDS, gps="(26.9124,75.7873)"),
            None,
            herb=ASHWAGANDHA,
            actor=FARMER,
        )
        assert result.is_valid
        assert result.errors == []
        assert result.warnings == []

    def test_first_event_must_be_harvest(self):
        result = validate(draft(EventType.PROCESSING, {"processing_method": "Drying"}), None)
        assert not result.is_valid
        assert "First event of batch must be harvest, got processing" in result.errors

    def test_missing_required_fields(self):
        result = validate(draft(EventType.HARVEST, {"quantity": "  "}), None)
        assert result.errors == [
            "Missing required field: quantity",
            "Missing required field: harvest_method",
        ]

    def test_outside_approved_region_is_blocking(self):
        result = validate(
            draft(EventType.HARVEST, HARVEST_FIELDS, gps="(12.97,77.59)"),
            None,
            herb=ASHWAGANDHA,
        )
        assert not result.is_valid
        assert "outside the approved regions for Ashwagandha: Rajasthan" in result.errors[0]

    def test_region_edges_are_inclusive(self):
        result = validate(
            draft(EventType.HARVEST, HARVEST_FIELDS, gps="(23.0,78.3)"),
            None,
            herb=ASHWAGANDHA,
        )
        assert result.is_valid

    def test_malformed_coordinates_flagged(self):
        result = validate(draft(EventType.HARVEST, HARVEST_FIELDS, gps="north field"), None)
        assert result.errors == ["Malformed GPS coordinates: 'north field'"]

    def test_no_gps_skips_geo_fence(self):
        result = validate(draft(EventType.HARVEST, HARVEST_FIELDS), None, herb=ASHWAGANDHA)
        assert result.is_valid

    def test_out_of_season_is_advisory(self):
        result = validate(
            draft(EventType.HARVEST, HARVEST_FIELDS, timestamp=OUT_OF_SEASON),
            None,
            herb=ASHWAGANDHA,
        )
        assert result.is_valid
        assert result.warnings == [
            "Harvest month 7 is outside the declared season for Ashwagandha (months 1, 2, 3)"
        ]

    def test_unexpected_role_is_advisory(self):
        result = validate(
            draft(EventType.HARVEST, HARVEST_FIELDS, actor_id=LAB.id),
            None,
            actor=LAB,
        )
        assert result.is_valid
        assert "does not normally record harvest events" in result.warnings[0]

    def test_quality_test_result_must_match_measurements(self):
        metadata = {**PASSING_TEST, "moisture_content": 15.5, "test_result": "pass"}
        result = validate(
            draft(EventType.QUALITY_TEST, metadata),
            stored(EventType.HARVEST, HARVEST_FIELDS),
        )
        assert not result.is_valid
        assert any("contradicts measurements" in e for e in result.errors)

    def test_manufacturing_requires_quality_test(self):
        result = validate(
            draft(EventType.MANUFACTURING, {"product_name": "Capsules"}),
            stored(EventType.HARVEST, HARVEST_FIELDS),
        )
        assert result.errors == ["Manufacturing requires a quality test on the batch"]

    def test_manufacturing_requires_latest_test_to_pass(self):
        failed = stored(EventType.QUALITY_TEST, {"test_result": "fail"}, is_valid=False)
        result = validate(
            draft(EventType.MANUFACTURING, {"product_name": "Capsules"}),
            failed,
            latest_quality_test=failed,
        )
        assert not result.is_valid
        assert "latest result: fail" in result.errors[0]

    def test_manufacturing_after_passing_test(self):
        passed = stored(EventType.QUALITY_TEST, {**PASSING_TEST, "test_result": "pass"})
        result = validate(
            draft(EventType.MANUFACTURING, {"product_name": "Capsules"}),
            passed,
            latest_quality_test=passed,
        )
        assert result.is_valid


class TestEngine:

    @pytest.mark.parametrize("field,value", [
        ("batch_id", ""),
        ("actor_id", None),
        ("event_type", None),
        ("event_type", "shipping"),
    ])
    def test_unevaluable_event_raises(self, field, value):
        event = draft(EventType.HARVEST, HARVEST_FIELDS)
        setattr(event, field, value)
        with pytest.raises(ValidationError):
            validate(event, None)

    def test_custom_rule_table(self):
        def no_night_harvests(ctx):
            return ["Harvest recorded at night"] if ctx.event.timestamp.hour < 5 else []

        engine = ValidationEngine(rules=(
            Rule("night", no_night_harvests, severity=Severity.ADVISORY,
                 event_types=frozenset({EventType.HARVEST})),
        ))
        night = draft(EventType.HARVEST, {}, timestamp=IN_SEASON.replace(hour=2))
        result = engine.validate(night, None)
        assert result.is_valid
        assert result.warnings == ["Harvest recorded at night"]

        processing = draft(EventType.PROCESSING, {}, timestamp=IN_SEASON.replace(hour=2))
        assert engine.validate(processing, None).warnings == []



class TestMetadataVariants:

    def test_quality_test_variant(self):
        metadata = parse_metadata(EventType.QUALITY_TEST, {**PASSING_TEST, "lab_notes": "ok"})
        assert isinstance(metadata, QualityTestMetadata)
        assert metadata.moisture_content == 10.5
        assert metadata.model_extra == {"lab_notes": "ok"}

    def test_malformed_payload_falls_back(self):
        metadata = parse_metadata(EventType.QUALITY_TEST, {**PASSING_TEST, "moisture_content": True})
        assert isinstance(metadata, GenericMetadata)
        assert metadata.moisture_content is True
        assert metadata.pesticide_residue == "Not Detected"

    def test_field_value_prefers_long_name(self):
        def read(data):
            return field_value(parse_metadata(EventType.QUALITY_TEST, data), "moisture_content")

        assert read({"moisture_content": 9, "moisture": 14}) == 9
        assert read({"moisture_content": "", "moisture": 14}) == 14

    def test_boolean_moisture_is_not_numeric(self):
        outcome = evaluate_quality_gate({**PASSING_TEST, "moisture_content": True})
        assert not outcome.passed
        assert outcome.failures == ["Moisture content is not numeric: True"]

    def test_fallback_payload_is_still_judged(self):
        result = validate(
            draft(EventType.QUALITY_TEST, {**PASSING_TEST, "pesticide_residue": 5}, actor_id=LAB.id),
            stored(EventType.HARVEST, HARVEST_FIELDS),
        )
        assert not result.is_valid
        assert result.errors == ["Pesticide residue check failed: 5 (expected 'Not Detected')"]

    def test_recorded_result_read_from_variant(self):
        event = stored(EventType.QUALITY_TEST, {**PASSING_TEST, "test_result": "pass"})
        assert event.test_passed
        assert not stored(EventType.QUALITY_TEST, {**PASSING_TEST, "test_result": "fail"}).test_passed
