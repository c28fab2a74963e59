"""
Validation Engine

Stateless, table-driven business rules for supply-chain events.

Every rule sees the candidate event, the batch head it will be chained
onto, and whatever reference data the ledger resolved (herb, actor,
latest quality test). A rule returns zero or more messages:

- BLOCKING messages go to validation_errors and flip is_valid
- ADVISORY messages go to validation_warnings only

Rule failures never abort an append. The event is recorded with its
findings so the chain stays a faithful account of what was attested.
The only thing that raises is an event that cannot be evaluated at
all (missing batch, actor or event type).
"""

import math
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import Any, Callable, Optional

from ..schemas.events import (
    ChainEvent,
    EventDraft,
    EventMetadata,
    EventType,
    QualityOutcome,
    parse_metadata,
)
from ..schemas.reference import Actor, ActorRole, Herb
from .config import LedgerConfig
from .errors import ValidationError
from .geo import parse_coordinates


class Severity(str, Enum):
    BLOCKING = "blocking"
    ADVISORY = "advisory"


REQUIRED_FIELDS: dict[EventType, tuple[str, ...]] = {
    EventType.HARVEST: ("quantity", "harvest_method"),
    EventType.COLLECTION: ("actual_weight",),
    EventType.PROCESSING: ("processing_method",),
    EventType.QUALITY_TEST: ("moisture_content", "pesticide_residue", "dna_authenticity"),
    EventType.MANUFACTURING: ("product_name",),
}

# Short names lab portals send for the same measurements
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "moisture_content": ("moisture",),
    "pesticide_residue": ("pesticide",),
}

EXPECTED_ROLES: dict[EventType, frozenset[ActorRole]] = {
    EventType.HARVEST: frozenset({ActorRole.FARMER}),
    EventType.COLLECTION: frozenset({ActorRole.COLLECTOR, ActorRole.FARMER}),
    EventType.PROCESSING: frozenset({ActorRole.PROCESSOR}),
    EventType.QUALITY_TEST: frozenset({ActorRole.LABORATORY}),
    EventType.MANUFACTURING: frozenset({ActorRole.MANUFACTURER}),
}

PESTICIDE_CLEAR = "not detected"
DNA_CONFIRMED = "confirmed"


def field_value(metadata: EventMetadata, name: str) -> Any:
    """
    Look up a field on a metadata variant, falling back to its known
    aliases. Aliases are not typed fields, so they live in model_extra.
    """
    value = getattr(metadata, name, None)
    if _is_blank(value):
        extra = metadata.model_extra or {}
        for alias in FIELD_ALIASES.get(name, ()):
            if not _is_blank(extra.get(alias)):
                return extra[alias]
    return value


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _to_number(value: Any) -> Optional[float]:
    """Parse "10.5", "10.5%", 10.5. Returns None for anything else."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip().rstrip("%").strip()
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


# ============================================================
# QUALITY GATE
# Shared by the rule table and the quality-test append
# ============================================================

@dataclass(frozen=True)
class QualityGateOutcome:
    passed: bool
    failures: list[str] = field(default_factory=list)

    @property
    def result(self) -> QualityOutcome:
        return QualityOutcome.PASS if self.passed else QualityOutcome.FAIL


def evaluate_quality_gate(
    test_results: dict[str, Any],
    config: Optional[LedgerConfig] = None,
) -> QualityGateOutcome:
    """
    Apply the pass/fail thresholds to a set of lab measurements.

    A test passes only when moisture <= ceiling, pesticide residue is
    "Not Detected" and DNA authenticity is "Confirmed" (both compared
    case-insensitively). Each breach names the check and the measured
    value. Missing measurements fail the gate without a message of
    their own; the required-fields rule reports them.
    """
    ceiling = (config or LedgerConfig()).moisture_ceiling
    fields = parse_metadata(EventType.QUALITY_TEST, test_results)
    failures: list[str] = []
    complete = True

    moisture = field_value(fields, "moisture_content")
    if _is_blank(moisture):
        complete = False
    else:
        number = _to_number(moisture)
        if number is None:
            failures.append(f"Moisture content is not numeric: {moisture!r}")
        elif number > ceiling:
            failures.append(f"Moisture content {number:g}% exceeds maximum {ceiling:g}%")

    pesticide = field_value(fields, "pesticide_residue")
    if _is_blank(pesticide):
        complete = False
    elif str(pesticide).strip().lower() != PESTICIDE_CLEAR:
        failures.append(f"Pesticide residue check failed: {pesticide} (expected 'Not Detected')")

    dna = field_value(fields, "dna_authenticity")
    if _is_blank(dna):
        complete = False
    elif str(dna).strip().lower() != DNA_CONFIRMED:
        failures.append(f"DNA authenticity not confirmed: {dna}")

    return QualityGateOutcome(passed=complete and not failures, failures=failures)


# ============================================================
# RULE TABLE
# ============================================================

@dataclass(frozen=True)
class RuleContext:
    """Everything a rule may look at."""
    event: EventDraft
    event_type: EventType
    prior_event: Optional[ChainEvent]
    herb: Optional[Herb]
    actor: Optional[Actor]
    latest_quality_test: Optional[ChainEvent]
    config: LedgerConfig


@dataclass(frozen=True)
class Rule:
    """
    A named predicate over an event.

    event_types=None applies the rule to every event type.
    """
    name: str
    check: Callable[[RuleContext], list[str]]
    severity: Severity = Severity.BLOCKING
    event_types: Optional[frozenset[EventType]] = None

    def applies_to(self, event_type: EventType) -> bool:
        return self.event_types is None or event_type in self.event_types


def check_sequencing(ctx: RuleContext) -> list[str]:
    messages = []
    if ctx.prior_event is None and ctx.event_type != EventType.HARVEST:
        messages.append(
            f"First event of batch must be harvest, got {ctx.event_type.value}"
        )

    if ctx.event_type == EventType.MANUFACTURING:
        latest = ctx.latest_quality_test
        if latest is None:
            messages.append("Manufacturing requires a quality test on the batch")
        elif not latest.test_passed:
            recorded = latest.metadata.get("test_result", "unknown")
            messages.append(
                f"Manufacturing requires the latest quality test to pass "
                f"(latest result: {recorded}, valid: {latest.is_valid})"
            )
    return messages


def check_quality_gate(ctx: RuleContext) -> list[str]:
    metadata = ctx.event.metadata
    outcome = evaluate_quality_gate(metadata, ctx.config)
    messages = list(outcome.failures)

    recorded = field_value(parse_metadata(ctx.event_type, metadata), "test_result")
    if recorded is not None:
        recorded_value = recorded.value if isinstance(recorded, QualityOutcome) else str(recorded)
        if recorded_value.strip().lower() != outcome.result.value:
            messages.append(
                f"Recorded test_result '{recorded_value}' contradicts measurements "
                f"({outcome.result.value})"
            )
    return messages


def check_geo_fence(ctx: RuleContext) -> list[str]:
    raw = ctx.event.gps_coordinates
    if raw is None or raw == "":
        return []

    point = parse_coordinates(raw)
    if point is None:
        return [f"Malformed GPS coordinates: {raw!r}"]

    herb = ctx.herb
    if herb is None or not herb.approved_regions:
        return []

    if herb.region_containing(point) is None:
        names = ", ".join(region.name for region in herb.approved_regions)
        return [
            f"Harvest location ({point.lat},{point.lng}) is outside the approved "
            f"regions for {herb.name}: {names}"
        ]
    return []


def check_required_fields(ctx: RuleContext) -> list[str]:
    metadata = parse_metadata(ctx.event_type, ctx.event.metadata)
    return [
        f"Missing required field: {name}"
        for name in REQUIRED_FIELDS.get(ctx.event_type, ())
        if _is_blank(field_value(metadata, name))
    ]


def check_harvest_season(ctx: RuleContext) -> list[str]:
    herb = ctx.herb
    if herb is None or not herb.harvest_season:
        return []
    timestamp = ctx.event.timestamp
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc)
    if timestamp.month not in herb.harvest_season:
        months = ", ".join(str(m) for m in sorted(herb.harvest_season))
        return [
            f"Harvest month {timestamp.month} is outside the declared season "
            f"for {herb.name} (months {months})"
        ]
    return []


def check_actor_role(ctx: RuleContext) -> list[str]:
    actor = ctx.actor
    if actor is None or actor.role == ActorRole.ADMIN:
        return []
    expected = EXPECTED_ROLES.get(ctx.event_type)
    if expected and actor.role not in expected:
        return [
            f"Actor {actor.name} has role '{actor.role.value}', which does not "
            f"normally record {ctx.event_type.value} events"
        ]
    return []


DEFAULT_RULES: tuple[Rule, ...] = (
    Rule("sequencing", check_sequencing),
    Rule("required_fields", check_required_fields),
    Rule(
        "quality_gate",
        check_quality_gate,
        event_types=frozenset({EventType.QUALITY_TEST}),
    ),
    Rule(
        "geo_fence",
        check_geo_fence,
        event_types=frozenset({EventType.HARVEST}),
    ),
    Rule(
        "harvest_season",
        check_harvest_season,
        severity=Severity.ADVISORY,
        event_types=frozenset({EventType.HARVEST}),
    ),
    Rule("actor_role", check_actor_role, severity=Severity.ADVISORY),
)


# ============================================================
# ENGINE
# ============================================================

@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def require_identifiers(event: EventDraft) -> EventType:
    if _is_blank(event.batch_id):
        raise ValidationError("batch_id is required")
    if event.actor_id is None:
        raise ValidationError("actor_id is required")
    if event.event_type is None:
        raise ValidationError("event_type is required")
    try:
        return EventType(event.event_type)
    except ValueError:
        raise ValidationError(f"Unknown event type: {event.event_type!r}") from None


class ValidationEngine:
    """Runs a rule table against candidate events."""

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        rules: tuple[Rule, ...] = DEFAULT_RULES,
    ):
        self.config = config or LedgerConfig()
        self.rules = rules

    def validate(
        self,
        event: EventDraft,
        prior_event: Optional[ChainEvent],
        *,
        herb: Optional[Herb] = None,
        actor: Optional[Actor] = None,
        latest_quality_test: Optional[ChainEvent] = None,
    ) -> ValidationResult:
        """
        Evaluate every applicable rule, in table order.

        Raises:
            ValidationError: batch_id, actor_id or event_type is missing or unknown
        """
        event_type = require_identifiers(event)
        ctx = RuleContext(
            event=event,
            event_type=event_type,
            prior_event=prior_event,
            herb=herb,
            actor=actor,
            latest_quality_test=latest_quality_test,
            config=self.config,
        )

        errors: list[str] = []
        warnings: list[str] = []
        for rule in self.rules:
            if not rule.applies_to(event_type):
                continue
            messages = rule.check(ctx)
            if rule.severity == Severity.BLOCKING:
                errors.extend(messages)
            else:
                warnings.extend(messages)

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def validate(
    event: EventDraft,
    prior_event: Optional[ChainEvent],
    *,
    herb: Optional[Herb] = None,
    actor: Optional[Actor] = None,
    latest_quality_test: Optional[ChainEvent] = None,
    config: Optional[LedgerConfig] = None,
) -> ValidationResult:
    """Validate with the default rule table."""
    return ValidationEngine(config).validate(
        event,
        prior_event,
        herb=herb,
        actor=actor,
        latest_quality_test=latest_quality_test,
    )
