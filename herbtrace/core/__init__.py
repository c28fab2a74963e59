# Core ledger primitives
# The services (herbtrace.core.ledger, herbtrace.core.provenance) depend on
# the store layer and are imported from their own modules.
from .config import LedgerConfig
from .errors import (
    LedgerError,
    NotFoundError,
    NoEventsFoundError,
    ValidationError,
    SequenceConflictError,
    ChainIntegrityError,
    QualityGateNotPassedError,
    DuplicateProductError,
)
from .hasher import (
    Hasher,
    CanonicalSerializationError,
    compute_hash,
    verify_event_hash,
    verify_chain,
)
from .validation import (
    Rule,
    Severity,
    ValidationEngine,
    ValidationResult,
    QualityGateOutcome,
    evaluate_quality_gate,
    validate,
)

__all__ = [
    "LedgerConfig",
    "LedgerError",
    "NotFoundError",
    "NoEventsFoundError",
    "ValidationError",
    "SequenceConflictError",
    "ChainIntegrityError",
    "QualityGateNotPassedError",
    "DuplicateProductError",
    "Hasher",
    "CanonicalSerializationError",
    "compute_hash",
    "verify_event_hash",
    "verify_chain",
    "Rule",
    "Severity",
    "ValidationEngine",
    "ValidationResult",
    "QualityGateOutcome",
    "evaluate_quality_gate",
    "validate",
]
