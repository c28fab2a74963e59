"""
Ledger Exceptions

Everything the core raises derives from LedgerError so callers
(API routes, CLI commands) can translate a single hierarchy.
"""


class LedgerError(Exception):
    """Base exception for ledger operations."""
    pass


class NotFoundError(LedgerError):
    """Raised when an actor, herb, batch or product cannot be resolved."""
    pass


class NoEventsFoundError(NotFoundError):
    """Raised when a batch has no recorded events."""
    pass


class ValidationError(LedgerError):
    """
    Raised when an event cannot be evaluated at all.

    Only missing or unknown identifiers (batch_id, actor_id, event_type)
    end up here. Business-rule failures are recorded on the event instead.
    """
    pass


class SequenceConflictError(LedgerError):
    """Raised when an append keeps losing the race for the batch head."""

    def __init__(self, batch_id: str, attempts: int):
        self.batch_id = batch_id
        self.attempts = attempts
        super().__init__(
            f"Batch {batch_id} head moved on every one of {attempts} append attempts"
        )


class ChainIntegrityError(LedgerError):
    """Raised when a stored chain fails linkage or hash verification."""

    def __init__(self, batch_id: str, issues: list[str] | None = None):
        self.batch_id = batch_id
        self.issues = issues or []
        detail = "; ".join(self.issues) if self.issues else "verification failed"
        super().__init__(f"Chain integrity broken for batch {batch_id}: {detail}")


class QualityGateNotPassedError(LedgerError):
    """Raised when a product is requested for a batch without a passed quality test."""
    pass


class DuplicateProductError(LedgerError):
    """Raised when a batch already has a product."""
    pass
