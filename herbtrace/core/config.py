"""
Ledger Configuration

Tunables for validation and appends, loaded from the environment.

Environment Variables:
    HERBTRACE_MOISTURE_CEILING: Max moisture percent for a passing test (default 12.0)
    HERBTRACE_MAX_APPEND_ATTEMPTS: Head races tolerated per append (default 3)
    HERBTRACE_MAX_TRANSIENT_RETRIES: Store hiccups retried per attempt (default 2)
    HERBTRACE_SHELF_LIFE_DAYS: Product expiry offset in days (default 730)
"""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class LedgerConfig:
    """Configuration shared by the validation engine and the ledger."""
    moisture_ceiling: float = 12.0
    max_append_attempts: int = 3
    max_transient_retries: int = 2
    shelf_life_days: int = 730

    def __post_init__(self):
        if self.max_append_attempts < 1:
            raise ValueError("max_append_attempts must be at least 1")
        if self.max_transient_retries < 0:
            raise ValueError("max_transient_retries cannot be negative")
        if self.shelf_life_days < 0:
            raise ValueError("shelf_life_days cannot be negative")

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        return cls(
            moisture_ceiling=float(os.environ.get("HERBTRACE_MOISTURE_CEILING", "12.0")),
            max_append_attempts=int(os.environ.get("HERBTRACE_MAX_APPEND_ATTEMPTS", "3")),
            max_transient_retries=int(os.environ.get("HERBTRACE_MAX_TRANSIENT_RETRIES", "2")),
            shelf_life_days=int(os.environ.get("HERBTRACE_SHELF_LIFE_DAYS", "730")),
        )
