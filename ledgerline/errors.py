"""Error taxonomy shared by the matcher, pipeline and lifecycle manager.

Validation errors are raised before any state is written. Conflicts mean
the caller lost a compare-and-set race or acted on stale state, and may
retry with fresh data. Nothing in the engine retries on its own.
"""

from __future__ import annotations

from dataclasses import dataclass


class LedgerlineError(Exception):
    """Base class for all engine errors."""


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str


class ValidationError(LedgerlineError):
    """Raised when input or configuration is rejected.

    Carries one FieldError per offending field so callers can report
    field-level detail.
    """

    def __init__(self, errors: list[FieldError] | FieldError):
        if isinstance(errors, FieldError):
            errors = [errors]
        self.errors = list(errors)
        detail = "; ".join(f"{e.field}: {e.message}" for e in self.errors)
        super().__init__(f"Validation failed: {detail}")

    @property
    def fields(self) -> set[str]:
        return {e.field for e in self.errors}


class ConflictError(LedgerlineError):
    """Raised when a conditional write finds the record already changed."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class NotFoundError(LedgerlineError):
    """Raised when a referenced record does not exist."""

    def __init__(self, entity: str, entity_id: str | None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} '{entity_id}' not found")
