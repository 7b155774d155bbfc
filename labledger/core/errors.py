from __future__ import annotations

from typing import Any


class LabLedgerError(Exception):
    """Base error for labledger."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(LabLedgerError):
    """Unknown subject, version or audit entry id."""

    code = "NOT_FOUND"


class ConflictError(LabLedgerError):
    """Version-number race lost or duplicate unique key."""

    code = "CONFLICT"


class DomainValidationError(LabLedgerError):
    """Operation not valid for the current state of a record."""

    code = "VALIDATION_ERROR"


class ImmutableRecordError(DomainValidationError):
    """Attempt to alter an append-only row or a write-once column."""

    code = "IMMUTABLE_RECORD"


class UpstreamFailureError(LabLedgerError):
    """Renderer, converter or object store failure or timeout."""

    code = "UPSTREAM_FAILURE"


class ContextMissingError(LabLedgerError):
    """Audit write attempted without a usable actor context."""

    code = "AUDIT_CONTEXT_MISSING"


class DatabaseError(LabLedgerError):
    """Database layer failure."""

    code = "DB_ERROR"
