"""
Ledger error taxonomy.

Every expected outcome carries a stable code, an HTTP status and a details
dict so the HTTP layer can show a specific message. InternalStoreError is the
only opaque one: it is logged with context and surfaced as a generic 500.
"""
from __future__ import annotations

from typing import Any, Optional


class LedgerError(Exception):
    code: str = "LedgerError"
    status_code: int = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class NotFound(LedgerError):
    code = "NotFound"
    status_code = 404


class Forbidden(LedgerError):
    code = "Forbidden"
    status_code = 403


class QuotaExceeded(LedgerError):
    code = "QuotaExceeded"
    status_code = 403


class NoCreditsRemaining(LedgerError):
    code = "NoCreditsRemaining"
    status_code = 400


class ResourceConflict(LedgerError):
    """Transient: the optimistic transaction kept losing. Caller may retry."""
    code = "ResourceConflict"
    status_code = 409


class InvalidTransition(LedgerError):
    code = "InvalidTransition"
    status_code = 409


class InvalidWeights(LedgerError):
    code = "InvalidWeights"
    status_code = 400


class OutOfRange(LedgerError):
    code = "OutOfRange"
    status_code = 400


class InternalStoreError(LedgerError):
    code = "InternalStoreError"
    status_code = 500

    def __init__(self, message: str, cause: Optional[BaseException] = None, **details: Any):
        super().__init__(message, **details)
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        # Store internals never leave the service.
        return {"error": self.code, "message": "Internal ledger error", "details": {}}


class TransactionConflict(Exception):
    """
    Raised by a LedgerStore when a transaction's read set changed before commit.
    Never surfaced to callers directly; the allocator / lifecycle retry it and
    convert exhaustion into ResourceConflict.
    """
