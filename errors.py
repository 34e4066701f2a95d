from typing import Optional


class LedgerError(Exception):
    """Base class for failures raised by the ledger and budget engines.

    Every failure carries a stable ``reason`` string so callers can branch on
    the category without parsing the message. ``issues`` holds per-field
    detail when it is available (validation failures only).
    """

    reason = "ledger_error"

    def __init__(self, message: str, issues: Optional[list[dict[str, str]]] = None):
        super().__init__(message)
        self.message = message
        self.issues = issues or []


class ValidationFailed(LedgerError, ValueError):
    reason = "validation"


class NotFound(LedgerError, LookupError):
    reason = "not_found"


class Conflict(LedgerError):
    reason = "conflict"


class StorageFailure(LedgerError):
    """The store was unreachable or rejected a statement we could not classify."""

    reason = "storage_failure"
