"""
CertLedger error taxonomy.

Every error carries a stable machine-readable ``code`` so callers can tell
"your input was bad" apart from "the system could not anchor". Tamper
detection is deliberately absent: a tampered document is a verification
result, not an exception.
"""

from typing import Any, Dict, List, Optional


class CertLedgerError(Exception):
    """Base class for all lifecycle engine errors."""

    code = "CERTLEDGER_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, **details: Any):
        if code:
            self.code = code
        self.message = message
        self.details = details
        super().__init__(f"{self.code}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        d = {"error": self.code, "message": self.message}
        if self.details:
            d["details"] = self.details
        return d


class ValidationError(CertLedgerError):
    """Malformed or missing input. Raised before any state change."""

    code = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str, code: Optional[str] = None, issues: Optional[List[str]] = None):
        self.field = field
        kwargs = {"field": field}
        if issues:
            kwargs["issues"] = list(issues)
        super().__init__(f"{field}: {message}", code=code, **kwargs)


class DuplicateError(CertLedgerError):
    """certId or contentHash collision. Raised before any state change."""

    code = "DUPLICATE_CERTIFICATE"


class NotFoundError(CertLedgerError):
    code = "NOT_FOUND"


class InvalidTransitionError(CertLedgerError):
    """Workflow or state machine misuse. Always surfaced to the caller."""

    code = "INVALID_TRANSITION"

    def __init__(self, current: Any, requested: Any, message: Optional[str] = None):
        self.current = getattr(current, "value", current)
        self.requested = getattr(requested, "value", requested)
        super().__init__(
            message or f"cannot move from {self.current} to {self.requested}",
            current=self.current,
            requested=self.requested,
        )


class ConcurrencyError(CertLedgerError):
    """The record changed between read and write (optimistic concurrency)."""

    code = "CONCURRENT_MODIFICATION"


class AuthorizationError(CertLedgerError):
    """The actor lacks the role required for the attempted step."""

    code = "FORBIDDEN"


class AnchoringError(CertLedgerError):
    """
    External ledger failure.

    The certificate stays in its pre-anchoring state. Anchoring is never
    retried automatically; ``status_unknown`` tells the caller that the
    transaction may or may not have landed and that the ledger will be
    re-queried before any re-submission.
    """

    code = "ANCHORING_FAILED"

    def __init__(self, message: str, code: Optional[str] = None, status_unknown: bool = False, **details: Any):
        self.status_unknown = status_unknown
        super().__init__(message, code=code, status_unknown=status_unknown, **details)
