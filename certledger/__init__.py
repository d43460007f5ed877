"""
CertLedger Certificate Lifecycle Engine

Version: 1.0.0

Issues, verifies and revokes digital credentials whose authenticity must be
provable after the fact:

    submit -> validation -> approval -> sign-off -> anchor -> ISSUED
    ISSUED -> three-authority revocation -> REVOKED -> appeal -> ISSUED

Every state change is a pure transition producing an audit entry; the shared
audit trail is hash chained. Anchoring to the external ledger is idempotent,
reconciles before submitting, and never retries automatically.

Usage:
    from certledger import (
        Actor,
        CertificateLifecycle,
        InMemoryRecordStore,
        LedgerAnchor,
        Role,
        SimulatedLedgerClient,
    )

    store = InMemoryRecordStore()
    lifecycle = CertificateLifecycle(store, LedgerAnchor(SimulatedLedgerClient(), store))

    cert = lifecycle.submit({...}, Actor("admin-1", Role.INSTITUTION_ADMIN))
    lifecycle.process(cert.cert_id, "APPROVE", Actor("val-1", Role.VALIDATOR))
    lifecycle.process(cert.cert_id, "APPROVE", Actor("reg-1", Role.REGISTRAR))
    result = lifecycle.process(cert.cert_id, "APPROVE", Actor("dept-1", Role.DEPARTMENT_ADMIN))
    result.anchor_ref.tx_id

    report = lifecycle.verify(cert.cert_id)
    report.is_valid
"""

__version__ = "1.0.0"

# Types and records
from .types import (
    Actor,
    AppealStatus,
    ApprovalStep,
    CertificateCategory,
    CertificateStatus,
    ContentSource,
    Decision,
    Priority,
    QueueStatus,
    RevocationReason,
    RevocationStatus,
    RevocationTier,
    Role,
    Severity,
    StepStatus,
    TamperState,
)
from .records import (
    AnchorRef,
    ApprovalQueueEntry,
    AuditEntry,
    Certificate,
    RevocationRecord,
)
from .policy import DEFAULT_POLICY, LifecyclePolicy

# Errors
from .errors import (
    AnchoringError,
    AuthorizationError,
    CertLedgerError,
    ConcurrencyError,
    DuplicateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)

# Hashing and integrity
from .canonicalization import canonicalize, canonicalize_str
from .hashing import fixed_width_id, payload_hash, sha256_hex
from .integrity import IntegrityResult, IntegrityVerifier

# Storage and audit
from .audit import AuditTrail, InMemoryAuditTrail, verify_chain
from .store import (
    ContentStore,
    InMemoryContentStore,
    InMemoryRecordStore,
    InMemorySubjectRegistry,
    RecordStore,
    Subject,
    SubjectRegistry,
)

# Workflows
from .ledger import (
    LedgerAnchor,
    LedgerClient,
    LedgerError,
    LedgerPayload,
    LedgerReceipt,
    LedgerTimeout,
    SimulatedLedgerClient,
)
from .revocation import RevocationWorkflow
from .lifecycle import CertificateLifecycle, ProcessResult, VerificationReport

__all__ = [
    "Actor",
    "AnchorRef",
    "AnchoringError",
    "AppealStatus",
    "ApprovalQueueEntry",
    "ApprovalStep",
    "AuditEntry",
    "AuditTrail",
    "AuthorizationError",
    "CertLedgerError",
    "Certificate",
    "CertificateCategory",
    "CertificateLifecycle",
    "CertificateStatus",
    "ConcurrencyError",
    "ContentSource",
    "ContentStore",
    "DEFAULT_POLICY",
    "Decision",
    "DuplicateError",
    "InMemoryAuditTrail",
    "InMemoryContentStore",
    "InMemoryRecordStore",
    "InMemorySubjectRegistry",
    "IntegrityResult",
    "IntegrityVerifier",
    "InvalidTransitionError",
    "LedgerAnchor",
    "LedgerClient",
    "LedgerError",
    "LedgerPayload",
    "LedgerReceipt",
    "LedgerTimeout",
    "LifecyclePolicy",
    "NotFoundError",
    "Priority",
    "ProcessResult",
    "QueueStatus",
    "RecordStore",
    "RevocationReason",
    "RevocationRecord",
    "RevocationStatus",
    "RevocationTier",
    "RevocationWorkflow",
    "Role",
    "Severity",
    "SimulatedLedgerClient",
    "StepStatus",
    "Subject",
    "SubjectRegistry",
    "TamperState",
    "ValidationError",
    "VerificationReport",
    "canonicalize",
    "canonicalize_str",
    "fixed_width_id",
    "payload_hash",
    "sha256_hex",
    "verify_chain",
]
