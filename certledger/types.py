"""
Closed status and role types shared by every workflow.

Status values are plain ``str`` enums so they serialise to the same strings
the HTTP layer and the database use.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional


class CertificateStatus(str, Enum):
    """
    Certificate lifecycle states.

    PENDING_L1: awaiting validation
    PENDING_L2: awaiting authority approval
    PENDING_L3: awaiting department sign-off, then anchoring
    ISSUED: anchored on the ledger
    REJECTED: rejected at some step (terminal unless resubmitted)
    NEEDS_CORRECTION: pushed back for correction, not a rejection
    REVOKED: revoked through the revocation workflow
    EXPIRED: past its expiry date (applied lazily on read)
    """
    PENDING_L1 = "PENDING_L1"
    PENDING_L2 = "PENDING_L2"
    PENDING_L3 = "PENDING_L3"
    ISSUED = "ISSUED"
    REJECTED = "REJECTED"
    NEEDS_CORRECTION = "NEEDS_CORRECTION"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


PENDING_STATUSES: FrozenSet[CertificateStatus] = frozenset({
    CertificateStatus.PENDING_L1,
    CertificateStatus.PENDING_L2,
    CertificateStatus.PENDING_L3,
})


class StepStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Decision(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class QueueStatus(str, Enum):
    """Overall approval queue status, derived from the step records and markers."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REVERTED = "REVERTED"
    ISSUED = "ISSUED"


class ApprovalStep(str, Enum):
    VALIDATION = "VALIDATION"
    APPROVAL = "APPROVAL"
    SIGN_OFF = "SIGN_OFF"


STEP_ORDER = (ApprovalStep.VALIDATION, ApprovalStep.APPROVAL, ApprovalStep.SIGN_OFF)


class CertificateCategory(str, Enum):
    COURSE = "COURSE"
    DEGREE = "DEGREE"
    DIPLOMA = "DIPLOMA"
    PROFESSIONAL = "PROFESSIONAL"
    ACHIEVEMENT = "ACHIEVEMENT"
    WORKSHOP = "WORKSHOP"
    CERTIFICATION = "CERTIFICATION"
    TRAINING = "TRAINING"
    INTERNSHIP = "INTERNSHIP"
    OTHER = "OTHER"


class ContentSource(str, Enum):
    """Where the bytes behind a content hash live."""
    DOCUMENT = "DOCUMENT"    # uploaded document, stored in the content store
    PAYLOAD = "PAYLOAD"      # canonical certificate payload, stored in the content store
    EXTERNAL = "EXTERNAL"    # declared hash only; bytes stored off-system


class Priority(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class RevocationReason(str, Enum):
    ACADEMIC_MISCONDUCT = "ACADEMIC_MISCONDUCT"
    FRAUDULENT_CREDENTIALS = "FRAUDULENT_CREDENTIALS"
    INCOMPLETE_COURSEWORK = "INCOMPLETE_COURSEWORK"
    DISCIPLINARY_ACTION = "DISCIPLINARY_ACTION"
    DUPLICATE_ISSUANCE = "DUPLICATE_ISSUANCE"
    DATA_ERROR = "DATA_ERROR"
    STUDENT_REQUEST = "STUDENT_REQUEST"
    INSTITUTION_REQUEST = "INSTITUTION_REQUEST"
    COMPLIANCE_ISSUE = "COMPLIANCE_ISSUE"
    CREDENTIAL_VERIFICATION_FAILED = "CREDENTIAL_VERIFICATION_FAILED"
    OTHER = "OTHER"


class RevocationStatus(str, Enum):
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXECUTED = "EXECUTED"
    REVERTED = "REVERTED"


OPEN_REVOCATION_STATUSES: FrozenSet[RevocationStatus] = frozenset({
    RevocationStatus.PENDING_APPROVAL,
    RevocationStatus.APPROVED,
})


class RevocationTier(str, Enum):
    DEPARTMENT = "DEPARTMENT"
    REGISTRAR = "REGISTRAR"
    SUPER_AUTHORITY = "SUPER_AUTHORITY"


class AppealStatus(str, Enum):
    NOT_APPEALED = "NOT_APPEALED"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class TamperState(str, Enum):
    """
    Integrity verdict. UNKNOWN means the content bytes were not available,
    which is not the same as INTACT.
    """
    INTACT = "INTACT"
    TAMPERED = "TAMPERED"
    UNKNOWN = "UNKNOWN"


class Role(str, Enum):
    INSTITUTION_ADMIN = "INSTITUTION_ADMIN"
    VALIDATOR = "VALIDATOR"
    REGISTRAR = "REGISTRAR"
    DEPARTMENT_ADMIN = "DEPARTMENT_ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"
    HOLDER = "HOLDER"
    SYSTEM = "SYSTEM"


STEP_ROLES = {
    ApprovalStep.VALIDATION: frozenset({Role.VALIDATOR, Role.SUPER_ADMIN}),
    ApprovalStep.APPROVAL: frozenset({Role.REGISTRAR, Role.SUPER_ADMIN}),
    ApprovalStep.SIGN_OFF: frozenset({Role.DEPARTMENT_ADMIN, Role.SUPER_ADMIN}),
}

TIER_ROLES = {
    RevocationTier.DEPARTMENT: Role.DEPARTMENT_ADMIN,
    RevocationTier.REGISTRAR: Role.REGISTRAR,
    RevocationTier.SUPER_AUTHORITY: Role.SUPER_ADMIN,
}

SUBMIT_ROLES = frozenset({Role.INSTITUTION_ADMIN, Role.SUPER_ADMIN})
REVERT_ROLES = frozenset({Role.VALIDATOR, Role.REGISTRAR, Role.DEPARTMENT_ADMIN, Role.SUPER_ADMIN})
ANCHOR_ROLES = frozenset({Role.DEPARTMENT_ADMIN, Role.SUPER_ADMIN, Role.SYSTEM})
REVOCATION_ROLES = frozenset({Role.DEPARTMENT_ADMIN, Role.REGISTRAR, Role.SUPER_ADMIN})
APPEAL_FILING_ROLES = frozenset({Role.HOLDER, Role.INSTITUTION_ADMIN, Role.SUPER_ADMIN})
APPEAL_DECISION_ROLES = frozenset({Role.SUPER_ADMIN})


@dataclass(frozen=True)
class Actor:
    """Caller identity as handed over by the identity collaborator."""
    actor_id: str
    role: Role

    @classmethod
    def system(cls) -> "Actor":
        return cls(actor_id="system", role=Role.SYSTEM)

    @classmethod
    def parse(cls, actor_id: Optional[str], role: Optional[str]) -> "Actor":
        """Build an actor from untrusted strings; raises ValueError when malformed."""
        if not actor_id or not actor_id.strip():
            raise ValueError("actor id is required")
        try:
            parsed = Role(str(role).strip().upper())
        except ValueError:
            raise ValueError(f"unknown role: {role}")
        return cls(actor_id=actor_id.strip(), role=parsed)
