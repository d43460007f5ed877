"""
CertLedger records.

Records are frozen dataclasses. Workflows never edit them in place: every
transition builds a new record with ``dataclasses.replace`` and returns it
together with the audit entry describing the change. ``version`` is the
optimistic-concurrency counter maintained by the record store.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from .timeutil import from_iso, to_iso, utc_now
from .types import (
    AppealStatus,
    CertificateCategory,
    CertificateStatus,
    ContentSource,
    Priority,
    QueueStatus,
    RevocationReason,
    RevocationStatus,
    RevocationTier,
    Severity,
    StepStatus,
)


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of one state-changing operation."""
    action: str
    actor: str
    timestamp: datetime
    previous_status: Optional[str]
    new_status: Optional[str]
    comments: Optional[str] = None
    subject_type: str = "certificate"
    subject_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "actor": self.actor,
            "timestamp": to_iso(self.timestamp),
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "comments": self.comments,
            "subject_type": self.subject_type,
            "subject_id": self.subject_id,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AuditEntry":
        return cls(
            action=d["action"],
            actor=d["actor"],
            timestamp=from_iso(d["timestamp"]),
            previous_status=d.get("previous_status"),
            new_status=d.get("new_status"),
            comments=d.get("comments"),
            subject_type=d.get("subject_type", "certificate"),
            subject_id=d.get("subject_id"),
        )


def make_audit(
    action: str,
    actor: str,
    previous_status: Any,
    new_status: Any,
    comments: Optional[str] = None,
    subject_type: str = "certificate",
    subject_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AuditEntry:
    return AuditEntry(
        action=action,
        actor=actor,
        timestamp=now or utc_now(),
        previous_status=_enum_value(previous_status),
        new_status=_enum_value(new_status),
        comments=comments,
        subject_type=subject_type,
        subject_id=subject_id,
    )


def _history_to_list(history: Tuple[AuditEntry, ...]):
    return [e.to_dict() for e in history]


def _history_from_list(items) -> Tuple[AuditEntry, ...]:
    return tuple(AuditEntry.from_dict(e) for e in (items or []))


# =============================================================================
# CERTIFICATE
# =============================================================================

@dataclass(frozen=True)
class AnchorRef:
    """Where a certificate (or revocation event) landed on the ledger."""
    tx_id: str
    block_number: int
    fixed_width_id: str
    anchored_at: datetime
    cost_limit: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_id": self.tx_id,
            "block_number": self.block_number,
            "fixed_width_id": self.fixed_width_id,
            "anchored_at": to_iso(self.anchored_at),
            "cost_limit": self.cost_limit,
        }

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> Optional["AnchorRef"]:
        if not d:
            return None
        return cls(
            tx_id=d["tx_id"],
            block_number=int(d["block_number"]),
            fixed_width_id=d["fixed_width_id"],
            anchored_at=from_iso(d["anchored_at"]),
            cost_limit=d.get("cost_limit"),
        )


@dataclass(frozen=True)
class AnchorAttempt:
    """Marker for an in-flight (or status-unknown) anchoring call."""
    attempt_id: str
    started_at: datetime
    fixed_width_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "started_at": to_iso(self.started_at),
            "fixed_width_id": self.fixed_width_id,
        }

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> Optional["AnchorAttempt"]:
        if not d:
            return None
        return cls(d["attempt_id"], from_iso(d["started_at"]), d["fixed_width_id"])


@dataclass(frozen=True)
class Certificate:
    """
    A credential moving through the lifecycle.

    ``cert_id`` is immutable once assigned. ``anchor_ref`` is present only
    once the certificate has been anchored.
    """
    cert_id: str
    content_hash: str
    student_code: str
    student_name: str
    institution_id: str
    institution_name: str
    course_name: str
    grade: str
    issue_date: datetime
    submitted_by: str
    category: CertificateCategory = CertificateCategory.COURSE
    expiry_date: Optional[datetime] = None
    status: CertificateStatus = CertificateStatus.PENDING_L1
    content_source: ContentSource = ContentSource.PAYLOAD
    document_hash: Optional[str] = None
    anchor_ref: Optional[AnchorRef] = None
    anchor_attempt: Optional[AnchorAttempt] = None
    verification_count: int = 0
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revocation_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    version: int = 0
    history: Tuple[AuditEntry, ...] = ()

    def payload(self) -> Dict[str, Any]:
        """
        The canonical certificate payload (what the content hash covers).

        The id is left out so the same credential submitted twice under two
        ids still collides on its content hash.
        """
        return {
            "student_code": self.student_code,
            "student_name": self.student_name,
            "institution_id": self.institution_id,
            "institution_name": self.institution_name,
            "course_name": self.course_name,
            "grade": self.grade,
            "category": self.category.value,
            "issue_date": to_iso(self.issue_date),
            "expiry_date": to_iso(self.expiry_date),
        }

    def is_expired(self, now: datetime) -> bool:
        return self.expiry_date is not None and now > self.expiry_date

    def with_audit(self, entry: AuditEntry, **changes) -> "Certificate":
        return replace(self, history=self.history + (entry,), updated_at=entry.timestamp, **changes)

    def to_dict(self, include_history: bool = True) -> Dict[str, Any]:
        d = {
            "cert_id": self.cert_id,
            "content_hash": self.content_hash,
            "student_code": self.student_code,
            "student_name": self.student_name,
            "institution_id": self.institution_id,
            "institution_name": self.institution_name,
            "course_name": self.course_name,
            "grade": self.grade,
            "category": self.category.value,
            "issue_date": to_iso(self.issue_date),
            "expiry_date": to_iso(self.expiry_date),
            "status": self.status.value,
            "content_source": self.content_source.value,
            "document_hash": self.document_hash,
            "anchor_ref": self.anchor_ref.to_dict() if self.anchor_ref else None,
            "anchor_attempt": self.anchor_attempt.to_dict() if self.anchor_attempt else None,
            "verification_count": self.verification_count,
            "revoked_at": to_iso(self.revoked_at),
            "revoked_by": self.revoked_by,
            "revocation_reason": self.revocation_reason,
            "rejection_reason": self.rejection_reason,
            "metadata": dict(self.metadata),
            "submitted_by": self.submitted_by,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "version": self.version,
        }
        if include_history:
            d["history"] = _history_to_list(self.history)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Certificate":
        return cls(
            cert_id=d["cert_id"],
            content_hash=d["content_hash"],
            student_code=d["student_code"],
            student_name=d["student_name"],
            institution_id=d["institution_id"],
            institution_name=d["institution_name"],
            course_name=d["course_name"],
            grade=d["grade"],
            issue_date=from_iso(d["issue_date"]),
            submitted_by=d["submitted_by"],
            category=CertificateCategory(d.get("category", "COURSE")),
            expiry_date=from_iso(d.get("expiry_date")),
            status=CertificateStatus(d["status"]),
            content_source=ContentSource(d.get("content_source", "PAYLOAD")),
            document_hash=d.get("document_hash"),
            anchor_ref=AnchorRef.from_dict(d.get("anchor_ref")),
            anchor_attempt=AnchorAttempt.from_dict(d.get("anchor_attempt")),
            verification_count=int(d.get("verification_count", 0)),
            revoked_at=from_iso(d.get("revoked_at")),
            revoked_by=d.get("revoked_by"),
            revocation_reason=d.get("revocation_reason"),
            rejection_reason=d.get("rejection_reason"),
            metadata=dict(d.get("metadata") or {}),
            created_at=from_iso(d["created_at"]),
            updated_at=from_iso(d.get("updated_at")),
            version=int(d.get("version", 0)),
            history=_history_from_list(d.get("history")),
        )


# =============================================================================
# APPROVAL QUEUE
# =============================================================================

@dataclass(frozen=True)
class StepRecord:
    status: StepStatus = StepStatus.PENDING
    actor: Optional[str] = None
    timestamp: Optional[datetime] = None
    comments: Optional[str] = None
    issues: Tuple[str, ...] = ()
    signature: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "actor": self.actor,
            "timestamp": to_iso(self.timestamp),
            "comments": self.comments,
            "issues": list(self.issues),
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "StepRecord":
        if not d:
            return cls()
        return cls(
            status=StepStatus(d.get("status", "PENDING")),
            actor=d.get("actor"),
            timestamp=from_iso(d.get("timestamp")),
            comments=d.get("comments"),
            issues=tuple(d.get("issues") or ()),
            signature=d.get("signature"),
        )


@dataclass(frozen=True)
class RejectionHistory:
    count: int = 0
    reasons: Tuple[str, ...] = ()
    last_rejected_at: Optional[datetime] = None
    can_resubmit: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "reasons": list(self.reasons),
            "last_rejected_at": to_iso(self.last_rejected_at),
            "can_resubmit": self.can_resubmit,
        }

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "RejectionHistory":
        if not d:
            return cls()
        return cls(
            count=int(d.get("count", 0)),
            reasons=tuple(d.get("reasons") or ()),
            last_rejected_at=from_iso(d.get("last_rejected_at")),
            can_resubmit=bool(d.get("can_resubmit", True)),
        )


@dataclass(frozen=True)
class ApprovalQueueEntry:
    """
    Approval progress for one certificate.

    ``status`` is derived from the three step records plus the ``archived``
    (issued) and ``reverted`` markers and is never stored independently.
    """
    cert_id: str
    validation: StepRecord = field(default_factory=StepRecord)
    approval: StepRecord = field(default_factory=StepRecord)
    sign_off: StepRecord = field(default_factory=StepRecord)
    rejections: RejectionHistory = field(default_factory=RejectionHistory)
    cycle: int = 1
    priority: Priority = Priority.NORMAL
    archived: bool = False
    reverted: bool = False
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    version: int = 0
    history: Tuple[AuditEntry, ...] = ()

    @property
    def status(self) -> QueueStatus:
        if self.archived:
            return QueueStatus.ISSUED
        steps = (self.validation.status, self.approval.status, self.sign_off.status)
        if StepStatus.REJECTED in steps:
            return QueueStatus.REJECTED
        if self.reverted:
            return QueueStatus.REVERTED
        if all(s == StepStatus.APPROVED for s in steps):
            return QueueStatus.APPROVED
        return QueueStatus.PENDING

    def is_ready_for_issuance(self) -> bool:
        return (
            self.validation.status == StepStatus.APPROVED
            and self.approval.status == StepStatus.APPROVED
            and self.sign_off.status == StepStatus.APPROVED
        )

    def to_dict(self, include_history: bool = True) -> Dict[str, Any]:
        d = {
            "cert_id": self.cert_id,
            "status": self.status.value,
            "validation": self.validation.to_dict(),
            "approval": self.approval.to_dict(),
            "sign_off": self.sign_off.to_dict(),
            "rejections": self.rejections.to_dict(),
            "cycle": self.cycle,
            "priority": self.priority.value,
            "archived": self.archived,
            "reverted": self.reverted,
            "created_at": to_iso(self.created_at),
            "completed_at": to_iso(self.completed_at),
            "version": self.version,
        }
        if include_history:
            d["history"] = _history_to_list(self.history)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ApprovalQueueEntry":
        return cls(
            cert_id=d["cert_id"],
            validation=StepRecord.from_dict(d.get("validation")),
            approval=StepRecord.from_dict(d.get("approval")),
            sign_off=StepRecord.from_dict(d.get("sign_off")),
            rejections=RejectionHistory.from_dict(d.get("rejections")),
            cycle=int(d.get("cycle", 1)),
            priority=Priority(d.get("priority", "NORMAL")),
            archived=bool(d.get("archived", False)),
            reverted=bool(d.get("reverted", False)),
            created_at=from_iso(d["created_at"]),
            completed_at=from_iso(d.get("completed_at")),
            version=int(d.get("version", 0)),
            history=_history_from_list(d.get("history")),
        )


# =============================================================================
# REVOCATION
# =============================================================================

@dataclass(frozen=True)
class TierApproval:
    status: StepStatus = StepStatus.PENDING
    actor: Optional[str] = None
    timestamp: Optional[datetime] = None
    comments: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "actor": self.actor,
            "timestamp": to_iso(self.timestamp),
            "comments": self.comments,
        }

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "TierApproval":
        if not d:
            return cls()
        return cls(
            status=StepStatus(d.get("status", "PENDING")),
            actor=d.get("actor"),
            timestamp=from_iso(d.get("timestamp")),
            comments=d.get("comments"),
        )


@dataclass(frozen=True)
class RevocationExecution:
    executed_by: str
    executed_at: datetime
    tx_id: str
    block_number: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executed_by": self.executed_by,
            "executed_at": to_iso(self.executed_at),
            "tx_id": self.tx_id,
            "block_number": self.block_number,
        }

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> Optional["RevocationExecution"]:
        if not d:
            return None
        return cls(d["executed_by"], from_iso(d["executed_at"]), d["tx_id"], int(d["block_number"]))


@dataclass(frozen=True)
class Appeal:
    status: AppealStatus = AppealStatus.NOT_APPEALED
    filed_by: Optional[str] = None
    filed_at: Optional[datetime] = None
    reason: Optional[str] = None
    evidence: Optional[str] = None
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    outcome: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "filed_by": self.filed_by,
            "filed_at": to_iso(self.filed_at),
            "reason": self.reason,
            "evidence": self.evidence,
            "decided_by": self.decided_by,
            "decided_at": to_iso(self.decided_at),
            "outcome": self.outcome,
        }

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "Appeal":
        if not d:
            return cls()
        return cls(
            status=AppealStatus(d.get("status", "NOT_APPEALED")),
            filed_by=d.get("filed_by"),
            filed_at=from_iso(d.get("filed_at")),
            reason=d.get("reason"),
            evidence=d.get("evidence"),
            decided_by=d.get("decided_by"),
            decided_at=from_iso(d.get("decided_at")),
            outcome=d.get("outcome"),
        )


@dataclass(frozen=True)
class RevocationRecord:
    """A request to revoke one issued certificate, and its appeal."""
    revocation_id: str
    cert_id: str
    reason: RevocationReason
    description: str
    initiated_by: str
    evidence: Optional[str] = None
    department: TierApproval = field(default_factory=TierApproval)
    registrar: TierApproval = field(default_factory=TierApproval)
    super_authority: TierApproval = field(default_factory=TierApproval)
    execution: Optional[RevocationExecution] = None
    execution_claim: Optional[AnchorAttempt] = None
    appeal: Appeal = field(default_factory=Appeal)
    status: RevocationStatus = RevocationStatus.PENDING_APPROVAL
    severity: Severity = Severity.MEDIUM
    is_public: bool = True
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    version: int = 0
    history: Tuple[AuditEntry, ...] = ()

    def tier(self, tier: RevocationTier) -> TierApproval:
        return {
            RevocationTier.DEPARTMENT: self.department,
            RevocationTier.REGISTRAR: self.registrar,
            RevocationTier.SUPER_AUTHORITY: self.super_authority,
        }[tier]

    def approvals(self) -> Dict[RevocationTier, TierApproval]:
        return {t: self.tier(t) for t in RevocationTier}

    def all_approved(self) -> bool:
        return all(a.status == StepStatus.APPROVED for a in self.approvals().values())

    def any_rejected(self) -> bool:
        return any(a.status == StepStatus.REJECTED for a in self.approvals().values())

    def to_dict(self, include_history: bool = True) -> Dict[str, Any]:
        d = {
            "revocation_id": self.revocation_id,
            "cert_id": self.cert_id,
            "reason": self.reason.value,
            "description": self.description,
            "initiated_by": self.initiated_by,
            "evidence": self.evidence,
            "approvals": {
                "department": self.department.to_dict(),
                "registrar": self.registrar.to_dict(),
                "super_authority": self.super_authority.to_dict(),
            },
            "execution": self.execution.to_dict() if self.execution else None,
            "execution_claim": self.execution_claim.to_dict() if self.execution_claim else None,
            "appeal": self.appeal.to_dict(),
            "status": self.status.value,
            "severity": self.severity.value,
            "is_public": self.is_public,
            "created_at": to_iso(self.created_at),
            "completed_at": to_iso(self.completed_at),
            "version": self.version,
        }
        if include_history:
            d["history"] = _history_to_list(self.history)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RevocationRecord":
        approvals = d.get("approvals") or {}
        return cls(
            revocation_id=d["revocation_id"],
            cert_id=d["cert_id"],
            reason=RevocationReason(d["reason"]),
            description=d["description"],
            initiated_by=d["initiated_by"],
            evidence=d.get("evidence"),
            department=TierApproval.from_dict(approvals.get("department")),
            registrar=TierApproval.from_dict(approvals.get("registrar")),
            super_authority=TierApproval.from_dict(approvals.get("super_authority")),
            execution=RevocationExecution.from_dict(d.get("execution")),
            execution_claim=AnchorAttempt.from_dict(d.get("execution_claim")),
            appeal=Appeal.from_dict(d.get("appeal")),
            status=RevocationStatus(d["status"]),
            severity=Severity(d.get("severity", "MEDIUM")),
            is_public=bool(d.get("is_public", True)),
            created_at=from_iso(d["created_at"]),
            completed_at=from_iso(d.get("completed_at")),
            version=int(d.get("version", 0)),
            history=_history_from_list(d.get("history")),
        )
