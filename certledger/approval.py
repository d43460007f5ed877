"""
CertLedger Approval Workflow

Three ordered, independently-actored steps:

    VALIDATION  (VALIDATOR)         data quality: required fields, duplicates,
                                    subject registry cross-check
        ↓
    APPROVAL    (REGISTRAR)         substantive correctness; may carry a
                                    digital signature
        ↓
    SIGN_OFF    (DEPARTMENT_ADMIN)  final department confirmation

The pipeline is strict: a step cannot be decided until the step before it
is APPROVED. A rejection at any step stops the entry; it may only be
restarted through ``resubmit`` while ``rejections.can_resubmit`` holds.
``revert`` sends the entry back for correction without counting as a
rejection.

All functions are pure: they take the current entry and return the new
entry together with its audit entry.
"""

from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import AuthorizationError, InvalidTransitionError, ValidationError
from .policy import DEFAULT_POLICY, LifecyclePolicy
from .records import (
    ApprovalQueueEntry,
    AuditEntry,
    Certificate,
    RejectionHistory,
    StepRecord,
    make_audit,
)
from .store import SubjectRegistry
from .timeutil import utc_now
from .types import (
    STEP_ORDER,
    STEP_ROLES,
    Actor,
    ApprovalStep,
    CertificateStatus,
    Decision,
    Priority,
    QueueStatus,
    StepStatus,
)

STEP_FIELDS = {
    ApprovalStep.VALIDATION: "validation",
    ApprovalStep.APPROVAL: "approval",
    ApprovalStep.SIGN_OFF: "sign_off",
}

# Other certificates in these states make a new one a duplicate
LIVE_STATUSES = frozenset({
    CertificateStatus.PENDING_L1,
    CertificateStatus.PENDING_L2,
    CertificateStatus.PENDING_L3,
    CertificateStatus.NEEDS_CORRECTION,
    CertificateStatus.ISSUED,
})


def _audit(entry: ApprovalQueueEntry, action: str, actor: str, new_status: Any,
           comments: Optional[str], now: datetime, previous_status: Any = None) -> AuditEntry:
    return make_audit(action, actor, previous_status or entry.status, new_status, comments,
                      subject_type="approval_queue", subject_id=entry.cert_id, now=now)


def _with_audit(entry: ApprovalQueueEntry, audit: AuditEntry, **changes) -> ApprovalQueueEntry:
    return replace(entry, history=entry.history + (audit,), **changes)


def step_record(entry: ApprovalQueueEntry, step: ApprovalStep) -> StepRecord:
    return getattr(entry, STEP_FIELDS[step])


def new_entry(
    cert_id: str,
    actor: str,
    priority: Priority = Priority.NORMAL,
    now: Optional[datetime] = None,
) -> Tuple[ApprovalQueueEntry, AuditEntry]:
    now = now or utc_now()
    entry = ApprovalQueueEntry(cert_id=cert_id, priority=priority, created_at=now)
    audit = make_audit("SUBMITTED", actor, None, QueueStatus.PENDING, "queued for validation",
                       subject_type="approval_queue", subject_id=cert_id, now=now)
    return _with_audit(entry, audit), audit


def current_step(entry: ApprovalQueueEntry) -> Optional[ApprovalStep]:
    """The step awaiting a decision, or None if rejected or fully approved."""
    if entry.status not in (QueueStatus.PENDING, QueueStatus.REVERTED):
        return None
    for step in STEP_ORDER:
        if step_record(entry, step).status == StepStatus.PENDING:
            return step
    return None


def require_step_role(step: ApprovalStep, actor: Actor) -> None:
    if actor.role not in STEP_ROLES[step]:
        allowed = ", ".join(sorted(r.value for r in STEP_ROLES[step]))
        raise AuthorizationError(
            f"{step.value} requires one of [{allowed}], got {actor.role.value}",
            code="ROLE_NOT_PERMITTED",
        )


def validation_issues(
    cert: Certificate,
    registry: Optional[SubjectRegistry] = None,
    similar: Iterable[Certificate] = (),
) -> List[str]:
    """
    Data-quality checks run by the validation step.

    Returns:
        Issue codes; empty when the certificate is clean
    """
    issues = []
    for name in ("student_code", "student_name", "institution_id", "course_name", "grade"):
        if not str(getattr(cert, name) or "").strip():
            issues.append(f"MISSING_FIELD:{name}")

    if cert.expiry_date is not None and cert.expiry_date <= cert.issue_date:
        issues.append("EXPIRY_BEFORE_ISSUE")

    for other in similar:
        if other.cert_id != cert.cert_id and other.status in LIVE_STATUSES:
            issues.append(f"DUPLICATE_CERTIFICATE:{other.cert_id}")

    if registry is not None:
        subject = registry.lookup(cert.student_code)
        if subject is None:
            issues.append("SUBJECT_NOT_FOUND")
        else:
            if subject.institution_id.lower() != cert.institution_id.lower():
                issues.append("SUBJECT_NOT_FROM_INSTITUTION")
            if subject.full_name.strip().lower() != cert.student_name.strip().lower():
                issues.append("SUBJECT_NAME_MISMATCH")
    return issues


def decide(
    entry: ApprovalQueueEntry,
    step: ApprovalStep,
    decision: Decision,
    actor: Actor,
    comments: Optional[str] = None,
    issues: Sequence[str] = (),
    signature: Optional[str] = None,
    now: Optional[datetime] = None,
    policy: LifecyclePolicy = DEFAULT_POLICY,
) -> Tuple[ApprovalQueueEntry, AuditEntry]:
    """
    Record a decision on one step.

    Raises:
        InvalidTransitionError: entry archived or rejected, step out of order,
            or step already decided
        AuthorizationError: wrong role, or the actor already decided another
            step of this cycle
        ValidationError: validation approved while issues are outstanding
    """
    now = now or utc_now()
    if entry.archived:
        raise InvalidTransitionError(entry.status, step, "approval entry is archived")
    if entry.status == QueueStatus.REJECTED:
        raise InvalidTransitionError(QueueStatus.REJECTED, step,
                                     "entry was rejected; resubmit to start a new cycle")

    index = STEP_ORDER.index(step)
    for earlier in STEP_ORDER[:index]:
        if step_record(entry, earlier).status != StepStatus.APPROVED:
            raise InvalidTransitionError(
                f"{earlier.value}:{step_record(entry, earlier).status.value}", step,
                f"{step.value} cannot start until {earlier.value} is APPROVED",
            )
    if step_record(entry, step).status != StepStatus.PENDING:
        raise InvalidTransitionError(
            f"{step.value}:{step_record(entry, step).status.value}", step,
            f"{step.value} has already been decided",
        )

    require_step_role(step, actor)
    for other in STEP_ORDER:
        rec = step_record(entry, other)
        if other != step and rec.status != StepStatus.PENDING and rec.actor == actor.actor_id:
            raise AuthorizationError(
                f"{actor.actor_id} already decided {other.value} in this cycle",
                code="SEPARATION_OF_DUTIES",
            )

    if step == ApprovalStep.VALIDATION and decision == Decision.APPROVED and issues:
        raise ValidationError("validation", "outstanding issues: " + ", ".join(issues),
                              code="VALIDATION_ISSUES", issues=list(issues))

    record = StepRecord(
        status=StepStatus(decision.value),
        actor=actor.actor_id,
        timestamp=now,
        comments=comments,
        issues=tuple(issues),
        signature=signature if step == ApprovalStep.APPROVAL else None,
    )
    changes: Dict[str, Any] = {STEP_FIELDS[step]: record, "reverted": False}

    if decision == Decision.REJECTED:
        reasons = tuple(issues) or ((comments,) if comments else (f"rejected at {step.value}",))
        count = entry.rejections.count + 1
        changes["rejections"] = RejectionHistory(
            count=count,
            reasons=entry.rejections.reasons + reasons,
            last_rejected_at=now,
            can_resubmit=count < policy.max_resubmissions,
        )
        action = f"{step.value}_REJECTED"
        new_status = QueueStatus.REJECTED
    else:
        action = f"{step.value}_APPROVED"
        remaining = [s for s in STEP_ORDER if s != step and step_record(entry, s).status != StepStatus.APPROVED]
        new_status = QueueStatus.PENDING if remaining else QueueStatus.APPROVED

    audit = _audit(entry, action, actor.actor_id, new_status, comments, now)
    return _with_audit(entry, audit, **changes), audit


def revert(
    entry: ApprovalQueueEntry,
    actor: Actor,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[ApprovalQueueEntry, AuditEntry]:
    """
    Push an entry back for correction (queue status REVERTED).

    Clears the step decisions of the current cycle. Not counted as a
    rejection, and re-enables resubmission.
    """
    now = now or utc_now()
    if entry.archived:
        raise InvalidTransitionError(entry.status, "REVERTED", "approval entry is archived")
    if entry.status == QueueStatus.REJECTED:
        raise InvalidTransitionError(QueueStatus.REJECTED, "REVERTED",
                                     "a rejected entry is restarted through resubmission")
    audit = _audit(entry, "REVERTED", actor.actor_id, QueueStatus.REVERTED, reason, now)
    return _with_audit(
        entry, audit,
        validation=StepRecord(),
        approval=StepRecord(),
        sign_off=StepRecord(),
        reverted=True,
        rejections=replace(entry.rejections, can_resubmit=True),
    ), audit


def resubmit(
    entry: ApprovalQueueEntry,
    actor: Actor,
    comments: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[ApprovalQueueEntry, AuditEntry]:
    """
    Clear the steps and start a new approval cycle.

    Raises:
        InvalidTransitionError: entry archived, or rejected with resubmission
            disabled
    """
    now = now or utc_now()
    if entry.archived:
        raise InvalidTransitionError(entry.status, "RESUBMITTED", "approval entry is archived")
    if entry.status == QueueStatus.REJECTED and not entry.rejections.can_resubmit:
        raise InvalidTransitionError(
            QueueStatus.REJECTED, "RESUBMITTED",
            f"resubmission disabled after {entry.rejections.count} rejections",
        )
    audit = _audit(entry, "RESUBMITTED", actor.actor_id, QueueStatus.PENDING, comments, now)
    return _with_audit(
        entry, audit,
        validation=StepRecord(),
        approval=StepRecord(),
        sign_off=StepRecord(),
        reverted=False,
        cycle=entry.cycle + 1,
    ), audit


def archive(
    entry: ApprovalQueueEntry,
    tx_id: str,
    now: Optional[datetime] = None,
) -> Tuple[ApprovalQueueEntry, AuditEntry]:
    """Close the entry once its certificate has been issued."""
    now = now or utc_now()
    if not entry.is_ready_for_issuance():
        raise InvalidTransitionError(entry.status, "ARCHIVED", "not all steps are APPROVED")
    audit = _audit(entry, "ISSUED", Actor.system().actor_id, QueueStatus.ISSUED,
                   f"certificate anchored: {tx_id}", now)
    return _with_audit(entry, audit, archived=True, completed_at=now), audit


def progress(entry: ApprovalQueueEntry) -> Dict[str, Any]:
    completed = sum(1 for s in STEP_ORDER if step_record(entry, s).status != StepStatus.PENDING)
    total = len(STEP_ORDER)
    nxt = current_step(entry)
    return {
        "cert_id": entry.cert_id,
        "status": entry.status.value,
        "completed_steps": completed,
        "total_steps": total,
        "percentage": round(completed / total * 100),
        "steps": {
            "validation": entry.validation.status.value,
            "approval": entry.approval.status.value,
            "sign_off": entry.sign_off.status.value,
        },
        "next_step": nxt.value if nxt else None,
        "ready_for_issuance": entry.is_ready_for_issuance(),
        "cycle": entry.cycle,
        "rejections": entry.rejections.to_dict(),
    }
