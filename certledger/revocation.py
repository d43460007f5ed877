"""
CertLedger Revocation Workflow

Revoking an issued certificate takes three independent authorities:

    DEPARTMENT       (DEPARTMENT_ADMIN)
    REGISTRAR        (REGISTRAR)
    SUPER_AUTHORITY  (SUPER_ADMIN)

Tiers may decide in any order, each exactly once, and no actor may decide
two tiers. One rejection closes the record for good. Once all three have
approved, ``execute`` anchors the revocation event on the ledger and moves
the certificate to REVOKED.

An executed revocation can be appealed exactly once, within the appeal
window counted from execution. An approved appeal reverts the record and
reinstates the certificate as ISSUED.
"""

import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import (
    AnchoringError,
    AuthorizationError,
    ConcurrencyError,
    DuplicateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .hashing import sha256_hex
from .ledger import SENT_STATUS_UNKNOWN, LedgerAnchor, claim_is_fresh, revocation_marker
from .policy import DEFAULT_POLICY, LifecyclePolicy
from .records import (
    AnchorAttempt,
    Appeal,
    AuditEntry,
    Certificate,
    RevocationExecution,
    RevocationRecord,
    TierApproval,
    make_audit,
)
from .store import PendingWrite, RecordStore, retry_on_conflict
from .timeutil import to_iso, utc_now
from .transitions import effective_status, transition
from .types import (
    APPEAL_DECISION_ROLES,
    APPEAL_FILING_ROLES,
    OPEN_REVOCATION_STATUSES,
    REVOCATION_ROLES,
    TIER_ROLES,
    Actor,
    AppealStatus,
    CertificateStatus,
    Decision,
    RevocationReason,
    RevocationStatus,
    RevocationTier,
    Role,
    Severity,
    StepStatus,
)

logger = logging.getLogger(__name__)

TIER_FIELDS = {
    RevocationTier.DEPARTMENT: "department",
    RevocationTier.REGISTRAR: "registrar",
    RevocationTier.SUPER_AUTHORITY: "super_authority",
}

DEFAULT_SEVERITY = {
    RevocationReason.FRAUDULENT_CREDENTIALS: Severity.CRITICAL,
    RevocationReason.ACADEMIC_MISCONDUCT: Severity.HIGH,
    RevocationReason.DISCIPLINARY_ACTION: Severity.HIGH,
    RevocationReason.CREDENTIAL_VERIFICATION_FAILED: Severity.HIGH,
    RevocationReason.DUPLICATE_ISSUANCE: Severity.LOW,
    RevocationReason.DATA_ERROR: Severity.LOW,
    RevocationReason.STUDENT_REQUEST: Severity.LOW,
}


def _audit(record: RevocationRecord, action: str, actor: str, new_status: Any,
           comments: Optional[str], now: datetime) -> AuditEntry:
    return make_audit(action, actor, record.status, new_status, comments,
                      subject_type="revocation", subject_id=record.revocation_id, now=now)


def _with_audit(record: RevocationRecord, audit: AuditEntry, **changes) -> RevocationRecord:
    return replace(record, history=record.history + (audit,), **changes)


def parse_reason(reason: Union[str, RevocationReason]) -> RevocationReason:
    try:
        return RevocationReason(str(getattr(reason, "value", reason)).strip().upper())
    except ValueError:
        raise ValidationError("reason", f"unknown revocation reason: {reason}", code="INVALID_REASON")


# =============================================================================
# Pure transitions
# =============================================================================

def new_revocation(
    cert: Certificate,
    reason: RevocationReason,
    description: str,
    actor: Actor,
    evidence: Optional[str] = None,
    severity: Optional[Severity] = None,
    is_public: bool = True,
    now: Optional[datetime] = None,
    policy: LifecyclePolicy = DEFAULT_POLICY,
) -> Tuple[RevocationRecord, AuditEntry]:
    now = now or utc_now()
    if actor.role not in REVOCATION_ROLES:
        raise AuthorizationError(f"role {actor.role.value} may not initiate revocations")
    description = (description or "").strip()
    if not policy.min_description_length <= len(description) <= policy.max_description_length:
        raise ValidationError(
            "description",
            f"must be {policy.min_description_length}-{policy.max_description_length} characters",
            code="INVALID_DESCRIPTION",
        )
    status = effective_status(cert, now)
    if status != CertificateStatus.ISSUED:
        raise InvalidTransitionError(status, CertificateStatus.REVOKED,
                                     f"only ISSUED certificates can be revoked (is {status.value})")

    record = RevocationRecord(
        revocation_id=f"REV-{uuid.uuid4().hex[:16].upper()}",
        cert_id=cert.cert_id,
        reason=reason,
        description=description,
        initiated_by=actor.actor_id,
        evidence=evidence,
        severity=severity or DEFAULT_SEVERITY.get(reason, Severity.MEDIUM),
        is_public=is_public,
        created_at=now,
    )
    audit = make_audit("REVOCATION_INITIATED", actor.actor_id, None, RevocationStatus.PENDING_APPROVAL,
                       f"{reason.value}: {description}", subject_type="revocation",
                       subject_id=record.revocation_id, now=now)
    return _with_audit(record, audit), audit


def decide_tier(
    record: RevocationRecord,
    tier: RevocationTier,
    decision: Decision,
    actor: Actor,
    comments: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[RevocationRecord, AuditEntry]:
    """
    Record one authority's decision.

    Raises:
        InvalidTransitionError: record no longer pending, or tier already decided
        AuthorizationError: wrong role for the tier, or actor already decided
            another tier
    """
    now = now or utc_now()
    if record.status != RevocationStatus.PENDING_APPROVAL:
        raise InvalidTransitionError(record.status, f"{tier.value}_{decision.value}",
                                     f"revocation is {record.status.value}, not pending approval")
    if actor.role != TIER_ROLES[tier]:
        raise AuthorizationError(
            f"{tier.value} tier requires {TIER_ROLES[tier].value}, got {actor.role.value}",
            code="ROLE_NOT_PERMITTED",
        )
    current = record.tier(tier)
    if current.status != StepStatus.PENDING:
        raise InvalidTransitionError(f"{tier.value}:{current.status.value}", decision,
                                     f"{tier.value} tier has already decided")
    for other, approval in record.approvals().items():
        if other != tier and approval.actor == actor.actor_id:
            raise AuthorizationError(f"{actor.actor_id} already decided the {other.value} tier",
                                     code="SEPARATION_OF_DUTIES")

    changes: Dict[str, Any] = {
        TIER_FIELDS[tier]: TierApproval(StepStatus(decision.value), actor.actor_id, now, comments),
    }
    decided = replace(record, **changes)
    if decision == Decision.REJECTED:
        new_status = RevocationStatus.REJECTED
        changes["completed_at"] = now
    elif decided.all_approved():
        new_status = RevocationStatus.APPROVED
    else:
        new_status = RevocationStatus.PENDING_APPROVAL
    changes["status"] = new_status

    audit = _audit(record, f"{tier.value}_{decision.value}", actor.actor_id, new_status, comments, now)
    return _with_audit(record, audit, **changes), audit


def mark_executed(
    record: RevocationRecord,
    actor: Actor,
    tx_id: str,
    block_number: int,
    now: Optional[datetime] = None,
) -> Tuple[RevocationRecord, AuditEntry]:
    now = now or utc_now()
    if record.status != RevocationStatus.APPROVED or not record.all_approved():
        raise InvalidTransitionError(record.status, RevocationStatus.EXECUTED,
                                     "all three tiers must approve before execution")
    audit = _audit(record, "REVOCATION_EXECUTED", actor.actor_id, RevocationStatus.EXECUTED,
                   f"tx {tx_id} block {block_number}", now)
    return _with_audit(
        record, audit,
        status=RevocationStatus.EXECUTED,
        execution=RevocationExecution(actor.actor_id, now, tx_id, block_number),
        execution_claim=None,
        completed_at=now,
    ), audit


def claim_execution(
    record: RevocationRecord,
    actor: Actor,
    now: Optional[datetime] = None,
    policy: LifecyclePolicy = DEFAULT_POLICY,
) -> Tuple[RevocationRecord, AuditEntry]:
    """
    Mark an approved revocation as being anchored.

    Raises:
        AnchoringError: another caller holds a claim younger than the TTL
    """
    now = now or utc_now()
    attempt = record.execution_claim
    if claim_is_fresh(attempt, now, policy):
        raise AnchoringError(
            f"execution of {record.revocation_id} already in flight since {attempt.started_at.isoformat()}",
            code="ANCHOR_IN_FLIGHT",
            attempt_id=attempt.attempt_id,
        )
    if attempt is not None:
        logger.warning("taking over stale execution claim %s on %s", attempt.attempt_id, record.revocation_id)
    fixed_id = "0x" + sha256_hex(revocation_marker(record))
    claim = AnchorAttempt(attempt_id=uuid.uuid4().hex, started_at=now, fixed_width_id=fixed_id)
    audit = _audit(record, "EXECUTION_STARTED", actor.actor_id, record.status, f"fixed id {fixed_id}", now)
    return _with_audit(record, audit, execution_claim=claim), audit


def release_execution(
    record: RevocationRecord,
    actor: Actor,
    error: AnchoringError,
    now: Optional[datetime] = None,
) -> Tuple[RevocationRecord, AuditEntry]:
    """Drop the claim after a failure that left nothing on the ledger."""
    audit = _audit(record, "EXECUTION_FAILED", actor.actor_id, record.status, error.message, now or utc_now())
    return _with_audit(record, audit, execution_claim=None), audit


def appeal_deadline(record: RevocationRecord, policy: LifecyclePolicy = DEFAULT_POLICY) -> Optional[datetime]:
    if record.execution is None:
        return None
    return record.execution.executed_at + policy.appeal_window


def is_appealable(record: RevocationRecord, now: Optional[datetime] = None,
                  policy: LifecyclePolicy = DEFAULT_POLICY) -> bool:
    deadline = appeal_deadline(record, policy)
    return (
        record.status == RevocationStatus.EXECUTED
        and record.appeal.status == AppealStatus.NOT_APPEALED
        and deadline is not None
        and (now or utc_now()) < deadline
    )


def file_appeal(
    record: RevocationRecord,
    actor: Actor,
    reason: str,
    evidence: Optional[str] = None,
    now: Optional[datetime] = None,
    policy: LifecyclePolicy = DEFAULT_POLICY,
) -> Tuple[RevocationRecord, AuditEntry]:
    now = now or utc_now()
    if actor.role not in APPEAL_FILING_ROLES:
        raise AuthorizationError(f"role {actor.role.value} may not file appeals")
    if not (reason or "").strip():
        raise ValidationError("reason", "an appeal needs a reason")
    if record.status != RevocationStatus.EXECUTED:
        raise InvalidTransitionError(record.status, "APPEAL", "only executed revocations can be appealed")
    if record.appeal.status != AppealStatus.NOT_APPEALED:
        raise InvalidTransitionError(record.appeal.status, AppealStatus.PENDING,
                                     "an appeal has already been filed for this revocation")
    if not is_appealable(record, now, policy):
        raise InvalidTransitionError(
            record.status, "APPEAL",
            f"appeal window closed at {to_iso(appeal_deadline(record, policy))}",
        )
    appeal = Appeal(status=AppealStatus.PENDING, filed_by=actor.actor_id, filed_at=now,
                    reason=reason.strip(), evidence=evidence)
    audit = _audit(record, "APPEAL_FILED", actor.actor_id, record.status, reason.strip(), now)
    return _with_audit(record, audit, appeal=appeal), audit


def decide_appeal(
    record: RevocationRecord,
    decision: Decision,
    actor: Actor,
    outcome: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[RevocationRecord, AuditEntry]:
    now = now or utc_now()
    if actor.role not in APPEAL_DECISION_ROLES:
        raise AuthorizationError(f"role {actor.role.value} may not decide appeals")
    if record.appeal.status != AppealStatus.PENDING:
        raise InvalidTransitionError(record.appeal.status, decision, "no pending appeal")
    appeal = replace(record.appeal, status=AppealStatus(decision.value), decided_by=actor.actor_id,
                     decided_at=now, outcome=outcome)
    new_status = RevocationStatus.REVERTED if decision == Decision.APPROVED else record.status
    audit = _audit(record, f"APPEAL_{decision.value}", actor.actor_id, new_status, outcome, now)
    return _with_audit(record, audit, appeal=appeal, status=new_status), audit


def public_info(record: RevocationRecord, now: Optional[datetime] = None,
                policy: LifecyclePolicy = DEFAULT_POLICY) -> Optional[Dict[str, Any]]:
    """Revocation details safe to show in a verification response; None when not public."""
    if not record.is_public:
        return None
    return {
        "revocation_id": record.revocation_id,
        "reason": record.reason.value,
        "severity": record.severity.value,
        "status": record.status.value,
        "revoked_at": to_iso(record.execution.executed_at) if record.execution else None,
        "appeal_status": record.appeal.status.value,
        "appeal_deadline": to_iso(appeal_deadline(record, policy)),
        "is_appealable": is_appealable(record, now, policy),
    }


# =============================================================================
# Workflow service
# =============================================================================

class RevocationWorkflow:
    """
    Persists revocation transitions through the record store.

    Every write is a compare-and-set retried on conflict; execution anchors
    the revocation event before touching the certificate.
    """

    def __init__(self, store: RecordStore, anchor: LedgerAnchor, policy: LifecyclePolicy = DEFAULT_POLICY):
        self.store = store
        self.anchor = anchor
        self.policy = policy

    def get(self, revocation_id: str) -> RevocationRecord:
        record = self.store.get_revocation(revocation_id)
        if record is None:
            raise NotFoundError(f"revocation {revocation_id} not found")
        return record

    def list_for(self, cert_id: str) -> List[RevocationRecord]:
        return self.store.list_revocations(cert_id)

    def _certificate(self, cert_id: str) -> Certificate:
        cert = self.store.get_certificate(cert_id)
        if cert is None:
            raise NotFoundError(f"certificate {cert_id} not found")
        return cert

    def _retry(self, operation):
        return retry_on_conflict(operation, self.policy.cas_retries)

    def initiate(
        self,
        cert_id: str,
        reason: Union[str, RevocationReason],
        description: str,
        actor: Actor,
        evidence: Optional[str] = None,
        severity: Optional[Union[str, Severity]] = None,
        is_public: bool = True,
        now: Optional[datetime] = None,
    ) -> RevocationRecord:
        reason = parse_reason(reason)
        if severity is not None and not isinstance(severity, Severity):
            try:
                severity = Severity(str(severity).upper())
            except ValueError:
                raise ValidationError("severity", f"unknown severity: {severity}")
        cert = self._certificate(cert_id)
        for existing in self.store.list_revocations(cert_id):
            if existing.status in OPEN_REVOCATION_STATUSES:
                raise DuplicateError(
                    f"certificate {cert_id} already has open revocation {existing.revocation_id}",
                    code="REVOCATION_ALREADY_OPEN",
                )
        record, audit = new_revocation(cert, reason, description, actor, evidence, severity,
                                       is_public, now, self.policy)
        [saved] = self.store.commit([PendingWrite.insert(record)], [audit])
        logger.info("revocation %s initiated for %s by %s", saved.revocation_id, cert_id, actor.actor_id)
        return saved

    def decide(
        self,
        revocation_id: str,
        tier: Union[str, RevocationTier],
        decision: Union[str, Decision],
        actor: Actor,
        comments: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RevocationRecord:
        try:
            tier = RevocationTier(getattr(tier, "value", tier))
            decision = Decision(getattr(decision, "value", decision))
        except ValueError as e:
            raise ValidationError("decision", str(e))

        def operation():
            record = self.get(revocation_id)
            updated, audit = decide_tier(record, tier, decision, actor, comments, now)
            [saved] = self.store.commit([PendingWrite.update(updated, record.version)], [audit])
            return saved

        saved = self._retry(operation)
        logger.info("revocation %s: %s %s -> %s", revocation_id, tier.value, decision.value, saved.status.value)
        return saved

    def execute(self, revocation_id: str, actor: Actor, now: Optional[datetime] = None) -> RevocationRecord:
        """
        Anchor the revocation event and revoke the certificate.

        An execution claim is written by compare-and-set before the ledger
        is contacted, so concurrent callers never anchor the event twice.

        Raises:
            InvalidTransitionError: record not APPROVED, or certificate not ISSUED
            AnchoringError: ledger failure, or execution already in flight;
                the certificate is not changed
        """
        now = now or utc_now()
        if actor.role not in REVOCATION_ROLES:
            raise AuthorizationError(f"role {actor.role.value} may not execute revocations")
        record = self.get(revocation_id)
        if record.status == RevocationStatus.EXECUTED:
            return record
        if record.status != RevocationStatus.APPROVED:
            raise InvalidTransitionError(record.status, RevocationStatus.EXECUTED,
                                         "all three tiers must approve before execution")
        cert = self._certificate(record.cert_id)
        status = effective_status(cert, now)
        if status != CertificateStatus.ISSUED:
            raise InvalidTransitionError(status, CertificateStatus.REVOKED)

        claimed, claim_audit = claim_execution(record, actor, now, self.policy)
        try:
            [claimed] = self.store.commit([PendingWrite.update(claimed, record.version)], [claim_audit])
        except ConcurrencyError:
            raise AnchoringError(f"execution of {revocation_id} was claimed by another caller",
                                 code="ANCHOR_IN_FLIGHT")
        try:
            receipt = self.anchor.anchor_revocation(claimed, cert, now)
        except AnchoringError as e:
            if e.code in SENT_STATUS_UNKNOWN:
                logger.warning("execution claim on %s kept: %s", revocation_id, e.message)
            else:
                self._release(claimed, actor, e, now)
            raise

        def operation():
            current = self.get(revocation_id)
            if current.status == RevocationStatus.EXECUTED:
                return current
            cert = self._certificate(current.cert_id)
            executed, audit = mark_executed(current, actor, receipt.tx_id, receipt.block_number, now)
            revoked, cert_audit = transition(
                cert, CertificateStatus.REVOKED, "REVOKED", actor.actor_id,
                f"revocation {revocation_id}: {current.reason.value}", now=now,
                revoked_at=now, revoked_by=actor.actor_id, revocation_reason=current.reason.value,
            )
            saved, _ = self.store.commit(
                [PendingWrite.update(executed, current.version), PendingWrite.update(revoked, cert.version)],
                [audit, cert_audit],
            )
            return saved

        saved = self._retry(operation)
        logger.info("certificate %s revoked by %s (tx %s)", record.cert_id, revocation_id, receipt.tx_id)
        return saved

    def _release(self, claimed: RevocationRecord, actor: Actor, error: AnchoringError, now: datetime) -> None:
        released, audit = release_execution(claimed, actor, error, now)
        try:
            self.store.commit([PendingWrite.update(released, claimed.version)], [audit])
        except ConcurrencyError:
            logger.warning("could not release execution claim on %s; it expires after %s",
                           claimed.revocation_id, self.policy.anchor_claim_ttl)

    def file_appeal(
        self,
        revocation_id: str,
        actor: Actor,
        reason: str,
        evidence: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RevocationRecord:
        def operation():
            record = self.get(revocation_id)
            if actor.role == Role.HOLDER:
                cert = self._certificate(record.cert_id)
                if cert.student_code != actor.actor_id:
                    raise AuthorizationError("holders may only appeal revocations of their own certificates")
            updated, audit = file_appeal(record, actor, reason, evidence, now, self.policy)
            [saved] = self.store.commit([PendingWrite.update(updated, record.version)], [audit])
            return saved

        saved = self._retry(operation)
        logger.info("appeal filed on %s by %s", revocation_id, actor.actor_id)
        return saved

    def decide_appeal(
        self,
        revocation_id: str,
        decision: Union[str, Decision],
        actor: Actor,
        outcome: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RevocationRecord:
        """An approved appeal reverts the record and reinstates the certificate."""
        try:
            decision = Decision(getattr(decision, "value", decision))
        except ValueError as e:
            raise ValidationError("decision", str(e))
        now = now or utc_now()

        def operation():
            record = self.get(revocation_id)
            updated, audit = decide_appeal(record, decision, actor, outcome, now)
            writes = [PendingWrite.update(updated, record.version)]
            entries = [audit]
            if decision == Decision.APPROVED:
                cert = self._certificate(record.cert_id)
                reinstated, cert_audit = transition(
                    cert, CertificateStatus.ISSUED, "REINSTATED", actor.actor_id,
                    f"appeal on {revocation_id} approved", now=now,
                    revoked_at=None, revoked_by=None, revocation_reason=None,
                )
                writes.append(PendingWrite.update(reinstated, cert.version))
                entries.append(cert_audit)
            saved = self.store.commit(writes, entries)
            return saved[0]

        saved = self._retry(operation)
        logger.info("appeal on %s %s by %s", revocation_id, decision.value, actor.actor_id)
        return saved

    def public_info(self, cert_id: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """Public details of the revocation currently in force for a certificate."""
        for record in reversed(self.store.list_revocations(cert_id)):
            if record.status == RevocationStatus.EXECUTED:
                return public_info(record, now, self.policy)
        return None
