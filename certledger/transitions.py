"""
Certificate state machine.

The transition table is the single source of truth for which status
changes are legal. A certificate holding an anchoring claim may only move
to ISSUED. ``transition`` is a pure function: it takes the current
immutable certificate and returns the new certificate plus the audit entry
describing the change. Anything not in the table raises
InvalidTransitionError naming both states.
"""

from datetime import datetime
from typing import Dict, FrozenSet, Optional, Tuple

from .errors import InvalidTransitionError
from .records import AuditEntry, Certificate, make_audit
from .timeutil import utc_now
from .types import ApprovalStep, CertificateStatus

S = CertificateStatus

TRANSITIONS: Dict[CertificateStatus, FrozenSet[CertificateStatus]] = {
    S.PENDING_L1: frozenset({S.PENDING_L2, S.REJECTED, S.NEEDS_CORRECTION}),
    S.PENDING_L2: frozenset({S.PENDING_L3, S.REJECTED, S.NEEDS_CORRECTION}),
    S.PENDING_L3: frozenset({S.ISSUED, S.REJECTED, S.NEEDS_CORRECTION}),
    S.ISSUED: frozenset({S.REVOKED, S.EXPIRED}),
    S.REJECTED: frozenset({S.PENDING_L1}),
    S.NEEDS_CORRECTION: frozenset({S.PENDING_L1}),
    S.REVOKED: frozenset({S.ISSUED}),
    S.EXPIRED: frozenset(),
}

# Which approval step a pending certificate is waiting on
STEP_FOR_STATUS: Dict[CertificateStatus, ApprovalStep] = {
    S.PENDING_L1: ApprovalStep.VALIDATION,
    S.PENDING_L2: ApprovalStep.APPROVAL,
    S.PENDING_L3: ApprovalStep.SIGN_OFF,
}

# Status reached when a step is approved. Sign-off does not issue: only a
# successful anchor moves PENDING_L3 to ISSUED.
STATUS_AFTER_STEP: Dict[ApprovalStep, CertificateStatus] = {
    ApprovalStep.VALIDATION: S.PENDING_L2,
    ApprovalStep.APPROVAL: S.PENDING_L3,
    ApprovalStep.SIGN_OFF: S.PENDING_L3,
}


def can_transition(current: CertificateStatus, target: CertificateStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def transition(
    cert: Certificate,
    target: CertificateStatus,
    action: str,
    actor: str,
    comments: Optional[str] = None,
    now: Optional[datetime] = None,
    **changes,
) -> Tuple[Certificate, AuditEntry]:
    """
    Move a certificate to ``target``.

    Args:
        cert: Current certificate
        target: Requested status
        action: Audit action name (e.g. "VALIDATION_APPROVED")
        actor: Actor id performing the change
        comments: Optional audit comments
        now: Transition time (defaults to now)
        **changes: Other certificate fields changing together with the status

    Raises:
        InvalidTransitionError: if the table does not allow the move, or an
            anchoring claim is unresolved and the move is not issuance
    """
    if not can_transition(cert.status, target):
        raise InvalidTransitionError(cert.status, target)
    if cert.anchor_attempt is not None and target != S.ISSUED:
        raise InvalidTransitionError(
            cert.status, target,
            f"anchoring attempt {cert.anchor_attempt.attempt_id} on {cert.cert_id} is unresolved; "
            "anchor again to reconcile it first",
        )
    entry = make_audit(action, actor, cert.status, target, comments,
                       subject_type="certificate", subject_id=cert.cert_id, now=now or utc_now())
    return cert.with_audit(entry, status=target, **changes), entry


def annotate(
    cert: Certificate,
    action: str,
    actor: str,
    comments: Optional[str] = None,
    now: Optional[datetime] = None,
    **changes,
) -> Tuple[Certificate, AuditEntry]:
    """Record a state-changing operation that keeps the status as it is."""
    entry = make_audit(action, actor, cert.status, cert.status, comments,
                       subject_type="certificate", subject_id=cert.cert_id, now=now or utc_now())
    return cert.with_audit(entry, **changes), entry


def effective_status(cert: Certificate, now: Optional[datetime] = None) -> CertificateStatus:
    """Status as seen at ``now``; expiry is applied lazily on read."""
    if cert.status == S.ISSUED and cert.is_expired(now or utc_now()):
        return S.EXPIRED
    return cert.status


def expire_if_due(cert: Certificate, now: Optional[datetime] = None) -> Optional[Tuple[Certificate, AuditEntry]]:
    now = now or utc_now()
    if effective_status(cert, now) == S.EXPIRED and cert.status == S.ISSUED:
        return transition(cert, S.EXPIRED, "EXPIRED", "system",
                          "expiry date passed", now=now)
    return None
