"""
CertLedger Certificate Lifecycle

Top-level service for a certificate's life:

    submit -> VALIDATION -> APPROVAL -> SIGN_OFF -> anchor -> ISSUED
                                                               |
                                       REVOKED <- revocation --+-- EXPIRED (lazy)

Each operation reads the current records, runs the pure transition
functions from ``transitions`` / ``approval``, and commits the result with
compare-and-set. A stale write is retried against the fresh records, so a
decision that is no longer legal surfaces as InvalidTransitionError rather
than a conflict.
"""

import logging
import secrets
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Union

from . import approval
from .canonicalization import canonicalize
from .errors import (
    AnchoringError,
    AuthorizationError,
    ConcurrencyError,
    DuplicateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .hashing import is_fixed_width_hex, normalize_hash, payload_hash, sha256_hex
from .integrity import IntegrityResult, IntegrityVerifier
from .ledger import LedgerAnchor
from .policy import DEFAULT_POLICY, LifecyclePolicy
from .records import AnchorRef, ApprovalQueueEntry, Certificate, make_audit
from .revocation import RevocationWorkflow
from .store import ContentStore, PendingWrite, RecordStore, SubjectRegistry, retry_on_conflict
from .timeutil import parse_date, to_iso, utc_now
from .transitions import (
    STATUS_AFTER_STEP,
    STEP_FOR_STATUS,
    annotate,
    effective_status,
    expire_if_due,
    transition,
)
from .types import (
    REVERT_ROLES,
    SUBMIT_ROLES,
    Actor,
    ApprovalStep,
    CertificateCategory,
    CertificateStatus,
    ContentSource,
    Decision,
    Priority,
    TamperState,
)

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = (
    "student_code",
    "student_name",
    "institution_id",
    "institution_name",
    "course_name",
    "grade",
    "issue_date",
)

# Fields a resubmission may correct
CORRECTABLE_FIELDS = (
    "student_name",
    "institution_name",
    "course_name",
    "grade",
    "category",
    "issue_date",
    "expiry_date",
    "metadata",
)

# Verifications are counted on settled certificates only; pending records
# keep their version for the approval and anchoring writers
COUNTED_STATUSES = frozenset({
    CertificateStatus.ISSUED,
    CertificateStatus.REVOKED,
    CertificateStatus.EXPIRED,
})

LEDGER_STATUS_UNKNOWN = "UNKNOWN"

# (approver actor id, content hash, signature) -> valid?
SignatureCheck = Callable[[str, str, str], bool]


def new_cert_id(now: Optional[datetime] = None) -> str:
    now = now or utc_now()
    return f"CERT-{int(now.timestamp() * 1000)}-{secrets.token_hex(8).upper()}"


def _parse_category(value: Any) -> CertificateCategory:
    if value is None or value == "":
        return CertificateCategory.COURSE
    try:
        return CertificateCategory(str(getattr(value, "value", value)).strip().upper())
    except ValueError:
        raise ValidationError("category", f"unknown category: {value}")


def _parse_date(name: str, value: Any) -> datetime:
    try:
        return parse_date(value)
    except (TypeError, ValueError):
        raise ValidationError(name, f"not a valid date: {value!r}")


def _parse_decision(value: Union[str, Decision]) -> Decision:
    raw = str(getattr(value, "value", value)).strip().upper()
    raw = {"APPROVE": "APPROVED", "REJECT": "REJECTED"}.get(raw, raw)
    try:
        return Decision(raw)
    except ValueError:
        raise ValidationError("action", f"must be APPROVE or REJECT, got {value!r}")


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of one approval decision (and the anchor that may follow it)."""
    certificate: Certificate
    queue_entry: ApprovalQueueEntry
    step: ApprovalStep
    decision: Decision
    anchor_ref: Optional[AnchorRef] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cert_id": self.certificate.cert_id,
            "status": self.certificate.status.value,
            "step": self.step.value,
            "decision": self.decision.value,
            "queue_status": self.queue_entry.status.value,
            "tx_id": self.anchor_ref.tx_id if self.anchor_ref else None,
            "block_number": self.anchor_ref.block_number if self.anchor_ref else None,
        }


@dataclass(frozen=True)
class VerificationReport:
    """
    Answer to "is this certificate valid".

    A missing certificate is a report with found=False, not an error.
    """
    found: bool
    lookup: str
    verified_at: datetime
    is_valid: bool = False
    status: Optional[CertificateStatus] = None
    integrity: Optional[IntegrityResult] = None
    certificate: Optional[Certificate] = None
    revocation: Optional[Dict[str, Any]] = None
    ledger_status: Optional[str] = None

    @property
    def tamper_state(self) -> TamperState:
        return self.integrity.tampered if self.integrity else TamperState.UNKNOWN

    def to_dict(self) -> Dict[str, Any]:
        cert = self.certificate
        return {
            "found": self.found,
            "lookup": self.lookup,
            "is_valid": self.is_valid,
            "tamper_detected": self.tamper_state == TamperState.TAMPERED,
            "tamper_state": self.tamper_state.value,
            "status": self.status.value if self.status else None,
            "certificate": cert.to_dict(include_history=False) if cert else None,
            "revocation": self.revocation,
            "ledger_status": self.ledger_status,
            "verified_at": to_iso(self.verified_at),
        }


class CertificateLifecycle:
    """
    Certificate lifecycle service.

    Usage:
        store = InMemoryRecordStore()
        lifecycle = CertificateLifecycle(store, LedgerAnchor(SimulatedLedgerClient(), store))
        cert = lifecycle.submit({...}, actor)
        lifecycle.process(cert.cert_id, "APPROVE", validator)
    """

    def __init__(
        self,
        store: RecordStore,
        anchor: LedgerAnchor,
        content_store: Optional[ContentStore] = None,
        subject_registry: Optional[SubjectRegistry] = None,
        policy: LifecyclePolicy = DEFAULT_POLICY,
        signature_check: Optional[SignatureCheck] = None,
        auto_anchor: bool = True,
    ):
        self.store = store
        self.anchor_service = anchor
        self.content_store = content_store
        self.subject_registry = subject_registry
        self.policy = policy
        self.signature_check = signature_check
        self.auto_anchor = auto_anchor
        self.verifier = IntegrityVerifier()
        self.revocations = RevocationWorkflow(store, anchor, policy)

    def _retry(self, operation):
        return retry_on_conflict(operation, self.policy.cas_retries)

    def _load(self, cert_id: str) -> Certificate:
        cert = self.store.get_certificate(cert_id)
        if cert is None:
            raise NotFoundError(f"certificate {cert_id} not found")
        return cert

    def _load_entry(self, cert_id: str) -> ApprovalQueueEntry:
        entry = self.store.get_queue_entry(cert_id)
        if entry is None:
            raise NotFoundError(f"no approval entry for {cert_id}")
        return entry

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit(
        self,
        data: Mapping[str, Any],
        actor: Actor,
        document: Optional[bytes] = None,
        document_hash: Optional[str] = None,
        priority: Union[str, Priority] = Priority.NORMAL,
        now: Optional[datetime] = None,
    ) -> Certificate:
        """
        Create a certificate in PENDING_L1 and queue it for validation.

        Args:
            data: Subject attributes (student_code, student_name, institution_id,
                institution_name, course_name, grade, issue_date, optional
                expiry_date, category, cert_id, metadata)
            actor: Submitting institution admin
            document: Optional document bytes, kept in the content store
            document_hash: Declared SHA-256 of the document. Must match
                ``document`` when both are given; on its own it declares an
                externally held document.

        Raises:
            AuthorizationError: actor may not submit
            ValidationError: missing or malformed input
            DuplicateError: cert_id or content hash already known
        """
        now = now or utc_now()
        if actor.role not in SUBMIT_ROLES:
            raise AuthorizationError(f"role {actor.role.value} may not submit certificates")

        for name in REQUIRED_FIELDS:
            if not str(data.get(name) or "").strip():
                raise ValidationError(name, "is required", code="MISSING_FIELD")
        issue_date = _parse_date("issue_date", data["issue_date"])
        expiry_date = _parse_date("expiry_date", data["expiry_date"]) if data.get("expiry_date") else None
        if expiry_date is not None and expiry_date <= issue_date:
            raise ValidationError("expiry_date", "must be after issue_date")
        try:
            priority = Priority(str(getattr(priority, "value", priority)).upper())
        except ValueError:
            raise ValidationError("priority", f"unknown priority: {priority}")

        content_source = ContentSource.PAYLOAD
        if document_hash is not None:
            if not is_fixed_width_hex(document_hash):
                raise ValidationError("document_hash", "must be 64 hex characters", code="INVALID_HASH")
            document_hash = normalize_hash(document_hash)
            content_source = ContentSource.EXTERNAL
        if document is not None:
            computed = sha256_hex(document)
            if document_hash is not None and document_hash != computed:
                raise ValidationError("document_hash", "does not match the uploaded document",
                                      code="HASH_MISMATCH")
            document_hash = computed
            content_source = ContentSource.DOCUMENT

        cert_id = str(data.get("cert_id") or "").strip() or new_cert_id(now)
        cert = Certificate(
            cert_id=cert_id,
            content_hash="",
            student_code=str(data["student_code"]).strip(),
            student_name=str(data["student_name"]).strip(),
            institution_id=str(data["institution_id"]).strip(),
            institution_name=str(data["institution_name"]).strip(),
            course_name=str(data["course_name"]).strip(),
            grade=str(data["grade"]).strip(),
            issue_date=issue_date,
            submitted_by=actor.actor_id,
            category=_parse_category(data.get("category")),
            expiry_date=expiry_date,
            content_source=content_source,
            document_hash=document_hash,
            metadata=dict(data.get("metadata") or {}),
            created_at=now,
        )
        cert = replace(cert, content_hash=payload_hash(cert.payload()))

        if self.store.get_certificate(cert.cert_id) is not None:
            raise DuplicateError(f"certificate {cert.cert_id} already exists")
        existing = self.store.find_by_content_hash(cert.content_hash)
        if existing is not None:
            raise DuplicateError(f"identical certificate already submitted as {existing.cert_id}",
                                 existing_cert_id=existing.cert_id)

        audit = make_audit("SUBMITTED", actor.actor_id, None, CertificateStatus.PENDING_L1,
                           None, subject_type="certificate", subject_id=cert.cert_id, now=now)
        cert = cert.with_audit(audit)
        entry, entry_audit = approval.new_entry(cert.cert_id, actor.actor_id, priority, now)

        saved, _ = self.store.commit([PendingWrite.insert(cert), PendingWrite.insert(entry)], [audit, entry_audit])
        # Only the submit that won the insert stores bytes, and never over existing ones
        if document is not None and self.content_store is not None:
            if not self.content_store.put(cert.cert_id, document):
                logger.warning("document for %s already stored; kept the existing bytes", cert.cert_id)
        logger.info("certificate %s submitted by %s", saved.cert_id, actor.actor_id)
        return saved

    # -------------------------------------------------------------------------
    # Approval
    # -------------------------------------------------------------------------

    def process(
        self,
        cert_id: str,
        action: Union[str, Decision],
        actor: Actor,
        comments: Optional[str] = None,
        signature: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ProcessResult:
        """
        Decide the step the certificate is currently waiting on.

        Approving sign-off anchors the certificate straight away when
        ``auto_anchor`` is set; an anchoring failure propagates and leaves
        the signed-off certificate in PENDING_L3 for a manual ``anchor``.
        """
        decision = _parse_decision(action)
        now = now or utc_now()

        def operation() -> ProcessResult:
            cert = self._load(cert_id)
            entry = self._load_entry(cert_id)
            step = STEP_FOR_STATUS.get(cert.status)
            if step is None:
                raise InvalidTransitionError(cert.status, decision,
                                             f"certificate {cert_id} is not awaiting a decision")

            issues = []
            if step == ApprovalStep.VALIDATION:
                similar = self.store.find_similar(cert.student_code, cert.course_name, cert.institution_id)
                issues = approval.validation_issues(cert, self.subject_registry, similar)
            if step == ApprovalStep.APPROVAL and signature and decision == Decision.APPROVED:
                self._check_signature(actor, cert, signature)

            new_entry, entry_audit = approval.decide(entry, step, decision, actor, comments, issues,
                                                     signature, now, self.policy)
            action_name = f"{step.value}_{decision.value}"
            if decision == Decision.REJECTED:
                reason = comments or "; ".join(issues) or f"rejected at {step.value}"
                new_cert, cert_audit = transition(cert, CertificateStatus.REJECTED, action_name,
                                                  actor.actor_id, comments, now, rejection_reason=reason)
            elif STATUS_AFTER_STEP[step] == cert.status:
                new_cert, cert_audit = annotate(cert, action_name, actor.actor_id, comments, now)
            else:
                new_cert, cert_audit = transition(cert, STATUS_AFTER_STEP[step], action_name,
                                                  actor.actor_id, comments, now)

            saved_cert, saved_entry = self.store.commit(
                [PendingWrite.update(new_cert, cert.version), PendingWrite.update(new_entry, entry.version)],
                [cert_audit, entry_audit],
            )
            return ProcessResult(saved_cert, saved_entry, step, decision)

        result = self._retry(operation)
        logger.info("certificate %s: %s %s by %s", cert_id, result.step.value, decision.value, actor.actor_id)

        if self.auto_anchor and result.queue_entry.is_ready_for_issuance():
            ref = self.anchor_service.anchor(cert_id, actor, now)
            result = replace(result, certificate=self._load(cert_id),
                             queue_entry=self._load_entry(cert_id), anchor_ref=ref)
        return result

    def _check_signature(self, actor: Actor, cert: Certificate, signature: str) -> None:
        if self.signature_check is None:
            return
        if not self.signature_check(actor.actor_id, cert.content_hash, signature):
            raise ValidationError("signature", "approver signature does not verify", code="INVALID_SIGNATURE")

    def revert(self, cert_id: str, actor: Actor, reason: Optional[str] = None,
               now: Optional[datetime] = None) -> Certificate:
        """Send a pending certificate back for correction (not a rejection)."""
        if actor.role not in REVERT_ROLES:
            raise AuthorizationError(f"role {actor.role.value} may not revert certificates")
        now = now or utc_now()

        def operation() -> Certificate:
            cert = self._load(cert_id)
            entry = self._load_entry(cert_id)
            new_cert, cert_audit = transition(cert, CertificateStatus.NEEDS_CORRECTION, "REVERTED",
                                              actor.actor_id, reason, now)
            new_entry, entry_audit = approval.revert(entry, actor, reason, now)
            saved, _ = self.store.commit(
                [PendingWrite.update(new_cert, cert.version), PendingWrite.update(new_entry, entry.version)],
                [cert_audit, entry_audit],
            )
            return saved

        saved = self._retry(operation)
        logger.info("certificate %s reverted by %s", cert_id, actor.actor_id)
        return saved

    def resubmit(
        self,
        cert_id: str,
        actor: Actor,
        corrections: Optional[Mapping[str, Any]] = None,
        comments: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Certificate:
        """
        Restart approval for a REJECTED or NEEDS_CORRECTION certificate.

        Corrections may change the subject attributes listed in
        CORRECTABLE_FIELDS; the content hash is recomputed.
        """
        if actor.role not in SUBMIT_ROLES:
            raise AuthorizationError(f"role {actor.role.value} may not resubmit certificates")
        now = now or utc_now()
        corrections = dict(corrections or {})
        unknown = sorted(set(corrections) - set(CORRECTABLE_FIELDS))
        if unknown:
            raise ValidationError(unknown[0], "cannot be corrected on resubmission", code="NOT_CORRECTABLE")

        changes: Dict[str, Any] = {}
        for name, value in corrections.items():
            if name in ("issue_date", "expiry_date"):
                value = _parse_date(name, value) if value else None
                if name == "issue_date" and value is None:
                    raise ValidationError(name, "is required", code="MISSING_FIELD")
            elif name == "category":
                value = _parse_category(value)
            elif name == "metadata":
                value = dict(value or {})
            else:
                value = str(value or "").strip()
                if not value:
                    raise ValidationError(name, "is required", code="MISSING_FIELD")
            changes[name] = value

        def operation() -> Certificate:
            cert = self._load(cert_id)
            entry = self._load_entry(cert_id)
            corrected = replace(cert, **changes)
            if corrected.expiry_date is not None and corrected.expiry_date <= corrected.issue_date:
                raise ValidationError("expiry_date", "must be after issue_date")
            new_hash = payload_hash(corrected.payload())
            new_entry, entry_audit = approval.resubmit(entry, actor, comments, now)
            new_cert, cert_audit = transition(cert, CertificateStatus.PENDING_L1, "RESUBMITTED",
                                              actor.actor_id, comments, now,
                                              content_hash=new_hash, rejection_reason=None, **changes)
            saved, _ = self.store.commit(
                [PendingWrite.update(new_cert, cert.version), PendingWrite.update(new_entry, entry.version)],
                [cert_audit, entry_audit],
            )
            return saved

        saved = self._retry(operation)
        logger.info("certificate %s resubmitted by %s (cycle %s)", cert_id, actor.actor_id,
                    self._load_entry(cert_id).cycle)
        return saved

    # -------------------------------------------------------------------------
    # Anchoring
    # -------------------------------------------------------------------------

    def anchor(self, cert_id: str, actor: Actor, now: Optional[datetime] = None) -> AnchorRef:
        """Anchor (or re-try anchoring) a signed-off certificate."""
        return self.anchor_service.anchor(cert_id, actor, now)

    # -------------------------------------------------------------------------
    # Reads and verification
    # -------------------------------------------------------------------------

    def _apply_expiry(self, cert: Certificate, now: datetime) -> Certificate:
        expired = expire_if_due(cert, now)
        if expired is None:
            return cert
        new_cert, audit = expired
        try:
            [saved] = self.store.commit([PendingWrite.update(new_cert, cert.version)], [audit])
            logger.info("certificate %s expired", cert.cert_id)
            return saved
        except ConcurrencyError:
            # Someone else wrote first; the status is still reported as EXPIRED on read
            return self.store.get_certificate(cert.cert_id) or cert

    def get(self, cert_id: str, now: Optional[datetime] = None) -> Certificate:
        return self._apply_expiry(self._load(cert_id), now or utc_now())

    def find(self, lookup: str, now: Optional[datetime] = None) -> Optional[Certificate]:
        cert = self.store.find_certificate(lookup)
        return self._apply_expiry(cert, now or utc_now()) if cert else None

    def queue_entry(self, cert_id: str) -> ApprovalQueueEntry:
        self._load(cert_id)
        return self._load_entry(cert_id)

    def progress(self, cert_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        cert = self.get(cert_id, now)
        report = approval.progress(self._load_entry(cert_id))
        report["certificate_status"] = effective_status(cert, now or utc_now()).value
        return report

    def check_integrity(self, cert: Certificate) -> IntegrityResult:
        """
        Recompute the content hash from the stored record and, when a
        document is attached, the document hash from the stored bytes.

        TAMPERED if either check fails, INTACT if every check could run and
        passed, UNKNOWN when the document bytes are not available.
        """
        record_check = self.verifier.verify(cert.content_hash, canonicalize(cert.payload()))
        if record_check.tamper_detected or cert.document_hash is None:
            return record_check
        raw = self.content_store.get(cert.cert_id) if self.content_store is not None else None
        document_check = self.verifier.verify(cert.document_hash, raw)
        if document_check.tampered != TamperState.INTACT:
            return document_check
        return record_check

    def verify(
        self,
        lookup: str,
        now: Optional[datetime] = None,
        count: bool = True,
        check_ledger: bool = False,
    ) -> VerificationReport:
        """
        Verify a certificate by cert id, content hash or ledger transaction id.

        Never raises for an unknown certificate. Increments the
        verification counter on a best-effort basis.
        """
        now = now or utc_now()
        cert = self.find(lookup, now)
        if cert is None:
            return VerificationReport(found=False, lookup=lookup, verified_at=now)

        status = effective_status(cert, now)
        integrity = self.check_integrity(cert)
        ledger_status = None
        if check_ledger and cert.anchor_ref is not None:
            try:
                ledger_status = self.anchor_service.transaction_status(cert.anchor_ref.tx_id)
            except AnchoringError as e:
                # Confirmation was asked for and could not be had: not valid
                logger.warning("ledger check for %s failed: %s", cert.cert_id, e.message)
                ledger_status = LEDGER_STATUS_UNKNOWN

        is_valid = (
            status == CertificateStatus.ISSUED
            and cert.anchor_ref is not None
            and integrity.tampered != TamperState.TAMPERED
            and ledger_status in (None, "CONFIRMED")
        )
        if count:
            cert = self._count_verification(cert)
        report = VerificationReport(
            found=True,
            lookup=lookup,
            verified_at=now,
            is_valid=is_valid,
            status=status,
            integrity=integrity,
            certificate=cert,
            revocation=self.revocations.public_info(cert.cert_id, now),
            ledger_status=ledger_status,
        )
        if integrity.tamper_detected:
            logger.warning("tamper detected on %s: stored %s recomputed %s",
                           cert.cert_id, integrity.stored_hash, integrity.recomputed_hash)
        return report

    def _count_verification(self, cert: Certificate) -> Certificate:
        if cert.status not in COUNTED_STATUSES:
            return cert
        counted = replace(cert, verification_count=cert.verification_count + 1)
        try:
            [saved] = self.store.commit([PendingWrite.update(counted, cert.version)])
            return saved
        except ConcurrencyError:
            logger.debug("verification count for %s skipped after a concurrent write", cert.cert_id)
            return cert
