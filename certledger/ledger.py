"""
CertLedger Ledger Anchor

Adapts an approved certificate into an anchoring transaction on an external
immutable ledger. The ledger itself is a capability behind ``LedgerClient``;
this module owns the protocol around it:

    1. Idempotency   an ISSUED certificate returns its stored anchor ref
                     without touching the ledger
    2. Claim         an anchoring claim (``anchor_attempt``) is set by
                     compare-and-set before any network call, so two callers
                     never submit the same certificate
    3. Reconcile     the ledger is queried for the fixed-width id before
                     submitting, to pick up an earlier attempt that landed
                     but was never recorded
    4. Submit        cost estimate x safety margin, floored to an int
    5. Record        certificate -> ISSUED and the approval entry is archived
                     in one commit

A failed submission leaves the certificate in PENDING_L3 and raises
AnchoringError. Nothing here retries a submission automatically. A timeout
means "status unknown": the ledger is re-queried, never re-submitted, and
the claim is kept until it goes stale so a transaction that is still
pending cannot be doubled by the next caller. While a claim is held the
certificate cannot leave PENDING_L3 other than by being issued.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from . import approval
from .errors import (
    AnchoringError,
    AuthorizationError,
    ConcurrencyError,
    InvalidTransitionError,
    NotFoundError,
)
from .hashing import fixed_width_id, sha256_hex
from .policy import DEFAULT_AUXILIARY_REF, DEFAULT_POLICY, LifecyclePolicy
from .records import AnchorAttempt, AnchorRef, Certificate, RevocationRecord
from .store import PendingWrite, RecordStore
from .timeutil import to_epoch, utc_now
from .transitions import annotate, transition
from .types import ANCHOR_ROLES, Actor, CertificateStatus

logger = logging.getLogger(__name__)

# Failures after the transaction was sent: it may still land, so the claim stays
SENT_STATUS_UNKNOWN = frozenset({"LEDGER_TIMEOUT", "STATUS_UNKNOWN"})


def claim_is_fresh(attempt: Optional[AnchorAttempt], now: datetime,
                   policy: LifecyclePolicy = DEFAULT_POLICY) -> bool:
    return attempt is not None and now - attempt.started_at < policy.anchor_claim_ttl


# =============================================================================
# Ledger capability
# =============================================================================

@dataclass(frozen=True)
class LedgerPayload:
    """The record written to the ledger for one certificate."""
    fixed_width_id: str
    subject_code: str
    credential_name: str
    grade: str
    issue_date_epoch: int
    expiry_date_epoch: int
    auxiliary_ref: str = DEFAULT_AUXILIARY_REF

    @classmethod
    def for_certificate(cls, cert: Certificate, policy: LifecyclePolicy = DEFAULT_POLICY) -> "LedgerPayload":
        expiry = cert.expiry_date or (cert.issue_date + policy.default_ledger_validity)
        return cls(
            fixed_width_id=fixed_width_id(cert.content_hash, cert.cert_id),
            subject_code=cert.student_code,
            credential_name=cert.course_name,
            grade=cert.grade,
            issue_date_epoch=to_epoch(cert.issue_date),
            expiry_date_epoch=to_epoch(expiry),
            auxiliary_ref=cert.document_hash or DEFAULT_AUXILIARY_REF,
        )

    @classmethod
    def for_revocation(cls, record: RevocationRecord, cert: Certificate, now: datetime) -> "LedgerPayload":
        marker = revocation_marker(record)
        return cls(
            fixed_width_id="0x" + sha256_hex(marker),
            subject_code=cert.student_code,
            credential_name=cert.course_name,
            grade=record.reason.value,
            issue_date_epoch=to_epoch(now),
            expiry_date_epoch=0,
            auxiliary_ref=marker,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fixed_width_id": self.fixed_width_id,
            "subject_code": self.subject_code,
            "credential_name": self.credential_name,
            "grade": self.grade,
            "issue_date_epoch": self.issue_date_epoch,
            "expiry_date_epoch": self.expiry_date_epoch,
            "auxiliary_ref": self.auxiliary_ref,
        }


def revocation_marker(record: RevocationRecord) -> str:
    return f"revoke:{record.cert_id}:{record.revocation_id}"


@dataclass(frozen=True)
class LedgerReceipt:
    tx_id: str
    block_number: int
    cost_used: Optional[int] = None


class LedgerError(Exception):
    """Base class for ledger client failures."""
    pass


class CostEstimationError(LedgerError):
    pass


class LedgerSubmissionError(LedgerError):
    """The ledger refused the transaction. It did not land."""
    pass


class LedgerTimeout(LedgerError):
    """No answer in time. The transaction may or may not have landed."""
    pass


class LedgerClient(ABC):
    """
    Abstract ledger capability.

    Implementations must be safe to call from several threads and must
    raise LedgerError subclasses, never return partial results.
    """

    @abstractmethod
    def estimate_cost(self, payload: LedgerPayload) -> int:
        pass

    @abstractmethod
    def submit(self, payload: LedgerPayload, cost_limit: int) -> LedgerReceipt:
        pass

    @abstractmethod
    def find_anchor(self, fixed_width_id: str) -> Optional[LedgerReceipt]:
        """Look up an anchored record by its fixed-width id; None if absent."""
        pass

    @abstractmethod
    def transaction_status(self, tx_id: str) -> str:
        """One of CONFIRMED, PENDING, NOT_FOUND."""
        pass


class SimulatedLedgerClient(LedgerClient):
    """
    In-memory, deterministic ledger for development/testing.

    Failure injection for tests:
        fail_estimate     estimate_cost raises CostEstimationError
        fail_submit       submit raises LedgerSubmissionError
        timeout_landed    submit records the anchor, then raises LedgerTimeout
        timeout_lost      submit raises LedgerTimeout without recording
        fail_query        find_anchor raises LedgerError
    """

    def __init__(self, base_cost: int = 50_000, start_block: int = 1_000):
        self.base_cost = base_cost
        self._block = start_block
        self._anchors: Dict[str, LedgerReceipt] = {}
        self._payloads: Dict[str, LedgerPayload] = {}
        self._lock = threading.Lock()
        self.submit_calls = 0
        self.last_cost_limit: Optional[int] = None
        self.fail_estimate = False
        self.fail_submit = False
        self.timeout_landed = False
        self.timeout_lost = False
        self.fail_query = False

    def estimate_cost(self, payload: LedgerPayload) -> int:
        if self.fail_estimate:
            raise CostEstimationError("simulated estimation failure")
        return self.base_cost + 10 * len(payload.credential_name)

    def submit(self, payload: LedgerPayload, cost_limit: int) -> LedgerReceipt:
        with self._lock:
            self.submit_calls += 1
            self.last_cost_limit = cost_limit
            if self.fail_submit:
                raise LedgerSubmissionError("simulated submission failure")
            if self.timeout_lost:
                raise LedgerTimeout("simulated timeout (not landed)")
            receipt = self._record(payload)
        if self.timeout_landed:
            raise LedgerTimeout("simulated timeout (landed)")
        return receipt

    def _record(self, payload: LedgerPayload) -> LedgerReceipt:
        self._block += 1
        receipt = LedgerReceipt(
            tx_id="0x" + sha256_hex(f"{payload.fixed_width_id}:{self._block}"),
            block_number=self._block,
            cost_used=self.estimate_cost(payload),
        )
        self._anchors[payload.fixed_width_id] = receipt
        self._payloads[payload.fixed_width_id] = payload
        return receipt

    def preload(self, payload: LedgerPayload) -> LedgerReceipt:
        """Anchor directly, as if an earlier unrecorded attempt had landed."""
        with self._lock:
            return self._record(payload)

    def find_anchor(self, fixed_width_id: str) -> Optional[LedgerReceipt]:
        if self.fail_query:
            raise LedgerError("simulated query failure")
        with self._lock:
            return self._anchors.get(fixed_width_id)

    def transaction_status(self, tx_id: str) -> str:
        with self._lock:
            known = any(r.tx_id == tx_id for r in self._anchors.values())
        return "CONFIRMED" if known else "NOT_FOUND"


# =============================================================================
# Anchoring protocol
# =============================================================================

class LedgerAnchor:
    """
    Anchors approved certificates and revocation events.

    Usage:
        anchor = LedgerAnchor(SimulatedLedgerClient(), store)
        ref = anchor.anchor(cert_id, actor)
    """

    def __init__(self, client: LedgerClient, store: RecordStore, policy: LifecyclePolicy = DEFAULT_POLICY):
        self.client = client
        self.store = store
        self.policy = policy

    def cost_limit(self, estimate: int) -> int:
        return int(estimate * self.policy.cost_safety_margin)

    def anchor(self, cert_id: str, actor: Actor, now: Optional[datetime] = None) -> AnchorRef:
        """
        Anchor a signed-off certificate and issue it.

        Raises:
            NotFoundError: unknown certificate
            InvalidTransitionError: certificate not in PENDING_L3 with every
                approval step APPROVED
            AuthorizationError: actor may not trigger anchoring
            AnchoringError: ledger failure; the certificate stays PENDING_L3
        """
        now = now or utc_now()
        cert = self.store.get_certificate(cert_id)
        if cert is None:
            raise NotFoundError(f"certificate {cert_id} not found")
        if cert.anchor_ref is not None and cert.status != CertificateStatus.PENDING_L3:
            logger.info("certificate %s already anchored in %s", cert_id, cert.anchor_ref.tx_id)
            return cert.anchor_ref
        if actor.role not in ANCHOR_ROLES:
            raise AuthorizationError(f"role {actor.role.value} may not anchor certificates")
        if cert.status != CertificateStatus.PENDING_L3:
            raise InvalidTransitionError(cert.status, CertificateStatus.ISSUED)
        entry = self.store.get_queue_entry(cert_id)
        if entry is None or not entry.is_ready_for_issuance():
            raise InvalidTransitionError(cert.status, CertificateStatus.ISSUED,
                                         "all approval steps must be APPROVED before anchoring")

        claimed = self._claim(cert, actor, now)
        try:
            receipt, cost_limit = self._reconcile_and_submit(LedgerPayload.for_certificate(claimed, self.policy))
        except AnchoringError as e:
            if e.code in SENT_STATUS_UNKNOWN:
                self._hold(claimed, actor, e, now)
            else:
                self._release(claimed, actor, e, now)
            raise
        return self._record(claimed, receipt, cost_limit, actor, now)

    def anchor_revocation(self, record: RevocationRecord, cert: Certificate,
                          now: Optional[datetime] = None) -> LedgerReceipt:
        """Anchor a revocation event. Reconciles first, so a repeat never double-anchors."""
        receipt, _ = self._reconcile_and_submit(LedgerPayload.for_revocation(record, cert, now or utc_now()))
        logger.info("revocation %s anchored in %s", record.revocation_id, receipt.tx_id)
        return receipt

    def transaction_status(self, tx_id: str) -> str:
        try:
            return self.client.transaction_status(tx_id)
        except LedgerError as e:
            raise AnchoringError(f"ledger status query failed: {e}", code="LEDGER_UNAVAILABLE",
                                 status_unknown=True)

    # -------------------------------------------------------------------------

    def _claim(self, cert: Certificate, actor: Actor, now: datetime) -> Certificate:
        fixed_id = fixed_width_id(cert.content_hash, cert.cert_id)
        attempt = cert.anchor_attempt
        if attempt is not None:
            if claim_is_fresh(attempt, now, self.policy):
                raise AnchoringError(
                    f"anchoring of {cert.cert_id} already in flight since {attempt.started_at.isoformat()}",
                    code="ANCHOR_IN_FLIGHT",
                    attempt_id=attempt.attempt_id,
                )
            logger.warning("taking over stale anchor claim %s for %s", attempt.attempt_id, cert.cert_id)

        claim = AnchorAttempt(attempt_id=uuid.uuid4().hex, started_at=now, fixed_width_id=fixed_id)
        claimed, audit = annotate(cert, "ANCHOR_STARTED", actor.actor_id, f"fixed id {fixed_id}",
                                  now=now, anchor_attempt=claim)
        try:
            [saved] = self.store.commit([PendingWrite.update(claimed, cert.version)], [audit])
        except ConcurrencyError:
            raise AnchoringError(f"anchoring of {cert.cert_id} was claimed by another caller",
                                 code="ANCHOR_IN_FLIGHT")
        return saved

    def _reconcile_and_submit(self, payload: LedgerPayload) -> Tuple[LedgerReceipt, Optional[int]]:
        fixed_id = payload.fixed_width_id
        try:
            existing = self.client.find_anchor(fixed_id)
        except LedgerError as e:
            raise AnchoringError(f"ledger reconciliation query failed: {e}", code="LEDGER_UNAVAILABLE",
                                 status_unknown=True)
        if existing is not None:
            logger.warning("reconciled %s: already on ledger in %s", fixed_id, existing.tx_id)
            return existing, None

        try:
            estimate = self.client.estimate_cost(payload)
        except LedgerError as e:
            raise AnchoringError(f"cost estimation failed: {e}", code="COST_ESTIMATION_FAILED")
        cost_limit = self.cost_limit(estimate)

        try:
            return self.client.submit(payload, cost_limit), cost_limit
        except LedgerTimeout as e:
            logger.warning("ledger timeout for %s, re-querying: %s", fixed_id, e)
        except LedgerError as e:
            raise AnchoringError(f"ledger submission failed: {e}", code="SUBMISSION_FAILED")

        try:
            landed = self.client.find_anchor(fixed_id)
        except LedgerError as e:
            raise AnchoringError(
                f"ledger timed out and the follow-up query failed: {e}",
                code="STATUS_UNKNOWN",
                status_unknown=True,
            )
        if landed is None:
            # Not visible yet; a pending transaction may still land
            raise AnchoringError("ledger timed out and the transaction is not on the ledger yet",
                                 code="LEDGER_TIMEOUT", status_unknown=True)
        return landed, cost_limit

    def _record(self, claimed: Certificate, receipt: LedgerReceipt, cost_limit: Optional[int],
                actor: Actor, now: datetime) -> AnchorRef:
        ref = AnchorRef(
            tx_id=receipt.tx_id,
            block_number=receipt.block_number,
            fixed_width_id=claimed.anchor_attempt.fixed_width_id,
            anchored_at=now,
            cost_limit=cost_limit,
        )
        cert = claimed
        for _ in range(self.policy.cas_retries):
            if cert.anchor_ref is not None and cert.status != CertificateStatus.PENDING_L3:
                return cert.anchor_ref
            entry = self.store.get_queue_entry(cert.cert_id)
            if (cert.status != CertificateStatus.PENDING_L3 or entry is None
                    or not entry.is_ready_for_issuance()):
                raise self._unrecorded(cert, receipt, actor, now)
            issued, audit = transition(cert, CertificateStatus.ISSUED, "ANCHORED", actor.actor_id,
                                       f"tx {receipt.tx_id} block {receipt.block_number}",
                                       now=now, anchor_ref=ref, anchor_attempt=None)
            archived, queue_audit = approval.archive(entry, receipt.tx_id, now)
            try:
                self.store.commit(
                    [PendingWrite.update(issued, cert.version), PendingWrite.update(archived, entry.version)],
                    [audit, queue_audit],
                )
                logger.info("certificate %s issued in %s", cert.cert_id, receipt.tx_id)
                return ref
            except ConcurrencyError:
                cert = self.store.get_certificate(cert.cert_id)
        raise ConcurrencyError(f"could not record anchor {receipt.tx_id} for {claimed.cert_id}")

    def _unrecorded(self, cert: Certificate, receipt: LedgerReceipt, actor: Actor,
                    now: datetime) -> AnchoringError:
        """
        The transaction landed but the certificate can no longer be issued.

        The receipt goes into the audit trail and the claim is kept, so the
        landed anchor is what the next anchoring call reconciles against.
        """
        logger.error("certificate %s left PENDING_L3 (%s) while %s was landing",
                     cert.cert_id, cert.status.value, receipt.tx_id)
        noted, audit = annotate(cert, "ANCHOR_UNRECORDED", actor.actor_id,
                                f"tx {receipt.tx_id} block {receipt.block_number} landed after {cert.status.value}",
                                now=now)
        try:
            self.store.commit([PendingWrite.update(noted, cert.version)], [audit])
        except ConcurrencyError:
            logger.warning("could not note unrecorded anchor %s on %s", receipt.tx_id, cert.cert_id)
        return AnchoringError(
            f"transaction {receipt.tx_id} landed but {cert.cert_id} is {cert.status.value}",
            code="ANCHOR_UNRECORDED",
            tx_id=receipt.tx_id,
            block_number=receipt.block_number,
        )

    def _hold(self, claimed: Certificate, actor: Actor, error: AnchoringError, now: datetime) -> None:
        held, audit = annotate(claimed, "ANCHOR_STATUS_UNKNOWN", actor.actor_id, error.message, now=now)
        try:
            self.store.commit([PendingWrite.update(held, claimed.version)], [audit])
        except ConcurrencyError:
            logger.warning("could not note unknown anchor status on %s", claimed.cert_id)
        logger.warning("anchor claim on %s kept until %s: %s", claimed.cert_id,
                       claimed.anchor_attempt.started_at + self.policy.anchor_claim_ttl, error.message)

    def _release(self, claimed: Certificate, actor: Actor, error: AnchoringError, now: datetime) -> None:
        released, audit = annotate(claimed, "ANCHOR_FAILED", actor.actor_id, error.message,
                                   now=now, anchor_attempt=None)
        try:
            self.store.commit([PendingWrite.update(released, claimed.version)], [audit])
        except ConcurrencyError:
            logger.warning("could not release anchor claim on %s; it expires after %s",
                           claimed.cert_id, self.policy.anchor_claim_ttl)
