"""Shared builders for the lifecycle engine test suites."""

from datetime import datetime, timedelta, timezone

from certledger import (
    Actor,
    CertificateLifecycle,
    InMemoryContentStore,
    InMemoryRecordStore,
    InMemorySubjectRegistry,
    LedgerAnchor,
    Role,
    SimulatedLedgerClient,
    Subject,
)
from certledger.ledger import LedgerClient, LedgerReceipt

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

ADMIN = Actor("admin-1", Role.INSTITUTION_ADMIN)
VALIDATOR = Actor("val-1", Role.VALIDATOR)
REGISTRAR = Actor("reg-1", Role.REGISTRAR)
DEPT = Actor("dept-1", Role.DEPARTMENT_ADMIN)
SUPER = Actor("super-1", Role.SUPER_ADMIN)
HOLDER = Actor("S1", Role.HOLDER)

FRAUD_DESCRIPTION = "Transcript was forged, confirmed by the exam board"


def subject_data(**overrides):
    data = {
        "student_code": "S1",
        "student_name": "Ada Lovelace",
        "institution_id": "UNI-1",
        "institution_name": "University One",
        "course_name": "CS101",
        "grade": "A",
        "issue_date": "2024-02-15",
    }
    data.update(overrides)
    return data


class FixedLedgerClient(LedgerClient):
    """Ledger that confirms every submission with a preset transaction id."""

    def __init__(self, tx_id="0xabc", block_number=4242, estimate=100_000):
        self.tx_id = tx_id
        self.block_number = block_number
        self.estimate = estimate
        self.anchors = {}
        self.submitted = []

    def estimate_cost(self, payload):
        return self.estimate

    def submit(self, payload, cost_limit):
        self.submitted.append((payload, cost_limit))
        receipt = LedgerReceipt(self.tx_id, self.block_number, self.estimate)
        self.anchors[payload.fixed_width_id] = receipt
        return receipt

    def find_anchor(self, fixed_width_id):
        return self.anchors.get(fixed_width_id)

    def transaction_status(self, tx_id):
        return "CONFIRMED" if any(r.tx_id == tx_id for r in self.anchors.values()) else "NOT_FOUND"


class Harness:
    """An in-memory lifecycle wired to a ledger client, with one registered subject."""

    def __init__(self, client=None, auto_anchor=True, signature_check=None, policy=None):
        self.client = client or SimulatedLedgerClient()
        self.store = InMemoryRecordStore()
        self.content = InMemoryContentStore()
        self.registry = InMemorySubjectRegistry([Subject("S1", "Ada Lovelace", "UNI-1")])
        kwargs = {"policy": policy} if policy is not None else {}
        self.anchor = LedgerAnchor(self.client, self.store, **kwargs)
        self.lifecycle = CertificateLifecycle(
            self.store, self.anchor,
            content_store=self.content,
            subject_registry=self.registry,
            signature_check=signature_check,
            auto_anchor=auto_anchor,
            **kwargs,
        )

    def submit(self, now=T0, **overrides):
        document = overrides.pop("document", None)
        return self.lifecycle.submit(subject_data(**overrides), ADMIN, document=document, now=now)

    def approve_all(self, cert_id, now=T0):
        self.lifecycle.process(cert_id, "APPROVE", VALIDATOR, now=now)
        self.lifecycle.process(cert_id, "APPROVE", REGISTRAR, now=now)
        return self.lifecycle.process(cert_id, "APPROVE", DEPT, now=now)

    def issue(self, now=T0, **overrides):
        cert = self.submit(now=now, **overrides)
        self.approve_all(cert.cert_id, now=now)
        return self.lifecycle.get(cert.cert_id, now=now)

    def revoke(self, cert_id, now=T0, reason="FRAUDULENT_CREDENTIALS"):
        revocations = self.lifecycle.revocations
        record = revocations.initiate(cert_id, reason, FRAUD_DESCRIPTION, DEPT, now=now)
        revocations.decide(record.revocation_id, "DEPARTMENT", "APPROVED", DEPT, now=now)
        revocations.decide(record.revocation_id, "REGISTRAR", "APPROVED", REGISTRAR, now=now)
        revocations.decide(record.revocation_id, "SUPER_AUTHORITY", "APPROVED", SUPER, now=now)
        return revocations.execute(record.revocation_id, DEPT, now=now)


def days(n):
    return timedelta(days=n)
