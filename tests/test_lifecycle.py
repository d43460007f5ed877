"""
CertLedger Lifecycle Test Suite

End-to-end behaviour of the certificate lifecycle service over the
in-memory store: submission, the three-step approval pipeline, anchoring,
verification, revocation and appeal.
"""

import unittest
from dataclasses import replace

from certledger import (
    AuthorizationError,
    CertificateStatus,
    DuplicateError,
    InvalidTransitionError,
    NotFoundError,
    QueueStatus,
    RevocationStatus,
    TamperState,
    ValidationError,
    payload_hash,
)
from certledger.ledger import LedgerError
from certledger.store import PendingWrite

from support import (
    ADMIN,
    DEPT,
    FRAUD_DESCRIPTION,
    HOLDER,
    REGISTRAR,
    SUPER,
    T0,
    VALIDATOR,
    FixedLedgerClient,
    Harness,
    days,
    subject_data,
)


class TestSubmission(unittest.TestCase):

    def setUp(self):
        self.h = Harness()

    def test_submit_starts_pending_validation(self):
        cert = self.h.submit()

        self.assertEqual(cert.status, CertificateStatus.PENDING_L1)
        self.assertEqual(cert.content_hash, payload_hash(cert.payload()))
        self.assertTrue(cert.cert_id.startswith("CERT-"))
        self.assertEqual(self.h.lifecycle.queue_entry(cert.cert_id).status, QueueStatus.PENDING)

    def test_identical_content_is_duplicate(self):
        self.h.submit()
        with self.assertRaises(DuplicateError):
            self.h.submit()

    def test_explicit_cert_id_collision_is_duplicate(self):
        self.h.submit(cert_id="CERT-FIXED")
        with self.assertRaises(DuplicateError):
            self.h.submit(cert_id="CERT-FIXED", course_name="CS102")

    def test_missing_field_rejected_before_any_write(self):
        data = subject_data()
        del data["grade"]
        with self.assertRaises(ValidationError) as ctx:
            self.h.lifecycle.submit(data, ADMIN, now=T0)
        self.assertEqual(ctx.exception.code, "MISSING_FIELD")
        self.assertEqual(self.h.store.list_queue(), [])

    def test_expiry_must_follow_issue(self):
        with self.assertRaises(ValidationError):
            self.h.submit(expiry_date="2024-01-01")

    def test_only_institution_admin_submits(self):
        with self.assertRaises(AuthorizationError):
            self.h.lifecycle.submit(subject_data(), VALIDATOR, now=T0)

    def test_document_hash_must_match_upload(self):
        with self.assertRaises(ValidationError) as ctx:
            self.h.lifecycle.submit(subject_data(), ADMIN, document=b"pdf bytes",
                                    document_hash="0" * 64, now=T0)
        self.assertEqual(ctx.exception.code, "HASH_MISMATCH")

    def test_declared_hash_must_be_hex64(self):
        with self.assertRaises(ValidationError) as ctx:
            self.h.lifecycle.submit(subject_data(), ADMIN, document_hash="abc", now=T0)
        self.assertEqual(ctx.exception.code, "INVALID_HASH")

    def test_losing_submit_never_touches_the_winners_document(self):
        winner = self.h.submit(cert_id="CERT-RACE", document=b"%PDF-1.7 winner")
        # The loser's existence check ran before the winner committed
        self.h.store.get_certificate = lambda cert_id: None
        with self.assertRaises(DuplicateError):
            self.h.submit(cert_id="CERT-RACE", course_name="CS102", document=b"%PDF-1.7 loser")
        del self.h.store.get_certificate

        self.assertEqual(self.h.content.get("CERT-RACE"), b"%PDF-1.7 winner")
        self.assertEqual(self.h.lifecycle.check_integrity(winner).tampered, TamperState.INTACT)


class TestApprovalPipeline(unittest.TestCase):

    def setUp(self):
        self.h = Harness(client=FixedLedgerClient(tx_id="0xabc"))

    def test_all_steps_then_anchor_issues(self):
        h = Harness(client=FixedLedgerClient(tx_id="0xabc"), auto_anchor=False)
        cert = h.submit()
        h.approve_all(cert.cert_id)

        self.assertTrue(h.lifecycle.queue_entry(cert.cert_id).is_ready_for_issuance())
        self.assertEqual(h.lifecycle.get(cert.cert_id, T0).status, CertificateStatus.PENDING_L3)

        ref = h.lifecycle.anchor(cert.cert_id, DEPT, now=T0)
        issued = h.lifecycle.get(cert.cert_id, T0)
        self.assertEqual(ref.tx_id, "0xabc")
        self.assertEqual(issued.status, CertificateStatus.ISSUED)
        self.assertEqual(issued.anchor_ref.tx_id, "0xabc")
        self.assertEqual(h.lifecycle.queue_entry(cert.cert_id).status, QueueStatus.ISSUED)

    def test_sign_off_auto_anchors(self):
        cert = self.h.submit()
        result = self.h.approve_all(cert.cert_id)

        self.assertEqual(result.certificate.status, CertificateStatus.ISSUED)
        self.assertEqual(result.anchor_ref.tx_id, "0xabc")
        self.assertEqual(result.to_dict()["block_number"], 4242)

    def test_steps_advance_status(self):
        cert = self.h.submit()
        r1 = self.h.lifecycle.process(cert.cert_id, "APPROVE", VALIDATOR, now=T0)
        self.assertEqual(r1.certificate.status, CertificateStatus.PENDING_L2)
        r2 = self.h.lifecycle.process(cert.cert_id, "APPROVE", REGISTRAR, now=T0)
        self.assertEqual(r2.certificate.status, CertificateStatus.PENDING_L3)

    def test_wrong_role_for_current_step(self):
        cert = self.h.submit()
        with self.assertRaises(AuthorizationError) as ctx:
            self.h.lifecycle.process(cert.cert_id, "APPROVE", REGISTRAR, now=T0)
        self.assertEqual(ctx.exception.code, "ROLE_NOT_PERMITTED")

    def test_separation_of_duties(self):
        cert = self.h.submit()
        self.h.lifecycle.process(cert.cert_id, "APPROVE", SUPER, now=T0)
        with self.assertRaises(AuthorizationError) as ctx:
            self.h.lifecycle.process(cert.cert_id, "APPROVE", SUPER, now=T0)
        self.assertEqual(ctx.exception.code, "SEPARATION_OF_DUTIES")

    def test_unknown_subject_blocks_validation(self):
        cert = self.h.submit(student_code="S404")
        with self.assertRaises(ValidationError) as ctx:
            self.h.lifecycle.process(cert.cert_id, "APPROVE", VALIDATOR, now=T0)
        self.assertEqual(ctx.exception.code, "VALIDATION_ISSUES")
        self.assertIn("SUBJECT_NOT_FOUND", ctx.exception.details["issues"])

        result = self.h.lifecycle.process(cert.cert_id, "REJECT", VALIDATOR, now=T0)
        self.assertEqual(result.certificate.status, CertificateStatus.REJECTED)
        self.assertIn("SUBJECT_NOT_FOUND", result.certificate.rejection_reason)

    def test_similar_live_certificate_is_a_validation_issue(self):
        first = self.h.submit()
        second = self.h.submit(grade="B")
        with self.assertRaises(ValidationError) as ctx:
            self.h.lifecycle.process(second.cert_id, "APPROVE", VALIDATOR, now=T0)
        self.assertIn(f"DUPLICATE_CERTIFICATE:{first.cert_id}", ctx.exception.details["issues"])

    def test_rejection_stops_pipeline(self):
        cert = self.h.submit()
        self.h.lifecycle.process(cert.cert_id, "APPROVE", VALIDATOR, now=T0)
        self.h.lifecycle.process(cert.cert_id, "REJECT", REGISTRAR, comments="grade unsupported", now=T0)

        self.assertEqual(self.h.lifecycle.get(cert.cert_id, T0).status, CertificateStatus.REJECTED)
        with self.assertRaises(InvalidTransitionError):
            self.h.lifecycle.process(cert.cert_id, "APPROVE", DEPT, now=T0)

    def test_resubmission_limit(self):
        cert = self.h.submit()
        for _ in range(2):
            self.h.lifecycle.process(cert.cert_id, "REJECT", VALIDATOR, comments="bad", now=T0)
            self.h.lifecycle.resubmit(cert.cert_id, ADMIN, now=T0)
        self.h.lifecycle.process(cert.cert_id, "REJECT", VALIDATOR, comments="bad", now=T0)

        entry = self.h.lifecycle.queue_entry(cert.cert_id)
        self.assertEqual(entry.rejections.count, 3)
        self.assertFalse(entry.rejections.can_resubmit)
        with self.assertRaises(InvalidTransitionError):
            self.h.lifecycle.resubmit(cert.cert_id, ADMIN, now=T0)

    def test_resubmit_with_corrections_rehashes(self):
        cert = self.h.submit()
        self.h.lifecycle.process(cert.cert_id, "REJECT", VALIDATOR, comments="wrong grade", now=T0)
        fixed = self.h.lifecycle.resubmit(cert.cert_id, ADMIN, corrections={"grade": "B"}, now=T0)

        self.assertEqual(fixed.status, CertificateStatus.PENDING_L1)
        self.assertEqual(fixed.grade, "B")
        self.assertNotEqual(fixed.content_hash, cert.content_hash)
        self.assertEqual(self.h.lifecycle.queue_entry(cert.cert_id).cycle, 2)

    def test_resubmit_rejects_uncorrectable_field(self):
        cert = self.h.submit()
        self.h.lifecycle.process(cert.cert_id, "REJECT", VALIDATOR, now=T0)
        with self.assertRaises(ValidationError) as ctx:
            self.h.lifecycle.resubmit(cert.cert_id, ADMIN, corrections={"student_code": "S2"}, now=T0)
        self.assertEqual(ctx.exception.code, "NOT_CORRECTABLE")

    def test_revert_sends_back_for_correction(self):
        cert = self.h.submit()
        self.h.lifecycle.process(cert.cert_id, "APPROVE", VALIDATOR, now=T0)
        reverted = self.h.lifecycle.revert(cert.cert_id, REGISTRAR, reason="missing transcript", now=T0)

        self.assertEqual(reverted.status, CertificateStatus.NEEDS_CORRECTION)
        entry = self.h.lifecycle.queue_entry(cert.cert_id)
        self.assertEqual(entry.status, QueueStatus.REVERTED)
        self.assertEqual(entry.rejections.count, 0)

        again = self.h.lifecycle.resubmit(cert.cert_id, ADMIN, now=T0)
        self.assertEqual(again.status, CertificateStatus.PENDING_L1)

    def test_progress_report(self):
        cert = self.h.submit()
        self.h.lifecycle.process(cert.cert_id, "APPROVE", VALIDATOR, now=T0)
        report = self.h.lifecycle.progress(cert.cert_id, T0)

        self.assertEqual(report["completed_steps"], 1)
        self.assertEqual(report["percentage"], 33)
        self.assertEqual(report["next_step"], "APPROVAL")
        self.assertEqual(report["certificate_status"], "PENDING_L2")

    def test_approver_signature_checked(self):
        h = Harness(signature_check=lambda actor_id, content_hash, sig: sig == f"signed:{content_hash}")
        cert = h.submit()
        h.lifecycle.process(cert.cert_id, "APPROVE", VALIDATOR, now=T0)

        with self.assertRaises(ValidationError) as ctx:
            h.lifecycle.process(cert.cert_id, "APPROVE", REGISTRAR, signature="forged", now=T0)
        self.assertEqual(ctx.exception.code, "INVALID_SIGNATURE")

        h.lifecycle.process(cert.cert_id, "APPROVE", REGISTRAR, signature=f"signed:{cert.content_hash}", now=T0)
        entry = h.lifecycle.queue_entry(cert.cert_id)
        self.assertEqual(entry.approval.signature, f"signed:{cert.content_hash}")

    def test_unknown_certificate(self):
        with self.assertRaises(NotFoundError):
            self.h.lifecycle.process("CERT-NOPE", "APPROVE", VALIDATOR, now=T0)

    def test_bad_action(self):
        cert = self.h.submit()
        with self.assertRaises(ValidationError):
            self.h.lifecycle.process(cert.cert_id, "MAYBE", VALIDATOR, now=T0)


class TestVerification(unittest.TestCase):

    def setUp(self):
        self.h = Harness()

    def test_issued_certificate_verifies(self):
        cert = self.h.issue()
        report = self.h.lifecycle.verify(cert.cert_id, now=T0)

        self.assertTrue(report.found)
        self.assertTrue(report.is_valid)
        self.assertEqual(report.tamper_state, TamperState.INTACT)

    def test_lookup_by_content_hash_and_tx_id(self):
        cert = self.h.issue()
        self.assertTrue(self.h.lifecycle.verify(cert.content_hash, now=T0).is_valid)
        self.assertTrue(self.h.lifecycle.verify(cert.anchor_ref.tx_id, now=T0).is_valid)

    def test_unknown_lookup_is_not_an_error(self):
        report = self.h.lifecycle.verify("CERT-NOPE", now=T0)
        self.assertFalse(report.found)
        self.assertFalse(report.is_valid)
        self.assertEqual(report.tamper_state, TamperState.UNKNOWN)

    def test_pending_certificate_is_not_valid(self):
        cert = self.h.submit()
        self.assertFalse(self.h.lifecycle.verify(cert.cert_id, now=T0).is_valid)

    def test_mutated_document_is_tampered(self):
        cert = self.h.issue(document=b"%PDF-1.7 original transcript")
        self.assertEqual(self.h.lifecycle.verify(cert.cert_id, now=T0).tamper_state, TamperState.INTACT)

        self.h.content._blobs[cert.cert_id] = b"%PDF-1.7 forged transcript"
        report = self.h.lifecycle.verify(cert.cert_id, now=T0)

        self.assertEqual(report.tamper_state, TamperState.TAMPERED)
        self.assertFalse(report.is_valid)
        self.assertTrue(report.to_dict()["tamper_detected"])

    def test_mutated_record_is_tampered(self):
        cert = self.h.issue()
        self.h.store.commit([PendingWrite.update(replace(cert, grade="A+"), cert.version)])

        report = self.h.lifecycle.verify(cert.cert_id, now=T0)
        self.assertEqual(report.tamper_state, TamperState.TAMPERED)
        self.assertFalse(report.is_valid)

    def test_missing_document_bytes_is_unknown(self):
        h = Harness()
        cert = h.lifecycle.submit(subject_data(), ADMIN, document_hash="ab" * 32, now=T0)
        h.approve_all(cert.cert_id)

        report = h.lifecycle.verify(cert.cert_id, now=T0)
        self.assertEqual(report.tamper_state, TamperState.UNKNOWN)
        self.assertTrue(report.is_valid)

    def test_verification_count(self):
        cert = self.h.issue()
        self.h.lifecycle.verify(cert.cert_id, now=T0)
        self.h.lifecycle.verify(cert.cert_id, now=T0)
        self.h.lifecycle.verify(cert.cert_id, now=T0, count=False)
        self.assertEqual(self.h.lifecycle.get(cert.cert_id, T0).verification_count, 2)

    def test_expired_certificate(self):
        cert = self.h.issue(expiry_date="2025-02-15")
        later = T0 + days(400)

        report = self.h.lifecycle.verify(cert.cert_id, now=later)
        self.assertEqual(report.status, CertificateStatus.EXPIRED)
        self.assertFalse(report.is_valid)
        self.assertEqual(self.h.store.get_certificate(cert.cert_id).status, CertificateStatus.EXPIRED)

    def test_ledger_status_check(self):
        cert = self.h.issue()
        report = self.h.lifecycle.verify(cert.cert_id, now=T0, check_ledger=True)
        self.assertEqual(report.ledger_status, "CONFIRMED")
        self.assertTrue(report.is_valid)

    def test_verifying_pending_certificate_leaves_record_untouched(self):
        cert = self.h.submit()
        self.h.lifecycle.verify(cert.cert_id, now=T0)

        stored = self.h.store.get_certificate(cert.cert_id)
        self.assertEqual(stored.version, cert.version)
        self.assertEqual(stored.verification_count, 0)

    def test_ledger_check_failure_is_reported_not_raised(self):
        cert = self.h.issue()

        def unreachable(tx_id):
            raise LedgerError("gateway down")

        self.h.client.transaction_status = unreachable
        report = self.h.lifecycle.verify(cert.cert_id, now=T0, check_ledger=True)

        self.assertTrue(report.found)
        self.assertEqual(report.ledger_status, "UNKNOWN")
        self.assertFalse(report.is_valid)
        self.assertEqual(report.tamper_state, TamperState.INTACT)


class TestRevocationScenarios(unittest.TestCase):

    def setUp(self):
        self.h = Harness()
        self.cert = self.h.issue()
        self.revocations = self.h.lifecycle.revocations

    def test_registrar_rejection_blocks_execution(self):
        record = self.revocations.initiate(self.cert.cert_id, "FRAUDULENT_CREDENTIALS",
                                           FRAUD_DESCRIPTION, DEPT, now=T0)
        self.revocations.decide(record.revocation_id, "DEPARTMENT", "APPROVED", DEPT, now=T0)
        rejected = self.revocations.decide(record.revocation_id, "REGISTRAR", "REJECTED", REGISTRAR,
                                           comments="evidence insufficient", now=T0)

        self.assertEqual(rejected.status, RevocationStatus.REJECTED)
        with self.assertRaises(InvalidTransitionError):
            self.revocations.execute(record.revocation_id, DEPT, now=T0)
        with self.assertRaises(InvalidTransitionError):
            self.revocations.decide(record.revocation_id, "SUPER_AUTHORITY", "APPROVED", SUPER, now=T0)

        self.assertEqual(self.h.lifecycle.get(self.cert.cert_id, T0).status, CertificateStatus.ISSUED)
        actions = [c.entry.action for c in self.h.store.audit_trail.query(subject_id=record.revocation_id)]
        self.assertIn("REGISTRAR_REJECTED", actions)

    def test_execute_then_appeal_reinstates_once(self):
        executed = self.h.revoke(self.cert.cert_id)
        self.assertEqual(executed.status, RevocationStatus.EXECUTED)
        self.assertEqual(self.h.lifecycle.get(self.cert.cert_id, T0).status, CertificateStatus.REVOKED)
        self.assertFalse(self.h.lifecycle.verify(self.cert.cert_id, now=T0).is_valid)

        self.revocations.file_appeal(executed.revocation_id, HOLDER, "exam board letter was misread",
                                     now=T0 + days(10))
        decided = self.revocations.decide_appeal(executed.revocation_id, "APPROVED", SUPER,
                                                 outcome="letter re-examined", now=T0 + days(12))

        self.assertEqual(decided.status, RevocationStatus.REVERTED)
        self.assertEqual(self.h.lifecycle.get(self.cert.cert_id, T0 + days(12)).status,
                         CertificateStatus.ISSUED)
        with self.assertRaises(InvalidTransitionError):
            self.revocations.file_appeal(executed.revocation_id, HOLDER, "again", now=T0 + days(13))

    def test_rejected_appeal_keeps_revocation(self):
        executed = self.h.revoke(self.cert.cert_id)
        self.revocations.file_appeal(executed.revocation_id, HOLDER, "please reconsider", now=T0 + days(1))
        decided = self.revocations.decide_appeal(executed.revocation_id, "REJECTED", SUPER, now=T0 + days(2))

        self.assertEqual(decided.status, RevocationStatus.EXECUTED)
        self.assertEqual(self.h.lifecycle.get(self.cert.cert_id, T0).status, CertificateStatus.REVOKED)

    def test_appeal_window_closes(self):
        executed = self.h.revoke(self.cert.cert_id)
        with self.assertRaises(InvalidTransitionError):
            self.revocations.file_appeal(executed.revocation_id, HOLDER, "too late", now=T0 + days(31))

    def test_holder_may_only_appeal_own_certificate(self):
        executed = self.h.revoke(self.cert.cert_id)
        stranger = replace(HOLDER, actor_id="S2")
        with self.assertRaises(AuthorizationError):
            self.revocations.file_appeal(executed.revocation_id, stranger, "not mine", now=T0 + days(1))

    def test_revoked_certificate_reports_public_revocation(self):
        self.h.revoke(self.cert.cert_id)
        report = self.h.lifecycle.verify(self.cert.cert_id, now=T0 + days(1))

        self.assertEqual(report.status, CertificateStatus.REVOKED)
        self.assertEqual(report.revocation["reason"], "FRAUDULENT_CREDENTIALS")
        self.assertEqual(report.revocation["severity"], "CRITICAL")
        self.assertTrue(report.revocation["is_appealable"])


if __name__ == "__main__":
    unittest.main()
