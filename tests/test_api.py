import uuid

from fastapi.testclient import TestClient
from nacl.signing import SigningKey

from certledger.canonicalization import canonicalize
from certledger.ledger import LedgerError
from certledger_api import main
from certledger_api.keys import verify_ed25519
from certledger_api.util import b64e

client = TestClient(main.app)

ADMIN = {"X-Actor-Id": "admin-1", "X-Actor-Role": "INSTITUTION_ADMIN"}
VALIDATOR = {"X-Actor-Id": "val-1", "X-Actor-Role": "VALIDATOR"}
REGISTRAR = {"X-Actor-Id": "reg-1", "X-Actor-Role": "REGISTRAR"}
DEPT = {"X-Actor-Id": "dept-1", "X-Actor-Role": "DEPARTMENT_ADMIN"}
SUPER = {"X-Actor-Id": "super-1", "X-Actor-Role": "SUPER_ADMIN"}

FRAUD = "Transcript was forged, confirmed by the exam board"


def holder(student_code):
    return {"X-Actor-Id": student_code, "X-Actor-Role": "HOLDER"}


def new_subject():
    code = "S-" + uuid.uuid4().hex[:8].upper()
    r = client.post("/subjects", headers=ADMIN, json={
        "studentCode": code, "fullName": "Ada Lovelace", "institutionId": "UNI-1",
    })
    assert r.status_code == 201, r.text
    return code


def submit(student_code, **overrides):
    body = {
        "studentCode": student_code,
        "studentName": "Ada Lovelace",
        "institutionId": "UNI-1",
        "institutionName": "University One",
        "courseName": "CS101",
        "grade": "A",
        "issueDate": "2024-02-15",
    }
    body.update(overrides)
    r = client.post("/certificates", headers=ADMIN, json=body)
    assert r.status_code == 201, r.text
    return r.json()["certificate"]


def process(cert_id, headers, action="APPROVE", **extra):
    return client.post("/certificates/process", headers=headers,
                       json={"certificateId": cert_id, "action": action, **extra})


def issue(**overrides):
    code = new_subject()
    cert = submit(code, **overrides)
    assert process(cert["cert_id"], VALIDATOR).status_code == 200
    assert process(cert["cert_id"], REGISTRAR).status_code == 200
    r = process(cert["cert_id"], DEPT)
    assert r.status_code == 200, r.text
    return code, cert, r.json()


def revoke(cert_id):
    r = client.post("/revocations", headers=DEPT, json={
        "certId": cert_id, "reason": "FRAUDULENT_CREDENTIALS", "description": FRAUD,
    })
    assert r.status_code == 201, r.text
    rev_id = r.json()["revocation"]["revocation_id"]
    for tier, headers in (("DEPARTMENT", DEPT), ("REGISTRAR", REGISTRAR), ("SUPER_AUTHORITY", SUPER)):
        r = client.post(f"/revocations/{rev_id}/decision", headers=headers,
                        json={"tier": tier, "decision": "APPROVE"})
        assert r.status_code == 200, r.text
    r = client.post(f"/revocations/{rev_id}/execute", headers=DEPT)
    assert r.status_code == 200, r.text
    return rev_id


# ============================================================
# Health and identity
# ============================================================

def test_health():
    r = client.get("/health")
    assert r.status_code == 200
    j = r.json()
    assert j["status"] == "ok"
    assert j["ledger_backend"] == "simulated"
    assert "certificates_count" in j["db"]


def test_request_id_is_echoed():
    r = client.get("/health", headers={"X-Request-Id": "req-123"})
    assert r.headers["X-Request-Id"] == "req-123"


def test_missing_actor_is_unauthenticated():
    r = client.post("/certificates/process", json={"certificateId": "CERT-1", "action": "APPROVE"})
    assert r.status_code == 401
    assert r.json()["error"] == "UNAUTHENTICATED"


def test_unknown_role_is_forbidden():
    r = client.get("/certificates/CERT-1", headers={"X-Actor-Id": "x", "X-Actor-Role": "JANITOR"})
    assert r.status_code == 403
    assert r.json()["error"] == "FORBIDDEN"


def test_subject_registration_needs_admin():
    r = client.post("/subjects", headers=VALIDATOR, json={
        "studentCode": "S-X", "fullName": "Ada Lovelace", "institutionId": "UNI-1",
    })
    assert r.status_code == 403


# ============================================================
# Submission and approval
# ============================================================

def test_submit_creates_pending_certificate():
    cert = submit(new_subject())
    assert cert["status"] == "PENDING_L1"
    assert cert["cert_id"].startswith("CERT-")
    assert len(cert["content_hash"]) == 64
    assert cert["anchor_ref"] is None


def test_submit_missing_field_is_400():
    r = client.post("/certificates", headers=ADMIN, json={
        "studentCode": "S1", "studentName": " ", "institutionId": "UNI-1", "institutionName": "U",
        "courseName": "CS101", "grade": "A", "issueDate": "2024-02-15",
    })
    assert r.status_code == 400
    assert r.json()["error"] == "MISSING_FIELD"
    assert r.json()["details"]["field"] == "student_name"


def test_submit_requires_submit_role():
    r = client.post("/certificates", headers=VALIDATOR, json={
        "studentCode": "S1", "studentName": "Ada", "institutionId": "UNI-1", "institutionName": "U",
        "courseName": "CS101", "grade": "A", "issueDate": "2024-02-15",
    })
    assert r.status_code == 403


def test_duplicate_content_is_409():
    code = new_subject()
    first = submit(code)
    r = client.post("/certificates", headers=ADMIN, json={
        "studentCode": code, "studentName": "Ada Lovelace", "institutionId": "UNI-1",
        "institutionName": "University One", "courseName": "CS101", "grade": "A",
        "issueDate": "2024-02-15",
    })
    assert r.status_code == 409
    assert r.json()["details"]["existing_cert_id"] == first["cert_id"]


def test_document_upload_records_hash():
    document = b"%PDF-1.7 transcript"
    cert = submit(new_subject(), documentB64=b64e(document))
    assert cert["content_source"] == "DOCUMENT"
    assert len(cert["document_hash"]) == 64


def test_full_approval_issues_and_anchors():
    _, cert, result = issue()
    assert result["status"] == "ISSUED"
    assert result["step"] == "SIGN_OFF"
    assert result["queueStatus"] == "ISSUED"
    assert result["txId"].startswith("0x")
    assert result["blockNumber"] > 0

    r = client.get(f"/certificates/{cert['cert_id']}", headers=ADMIN)
    assert r.status_code == 200
    j = r.json()
    assert j["certificate"]["anchor_ref"]["tx_id"] == result["txId"]
    assert j["queue"]["archived"] is True
    assert j["revocations"] == []


def test_steps_cannot_be_skipped_or_repeated_by_one_actor():
    cert = submit(new_subject())
    r = process(cert["cert_id"], REGISTRAR)
    assert r.status_code == 403

    boss = {"X-Actor-Id": "super-1", "X-Actor-Role": "SUPER_ADMIN"}
    assert process(cert["cert_id"], boss).status_code == 200
    r = process(cert["cert_id"], boss)
    assert r.status_code == 403
    assert r.json()["error"] == "SEPARATION_OF_DUTIES"


def test_unregistered_subject_fails_validation():
    cert = submit("S-UNKNOWN")
    r = process(cert["cert_id"], VALIDATOR)
    assert r.status_code == 400
    assert r.json()["error"] == "VALIDATION_ISSUES"
    assert "SUBJECT_NOT_FOUND" in r.json()["details"]["issues"]


def test_rejection_then_resubmission_with_corrections():
    cert = submit(new_subject())
    r = process(cert["cert_id"], VALIDATOR, action="REJECT", comments="grade looks wrong")
    assert r.status_code == 200
    assert r.json()["status"] == "REJECTED"

    r = client.post(f"/certificates/{cert['cert_id']}/resubmit", headers=ADMIN,
                    json={"corrections": {"grade": "B"}, "comments": "fixed grade"})
    assert r.status_code == 200, r.text
    resubmitted = r.json()["certificate"]
    assert resubmitted["status"] == "PENDING_L1"
    assert resubmitted["grade"] == "B"
    assert resubmitted["content_hash"] != cert["content_hash"]

    progress = client.get(f"/certificates/{cert['cert_id']}/progress", headers=ADMIN).json()
    assert progress["cycle"] == 2
    assert progress["rejections"]["count"] == 1


def test_revert_sends_back_for_correction():
    cert = submit(new_subject())
    assert process(cert["cert_id"], VALIDATOR).status_code == 200
    r = client.post(f"/certificates/{cert['cert_id']}/revert", headers=REGISTRAR, json={"reason": "typo"})
    assert r.status_code == 200, r.text
    assert r.json()["certificate"]["status"] == "NEEDS_CORRECTION"


def test_progress():
    cert = submit(new_subject())
    process(cert["cert_id"], VALIDATOR)
    r = client.get(f"/certificates/{cert['cert_id']}/progress", headers=ADMIN)
    assert r.status_code == 200
    j = r.json()
    assert j["completed_steps"] == 1
    assert j["next_step"] == "APPROVAL"


def test_unknown_certificate_is_404():
    r = client.get("/certificates/CERT-NOPE", headers=ADMIN)
    assert r.status_code == 404
    assert r.json()["error"] == "NOT_FOUND"


def test_approver_signature_is_checked():
    key = SigningKey.generate()
    main.KEYS.register_approver("reg-signer", b64e(bytes(key.verify_key)))
    signer = {"X-Actor-Id": "reg-signer", "X-Actor-Role": "REGISTRAR"}

    cert = submit(new_subject())
    process(cert["cert_id"], VALIDATOR)

    forged = b64e(SigningKey.generate().sign(cert["content_hash"].encode("utf-8")).signature)
    r = process(cert["cert_id"], signer, signature=forged)
    assert r.status_code == 400
    assert r.json()["error"] == "INVALID_SIGNATURE"

    genuine = b64e(key.sign(cert["content_hash"].encode("utf-8")).signature)
    r = process(cert["cert_id"], signer, signature=genuine)
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "PENDING_L3"


# ============================================================
# Verification
# ============================================================

def test_verify_issued_certificate_with_attestation():
    _, cert, result = issue()
    r = client.get(f"/certificates/verify/{cert['cert_id']}")
    assert r.status_code == 200
    j = r.json()
    assert j["found"] is True
    assert j["isValid"] is True
    assert j["status"] == "ISSUED"
    assert j["tamperState"] == "INTACT"
    assert j["tamperedDetected"] is False

    attestation = dict(j["attestation"])
    signatures = attestation.pop("signatures")
    assert attestation["cert_id"] == cert["cert_id"]
    assert attestation["is_valid"] is True
    trust = main.KEYS.get_trust_store()
    sig = signatures[0]
    assert sig["alg"] == "ed25519"
    assert verify_ed25519(sig["sig_b64"], canonicalize(attestation), trust["attestation_keys"][sig["kid"]])


def test_verify_by_tx_id_and_content_hash():
    _, cert, result = issue()
    by_tx = client.get(f"/certificates/verify/{result['txId']}").json()
    by_hash = client.get(f"/certificates/verify/0x{cert['content_hash']}").json()
    assert by_tx["certificate"]["cert_id"] == cert["cert_id"]
    assert by_hash["certificate"]["cert_id"] == cert["cert_id"]


def test_verify_unknown_is_not_an_error():
    r = client.get("/certificates/verify/CERT-NOPE")
    assert r.status_code == 200
    j = r.json()
    assert j["found"] is False
    assert j["isValid"] is False
    assert j["tamperState"] == "UNKNOWN"
    assert j["attestation"]["found"] is False


def test_verify_pending_certificate_is_not_valid():
    cert = submit(new_subject())
    j = client.get(f"/certificates/verify/{cert['cert_id']}").json()
    assert j["found"] is True
    assert j["isValid"] is False
    assert j["status"] == "PENDING_L1"


def test_verify_with_ledger_check():
    _, cert, _ = issue()
    j = client.get(f"/certificates/verify/{cert['cert_id']}", params={"checkLedger": "true"}).json()
    assert j["ledgerStatus"] == "CONFIRMED"
    assert j["isValid"] is True


def test_verify_with_unreachable_ledger_is_structured(monkeypatch):
    _, cert, _ = issue()

    def unreachable(tx_id):
        raise LedgerError("gateway down")

    monkeypatch.setattr(main.LIFECYCLE.anchor_service.client, "transaction_status", unreachable)
    r = client.get(f"/certificates/verify/{cert['cert_id']}", params={"checkLedger": "true"})
    assert r.status_code == 200
    j = r.json()
    assert j["found"] is True
    assert j["ledgerStatus"] == "UNKNOWN"
    assert j["isValid"] is False


def test_verification_counter_increments():
    _, cert, _ = issue()
    client.get(f"/certificates/verify/{cert['cert_id']}")
    j = client.get(f"/certificates/verify/{cert['cert_id']}").json()
    assert j["certificate"]["verification_count"] == 2


def test_verification_log():
    _, cert, _ = issue()
    r = client.post("/certificates/verification-log", json={
        "lookup": cert["cert_id"], "certId": cert["cert_id"], "found": True,
        "isValid": True, "tamperState": "INTACT", "verifier": "employer-portal",
    })
    assert r.status_code == 202
    assert r.json()["logged"] is True

    entries = client.get(f"/certificates/{cert['cert_id']}/verification-log", headers=ADMIN).json()
    assert len(entries) == 1
    assert entries[0]["verifier"] == "employer-portal"
    assert entries[0]["tamper_state"] == "INTACT"


def test_verify_is_rate_limited():
    limiter = main.verify_limiter
    original = limiter._limit
    limiter._limit = 2
    try:
        assert client.get("/certificates/verify/CERT-NOPE").status_code == 200
        assert client.get("/certificates/verify/CERT-NOPE").status_code == 200
        r = client.get("/certificates/verify/CERT-NOPE")
        assert r.status_code == 429
        assert r.json()["error"] == "RATE_LIMITED"
        assert "Retry-After" in r.headers
    finally:
        limiter._limit = original


# ============================================================
# Revocation and appeal
# ============================================================

def test_revocation_flow():
    _, cert, _ = issue()
    rev_id = revoke(cert["cert_id"])

    r = client.get(f"/revocations/{rev_id}", headers=ADMIN)
    assert r.status_code == 200
    revocation = r.json()["revocation"]
    assert revocation["status"] == "EXECUTED"
    assert revocation["severity"] == "CRITICAL"

    j = client.get(f"/certificates/verify/{cert['cert_id']}").json()
    assert j["status"] == "REVOKED"
    assert j["isValid"] is False
    assert j["revocation"]["reason"] == "FRAUDULENT_CREDENTIALS"
    assert j["revocation"]["is_appealable"] is True


def test_revocation_tier_role_is_exact():
    _, cert, _ = issue()
    r = client.post("/revocations", headers=DEPT, json={
        "certId": cert["cert_id"], "reason": "DATA_ERROR", "description": FRAUD,
    })
    rev_id = r.json()["revocation"]["revocation_id"]
    r = client.post(f"/revocations/{rev_id}/decision", headers=SUPER,
                    json={"tier": "DEPARTMENT", "decision": "APPROVE"})
    assert r.status_code == 403


def test_revocation_cannot_execute_early():
    _, cert, _ = issue()
    r = client.post("/revocations", headers=DEPT, json={
        "certId": cert["cert_id"], "reason": "DATA_ERROR", "description": FRAUD,
    })
    rev_id = r.json()["revocation"]["revocation_id"]
    r = client.post(f"/revocations/{rev_id}/execute", headers=DEPT)
    assert r.status_code == 409
    assert r.json()["error"] == "INVALID_TRANSITION"


def test_second_open_revocation_is_409():
    _, cert, _ = issue()
    body = {"certId": cert["cert_id"], "reason": "DATA_ERROR", "description": FRAUD}
    assert client.post("/revocations", headers=DEPT, json=body).status_code == 201
    r = client.post("/revocations", headers=REGISTRAR, json=body)
    assert r.status_code == 409
    assert r.json()["error"] == "REVOCATION_ALREADY_OPEN"


def test_invalid_reason_is_400():
    _, cert, _ = issue()
    r = client.post("/revocations", headers=DEPT, json={
        "certId": cert["cert_id"], "reason": "BORED", "description": FRAUD,
    })
    assert r.status_code == 400
    assert r.json()["error"] == "INVALID_REASON"


def test_appeal_reinstates_certificate():
    code, cert, _ = issue()
    rev_id = revoke(cert["cert_id"])

    r = client.post(f"/revocations/{rev_id}/appeal", headers=holder(code),
                    json={"reason": "The transcript is genuine"})
    assert r.status_code == 200, r.text
    assert r.json()["revocation"]["appeal"]["status"] == "PENDING"

    r = client.post(f"/revocations/{rev_id}/appeal", headers=holder(code), json={"reason": "again"})
    assert r.status_code == 409

    r = client.post(f"/revocations/{rev_id}/appeal/decision", headers=SUPER,
                    json={"decision": "APPROVE", "outcome": "evidence accepted"})
    assert r.status_code == 200, r.text
    assert r.json()["revocation"]["status"] == "REVERTED"

    j = client.get(f"/certificates/verify/{cert['cert_id']}").json()
    assert j["status"] == "ISSUED"
    assert j["isValid"] is True


def test_holder_cannot_appeal_someone_elses_revocation():
    _, cert, _ = issue()
    rev_id = revoke(cert["cert_id"])
    r = client.post(f"/revocations/{rev_id}/appeal", headers=holder("S-SOMEONE"), json={"reason": "mine"})
    assert r.status_code == 403


# ============================================================
# Audit trail
# ============================================================

def test_audit_log_records_lifecycle():
    _, cert, _ = issue()
    r = client.get("/audit/log", params={"subject_id": cert["cert_id"]})
    assert r.status_code == 200
    actions = [e["action"] for e in r.json()]
    assert "SUBMITTED" in actions
    assert "VALIDATION_APPROVED" in actions
    assert "SIGN_OFF_APPROVED" in actions


def test_audit_chain_verifies():
    issue()
    proof = client.get("/audit/proof").json()
    assert proof["entries"] > 0
    assert proof["head_entry_hash"]

    j = client.get("/audit/verify").json()
    assert j["intact"] is True
    assert j["first_bad_seq"] is None
    assert j["head_entry_hash"] == proof["head_entry_hash"]
