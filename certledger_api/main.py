import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from certledger import __version__
from certledger.audit import verify_chain
from certledger.canonicalization import canonicalize
from certledger.errors import (
    AnchoringError,
    AuthorizationError,
    CertLedgerError,
    ConcurrencyError,
    DuplicateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from certledger.ledger import LedgerAnchor
from certledger.lifecycle import CertificateLifecycle
from certledger.store import Subject
from certledger.timeutil import to_iso
from certledger.types import Actor, Role

from . import config
from .audit_backends import get_audit_mirror
from .db import (
    SqliteAuditTrail,
    SqliteContentStore,
    SqliteRecordStore,
    SqliteSubjectRegistry,
    append_verification_log,
    get_db_stats,
    init_db,
    list_verification_log,
)
from .keys import approver_signature_check, get_key_provider
from .ledger_backends import get_ledger_client
from .logging_config import audit_log, configure_logging, set_request_id
from .models import (
    AppealDecisionRequest,
    AppealRequest,
    ProcessRequest,
    ResubmitRequest,
    RevertRequest,
    RevocationRequest,
    SubjectRequest,
    SubmitRequest,
    TierDecisionRequest,
    VerificationLogRequest,
)
from .rate_limit import RateLimiter, enforce
from .util import b64d, mask_sensitive

logger = logging.getLogger(__name__)

app = FastAPI(title="CertLedger", version=__version__)

STATUS_CODES = {
    ValidationError: 400,
    AuthorizationError: 403,
    NotFoundError: 404,
    DuplicateError: 409,
    InvalidTransitionError: 409,
    ConcurrencyError: 409,
    AnchoringError: 502,
}

REGISTRY_ROLES = frozenset({Role.INSTITUTION_ADMIN, Role.SUPER_ADMIN})

verify_limiter = RateLimiter(config.VERIFY_RPM)
process_limiter = RateLimiter(config.PROCESS_RPM)

KEYS = None
STORE = None
SUBJECTS = None
LIFECYCLE = None


@app.on_event("startup")
def _startup():
    global KEYS, STORE, SUBJECTS, LIFECYCLE
    configure_logging(config.LOG_LEVEL, json_format=config.LOG_JSON)
    failed = [name for name, ok in config.validate_config().items() if not ok]
    if failed:
        logger.warning("configuration checks failed: %s", ", ".join(failed))
    init_db()
    KEYS = get_key_provider(
        signer_type=config.SIGNER_TYPE,
        signing_key_path=config.SIGNING_KEY_PATH,
        trust_store_path=config.TRUST_STORE_PATH,
        kms_key_id=config.AWS_KMS_KEY_ID or None,
        kms_region=config.AWS_REGION or None,
        kms_kid=config.AWS_KMS_KID,
    )
    policy = config.lifecycle_policy()
    STORE = SqliteRecordStore(SqliteAuditTrail(mirror=get_audit_mirror()))
    SUBJECTS = SqliteSubjectRegistry()
    LIFECYCLE = CertificateLifecycle(
        STORE,
        LedgerAnchor(get_ledger_client(), STORE, policy),
        content_store=SqliteContentStore(),
        subject_registry=SUBJECTS,
        policy=policy,
        signature_check=approver_signature_check(KEYS),
        auto_anchor=config.AUTO_ANCHOR,
    )
    logger.info("CertLedger %s started (env=%s, ledger=%s)", __version__, config.ENV, config.LEDGER_BACKEND)


@app.middleware("http")
async def _request_id(request: Request, call_next):
    request_id = set_request_id(request.headers.get("X-Request-Id"))
    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id
    return response


@app.exception_handler(CertLedgerError)
async def _certledger_error(request: Request, exc: CertLedgerError):
    status = next((code for cls, code in STATUS_CODES.items() if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content=exc.to_dict())


@app.exception_handler(HTTPException)
async def _http_error(request: Request, exc: HTTPException):
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {"error": str(exc.detail), "message": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


def current_actor(
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_role: Optional[str] = Header(default=None),
) -> Actor:
    """Caller identity, as asserted by the fronting identity proxy."""
    if not x_actor_id:
        raise HTTPException(401, detail={"error": "UNAUTHENTICATED", "message": "X-Actor-Id header required"})
    try:
        return Actor.parse(x_actor_id, x_actor_role)
    except ValueError as e:
        audit_log.security_event("INVALID_ACTOR", severity="medium", actor_id=x_actor_id, role=x_actor_role)
        raise HTTPException(403, detail={"error": "FORBIDDEN", "message": str(e)})


def _client_id(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _decision(value: str) -> str:
    raw = (value or "").strip().upper()
    return {"APPROVE": "APPROVED", "REJECT": "REJECTED"}.get(raw, raw)


def _attestation(body: dict) -> dict:
    """Sign a verification result so it can be checked offline against the trust store."""
    signed = dict(body)
    signed["signatures"] = [KEYS.signature_block(canonicalize(body))]
    return signed


# ============================================================
# Health
# ============================================================

@app.get("/health")
def health():
    return {
        "status": "ok",
        "version": __version__,
        "env": config.ENV,
        "ledger_backend": config.LEDGER_BACKEND,
        "config": config.validate_config(),
        "db": get_db_stats(),
    }


# ============================================================
# Subject registry
# ============================================================

@app.post("/subjects", status_code=201)
def register_subject(req: SubjectRequest, actor: Actor = Depends(current_actor)):
    if actor.role not in REGISTRY_ROLES:
        raise AuthorizationError(f"role {actor.role.value} may not register subjects")
    subject = Subject(req.student_code, req.full_name, req.institution_id, req.email)
    SUBJECTS.register(subject)
    return {"studentCode": subject.student_code, "institutionId": subject.institution_id}


# ============================================================
# Certificates
# ============================================================

@app.post("/certificates", status_code=201)
def submit_certificate(req: SubmitRequest, actor: Actor = Depends(current_actor)):
    document = None
    if req.document_b64:
        try:
            document = b64d(req.document_b64)
        except ValueError:
            raise ValidationError("documentB64", "not valid base64")
    cert = LIFECYCLE.submit(req.subject_data(), actor, document=document,
                            document_hash=req.document_hash, priority=req.priority)
    audit_log.submission(cert.cert_id, actor.actor_id, cert.content_hash)
    return {"certificate": cert.to_dict(include_history=False)}


@app.post("/certificates/process")
def process_certificate(req: ProcessRequest, actor: Actor = Depends(current_actor)):
    enforce(process_limiter, "process", actor.actor_id)
    try:
        result = LIFECYCLE.process(req.certificate_id, req.action, actor,
                                   comments=req.comments, signature=req.signature)
    except ValidationError as e:
        if e.code == "INVALID_SIGNATURE":
            audit_log.security_event("INVALID_APPROVER_SIGNATURE", severity="high", actor_id=actor.actor_id,
                                     cert_id=req.certificate_id, signature=mask_sensitive(req.signature or ""))
        raise
    except AnchoringError as e:
        audit_log.anchoring(req.certificate_id, "FAILED", error_code=e.code, status_unknown=e.status_unknown)
        raise
    audit_log.step_decision(req.certificate_id, result.step.value, result.decision.value,
                            actor.actor_id, result.certificate.status.value)
    if result.anchor_ref:
        audit_log.anchoring(req.certificate_id, "SUCCESS", tx_id=result.anchor_ref.tx_id)
    return {
        "certId": result.certificate.cert_id,
        "status": result.certificate.status.value,
        "step": result.step.value,
        "decision": result.decision.value,
        "queueStatus": result.queue_entry.status.value,
        "txId": result.anchor_ref.tx_id if result.anchor_ref else None,
        "blockNumber": result.anchor_ref.block_number if result.anchor_ref else None,
    }


@app.post("/certificates/verification-log", status_code=202)
def log_verification(req: VerificationLogRequest, request: Request):
    """Best effort: a logging failure never fails the caller's verification."""
    try:
        log_id = append_verification_log(
            req.lookup, req.cert_id, req.found, req.is_valid, req.tamper_state,
            verifier=req.verifier, client_ip=_client_id(request),
            user_agent=request.headers.get("user-agent"),
        )
    except Exception:
        logger.exception("verification log append failed for %s", req.lookup)
        return {"logged": False}
    return {"logged": True, "id": log_id}


@app.get("/certificates/verify/{lookup}")
def verify_certificate(lookup: str, request: Request, checkLedger: bool = False):
    enforce(verify_limiter, "verify", _client_id(request))
    report = LIFECYCLE.verify(lookup, check_ledger=checkLedger)
    audit_log.verification(lookup, report.found, report.is_valid, report.tamper_state.value)
    cert = report.certificate
    body = {
        "lookup": lookup,
        "found": report.found,
        "cert_id": cert.cert_id if cert else None,
        "content_hash": cert.content_hash if cert else None,
        "status": report.status.value if report.status else None,
        "tamper_state": report.tamper_state.value,
        "is_valid": report.is_valid,
        "verified_at": to_iso(report.verified_at),
    }
    return {
        "found": report.found,
        "lookup": lookup,
        "isValid": report.is_valid,
        "tamperedDetected": report.tamper_state.value == "TAMPERED",
        "tamperState": report.tamper_state.value,
        "status": body["status"],
        "certificate": cert.to_dict(include_history=False) if cert else None,
        "revocation": report.revocation,
        "ledgerStatus": report.ledger_status,
        "verifiedAt": body["verified_at"],
        "attestation": _attestation(body),
    }


@app.get("/certificates/{cert_id}")
def get_certificate(cert_id: str, actor: Actor = Depends(current_actor)):
    cert = LIFECYCLE.get(cert_id)
    return {
        "certificate": cert.to_dict(),
        "queue": LIFECYCLE.queue_entry(cert_id).to_dict(),
        "revocations": [r.to_dict(include_history=False) for r in LIFECYCLE.revocations.list_for(cert_id)],
    }


@app.get("/certificates/{cert_id}/progress")
def certificate_progress(cert_id: str, actor: Actor = Depends(current_actor)):
    return LIFECYCLE.progress(cert_id)


@app.get("/certificates/{cert_id}/verification-log")
def certificate_verification_log(cert_id: str, actor: Actor = Depends(current_actor)):
    return list_verification_log(cert_id)


@app.post("/certificates/{cert_id}/revert")
def revert_certificate(cert_id: str, req: RevertRequest, actor: Actor = Depends(current_actor)):
    cert = LIFECYCLE.revert(cert_id, actor, reason=req.reason)
    return {"certificate": cert.to_dict(include_history=False)}


@app.post("/certificates/{cert_id}/resubmit")
def resubmit_certificate(cert_id: str, req: ResubmitRequest, actor: Actor = Depends(current_actor)):
    cert = LIFECYCLE.resubmit(cert_id, actor, corrections=req.corrections, comments=req.comments)
    return {"certificate": cert.to_dict(include_history=False)}


@app.post("/certificates/{cert_id}/anchor")
def anchor_certificate(cert_id: str, actor: Actor = Depends(current_actor)):
    try:
        ref = LIFECYCLE.anchor(cert_id, actor)
    except AnchoringError as e:
        audit_log.anchoring(cert_id, "FAILED", error_code=e.code, status_unknown=e.status_unknown)
        raise
    audit_log.anchoring(cert_id, "SUCCESS", tx_id=ref.tx_id)
    return {"certId": cert_id, "status": LIFECYCLE.get(cert_id).status.value,
            "txId": ref.tx_id, "blockNumber": ref.block_number}


# ============================================================
# Revocations
# ============================================================

def _revocation_response(record, actor: Actor, event: str) -> dict:
    audit_log.revocation_event(record.revocation_id, record.cert_id, event, actor.actor_id, record.status.value)
    return {"revocation": record.to_dict(include_history=False)}


@app.post("/revocations", status_code=201)
def initiate_revocation(req: RevocationRequest, actor: Actor = Depends(current_actor)):
    record = LIFECYCLE.revocations.initiate(req.cert_id, req.reason, req.description, actor,
                                            evidence=req.evidence, severity=req.severity,
                                            is_public=req.is_public)
    return _revocation_response(record, actor, "INITIATED")


@app.get("/revocations/{revocation_id}")
def get_revocation(revocation_id: str, actor: Actor = Depends(current_actor)):
    return {"revocation": LIFECYCLE.revocations.get(revocation_id).to_dict()}


@app.post("/revocations/{revocation_id}/decision")
def decide_revocation(revocation_id: str, req: TierDecisionRequest, actor: Actor = Depends(current_actor)):
    record = LIFECYCLE.revocations.decide(revocation_id, req.tier.strip().upper(), _decision(req.decision),
                                          actor, comments=req.comments)
    return _revocation_response(record, actor, f"{req.tier.strip().upper()}_{_decision(req.decision)}")


@app.post("/revocations/{revocation_id}/execute")
def execute_revocation(revocation_id: str, actor: Actor = Depends(current_actor)):
    record = LIFECYCLE.revocations.execute(revocation_id, actor)
    return _revocation_response(record, actor, "EXECUTED")


@app.post("/revocations/{revocation_id}/appeal")
def appeal_revocation(revocation_id: str, req: AppealRequest, actor: Actor = Depends(current_actor)):
    record = LIFECYCLE.revocations.file_appeal(revocation_id, actor, req.reason, evidence=req.evidence)
    return _revocation_response(record, actor, "APPEAL_FILED")


@app.post("/revocations/{revocation_id}/appeal/decision")
def decide_appeal(revocation_id: str, req: AppealDecisionRequest, actor: Actor = Depends(current_actor)):
    record = LIFECYCLE.revocations.decide_appeal(revocation_id, _decision(req.decision), actor,
                                                 outcome=req.outcome)
    return _revocation_response(record, actor, f"APPEAL_{_decision(req.decision)}")


# ============================================================
# Audit
# ============================================================

@app.get("/audit/log")
def audit_log_export(subject_id: Optional[str] = None, action: Optional[str] = None):
    return [c.to_dict() for c in STORE.audit_trail.query(subject_id=subject_id, action=action)]


@app.get("/audit/proof")
def audit_proof():
    return STORE.audit_trail.proof()


@app.get("/audit/verify")
def audit_verify():
    ok, bad_seq = verify_chain(c.to_dict() for c in STORE.audit_trail.query())
    return {"intact": ok, "first_bad_seq": bad_seq, "head_entry_hash": STORE.audit_trail.head()}
