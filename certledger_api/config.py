"""
Configuration module for the CertLedger service.

Centralizes all configuration with environment variable support and
validation. Values are read once at import time.
"""

import os
import json
import threading
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from certledger.policy import (
    ANCHOR_CLAIM_TTL,
    APPEAL_WINDOW,
    CAS_RETRIES,
    COST_SAFETY_MARGIN,
    MAX_RESUBMISSIONS,
    LifecyclePolicy,
)

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("CERTLEDGER_ENV", "dev")  # dev|stage|prod

# Storage
DB_PATH = Path(os.getenv("DB_PATH", "data/certledger.db"))

# Ledger backend: "simulated" or "http". Unset means http when a gateway
# URL is configured, otherwise simulated.
LEDGER_URL = os.getenv("LEDGER_URL", "")
LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "http" if LEDGER_URL else "simulated")
LEDGER_TIMEOUT_SECONDS = float(os.getenv("LEDGER_TIMEOUT_SECONDS", "10"))

# Lifecycle policy overrides
COST_SAFETY_MARGIN_VALUE = float(os.getenv("COST_SAFETY_MARGIN", str(COST_SAFETY_MARGIN)))
APPEAL_WINDOW_DAYS = int(os.getenv("APPEAL_WINDOW_DAYS", str(APPEAL_WINDOW.days)))
MAX_RESUBMISSIONS_VALUE = int(os.getenv("MAX_RESUBMISSIONS", str(MAX_RESUBMISSIONS)))
ANCHOR_CLAIM_TTL_SECONDS = int(os.getenv("ANCHOR_CLAIM_TTL_SECONDS", str(int(ANCHOR_CLAIM_TTL.total_seconds()))))
CAS_RETRIES_VALUE = int(os.getenv("CAS_RETRIES", str(CAS_RETRIES)))
AUTO_ANCHOR = os.getenv("AUTO_ANCHOR", "1").lower() in ("1", "true", "yes")

# Rate limits (requests per minute)
VERIFY_RPM = int(os.getenv("VERIFY_RPM", "300"))
PROCESS_RPM = int(os.getenv("PROCESS_RPM", "120"))

# Signing configuration
SIGNER_TYPE = os.getenv("CERTLEDGER_SIGNER", "ephemeral" if ENV == "dev" else "file")  # ephemeral|file|aws_kms
SIGNING_KEY_PATH = os.getenv("SIGNING_KEY_PATH", "secrets/certledger_signing_key.json")
TRUST_STORE_PATH = os.getenv("TRUST_STORE_PATH", "trust/trust_store.json")
AWS_KMS_KEY_ID = os.getenv("AWS_KMS_KEY_ID", "")
AWS_REGION = os.getenv("AWS_REGION", "")
AWS_KMS_KID = os.getenv("AWS_KMS_KID", "aws-kms-ed25519")

# Audit mirror: "none" or "s3_object_lock"
AUDIT_MIRROR_BACKEND = os.getenv("AUDIT_MIRROR_BACKEND", "none")
S3_BUCKET = os.getenv("S3_BUCKET", "")
S3_PREFIX = os.getenv("S3_PREFIX", "certledger/audit-log/")
S3_RETENTION_DAYS = int(os.getenv("S3_RETENTION_DAYS", "365"))
S3_LEGAL_HOLD = os.getenv("S3_LEGAL_HOLD", "OFF")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "1").lower() in ("1", "true", "yes")


# ============================================================
# Derived configuration
# ============================================================

def lifecycle_policy() -> LifecyclePolicy:
    """Build the core lifecycle policy from the environment."""
    return LifecyclePolicy(
        cost_safety_margin=COST_SAFETY_MARGIN_VALUE,
        appeal_window=timedelta(days=APPEAL_WINDOW_DAYS),
        max_resubmissions=MAX_RESUBMISSIONS_VALUE,
        anchor_claim_ttl=timedelta(seconds=ANCHOR_CLAIM_TTL_SECONDS),
        cas_retries=CAS_RETRIES_VALUE,
    )


_trust_lock = threading.Lock()


def load_json(path: str) -> Dict[str, Any]:
    with _trust_lock:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)


def load_trust_store() -> Optional[Dict[str, Any]]:
    """The trust store, or None when no file is deployed."""
    if not Path(TRUST_STORE_PATH).exists():
        return None
    return load_json(TRUST_STORE_PATH)


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Validate configuration.
    Returns dict of check name -> ok.
    """
    checks = {
        "ledger_backend": LEDGER_BACKEND in ("simulated", "http"),
        "ledger_url": LEDGER_BACKEND != "http" or bool(LEDGER_URL),
        "cost_safety_margin": COST_SAFETY_MARGIN_VALUE >= 1.0,
        "appeal_window": APPEAL_WINDOW_DAYS > 0,
        "audit_mirror": AUDIT_MIRROR_BACKEND != "s3_object_lock" or bool(S3_BUCKET),
        "signer": SIGNER_TYPE in ("ephemeral", "file", "aws_kms"),
    }
    if SIGNER_TYPE == "file":
        checks["signing_key"] = Path(SIGNING_KEY_PATH).exists()
        checks["trust_store"] = Path(TRUST_STORE_PATH).exists()
    if SIGNER_TYPE == "aws_kms":
        checks["kms_key_id"] = bool(AWS_KMS_KEY_ID)
    if is_production():
        checks["real_ledger"] = LEDGER_BACKEND == "http"
        checks["persistent_signer"] = SIGNER_TYPE != "ephemeral"
    return checks


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("CERTLEDGER_DEBUG", "").lower() in ("1", "true", "yes")
