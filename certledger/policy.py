"""
Lifecycle policy constants.

The 20% cost margin and the 30-day appeal window are fixed values carried
over from the production system. They are named here, and grouped in
``LifecyclePolicy`` so a deployment can override them, rather than being
re-derived.
"""

from dataclasses import dataclass
from datetime import timedelta

COST_SAFETY_MARGIN = 1.2
APPEAL_WINDOW = timedelta(days=30)
MIN_DESCRIPTION_LENGTH = 20
MAX_DESCRIPTION_LENGTH = 1000
MAX_RESUBMISSIONS = 3
# Expiry sent to the ledger when the certificate has none
DEFAULT_LEDGER_VALIDITY = timedelta(days=365)
ANCHOR_CLAIM_TTL = timedelta(minutes=5)
CAS_RETRIES = 3
DEFAULT_AUXILIARY_REF = "STORED_IN_DB"


@dataclass(frozen=True)
class LifecyclePolicy:
    cost_safety_margin: float = COST_SAFETY_MARGIN
    appeal_window: timedelta = APPEAL_WINDOW
    min_description_length: int = MIN_DESCRIPTION_LENGTH
    max_description_length: int = MAX_DESCRIPTION_LENGTH
    max_resubmissions: int = MAX_RESUBMISSIONS
    default_ledger_validity: timedelta = DEFAULT_LEDGER_VALIDITY
    anchor_claim_ttl: timedelta = ANCHOR_CLAIM_TTL
    cas_retries: int = CAS_RETRIES

    def __post_init__(self):
        if self.cost_safety_margin < 1.0:
            raise ValueError("cost_safety_margin must be >= 1.0")
        if self.appeal_window <= timedelta(0):
            raise ValueError("appeal_window must be positive")
        if self.cas_retries < 1:
            raise ValueError("cas_retries must be >= 1")


DEFAULT_POLICY = LifecyclePolicy()
