"""
CertLedger Integrity Verifier

Recomputes the content hash of a certificate's stored bytes and compares it
against the hash recorded at submission. A mismatch is a first-class result,
never an exception: verification has to answer "is this valid" even when the
answer is "no".
"""

import hmac
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .hashing import normalize_hash, sha256_hex
from .types import TamperState


@dataclass(frozen=True)
class IntegrityResult:
    """Outcome of an integrity check."""
    tampered: TamperState
    recomputed_hash: Optional[str] = None
    stored_hash: Optional[str] = None

    @property
    def tamper_detected(self) -> bool:
        return self.tampered == TamperState.TAMPERED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tampered": self.tampered.value,
            "recomputed_hash": self.recomputed_hash,
            "stored_hash": self.stored_hash,
        }


class IntegrityVerifier:
    """
    Stateless content-hash verifier.

    Usage:
        result = IntegrityVerifier().verify(stored_hash, raw_bytes)
        if result.tamper_detected:
            ...
    """

    @staticmethod
    def compute_hash(raw_content: bytes) -> str:
        return sha256_hex(raw_content)

    def verify(self, stored_content_hash: Optional[str], raw_content: Optional[bytes]) -> IntegrityResult:
        """
        Compare stored hash against a hash recomputed from raw bytes.

        Args:
            stored_content_hash: Hash recorded when the certificate was submitted
            raw_content: Current stored bytes, or None if held off-system

        Returns:
            IntegrityResult. UNKNOWN when no bytes are available.
        """
        if raw_content is None:
            return IntegrityResult(tampered=TamperState.UNKNOWN, stored_hash=stored_content_hash)

        recomputed = self.compute_hash(raw_content)
        expected = normalize_hash(stored_content_hash)
        matches = bool(expected) and hmac.compare_digest(expected.encode("utf-8"), recomputed.encode("utf-8"))
        return IntegrityResult(
            tampered=TamperState.INTACT if matches else TamperState.TAMPERED,
            recomputed_hash=recomputed,
            stored_hash=stored_content_hash,
        )
