"""
CertLedger Hashing

All content hashes are SHA-256 with lowercase hexadecimal output.
The ledger additionally requires a fixed-width identifier: "0x" followed by
exactly 64 hex characters (a bytes32 value).
"""

import hashlib
import re
from typing import Any, Optional, Union

from .canonicalization import canonicalize

HEX64_PATTERN = re.compile(r'^(0x)?[a-fA-F0-9]{64}$')


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as lowercase hex string."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def payload_hash(payload: Any) -> str:
    """
    Compute the content hash of a certificate payload.

    content_hash = SHA-256(canonical_json(payload))
    """
    return sha256_hex(canonicalize(payload))


def normalize_hash(value: Optional[str]) -> str:
    """Strip whitespace and a leading 0x, lowercase the rest."""
    value = (value or "").strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    return value


def is_fixed_width_hex(value: Optional[str]) -> bool:
    """True if value is a 64-character hex digest, optionally 0x-prefixed."""
    return bool(value) and HEX64_PATTERN.match(value.strip()) is not None


def fixed_width_id(content_hash: Optional[str], cert_id: str) -> str:
    """
    Derive the ledger identifier for a certificate.

    Uses the content hash when it already has the fixed-width hex shape,
    otherwise derives one deterministically from the certificate id.

    Returns:
        "0x" + 64 lowercase hex characters
    """
    if is_fixed_width_hex(content_hash):
        return "0x" + normalize_hash(content_hash)
    return "0x" + sha256_hex(cert_id)


def chain_entry_hash(prev_entry_hash: Optional[str], payload_hash_hex: str) -> str:
    """
    Compute the hash chain entry hash.

    entry_hash = SHA-256(prev_entry_hash || payload_hash)
    The first entry in a chain uses an empty previous hash.
    """
    data = (prev_entry_hash or "").encode("utf-8") + payload_hash_hex.encode("utf-8")
    return sha256_hex(data)
