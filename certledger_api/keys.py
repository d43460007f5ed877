"""
Key management module for the CertLedger service.

Provides Ed25519 key providers for signing verification attestations,
with support for file-based keys, AWS KMS, and an ephemeral in-memory key
for development and tests. Also checks approver signatures against the
trust store.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Tuple, Dict, Any, Optional

from nacl.signing import SigningKey, VerifyKey
from nacl.exceptions import BadSignatureError

from .util import b64d, b64e

logger = logging.getLogger(__name__)


class KeyProvider(ABC):
    """Abstract interface for attestation signing and trust store retrieval."""

    @abstractmethod
    def sign(self, payload: bytes) -> Tuple[str, str]:
        """
        Sign a payload and return (kid, signature_b64).

        Args:
            payload: The canonical JSON bytes to sign

        Returns:
            Tuple of (key_id, base64_encoded_signature)
        """
        pass

    @abstractmethod
    def get_trust_store(self) -> Dict[str, Any]:
        """
        Get the trust store containing public keys.

        Returns:
            Dict containing attestation_keys and approver_keys
        """
        pass

    @abstractmethod
    def get_kid(self) -> str:
        """Get the key ID used for signing."""
        pass

    def signature_block(self, payload: bytes) -> Dict[str, str]:
        kid, sig_b64 = self.sign(payload)
        return {"kid": kid, "alg": "ed25519", "sig_b64": sig_b64}


class _TrustStoreFile:
    """Trust store JSON with file modification time caching."""

    def __init__(self, path: str):
        self._path = path
        self._lock = threading.RLock()
        self._cache: Optional[Dict[str, Any]] = None
        self._mtime: float = 0

    def load(self) -> Dict[str, Any]:
        with self._lock:
            try:
                mtime = os.path.getmtime(self._path)
                if self._cache is None or mtime > self._mtime:
                    with open(self._path, "r", encoding="utf-8") as f:
                        self._cache = json.load(f)
                    self._mtime = mtime
            except FileNotFoundError:
                if self._cache is None:
                    raise
            return self._cache


class FileKeyProvider(KeyProvider):
    """
    File-based key provider using Ed25519 keys stored in JSON files.

    Thread-safe with cached trust store loading.
    """

    def __init__(self, signing_key_path: str, trust_store_path: str):
        self._trust = _TrustStoreFile(trust_store_path)

        with open(signing_key_path, "r", encoding="utf-8") as f:
            raw = json.load(f)

        self._kid = raw["kid"]
        self._sk = SigningKey(b64d(raw["private_key_b64"]))

    def sign(self, payload: bytes) -> Tuple[str, str]:
        sig = self._sk.sign(payload).signature
        return self._kid, b64e(sig)

    def get_trust_store(self) -> Dict[str, Any]:
        return self._trust.load()

    def get_kid(self) -> str:
        return self._kid


class EphemeralKeyProvider(KeyProvider):
    """
    In-memory key provider for development/testing.

    WARNING: The key is regenerated on every start, so attestations cannot
    be checked across restarts.
    """

    def __init__(self, kid: str = "certledger-ephemeral", approver_keys: Optional[Dict[str, str]] = None):
        self._kid = kid
        self._sk = SigningKey.generate()
        self._trust_store = {
            "trust_store_id": "certledger-ephemeral",
            "attestation_keys": {kid: b64e(bytes(self._sk.verify_key))},
            "approver_keys": dict(approver_keys or {}),
        }

    def sign(self, payload: bytes) -> Tuple[str, str]:
        sig = self._sk.sign(payload).signature
        return self._kid, b64e(sig)

    def get_trust_store(self) -> Dict[str, Any]:
        return self._trust_store

    def get_kid(self) -> str:
        return self._kid

    def register_approver(self, actor_id: str, public_key_b64: str) -> None:
        self._trust_store["approver_keys"][actor_id] = public_key_b64


class AwsKmsEd25519Provider(KeyProvider):
    """
    AWS KMS signing provider using Ed25519 keys.

    Requires a SIGN_VERIFY KMS key with ED25519 support.
    Uses KMS Sign API with SigningAlgorithm ED25519_SHA_512 and MessageType RAW.

    Docs: https://docs.aws.amazon.com/kms/latest/APIReference/API_Sign.html
    """

    def __init__(
        self,
        kms_key_id: str,
        trust_store_path: str,
        region: Optional[str] = None,
        kid: Optional[str] = None
    ):
        self._kms_key_id = kms_key_id
        self._trust = _TrustStoreFile(trust_store_path)
        self._region = region
        self._kid = kid or "aws-kms-ed25519"
        self._client = None

    def _get_client(self):
        if self._client is None:
            import boto3
            self._client = boto3.client("kms", region_name=self._region or None)
        return self._client

    def sign(self, payload: bytes) -> Tuple[str, str]:
        client = self._get_client()
        resp = client.sign(
            KeyId=self._kms_key_id,
            Message=payload,
            MessageType="RAW",
            SigningAlgorithm="ED25519_SHA_512"
        )
        return self._kid, b64e(resp["Signature"])

    def get_trust_store(self) -> Dict[str, Any]:
        return self._trust.load()

    def get_kid(self) -> str:
        return self._kid


def verify_ed25519(signature_b64: str, payload: bytes, public_key_b64: str) -> bool:
    """
    Verify an Ed25519 signature.

    Args:
        signature_b64: Base64-encoded signature
        payload: The signed data
        public_key_b64: Base64-encoded public key

    Returns:
        True if signature is valid, False otherwise
    """
    try:
        vk = VerifyKey(b64d(public_key_b64))
        vk.verify(payload, b64d(signature_b64))
        return True
    except (BadSignatureError, ValueError, TypeError):
        return False


def approver_signature_check(provider: KeyProvider):
    """
    Build the approver-signature callback used by the lifecycle.

    The approver signs the certificate's content hash (its UTF-8 bytes).
    An approver without a registered key cannot produce a valid signature.
    """
    def check(actor_id: str, content_hash: str, signature_b64: str) -> bool:
        public_key = provider.get_trust_store().get("approver_keys", {}).get(actor_id)
        if not public_key:
            logger.warning("no approver key registered for %s", actor_id)
            return False
        return verify_ed25519(signature_b64, content_hash.encode("utf-8"), public_key)
    return check


def get_key_provider(
    signer_type: str = "ephemeral",
    signing_key_path: str = "secrets/certledger_signing_key.json",
    trust_store_path: str = "trust/trust_store.json",
    kms_key_id: Optional[str] = None,
    kms_region: Optional[str] = None,
    kms_kid: Optional[str] = None
) -> KeyProvider:
    """
    Factory function to create the appropriate key provider.

    Args:
        signer_type: "ephemeral", "file" or "aws_kms"
        signing_key_path: Path to signing key JSON (for file provider)
        trust_store_path: Path to trust store JSON
        kms_key_id: AWS KMS key ID (for KMS provider)
        kms_region: AWS region (for KMS provider)
        kms_kid: Key ID to use in signatures (for KMS provider)

    Returns:
        Configured KeyProvider instance
    """
    if signer_type == "aws_kms":
        if not kms_key_id:
            raise ValueError("AWS_KMS_KEY_ID required for aws_kms signer")
        return AwsKmsEd25519Provider(
            kms_key_id=kms_key_id,
            trust_store_path=trust_store_path,
            region=kms_region,
            kid=kms_kid
        )
    if signer_type == "file":
        return FileKeyProvider(
            signing_key_path=signing_key_path,
            trust_store_path=trust_store_path
        )
    return EphemeralKeyProvider()
