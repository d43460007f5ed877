"""
Audit mirror backends.

The SQLite audit_log table is the chain of record. A mirror receives a copy
of every chained entry as it is appended, so an operator can keep an
immutable off-host copy next to the database.
"""

import json
from datetime import datetime, timedelta, timezone

from certledger.audit import ChainedAuditEntry

from . import config


class AuditMirror:
    def write_entry(self, chained: ChainedAuditEntry) -> None:
        raise NotImplementedError


class S3ObjectLockMirror(AuditMirror):
    """Writes each chained audit entry as a separate immutable object to an S3 bucket with Object Lock.
    Requires bucket with Object Lock enabled.
    Docs: https://docs.aws.amazon.com/AmazonS3/latest/userguide/object-lock.html
    """
    def __init__(self, bucket: str, prefix: str, retention_days: int, legal_hold: str = "OFF", client=None):
        self.bucket = bucket
        self.prefix = prefix.rstrip("/") + "/"
        self.retention_days = retention_days
        self.legal_hold = legal_hold
        self._client = client

    def _s3(self):
        if self._client is None:
            import boto3
            self._client = boto3.client("s3")
        return self._client

    def object_key(self, chained: ChainedAuditEntry) -> str:
        subject = chained.entry.subject_id or "none"
        return f"{self.prefix}{chained.seq:012d}-{chained.entry.action}-{subject}.json"

    def write_entry(self, chained: ChainedAuditEntry) -> None:
        # Retain until now + retention_days
        retain_until = datetime.now(timezone.utc) + timedelta(days=int(self.retention_days))
        self._s3().put_object(
            Bucket=self.bucket,
            Key=self.object_key(chained),
            Body=json.dumps(chained.to_dict(), sort_keys=True).encode("utf-8"),
            ContentType="application/json",
            ObjectLockMode="COMPLIANCE",
            ObjectLockRetainUntilDate=retain_until,
            ObjectLockLegalHoldStatus=self.legal_hold
        )


def get_audit_mirror():
    """Mirror selected by AUDIT_MIRROR_BACKEND, or None for the SQLite chain alone."""
    if config.AUDIT_MIRROR_BACKEND == "s3_object_lock":
        if not config.S3_BUCKET:
            raise ValueError("S3_BUCKET required for s3_object_lock audit mirror")
        return S3ObjectLockMirror(
            bucket=config.S3_BUCKET,
            prefix=config.S3_PREFIX,
            retention_days=config.S3_RETENTION_DAYS,
            legal_hold=config.S3_LEGAL_HOLD,
        )
    return None
