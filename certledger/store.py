"""
Record storage interfaces.

The Certificate / ApprovalQueueEntry / RevocationRecord set, keyed by
cert_id, is the single shared mutable resource. Writers use optimistic
concurrency: every write names the version it read, and a write whose
record moved underneath it fails with ConcurrencyError instead of
overwriting. Uniqueness of cert_id and content_hash is enforced at insert.

A commit is all-or-nothing across every record it touches, and its audit
entries are appended to the shared trail in the same unit.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Sequence, TypeVar, Union

from .audit import AuditTrail, InMemoryAuditTrail
from .errors import ConcurrencyError, DuplicateError
from .hashing import normalize_hash
from .records import ApprovalQueueEntry, AuditEntry, Certificate, RevocationRecord
from .types import OPEN_REVOCATION_STATUSES

Record = Union[Certificate, ApprovalQueueEntry, RevocationRecord]
T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingWrite:
    """
    One record write inside a commit.

    expected_version None means insert; otherwise the stored version must
    still equal expected_version.
    """
    record: Record
    expected_version: Optional[int] = None

    @classmethod
    def insert(cls, record: Record) -> "PendingWrite":
        return cls(record, None)

    @classmethod
    def update(cls, record: Record, expected_version: int) -> "PendingWrite":
        return cls(record, expected_version)

    def versioned(self) -> Record:
        next_version = 1 if self.expected_version is None else self.expected_version + 1
        return replace(self.record, version=next_version)


def record_key(record: Record) -> str:
    if isinstance(record, RevocationRecord):
        return record.revocation_id
    return record.cert_id


class RecordStore(ABC):
    """Abstract record store."""

    @property
    @abstractmethod
    def audit_trail(self) -> AuditTrail:
        pass

    @abstractmethod
    def get_certificate(self, cert_id: str) -> Optional[Certificate]:
        pass

    @abstractmethod
    def find_certificate(self, lookup: str) -> Optional[Certificate]:
        """Find by cert_id, content hash or ledger transaction id."""
        pass

    @abstractmethod
    def find_by_content_hash(self, content_hash: str) -> Optional[Certificate]:
        pass

    @abstractmethod
    def find_similar(self, student_code: str, course_name: str, institution_id: str) -> List[Certificate]:
        """Certificates for the same subject, course and institution."""
        pass

    @abstractmethod
    def get_queue_entry(self, cert_id: str) -> Optional[ApprovalQueueEntry]:
        pass

    @abstractmethod
    def list_queue(self, include_archived: bool = False) -> List[ApprovalQueueEntry]:
        pass

    @abstractmethod
    def get_revocation(self, revocation_id: str) -> Optional[RevocationRecord]:
        pass

    @abstractmethod
    def list_revocations(self, cert_id: str) -> List[RevocationRecord]:
        pass

    @abstractmethod
    def commit(self, writes: Sequence[PendingWrite], audit: Sequence[AuditEntry] = ()) -> List[Record]:
        """
        Apply writes atomically and append audit entries.

        Returns:
            The stored records (with their new versions), in write order

        Raises:
            ConcurrencyError: a record changed since it was read
            DuplicateError: an insert collides on cert_id / content_hash, or a
                second open revocation is filed for one certificate
        """
        pass


class InMemoryRecordStore(RecordStore):
    """
    In-memory record store for development/testing.

    WARNING: Not persistent, single process only.
    """

    def __init__(self, audit_trail: Optional[AuditTrail] = None):
        self._certificates: Dict[str, Certificate] = {}
        self._queue: Dict[str, ApprovalQueueEntry] = {}
        self._revocations: Dict[str, RevocationRecord] = {}
        self._trail = audit_trail or InMemoryAuditTrail()
        self._lock = threading.RLock()

    @property
    def audit_trail(self) -> AuditTrail:
        return self._trail

    def get_certificate(self, cert_id: str) -> Optional[Certificate]:
        with self._lock:
            return self._certificates.get(cert_id)

    def find_certificate(self, lookup: str) -> Optional[Certificate]:
        lookup = (lookup or "").strip()
        if not lookup:
            return None
        with self._lock:
            if lookup in self._certificates:
                return self._certificates[lookup]
            found = self.find_by_content_hash(lookup)
            if found:
                return found
            for cert in self._certificates.values():
                if cert.anchor_ref and cert.anchor_ref.tx_id.lower() == lookup.lower():
                    return cert
        return None

    def find_by_content_hash(self, content_hash: str) -> Optional[Certificate]:
        wanted = normalize_hash(content_hash)
        with self._lock:
            for cert in self._certificates.values():
                if normalize_hash(cert.content_hash) == wanted:
                    return cert
        return None

    def find_similar(self, student_code: str, course_name: str, institution_id: str) -> List[Certificate]:
        with self._lock:
            return [
                c for c in self._certificates.values()
                if c.student_code == student_code
                and c.course_name.lower() == course_name.lower()
                and c.institution_id == institution_id
            ]

    def get_queue_entry(self, cert_id: str) -> Optional[ApprovalQueueEntry]:
        with self._lock:
            return self._queue.get(cert_id)

    def list_queue(self, include_archived: bool = False) -> List[ApprovalQueueEntry]:
        with self._lock:
            entries = list(self._queue.values())
        if not include_archived:
            entries = [e for e in entries if not e.archived]
        return sorted(entries, key=lambda e: e.created_at)

    def get_revocation(self, revocation_id: str) -> Optional[RevocationRecord]:
        with self._lock:
            return self._revocations.get(revocation_id)

    def list_revocations(self, cert_id: str) -> List[RevocationRecord]:
        with self._lock:
            records = [r for r in self._revocations.values() if r.cert_id == cert_id]
        return sorted(records, key=lambda r: r.created_at)

    def _table(self, record: Record) -> Dict[str, Record]:
        if isinstance(record, Certificate):
            return self._certificates
        if isinstance(record, ApprovalQueueEntry):
            return self._queue
        return self._revocations

    def _check(self, write: PendingWrite) -> None:
        record = write.record
        table = self._table(record)
        key = record_key(record)
        current = table.get(key)

        if write.expected_version is None:
            if current is not None:
                raise DuplicateError(f"{type(record).__name__} {key} already exists")
            if isinstance(record, Certificate) and self.find_by_content_hash(record.content_hash):
                raise DuplicateError(f"content hash {record.content_hash} already submitted")
        elif current is None or current.version != write.expected_version:
            raise ConcurrencyError(f"{type(record).__name__} {key} was modified concurrently")

        if isinstance(record, Certificate) and write.expected_version is not None:
            other = self.find_by_content_hash(record.content_hash)
            if other is not None and other.cert_id != record.cert_id:
                raise DuplicateError(f"content hash {record.content_hash} already submitted")

        if isinstance(record, RevocationRecord) and record.status in OPEN_REVOCATION_STATUSES:
            for other in self._revocations.values():
                if (other.cert_id == record.cert_id and other.revocation_id != record.revocation_id
                        and other.status in OPEN_REVOCATION_STATUSES):
                    raise DuplicateError(
                        f"certificate {record.cert_id} already has an open revocation",
                        code="REVOCATION_ALREADY_OPEN",
                    )

    def commit(self, writes: Sequence[PendingWrite], audit: Sequence[AuditEntry] = ()) -> List[Record]:
        with self._lock:
            for write in writes:
                self._check(write)
            saved = []
            for write in writes:
                record = write.versioned()
                self._table(record)[record_key(record)] = record
                saved.append(record)
            if audit:
                self._trail.append(audit)
            return saved


# =============================================================================
# Collaborator interfaces: document content and subject registry
# =============================================================================

class ContentStore(ABC):
    """
    Byte storage for certificate content. The backend is irrelevant to the core.

    Content is write-once per cert_id: ``put`` never replaces stored bytes
    and returns False when bytes were already there.
    """

    @abstractmethod
    def put(self, cert_id: str, content: bytes) -> bool:
        pass

    @abstractmethod
    def get(self, cert_id: str) -> Optional[bytes]:
        pass


class InMemoryContentStore(ContentStore):
    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, cert_id: str, content: bytes) -> bool:
        with self._lock:
            if cert_id in self._blobs:
                return False
            self._blobs[cert_id] = bytes(content)
            return True

    def get(self, cert_id: str) -> Optional[bytes]:
        with self._lock:
            return self._blobs.get(cert_id)


@dataclass(frozen=True)
class Subject:
    """A credential holder as known to the student/subject registry."""
    student_code: str
    full_name: str
    institution_id: str
    email: Optional[str] = None


class SubjectRegistry(ABC):
    @abstractmethod
    def lookup(self, student_code: str) -> Optional[Subject]:
        pass


class InMemorySubjectRegistry(SubjectRegistry):
    def __init__(self, subjects: Sequence[Subject] = ()):
        self._subjects = {s.student_code: s for s in subjects}

    def register(self, subject: Subject) -> None:
        self._subjects[subject.student_code] = subject

    def lookup(self, student_code: str) -> Optional[Subject]:
        return self._subjects.get(student_code)


def retry_on_conflict(operation: Callable[[], T], retries: int) -> T:
    """
    Run a read-validate-commit operation, re-running it on ConcurrencyError.

    ``operation`` must re-read every record it writes, so each retry
    re-validates the transition against the current state. A move that is
    no longer legal then surfaces as its own error, not as a conflict.
    """
    for attempt in range(1, retries + 1):
        try:
            return operation()
        except ConcurrencyError:
            if attempt == retries:
                raise
            logger.info("write conflict, retrying (%d/%d)", attempt, retries)
    raise ConcurrencyError("no attempts made")
