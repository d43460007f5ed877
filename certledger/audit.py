"""
CertLedger Audit Trail

Append-only event log shared by the approval, anchoring and revocation
workflows. Entries are linked into a hash chain:

    entry_hash = SHA-256(prev_entry_hash || SHA-256(canonical(entry)))

so any later edit or deletion of an entry is detectable by replaying the
chain. Entries are never mutated or deleted once appended.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .canonicalization import canonicalize
from .hashing import chain_entry_hash, sha256_hex
from .records import AuditEntry


@dataclass(frozen=True)
class ChainedAuditEntry:
    """An audit entry at its position in the chain."""
    seq: int
    entry: AuditEntry
    payload_hash: str
    prev_entry_hash: Optional[str]
    entry_hash: str

    def to_dict(self) -> Dict[str, Any]:
        d = self.entry.to_dict()
        d.update({
            "seq": self.seq,
            "payload_hash": self.payload_hash,
            "prev_entry_hash": self.prev_entry_hash,
            "entry_hash": self.entry_hash,
        })
        return d


def audit_payload_hash(entry: AuditEntry) -> str:
    return sha256_hex(canonicalize(entry.to_dict()))


def link(seq: int, entry: AuditEntry, prev_entry_hash: Optional[str]) -> ChainedAuditEntry:
    payload = audit_payload_hash(entry)
    return ChainedAuditEntry(
        seq=seq,
        entry=entry,
        payload_hash=payload,
        prev_entry_hash=prev_entry_hash,
        entry_hash=chain_entry_hash(prev_entry_hash, payload),
    )


def verify_chain(entries: Iterable[Dict[str, Any]]) -> Tuple[bool, Optional[int]]:
    """
    Replay an exported chain.

    Each exported entry must carry its audit fields plus payload_hash and
    entry_hash. Both the payload hash and the link are recomputed.

    Returns:
        (True, None) if intact, otherwise (False, seq_of_first_bad_entry)
    """
    prev = None
    for item in entries:
        entry = AuditEntry.from_dict(item)
        if audit_payload_hash(entry) != item.get("payload_hash"):
            return False, item.get("seq")
        if chain_entry_hash(prev, item["payload_hash"]) != item.get("entry_hash"):
            return False, item.get("seq")
        prev = item["entry_hash"]
    return True, None


class AuditTrail(ABC):
    """
    Abstract interface for the shared audit trail.

    Implementations must append atomically and preserve order.
    """

    @abstractmethod
    def append(self, entries: Sequence[AuditEntry]) -> List[ChainedAuditEntry]:
        """Append entries in order; returns them as chained entries."""
        pass

    @abstractmethod
    def query(
        self,
        subject_id: Optional[str] = None,
        subject_type: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[ChainedAuditEntry]:
        pass

    @abstractmethod
    def head(self) -> Optional[str]:
        """Hash of the most recent entry, or None if the trail is empty."""
        pass

    def proof(self) -> Dict[str, Any]:
        entries = self.query()
        return {"entries": len(entries), "head_entry_hash": self.head()}


class InMemoryAuditTrail(AuditTrail):
    """
    In-memory audit trail for development/testing.

    WARNING: Not persistent. Use the SQLite trail in certledger_api for
    anything that must survive a restart.
    """

    def __init__(self):
        self._entries: List[ChainedAuditEntry] = []
        self._lock = threading.Lock()

    def append(self, entries: Sequence[AuditEntry]) -> List[ChainedAuditEntry]:
        out = []
        with self._lock:
            for entry in entries:
                prev = self._entries[-1].entry_hash if self._entries else None
                chained = link(len(self._entries) + 1, entry, prev)
                self._entries.append(chained)
                out.append(chained)
        return out

    def query(
        self,
        subject_id: Optional[str] = None,
        subject_type: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[ChainedAuditEntry]:
        with self._lock:
            records = self._entries[:]
        if subject_id:
            records = [r for r in records if r.entry.subject_id == subject_id]
        if subject_type:
            records = [r for r in records if r.entry.subject_type == subject_type]
        if action:
            records = [r for r in records if r.entry.action == action]
        return records

    def head(self) -> Optional[str]:
        with self._lock:
            return self._entries[-1].entry_hash if self._entries else None
