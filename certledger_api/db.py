"""
Database module for the CertLedger service.

SQLite storage for certificates, approval queue entries, revocations, the
hash-chained audit log, documents, the subject registry and the
verification log. Implements the core storage interfaces:

    SqliteRecordStore      certledger.store.RecordStore
    SqliteAuditTrail       certledger.audit.AuditTrail
    SqliteContentStore     certledger.store.ContentStore
    SqliteSubjectRegistry  certledger.store.SubjectRegistry

Records are stored as JSON next to the columns that are queried or
constrained. Every write is ``UPDATE ... WHERE key=? AND version=?`` and a
write that matches no row raises ConcurrencyError. Writers take the
database lock up front (BEGIN IMMEDIATE), so the audit chain head read and
the append happen under the same lock.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Sequence

from certledger.audit import AuditTrail, ChainedAuditEntry, link
from certledger.errors import ConcurrencyError, DuplicateError
from certledger.hashing import normalize_hash
from certledger.records import ApprovalQueueEntry, AuditEntry, Certificate, RevocationRecord
from certledger.store import (
    ContentStore,
    PendingWrite,
    Record,
    RecordStore,
    Subject,
    SubjectRegistry,
)
from certledger.timeutil import to_iso, utc_now
from certledger.types import OPEN_REVOCATION_STATUSES

from . import config

logger = logging.getLogger(__name__)

# Thread-local storage for connection pooling
_local = threading.local()


def _get_connection() -> sqlite3.Connection:
    """
    Get a thread-local database connection.
    Connections are reused within the same thread for performance.
    """
    if not hasattr(_local, 'conn') or _local.conn is None:
        config.DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(config.DB_PATH), check_same_thread=False,
                               isolation_level=None, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA cache_size=10000;")
        conn.execute("PRAGMA temp_store=MEMORY;")
        conn.row_factory = sqlite3.Row
        _local.conn = conn
    return _local.conn


@contextmanager
def _transaction():
    """
    Context manager for write transactions.
    Takes the write lock immediately, commits on success, rolls back on failure.
    """
    conn = _get_connection()
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise


_OPEN_STATUSES_SQL = ", ".join(f"'{s.value}'" for s in sorted(OPEN_REVOCATION_STATUSES))


def init_db() -> None:
    """
    Initialize database schema with proper indexes.
    Safe to call multiple times (uses IF NOT EXISTS).
    """
    with _transaction() as conn:
        conn.execute("""
        CREATE TABLE IF NOT EXISTS certificates (
            cert_id TEXT PRIMARY KEY,
            content_hash TEXT NOT NULL UNIQUE,
            tx_id TEXT,
            student_code TEXT NOT NULL,
            course_name TEXT NOT NULL,
            institution_id TEXT NOT NULL,
            status TEXT NOT NULL,
            version INTEGER NOT NULL,
            record_json TEXT NOT NULL,
            created_at TEXT NOT NULL
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_certificates_tx
        ON certificates(tx_id);""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_certificates_subject
        ON certificates(student_code, institution_id);""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS approval_queue (
            cert_id TEXT PRIMARY KEY,
            status TEXT NOT NULL,
            archived INTEGER NOT NULL DEFAULT 0,
            version INTEGER NOT NULL,
            record_json TEXT NOT NULL,
            created_at TEXT NOT NULL
        );""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS revocations (
            revocation_id TEXT PRIMARY KEY,
            cert_id TEXT NOT NULL,
            status TEXT NOT NULL,
            version INTEGER NOT NULL,
            record_json TEXT NOT NULL,
            created_at TEXT NOT NULL
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_revocations_cert
        ON revocations(cert_id);""")
        # At most one open revocation per certificate
        conn.execute(f"""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_revocations_open
        ON revocations(cert_id) WHERE status IN ({_OPEN_STATUSES_SQL});""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS audit_log (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            action TEXT NOT NULL,
            actor TEXT NOT NULL,
            subject_type TEXT NOT NULL,
            subject_id TEXT,
            timestamp TEXT NOT NULL,
            payload_hash TEXT NOT NULL,
            prev_entry_hash TEXT,
            entry_hash TEXT NOT NULL,
            entry_json TEXT NOT NULL
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_audit_log_subject
        ON audit_log(subject_id);""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS verification_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            lookup TEXT NOT NULL,
            cert_id TEXT,
            found INTEGER NOT NULL,
            is_valid INTEGER NOT NULL,
            tamper_state TEXT,
            verifier TEXT,
            client_ip TEXT,
            user_agent TEXT,
            verified_at TEXT NOT NULL
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_verification_log_cert
        ON verification_log(cert_id);""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS subjects (
            student_code TEXT PRIMARY KEY,
            full_name TEXT NOT NULL,
            institution_id TEXT NOT NULL,
            email TEXT
        );""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS documents (
            cert_id TEXT PRIMARY KEY,
            content BLOB NOT NULL
        );""")


# ============================================================
# Audit trail
# ============================================================

def _chained_from_row(row: sqlite3.Row) -> ChainedAuditEntry:
    return ChainedAuditEntry(
        seq=row["seq"],
        entry=AuditEntry.from_dict(json.loads(row["entry_json"])),
        payload_hash=row["payload_hash"],
        prev_entry_hash=row["prev_entry_hash"],
        entry_hash=row["entry_hash"],
    )


class SqliteAuditTrail(AuditTrail):
    """
    Hash-chained audit log in the ``audit_log`` table.

    An optional mirror (see audit_backends) receives every chained entry
    inside the writing transaction; a mirror failure aborts the write.
    """

    def __init__(self, mirror=None):
        self.mirror = mirror

    def append_in(self, conn: sqlite3.Connection, entries: Sequence[AuditEntry]) -> List[ChainedAuditEntry]:
        """Append inside an open transaction."""
        row = conn.execute("SELECT seq, entry_hash FROM audit_log ORDER BY seq DESC LIMIT 1").fetchone()
        prev = row["entry_hash"] if row else None
        seq = row["seq"] if row else 0
        out = []
        for entry in entries:
            seq += 1
            chained = link(seq, entry, prev)
            conn.execute(
                "INSERT INTO audit_log(seq, action, actor, subject_type, subject_id, timestamp, "
                "payload_hash, prev_entry_hash, entry_hash, entry_json) VALUES(?,?,?,?,?,?,?,?,?,?)",
                (seq, entry.action, entry.actor, entry.subject_type, entry.subject_id,
                 to_iso(entry.timestamp), chained.payload_hash, prev, chained.entry_hash,
                 json.dumps(entry.to_dict(), sort_keys=True)),
            )
            if self.mirror is not None:
                self.mirror.write_entry(chained)
            prev = chained.entry_hash
            out.append(chained)
        return out

    def append(self, entries: Sequence[AuditEntry]) -> List[ChainedAuditEntry]:
        with _transaction() as conn:
            return self.append_in(conn, entries)

    def query(
        self,
        subject_id: Optional[str] = None,
        subject_type: Optional[str] = None,
        action: Optional[str] = None,
    ) -> List[ChainedAuditEntry]:
        clauses, params = [], []
        if subject_id:
            clauses.append("subject_id=?")
            params.append(subject_id)
        if subject_type:
            clauses.append("subject_type=?")
            params.append(subject_type)
        if action:
            clauses.append("action=?")
            params.append(action)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        cur = _get_connection().execute(
            "SELECT seq, payload_hash, prev_entry_hash, entry_hash, entry_json "
            f"FROM audit_log{where} ORDER BY seq ASC",
            params,
        )
        return [_chained_from_row(r) for r in cur.fetchall()]

    def head(self) -> Optional[str]:
        row = _get_connection().execute("SELECT entry_hash FROM audit_log ORDER BY seq DESC LIMIT 1").fetchone()
        return row["entry_hash"] if row else None


def export_audit_log_full() -> List[Dict[str, Any]]:
    """Export the complete audit log in chain order."""
    return [c.to_dict() for c in SqliteAuditTrail().query()]


# ============================================================
# Record store
# ============================================================

_TABLES = {
    Certificate: ("certificates", "cert_id"),
    ApprovalQueueEntry: ("approval_queue", "cert_id"),
    RevocationRecord: ("revocations", "revocation_id"),
}


def _columns(record: Record) -> Dict[str, Any]:
    """Indexed columns stored next to the record JSON."""
    data = json.dumps(record.to_dict(), sort_keys=True)
    if isinstance(record, Certificate):
        return {
            "cert_id": record.cert_id,
            "content_hash": normalize_hash(record.content_hash),
            "tx_id": record.anchor_ref.tx_id.lower() if record.anchor_ref else None,
            "student_code": record.student_code,
            "course_name": record.course_name,
            "institution_id": record.institution_id,
            "status": record.status.value,
            "version": record.version,
            "record_json": data,
            "created_at": to_iso(record.created_at),
        }
    if isinstance(record, ApprovalQueueEntry):
        return {
            "cert_id": record.cert_id,
            "status": record.status.value,
            "archived": int(record.archived),
            "version": record.version,
            "record_json": data,
            "created_at": to_iso(record.created_at),
        }
    return {
        "revocation_id": record.revocation_id,
        "cert_id": record.cert_id,
        "status": record.status.value,
        "version": record.version,
        "record_json": data,
        "created_at": to_iso(record.created_at),
    }


class SqliteRecordStore(RecordStore):
    """
    Record store on SQLite.

    Uniqueness of cert_id and content_hash, and the single open revocation
    per certificate, are enforced by the schema.
    """

    def __init__(self, audit_trail: Optional[SqliteAuditTrail] = None):
        self._trail = audit_trail or SqliteAuditTrail()

    @property
    def audit_trail(self) -> SqliteAuditTrail:
        return self._trail

    def _one(self, sql: str, params: Sequence[Any], cls):
        row = _get_connection().execute(sql, params).fetchone()
        return cls.from_dict(json.loads(row["record_json"])) if row else None

    def _many(self, sql: str, params: Sequence[Any], cls) -> list:
        rows = _get_connection().execute(sql, params).fetchall()
        return [cls.from_dict(json.loads(r["record_json"])) for r in rows]

    def get_certificate(self, cert_id: str) -> Optional[Certificate]:
        return self._one("SELECT record_json FROM certificates WHERE cert_id=?", (cert_id,), Certificate)

    def find_certificate(self, lookup: str) -> Optional[Certificate]:
        lookup = (lookup or "").strip()
        if not lookup:
            return None
        return (
            self.get_certificate(lookup)
            or self.find_by_content_hash(lookup)
            or self._one("SELECT record_json FROM certificates WHERE tx_id=?", (lookup.lower(),), Certificate)
        )

    def find_by_content_hash(self, content_hash: str) -> Optional[Certificate]:
        return self._one("SELECT record_json FROM certificates WHERE content_hash=?",
                         (normalize_hash(content_hash),), Certificate)

    def find_similar(self, student_code: str, course_name: str, institution_id: str) -> List[Certificate]:
        return self._many(
            "SELECT record_json FROM certificates WHERE student_code=? AND institution_id=? "
            "AND lower(course_name)=lower(?) ORDER BY created_at ASC",
            (student_code, institution_id, course_name), Certificate,
        )

    def get_queue_entry(self, cert_id: str) -> Optional[ApprovalQueueEntry]:
        return self._one("SELECT record_json FROM approval_queue WHERE cert_id=?", (cert_id,), ApprovalQueueEntry)

    def list_queue(self, include_archived: bool = False) -> List[ApprovalQueueEntry]:
        where = "" if include_archived else " WHERE archived=0"
        return self._many(f"SELECT record_json FROM approval_queue{where} ORDER BY created_at ASC", (),
                          ApprovalQueueEntry)

    def get_revocation(self, revocation_id: str) -> Optional[RevocationRecord]:
        return self._one("SELECT record_json FROM revocations WHERE revocation_id=?", (revocation_id,),
                         RevocationRecord)

    def list_revocations(self, cert_id: str) -> List[RevocationRecord]:
        return self._many("SELECT record_json FROM revocations WHERE cert_id=? ORDER BY created_at ASC",
                          (cert_id,), RevocationRecord)

    def _write(self, conn: sqlite3.Connection, write: PendingWrite) -> Record:
        record = write.versioned()
        table, key = _TABLES[type(record)]
        cols = _columns(record)
        try:
            if write.expected_version is None:
                names = ", ".join(cols)
                marks = ",".join("?" for _ in cols)
                conn.execute(f"INSERT INTO {table}({names}) VALUES({marks})", tuple(cols.values()))
            else:
                sets = ", ".join(f"{c}=?" for c in cols if c != key)
                values = [v for c, v in cols.items() if c != key]
                cur = conn.execute(
                    f"UPDATE {table} SET {sets} WHERE {key}=? AND version=?",
                    (*values, cols[key], write.expected_version),
                )
                if cur.rowcount != 1:
                    raise ConcurrencyError(f"{type(record).__name__} {cols[key]} was modified concurrently")
        except sqlite3.IntegrityError as e:
            if table == "revocations":
                raise DuplicateError(f"certificate {record.cert_id} already has an open revocation",
                                     code="REVOCATION_ALREADY_OPEN")
            if table == "certificates" and "content_hash" in str(e):
                raise DuplicateError(f"content hash {record.content_hash} already submitted")
            raise DuplicateError(f"{type(record).__name__} {cols[key]} already exists")
        return record

    def commit(self, writes: Sequence[PendingWrite], audit: Sequence[AuditEntry] = ()) -> List[Record]:
        with _transaction() as conn:
            saved = [self._write(conn, w) for w in writes]
            if audit:
                self._trail.append_in(conn, audit)
        return saved


# ============================================================
# Documents and subject registry
# ============================================================

class SqliteContentStore(ContentStore):
    def put(self, cert_id: str, content: bytes) -> bool:
        with _transaction() as conn:
            cur = conn.execute("INSERT OR IGNORE INTO documents(cert_id, content) VALUES(?,?)",
                               (cert_id, sqlite3.Binary(content)))
            return cur.rowcount == 1

    def get(self, cert_id: str) -> Optional[bytes]:
        row = _get_connection().execute("SELECT content FROM documents WHERE cert_id=?", (cert_id,)).fetchone()
        return bytes(row["content"]) if row else None


class SqliteSubjectRegistry(SubjectRegistry):
    def register(self, subject: Subject) -> None:
        with _transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO subjects(student_code, full_name, institution_id, email) VALUES(?,?,?,?)",
                (subject.student_code, subject.full_name, subject.institution_id, subject.email),
            )

    def lookup(self, student_code: str) -> Optional[Subject]:
        row = _get_connection().execute(
            "SELECT student_code, full_name, institution_id, email FROM subjects WHERE student_code=?",
            (student_code,),
        ).fetchone()
        return Subject(**dict(row)) if row else None


# ============================================================
# Verification log
# ============================================================

def append_verification_log(
    lookup: str,
    cert_id: Optional[str],
    found: bool,
    is_valid: bool,
    tamper_state: Optional[str],
    verifier: Optional[str] = None,
    client_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> int:
    """Append one verification event. Returns its row id."""
    with _transaction() as conn:
        cur = conn.execute(
            "INSERT INTO verification_log(lookup, cert_id, found, is_valid, tamper_state, verifier, "
            "client_ip, user_agent, verified_at) VALUES(?,?,?,?,?,?,?,?,?)",
            (lookup, cert_id, int(found), int(is_valid), tamper_state, verifier, client_ip,
             user_agent, to_iso(utc_now())),
        )
        return cur.lastrowid


def list_verification_log(cert_id: str) -> List[Dict[str, Any]]:
    cur = _get_connection().execute(
        "SELECT id, lookup, cert_id, found, is_valid, tamper_state, verifier, verified_at "
        "FROM verification_log WHERE cert_id=? ORDER BY id ASC",
        (cert_id,),
    )
    return [dict(r) for r in cur.fetchall()]


# ============================================================
# Metrics and Health
# ============================================================

def get_db_stats() -> Dict[str, int]:
    """Get database statistics for monitoring."""
    conn = _get_connection()
    stats = {}
    for table in ['certificates', 'approval_queue', 'revocations', 'audit_log', 'verification_log', 'subjects']:
        cur = conn.execute(f"SELECT COUNT(*) as cnt FROM {table}")
        stats[f"{table}_count"] = cur.fetchone()['cnt']
    return stats


# ============================================================
# Test Support: Database Reset
# ============================================================

def reset_db() -> None:
    """
    Reset the database for test isolation.
    Clears all tables but preserves schema.
    """
    with _transaction() as conn:
        for table in ['certificates', 'approval_queue', 'revocations', 'audit_log',
                      'verification_log', 'subjects', 'documents']:
            conn.execute(f"DELETE FROM {table}")
        conn.execute("DELETE FROM sqlite_sequence WHERE name IN ('audit_log', 'verification_log')")


def close_connection() -> None:
    """Close the thread-local connection (for cleanup)."""
    if hasattr(_local, 'conn') and _local.conn is not None:
        _local.conn.close()
        _local.conn = None
