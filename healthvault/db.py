"""
Database module for HealthVault.

Defines the DataStore interface the custody core depends on and a
SQLite-backed implementation storing subjects, documents, credential
records, the append-only grant log and background jobs.

The grant log is hash-chained: every row stores the SHA-256 of its
canonical payload and an entry hash linking it to the previous row, so an
exported log can be checked offline (tools/verify_grant_log_chain.py).
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .domain import (
    AccessCategory,
    AccessGrantRecord,
    CreationStatus,
    CredentialKind,
    DocumentCategory,
    DocumentRecord,
    ResponderInfo,
    SubjectRecord,
    TokenRecord,
)
from .util import canonicalize, generate_id, now_epoch, sha256_hex


def chain_entry_hash(prev_entry_hash: Optional[str], payload_hash: str) -> str:
    """
    Compute the hash chain entry hash.

    Creates a hash that links to the previous entry, forming
    an immutable chain.
    """
    data = (prev_entry_hash or "").encode("utf-8") + payload_hash.encode("utf-8")
    return sha256_hex(data)


def grant_payload(
    record_id: str,
    subject_id: str,
    credential_id: str,
    on_chain_grant_id: str,
    responder: ResponderInfo,
    data_accessed: List[str],
    categories_accessed: List[str],
    grant_expires_at: int,
    created_at: int
) -> Dict[str, Any]:
    """The canonical body of a grant record, hashed into the chain."""
    return {
        "record_id": record_id,
        "subject_id": subject_id,
        "credential_id": credential_id,
        "on_chain_grant_id": on_chain_grant_id,
        "responder": responder.to_dict(),
        "data_accessed": list(data_accessed),
        "categories_accessed": list(categories_accessed),
        "grant_expires_at": grant_expires_at,
        "created_at": created_at,
    }


class DataStore(ABC):
    """Persistence operations the custody core needs."""

    # Subjects

    @abstractmethod
    def create_subject(self, subject: SubjectRecord) -> SubjectRecord:
        pass

    @abstractmethod
    def get_subject(self, subject_id: str) -> Optional[SubjectRecord]:
        pass

    @abstractmethod
    def set_did_status(
        self,
        subject_id: str,
        status: CreationStatus,
        did: Optional[str] = None,
        did_document_address: Optional[str] = None
    ) -> None:
        pass

    # Documents

    @abstractmethod
    def create_document(self, document: DocumentRecord) -> DocumentRecord:
        pass

    @abstractmethod
    def get_document(self, document_id: str) -> Optional[DocumentRecord]:
        pass

    @abstractmethod
    def set_document_status(
        self,
        document_id: str,
        status: CreationStatus,
        on_chain_id: Optional[int] = None
    ) -> None:
        pass

    @abstractmethod
    def deactivate_document(self, document_id: str) -> bool:
        pass

    @abstractmethod
    def find_active_documents(
        self,
        subject_id: str,
        ids: Optional[Iterable[str]] = None,
        categories: Optional[Iterable[str]] = None
    ) -> List[DocumentRecord]:
        """
        Active documents of subject_id, optionally restricted to ids and to
        categories. An empty or None filter means "no restriction".
        """
        pass

    # Credentials

    @abstractmethod
    def create_token_record(self, record: TokenRecord) -> TokenRecord:
        pass

    @abstractmethod
    def get_token_record(self, token_id: str) -> Optional[TokenRecord]:
        pass

    @abstractmethod
    def list_token_records(self, subject_id: str) -> List[TokenRecord]:
        pass

    @abstractmethod
    def mark_revoked(self, token_id: str) -> bool:
        """Atomically deactivate a credential. False if already inactive or unknown."""
        pass

    @abstractmethod
    def is_revoked(self, token_id: str) -> bool:
        """True if the credential is inactive or unknown."""
        pass

    @abstractmethod
    def increment_access_count(self, token_id: str) -> None:
        pass

    # Grant log

    @abstractmethod
    def create_grant_record(
        self,
        subject_id: str,
        credential_id: str,
        on_chain_grant_id: str,
        responder: ResponderInfo,
        data_accessed: List[str],
        categories_accessed: List[str],
        grant_expires_at: int
    ) -> AccessGrantRecord:
        pass

    @abstractmethod
    def list_grant_records(self, subject_id: str) -> List[AccessGrantRecord]:
        pass

    @abstractmethod
    def export_grant_log(self) -> List[Dict[str, Any]]:
        pass

    # Jobs

    @abstractmethod
    def save_job(self, job: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        pass

    def get_db_stats(self) -> Dict[str, int]:
        return {}


class SqliteDataStore(DataStore):
    """
    SQLite-backed DataStore.

    Connections are thread-local so the store can be shared by request
    threads, the disclosure pool and the background worker.
    """

    def __init__(self, db_path: str = "data/healthvault.db"):
        self._db_path = Path(db_path)
        self._local = threading.local()
        self._write_lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a thread-local database connection.
        Connections are reused within the same thread for performance.
        """
        conn = getattr(self._local, "conn", None)
        if conn is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self._db_path), check_same_thread=False, timeout=30)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA temp_store=MEMORY;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    @contextmanager
    def _transaction(self):
        """
        Context manager for database transactions.
        Automatically commits on success, rolls back on failure.
        """
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def init_db(self) -> None:
        """
        Initialize database schema with proper indexes.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with self._transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS subjects (
                subject_id TEXT PRIMARY KEY,
                name TEXT,
                email TEXT,
                wallet_address TEXT,
                did TEXT,
                did_status TEXT NOT NULL DEFAULT 'NONE',
                did_document_address TEXT,
                created_at INTEGER DEFAULT (strftime('%s', 'now'))
            );""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                document_id TEXT PRIMARY KEY,
                subject_id TEXT NOT NULL,
                category TEXT NOT NULL,
                blob_address TEXT,
                file_name TEXT NOT NULL DEFAULT '',
                file_size INTEGER NOT NULL DEFAULT 0,
                uploaded_at INTEGER NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                creation_status TEXT NOT NULL DEFAULT 'PENDING',
                on_chain_id INTEGER
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_documents_subject
            ON documents(subject_id, is_active);""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS access_tokens (
                token_id TEXT PRIMARY KEY,
                subject_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                access_category TEXT NOT NULL,
                document_ids TEXT NOT NULL,
                categories TEXT NOT NULL DEFAULT '[]',
                expires_at INTEGER NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                access_count INTEGER NOT NULL DEFAULT 0,
                require_name INTEGER NOT NULL DEFAULT 1,
                require_credential INTEGER NOT NULL DEFAULT 0,
                require_location INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_access_tokens_subject
            ON access_tokens(subject_id);""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS access_grants (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                record_id TEXT NOT NULL UNIQUE,
                subject_id TEXT NOT NULL,
                credential_id TEXT NOT NULL,
                on_chain_grant_id TEXT NOT NULL,
                responder_name TEXT NOT NULL,
                responder_credential TEXT NOT NULL,
                responder_location TEXT NOT NULL,
                responder_address TEXT NOT NULL,
                data_accessed TEXT NOT NULL,
                categories_accessed TEXT NOT NULL,
                grant_expires_at INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                payload_hash TEXT NOT NULL,
                prev_entry_hash TEXT,
                entry_hash TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_access_grants_subject
            ON access_grants(subject_id);""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                job_id TEXT PRIMARY KEY,
                job_type TEXT NOT NULL,
                status TEXT NOT NULL,
                payload TEXT NOT NULL,
                result TEXT,
                error TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                completed_at INTEGER
            );""")

    # ============================================================
    # Subjects
    # ============================================================

    def create_subject(self, subject: SubjectRecord) -> SubjectRecord:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO subjects(subject_id, name, email, wallet_address, did, did_status, "
                "did_document_address) VALUES(?,?,?,?,?,?,?)",
                (subject.subject_id, subject.name, subject.email, subject.wallet_address,
                 subject.did, subject.did_status.value, subject.did_document_address)
            )
        return subject

    def get_subject(self, subject_id: str) -> Optional[SubjectRecord]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM subjects WHERE subject_id=?", (subject_id,)).fetchone()
        if not row:
            return None
        return SubjectRecord(
            subject_id=row["subject_id"],
            name=row["name"],
            email=row["email"],
            wallet_address=row["wallet_address"],
            did=row["did"],
            did_status=CreationStatus(row["did_status"]),
            did_document_address=row["did_document_address"],
        )

    def set_did_status(
        self,
        subject_id: str,
        status: CreationStatus,
        did: Optional[str] = None,
        did_document_address: Optional[str] = None
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE subjects SET did_status=?, did=COALESCE(?, did), "
                "did_document_address=COALESCE(?, did_document_address) WHERE subject_id=?",
                (status.value, did, did_document_address, subject_id)
            )

    # ============================================================
    # Documents
    # ============================================================

    def create_document(self, document: DocumentRecord) -> DocumentRecord:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO documents(document_id, subject_id, category, blob_address, file_name, "
                "file_size, uploaded_at, is_active, creation_status, on_chain_id) VALUES(?,?,?,?,?,?,?,?,?,?)",
                (document.document_id, document.subject_id, document.category.value,
                 document.blob_address, document.file_name, document.file_size,
                 document.uploaded_at or now_epoch(), int(document.is_active),
                 document.creation_status.value, document.on_chain_id)
            )
        return document

    @staticmethod
    def _document_from_row(row: sqlite3.Row) -> DocumentRecord:
        return DocumentRecord(
            document_id=row["document_id"],
            subject_id=row["subject_id"],
            category=DocumentCategory(row["category"]),
            blob_address=row["blob_address"],
            file_name=row["file_name"],
            file_size=row["file_size"],
            uploaded_at=row["uploaded_at"],
            is_active=bool(row["is_active"]),
            creation_status=CreationStatus(row["creation_status"]),
            on_chain_id=row["on_chain_id"],
        )

    def get_document(self, document_id: str) -> Optional[DocumentRecord]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM documents WHERE document_id=?", (document_id,)).fetchone()
        return self._document_from_row(row) if row else None

    def set_document_status(
        self,
        document_id: str,
        status: CreationStatus,
        on_chain_id: Optional[int] = None
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE documents SET creation_status=?, on_chain_id=COALESCE(?, on_chain_id) "
                "WHERE document_id=?",
                (status.value, on_chain_id, document_id)
            )

    def deactivate_document(self, document_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE documents SET is_active=0 WHERE document_id=? AND is_active=1",
                (document_id,)
            )
            return cur.rowcount == 1

    def find_active_documents(
        self,
        subject_id: str,
        ids: Optional[Iterable[str]] = None,
        categories: Optional[Iterable[str]] = None
    ) -> List[DocumentRecord]:
        query = "SELECT * FROM documents WHERE subject_id=? AND is_active=1"
        params: List[Any] = [subject_id]

        ids = list(ids or [])
        if ids:
            query += f" AND document_id IN ({','.join('?' * len(ids))})"
            params.extend(ids)

        categories = [getattr(c, "value", c) for c in (categories or [])]
        if categories:
            query += f" AND category IN ({','.join('?' * len(categories))})"
            params.extend(categories)

        query += " ORDER BY uploaded_at ASC, document_id ASC"
        conn = self._get_connection()
        rows = conn.execute(query, params).fetchall()
        return [self._document_from_row(row) for row in rows]

    # ============================================================
    # Credentials
    # ============================================================

    def create_token_record(self, record: TokenRecord) -> TokenRecord:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO access_tokens(token_id, subject_id, kind, access_category, document_ids, "
                "categories, expires_at, is_active, access_count, require_name, require_credential, "
                "require_location, created_at) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (record.token_id, record.subject_id, record.kind.value, record.access_category.value,
                 json.dumps(record.document_ids), json.dumps(record.categories), record.expires_at,
                 int(record.is_active), record.access_count, int(record.require_name),
                 int(record.require_credential), int(record.require_location),
                 record.created_at or now_epoch())
            )
        return record

    @staticmethod
    def _token_from_row(row: sqlite3.Row) -> TokenRecord:
        return TokenRecord(
            token_id=row["token_id"],
            subject_id=row["subject_id"],
            kind=CredentialKind(row["kind"]),
            access_category=AccessCategory(row["access_category"]),
            document_ids=json.loads(row["document_ids"]),
            categories=json.loads(row["categories"]),
            expires_at=row["expires_at"],
            is_active=bool(row["is_active"]),
            access_count=row["access_count"],
            require_name=bool(row["require_name"]),
            require_credential=bool(row["require_credential"]),
            require_location=bool(row["require_location"]),
            created_at=row["created_at"],
        )

    def get_token_record(self, token_id: str) -> Optional[TokenRecord]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM access_tokens WHERE token_id=?", (token_id,)).fetchone()
        return self._token_from_row(row) if row else None

    def list_token_records(self, subject_id: str) -> List[TokenRecord]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM access_tokens WHERE subject_id=? ORDER BY created_at DESC",
            (subject_id,)
        ).fetchall()
        return [self._token_from_row(row) for row in rows]

    def mark_revoked(self, token_id: str) -> bool:
        """
        Mark a credential inactive. Returns True if this call revoked it.
        Uses atomic UPDATE with WHERE clause for thread safety.
        """
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE access_tokens SET is_active=0 WHERE token_id=? AND is_active=1",
                (token_id,)
            )
            return cur.rowcount == 1

    def is_revoked(self, token_id: str) -> bool:
        conn = self._get_connection()
        row = conn.execute("SELECT is_active FROM access_tokens WHERE token_id=?", (token_id,)).fetchone()
        return row is None or not row["is_active"]

    def increment_access_count(self, token_id: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE access_tokens SET access_count = access_count + 1 WHERE token_id=?",
                (token_id,)
            )

    # ============================================================
    # Grant Log (append-only, hash-chained)
    # ============================================================

    def create_grant_record(
        self,
        subject_id: str,
        credential_id: str,
        on_chain_grant_id: str,
        responder: ResponderInfo,
        data_accessed: List[str],
        categories_accessed: List[str],
        grant_expires_at: int
    ) -> AccessGrantRecord:
        record_id = generate_id(16)
        created_at = now_epoch()
        payload = grant_payload(record_id, subject_id, credential_id, on_chain_grant_id,
                                responder, data_accessed, categories_accessed,
                                grant_expires_at, created_at)
        payload_hash = sha256_hex(canonicalize(payload))

        # The chain head must not move between reading it and appending.
        with self._write_lock, self._transaction() as conn:
            row = conn.execute("SELECT entry_hash FROM access_grants ORDER BY seq DESC LIMIT 1").fetchone()
            prev = row["entry_hash"] if row else None
            entry_hash = chain_entry_hash(prev, payload_hash)
            cur = conn.execute(
                "INSERT INTO access_grants(record_id, subject_id, credential_id, on_chain_grant_id, "
                "responder_name, responder_credential, responder_location, responder_address, "
                "data_accessed, categories_accessed, grant_expires_at, created_at, payload_hash, prev_entry_hash, entry_hash) "
                "VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (record_id, subject_id, credential_id, on_chain_grant_id, responder.name,
                 responder.credential, responder.location, responder.address,
                 json.dumps(list(data_accessed)), json.dumps(list(categories_accessed)),
                 grant_expires_at, created_at,
                 payload_hash, prev, entry_hash)
            )
            seq = cur.lastrowid

        return AccessGrantRecord(
            seq=seq,
            record_id=record_id,
            subject_id=subject_id,
            credential_id=credential_id,
            on_chain_grant_id=on_chain_grant_id,
            responder_name=responder.name,
            responder_credential=responder.credential,
            responder_location=responder.location,
            responder_address=responder.address,
            data_accessed=list(data_accessed),
            categories_accessed=list(categories_accessed),
            grant_expires_at=grant_expires_at,
            created_at=created_at,
            payload_hash=payload_hash,
            prev_entry_hash=prev,
            entry_hash=entry_hash,
        )

    @staticmethod
    def _grant_from_row(row: sqlite3.Row) -> AccessGrantRecord:
        return AccessGrantRecord(
            seq=row["seq"],
            record_id=row["record_id"],
            subject_id=row["subject_id"],
            credential_id=row["credential_id"],
            on_chain_grant_id=row["on_chain_grant_id"],
            responder_name=row["responder_name"],
            responder_credential=row["responder_credential"],
            responder_location=row["responder_location"],
            responder_address=row["responder_address"],
            data_accessed=json.loads(row["data_accessed"]),
            categories_accessed=json.loads(row["categories_accessed"]),
            grant_expires_at=row["grant_expires_at"],
            created_at=row["created_at"],
            payload_hash=row["payload_hash"],
            prev_entry_hash=row["prev_entry_hash"],
            entry_hash=row["entry_hash"],
        )

    def list_grant_records(self, subject_id: str) -> List[AccessGrantRecord]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM access_grants WHERE subject_id=? ORDER BY seq ASC",
            (subject_id,)
        ).fetchall()
        return [self._grant_from_row(row) for row in rows]

    def export_grant_log(self) -> List[Dict[str, Any]]:
        """Export the complete grant log in chain order."""
        conn = self._get_connection()
        rows = conn.execute("SELECT * FROM access_grants ORDER BY seq ASC").fetchall()
        return [self._grant_from_row(row).to_dict() for row in rows]

    # ============================================================
    # Jobs
    # ============================================================

    def save_job(self, job: Dict[str, Any]) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO jobs(job_id, job_type, status, payload, result, error, "
                "attempts, created_at, completed_at) VALUES(?,?,?,?,?,?,?,?,?)",
                (job["job_id"], job["job_type"], job["status"], json.dumps(job["payload"]),
                 json.dumps(job.get("result")) if job.get("result") is not None else None,
                 job.get("error"), job.get("attempts", 0), job["created_at"], job.get("completed_at"))
            )

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM jobs WHERE job_id=?", (job_id,)).fetchone()
        if not row:
            return None
        job = dict(row)
        job["payload"] = json.loads(job["payload"])
        job["result"] = json.loads(job["result"]) if job["result"] else None
        return job

    # ============================================================
    # Metrics, Test Support
    # ============================================================

    def get_db_stats(self) -> Dict[str, int]:
        """Get database statistics for monitoring."""
        conn = self._get_connection()
        stats = {}
        for table in ["subjects", "documents", "access_tokens", "access_grants", "jobs"]:
            cur = conn.execute(f"SELECT COUNT(*) as cnt FROM {table}")
            stats[f"{table}_count"] = cur.fetchone()["cnt"]
        return stats

    def close_connection(self) -> None:
        """Close the thread-local connection (for cleanup)."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None
