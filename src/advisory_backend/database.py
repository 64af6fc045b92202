"""
SQLite persistence for export jobs, the document catalog and audit logs.

This is the Job Store the export pipeline claims from and reports into.
Status transitions are written with guarded UPDATE statements so that a job
only ever moves forward: pending -> processing -> ready | failed.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from .models import AuditEvent, Document, ExportJob, ExportStatus
from .utils import ensure_directory, utcnow


DEFAULT_DB_PATH = Path("data/advisory.db")


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


class JobDatabase:
    """
    SQLite database backing export jobs and their documents.

    Every public method opens its own connection, so one instance can be
    shared between the HTTP handlers and worker threads. WAL mode lets
    readers proceed while a claim or status write is in flight.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        ensure_directory(self.db_path.parent)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    id TEXT PRIMARY KEY,
                    client_id TEXT NOT NULL,
                    storage_path TEXT NOT NULL,
                    name TEXT NOT NULL,
                    size_bytes INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    deleted_at TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS document_exports (
                    id TEXT PRIMARY KEY,
                    client_id TEXT NOT NULL,
                    created_by TEXT,
                    status TEXT NOT NULL,
                    document_ids TEXT NOT NULL,
                    storage_key TEXT,
                    error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    client_id TEXT,
                    actor_user_id TEXT,
                    action TEXT NOT NULL,
                    entity_type TEXT,
                    entity_id TEXT,
                    metadata TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_documents_client
                ON documents(client_id)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_exports_status_created
                ON document_exports(status, created_at)
            """)

    # -- export jobs -------------------------------------------------------

    def create_export_job(
        self,
        client_id: str,
        document_ids: List[str],
        created_by: Optional[str] = None,
    ) -> ExportJob:
        """
        Insert a new export job in the ``pending`` state.

        Args:
            client_id: Owning tenant
            document_ids: Ordered document ids to include
            created_by: Requesting user, used for audit attribution

        Returns:
            The stored job
        """
        now = utcnow()
        job = ExportJob(
            id=str(uuid4()),
            client_id=client_id,
            created_by=created_by,
            status=ExportStatus.PENDING,
            document_ids=list(document_ids),
            created_at=now,
            updated_at=now,
        )
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO document_exports (
                    id, client_id, created_by, status, document_ids,
                    storage_key, error, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, NULL, NULL, ?, ?)
            """, (
                job.id,
                job.client_id,
                job.created_by,
                job.status.value,
                json.dumps(job.document_ids),
                _serialize_datetime(job.created_at),
                _serialize_datetime(job.updated_at),
            ))
        return job

    def get_export_job(self, job_id: str) -> Optional[ExportJob]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM document_exports WHERE id = ?", (job_id,)
            ).fetchone()
            return self._row_to_job(row) if row else None

    def fetch_pending_jobs(self, limit: int = 1) -> List[ExportJob]:
        """Return the oldest pending jobs, oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM document_exports
                WHERE status = ?
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                (ExportStatus.PENDING.value, limit),
            ).fetchall()
            return [self._row_to_job(row) for row in rows]

    def claim_job(self, job_id: str) -> bool:
        """
        Move a job from ``pending`` to ``processing``.

        Returns:
            True if this call performed the transition, False if the job was
            no longer pending (another worker claimed it first).
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE document_exports
                SET status = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    ExportStatus.PROCESSING.value,
                    _serialize_datetime(utcnow()),
                    job_id,
                    ExportStatus.PENDING.value,
                ),
            )
            return cursor.rowcount == 1

    def mark_ready(self, job_id: str, storage_key: str) -> bool:
        """Finalize a processing job as ready. Returns False if no row changed."""
        return self._finalize(job_id, ExportStatus.READY, storage_key=storage_key, error=None)

    def mark_failed(self, job_id: str, error: str) -> bool:
        """Finalize a processing job as failed. Returns False if no row changed."""
        return self._finalize(job_id, ExportStatus.FAILED, storage_key=None, error=error)

    def _finalize(
        self,
        job_id: str,
        status: ExportStatus,
        storage_key: Optional[str],
        error: Optional[str],
    ) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE document_exports
                SET status = ?, storage_key = ?, error = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    status.value,
                    storage_key,
                    error,
                    _serialize_datetime(utcnow()),
                    job_id,
                    ExportStatus.PROCESSING.value,
                ),
            )
            return cursor.rowcount == 1

    def fetch_stale_processing_jobs(self, older_than: datetime) -> List[ExportJob]:
        """Jobs still ``processing`` whose last update predates ``older_than``."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM document_exports
                WHERE status = ? AND updated_at < ?
                ORDER BY updated_at ASC
                """,
                (ExportStatus.PROCESSING.value, _serialize_datetime(older_than)),
            ).fetchall()
            return [self._row_to_job(row) for row in rows]

    # -- documents ---------------------------------------------------------

    def insert_document(
        self,
        client_id: str,
        storage_path: str,
        name: str,
        size_bytes: int = 0,
        document_id: Optional[str] = None,
    ) -> Document:
        document = Document(
            id=document_id or str(uuid4()),
            client_id=client_id,
            storage_path=storage_path,
            name=name,
            size_bytes=size_bytes,
        )
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO documents (id, client_id, storage_path, name, size_bytes, created_at, deleted_at)
                VALUES (?, ?, ?, ?, ?, ?, NULL)
                """,
                (
                    document.id,
                    document.client_id,
                    document.storage_path,
                    document.name,
                    document.size_bytes,
                    _serialize_datetime(utcnow()),
                ),
            )
        return document

    def soft_delete_document(self, document_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE documents SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (_serialize_datetime(utcnow()), document_id),
            )
            return cursor.rowcount > 0

    def fetch_documents(self, client_id: str, document_ids: Iterable[str]) -> List[Document]:
        """
        Resolve document ids within one tenant, skipping soft-deleted rows.

        Ids that are unknown, deleted or owned by another client are simply
        absent from the result.
        """
        ids = list(document_ids)
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with self._get_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM documents
                WHERE client_id = ? AND id IN ({placeholders}) AND deleted_at IS NULL
                """,
                [client_id, *ids],
            ).fetchall()
            return [self._row_to_document(row) for row in rows]

    # -- audit -------------------------------------------------------------

    def insert_audit_log(self, event: AuditEvent) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO audit_logs (
                    client_id, actor_user_id, action, entity_type, entity_id, metadata, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.client_id,
                    event.actor_user_id,
                    event.action.value,
                    event.entity_type,
                    event.entity_id,
                    json.dumps(event.metadata),
                    _serialize_datetime(utcnow()),
                ),
            )

    def list_audit_logs(self, entity_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """List audit rows (oldest first), optionally for one entity."""
        query = "SELECT * FROM audit_logs"
        params: List[Any] = []
        if entity_id is not None:
            query += " WHERE entity_id = ?"
            params.append(entity_id)
        query += " ORDER BY id ASC"
        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [
                {**dict(row), "metadata": json.loads(row["metadata"] or "{}")}
                for row in rows
            ]

    # -- row mapping -------------------------------------------------------

    def _row_to_job(self, row: sqlite3.Row) -> ExportJob:
        return ExportJob(
            id=row["id"],
            client_id=row["client_id"],
            created_by=row["created_by"],
            status=ExportStatus(row["status"]),
            document_ids=json.loads(row["document_ids"] or "[]"),
            storage_key=row["storage_key"],
            error=row["error"],
            created_at=_deserialize_datetime(row["created_at"]),
            updated_at=_deserialize_datetime(row["updated_at"]),
        )

    def _row_to_document(self, row: sqlite3.Row) -> Document:
        return Document(
            id=row["id"],
            client_id=row["client_id"],
            storage_path=row["storage_path"],
            name=row["name"],
            size_bytes=row["size_bytes"],
            deleted_at=_deserialize_datetime(row["deleted_at"]),
        )
