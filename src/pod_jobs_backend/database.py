"""
SQLite persistence for job records and edit-session worker state.

This module provides the repository-style stores the orchestration core works
against. Jobs are written once at creation and then only through
compare-and-swap status updates; sessions are versioned so concurrent status
ingestion for the same session cannot silently overwrite each other.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, List, Optional, Protocol, Tuple

from .errors import DuplicateRequestError
from .models import EditSession, Job, JobStat, JobStatus, JobType, WorkerStatus
from .utils import ensure_directory, utcnow

JOBS_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    job_type TEXT NOT NULL,
    status TEXT NOT NULL,
    edit_session_id TEXT,
    file_id TEXT,
    input_file_url TEXT,
    output_file_id TEXT,
    output_file_url TEXT,
    options TEXT,
    result TEXT,
    error_message TEXT,
    request_id TEXT,
    created_at TEXT NOT NULL,
    completed_at TEXT
)
"""

SESSIONS_SCHEMA = """
CREATE TABLE IF NOT EXISTS edit_sessions (
    id TEXT PRIMARY KEY,
    order_seqno INTEGER,
    callback_url TEXT,
    worker_status TEXT,
    worker_error TEXT,
    version INTEGER NOT NULL DEFAULT 0,
    pages TEXT,
    updated_at TEXT
)
"""


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


class SQLiteStore:
    """
    Shared connection handling for the SQLite-backed stores.

    Each operation opens its own connection so a store instance can be used
    from request threads and background threads alike; SQLite serializes
    writers and WAL mode keeps readers from blocking.
    """

    schema: Tuple[str, ...] = ()

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        ensure_directory(self.db_path.parent)
        self._init_db()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._get_connection() as conn:
            for statement in self.schema:
                conn.execute(statement)


class JobStore(Protocol):
    def insert_job(self, job: Job) -> None: ...

    def get_job(self, job_id: str) -> Optional[Job]: ...

    def compare_and_update(self, job: Job, expected_status: JobStatus) -> bool: ...

    def list_jobs(self, status: Optional[JobStatus] = None, job_type: Optional[JobType] = None) -> List[Job]: ...

    def find_by_request(self, edit_session_id: str, file_id: str, request_id: str) -> Optional[Job]: ...

    def list_session_jobs(self, edit_session_id: str) -> List[Job]: ...

    def job_stats(self) -> List[JobStat]: ...

    def list_stale_pending(self, older_than: datetime) -> List[Job]: ...


class SessionStore(Protocol):
    def get_session(self, session_id: str) -> Optional[EditSession]: ...

    def save_session(self, session: EditSession) -> bool: ...


class JobDatabase(SQLiteStore):
    """SQLite table of worker jobs."""

    schema = (
        JOBS_SCHEMA,
        "CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at DESC)",
        "CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)",
        "CREATE INDEX IF NOT EXISTS idx_jobs_edit_session ON jobs(edit_session_id)",
        # Idempotency key for client-retried synthesis requests.
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_idempotency ON jobs(edit_session_id, file_id, request_id)
        WHERE edit_session_id IS NOT NULL AND file_id IS NOT NULL AND request_id IS NOT NULL
        """,
    )

    def insert_job(self, job: Job) -> None:
        """
        Persist a newly created job.

        Args:
            job: The job record, normally in PENDING status

        Raises:
            DuplicateRequestError: A job with the same (session, file, request id)
                already exists
            sqlite3.IntegrityError: If a job with the same id already exists
        """
        try:
            self._insert(job)
        except sqlite3.IntegrityError as exc:
            if job.request_id and "jobs.request_id" in str(exc):
                raise DuplicateRequestError(
                    "DUPLICATE_REQUEST",
                    f"A job for requestId {job.request_id} already exists.",
                    {"requestId": job.request_id},
                ) from exc
            raise

    def _insert(self, job: Job) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO jobs (
                    id, job_type, status, edit_session_id, file_id,
                    input_file_url, output_file_id, output_file_url,
                    options, result, error_message, request_id, created_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.job_type.value,
                    job.status.value,
                    job.edit_session_id,
                    job.file_id,
                    job.input_file_url,
                    job.output_file_id,
                    job.output_file_url,
                    json.dumps(job.options or {}),
                    json.dumps(job.result) if job.result is not None else None,
                    job.error_message,
                    job.request_id,
                    _serialize_datetime(job.created_at),
                    _serialize_datetime(job.completed_at),
                ),
            )

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return self._row_to_job(row) if row else None

    def compare_and_update(self, job: Job, expected_status: JobStatus) -> bool:
        """
        Write the mutable fields of a job if its stored status is unchanged.

        Args:
            job: Job carrying the new field values
            expected_status: Status the caller read before applying its patch

        Returns:
            True if the row was updated, False if another writer got there first
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs SET
                    status = ?, output_file_id = ?, output_file_url = ?,
                    result = ?, error_message = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    job.status.value,
                    job.output_file_id,
                    job.output_file_url,
                    json.dumps(job.result) if job.result is not None else None,
                    job.error_message,
                    _serialize_datetime(job.completed_at),
                    job.id,
                    expected_status.value,
                ),
            )
            return cursor.rowcount > 0

    def list_jobs(self, status: Optional[JobStatus] = None, job_type: Optional[JobType] = None) -> List[Job]:
        """List jobs newest first, optionally filtered by status and type."""
        clauses: List[str] = []
        values: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            values.append(status.value)
        if job_type is not None:
            clauses.append("job_type = ?")
            values.append(job_type.value)

        query = "SELECT * FROM jobs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"

        with self._get_connection() as conn:
            rows = conn.execute(query, values).fetchall()
            return [self._row_to_job(row) for row in rows]

    def find_by_request(self, edit_session_id: str, file_id: str, request_id: str) -> Optional[Job]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE edit_session_id = ? AND file_id = ? AND request_id = ?",
                (edit_session_id, file_id, request_id),
            ).fetchone()
            return self._row_to_job(row) if row else None

    def list_session_jobs(self, edit_session_id: str) -> List[Job]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE edit_session_id = ? ORDER BY created_at ASC",
                (edit_session_id,),
            ).fetchall()
            return [self._row_to_job(row) for row in rows]

    def job_stats(self) -> List[JobStat]:
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT status, job_type, COUNT(*) AS count
                FROM jobs
                GROUP BY status, job_type
                ORDER BY job_type, status
                """
            ).fetchall()
            return [JobStat(status=row["status"], job_type=row["job_type"], count=row["count"]) for row in rows]

    def list_stale_pending(self, older_than: datetime) -> List[Job]:
        """Return PENDING jobs created before ``older_than``, oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE status = ? AND created_at < ? ORDER BY created_at ASC",
                (JobStatus.PENDING.value, _serialize_datetime(older_than)),
            ).fetchall()
            return [self._row_to_job(row) for row in rows]

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        return Job(
            id=row["id"],
            job_type=JobType(row["job_type"]),
            status=JobStatus(row["status"]),
            edit_session_id=row["edit_session_id"],
            file_id=row["file_id"],
            input_file_url=row["input_file_url"],
            output_file_id=row["output_file_id"],
            output_file_url=row["output_file_url"],
            options=json.loads(row["options"] or "{}"),
            result=json.loads(row["result"]) if row["result"] is not None else None,
            error_message=row["error_message"],
            request_id=row["request_id"],
            created_at=_deserialize_datetime(row["created_at"]),
            completed_at=_deserialize_datetime(row["completed_at"]),
        )


class SessionDatabase(SQLiteStore):
    """
    Worker-facing view of edit sessions.

    The editing application owns the session aggregate; this store only keeps
    the fields the job core reads (callback URL, order number) and the derived
    ``worker_status`` / ``worker_error`` it writes.
    """

    schema = (SESSIONS_SCHEMA,)

    def create_session(self, session: EditSession) -> EditSession:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO edit_sessions (
                    id, order_seqno, callback_url, worker_status, worker_error, version, pages, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.id,
                    session.order_seqno,
                    session.callback_url,
                    session.worker_status.value if session.worker_status else None,
                    session.worker_error,
                    session.version,
                    json.dumps(session.pages),
                    _serialize_datetime(session.updated_at or utcnow()),
                ),
            )
        return session

    def get_session(self, session_id: str) -> Optional[EditSession]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM edit_sessions WHERE id = ?", (session_id,)).fetchone()
            if not row:
                return None
            return EditSession(
                id=row["id"],
                order_seqno=row["order_seqno"],
                callback_url=row["callback_url"],
                worker_status=WorkerStatus(row["worker_status"]) if row["worker_status"] else None,
                worker_error=row["worker_error"],
                version=row["version"],
                pages=json.loads(row["pages"] or "[]"),
                updated_at=_deserialize_datetime(row["updated_at"]),
            )

    def save_session(self, session: EditSession) -> bool:
        """
        Persist worker fields if nobody else saved the session since it was read.

        The row is matched on ``session.version``; on success the version is
        bumped both in the database and on the passed object.

        Returns:
            True if saved, False on a version conflict (caller should reload)
        """
        updated_at = utcnow()
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE edit_sessions
                SET worker_status = ?, worker_error = ?, version = version + 1, updated_at = ?
                WHERE id = ? AND version = ?
                """,
                (
                    session.worker_status.value if session.worker_status else None,
                    session.worker_error,
                    _serialize_datetime(updated_at),
                    session.id,
                    session.version,
                ),
            )
            saved = cursor.rowcount > 0

        if saved:
            session.version += 1
            session.updated_at = updated_at
        return saved
