"""
SQLite database for persistent job storage.

This module provides a SQLite-based JobStore so jobs and files survive server
restarts. Conditional updates are expressed as ``UPDATE ... WHERE status IN``
so compare-and-set semantics hold across connections.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Collection, Dict, Iterator, List, Optional, Sequence

from .models import ConversionOptions, FileStatus, JobStatus
from .store import (
    FILE_MUTABLE_FIELDS,
    JOB_MUTABLE_FIELDS,
    FileRecord,
    JobRecord,
    JobStore,
    NewFile,
    check_fields,
    clamp_progress,
    utcnow,
)


# Default database path
DEFAULT_DB_PATH = Path("data/jobs.db")


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _to_column(value: Any) -> Any:
    if isinstance(value, JobStatus):
        return value.value
    if isinstance(value, datetime):
        return _serialize_datetime(value)
    if isinstance(value, bool):
        return int(value)
    return value


class SqliteJobStore(JobStore):
    """
    SQLite database for job persistence.

    Thread-safe: every call opens its own connection and SQLite serializes
    writers (WAL mode lets readers proceed during a write).
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        _ensure_db_dir(self.db_path)
        self._init_db()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
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
                CREATE TABLE IF NOT EXISTS jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    status TEXT NOT NULL,
                    options TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    completed_at TEXT,
                    error TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS files (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id INTEGER NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    position INTEGER NOT NULL,
                    original_name TEXT NOT NULL,
                    original_size INTEGER NOT NULL,
                    input_path TEXT NOT NULL,
                    status TEXT NOT NULL,
                    progress INTEGER NOT NULL DEFAULT 0,
                    converted_name TEXT,
                    converted_size INTEGER,
                    output_path TEXT,
                    error TEXT,
                    is_pdfa INTEGER NOT NULL DEFAULT 0,
                    has_ocr INTEGER NOT NULL DEFAULT 0
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_files_job_id
                ON files(job_id, position)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_status
                ON jobs(status)
            """)

    def create_job(self, options: ConversionOptions, files: Sequence[NewFile]) -> JobRecord:
        if not files:
            raise ValueError("A job needs at least one file")
        created_at = utcnow()
        with self._get_connection() as conn:
            cursor = conn.execute(
                "INSERT INTO jobs (status, options, created_at) VALUES (?, ?, ?)",
                (JobStatus.PENDING.value, json.dumps(options.to_payload()), _serialize_datetime(created_at)),
            )
            job_id = cursor.lastrowid
            conn.executemany(
                """
                INSERT INTO files (job_id, position, original_name, original_size, input_path, status)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (job_id, position, f.original_name, f.original_size, f.input_path, FileStatus.PENDING.value)
                    for position, f in enumerate(files)
                ],
            )
        return JobRecord(id=job_id, status=JobStatus.PENDING, options=options, created_at=created_at)

    def get_job(self, job_id: int) -> Optional[JobRecord]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return self._row_to_job(row) if row else None

    def list_jobs(self) -> List[JobRecord]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM jobs ORDER BY id DESC").fetchall()
            return [self._row_to_job(row) for row in rows]

    def get_file(self, file_id: int) -> Optional[FileRecord]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM files WHERE id = ?", (file_id,)).fetchone()
            return self._row_to_file(row) if row else None

    def list_files(self, job_id: int) -> List[FileRecord]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM files WHERE job_id = ? ORDER BY position", (job_id,)
            ).fetchall()
            return [self._row_to_file(row) for row in rows]

    def update_job(
        self,
        job_id: int,
        expected: Optional[Collection[JobStatus]] = None,
        **changes: Any,
    ) -> bool:
        check_fields(changes, JOB_MUTABLE_FIELDS)
        return self._conditional_update("jobs", job_id, expected, changes)

    def update_file(
        self,
        file_id: int,
        expected: Optional[Collection[FileStatus]] = None,
        **changes: Any,
    ) -> bool:
        check_fields(changes, FILE_MUTABLE_FIELDS)
        return self._conditional_update("files", file_id, expected, changes)

    def report_progress(self, file_id: int, percentage: int) -> bool:
        value = clamp_progress(percentage)
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE files SET progress = ? WHERE id = ? AND status = ? AND progress < ?",
                (value, file_id, FileStatus.PROCESSING.value, value),
            )
            return cursor.rowcount > 0

    def delete_job(self, job_id: int) -> bool:
        """
        Delete a job record and its files.

        Returns:
            True if deleted, False if not found
        """
        with self._get_connection() as conn:
            conn.execute("DELETE FROM files WHERE job_id = ?", (job_id,))
            cursor = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            return cursor.rowcount > 0

    def _conditional_update(
        self,
        table: str,
        record_id: int,
        expected: Optional[Collection[JobStatus]],
        changes: Dict[str, Any],
    ) -> bool:
        where = ["id = ?"]
        where_values: List[Any] = [record_id]
        if expected is not None:
            statuses = [status.value for status in expected]
            if not statuses:
                return False
            where.append(f"status IN ({', '.join('?' for _ in statuses)})")
            where_values.extend(statuses)

        with self._get_connection() as conn:
            if not changes:
                row = conn.execute(
                    f"SELECT 1 FROM {table} WHERE {' AND '.join(where)}", where_values
                ).fetchone()
                return row is not None
            assignments = ", ".join(f"{column} = ?" for column in changes)
            values = [_to_column(value) for value in changes.values()]
            cursor = conn.execute(
                f"UPDATE {table} SET {assignments} WHERE {' AND '.join(where)}",
                values + where_values,
            )
            return cursor.rowcount > 0

    def _row_to_job(self, row: sqlite3.Row) -> JobRecord:
        """Convert a database row to a job record."""
        return JobRecord(
            id=row["id"],
            status=JobStatus(row["status"]),
            options=ConversionOptions.model_validate(json.loads(row["options"])),
            created_at=_deserialize_datetime(row["created_at"]),
            completed_at=_deserialize_datetime(row["completed_at"]),
            error=row["error"],
        )

    def _row_to_file(self, row: sqlite3.Row) -> FileRecord:
        """Convert a database row to a file record."""
        return FileRecord(
            id=row["id"],
            job_id=row["job_id"],
            position=row["position"],
            original_name=row["original_name"],
            original_size=row["original_size"],
            input_path=row["input_path"],
            status=FileStatus(row["status"]),
            progress=row["progress"],
            converted_name=row["converted_name"],
            converted_size=row["converted_size"],
            output_path=row["output_path"],
            error=row["error"],
            is_pdfa=bool(row["is_pdfa"]),
            has_ocr=bool(row["has_ocr"]),
        )
