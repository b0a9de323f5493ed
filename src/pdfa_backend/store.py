"""
Job and file records and the storage interface that holds them.

The store is the single source of truth for job state. Every operation is
atomic with respect to concurrent readers, and callers only ever receive
copies of records, so a snapshot taken by a poller can never change under it.

Two implementations exist: InMemoryJobStore (below) and SqliteJobStore in
``database.py``. They are interchangeable behind JobStore.
"""

from __future__ import annotations

import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Collection, Dict, List, Optional, Sequence

from .models import ConversionOptions, FileStatus, JobStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class NewFile:
    """Input needed to register one uploaded file."""

    original_name: str
    original_size: int
    input_path: str


@dataclass
class JobRecord:
    """
    A conversion job.

    Attributes:
        id: Store-assigned identifier, increasing with creation order
        status: Current job status
        options: Conversion switches shared by every file of the job
        created_at: Creation timestamp (UTC), never changed
        completed_at: Set once, when the job reaches a terminal status
        error: Job-level message (cancellation or orchestrator fault)
    """

    id: int
    status: JobStatus
    options: ConversionOptions
    created_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class FileRecord:
    """
    One document inside a job and its conversion state.

    ``converted_*`` and ``output_path`` are filled only on success and
    ``error`` only on failure.
    """

    id: int
    job_id: int
    position: int
    original_name: str
    original_size: int
    input_path: str
    status: FileStatus = FileStatus.PENDING
    progress: int = 0
    converted_name: Optional[str] = None
    converted_size: Optional[int] = None
    output_path: Optional[str] = None
    error: Optional[str] = None
    is_pdfa: bool = False
    has_ocr: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


JOB_MUTABLE_FIELDS = frozenset({"status", "completed_at", "error"})
FILE_MUTABLE_FIELDS = frozenset(
    {
        "status",
        "progress",
        "converted_name",
        "converted_size",
        "output_path",
        "error",
        "is_pdfa",
        "has_ocr",
    }
)


def check_fields(changes: Dict[str, Any], allowed: Collection[str]) -> None:
    unknown = set(changes) - set(allowed)
    if unknown:
        raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")


class JobStore(ABC):
    """Storage capability for jobs and their files: create, get and update by id."""

    @abstractmethod
    def create_job(self, options: ConversionOptions, files: Sequence[NewFile]) -> JobRecord:
        """Atomically create a pending job and one pending file per entry."""

    @abstractmethod
    def get_job(self, job_id: int) -> Optional[JobRecord]:
        ...

    @abstractmethod
    def list_jobs(self) -> List[JobRecord]:
        """All jobs, newest first."""

    @abstractmethod
    def get_file(self, file_id: int) -> Optional[FileRecord]:
        ...

    @abstractmethod
    def list_files(self, job_id: int) -> List[FileRecord]:
        """Files of a job in creation order."""

    @abstractmethod
    def update_job(
        self,
        job_id: int,
        expected: Optional[Collection[JobStatus]] = None,
        **changes: Any,
    ) -> bool:
        """
        Apply ``changes`` to a job.

        When ``expected`` is given the update only happens if the job's current
        status is one of them. Returns whether the update was applied.
        """

    @abstractmethod
    def update_file(
        self,
        file_id: int,
        expected: Optional[Collection[FileStatus]] = None,
        **changes: Any,
    ) -> bool:
        """Same contract as update_job, for a single file."""

    @abstractmethod
    def report_progress(self, file_id: int, percentage: int) -> bool:
        """
        Record conversion progress for a processing file.

        The value is clamped to 0..99 (100 is reserved for completion) and only
        stored when it moves progress forward.
        """

    @abstractmethod
    def delete_job(self, job_id: int) -> bool:
        """Remove a job and its files. Returns False when the job is unknown."""


def clamp_progress(percentage: int) -> int:
    return max(0, min(99, int(percentage)))


class InMemoryJobStore(JobStore):
    """
    Process-local store backed by dictionaries.

    Thread Safety:
        A single re-entrant lock guards every read and write; records handed
        out are copies.
    """

    def __init__(self) -> None:
        self._jobs: Dict[int, JobRecord] = {}
        self._files: Dict[int, FileRecord] = {}
        self._job_files: Dict[int, List[int]] = {}
        self._job_ids = itertools.count(1)
        self._file_ids = itertools.count(1)
        self._lock = RLock()

    def create_job(self, options: ConversionOptions, files: Sequence[NewFile]) -> JobRecord:
        if not files:
            raise ValueError("A job needs at least one file")
        with self._lock:
            job = JobRecord(
                id=next(self._job_ids),
                status=JobStatus.PENDING,
                options=options,
                created_at=utcnow(),
            )
            file_ids: List[int] = []
            for position, new_file in enumerate(files):
                record = FileRecord(
                    id=next(self._file_ids),
                    job_id=job.id,
                    position=position,
                    original_name=new_file.original_name,
                    original_size=new_file.original_size,
                    input_path=new_file.input_path,
                )
                self._files[record.id] = record
                file_ids.append(record.id)
            self._jobs[job.id] = job
            self._job_files[job.id] = file_ids
            return replace(job)

    def get_job(self, job_id: int) -> Optional[JobRecord]:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def list_jobs(self) -> List[JobRecord]:
        with self._lock:
            return [replace(job) for job in sorted(self._jobs.values(), key=lambda j: j.id, reverse=True)]

    def get_file(self, file_id: int) -> Optional[FileRecord]:
        with self._lock:
            record = self._files.get(file_id)
            return replace(record) if record else None

    def list_files(self, job_id: int) -> List[FileRecord]:
        with self._lock:
            return [replace(self._files[file_id]) for file_id in self._job_files.get(job_id, [])]

    def update_job(
        self,
        job_id: int,
        expected: Optional[Collection[JobStatus]] = None,
        **changes: Any,
    ) -> bool:
        check_fields(changes, JOB_MUTABLE_FIELDS)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or (expected is not None and job.status not in expected):
                return False
            for key, value in changes.items():
                setattr(job, key, value)
            return True

    def update_file(
        self,
        file_id: int,
        expected: Optional[Collection[FileStatus]] = None,
        **changes: Any,
    ) -> bool:
        check_fields(changes, FILE_MUTABLE_FIELDS)
        with self._lock:
            record = self._files.get(file_id)
            if record is None or (expected is not None and record.status not in expected):
                return False
            for key, value in changes.items():
                setattr(record, key, value)
            return True

    def report_progress(self, file_id: int, percentage: int) -> bool:
        value = clamp_progress(percentage)
        with self._lock:
            record = self._files.get(file_id)
            if record is None or record.status != FileStatus.PROCESSING or value <= record.progress:
                return False
            record.progress = value
            return True

    def delete_job(self, job_id: int) -> bool:
        with self._lock:
            if self._jobs.pop(job_id, None) is None:
                return False
            for file_id in self._job_files.pop(job_id, []):
                self._files.pop(file_id, None)
            return True

