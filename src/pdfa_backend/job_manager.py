"""
Job orchestration and lifecycle management for PDF/A conversion.

This module drives submitted jobs to completion in the background:
- Sequential per-file conversion through a pluggable Converter
- Progress persisted to the store as the converter reports it
- Partial-failure rollup once every file is terminal
- Cooperative cancellation between files
- Release of in-memory tracking after a retention window

The JobStore stays the authoritative state; JobManager only keeps task handles
and cancellation signals for jobs that are running or recently finished.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from threading import Event, Lock, Timer
from typing import Dict, Optional, Sequence

from .converter import Converter
from .errors import AlreadyTerminalError, ConversionError, NotFoundError
from .models import ACTIVE_STATUSES, FileStatus, JobStatus
from .store import FileRecord, JobRecord, JobStore, utcnow
from .utils import ensure_directory, remove_quietly

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "cancelled by user"
INTERNAL_ERROR_MESSAGE = "internal error during processing"
DEFAULT_RETENTION_SECONDS = 5 * 60


class StoreProgressSink:
    """Progress sink that writes every report straight to the file's record."""

    def __init__(self, store: JobStore, file_id: int) -> None:
        self._store = store
        self._file_id = file_id

    def report(self, percentage: int) -> None:
        self._store.report_progress(self._file_id, percentage)


@dataclass
class TrackedJob:
    """
    In-memory handles for a job that is queued, running or recently finished.

    Attributes:
        cancel_event: Set by cancel(); checked by the worker between files
        future: Executor handle of the job's background task
        release_timer: Pending timer that drops this entry after retention
    """

    cancel_event: Event = field(default_factory=Event)
    future: Optional[Future] = None
    release_timer: Optional[Timer] = None


class JobManager:
    """
    Central coordinator for the conversion job lifecycle.

    Thread Safety:
        Tracking structures are guarded by a lock. Job and file records are
        only written through the store, whose updates are atomic per record;
        status transitions that may race with cancellation are
        compare-and-set updates.

    Attributes:
        output_root: Directory converted files are written to
        retention_seconds: How long tracking is kept after a job finishes
    """

    def __init__(
        self,
        store: JobStore,
        converter: Converter,
        output_root: Path | None = None,
        max_workers: int = 1,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
    ) -> None:
        """
        Initialize the job manager.

        Args:
            store: Job/file storage
            converter: Conversion capability invoked once per file
            output_root: Directory for converted files (default: ./tmp/converted)
            max_workers: Number of jobs processed concurrently (default: 1)
            retention_seconds: Delay before tracking of a finished job is released

        Note:
            Files inside one job are always processed one at a time;
            max_workers only bounds how many jobs run side by side.
        """
        self.store = store
        self.converter = converter
        self.output_root = ensure_directory(output_root or Path("tmp/converted"))
        self.retention_seconds = retention_seconds
        self._tracked: Dict[int, TrackedJob] = {}
        self._lock = Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pdfa-job")
        self._closed = False

    def submit(self, job_id: int) -> bool:
        """
        Schedule a job for background processing.

        Returns immediately. Submitting a job that is already tracked or no
        longer pending is a no-op and returns False.

        Raises:
            NotFoundError: If the job does not exist
        """
        job = self.store.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")

        with self._lock:
            if self._closed:
                raise RuntimeError("JobManager has been shut down")
            if job_id in self._tracked or job.status != JobStatus.PENDING:
                logger.info("Job %s already submitted (status %s); ignoring", job_id, job.status.value)
                return False
            tracked = TrackedJob()
            self._tracked[job_id] = tracked
            tracked.future = self._executor.submit(self._run_job, job_id, tracked.cancel_event)

        logger.info("Job %s queued for processing", job_id)
        return True

    def cancel(self, job_id: int) -> JobRecord:
        """
        Cancel a job that has not finished.

        Every non-terminal file is failed with "cancelled by user", the job is
        failed, and the worker stops before the next file. A converter call
        already in flight is not interrupted; its result is discarded. When
        every file has already converted, the rollup is applied instead and
        the cancel is rejected.

        Raises:
            NotFoundError: If the job does not exist
            AlreadyTerminalError: If the job already completed or failed
        """
        job = self.store.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        if job.is_terminal:
            raise AlreadyTerminalError(f"Job {job_id} has already {job.status.value}")

        with self._lock:
            tracked = self._tracked.get(job_id)
        if tracked is not None:
            tracked.cancel_event.set()

        for record in self.store.list_files(job_id):
            self.store.update_file(
                record.id,
                expected=ACTIVE_STATUSES,
                status=FileStatus.FAILED,
                error=CANCELLED_MESSAGE,
            )

        files = self.store.list_files(job_id)
        if not any(record.status == FileStatus.FAILED for record in files):
            # Every file converted before the cancel landed; the job is done.
            self._apply_rollup(job_id, files)
            current = self.store.get_job(job_id)
            status = current.status.value if current else "finished"
            raise AlreadyTerminalError(f"Job {job_id} has already {status}")

        applied = self.store.update_job(
            job_id,
            expected=ACTIVE_STATUSES,
            status=JobStatus.FAILED,
            error=CANCELLED_MESSAGE,
            completed_at=utcnow(),
        )
        if not applied:
            current = self.store.get_job(job_id)
            status = current.status.value if current else "finished"
            raise AlreadyTerminalError(f"Job {job_id} has already {status}")

        logger.info("Job %s cancelled by user", job_id)
        return self.store.get_job(job_id)  # type: ignore[return-value]

    def wait(self, job_id: int, timeout: float | None = None) -> bool:
        """
        Block until the job's background task has finished.

        Returns:
            True if the task finished (or the job is not tracked), False on timeout
        """
        with self._lock:
            tracked = self._tracked.get(job_id)
            future = tracked.future if tracked else None
        if future is None:
            return True
        done, _ = wait_futures([future], timeout=timeout)
        return future in done

    def is_tracked(self, job_id: int) -> bool:
        with self._lock:
            return job_id in self._tracked

    def purge_expired(self, max_age_seconds: float) -> int:
        """
        Delete terminal jobs that finished more than ``max_age_seconds`` ago.

        Both the records and the files on disk (scratch input and converted
        output) are removed. Jobs still tracked in memory are skipped.

        Returns:
            Number of jobs removed
        """
        cutoff = utcnow() - timedelta(seconds=max_age_seconds)
        removed = 0
        for job in self.store.list_jobs():
            if not job.is_terminal or job.completed_at is None or job.completed_at > cutoff:
                continue
            if self.is_tracked(job.id):
                continue
            for record in self.store.list_files(job.id):
                remove_quietly(Path(record.input_path))
                if record.output_path:
                    remove_quietly(Path(record.output_path))
            if self.store.delete_job(job.id):
                removed += 1
        if removed:
            logger.info("Purged %d expired job(s)", removed)
        return removed

    def recover(self) -> int:
        """
        Resubmit jobs a previous process left pending or processing.

        Files that were mid-conversion go back to pending with their progress
        reset; files that already completed or failed keep their results.

        Returns:
            Number of jobs resubmitted
        """
        resumed = 0
        for job in reversed(self.store.list_jobs()):
            if job.is_terminal or self.is_tracked(job.id):
                continue
            for record in self.store.list_files(job.id):
                self.store.update_file(
                    record.id,
                    expected={FileStatus.PROCESSING},
                    status=FileStatus.PENDING,
                    progress=0,
                )
            self.store.update_job(job.id, expected={JobStatus.PROCESSING}, status=JobStatus.PENDING)
            if self.submit(job.id):
                resumed += 1
        if resumed:
            logger.info("Resubmitted %d interrupted job(s)", resumed)
        return resumed

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting jobs, cancel pending release timers and stop the executor."""
        with self._lock:
            self._closed = True
            timers = [t.release_timer for t in self._tracked.values() if t.release_timer]
        for timer in timers:
            timer.cancel()
        self._executor.shutdown(wait=wait)

    def _run_job(self, job_id: int, cancel_event: Event) -> None:
        """
        Process one job (runs in a worker thread).

        Any exception escaping the file loop is translated into a failed job
        so the failure is visible to pollers.
        """
        try:
            self._process_job(job_id, cancel_event)
        except Exception:
            logger.exception("Unexpected failure while processing job %s", job_id)
            self._fail_job(job_id, INTERNAL_ERROR_MESSAGE)
        finally:
            self._schedule_release(job_id)

    def _process_job(self, job_id: int, cancel_event: Event) -> None:
        if not self.store.update_job(job_id, expected={JobStatus.PENDING}, status=JobStatus.PROCESSING):
            logger.info("Job %s is no longer pending; nothing to do", job_id)
            return

        job = self.store.get_job(job_id)
        if job is None:
            raise LookupError(f"Job {job_id} disappeared while processing")
        logger.info("Job %s started", job_id)

        for record in self.store.list_files(job_id):
            if cancel_event.is_set():
                logger.info("Job %s cancelled; stopping before file %s", job_id, record.id)
                return
            if record.is_terminal:
                continue
            self._process_file(job, record)

        if cancel_event.is_set():
            return
        self._finish_job(job_id)

    def _process_file(self, job: JobRecord, record: FileRecord) -> None:
        if not self.store.update_file(record.id, expected={FileStatus.PENDING}, status=FileStatus.PROCESSING):
            return

        logger.info("Job %s: converting file %s (%s)", job.id, record.id, record.original_name)
        sink = StoreProgressSink(self.store, record.id)
        try:
            result = self.converter.convert(
                Path(record.input_path),
                record.original_name,
                self.output_root,
                job.options,
                sink,
            )
        except ConversionError as exc:
            error = exc.message or "Conversion failed"
        except Exception as exc:
            logger.exception("Converter raised for file %s", record.id)
            error = f"Conversion failed: {exc}" if str(exc) else "Conversion failed"
        else:
            applied = self.store.update_file(
                record.id,
                expected={FileStatus.PROCESSING},
                status=FileStatus.COMPLETED,
                progress=100,
                converted_name=result.converted_name,
                converted_size=result.converted_size,
                output_path=result.output_path,
                is_pdfa=result.is_pdfa,
                has_ocr=result.has_ocr,
                error=None,
            )
            if applied:
                logger.info("Job %s: file %s converted to %s", job.id, record.id, result.converted_name)
            else:
                logger.info("Job %s: discarding result for cancelled file %s", job.id, record.id)
                remove_quietly(Path(result.output_path))
            return

        logger.warning("Job %s: file %s failed: %s", job.id, record.id, error)
        self.store.update_file(
            record.id,
            expected={FileStatus.PROCESSING},
            status=FileStatus.FAILED,
            error=error,
        )

    def _finish_job(self, job_id: int) -> None:
        files = self.store.list_files(job_id)
        if not all(record.is_terminal for record in files):
            raise RuntimeError(f"Job {job_id} finished its loop with unprocessed files")
        self._apply_rollup(job_id, files)

    def _apply_rollup(self, job_id: int, files: Sequence[FileRecord]) -> None:
        """Failed if any file failed, otherwise completed. Only a processing job is moved."""
        status = JobStatus.FAILED if any(f.status == FileStatus.FAILED for f in files) else JobStatus.COMPLETED
        if self.store.update_job(job_id, expected={JobStatus.PROCESSING}, status=status, completed_at=utcnow()):
            logger.info("Job %s %s", job_id, status.value)

    def _fail_job(self, job_id: int, message: str) -> None:
        for record in self.store.list_files(job_id):
            self.store.update_file(record.id, expected=ACTIVE_STATUSES, status=FileStatus.FAILED, error=message)
        self.store.update_job(
            job_id,
            expected=ACTIVE_STATUSES,
            status=JobStatus.FAILED,
            error=message,
            completed_at=utcnow(),
        )

    def _schedule_release(self, job_id: int) -> None:
        with self._lock:
            tracked = self._tracked.get(job_id)
            if tracked is None or self._closed:
                return
            timer = Timer(self.retention_seconds, self._release, args=(job_id,))
            timer.daemon = True
            tracked.release_timer = timer
        timer.start()

    def _release(self, job_id: int) -> None:
        """Drop in-memory tracking for a finished job and delete its scratch uploads."""
        with self._lock:
            self._tracked.pop(job_id, None)
        for record in self.store.list_files(job_id):
            remove_quietly(Path(record.input_path))
        logger.info("Released tracking for job %s", job_id)
