"""
Read-only projections of job state for polling clients.

Nothing here writes to the store: status, results and download lookups are
computed from a snapshot of the records at query time.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

from .errors import NotAvailableError, NotFoundError, NotReadyError
from .models import (
    FileResult,
    FileStatus,
    FileStatusEntry,
    JobResultsResponse,
    JobStatus,
    JobStatusResponse,
    JobSummary,
)
from .store import FileRecord, JobRecord, JobStore

STAGE_PENDING = "Awaiting processing"
STAGE_COMPLETED = "Conversion complete"
STAGE_FAILED = "Conversion failed"

# (upper bound, label) for files in progress, checked in order.
PROCESSING_STAGES = (
    (20, "Preparing document"),
    (40, "Applying OCR"),
    (70, "Converting to PDF/A-2u"),
    (90, "Verifying compliance"),
    (101, "Finalizing output"),
)


@dataclass(frozen=True)
class DownloadTarget:
    path: Path
    filename: str


def stage_label(status: JobStatus, percentage: int) -> str:
    if status == JobStatus.PENDING:
        return STAGE_PENDING
    if status == JobStatus.COMPLETED:
        return STAGE_COMPLETED
    if status == JobStatus.FAILED:
        return STAGE_FAILED
    for bound, label in PROCESSING_STAGES:
        if percentage < bound:
            return label
    return PROCESSING_STAGES[-1][1]


def overall_percentage(files: Sequence[FileRecord]) -> int:
    """Floor of the mean file progress."""
    if not files:
        return 0
    return sum(record.progress for record in files) // len(files)


def download_url(file_id: int) -> str:
    return f"/files/{file_id}/download"


class StatusReporter:
    def __init__(self, store: JobStore) -> None:
        self.store = store

    def _require_job(self, job_id: int) -> JobRecord:
        job = self.store.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def job_status(self, job_id: int) -> JobStatusResponse:
        job = self._require_job(job_id)
        files = self.store.list_files(job_id)
        percentage = overall_percentage(files)
        return JobStatusResponse(
            jobId=job.id,
            status=job.status,
            percentage=percentage,
            stage=self._job_stage(job, files, percentage),
            error=job.error,
            completedAt=job.completed_at,
            files=[
                FileStatusEntry(
                    fileId=record.id,
                    name=record.original_name,
                    status=record.status,
                    percentage=record.progress,
                    stage=stage_label(record.status, record.progress),
                    error=record.error,
                )
                for record in files
            ],
        )

    def _job_stage(self, job: JobRecord, files: Sequence[FileRecord], percentage: int) -> str:
        if job.status != JobStatus.PROCESSING:
            return stage_label(job.status, percentage)
        current = next((f for f in files if f.status == FileStatus.PROCESSING), None)
        if current is None:
            return stage_label(JobStatus.PROCESSING, 0)
        return stage_label(current.status, current.progress)

    def job_results(self, job_id: int) -> JobResultsResponse:
        """
        Final metadata for every file of a completed job.

        Raises:
            NotFoundError: If the job does not exist
            NotReadyError: If the job has not completed
        """
        job = self._require_job(job_id)
        if job.status != JobStatus.COMPLETED:
            raise NotReadyError(f"Job {job_id} is {job.status.value}; results are available once it completes")
        return JobResultsResponse(
            jobId=job.id,
            status=job.status,
            files=[self._file_result(record) for record in self.store.list_files(job_id)],
        )

    def _file_result(self, record: FileRecord) -> FileResult:
        return FileResult(
            id=record.id,
            name=record.converted_name or record.original_name,
            size=record.converted_size if record.converted_size is not None else record.original_size,
            url=download_url(record.id) if record.status == FileStatus.COMPLETED else "",
            hasPdfA=record.is_pdfa,
            hasOcr=record.has_ocr,
        )

    def download(self, file_id: int) -> DownloadTarget:
        """
        Locate the converted output of a file.

        Raises:
            NotFoundError: If the file does not exist
            NotAvailableError: If the file is not completed or its output is gone
        """
        record = self.store.get_file(file_id)
        if record is None:
            raise NotFoundError(f"File {file_id} not found")
        if record.status != FileStatus.COMPLETED or not record.output_path:
            raise NotAvailableError(f"File {file_id} is not available for download")
        path = Path(record.output_path)
        if not path.is_file():
            raise NotAvailableError(f"Converted output for file {file_id} is no longer available")
        return DownloadTarget(path=path, filename=record.converted_name or record.original_name)

    def list_jobs(self) -> List[JobSummary]:
        return [
            JobSummary(
                jobId=job.id,
                status=job.status,
                createdAt=job.created_at,
                completedAt=job.completed_at,
                fileCount=len(self.store.list_files(job.id)),
                options=job.options.to_payload(),
            )
            for job in self.store.list_jobs()
        ]
