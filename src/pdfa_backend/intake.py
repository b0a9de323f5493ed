"""
Upload intake: validation, scratch persistence and job registration.

Intake establishes the invariants the orchestrator relies on. A job is only
created once every candidate file passed validation and was written to
scratch storage; on any rejection nothing is left behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, List, Optional, Sequence

from omegaconf import DictConfig

from .configuration import OptionsPayload, parse_options
from .errors import ValidationError
from .job_manager import JobManager
from .store import JobRecord, NewFile
from .utils import ensure_directory, is_pdf_upload, remove_quietly, unique_name

logger = logging.getLogger(__name__)

MAX_FILE_SIZE_MB = 20
DEFAULT_CHUNK_SIZE = 1024 * 1024


@dataclass
class UploadCandidate:
    """One file offered for conversion, as received from the client."""

    filename: Optional[str]
    content_type: Optional[str]
    stream: BinaryIO


class UploadIntake:
    """
    Validates uploads, stores them under collision-proof names and hands the
    resulting job to the JobManager.

    Attributes:
        upload_root: Scratch directory for uploaded inputs
        max_file_size: Per-file size ceiling in bytes
    """

    def __init__(
        self,
        manager: JobManager,
        upload_root: Path | None = None,
        max_file_size_mb: int = MAX_FILE_SIZE_MB,
        allowed_extensions: Sequence[str] = (".pdf",),
        allowed_content_types: Sequence[str] = ("application/pdf",),
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.manager = manager
        self.upload_root = ensure_directory(upload_root or Path("tmp/uploads"))
        self.max_file_size = max_file_size_mb * 1024 * 1024
        self.max_file_size_mb = max_file_size_mb
        self.allowed_extensions = tuple(allowed_extensions)
        self.allowed_content_types = tuple(allowed_content_types)
        self.chunk_size = chunk_size

    @classmethod
    def from_settings(cls, manager: JobManager, settings: DictConfig) -> "UploadIntake":
        section = settings.intake
        return cls(
            manager,
            upload_root=Path(settings.paths.upload_dir),
            max_file_size_mb=int(section.max_file_size_mb),
            allowed_extensions=list(section.allowed_extensions),
            allowed_content_types=list(section.allowed_content_types),
            chunk_size=int(section.chunk_size),
        )

    def submit(self, candidates: Sequence[UploadCandidate], options: OptionsPayload = None) -> JobRecord:
        """
        Register a batch of uploads as one job and start processing it.

        Returns as soon as the job and its files are stored; conversion runs
        in the background.

        Raises:
            ValidationError: If no files were sent, a file is not a PDF or is
                larger than the ceiling, or the options are malformed
        """
        if not candidates:
            raise ValidationError("No files were uploaded")

        parsed_options = parse_options(options)

        for candidate in candidates:
            if not is_pdf_upload(
                candidate.filename,
                candidate.content_type,
                self.allowed_extensions,
                self.allowed_content_types,
            ):
                raise ValidationError(f"Only PDF files are accepted: {candidate.filename or 'unnamed file'}")

        stored: List[NewFile] = []
        job: Optional[JobRecord] = None
        try:
            for candidate in candidates:
                stored.append(self._store_candidate(candidate))
            job = self.manager.store.create_job(parsed_options, stored)
            logger.info("Job %s created with %d file(s)", job.id, len(stored))
            self.manager.submit(job.id)
        except Exception:
            if job is not None:
                logger.error("Job %s could not be scheduled; discarding it", job.id)
                self.manager.store.delete_job(job.id)
            for new_file in stored:
                remove_quietly(Path(new_file.input_path))
            raise
        return job

    def _store_candidate(self, candidate: UploadCandidate) -> NewFile:
        original_name = Path((candidate.filename or "document.pdf").replace("\\", "/")).name or "document.pdf"
        destination = self.upload_root / unique_name(original_name)

        size = 0
        try:
            with destination.open("wb") as buffer:
                while chunk := candidate.stream.read(self.chunk_size):
                    size += len(chunk)
                    if size > self.max_file_size:
                        raise ValidationError(
                            f"{original_name} exceeds the {self.max_file_size_mb} MB size limit"
                        )
                    buffer.write(chunk)
        except Exception:
            remove_quietly(destination)
            raise

        return NewFile(original_name=original_name, original_size=size, input_path=str(destination))
