from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


# Files move through the same four states as their job.
FileStatus = JobStatus

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})


class ConversionOptions(BaseModel):
    """Per-job conversion switches, frozen once the job exists."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    apply_ocr: StrictBool = Field(True, alias="applyOcr")
    verify_compliance: StrictBool = Field(True, alias="verifyCompliance")
    optimize_size: StrictBool = Field(False, alias="optimizeSize")

    def to_payload(self) -> Dict[str, bool]:
        return self.model_dump(by_alias=True)


class ConversionResult(BaseModel):
    converted_name: str
    converted_size: int
    output_path: str
    is_pdfa: bool
    has_ocr: bool


class JobCreated(BaseModel):
    jobId: int
    message: str


class JobSummary(BaseModel):
    jobId: int
    status: JobStatus
    createdAt: datetime
    completedAt: Optional[datetime] = None
    fileCount: int
    options: Dict[str, bool]


class FileStatusEntry(BaseModel):
    fileId: int
    name: str
    status: JobStatus
    percentage: int
    stage: str
    error: Optional[str] = None


class JobStatusResponse(BaseModel):
    jobId: int
    status: JobStatus
    percentage: int
    stage: str
    error: Optional[str] = None
    completedAt: Optional[datetime] = None
    files: List[FileStatusEntry]


class FileResult(BaseModel):
    id: int
    name: str
    size: int
    url: str
    hasPdfA: bool
    hasOcr: bool


class JobResultsResponse(BaseModel):
    jobId: int
    status: JobStatus
    files: List[FileResult]


class CancelResponse(BaseModel):
    message: str


class ConfigMetadata(BaseModel):
    defaults: Dict[str, Any]
    max_file_size_mb: int
    allowed_content_types: List[str]
    notes: Dict[str, str]
