from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from omegaconf import DictConfig

from .configuration import build_config_metadata, load_settings
from .converter import GhostscriptConverter
from .database import SqliteJobStore
from .errors import PdfaBackendError
from .intake import UploadCandidate, UploadIntake
from .job_manager import JobManager
from .models import CancelResponse, ConfigMetadata, JobCreated, JobResultsResponse, JobStatusResponse, JobSummary
from .reporting import StatusReporter
from .store import InMemoryJobStore, JobStore
from .utils import ensure_directory

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Install a single stdout handler on the root logger."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root_logger.setLevel(level.upper())
    root_logger.addHandler(handler)


def build_store(settings: DictConfig) -> JobStore:
    backend = str(settings.store.backend).lower()
    if backend == "sqlite":
        return SqliteJobStore(Path(settings.store.db_path))
    if backend == "memory":
        return InMemoryJobStore()
    raise ValueError(f"Unknown store backend: {settings.store.backend}")


settings = load_settings()
configure_logging(settings.logging.level)

job_manager = JobManager(
    store=build_store(settings),
    converter=GhostscriptConverter.from_settings(settings),
    output_root=ensure_directory(Path(settings.paths.output_dir)),
    max_workers=int(settings.jobs.max_workers),
    retention_seconds=float(settings.jobs.retention_seconds),
)
intake = UploadIntake.from_settings(job_manager, settings)
reporter = StatusReporter(job_manager.store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    purge_after = float(settings.jobs.purge_after_hours) * 3600
    job_manager.purge_expired(purge_after)
    job_manager.recover()
    logger.info("PDF/A conversion API ready (store: %s)", settings.store.backend)
    yield
    job_manager.shutdown(wait=False)
    job_manager.purge_expired(purge_after)


app = FastAPI(title="PDF/A Conversion API", version="0.1.0", lifespan=lifespan)

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_job_manager() -> JobManager:
    return job_manager


def get_intake() -> UploadIntake:
    return intake


def get_reporter() -> StatusReporter:
    return reporter


@app.exception_handler(PdfaBackendError)
async def handle_backend_error(request: Request, exc: PdfaBackendError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/config/defaults", response_model=ConfigMetadata)
def get_config_defaults() -> ConfigMetadata:
    return build_config_metadata(settings)


@app.get("/jobs", response_model=list[JobSummary])
def list_jobs(status_reporter: StatusReporter = Depends(get_reporter)) -> list[JobSummary]:
    return status_reporter.list_jobs()


@app.post("/jobs", response_model=JobCreated)
def create_job(
    files: Optional[List[UploadFile]] = File(None),
    options: str = Form("{}"),
    upload_intake: UploadIntake = Depends(get_intake),
) -> JobCreated:
    candidates = [
        UploadCandidate(filename=upload.filename, content_type=upload.content_type, stream=upload.file)
        for upload in files or []
    ]
    try:
        job = upload_intake.submit(candidates, options)
    finally:
        for upload in files or []:
            upload.file.close()
    return JobCreated(jobId=job.id, message="Files uploaded successfully. Processing started.")


@app.get("/jobs/{job_id}/status", response_model=JobStatusResponse)
def job_status(job_id: int, status_reporter: StatusReporter = Depends(get_reporter)) -> JobStatusResponse:
    return status_reporter.job_status(job_id)


@app.get("/jobs/{job_id}/results", response_model=JobResultsResponse)
def job_results(job_id: int, status_reporter: StatusReporter = Depends(get_reporter)) -> JobResultsResponse:
    return status_reporter.job_results(job_id)


@app.post("/jobs/{job_id}/cancel", response_model=CancelResponse)
def cancel_job(job_id: int, manager: JobManager = Depends(get_job_manager)) -> CancelResponse:
    manager.cancel(job_id)
    return CancelResponse(message="Job cancelled successfully")


@app.get("/files/{file_id}/download")
def download_file(file_id: int, status_reporter: StatusReporter = Depends(get_reporter)) -> FileResponse:
    target = status_reporter.download(file_id)
    return FileResponse(target.path, media_type="application/pdf", filename=target.filename)
