"""
Pytest configuration and fixtures for PDF/A Backend tests.
"""

import os
import shutil
import tempfile
import threading
from io import BytesIO
from pathlib import Path
from typing import Dict, List, Optional, Sequence
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["OUTPUT_DIR"] = tempfile.mkdtemp(prefix="pdfa_test_output_")
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="pdfa_test_uploads_")
os.environ["PDFA_STORE_BACKEND"] = "memory"

from pdfa_backend.errors import ConversionError
from pdfa_backend.intake import UploadCandidate, UploadIntake
from pdfa_backend.job_manager import JobManager
from pdfa_backend.main import app, get_intake, get_job_manager, get_reporter
from pdfa_backend.models import ConversionOptions, ConversionResult
from pdfa_backend.reporting import StatusReporter
from pdfa_backend.store import InMemoryJobStore, NewFile
from pdfa_backend.utils import pdfa_filename

# Minimal PDF that is technically valid
PDF_CONTENT = b"""%PDF-1.4
1 0 obj
<< /Type /Catalog /Pages 2 0 R >>
endobj
2 0 obj
<< /Type /Pages /Kids [3 0 R] /Count 1 >>
endobj
3 0 obj
<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>
endobj
xref
0 4
0000000000 65535 f
0000000009 00000 n
0000000058 00000 n
0000000115 00000 n
trailer
<< /Size 4 /Root 1 0 R >>
startxref
196
%%EOF"""


class FakeConverter:
    """
    Scripted converter for orchestration tests.

    Copies the input to the output directory and reports fixed progress steps.
    Names in ``fail_names`` raise ConversionError, names in ``crash_names``
    raise an unexpected exception, and names registered with ``block`` wait
    for their gate after reporting the first half of the progress steps.
    """

    def __init__(self, steps: Sequence[int] = (10, 40, 70, 90)) -> None:
        self.steps = tuple(steps)
        self.fail_names: set = set()
        self.crash_names: set = set()
        self.ocr_available = True
        self.calls: List[str] = []
        self.reported: Dict[str, List[int]] = {}
        self.active = 0
        self.max_active = 0
        self._gates: Dict[str, threading.Event] = {}
        self._started: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def block(self, name: str) -> threading.Event:
        gate = threading.Event()
        with self._lock:
            self._gates[name] = gate
        return gate

    def _started_event(self, name: str) -> threading.Event:
        with self._lock:
            return self._started.setdefault(name, threading.Event())

    def wait_started(self, name: str, timeout: float = 5) -> bool:
        return self._started_event(name).wait(timeout)

    def convert(self, input_path, original_name, output_dir, options: ConversionOptions, progress) -> ConversionResult:
        with self._lock:
            self.calls.append(original_name)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            gate = self._gates.get(original_name)
        try:
            half = len(self.steps) // 2
            for step in self.steps[:half]:
                self._report(original_name, progress, step)
            self._started_event(original_name).set()
            if gate is not None:
                gate.wait(5)
            for step in self.steps[half:]:
                self._report(original_name, progress, step)

            if original_name in self.fail_names:
                raise ConversionError(f"Cannot convert {original_name}")
            if original_name in self.crash_names:
                raise RuntimeError("converter crashed")

            converted_name = pdfa_filename(original_name)
            output_path = Path(output_dir) / f"{uuid4().hex}-{converted_name}"
            output_path.write_bytes(Path(input_path).read_bytes())
            return ConversionResult(
                converted_name=converted_name,
                converted_size=output_path.stat().st_size,
                output_path=str(output_path),
                is_pdfa=True,
                has_ocr=options.apply_ocr and self.ocr_available,
            )
        finally:
            with self._lock:
                self.active -= 1

    def _report(self, name: str, progress, step: int) -> None:
        with self._lock:
            self.reported.setdefault(name, []).append(step)
        progress.report(step)


def make_upload(name: str = "document.pdf", data: Optional[bytes] = None, content_type: str = "application/pdf") -> UploadCandidate:
    return UploadCandidate(filename=name, content_type=content_type, stream=BytesIO(PDF_CONTENT if data is None else data))


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Create and cleanup test directories."""
    output_dir = os.environ["OUTPUT_DIR"]
    upload_dir = os.environ["UPLOAD_DIR"]

    yield {
        "output": output_dir,
        "upload": upload_dir,
    }

    # Cleanup after all tests
    shutil.rmtree(output_dir, ignore_errors=True)
    shutil.rmtree(upload_dir, ignore_errors=True)


@pytest.fixture
def sample_pdf() -> bytes:
    return PDF_CONTENT


@pytest.fixture
def converter() -> FakeConverter:
    return FakeConverter()


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def manager(store, converter, tmp_path):
    """JobManager over an in-memory store with a short retention window."""
    job_manager = JobManager(
        store=store,
        converter=converter,
        output_root=tmp_path / "converted",
        max_workers=2,
        retention_seconds=0.05,
    )
    yield job_manager
    job_manager.shutdown(wait=True)


@pytest.fixture
def intake(manager, tmp_path) -> UploadIntake:
    return UploadIntake(manager, upload_root=tmp_path / "uploads")


@pytest.fixture
def reporter(store) -> StatusReporter:
    return StatusReporter(store)


@pytest.fixture
def make_job(store, tmp_path):
    """Register a job directly in the store, with real scratch files on disk."""

    def _make_job(names: Sequence[str] = ("a.pdf",), options: Optional[ConversionOptions] = None):
        scratch = tmp_path / "scratch"
        scratch.mkdir(exist_ok=True)
        files = []
        for name in names:
            path = scratch / f"{uuid4().hex}-{name}"
            path.write_bytes(PDF_CONTENT)
            files.append(NewFile(original_name=name, original_size=len(PDF_CONTENT), input_path=str(path)))
        return store.create_job(options or ConversionOptions(), files)

    return _make_job


@pytest.fixture
def client(manager, intake, reporter):
    """Create a test client for the FastAPI app wired to the test manager."""
    app.dependency_overrides[get_job_manager] = lambda: manager
    app.dependency_overrides[get_intake] = lambda: intake
    app.dependency_overrides[get_reporter] = lambda: reporter
    yield TestClient(app)
    app.dependency_overrides.clear()
