"""
PDF/A Backend - REST API for PDF/A-2u document conversion

This package provides a FastAPI-based web service that converts uploaded PDF
documents into the PDF/A-2u archival format. It enables:

- Batch PDF uploads with type, size and option validation
- Asynchronous, sequential per-file conversion jobs
- Per-file progress polling and job cancellation
- Result listing and download of converted files

Actual document conversion is delegated to external tools (Ghostscript,
OCRmyPDF, veraPDF) behind the Converter protocol, so the orchestration core
does not depend on any particular conversion engine.

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - intake: Upload validation, scratch storage and job registration
    - job_manager: Background job execution, cancellation and retention
    - reporting: Status, results and download projections
    - store / database: In-memory and SQLite job/file storage
    - converter: Converter protocol and the Ghostscript implementation
    - configuration: OmegaConf defaults and conversion option parsing

Usage:
    Run the API server with:
        uvicorn pdfa_backend.main:app --reload --host 0.0.0.0 --port 8000
"""
