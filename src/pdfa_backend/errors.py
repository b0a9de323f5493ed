"""
Error taxonomy for the conversion backend.

Each error carries the HTTP status code it is surfaced with, so the API layer
can translate any of them with a single exception handler. ConversionError is
the exception: it is recorded on the failing file by the orchestrator and is
only ever visible through status polling.
"""

from __future__ import annotations


class PdfaBackendError(Exception):
    """Base class for errors raised by the conversion backend."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(PdfaBackendError):
    """Rejected upload: wrong type, oversized, or malformed options."""

    status_code = 400


class NotFoundError(PdfaBackendError):
    status_code = 404


class NotReadyError(PdfaBackendError):
    """Results requested for a job that has not completed."""

    status_code = 400


class NotAvailableError(PdfaBackendError):
    """Download requested for a file that has no converted output."""

    status_code = 400


class AlreadyTerminalError(PdfaBackendError):
    """Cancellation requested for a job that already finished."""

    status_code = 400


class ConversionError(PdfaBackendError):
    status_code = 422


class InternalError(PdfaBackendError):
    status_code = 500
