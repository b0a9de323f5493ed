"""
Utility functions for file system operations and filename handling.

This module provides helper functions for:
- Sanitizing user-provided filenames for safe filesystem usage
- Building collision-proof scratch and output names
- Recognizing PDF uploads by extension or declared content type
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable, Optional
from uuid import uuid4

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

PDF_SUFFIX_PATTERN = re.compile(r"\.pdf$", re.IGNORECASE)

PDFA_SUFFIX = "_PDFA2u.pdf"


def sanitize_filename(filename: str, fallback: str = "document.pdf") -> str:
    """
    Generate a filesystem-safe filename from user input.

    Directory components are dropped, unsafe characters are replaced with
    hyphens, and the original case is preserved.

    Example:
        >>> sanitize_filename("../My Report (final).pdf")
        "My-Report-final-.pdf"
        >>> sanitize_filename("@#$")
        "document.pdf"
    """
    name = Path(filename.replace("\\", "/")).name
    cleaned = SANITIZE_PATTERN.sub("-", name.strip()).strip("-_.")
    return cleaned or fallback


def unique_name(filename: str) -> str:
    """Prefix a sanitized filename with a random UUID so concurrent uploads never collide."""
    return f"{uuid4().hex}-{sanitize_filename(filename)}"


def pdfa_filename(original_name: str) -> str:
    """
    Derive the user-facing name of a converted file.

    Example:
        >>> pdfa_filename("invoice.PDF")
        "invoice_PDFA2u.pdf"
    """
    base = PDF_SUFFIX_PATTERN.sub("", Path(original_name).name) or "document"
    return f"{base}{PDFA_SUFFIX}"


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def is_pdf_upload(
    filename: Optional[str],
    content_type: Optional[str],
    extensions: Iterable[str] = (".pdf",),
    content_types: Iterable[str] = ("application/pdf",),
) -> bool:
    """An upload counts as a PDF when either its extension or its declared content type says so."""
    suffix = Path(filename or "").suffix.lower()
    declared = (content_type or "").split(";")[0].strip().lower()
    return suffix in {ext.lower() for ext in extensions} or declared in {ct.lower() for ct in content_types}


def remove_quietly(path: Optional[Path]) -> bool:
    """Delete a file if present. Returns True when something was removed."""
    if path is None:
        return False
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True
