"""
Document conversion capability consumed by the job orchestrator.

The orchestrator only depends on the Converter protocol: given an input file
and the job's options it produces a PDF/A-2u file in an output directory,
reporting progress through a ProgressSink as it goes. GhostscriptConverter is
the production implementation and shells out to the usual tool chain:

- OCRmyPDF for the optional text layer
- Ghostscript for the PDF/A-2 rewrite
- veraPDF for the optional compliance check

Progress values are reported at real stage boundaries only.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Protocol, Sequence
from uuid import uuid4

from omegaconf import DictConfig

from .errors import ConversionError
from .models import ConversionOptions, ConversionResult
from .utils import ensure_directory, pdfa_filename, remove_quietly

logger = logging.getLogger(__name__)

# Stage boundaries reported through the progress sink.
PROGRESS_STARTED = 10
PROGRESS_PREPARED = 20
PROGRESS_OCR_DONE = 40
PROGRESS_CONVERTED = 70
PROGRESS_VERIFIED = 90


class ProgressSink(Protocol):
    def report(self, percentage: int) -> None:
        """Record that the current file reached ``percentage`` (0-100)."""


class Converter(Protocol):
    def convert(
        self,
        input_path: Path,
        original_name: str,
        output_dir: Path,
        options: ConversionOptions,
        progress: ProgressSink,
    ) -> ConversionResult:
        """
        Convert one document to PDF/A-2u.

        This is a blocking call; it raises ConversionError with a readable
        reason when the document cannot be converted.
        """


class ToolUnavailable(Exception):
    """An external binary is not installed or not on PATH."""


class GhostscriptConverter:
    """
    Converter backed by Ghostscript, OCRmyPDF and veraPDF.

    Attributes:
        ghostscript_bin: Ghostscript executable
        ocrmypdf_bin: OCRmyPDF executable
        verapdf_bin: veraPDF executable
        pdfa_def_path: Optional PDFA_def.ps prologue passed to Ghostscript
        timeout_seconds: Deadline applied to each external tool call
    """

    def __init__(
        self,
        ghostscript_bin: str = "gs",
        ocrmypdf_bin: str = "ocrmypdf",
        verapdf_bin: str = "verapdf",
        pdfa_def_path: Optional[str] = None,
        timeout_seconds: float = 600,
    ) -> None:
        self.ghostscript_bin = ghostscript_bin
        self.ocrmypdf_bin = ocrmypdf_bin
        self.verapdf_bin = verapdf_bin
        self.pdfa_def_path = pdfa_def_path or None
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: DictConfig) -> "GhostscriptConverter":
        section = settings.converter
        return cls(
            ghostscript_bin=section.ghostscript_bin,
            ocrmypdf_bin=section.ocrmypdf_bin,
            verapdf_bin=section.verapdf_bin,
            pdfa_def_path=section.pdfa_def_path,
            timeout_seconds=float(section.timeout_seconds),
        )

    def convert(
        self,
        input_path: Path,
        original_name: str,
        output_dir: Path,
        options: ConversionOptions,
        progress: ProgressSink,
    ) -> ConversionResult:
        input_path = Path(input_path)
        ensure_directory(Path(output_dir))
        progress.report(PROGRESS_STARTED)

        self._check_input(input_path)
        progress.report(PROGRESS_PREPARED)

        source = input_path
        ocr_path: Optional[Path] = None
        has_ocr = False
        if options.apply_ocr:
            ocr_path = Path(output_dir) / f"ocr-{uuid4().hex}.pdf"
            has_ocr = self._apply_ocr(input_path, ocr_path)
            if has_ocr:
                source = ocr_path
        progress.report(PROGRESS_OCR_DONE)

        converted_name = pdfa_filename(original_name)
        output_path = Path(output_dir) / f"{uuid4().hex}-{converted_name}"
        try:
            self._run_ghostscript(source, output_path, options.optimize_size)
        finally:
            remove_quietly(ocr_path)
        progress.report(PROGRESS_CONVERTED)

        if options.verify_compliance:
            try:
                self._verify(output_path)
            except ConversionError:
                remove_quietly(output_path)
                raise
        progress.report(PROGRESS_VERIFIED)

        if not output_path.exists():
            raise ConversionError(f"Converter produced no output for {original_name}")

        return ConversionResult(
            converted_name=converted_name,
            converted_size=output_path.stat().st_size,
            output_path=str(output_path),
            is_pdfa=True,
            has_ocr=has_ocr,
        )

    def _check_input(self, input_path: Path) -> None:
        try:
            with input_path.open("rb") as handle:
                header = handle.read(1024)
        except OSError as exc:
            raise ConversionError(f"Input file is not readable: {exc.strerror or exc}") from exc
        if b"%PDF-" not in header:
            raise ConversionError("Input file is not a valid PDF document")

    def _apply_ocr(self, source: Path, destination: Path) -> bool:
        """Run OCRmyPDF. Returns False (and logs) when OCR could not be applied."""
        command = [
            self.ocrmypdf_bin,
            "--skip-text",
            "--output-type",
            "pdfa-2",
            str(source),
            str(destination),
        ]
        try:
            self._run(command)
        except ToolUnavailable:
            logger.warning("OCRmyPDF not available (%s); continuing without OCR", self.ocrmypdf_bin)
            return False
        except ConversionError as exc:
            logger.warning("OCR failed for %s, continuing without OCR: %s", source.name, exc)
            remove_quietly(destination)
            return False
        return destination.exists()

    def _run_ghostscript(self, source: Path, destination: Path, optimize_size: bool) -> None:
        command = [
            self.ghostscript_bin,
            "-dPDFA=2",
            "-dBATCH",
            "-dNOPAUSE",
            "-dNOOUTERSAVE",
            "-dNOPROMPT",
            "-dCompatibilityLevel=1.7",
            "-sDEVICE=pdfwrite",
            "-sColorConversionStrategy=RGB",
            "-sProcessColorModel=DeviceRGB",
            "-dEmbedAllFonts=true",
            "-dPDFACompatibilityPolicy=1",
            f"-dPDFSETTINGS={'/ebook' if optimize_size else '/prepress'}",
            f"-sOutputFile={destination}",
        ]
        if self.pdfa_def_path:
            command.append(self.pdfa_def_path)
        command.append(str(source))
        try:
            self._run(command)
        except ToolUnavailable as exc:
            raise ConversionError("Ghostscript is not installed; PDF/A conversion is unavailable") from exc
        except ConversionError:
            remove_quietly(destination)
            raise

    def _verify(self, output_path: Path) -> None:
        command = [self.verapdf_bin, "--flavour", "2u", "--format", "text", str(output_path)]
        try:
            completed = self._run(command, check=False)
        except ToolUnavailable:
            logger.warning("veraPDF not available (%s); skipping compliance check", self.verapdf_bin)
            return
        report = completed.stdout or ""
        if completed.returncode != 0 or "FAIL" in report.upper().split():
            raise ConversionError("Converted file failed PDF/A-2u compliance validation")

    def _run(self, command: Sequence[str], check: bool = True) -> "subprocess.CompletedProcess[str]":
        logger.debug("Running %s", " ".join(command))
        try:
            completed = subprocess.run(
                list(command),
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ToolUnavailable(command[0]) from exc
        except subprocess.TimeoutExpired as exc:
            raise ConversionError(
                f"{Path(command[0]).name} timed out after {self.timeout_seconds:g} seconds"
            ) from exc
        if check and completed.returncode != 0:
            raise ConversionError(
                f"{Path(command[0]).name} exited with status {completed.returncode}: {_tail(completed.stderr)}"
            )
        return completed


def _tail(text: Optional[str], lines: int = 3) -> str:
    parts: List[str] = [line for line in (text or "").strip().splitlines() if line.strip()]
    return " ".join(parts[-lines:]) or "no error output"
