# =============================================================================
# Upload Validation — PDF Signature, Size and Content Checks
# =============================================================================
#
# Runs on every uploaded file before a processing job is queued. Errors
# reject the upload (400, file deleted); warnings are recorded in the
# document metadata and logged as security events.
#
# Only the first 64KB are read. Signature and embedded-content checks look
# at the first 8KB of that.
# =============================================================================

from __future__ import annotations

import logging
import os
import re
import secrets
import time
from dataclasses import dataclass, field
from pathlib import Path

from esop_analyzer.config import settings

logger = logging.getLogger(__name__)

HEADER_READ_BYTES = 64 * 1024
CONTENT_SCAN_BYTES = 8192
MIN_EXPECTED_SIZE = 1024

SUSPICIOUS_CONTENT = [
    "/JavaScript",
    "/JS",
    "/Launch",
    "/EmbeddedFile",
    "<script",
    "eval(",
    "unescape(",
]

SUSPICIOUS_NAME_PATTERNS = [
    re.compile(r"\.(exe|bat|cmd|scr|pif|com)$", re.IGNORECASE),
    re.compile(r'[<>:"|?*]'),
    re.compile(r"^(con|prn|aux|nul|com[1-9]|lpt[1-9])$", re.IGNORECASE),
]


@dataclass
class FileValidationResult:
    is_valid: bool = False
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    file_info: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "isValid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "fileInfo": dict(self.file_info),
        }


def log_security_event(event: str, details, client_ip: str | None = None) -> None:
    logger.warning("SECURITY_EVENT event=%s ip=%s details=%s", event, client_ip or "-", details)


def validate_pdf(
    file_path: str,
    max_size: int | None = None,
    client_ip: str | None = None,
) -> FileValidationResult:
    """
    Validate an uploaded file as a PDF.

    Checks size, the `%PDF-` signature and version, embedded script or
    launch actions, the stored file name, and basic PDF structure markers.
    """
    max_size = max_size or settings.max_file_size
    result = FileValidationResult()
    path = Path(file_path)

    try:
        size = path.stat().st_size
    except OSError:
        result.errors.append("File not found or inaccessible")
        return result
    result.file_info["size"] = size

    if size > max_size:
        result.errors.append(
            f"File too large: {round(size / 1024 / 1024)}MB exceeds "
            f"{round(max_size / 1024 / 1024)}MB limit"
        )
        log_security_event("FILE_TOO_LARGE", f"size={size} limit={max_size}", client_ip)

    if size < MIN_EXPECTED_SIZE:
        result.warnings.append("File unusually small for a PDF document")

    try:
        with open(path, "rb") as f:
            buffer = f.read(HEADER_READ_BYTES)
    except OSError:
        result.errors.append("Unable to read file content")
        return result

    if buffer[:5] == b"%PDF-":
        result.file_info["detectedType"] = "application/pdf"
        result.file_info["pdfVersion"] = buffer[5:8].decode("ascii", errors="replace")
    else:
        result.errors.append("Invalid PDF header - file may be corrupted or not a PDF")
        log_security_event(
            "INVALID_PDF_HEADER", f"header={buffer[:8]!r}", client_ip,
        )

    scanned = buffer[:CONTENT_SCAN_BYTES].decode("ascii", errors="ignore")
    for marker in SUSPICIOUS_CONTENT:
        if marker in scanned:
            result.warnings.append(f"Potentially suspicious content detected: {marker}")
            log_security_event("SUSPICIOUS_PDF_CONTENT", f"pattern={marker}", client_ip)

    result.file_info["fileName"] = path.name
    if any(p.search(path.name) for p in SUSPICIOUS_NAME_PATTERNS):
        result.errors.append("Suspicious or invalid file name")
        log_security_event("SUSPICIOUS_FILENAME", f"filename={path.name}", client_ip)

    if len(buffer) > MIN_EXPECTED_SIZE:
        if "%%EOF" not in scanned and "xref" not in scanned and "stream" not in scanned:
            result.warnings.append("File may be incomplete or corrupted PDF")

    result.is_valid = not result.errors

    if not result.is_valid:
        log_security_event(
            "FILE_VALIDATION_FAILED",
            {"errors": result.errors, "fileInfo": result.file_info},
            client_ip,
        )
    elif result.warnings:
        log_security_event(
            "FILE_VALIDATION_WARNINGS",
            {"warnings": result.warnings, "fileInfo": result.file_info},
            client_ip,
        )
    return result


def secure_filename(original_name: str) -> str:
    """Sanitised stored name: `<base>_<millis>_<random>.<ext>`."""
    _, dot, ext = original_name.rpartition(".")
    extension = re.sub(r"[^a-zA-Z0-9]", "", ext).lower()[:10] if dot else ""
    extension = extension or "pdf"
    base = re.sub(r"\.[^/.]+$", "", original_name)
    base = re.sub(r"[^a-zA-Z0-9_-]", "_", base)[:50]
    return f"{base}_{int(time.time() * 1000)}_{secrets.randbelow(10**9)}.{extension}"


def cleanup_file(file_path: str, reason: str = "validation failed") -> None:
    try:
        os.unlink(file_path)
        logger.info("Cleaned up file %s: %s", file_path, reason)
    except OSError as exc:
        logger.error("Failed to clean up file %s: %s", file_path, exc)
