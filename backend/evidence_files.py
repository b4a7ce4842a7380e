# evidence_files.py - Evidence directory and path-safe file serving
import os
import logging
from dataclasses import dataclass

from fastapi.responses import FileResponse

from errors import (
    CorruptEvidenceFile, EvidenceFileNotFound, EvidenceStorageError,
    PathSafetyViolation, UnsupportedEvidenceType,
)

logger = logging.getLogger("fabtrack.evidence.files")

EVIDENCE_DIR = os.getenv("EVIDENCE_DIR", "uploads/evidence")
MIN_EVIDENCE_FILE_SIZE = 100

CONTENT_TYPES = {
    ".pdf": ("application/pdf", "inline"),
    ".csv": ("text/csv", "attachment"),
}


@dataclass
class EvidenceFile:
    path: str
    filename: str
    content_type: str
    disposition: str
    size: int

    @property
    def headers(self) -> dict:
        return {
            "Content-Disposition": f'{self.disposition}; filename="{self.filename}"',
            "Content-Length": str(self.size),
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Pragma": "no-cache",
            "Expires": "0",
        }


def get_evidence_dir() -> str:
    return os.path.realpath(EVIDENCE_DIR)


def ensure_evidence_dir() -> str:
    directory = get_evidence_dir()
    try:
        os.makedirs(directory, exist_ok=True)
    except OSError as e:
        logger.error(f"Cannot create evidence directory {directory}: {e}")
        raise EvidenceStorageError("Failed to create evidence directory")
    return directory


def _reject(filename: str, reason: str) -> PathSafetyViolation:
    logger.warning(f"Rejected evidence file request {filename!r}: {reason}")
    return PathSafetyViolation("Invalid filename")


def resolve_evidence_file(filename: str) -> EvidenceFile:
    """Validate a client-supplied filename and locate it in the evidence dir.

    Checks run in a fixed order: name shape, containment, existence, minimum
    size, then extension.
    """
    if (
        not filename
        or "\x00" in filename
        or ".." in filename
        or "/" in filename
        or "\\" in filename
        or os.path.basename(filename) != filename
    ):
        raise _reject(filename, "path characters in name")

    directory = get_evidence_dir()
    path = os.path.realpath(os.path.join(directory, filename))
    if not path.startswith(directory + os.sep):
        raise _reject(filename, "resolves outside the evidence directory")

    if not os.path.isfile(path):
        raise EvidenceFileNotFound("File not found")

    size = os.path.getsize(path)
    if size < MIN_EVIDENCE_FILE_SIZE:
        logger.error(f"Evidence file {filename} is only {size} bytes")
        raise CorruptEvidenceFile()

    ext = os.path.splitext(filename)[1].lower()
    if ext not in CONTENT_TYPES:
        raise UnsupportedEvidenceType()

    content_type, disposition = CONTENT_TYPES[ext]
    return EvidenceFile(
        path=path,
        filename=filename,
        content_type=content_type,
        disposition=disposition,
        size=size,
    )


def evidence_file_response(filename: str) -> FileResponse:
    evidence = resolve_evidence_file(filename)
    logger.info(f"Serving evidence file {evidence.filename} ({evidence.size} bytes)")
    return FileResponse(
        evidence.path,
        media_type=evidence.content_type,
        headers=evidence.headers,
    )
