"""Tests for path-safe evidence file resolution"""
import pytest

from errors import (
    CorruptEvidenceFile, EvidenceFileNotFound, PathSafetyViolation, UnsupportedEvidenceType,
)
from evidence_files import MIN_EVIDENCE_FILE_SIZE, resolve_evidence_file


def _write(directory, name, size):
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_bytes(b"x" * size)
    return path


@pytest.mark.parametrize("name", [
    "../../etc/passwd",
    "a/b.pdf",
    "a..pdf",
    "..\\evidence.pdf",
    "report\x00.pdf",
    "",
])
def test_unsafe_names_are_rejected(name, evidence_dir):
    with pytest.raises(PathSafetyViolation) as exc:
        resolve_evidence_file(name)
    assert exc.value.detail == "Invalid filename"
    assert exc.value.http_status == 400


def test_symlink_escaping_the_directory_is_rejected(evidence_dir, tmp_path):
    outside = _write(tmp_path / "elsewhere", "secret.pdf", 500)
    evidence_dir.mkdir(parents=True, exist_ok=True)
    (evidence_dir / "link.pdf").symlink_to(outside)

    with pytest.raises(PathSafetyViolation):
        resolve_evidence_file("link.pdf")


def test_missing_file(evidence_dir):
    evidence_dir.mkdir(parents=True, exist_ok=True)
    with pytest.raises(EvidenceFileNotFound) as exc:
        resolve_evidence_file("legal-evidence-Quote_q1_20260101000000000.pdf")
    assert exc.value.http_status == 404


def test_small_file_is_corrupt(evidence_dir):
    _write(evidence_dir, "tiny.pdf", 50)
    with pytest.raises(CorruptEvidenceFile) as exc:
        resolve_evidence_file("tiny.pdf")
    assert exc.value.http_status == 500


def test_minimum_size_file_is_served(evidence_dir):
    _write(evidence_dir, "edge.pdf", MIN_EVIDENCE_FILE_SIZE)
    assert resolve_evidence_file("edge.pdf").size == 100


def test_size_is_checked_before_extension(evidence_dir):
    _write(evidence_dir, "tiny.txt", 10)
    with pytest.raises(CorruptEvidenceFile):
        resolve_evidence_file("tiny.txt")


def test_unsupported_extension(evidence_dir):
    _write(evidence_dir, "notes.txt", 200)
    with pytest.raises(UnsupportedEvidenceType) as exc:
        resolve_evidence_file("notes.txt")
    assert exc.value.http_status == 400


def test_pdf_headers(evidence_dir):
    _write(evidence_dir, "pkg.pdf", 256)
    evidence = resolve_evidence_file("pkg.pdf")

    assert evidence.content_type == "application/pdf"
    assert evidence.headers == {
        "Content-Disposition": 'inline; filename="pkg.pdf"',
        "Content-Length": "256",
        "Cache-Control": "no-cache, no-store, must-revalidate",
        "Pragma": "no-cache",
        "Expires": "0",
    }


def test_csv_is_an_attachment(evidence_dir):
    _write(evidence_dir, "pkg.CSV", 300)
    evidence = resolve_evidence_file("pkg.CSV")
    assert evidence.content_type == "text/csv"
    assert evidence.headers["Content-Disposition"] == 'attachment; filename="pkg.CSV"'
