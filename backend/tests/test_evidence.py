"""Tests for evidence packages, hashing and exports"""
import asyncio
import csv
import io
import os
import threading
import time
import uuid
from datetime import datetime

import pytest
from reportlab.lib.pagesizes import A4

import evidence
import evidence_export
import evidence_files
from audit_service import AuditContext, audit_job_change
from errors import (
    EvidenceExportTimeout, EvidenceStorageError, HashGenerationError,
    InvalidInputError, PathSafetyViolation,
)
from evidence import (
    build_evidence_package, build_hash_input, compute_package_hash,
    evidence_filename, export_legal_history, generate_evidence_hash,
)
from evidence_export import CSV_COLUMNS, NumberedCanvas, render_pdf, timeline_to_csv
from history import TimelineEntry
from models import Document, HistoryEntityType


def _entry(**overrides) -> TimelineEntry:
    values = dict(
        id="h-1",
        entity_type=HistoryEntityType.ORDER,
        entity_id="order-1",
        change_type="APPROVED",
        version=3,
        status="APPROVED",
        data={"project_title": "Gate", "total_amount": 960.0},
        changed_by="u-1",
        created_at=datetime(2026, 4, 1, 14, 30, 0),
        changed_by_user={"id": "u-1", "name": "Erin Estimator", "email": "e@fabtrack.dev"},
        ip_address="203.0.113.7",
        user_agent="Mozilla/5.0",
    )
    values.update(overrides)
    return TimelineEntry(**values)


async def _add_document(db_session, user, **links) -> Document:
    doc = Document(
        id=str(uuid.uuid4()),
        name="weld-test-cert.pdf",
        original_name="Weld Test Certificate.pdf",
        mime_type="application/pdf",
        file_size=2048,
        file_hash="ab" * 32,
        storage_path="uploads/docs/weld-test-cert.pdf",
        uploaded_by=user.id,
        **links,
    )
    db_session.add(doc)
    await db_session.commit()
    return doc


# --- Hashing ---

def test_hash_ignores_key_order():
    a = {"b": 1, "a": {"y": [1, 2], "x": None}}
    b = {"a": {"x": None, "y": [1, 2]}, "b": 1}
    assert generate_evidence_hash(a) == generate_evidence_hash(b)
    assert len(generate_evidence_hash(a)) == 64


def test_hash_ignores_client_details():
    first = build_hash_input([_entry()], [])
    second = build_hash_input([_entry(ip_address="10.9.9.9", user_agent="curl/8")], [])
    assert generate_evidence_hash(first) == generate_evidence_hash(second)


def test_hash_reduces_changed_by_user_to_id_and_name():
    view = build_hash_input([_entry()], [])["history_timeline"][0]
    assert view["changed_by_user"] == {"id": "u-1", "name": "Erin Estimator"}
    assert "ip_address" not in view
    assert view["data"] == '{"project_title":"Gate","total_amount":960.0}'
    assert view["created_at"] == "2026-04-01T14:30:00"


def test_hash_changes_with_content():
    base = compute_package_hash([_entry()], [])
    assert compute_package_hash([_entry(change_reason="Customer asked")], []) != base
    assert compute_package_hash([_entry(), _entry(id="h-2", version=4)], []) != base


def test_hash_changes_with_snapshot_values():
    base = compute_package_hash([_entry()], [])
    changed = _entry(data={"project_title": "Gate", "total_amount": 961.0})
    assert compute_package_hash([changed], []) != base

    nested = {"project_title": "Gate", "customer": {"id": "c-1", "name": "Acme"}}
    renamed = {"project_title": "Gate", "customer": {"id": "c-1", "name": "Acme Ltd"}}
    assert compute_package_hash([_entry(data=nested)], []) != \
        compute_package_hash([_entry(data=renamed)], [])


def test_circular_data_raises_hash_generation_error():
    data = {"name": "loop"}
    data["self"] = data
    with pytest.raises(HashGenerationError):
        compute_package_hash([_entry(data=data)], [])
    with pytest.raises(HashGenerationError):
        generate_evidence_hash(data)


# --- Package builder ---

@pytest.mark.asyncio
async def test_job_evidence_package(db_session, job, material, test_user):
    ctx = AuditContext(user_id=test_user.id)
    for change in ("MATERIAL_ADDED", "MATERIAL_UPDATED", "MATERIAL_REMOVED"):
        await audit_job_change(db_session, job.id, change, ctx, material_changes=[{"material_id": material.id}])
    await _add_document(db_session, test_user, job_id=job.id)

    package = await build_evidence_package(db_session, job_id=job.id)
    meta = package.metadata

    assert meta.total_history_entries == 3
    assert meta.total_documents == 1
    assert meta.primary_entity_type == HistoryEntityType.JOB
    assert meta.primary_entity_id == job.id
    assert meta.generated_by == "system"
    assert len(meta.package_hash) == 64
    assert [e.version for e in package.timeline] == [1, 2, 3]
    assert package.documents[0].uploaded_by_name == "Erin Estimator"

    entity_ids = meta.to_dict()["entity_ids"]
    assert entity_ids["job_id"] == job.id
    assert entity_ids["quote_id"] is None


@pytest.mark.asyncio
async def test_package_hash_is_stable_and_grows_with_history(db_session, job, test_user):
    ctx = AuditContext(user_id=test_user.id)
    await audit_job_change(db_session, job.id, "CREATE", ctx)

    first = await build_evidence_package(db_session, job_id=job.id)
    again = await build_evidence_package(db_session, job_id=job.id)
    assert first.metadata.package_hash == again.metadata.package_hash

    await audit_job_change(db_session, job.id, "STATUS_CHANGE", ctx)
    later = await build_evidence_package(db_session, job_id=job.id)
    assert later.metadata.package_hash != first.metadata.package_hash


@pytest.mark.asyncio
async def test_package_without_ids_is_unknown_and_empty(db_session):
    package = await build_evidence_package(db_session)
    assert package.metadata.primary_entity_type == HistoryEntityType.UNKNOWN
    assert package.metadata.primary_entity_id == "unknown"
    assert package.documents == []
    assert package.timeline == []


@pytest.mark.asyncio
async def test_documents_matching_any_id_are_included(db_session, quote, order, test_user):
    await _add_document(db_session, test_user, quote_id=quote.id)
    await _add_document(db_session, test_user, order_id=order.id)
    await _add_document(db_session, test_user)

    package = await build_evidence_package(db_session, quote_id=quote.id, order_id=order.id)
    assert package.metadata.total_documents == 2
    assert package.metadata.primary_entity_type == HistoryEntityType.QUOTE


# --- Filenames ---

def test_evidence_filename_format():
    now = datetime(2026, 5, 6, 7, 8, 9, 123456)
    assert evidence_filename(HistoryEntityType.JOB, "job-1", "pdf", now) == \
        "legal-evidence-Job_job-1_20260506070809123.pdf"
    assert evidence_filename(HistoryEntityType.UNKNOWN, "unknown", "csv", now).startswith(
        "legal-evidence-Entity_unknown_"
    )


# --- CSV ---

def test_csv_escaping_round_trip():
    tricky = _entry(
        change_reason='Client said "rush", ship Friday\nthen invoice',
        customer_approved=True,
        material_changes=[{"code": "STL, 10mm"}],
        progress_notes=None,
    )
    text = timeline_to_csv([tricky, _entry(id="h-2", customer_approved=None)])
    rows = list(csv.reader(io.StringIO(text)))

    assert rows[0] == CSV_COLUMNS
    assert len(rows) == 3
    row = dict(zip(CSV_COLUMNS, rows[1]))
    assert row["Reason"] == 'Client said "rush", ship Friday\nthen invoice'
    assert row["Customer Approved"] == "Yes"
    assert row["Material Changes"] == '[{"code": "STL, 10mm"}]'
    assert row["Progress Notes"] == ""
    assert row["Changed By User Name"] == "Erin Estimator"
    assert row["Entity Type"] == "ORDER"
    assert dict(zip(CSV_COLUMNS, rows[2]))["Customer Approved"] == ""
    assert not text.endswith("\n")


# --- Export ---

@pytest.mark.asyncio
async def test_export_pdf_writes_file(db_session, job, test_user, evidence_dir):
    ctx = AuditContext(user_id=test_user.id, reason="Initial job setup")
    await audit_job_change(db_session, job.id, "CREATE", ctx)
    await _add_document(db_session, test_user, job_id=job.id)

    export = await export_legal_history(db_session, job_id=job.id, fmt="pdf")

    assert export.content_type == "application/pdf"
    assert export.filename.startswith(f"legal-evidence-Job_{job.id}_")
    assert os.path.dirname(export.file_path) == os.path.realpath(evidence_dir)
    with open(export.file_path, "rb") as f:
        content = f.read()
    assert content.startswith(b"%PDF")
    assert len(content) >= 100


@pytest.mark.asyncio
async def test_pdf_paginates_long_timelines(db_session, job):
    ctx = AuditContext()
    for _ in range(60):
        await audit_job_change(db_session, job.id, "PROGRESS_NOTE", ctx, progress_notes="ok")
    package = await build_evidence_package(db_session, job_id=job.id)

    c = NumberedCanvas(io.BytesIO(), pagesize=A4)
    render_pdf(package, c)

    assert len(c._saved_page_states) >= 2


@pytest.mark.asyncio
async def test_export_csv_writes_file(db_session, order):
    export = await export_legal_history(db_session, order_id=order.id, fmt="CSV")
    assert export.content_type == "text/csv"
    assert export.filename.endswith(".csv")
    with open(export.file_path, encoding="utf-8") as f:
        assert f.readline().startswith("Timestamp,Entity Type,Entity ID")


@pytest.mark.asyncio
async def test_export_rejects_unknown_format(db_session, job):
    with pytest.raises(InvalidInputError):
        await export_legal_history(db_session, job_id=job.id, fmt="docx")


@pytest.mark.asyncio
async def test_export_rejects_ids_with_path_characters(db_session, evidence_dir):
    with pytest.raises(PathSafetyViolation):
        await export_legal_history(db_session, quote_id="../../etc/passwd", fmt="csv")
    assert not evidence_dir.exists()


@pytest.mark.asyncio
async def test_export_times_out(db_session, job, monkeypatch):
    async def slow_build(*args, **kwargs):
        await asyncio.sleep(5)

    monkeypatch.setattr(evidence, "build_evidence_package", slow_build)
    with pytest.raises(EvidenceExportTimeout):
        await export_legal_history(db_session, job_id=job.id, fmt="pdf", timeout=0.05)


@pytest.mark.asyncio
async def test_timed_out_export_leaves_no_file(db_session, job, evidence_dir, monkeypatch):
    written = threading.Event()

    def slow_write(timeline, filename):
        time.sleep(1.0)
        evidence_dir.mkdir(parents=True, exist_ok=True)
        path = evidence_dir / filename
        path.write_text("rendered after the deadline")
        written.set()
        return str(path)

    monkeypatch.setattr(evidence_export, "write_csv_export", slow_write)
    with pytest.raises(EvidenceExportTimeout):
        await export_legal_history(db_session, job_id=job.id, fmt="csv", timeout=0.5)

    await asyncio.to_thread(written.wait, 5)
    await asyncio.sleep(0.1)
    assert list(evidence_dir.glob("*.csv")) == []


@pytest.mark.asyncio
async def test_unwritable_evidence_dir_raises_storage_error(db_session, job, tmp_path, monkeypatch):
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("occupied")
    monkeypatch.setattr(evidence_files, "EVIDENCE_DIR", str(blocker / "evidence"))

    with pytest.raises(EvidenceStorageError):
        await export_legal_history(db_session, job_id=job.id, fmt="csv")
