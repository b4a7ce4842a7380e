"""Tests for the history log writer"""
import hashlib

import pytest
from sqlalchemy import func, select
from starlette.requests import Request

from audit_service import (
    AuditContext, CustomerApproval, audit_change, audit_job_change,
    audit_order_change, audit_quote_change, build_audit_context, log_document_upload,
)
from errors import EntityNotFoundError, InvalidInputError
from models import HistoryEntityType, Job, JobHistory, OrderHistory, Quote, QuoteHistory, utcnow


def _request(headers=None, client=("203.0.113.7", 50211)) -> Request:
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "method": "POST", "path": "/", "headers": raw, "client": client})


async def _current_version(db_session, model, entity_id) -> int:
    stmt = select(model).where(model.id == entity_id).execution_options(populate_existing=True)
    return (await db_session.execute(stmt)).scalar_one().current_version


def test_build_audit_context_defaults_to_system():
    ctx = build_audit_context(_request({"User-Agent": "pytest-agent"}))
    assert ctx.user_id == "system"
    assert ctx.ip_address == "203.0.113.7"
    assert ctx.user_agent == "pytest-agent"
    assert ctx.reason is None


def test_build_audit_context_prefers_forwarded_ip():
    ctx = build_audit_context(
        _request({"X-Forwarded-For": "198.51.100.4, 10.0.0.1"}), user_id="u-1", reason="Price change",
    )
    assert ctx.user_id == "u-1"
    assert ctx.ip_address == "198.51.100.4"
    assert ctx.reason == "Price change"


def test_build_audit_context_without_request():
    ctx = build_audit_context(None)
    assert ctx.user_id == "system"
    assert ctx.ip_address is None


@pytest.mark.asyncio
async def test_version_increments_on_each_bumping_change(db_session, quote, test_user):
    ctx = AuditContext(user_id=test_user.id)
    versions = []
    for change in ("CREATE", "UPDATE", "STATUS_CHANGE", "APPROVED"):
        row = await audit_quote_change(db_session, quote.id, change, ctx)
        versions.append(row.version)

    assert versions == [1, 2, 3, 4]
    assert await _current_version(db_session, Quote, quote.id) == 4


@pytest.mark.asyncio
async def test_non_bumping_change_records_current_version(db_session, job):
    ctx = AuditContext()
    first = await audit_job_change(db_session, job.id, "CREATE", ctx)
    note = await audit_job_change(db_session, job.id, "PROGRESS_NOTE", ctx, progress_notes="Cutting done")

    assert first.version == 1
    assert note.version == 1
    assert note.progress_notes == "Cutting done"
    assert note.changed_by == "system"
    assert await _current_version(db_session, Job, job.id) == 1


@pytest.mark.asyncio
async def test_material_changes_bump_job_version(db_session, job, material):
    ctx = AuditContext(reason="Material list revised")
    changes = [{"material_id": material.id, "quantity": 4}]
    row = await audit_job_change(db_session, job.id, "MATERIAL_ADDED", ctx, material_changes=changes)
    assert row.version == 1
    assert row.material_changes == changes
    assert row.change_reason == "Material list revised"


@pytest.mark.asyncio
async def test_missing_entity_raises_and_writes_nothing(db_session):
    with pytest.raises(EntityNotFoundError):
        await audit_change(db_session, HistoryEntityType.QUOTE, "does-not-exist", "UPDATE", AuditContext())

    count = (await db_session.execute(select(func.count()).select_from(QuoteHistory))).scalar()
    assert count == 0


@pytest.mark.asyncio
async def test_unknown_entity_type_is_rejected(db_session, quote):
    with pytest.raises(InvalidInputError):
        await audit_change(db_session, "invoice", quote.id, "UPDATE", AuditContext())


@pytest.mark.asyncio
async def test_snapshot_includes_related_records(db_session, quote, customer, material):
    row = await audit_quote_change(db_session, quote.id, "CREATE", AuditContext())
    data = row.data

    assert data["quote_number"] == "QR-0001-v1"
    assert data["status"] == "DRAFT"
    assert data["current_version"] == 1
    assert data["customer"]["name"] == customer.name
    assert data["created_by"]["email"] == "estimator@fabtrack.dev"
    plate = next(li for li in data["line_items"] if li["description"] == "Plate")
    assert plate["material"]["code"] == material.code
    assert plate["unit_price"] == 40.0
    assert isinstance(data["created_at"], str)


@pytest.mark.asyncio
async def test_order_customer_approval_is_recorded(db_session, order):
    signed_at = utcnow()
    row = await audit_order_change(
        db_session, order.id, "APPROVED", AuditContext(reason="Signed off on site"),
        customer_approval=CustomerApproval(approved=True, signature="P. Buyer", timestamp=signed_at),
    )
    stored = (await db_session.execute(select(OrderHistory).where(OrderHistory.id == row.id))).scalar_one()

    assert stored.version == 1
    assert stored.customer_approved is True
    assert stored.customer_signature == "P. Buyer"
    assert stored.approval_timestamp is not None
    assert stored.data["project_owner"]["name"] == "Erin Estimator"


@pytest.mark.asyncio
async def test_log_document_upload_hashes_and_audits_links(db_session, quote, job, test_user):
    content = b"%PDF-1.4 drawing revision C" * 10
    document = await log_document_upload(db_session, {
        "name": "mezzanine-drawing.pdf",
        "mime_type": "application/pdf",
        "storage_path": "uploads/docs/mezzanine-drawing.pdf",
        "quote_id": quote.id,
        "job_id": job.id,
    }, uploaded_by=test_user.id, content=content)

    assert document.file_hash == hashlib.sha256(content).hexdigest()
    assert document.file_size == len(content)

    quote_rows = (await db_session.execute(
        select(QuoteHistory).where(QuoteHistory.quote_id == quote.id)
    )).scalars().all()
    job_rows = (await db_session.execute(
        select(JobHistory).where(JobHistory.job_id == job.id)
    )).scalars().all()

    assert [r.change_type for r in quote_rows] == ["DOCUMENT_UPLOADED"]
    assert quote_rows[0].change_reason == "Document uploaded: mezzanine-drawing.pdf"
    assert quote_rows[0].changed_by == test_user.id
    assert quote_rows[0].data["documents"][0]["file_hash"] == document.file_hash
    assert job_rows[0].attachments[0]["id"] == document.id


@pytest.mark.asyncio
async def test_log_document_upload_requires_content(db_session, quote, test_user):
    with pytest.raises(InvalidInputError):
        await log_document_upload(db_session, {
            "name": "empty.pdf", "storage_path": "uploads/docs/empty.pdf", "quote_id": quote.id,
        }, uploaded_by=test_user.id, content=b"")
