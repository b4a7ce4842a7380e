# audit_service.py - Append-only history writer for quotes, orders and jobs
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from errors import AuditWriteFailure, EntityNotFoundError, InvalidInputError
from history import get_variant, serialize_entity, to_json_value
from models import Document, HistoryEntityType

logger = logging.getLogger("fabtrack.audit")

SYSTEM_ACTOR = "system"


@dataclass
class AuditContext:
    user_id: str = SYSTEM_ACTOR
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class CustomerApproval:
    approved: bool
    signature: Optional[str] = None
    timestamp: Optional[datetime] = None


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def build_audit_context(
    request: Optional[Request],
    user_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> AuditContext:
    """Actor and client details for a history row. Unauthenticated calls are
    attributed to ``system``."""
    if request is None:
        return AuditContext(user_id=user_id or SYSTEM_ACTOR, reason=reason)
    return AuditContext(
        user_id=user_id or SYSTEM_ACTOR,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        reason=reason,
    )


async def audit_change(
    db: AsyncSession,
    entity_type,
    entity_id: str,
    change_type: str,
    context: AuditContext,
    extras: Optional[Dict[str, Any]] = None,
):
    """Record one change of a quote, order or job.

    The entity row is locked, its version counter advanced when the change type
    requires it, and the history row (carrying the post-increment version and a
    full snapshot) inserted, all under a single commit.
    """
    variant = get_variant(entity_type)
    model = variant.model
    stmt = (
        select(model)
        .where(model.id == entity_id)
        .options(*variant.loader_options())
        .with_for_update()
        .execution_options(populate_existing=True)
    )

    try:
        result = await db.execute(stmt)
        entity = result.scalar_one_or_none()
        if entity is None:
            raise EntityNotFoundError(variant.entity_type.value, entity_id)

        if variant.bumps_version(change_type):
            entity.current_version = (entity.current_version or 0) + 1

        extra_columns = {
            name: value
            for name, value in (extras or {}).items()
            if name in variant.extra_fields
        }
        row = variant.history_model(
            change_type=change_type,
            version=entity.current_version,
            status=to_json_value(entity.status),
            data=serialize_entity(entity, variant.snapshot_relations),
            changed_by=context.user_id or SYSTEM_ACTOR,
            change_reason=context.reason,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            **{variant.foreign_key: entity.id},
            **extra_columns,
        )
        db.add(row)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.debug(
        f"{variant.label} {entity_id} {change_type} recorded at version {row.version}"
    )
    return row


async def audit_quote_change(db: AsyncSession, quote_id: str, change_type: str, context: AuditContext):
    return await audit_change(db, HistoryEntityType.QUOTE, quote_id, change_type, context)


async def audit_order_change(
    db: AsyncSession,
    order_id: str,
    change_type: str,
    context: AuditContext,
    customer_approval: Optional[CustomerApproval] = None,
):
    extras = None
    if customer_approval is not None:
        extras = {
            "customer_approved": customer_approval.approved,
            "customer_signature": customer_approval.signature,
            "approval_timestamp": customer_approval.timestamp,
        }
    return await audit_change(db, HistoryEntityType.ORDER, order_id, change_type, context, extras)


async def audit_job_change(
    db: AsyncSession,
    job_id: str,
    change_type: str,
    context: AuditContext,
    material_changes: Optional[Any] = None,
    progress_notes: Optional[str] = None,
    attachments: Optional[Any] = None,
):
    extras = {
        "material_changes": material_changes,
        "progress_notes": progress_notes,
        "attachments": attachments,
    }
    return await audit_change(db, HistoryEntityType.JOB, job_id, change_type, context, extras)


# ============================================================
# DOCUMENT UPLOADS
# ============================================================

async def log_document_upload(
    db: AsyncSession,
    document_data: Dict[str, Any],
    uploaded_by: str,
    content: bytes,
    context: Optional[AuditContext] = None,
) -> Document:
    """Store document metadata with the SHA-256 of its content and record
    DOCUMENT_UPLOADED on every quote, order and job it is linked to."""
    if not content:
        raise InvalidInputError("No file content provided")
    if not document_data.get("storage_path"):
        raise InvalidInputError("Document storage path is required")
    if not document_data.get("name"):
        raise InvalidInputError("Document name is required")
    if not uploaded_by:
        raise InvalidInputError("Uploader is required")

    document = Document(
        name=document_data["name"],
        original_name=document_data.get("original_name") or document_data["name"],
        mime_type=document_data.get("mime_type") or "application/octet-stream",
        file_size=len(content),
        file_hash=hashlib.sha256(content).hexdigest(),
        storage_path=document_data["storage_path"],
        category=document_data.get("category"),
        quote_id=document_data.get("quote_id"),
        order_id=document_data.get("order_id"),
        job_id=document_data.get("job_id"),
        uploaded_by=uploaded_by,
    )
    db.add(document)
    await db.commit()
    await db.refresh(document)

    base = context or AuditContext(user_id=uploaded_by)
    upload_context = AuditContext(
        user_id=base.user_id,
        ip_address=base.ip_address,
        user_agent=base.user_agent,
        reason=f"Document uploaded: {document.name}",
    )
    links = (
        (HistoryEntityType.QUOTE, document.quote_id),
        (HistoryEntityType.ORDER, document.order_id),
        (HistoryEntityType.JOB, document.job_id),
    )
    for entity_type, entity_id in links:
        if not entity_id:
            continue
        extras = None
        if entity_type == HistoryEntityType.JOB:
            extras = {"attachments": [{"id": document.id, "name": document.name, "file_hash": document.file_hash}]}
        try:
            await audit_change(db, entity_type, entity_id, "DOCUMENT_UPLOADED", upload_context, extras)
        except Exception as e:
            failure = AuditWriteFailure(
                f"DOCUMENT_UPLOADED for {entity_type.value} {entity_id}: {e}"
            )
            logger.error(f"[{failure.code}] {failure.detail}", exc_info=True)

    return document
