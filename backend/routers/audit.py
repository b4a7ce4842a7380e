# routers/audit.py - Audit trail, evidence packages and evidence downloads
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import func, literal, select, union_all
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, require_min_role, CurrentUser
from database import get_db_session
from errors import EntityNotFoundError, InvalidInputError, NotImplementedFeature
from evidence import export_legal_history
from evidence_files import evidence_file_response
from history import VARIANTS, get_variant, to_json_value
from models import HistoryEntityType, User, UserRole
from timeline import fetch_entity_history, get_complete_history

logger = logging.getLogger("fabtrack.audit.api")

router = APIRouter(prefix="/api/v1/audit", tags=["Audit Trail"])

DOWNLOAD_PREFIX = "/api/v1/audit/download"


# --- Schemas ---

class EvidenceRequest(BaseModel):
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    format: Optional[str] = "pdf"


class SignatureVerifyRequest(BaseModel):
    document_id: Optional[str] = None
    signature: Optional[str] = None


# --- Helpers ---

async def _require_entity(db: AsyncSession, entity_type: HistoryEntityType, entity_id: str):
    variant = VARIANTS[entity_type]
    entity = await db.get(variant.model, entity_id)
    if entity is None:
        raise EntityNotFoundError(entity_type.value, entity_id)
    return entity


def _entity_title(entity) -> str:
    return getattr(entity, "title", None) or getattr(entity, "project_title", None) or entity.id


def _history_union(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    change_type: Optional[str] = None,
    changed_by: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
):
    """All three history tables as one selectable with a shared column set."""
    variants = [get_variant(entity_type)] if entity_type else list(VARIANTS.values())
    selects = []
    for variant in variants:
        model = variant.history_model
        fk = getattr(model, variant.foreign_key)
        stmt = select(
            model.id.label("id"),
            literal(variant.entity_type.value).label("entity_type"),
            fk.label("entity_id"),
            model.change_type.label("change_type"),
            model.version.label("version"),
            model.status.label("status"),
            model.changed_by.label("changed_by"),
            model.change_reason.label("change_reason"),
            model.created_at.label("created_at"),
        )
        if entity_id:
            stmt = stmt.where(fk == entity_id)
        if change_type:
            stmt = stmt.where(model.change_type == change_type)
        if changed_by:
            stmt = stmt.where(model.changed_by == changed_by)
        if date_from:
            stmt = stmt.where(model.created_at >= date_from)
        if date_to:
            stmt = stmt.where(model.created_at <= date_to)
        selects.append(stmt)
    return union_all(*selects).subquery("history")


async def _user_names(db: AsyncSession, user_ids) -> dict:
    ids = {uid for uid in user_ids if uid and uid != "system"}
    if not ids:
        return {}
    result = await db.execute(select(User.id, User.name).where(User.id.in_(ids)))
    return {row.id: row.name for row in result.all()}


def _row_out(row, names: dict) -> dict:
    return {
        "id": row["id"],
        "entity_type": row["entity_type"],
        "entity_id": row["entity_id"],
        "change_type": row["change_type"],
        "version": row["version"],
        "status": row["status"],
        "changed_by": row["changed_by"],
        "changed_by_name": names.get(row["changed_by"]),
        "change_reason": row["change_reason"],
        "created_at": to_json_value(row["created_at"]),
    }


async def _generate_evidence(db, user: CurrentUser, body: EvidenceRequest) -> dict:
    if not body.entity_type or not body.entity_id:
        raise InvalidInputError("entity_type and entity_id are required")
    variant = get_variant(body.entity_type)
    title = _entity_title(await _require_entity(db, variant.entity_type, body.entity_id))

    export = await export_legal_history(
        db,
        fmt=body.format or "pdf",
        **{variant.foreign_key: body.entity_id},
    )
    meta = export.package.metadata
    logger.info(
        f"Evidence package {export.filename} generated by {user.id} for "
        f"{variant.entity_type.value} '{title}'"
    )
    return {
        "download_url": f"{DOWNLOAD_PREFIX}/{export.filename}",
        "format": (body.format or "pdf").lower(),
        "generated_at": meta.generated_at.isoformat(),
        "package_hash": meta.package_hash,
        "total_history_entries": meta.total_history_entries,
        "total_documents": meta.total_documents,
    }


# --- History ---

@router.get("/quote/{quote_id}")
async def get_quote_history(
    quote_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Raw quote history, newest first"""
    entries = await fetch_entity_history(db, HistoryEntityType.QUOTE, quote_id, newest_first=True)
    return [e.to_dict() for e in entries]


@router.get("/order/{order_id}")
async def get_order_history(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    entries = await fetch_entity_history(db, HistoryEntityType.ORDER, order_id, newest_first=True)
    return [e.to_dict() for e in entries]


@router.get("/job/{job_id}")
async def get_job_history(
    job_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    entries = await fetch_entity_history(db, HistoryEntityType.JOB, job_id, newest_first=True)
    return [e.to_dict() for e in entries]


@router.get("/complete")
async def get_complete_audit_history(
    quote_id: Optional[str] = None,
    order_id: Optional[str] = None,
    job_id: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Merged timeline across quote, order and job, oldest first"""
    if not (quote_id or order_id or job_id):
        raise InvalidInputError("At least one of quote_id, order_id or job_id is required")
    history = await get_complete_history(db, quote_id=quote_id, order_id=order_id, job_id=job_id)
    return history.to_dict()


# --- Evidence ---

@router.get("/evidence-package")
async def get_evidence_package(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    format: Optional[str] = Query(default="pdf"),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    body = EvidenceRequest(entity_type=entity_type, entity_id=entity_id, format=format)
    return await _generate_evidence(db, user, body)


@router.post("/evidence-package")
async def create_evidence_package(
    body: EvidenceRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Generate a sealed evidence export and return where to download it"""
    return await _generate_evidence(db, user, body)


@router.get("/download/{entity_type}/{entity_id}")
async def download_entity_evidence(
    entity_type: str,
    entity_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Generate and stream a PDF evidence package in one call"""
    variant = get_variant(entity_type)
    title = _entity_title(await _require_entity(db, variant.entity_type, entity_id))
    export = await export_legal_history(db, fmt="pdf", **{variant.foreign_key: entity_id})
    logger.info(
        f"Evidence PDF for {variant.entity_type.value} '{title}' "
        f"downloaded by {user.id}"
    )
    return evidence_file_response(export.filename)


@router.get("/download/{filename}")
async def download_evidence_file(
    filename: str,
    user: CurrentUser = Depends(get_current_user),
):
    return evidence_file_response(filename)


# --- Search & statistics ---

@router.get("/search")
async def search_audit_history(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    change_type: Optional[str] = None,
    changed_by: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=500),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Search all history tables at once, newest first, paginated as one list"""
    history = _history_union(entity_type, entity_id, change_type, changed_by, date_from, date_to)

    count_result = await db.execute(select(func.count()).select_from(history))
    total = count_result.scalar() or 0

    stmt = (
        select(history)
        .order_by(history.c.created_at.desc(), history.c.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    rows = (await db.execute(stmt)).mappings().all()
    names = await _user_names(db, [r["changed_by"] for r in rows])

    return {
        "results": [_row_out(r, names) for r in rows],
        "total": total,
        "page": page,
        "limit": limit,
        "pages": (total + limit - 1) // limit,
    }


@router.get("/statistics")
async def get_audit_statistics(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    user: CurrentUser = Depends(require_min_role(UserRole.MANAGER)),
    db: AsyncSession = Depends(get_db_session),
):
    history = _history_union(date_from=date_from, date_to=date_to)

    by_type_stmt = (
        select(history.c.entity_type, history.c.change_type, func.count().label("n"))
        .group_by(history.c.entity_type, history.c.change_type)
    )
    changes_by_type = {
        f"{row.entity_type}_{row.change_type}": row.n
        for row in (await db.execute(by_type_stmt)).all()
    }

    by_user_stmt = (
        select(history.c.changed_by, func.count().label("n"))
        .group_by(history.c.changed_by)
        .order_by(func.count().desc())
    )
    user_rows = (await db.execute(by_user_stmt)).all()
    names = await _user_names(db, [r.changed_by for r in user_rows])
    changes_by_user = [
        {"user_id": r.changed_by, "name": names.get(r.changed_by), "count": r.n}
        for r in user_rows
    ]

    recent_stmt = select(history).order_by(history.c.created_at.desc(), history.c.id).limit(10)
    recent_rows = (await db.execute(recent_stmt)).mappings().all()
    recent_names = await _user_names(db, [r["changed_by"] for r in recent_rows])

    return {
        "total_changes": sum(changes_by_type.values()),
        "changes_by_type": changes_by_type,
        "changes_by_user": changes_by_user,
        "recent_activity": [_row_out(r, recent_names) for r in recent_rows],
        "trend": {"status": "not_implemented"},
    }


@router.post("/verify-signature")
async def verify_signature(
    body: SignatureVerifyRequest,
    user: CurrentUser = Depends(get_current_user),
):
    raise NotImplementedFeature("Digital signature verification is not implemented")
