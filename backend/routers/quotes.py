# routers/quotes.py - Quotes API with version chains
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from audit_events import AuditDispatcher, AuditEvent, get_audit_dispatcher
from audit_service import build_audit_context
from auth import get_current_user, CurrentUser
from database import get_db_session
from history import to_json_value
from models import HistoryEntityType, Quote, QuoteStatus
import quote_service

router = APIRouter(prefix="/api/v1/quotes", tags=["Quotes"])

STATUS_CHANGE_TYPES = {
    QuoteStatus.APPROVED: "APPROVED",
    QuoteStatus.DECLINED: "REJECTED",
}


# --- Schemas ---

class LineItemIn(BaseModel):
    description: str = Field(..., min_length=1)
    quantity: float = Field(default=1, ge=0)
    unit_price: float = Field(default=0, ge=0)
    material_id: Optional[str] = None


class QuoteFields(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    valid_until: Optional[datetime] = None
    customer_reference: Optional[str] = None
    contact_name: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    total_amount: Optional[float] = None
    line_items: Optional[List[LineItemIn]] = None


class QuoteCreate(QuoteFields):
    customer_id: str
    title: str = Field(..., min_length=1, max_length=255)


class QuoteVersionCreate(QuoteFields):
    change_reason: str = Field(..., min_length=1)


class QuoteStatusChange(BaseModel):
    status: QuoteStatus
    change_reason: Optional[str] = None


# --- Helpers ---

def _quote_to_out(q: Quote) -> dict:
    return {
        "id": q.id,
        "quote_reference": q.quote_reference,
        "quote_number": q.quote_number,
        "version_number": q.version_number,
        "is_latest_version": q.is_latest_version,
        "parent_quote_id": q.parent_quote_id,
        "change_reason": q.change_reason,
        "customer_id": q.customer_id,
        "customer_name": q.customer.name if q.customer else None,
        "title": q.title,
        "description": q.description,
        "notes": q.notes,
        "status": to_json_value(q.status),
        "valid_until": to_json_value(q.valid_until),
        "customer_reference": q.customer_reference,
        "total_amount": to_json_value(q.total_amount),
        "current_version": q.current_version,
        "line_items": [
            {
                "id": li.id,
                "material_id": li.material_id,
                "description": li.description,
                "quantity": to_json_value(li.quantity),
                "unit_price": to_json_value(li.unit_price),
            }
            for li in q.line_items
        ],
        "created_at": to_json_value(q.created_at),
        "updated_at": to_json_value(q.updated_at),
    }


def _fields(body: BaseModel) -> dict:
    return body.model_dump(exclude_unset=True)


def _emit(
    dispatcher: AuditDispatcher,
    request: Request,
    user: CurrentUser,
    entity_type: HistoryEntityType,
    entity_id: str,
    change_type: str,
    reason: Optional[str] = None,
) -> None:
    dispatcher.emit(AuditEvent(
        entity_type=entity_type,
        entity_id=entity_id,
        change_type=change_type,
        context=build_audit_context(request, user.id, reason),
    ))


# --- Endpoints ---

@router.get("")
async def list_quotes(
    latest_only: bool = True,
    status: Optional[QuoteStatus] = None,
    customer_id: Optional[str] = None,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    quotes, total = await quote_service.list_quotes(
        db, latest_only=latest_only, status=status, customer_id=customer_id, skip=skip, limit=limit,
    )
    return {"quotes": [_quote_to_out(q) for q in quotes], "total": total}


@router.post("", status_code=201)
async def create_quote(
    body: QuoteCreate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    dispatcher: AuditDispatcher = Depends(get_audit_dispatcher),
):
    quote = await quote_service.create_quote(db, _fields(body), created_by_id=user.id)
    _emit(dispatcher, request, user, HistoryEntityType.QUOTE, quote.id, "CREATE", quote.change_reason)
    return _quote_to_out(quote)


@router.get("/history/{quote_reference}")
async def get_quote_versions(
    quote_reference: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """All versions of a quote reference, oldest first"""
    versions = await quote_service.get_quote_versions(db, quote_reference)
    return [_quote_to_out(q) for q in versions]


@router.get("/{quote_id}")
async def get_quote(
    quote_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    quote = await quote_service.get_quote(db, quote_id)
    return _quote_to_out(quote)


@router.put("/{quote_id}")
async def update_draft_quote(
    quote_id: str,
    body: QuoteFields,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    dispatcher: AuditDispatcher = Depends(get_audit_dispatcher),
):
    """Edit a draft in place"""
    quote = await quote_service.update_draft_quote(db, quote_id, _fields(body))
    _emit(dispatcher, request, user, HistoryEntityType.QUOTE, quote.id, "UPDATE")
    return _quote_to_out(quote)


@router.patch("/{quote_id}/status")
async def change_quote_status(
    quote_id: str,
    body: QuoteStatusChange,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    dispatcher: AuditDispatcher = Depends(get_audit_dispatcher),
):
    """Leaving DRAFT creates a new version and needs a change reason"""
    quote, new_version = await quote_service.update_quote_status(
        db, quote_id, body.status, change_reason=body.change_reason, user_id=user.id,
    )
    change_type = STATUS_CHANGE_TYPES.get(body.status, "STATUS_CHANGE")
    _emit(dispatcher, request, user, HistoryEntityType.QUOTE, quote.id, change_type, body.change_reason)
    return {"quote": _quote_to_out(quote), "new_version": new_version}


@router.post("/{quote_id}/versions", status_code=201)
async def create_quote_version(
    quote_id: str,
    body: QuoteVersionCreate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    dispatcher: AuditDispatcher = Depends(get_audit_dispatcher),
):
    data = _fields(body)
    data.pop("change_reason", None)
    quote = await quote_service.create_quote_version(
        db, quote_id, data, body.change_reason, created_by_id=user.id,
    )
    _emit(dispatcher, request, user, HistoryEntityType.QUOTE, quote.id, "CREATE", body.change_reason)
    return _quote_to_out(quote)


@router.post("/{quote_id}/clone", status_code=201)
async def clone_quote(
    quote_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    dispatcher: AuditDispatcher = Depends(get_audit_dispatcher),
):
    quote = await quote_service.clone_quote(db, quote_id, created_by_id=user.id)
    _emit(dispatcher, request, user, HistoryEntityType.QUOTE, quote.id, "CLONE", quote.change_reason)
    return _quote_to_out(quote)


@router.post("/{quote_id}/convert-to-order", status_code=201)
async def convert_quote_to_order(
    quote_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    dispatcher: AuditDispatcher = Depends(get_audit_dispatcher),
):
    quote, order = await quote_service.convert_quote_to_order(db, quote_id, created_by_id=user.id)
    reason = f"Converted from quote {quote.quote_number}"
    _emit(dispatcher, request, user, HistoryEntityType.QUOTE, quote.id, "CONVERT", reason)
    _emit(dispatcher, request, user, HistoryEntityType.ORDER, order.id, "CREATE", reason)
    return {
        "quote": _quote_to_out(quote),
        "order": {
            "id": order.id,
            "project_title": order.project_title,
            "quote_ref": order.quote_ref,
            "status": to_json_value(order.status),
            "total_amount": to_json_value(order.total_amount),
        },
    }
