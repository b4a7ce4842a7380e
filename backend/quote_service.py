# quote_service.py - Quote lifecycle and version chains
"""
A quote reference (``QR-0001``) names a chain of versions. Version 1 is the
root; each later version points at its parent, and exactly one version per
reference is flagged ``is_latest_version``.

Drafts are edited in place. Once a quote leaves DRAFT its content is frozen:
further changes need a new version with a stated reason.
"""
import logging
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from errors import EntityNotFoundError, InvalidInputError, QuoteStateError
from models import (
    CompanySettings, Customer, Order, OrderStatus, Quote, QuoteLineItem,
    QuoteStatus, utcnow,
)

logger = logging.getLogger("fabtrack.quotes")

VAT_RATE = Decimal("0.20")
CLONE_VALIDITY_DAYS = 30
DEFAULT_REFERENCE_PREFIX = "QR"

# A new version cannot be branched from these
LOCKED_STATUSES = {
    QuoteStatus.APPROVED, QuoteStatus.DECLINED,
    QuoteStatus.EXPIRED, QuoteStatus.CONVERTED,
}

EDITABLE_FIELDS = (
    "title", "description", "notes", "valid_until", "customer_reference",
    "contact_name", "contact_email", "contact_phone",
)

CENT = Decimal("0.01")


def _money(value: Any) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENT, rounding=ROUND_HALF_UP)


def _item_value(item: Any, name: str, default: Any = None) -> Any:
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)


def calculate_quote_totals(line_items: Iterable[Any], vat_rate: Decimal = VAT_RATE) -> Dict[str, Decimal]:
    subtotal = sum(
        (Decimal(str(_item_value(i, "quantity", 0) or 0)) * Decimal(str(_item_value(i, "unit_price", 0) or 0))
         for i in line_items),
        Decimal("0"),
    )
    subtotal = _money(subtotal)
    tax = _money(subtotal * vat_rate)
    return {"subtotal": subtotal, "tax": tax, "total": subtotal + tax}


async def generate_quote_reference(db: AsyncSession) -> str:
    """Next reference from company settings; the caller commits."""
    stmt = select(CompanySettings).limit(1).with_for_update()
    result = await db.execute(stmt)
    settings = result.scalar_one_or_none()
    if settings is None:
        settings = CompanySettings(
            quote_reference_prefix=DEFAULT_REFERENCE_PREFIX,
            last_quote_reference_seq=0,
        )
        db.add(settings)

    settings.last_quote_reference_seq = (settings.last_quote_reference_seq or 0) + 1
    prefix = settings.quote_reference_prefix or DEFAULT_REFERENCE_PREFIX
    return f"{prefix}-{settings.last_quote_reference_seq:04d}"


def _build_line_items(items: Iterable[Any]) -> List[QuoteLineItem]:
    return [
        QuoteLineItem(
            position=index,
            material_id=_item_value(item, "material_id"),
            description=_item_value(item, "description") or "",
            quantity=Decimal(str(_item_value(item, "quantity", 1) or 0)),
            unit_price=_money(_item_value(item, "unit_price", 0)),
        )
        for index, item in enumerate(items)
    ]


async def get_quote(db: AsyncSession, quote_id: str, lock: bool = False) -> Quote:
    stmt = (
        select(Quote)
        .where(Quote.id == quote_id)
        .options(selectinload(Quote.line_items), selectinload(Quote.customer))
        .execution_options(populate_existing=True)
    )
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    quote = result.scalar_one_or_none()
    if quote is None:
        raise EntityNotFoundError("QUOTE", quote_id)
    return quote


async def list_quotes(
    db: AsyncSession,
    latest_only: bool = True,
    status: Optional[QuoteStatus] = None,
    customer_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 50,
) -> Tuple[List[Quote], int]:
    stmt = select(Quote)
    if latest_only:
        stmt = stmt.where(Quote.is_latest_version.is_(True))
    if status:
        stmt = stmt.where(Quote.status == status)
    if customer_id:
        stmt = stmt.where(Quote.customer_id == customer_id)

    count_result = await db.execute(select(func.count()).select_from(stmt.subquery()))
    total = count_result.scalar() or 0

    stmt = (
        stmt.options(selectinload(Quote.line_items), selectinload(Quote.customer))
        .order_by(Quote.created_at.desc())
        .execution_options(populate_existing=True)
        .offset(skip)
        .limit(limit)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all()), total


async def get_quote_versions(db: AsyncSession, quote_reference: str) -> List[Quote]:
    stmt = (
        select(Quote)
        .where(Quote.quote_reference == quote_reference)
        .options(selectinload(Quote.line_items), selectinload(Quote.customer))
        .order_by(Quote.version_number.asc())
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    versions = list(result.scalars().all())
    if not versions:
        raise EntityNotFoundError("QUOTE", quote_reference)
    return versions


async def create_quote(db: AsyncSession, data: Dict[str, Any], created_by_id: str) -> Quote:
    if not data.get("customer_id"):
        raise InvalidInputError("Customer is required")
    if not data.get("title"):
        raise InvalidInputError("Quote title is required")
    customer = await db.get(Customer, data["customer_id"])
    if customer is None:
        raise EntityNotFoundError("CUSTOMER", data["customer_id"])

    items = data.get("line_items") or []
    total = data.get("total_amount")
    if total is None:
        total = calculate_quote_totals(items)["total"]

    reference = await generate_quote_reference(db)
    quote = Quote(
        quote_reference=reference,
        version_number=1,
        is_latest_version=True,
        parent_quote_id=None,
        change_reason="Initial creation",
        quote_number=f"{reference}-v1",
        customer_id=customer.id,
        created_by_id=created_by_id,
        status=QuoteStatus(data.get("status") or QuoteStatus.DRAFT),
        total_amount=_money(total),
        **{name: data.get(name) for name in EDITABLE_FIELDS},
    )
    quote.line_items = _build_line_items(items)
    db.add(quote)
    await db.commit()

    logger.info(f"Quote {quote.quote_number} created")
    return await get_quote(db, quote.id)


async def update_draft_quote(db: AsyncSession, quote_id: str, data: Dict[str, Any]) -> Quote:
    """Edit a DRAFT quote in place; the version number does not change."""
    quote = await get_quote(db, quote_id, lock=True)
    if quote.status != QuoteStatus.DRAFT or not quote.is_latest_version:
        raise QuoteStateError(
            "Only the latest DRAFT version can be edited; create a new version instead"
        )

    for name in EDITABLE_FIELDS:
        if name in data:
            setattr(quote, name, data[name])

    if data.get("line_items") is not None:
        quote.line_items = _build_line_items(data["line_items"])
        quote.total_amount = calculate_quote_totals(data["line_items"])["total"]
    if data.get("total_amount") is not None:
        quote.total_amount = _money(data["total_amount"])

    await db.commit()
    return await get_quote(db, quote.id)


async def _spawn_version(
    db: AsyncSession,
    parent: Quote,
    change_reason: str,
    created_by_id: str,
    overrides: Optional[Dict[str, Any]] = None,
) -> Quote:
    """Flip the parent's latest flag and add its successor in one commit."""
    overrides = overrides or {}
    number = parent.version_number + 1

    fields = {name: getattr(parent, name) for name in EDITABLE_FIELDS}
    fields.update({k: v for k, v in overrides.items() if k in EDITABLE_FIELDS})

    items = overrides.get("line_items")
    if items is None:
        items = parent.line_items
        total = overrides.get("total_amount", parent.total_amount)
    else:
        total = overrides.get("total_amount")
        if total is None:
            total = calculate_quote_totals(items)["total"]

    parent.is_latest_version = False
    child = Quote(
        quote_reference=parent.quote_reference,
        version_number=number,
        is_latest_version=True,
        parent_quote_id=parent.id,
        change_reason=change_reason,
        quote_number=f"{parent.quote_reference}-v{number}",
        customer_id=parent.customer_id,
        created_by_id=created_by_id or parent.created_by_id,
        status=overrides.get("status") or QuoteStatus.DRAFT,
        total_amount=_money(total),
        **fields,
    )
    child.line_items = _build_line_items(items)
    db.add(child)
    try:
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Quote {child.quote_number} created from {parent.quote_number}: {change_reason}")
    return await get_quote(db, child.id)


async def create_quote_version(
    db: AsyncSession,
    parent_id: str,
    data: Dict[str, Any],
    change_reason: Optional[str],
    created_by_id: str,
) -> Quote:
    if not change_reason or not change_reason.strip():
        raise InvalidInputError("A change reason is required to create a new quote version")

    parent = await get_quote(db, parent_id, lock=True)
    if not parent.is_latest_version:
        raise QuoteStateError("New versions can only be created from the latest version")
    if parent.status in LOCKED_STATUSES:
        raise QuoteStateError(
            f"Cannot create a new version of a quote with status {parent.status.value}"
        )

    overrides = dict(data)
    overrides.pop("status", None)
    return await _spawn_version(db, parent, change_reason.strip(), created_by_id, overrides)


def _stamp_sent(description: Optional[str]) -> str:
    stamp = f"Sent on: {utcnow().date().isoformat()};"
    description = description or ""
    if stamp in description:
        return description
    return f"{stamp} {description}".strip()


async def update_quote_status(
    db: AsyncSession,
    quote_id: str,
    new_status: QuoteStatus,
    change_reason: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Tuple[Quote, bool]:
    """Move a quote to ``new_status``.

    Returns the resulting quote and whether a new version was created.
    """
    new_status = QuoteStatus(new_status)
    quote = await get_quote(db, quote_id, lock=True)

    if quote.status == new_status:
        return quote, False
    if not quote.is_latest_version:
        raise QuoteStateError("Only the latest version of a quote can change status")
    if quote.status == QuoteStatus.CONVERTED:
        raise QuoteStateError("Converted quotes cannot change status")
    if quote.status == QuoteStatus.EXPIRED and new_status != QuoteStatus.DRAFT:
        raise QuoteStateError("Expired quotes can only be reopened as DRAFT")
    if new_status == QuoteStatus.CONVERTED:
        raise QuoteStateError("Use convert-to-order to convert a quote")

    description = _stamp_sent(quote.description) if new_status == QuoteStatus.SENT else quote.description

    if quote.status == QuoteStatus.DRAFT:
        if not change_reason or not change_reason.strip():
            raise InvalidInputError(
                "A change reason is required when a quote leaves DRAFT"
            )
        child = await _spawn_version(
            db, quote, change_reason.strip(), user_id,
            overrides={"status": new_status, "description": description},
        )
        return child, True

    quote.status = new_status
    quote.description = description
    await db.commit()
    logger.info(f"Quote {quote.quote_number} status set to {new_status.value}")
    return await get_quote(db, quote.id), False


async def clone_quote(db: AsyncSession, quote_id: str, created_by_id: str) -> Quote:
    """Copy a quote into a brand-new reference chain as a fresh DRAFT."""
    source = await get_quote(db, quote_id)
    reference = await generate_quote_reference(db)

    clone = Quote(
        quote_reference=reference,
        version_number=1,
        is_latest_version=True,
        parent_quote_id=None,
        change_reason=f"Cloned from {source.quote_number}",
        quote_number=f"{reference}-v1",
        customer_id=source.customer_id,
        created_by_id=created_by_id,
        status=QuoteStatus.DRAFT,
        total_amount=source.total_amount,
        **{name: getattr(source, name) for name in EDITABLE_FIELDS},
    )
    clone.title = f"{source.title} (Clone)"
    clone.valid_until = utcnow() + timedelta(days=CLONE_VALIDITY_DAYS)
    clone.line_items = _build_line_items(source.line_items)
    db.add(clone)
    await db.commit()

    logger.info(f"Quote {source.quote_number} cloned to {clone.quote_number}")
    return await get_quote(db, clone.id)


async def convert_quote_to_order(db: AsyncSession, quote_id: str, created_by_id: str) -> Tuple[Quote, Order]:
    quote = await get_quote(db, quote_id, lock=True)
    if quote.status != QuoteStatus.APPROVED:
        raise QuoteStateError("Only APPROVED quotes can be converted to orders")

    total = _money(quote.total_amount)
    subtotal = _money(total / (1 + VAT_RATE))
    order = Order(
        project_title=quote.title,
        quote_ref=quote.quote_number,
        status=OrderStatus.IN_PRODUCTION,
        customer_id=quote.customer_id,
        source_quote_id=quote.id,
        created_by_id=created_by_id,
        subtotal=subtotal,
        tax_amount=total - subtotal,
        total_amount=total,
        customer_reference=quote.customer_reference,
        notes=quote.notes,
    )
    quote.status = QuoteStatus.CONVERTED
    db.add(order)
    try:
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Quote {quote.quote_number} converted to order {order.id}")
    return await get_quote(db, quote.id), order
