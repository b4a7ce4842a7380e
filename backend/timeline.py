# timeline.py - Merge the quote, order and job history logs into one timeline
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from history import VARIANTS, TimelineEntry, entries_of
from models import HistoryEntityType

logger = logging.getLogger("fabtrack.timeline")


@dataclass
class CompleteHistory:
    timeline: List[TimelineEntry] = field(default_factory=list)
    quote: List[TimelineEntry] = field(default_factory=list)
    order: List[TimelineEntry] = field(default_factory=list)
    job: List[TimelineEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, list]:
        return {
            "quote": [e.to_dict() for e in self.quote],
            "order": [e.to_dict() for e in self.order],
            "job": [e.to_dict() for e in self.job],
            "timeline": [e.to_dict() for e in self.timeline],
        }


async def fetch_entity_history(
    db: AsyncSession, entity_type: HistoryEntityType, entity_id: str, newest_first: bool = False,
) -> List[TimelineEntry]:
    variant = VARIANTS[entity_type]
    model = variant.history_model
    order = model.created_at.desc() if newest_first else model.created_at.asc()
    stmt = (
        select(model)
        .where(getattr(model, variant.foreign_key) == entity_id)
        .order_by(order)
        .options(selectinload(model.changed_by_user))
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return [TimelineEntry.from_row(row, variant) for row in result.scalars().all()]


async def fetch_history(
    db: AsyncSession,
    quote_id: Optional[str] = None,
    order_id: Optional[str] = None,
    job_id: Optional[str] = None,
) -> List[TimelineEntry]:
    """All history rows for the given ids, oldest first.

    A table that cannot be read is logged and left out; the other tables still
    contribute their rows.
    """
    requested = (
        (HistoryEntityType.QUOTE, quote_id),
        (HistoryEntityType.ORDER, order_id),
        (HistoryEntityType.JOB, job_id),
    )
    timeline: List[TimelineEntry] = []
    for entity_type, entity_id in requested:
        if not entity_id:
            continue
        try:
            # Only the savepoint rolls back; objects the caller loaded stay usable
            async with db.begin_nested():
                entries = await fetch_entity_history(db, entity_type, entity_id)
        except Exception as e:
            logger.error(
                f"Failed to fetch {entity_type.value.lower()} history for {entity_id}: {e}",
                exc_info=True,
            )
            continue
        timeline.extend(entries)

    # sorted() is stable: equal timestamps keep quote, order, job order
    return sorted(timeline, key=lambda e: e.created_at)


async def get_complete_history(
    db: AsyncSession,
    quote_id: Optional[str] = None,
    order_id: Optional[str] = None,
    job_id: Optional[str] = None,
) -> CompleteHistory:
    timeline = await fetch_history(db, quote_id=quote_id, order_id=order_id, job_id=job_id)
    return CompleteHistory(
        timeline=timeline,
        quote=entries_of(timeline, HistoryEntityType.QUOTE),
        order=entries_of(timeline, HistoryEntityType.ORDER),
        job=entries_of(timeline, HistoryEntityType.JOB),
    )
