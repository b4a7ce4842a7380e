# history.py - Entity variants over the three history tables
"""
Quotes, orders and jobs keep structurally identical history logs. Instead of
three copies of the audit and timeline code, each entity is described once by
a ``HistoryVariant``: which model it is, which history table it writes to,
which change types advance its version counter, and which relations make up a
complete snapshot. ``TimelineEntry`` is the entity-tagged view of any history
row, whichever table it came from.
"""
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import inspect
from sqlalchemy.orm import selectinload

from errors import InvalidInputError
from models import (
    HistoryEntityType, Quote, QuoteHistory, Order, OrderHistory, Job, JobHistory,
)

# Relation trees: {relationship_name: {nested_relationship: {...}}}
RelationTree = Dict[str, Dict[str, Any]]

QUOTE_ORDER_VERSION_CHANGES = frozenset({
    "CREATE", "UPDATE", "STATUS_CHANGE", "APPROVED", "REJECTED",
    "CLONE", "CONVERT", "DOCUMENT_UPLOADED",
})

JOB_VERSION_CHANGES = frozenset({
    "CREATE", "UPDATE", "STATUS_CHANGE", "MATERIAL_ADDED",
    "MATERIAL_REMOVED", "MATERIAL_UPDATED", "DOCUMENT_UPLOADED",
})


@dataclass(frozen=True)
class HistoryVariant:
    entity_type: HistoryEntityType
    model: type
    history_model: type
    foreign_key: str
    version_changes: frozenset
    snapshot_relations: RelationTree
    extra_fields: Tuple[str, ...] = ()

    @property
    def label(self) -> str:
        return self.entity_type.value.title()

    def bumps_version(self, change_type: str) -> bool:
        return change_type in self.version_changes

    def loader_options(self) -> list:
        return loader_options(self.model, self.snapshot_relations)


VARIANTS: Dict[HistoryEntityType, HistoryVariant] = {
    HistoryEntityType.QUOTE: HistoryVariant(
        entity_type=HistoryEntityType.QUOTE,
        model=Quote,
        history_model=QuoteHistory,
        foreign_key="quote_id",
        version_changes=QUOTE_ORDER_VERSION_CHANGES,
        snapshot_relations={
            "customer": {},
            "line_items": {"material": {}},
            "created_by": {},
            "documents": {},
        },
    ),
    HistoryEntityType.ORDER: HistoryVariant(
        entity_type=HistoryEntityType.ORDER,
        model=Order,
        history_model=OrderHistory,
        foreign_key="order_id",
        version_changes=QUOTE_ORDER_VERSION_CHANGES,
        snapshot_relations={
            "customer": {},
            "created_by": {},
            "project_owner": {},
            "documents": {},
        },
        extra_fields=("customer_approved", "customer_signature", "approval_timestamp"),
    ),
    HistoryEntityType.JOB: HistoryVariant(
        entity_type=HistoryEntityType.JOB,
        model=Job,
        history_model=JobHistory,
        foreign_key="job_id",
        version_changes=JOB_VERSION_CHANGES,
        snapshot_relations={
            "customer": {},
            "materials": {"material": {}},
            "documents": {},
        },
        extra_fields=("material_changes", "progress_notes", "attachments"),
    ),
}


def get_variant(entity_type) -> HistoryVariant:
    try:
        return VARIANTS[HistoryEntityType(str(entity_type).upper())]
    except (ValueError, KeyError):
        raise InvalidInputError(
            f"Invalid entity type: {entity_type}. Must be QUOTE, ORDER, or JOB"
        )


def loader_options(model: type, tree: RelationTree, parent=None) -> list:
    """Turn a relation tree into chained ``selectinload`` options."""
    options = []
    for name, children in tree.items():
        attr = getattr(model, name)
        option = parent.selectinload(attr) if parent is not None else selectinload(attr)
        target = attr.property.mapper.class_
        if children:
            options.extend(loader_options(target, children, option))
        else:
            options.append(option)
    return options


# ============================================================
# SNAPSHOT SERIALISATION
# ============================================================

def to_json_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    return value


def serialize_entity(obj: Any, relations: Optional[RelationTree] = None) -> Dict[str, Any]:
    """Column values plus the given (already loaded) relations, JSON-safe."""
    mapper = inspect(obj).mapper
    out = {attr.key: to_json_value(getattr(obj, attr.key)) for attr in mapper.column_attrs}
    for name, children in (relations or {}).items():
        value = getattr(obj, name)
        if value is None:
            out[name] = None
        elif isinstance(value, (list, tuple)):
            out[name] = [serialize_entity(item, children) for item in value]
        else:
            out[name] = serialize_entity(value, children)
    return out


# ============================================================
# TIMELINE ENTRY
# ============================================================

@dataclass
class TimelineEntry:
    """One history row, tagged with the entity it belongs to."""
    id: str
    entity_type: HistoryEntityType
    entity_id: str
    change_type: str
    version: int
    status: Optional[str]
    data: Dict[str, Any]
    changed_by: str
    created_at: datetime
    change_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    changed_by_user: Optional[Dict[str, Any]] = None
    customer_approved: Optional[bool] = None
    customer_signature: Optional[str] = None
    approval_timestamp: Optional[datetime] = None
    material_changes: Optional[Any] = None
    progress_notes: Optional[str] = None
    attachments: Optional[Any] = None

    @classmethod
    def from_row(cls, row, variant: HistoryVariant) -> "TimelineEntry":
        user = row.changed_by_user
        extras = {name: getattr(row, name) for name in variant.extra_fields}
        return cls(
            id=row.id,
            entity_type=variant.entity_type,
            entity_id=getattr(row, variant.foreign_key),
            change_type=row.change_type,
            version=row.version,
            status=row.status,
            data=row.data or {},
            changed_by=row.changed_by,
            created_at=row.created_at,
            change_reason=row.change_reason,
            ip_address=row.ip_address,
            user_agent=row.user_agent,
            changed_by_user={"id": user.id, "name": user.name, "email": user.email} if user else None,
            **extras,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "change_type": self.change_type,
            "version": self.version,
            "status": self.status,
            "data": self.data,
            "changed_by": self.changed_by,
            "changed_by_user": self.changed_by_user,
            "change_reason": self.change_reason,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": to_json_value(self.created_at),
            "customer_approved": self.customer_approved,
            "customer_signature": self.customer_signature,
            "approval_timestamp": to_json_value(self.approval_timestamp),
            "material_changes": self.material_changes,
            "progress_notes": self.progress_notes,
            "attachments": self.attachments,
        }


def entries_of(timeline: List[TimelineEntry], entity_type: HistoryEntityType) -> List[TimelineEntry]:
    return [e for e in timeline if e.entity_type == entity_type]
