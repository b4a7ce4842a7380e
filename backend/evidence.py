# evidence.py - Legal evidence packages with a deterministic SHA-256 seal
"""
An evidence package bundles the merged history timeline of a quote, order and
job together with the documents linked to any of them, and seals both with a
SHA-256 hash over a canonical JSON rendering.

Canonical rendering rules:
- object keys sorted at every depth, compact separators;
- timestamps rendered as ISO-8601 strings;
- nested snapshots (data, material_changes, attachments) pre-stringified the
  same way;
- client details (IP address, user agent) and document storage paths are left
  out, so moving storage or replaying from another client keeps the hash.
"""
import asyncio
import hashlib
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

import evidence_export
from errors import EvidenceExportTimeout, HashGenerationError, InvalidInputError, PathSafetyViolation
from history import TimelineEntry, to_json_value
from models import Document, HistoryEntityType, utcnow
from telemetry import span
from timeline import CompleteHistory, get_complete_history

logger = logging.getLogger("fabtrack.evidence")

EVIDENCE_EXPORT_TIMEOUT_SECONDS = float(os.getenv("EVIDENCE_EXPORT_TIMEOUT_SECONDS", "60"))
EXPORT_FORMATS = ("pdf", "csv")


@dataclass
class EvidenceDocument:
    id: str
    name: str
    original_name: str
    mime_type: str
    file_size: int
    file_hash: str
    uploaded_at: datetime
    uploaded_by: str
    uploaded_by_name: Optional[str] = None
    storage_path: Optional[str] = None

    @classmethod
    def from_model(cls, doc: Document) -> "EvidenceDocument":
        return cls(
            id=doc.id,
            name=doc.name,
            original_name=doc.original_name,
            mime_type=doc.mime_type,
            file_size=doc.file_size,
            file_hash=doc.file_hash,
            uploaded_at=doc.created_at,
            uploaded_by=doc.uploaded_by,
            uploaded_by_name=doc.uploaded_by_user.name if doc.uploaded_by_user else None,
            storage_path=doc.storage_path,
        )

    def hash_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "original_name": self.original_name,
            "mime_type": self.mime_type,
            "file_size": self.file_size,
            "file_hash": self.file_hash,
            "uploaded_at": to_json_value(self.uploaded_at),
            "uploaded_by": self.uploaded_by,
        }

    def to_dict(self) -> Dict[str, Any]:
        out = self.hash_view()
        out["uploaded_by_name"] = self.uploaded_by_name
        return out


@dataclass
class EvidenceMetadata:
    generated_at: datetime
    generated_by: str
    package_hash: str
    total_history_entries: int
    total_documents: int
    quote_id: Optional[str] = None
    order_id: Optional[str] = None
    job_id: Optional[str] = None

    @property
    def primary_entity_id(self) -> str:
        return self.quote_id or self.order_id or self.job_id or "unknown"

    @property
    def primary_entity_type(self) -> HistoryEntityType:
        if self.quote_id:
            return HistoryEntityType.QUOTE
        if self.order_id:
            return HistoryEntityType.ORDER
        if self.job_id:
            return HistoryEntityType.JOB
        return HistoryEntityType.UNKNOWN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "generated_by": self.generated_by,
            "package_hash": self.package_hash,
            "total_history_entries": self.total_history_entries,
            "total_documents": self.total_documents,
            "entity_ids": {
                "quote_id": self.quote_id,
                "order_id": self.order_id,
                "job_id": self.job_id,
                "primary_entity_id": self.primary_entity_id,
                "primary_entity_type": self.primary_entity_type.value,
            },
        }


@dataclass
class EvidencePackage:
    history: CompleteHistory
    documents: List[EvidenceDocument]
    metadata: EvidenceMetadata

    @property
    def timeline(self) -> List[TimelineEntry]:
        return self.history.timeline

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evidence": self.history.to_dict(),
            "documents": [d.to_dict() for d in self.documents],
            "metadata": self.metadata.to_dict(),
        }


@dataclass
class EvidenceExport:
    file_path: str
    filename: str
    content_type: str
    package: EvidencePackage = field(repr=False)


# ============================================================
# HASHING
# ============================================================

def stable_stringify(value: Any) -> str:
    """Canonical JSON: sorted keys at every level, no insignificant whitespace.

    Raises TypeError/ValueError for values JSON cannot represent, including
    circular structures.
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _stringify_nested(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return stable_stringify(value)
    return value


def _entry_hash_view(entry: TimelineEntry) -> Dict[str, Any]:
    view = entry.to_dict()
    view.pop("ip_address")
    view.pop("user_agent")
    view["data"] = _stringify_nested(entry.data)
    view["material_changes"] = _stringify_nested(entry.material_changes)
    view["attachments"] = _stringify_nested(entry.attachments)
    user = entry.changed_by_user
    view["changed_by_user"] = {"id": user["id"], "name": user["name"]} if user else None
    return view


def build_hash_input(timeline: List[TimelineEntry], documents: List[EvidenceDocument]) -> Dict[str, Any]:
    return {
        "history_timeline": [_entry_hash_view(e) for e in timeline],
        "documents": [d.hash_view() for d in documents],
    }


def _hash_failure(error: Exception) -> HashGenerationError:
    logger.error(f"Error generating stable string for hash: {error}")
    return HashGenerationError("Failed to generate package hash due to data processing error")


def generate_evidence_hash(data: Any) -> str:
    try:
        canonical = stable_stringify(data)
    except (TypeError, ValueError) as e:
        raise _hash_failure(e)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def compute_package_hash(timeline: List[TimelineEntry], documents: List[EvidenceDocument]) -> str:
    try:
        hash_input = build_hash_input(timeline, documents)
    except (TypeError, ValueError) as e:
        raise _hash_failure(e)
    return generate_evidence_hash(hash_input)


# ============================================================
# PACKAGE BUILDER
# ============================================================

async def fetch_documents(
    db: AsyncSession,
    quote_id: Optional[str] = None,
    order_id: Optional[str] = None,
    job_id: Optional[str] = None,
) -> List[EvidenceDocument]:
    conditions = []
    if quote_id:
        conditions.append(Document.quote_id == quote_id)
    if order_id:
        conditions.append(Document.order_id == order_id)
    if job_id:
        conditions.append(Document.job_id == job_id)
    if not conditions:
        return []

    stmt = (
        select(Document)
        .where(or_(*conditions))
        .options(selectinload(Document.uploaded_by_user))
        .order_by(Document.created_at.asc())
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return [EvidenceDocument.from_model(d) for d in result.scalars().all()]


async def build_evidence_package(
    db: AsyncSession,
    quote_id: Optional[str] = None,
    order_id: Optional[str] = None,
    job_id: Optional[str] = None,
    generated_by: str = "system",
) -> EvidencePackage:
    history = await get_complete_history(db, quote_id=quote_id, order_id=order_id, job_id=job_id)
    documents = await fetch_documents(db, quote_id=quote_id, order_id=order_id, job_id=job_id)

    package_hash = compute_package_hash(history.timeline, documents)

    metadata = EvidenceMetadata(
        generated_at=utcnow(),
        generated_by=generated_by,
        package_hash=package_hash,
        total_history_entries=len(history.timeline),
        total_documents=len(documents),
        quote_id=quote_id or None,
        order_id=order_id or None,
        job_id=job_id or None,
    )
    return EvidencePackage(history=history, documents=documents, metadata=metadata)


# ============================================================
# EXPORT
# ============================================================

ENTITY_FILE_LABELS = {
    HistoryEntityType.QUOTE: "Quote",
    HistoryEntityType.ORDER: "Order",
    HistoryEntityType.JOB: "Job",
    HistoryEntityType.UNKNOWN: "Entity",
}


def evidence_filename(entity_type: HistoryEntityType, entity_id: str, ext: str, now: Optional[datetime] = None) -> str:
    """legal-evidence-{Label}_{entityId}_{YYYYMMDDHHMMSSmmm}.{ext}"""
    now = now or utcnow()
    stamp = now.strftime("%Y%m%d%H%M%S") + f"{now.microsecond // 1000:03d}"
    return f"legal-evidence-{ENTITY_FILE_LABELS[entity_type]}_{entity_id}_{stamp}.{ext}"


def _check_id_safe(value: Optional[str]) -> None:
    if value and ("/" in value or "\\" in value or ".." in value):
        logger.warning(f"Rejected entity id with path characters: {value!r}")
        raise PathSafetyViolation("Invalid entity ID")


def _discard_abandoned(render: asyncio.Future, filename: str) -> None:
    """Remove a file whose render finished after its export was cancelled."""
    if render.cancelled() or render.exception() is not None:
        return
    logger.warning(f"Removing abandoned evidence file {filename}")
    evidence_export.discard_file(render.result())


async def _render(writer, payload, filename: str) -> str:
    # The worker thread cannot be interrupted; a cancelled export cleans up after it
    render = asyncio.ensure_future(asyncio.to_thread(writer, payload, filename))
    try:
        return await asyncio.shield(render)
    except asyncio.CancelledError:
        render.add_done_callback(lambda done: _discard_abandoned(done, filename))
        raise


async def _export(db, quote_id, order_id, job_id, fmt, generated_by) -> EvidenceExport:
    package = await build_evidence_package(
        db, quote_id=quote_id, order_id=order_id, job_id=job_id, generated_by=generated_by,
    )
    meta = package.metadata
    filename = evidence_filename(meta.primary_entity_type, meta.primary_entity_id, fmt)

    with span("evidence.render", {"evidence.format": fmt, "evidence.file": filename}):
        if fmt == "csv":
            file_path = await _render(evidence_export.write_csv_export, package.timeline, filename)
            content_type = "text/csv"
        else:
            file_path = await _render(evidence_export.write_pdf_export, package, filename)
            content_type = "application/pdf"

    logger.info(
        f"Evidence package {filename} written "
        f"({meta.total_history_entries} events, {meta.total_documents} documents, "
        f"hash={meta.package_hash[:12]})"
    )
    return EvidenceExport(
        file_path=file_path, filename=filename, content_type=content_type, package=package,
    )


async def export_legal_history(
    db: AsyncSession,
    quote_id: Optional[str] = None,
    order_id: Optional[str] = None,
    job_id: Optional[str] = None,
    fmt: str = "pdf",
    generated_by: str = "system",
    timeout: Optional[float] = None,
) -> EvidenceExport:
    fmt = (fmt or "pdf").lower()
    if fmt not in EXPORT_FORMATS:
        raise InvalidInputError(f"Unsupported export format: {fmt}. Must be 'pdf' or 'csv'")
    for value in (quote_id, order_id, job_id):
        _check_id_safe(value)

    limit = timeout if timeout is not None else EVIDENCE_EXPORT_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(
            _export(db, quote_id, order_id, job_id, fmt, generated_by), timeout=limit,
        )
    except asyncio.TimeoutError:
        logger.error(f"Evidence export timed out after {limit}s")
        raise EvidenceExportTimeout()
