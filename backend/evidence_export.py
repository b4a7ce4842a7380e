# evidence_export.py - CSV and PDF renderings of an evidence package
"""Render evidence packages to files in the evidence directory.

Both writers are synchronous; callers run them in a worker thread. A failed
write never leaves a partial file behind.
"""
import csv
import io
import json
import logging
import os
from datetime import datetime
from typing import Any, Iterable, List, Optional

from reportlab.lib.pagesizes import A4
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfgen import canvas

from errors import EvidenceStorageError
from evidence_files import ensure_evidence_dir
from history import TimelineEntry

logger = logging.getLogger("fabtrack.evidence.export")

CSV_COLUMNS = [
    "Timestamp", "Entity Type", "Entity ID", "Change Type", "Version", "Status",
    "Changed By User ID", "Changed By User Name", "IP Address", "User Agent",
    "Reason", "Customer Approved", "Approval Timestamp", "Material Changes",
    "Progress Notes", "Attachments", "Full Data Snapshot",
]

# ── PDF layout (points, measured from the top edge) ──────────
PAGE_WIDTH, PAGE_HEIGHT = A4
MARGIN = 50
FONT = "Helvetica"
FONT_BOLD = "Helvetica-Bold"
FONT_MONO = "Courier"
TITLE_SIZE = 18
SECTION_SIZE = 16
HEADER_SIZE = 12
TABLE_HEADER_SIZE = 10
ROW_SIZE = 9
FOOTER_SIZE = 8
ROW_HEIGHT = 20
RULE_END = 550
PAGE_BREAK_AT = 700
DOCUMENTS_BREAK_AT = 650

TIMELINE_COLUMNS = [
    ("Timestamp", 100), ("Entity", 80), ("Change", 80),
    ("Version", 50), ("User", 80), ("Reason", 100),
]
DOCUMENT_COLUMNS = [
    ("Name", 150), ("Type", 80), ("Upload Date", 100), ("Uploaded By", 100),
]


# ============================================================
# CSV
# ============================================================

def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _csv_row(entry: TimelineEntry) -> List[str]:
    if entry.customer_approved is None:
        approved = ""
    else:
        approved = "Yes" if entry.customer_approved else "No"
    user_name = entry.changed_by_user["name"] if entry.changed_by_user else None
    return [_cell(v) for v in (
        entry.created_at,
        entry.entity_type.value,
        entry.entity_id,
        entry.change_type or "UNKNOWN",
        entry.version,
        entry.status,
        entry.changed_by,
        user_name,
        entry.ip_address,
        entry.user_agent,
        entry.change_reason,
        approved,
        entry.approval_timestamp,
        entry.material_changes,
        entry.progress_notes,
        entry.attachments,
        entry.data,
    )]


def timeline_to_csv(timeline: Iterable[TimelineEntry]) -> str:
    """Header row plus one row per event, rows separated by LF.

    Fields holding a comma, double quote, CR or LF are quoted with inner quotes
    doubled.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for entry in timeline:
        writer.writerow(_csv_row(entry))
    return buffer.getvalue().rstrip("\n")


def discard_file(path: str) -> None:
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as e:
        logger.error(f"Could not remove evidence file {path}: {e}")


def write_csv_export(timeline: List[TimelineEntry], filename: str) -> str:
    directory = ensure_evidence_dir()
    path = os.path.join(directory, filename)
    content = timeline_to_csv(timeline)
    try:
        with open(path, "w", encoding="utf-8", newline="") as f:
            f.write(content)
    except OSError as e:
        discard_file(path)
        logger.error(f"Failed to write CSV evidence {filename}: {e}")
        raise EvidenceStorageError("Failed to write evidence file")
    return path


# ============================================================
# PDF
# ============================================================

class NumberedCanvas(canvas.Canvas):
    """Canvas that stamps "Page i of n" once the page count is known."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._saved_page_states = []

    def showPage(self):
        self._saved_page_states.append(dict(self.__dict__))
        self._startPage()

    def save(self):
        total = len(self._saved_page_states)
        for number, state in enumerate(self._saved_page_states, start=1):
            self.__dict__.update(state)
            self.setFont(FONT, FOOTER_SIZE)
            self.drawCentredString(PAGE_WIDTH / 2, MARGIN / 2, f"Page {number} of {total}")
            super().showPage()
        super().save()


def _truncate(text: str, width: float, font: str = FONT, size: float = ROW_SIZE) -> str:
    """Shorten text with an ellipsis until it fits the column width."""
    text = text or ""
    limit = width - 4
    if pdfmetrics.stringWidth(text, font, size) <= limit:
        return text
    while text and pdfmetrics.stringWidth(text + "...", font, size) > limit:
        text = text[:-1]
    return text + "..."


def _fmt_time(value: Optional[datetime], pattern: str) -> str:
    return value.strftime(pattern) if value else ""


class _EvidencePdf:
    """Cursor-based writer; ``y`` grows downwards from the top edge."""

    def __init__(self, c: canvas.Canvas):
        self.c = c
        self.y = MARGIN

    def text(self, x: float, value: str, font: str = FONT, size: float = ROW_SIZE) -> None:
        self.c.setFont(font, size)
        self.c.drawString(x, PAGE_HEIGHT - self.y, value)

    def centred(self, value: str, font: str, size: float) -> None:
        self.c.setFont(font, size)
        self.c.drawCentredString(PAGE_WIDTH / 2, PAGE_HEIGHT - self.y, value)

    def new_page(self) -> None:
        self.c.showPage()
        self.y = MARGIN

    def table_header(self, columns) -> None:
        x = MARGIN
        for label, width in columns:
            self.text(x, label, FONT_BOLD, TABLE_HEADER_SIZE)
            x += width
        self.y += 6
        self.c.setLineWidth(0.5)
        self.c.line(MARGIN, PAGE_HEIGHT - self.y, RULE_END, PAGE_HEIGHT - self.y)
        self.y += 14

    def table_row(self, columns, values) -> None:
        x = MARGIN
        for (_, width), value in zip(columns, values):
            self.text(x, _truncate(value, width))
            x += width
        self.y += ROW_HEIGHT


def _timeline_cells(entry: TimelineEntry) -> List[str]:
    user = entry.changed_by_user["name"] if entry.changed_by_user else "System"
    return [
        _fmt_time(entry.created_at, "%Y-%m-%d %H:%M"),
        f"{entry.entity_type.value.title()} #{entry.entity_id[:8]}",
        (entry.change_type or "").replace("_", " "),
        str(entry.version),
        user or "System",
        entry.change_reason or "",
    ]


def _document_cells(doc) -> List[str]:
    return [
        doc.name,
        (doc.mime_type or "").split("/")[-1],
        _fmt_time(doc.uploaded_at, "%Y-%m-%d"),
        doc.uploaded_by_name or doc.uploaded_by,
    ]


def render_pdf(package, c: canvas.Canvas) -> None:
    meta = package.metadata
    pdf = _EvidencePdf(c)

    pdf.y += TITLE_SIZE
    pdf.centred("Legal Evidence Package", FONT_BOLD, TITLE_SIZE)
    pdf.y += 30
    pdf.text(MARGIN, f"Generated: {meta.generated_at.isoformat()}", size=HEADER_SIZE)
    pdf.y += 18
    pdf.text(MARGIN, "Package Hash:", size=HEADER_SIZE)
    pdf.y += 14
    pdf.text(MARGIN, meta.package_hash, FONT_MONO, ROW_SIZE)
    pdf.y += 18
    pdf.text(MARGIN, f"Total Events: {meta.total_history_entries}", size=HEADER_SIZE)
    pdf.y += 18
    pdf.text(MARGIN, f"Total Documents: {meta.total_documents}", size=HEADER_SIZE)
    pdf.y += 30

    pdf.text(MARGIN, "Timeline of Events", FONT_BOLD, SECTION_SIZE)
    pdf.y += 25
    pdf.table_header(TIMELINE_COLUMNS)
    for entry in package.timeline:
        if pdf.y > PAGE_BREAK_AT:
            pdf.new_page()
            pdf.table_header(TIMELINE_COLUMNS)
        pdf.table_row(TIMELINE_COLUMNS, _timeline_cells(entry))

    if package.documents:
        if pdf.y > DOCUMENTS_BREAK_AT:
            pdf.new_page()
        else:
            pdf.y += 20
        pdf.text(MARGIN, "Supporting Documents", FONT_BOLD, SECTION_SIZE)
        pdf.y += 25
        pdf.table_header(DOCUMENT_COLUMNS)
        for doc in package.documents:
            if pdf.y > PAGE_BREAK_AT:
                pdf.new_page()
                pdf.table_header(DOCUMENT_COLUMNS)
            pdf.table_row(DOCUMENT_COLUMNS, _document_cells(doc))

    c.showPage()


def write_pdf_export(package, filename: str) -> str:
    directory = ensure_evidence_dir()
    path = os.path.join(directory, filename)
    c = NumberedCanvas(path, pagesize=A4)
    c.setTitle("Legal Evidence Package")
    c.setAuthor(package.metadata.generated_by)
    c.setSubject(f"SHA-256 {package.metadata.package_hash}")
    try:
        render_pdf(package, c)
        c.save()
    except OSError as e:
        discard_file(path)
        logger.error(f"Failed to write PDF evidence {filename}: {e}")
        raise EvidenceStorageError("Failed to write evidence file")
    except Exception:
        discard_file(path)
        raise
    return path
