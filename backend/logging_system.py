"""
FabTrack logging setup

Standard-library logging with request correlation: every record carries the
request and correlation ids of the request being served (through a context
variable), and can be emitted as plain text or as one JSON object per line.
"""

from dataclasses import dataclass
from typing import Optional
from datetime import datetime, timezone
import contextvars
import json
import logging
import os
import uuid

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "text").lower()
TEXT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s [rid=%(request_id)s]"


@dataclass
class RequestContext:
    """Context for request tracing"""
    request_id: str
    correlation_id: str
    user_id: Optional[str] = None

    @staticmethod
    def create(
        request_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> "RequestContext":
        request_id = request_id or str(uuid.uuid4())
        return RequestContext(
            request_id=request_id,
            correlation_id=correlation_id or request_id,
            user_id=user_id,
        )


# Async-safe context var (works with FastAPI/asyncio)
_context_var: contextvars.ContextVar[Optional[RequestContext]] = contextvars.ContextVar(
    "request_context", default=None
)


def get_current_context() -> Optional[RequestContext]:
    return _context_var.get()


def set_current_context(context: RequestContext) -> contextvars.Token:
    return _context_var.set(context)


def reset_current_context(token: contextvars.Token) -> None:
    _context_var.reset(token)


class ContextFilter(logging.Filter):
    """Copy the current request ids onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = get_current_context()
        record.request_id = context.request_id[:8] if context else "-"
        record.correlation_id = context.correlation_id if context else None
        record.user_id = context.user_id if context else None
        return True


class JsonFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
            "correlation_id": getattr(record, "correlation_id", None),
            "user_id": getattr(record, "user_id", None),
        }
        if record.exc_info:
            entry["stack_trace"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: str = LOG_LEVEL, fmt: str = LOG_FORMAT) -> None:
    """Configure the root logger once; safe to call repeatedly."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))

    for handler in root.handlers:
        if getattr(handler, "_fabtrack", False):
            return

    handler = logging.StreamHandler()
    handler._fabtrack = True
    handler.addFilter(ContextFilter())
    handler.setFormatter(JsonFormatter() if fmt == "json" else logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)
