# audit_events.py - Post-commit audit dispatch
"""
Business handlers commit their own work and then hand an ``AuditEvent`` to the
dispatcher. A single background worker writes the history rows with its own
database sessions, so a failing audit write is logged and never turns a
successful business response into an error.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import Request

from audit_service import AuditContext, audit_change
from database import Database
from errors import AuditWriteFailure
from models import HistoryEntityType

logger = logging.getLogger("fabtrack.audit.dispatch")


@dataclass
class AuditEvent:
    entity_type: HistoryEntityType
    entity_id: str
    change_type: str
    context: AuditContext
    extras: Dict[str, Any] = field(default_factory=dict)


class AuditDispatcher:

    def __init__(self, database: Database, max_queue: int = 10000):
        self.database = database
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._worker: Optional[asyncio.Task] = None
        self.written = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="audit-dispatcher")
        logger.info("Audit dispatcher started")

    async def stop(self) -> None:
        """Write everything already queued, then stop the worker."""
        if self._worker is None:
            return
        await self._queue.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info(f"Audit dispatcher stopped (written={self.written}, failed={self.failed})")

    def emit(self, event: AuditEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.failed += 1
            failure = AuditWriteFailure(
                f"audit queue full, dropped {event.change_type} for "
                f"{event.entity_type.value} {event.entity_id}"
            )
            logger.error(f"[{failure.code}] {failure.detail}")

    async def drain(self) -> None:
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._write(event)
            finally:
                self._queue.task_done()

    async def _write(self, event: AuditEvent) -> None:
        try:
            async with self.database.session() as session:
                await audit_change(
                    session,
                    event.entity_type,
                    event.entity_id,
                    event.change_type,
                    event.context,
                    event.extras,
                )
            self.written += 1
        except Exception as e:
            self.failed += 1
            failure = AuditWriteFailure(
                f"{event.change_type} for {event.entity_type.value} {event.entity_id}: {e}"
            )
            logger.error(f"[{failure.code}] {failure.detail}", exc_info=True)


def get_audit_dispatcher(request: Request) -> AuditDispatcher:
    return request.app.state.audit_dispatcher
