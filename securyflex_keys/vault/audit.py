"""
Key Audit — Append-only audit events and fire-and-forget dispatch.

Events describe what happened (operation, key version, context/purpose
detail) and never carry key, secret or salt bytes. Sink failures are
logged and swallowed: losing an audit line must never abort a
cryptographic operation.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import orjson
from pydantic import BaseModel, Field

from ..exceptions import AuditSinkFailure

logger = logging.getLogger("securyflex.keys")
audit_logger = logging.getLogger("securyflex.keys.audit")

_INSERT_AUDIT = """
INSERT INTO security.key_audit_events (operation, detail, key_version, created_at)
VALUES ($1, $2, $3, $4)
"""


class AuditOperation(str, Enum):
    INITIALIZE = "KEY_INIT"
    DERIVE = "KEY_DERIVE"
    ROTATION_START = "KEY_ROTATION_START"
    ROTATION_COMPLETE = "KEY_ROTATION_COMPLETE"
    ROTATION_ERROR = "KEY_ROTATION_ERROR"
    CLEAR_ALL = "KEY_CLEAR_ALL"


class AuditEvent(BaseModel):
    """One audit record."""

    operation: AuditOperation
    detail: str = ""
    key_version: int = 0
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    model_config = {"frozen": True}

    def to_json(self) -> bytes:
        return orjson.dumps(self.model_dump(mode="json"))


class AuditSink(ABC):
    """Destination for audit events."""

    @abstractmethod
    async def record(self, event: AuditEvent) -> None:
        """Persist one event. May raise; the dispatcher swallows failures."""


class LoggingAuditSink(AuditSink):
    """Writes each event as a JSON line on the ``securyflex.keys.audit`` logger."""

    def __init__(self, level: int = logging.INFO):
        self._level = level

    async def record(self, event: AuditEvent) -> None:
        audit_logger.log(self._level, event.to_json().decode("utf-8"))


class MemoryAuditSink(AuditSink):
    """Keeps events in a list."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def operations(self) -> list[AuditOperation]:
        return [e.operation for e in self.events]


class DatabaseAuditSink(AuditSink):
    """Inserts events through an asyncpg-compatible connection pool."""

    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def record(self, event: AuditEvent) -> None:
        try:
            async with self._db.acquire() as conn:
                await conn.execute(
                    _INSERT_AUDIT,
                    event.operation.value, event.detail,
                    event.key_version, event.timestamp,
                )
        except Exception as err:
            raise AuditSinkFailure(
                f"audit insert failed for {event.operation.value}: {err}"
            ) from err


class AuditDispatcher:
    """Dispatches events to a sink without blocking the caller.

    Each ``emit`` schedules its own task; there is no ordering guarantee
    between events and the cryptographic path.
    """

    def __init__(
        self,
        sink: Optional[AuditSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._sink = sink or LoggingAuditSink()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._pending: set[asyncio.Task] = set()
        self.failures = 0

    @property
    def sink(self) -> AuditSink:
        return self._sink

    def emit(self, operation: AuditOperation, detail: str = "", key_version: int = 0) -> None:
        """Schedule an audit event. Never raises."""
        try:
            event = AuditEvent(
                operation=operation,
                detail=detail,
                key_version=key_version,
                timestamp=self._clock(),
            )
            task = asyncio.get_running_loop().create_task(self._deliver(event))
        except Exception as err:
            self.failures += 1
            logger.warning("Audit event %s dropped: %s", operation, err)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: AuditEvent) -> None:
        try:
            await self._sink.record(event)
        except Exception as err:
            self.failures += 1
            logger.warning(
                "Audit sink failed for %s (v%d): %s",
                event.operation.value, event.key_version, err,
            )

    async def drain(self) -> None:
        """Wait for every scheduled event to be delivered or dropped."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
