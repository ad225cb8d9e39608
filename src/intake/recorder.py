"""
Persists externally pushed security events and access violations so the
rule engines can search them later.
"""

import asyncio

import structlog

from src.core.clock import Clock, utcnow
from src.core.events import AccessViolation, EventBus, SecurityEventOccurred, Topic

from .database import EventDatabase

logger = structlog.get_logger(__name__)


class EventRecorder:
    def __init__(self, db: EventDatabase, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def register_listeners(self, bus: EventBus) -> None:
        bus.subscribe(Topic.SECURITY_EVENT, self.on_security_event)
        bus.subscribe(Topic.ACCESS_VIOLATION, self.on_access_violation)

    async def on_security_event(self, event: SecurityEventOccurred) -> int | None:
        if event.event_id is not None:
            # Already stored by the producer
            return event.event_id
        event_id = await asyncio.to_thread(
            self.db.insert_security_event,
            event.event_type,
            event.severity,
            self.clock(),
            event.client_id,
            event.workspace_id,
            event.details,
        )
        if event_id is None:
            logger.warning("Security event not stored", event_type=event.event_type)
        return event_id

    async def on_access_violation(self, event: AccessViolation) -> int | None:
        log_id = await asyncio.to_thread(
            self.db.insert_access_log,
            event.ip_address,
            False,
            self.clock(),
            event.client_id,
            event.reason,
            event.workspace_id,
        )
        if log_id is None:
            logger.warning("Access violation not stored", ip_address=event.ip_address)
        return log_id
