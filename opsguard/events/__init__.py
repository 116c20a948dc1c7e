"""
OpsGuard - Event Outbox Module

Append-only facts emitted at every run transition and verification.
Events are never mutated or deleted once emitted.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from ..core.run import utcnow

logger = logging.getLogger(__name__)


class Topics:
    """Outbox topics."""
    RUN_QUEUED = "ops.run.queued"
    RUN_APPROVED = "ops.run.approved"
    RUN_REJECTED = "ops.run.rejected"
    RUN_CANCELLED = "ops.run.cancelled"
    RUN_COMPLETED = "ops.run.completed"
    VERIFICATION_COMPLETED = "ops.verification.completed"
    ATTESTATION_RECORDED = "ops.attestation.recorded"


@dataclass(frozen=True)
class OutboxEvent:
    """A single outbox fact."""
    topic: str
    key: str
    payload: Dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "topic": self.topic,
            "key": self.key,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }


class EventSink:
    """Interface for outbox sinks."""

    def emit(self, topic: str, key: str, payload: Dict[str, Any]) -> OutboxEvent:
        raise NotImplementedError


class InMemoryEventSink(EventSink):
    """Event sink holding events in a list."""

    def __init__(self):
        self.events: List[OutboxEvent] = []

    def emit(self, topic: str, key: str, payload: Dict[str, Any]) -> OutboxEvent:
        event = OutboxEvent(topic=topic, key=key, payload=dict(payload))
        self.events.append(event)
        logger.debug(f"Event emitted: {topic} key={key}")
        return event

    def topics(self, key: Optional[str] = None) -> List[str]:
        return [e.topic for e in self.events if key is None or e.key == key]


class OutboxEventSink(EventSink):
    """Event sink writing to the store's outbox table."""

    def __init__(self, store):
        self._store = store

    def emit(self, topic: str, key: str, payload: Dict[str, Any]) -> OutboxEvent:
        event = OutboxEvent(topic=topic, key=key, payload=dict(payload))
        self._store.append_outbox(event)
        logger.debug(f"Outbox event appended: {topic} key={key}")
        return event
