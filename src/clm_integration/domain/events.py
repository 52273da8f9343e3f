"""Processing outcomes and the normalized events published for them."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class OutcomeKind(str, Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    COMPLETED = "COMPLETED"
    DEAD_LETTERED = "DEAD_LETTERED"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class ProcessingOutcome(BaseModel):
    """Something the engine or a handler wants downstream consumers to know.

    ``subject`` names what the outcome is about (``MESSAGE``, ``AGGREGATION``,
    ``CONTRACT`` ...); the published event type is ``<subject>_<kind>``.
    """

    model_config = ConfigDict(frozen=True)

    subject: str
    kind: OutcomeKind
    payload: dict[str, Any] = Field(default_factory=dict)
    envelope_id: str | None = None
    correlation_id: str | None = None
    tenant_id: str | None = None

    @property
    def event_type(self) -> str:
        return f"{self.subject.upper()}_{self.kind.value}"


class IntegrationEvent(BaseModel):
    """Normalized notification handed to downstream handlers."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str | None = None
    tenant_id: str | None = None

    def to_message(self) -> dict[str, Any]:
        """Outbound wire shape: ``{eventId, eventType, timestamp, payload}``."""
        return {
            "eventId": self.event_id,
            "eventType": self.event_type,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }
