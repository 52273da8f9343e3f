"""Deduplication records and the guard's verdict."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class DedupRecord(BaseModel):
    """First sighting of a message, unique per content key and per business key.

    ``(tenant_id, content_hash, message_type)`` and, when present,
    ``(tenant_id, business_key, message_type)`` are each unique across the
    store.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    message_type: str
    content_hash: str
    business_key: str | None = None
    original_message_id: str
    duplicate_message_ids: list[str] = Field(default_factory=list)
    first_seen_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_seen_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    occurrence_count: int = Field(default=1, ge=1)
    expires_at: datetime
    version: int = 0

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def content_key(self) -> tuple[str, str, str]:
        return (self.tenant_id, self.content_hash, self.message_type)

    def business_key_index(self) -> tuple[str, str, str] | None:
        if self.business_key is None:
            return None
        return (self.tenant_id, self.business_key, self.message_type)


class GuardOutcome(str, Enum):
    ACCEPTED = "ACCEPTED"
    DUPLICATE = "DUPLICATE"


class DedupResult(BaseModel):
    """Verdict of the idempotency guard.

    A duplicate is a normal terminal outcome, not an error.
    """

    model_config = ConfigDict(frozen=True)

    outcome: GuardOutcome
    record_id: str
    occurrence_count: int
    original_message_id: str
    matched_on: str | None = None  # "content" | "business_key" | "message_id"
    # Record version this verdict saw; release() deletes only at this version.
    record_version: int = 0

    @property
    def accepted(self) -> bool:
        return self.outcome == GuardOutcome.ACCEPTED

    @property
    def duplicate(self) -> bool:
        return self.outcome == GuardOutcome.DUPLICATE
