"""Aggregation definitions, instances and their members."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AggregationStatus(str, Enum):
    COLLECTING = "COLLECTING"
    COMPLETE = "COMPLETE"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not AggregationStatus.COLLECTING


class AggregationStrategy(str, Enum):
    """How included member payloads are merged into the result."""

    COLLECT_ALL = "COLLECT_ALL"
    BATCH = "BATCH"
    TIME_WINDOW = "TIME_WINDOW"
    SLIDING_WINDOW = "SLIDING_WINDOW"
    CUSTOM = "CUSTOM"


class CompletionStrategy(str, Enum):
    SIZE = "SIZE"
    TIMEOUT = "TIMEOUT"
    CONDITION = "CONDITION"
    EXTERNAL_TRIGGER = "EXTERNAL_TRIGGER"


class AggregationDefinition(BaseModel):
    """Configured behaviour for one aggregation key."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    aggregation_key: str
    strategy: AggregationStrategy = AggregationStrategy.COLLECT_ALL
    completion_strategy: CompletionStrategy = CompletionStrategy.SIZE
    expected_count: int | None = Field(default=None, ge=1)
    # None falls back to IntegrationSettings.aggregation_timeout_seconds.
    timeout_seconds: int | None = Field(default=None, gt=0)
    completion_condition: dict[str, Any] | None = None
    batch_size: int | None = Field(default=None, ge=1)
    window_seconds: int | None = Field(default=None, gt=0)
    slide_seconds: int | None = Field(default=None, gt=0)
    custom_merger: str | None = None
    ordered: bool = False
    preserve_order: bool = True
    discard_duplicates: bool = True
    active: bool = True

    @model_validator(mode="after")
    def _check_completion(self) -> AggregationDefinition:
        if (
            self.completion_strategy == CompletionStrategy.SIZE
            and self.expected_count is None
        ):
            raise ValueError("SIZE completion requires expected_count")
        if (
            self.completion_strategy == CompletionStrategy.CONDITION
            and not self.completion_condition
        ):
            raise ValueError("CONDITION completion requires completion_condition")
        if self.strategy == AggregationStrategy.CUSTOM and not self.custom_merger:
            raise ValueError("CUSTOM strategy requires custom_merger")
        return self


class AggregationMember(BaseModel):
    """One arrival recorded against an instance, included or not."""

    model_config = ConfigDict(frozen=True)

    envelope_id: str
    sequence_number: int
    message_sequence: int | None = None
    received_at: datetime
    payload: dict[str, Any] = Field(default_factory=dict)
    included: bool = True
    exclusion_reason: str | None = None


class AggregationInstance(BaseModel):
    """Open or closed collection of correlated members.

    ``current_count`` counts included members and only grows while
    COLLECTING; members arriving after close are recorded but excluded.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    aggregation_key: str
    definition_id: str
    status: AggregationStatus = AggregationStatus.COLLECTING
    expected_count: int | None = None
    current_count: int = 0
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    timeout_at: datetime
    completed_at: datetime | None = None
    members: list[AggregationMember] = Field(default_factory=list)
    result: dict[str, Any] | None = None
    partial: bool = False
    error: str | None = None
    version: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.correlation_id, self.aggregation_key)

    @property
    def included_members(self) -> list[AggregationMember]:
        return [m for m in self.members if m.included]

    def has_member(self, envelope_id: str) -> bool:
        return any(m.envelope_id == envelope_id and m.included for m in self.members)

    def next_sequence(self) -> int:
        return max((m.sequence_number for m in self.members), default=0) + 1


class MemberOutcome(str, Enum):
    """What happened to one ``add_member`` call."""

    ADDED = "ADDED"
    COMPLETED = "COMPLETED"
    DUPLICATE = "DUPLICATE"
    LATE = "LATE"


class AddMemberResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: MemberOutcome
    instance: AggregationInstance

    @property
    def completed(self) -> bool:
        return self.outcome == MemberOutcome.COMPLETED

    @property
    def rejected(self) -> bool:
        return self.outcome in (MemberOutcome.DUPLICATE, MemberOutcome.LATE)
