"""Message envelope, its status machine and the transition log record."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import InvalidTransitionError, ValidationError
from ..utils import compute_content_hash


class EnvelopeStatus(str, Enum):
    """Lifecycle states exposed to collaborators."""

    CREATED = "CREATED"
    QUEUED = "QUEUED"
    ROUTING = "ROUTING"
    PROCESSING = "PROCESSING"
    AGGREGATING = "AGGREGATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    DEAD_LETTER = "DEAD_LETTER"


_ALLOWED_TRANSITIONS: dict[EnvelopeStatus, frozenset[EnvelopeStatus]] = {
    EnvelopeStatus.CREATED: frozenset(
        {EnvelopeStatus.QUEUED, EnvelopeStatus.FAILED, EnvelopeStatus.DEAD_LETTER}
    ),
    EnvelopeStatus.QUEUED: frozenset(
        {EnvelopeStatus.ROUTING, EnvelopeStatus.FAILED, EnvelopeStatus.DEAD_LETTER}
    ),
    EnvelopeStatus.ROUTING: frozenset(
        {
            EnvelopeStatus.PROCESSING,
            EnvelopeStatus.FAILED,
            EnvelopeStatus.DEAD_LETTER,
        }
    ),
    EnvelopeStatus.PROCESSING: frozenset(
        {
            EnvelopeStatus.AGGREGATING,
            EnvelopeStatus.COMPLETED,
            EnvelopeStatus.FAILED,
            EnvelopeStatus.DEAD_LETTER,
        }
    ),
    EnvelopeStatus.AGGREGATING: frozenset(
        {
            EnvelopeStatus.COMPLETED,
            EnvelopeStatus.FAILED,
            EnvelopeStatus.DEAD_LETTER,
        }
    ),
    EnvelopeStatus.FAILED: frozenset(
        {EnvelopeStatus.QUEUED, EnvelopeStatus.DEAD_LETTER}
    ),
    EnvelopeStatus.COMPLETED: frozenset(),
    EnvelopeStatus.DEAD_LETTER: frozenset(),
}

# Statuses an envelope only passes through; one left here was interrupted.
IN_FLIGHT_STATUSES: frozenset[EnvelopeStatus] = frozenset(
    {
        EnvelopeStatus.CREATED,
        EnvelopeStatus.QUEUED,
        EnvelopeStatus.ROUTING,
        EnvelopeStatus.PROCESSING,
    }
)

# Only reachable through operator remediation.
_MANUAL_TRANSITIONS: dict[EnvelopeStatus, frozenset[EnvelopeStatus]] = {
    EnvelopeStatus.DEAD_LETTER: frozenset({EnvelopeStatus.QUEUED}),
}


def can_transition(
    from_status: EnvelopeStatus, to_status: EnvelopeStatus, *, manual: bool = False
) -> bool:
    """Return True if the state machine allows *from_status* → *to_status*."""
    if to_status in _ALLOWED_TRANSITIONS[from_status]:
        return True
    return manual and to_status in _MANUAL_TRANSITIONS.get(from_status, frozenset())


class InboundMessage(BaseModel):
    """Inbound headers plus payload, validated before the pipeline sees them."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()), min_length=1)
    message_type: str = Field(..., min_length=1, max_length=50)
    tenant_id: str = Field(..., min_length=1, max_length=50)
    correlation_id: str | None = None
    routing_key: str | None = None
    source_system: str | None = None
    namespace: str | None = None
    business_key: str | None = None
    aggregation_key: str | None = None
    sequence_number: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("message_type")
    @classmethod
    def _normalize_type(cls, value: str) -> str:
        return value.strip().upper()

    @classmethod
    def parse(cls, data: dict[str, Any]) -> InboundMessage:
        """Validate raw header/payload data, raising our ``ValidationError``."""
        try:
            return cls.model_validate(data)
        except PydanticValidationError as exc:
            errors: dict[str, list[str]] = {}
            for error in exc.errors():
                loc = ".".join(str(p) for p in error.get("loc", ("__root__",)))
                errors.setdefault(loc or "__root__", []).append(
                    error.get("msg", "validation error")
                )
            raise ValidationError(errors) from exc


class MessageEnvelope(BaseModel):
    """The routable unit of work: one inbound message and its processing state.

    Stores hand out copies; every mutation goes back through a conditional
    update on ``status`` so concurrent writers cannot both win.
    """

    id: str
    message_type: str
    tenant_id: str
    correlation_id: str | None = None
    routing_key: str | None = None
    source_system: str | None = None
    namespace: str | None = None
    business_key: str | None = None
    aggregation_key: str | None = None
    sequence_number: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    content_hash: str = ""

    status: EnvelopeStatus = EnvelopeStatus.CREATED
    destination: str | None = None
    destinations: list[str] = Field(default_factory=list)

    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    next_retry_at: datetime | None = None
    last_error: str | None = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    # Time of the last status change; stores stamp it on every compare-and-set.
    updated_at: datetime | None = None
    version: int = 0

    @classmethod
    def from_inbound(
        cls, message: InboundMessage, *, max_retries: int, now: datetime
    ) -> MessageEnvelope:
        return cls(
            id=message.message_id,
            message_type=message.message_type,
            tenant_id=message.tenant_id,
            correlation_id=message.correlation_id,
            routing_key=message.routing_key,
            source_system=message.source_system,
            namespace=message.namespace,
            business_key=message.business_key,
            aggregation_key=message.aggregation_key,
            sequence_number=message.sequence_number,
            payload=dict(message.payload),
            content_hash=compute_content_hash(message.payload),
            max_retries=max_retries,
            created_at=now,
            updated_at=now,
        )

    def model_post_init(self, __context: object) -> None:
        if self.retry_count > self.max_retries:
            raise ValidationError(
                {"retry_count": ["retry_count must not exceed max_retries"]}
            )

    @property
    def is_terminal(self) -> bool:
        return self.status in (EnvelopeStatus.COMPLETED, EnvelopeStatus.DEAD_LETTER)

    @property
    def is_retryable(self) -> bool:
        """FAILED with retries left and a scheduled next attempt."""
        return (
            self.status == EnvelopeStatus.FAILED
            and self.next_retry_at is not None
            and self.retry_count < self.max_retries
        )

    def check_transition(
        self, to_status: EnvelopeStatus, *, manual: bool = False
    ) -> None:
        if not can_transition(self.status, to_status, manual=manual):
            raise InvalidTransitionError(
                "MessageEnvelope", self.status.value, to_status.value
            )

    def headers(self) -> dict[str, Any]:
        """Inbound header view used by route expressions and events."""
        return {
            "messageId": self.id,
            "correlationId": self.correlation_id,
            "messageType": self.message_type,
            "tenantId": self.tenant_id,
            "routingKey": self.routing_key,
            "sourceSystem": self.source_system,
        }


class StateTransition(BaseModel):
    """Immutable, append-only fact about one envelope status change."""

    model_config = ConfigDict(frozen=True)

    envelope_id: str
    from_status: EnvelopeStatus | None
    to_status: EnvelopeStatus
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reason: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    actor: str = "system"

    @classmethod
    def of(
        cls,
        envelope: MessageEnvelope,
        to_status: EnvelopeStatus,
        *,
        at: datetime,
        reason: str | None = None,
        error: BaseException | str | None = None,
        actor: str = "system",
    ) -> StateTransition:
        """Transition record for moving *envelope* from its current status."""
        error_code = None
        error_message = None
        if isinstance(error, BaseException):
            error_code = type(error).__name__
            error_message = str(error) or error_code
        elif error is not None:
            error_message = error
        return cls(
            envelope_id=envelope.id,
            from_status=envelope.status,
            to_status=to_status,
            at=at,
            reason=reason,
            error_code=error_code,
            error_message=error_message,
            actor=actor,
        )
