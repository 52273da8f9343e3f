"""IEnvelopeStore — durable envelopes plus the append-only transition log."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime

    from ..domain.envelope import EnvelopeStatus, MessageEnvelope, StateTransition


@runtime_checkable
class IEnvelopeStore(Protocol):
    """Protocol for envelope persistence.

    Every status change is a compare-and-set on the current status; the
    matching transition record is appended in the same atomic step.
    """

    async def insert(
        self, envelope: MessageEnvelope, transition: StateTransition
    ) -> None:
        """Persist a new envelope.

        Raises:
            DuplicateKeyError: an envelope with the same id already exists.
        """
        ...

    async def get(self, envelope_id: str) -> MessageEnvelope | None:
        """Return a copy of the envelope, or None."""
        ...

    async def compare_and_set(
        self,
        envelope_id: str,
        expected_status: EnvelopeStatus,
        changes: dict[str, Any],
        transition: StateTransition,
    ) -> MessageEnvelope:
        """Apply *changes* only if the stored status equals *expected_status*.

        Returns the updated envelope (version incremented).

        Raises:
            EnvelopeNotFoundError: unknown id.
            OptimisticConcurrencyError: the stored status differs.
        """
        ...

    async def find_due_retries(
        self, now: datetime, limit: int = 100
    ) -> list[MessageEnvelope]:
        """FAILED envelopes with ``next_retry_at <= now`` and retries left,
        oldest due first."""
        ...

    async def find_stalled(
        self, before: datetime, limit: int = 100
    ) -> list[MessageEnvelope]:
        """In-flight envelopes (CREATED, QUEUED, ROUTING, PROCESSING) whose
        last status change is at or before *before*, oldest first."""
        ...

    async def find_by_status(
        self, status: EnvelopeStatus, limit: int = 100, offset: int = 0
    ) -> list[MessageEnvelope]:
        ...

    async def transitions(self, envelope_id: str) -> list[StateTransition]:
        """Transition log for one envelope in the order it was written."""
        ...
