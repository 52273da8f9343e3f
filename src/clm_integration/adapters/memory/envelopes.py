"""In-memory envelope store for tests and single-process deployments."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ...domain.envelope import (
    IN_FLIGHT_STATUSES,
    EnvelopeStatus,
    MessageEnvelope,
    StateTransition,
)
from ...exceptions import (
    DuplicateKeyError,
    EnvelopeNotFoundError,
    OptimisticConcurrencyError,
)
from ...ports.envelope_store import IEnvelopeStore

if TYPE_CHECKING:
    from datetime import datetime


class InMemoryEnvelopeStore(IEnvelopeStore):
    """
    Dict-backed :class:`IEnvelopeStore`.

    Each method runs without awaiting, so a compare-and-set is atomic with
    respect to other tasks on the same event loop.
    """

    def __init__(self) -> None:
        self._envelopes: dict[str, MessageEnvelope] = {}
        self._transitions: dict[str, list[StateTransition]] = {}

    async def insert(
        self, envelope: MessageEnvelope, transition: StateTransition
    ) -> None:
        if envelope.id in self._envelopes:
            raise DuplicateKeyError("MessageEnvelope", envelope.id)
        self._envelopes[envelope.id] = envelope.model_copy(deep=True)
        self._transitions[envelope.id] = [transition]

    async def get(self, envelope_id: str) -> MessageEnvelope | None:
        stored = self._envelopes.get(envelope_id)
        return stored.model_copy(deep=True) if stored is not None else None

    async def compare_and_set(
        self,
        envelope_id: str,
        expected_status: EnvelopeStatus,
        changes: dict[str, Any],
        transition: StateTransition,
    ) -> MessageEnvelope:
        stored = self._envelopes.get(envelope_id)
        if stored is None:
            raise EnvelopeNotFoundError(envelope_id)
        if stored.status != expected_status:
            raise OptimisticConcurrencyError(
                f"Envelope {envelope_id} is {stored.status.value}, "
                f"expected {expected_status.value}"
            )
        updated = stored.model_copy(
            update={
                **changes,
                "version": stored.version + 1,
                "updated_at": transition.at,
            },
            deep=True,
        )
        self._envelopes[envelope_id] = updated
        self._transitions[envelope_id].append(transition)
        return updated.model_copy(deep=True)

    async def find_due_retries(
        self, now: datetime, limit: int = 100
    ) -> list[MessageEnvelope]:
        due = [
            e
            for e in self._envelopes.values()
            if e.status == EnvelopeStatus.FAILED
            and e.next_retry_at is not None
            and e.next_retry_at <= now
            and e.retry_count < e.max_retries
        ]
        due.sort(key=lambda e: (e.next_retry_at, e.id))
        return [e.model_copy(deep=True) for e in due[:limit]]

    async def find_stalled(
        self, before: datetime, limit: int = 100
    ) -> list[MessageEnvelope]:
        stalled = [
            e
            for e in self._envelopes.values()
            if e.status in IN_FLIGHT_STATUSES
            and (e.updated_at or e.created_at) <= before
        ]
        stalled.sort(key=lambda e: (e.updated_at or e.created_at, e.id))
        return [e.model_copy(deep=True) for e in stalled[:limit]]

    async def find_by_status(
        self, status: EnvelopeStatus, limit: int = 100, offset: int = 0
    ) -> list[MessageEnvelope]:
        matching = sorted(
            (e for e in self._envelopes.values() if e.status == status),
            key=lambda e: (e.created_at, e.id),
        )
        return [e.model_copy(deep=True) for e in matching[offset : offset + limit]]

    async def transitions(self, envelope_id: str) -> list[StateTransition]:
        return list(self._transitions.get(envelope_id, []))

    # ── Test helpers ─────────────────────────────────────────────────

    def all_envelopes(self) -> list[MessageEnvelope]:
        return [e.model_copy(deep=True) for e in self._envelopes.values()]

    def clear(self) -> None:
        self._envelopes.clear()
        self._transitions.clear()
