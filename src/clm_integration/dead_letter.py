"""DeadLetterHandler — terminal sink for envelopes that exhausted retries.

Dead-lettered envelopes are never resubmitted automatically. ``requeue``
is the manual remediation path: it resets retry bookkeeping and records
the operator as the actor of the transition.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .domain.envelope import EnvelopeStatus, StateTransition
from .exceptions import EnvelopeNotFoundError, InvalidTransitionError
from .utils import utc_now, with_store_timeout

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

    from .domain.envelope import MessageEnvelope
    from .ports.envelope_store import IEnvelopeStore
    from .utils import Clock

    DeadLetterCallback = Callable[
        [MessageEnvelope, str, BaseException | None], Coroutine[Any, Any, None]
    ]

logger = logging.getLogger("clm_integration.dead_letter")


class DeadLetterHandler:
    def __init__(
        self,
        store: IEnvelopeStore,
        *,
        on_dead_letter: DeadLetterCallback | None = None,
        clock: Clock | None = None,
        store_timeout: float | None = None,
    ) -> None:
        """Configure dead-letter handling.

        Args:
            store: Envelope store holding the dead-lettered rows.
            on_dead_letter: Async callable (envelope, reason, exception) run
                after an envelope lands in DEAD_LETTER, e.g. to publish an
                event. Its failures are logged, never propagated.
        """
        self._store = store
        self._on_dead_letter = on_dead_letter
        self._clock = clock or utc_now
        self._store_timeout = store_timeout

    async def route(
        self,
        envelope: MessageEnvelope,
        reason: str,
        exception: BaseException | None = None,
    ) -> None:
        """Announce an envelope that has just been moved to DEAD_LETTER."""
        logger.warning(
            "Envelope %s (%s) dead-lettered: %s",
            envelope.id,
            envelope.message_type,
            reason,
        )
        if self._on_dead_letter is None:
            return
        try:
            await self._on_dead_letter(envelope, reason, exception)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "on_dead_letter callback failed for envelope %s: %s", envelope.id, exc
            )

    async def list_dead_letters(
        self, limit: int = 100, offset: int = 0
    ) -> list[MessageEnvelope]:
        return await with_store_timeout(
            self._store.find_by_status(EnvelopeStatus.DEAD_LETTER, limit, offset),
            self._store_timeout,
        )

    async def requeue(
        self, envelope_id: str, actor: str, reason: str | None = None
    ) -> MessageEnvelope:
        """Move a DEAD_LETTER envelope back to QUEUED with a fresh retry budget.

        Raises:
            EnvelopeNotFoundError: unknown id.
            InvalidTransitionError: the envelope is not dead-lettered.
            OptimisticConcurrencyError: someone else requeued it first.
        """
        envelope = await with_store_timeout(
            self._store.get(envelope_id), self._store_timeout
        )
        if envelope is None:
            raise EnvelopeNotFoundError(envelope_id)
        if envelope.status != EnvelopeStatus.DEAD_LETTER:
            raise InvalidTransitionError(
                "MessageEnvelope", envelope.status.value, EnvelopeStatus.QUEUED.value
            )
        envelope.check_transition(EnvelopeStatus.QUEUED, manual=True)
        transition = StateTransition.of(
            envelope,
            EnvelopeStatus.QUEUED,
            at=self._clock(),
            reason=reason or "manual_requeue",
            actor=actor,
        )
        requeued = await with_store_timeout(
            self._store.compare_and_set(
                envelope_id,
                EnvelopeStatus.DEAD_LETTER,
                {
                    "status": EnvelopeStatus.QUEUED,
                    "retry_count": 0,
                    "next_retry_at": None,
                    "last_error": None,
                    "destination": None,
                    "destinations": [],
                },
                transition,
            ),
            self._store_timeout,
        )
        logger.info("Envelope %s requeued from dead-letter by %s", envelope_id, actor)
        return requeued
