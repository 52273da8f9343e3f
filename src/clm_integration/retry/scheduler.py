"""RetryScheduler — retry bookkeeping and the periodic resubmission sweep."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any, TypeVar

from ..domain.envelope import IN_FLIGHT_STATUSES, EnvelopeStatus, StateTransition
from ..exceptions import (
    OptimisticConcurrencyError,
    RetryExhaustedError,
    StoreUnavailableError,
)
from ..instrumentation import get_hook_registry
from ..utils import utc_now, with_store_timeout

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from ..dead_letter import DeadLetterHandler
    from ..domain.envelope import MessageEnvelope
    from ..ports.envelope_store import IEnvelopeStore
    from ..utils import Clock
    from .policy import RetryPolicy

    Resubmitter = Callable[[MessageEnvelope], Awaitable[Any]]

T = TypeVar("T")

logger = logging.getLogger("clm_integration.retry")


class RetryScheduler:
    """
    Records handler failures and resubmits due envelopes.

    Lifecycle per failure:
    1. ``retry_count += 1``.
    2. ``retry_count >= max_retries`` (or a non-retryable error): DEAD_LETTER,
       never picked up again.
    3. Otherwise FAILED with ``next_retry_at = now + backoff(retry_count)``.

    The sweep claims each due envelope with a FAILED → QUEUED
    compare-and-set before resubmitting it, so a concurrent redelivery of
    the same envelope cannot also win. Every envelope is an independent unit
    of work.

    With ``stall_timeout`` set, the sweep also recovers envelopes left in an
    in-flight status (a crash or store outage between two steps) once their
    last status change is older than the timeout; recovery counts as a
    failed attempt.
    """

    def __init__(
        self,
        store: IEnvelopeStore,
        policy: RetryPolicy,
        *,
        dead_letters: DeadLetterHandler | None = None,
        resubmit: Resubmitter | None = None,
        clock: Clock | None = None,
        store_timeout: float | None = None,
        batch_size: int = 100,
        stall_timeout: float | None = None,
    ) -> None:
        self._store = store
        self.policy = policy
        self._dead_letters = dead_letters
        self.resubmit = resubmit
        self._clock = clock or utc_now
        self._store_timeout = store_timeout
        self.batch_size = batch_size
        self.stall_timeout = stall_timeout

    async def record_failure(
        self,
        envelope: MessageEnvelope,
        error: BaseException | str,
        *,
        retryable: bool = True,
        reason: str = "handler_failure",
    ) -> MessageEnvelope:
        """Move *envelope* from its current status to FAILED or DEAD_LETTER.

        Raises:
            OptimisticConcurrencyError: the envelope's status changed under us.
        """
        now = self._clock()
        retry_count = min(envelope.retry_count + 1, envelope.max_retries)
        message = str(error) or type(error).__name__
        exhausted = retry_count >= envelope.max_retries

        if not retryable or exhausted:
            dead_reason = "retry_exhausted" if retryable else "non_retryable"
            envelope.check_transition(EnvelopeStatus.DEAD_LETTER)
            updated = await self._timed(
                self._store.compare_and_set(
                    envelope.id,
                    envelope.status,
                    {
                        "status": EnvelopeStatus.DEAD_LETTER,
                        "retry_count": retry_count,
                        "next_retry_at": None,
                        "last_error": message,
                    },
                    StateTransition.of(
                        envelope,
                        EnvelopeStatus.DEAD_LETTER,
                        at=now,
                        reason=dead_reason,
                        error=error,
                    ),
                )
            )
            if self._dead_letters is not None:
                cause = error if isinstance(error, BaseException) else None
                if retryable:
                    exhausted_error = RetryExhaustedError(
                        f"Gave up after {retry_count} attempt(s): {message}",
                        message_id=envelope.id,
                    )
                    exhausted_error.__cause__ = cause
                    cause = exhausted_error
                await self._dead_letters.route(updated, dead_reason, cause)
            return updated

        delay = self.policy.delay_for_attempt(retry_count)
        next_retry_at = now + timedelta(seconds=delay)
        envelope.check_transition(EnvelopeStatus.FAILED)
        updated = await self._timed(
            self._store.compare_and_set(
                envelope.id,
                envelope.status,
                {
                    "status": EnvelopeStatus.FAILED,
                    "retry_count": retry_count,
                    "next_retry_at": next_retry_at,
                    "last_error": message,
                },
                StateTransition.of(
                    envelope,
                    EnvelopeStatus.FAILED,
                    at=now,
                    reason=reason,
                    error=error,
                ),
            )
        )
        logger.info(
            "Envelope %s failed (retry %d/%d), next attempt in %.2fs: %s",
            envelope.id,
            retry_count,
            envelope.max_retries,
            delay,
            message,
        )
        return updated

    async def process_pending_retries(self, limit: int | None = None) -> int:
        """Claim and resubmit due envelopes, oldest due first.

        Returns the number of envelopes resubmitted.
        """
        if self.resubmit is None:
            raise RuntimeError("RetryScheduler has no resubmit callable bound")
        resubmit = self.resubmit

        async def _do() -> int:
            now = self._clock()
            if self.stall_timeout is not None:
                cutoff = now - timedelta(seconds=self.stall_timeout)
                await self._recover_stalled(cutoff, limit or self.batch_size)
            due = await self._timed(
                self._store.find_due_retries(now, limit or self.batch_size)
            )
            if not due:
                return 0
            logger.debug("Found %d envelope(s) due for retry", len(due))
            resubmitted = 0
            for envelope in due:
                claimed = await self._claim(envelope)
                if claimed is None:
                    continue
                try:
                    await resubmit(claimed)
                    resubmitted += 1
                except StoreUnavailableError as exc:
                    logger.warning(
                        "Store unavailable while resubmitting %s: %s", claimed.id, exc
                    )
                    await self.release(claimed.id, exc)
                except Exception as exc:  # noqa: BLE001
                    logger.error(
                        "Resubmission of envelope %s failed: %s", claimed.id, exc
                    )
            return resubmitted

        return await get_hook_registry().execute_all(
            "retry.sweep", {"limit": limit or self.batch_size}, _do
        )

    async def release(
        self, envelope_id: str, error: BaseException | str
    ) -> MessageEnvelope | None:
        """Hand an envelope interrupted mid-pipeline back to the sweep.

        An envelope still in an in-flight status is failed through
        :meth:`record_failure`, so it gets a fresh ``next_retry_at`` and the
        attempt counts toward ``max_retries``. Returns None when there was
        nothing to release or the store is still unreachable; in that case
        stall recovery picks the envelope up later.
        """
        try:
            current = await self._timed(self._store.get(envelope_id))
            if current is None or current.status not in IN_FLIGHT_STATUSES:
                return None
            return await self.record_failure(
                current, error, reason="store_unavailable"
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not release envelope %s: %s", envelope_id, exc)
            return None

    async def _recover_stalled(self, cutoff: datetime, limit: int) -> int:
        stalled = await self._timed(self._store.find_stalled(cutoff, limit))
        recovered = 0
        for envelope in stalled:
            try:
                await self.record_failure(
                    envelope,
                    f"Stalled in {envelope.status.value}",
                    reason="stalled",
                )
                recovered += 1
            except OptimisticConcurrencyError:
                logger.debug("Envelope %s moved on, not stalled", envelope.id)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Failed to recover stalled envelope %s: %s", envelope.id, exc
                )
        if recovered:
            logger.warning("Recovered %d stalled envelope(s)", recovered)
        return recovered

    async def _claim(self, envelope: MessageEnvelope) -> MessageEnvelope | None:
        try:
            return await self._timed(
                self._store.compare_and_set(
                    envelope.id,
                    EnvelopeStatus.FAILED,
                    {"status": EnvelopeStatus.QUEUED, "next_retry_at": None},
                    StateTransition.of(
                        envelope,
                        EnvelopeStatus.QUEUED,
                        at=self._clock(),
                        reason=f"retry_attempt_{envelope.retry_count + 1}",
                    ),
                )
            )
        except OptimisticConcurrencyError:
            logger.debug("Envelope %s already claimed, skipping", envelope.id)
        except StoreUnavailableError as exc:
            logger.warning(
                "Store unavailable while claiming %s, leaving it for the next "
                "sweep: %s",
                envelope.id,
                exc,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to claim envelope %s: %s", envelope.id, exc)
        return None

    async def _timed(self, awaitable: Awaitable[T]) -> T:
        return await with_store_timeout(awaitable, self._store_timeout)
