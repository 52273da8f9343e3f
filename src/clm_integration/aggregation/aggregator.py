"""Aggregator — correlate members into one result per (correlation id, key).

Member addition is serialized per key by optimistic versioning: each change
is written with ``save(instance, expected_version)`` and a conflicting writer
re-reads and tries again. No in-process lock is held across store calls.

Timed-out instances still produce a merged result from what was collected;
it is flagged ``partial=True`` and the instance status is TIMEOUT, so
consumers can tell degraded completion apart from COMPLETE.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any, TypeVar

from ..domain.aggregation import (
    AddMemberResult,
    AggregationDefinition,
    AggregationInstance,
    AggregationMember,
    AggregationStatus,
    CompletionStrategy,
    MemberOutcome,
)
from ..exceptions import (
    AggregationError,
    DefinitionNotFoundError,
    DuplicateKeyError,
    ExpressionError,
    OptimisticConcurrencyError,
)
from ..instrumentation import get_hook_registry
from ..routing.expressions import ExpressionEvaluator
from ..utils import utc_now, with_store_timeout
from .strategies import MergerRegistry, merge

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from ..config import ConfigSnapshot
    from ..domain.envelope import MessageEnvelope
    from ..ports.aggregation_store import IAggregationStore
    from ..utils import Clock

    ClosedCallback = Callable[[AggregationInstance], Awaitable[None]]

T = TypeVar("T")

logger = logging.getLogger("clm_integration.aggregation")


class Aggregator:
    def __init__(
        self,
        store: IAggregationStore,
        *,
        evaluator: ExpressionEvaluator | None = None,
        mergers: MergerRegistry | None = None,
        clock: Clock | None = None,
        store_timeout: float | None = None,
        max_attempts: int = 10,
    ) -> None:
        self._store = store
        self._evaluator = evaluator or ExpressionEvaluator()
        self.mergers = mergers or MergerRegistry()
        self._clock = clock or utc_now
        self._store_timeout = store_timeout
        self._max_attempts = max_attempts
        self._on_closed: list[ClosedCallback] = []

    def on_closed(self, callback: ClosedCallback) -> None:
        """Register a callback run after an instance leaves COLLECTING."""
        self._on_closed.append(callback)

    async def get(
        self, correlation_id: str, aggregation_key: str
    ) -> AggregationInstance | None:
        return await self._timed(self._store.get(correlation_id, aggregation_key))

    # ── add_member ───────────────────────────────────────────────────

    async def add_member(
        self,
        correlation_id: str,
        aggregation_key: str,
        envelope: MessageEnvelope,
        snapshot: ConfigSnapshot,
    ) -> AddMemberResult:
        """Record *envelope* as a member and run the completion check.

        Raises:
            DefinitionNotFoundError: no active definition for the key.
            OptimisticConcurrencyError: still conflicting after retries.
        """
        definition = snapshot.definition_for(aggregation_key)
        if definition is None:
            raise DefinitionNotFoundError(aggregation_key)

        async def _do() -> AddMemberResult:
            for attempt in range(1, self._max_attempts + 1):
                try:
                    return await self._try_add(
                        correlation_id,
                        aggregation_key,
                        envelope,
                        definition,
                        snapshot.settings.aggregation_timeout_seconds,
                    )
                except (OptimisticConcurrencyError, DuplicateKeyError):
                    logger.debug(
                        "Aggregation %s/%s changed concurrently (attempt %d)",
                        correlation_id,
                        aggregation_key,
                        attempt,
                    )
            raise OptimisticConcurrencyError(
                f"Could not add {envelope.id} to {correlation_id}/{aggregation_key} "
                f"after {self._max_attempts} attempts"
            )

        return await get_hook_registry().execute_all(
            "aggregation.add_member",
            {
                "correlation_id": correlation_id,
                "aggregation_key": aggregation_key,
                "envelope_id": envelope.id,
            },
            _do,
        )

    async def _try_add(
        self,
        correlation_id: str,
        aggregation_key: str,
        envelope: MessageEnvelope,
        definition: AggregationDefinition,
        default_timeout_seconds: int,
    ) -> AddMemberResult:
        now = self._clock()
        instance = await self._timed(self._store.get(correlation_id, aggregation_key))
        if instance is None:
            timeout_seconds = definition.timeout_seconds or default_timeout_seconds
            instance = AggregationInstance(
                correlation_id=correlation_id,
                aggregation_key=aggregation_key,
                definition_id=definition.id,
                expected_count=definition.expected_count,
                started_at=now,
                timeout_at=now + timedelta(seconds=timeout_seconds),
            )
            await self._timed(self._store.insert(instance))
            logger.info(
                "Opened aggregation %s/%s (expected=%s, timeout_at=%s)",
                correlation_id,
                aggregation_key,
                definition.expected_count,
                instance.timeout_at.isoformat(),
            )

        expected_version = instance.version

        if instance.status == AggregationStatus.COLLECTING and instance.timeout_at <= now:
            # Deadline passed before the sweep got to it: close it here.
            self._close(instance, definition, AggregationStatus.TIMEOUT, now)
            self._record_late(instance, envelope, now)
            saved = await self._timed(self._store.save(instance, expected_version))
            await self._notify_closed(saved)
            return AddMemberResult(outcome=MemberOutcome.LATE, instance=saved)

        if instance.status.is_terminal:
            if any(m.envelope_id == envelope.id for m in instance.members):
                return AddMemberResult(outcome=MemberOutcome.LATE, instance=instance)
            self._record_late(instance, envelope, now)
            saved = await self._timed(self._store.save(instance, expected_version))
            logger.info(
                "Late member %s for closed aggregation %s/%s (%s)",
                envelope.id,
                correlation_id,
                aggregation_key,
                saved.status.value,
            )
            return AddMemberResult(outcome=MemberOutcome.LATE, instance=saved)

        if definition.discard_duplicates and instance.has_member(envelope.id):
            logger.debug(
                "Duplicate member %s for %s/%s rejected",
                envelope.id,
                correlation_id,
                aggregation_key,
            )
            return AddMemberResult(outcome=MemberOutcome.DUPLICATE, instance=instance)

        instance.members.append(
            AggregationMember(
                envelope_id=envelope.id,
                sequence_number=instance.next_sequence(),
                message_sequence=envelope.sequence_number,
                received_at=now,
                payload=dict(envelope.payload),
            )
        )
        instance.current_count += 1

        completed = self._is_complete(instance, definition, now)
        if completed:
            self._close(instance, definition, AggregationStatus.COMPLETE, now)

        saved = await self._timed(self._store.save(instance, expected_version))
        if saved.status.is_terminal:
            logger.info(
                "Aggregation %s/%s closed as %s with %d members",
                correlation_id,
                aggregation_key,
                saved.status.value,
                saved.current_count,
            )
            await self._notify_closed(saved)
            if saved.status == AggregationStatus.COMPLETE:
                return AddMemberResult(outcome=MemberOutcome.COMPLETED, instance=saved)
        return AddMemberResult(outcome=MemberOutcome.ADDED, instance=saved)

    def _is_complete(
        self,
        instance: AggregationInstance,
        definition: AggregationDefinition,
        now: datetime,
    ) -> bool:
        if (
            instance.expected_count is not None
            and instance.current_count >= instance.expected_count
        ):
            return True
        if definition.completion_strategy != CompletionStrategy.CONDITION:
            return False
        context = self._condition_context(instance, now)
        try:
            return self._evaluator.evaluate(
                definition.completion_condition or {}, context
            )
        except ExpressionError as exc:
            logger.warning(
                "Completion condition for %s/%s failed: %s",
                instance.correlation_id,
                instance.aggregation_key,
                exc,
            )
            return False

    @staticmethod
    def _condition_context(
        instance: AggregationInstance, now: datetime
    ) -> dict[str, Any]:
        included = instance.included_members
        return {
            "current_count": instance.current_count,
            "expected_count": instance.expected_count,
            "elapsed_seconds": (now - instance.started_at).total_seconds(),
            "latest": included[-1].payload if included else {},
            "items": [m.payload for m in included],
        }

    @staticmethod
    def _record_late(
        instance: AggregationInstance, envelope: MessageEnvelope, now: datetime
    ) -> None:
        instance.members.append(
            AggregationMember(
                envelope_id=envelope.id,
                sequence_number=instance.next_sequence(),
                message_sequence=envelope.sequence_number,
                received_at=now,
                payload=dict(envelope.payload),
                included=False,
                exclusion_reason="late_arrival",
            )
        )

    def _close(
        self,
        instance: AggregationInstance,
        definition: AggregationDefinition,
        status: AggregationStatus,
        now: datetime,
    ) -> None:
        """Merge and move *instance* to a terminal status (FAILED on merge error)."""
        partial = status == AggregationStatus.TIMEOUT
        try:
            instance.result = merge(
                instance, definition, partial=partial, mergers=self.mergers
            )
            instance.status = status
            instance.partial = partial
        except AggregationError as exc:
            logger.error(
                "Merge failed for %s/%s: %s",
                instance.correlation_id,
                instance.aggregation_key,
                exc,
            )
            instance.status = AggregationStatus.FAILED
            instance.error = str(exc)
        instance.completed_at = now

    # ── external signals ─────────────────────────────────────────────

    async def complete(
        self, correlation_id: str, aggregation_key: str, snapshot: ConfigSnapshot
    ) -> AggregationInstance | None:
        """External trigger: close a COLLECTING instance as COMPLETE now.

        No-op (returns the instance unchanged) when it is already closed.
        """
        return await self._signal(
            correlation_id, aggregation_key, snapshot, AggregationStatus.COMPLETE
        )

    async def cancel(
        self, correlation_id: str, aggregation_key: str
    ) -> AggregationInstance | None:
        """Cancel a COLLECTING instance. Idempotent: closed instances are
        returned unchanged."""
        return await self._signal(
            correlation_id, aggregation_key, None, AggregationStatus.CANCELLED
        )

    async def _signal(
        self,
        correlation_id: str,
        aggregation_key: str,
        snapshot: ConfigSnapshot | None,
        status: AggregationStatus,
    ) -> AggregationInstance | None:
        for _ in range(self._max_attempts):
            instance = await self._timed(
                self._store.get(correlation_id, aggregation_key)
            )
            if instance is None or instance.status.is_terminal:
                return instance
            expected_version = instance.version
            now = self._clock()
            if status == AggregationStatus.CANCELLED:
                instance.status = AggregationStatus.CANCELLED
                instance.completed_at = now
            else:
                definition = self._definition_for(instance, snapshot)
                self._close(instance, definition, status, now)
            try:
                saved = await self._timed(self._store.save(instance, expected_version))
            except OptimisticConcurrencyError:
                continue
            logger.info(
                "Aggregation %s/%s closed as %s by external signal",
                correlation_id,
                aggregation_key,
                saved.status.value,
            )
            await self._notify_closed(saved)
            return saved
        raise OptimisticConcurrencyError(
            f"Could not close {correlation_id}/{aggregation_key} "
            f"after {self._max_attempts} attempts"
        )

    # ── timeout sweep ────────────────────────────────────────────────

    async def process_timeouts(self, snapshot: ConfigSnapshot, limit: int = 100) -> int:
        """Close every expired COLLECTING instance; return how many closed.

        Instances whose definition completes on TIMEOUT close as COMPLETE;
        all others close as TIMEOUT with a partial result. Each instance is
        an independent unit: failures are logged and the sweep continues.
        """

        async def _do() -> int:
            now = self._clock()
            expired = await self._timed(self._store.find_expired(now, limit))
            closed = 0
            for instance in expired:
                try:
                    if await self._close_expired(instance, snapshot, now):
                        closed += 1
                except OptimisticConcurrencyError:
                    logger.debug(
                        "Aggregation %s changed during timeout sweep, skipping",
                        instance.id,
                    )
                except Exception as exc:  # noqa: BLE001
                    logger.error(
                        "Failed to time out aggregation %s: %s", instance.id, exc
                    )
            if closed:
                logger.info("Timed out %d aggregation instance(s)", closed)
            return closed

        return await get_hook_registry().execute_all(
            "aggregation.timeouts", {"limit": limit}, _do
        )

    async def _close_expired(
        self, instance: AggregationInstance, snapshot: ConfigSnapshot, now: datetime
    ) -> bool:
        if instance.status != AggregationStatus.COLLECTING:
            return False
        definition = self._definition_for(instance, snapshot)
        status = (
            AggregationStatus.COMPLETE
            if definition.completion_strategy == CompletionStrategy.TIMEOUT
            else AggregationStatus.TIMEOUT
        )
        expected_version = instance.version
        self._close(instance, definition, status, now)
        saved = await self._timed(self._store.save(instance, expected_version))
        await self._notify_closed(saved)
        return True

    @staticmethod
    def _definition_for(
        instance: AggregationInstance, snapshot: ConfigSnapshot | None
    ) -> AggregationDefinition:
        definition = None
        if snapshot is not None:
            definition = snapshot.definition_by_id(
                instance.definition_id
            ) or snapshot.definition_for(instance.aggregation_key)
        if definition is None:
            # Definition removed from config: close with plain collection.
            definition = AggregationDefinition(
                id=instance.definition_id,
                aggregation_key=instance.aggregation_key,
                completion_strategy=CompletionStrategy.EXTERNAL_TRIGGER,
            )
        return definition

    async def _notify_closed(self, instance: AggregationInstance) -> None:
        for callback in self._on_closed:
            try:
                await callback(instance)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "on_closed callback failed for aggregation %s: %s",
                    instance.id,
                    exc,
                )

    async def _timed(self, awaitable: Awaitable[T]) -> T:
        return await with_store_timeout(awaitable, self._store_timeout)
