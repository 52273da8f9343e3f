"""IntegrationPipeline — Guard → Router → Handler → Publisher, composed in code.

Each stage is an explicit call; every envelope status change is a
compare-and-set on the status the pipeline last observed, with the
transition appended in the same step.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, ConfigDict

from .correlation import generate_correlation_id, message_context
from .domain.aggregation import AddMemberResult, AggregationStatus, MemberOutcome
from .domain.dedup import DedupResult, GuardOutcome
from .domain.envelope import (
    EnvelopeStatus,
    InboundMessage,
    MessageEnvelope,
    StateTransition,
)
from .domain.events import OutcomeKind, ProcessingOutcome
from .domain.routing import RoutingDecision, RoutingStrategy, UnknownMessage
from .exceptions import (
    DefinitionNotFoundError,
    DuplicateKeyError,
    HandlerNotFoundError,
    NoRouteMatchError,
    StoreUnavailableError,
    ValidationError,
)
from .instrumentation import get_hook_registry
from .utils import utc_now, with_store_timeout

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from .aggregation.aggregator import Aggregator
    from .config import ConfigProvider, ConfigSnapshot
    from .dead_letter import DeadLetterHandler
    from .domain.aggregation import AggregationInstance
    from .idempotency import IdempotencyGuard
    from .ports.envelope_store import IEnvelopeStore
    from .ports.handlers import IMessageHandler
    from .ports.routing import IUnknownMessageSink
    from .publisher import EventPublisher
    from .retry.scheduler import RetryScheduler
    from .routing.router import Router
    from .utils import Clock

T = TypeVar("T")

logger = logging.getLogger("clm_integration.pipeline")


class IngestStatus(str, Enum):
    COMPLETED = "COMPLETED"
    DUPLICATE = "DUPLICATE"
    AGGREGATING = "AGGREGATING"
    FAILED = "FAILED"
    DEAD_LETTER = "DEAD_LETTER"
    NO_ROUTE = "NO_ROUTE"


class IngestResult(BaseModel):
    """What happened to one message on one pass through the pipeline."""

    model_config = ConfigDict(frozen=True)

    status: IngestStatus
    envelope_id: str
    envelope: MessageEnvelope | None = None
    dedup: DedupResult | None = None
    decision: RoutingDecision | None = None
    aggregation: AddMemberResult | None = None
    error: str | None = None


class IntegrationPipeline:
    def __init__(
        self,
        *,
        envelopes: IEnvelopeStore,
        guard: IdempotencyGuard,
        router: Router,
        aggregator: Aggregator,
        scheduler: RetryScheduler,
        publisher: EventPublisher,
        dead_letters: DeadLetterHandler,
        unknown_sink: IUnknownMessageSink,
        config: ConfigProvider,
        clock: Clock | None = None,
        store_timeout: float | None = None,
        max_concurrency: int = 8,
    ) -> None:
        self._envelopes = envelopes
        self._guard = guard
        self._router = router
        self._aggregator = aggregator
        self._scheduler = scheduler
        self._publisher = publisher
        self._dead_letters = dead_letters
        self._unknown_sink = unknown_sink
        self._config = config
        self._clock = clock or utc_now
        self._store_timeout = store_timeout
        self._handlers: dict[str, IMessageHandler] = {}
        self._semaphore = asyncio.Semaphore(max_concurrency)

    def register_handler(self, destination: str, handler: IMessageHandler) -> None:
        """Bind a routed destination name to the handler that executes it."""
        self._handlers[destination] = handler

    # ── ingestion ────────────────────────────────────────────────────

    async def ingest(self, message: InboundMessage | dict[str, Any]) -> IngestResult:
        """Accept one inbound message and run it through the pipeline.

        Raises:
            ValidationError: malformed headers; nothing is stored.
            StoreUnavailableError: when nothing was stored the dedup sighting
                is released so a redelivery is accepted; a stored envelope is
                failed back to the retry sweep.
        """
        if not isinstance(message, InboundMessage):
            message = InboundMessage.parse(message)
        correlation_id = message.correlation_id or generate_correlation_id()
        async with self._semaphore:
            with message_context(correlation_id, message.tenant_id):
                return await get_hook_registry().execute_all(
                    f"pipeline.ingest.{message.message_type}",
                    {
                        "message_id": message.message_id,
                        "message_type": message.message_type,
                        "correlation_id": correlation_id,
                        "tenant_id": message.tenant_id,
                    },
                    lambda: self._ingest(message),
                )

    async def _ingest(self, message: InboundMessage) -> IngestResult:
        snapshot = await self._config.snapshot()
        settings = snapshot.settings
        envelope = MessageEnvelope.from_inbound(
            message, max_retries=settings.max_retries, now=self._clock()
        )

        dedup = await self._guard.accept(
            envelope.id,
            envelope.content_hash,
            envelope.tenant_id,
            envelope.message_type,
            settings.dedup_window_hours,
            business_key=envelope.business_key,
        )
        if dedup.duplicate:
            return IngestResult(
                status=IngestStatus.DUPLICATE, envelope_id=envelope.id, dedup=dedup
            )

        try:
            await self._timed(
                self._envelopes.insert(
                    envelope,
                    StateTransition(
                        envelope_id=envelope.id,
                        from_status=None,
                        to_status=EnvelopeStatus.CREATED,
                        at=envelope.created_at,
                        reason="received",
                    ),
                )
            )
        except DuplicateKeyError:
            # Same message id redelivered with different content.
            logger.info("Envelope %s already exists, treating as duplicate", envelope.id)
            return IngestResult(
                status=IngestStatus.DUPLICATE,
                envelope_id=envelope.id,
                dedup=DedupResult(
                    outcome=GuardOutcome.DUPLICATE,
                    record_id=dedup.record_id,
                    occurrence_count=dedup.occurrence_count,
                    original_message_id=envelope.id,
                    matched_on="message_id",
                ),
            )
        except Exception:
            await self._release_sighting(dedup)
            raise

        try:
            queued = await self._move(
                envelope, EnvelopeStatus.QUEUED, reason="accepted"
            )
            result = await self._process(queued, snapshot)
        except StoreUnavailableError as exc:
            await self._scheduler.release(envelope.id, exc)
            raise
        return result.model_copy(update={"dedup": dedup})

    async def process_envelope(
        self, envelope: MessageEnvelope, snapshot: ConfigSnapshot | None = None
    ) -> IngestResult:
        """Route and dispatch a QUEUED envelope (retry sweep and requeue path)."""
        snapshot = snapshot or await self._config.snapshot()
        correlation_id = envelope.correlation_id or envelope.id
        with message_context(correlation_id, envelope.tenant_id):
            try:
                return await self._process(envelope, snapshot)
            except StoreUnavailableError as exc:
                await self._scheduler.release(envelope.id, exc)
                raise

    async def _process(
        self, envelope: MessageEnvelope, snapshot: ConfigSnapshot
    ) -> IngestResult:
        routing = await self._move(envelope, EnvelopeStatus.ROUTING)
        decision = await self._router.route(routing, snapshot)

        if not decision.matched:
            error = NoRouteMatchError(routing.id, routing.message_type)
            parked = await self._park_unknown(routing, error, decision)
            return IngestResult(
                status=IngestStatus.NO_ROUTE,
                envelope_id=routing.id,
                envelope=parked,
                decision=decision,
                error=str(error),
            )

        processing = await self._move(
            routing,
            EnvelopeStatus.PROCESSING,
            changes={
                "destination": decision.destination,
                "destinations": list(decision.destinations),
            },
            reason=f"routed:{decision.rule_id}",
        )

        if decision.strategy == RoutingStrategy.AGGREGATOR:
            return await self._aggregate(processing, decision, snapshot)
        return await self._dispatch(processing, decision)

    # ── handler dispatch ─────────────────────────────────────────────

    async def _dispatch(
        self, envelope: MessageEnvelope, decision: RoutingDecision
    ) -> IngestResult:
        outcomes: list[ProcessingOutcome] = []
        try:
            for destination in decision.destinations:
                handler = self._resolve_handler(destination, decision)
                produced = await handler.handle(envelope)
                if produced:
                    outcomes.extend(produced)
        except NoRouteMatchError as exc:
            parked = await self._park_unknown(envelope, exc, decision)
            return IngestResult(
                status=IngestStatus.NO_ROUTE,
                envelope_id=envelope.id,
                envelope=parked,
                decision=decision,
                error=str(exc),
            )
        except (ValidationError, HandlerNotFoundError) as exc:
            return await self._fail(envelope, exc, decision, retryable=False)
        except Exception as exc:  # noqa: BLE001
            return await self._fail(envelope, exc, decision, retryable=True)

        completed = await self._move(
            envelope,
            EnvelopeStatus.COMPLETED,
            changes={"completed_at": self._clock(), "next_retry_at": None},
            reason="handled",
        )
        for outcome in outcomes:
            await self._publish(outcome)
        await self._publish(
            ProcessingOutcome(
                subject="MESSAGE",
                kind=OutcomeKind.COMPLETED,
                envelope_id=completed.id,
                correlation_id=completed.correlation_id,
                tenant_id=completed.tenant_id,
                payload={
                    "messageType": completed.message_type,
                    "destinations": list(decision.destinations),
                    "retryCount": completed.retry_count,
                },
            )
        )
        return IngestResult(
            status=IngestStatus.COMPLETED,
            envelope_id=completed.id,
            envelope=completed,
            decision=decision,
        )

    def _resolve_handler(
        self, destination: str, decision: RoutingDecision
    ) -> IMessageHandler:
        handler = self._handlers.get(destination)
        if handler is not None:
            return handler
        failover = decision.failover_destination
        if failover and failover in self._handlers:
            logger.warning(
                "No handler for %s, using failover %s", destination, failover
            )
            return self._handlers[failover]
        raise HandlerNotFoundError(destination)

    async def _fail(
        self,
        envelope: MessageEnvelope,
        error: BaseException,
        decision: RoutingDecision | None,
        *,
        retryable: bool,
    ) -> IngestResult:
        logger.warning(
            "Processing of %s (%s) failed: %s",
            envelope.id,
            envelope.message_type,
            error,
        )
        updated = await self._scheduler.record_failure(
            envelope, error, retryable=retryable
        )
        status = (
            IngestStatus.DEAD_LETTER
            if updated.status == EnvelopeStatus.DEAD_LETTER
            else IngestStatus.FAILED
        )
        return IngestResult(
            status=status,
            envelope_id=updated.id,
            envelope=updated,
            decision=decision,
            error=str(error) or type(error).__name__,
        )

    async def _park_unknown(
        self,
        envelope: MessageEnvelope,
        error: NoRouteMatchError,
        decision: RoutingDecision | None,
    ) -> MessageEnvelope:
        """Store the message for manual review and dead-letter it (not retried)."""
        try:
            await self._timed(
                self._unknown_sink.store(
                    UnknownMessage(
                        envelope_id=envelope.id,
                        tenant_id=envelope.tenant_id,
                        message_type=envelope.message_type,
                        payload=dict(envelope.payload),
                        headers=envelope.headers(),
                        reason=str(error),
                        received_at=self._clock(),
                    )
                )
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Failed to store unknown message %s for review: %s", envelope.id, exc
            )
        parked = await self._move(
            envelope,
            EnvelopeStatus.DEAD_LETTER,
            changes={"last_error": str(error), "next_retry_at": None},
            reason="no_route",
            error=error,
        )
        await self._dead_letters.route(parked, "no_route", error)
        return parked

    # ── aggregation ──────────────────────────────────────────────────

    async def _aggregate(
        self,
        envelope: MessageEnvelope,
        decision: RoutingDecision,
        snapshot: ConfigSnapshot,
    ) -> IngestResult:
        aggregation_key = envelope.aggregation_key or decision.destination or ""
        aggregating = await self._move(
            envelope,
            EnvelopeStatus.AGGREGATING,
            reason=f"aggregate:{aggregation_key}",
        )
        if not envelope.correlation_id:
            error = ValidationError(
                {"correlation_id": ["required for aggregation"]}
            )
            return await self._fail(aggregating, error, decision, retryable=False)

        try:
            added = await self._aggregator.add_member(
                envelope.correlation_id, aggregation_key, aggregating, snapshot
            )
        except DefinitionNotFoundError as exc:
            return await self._fail(aggregating, exc, decision, retryable=False)
        except Exception as exc:  # noqa: BLE001
            return await self._fail(aggregating, exc, decision, retryable=True)

        if added.outcome == MemberOutcome.LATE:
            current = await self._timed(self._envelopes.get(aggregating.id))
            if current is not None and current.status == EnvelopeStatus.AGGREGATING:
                current = await self._move(
                    current,
                    EnvelopeStatus.COMPLETED,
                    changes={"completed_at": self._clock()},
                    reason="excluded_late_arrival",
                )
            return IngestResult(
                status=IngestStatus.COMPLETED,
                envelope_id=aggregating.id,
                envelope=current,
                decision=decision,
                aggregation=added,
            )

        current = await self._timed(self._envelopes.get(aggregating.id))
        status = IngestStatus.AGGREGATING
        if current is not None and current.status == EnvelopeStatus.COMPLETED:
            status = IngestStatus.COMPLETED
        elif current is not None and current.status == EnvelopeStatus.DEAD_LETTER:
            status = IngestStatus.DEAD_LETTER
        return IngestResult(
            status=status,
            envelope_id=aggregating.id,
            envelope=current,
            decision=decision,
            aggregation=added,
        )

    async def on_aggregation_closed(self, instance: AggregationInstance) -> None:
        """Finish member envelopes and publish the aggregation outcome."""
        if instance.status == AggregationStatus.FAILED:
            target = EnvelopeStatus.DEAD_LETTER
        else:
            target = EnvelopeStatus.COMPLETED
        reason = f"aggregation_{instance.status.value.lower()}"
        now = self._clock()

        for member in instance.included_members:
            try:
                envelope = await self._timed(self._envelopes.get(member.envelope_id))
                if envelope is None or envelope.status != EnvelopeStatus.AGGREGATING:
                    continue
                changes: dict[str, Any] = {}
                if target == EnvelopeStatus.COMPLETED:
                    changes["completed_at"] = now
                else:
                    changes["last_error"] = instance.error
                await self._move(envelope, target, changes=changes, reason=reason)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Failed to finish member %s of aggregation %s: %s",
                    member.envelope_id,
                    instance.id,
                    exc,
                )

        kind = {
            AggregationStatus.COMPLETE: OutcomeKind.COMPLETED,
            AggregationStatus.TIMEOUT: OutcomeKind.TIMED_OUT,
            AggregationStatus.CANCELLED: OutcomeKind.CANCELLED,
            AggregationStatus.FAILED: OutcomeKind.FAILED,
        }[instance.status]
        payload: dict[str, Any] = dict(instance.result or {})
        payload.update(
            {
                "instanceId": instance.id,
                "correlationId": instance.correlation_id,
                "aggregationKey": instance.aggregation_key,
                "status": instance.status.value,
                "partial": instance.partial,
                "memberCount": instance.current_count,
                "expectedCount": instance.expected_count,
            }
        )
        if instance.error:
            payload["error"] = instance.error
        await self._publish(
            ProcessingOutcome(
                subject="AGGREGATION",
                kind=kind,
                correlation_id=instance.correlation_id,
                payload=payload,
            )
        )

    # ── operator surface ─────────────────────────────────────────────

    async def history(self, envelope_id: str) -> list[StateTransition]:
        return await self._timed(self._envelopes.transitions(envelope_id))

    async def list_dead_letters(
        self, limit: int = 100, offset: int = 0
    ) -> list[MessageEnvelope]:
        return await self._dead_letters.list_dead_letters(limit, offset)

    async def requeue_dead_letter(
        self, envelope_id: str, actor: str, reason: str | None = None
    ) -> IngestResult:
        """Manual remediation: requeue a dead-lettered envelope and process it."""
        requeued = await self._dead_letters.requeue(envelope_id, actor, reason)
        return await self.process_envelope(requeued)

    async def notify_etl_complete(
        self,
        session_id: str,
        metadata: dict[str, Any],
        *,
        tenant_id: str,
        correlation_id: str | None = None,
    ) -> IngestResult:
        """Staging-completion callback: ingest an ``ETL_COMPLETE`` message."""
        payload = {
            "sessionId": session_id,
            "recordCount": int(metadata.get("recordCount", 0)),
            "successCount": int(metadata.get("successCount", 0)),
            "errorCount": int(metadata.get("errorCount", 0)),
        }
        return await self.ingest(
            InboundMessage(
                message_type="ETL_COMPLETE",
                tenant_id=tenant_id,
                correlation_id=correlation_id or session_id,
                source_system="ETL",
                business_key=f"etl-session:{session_id}",
                payload=payload,
            )
        )

    # ── helpers ──────────────────────────────────────────────────────

    async def _move(
        self,
        envelope: MessageEnvelope,
        to_status: EnvelopeStatus,
        *,
        changes: dict[str, Any] | None = None,
        reason: str | None = None,
        error: BaseException | None = None,
    ) -> MessageEnvelope:
        envelope.check_transition(to_status)
        transition = StateTransition.of(
            envelope, to_status, at=self._clock(), reason=reason, error=error
        )
        return await self._timed(
            self._envelopes.compare_and_set(
                envelope.id,
                envelope.status,
                {**(changes or {}), "status": to_status},
                transition,
            )
        )

    async def _release_sighting(self, dedup: DedupResult) -> None:
        try:
            await self._guard.release(dedup)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Failed to release dedup record %s: %s", dedup.record_id, exc
            )

    async def _publish(self, outcome: ProcessingOutcome) -> None:
        # EventPublisher swallows downstream failures itself.
        await self._publisher.publish(outcome)

    async def _timed(self, awaitable: Awaitable[T]) -> T:
        return await with_store_timeout(awaitable, self._store_timeout)
