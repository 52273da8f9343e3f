"""IntegrationEngine — one-call wiring for the integration pipeline."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .adapters.memory import (
    InMemoryAggregationStore,
    InMemoryConfigSource,
    InMemoryDedupStore,
    InMemoryEnvelopeStore,
    InMemoryRoutingAuditLog,
    InMemoryUnknownMessageSink,
)
from .aggregation import Aggregator, MergerRegistry
from .config import ConfigProvider, IntegrationSettings
from .dead_letter import DeadLetterHandler
from .domain.events import OutcomeKind, ProcessingOutcome
from .idempotency import IdempotencyGuard
from .pipeline import IntegrationPipeline
from .publisher import EventPublisher
from .retry import RetryPolicy, RetryScheduler
from .routing import ExpressionEvaluator, Router
from .utils import utc_now
from .workers import AggregationTimeoutWorker, RetrySweepWorker

if TYPE_CHECKING:
    import random

    from .domain.envelope import InboundMessage, MessageEnvelope
    from .pipeline import IngestResult
    from .ports.aggregation_store import IAggregationStore
    from .ports.config import IConfigSource
    from .ports.dedup_store import IDedupStore
    from .ports.envelope_store import IEnvelopeStore
    from .ports.handlers import IEventHandler, IMessageHandler
    from .ports.routing import IRoutingAuditLog, IUnknownMessageSink
    from .utils import Clock

logger = logging.getLogger("clm_integration.engine")


class IntegrationEngine:
    """
    Wires stores, guard, router, aggregator, retry scheduler, publisher,
    pipeline and both background workers.

    Every store defaults to its in-memory adapter, which suits tests and
    single-process deployments; pass the SQLAlchemy adapters for anything
    that must survive a restart.

    Example
    -------
    ::

        engine = IntegrationEngine(config_source=source)
        engine.register_handler("contract.created", ContractEventHandler(svc))
        engine.subscribe(notifier, ["CONTRACT_*"])
        await engine.start()
        result = await engine.ingest({...})
        await engine.stop()
    """

    def __init__(
        self,
        *,
        settings: IntegrationSettings | None = None,
        config_source: IConfigSource | None = None,
        envelopes: IEnvelopeStore | None = None,
        dedup_store: IDedupStore | None = None,
        aggregations: IAggregationStore | None = None,
        audit_log: IRoutingAuditLog | None = None,
        unknown_sink: IUnknownMessageSink | None = None,
        evaluator: ExpressionEvaluator | None = None,
        mergers: MergerRegistry | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings or IntegrationSettings()
        clock = clock or utc_now
        store_timeout = self.settings.store_timeout_seconds
        evaluator = evaluator or ExpressionEvaluator()

        self.config_source = config_source or InMemoryConfigSource()
        self.config = ConfigProvider(self.config_source, self.settings, clock=clock)
        self.envelopes = envelopes or InMemoryEnvelopeStore()
        self.dedup_store = dedup_store or InMemoryDedupStore()
        self.aggregations = aggregations or InMemoryAggregationStore()
        self.audit_log = audit_log or InMemoryRoutingAuditLog()
        self.unknown_sink = unknown_sink or InMemoryUnknownMessageSink()

        self.publisher = EventPublisher(clock=clock)
        self.guard = IdempotencyGuard(
            self.dedup_store, clock=clock, store_timeout=store_timeout
        )
        self.router = Router(self.audit_log, evaluator=evaluator, clock=clock)
        self.aggregator = Aggregator(
            self.aggregations,
            evaluator=evaluator,
            mergers=mergers,
            clock=clock,
            store_timeout=store_timeout,
        )
        self.dead_letters = DeadLetterHandler(
            self.envelopes,
            on_dead_letter=self._publish_dead_letter,
            clock=clock,
            store_timeout=store_timeout,
        )
        self.scheduler = RetryScheduler(
            self.envelopes,
            RetryPolicy.from_settings(self.settings.retry, rng=rng),
            dead_letters=self.dead_letters,
            clock=clock,
            store_timeout=store_timeout,
            batch_size=self.settings.workers.retry_batch_size,
            stall_timeout=self.settings.workers.stall_timeout_seconds,
        )
        self.pipeline = IntegrationPipeline(
            envelopes=self.envelopes,
            guard=self.guard,
            router=self.router,
            aggregator=self.aggregator,
            scheduler=self.scheduler,
            publisher=self.publisher,
            dead_letters=self.dead_letters,
            unknown_sink=self.unknown_sink,
            config=self.config,
            clock=clock,
            store_timeout=store_timeout,
            max_concurrency=self.settings.max_concurrency,
        )
        self.scheduler.resubmit = self.pipeline.process_envelope
        self.aggregator.on_closed(self.pipeline.on_aggregation_closed)

        workers = self.settings.workers
        self.retry_worker = RetrySweepWorker(
            self.scheduler,
            poll_interval=float(workers.retry_interval_seconds),
            batch_size=workers.retry_batch_size,
        )
        self.aggregation_worker = AggregationTimeoutWorker(
            self.aggregator,
            self.config,
            poll_interval=float(workers.aggregation_timeout_interval_seconds),
            batch_size=workers.aggregation_timeout_batch_size,
        )

    # ── wiring ───────────────────────────────────────────────────────

    def register_handler(self, destination: str, handler: IMessageHandler) -> None:
        self.pipeline.register_handler(destination, handler)

    def subscribe(
        self, handler: IEventHandler, event_types: list[str] | None = None
    ) -> None:
        self.publisher.subscribe(handler, event_types)

    # ── lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        await self.retry_worker.start()
        await self.aggregation_worker.start()
        logger.info("IntegrationEngine started")

    async def stop(self) -> None:
        await self.aggregation_worker.stop()
        await self.retry_worker.stop()
        logger.info("IntegrationEngine stopped")

    async def __aenter__(self) -> IntegrationEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # ── operations ───────────────────────────────────────────────────

    async def ingest(self, message: InboundMessage | dict[str, Any]) -> IngestResult:
        return await self.pipeline.ingest(message)

    async def requeue_dead_letter(
        self, envelope_id: str, actor: str, reason: str | None = None
    ) -> IngestResult:
        return await self.pipeline.requeue_dead_letter(envelope_id, actor, reason)

    async def purge_expired_dedup(self) -> int:
        return await self.guard.purge_expired()

    async def _publish_dead_letter(
        self,
        envelope: MessageEnvelope,
        reason: str,
        exception: BaseException | None,
    ) -> None:
        await self.publisher.publish(
            ProcessingOutcome(
                subject="MESSAGE",
                kind=OutcomeKind.DEAD_LETTERED,
                envelope_id=envelope.id,
                correlation_id=envelope.correlation_id,
                tenant_id=envelope.tenant_id,
                payload={
                    "messageType": envelope.message_type,
                    "reason": reason,
                    "retryCount": envelope.retry_count,
                    "lastError": envelope.last_error
                    or (str(exception) if exception else None),
                },
            )
        )
