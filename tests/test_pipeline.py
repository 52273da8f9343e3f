"""End-to-end tests for the pipeline wired by IntegrationEngine."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import pytest

from clm_integration.domain.aggregation import AggregationDefinition
from clm_integration.domain.envelope import EnvelopeStatus
from clm_integration.domain.events import OutcomeKind, ProcessingOutcome
from clm_integration.domain.routing import RoutingRule, RoutingStrategy
from clm_integration.engine import IntegrationEngine
from clm_integration.exceptions import (
    HandlerFailure,
    StoreUnavailableError,
    ValidationError,
)
from clm_integration.handlers import (
    ContractEventHandler,
    EtlCompletionHandler,
    default_routing_rules,
)
from clm_integration.pipeline import IngestStatus

from conftest import FakeClock


class RecordingHandler:
    """Destination handler that fails the first ``failures`` calls."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls: list[Any] = []

    async def handle(self, envelope):
        self.calls.append(envelope)
        if len(self.calls) <= self.failures:
            raise HandlerFailure("downstream timeout")
        return [
            ProcessingOutcome(
                subject="CONTRACT",
                kind=OutcomeKind.CREATED,
                payload={"contractId": envelope.payload.get("contractId")},
                envelope_id=envelope.id,
            )
        ]


class FakeContractService:
    def __init__(self, contracts: dict[int, dict[str, Any]] | None = None) -> None:
        self.contracts = contracts or {}

    async def find_by_id(self, tenant_id, contract_id):
        return self.contracts.get(contract_id)

    async def on_activated(self, contract) -> None:
        pass

    async def on_cancelled(self, contract) -> None:
        pass

    async def on_completed(self, contract) -> None:
        pass


def contract_message(**overrides) -> dict[str, Any]:
    message = {
        "message_type": "CONTRACT_CREATED",
        "tenant_id": "tenant-a",
        "payload": {"contractId": 1},
    }
    message.update(overrides)
    return message


@pytest.fixture
def routed(engine, config_source):
    config_source.routing_rules.extend(default_routing_rules())
    handler = RecordingHandler()
    engine.register_handler("contract.created", handler)
    return handler


# ═══════════════════════════════════════════════════════════════════════
# Happy path and duplicates
# ═══════════════════════════════════════════════════════════════════════


class TestIngest:
    @pytest.mark.asyncio
    async def test_direct_route_completes(self, engine, routed, events) -> None:
        result = await engine.ingest(contract_message())

        assert result.status == IngestStatus.COMPLETED
        assert result.dedup.accepted
        assert result.decision.rule_id == "default-contract-created"
        assert result.envelope.destination == "contract.created"
        assert len(routed.calls) == 1
        assert events.types() == ["CONTRACT_CREATED", "MESSAGE_COMPLETED"]

        history = await engine.pipeline.history(result.envelope_id)
        assert [t.to_status for t in history] == [
            EnvelopeStatus.CREATED,
            EnvelopeStatus.QUEUED,
            EnvelopeStatus.ROUTING,
            EnvelopeStatus.PROCESSING,
            EnvelopeStatus.COMPLETED,
        ]
        assert history[0].from_status is None
        assert history[3].reason == "routed:default-contract-created"

    @pytest.mark.asyncio
    async def test_same_message_twice_is_duplicate(
        self, engine, routed, events
    ) -> None:
        message = contract_message(message_id="msg-1")

        first = await engine.ingest(message)
        second = await engine.ingest(message)

        assert first.status == IngestStatus.COMPLETED
        assert second.status == IngestStatus.DUPLICATE
        assert second.dedup.occurrence_count == 2
        assert second.dedup.original_message_id == "msg-1"
        assert len(routed.calls) == 1
        assert events.types().count("MESSAGE_COMPLETED") == 1

    @pytest.mark.asyncio
    async def test_reused_message_id_with_new_content(self, engine, routed) -> None:
        await engine.ingest(contract_message(message_id="msg-1"))

        result = await engine.ingest(
            contract_message(message_id="msg-1", payload={"contractId": 2})
        )

        assert result.status == IngestStatus.DUPLICATE
        assert result.dedup.matched_on == "message_id"
        assert len(routed.calls) == 1

    @pytest.mark.asyncio
    async def test_business_key_duplicate(self, engine, routed) -> None:
        await engine.ingest(contract_message(business_key="CTR-100"))

        result = await engine.ingest(
            contract_message(business_key="CTR-100", payload={"contractId": 9})
        )

        assert result.status == IngestStatus.DUPLICATE
        assert result.dedup.matched_on == "business_key"

    @pytest.mark.asyncio
    async def test_malformed_message_is_rejected(self, engine) -> None:
        with pytest.raises(ValidationError):
            await engine.ingest({"tenant_id": "tenant-a"})
        assert engine.envelopes.all_envelopes() == []


# ═══════════════════════════════════════════════════════════════════════
# Failures, retries and dead letters
# ═══════════════════════════════════════════════════════════════════════


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_failure_then_success(
        self, engine, config_source, clock: FakeClock, events
    ) -> None:
        config_source.routing_rules.extend(default_routing_rules())
        handler = RecordingHandler(failures=1)
        engine.register_handler("contract.created", handler)

        result = await engine.ingest(contract_message())

        assert result.status == IngestStatus.FAILED
        assert result.envelope.retry_count == 1
        assert result.envelope.next_retry_at == clock() + timedelta(seconds=1)

        clock.advance(seconds=1)
        assert await engine.retry_worker.run_once() == 1

        envelope = await engine.envelopes.get(result.envelope_id)
        assert envelope.status == EnvelopeStatus.COMPLETED
        assert len(handler.calls) == 2
        assert "MESSAGE_COMPLETED" in events.types()

    @pytest.mark.asyncio
    async def test_three_failures_dead_letter_and_stop(
        self, engine, config_source, clock: FakeClock, events
    ) -> None:
        config_source.routing_rules.extend(default_routing_rules())
        handler = RecordingHandler(failures=99)
        engine.register_handler("contract.created", handler)

        result = await engine.ingest(contract_message())
        clock.advance(seconds=1)
        await engine.retry_worker.run_once()
        clock.advance(seconds=2)
        await engine.retry_worker.run_once()

        envelope = await engine.envelopes.get(result.envelope_id)
        assert envelope.status == EnvelopeStatus.DEAD_LETTER
        assert envelope.retry_count == 3
        assert len(handler.calls) == 3

        # Dead letters are never picked up by the sweep.
        clock.advance(hours=1)
        assert await engine.retry_worker.run_once() == 0
        assert len(handler.calls) == 3

        [dead] = [e for e in events.events if e.event_type == "MESSAGE_DEAD_LETTERED"]
        assert dead.payload["reason"] == "retry_exhausted"
        assert dead.payload["retryCount"] == 3
        assert dead.payload["lastError"] == "downstream timeout"

    @pytest.mark.asyncio
    async def test_invalid_payload_is_not_retried(
        self, engine, config_source, events
    ) -> None:
        config_source.routing_rules.extend(default_routing_rules())
        engine.register_handler(
            "contract.created", ContractEventHandler(FakeContractService())
        )

        result = await engine.ingest(contract_message(payload={"contractId": "abc"}))

        assert result.status == IngestStatus.DEAD_LETTER
        assert result.envelope.retry_count == 1
        history = await engine.pipeline.history(result.envelope_id)
        assert history[-1].reason == "non_retryable"
        assert history[-1].error_code == "ValidationError"

    @pytest.mark.asyncio
    async def test_missing_handler_dead_letters(self, engine, config_source) -> None:
        config_source.routing_rules.extend(default_routing_rules())

        result = await engine.ingest(contract_message())

        assert result.status == IngestStatus.DEAD_LETTER
        assert "contract.created" in result.error

    @pytest.mark.asyncio
    async def test_failover_destination(self, engine, config_source) -> None:
        config_source.routing_rules.append(
            RoutingRule(
                id="v2",
                pattern="CONTRACT_CREATED",
                destination="contract.created.v2",
                failover_destination="contract.created",
            )
        )
        handler = RecordingHandler()
        engine.register_handler("contract.created", handler)

        result = await engine.ingest(contract_message())

        assert result.status == IngestStatus.COMPLETED
        assert len(handler.calls) == 1

    @pytest.mark.asyncio
    async def test_requeue_after_fix(self, engine, config_source) -> None:
        config_source.routing_rules.extend(default_routing_rules())
        failed = await engine.ingest(contract_message())
        assert failed.status == IngestStatus.DEAD_LETTER
        assert [e.id for e in await engine.pipeline.list_dead_letters()] == [
            failed.envelope_id
        ]

        engine.register_handler("contract.created", RecordingHandler())
        result = await engine.requeue_dead_letter(failed.envelope_id, "ops", "deployed")

        assert result.status == IngestStatus.COMPLETED
        assert result.envelope.retry_count == 0
        history = await engine.pipeline.history(failed.envelope_id)
        requeue = next(t for t in history if t.actor == "ops")
        assert requeue.from_status == EnvelopeStatus.DEAD_LETTER
        assert requeue.reason == "deployed"


# ═══════════════════════════════════════════════════════════════════════
# Store outages mid-pipeline
# ═══════════════════════════════════════════════════════════════════════


def fail_once(target, name: str, *, when=None) -> list[bool]:
    """Make ``target.name`` raise StoreUnavailableError on its first matching call."""
    real = getattr(target, name)
    tripped: list[bool] = []

    async def flaky(*args, **kwargs):
        if not tripped and (when is None or when(*args, **kwargs)):
            tripped.append(True)
            raise StoreUnavailableError(f"{name} timed out")
        return await real(*args, **kwargs)

    setattr(target, name, flaky)
    return tripped


def moving_to(status: EnvelopeStatus):
    def matches(envelope_id, expected_status, changes, transition) -> bool:
        return changes.get("status") == status

    return matches


class TestStoreOutages:
    @pytest.mark.asyncio
    async def test_failed_insert_releases_the_dedup_sighting(
        self, engine, routed
    ) -> None:
        tripped = fail_once(engine.envelopes, "insert")
        message = contract_message(message_id="msg-1")

        with pytest.raises(StoreUnavailableError):
            await engine.ingest(message)
        assert tripped
        assert await engine.envelopes.get("msg-1") is None

        redelivered = await engine.ingest(message)

        assert redelivered.status == IngestStatus.COMPLETED
        assert redelivered.dedup.accepted
        assert len(routed.calls) == 1

    @pytest.mark.asyncio
    async def test_outage_during_retry_is_failed_back_to_the_sweep(
        self, engine, config_source, clock: FakeClock
    ) -> None:
        config_source.routing_rules.extend(default_routing_rules())
        handler = RecordingHandler(failures=1)
        engine.register_handler("contract.created", handler)
        first = await engine.ingest(contract_message())
        assert first.status == IngestStatus.FAILED

        fail_once(
            engine.envelopes,
            "compare_and_set",
            when=moving_to(EnvelopeStatus.ROUTING),
        )
        clock.advance(seconds=1)
        assert await engine.retry_worker.run_once() == 0

        envelope = await engine.envelopes.get(first.envelope_id)
        assert envelope.status == EnvelopeStatus.FAILED
        assert envelope.retry_count == 2
        assert envelope.next_retry_at == clock() + timedelta(seconds=2)
        history = await engine.pipeline.history(first.envelope_id)
        assert history[-1].from_status == EnvelopeStatus.QUEUED
        assert history[-1].reason == "store_unavailable"

        clock.advance(seconds=2)
        assert await engine.retry_worker.run_once() == 1

        envelope = await engine.envelopes.get(first.envelope_id)
        assert envelope.status == EnvelopeStatus.COMPLETED
        assert len(handler.calls) == 2

    @pytest.mark.asyncio
    async def test_outage_after_handler_ran_is_retried(
        self, engine, routed, clock: FakeClock
    ) -> None:
        fail_once(
            engine.envelopes,
            "compare_and_set",
            when=moving_to(EnvelopeStatus.COMPLETED),
        )

        with pytest.raises(StoreUnavailableError):
            await engine.ingest(contract_message(message_id="msg-1"))

        envelope = await engine.envelopes.get("msg-1")
        assert envelope.status == EnvelopeStatus.FAILED
        assert envelope.retry_count == 1

        clock.advance(seconds=1)
        assert await engine.retry_worker.run_once() == 1
        envelope = await engine.envelopes.get("msg-1")
        assert envelope.status == EnvelopeStatus.COMPLETED
        assert len(routed.calls) == 2

    @pytest.mark.asyncio
    async def test_stalled_envelope_is_recovered_by_the_sweep(
        self, engine, routed, clock: FakeClock
    ) -> None:
        fail_once(
            engine.envelopes,
            "compare_and_set",
            when=moving_to(EnvelopeStatus.ROUTING),
        )
        # The release attempt fails too, so the envelope stays QUEUED.
        fail_once(engine.envelopes, "get")

        with pytest.raises(StoreUnavailableError):
            await engine.ingest(contract_message(message_id="msg-1"))
        envelope = await engine.envelopes.get("msg-1")
        assert envelope.status == EnvelopeStatus.QUEUED

        clock.advance(seconds=299)
        assert await engine.retry_worker.run_once() == 0
        assert (await engine.envelopes.get("msg-1")).status == EnvelopeStatus.QUEUED

        clock.advance(seconds=1)
        assert await engine.retry_worker.run_once() == 0
        envelope = await engine.envelopes.get("msg-1")
        assert envelope.status == EnvelopeStatus.FAILED
        assert envelope.retry_count == 1
        history = await engine.pipeline.history("msg-1")
        assert history[-1].reason == "stalled"

        clock.advance(seconds=1)
        assert await engine.retry_worker.run_once() == 1
        envelope = await engine.envelopes.get("msg-1")
        assert envelope.status == EnvelopeStatus.COMPLETED
        assert len(routed.calls) == 1


# ═══════════════════════════════════════════════════════════════════════
# Concurrency bound
# ═══════════════════════════════════════════════════════════════════════


class PeakTrackingHandler:
    def __init__(self) -> None:
        self.active = 0
        self.peak = 0

    async def handle(self, envelope):
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0.01)
        self.active -= 1
        return []


class TestConcurrencyBound:
    @pytest.mark.asyncio
    async def test_ingest_respects_max_concurrency(
        self, settings, config_source, clock: FakeClock
    ) -> None:
        engine = IntegrationEngine(
            settings=settings.model_copy(update={"max_concurrency": 2}),
            config_source=config_source,
            clock=clock,
        )
        config_source.routing_rules.extend(default_routing_rules())
        handler = PeakTrackingHandler()
        engine.register_handler("contract.created", handler)

        results = await asyncio.gather(
            *(
                engine.ingest(contract_message(payload={"contractId": n}))
                for n in range(10)
            )
        )

        assert [r.status for r in results] == [IngestStatus.COMPLETED] * 10
        assert handler.peak == 2


# ═══════════════════════════════════════════════════════════════════════
# Unknown messages
# ═══════════════════════════════════════════════════════════════════════


class TestNoRoute:
    @pytest.mark.asyncio
    async def test_unroutable_message_is_parked(self, engine, events) -> None:
        result = await engine.ingest(contract_message(message_type="INVOICE_PAID"))

        assert result.status == IngestStatus.NO_ROUTE
        assert result.envelope.status == EnvelopeStatus.DEAD_LETTER
        [parked] = engine.unknown_sink.messages
        assert parked.envelope_id == result.envelope_id
        assert parked.message_type == "INVOICE_PAID"
        assert parked.headers["tenantId"] == "tenant-a"
        [dead] = events.events
        assert dead.event_type == "MESSAGE_DEAD_LETTERED"
        assert dead.payload["reason"] == "no_route"

    @pytest.mark.asyncio
    async def test_decision_is_audited(self, engine) -> None:
        result = await engine.ingest(contract_message(message_type="INVOICE_PAID"))

        [decision] = await engine.audit_log.decisions_for(result.envelope_id)
        assert not decision.matched


# ═══════════════════════════════════════════════════════════════════════
# Aggregation
# ═══════════════════════════════════════════════════════════════════════


@pytest.fixture
def bundle(config_source):
    config_source.routing_rules.append(
        RoutingRule(
            id="bundle",
            pattern="CONTRACT_DOCUMENT",
            strategy=RoutingStrategy.AGGREGATOR,
            destination="contract-bundle",
        )
    )
    config_source.aggregation_definitions.append(
        AggregationDefinition(
            aggregation_key="contract-bundle", expected_count=3, timeout_seconds=60
        )
    )


def document(name: str, correlation_id: str | None = "corr-1") -> dict[str, Any]:
    return contract_message(
        message_type="CONTRACT_DOCUMENT",
        correlation_id=correlation_id,
        payload={"document": name},
    )


class TestAggregation:
    @pytest.mark.asyncio
    async def test_three_members_complete_once(
        self, engine, bundle, events
    ) -> None:
        a = await engine.ingest(document("A"))
        b = await engine.ingest(document("B"))
        c = await engine.ingest(document("C"))

        assert a.status == IngestStatus.AGGREGATING
        assert b.status == IngestStatus.AGGREGATING
        assert c.status == IngestStatus.COMPLETED
        assert c.aggregation.completed

        for result in (a, b, c):
            envelope = await engine.envelopes.get(result.envelope_id)
            assert envelope.status == EnvelopeStatus.COMPLETED

        [completed] = [
            e for e in events.events if e.event_type == "AGGREGATION_COMPLETED"
        ]
        assert completed.payload["memberCount"] == 3
        assert completed.payload["partial"] is False
        assert completed.payload["items"] == [
            {"document": "A"},
            {"document": "B"},
            {"document": "C"},
        ]

    @pytest.mark.asyncio
    async def test_timeout_publishes_partial_result(
        self, engine, bundle, clock: FakeClock, events
    ) -> None:
        a = await engine.ingest(document("A"))
        await engine.ingest(document("B"))
        clock.advance(seconds=61)

        assert await engine.aggregation_worker.run_once() == 1

        envelope = await engine.envelopes.get(a.envelope_id)
        assert envelope.status == EnvelopeStatus.COMPLETED
        history = await engine.pipeline.history(a.envelope_id)
        assert history[-1].reason == "aggregation_timeout"
        [timed_out] = [
            e for e in events.events if e.event_type == "AGGREGATION_TIMED_OUT"
        ]
        assert timed_out.payload["partial"] is True
        assert timed_out.payload["memberCount"] == 2

    @pytest.mark.asyncio
    async def test_late_arrival_is_excluded(self, engine, bundle) -> None:
        for name in ("A", "B", "C"):
            await engine.ingest(document(name))

        late = await engine.ingest(document("D"))

        assert late.status == IngestStatus.COMPLETED
        assert late.aggregation.rejected
        history = await engine.pipeline.history(late.envelope_id)
        assert history[-1].reason == "excluded_late_arrival"
        instance = await engine.aggregator.get("corr-1", "contract-bundle")
        assert instance.current_count == 3

    @pytest.mark.asyncio
    async def test_missing_correlation_id_dead_letters(self, engine, bundle) -> None:
        result = await engine.ingest(document("A", correlation_id=None))

        assert result.status == IngestStatus.DEAD_LETTER
        assert "correlation_id" in result.error


# ═══════════════════════════════════════════════════════════════════════
# ETL completion callback
# ═══════════════════════════════════════════════════════════════════════


class TestEtlCompletion:
    @pytest.mark.asyncio
    async def test_notify_etl_complete(self, engine, config_source, events) -> None:
        config_source.routing_rules.extend(default_routing_rules())
        engine.register_handler("etl.complete", EtlCompletionHandler())

        result = await engine.pipeline.notify_etl_complete(
            "session-42",
            {"recordCount": 10, "successCount": 9, "errorCount": 1},
            tenant_id="tenant-a",
        )
        again = await engine.pipeline.notify_etl_complete(
            "session-42",
            {"recordCount": 10, "successCount": 9, "errorCount": 1},
            tenant_id="tenant-a",
        )

        assert result.status == IngestStatus.COMPLETED
        assert result.envelope.correlation_id == "session-42"
        assert again.status == IngestStatus.DUPLICATE
        [session] = [
            e for e in events.events if e.event_type == "ETL_SESSION_COMPLETED"
        ]
        assert session.payload["sessionId"] == "session-42"
        assert session.payload["errorCount"] == 1
