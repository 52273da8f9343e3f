"""Racing writers against the SQLAlchemy adapters on a file-backed SQLite DB.

Each task gets its own pooled connection, so compare-and-set conflicts are
settled by the database rather than by the event loop.
"""

from __future__ import annotations

import asyncio
import random

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from clm_integration.adapters.memory import InMemoryConfigSource
from clm_integration.adapters.sqlalchemy import (
    SQLAlchemyAggregationStore,
    SQLAlchemyDedupStore,
    SQLAlchemyEnvelopeStore,
    SQLAlchemyRoutingAuditLog,
    SQLAlchemyUnknownMessageSink,
    create_schema,
)
from clm_integration.aggregation.aggregator import Aggregator
from clm_integration.config import ConfigSnapshot
from clm_integration.domain.aggregation import AggregationDefinition, MemberOutcome
from clm_integration.domain.dedup import GuardOutcome
from clm_integration.domain.envelope import EnvelopeStatus
from clm_integration.domain.events import OutcomeKind, ProcessingOutcome
from clm_integration.engine import IntegrationEngine
from clm_integration.exceptions import HandlerFailure
from clm_integration.handlers import default_routing_rules
from clm_integration.idempotency import IdempotencyGuard
from clm_integration.pipeline import IngestStatus

from conftest import FakeClock, make_envelope

RACERS = 6


@pytest.fixture
async def db_engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")
    await create_schema(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


class FlakyHandler:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def handle(self, envelope):
        self.calls += 1
        if self.calls <= self.failures:
            raise HandlerFailure("downstream timeout")
        return [
            ProcessingOutcome(
                subject="CONTRACT",
                kind=OutcomeKind.CREATED,
                envelope_id=envelope.id,
            )
        ]


# ═══════════════════════════════════════════════════════════════════════
# Idempotency guard
# ═══════════════════════════════════════════════════════════════════════


class TestConcurrentFirstSightings:
    @pytest.mark.asyncio
    async def test_exactly_one_sighting_is_accepted(
        self, session_factory, clock: FakeClock
    ) -> None:
        store = SQLAlchemyDedupStore(session_factory)
        guards = [IdempotencyGuard(store, clock=clock) for _ in range(RACERS)]

        results = await asyncio.gather(
            *(
                guard.accept(f"msg-{n}", "hash-1", "tenant-a", "CONTRACT_CREATED", 24)
                for n, guard in enumerate(guards)
            )
        )

        outcomes = [r.outcome for r in results]
        assert outcomes.count(GuardOutcome.ACCEPTED) == 1
        assert outcomes.count(GuardOutcome.DUPLICATE) == RACERS - 1
        [accepted] = [r for r in results if r.accepted]
        assert {r.record_id for r in results} == {accepted.record_id}

        record = await store.find_by_content("tenant-a", "hash-1", "CONTRACT_CREATED")
        assert record.occurrence_count == RACERS
        assert record.original_message_id == accepted.original_message_id
        assert sorted(record.duplicate_message_ids) == sorted(
            f"msg-{n}"
            for n in range(RACERS)
            if f"msg-{n}" != accepted.original_message_id
        )


# ═══════════════════════════════════════════════════════════════════════
# Aggregation members
# ═══════════════════════════════════════════════════════════════════════


class TestConcurrentMemberAdds:
    @pytest.mark.asyncio
    async def test_member_count_stays_consistent(
        self, session_factory, clock: FakeClock
    ) -> None:
        store = SQLAlchemyAggregationStore(session_factory)
        aggregator = Aggregator(store, clock=clock)
        snapshot = ConfigSnapshot(
            aggregation_definitions=(
                AggregationDefinition(
                    aggregation_key="bundle", expected_count=RACERS + 10
                ),
            )
        )
        members = [
            make_envelope(payload={"part": n}, correlation_id="corr-1")
            for n in range(RACERS)
        ]

        results = await asyncio.gather(
            *(
                aggregator.add_member("corr-1", "bundle", envelope, snapshot)
                for envelope in members
            )
        )

        assert [r.outcome for r in results] == [MemberOutcome.ADDED] * RACERS
        instance = await aggregator.get("corr-1", "bundle")
        assert instance.current_count == RACERS
        assert sorted(m.envelope_id for m in instance.members) == sorted(
            e.id for e in members
        )
        assert sorted(m.sequence_number for m in instance.members) == list(
            range(1, RACERS + 1)
        )


# ═══════════════════════════════════════════════════════════════════════
# Retry sweep against a redelivery
# ═══════════════════════════════════════════════════════════════════════


class TestSweepRacingRedelivery:
    @pytest.mark.asyncio
    async def test_message_is_handled_once_more(
        self, session_factory, settings, clock: FakeClock
    ) -> None:
        engine = IntegrationEngine(
            settings=settings,
            config_source=InMemoryConfigSource(default_routing_rules()),
            envelopes=SQLAlchemyEnvelopeStore(session_factory),
            dedup_store=SQLAlchemyDedupStore(session_factory),
            aggregations=SQLAlchemyAggregationStore(session_factory),
            audit_log=SQLAlchemyRoutingAuditLog(session_factory),
            unknown_sink=SQLAlchemyUnknownMessageSink(session_factory),
            clock=clock,
            rng=random.Random(7),
        )
        handler = FlakyHandler(failures=1)
        engine.register_handler("contract.created", handler)
        message = {
            "message_id": "msg-1",
            "message_type": "CONTRACT_CREATED",
            "tenant_id": "tenant-a",
            "payload": {"contractId": 1},
        }
        first = await engine.ingest(message)
        assert first.status == IngestStatus.FAILED
        clock.advance(seconds=1)

        first_sweep, second_sweep, redelivery = await asyncio.gather(
            engine.retry_worker.run_once(),
            engine.retry_worker.run_once(),
            engine.ingest(message),
        )

        assert first_sweep + second_sweep == 1
        assert redelivery.status == IngestStatus.DUPLICATE
        assert handler.calls == 2
        envelope = await engine.envelopes.get("msg-1")
        assert envelope.status == EnvelopeStatus.COMPLETED
        history = await engine.pipeline.history("msg-1")
        assert [t.to_status for t in history].count(EnvelopeStatus.COMPLETED) == 1
