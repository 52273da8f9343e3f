"""Shared fixtures: a controllable clock and a wired in-memory engine."""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from clm_integration.adapters.memory import InMemoryConfigSource
from clm_integration.config import IntegrationSettings, RetrySettings
from clm_integration.domain.envelope import InboundMessage, MessageEnvelope
from clm_integration.engine import IntegrationEngine
from clm_integration.instrumentation import HookRegistry, set_hook_registry


class FakeClock:
    """Deterministic clock; ``advance`` moves time forward."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEventHandler:
    """Collects every published integration event."""

    def __init__(self) -> None:
        self.events: list[Any] = []

    async def handle(self, event: Any) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.event_type for e in self.events]


def make_envelope(
    *,
    message_type: str = "CONTRACT_CREATED",
    tenant_id: str = "tenant-a",
    payload: dict[str, Any] | None = None,
    now: datetime | None = None,
    max_retries: int = 3,
    **headers: Any,
) -> MessageEnvelope:
    message = InboundMessage(
        message_type=message_type,
        tenant_id=tenant_id,
        payload=payload if payload is not None else {"contractId": 1},
        **headers,
    )
    return MessageEnvelope.from_inbound(
        message,
        max_retries=max_retries,
        now=now or datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc),
    )


@pytest.fixture(autouse=True)
def _isolated_hooks() -> None:
    set_hook_registry(HookRegistry())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config_source() -> InMemoryConfigSource:
    return InMemoryConfigSource()


@pytest.fixture
def settings() -> IntegrationSettings:
    # No jitter and no refresh caching keeps timings exact in tests.
    return IntegrationSettings(
        config_refresh_seconds=0,
        store_timeout_seconds=None,
        retry=RetrySettings(base_delay_seconds=1.0, multiplier=2.0, jitter=False),
    )


@pytest.fixture
def engine(
    settings: IntegrationSettings,
    config_source: InMemoryConfigSource,
    clock: FakeClock,
) -> IntegrationEngine:
    return IntegrationEngine(
        settings=settings,
        config_source=config_source,
        clock=clock,
        rng=random.Random(7),
    )


@pytest.fixture
def events(engine: IntegrationEngine) -> RecordingEventHandler:
    recorder = RecordingEventHandler()
    engine.subscribe(recorder)
    return recorder
