"""Tests for instrumentation hooks, structured logging and message context."""

from __future__ import annotations

import json
import logging

import pytest

from clm_integration.correlation import (
    get_correlation_id,
    get_tenant_id,
    message_context,
    set_correlation_id,
)
from clm_integration.domain.events import OutcomeKind, ProcessingOutcome
from clm_integration.handlers import default_routing_rules
from clm_integration.instrumentation import HookRegistry, get_hook_registry
from clm_integration.observability import StructuredLoggingHook


def recording_hook(seen: list[str], label: str | None = None):
    async def hook(operation, attributes, next_handler):
        seen.append(label or operation)
        return await next_handler()

    return hook


class CreatedHandler:
    async def handle(self, envelope):
        return [
            ProcessingOutcome(
                subject="CONTRACT",
                kind=OutcomeKind.CREATED,
                envelope_id=envelope.id,
            )
        ]


# ═══════════════════════════════════════════════════════════════════════
# Hook registry
# ═══════════════════════════════════════════════════════════════════════


class TestHookRegistry:
    @pytest.mark.asyncio
    async def test_no_hooks_runs_operation(self) -> None:
        registry = HookRegistry()

        async def op():
            return 42

        assert await registry.execute_all("anything", {}, op) == 42

    @pytest.mark.asyncio
    async def test_priority_orders_the_chain(self) -> None:
        registry = HookRegistry()
        seen: list[str] = []
        registry.register(recording_hook(seen, "inner"), priority=10)
        registry.register(recording_hook(seen, "outer"), priority=-10)

        async def op():
            seen.append("op")

        await registry.execute_all("router.route", {}, op)

        assert seen == ["outer", "inner", "op"]

    @pytest.mark.asyncio
    async def test_operation_patterns_filter_hooks(self) -> None:
        registry = HookRegistry()
        seen: list[str] = []
        registry.register(recording_hook(seen), operations=["pipeline.*"])
        disabled = registry.register(recording_hook(seen, "disabled"))
        disabled.enabled = False

        async def op():
            return None

        await registry.execute_all("router.route", {}, op)
        await registry.execute_all("pipeline.ingest.CONTRACT_CREATED", {}, op)

        assert seen == ["pipeline.ingest.CONTRACT_CREATED"]

    @pytest.mark.asyncio
    async def test_tenant_scoped_hooks(self) -> None:
        registry = HookRegistry()
        seen: list[str] = []
        registry.register(recording_hook(seen, "tenant-a"), tenants=["tenant-a"])

        async def op():
            return None

        await registry.execute_all("pipeline.ingest.X", {"tenant_id": "tenant-b"}, op)
        await registry.execute_all("pipeline.ingest.X", {"tenant_id": "tenant-a"}, op)
        with message_context("corr-1", "tenant-a"):
            await registry.execute_all("router.route", {}, op)
        await registry.execute_all("retry.sweep", {}, op)

        assert seen == ["tenant-a", "tenant-a"]

    @pytest.mark.asyncio
    async def test_unregister(self) -> None:
        registry = HookRegistry()
        seen: list[str] = []
        registration = registry.register(recording_hook(seen))

        registry.unregister(registration)

        async def op():
            return None

        await registry.execute_all("router.route", {}, op)
        assert seen == []

    @pytest.mark.asyncio
    async def test_pipeline_operations_are_instrumented(
        self, engine, config_source
    ) -> None:
        config_source.routing_rules.extend(default_routing_rules())
        engine.register_handler("contract.created", CreatedHandler())
        seen: list[str] = []
        get_hook_registry().register(recording_hook(seen))

        await engine.pipeline.ingest(
            {
                "message_type": "CONTRACT_CREATED",
                "tenant_id": "tenant-a",
                "payload": {"contractId": 1},
            }
        )

        assert seen[0] == "pipeline.ingest.CONTRACT_CREATED"
        assert "router.route" in seen
        assert "publisher.publish.CONTRACT_CREATED" in seen


# ═══════════════════════════════════════════════════════════════════════
# Structured logging
# ═══════════════════════════════════════════════════════════════════════


class TestStructuredLoggingHook:
    @pytest.mark.asyncio
    async def test_emits_one_json_entry(self, caplog) -> None:
        hook = StructuredLoggingHook()

        async def op():
            return "done"

        with caplog.at_level(logging.INFO, logger="clm_integration.operations"):
            with message_context("corr-1", "tenant-a"):
                result = await hook(
                    "router.route", {"envelope_id": "env-1", "skip": object()}, op
                )

        assert result == "done"
        [record] = caplog.records
        entry = json.loads(record.getMessage())
        assert entry["operation"] == "router.route"
        assert entry["outcome"] == "success"
        assert entry["correlation_id"] == "corr-1"
        assert entry["tenant_id"] == "tenant-a"
        assert entry["envelope_id"] == "env-1"
        assert "skip" not in entry
        assert entry["duration_ms"] >= 0

    @pytest.mark.asyncio
    async def test_error_outcome_reraises(self, caplog) -> None:
        hook = StructuredLoggingHook()

        async def op():
            raise RuntimeError("boom")

        with caplog.at_level(logging.INFO, logger="clm_integration.operations"):
            with pytest.raises(RuntimeError):
                await hook("retry.sweep", {"tenant_id": "tenant-b"}, op)

        entry = json.loads(caplog.records[0].getMessage())
        assert entry["outcome"] == "error"
        assert entry["tenant_id"] == "tenant-b"


# ═══════════════════════════════════════════════════════════════════════
# Message context
# ═══════════════════════════════════════════════════════════════════════


class TestMessageContext:
    def test_binds_and_restores(self) -> None:
        set_correlation_id("outer")
        try:
            with message_context("corr-1", "tenant-a"):
                assert get_correlation_id() == "corr-1"
                assert get_tenant_id() == "tenant-a"

            assert get_correlation_id() == "outer"
            assert get_tenant_id() is None
        finally:
            set_correlation_id(None)
