"""Tests for operators, the expression evaluator and the Router."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from clm_integration.adapters.memory import InMemoryRoutingAuditLog
from clm_integration.config import ConfigSnapshot
from clm_integration.domain.routing import RoutingRule, RoutingStrategy
from clm_integration.exceptions import ExpressionError
from clm_integration.routing.expressions import ExpressionEvaluator
from clm_integration.routing.operators import (
    ExpressionOperator,
    Operator,
    build_default_registry,
)
from clm_integration.routing.router import Router

from conftest import FakeClock, make_envelope


def snapshot_of(*rules: RoutingRule) -> ConfigSnapshot:
    return ConfigSnapshot(version=1, routing_rules=rules)


# ═══════════════════════════════════════════════════════════════════════
# Operators
# ═══════════════════════════════════════════════════════════════════════


class TestOperators:
    @pytest.fixture
    def registry(self):
        return build_default_registry()

    @pytest.mark.parametrize(
        ("op", "field", "value", "expected"),
        [
            (Operator.EQ, "ACTIVE", "ACTIVE", True),
            (Operator.NE, "ACTIVE", "DRAFT", True),
            (Operator.GT, 10, 5, True),
            (Operator.GT, None, 5, False),
            (Operator.LE, 5, 5, True),
            (Operator.IN, "EU", ["EU", "US"], True),
            (Operator.NOT_IN, "APAC", ["EU", "US"], True),
            (Operator.BETWEEN, 50, (10, 100), True),
            (Operator.BETWEEN, None, (10, 100), False),
            (Operator.CONTAINS, "premium-plan", "premium", True),
            (Operator.CONTAINS, None, "premium", False),
            (Operator.STARTSWITH, "CTR-001", "CTR", True),
            (Operator.STARTSWITH, 1001, "1", False),
            (Operator.ENDSWITH, "report.csv", ".csv", True),
            (Operator.REGEX, "CTR-2026-001", r"^CTR-\d{4}-", True),
            (Operator.IS_NULL, None, None, True),
            (Operator.IS_NULL, "x", False, True),
            (Operator.IS_NOT_NULL, "x", None, True),
        ],
    )
    def test_evaluate(self, registry, op, field, value, expected) -> None:
        assert registry.evaluate(op, field, value) is expected

    def test_supports_every_operator(self, registry) -> None:
        assert registry.supported_operators == set(Operator)

    def test_custom_operator_replaces_builtin(self, registry) -> None:
        class CaseInsensitiveEqual(ExpressionOperator):
            @property
            def name(self) -> Operator:
                return Operator.EQ

            def evaluate(self, field_value, condition_value) -> bool:
                return str(field_value).lower() == str(condition_value).lower()

        registry.register(CaseInsensitiveEqual())

        assert registry.evaluate(Operator.EQ, "Active", "ACTIVE") is True


# ═══════════════════════════════════════════════════════════════════════
# Expressions
# ═══════════════════════════════════════════════════════════════════════


class TestExpressionEvaluator:
    @pytest.fixture
    def evaluator(self) -> ExpressionEvaluator:
        return ExpressionEvaluator()

    def test_equality_is_the_default_operator(self, evaluator) -> None:
        context = {"payload": {"status": "ACTIVE"}}
        assert evaluator.evaluate({"attr": "payload.status", "val": "ACTIVE"}, context)

    def test_missing_attribute_resolves_to_none(self, evaluator) -> None:
        assert evaluator.evaluate(
            {"attr": "payload.region", "op": "is_null"}, {"payload": {}}
        )

    def test_logical_composition(self, evaluator) -> None:
        expression = {
            "op": "and",
            "conditions": [
                {"attr": "payload.amount", "op": ">", "val": 1000},
                {
                    "op": "or",
                    "conditions": [
                        {"attr": "payload.region", "val": "EU"},
                        {"attr": "payload.region", "val": "US"},
                    ],
                },
                {"op": "not", "condition": {"attr": "payload.draft", "val": True}},
            ],
        }
        context = {"payload": {"amount": 5000, "region": "US", "draft": False}}

        assert evaluator.evaluate(expression, context) is True
        context["payload"]["region"] = "APAC"
        assert evaluator.evaluate(expression, context) is False

    @pytest.mark.parametrize(
        "expression",
        [
            {"op": "and", "conditions": []},
            {"op": "not"},
            {"op": "=", "val": 1},
            {"attr": "a", "op": "~~", "val": 1},
            {"attr": "a", "op": ">", "val": 1},
        ],
    )
    def test_malformed_or_incomparable_raises(self, evaluator, expression) -> None:
        with pytest.raises(ExpressionError):
            evaluator.evaluate(expression, {"a": "text"})

    def test_non_mapping_rejected(self, evaluator) -> None:
        with pytest.raises(ExpressionError):
            evaluator.evaluate(["attr", "a"], {})  # type: ignore[arg-type]


# ═══════════════════════════════════════════════════════════════════════
# Router
# ═══════════════════════════════════════════════════════════════════════


class TestRouterSelection:
    @pytest.fixture
    def audit_log(self) -> InMemoryRoutingAuditLog:
        return InMemoryRoutingAuditLog()

    @pytest.fixture
    def router(self, audit_log, clock: FakeClock) -> Router:
        return Router(audit_log, clock=clock)

    @pytest.mark.asyncio
    async def test_direct_rule_routes_and_audits(self, router, audit_log) -> None:
        rule = RoutingRule(id="r1", pattern="CONTRACT_CREATED", destination="crm")
        envelope = make_envelope()

        decision = await router.route(envelope, snapshot_of(rule))

        assert decision.matched
        assert decision.destination == "crm"
        assert decision.strategy == RoutingStrategy.DIRECT
        assert decision.rule_snapshot is not None
        assert decision.rule_snapshot["id"] == "r1"
        assert audit_log.decisions == [decision]

    @pytest.mark.asyncio
    async def test_priority_wins_over_specificity(self, router) -> None:
        specific = RoutingRule(
            id="specific", pattern="CONTRACT_CREATED", destination="a", priority=10
        )
        wildcard = RoutingRule(
            id="wildcard", pattern="CONTRACT_*", destination="b", priority=50
        )

        decision = await router.route(make_envelope(), snapshot_of(specific, wildcard))

        assert decision.rule_id == "wildcard"

    @pytest.mark.asyncio
    async def test_specificity_breaks_priority_ties(self, router) -> None:
        wildcard = RoutingRule(id="a-wild", pattern="CONTRACT_*", destination="a")
        exact = RoutingRule(id="z-exact", pattern="CONTRACT_CREATED", destination="b")

        decision = await router.route(make_envelope(), snapshot_of(wildcard, exact))

        assert decision.rule_id == "z-exact"

    @pytest.mark.asyncio
    async def test_rule_id_breaks_full_ties(self, router) -> None:
        rules = (
            RoutingRule(id="r2", pattern="CONTRACT_CREATED", destination="two"),
            RoutingRule(id="r1", pattern="CONTRACT_CREATED", destination="one"),
        )

        decision = await router.route(make_envelope(), snapshot_of(*rules))

        assert decision.destination == "one"

    @pytest.mark.asyncio
    async def test_inactive_and_out_of_window_rules_skipped(
        self, router, clock: FakeClock
    ) -> None:
        rules = (
            RoutingRule(
                id="off", pattern="CONTRACT_CREATED", destination="x", active=False
            ),
            RoutingRule(
                id="future",
                pattern="CONTRACT_CREATED",
                destination="x",
                effective_from=clock() + timedelta(days=1),
            ),
            RoutingRule(
                id="expired",
                pattern="CONTRACT_CREATED",
                destination="x",
                effective_until=clock(),
            ),
        )

        decision = await router.route(make_envelope(), snapshot_of(*rules))

        assert not decision.matched
        assert decision.alternatives_evaluated == ()

    @pytest.mark.asyncio
    async def test_namespace_glob(self, router) -> None:
        rule = RoutingRule(
            id="r1", pattern="*", namespace="sales.*", destination="sales"
        )

        matched = await router.route(
            make_envelope(namespace="sales.emea"), snapshot_of(rule)
        )
        unmatched = await router.route(make_envelope(), snapshot_of(rule))

        assert matched.matched
        assert not unmatched.matched


class TestRouterStrategies:
    @pytest.fixture
    def router(self, clock: FakeClock) -> Router:
        return Router(clock=clock)

    @pytest.mark.asyncio
    async def test_content_based_falls_through_to_next_rule(self, router) -> None:
        high_value = RoutingRule(
            id="high",
            pattern="CONTRACT_CREATED",
            strategy=RoutingStrategy.CONTENT_BASED,
            expression={"attr": "payload.amount", "op": ">=", "val": 10000},
            destination="approvals",
            priority=200,
        )
        default = RoutingRule(id="default", pattern="CONTRACT_CREATED", destination="crm")
        envelope = make_envelope(payload={"amount": 50})

        decision = await router.route(envelope, snapshot_of(high_value, default))

        assert decision.destination == "crm"
        [skipped, chosen] = decision.alternatives_evaluated
        assert skipped.rule_id == "high"
        assert not skipped.matched
        assert skipped.reason == "expression false"
        assert chosen.matched

    @pytest.mark.asyncio
    async def test_expression_error_is_a_non_match(self, router) -> None:
        broken = RoutingRule(
            id="broken",
            pattern="CONTRACT_CREATED",
            strategy=RoutingStrategy.CONTENT_BASED,
            expression={"attr": "payload.amount", "op": ">", "val": 10},
            destination="x",
        )
        envelope = make_envelope(payload={"amount": "lots"})

        decision = await router.route(envelope, snapshot_of(broken))

        assert not decision.matched
        assert decision.alternatives_evaluated[0].reason.startswith("expression error")

    @pytest.mark.asyncio
    async def test_multicast(self, router) -> None:
        rule = RoutingRule(
            id="fan",
            pattern="CUSTOMER_*",
            strategy=RoutingStrategy.MULTICAST,
            destinations=("crm", "billing"),
        )

        decision = await router.route(
            make_envelope(message_type="CUSTOMER_UPDATED"), snapshot_of(rule)
        )

        assert decision.destinations == ("crm", "billing")

    @pytest.mark.asyncio
    async def test_recipient_list_from_payload(self, router) -> None:
        rule = RoutingRule(
            id="rl",
            pattern="CONTRACT_CREATED",
            strategy=RoutingStrategy.RECIPIENT_LIST,
            recipients_path="payload.notify",
        )
        envelope = make_envelope(payload={"notify": "legal, finance, legal"})

        decision = await router.route(envelope, snapshot_of(rule))

        assert decision.destinations == ("legal", "finance")

    @pytest.mark.asyncio
    async def test_empty_recipient_list_does_not_match(self, router) -> None:
        rule = RoutingRule(
            id="rl",
            pattern="CONTRACT_CREATED",
            strategy=RoutingStrategy.RECIPIENT_LIST,
            recipients_path="payload.notify",
        )

        decision = await router.route(
            make_envelope(payload={"notify": []}), snapshot_of(rule)
        )

        assert not decision.matched

    @pytest.mark.asyncio
    async def test_dynamic_destination_template(self, router) -> None:
        rule = RoutingRule(
            id="dyn",
            pattern="CONTRACT_CREATED",
            strategy=RoutingStrategy.DYNAMIC,
            destination="contracts.{tenant_id}",
        )

        decision = await router.route(make_envelope(), snapshot_of(rule))

        assert decision.destination == "contracts.tenant-a"

    @pytest.mark.asyncio
    async def test_dynamic_template_with_missing_key(self, router) -> None:
        rule = RoutingRule(
            id="dyn",
            pattern="CONTRACT_CREATED",
            strategy=RoutingStrategy.DYNAMIC,
            destination="contracts.{region}",
        )

        decision = await router.route(make_envelope(), snapshot_of(rule))

        assert not decision.matched

    def test_rule_validation(self) -> None:
        with pytest.raises(ValueError):
            RoutingRule(id="m", pattern="*", strategy=RoutingStrategy.MULTICAST)
        with pytest.raises(ValueError):
            RoutingRule(id="d", pattern="*")


class TestRouterAudit:
    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_routing(self, clock: FakeClock) -> None:
        audit_log = AsyncMock()
        audit_log.record.side_effect = RuntimeError("audit store down")
        router = Router(audit_log, clock=clock)
        rule = RoutingRule(id="r1", pattern="CONTRACT_CREATED", destination="crm")

        decision = await router.route(make_envelope(), snapshot_of(rule))

        assert decision.destination == "crm"
        audit_log.record.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unmatched_decision_is_audited(self, clock: FakeClock) -> None:
        audit_log = InMemoryRoutingAuditLog()
        router = Router(audit_log, clock=clock)
        envelope = make_envelope(message_type="MYSTERY")

        decision = await router.route(envelope, snapshot_of())

        assert not decision.matched
        assert await audit_log.decisions_for(envelope.id) == [decision]
