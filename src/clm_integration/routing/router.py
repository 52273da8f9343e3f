"""Router — content-based selection of destinations from routing rules."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from ..domain.routing import RoutingDecision, RoutingStrategy, RuleEvaluation
from ..exceptions import ExpressionError
from ..instrumentation import get_hook_registry
from ..utils import resolve_path, utc_now
from .expressions import ExpressionEvaluator, envelope_context

if TYPE_CHECKING:
    from ..config import ConfigSnapshot
    from ..domain.envelope import MessageEnvelope
    from ..domain.routing import RoutingRule
    from ..ports.routing import IRoutingAuditLog
    from ..utils import Clock

logger = logging.getLogger("clm_integration.routing")


class _NoMatch(Exception):
    """A rule was considered but does not apply to this envelope."""


class Router:
    """
    Evaluates active rules in order of descending priority, then most
    specific pattern, then rule id, and returns the first rule that applies.

    Expression failures count as a non-match for that rule only. Every
    decision, matched or not, is written to the audit log on a best-effort
    basis: audit failures are logged and never reach the caller.
    """

    def __init__(
        self,
        audit_log: IRoutingAuditLog | None = None,
        *,
        evaluator: ExpressionEvaluator | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._audit_log = audit_log
        self._evaluator = evaluator or ExpressionEvaluator()
        self._clock = clock or utc_now

    async def route(
        self, envelope: MessageEnvelope, snapshot: ConfigSnapshot
    ) -> RoutingDecision:
        async def _do() -> RoutingDecision:
            decision = self.decide(envelope, snapshot)
            await self._record_audit(decision)
            return decision

        return await get_hook_registry().execute_all(
            "router.route",
            {
                "message_type": envelope.message_type,
                "envelope_id": envelope.id,
                "correlation_id": envelope.correlation_id,
            },
            _do,
        )

    def candidate_rules(
        self, envelope: MessageEnvelope, snapshot: ConfigSnapshot
    ) -> list[RoutingRule]:
        now = self._clock()
        candidates = [
            rule
            for rule in snapshot.routing_rules
            if rule.is_effective(now)
            and rule.matches_pattern(envelope.message_type, envelope.namespace)
        ]
        candidates.sort(key=lambda r: r.sort_key())
        return candidates

    def decide(
        self, envelope: MessageEnvelope, snapshot: ConfigSnapshot
    ) -> RoutingDecision:
        """Pure routing decision without the audit side channel."""
        started = time.perf_counter()
        context = envelope_context(envelope)
        evaluated: list[RuleEvaluation] = []

        for rule in self.candidate_rules(envelope, snapshot):
            try:
                destinations = self._resolve(rule, context)
            except _NoMatch as exc:
                evaluated.append(
                    RuleEvaluation(
                        rule_id=rule.id,
                        rule_version=rule.version,
                        matched=False,
                        reason=str(exc),
                    )
                )
                continue
            evaluated.append(
                RuleEvaluation(rule_id=rule.id, rule_version=rule.version, matched=True)
            )
            decision = RoutingDecision(
                envelope_id=envelope.id,
                message_type=envelope.message_type,
                rule_id=rule.id,
                rule_version=rule.version,
                matched_pattern=rule.pattern,
                strategy=rule.strategy,
                destinations=tuple(destinations),
                failover_destination=rule.failover_destination,
                rule_snapshot=rule.model_dump(mode="json"),
                alternatives_evaluated=tuple(evaluated),
                evaluation_ms=round((time.perf_counter() - started) * 1000, 3),
                decided_at=self._clock(),
            )
            logger.debug(
                "Routed %s (%s) via rule %s v%d to %s",
                envelope.id,
                envelope.message_type,
                rule.id,
                rule.version,
                ", ".join(destinations),
            )
            return decision

        logger.info(
            "No route for %s (%s) after %d rules",
            envelope.id,
            envelope.message_type,
            len(evaluated),
        )
        return RoutingDecision(
            envelope_id=envelope.id,
            message_type=envelope.message_type,
            alternatives_evaluated=tuple(evaluated),
            evaluation_ms=round((time.perf_counter() - started) * 1000, 3),
            decided_at=self._clock(),
        )

    def _resolve(self, rule: RoutingRule, context: dict[str, Any]) -> list[str]:
        if rule.expression:
            try:
                applies = self._evaluator.evaluate(rule.expression, context)
            except ExpressionError as exc:
                raise _NoMatch(f"expression error: {exc}") from exc
            if not applies:
                raise _NoMatch("expression false")

        strategy = rule.strategy
        if strategy == RoutingStrategy.MULTICAST:
            return list(rule.destinations)
        if strategy == RoutingStrategy.RECIPIENT_LIST:
            return self._recipients(rule, context)
        if strategy == RoutingStrategy.DYNAMIC:
            return [self._render(rule, context)]
        # DIRECT, CONTENT_BASED, AGGREGATOR
        return [rule.destination] if rule.destination else []

    @staticmethod
    def _recipients(rule: RoutingRule, context: dict[str, Any]) -> list[str]:
        value = resolve_path(context, rule.recipients_path or "", None)
        if isinstance(value, str):
            value = [v.strip() for v in value.split(",")]
        if not isinstance(value, list | tuple):
            raise _NoMatch(f"no recipient list at {rule.recipients_path}")
        recipients = [str(v) for v in value if v]
        if not recipients:
            raise _NoMatch(f"empty recipient list at {rule.recipients_path}")
        return list(dict.fromkeys(recipients))

    @staticmethod
    def _render(rule: RoutingRule, context: dict[str, Any]) -> str:
        template = rule.destination or ""
        try:
            rendered = template.format_map(context)
        except (KeyError, IndexError, AttributeError, ValueError) as exc:
            raise _NoMatch(f"cannot render destination {template!r}: {exc}") from exc
        if not rendered:
            raise _NoMatch("destination template rendered empty")
        return rendered

    async def _record_audit(self, decision: RoutingDecision) -> None:
        # Best-effort side channel: never fails the routing call.
        if self._audit_log is None:
            return
        try:
            await self._audit_log.record(decision)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Failed to record routing decision for %s: %s",
                decision.envelope_id,
                exc,
            )
