"""In-memory config source, routing audit log and unknown-message sink."""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from ...ports.config import IConfigSource
from ...ports.routing import IRoutingAuditLog, IUnknownMessageSink

if TYPE_CHECKING:
    from ...domain.aggregation import AggregationDefinition
    from ...domain.routing import RoutingDecision, RoutingRule, UnknownMessage


class InMemoryConfigSource(IConfigSource):
    """Holds rules and definitions in lists; mutate them to simulate config edits."""

    def __init__(
        self,
        routing_rules: Iterable[RoutingRule] = (),
        aggregation_definitions: Iterable[AggregationDefinition] = (),
    ) -> None:
        self.routing_rules: list[RoutingRule] = list(routing_rules)
        self.aggregation_definitions: list[AggregationDefinition] = list(
            aggregation_definitions
        )

    async def load_routing_rules(self) -> list[RoutingRule]:
        return list(self.routing_rules)

    async def load_aggregation_definitions(self) -> list[AggregationDefinition]:
        return list(self.aggregation_definitions)


class InMemoryRoutingAuditLog(IRoutingAuditLog):
    def __init__(self) -> None:
        self.decisions: list[RoutingDecision] = []

    async def record(self, decision: RoutingDecision) -> None:
        self.decisions.append(decision)

    async def decisions_for(self, envelope_id: str) -> list[RoutingDecision]:
        return [d for d in self.decisions if d.envelope_id == envelope_id]


class InMemoryUnknownMessageSink(IUnknownMessageSink):
    def __init__(self) -> None:
        self.messages: list[UnknownMessage] = []

    async def store(self, message: UnknownMessage) -> None:
        self.messages.append(message)

    async def list_recent(self, limit: int = 100) -> list[UnknownMessage]:
        return list(reversed(self.messages))[:limit]
