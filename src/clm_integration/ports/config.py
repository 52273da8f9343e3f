"""IConfigSource — where routing rules and aggregation definitions live."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..domain.aggregation import AggregationDefinition
    from ..domain.routing import RoutingRule


@runtime_checkable
class IConfigSource(Protocol):
    """Read-only source of routing and aggregation configuration."""

    async def load_routing_rules(self) -> Sequence[RoutingRule]:
        ...

    async def load_aggregation_definitions(self) -> Sequence[AggregationDefinition]:
        ...
