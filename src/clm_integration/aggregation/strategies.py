"""Merge strategies turning included members into the aggregated result."""

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from ..domain.aggregation import AggregationStrategy
from ..exceptions import AggregationError

if TYPE_CHECKING:
    from ..domain.aggregation import (
        AggregationDefinition,
        AggregationInstance,
        AggregationMember,
    )

# (members, definition, instance) -> result fragment
CustomMerger = Callable[..., dict[str, Any]]


def order_members(
    members: list[AggregationMember], definition: AggregationDefinition
) -> list[AggregationMember]:
    """Order included members for merging.

    ``ordered`` re-sequences by the sender's sequence number (unnumbered
    members last, in arrival order); ``preserve_order`` keeps arrival order;
    otherwise members sort by receive time.
    """
    if definition.ordered:
        return sorted(
            members,
            key=lambda m: (
                m.message_sequence is None,
                m.message_sequence or 0,
                m.sequence_number,
            ),
        )
    if definition.preserve_order:
        return sorted(members, key=lambda m: m.sequence_number)
    return sorted(members, key=lambda m: (m.received_at, m.envelope_id))


def _collect_all(members: list[AggregationMember]) -> dict[str, Any]:
    return {"items": [m.payload for m in members]}


def _batch(
    members: list[AggregationMember], definition: AggregationDefinition
) -> dict[str, Any]:
    size = definition.batch_size or max(len(members), 1)
    payloads = [m.payload for m in members]
    return {"batches": [payloads[i : i + size] for i in range(0, len(payloads), size)]}


def _time_window(
    members: list[AggregationMember],
    definition: AggregationDefinition,
    instance: AggregationInstance,
) -> dict[str, Any]:
    width = timedelta(seconds=definition.window_seconds or 60)
    buckets: dict[int, list[AggregationMember]] = {}
    for member in members:
        index = int((member.received_at - instance.started_at) / width)
        buckets.setdefault(max(index, 0), []).append(member)
    windows = []
    for index in sorted(buckets):
        start = instance.started_at + index * width
        windows.append(
            {
                "windowStart": start.isoformat(),
                "windowEnd": (start + width).isoformat(),
                "items": [m.payload for m in buckets[index]],
            }
        )
    return {"windows": windows}


def _sliding_window(
    members: list[AggregationMember],
    definition: AggregationDefinition,
    instance: AggregationInstance,
) -> dict[str, Any]:
    width = timedelta(seconds=definition.window_seconds or 60)
    step = timedelta(seconds=definition.slide_seconds or (width.total_seconds() / 2))
    if not members:
        return {"windows": []}
    last = max(m.received_at for m in members)
    windows = []
    start = instance.started_at
    while start <= last:
        end = start + width
        inside = [m for m in members if start <= m.received_at < end]
        if inside:
            windows.append(
                {
                    "windowStart": start.isoformat(),
                    "windowEnd": end.isoformat(),
                    "items": [m.payload for m in inside],
                }
            )
        start += step
    return {"windows": windows}


class MergerRegistry:
    """Named custom mergers referenced by ``AggregationDefinition.custom_merger``."""

    def __init__(self) -> None:
        self._mergers: dict[str, CustomMerger] = {}

    def register(self, name: str, merger: CustomMerger) -> None:
        self._mergers[name] = merger

    def get(self, name: str) -> CustomMerger | None:
        return self._mergers.get(name)


def merge(
    instance: AggregationInstance,
    definition: AggregationDefinition,
    *,
    partial: bool,
    mergers: MergerRegistry | None = None,
) -> dict[str, Any]:
    """Build the aggregated result for *instance*.

    Raises:
        AggregationError: unknown custom merger or a merger failure.
    """
    members = order_members(instance.included_members, definition)
    result: dict[str, Any] = {
        "correlationId": instance.correlation_id,
        "aggregationKey": instance.aggregation_key,
        "strategy": definition.strategy.value,
        "members": [m.envelope_id for m in members],
        "memberCount": len(members),
        "expectedCount": instance.expected_count,
        "partial": partial,
    }
    strategy = definition.strategy
    try:
        if strategy == AggregationStrategy.COLLECT_ALL:
            result.update(_collect_all(members))
        elif strategy == AggregationStrategy.BATCH:
            result.update(_batch(members, definition))
        elif strategy == AggregationStrategy.TIME_WINDOW:
            result.update(_time_window(members, definition, instance))
        elif strategy == AggregationStrategy.SLIDING_WINDOW:
            result.update(_sliding_window(members, definition, instance))
        else:
            merger = mergers.get(definition.custom_merger or "") if mergers else None
            if merger is None:
                raise AggregationError(
                    f"Unknown custom merger {definition.custom_merger!r}"
                )
            result["result"] = merger(members, definition, instance)
    except AggregationError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise AggregationError(
            f"Merge failed for {instance.correlation_id}/{instance.aggregation_key}: "
            f"{exc}"
        ) from exc
    return result
