"""IBackgroundWorker — lifecycle protocol for the periodic sweeps."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class IBackgroundWorker(Protocol):
    """Used by ``RetrySweepWorker`` and ``AggregationTimeoutWorker``."""

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...

    async def run_once(self) -> int:
        """Run a single sweep and return the number of items processed."""
        ...
