"""Periodic sweeps: retry resubmission and aggregation timeouts."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from .correlation import get_correlation_id
from .instrumentation import get_hook_registry
from .ports.background_worker import IBackgroundWorker

if TYPE_CHECKING:
    from .aggregation.aggregator import Aggregator
    from .config import ConfigProvider
    from .retry.scheduler import RetryScheduler

logger = logging.getLogger("clm_integration.workers")


class _PollingWorker(IBackgroundWorker, ABC):
    """
    Event-driven trigger plus polling fallback.

    Call :meth:`trigger` to wake the worker immediately; otherwise it runs
    every ``poll_interval`` seconds. A failing sweep is logged and the loop
    keeps going.
    """

    operation = "worker.run_once"

    def __init__(self, poll_interval: float, batch_size: int) -> None:
        self._poll_interval = poll_interval
        self.batch_size = batch_size
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._trigger = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._running

    def trigger(self) -> None:
        self._trigger.set()

    async def start(self) -> None:
        name = type(self).__name__
        if self._running:
            logger.warning("%s already running", name)
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("%s started (poll_interval=%.1fs)", name, self._poll_interval)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._trigger.set()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("%s stopped", type(self).__name__)

    async def _run_loop(self) -> None:
        while self._running:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    self._trigger.wait(), timeout=self._poll_interval
                )
            self._trigger.clear()
            if not self._running:
                break
            try:
                await self.run_once()
            except Exception as exc:  # noqa: BLE001
                logger.error("Error in %s cycle: %s", type(self).__name__, exc)

    async def run_once(self) -> int:
        """Execute a single sweep (tests or manual trigger)."""
        return await get_hook_registry().execute_all(
            self.operation,
            {"correlation_id": get_correlation_id()},
            self._process_cycle,
        )

    @abstractmethod
    async def _process_cycle(self) -> int:
        """One sweep; returns the number of items handled."""


class RetrySweepWorker(_PollingWorker):
    """Resubmits FAILED envelopes whose backoff has elapsed (every 60s)."""

    operation = "worker.retry_sweep"

    def __init__(
        self,
        scheduler: RetryScheduler,
        poll_interval: float = 60.0,
        batch_size: int = 100,
    ) -> None:
        super().__init__(poll_interval, batch_size)
        self.scheduler = scheduler

    async def _process_cycle(self) -> int:
        count = await self.scheduler.process_pending_retries(limit=self.batch_size)
        if count:
            logger.info("Retry sweep resubmitted %d envelope(s)", count)
        return count


class AggregationTimeoutWorker(_PollingWorker):
    """Closes COLLECTING aggregations past their deadline (every 30s)."""

    operation = "worker.aggregation_timeouts"

    def __init__(
        self,
        aggregator: Aggregator,
        config: ConfigProvider,
        poll_interval: float = 30.0,
        batch_size: int = 100,
    ) -> None:
        super().__init__(poll_interval, batch_size)
        self.aggregator = aggregator
        self.config = config

    async def _process_cycle(self) -> int:
        snapshot = await self.config.snapshot()
        count = await self.aggregator.process_timeouts(snapshot, limit=self.batch_size)
        if count:
            logger.info("Closed %d expired aggregation(s)", count)
        return count
