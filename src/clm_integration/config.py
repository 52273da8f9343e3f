"""Engine settings and the immutable configuration snapshot.

Components never read shared mutable configuration: each call receives a
``ConfigSnapshot`` obtained from the ``ConfigProvider``, which reloads rules
and definitions from its source at most once per refresh interval.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .domain.aggregation import AggregationDefinition
from .domain.routing import RoutingRule
from .utils import utc_now

if TYPE_CHECKING:
    from .ports.config import IConfigSource
    from .utils import Clock

logger = logging.getLogger("clm_integration.config")

DEFAULT_DEDUP_WINDOW_HOURS = 24
DEFAULT_MAX_RETRIES = 3
DEFAULT_AGGREGATION_TIMEOUT_SECONDS = 300


def _positive_or(value: Any, default: int) -> Any:
    if value is None:
        return default
    try:
        return value if int(value) > 0 else default
    except (TypeError, ValueError):
        return value


class RetrySettings(BaseModel):
    """Exponential backoff: ``min(base * multiplier^(n-1), max_delay)``."""

    model_config = ConfigDict(frozen=True)

    base_delay_seconds: float = Field(default=1.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_delay_seconds: float = Field(default=60.0, ge=0)
    jitter: bool = True

    @field_validator("max_delay_seconds")
    @classmethod
    def _cap_not_below_base(cls, value: float, info: Any) -> float:
        base = info.data.get("base_delay_seconds", 0.0)
        if value < base:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return value


class WorkerSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    retry_interval_seconds: float = Field(default=60.0, gt=0)
    retry_batch_size: int = Field(default=100, ge=1)
    aggregation_timeout_interval_seconds: float = Field(default=30.0, gt=0)
    aggregation_timeout_batch_size: int = Field(default=100, ge=1)
    # In-flight envelopes untouched this long are failed back to the sweep.
    stall_timeout_seconds: float | None = Field(default=300.0, gt=0)


class IntegrationSettings(BaseModel):
    """Top-level knobs. Non-positive values fall back to the defaults."""

    model_config = ConfigDict(frozen=True)

    dedup_window_hours: int = DEFAULT_DEDUP_WINDOW_HOURS
    max_retries: int = DEFAULT_MAX_RETRIES
    aggregation_timeout_seconds: int = DEFAULT_AGGREGATION_TIMEOUT_SECONDS
    store_timeout_seconds: float | None = 5.0
    config_refresh_seconds: float = Field(default=30.0, ge=0)
    # Upper bound on messages the pipeline ingests at once.
    max_concurrency: int = Field(default=8, ge=1)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    workers: WorkerSettings = Field(default_factory=WorkerSettings)

    @field_validator("dedup_window_hours", mode="before")
    @classmethod
    def _dedup_default(cls, value: Any) -> Any:
        return _positive_or(value, DEFAULT_DEDUP_WINDOW_HOURS)

    @field_validator("max_retries", mode="before")
    @classmethod
    def _retries_default(cls, value: Any) -> Any:
        return _positive_or(value, DEFAULT_MAX_RETRIES)

    @field_validator("aggregation_timeout_seconds", mode="before")
    @classmethod
    def _timeout_default(cls, value: Any) -> Any:
        return _positive_or(value, DEFAULT_AGGREGATION_TIMEOUT_SECONDS)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> IntegrationSettings:
        """Build settings from a plain mapping (e.g. a parsed config file)."""
        return cls.model_validate(data)


class ConfigSnapshot(BaseModel):
    """Point-in-time view of settings, routing rules and aggregation definitions."""

    model_config = ConfigDict(frozen=True)

    version: int = 0
    taken_at: datetime = Field(default_factory=utc_now)
    settings: IntegrationSettings = Field(default_factory=IntegrationSettings)
    routing_rules: tuple[RoutingRule, ...] = ()
    aggregation_definitions: tuple[AggregationDefinition, ...] = ()

    def definition_for(self, aggregation_key: str) -> AggregationDefinition | None:
        for definition in self.aggregation_definitions:
            if definition.active and definition.aggregation_key == aggregation_key:
                return definition
        return None

    def definition_by_id(self, definition_id: str) -> AggregationDefinition | None:
        for definition in self.aggregation_definitions:
            if definition.id == definition_id:
                return definition
        return None


class ConfigProvider:
    """Caches snapshots from an ``IConfigSource`` for a bounded interval.

    A failed reload keeps serving the previous snapshot and logs a warning;
    the very first load propagates its error.
    """

    def __init__(
        self,
        source: IConfigSource,
        settings: IntegrationSettings | None = None,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._source = source
        self._settings = settings or IntegrationSettings()
        self._clock = clock or utc_now
        self._current: ConfigSnapshot | None = None
        self._stale = False
        self._lock = asyncio.Lock()

    @property
    def settings(self) -> IntegrationSettings:
        return self._settings

    def _is_fresh(self, snapshot: ConfigSnapshot, now: datetime) -> bool:
        if self._stale:
            return False
        age = (now - snapshot.taken_at).total_seconds()
        return age < self._settings.config_refresh_seconds

    async def snapshot(self) -> ConfigSnapshot:
        now = self._clock()
        current = self._current
        if current is not None and self._is_fresh(current, now):
            return current
        async with self._lock:
            current = self._current
            if current is not None and self._is_fresh(current, now):
                return current
            try:
                rules = await self._source.load_routing_rules()
                definitions = await self._source.load_aggregation_definitions()
            except Exception as exc:  # noqa: BLE001
                if current is None:
                    raise
                logger.warning(
                    "Config reload failed, keeping snapshot v%d: %s",
                    current.version,
                    exc,
                )
                return current
            self._stale = False
            self._current = ConfigSnapshot(
                version=(current.version + 1) if current else 1,
                taken_at=now,
                settings=self._settings,
                routing_rules=tuple(rules),
                aggregation_definitions=tuple(definitions),
            )
            logger.debug(
                "Loaded config snapshot v%d (%d rules, %d definitions)",
                self._current.version,
                len(rules),
                len(definitions),
            )
            return self._current

    def invalidate(self) -> None:
        """Force the next ``snapshot()`` call to reload from the source."""
        self._stale = True
