"""StructuredLoggingHook — one JSON log entry per engine operation."""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any

from .correlation import get_correlation_id, get_tenant_id

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

_log = logging.getLogger("clm_integration.operations")


class StructuredLoggingHook:
    """Instrumentation hook emitting operation, outcome, duration and context.

    Register it on the hook registry::

        get_hook_registry().register(StructuredLoggingHook())
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._log = logger or _log

    async def __call__(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        start = time.monotonic()
        outcome = "success"
        try:
            return await next_handler()
        except Exception:  # noqa: BLE001
            outcome = "error"
            raise
        finally:
            try:
                entry = {
                    "operation": operation,
                    "outcome": outcome,
                    "duration_ms": round((time.monotonic() - start) * 1000, 2),
                    "correlation_id": get_correlation_id()
                    or attributes.get("correlation_id"),
                    "tenant_id": get_tenant_id() or attributes.get("tenant_id"),
                }
                for key, value in attributes.items():
                    if key not in entry and isinstance(value, str | int | float | bool):
                        entry[key] = value
                self._log.info(json.dumps(entry))
            except Exception:  # noqa: BLE001
                _log.debug("Failed to emit structured log entry", exc_info=True)
