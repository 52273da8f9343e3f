"""Shared helpers: clock, hashing, attribute paths and store timeouts."""

from __future__ import annotations

import asyncio
import hashlib
import json
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, TypeVar

from .exceptions import StoreUnavailableError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    Clock = Callable[[], datetime]

T = TypeVar("T")

_MISSING = object()


def utc_now() -> datetime:
    """Default wall clock used by every component."""
    return datetime.now(timezone.utc)


def compute_content_hash(payload: Any) -> str:
    """SHA-256 over the canonical JSON form of *payload*.

    Key order and whitespace do not affect the digest.
    """
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def resolve_path(source: Any, path: str, default: Any = _MISSING) -> Any:
    """Resolve a dotted *path* against nested mappings and attributes.

    ``resolve_path(envelope, "payload.contract.status")`` walks attributes
    and dict keys alike. Raises ``KeyError`` when a segment is missing and no
    *default* is given.
    """
    current = source
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment in current:
                current = current[segment]
                continue
        elif hasattr(current, segment):
            current = getattr(current, segment)
            continue
        if default is _MISSING:
            raise KeyError(path)
        return default
    return current


async def with_store_timeout(awaitable: Awaitable[T], timeout: float | None) -> T:
    """Await a store call, converting timeouts into ``StoreUnavailableError``."""
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise StoreUnavailableError(f"Store call exceeded {timeout}s") from exc
