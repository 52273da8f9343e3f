"""IdempotencyGuard — accept each message once per dedup window.

Lookups go by ``(tenant, content_hash, message_type)`` and, when the message
carries one, by ``(tenant, business_key, message_type)``. A live hit on
either key is a duplicate sighting; the store's unique constraints settle
concurrent first sightings.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, TypeVar

from .domain.dedup import DedupRecord, DedupResult, GuardOutcome
from .exceptions import DuplicateKeyError, OptimisticConcurrencyError
from .utils import utc_now, with_store_timeout

if TYPE_CHECKING:
    from collections.abc import Awaitable
    from datetime import datetime

    from .ports.dedup_store import IDedupStore
    from .utils import Clock

T = TypeVar("T")

logger = logging.getLogger("clm_integration.guard")


class IdempotencyGuard:
    """Decide whether a message was already accepted within its window.

    Every write is conditional: first sightings rely on the unique indexes,
    duplicate sightings update by record version and re-read on conflict.
    """

    def __init__(
        self,
        store: IDedupStore,
        *,
        clock: Clock | None = None,
        store_timeout: float | None = None,
        max_attempts: int = 10,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._store = store
        self._clock = clock or utc_now
        self._store_timeout = store_timeout
        self._max_attempts = max_attempts

    async def accept(
        self,
        message_id: str,
        content_hash: str,
        tenant_id: str,
        message_type: str,
        window_hours: int,
        business_key: str | None = None,
    ) -> DedupResult:
        """Return ``ACCEPTED`` for the first sighting, ``DUPLICATE`` otherwise."""
        window = timedelta(hours=window_hours)
        for attempt in range(1, self._max_attempts + 1):
            now = self._clock()
            by_content = await self._timed(
                self._store.find_by_content(tenant_id, content_hash, message_type)
            )
            by_business = None
            if business_key is not None:
                by_business = await self._timed(
                    self._store.find_by_business_key(
                        tenant_id, business_key, message_type
                    )
                )

            live = self._live_hit(by_content, by_business, now)
            if live is not None:
                record, matched_on = live
                try:
                    return await self._record_sighting(
                        record, message_id, now, window, matched_on
                    )
                except OptimisticConcurrencyError:
                    logger.debug(
                        "Dedup record %s changed during sighting (attempt %d)",
                        record.id,
                        attempt,
                    )
                    continue

            # Expired records are overwritten: drop them, then insert fresh.
            for stale in (by_content, by_business):
                if stale is not None and stale.is_expired(now):
                    await self._timed(self._store.remove(stale.id, stale.version))

            record = DedupRecord(
                tenant_id=tenant_id,
                message_type=message_type,
                content_hash=content_hash,
                business_key=business_key,
                original_message_id=message_id,
                first_seen_at=now,
                last_seen_at=now,
                expires_at=now + window,
            )
            try:
                await self._timed(self._store.insert(record))
            except DuplicateKeyError:
                logger.debug(
                    "Concurrent first sighting for message %s, re-reading",
                    message_id,
                )
                continue

            logger.debug("Accepted message %s (record %s)", message_id, record.id)
            return DedupResult(
                outcome=GuardOutcome.ACCEPTED,
                record_id=record.id,
                occurrence_count=1,
                original_message_id=message_id,
                record_version=record.version,
            )

        raise OptimisticConcurrencyError(
            f"Could not settle dedup state for message {message_id} "
            f"after {self._max_attempts} attempts"
        )

    async def release(self, dedup: DedupResult) -> bool:
        """Forget an accepted sighting whose message was never stored.

        Only an ``ACCEPTED`` verdict can be released, and only while the record
        is untouched since; a redelivery is then accepted again. Returns True
        when the record was removed.
        """
        if not dedup.accepted:
            return False
        removed = await self._timed(
            self._store.remove(dedup.record_id, dedup.record_version)
        )
        if removed:
            logger.info(
                "Released dedup record %s for message %s",
                dedup.record_id,
                dedup.original_message_id,
            )
        else:
            logger.warning(
                "Dedup record %s changed before release, keeping it",
                dedup.record_id,
            )
        return removed

    async def purge_expired(self) -> int:
        """Remove records whose window has elapsed."""
        purged = await self._timed(self._store.purge_expired(self._clock()))
        if purged:
            logger.info("Purged %d expired dedup records", purged)
        return purged

    @staticmethod
    def _live_hit(
        by_content: DedupRecord | None,
        by_business: DedupRecord | None,
        now: datetime,
    ) -> tuple[DedupRecord, str] | None:
        if by_content is not None and not by_content.is_expired(now):
            return by_content, "content"
        if by_business is not None and not by_business.is_expired(now):
            return by_business, "business_key"
        return None

    async def _record_sighting(
        self,
        record: DedupRecord,
        message_id: str,
        now: datetime,
        window: timedelta,
        matched_on: str,
    ) -> DedupResult:
        duplicates = list(record.duplicate_message_ids)
        if message_id != record.original_message_id and message_id not in duplicates:
            duplicates.append(message_id)
        updated = record.model_copy(
            update={
                "occurrence_count": record.occurrence_count + 1,
                "last_seen_at": now,
                "expires_at": max(record.expires_at, now + window),
                "duplicate_message_ids": duplicates,
            }
        )
        stored = await self._timed(self._store.update(updated, record.version))
        logger.info(
            "Duplicate message %s (matched on %s, occurrence %d)",
            message_id,
            matched_on,
            stored.occurrence_count,
        )
        return DedupResult(
            outcome=GuardOutcome.DUPLICATE,
            record_id=stored.id,
            occurrence_count=stored.occurrence_count,
            original_message_id=stored.original_message_id,
            matched_on=matched_on,
            record_version=stored.version,
        )

    async def _timed(self, awaitable: Awaitable[T]) -> T:
        return await with_store_timeout(awaitable, self._store_timeout)
