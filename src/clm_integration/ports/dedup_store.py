"""IDedupStore — deduplication records with two independent unique keys."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime

    from ..domain.dedup import DedupRecord


@runtime_checkable
class IDedupStore(Protocol):
    async def find_by_content(
        self, tenant_id: str, content_hash: str, message_type: str
    ) -> DedupRecord | None:
        ...

    async def find_by_business_key(
        self, tenant_id: str, business_key: str, message_type: str
    ) -> DedupRecord | None:
        ...

    async def insert(self, record: DedupRecord) -> None:
        """Insert a first sighting.

        Raises:
            DuplicateKeyError: the content key or the business key is taken.
        """
        ...

    async def update(self, record: DedupRecord, expected_version: int) -> DedupRecord:
        """Conditionally replace a record, bumping its version.

        Raises:
            OptimisticConcurrencyError: the stored version differs or the
                record is gone.
        """
        ...

    async def remove(self, record_id: str, expected_version: int) -> bool:
        """Delete a record if it is still at *expected_version*."""
        ...

    async def purge_expired(self, now: datetime) -> int:
        """Delete every record whose window has elapsed; return the count."""
        ...
