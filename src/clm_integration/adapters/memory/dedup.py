"""In-memory deduplication store."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ...exceptions import DuplicateKeyError, OptimisticConcurrencyError
from ...ports.dedup_store import IDedupStore

if TYPE_CHECKING:
    from datetime import datetime

    from ...domain.dedup import DedupRecord


class InMemoryDedupStore(IDedupStore):
    """Dict-backed :class:`IDedupStore` with both unique indexes."""

    def __init__(self) -> None:
        self._records: dict[str, DedupRecord] = {}
        self._by_content: dict[tuple[str, str, str], str] = {}
        self._by_business_key: dict[tuple[str, str, str], str] = {}

    async def find_by_content(
        self, tenant_id: str, content_hash: str, message_type: str
    ) -> DedupRecord | None:
        record_id = self._by_content.get((tenant_id, content_hash, message_type))
        return self._copy(record_id)

    async def find_by_business_key(
        self, tenant_id: str, business_key: str, message_type: str
    ) -> DedupRecord | None:
        record_id = self._by_business_key.get((tenant_id, business_key, message_type))
        return self._copy(record_id)

    async def insert(self, record: DedupRecord) -> None:
        content_key = record.content_key()
        if content_key in self._by_content:
            raise DuplicateKeyError("DedupRecord", content_key)
        business_key = record.business_key_index()
        if business_key is not None and business_key in self._by_business_key:
            raise DuplicateKeyError("DedupRecord", business_key)
        self._records[record.id] = record.model_copy(deep=True)
        self._by_content[content_key] = record.id
        if business_key is not None:
            self._by_business_key[business_key] = record.id

    async def update(self, record: DedupRecord, expected_version: int) -> DedupRecord:
        stored = self._records.get(record.id)
        if stored is None or stored.version != expected_version:
            raise OptimisticConcurrencyError(
                f"DedupRecord {record.id} changed since version {expected_version}"
            )
        new_business_key = record.business_key_index()
        owner = self._by_business_key.get(new_business_key) if new_business_key else None
        if owner is not None and owner != record.id:
            raise DuplicateKeyError("DedupRecord", new_business_key)
        self._unindex(stored)
        updated = record.model_copy(update={"version": expected_version + 1}, deep=True)
        self._records[record.id] = updated
        self._by_content[updated.content_key()] = updated.id
        if new_business_key is not None:
            self._by_business_key[new_business_key] = updated.id
        return updated.model_copy(deep=True)

    async def remove(self, record_id: str, expected_version: int) -> bool:
        stored = self._records.get(record_id)
        if stored is None or stored.version != expected_version:
            return False
        self._unindex(stored)
        del self._records[record_id]
        return True

    async def purge_expired(self, now: datetime) -> int:
        expired = [r for r in self._records.values() if r.is_expired(now)]
        for record in expired:
            self._unindex(record)
            del self._records[record.id]
        return len(expired)

    def _unindex(self, record: DedupRecord) -> None:
        self._by_content.pop(record.content_key(), None)
        business_key = record.business_key_index()
        if business_key is not None:
            self._by_business_key.pop(business_key, None)

    def _copy(self, record_id: str | None) -> DedupRecord | None:
        if record_id is None:
            return None
        return self._records[record_id].model_copy(deep=True)

    def all_records(self) -> list[DedupRecord]:
        return [r.model_copy(deep=True) for r in self._records.values()]
