"""
SQLAlchemy implementation of the deduplication store.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from ...domain.dedup import DedupRecord
from ...exceptions import DuplicateKeyError, OptimisticConcurrencyError
from ...ports.dedup_store import IDedupStore
from .models import DedupRecordModel
from .session import SQLAlchemyStore

if TYPE_CHECKING:
    from datetime import datetime


def _columns(record: DedupRecord) -> dict[str, Any]:
    return {
        "tenant_id": record.tenant_id,
        "message_type": record.message_type,
        "content_hash": record.content_hash,
        "business_key": record.business_key,
        "expires_at": record.expires_at,
        "data": record.model_dump(mode="json"),
    }


class SQLAlchemyDedupStore(SQLAlchemyStore, IDedupStore):
    """
    Dedup records guarded by two unique constraints:
    ``(tenant_id, content_hash, message_type)`` and
    ``(tenant_id, business_key, message_type)``.
    """

    async def find_by_content(
        self, tenant_id: str, content_hash: str, message_type: str
    ) -> DedupRecord | None:
        return await self._find_one(
            DedupRecordModel.tenant_id == tenant_id,
            DedupRecordModel.content_hash == content_hash,
            DedupRecordModel.message_type == message_type,
        )

    async def find_by_business_key(
        self, tenant_id: str, business_key: str, message_type: str
    ) -> DedupRecord | None:
        return await self._find_one(
            DedupRecordModel.tenant_id == tenant_id,
            DedupRecordModel.business_key == business_key,
            DedupRecordModel.message_type == message_type,
        )

    async def insert(self, record: DedupRecord) -> None:
        try:
            async with self.transaction() as session:
                session.add(
                    DedupRecordModel(
                        id=record.id, version=record.version, **_columns(record)
                    )
                )
                await session.flush()
        except IntegrityError as exc:
            raise DuplicateKeyError("DedupRecord", record.content_key()) from exc

    async def update(self, record: DedupRecord, expected_version: int) -> DedupRecord:
        updated = record.model_copy(update={"version": expected_version + 1})
        stmt = (
            update(DedupRecordModel)
            .where(
                DedupRecordModel.id == record.id,
                DedupRecordModel.version == expected_version,
            )
            .values(version=expected_version + 1, **_columns(updated))
            .execution_options(synchronize_session=False)
        )
        try:
            async with self.transaction() as session:
                result = await session.execute(stmt)
                if result.rowcount != 1:
                    raise OptimisticConcurrencyError(
                        f"DedupRecord {record.id} changed since version "
                        f"{expected_version}"
                    )
        except IntegrityError as exc:
            raise DuplicateKeyError("DedupRecord", record.business_key_index()) from exc
        return updated

    async def remove(self, record_id: str, expected_version: int) -> bool:
        stmt = (
            delete(DedupRecordModel)
            .where(
                DedupRecordModel.id == record_id,
                DedupRecordModel.version == expected_version,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.transaction() as session:
            result = await session.execute(stmt)
            return bool(result.rowcount)

    async def purge_expired(self, now: datetime) -> int:
        stmt = (
            delete(DedupRecordModel)
            .where(DedupRecordModel.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        async with self.transaction() as session:
            result = await session.execute(stmt)
            return int(result.rowcount or 0)

    async def _find_one(self, *criteria: Any) -> DedupRecord | None:
        async with self.transaction() as session:
            model = await session.scalar(select(DedupRecordModel).where(*criteria))
            if model is None:
                return None
            return DedupRecord.model_validate({**model.data, "version": model.version})
