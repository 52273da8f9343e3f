"""Transaction scope shared by the SQLAlchemy stores."""

from __future__ import annotations

import contextlib
import logging
from typing import TYPE_CHECKING

from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError

from ...exceptions import StoreUnavailableError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger("clm_integration.persistence")


class SQLAlchemyStore:
    """Base for stores that open one short transaction per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session inside ``BEGIN``; commits on exit, rolls back on error.

        Driver-level connectivity failures surface as ``StoreUnavailableError``.
        """
        try:
            async with self.session_factory() as session, session.begin():
                yield session
        except (OperationalError, InterfaceError, DisconnectionError) as exc:
            logger.warning("Store unavailable: %s", exc)
            raise StoreUnavailableError(str(exc)) from exc
