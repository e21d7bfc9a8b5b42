from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession

from shared.logging import get_logger

logger = get_logger(__name__)


class UnitOfWork:
    """Request-scoped transaction boundary shared by the services.

    Blocks may nest (the Conversion Bridge runs quotation creation inside its
    own block); only the outermost one commits, or rolls back on error.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self._depth = 0

    @asynccontextmanager
    async def begin(self) -> AsyncIterator[AsyncSession]:
        self._depth += 1
        outermost = self._depth == 1
        try:
            yield self.session
            if outermost:
                await self.session.commit()
        except Exception:
            if outermost:
                logger.debug("Rolling back unit of work")
                await self.session.rollback()
            raise
        finally:
            self._depth -= 1
