import logging
from contextlib import asynccontextmanager

from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession

from convoyhub.core.errors import StorageUnavailable

logger = logging.getLogger(__name__)

# Connectivity, lock and pool exhaustion failures; safe to retry
TRANSIENT_ERRORS = (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError)


@asynccontextmanager
async def storage_guard(session: AsyncSession):
    """Roll back on any database error and surface transient ones as StorageUnavailable."""
    try:
        yield
    except TRANSIENT_ERRORS as e:
        await _safe_rollback(session)
        logger.warning("Storage unavailable: %s", e)
        raise StorageUnavailable() from e
    except sa_exc.SQLAlchemyError:
        await _safe_rollback(session)
        raise


async def _safe_rollback(session: AsyncSession) -> None:
    try:
        await session.rollback()
    except sa_exc.SQLAlchemyError as e:
        logger.error("Rollback failed: %s", e)
