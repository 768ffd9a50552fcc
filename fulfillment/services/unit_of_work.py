import logging
from contextlib import asynccontextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.exceptions import StorageFailureError


logger = logging.getLogger(__name__)


@asynccontextmanager
async def atomic(db: AsyncSession, action: str):
    """
    Run a state transition as one transaction.

    Commits on success. Any error rolls back everything written inside the
    block; database errors are reported as StorageFailureError.
    """
    try:
        yield
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Database error during {action}: {e}")
        raise StorageFailureError(
            f"Could not complete {action}: database error",
            details={"action": action}
        ) from e
    except Exception:
        await db.rollback()
        raise
