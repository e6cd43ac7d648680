"""
Base Repository

Generic repository pattern implementation for async SQLAlchemy access.
Provides type-safe primary-key lookups and a single place where driver
exceptions are translated into the domain error taxonomy.
"""

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Generic, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import DataError, DBAPIError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession

from clipnotes.core.errors import ConflictError, InvalidInputError, TransientError
from clipnotes.models.base import Base

logger = logging.getLogger(__name__)

ModelType = TypeVar("ModelType", bound=Base)


@asynccontextmanager
async def db_errors(session: AsyncSession, operation: str) -> AsyncIterator[None]:
    """
    Run a unit of work, rolling back and translating driver errors.

    Mapping:
        IntegrityError                     -> ConflictError
        DataError                          -> InvalidInputError
        OperationalError, pool wait        -> TransientError
        DBAPIError on a dropped connection -> TransientError
        anything else                      -> re-raised after rollback
    """
    try:
        yield
    except IntegrityError as e:
        await session.rollback()
        raise ConflictError(f"{operation}: constraint violation", str(e.orig)) from e
    except DataError as e:
        await session.rollback()
        raise InvalidInputError(f"{operation}: value rejected", str(e.orig)) from e
    except (OperationalError, PoolTimeoutError) as e:
        await session.rollback()
        logger.warning("Database error during %s: %s", operation, e)
        raise TransientError(f"{operation}: database unavailable", str(e)) from e
    except DBAPIError as e:
        await session.rollback()
        if not e.connection_invalidated:
            raise
        logger.warning("Connection lost during %s: %s", operation, e)
        raise TransientError(f"{operation}: database unavailable", str(e)) from e
    except Exception:
        await session.rollback()
        raise


class BaseRepository(Generic[ModelType]):
    """
    Generic repository providing common lookups.

    All methods expect an externally managed session (injected via FastAPI
    dependency or opened by a background task).

    Usage:
        class TagRepository(BaseRepository[Tag]):
            def __init__(self):
                super().__init__(Tag)
    """

    def __init__(self, model: type[ModelType]):
        self.model = model

    async def get_by_id(
        self, session: AsyncSession, id: uuid.UUID
    ) -> ModelType | None:
        """Get a record by primary key. Returns None if not found."""
        async with db_errors(session, f"get {self.model.__name__}"):
            result = await session.execute(
                select(self.model).where(self.model.id == id)  # type: ignore[attr-defined]
            )
            return result.scalars().first()
