"""
Generic async repository (Data Access Layer).

Repository pattern on top of SQLAlchemy's ``AsyncSession``.  Concrete
repositories inherit from ``BaseRepository[T]`` and add entity-specific
queries.

Two write styles:

- :meth:`BaseRepository.add` stages an entity and flushes it (so generated
  ids are available) but does **not** commit.  Multi-row operations such as
  "insert investment + raise invoice funding" stage everything and let the
  unit of work commit once, atomically.
- :meth:`BaseRepository.create` stages and commits immediately, for
  single-row writes like invoice submission.

``IntegrityError`` is not caught here; the service decides which domain
error it means.  ``OperationalError`` on commit rolls the session back
before re-raising so no dirty transaction leaks.
"""

import logging
from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlmodel import SQLModel

from tradefin.core.resilience import db_circuit_breaker

logger = logging.getLogger(__name__)

ModelType = TypeVar("ModelType", bound=SQLModel)


class BaseRepository(Generic[ModelType]):
    """
    Generic data access for SQLModel entities.

    Parameters
    ----------
    model : Type[ModelType]
        The SQLModel class this repository manages.
    db : AsyncSession
        The session of the current unit of work.

    Every call is routed through ``db_circuit_breaker`` so a database outage
    fast-fails with ``CircuitBreakerError`` instead of queueing on timeouts.
    """

    def __init__(self, model: Type[ModelType], db: AsyncSession):
        self.model = model
        self.db = db

    async def _execute_with_circuit_breaker(
        self, func: Any, *args: Any, **kwargs: Any
    ) -> Any:
        return await db_circuit_breaker.call(func, *args, **kwargs)

    async def get(self, id: Any) -> Optional[ModelType]:
        """Fetch a single entity by primary key.  Returns ``None`` if not found."""

        async def _get() -> Optional[ModelType]:
            return await self.db.get(self.model, id)

        return await self._execute_with_circuit_breaker(_get)

    async def get_for_update(self, id: Any) -> Optional[ModelType]:
        """
        Fetch an entity by primary key with a row lock (``SELECT … FOR UPDATE``).

        The row is re-read from the database even if the session already
        holds it, so the caller always sees the latest committed values.
        SQLite has no row locks and ignores the clause; there the in-process
        per-key lock provides the exclusion.
        """

        async def _get_for_update() -> Optional[ModelType]:
            pk = list(self.model.__table__.primary_key.columns)[0]
            stmt = (
                select(self.model)
                .where(pk == id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            result = await self.db.execute(stmt)
            return result.scalars().first()

        return await self._execute_with_circuit_breaker(_get_for_update)

    async def add(self, obj_in: ModelType) -> ModelType:
        """Stage ``obj_in`` in the current transaction and flush it (no commit)."""

        async def _add() -> ModelType:
            self.db.add(obj_in)
            await self.db.flush()
            return obj_in

        return await self._execute_with_circuit_breaker(_add)

    async def create(self, obj_in: ModelType) -> ModelType:
        """Insert a new entity, commit, and return the refreshed instance."""

        async def _create() -> ModelType:
            self.db.add(obj_in)
            try:
                await self.db.commit()
            except OperationalError:
                await self.db.rollback()
                logger.error("OperationalError during create for %s", self.model.__name__)
                raise
            await self.db.refresh(obj_in)
            return obj_in

        return await self._execute_with_circuit_breaker(_create)
