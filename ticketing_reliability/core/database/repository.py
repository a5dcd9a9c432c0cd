"""Minimal generic repository for SQLAlchemy models.

Sessions are always passed explicitly and repositories never commit: the
caller decides the transaction boundary. For anything beyond these basics,
use the session directly.

Example:
    class JobRepository(BaseRepository[ScheduledJob]):
        async def list_locked(self, session: AsyncSession) -> Sequence[ScheduledJob]:
            stmt = select(ScheduledJob).where(ScheduledJob.locked_at.is_not(None))
            return (await session.execute(stmt)).scalars().all()
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from sqlalchemy import select

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.orm import InstrumentedAttribute


T = TypeVar("T")


class BaseRepository(Generic[T]):
    """Thin CRUD convenience layer.

    Provides:
        - get(session, id) -> T | None
        - get_by(session, attr, value) -> T | None
        - list(session, limit, offset) -> Sequence[T]
        - create(session, instance) -> T
    """

    __slots__ = ("_logger", "model")

    def __init__(self, model: type[T]) -> None:
        self.model = model
        self._logger = logging.getLogger(f"repository.{model.__name__}")

    async def get(self, session: AsyncSession, id: Any) -> T | None:  # noqa: A002
        """Get entity by primary key."""
        return await session.get(self.model, id)

    async def get_by(
        self,
        session: AsyncSession,
        attr: InstrumentedAttribute[Any],
        value: Any,
    ) -> T | None:
        """Get entity by an arbitrary unique attribute.

        Example:
            message = await repo.get_by(session, OutboxMessage.message_id, "9b1c...")
        """
        stmt = select(self.model).where(attr == value)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def list(
        self,
        session: AsyncSession,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> Sequence[T]:
        stmt = select(self.model).limit(limit).offset(offset)
        result = await session.execute(stmt)
        return result.scalars().all()

    async def create(self, session: AsyncSession, instance: T) -> T:
        """Add and flush a new entity so generated values are populated.

        Does not commit.
        """
        session.add(instance)
        await session.flush()
        self._logger.debug(
            "Entity created",
            extra={"entity": self.model.__name__, "id": str(getattr(instance, "id", None))},
        )
        return instance


__all__ = ["BaseRepository"]
