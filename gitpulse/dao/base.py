"""Generic base DAO: ORM CRUD plus compare-and-swap updates (Core)."""

import uuid
from collections.abc import Iterable
from typing import Any, Generic, TypeVar

from sqlalchemy import ColumnElement, func, select, update
from sqlalchemy import exists as sa_exists
from sqlalchemy.ext.asyncio import AsyncSession

from gitpulse.core.database import Base

ModelT = TypeVar("ModelT", bound=Base)

_IMMUTABLE = frozenset({"id", "created_at", "updated_at"})


class BaseDAO(Generic[ModelT]):
    """Base data-access object. Subclasses set ``model`` class attribute."""

    model: type[ModelT]

    # ── ORM methods ──────────────────────────────────────────────────────

    @staticmethod
    def _require_pk(pk: uuid.UUID) -> None:
        """Raise ValueError if *pk* is None."""
        if pk is None:
            raise ValueError("pk must not be None")

    def _check_columns(self, keys: Iterable[str]) -> None:
        column_keys = set(self.model.__mapper__.column_attrs.keys())
        for key in keys:
            if key in _IMMUTABLE:
                raise AttributeError(f"'{key}' is immutable and cannot be updated")
            if key not in column_keys:
                raise AttributeError(f"{self.model.__name__} has no column '{key}'")

    async def get_by_id(self, session: AsyncSession, pk: uuid.UUID) -> ModelT | None:
        self._require_pk(pk)
        return await session.get(self.model, pk, populate_existing=True)

    async def create(self, session: AsyncSession, **values: Any) -> ModelT:
        obj = self.model(**values)
        session.add(obj)
        await session.flush()
        await session.refresh(obj)
        return obj

    async def bulk_create(self, session: AsyncSession, items: list[dict[str, Any]]) -> list[ModelT]:
        """Insert multiple rows in a single flush, preserving input order."""
        objs = [self.model(**vals) for vals in items]
        session.add_all(objs)
        await session.flush()
        for obj in objs:
            await session.refresh(obj)
        return objs

    async def update(self, session: AsyncSession, pk: uuid.UUID, **values: Any) -> ModelT | None:
        self._require_pk(pk)
        self._check_columns(values)
        obj = await session.get(self.model, pk)
        if obj is None:
            return None
        for key, val in values.items():
            setattr(obj, key, val)
        await session.flush()
        await session.refresh(obj)
        return obj

    async def exists(self, session: AsyncSession, pk: uuid.UUID) -> bool:
        """Check existence without loading the full ORM object."""
        self._require_pk(pk)
        table = self.model.__table__
        stmt = select(sa_exists().where(table.c.id == pk))
        result = await session.execute(stmt)
        return result.scalar_one()

    async def get_by_field(self, session: AsyncSession, **filters: Any) -> ModelT | None:
        """Return the first row matching all *filters*, or None."""
        if not filters:
            raise ValueError("get_by_field() requires at least one filter")
        stmt = select(self.model)
        for key, val in filters.items():
            stmt = stmt.where(getattr(self.model, key) == val)
        result = await session.execute(stmt)
        return result.scalars().first()

    # ── Core methods ─────────────────────────────────────────────────────

    async def compare_and_set(
        self,
        session: AsyncSession,
        pk: uuid.UUID,
        *conditions: ColumnElement[bool],
        **values: Any,
    ) -> ModelT | None:
        """Atomically update row *pk* only if every condition holds.

        Returns the refreshed row, or None when the row is missing or a
        concurrent writer already changed it. This is the only way job and
        batch status transitions are written.
        """
        self._require_pk(pk)
        self._check_columns(values)
        stmt = (
            update(self.model)
            .where(self.model.id == pk, *conditions)
            .values(**values)
            .returning(self.model)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        row = result.scalars().first()
        if row is not None:
            await session.refresh(row)
        return row

    async def count(self, session: AsyncSession, *conditions: ColumnElement[bool]) -> int:
        stmt = select(func.count()).select_from(self.model.__table__)
        if conditions:
            stmt = stmt.where(*conditions)
        result = await session.execute(stmt)
        return result.scalar_one()
