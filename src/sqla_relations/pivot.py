"""Pivot-table writes and relation-aware persistence."""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncIterator, Callable, Iterable, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar, Union


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession

from .exceptions import ConstraintViolationError
from .relations import PIVOT_CREATED_AT, PIVOT_UPDATED_AT, InverseOneToOne, ManyToMany, Relation, _HasRelated
from .state import entity_state


logger = logging.getLogger(__name__)

_E = TypeVar("_E")

RowCallback = Callable[[dict[str, Any]], Any]
PivotIds = Union[Iterable[Any], Mapping[Any, Union[Mapping[str, Any], None]]]


@dataclass(frozen=True, slots=True)
class SyncResult:
    attached: list[Any] = field(default_factory=list)
    detached: list[Any] = field(default_factory=list)
    updated: list[Any] = field(default_factory=list)


@asynccontextmanager
async def _savepoint(session: AsyncSession, relation: Relation) -> AsyncIterator[None]:
    """Run the block in a SAVEPOINT, translating integrity errors."""
    try:
        async with session.begin_nested():
            yield
    except sa_exc.IntegrityError as exc:
        raise ConstraintViolationError(f"{relation!r}: {exc.orig}") from exc


def _timestamp(table: sa.TableClause, column: str) -> datetime:
    now = datetime.now(timezone.utc)
    column_type = table.c[column].type if column in table.c else None

    return now if getattr(column_type, "timezone", False) else now.replace(tzinfo=None)


class PivotQuery:
    """Statements over the pivot rows of one owner.

    Example::

        stale = await user.roles().pivot_query().where_in("role_id", [1, 2]).all(session)
    """

    __slots__ = ("_criteria", "manager")

    def __init__(self, manager: PivotManager) -> None:
        self.manager = manager
        self._criteria: list[sa.ColumnElement[bool]] = []

    @property
    def table(self) -> sa.TableClause:
        return self.manager.relation.pivot

    def where(self, *conditions: sa.ColumnElement[bool]) -> Self:
        self._criteria.extend(conditions)
        return self

    def where_in(self, key: str, values: Iterable[Any]) -> Self:
        return self.where(self.manager.relation.pivot_column(key).in_(list(values)))

    def _scope(self) -> list[sa.ColumnElement[bool]]:
        keys = self.manager.relation.keys
        return [self.table.c[keys.foreign_key] == self.manager.owner_key, *self._criteria]

    def select(self) -> sa.Select[Any]:
        return sa.select(self.table).where(*self._scope())

    def update(self, **values: Any) -> sa.Update:
        return sa.update(self.table).where(*self._scope()).values(**values)

    def delete(self) -> sa.Delete:
        return sa.delete(self.table).where(*self._scope())

    async def all(self, session: AsyncSession) -> list[dict[str, Any]]:
        result = await session.execute(self.select())
        return [dict(row._mapping) for row in result]

    async def execute_update(self, session: AsyncSession, **values: Any) -> int:
        async with _savepoint(session, self.manager.relation):
            result = await session.execute(self.update(**values))

        return result.rowcount

    async def execute_delete(self, session: AsyncSession) -> int:
        async with _savepoint(session, self.manager.relation):
            result = await session.execute(self.delete())

        return result.rowcount


class PivotManager:
    """Attach, detach and sync the pivot rows linking one owner to related ids.

    Related ids may be given as plain key values or as persisted related
    entities. A mapping of id to extra pivot values attaches those values too.
    Every operation runs in its own SAVEPOINT, so a failure leaves the pivot
    table as it was.
    """

    __slots__ = ("owner", "relation")

    def __init__(self, relation: ManyToMany, owner: Any) -> None:
        self.relation = relation
        self.owner = owner

    @property
    def owner_key(self) -> Any:
        value = getattr(self.owner, self.relation.keys.local_key)
        if value is None:
            raise ValueError(
                f"{type(self.owner).__name__} must be persisted before changing "
                f"{self.relation.name!r} memberships"
            )

        return value

    def pivot_query(self) -> PivotQuery:
        return PivotQuery(self)

    async def attach(
        self,
        session: AsyncSession,
        ids: PivotIds,
        row_callback: RowCallback | None = None,
    ) -> list[Any]:
        """Insert one pivot row per related id.

        *row_callback* receives each row dict before insertion and may add
        or change values in place.

        Raises:
            ConstraintViolationError: If an id is given twice, is already
                attached, or the insert violates a database constraint.
        """
        wanted = self._normalize(ids, unique=True)
        if not wanted:
            return []

        async with _savepoint(session, self.relation):
            await self._attach(session, wanted, row_callback)

        logger.debug("Attached %s to %r via %r", list(wanted), self.owner, self.relation)
        return list(wanted)

    async def detach(self, session: AsyncSession, ids: Iterable[Any] | None = None) -> int:
        """Delete the owner's pivot rows for *ids*, or all of them when ``None``.

        Returns:
            The number of deleted rows. An empty *ids* deletes nothing.
        """
        targets: list[Any] | None = None
        if ids is not None:
            targets = [self._related_id(value) for value in ids]
            if not targets:
                return 0

        async with _savepoint(session, self.relation):
            count = await self._delete(session, targets)

        logger.debug("Detached %d row(s) from %r via %r", count, self.owner, self.relation)
        return count

    async def sync(
        self,
        session: AsyncSession,
        ids: PivotIds,
        row_callback: RowCallback | None = None,
    ) -> SyncResult:
        """Make the owner's pivot rows match *ids* exactly.

        Missing ids are attached, ids no longer wanted are detached and, when
        extra values are given for an id already attached, its row is
        updated. All of it happens in one SAVEPOINT.
        """
        wanted = self._normalize(ids, unique=False)

        async with _savepoint(session, self.relation):
            current = await self._current(session)
            detached = [value for value in current if value not in wanted]
            attached = {key: extra for key, extra in wanted.items() if key not in current}
            updated = [key for key, extra in wanted.items() if key in current and extra]

            if detached:
                await self._delete(session, detached)
            if attached:
                await self._insert(session, self._rows(attached, row_callback))
            for key in updated:
                await self._update(session, key, wanted[key])

        result = SyncResult(list(attached), detached, updated)
        logger.debug("Synced %r via %r: %s", self.owner, self.relation, result)

        return result

    async def _attach(
        self,
        session: AsyncSession,
        wanted: dict[Any, dict[str, Any]],
        row_callback: RowCallback | None,
    ) -> None:
        if existing := await self._current(session, list(wanted)):
            raise ConstraintViolationError(
                f"{self.relation!r}: {sorted(existing, key=repr)} already attached to {self.owner!r}"
            )

        await self._insert(session, self._rows(wanted, row_callback))

    def _related_id(self, value: Any) -> Any:
        if sa.inspect(value, raiseerr=False) is None:
            return value

        related_id = getattr(value, self.relation.keys.related_local_key)
        if related_id is None:
            raise ValueError(f"{type(value).__name__} must be persisted before it can be attached")

        return related_id

    def _normalize(self, ids: PivotIds, *, unique: bool) -> dict[Any, dict[str, Any]]:
        items: Iterable[tuple[Any, Mapping[str, Any] | None]]
        if isinstance(ids, Mapping):
            items = ids.items()
        else:
            items = ((value, None) for value in ids)

        wanted: dict[Any, dict[str, Any]] = {}
        for value, extra in items:
            key = self._related_id(value)
            if unique and key in wanted:
                raise ConstraintViolationError(f"{self.relation!r}: id {key!r} given more than once")
            wanted[key] = dict(extra or {})

        return wanted

    def _rows(
        self, wanted: Mapping[Any, Mapping[str, Any]], row_callback: RowCallback | None
    ) -> list[dict[str, Any]]:
        keys = self.relation.keys
        assert keys.related_foreign_key is not None
        owner_key = self.owner_key
        rows: list[dict[str, Any]] = []

        for key, extra in wanted.items():
            row = {keys.foreign_key: owner_key, keys.related_foreign_key: key, **extra}
            if keys.pivot_timestamps:
                row.setdefault(PIVOT_CREATED_AT, _timestamp(self.relation.pivot, PIVOT_CREATED_AT))
                row.setdefault(PIVOT_UPDATED_AT, row[PIVOT_CREATED_AT])
            if row_callback is not None:
                row_callback(row)
            rows.append(row)

        return rows

    def _writable(self, names: Iterable[str]) -> sa.TableClause:
        pivot = self.relation.pivot
        names = list(dict.fromkeys(names))
        if isinstance(pivot, sa.Table) or all(name in pivot.c for name in names):
            return pivot

        return sa.table(pivot.name, *(sa.column(name) for name in names))

    async def _current(self, session: AsyncSession, ids: Sequence[Any] | None = None) -> set[Any]:
        keys = self.relation.keys
        pivot = self.relation.pivot
        stmt = sa.select(pivot.c[keys.related_foreign_key]).where(
            pivot.c[keys.foreign_key] == self.owner_key
        )
        if ids is not None:
            stmt = stmt.where(pivot.c[keys.related_foreign_key].in_(ids))

        return set((await session.scalars(stmt)).all())

    async def _insert(self, session: AsyncSession, rows: list[dict[str, Any]]) -> None:
        if (model := self.relation.pivot_entity) is not None:
            session.add_all([model(**row) for row in rows])
            await session.flush()
            return

        # executemany needs one statement per distinct set of columns
        batches: dict[tuple[str, ...], list[dict[str, Any]]] = {}
        for row in rows:
            batches.setdefault(tuple(row), []).append(row)

        for names, batch in batches.items():
            await session.execute(sa.insert(self._writable(names)), batch)

    async def _delete(self, session: AsyncSession, ids: Sequence[Any] | None) -> int:
        keys = self.relation.keys
        assert keys.related_foreign_key is not None

        if (model := self.relation.pivot_entity) is not None:
            stmt = sa.select(model).where(getattr(model, keys.foreign_key) == self.owner_key)
            if ids is not None:
                stmt = stmt.where(getattr(model, keys.related_foreign_key).in_(ids))
            rows = (await session.scalars(stmt)).all()
            for row in rows:
                await session.delete(row)
            await session.flush()
            return len(rows)

        pivot = self.relation.pivot
        delete = sa.delete(pivot).where(pivot.c[keys.foreign_key] == self.owner_key)
        if ids is not None:
            delete = delete.where(pivot.c[keys.related_foreign_key].in_(ids))
        result = await session.execute(delete)

        return result.rowcount

    async def _update(self, session: AsyncSession, key: Any, values: Mapping[str, Any]) -> None:
        keys = self.relation.keys
        assert keys.related_foreign_key is not None
        values = dict(values)
        if keys.pivot_timestamps:
            values[PIVOT_UPDATED_AT] = _timestamp(self.relation.pivot, PIVOT_UPDATED_AT)

        table = self._writable((keys.foreign_key, keys.related_foreign_key, *values))
        await session.execute(
            sa.update(table)
            .where(
                table.c[keys.foreign_key] == self.owner_key,
                table.c[keys.related_foreign_key] == key,
            )
            .values(**values)
        )


async def save_many(
    session: AsyncSession,
    relation: _HasRelated | ManyToMany,
    owner: Any,
    entities: Iterable[_E],
    row_callback: RowCallback | None = None,
) -> list[_E]:
    """Persist *entities* as related to *owner*.

    Has-one/has-many relations point each entity's foreign key at the owner;
    many-to-many relations persist the entities and attach them. An owner
    that is not yet persisted is added and flushed first.
    """
    entities = list(entities)
    if not entities:
        return entities

    async with _savepoint(session, relation):
        if not sa.inspect(owner).has_identity:
            session.add(owner)
            await session.flush()

        if isinstance(relation, ManyToMany):
            session.add_all(entities)
            await session.flush()
            manager = PivotManager(relation, owner)
            await manager._attach(session, manager._normalize(entities, unique=True), row_callback)
        else:
            for entity in entities:
                relation.bind(owner, entity)
            session.add_all(entities)
            await session.flush()

    logger.debug("Saved %d %s via %r", len(entities), relation.target.__name__, relation)
    return entities


async def associate(
    session: AsyncSession, relation: InverseOneToOne, owner: Any, related: Any
) -> None:
    keys = relation.keys
    value = getattr(related, keys.foreign_key)
    if value is None:
        raise ValueError(f"{type(related).__name__} must be persisted before it can be associated")

    async with _savepoint(session, relation):
        setattr(owner, keys.local_key, value)
        session.add(owner)
        await session.flush()

    entity_state(owner).relations[relation.name] = related


async def dissociate(session: AsyncSession, relation: InverseOneToOne, owner: Any) -> None:
    async with _savepoint(session, relation):
        setattr(owner, relation.keys.local_key, None)
        session.add(owner)
        await session.flush()

    entity_state(owner).relations[relation.name] = None
