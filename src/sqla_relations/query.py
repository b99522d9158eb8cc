from __future__ import annotations

import re
import sys
from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Final, Generic, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.ext.asyncio import AsyncSession

from . import pivot as _pivot
from .exceptions import ConfigurationError, NotFoundError
from .executor import EagerLoader, Execute, RelatedRow, distinct
from .existence import DEFAULT_COUNT_SUFFIX, Constraint, compile_count, compile_has
from .planner import Planner
from .registry import Registry
from .relations import (
    GROUP_KEY,
    PIVOT_PREFIX,
    InverseOneToOne,
    Indirect,
    ManyToMany,
    Relation,
    _HasRelated,
)
from .state import entity_state
from .tools import compare, identity_of, unique_scalars


if TYPE_CHECKING:
    from .pivot import PivotIds, PivotQuery, RowCallback, SyncResult

T = TypeVar("T", bound=orm.DeclarativeBase)

COUNT_PREFIX: Final[str] = "_count_"
ROW_NUMBER: Final[str] = "_rel_rn"

_ALIAS_RE: Final[re.Pattern[str]] = re.compile(r"\s+as\s+", re.IGNORECASE)


def _split_alias(name: str, alias: str | None) -> tuple[str, str]:
    relation, *rest = _ALIAS_RE.split(name.strip(), maxsplit=1)
    if rest and alias is not None:
        raise ValueError(f"Alias given twice for {name!r}")

    return relation, alias or (rest[0] if rest else f"{relation}{DEFAULT_COUNT_SUFFIX}")


class _Builder:
    """Filtering, existence, count and eager-load surface shared by all builders.

    Builders are single-owner and mutable: every method changes the builder in
    place and returns it, so both ``q.where(...)`` inside a constraint
    callback and fluent chaining work. Constraint callbacks receive a builder
    and their return value is ignored.
    """

    __slots__ = ("_counts", "_criteria", "_limit", "_offset", "_order_by", "_planner", "_registry")

    def __init__(self, registry: Registry | None = None) -> None:
        self._registry = registry
        self._criteria: sa.ColumnElement[bool] | None = None
        self._counts: list[tuple[str, sa.Label[int]]] = []
        self._order_by: list[Any] = []
        self._limit: int | None = None
        self._offset: int | None = None
        self._planner: Planner | None = None

    @property
    def entity(self) -> type[orm.DeclarativeBase]:
        """The model the builder selects."""
        raise NotImplementedError

    @property
    def registry(self) -> Registry:
        return self._registry if self._registry is not None else Registry()

    @property
    def criteria(self) -> sa.ColumnElement[bool] | None:
        """User criteria (``where``/``has`` family), without any join condition."""
        return self._criteria

    @property
    def count_aliases(self) -> tuple[str, ...]:
        return tuple(alias for alias, _ in self._counts)

    def where(self, *conditions: sa.ColumnExpressionArgument[bool]) -> Self:
        """Conjoin *conditions* with the criteria collected so far."""
        if conditions:
            self._combine(sa.and_(*conditions), disjunction=False)

        return self

    def or_where(self, *conditions: sa.ColumnExpressionArgument[bool]) -> Self:
        """Disjoin the conjunction of *conditions* with the criteria collected so far."""
        if conditions:
            self._combine(sa.and_(*conditions), disjunction=True)

        return self

    def where_in(self, column: Any, values: Iterable[Any]) -> Self:
        return self.where(column.in_(list(values)))

    def order_by(self, *clauses: Any) -> Self:
        self._order_by.extend(clauses)
        return self

    def limit(self, limit: int | None) -> Self:
        self._limit = limit
        return self

    def offset(self, offset: int | None) -> Self:
        self._offset = offset
        return self

    def with_(
        self,
        path: str | Mapping[str, Constraint | None],
        constraint: Constraint | None = None,
    ) -> Self:
        """Eager-load relation *path* (dot-separated) on the fetched entities.

        *constraint* applies to the last segment of the path only. To
        constrain an intermediate segment, nest a ``with_`` call inside that
        segment's own constraint::

            q.with_("posts", lambda posts: posts.where(Post.published).with_("comments"))

        A mapping of path to constraint (or ``None``) declares several paths
        at once. Repeated paths merge into a single node.
        """
        if self._planner is None:
            self._planner = Planner(self.entity, self._registry)

        if isinstance(path, Mapping):
            if constraint is not None:
                raise ValueError("Pass constraints inside the mapping when loading several paths")
            for key, value in path.items():
                self._planner.add(key, value)
        else:
            self._planner.add(path, constraint)

        return self

    def detach_planner(self) -> Planner | None:
        """Remove and return the eager-load paths declared on this builder."""
        planner, self._planner = self._planner, None
        return planner

    def with_count(
        self,
        name: str,
        constraint: Constraint | None = None,
        *,
        alias: str | None = None,
    ) -> Self:
        """Select the number of related rows of relation *name* for each entity.

        The value is exposed in the entity's ``__meta__`` bucket under
        *alias*, defaulting to ``<name>_count``; ``"comments as total"`` is
        accepted as a shorthand for ``alias="total"``.
        """
        relation_name, label = _split_alias(name, alias)
        relation = self.registry.relation(self.entity, relation_name)
        column = compile_count(
            self.entity, relation, f"{COUNT_PREFIX}{label}", constraint=constraint
        )
        self._counts.append((label, column))

        return self

    def has(self, name: str, operator: str | None = None, count: int | None = None) -> Self:
        return self._existence(name, None, operator, count, negate=False, disjunction=False)

    def or_has(self, name: str, operator: str | None = None, count: int | None = None) -> Self:
        return self._existence(name, None, operator, count, negate=False, disjunction=True)

    def where_has(
        self,
        name: str,
        constraint: Constraint | None = None,
        operator: str | None = None,
        count: int | None = None,
    ) -> Self:
        return self._existence(name, constraint, operator, count, negate=False, disjunction=False)

    def or_where_has(
        self,
        name: str,
        constraint: Constraint | None = None,
        operator: str | None = None,
        count: int | None = None,
    ) -> Self:
        return self._existence(name, constraint, operator, count, negate=False, disjunction=True)

    def doesnt_have(
        self, name: str, operator: str | None = None, count: int | None = None
    ) -> Self:
        return self._existence(name, None, operator, count, negate=True, disjunction=False)

    def or_doesnt_have(
        self, name: str, operator: str | None = None, count: int | None = None
    ) -> Self:
        return self._existence(name, None, operator, count, negate=True, disjunction=True)

    def where_doesnt_have(
        self,
        name: str,
        constraint: Constraint | None = None,
        operator: str | None = None,
        count: int | None = None,
    ) -> Self:
        return self._existence(name, constraint, operator, count, negate=True, disjunction=False)

    def or_where_doesnt_have(
        self,
        name: str,
        constraint: Constraint | None = None,
        operator: str | None = None,
        count: int | None = None,
    ) -> Self:
        return self._existence(name, constraint, operator, count, negate=True, disjunction=True)

    def _existence(
        self,
        name: str,
        constraint: Constraint | None,
        operator: str | None,
        count: int | None,
        *,
        negate: bool,
        disjunction: bool,
    ) -> Self:
        head, _, rest = name.partition(".")
        relation = self.registry.relation(self.entity, head)

        if rest:
            # the operator and count belong to the last segment of a nested path
            def nested(builder: RelationQuery[Any]) -> None:
                builder.where_has(rest, constraint, operator, count)

            clause = compile_has(self.entity, relation, constraint=nested, negate=negate)
        else:
            clause = compile_has(
                self.entity,
                relation,
                constraint=constraint,
                operator=operator,
                count=count,
                negate=negate,
            )

        return self._combine(clause, disjunction=disjunction)

    def _combine(self, clause: sa.ColumnElement[bool], *, disjunction: bool) -> Self:
        if self._criteria is None:
            self._criteria = clause
        elif disjunction:
            self._criteria = sa.or_(self._criteria, clause)
        else:
            self._criteria = sa.and_(self._criteria, clause)

        return self

    def _apply_counts(self, entity: Any, values: Sequence[Any]) -> None:
        if self._counts:
            entity_state(entity).meta.update(zip(self.count_aliases, values))


class RelationQuery(_Builder, Generic[T]):
    """Builder over the rows of one relation, optionally scoped to one owner.

    Obtained by calling a relation on an instance (``user.posts()``) or, for
    eager loading, created unbound by the planner. The join condition derived
    from the relation keys is added when the statement is compiled, separately
    from the user criteria, so no ``where``/``or_where`` combination can
    widen the result beyond the owner(s).
    """

    __slots__ = ("_pivot_fields", "owner", "relation")

    def __init__(
        self,
        relation: Relation,
        owner: Any = None,
        *,
        registry: Registry | None = None,
    ) -> None:
        super().__init__(registry)
        self.relation = relation
        self.owner = owner
        self._pivot_fields: tuple[str, ...] = ()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.relation!r} owner={self.owner!r}>"

    @property
    def entity(self) -> type[orm.DeclarativeBase]:
        return self.relation.target

    # -- pivot-scoped filtering ---------------------------------------------

    def where_pivot(self, key: str, *args: Any) -> Self:
        """Filter on pivot column *key*: ``(key, value)`` or ``(key, operator, value)``."""
        return self._combine(self._pivot_compare(key, args), disjunction=False)

    def or_where_pivot(self, key: str, *args: Any) -> Self:
        return self._combine(self._pivot_compare(key, args), disjunction=True)

    def where_in_pivot(self, key: str, values: Iterable[Any]) -> Self:
        column = self._pivot_relation().pivot_column(key)
        return self._combine(column.in_(list(values)), disjunction=False)

    def with_pivot(self, *fields: str) -> Self:
        """Also project the pivot columns *fields* for this fetch."""
        relation = self._pivot_relation()
        for field in fields:
            relation.pivot_column(field)
        self._pivot_fields = (*self._pivot_fields, *fields)
        return self

    def _pivot_relation(self) -> ManyToMany:
        if not isinstance(self.relation, ManyToMany):
            raise ConfigurationError(
                f"{self.relation!r}: pivot operations require a many_to_many relation"
            )

        return self.relation

    def _pivot_compare(self, key: str, args: tuple[Any, ...]) -> sa.ColumnElement[bool]:
        column = self._pivot_relation().pivot_column(key)
        if len(args) == 1:
            return compare(column, "=", args[0])
        if len(args) == 2:  # noqa: PLR2004
            return compare(column, args[0], args[1])

        raise TypeError(f"Expected (key, value) or (key, operator, value), got {len(args) + 1} arguments")

    def _pivot_names(self) -> tuple[str, ...] | None:
        if not isinstance(self.relation, ManyToMany):
            return None

        keys = self.relation.keys
        names = (*self.relation.pivot_columns(), *self._pivot_fields)

        return tuple(name for name in dict.fromkeys(names) if name != keys.foreign_key)

    # -- statements ----------------------------------------------------------

    def statement(self, keys: Sequence[Any]) -> sa.Select[Any]:
        """Compile the SELECT fetching this relation's rows for owner *keys*.

        The first two columns are the target entity and the group key (the
        value matching the owner's local key); pivot and count columns follow.
        When several keys are batched, ``limit``/``offset`` apply per owner.
        """
        relation = self.relation
        stmt = relation.base_select()
        labels = [GROUP_KEY]

        if (pivot_names := self._pivot_names()) is not None:
            many_to_many = self._pivot_relation()
            stmt = stmt.add_columns(
                *(many_to_many.pivot_column(name).label(f"{PIVOT_PREFIX}{name}") for name in pivot_names)
            )
            labels.extend(f"{PIVOT_PREFIX}{name}" for name in pivot_names)

        if self._counts:
            stmt = stmt.add_columns(*(column for _, column in self._counts))
            labels.extend(column.name for _, column in self._counts)

        stmt = stmt.where(relation.group_column().in_(list(keys)))
        if self._criteria is not None:
            stmt = stmt.where(self._criteria)
        if self._order_by:
            stmt = stmt.order_by(*self._order_by)

        if self._limit is None and self._offset is None:
            return stmt
        if len(keys) == 1:
            return stmt.limit(self._limit).offset(self._offset)

        return self._limit_per_group(stmt, relation, labels)

    def _limit_per_group(
        self, stmt: sa.Select[Any], relation: Relation, labels: list[str]
    ) -> sa.Select[Any]:
        target = relation.target
        ordering = self._order_by or list(sa.inspect(target).primary_key)
        row_number = (
            sa.func.row_number()
            .over(partition_by=relation.group_column(), order_by=ordering)
            .label(ROW_NUMBER)
        )
        inner = stmt.add_columns(row_number).order_by(None).subquery()
        entity = orm.aliased(target, inner)

        low = self._offset or 0
        window = inner.c[ROW_NUMBER] > low
        if self._limit is not None:
            window = sa.and_(window, inner.c[ROW_NUMBER] <= low + self._limit)

        return (
            sa.select(entity, *(inner.c[label] for label in labels))
            .where(window)
            .order_by(inner.c[GROUP_KEY], inner.c[ROW_NUMBER])
        )

    def _parse(self, result: sa.Result[Any]) -> list[RelatedRow]:
        pivot_names = self._pivot_names()
        width = len(pivot_names) if pivot_names is not None else 0
        aliases = self.count_aliases
        rows: list[RelatedRow] = []

        for row in result.all():
            entity, key = row[0], row[1]
            pivot = None
            if pivot_names is not None:
                pivot = {self.relation.keys.foreign_key: key, **dict(zip(pivot_names, row[2 : 2 + width]))}
            rows.append(RelatedRow(key, entity, pivot, dict(zip(aliases, row[2 + width :]))))

        return rows

    # -- execution -----------------------------------------------------------

    async def rows(
        self,
        session: AsyncSession,
        keys: Sequence[Any],
        *,
        execute: Execute | None = None,
    ) -> list[RelatedRow]:
        """Fetch the related rows of every owner key in one batch.

        Indirect rows reached through several intermediate rows are
        de-duplicated per owner.
        """
        run = execute if execute is not None else session.execute
        if not keys:
            return []

        rows = self._parse(await run(self.statement(keys)))
        if not isinstance(self.relation, Indirect):
            return rows

        seen: set[tuple[Any, ...]] = set()
        unique: list[RelatedRow] = []
        for row in rows:
            marker = (row.key, *identity_of(row.entity))
            if marker not in seen:
                seen.add(marker)
                unique.append(row)

        return unique

    async def fetch(self, session: AsyncSession) -> Any:
        """Fetch the related entities of the bound owner.

        Counts and pivot data are written only once nested eager loads
        have succeeded.

        Returns:
            The related entity or ``None`` for one-to-one kinds, a list of
            entities otherwise.
        """
        owner = self._require_owner()
        plan = self._planner.plan() if self._planner is not None else None
        rows = await self.rows(session, self.relation.owner_values([owner]))

        entities = distinct(row.entity for row in rows)
        if plan is not None and entities:
            await EagerLoader(session).run(entities, plan)

        for row in rows:
            if row.counts:
                entity_state(row.entity).meta.update(row.counts)
        if isinstance(self.relation, ManyToMany):
            pivots = entity_state(owner).pivots.setdefault(self.relation.name, {})
            pivots.update((identity_of(row.entity), row.pivot) for row in rows)

        if self.relation.many:
            return entities

        return entities[0] if entities else None

    async def first(self, session: AsyncSession) -> Any:
        """Fetch the first related entity, or ``None``."""
        self._limit = 1
        result = await self.fetch(session)
        if self.relation.many:
            return result[0] if result else None

        return result

    async def first_or_fail(self, session: AsyncSession) -> Any:
        """Like :meth:`first`, raising :class:`NotFoundError` when nothing matches."""
        if (entity := await self.first(session)) is None:
            raise NotFoundError(f"No {self.entity.__name__} found for {self.relation!r}")

        return entity

    def _require_owner(self) -> Any:
        if self.owner is None:
            raise ValueError(f"{self!r} is not bound to an owner entity")

        return self.owner

    # -- mutations -----------------------------------------------------------

    def pivot_query(self) -> PivotQuery:
        """A builder over the pivot table alone, with the owner key fixed."""
        return _pivot.PivotManager(self._pivot_relation(), self._require_owner()).pivot_query()

    async def attach(
        self,
        session: AsyncSession,
        ids: PivotIds,
        row_callback: RowCallback | None = None,
    ) -> list[Any]:
        manager = _pivot.PivotManager(self._pivot_relation(), self._require_owner())
        return await manager.attach(session, ids, row_callback)

    async def detach(self, session: AsyncSession, ids: Iterable[Any] | None = None) -> int:
        manager = _pivot.PivotManager(self._pivot_relation(), self._require_owner())
        return await manager.detach(session, ids)

    async def sync(
        self,
        session: AsyncSession,
        ids: PivotIds,
        row_callback: RowCallback | None = None,
    ) -> SyncResult:
        manager = _pivot.PivotManager(self._pivot_relation(), self._require_owner())
        return await manager.sync(session, ids, row_callback)

    async def save(
        self,
        session: AsyncSession,
        entity: T,
        row_callback: RowCallback | None = None,
    ) -> T:
        """Persist *entity* as related to the owner (attaching it for many-to-many)."""
        saved = await self.save_many(session, [entity], row_callback)
        return saved[0]

    async def save_many(
        self,
        session: AsyncSession,
        entities: Iterable[T],
        row_callback: RowCallback | None = None,
    ) -> list[T]:
        relation = self._persistable_relation()
        return await _pivot.save_many(session, relation, self._require_owner(), entities, row_callback)

    async def create(
        self,
        session: AsyncSession,
        attributes: Mapping[str, Any] | None = None,
        row_callback: RowCallback | None = None,
        **kwargs: Any,
    ) -> T:
        """Instantiate the related model from *attributes* and :meth:`save` it."""
        entity = self.entity(**{**(attributes or {}), **kwargs})
        return await self.save(session, entity, row_callback)  # type: ignore[arg-type]

    async def create_many(
        self,
        session: AsyncSession,
        attributes: Iterable[Mapping[str, Any]],
        row_callback: RowCallback | None = None,
    ) -> list[T]:
        entities = [self.entity(**dict(item)) for item in attributes]
        return await self.save_many(session, entities, row_callback)  # type: ignore[arg-type]

    async def associate(self, session: AsyncSession, related: T) -> None:
        """Point the owner's foreign key at *related* and persist the owner."""
        await _pivot.associate(session, self._inverse_relation(), self._require_owner(), related)

    async def dissociate(self, session: AsyncSession) -> None:
        """Clear the owner's foreign key and persist the owner."""
        await _pivot.dissociate(session, self._inverse_relation(), self._require_owner())

    def _persistable_relation(self) -> _HasRelated | ManyToMany:
        if not isinstance(self.relation, (_HasRelated, ManyToMany)):
            raise ConfigurationError(
                f"{self.relation!r}: save/create are not supported for "
                f"{self.relation.kind.value} relations"
            )

        return self.relation

    def _inverse_relation(self) -> InverseOneToOne:
        if not isinstance(self.relation, InverseOneToOne):
            raise ConfigurationError(
                f"{self.relation!r}: associate/dissociate require an inverse_one_to_one relation"
            )

        return self.relation


class ModelQuery(_Builder, Generic[T]):
    """Root builder: fetches entities of one model plus their eager-loaded relations.

    Example::

        users = await (
            ModelQuery(User)
            .where(User.active.is_(True))
            .has("posts", ">=", 2)
            .with_("posts.comments", lambda q: q.where(Comment.approved.is_(True)))
            .with_count("posts")
            .all(session)
        )
    """

    __slots__ = ("_base", "model")

    def __init__(
        self,
        model: type[T],
        *,
        query: sa.Select[tuple[T]] | None = None,
        registry: Registry | None = None,
    ) -> None:
        if orm.DeclarativeBase in getattr(model, "__bases__", ()) or model is orm.DeclarativeBase:
            raise TypeError("model must not be orm.DeclarativeBase")

        super().__init__(registry)
        self.model = model
        self._base = query

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.model.__name__}>"

    @property
    def entity(self) -> type[orm.DeclarativeBase]:
        return self.model

    def statement(self) -> sa.Select[Any]:
        """Compile the base SELECT (without eager loads)."""
        stmt = self._base if self._base is not None else sa.select(self.model)

        if self._counts:
            stmt = stmt.add_columns(*(column for _, column in self._counts))
        if self._criteria is not None:
            stmt = stmt.where(self._criteria)
        if self._order_by:
            stmt = stmt.order_by(*self._order_by)
        if self._limit is not None:
            stmt = stmt.limit(self._limit)
        if self._offset is not None:
            stmt = stmt.offset(self._offset)

        return stmt

    async def all(self, session: AsyncSession) -> list[T]:
        """Run the base query, then every declared eager load.

        The eager-load plan is built and validated first, so an unknown
        relation path raises before the base query is sent.
        """
        plan = self._planner.plan() if self._planner is not None else None
        result = await session.execute(self.statement())

        counted: list[tuple[T, Any]] = []
        if self._counts:
            counted = [(row[0], row[1:]) for row in result.all()]
            entities = distinct(entity for entity, _ in counted)
        else:
            entities = list(unique_scalars(result))

        if plan:
            await EagerLoader(session).run(entities, plan)

        for entity, counts in counted:
            self._apply_counts(entity, counts)

        return entities

    async def first(self, session: AsyncSession) -> T | None:
        self._limit = 1
        entities = await self.all(session)
        return entities[0] if entities else None

    async def first_or_fail(self, session: AsyncSession) -> T:
        if (entity := await self.first(session)) is None:
            raise NotFoundError(f"No {self.model.__name__} matches the query")

        return entity
