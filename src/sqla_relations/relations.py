from __future__ import annotations

import copy
import logging
import sys
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import TYPE_CHECKING, Any, ClassVar, Final, Union


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

import sqlalchemy as sa
from sqlalchemy import orm

from .exceptions import ConfigurationError
from .registry import Registry
from .tools import default_key, get_primary_key, get_table_name, require_column, singular


if TYPE_CHECKING:
    from .query import RelationQuery

logger = logging.getLogger(__name__)

ModelRef = Union[type[orm.DeclarativeBase], str]

GROUP_KEY: Final[str] = "_rel_key"
PIVOT_PREFIX: Final[str] = "_pivot_"
PIVOT_CREATED_AT: Final[str] = "created_at"
PIVOT_UPDATED_AT: Final[str] = "updated_at"


class RelationKind(str, Enum):
    ONE_TO_ONE = "one_to_one"
    ONE_TO_MANY = "one_to_many"
    INVERSE_ONE_TO_ONE = "inverse_one_to_one"
    MANY_TO_MANY = "many_to_many"
    INDIRECT = "indirect"


@dataclass(frozen=True, slots=True)
class RelationKeys:
    """Fully resolved join keys of one relation.

    ``local_key`` is always an attribute of the owner entity; the values the
    executor batches on are read from it. The remaining fields depend on the
    relation kind.
    """

    local_key: str
    foreign_key: str
    pivot_table: str | None = None
    related_foreign_key: str | None = None
    related_local_key: str | None = None
    pivot_fields: tuple[str, ...] = ()
    pivot_timestamps: bool = False
    through: str | None = None


class Relation:
    """Descriptor declaring one association of the owning model.

    Assigned as a class attribute of a mapped model; the owner and the
    relation name come from ``__set_name__``. Keys are resolved on first use
    and cached, so configuration errors surface before any statement is
    issued.

    Accessing the descriptor on an instance returns a callable producing a
    :class:`~sqla_relations.query.RelationQuery` scoped to that instance::

        posts = await user.posts().where(Post.title.like("%sql%")).fetch(session)
    """

    kind: ClassVar[RelationKind]
    many: ClassVar[bool]

    def __init__(
        self,
        related: ModelRef,
        *,
        local_key: str | None = None,
        foreign_key: str | None = None,
    ) -> None:
        self._related = related
        self._local_key = local_key
        self._foreign_key = foreign_key
        self.owner: type[orm.DeclarativeBase] | None = None
        self.name = ""
        self._keys: RelationKeys | None = None

    def __set_name__(self, owner: type[orm.DeclarativeBase], name: str) -> None:
        self.owner = owner
        self.name = name
        self._keys = None

    def __get__(self, instance: Any, owner: type[Any] | None = None) -> Any:
        if instance is None:
            return self

        return partial(self.query, instance)

    def __repr__(self) -> str:
        owner = self.owner.__name__ if self.owner is not None else "?"
        related = self._related if isinstance(self._related, str) else self._related.__name__
        return f"<{type(self).__name__} {owner}.{self.name or '?'} -> {related}>"

    @property
    def related(self) -> type[orm.DeclarativeBase]:
        """The related model class, resolving string references via the registry."""
        if isinstance(self._related, str):
            return Registry().model(self._related)

        return self._related

    @property
    def target(self) -> type[orm.DeclarativeBase]:
        """The model whose entities this relation yields."""
        return self.related

    @property
    def keys(self) -> RelationKeys:
        if self._keys is None:
            self._keys = self.resolve_keys()

        return self._keys

    def resolve_keys(self) -> RelationKeys:
        """Resolve join keys, applying defaults for every key the caller omitted.

        Raises:
            ConfigurationError: If the descriptor is not attached to a model,
                the related model cannot be resolved, or a key names a
                column that does not exist.
        """
        if self.owner is None:
            raise ConfigurationError(f"{self!r} is not assigned to a model class")

        keys = self._resolve(self.owner, self.related)
        logger.debug("Resolved keys for %r: %s", self, keys)

        return keys

    def query(self, instance: Any = None) -> RelationQuery[Any]:
        """Return a new builder for this relation, scoped to *instance* if given."""
        from .query import RelationQuery

        return RelationQuery(self, instance)

    def owner_values(self, entities: Iterable[Any]) -> list[Any]:
        """Distinct non-NULL local key values across *entities*, in first-seen order."""
        key = self.keys.local_key
        values = (getattr(entity, key) for entity in entities)

        return list(dict.fromkeys(value for value in values if value is not None))

    def base_select(self) -> sa.Select[Any]:
        """``SELECT target, <group key>`` before any scoping or user criteria."""
        return self.joined(self.target, self.group_column().label(GROUP_KEY))

    def joined(self, *columns: Any) -> sa.Select[Any]:
        """``SELECT <columns> FROM target`` plus any table the join keys live on."""
        return sa.select(*columns).select_from(self.target)

    def group_column(self) -> sa.ColumnElement[Any]:
        """Column whose values equal the owner's local key for a matching row."""
        raise NotImplementedError

    def correlate(self, owner_ref: Any, *columns: Any) -> tuple[sa.Select[Any], Any]:
        """Build ``SELECT <columns> FROM related WHERE <join condition>``.

        The join condition references *owner_ref* (a model class or alias)
        so the statement can be embedded as a correlated subquery. Returns
        the statement and the entity used for the related side, which is an
        alias when the relation is self-referential.
        """
        raise NotImplementedError

    def _resolve(
        self, owner: type[orm.DeclarativeBase], related: type[orm.DeclarativeBase]
    ) -> RelationKeys:
        raise NotImplementedError

    def _target_ref(self, owner_ref: Any) -> Any:
        target = self.target
        if sa.inspect(owner_ref).mapper.local_table is sa.inspect(target).local_table:
            return orm.aliased(target, name=f"{get_table_name(target)}_{self.name}")

        return target


class _HasRelated(Relation):
    def _resolve(
        self, owner: type[orm.DeclarativeBase], related: type[orm.DeclarativeBase]
    ) -> RelationKeys:
        local_key = self._local_key or get_primary_key(owner).key
        foreign_key = self._foreign_key or default_key(owner)

        return RelationKeys(
            local_key=require_column(owner, local_key, role="local key"),
            foreign_key=require_column(related, foreign_key, role="foreign key"),
        )

    def group_column(self) -> sa.ColumnElement[Any]:
        return getattr(self.target, self.keys.foreign_key)

    def correlate(self, owner_ref: Any, *columns: Any) -> tuple[sa.Select[Any], Any]:
        ref = self._target_ref(owner_ref)
        keys = self.keys
        stmt = (
            sa.select(*columns)
            .select_from(ref)
            .where(getattr(ref, keys.foreign_key) == getattr(owner_ref, keys.local_key))
        )

        return stmt, ref

    def bind(self, owner: Any, entity: Any) -> None:
        """Point *entity*'s foreign key at *owner*."""
        setattr(entity, self.keys.foreign_key, getattr(owner, self.keys.local_key))


class OneToOne(_HasRelated):
    kind = RelationKind.ONE_TO_ONE
    many = False


class OneToMany(_HasRelated):
    kind = RelationKind.ONE_TO_MANY
    many = True


class InverseOneToOne(Relation):
    """The side of a one-to-one or one-to-many that holds the foreign key."""

    kind = RelationKind.INVERSE_ONE_TO_ONE
    many = False

    def _resolve(
        self, owner: type[orm.DeclarativeBase], related: type[orm.DeclarativeBase]
    ) -> RelationKeys:
        local_key = self._local_key or default_key(related)
        foreign_key = self._foreign_key or get_primary_key(related).key

        return RelationKeys(
            local_key=require_column(owner, local_key, role="local key"),
            foreign_key=require_column(related, foreign_key, role="foreign key"),
        )

    def group_column(self) -> sa.ColumnElement[Any]:
        return getattr(self.target, self.keys.foreign_key)

    def correlate(self, owner_ref: Any, *columns: Any) -> tuple[sa.Select[Any], Any]:
        ref = self._target_ref(owner_ref)
        keys = self.keys
        stmt = (
            sa.select(*columns)
            .select_from(ref)
            .where(getattr(ref, keys.foreign_key) == getattr(owner_ref, keys.local_key))
        )

        return stmt, ref


class ManyToMany(Relation):
    """Association realized through a pivot table.

    Definition-time options return a configured copy, so a declared
    descriptor never changes after it is assigned::

        roles = many_to_many("Role").with_pivot("granted_by").with_timestamps()
    """

    kind = RelationKind.MANY_TO_MANY
    many = True

    def __init__(
        self,
        related: ModelRef,
        foreign_key: str | None = None,
        related_foreign_key: str | None = None,
        local_key: str | None = None,
        related_local_key: str | None = None,
        *,
        pivot_table: str | None = None,
        pivot_fields: Sequence[str] = (),
        pivot_timestamps: bool = False,
        pivot_model: ModelRef | None = None,
    ) -> None:
        super().__init__(related, local_key=local_key, foreign_key=foreign_key)
        self._related_foreign_key = related_foreign_key
        self._related_local_key = related_local_key
        self._pivot_table_name = pivot_table
        self._pivot_fields = tuple(pivot_fields)
        self._pivot_timestamps = pivot_timestamps
        self._pivot_model = pivot_model
        self._pivot: sa.TableClause | None = None

    def __set_name__(self, owner: type[orm.DeclarativeBase], name: str) -> None:
        super().__set_name__(owner, name)
        self._pivot = None

    def with_pivot(self, *fields: str) -> Self:
        """Return a copy that also projects the extra pivot columns *fields*."""
        return self._copy(_pivot_fields=(*self._pivot_fields, *fields))

    def with_timestamps(self) -> Self:
        """Return a copy that fills ``created_at``/``updated_at`` on attach."""
        return self._copy(_pivot_timestamps=True)

    def pivot_table(self, name: str) -> Self:
        """Return a copy using *name* instead of the derived pivot table name."""
        return self._copy(_pivot_table_name=name)

    def pivot_model(self, model: ModelRef) -> Self:
        """Return a copy delegating pivot rows to the mapped class *model*."""
        return self._copy(_pivot_model=model)

    @property
    def pivot_entity(self) -> type[orm.DeclarativeBase] | None:
        """The pivot model class, if pivot rows are delegated to one."""
        if isinstance(self._pivot_model, str):
            return Registry().model(self._pivot_model)

        return self._pivot_model

    @property
    def pivot(self) -> sa.TableClause:
        """The pivot table.

        Preference order: the pivot model's table, a table of that name in
        the owner's metadata, then a lightweight ``sa.table()`` clause built
        from the known pivot columns.
        """
        if self._pivot is None:
            keys = self.keys
            assert keys.pivot_table is not None
            if (model := self.pivot_entity) is not None:
                self._pivot = model.__table__
            elif (table := self._metadata_table(keys.pivot_table)) is not None:
                self._pivot = table
            else:
                self._pivot = sa.table(
                    keys.pivot_table,
                    *(sa.column(name) for name in self.pivot_columns()),
                )

        return self._pivot

    def pivot_columns(self) -> tuple[str, ...]:
        """Pivot columns projected by default: both foreign keys, extras, timestamps."""
        keys = self.keys
        assert keys.related_foreign_key is not None
        timestamps = (PIVOT_CREATED_AT, PIVOT_UPDATED_AT) if keys.pivot_timestamps else ()

        return tuple(
            dict.fromkeys((keys.foreign_key, keys.related_foreign_key, *keys.pivot_fields, *timestamps))
        )

    def pivot_column(self, name: str) -> sa.ColumnElement[Any]:
        """Column *name* of the pivot table.

        Raises:
            ConfigurationError: If the pivot table has no such column.
        """
        pivot = self.pivot
        if name not in pivot.c:
            raise ConfigurationError(
                f"{self!r}: pivot table {pivot.name!r} has no column {name!r}"
                f" (available: {', '.join(pivot.c.keys())})"
            )

        return pivot.c[name]

    def group_column(self) -> sa.ColumnElement[Any]:
        return self.pivot.c[self.keys.foreign_key]

    def joined(self, *columns: Any) -> sa.Select[Any]:
        keys = self.keys
        pivot = self.pivot
        target = self.target

        return (
            sa.select(*columns)
            .select_from(target)
            .join(pivot, pivot.c[keys.related_foreign_key] == getattr(target, keys.related_local_key))
        )

    def correlate(self, owner_ref: Any, *columns: Any) -> tuple[sa.Select[Any], Any]:
        ref = self._target_ref(owner_ref)
        keys = self.keys
        pivot = self.pivot
        stmt = (
            sa.select(*columns)
            .select_from(pivot)
            .join(ref, pivot.c[keys.related_foreign_key] == getattr(ref, keys.related_local_key))
            .where(pivot.c[keys.foreign_key] == getattr(owner_ref, keys.local_key))
        )

        return stmt, ref

    def _resolve(
        self, owner: type[orm.DeclarativeBase], related: type[orm.DeclarativeBase]
    ) -> RelationKeys:
        if self._pivot_model is not None and (
            self._pivot_table_name is not None or self._pivot_timestamps
        ):
            raise ConfigurationError(
                f"{self!r}: pivot_model owns the pivot table name and timestamps; "
                "it cannot be combined with pivot_table or pivot timestamps"
            )

        local_key = self._local_key or get_primary_key(owner).key
        related_local_key = self._related_local_key or get_primary_key(related).key
        foreign_key = self._foreign_key or default_key(owner)
        related_foreign_key = self._related_foreign_key or default_key(related)
        if foreign_key == related_foreign_key:
            raise ConfigurationError(
                f"{self!r}: both pivot foreign keys are {foreign_key!r}; "
                "pass foreign_key/related_foreign_key explicitly"
            )

        if (model := self.pivot_entity) is not None:
            pivot_table = get_table_name(model)
        else:
            pivot_table = self._pivot_table_name or "_".join(
                sorted((singular(get_table_name(owner)), singular(get_table_name(related))))
            )

        keys = RelationKeys(
            local_key=require_column(owner, local_key, role="local key"),
            foreign_key=foreign_key,
            pivot_table=pivot_table,
            related_foreign_key=related_foreign_key,
            related_local_key=require_column(related, related_local_key, role="related local key"),
            pivot_fields=self._pivot_fields,
            pivot_timestamps=self._pivot_timestamps,
        )

        table = model.__table__ if model is not None else self._metadata_table(pivot_table)
        if table is not None:
            wanted = (foreign_key, related_foreign_key, *self._pivot_fields)
            if missing := [name for name in wanted if name not in table.c]:
                raise ConfigurationError(
                    f"{self!r}: pivot table {pivot_table!r} has no column(s) {missing}"
                )

        return keys

    def _metadata_table(self, name: str) -> sa.Table | None:
        assert self.owner is not None
        return self.owner.metadata.tables.get(name)

    def _copy(self, **changes: Any) -> Self:
        clone = copy.copy(self)
        for attr, value in changes.items():
            setattr(clone, attr, value)
        clone._keys = None
        clone._pivot = None

        return clone


class Indirect(Relation):
    """Relation composed of a hop to an intermediate model and one of its relations.

    ``related`` is the intermediate model and ``through`` names a direct
    relation declared on it; the entities yielded are that relation's
    targets. ``local_key``/``foreign_key`` describe the first hop and
    default like :func:`one_to_many`::

        class Country(Base):
            posts = indirect("User", "posts")  # countries -> users -> posts
    """

    kind = RelationKind.INDIRECT
    many = True

    def __init__(
        self,
        related: ModelRef,
        through: str,
        *,
        local_key: str | None = None,
        foreign_key: str | None = None,
    ) -> None:
        super().__init__(related, local_key=local_key, foreign_key=foreign_key)
        self._through = through
        self._intermediate: Any = None

    def __set_name__(self, owner: type[orm.DeclarativeBase], name: str) -> None:
        super().__set_name__(owner, name)
        self._intermediate = None

    @property
    def through_relation(self) -> Relation:
        """The relation on the intermediate model that yields the final rows.

        Raises:
            ConfigurationError: If it does not exist or is itself indirect.
        """
        intermediate = self.related
        try:
            through = Registry().relation(intermediate, self._through)
        except ConfigurationError as exc:
            raise ConfigurationError(f"{self!r}: unresolved through relation: {exc}") from exc

        if isinstance(through, Indirect):
            raise ConfigurationError(
                f"{self!r}: through relation {through!r} must be a direct relation"
            )

        return through

    @property
    def target(self) -> type[orm.DeclarativeBase]:
        return self.through_relation.target

    @property
    def intermediate(self) -> Any:
        """Alias of the intermediate model joined by the fetch statement."""
        if self._intermediate is None:
            self._intermediate = orm.aliased(
                self.related, name=f"{get_table_name(self.related)}_{self.name}"
            )

        return self._intermediate

    def group_column(self) -> sa.ColumnElement[Any]:
        return getattr(self.intermediate, self.keys.foreign_key)

    def joined(self, *columns: Any) -> sa.Select[Any]:
        through = self.through_relation
        intermediate = self.intermediate

        return through.joined(*columns).join(
            intermediate, getattr(intermediate, through.keys.local_key) == through.group_column()
        )

    def correlate(self, owner_ref: Any, *columns: Any) -> tuple[sa.Select[Any], Any]:
        intermediate = orm.aliased(self.related, name=f"{get_table_name(self.related)}_{self.name}")
        stmt, ref = self.through_relation.correlate(intermediate, *columns)
        first = self.keys
        stmt = stmt.where(
            getattr(intermediate, first.foreign_key) == getattr(owner_ref, first.local_key)
        )

        return stmt, ref

    def _resolve(
        self, owner: type[orm.DeclarativeBase], related: type[orm.DeclarativeBase]
    ) -> RelationKeys:
        through = self.through_relation
        local_key = self._local_key or get_primary_key(owner).key
        foreign_key = self._foreign_key or default_key(owner)
        # resolve the second hop now so its errors also surface at first use
        _ = through.keys

        return RelationKeys(
            local_key=require_column(owner, local_key, role="local key"),
            foreign_key=require_column(related, foreign_key, role="foreign key"),
            through=self._through,
        )


def one_to_one(
    related: ModelRef,
    local_key: str | None = None,
    foreign_key: str | None = None,
) -> OneToOne:
    """Declare a one-to-one relation whose foreign key lives on *related*."""
    return OneToOne(related, local_key=local_key, foreign_key=foreign_key)


def one_to_many(
    related: ModelRef,
    local_key: str | None = None,
    foreign_key: str | None = None,
) -> OneToMany:
    """Declare a one-to-many relation whose foreign key lives on *related*."""
    return OneToMany(related, local_key=local_key, foreign_key=foreign_key)


def inverse_one_to_one(
    related: ModelRef,
    local_key: str | None = None,
    foreign_key: str | None = None,
) -> InverseOneToOne:
    """Declare the owning side of a one-to-one/one-to-many (foreign key on the owner)."""
    return InverseOneToOne(related, local_key=local_key, foreign_key=foreign_key)


def many_to_many(
    related: ModelRef,
    foreign_key: str | None = None,
    related_foreign_key: str | None = None,
    local_key: str | None = None,
    related_local_key: str | None = None,
    *,
    pivot_table: str | None = None,
    pivot_fields: Sequence[str] = (),
    pivot_timestamps: bool = False,
    pivot_model: ModelRef | None = None,
) -> ManyToMany:
    """Declare a many-to-many relation through a pivot table.

    Args:
        related: Related model class or class name.
        foreign_key: Pivot column referencing the owner.
        related_foreign_key: Pivot column referencing the related model.
        local_key: Owner column referenced by ``foreign_key``.
        related_local_key: Related column referenced by ``related_foreign_key``.
        pivot_table: Pivot table name; derived from both table names if omitted.
        pivot_fields: Extra pivot columns loaded with every fetch.
        pivot_timestamps: Fill ``created_at``/``updated_at`` on attach.
        pivot_model: Mapped class owning the pivot rows. Excludes
            ``pivot_table`` and ``pivot_timestamps``.
    """
    return ManyToMany(
        related,
        foreign_key,
        related_foreign_key,
        local_key,
        related_local_key,
        pivot_table=pivot_table,
        pivot_fields=pivot_fields,
        pivot_timestamps=pivot_timestamps,
        pivot_model=pivot_model,
    )


def indirect(
    related: ModelRef,
    through: str,
    local_key: str | None = None,
    foreign_key: str | None = None,
) -> Indirect:
    """Declare a relation reaching *through*'s targets via the intermediate *related*."""
    return Indirect(related, through, local_key=local_key, foreign_key=foreign_key)
