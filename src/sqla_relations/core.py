from __future__ import annotations

import sys
import warnings
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar


if sys.version_info >= (3, 11):
    from typing import Required, TypedDict, Unpack
else:
    from typing_extensions import Required, TypedDict, Unpack

import sqlalchemy as sa
from sqlalchemy import orm

from .existence import Constraint
from .planner import _resolve_path
from .query import ModelQuery, RelationQuery
from .registry import Registry


T = TypeVar("T", bound=orm.DeclarativeBase)


@dataclass(slots=True, frozen=True)
class _SelectParams(Generic[T]):
    __class_getitem__ = classmethod(lambda cls, *args: cls)

    model: type[T]
    loads: tuple[str, ...] = ()
    conditions: Mapping[str, Constraint] | None = field(default=None)
    counts: tuple[str, ...] = ()
    limit: int | None = field(default=None)
    query: sa.Select[tuple[T]] | None = field(default=None)
    registry: Registry | None = field(default=None)


class _SelectParamsType(TypedDict, Generic[T], total=False):
    model: Required[type[T]]
    loads: tuple[str, ...]
    conditions: Mapping[str, Constraint]
    counts: tuple[str, ...]
    limit: int | None
    query: sa.Select[tuple[T]]
    registry: Registry


def _node_constraint(condition: Constraint | None, limit: int | None) -> Constraint | None:
    if limit is None:
        return condition

    def constraint(query: RelationQuery[Any]) -> None:
        if query.relation.many:
            query.limit(limit)
        if condition is not None:
            condition(query)

    return constraint


def rel_select(**params: Unpack[_SelectParamsType[T]]) -> ModelQuery[T]:
    """Create a root query with eager-loaded relations and counts.

    Keyword counterpart of chaining :class:`ModelQuery` methods.

    Args:
        model: type[T]
            The model class to select from.
        loads: tuple[str, ...]
            Dotted relation paths to eager-load. Defaults to ().
        conditions: Mapping[str, Callable[[RelationQuery], Any]]
            Constraint callbacks keyed by a path listed in ``loads``.
            Defaults to None.
        counts: tuple[str, ...]
            Relation names to count, ``"name as alias"`` accepted.
            Defaults to ().
        limit: int | None
            Maximum related rows per parent for every to-many segment of
            every path. Defaults to None (no limit).
        query: sa.Select[tuple[T]]
            Existing select query to extend. Defaults to None.
        registry: Registry
            Registry to resolve relations with. Defaults to the singleton.

    Returns:
        A :class:`ModelQuery`; run it with ``await query.all(session)``.

    Examples:
        Basic usage with conditions::

            users = await rel_select(
                model=User,
                loads=("roles", "posts.comments"),
                conditions={"roles": add_conditions(Role.level > 3)},
                counts=("posts",),
                limit=10,
            ).all(session)
    """
    options = _SelectParams[T](**params)
    conditions = dict(options.conditions or {})
    builder: ModelQuery[T] = ModelQuery(options.model, query=options.query, registry=options.registry)

    for path in dict.fromkeys(options.loads):
        if options.limit is not None:
            # intermediate segments get the limit too
            head = path.split(".")
            for depth in range(1, len(head)):
                builder.with_(".".join(head[:depth]), _node_constraint(None, options.limit))
        builder.with_(path, _node_constraint(conditions.pop(path, None), options.limit))

    if conditions:
        warnings.warn(
            f"Conditions for paths not listed in loads are ignored: {sorted(conditions)}",
            stacklevel=2,
        )

    for name in options.counts:
        builder.with_count(name)

    return builder


def relations_cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for all internal caches."""
    from .tools import _get_primary_key, _get_table_name, _singular

    return {
        fn.__name__: fn.cache_info()
        for fn in (
            _resolve_path,
            _get_primary_key,
            _get_table_name,
            _singular,
        )
    }


def relations_cache_clear() -> None:
    """Clear all internal LRU caches."""
    from .tools import _get_primary_key, _get_table_name, _singular

    for fn in (
        _resolve_path,
        _get_primary_key,
        _get_table_name,
        _singular,
    ):
        fn.cache_clear()
