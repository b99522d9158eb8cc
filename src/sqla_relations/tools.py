from __future__ import annotations

import operator as _op
from collections.abc import Callable, Sequence
from functools import lru_cache
from typing import Any, Final, TypeVar

import sqlalchemy as sa
from sqlalchemy import orm

from .exceptions import ConfigurationError


T = TypeVar("T", bound=orm.DeclarativeBase)
_R = TypeVar("_R")

_OPERATORS: Final[dict[str, Callable[[Any, Any], Any]]] = {
    "=": _op.eq,
    "==": _op.eq,
    "!=": _op.ne,
    "<>": _op.ne,
    "<": _op.lt,
    "<=": _op.le,
    ">": _op.gt,
    ">=": _op.ge,
}

_IRREGULAR: Final[dict[str, str]] = {
    "people": "person",
    "men": "man",
    "women": "woman",
    "children": "child",
    "mice": "mouse",
    "geese": "goose",
    "feet": "foot",
    "teeth": "tooth",
    "movies": "movie",
    "series": "series",
    "species": "species",
    "news": "news",
}
_ES_SUFFIXES: Final[tuple[str, ...]] = ("sses", "shes", "ches", "xes", "zzes")


def unique_scalars(result: sa.Result[tuple[_R]]) -> Sequence[_R]:
    """Shorthand for ``result.unique().scalars().all()``."""
    return result.unique().scalars().all()


@lru_cache
def _get_primary_key(model: type[T]) -> sa.ColumnElement[Any]:
    """Return the first primary-key column element for *model* (cached)."""
    return next(iter(model.__table__.primary_key))


@lru_cache
def _get_table_name(model: type[T]) -> str:
    """Return the table name for *model*, preferring ``__tablename__`` (cached)."""
    result = getattr(
        model,
        "__tablename__",
        model.__table__.description,
    )
    if not result:
        raise ValueError(f"Cannot determine tablename for {model}")

    return result


@lru_cache(maxsize=512)
def _singular(word: str) -> str:
    head, sep, tail = word.rpartition("_")
    lowered = tail.lower()

    if lowered in _IRREGULAR:
        single = _IRREGULAR[lowered]
    elif lowered.endswith("ies") and len(lowered) > 3:  # noqa: PLR2004
        single = tail[:-3] + "y"
    elif lowered.endswith(_ES_SUFFIXES):
        single = tail[:-2]
    elif lowered.endswith(("ss", "us", "is")):
        single = tail
    elif lowered.endswith("s") and len(lowered) > 1:
        single = tail[:-1]
    else:
        single = tail

    return f"{head}{sep}{single}"


def get_table_name(model: type[T]) -> str:
    """Get the table name for a SQLAlchemy model.

    Args:
        model: SQLAlchemy model class.

    Returns:
        The table name as a string.

    Raises:
        ValueError: If the table name cannot be determined.
    """
    return _get_table_name(model)


def get_primary_key(model: type[T]) -> sa.ColumnElement[Any]:
    """Get the primary key column for a SQLAlchemy model.

    Args:
        model: SQLAlchemy model class.

    Returns:
        The primary key column element.
    """
    return _get_primary_key(model)


def singular(word: str) -> str:
    """Singularize a table name the way default relation keys expect.

    Only the last ``_``-separated part is inflected, so ``user_roles``
    becomes ``user_role`` and ``categories`` becomes ``category``.
    """
    return _singular(word)


def default_key(model: type[T]) -> str:
    """Return ``singular(table) + "_" + primary_key`` for *model*.

    Example:
        >>> default_key(User)  # table "users", primary key "id"
        'user_id'
    """
    return f"{singular(get_table_name(model))}_{get_primary_key(model).key}"


def column_keys(model: type[T]) -> frozenset[str]:
    """Return the mapped column attribute keys of *model*."""
    return frozenset(attr.key for attr in sa.inspect(model).column_attrs)


def require_column(model: type[T], key: str, *, role: str) -> str:
    """Check that *key* is a mapped column on *model* and return it.

    Raises:
        ConfigurationError: If the column does not exist.
    """
    if key not in column_keys(model):
        raise ConfigurationError(
            f"{role} {key!r} is not a column of {model.__name__} "
            f"(available: {sorted(column_keys(model))})"
        )

    return key


def identity_of(entity: Any) -> tuple[Any, ...]:
    """Return the primary-key identity of a persisted *entity*.

    Falls back to the Python object id for transient instances so they can
    still be de-duplicated.
    """
    identity = sa.inspect(entity).identity
    return identity if identity is not None else (id(entity),)


def compare(left: Any, operator: str, right: Any) -> sa.ColumnElement[bool]:
    """Build ``left <operator> right`` from a textual operator.

    Raises:
        ValueError: If *operator* is not supported.
    """
    try:
        fn = _OPERATORS[operator]
    except KeyError:
        raise ValueError(
            f"Unsupported operator {operator!r}; expected one of {sorted(_OPERATORS)}"
        ) from None

    return fn(left, right)


def add_conditions(
    *conditions: sa.ColumnExpressionArgument[bool],
) -> Callable[[Any], Any]:
    """Create a constraint callback that adds WHERE conditions to a builder.

    The returned callable works for relation builders (eager-load and
    existence constraints) as well as plain ``sa.Select`` objects.

    Args:
        *conditions: SQLAlchemy column expressions that evaluate to boolean.

    Example:
        >>> query = rel_select(
        ...     model=User,
        ...     loads=("roles",),
        ...     conditions={"roles": add_conditions(Role.level > 3)},
        ... )
    """

    def _add(query: Any) -> Any:
        return query.where(*conditions)

    return _add
