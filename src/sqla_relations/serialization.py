from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Final

import sqlalchemy as sa

from .state import peek_state
from .tools import identity_of


META_KEY: Final[str] = "__meta__"
PIVOT_KEY: Final[str] = "__pivot__"


def serialize(entity: Any) -> dict[str, Any]:
    """Convert *entity* and its loaded relations to plain dicts and lists.

    Only column attributes already loaded on the instance are included, so
    serializing never triggers a query. Loaded relations are nested under
    their names, ``with_count`` values under ``__meta__`` and, for
    many-to-many members, the joining pivot row under ``__pivot__``. An
    entity reached again through its own relations is emitted with its
    columns only.
    """
    return _serialize(entity, frozenset())


def _serialize(entity: Any, seen: frozenset[int]) -> dict[str, Any]:
    state = sa.inspect(entity)
    data = {
        attr.key: state.dict[attr.key]
        for attr in state.mapper.column_attrs
        if attr.key in state.dict
    }

    relation_state = peek_state(entity)
    if relation_state is None or id(entity) in seen:
        return data

    seen = seen | {id(entity)}
    for name, value in relation_state.relations.items():
        pivots = relation_state.pivots.get(name)
        if value is None:
            data[name] = None
        elif isinstance(value, list):
            data[name] = [_member(item, pivots, seen) for item in value]
        else:
            data[name] = _member(value, pivots, seen)

    if relation_state.meta:
        data[META_KEY] = dict(relation_state.meta)

    return data


def _member(
    entity: Any,
    pivots: Mapping[tuple[Any, ...], Mapping[str, Any]] | None,
    seen: frozenset[int],
) -> dict[str, Any]:
    data = _serialize(entity, seen)
    if pivots is not None and (pivot := pivots.get(identity_of(entity))) is not None:
        data[PIVOT_KEY] = dict(pivot)

    return data
