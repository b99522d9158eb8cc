from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Final

from .tools import identity_of


STATE_KEY: Final[str] = "_sqla_relations_state"


@dataclass(slots=True)
class EntityState:
    """Relation data attached to one entity instance.

    Lives in the instance ``__dict__`` next to SQLAlchemy's own state and is
    never a mapped attribute, so flushes and refreshes leave it alone.
    """

    relations: dict[str, Any] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)
    pivots: dict[str, dict[tuple[Any, ...], dict[str, Any]]] = field(default_factory=dict)


def entity_state(entity: Any) -> EntityState:
    """Return the relation state of *entity*, creating it on first use."""
    state: EntityState | None = entity.__dict__.get(STATE_KEY)
    if state is None:
        state = entity.__dict__[STATE_KEY] = EntityState()

    return state


def peek_state(entity: Any) -> EntityState | None:
    return entity.__dict__.get(STATE_KEY)


def is_loaded(entity: Any, name: str) -> bool:
    """Return whether relation *name* has been loaded onto *entity*."""
    state = peek_state(entity)
    return state is not None and name in state.relations


def get_related(entity: Any, name: str) -> Any:
    """Return the loaded value of relation *name* on *entity*.

    Returns the related entity (or ``None``) for to-one relations and a list
    for to-many relations.

    Raises:
        AttributeError: If the relation was not eager-loaded. Relations are
            never fetched implicitly on attribute access.
    """
    state = peek_state(entity)
    if state is None or name not in state.relations:
        raise AttributeError(
            f"Relation '{name}' was not loaded on {type(entity).__name__}. "
            f"Use with_('{name}') or load(session, entity, '{name}') first."
        )

    return state.relations[name]


def get_meta(entity: Any) -> Mapping[str, Any]:
    """Return the ``__meta__`` bucket (``with_count`` values) of *entity*."""
    state = peek_state(entity)
    return dict(state.meta) if state is not None else {}


def get_pivot(owner: Any, name: str, related: Any) -> Mapping[str, Any]:
    """Return the pivot row joining *owner* to *related* through relation *name*.

    Raises:
        KeyError: If no pivot data was loaded for that pair.
    """
    state = peek_state(owner)
    pivots = state.pivots.get(name, {}) if state is not None else {}
    return pivots[identity_of(related)]
