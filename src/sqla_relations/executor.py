from __future__ import annotations

import logging
import sys
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar, Union

import anyio
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from .existence import Constraint
from .planner import EagerNode, Planner, QueryPlan
from .registry import Registry
from .relations import ManyToMany
from .state import entity_state
from .tools import identity_of


if sys.version_info < (3, 11):
    from exceptiongroup import BaseExceptionGroup

logger = logging.getLogger(__name__)

_E = TypeVar("_E")

Execute = Callable[[sa.Executable], Awaitable[sa.Result[Any]]]
RelationSpec = Union[str, Sequence[str], Mapping[str, Union[Constraint, None]]]


@dataclass(frozen=True, slots=True)
class RelatedRow:
    """One fetched related entity with the owner key it belongs to."""

    key: Any
    entity: Any
    pivot: dict[str, Any] | None = None
    counts: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class _Staged:
    node: EagerNode
    parents: list[Any]
    rows: list[RelatedRow]


def distinct(entities: Iterable[_E]) -> list[_E]:
    """Drop repeated entities (by identity), keeping first-seen order."""
    seen: set[tuple[Any, ...]] = set()
    result: list[_E] = []
    for entity in entities:
        identity = (type(entity), *identity_of(entity))
        if identity not in seen:
            seen.add(identity)
            result.append(entity)

    return result


def _single_error(group: BaseExceptionGroup[BaseException]) -> BaseException | None:
    error: BaseException = group
    while isinstance(error, BaseExceptionGroup) and len(error.exceptions) == 1:
        error = error.exceptions[0]

    return None if isinstance(error, BaseExceptionGroup) else error


class EagerLoader:
    """Runs a :class:`QueryPlan` over a batch of parent entities.

    Each plan node becomes one task issuing a single batched query for all
    parents at that level; sibling nodes run concurrently and a node's
    children start once its rows are in. Statements share the one session,
    so they are serialized by a lock.

    Results are staged and only stitched onto the entities after the whole
    tree has loaded: if any query fails, no relation, count or pivot data is
    written and the first error propagates unchanged.
    """

    __slots__ = ("_lock", "_staged", "session")

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self._lock = anyio.Lock()
        self._staged: list[_Staged] = []

    async def run(self, parents: Sequence[Any], plan: QueryPlan) -> None:
        parents = distinct(parents)
        if not parents or not plan:
            return

        logger.debug(
            "Eager loading %s for %d %s entities",
            plan.paths,
            len(parents),
            type(parents[0]).__name__,
        )
        self._staged = []
        try:
            async with anyio.create_task_group() as tg:
                for node in plan.roots.values():
                    tg.start_soon(self._load, node, parents)
        except BaseExceptionGroup as group:
            if (error := _single_error(group)) is None:
                raise
            raise error from error.__cause__

        staged, self._staged = self._staged, []
        for item in staged:
            _stitch(item)

    async def _load(self, node: EagerNode, parents: list[Any]) -> None:
        assert node.query is not None
        keys = node.relation.owner_values(parents)
        rows = await node.query.rows(self.session, keys, execute=self._execute) if keys else []

        self._staged.append(_Staged(node, parents, rows))
        logger.debug("Loaded %d row(s) for %s from %d key(s)", len(rows), node.path, len(keys))

        if not node.children or not rows:
            return

        children = distinct(row.entity for row in rows)
        async with anyio.create_task_group() as tg:
            for child in node.children.values():
                tg.start_soon(self._load, child, children)

    async def _execute(self, statement: sa.Executable) -> sa.Result[Any]:
        async with self._lock:
            return await self.session.execute(statement)


def _stitch(staged: _Staged) -> None:
    relation = staged.node.relation
    groups: dict[Any, list[RelatedRow]] = {}
    for row in staged.rows:
        groups.setdefault(row.key, []).append(row)
        if row.counts:
            entity_state(row.entity).meta.update(row.counts)

    local_key = relation.keys.local_key
    with_pivot = isinstance(relation, ManyToMany)

    for parent in staged.parents:
        matched = groups.get(getattr(parent, local_key), [])
        state = entity_state(parent)
        if relation.many:
            state.relations[relation.name] = [row.entity for row in matched]
        else:
            state.relations[relation.name] = matched[0].entity if matched else None
        if with_pivot:
            state.pivots[relation.name] = {
                identity_of(row.entity): row.pivot for row in matched if row.pivot is not None
            }


async def load(
    session: AsyncSession,
    entities: Any,
    relations: RelationSpec,
    constraint: Constraint | None = None,
    *,
    registry: Registry | None = None,
) -> None:
    """Eager-load *relations* onto already fetched entities.

    Args:
        session: Session to run the batched queries on.
        entities: One entity or an iterable of entities of the same model.
        relations: A dotted path, a sequence of paths, or a mapping of path
            to constraint (or ``None``).
        constraint: Constraint for a single path given as a string.
        registry: Registry to resolve paths with; the global one by default.

    Example:
        >>> await load(session, users, {"posts": lambda q: q.limit(3), "roles": None})
    """
    batch = [entities] if sa.inspect(entities, raiseerr=False) is not None else list(entities)
    if not batch:
        return

    planner = Planner(type(batch[0]), registry)
    if isinstance(relations, str):
        planner.add(relations, constraint)
    elif constraint is not None:
        raise ValueError("A single constraint applies to a single path; use a mapping instead")
    elif isinstance(relations, Mapping):
        for path, value in relations.items():
            planner.add(path, value)
    else:
        for path in relations:
            planner.add(path)

    await EagerLoader(session).run(batch, planner.plan())
