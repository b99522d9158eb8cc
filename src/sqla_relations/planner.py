from __future__ import annotations

from collections import deque
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from typing import TYPE_CHECKING, Any

from sqlalchemy import orm

from .exceptions import ConfigurationError
from .existence import Constraint
from .registry import Registry


if TYPE_CHECKING:
    from .query import RelationQuery
    from .relations import Relation


@dataclass(slots=True, eq=False)
class EagerNode:
    """One relation of the eager-load tree.

    Children are keyed by relation name, so declaring the same path twice
    merges into one node and keeps both constraints.
    """

    segment: str
    path: str
    relation: Relation
    depth: int
    constraints: list[Constraint] = field(default_factory=list)
    children: dict[str, EagerNode] = field(default_factory=dict)
    query: RelationQuery[Any] | None = None

    def walk(self) -> Iterator[EagerNode]:
        yield self
        for child in self.children.values():
            yield from child.walk()


@dataclass(frozen=True, slots=True)
class PlanStep:
    depth: int
    path: str
    node: EagerNode


@dataclass(frozen=True, slots=True)
class QueryPlan:
    """Eager-load tree plus its breadth-first listing, for inspection and logs."""

    roots: Mapping[str, EagerNode]
    steps: tuple[PlanStep, ...]

    def __bool__(self) -> bool:
        return bool(self.roots)

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self) -> Iterator[PlanStep]:
        return iter(self.steps)

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(step.path for step in self.steps)


@lru_cache(maxsize=1028)
def _resolve_path(
    model: type[orm.DeclarativeBase], path: str, registry: Registry
) -> tuple[Relation, ...]:
    """Resolve a dotted relation path from *model* (cached)."""
    relations: list[Relation] = []
    current = model

    for segment in path.split("."):
        relation = registry.get(current).get(segment)
        if relation is None:
            raise ConfigurationError(
                f"No relation '{segment}' on {current.__name__} "
                f"(resolving '{path}' from {model.__name__})"
            )
        # key and target errors must surface before any statement is sent
        _ = relation.keys
        relations.append(relation)
        current = relation.target

    return tuple(relations)


def _graft(
    nodes: dict[str, EagerNode],
    model: type[orm.DeclarativeBase],
    paths: list[tuple[str, Constraint | None]],
    registry: Registry,
    *,
    depth: int,
    prefix: str,
) -> None:
    for path, constraint in paths:
        container = nodes
        node_path = prefix
        node: EagerNode | None = None

        for offset, relation in enumerate(_resolve_path(model, path, registry)):
            node_path = f"{node_path}.{relation.name}" if node_path else relation.name
            node = container.get(relation.name)
            if node is None:
                node = container[relation.name] = EagerNode(
                    relation.name, node_path, relation, depth + offset
                )
            container = node.children

        if node is not None and constraint is not None:
            node.constraints.append(constraint)


def _prepare(node: EagerNode, registry: Registry) -> None:
    from .query import RelationQuery

    query: RelationQuery[Any] = RelationQuery(node.relation, registry=registry)
    for constraint in node.constraints:
        constraint(query)

    # with_ calls made inside a constraint become children of this node
    if (nested := query.detach_planner()) is not None:
        _graft(
            node.children,
            node.relation.target,
            nested.paths,
            registry,
            depth=node.depth + 1,
            prefix=node.path,
        )

    node.query = query
    for child in node.children.values():
        _prepare(child, registry)


class Planner:
    """Collects eager-load paths and compiles them into a :class:`QueryPlan`.

    Every path segment is resolved and every constraint is applied when the
    plan is built, so configuration errors surface before the first query.
    """

    __slots__ = ("_paths", "model", "registry")

    def __init__(
        self, model: type[orm.DeclarativeBase], registry: Registry | None = None
    ) -> None:
        self.model = model
        self.registry = registry
        self._paths: list[tuple[str, Constraint | None]] = []

    def __bool__(self) -> bool:
        return bool(self._paths)

    @property
    def paths(self) -> list[tuple[str, Constraint | None]]:
        return list(self._paths)

    def add(self, path: str, constraint: Constraint | None = None) -> None:
        if not path or not all(path.split(".")):
            raise ConfigurationError(f"Invalid eager-load path {path!r}")

        self._paths.append((path, constraint))

    def merge(self, other: Planner) -> None:
        if other.model is not self.model:
            raise ConfigurationError(
                f"Cannot merge eager loads of {other.model.__name__} into {self.model.__name__}"
            )

        self._paths.extend(other._paths)

    def build(self) -> dict[str, EagerNode]:
        """Build the node tree, running every constraint once."""
        registry = self.registry if self.registry is not None else Registry()
        roots: dict[str, EagerNode] = {}

        _graft(roots, self.model, self._paths, registry, depth=1, prefix="")
        for node in roots.values():
            _prepare(node, registry)

        return roots

    def plan(self) -> QueryPlan:
        roots = self.build()
        steps: list[PlanStep] = []
        queue = deque(roots.values())

        while queue:
            node = queue.popleft()
            steps.append(PlanStep(node.depth, node.path, node))
            queue.extend(node.children.values())

        return QueryPlan(roots, tuple(steps))
