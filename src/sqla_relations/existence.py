"""Correlated ``EXISTS`` / ``COUNT(*)`` subqueries for relation predicates."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Final

import sqlalchemy as sa
from sqlalchemy.sql.util import ClauseAdapter

from .tools import compare


if TYPE_CHECKING:
    from .query import RelationQuery
    from .relations import Relation

DEFAULT_HAS_OPERATOR: Final[str] = ">="
DEFAULT_HAS_COUNT: Final[int] = 1
DEFAULT_COUNT_SUFFIX: Final[str] = "_count"

Constraint = Callable[["RelationQuery[Any]"], Any]


def _constrained(
    relation: Relation,
    owner_ref: Any,
    columns: tuple[Any, ...],
    constraint: Constraint | None,
) -> sa.Select[Any]:
    stmt, ref = relation.correlate(owner_ref, *columns)

    if constraint is not None:
        builder = relation.query()
        constraint(builder)
        if (criteria := builder.criteria) is not None:
            if ref is not relation.target:
                # self-referential: criteria were written against the model, not the alias
                target_table = sa.inspect(relation.target).local_table
                alias_sel = sa.inspect(ref).selectable
                adapter = ClauseAdapter(
                    alias_sel,
                    equivalents={col: {alias_sel.c[col.key]} for col in target_table.c},
                )
                criteria = adapter.traverse(criteria)
            stmt = stmt.where(criteria)

    return stmt.correlate(owner_ref)


def compile_has(
    owner_ref: Any,
    relation: Relation,
    *,
    constraint: Constraint | None = None,
    operator: str | None = None,
    count: int | None = None,
    negate: bool = False,
) -> sa.ColumnElement[bool]:
    """Compile a ``has``-style predicate for *relation* relative to *owner_ref*.

    Without *operator* and *count* the predicate is ``EXISTS (SELECT 1 ...)``.
    With either one it becomes ``(SELECT COUNT(*) ...) <operator> <count>``,
    defaulting to ``>= 1``. *negate* wraps the result in ``NOT``.

    Args:
        owner_ref: Entity (class or alias) of the enclosing query.
        relation: Relation declared on the owner.
        constraint: Callback receiving a relation builder; its criteria are
            conjoined inside the subquery.
        operator: Comparison operator for the count form.
        count: Right-hand side of the count comparison.
        negate: Produce the ``doesnt_have`` form.
    """
    if operator is None and count is None:
        stmt = _constrained(relation, owner_ref, (sa.literal_column("1"),), constraint)
        clause: sa.ColumnElement[bool] = stmt.exists()
    else:
        stmt = _constrained(relation, owner_ref, (sa.func.count(),), constraint)
        clause = compare(
            stmt.scalar_subquery(),
            operator if operator is not None else DEFAULT_HAS_OPERATOR,
            count if count is not None else DEFAULT_HAS_COUNT,
        )

    return sa.not_(clause) if negate else clause


def compile_count(
    owner_ref: Any,
    relation: Relation,
    label: str,
    *,
    constraint: Constraint | None = None,
) -> sa.Label[int]:
    """``(SELECT COUNT(*) FROM related WHERE <join> [AND constraint]) AS label``."""
    stmt = _constrained(relation, owner_ref, (sa.func.count(),), constraint)

    return stmt.scalar_subquery().label(label)
