"""Declarative model relations with batched eager loading for async SQLAlchemy.

sqla_relations declares relations as descriptors on mapped models
(``one_to_many("Post")``, ``many_to_many("Role")`` ...), loads them for whole
result sets with one query per relation path, and filters or counts by
relation existence with correlated subqueries. Build a ``Registry`` at startup
from your declarative base, then query through ``ModelQuery`` or
``rel_select(model=..., loads=(...))``.
"""

from ._version import __version__, __version_tuple__
from .core import rel_select, relations_cache_clear, relations_cache_info
from .exceptions import (
    ConfigurationError,
    ConstraintViolationError,
    NotFoundError,
    QueryExecutionError,
    RelationError,
)
from .executor import EagerLoader, RelatedRow, load
from .pivot import PivotManager, PivotQuery, SyncResult
from .planner import EagerNode, Planner, QueryPlan
from .query import ModelQuery, RelationQuery
from .registry import Registry, SchemaMap, get_registry, init_registry
from .relations import (
    Indirect,
    InverseOneToOne,
    ManyToMany,
    OneToMany,
    OneToOne,
    Relation,
    RelationKeys,
    RelationKind,
    indirect,
    inverse_one_to_one,
    many_to_many,
    one_to_many,
    one_to_one,
)
from .serialization import serialize
from .state import get_meta, get_pivot, get_related, is_loaded
from .tools import (
    add_conditions,
    default_key,
    get_primary_key,
    get_table_name,
    singular,
    unique_scalars,
)


__all__ = (
    "ConfigurationError",
    "ConstraintViolationError",
    "EagerLoader",
    "EagerNode",
    "Indirect",
    "InverseOneToOne",
    "ManyToMany",
    "ModelQuery",
    "NotFoundError",
    "OneToMany",
    "OneToOne",
    "PivotManager",
    "PivotQuery",
    "Planner",
    "QueryExecutionError",
    "QueryPlan",
    "Registry",
    "RelatedRow",
    "Relation",
    "RelationError",
    "RelationKeys",
    "RelationKind",
    "RelationQuery",
    "SchemaMap",
    "SyncResult",
    "__version__",
    "__version_tuple__",
    "add_conditions",
    "default_key",
    "get_meta",
    "get_pivot",
    "get_primary_key",
    "get_registry",
    "get_related",
    "get_table_name",
    "indirect",
    "init_registry",
    "inverse_one_to_one",
    "is_loaded",
    "load",
    "many_to_many",
    "one_to_many",
    "one_to_one",
    "rel_select",
    "relations_cache_clear",
    "relations_cache_info",
    "serialize",
    "singular",
    "unique_scalars",
)
