from __future__ import annotations

import copy
from collections.abc import Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING, ClassVar, NamedTuple, final

from sqlalchemy import orm

from .exceptions import ConfigurationError


if TYPE_CHECKING:
    from .relations import Relation


class SchemaMap(NamedTuple):
    """Relation descriptors and model names collected from a declarative base."""

    relations: Mapping[type[orm.DeclarativeBase], Mapping[str, Relation]]
    models: Mapping[str, type[orm.DeclarativeBase] | None]


@final
class Registry:
    """Singleton holding the relation graph of every mapped model.

    The registry is the static lookup table the engine consults to resolve
    relation names (eager-load path segments, ``has``/``with_count`` names,
    indirect ``through`` names) and string references to related models.
    It is built once at startup from a declarative base with
    :func:`get_registry` and installed with :func:`init_registry`.
    """

    __instance: ClassVar[Registry | None] = None
    _schema: SchemaMap

    def __new__(cls, schema: SchemaMap | None = None) -> Registry:
        if cls.__instance is None:
            instance = super().__new__(cls)
            if schema is not None:
                instance.set_schema(schema)

            cls.__instance = instance

        if not getattr(cls.__instance, "_schema", None):
            raise RuntimeError("Registry is not initialized or empty")

        return cls.__instance

    def get(self, model: type[orm.DeclarativeBase]) -> Mapping[str, Relation]:
        """Get relations declared on *model*, returning an empty mapping if unknown."""
        return self._schema.relations.get(model, MappingProxyType({}))

    def __getitem__(self, model: type[orm.DeclarativeBase]) -> Mapping[str, Relation]:
        """Look up relations for *model*, raising ``KeyError`` if not registered."""
        return self._schema.relations[model]

    def relation(self, model: type[orm.DeclarativeBase], name: str) -> Relation:
        """Return the relation *name* declared on *model*.

        Raises:
            ConfigurationError: If *model* declares no such relation.
        """
        relations = self.get(model)
        try:
            return relations[name]
        except KeyError:
            raise ConfigurationError(
                f"No relation '{name}' on {model.__name__} "
                f"(available: {sorted(relations)})"
            ) from None

    def model(self, name: str) -> type[orm.DeclarativeBase]:
        """Resolve a model class from its class name.

        Raises:
            ConfigurationError: If the name is unknown or ambiguous.
        """
        try:
            model = self._schema.models[name]
        except KeyError:
            raise ConfigurationError(f"Unknown related model {name!r}") from None

        if model is None:
            raise ConfigurationError(
                f"Model name {name!r} is ambiguous; reference the class directly"
            )

        return model

    @property
    def schema(self) -> SchemaMap:
        """The underlying relation and model mappings (read-only)."""
        return self._schema

    def set_schema(self, schema: SchemaMap) -> None:
        """Replace the mappings held by this registry."""
        self._schema = schema

    @classmethod
    def reset(cls) -> None:
        """Destroy the singleton, allowing re-initialization (primarily for tests)."""
        cls.__instance = None


def get_registry(base: type[orm.DeclarativeBase]) -> SchemaMap:
    """Collect relation descriptors from every model mapped on *base*.

    Relations declared on mapped parent classes are inherited the same way
    Python attribute lookup inherits them. Relations declared on plain mixins
    are copied onto each mapped class, so their keys resolve against that
    class.

    Args:
        base: SQLAlchemy declarative base class.

    Returns:
        A :class:`SchemaMap` of read-only mappings.

    Raises:
        AssertionError: If base is not a subclass of orm.DeclarativeBase.
    """
    from .relations import Relation

    assert orm.DeclarativeBase in getattr(base, "__bases__", ()), (
        "base must be a subclass of orm.DeclarativeBase"
    )

    relations: dict[type[orm.DeclarativeBase], Mapping[str, Relation]] = {}
    models: dict[str, type[orm.DeclarativeBase] | None] = {}
    mapped = {mapper.class_ for mapper in base.registry.mappers}

    for mapper in base.registry.mappers:
        cls = mapper.class_
        found: dict[str, Relation] = {}
        for klass in reversed(cls.__mro__):
            for name, attr in vars(klass).items():
                if not isinstance(attr, Relation):
                    continue
                if attr.owner not in mapped:
                    # declared on a plain mixin: bind a copy to the mapped class
                    attr = copy.copy(attr)
                    attr.__set_name__(cls, name)
                    setattr(cls, name, attr)
                found[name] = attr

        relations[cls] = MappingProxyType(found)
        # a name seen twice is kept as ambiguous instead of silently picking one
        models[cls.__name__] = None if cls.__name__ in models else cls

    return SchemaMap(MappingProxyType(relations), MappingProxyType(models))


def init_registry(schema: SchemaMap) -> None:
    """Initialize the global Registry singleton.

    Call once during application startup, after every model module has been
    imported.

    Example:
        >>> from myapp.models import Base
        >>> init_registry(get_registry(Base))
    """
    Registry(schema)
