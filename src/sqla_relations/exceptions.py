from __future__ import annotations

from sqlalchemy import exc as sa_exc


class RelationError(Exception):
    """Base class for errors raised by the relation engine itself."""


class ConfigurationError(RelationError):
    """A relation, eager-load path or pivot option is misconfigured.

    Raised while a descriptor is resolved or a load plan is built, always
    before the first statement of the affected fetch is sent to the store.
    """


class ConstraintViolationError(RelationError):
    """A pivot membership or foreign key constraint would be violated."""


class NotFoundError(RelationError):
    """A ``*_or_fail`` fetch found no matching row."""


# Store failures are surfaced exactly as SQLAlchemy raises them.
QueryExecutionError = sa_exc.DBAPIError
