"""
core/errors.py -- Error taxonomy for the identity store.

Callers branch on these classes only, never on backend exception types. Each
backend translates its own failures into this hierarchy at a single point, so
a caller that handles NotFound from the SQLite store handles it from the mock
store as well.

Hierarchy:
  StoreError
    NotFound, AlreadyExists, ReadOnly, MissingID, NoIDOnCreate,
    ZeroValuedNotNull, MissingAssociation, MissingReference, Ambiguous,
    TooSoon, TransactionDone, Cancelled, Internal, MigrationError
    UnsupportedIdentifier (also a TypeError)
    ValidationError (also a ValueError)
    DSNError (also a ValueError)
      DSNParseError, InvalidDSN, UnknownScheme, PathRequired

Layer rule: core/ is the kernel. This module may not import from store/.
"""

from __future__ import annotations

from dataclasses import dataclass


class StoreError(Exception):
    """Base class for every error raised by the identity store."""

    message = "identity store error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)

    def with_context(self, context: str) -> StoreError:
        """Return a copy of this error, same class, with context prefixed to the message.

        Composite operations use this to name the child record that failed
        without hiding which taxonomy error it was.
        """
        err = type(self).__new__(type(self))
        err.__dict__.update(self.__dict__)
        Exception.__init__(err, f"{context}: {self}")
        return err


# ---------------------------------------------------------------------------
# Constraint errors
# ---------------------------------------------------------------------------


class NotFound(StoreError):
    message = "record not found"


class AlreadyExists(StoreError):
    message = "record already exists in database"


class ReadOnly(StoreError):
    message = "cannot perform operation in read-only mode"


class MissingID(StoreError):
    message = "id required for this resource"


class NoIDOnCreate(StoreError):
    message = "cannot create a resource with an id"


class ZeroValuedNotNull(StoreError):
    message = "query contains a not null field with a zero valued parameter"


class MissingAssociation(StoreError):
    message = "associated record(s) not cached on model"


class MissingReference(StoreError):
    message = "missing id of foreign key reference"


class Ambiguous(StoreError):
    message = "ambiguous query: more than one result returned"


class TooSoon(StoreError):
    message = "a previous record has not expired yet"


class TransactionDone(StoreError):
    message = "transaction has already been committed or rolled back"


class Cancelled(StoreError):
    message = "operation cancelled by caller"


class Internal(StoreError):
    message = "could not complete request due to an internal error"


class MigrationError(StoreError):
    message = "could not apply schema migrations"


class UnsupportedIdentifier(StoreError, TypeError):
    """Raised when a retrieve/update/delete is given an identifier of the wrong shape."""

    def __init__(self, operation: str, identifier: object) -> None:
        self.operation = operation
        self.identifier_type = type(identifier).__name__
        super().__init__(f"unsupported identifier type {self.identifier_type!r} for {operation}")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass
class FieldError:
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class ValidationError(StoreError, ValueError):
    """Every validation problem found on a model, reported together.

    errors keeps the individual FieldError entries so callers can map them
    back onto form fields; str() joins them into one readable message.
    """

    def __init__(self, errors: list[FieldError]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(str(e) for e in self.errors) or "invalid model")

    @property
    def fields(self) -> list[str]:
        return [e.field for e in self.errors]


# ---------------------------------------------------------------------------
# Connection descriptor errors
# ---------------------------------------------------------------------------


class DSNError(StoreError, ValueError):
    message = "invalid database connection descriptor"


class DSNParseError(DSNError):
    message = "could not parse dsn"


class InvalidDSN(DSNError):
    message = "could not parse DSN, critical component missing"


class UnknownScheme(DSNError):
    message = "database scheme not handled by this package"


class PathRequired(DSNError):
    message = "a path is required for this database scheme"
