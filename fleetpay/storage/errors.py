"""Classification of storage-level errors.

This is the only module that knows how the supported database backends
report constraint violations and lock conflicts. Services ask
``classify_storage_error`` what happened and translate the answer into
domain errors; they never inspect driver exceptions themselves.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy import Index, UniqueConstraint
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from .database.base import metadata

# SQLSTATE codes (PostgreSQL, also reported by several other drivers)
UNIQUE_VIOLATION_SQLSTATE = "23505"
CONFLICT_SQLSTATES = frozenset(
    {
        "40001",  # serialization_failure
        "40P01",  # deadlock_detected
        "55P03",  # lock_not_available
    }
)

# MySQL / MariaDB error numbers
MYSQL_DUPLICATE_ENTRY = 1062
MYSQL_CONFLICT_ERRNOS = frozenset({1205, 1213})  # lock wait timeout, deadlock

_SQLITE_UNIQUE_RE = re.compile(r"UNIQUE constraint failed: (?P<columns>[\w.,\s]+)")
_PG_CONSTRAINT_RE = re.compile(r'unique constraint "(?P<name>[^"]+)"')
_MYSQL_KEY_RE = re.compile(r"for key '(?:[\w]+\.)?(?P<name>[^']+)'")
_CONFLICT_MESSAGES = ("database is locked", "deadlock", "lock wait timeout", "could not serialize")


class StorageErrorKind(Enum):
    UNIQUE_VIOLATION = "unique_violation"
    CONFLICT = "conflict"
    OTHER = "other"


@dataclass(frozen=True)
class StorageErrorInfo:
    """What a storage error means, independent of the backend.

    Attributes:
        kind: Category of the failure
        table: Table involved, when identifiable
        columns: Columns covered by the violated constraint, when identifiable
        constraint: Constraint or index name, when reported
    """

    kind: StorageErrorKind
    table: str | None = None
    columns: tuple[str, ...] = field(default_factory=tuple)
    constraint: str | None = None

    def involves(self, *columns: str) -> bool:
        """True when every given column is covered by the violated constraint."""
        return bool(self.columns) and all(c in self.columns for c in columns)


_OTHER = StorageErrorInfo(StorageErrorKind.OTHER)


def _driver_code(orig: BaseException | None) -> str | None:
    for attr in ("sqlstate", "pgcode"):
        code = getattr(orig, attr, None)
        if code:
            return str(code)
    return None


def _mysql_errno(orig: BaseException | None) -> int | None:
    args = getattr(orig, "args", ())
    if args and isinstance(args[0], int):
        return args[0]
    return None


def _lookup_constraint(name: str) -> tuple[str | None, tuple[str, ...]]:
    """Find table and columns of a named unique constraint or unique index."""
    for table in metadata.tables.values():
        for constraint in table.constraints:
            if isinstance(constraint, UniqueConstraint) and str(constraint.name) == name:
                return table.name, tuple(c.name for c in constraint.columns)
        for index in table.indexes:
            if isinstance(index, Index) and index.unique and str(index.name) == name:
                return table.name, tuple(c.name for c in index.columns)
    return None, ()


def _unique_info(orig: BaseException | None) -> StorageErrorInfo:
    message = str(orig)

    sqlite_match = _SQLITE_UNIQUE_RE.search(message)
    if sqlite_match:
        qualified = [part.strip() for part in sqlite_match.group("columns").split(",")]
        table = qualified[0].split(".", 1)[0] if "." in qualified[0] else None
        columns = tuple(part.split(".", 1)[-1] for part in qualified if part)
        return StorageErrorInfo(StorageErrorKind.UNIQUE_VIOLATION, table, columns)

    constraint_name = getattr(getattr(orig, "diag", None), "constraint_name", None)
    if not constraint_name:
        for pattern in (_PG_CONSTRAINT_RE, _MYSQL_KEY_RE):
            match = pattern.search(message)
            if match:
                constraint_name = match.group("name")
                break

    if constraint_name:
        table, columns = _lookup_constraint(constraint_name)
        return StorageErrorInfo(StorageErrorKind.UNIQUE_VIOLATION, table, columns, constraint_name)

    return StorageErrorInfo(StorageErrorKind.UNIQUE_VIOLATION)


def classify_storage_error(error: BaseException) -> StorageErrorInfo:
    """Classify an exception raised by the store.

    Returns ``UNIQUE_VIOLATION`` (with the conflicting table/columns when they
    can be identified), ``CONFLICT`` for lock and serialization failures that
    are safe to retry, and ``OTHER`` for everything else, including
    exceptions that did not come from the database at all.
    """
    if not isinstance(error, DBAPIError):
        return _OTHER

    orig = error.orig
    code = _driver_code(orig)
    errno = _mysql_errno(orig)
    lowered = str(orig).lower()

    if code in CONFLICT_SQLSTATES or errno in MYSQL_CONFLICT_ERRNOS:
        return StorageErrorInfo(StorageErrorKind.CONFLICT)
    if isinstance(error, OperationalError) and any(m in lowered for m in _CONFLICT_MESSAGES):
        return StorageErrorInfo(StorageErrorKind.CONFLICT)

    if isinstance(error, IntegrityError) and (
        code == UNIQUE_VIOLATION_SQLSTATE
        or errno == MYSQL_DUPLICATE_ENTRY
        or "unique constraint" in lowered
        or "duplicate entry" in lowered
        or "duplicate key" in lowered
    ):
        return _unique_info(orig)

    return _OTHER
