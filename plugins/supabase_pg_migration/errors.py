"""
Error taxonomy and classification for migration apply operations.

Per-object failures are not handled by string matching at each call site.
Callers pass the exception to ``classify_error`` and act on the returned
``ErrorClass``:

- IGNORABLE: the object already exists on the target; count as success
- FAILURE: log, count as failed, continue with the next object
- FATAL: connection-level problem; abort the run
"""

from enum import Enum
from typing import Optional

import psycopg2


class MigrationError(Exception):
    """Base class for migration errors."""


class MigrationConnectionError(MigrationError):
    """A source or target connection could not be established. Always fatal."""


class ObjectApplyError(MigrationError):
    """Applying one catalog object to the target failed."""

    def __init__(self, object_name: str, message: str):
        super().__init__(f"{object_name}: {message}")
        self.object_name = object_name


class TransferBatchError(MigrationError):
    """Fetching or inserting a page of rows failed for one table."""

    def __init__(self, table: str, offset: int, message: str):
        super().__init__(f"{table} (offset {offset}): {message}")
        self.table = table
        self.offset = offset


class MissingCredentialsError(MigrationError):
    """Storage API URL or service key is not configured."""


class DependencyCycleWarning(UserWarning):
    """Foreign keys form a cycle; ordering of the tables involved is best effort."""


class ErrorClass(str, Enum):
    IGNORABLE = "ignorable"
    FAILURE = "failure"
    FATAL = "fatal"


# SQLSTATE codes for "object already exists" conditions
DUPLICATE_SQLSTATES = frozenset({
    '42P04',  # duplicate_database
    '42P06',  # duplicate_schema
    '42P07',  # duplicate_table
    '42701',  # duplicate_column
    '42710',  # duplicate_object
    '42712',  # duplicate_alias
    '42723',  # duplicate_function
    '23505',  # unique_violation
})

DUPLICATE_MARKERS = ('already exists', 'duplicate')


def _sqlstate(exc: BaseException) -> Optional[str]:
    return getattr(exc, 'pgcode', None)


def is_duplicate_error(exc: BaseException) -> bool:
    """True when the error reports an object that already exists."""
    if _sqlstate(exc) in DUPLICATE_SQLSTATES:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in DUPLICATE_MARKERS)


def classify_error(exc: BaseException) -> ErrorClass:
    """
    Classify an exception raised while applying an object.

    Args:
        exc: The exception raised by the database call

    Returns:
        ErrorClass decision for the caller
    """
    if isinstance(exc, MigrationConnectionError):
        return ErrorClass.FATAL
    # OperationalError covers lost connections and server shutdowns; a
    # statement-level error is a ProgrammingError/DataError/IntegrityError.
    if isinstance(exc, (psycopg2.OperationalError, psycopg2.InterfaceError)) \
            and _sqlstate(exc) is None:
        return ErrorClass.FATAL
    if is_duplicate_error(exc):
        return ErrorClass.IGNORABLE
    return ErrorClass.FAILURE
