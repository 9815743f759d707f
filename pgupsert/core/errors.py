"""
Error taxonomy and PostgreSQL error classification for pgupsert.

Every failure of a bulk upsert surfaces as exactly one ``UpsertError``
subclass. Database-backed errors also carry the SQLSTATE, the structured
server diagnostics and an ``ErrorInfo`` that callers can branch on without
brittle string matching:

    try:
        await bulk_upsert(pool, rows, "metrics", ["id"], timeout=30)
    except UpsertError as e:
        if e.info.retryable:
            ...
"""

from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field


class ErrorKind(str, Enum):
    """Standardized error categories."""

    # Database errors
    DB_CONNECTION = "db_connection" # Pool exhausted, server unreachable
    DB_CONSTRAINT = "db_constraint" # Unique constraint, foreign key, not null
    DB_DEADLOCK = "db_deadlock"     # Serialization failure, deadlock
    DB_TIMEOUT = "db_timeout"       # statement_timeout, lock_timeout

    # Data errors
    SCHEMA = "schema"               # Missing table/column, type mismatch
    TRANSFORM = "transform"         # Client-side value coercion

    TIMEOUT = "timeout"             # Call deadline exceeded
    UNKNOWN = "unknown"


# SQLSTATE fields exposed by psycopg's Diagnostic object
DIAGNOSTIC_FIELDS = (
    "severity",
    "sqlstate",
    "message_primary",
    "message_detail",
    "message_hint",
    "context",
    "schema_name",
    "table_name",
    "column_name",
    "datatype_name",
    "constraint_name",
)


class ErrorInfo(BaseModel):
    """
    Standardized, serializable description of a failure.

    - info.kind == 'db_constraint'
    - info.retryable is True
    - info.pg_code in ['40001', '40P01']
    """

    kind: ErrorKind = Field(
        default=ErrorKind.UNKNOWN,
        description="Error category"
    )
    retryable: bool = Field(
        default=False,
        description="Whether this error is worth retrying by the caller"
    )
    code: str = Field(
        default="UNKNOWN",
        description="Error code (PG_23505, PG_UNKNOWN, TIMEOUT, ...)"
    )
    message: str = Field(
        default="Unknown error",
        description="Human-readable error message"
    )
    stage: Optional[str] = Field(
        None, description="Pipeline stage that failed (load, merge, ...)"
    )
    pg_code: Optional[str] = Field(
        None, description="PostgreSQL SQLSTATE (e.g., 40001, 40P01, 23505)"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Structured server diagnostics when available"
    )

    def to_dict(self) -> dict[str, Any]:
        d = {
            "kind": self.kind.value,
            "retryable": self.retryable,
            "code": self.code,
            "message": self.message,
        }
        if self.stage is not None:
            d["stage"] = self.stage
        if self.pg_code is not None:
            d["pg_code"] = self.pg_code
        if self.details:
            d["details"] = self.details
        return d


def extract_diagnostics(error: BaseException) -> dict[str, Any]:
    """Collect the non-empty diagnostic fields of a psycopg error."""
    diag = getattr(error, "diag", None)
    if diag is None:
        return {}
    details = {}
    for field in DIAGNOSTIC_FIELDS:
        try:
            value = getattr(diag, field, None)
        except Exception:
            # Diagnostic reads can fail on a closed result
            value = None
        if value:
            details[field] = value
    return details


def classify_postgres_error(
    error: BaseException,
    error_code: Optional[str] = None,
    stage: Optional[str] = None,
) -> ErrorInfo:
    """Classify PostgreSQL errors."""
    error_str = str(error).lower()

    pg_code = error_code or getattr(error, "sqlstate", None)
    code = f"PG_{pg_code}" if pg_code else "PG_UNKNOWN"
    details = extract_diagnostics(error)

    def info(kind: ErrorKind, retryable: bool) -> ErrorInfo:
        return ErrorInfo(
            kind=kind,
            retryable=retryable,
            code=code,
            message=str(error),
            stage=stage,
            pg_code=pg_code,
            details=details,
        )

    # Serialization failure / deadlock
    if pg_code in ("40001", "40P01") or "deadlock" in error_str:
        return info(ErrorKind.DB_DEADLOCK, True)

    # Integrity constraint violations
    if pg_code and pg_code.startswith("23"):
        return info(ErrorKind.DB_CONSTRAINT, False)

    # Undefined table/column, datatype mismatch, invalid text representation
    if pg_code and (pg_code.startswith("42") or pg_code.startswith("22")):
        return info(ErrorKind.SCHEMA, False)

    # Connection exceptions
    if (pg_code and pg_code.startswith("08")) or "connection" in error_str:
        return info(ErrorKind.DB_CONNECTION, True)

    # Query canceled / lock not available
    if pg_code in ("57014", "55P03") or "timeout" in error_str:
        return info(ErrorKind.DB_TIMEOUT, True)

    return info(ErrorKind.UNKNOWN, False)


class UpsertError(Exception):
    """Base class of every pgupsert failure."""

    kind = ErrorKind.UNKNOWN
    stage: Optional[str] = None

    def __init__(self, message: str, *, cause: Optional[BaseException] = None, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if stage is not None:
            self.stage = stage
        if cause is not None:
            self.__cause__ = cause
            self.info = classify_postgres_error(cause, stage=self.stage)
            self.info.message = message
            if self.info.kind == ErrorKind.UNKNOWN:
                self.info.kind = self.kind
        else:
            self.info = ErrorInfo(kind=self.kind, code=self.kind.value.upper(), message=message, stage=self.stage)

    @property
    def sqlstate(self) -> Optional[str]:
        return self.info.pg_code

    @property
    def diagnostics(self) -> dict[str, Any]:
        return self.info.details


class PoolConnectionError(UpsertError, ConnectionError):
    kind = ErrorKind.DB_CONNECTION
    stage = "acquire"


class TransactionError(UpsertError):
    kind = ErrorKind.DB_CONNECTION
    stage = "transaction"


class CommitError(TransactionError):
    stage = "commit"


class SchemaError(UpsertError):
    kind = ErrorKind.SCHEMA
    stage = "staging"


class LoadError(UpsertError):
    stage = "load"

    def __init__(self, message: str, *, cause: Optional[BaseException] = None, row: Optional[int] = None):
        super().__init__(message, cause=cause)
        self.row = row
        if row is not None:
            self.info.details["row"] = row


class MergeError(UpsertError):
    stage = "merge"


class UpsertTimeoutError(UpsertError, TimeoutError):
    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message, stage=stage)
        self.info.retryable = True


class CoercionError(UpsertError, ValueError):
    kind = ErrorKind.TRANSFORM
    stage = "coerce"

    def __init__(self, message: str, *, column: Optional[str] = None, row: Optional[int] = None):
        super().__init__(message)
        self.column = column
        self.row = row


class UpsertValidationError(UpsertError, ValueError):
    kind = ErrorKind.SCHEMA
    stage = "validate"


class CoercionWarning(UserWarning):
    """A single field could not be coerced and was loaded as NULL."""

    def __init__(self, message: str, *, column: Optional[str] = None, row: Optional[int] = None):
        super().__init__(message)
        self.column = column
        self.row = row


__all__ = [
    "ErrorKind",
    "ErrorInfo",
    "extract_diagnostics",
    "classify_postgres_error",
    "UpsertError",
    "PoolConnectionError",
    "TransactionError",
    "CommitError",
    "SchemaError",
    "LoadError",
    "MergeError",
    "UpsertTimeoutError",
    "CoercionError",
    "UpsertValidationError",
    "CoercionWarning",
]
