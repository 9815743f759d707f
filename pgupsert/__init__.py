from pgupsert.core.config import DatabaseConfig, load_config
from pgupsert.core.errors import (
    ErrorKind,
    ErrorInfo,
    UpsertError,
    PoolConnectionError,
    TransactionError,
    CommitError,
    SchemaError,
    LoadError,
    MergeError,
    UpsertTimeoutError,
    CoercionError,
    UpsertValidationError,
    CoercionWarning,
)
from pgupsert.db import DatabasePool, fetch_records
from pgupsert.upsert import (
    BulkUpsert,
    CoercionPolicy,
    CopyFormat,
    KeyConflictPolicy,
    UpsertOptions,
    UpsertResult,
    UpsertState,
    bulk_upsert,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "DatabaseConfig",
    "load_config",
    "DatabasePool",
    "fetch_records",
    "bulk_upsert",
    "BulkUpsert",
    "UpsertOptions",
    "UpsertResult",
    "UpsertState",
    "CoercionPolicy",
    "CopyFormat",
    "KeyConflictPolicy",
    "ErrorKind",
    "ErrorInfo",
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
