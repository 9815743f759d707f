"""
Bulk upsert pipeline: coercion, staging table, COPY load and merge.
"""
from pgupsert.upsert.values import (
    CoercionPolicy,
    Value,
    ValueKind,
    coerce_records,
    coerce_value,
    stringify_records,
    to_native_records,
)
from pgupsert.upsert.staging import StagingTable, create_staging_table, staging_table_name
from pgupsert.upsert.loader import CopyFormat, RecordCopySource, copy_records
from pgupsert.upsert.merge import KeyConflictPolicy, build_merge_statement, collapse_key_conflicts, merge_staging
from pgupsert.upsert.orchestrator import (
    BulkUpsert,
    TransactionScope,
    UpsertOptions,
    UpsertResult,
    UpsertState,
    bulk_upsert,
)

__all__ = [
    "CoercionPolicy",
    "Value",
    "ValueKind",
    "coerce_records",
    "coerce_value",
    "stringify_records",
    "to_native_records",
    "StagingTable",
    "create_staging_table",
    "staging_table_name",
    "CopyFormat",
    "RecordCopySource",
    "copy_records",
    "KeyConflictPolicy",
    "build_merge_statement",
    "collapse_key_conflicts",
    "merge_staging",
    "BulkUpsert",
    "TransactionScope",
    "UpsertOptions",
    "UpsertResult",
    "UpsertState",
    "bulk_upsert",
]
