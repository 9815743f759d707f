"""
Merge engine: moves the staging rows into the target table.

The merge is a single ``INSERT ... SELECT DISTINCT ... ON CONFLICT`` statement,
so new keys are inserted and existing keys have their non-key columns
overwritten in one round trip.
"""
from decimal import Decimal
from enum import Enum
from typing import List, Sequence, Tuple

import psycopg
from psycopg import sql

from pgupsert.core.common import sql_summary
from pgupsert.core.errors import MergeError
from pgupsert.core.logger import setup_logger
from pgupsert.upsert.staging import StagingTable, table_identifier
from pgupsert.upsert.values import Value, ValueKind

logger = setup_logger(__name__, include_location=True)


class KeyConflictPolicy(str, Enum):
    """How rows of one batch sharing a primary key are resolved."""
    LAST = "last"
    FIRST = "first"
    ERROR = "error"


NUMERIC_KINDS = (ValueKind.INT32, ValueKind.INT64, ValueKind.FLOAT64, ValueKind.DECIMAL)


def _key_part(value: Value):
    # numerically equal keys collide on the server whatever their kind
    if value.kind in NUMERIC_KINDS:
        data = value.data
        if value.kind is ValueKind.FLOAT64:
            data = Decimal(value.source) if value.source is not None else Decimal(repr(data))
        return ("number", data)
    return (value.kind, value.data)


def _key_of(row: Sequence[Value], positions: Sequence[int]):
    key = tuple(_key_part(row[i]) for i in positions)
    try:
        hash(key)
    except TypeError:
        key = tuple(repr(part) for part in key)
    return key


def collapse_key_conflicts(
    rows: Sequence[Sequence[Value]],
    columns: Sequence[str],
    primary_key: Sequence[str],
    policy: KeyConflictPolicy = KeyConflictPolicy.LAST,
) -> Tuple[List[Sequence[Value]], int]:
    """
    Keep one row per primary key value; returns (rows, number dropped).

    Survivors keep their relative input order. Rows with a NULL key field are
    never collapsed. ERROR leaves the batch untouched so the database rejects it.
    """
    if policy is KeyConflictPolicy.ERROR:
        return list(rows), 0

    positions = [columns.index(col) for col in primary_key]
    chosen = {}
    for index, row in enumerate(rows):
        if any(not row[i].present for i in positions):
            continue
        key = _key_of(row, positions)
        if policy is KeyConflictPolicy.LAST or key not in chosen:
            chosen[key] = index

    kept = []
    for index, row in enumerate(rows):
        if any(not row[i].present for i in positions) or chosen[_key_of(row, positions)] == index:
            kept.append(row)
    dropped = len(rows) - len(kept)
    if dropped:
        logger.debug(f"Collapsed {dropped} rows sharing a primary key (keeping {policy.value})")
    return kept, dropped


def build_merge_statement(
    target: str,
    staging: str,
    columns: Sequence[str],
    primary_key: Sequence[str],
) -> sql.Composed:
    """
    INSERT INTO target (cols) SELECT DISTINCT cols FROM staging
    ON CONFLICT (pk) DO UPDATE SET col = EXCLUDED.col, ...

    Key columns are never updated; when there is nothing else to update the
    statement ends in DO NOTHING.
    """
    column_list = sql.SQL(", ").join(sql.Identifier(col) for col in columns)
    key_list = sql.SQL(", ").join(sql.Identifier(col) for col in primary_key)
    key_set = set(primary_key)
    updates = [
        sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(col))
        for col in columns
        if col not in key_set
    ]
    if updates:
        action = sql.SQL("DO UPDATE SET {}").format(sql.SQL(", ").join(updates))
    else:
        action = sql.SQL("DO NOTHING")

    return sql.SQL(
        "INSERT INTO {target} ({columns}) SELECT DISTINCT {columns} FROM {staging} "
        "ON CONFLICT ({keys}) {action}"
    ).format(
        target=table_identifier(target),
        columns=column_list,
        staging=sql.Identifier(staging),
        keys=key_list,
        action=action,
    )


async def merge_staging(
    conn: psycopg.AsyncConnection,
    target: str,
    staging: StagingTable,
    columns: Sequence[str],
    primary_key: Sequence[str],
) -> int:
    """Run the merge and return the number of rows inserted or updated."""
    statement = build_merge_statement(target, staging.name, columns, primary_key)
    logger.debug(f"Merging {staging.name} into {target}: {sql_summary(statement.as_string(None))}")
    try:
        cur = await conn.execute(statement)
    except psycopg.Error as e:
        sqlstate = getattr(e, "sqlstate", None)
        if sqlstate == "21000":
            message = f"merge into {target} failed: the batch contains the same primary key more than once"
        else:
            message = f"merge into {target} failed: {e}"
        logger.error(message)
        raise MergeError(message, cause=e) from e
    rowcount = cur.rowcount if cur.rowcount is not None and cur.rowcount >= 0 else 0
    logger.debug(f"Merged {rowcount} rows into {target}")
    return rowcount
