"""
Bulk upsert orchestration.

One call of ``bulk_upsert`` is one unit of work on one pooled connection:

    validate -> coerce -> acquire -> BEGIN -> staging table -> COPY
             -> merge -> COMMIT

Any failure, including the call deadline expiring, rolls the transaction
back, so the target table is either fully updated or untouched.
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union

import psycopg
from pydantic import BaseModel, ConfigDict, Field

from pgupsert.core.common import env_float
from pgupsert.core.errors import (
    CommitError,
    CoercionWarning,
    TransactionError,
    UpsertError,
    UpsertTimeoutError,
    UpsertValidationError,
)
from pgupsert.core.logger import setup_logger
from pgupsert.core.logging_context import upsert_log_fields
from pgupsert.db.pool import DatabasePool
from pgupsert.upsert.loader import CopyFormat, RecordCopySource, copy_records
from pgupsert.upsert.merge import KeyConflictPolicy, collapse_key_conflicts, merge_staging
from pgupsert.upsert.staging import create_staging_table, split_table_name
from pgupsert.upsert.values import CoercionPolicy, coerce_records, stringify_records

logger = setup_logger(__name__, include_location=True)

Timeout = Union[float, int, timedelta]


class UpsertState(str, Enum):
    IDLE = "idle"
    TX_OPEN = "tx_open"
    STAGING_CREATED = "staging_created"
    LOADED = "loaded"
    MERGED = "merged"
    COMMITTED = "committed"
    FAILED = "failed"


TERMINAL_STATES = (UpsertState.COMMITTED, UpsertState.FAILED)


class UpsertOptions(BaseModel):
    """Per-call tuning of the upsert pipeline."""
    model_config = ConfigDict(frozen=True)

    time_column: Optional[str] = "time"
    coercion_policy: CoercionPolicy = CoercionPolicy.NULL
    normalize_strings: bool = True
    key_conflicts: KeyConflictPolicy = KeyConflictPolicy.LAST
    copy_format: CopyFormat = CopyFormat.AUTO
    server_timeout: bool = True
    rollback_timeout: float = Field(
        default_factory=lambda: env_float("PGUPSERT_ROLLBACK_TIMEOUT_SECONDS", 5.0),
        gt=0,
        description="Seconds allowed for the rollback after a failure",
    )


@dataclass
class UpsertResult:
    table: str
    staging_table: Optional[str] = None
    columns: Tuple[str, ...] = ()
    primary_key: Tuple[str, ...] = ()
    state: UpsertState = UpsertState.IDLE
    rows_received: int = 0
    rows_loaded: int = 0
    rows_merged: int = 0
    duplicates_collapsed: int = 0
    coercion_warnings: List[CoercionWarning] = field(default_factory=list)
    elapsed: float = 0.0

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "staging_table": self.staging_table,
            "columns": list(self.columns),
            "primary_key": list(self.primary_key),
            "state": self.state.value,
            "rows_received": self.rows_received,
            "rows_loaded": self.rows_loaded,
            "rows_merged": self.rows_merged,
            "duplicates_collapsed": self.duplicates_collapsed,
            "coercion_warnings": [str(w) for w in self.coercion_warnings],
            "elapsed": round(self.elapsed, 6),
        }


def timeout_seconds(timeout: Timeout) -> float:
    if isinstance(timeout, timedelta):
        seconds = timeout.total_seconds()
    elif isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
        raise UpsertValidationError(f"timeout must be seconds or a timedelta, got {type(timeout).__name__}")
    else:
        seconds = float(timeout)
    if not seconds > 0:
        raise UpsertValidationError(f"timeout must be positive, got {timeout!r}")
    return seconds


class TransactionScope:
    """
    Explicit transaction on a borrowed connection.

    Entering opens the transaction (and sets the transaction-local
    statement_timeout when asked to). Leaving without a commit attempt rolls
    back; the rollback is bounded and its failure is only logged so the error
    that caused it is the one the caller sees.
    """

    def __init__(
        self,
        conn: psycopg.AsyncConnection,
        statement_timeout: Optional[float] = None,
        rollback_timeout: float = 5.0,
    ):
        self.conn = conn
        self.statement_timeout = statement_timeout
        self.rollback_timeout = rollback_timeout
        self.commit_attempted = False
        self.rolled_back = False

    async def __aenter__(self) -> "TransactionScope":
        # psycopg opens the transaction implicitly on the first statement
        try:
            if self.statement_timeout is not None:
                timeout_ms = max(1, int(self.statement_timeout * 1000))
                await self.conn.execute(
                    "SELECT set_config('statement_timeout', %s, true)", (f"{timeout_ms}ms",)
                )
        except psycopg.Error as e:
            await self.rollback()
            raise TransactionError(f"cannot begin transaction: {e}", cause=e) from e
        return self

    async def commit(self) -> None:
        self.commit_attempted = True
        try:
            await self.conn.commit()
        except psycopg.Error as e:
            raise CommitError(f"commit failed: {e}", cause=e) from e

    async def rollback(self) -> None:
        if self.rolled_back:
            return
        self.rolled_back = True
        try:
            async with asyncio.timeout(self.rollback_timeout):
                await self.conn.rollback()
            logger.debug("Transaction rolled back")
        except TimeoutError:
            logger.error(f"Rollback did not finish within {self.rollback_timeout}s")
        except psycopg.Error as e:
            logger.error(f"Rollback failed: {e}")

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.commit_attempted:
            await self.rollback()


class BulkUpsert:
    """
    A single bulk upsert call.

    ``state`` follows IDLE -> TX_OPEN -> STAGING_CREATED -> LOADED -> MERGED
    -> COMMITTED, or moves to FAILED from any non-terminal state.
    """

    def __init__(
        self,
        pool: DatabasePool,
        records: Sequence[Mapping[str, Any]],
        table: str,
        primary_key: Sequence[str],
        timeout: Timeout,
        options: Optional[UpsertOptions] = None,
    ):
        self.pool = pool
        self.records = records
        self.table = table
        self.primary_key = primary_key
        self.timeout = timeout
        self.options = options or UpsertOptions()
        self.result = UpsertResult(table=table)
        self._started = 0.0

    @property
    def state(self) -> UpsertState:
        return self.result.state

    def _transition(self, state: UpsertState) -> None:
        current = self.result.state
        if current in TERMINAL_STATES:
            raise RuntimeError(f"upsert already finished in state {current.value}")
        logger.debug(f"Upsert {self.table}: {current.value} -> {state.value}")
        self.result.state = state

    def validate(self) -> Tuple[Tuple[str, ...], Tuple[str, ...], float]:
        """Column set, primary key and timeout in seconds, or UpsertValidationError."""
        if not isinstance(self.table, str) or not self.table.strip():
            raise UpsertValidationError("table name must be a non-empty string")
        try:
            split_table_name(self.table)
        except ValueError as e:
            raise UpsertValidationError(str(e)) from e
        seconds = timeout_seconds(self.timeout)

        if isinstance(self.primary_key, str):
            raise UpsertValidationError("primary_key must be a sequence of column names, not a string")
        primary_key = tuple(dict.fromkeys(self.primary_key or ()))
        if not primary_key:
            raise UpsertValidationError("primary_key must name at least one column")

        columns: Tuple[str, ...] = ()
        if self.records:
            first = self.records[0]
            if not isinstance(first, Mapping):
                raise UpsertValidationError(f"records must be mappings, got {type(first).__name__}")
            columns = tuple(first.keys())
            if not columns:
                raise UpsertValidationError("the first record has no fields")
            missing = [col for col in primary_key if col not in columns]
            if missing:
                raise UpsertValidationError(
                    f"primary key columns not present in the records: {', '.join(missing)}"
                )
        return columns, primary_key, seconds

    async def run(self) -> UpsertResult:
        self._started = time.monotonic()
        columns, primary_key, seconds = self.validate()
        self.result.columns = columns
        self.result.primary_key = primary_key
        self.result.rows_received = len(self.records)

        if not self.records:
            logger.info(f"No records for {self.table}, nothing to do")
            return self._finish()

        records = self.records
        if self.options.normalize_strings:
            records = stringify_records(records, columns, self.options.time_column)
        batch = coerce_records(records, columns, self.options.time_column, self.options.coercion_policy)
        self.result.coercion_warnings = list(batch.warnings)
        rows, collapsed = collapse_key_conflicts(batch.rows, columns, primary_key, self.options.key_conflicts)
        self.result.duplicates_collapsed = collapsed

        with upsert_log_fields(target=self.table):
            try:
                async with asyncio.timeout(seconds):
                    await self._execute(rows, columns, primary_key, seconds)
            except TimeoutError as e:
                if isinstance(e, UpsertError):
                    self._fail()
                    raise
                stage = self.result.state.value
                self._fail()
                logger.error(f"Upsert into {self.table} timed out after {seconds}s during {stage}")
                raise UpsertTimeoutError(
                    f"upsert into {self.table} exceeded its {seconds}s timeout", stage=stage
                ) from e
            except UpsertError as e:
                self._fail()
                if e.sqlstate == "57014":
                    raise UpsertTimeoutError(
                        f"upsert into {self.table} cancelled by the server statement_timeout: {e.message}",
                        stage=e.stage,
                    ) from e
                raise
            except BaseException:
                self._fail()
                raise

        result = self._finish()
        logger.success(
            f"Upserted {result.rows_loaded} rows into {self.table} "
            f"({result.rows_merged} merged) in {result.elapsed:.3f}s"
        )
        return result

    async def _execute(self, rows, columns, primary_key, seconds: float) -> None:
        statement_timeout = seconds if self.options.server_timeout else None
        async with self.pool.connection() as conn:
            async with TransactionScope(conn, statement_timeout, self.options.rollback_timeout) as tx:
                self._transition(UpsertState.TX_OPEN)

                staging = await create_staging_table(conn, self.table, columns)
                self.result.staging_table = staging.name
                self._transition(UpsertState.STAGING_CREATED)

                with upsert_log_fields(staging=staging.name):
                    source = RecordCopySource(rows, columns)
                    self.result.rows_loaded = await copy_records(conn, staging, source, self.options.copy_format)
                    self._transition(UpsertState.LOADED)

                    self.result.rows_merged = await merge_staging(conn, self.table, staging, columns, primary_key)
                    self._transition(UpsertState.MERGED)

                    await tx.commit()
                    self._transition(UpsertState.COMMITTED)

    def _fail(self) -> None:
        if self.result.state not in TERMINAL_STATES:
            self.result.state = UpsertState.FAILED
        self.result.elapsed = time.monotonic() - self._started

    def _finish(self) -> UpsertResult:
        self.result.elapsed = time.monotonic() - self._started
        return self.result


async def bulk_upsert(
    pool: DatabasePool,
    records: Sequence[Mapping[str, Any]],
    table: str,
    primary_key: Sequence[str],
    timeout: Timeout,
    options: Optional[UpsertOptions] = None,
) -> UpsertResult:
    """
    Insert-or-update ``records`` into ``table`` in a single transaction.

    The column set is taken from the keys of the first record; rows are
    matched on ``primary_key``. ``timeout`` (seconds or a timedelta) bounds
    the whole call, connection acquisition and commit included.

    Raises an ``UpsertError`` subclass on failure; the target is then left
    unchanged.
    """
    return await BulkUpsert(pool, records, table, primary_key, timeout, options).run()
