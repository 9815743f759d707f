"""
Bulk loader: streams coerced rows into the staging table with COPY.
"""
from enum import Enum
from typing import Any, Iterator, Optional, Sequence, Tuple

import psycopg
from psycopg import sql

from pgupsert.core.errors import CoercionError, LoadError
from pgupsert.core.logger import setup_logger
from pgupsert.upsert.staging import StagingTable
from pgupsert.upsert.values import Value

logger = setup_logger(__name__, include_location=True)


class CopyFormat(str, Enum):
    AUTO = "auto"
    BINARY = "binary"
    TEXT = "text"


class RecordCopySource:
    """
    One-shot pull cursor over coerced rows.

    ``advance()`` moves to the next row and reports whether there is one,
    ``values()`` returns the current row ready for the driver and ``err()``
    the first adaptation error met, if any. Once exhausted it stays exhausted;
    reloading needs a new instance.
    """

    def __init__(
        self,
        rows: Sequence[Sequence[Value]],
        columns: Sequence[str],
        column_types: Optional[Sequence[str]] = None,
    ):
        if column_types is not None and len(column_types) != len(columns):
            raise ValueError(f"{len(column_types)} column types given for {len(columns)} columns")
        self.rows = rows
        self.columns = tuple(columns)
        self.column_types = tuple(column_types) if column_types is not None else None
        self._index = -1
        self._error: Optional[Exception] = None

    @property
    def position(self) -> int:
        """Index of the current row, -1 before the first advance()."""
        return self._index

    def advance(self) -> bool:
        if self._error is not None or self._index >= len(self.rows):
            return False
        self._index += 1
        return self._index < len(self.rows)

    def values(self) -> Tuple[Any, ...]:
        if self._index < 0 or self._index >= len(self.rows):
            raise EOFError("no current row: call advance() first or the source is exhausted")
        row = self.rows[self._index]
        try:
            if self.column_types is None:
                return tuple(value.to_wire() for value in row)
            return tuple(
                value.for_column(type_name)
                for value, type_name in zip(row, self.column_types)
            )
        except CoercionError as e:
            e.row = self._index
            self._error = e
            raise

    def err(self) -> Optional[Exception]:
        return self._error

    def __iter__(self) -> Iterator[Tuple[Any, ...]]:
        while self.advance():
            yield self.values()

    def __len__(self) -> int:
        return len(self.rows)


def _copy_type_name(conn: psycopg.AsyncConnection, type_name: str) -> Optional[str]:
    """Name usable with Copy.set_types(), or None if the driver does not know the type."""
    # pg_type names arrays with a leading underscore; the registry wants "elem[]"
    name = f"{type_name[1:]}[]" if type_name.startswith("_") else type_name
    return name if conn.adapters.types.get(name) is not None else None


def resolve_copy_types(
    conn: psycopg.AsyncConnection,
    staging: StagingTable,
    columns: Sequence[str],
    copy_format: CopyFormat = CopyFormat.AUTO,
) -> Optional[Tuple[str, ...]]:
    """
    Types for a binary COPY, or None when the load must use the text format.

    AUTO picks binary only when every staging column type is registered in
    the driver; BINARY makes an unknown type an error.
    """
    if copy_format is CopyFormat.TEXT:
        return None
    names = [_copy_type_name(conn, type_name) for type_name in staging.types_for(columns)]
    unknown = [col for col, name in zip(columns, names) if name is None]
    if not unknown:
        return tuple(names)
    if copy_format is CopyFormat.BINARY:
        raise LoadError(f"binary COPY not possible, unknown types for columns: {', '.join(unknown)}")
    logger.debug(f"Falling back to text COPY, unregistered types for: {', '.join(unknown)}")
    return None


async def copy_records(
    conn: psycopg.AsyncConnection,
    staging: StagingTable,
    source: RecordCopySource,
    copy_format: CopyFormat = CopyFormat.AUTO,
) -> int:
    """
    Stream every row of ``source`` into ``staging`` with COPY FROM STDIN.

    Returns the number of rows the server acknowledged. Server rejections and
    values that cannot be adapted to their column raise LoadError.
    """
    columns = source.columns
    copy_types = resolve_copy_types(conn, staging, columns, copy_format)
    if copy_types is not None and source.column_types is None:
        source.column_types = staging.types_for(columns)

    statement = sql.SQL("COPY {} ({}) FROM STDIN{}").format(
        staging.identifier,
        sql.SQL(", ").join(sql.Identifier(col) for col in columns),
        sql.SQL(" (FORMAT BINARY)") if copy_types is not None else sql.SQL(""),
    )
    fmt = "binary" if copy_types is not None else "text"
    logger.debug(f"COPY {len(source)} rows into {staging.name} ({fmt})")

    written = 0
    try:
        async with conn.cursor() as cur:
            async with cur.copy(statement) as copy:
                if copy_types is not None:
                    copy.set_types(list(copy_types))
                for row in source:
                    await copy.write_row(row)
                    written += 1
            rowcount = cur.rowcount
    except CoercionError as e:
        raise LoadError(f"row {e.row}: {e.message}", cause=e, row=e.row) from e
    except psycopg.Error as e:
        diag = getattr(e, "diag", None)
        detail = getattr(diag, "message_detail", None) if diag is not None else None
        message = f"COPY into {staging.name} failed: {e}"
        if detail:
            message = f"{message} ({detail})"
        logger.error(message)
        raise LoadError(message, cause=e) from e

    if rowcount is None or rowcount < 0:
        rowcount = written
    logger.debug(f"Loaded {rowcount} rows into {staging.name}")
    return rowcount
