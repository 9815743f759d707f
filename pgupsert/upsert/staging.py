"""
Staging tables: structure-only temporary clones of the target table.

A staging table lives inside the caller's transaction (``ON COMMIT DROP``),
so it disappears on commit as well as on rollback and is never visible to
other sessions.
"""
import re
import uuid
from dataclasses import dataclass, field
from typing import Dict, Sequence, Tuple

import psycopg
from psycopg import sql

from pgupsert.core.errors import SchemaError
from pgupsert.core.logger import setup_logger

logger = setup_logger(__name__, include_location=True)

STAGING_PREFIX = "temp_"
# PostgreSQL truncates identifiers longer than NAMEDATALEN - 1 bytes
MAX_IDENTIFIER_LENGTH = 63
_UNSAFE_CHARS = re.compile(r"[^a-z0-9_]+")

COLUMN_TYPES_QUERY = """
    SELECT a.attname AS column_name, t.typname AS type_name
    FROM pg_attribute a
    JOIN pg_type t ON t.oid = a.atttypid
    WHERE a.attrelid = %s::regclass
      AND a.attnum > 0
      AND NOT a.attisdropped
    ORDER BY a.attnum
"""


def split_table_name(table: str) -> Tuple[str, ...]:
    """'schema.table' -> ('schema', 'table'); quotes around parts are dropped."""
    parts = tuple(part.strip().strip('"') for part in table.split("."))
    if not parts or any(not part for part in parts) or len(parts) > 2:
        raise ValueError(f"Invalid table name: {table!r}")
    return parts


def table_identifier(table: str) -> sql.Identifier:
    return sql.Identifier(*split_table_name(table))


def staging_table_name(table: str) -> str:
    """
    Unique staging name: prefix, sanitized target name and a uuid4 hex,
    kept within the identifier length limit.
    """
    unique_id = uuid.uuid4().hex
    base = _UNSAFE_CHARS.sub("_", split_table_name(table)[-1].lower()).strip("_") or "table"
    room = MAX_IDENTIFIER_LENGTH - len(STAGING_PREFIX) - len(unique_id) - 1
    return f"{STAGING_PREFIX}{base[:room]}_{unique_id}"


@dataclass
class StagingTable:
    name: str
    target: str
    column_types: Dict[str, str] = field(default_factory=dict)

    @property
    def identifier(self) -> sql.Identifier:
        return sql.Identifier(self.name)

    def types_for(self, columns: Sequence[str]) -> Tuple[str, ...]:
        return tuple(self.column_types[col] for col in columns)


async def create_staging_table(conn: psycopg.AsyncConnection, target: str, columns: Sequence[str]) -> StagingTable:
    """
    Clone the structure of ``target`` (no rows) into a new temporary table
    and read back its column types.

    Raises SchemaError when the target does not exist, the clone is rejected
    or one of ``columns`` is not a column of the target.
    """
    staging = StagingTable(name=staging_table_name(target), target=target)
    statement = sql.SQL("CREATE TEMPORARY TABLE {} ON COMMIT DROP AS TABLE {} WITH NO DATA").format(
        staging.identifier, table_identifier(target)
    )
    logger.debug(f"Creating staging table {staging.name} from {target}")
    try:
        await conn.execute(statement)
        cur = await conn.execute(COLUMN_TYPES_QUERY, (staging.name,))
        rows = await cur.fetchall()
    except psycopg.Error as e:
        logger.error(f"Failed to create staging table for {target}: {e}")
        raise SchemaError(f"cannot create staging table for {target}: {e}", cause=e) from e

    staging.column_types = {_field(row, "column_name", 0): _field(row, "type_name", 1) for row in rows}
    missing = [col for col in columns if col not in staging.column_types]
    if missing:
        raise SchemaError(f"columns not found in {target}: {', '.join(missing)}")
    return staging


def _field(row, name: str, index: int):
    # Pool connections use dict_row; plain connections return tuples
    return row[name] if isinstance(row, dict) else row[index]
