import asyncio
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import psycopg

from pgupsert.core.common import sql_summary
from pgupsert.core.errors import UpsertError, UpsertTimeoutError
from pgupsert.core.logger import setup_logger
from pgupsert.db.pool import DatabasePool
from pgupsert.upsert.values import to_native_records

logger = setup_logger(__name__, include_location=True)

Params = Optional[Union[Sequence[Any], Mapping[str, Any]]]


async def fetch_records(
    pool: DatabasePool,
    query: str,
    params: Params = None,
    timeout: Optional[float] = None,
) -> List[Dict[str, Any]]:
    """
    Run a query and return its rows as plain dictionaries.

    Column names are the keys, NULL columns are kept with a None value and
    numeric values come back as float. Statements that return no rows give
    an empty list.
    """
    logger.debug(f"Fetching: {sql_summary(query)}")
    try:
        if timeout is None:
            return await _fetch(pool, query, params)
        async with asyncio.timeout(timeout):
            return await _fetch(pool, query, params)
    except TimeoutError as e:
        if isinstance(e, UpsertError):
            raise
        raise UpsertTimeoutError(f"query exceeded its {timeout}s timeout", stage="fetch") from e
    except psycopg.Error as e:
        logger.error(f"Query failed ({sql_summary(query)}): {e}")
        raise UpsertError(f"query failed: {e}", cause=e, stage="fetch") from e


async def _fetch(pool: DatabasePool, query: str, params: Params) -> List[Dict[str, Any]]:
    async with pool.connection() as conn:
        async with conn.transaction():
            cur = await conn.execute(query, params)
            if cur.description is None:
                return []
            rows = await cur.fetchall()
            names = [column.name for column in cur.description]
    records = [row if isinstance(row, Mapping) else dict(zip(names, row)) for row in rows]
    return to_native_records(records)
