"""
PostgreSQL connection pool.

``DatabasePool`` is constructed explicitly from a ``DatabaseConfig``, opened
once, shared by reference between concurrent callers and closed once:

    async with DatabasePool(config) as pool:
        async with pool.connection() as conn:
            ...
"""
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import psycopg
from psycopg import AsyncConnection
from psycopg.rows import dict_row, DictRow
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from pgupsert.core.config import DatabaseConfig
from pgupsert.core.errors import PoolConnectionError
from pgupsert.core.logger import setup_logger, configure_driver_logging

logger = setup_logger(__name__, include_location=True)


class DatabasePool:

    def __init__(self, config: DatabaseConfig, name: str = "pgupsert"):
        self.config = config
        self.name = name
        self._pool: Optional[AsyncConnectionPool[AsyncConnection[DictRow]]] = None
        configure_driver_logging(config.log_level)

    @property
    def is_open(self) -> bool:
        return self._pool is not None and not self._pool.closed

    async def open(self, wait: bool = True) -> "DatabasePool":
        """Create the underlying pool and, by default, wait for min_size connections."""
        if self.is_open:
            logger.debug(f"Pool {self.name} already open")
            return self
        cfg = self.config
        logger.info(
            f"Opening Postgres pool {self.name}: {cfg.host}:{cfg.port}/{cfg.dbname} | "
            f"Config: min={cfg.pool_min_size}, max={cfg.pool_max_size}, timeout={cfg.pool_timeout}s"
        )
        pool = AsyncConnectionPool(
            cfg.conninfo,
            min_size=cfg.pool_min_size,
            max_size=cfg.pool_max_size,
            timeout=cfg.pool_timeout,
            max_idle=cfg.pool_max_idle,
            max_lifetime=cfg.pool_max_lifetime,
            kwargs={"row_factory": dict_row},
            name=self.name,
            open=False,
        )
        try:
            await pool.open(wait=wait, timeout=cfg.pool_timeout)
        except PoolTimeout as e:
            await pool.close()
            raise PoolConnectionError(
                f"unable to connect to the database {cfg.host}:{cfg.port}/{cfg.dbname}: {e}", cause=e
            ) from e
        self._pool = pool
        logger.success(f"Postgres pool {self.name} opened")
        return self

    async def close(self) -> None:
        if self._pool is None:
            return
        logger.info(f"Closing Postgres pool {self.name}")
        try:
            await self._pool.close()
        finally:
            self._pool = None

    async def __aenter__(self) -> "DatabasePool":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _require_pool(self) -> AsyncConnectionPool:
        if self._pool is None:
            raise RuntimeError(f"Database pool {self.name} is not open. Call open() first.")
        return self._pool

    @asynccontextmanager
    async def connection(self, timeout: Optional[float] = None) -> AsyncIterator[AsyncConnection[DictRow]]:
        """
        Borrow a connection, returned to the pool on every exit path.

        Transactions are the borrower's business: the pool rolls back a
        connection handed back inside a transaction and discards a broken one.
        """
        pool = self._require_pool()
        acquire_start = time.monotonic()
        try:
            conn = await pool.getconn(timeout=timeout)
        except PoolTimeout as e:
            raise PoolConnectionError(
                f"no connection available from pool {self.name} "
                f"after {time.monotonic() - acquire_start:.2f}s", cause=e
            ) from e
        except psycopg.OperationalError as e:
            raise PoolConnectionError(f"database unreachable: {e}", cause=e) from e

        logger.debug(f"Connection acquired from {self.name} in {(time.monotonic() - acquire_start) * 1000:.1f}ms")
        try:
            yield conn
        finally:
            await pool.putconn(conn)
            logger.debug(f"Connection returned to {self.name}")

    async def ping(self) -> bool:
        """True when a connection can be borrowed and answers SELECT 1."""
        if not self.is_open:
            return False
        try:
            async with self.connection() as conn:
                async with conn.transaction():
                    await conn.execute("SELECT 1")
            return True
        except (PoolConnectionError, psycopg.Error) as e:
            logger.warning(f"Ping on pool {self.name} failed: {e}")
            return False

    def stats(self) -> Dict[str, int]:
        if self._pool is None:
            return {}
        pool_stats = self._pool.get_stats()
        return {
            "size": pool_stats.get("pool_size", 0),
            "available": pool_stats.get("pool_available", 0),
            "waiting": pool_stats.get("requests_waiting", 0),
        }
