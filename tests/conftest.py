import asyncio
from contextlib import asynccontextmanager
from types import SimpleNamespace

import pytest
from psycopg import sql


DEFAULT_TYPES = {
    "int2", "int4", "int8", "float4", "float8", "numeric", "bool",
    "text", "varchar", "bpchar", "timestamptz", "timestamp", "date",
    "bytea", "json", "jsonb", "uuid",
}


def _text(query):
    if isinstance(query, sql.Composable):
        return query.as_string(None)
    return query


class _FakeTypes:
    def __init__(self, names):
        self.names = set(names)

    def get(self, name):
        if isinstance(name, str) and name.endswith("[]"):
            name = name[:-2]
        return SimpleNamespace(name=name) if name in self.names else None


class _FakeCopy:
    def __init__(self, conn, cursor, statement):
        self.conn = conn
        self.cursor = cursor
        self.statement = statement
        self.types = None
        self.rows = []

    def set_types(self, types):
        self.types = list(types)

    async def write_row(self, row):
        if self.conn.copy_delay:
            await asyncio.sleep(self.conn.copy_delay)
        self.rows.append(tuple(row))

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.conn.copies.append(self)
        if exc_type is not None:
            return False
        if self.conn.copy_error is not None:
            raise self.conn.copy_error
        self.cursor.rowcount = len(self.rows)
        return False


class _FakeCursor:
    def __init__(self, conn, rows=None, columns=None, rowcount=-1):
        self.conn = conn
        self.rows = list(rows or [])
        self.description = [SimpleNamespace(name=c) for c in columns] if columns is not None else None
        self.rowcount = rowcount

    def copy(self, statement):
        self.conn.executed.append((_text(statement), None))
        return _FakeCopy(self.conn, self, statement)

    async def fetchall(self):
        return list(self.rows)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeConnection:
    """
    In-memory stand-in for psycopg.AsyncConnection.

    Statements are recorded as text in ``executed``. ``fail_on`` maps a
    substring of a statement to the exception it raises, ``results`` maps a
    substring to (columns, rows) and ``delays`` to seconds slept first.
    """

    def __init__(self, column_types=None, registered_types=DEFAULT_TYPES):
        self.column_types = dict(column_types or {})
        self.adapters = SimpleNamespace(types=_FakeTypes(registered_types))
        self.executed = []
        self.copies = []
        self.fail_on = {}
        self.results = {}
        self.delays = {}
        self.copy_error = None
        self.copy_delay = 0
        self.commit_error = None
        self.rollback_error = None
        self.merge_rowcount = None
        self.commits = 0
        self.rollbacks = 0
        self.transactions = []

    async def execute(self, query, params=None):
        text = _text(query)
        self.executed.append((text, params))
        for fragment, seconds in self.delays.items():
            if fragment in text:
                await asyncio.sleep(seconds)
        for fragment, error in self.fail_on.items():
            if fragment in text:
                raise error
        for fragment, (columns, rows) in self.results.items():
            if fragment in text:
                return _FakeCursor(self, rows, columns, rowcount=len(rows))
        if "pg_attribute" in text:
            rows = [{"column_name": k, "type_name": v} for k, v in self.column_types.items()]
            return _FakeCursor(self, rows, ["column_name", "type_name"], rowcount=len(rows))
        if text.startswith("INSERT INTO"):
            loaded = sum(len(c.rows) for c in self.copies)
            count = self.merge_rowcount if self.merge_rowcount is not None else loaded
            return _FakeCursor(self, rowcount=count)
        if text.startswith("SELECT"):
            return _FakeCursor(self, [{"set_config": params[0] if params else None}], ["set_config"], rowcount=1)
        return _FakeCursor(self)

    def cursor(self):
        return _FakeCursor(self)

    async def commit(self):
        if self.commit_error is not None:
            raise self.commit_error
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1
        if self.rollback_error is not None:
            raise self.rollback_error

    @asynccontextmanager
    async def transaction(self):
        self.transactions.append("begin")
        try:
            yield self
        except BaseException:
            self.transactions.append("rollback")
            raise
        self.transactions.append("commit")

    def statements(self):
        return [text for text, _ in self.executed]


class FakePool:
    """Stand-in for DatabasePool handing out a single FakeConnection."""

    def __init__(self, conn, acquire_error=None):
        self.conn = conn
        self.acquire_error = acquire_error
        self.acquired = 0
        self.released = 0

    @asynccontextmanager
    async def connection(self, timeout=None):
        if self.acquire_error is not None:
            raise self.acquire_error
        self.acquired += 1
        try:
            yield self.conn
        finally:
            self.released += 1


@pytest.fixture
def fake_conn():
    return FakeConnection(column_types={"id": "int4", "val": "text"})


@pytest.fixture
def fake_pool(fake_conn):
    return FakePool(fake_conn)
