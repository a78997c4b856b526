"""Database utilities and psycopg2 helpers for change-feed state persistence."""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Iterator, Optional, Tuple

import psycopg2
from psycopg2 import Error, OperationalError, errors, sql
from psycopg2.extras import (
    LogicalReplicationConnection as _LogicalReplicationConnection,
)
from psycopg2.pool import ThreadedConnectionPool

if TYPE_CHECKING:  # pragma: no cover - import-time helper only
    from chef_change_feed.config import Settings


class _ExecuteResult:
    def __init__(self, cursor):
        self._cursor = cursor
        self._rows: Optional[list] = None
        self._index = 0
        self._load_rows()

    def fetchone(self):
        rows = self._load_rows()
        if self._index >= len(rows):
            return None
        row = rows[self._index]
        self._index += 1
        return row

    def fetchall(self):
        rows = self._load_rows()
        remaining = rows[self._index :]
        self._index = len(rows)
        return remaining

    def __iter__(self) -> Iterator:
        rows = self._load_rows()
        start = self._index
        self._index = len(rows)
        return iter(rows[start:])

    def _load_rows(self) -> list:
        if self._rows is None:
            if self._cursor.description is not None:
                self._rows = list(self._cursor.fetchall())
            else:
                self._rows = []
            self._cursor.close()
        return self._rows


class _Transaction:
    """Groups the statements of the block into one server-side transaction.

    Connections run in autocommit mode; the block switches it off and
    restores it afterwards. A nested block leaves commit and rollback to
    the outermost one.
    """

    def __init__(self, connection):
        self._connection = connection
        self._owner = False

    def __enter__(self) -> None:
        if self._connection.autocommit:
            self._connection.autocommit = False
            self._owner = True
        return None

    def __exit__(self, exc_type, exc, tb) -> bool:
        if not self._owner:
            return False
        try:
            if exc_type is None:
                self._connection.commit()
            else:
                self._connection.rollback()
        finally:
            if not self._connection.closed:
                self._connection.autocommit = True
            self._owner = False
        return False


class Connection(psycopg2.extensions.connection):
    """psycopg2 connection subclass providing convenience helpers used by the service."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.autocommit = True

    def transaction(self) -> _Transaction:
        return _Transaction(self)

    def execute(
        self, query: Any, params: Optional[Tuple[Any, ...]] = None
    ) -> _ExecuteResult:
        cursor = self.cursor()
        cursor.execute(query, params)
        return _ExecuteResult(cursor)


class LogicalReplicationConnection(_LogicalReplicationConnection):
    """Logical replication connection with helper constructor."""

    @classmethod
    def connect(cls, dsn: str):
        return psycopg2.connect(dsn, connection_factory=cls)


def connect(*args, **kwargs) -> Connection:
    """Create a Connection instance using psycopg2."""

    kwargs.setdefault("connection_factory", Connection)
    return psycopg2.connect(*args, **kwargs)


def _connection_kwargs(settings: "Settings") -> dict:
    return {
        "host": settings.db_host,
        "port": settings.db_port,
        "dbname": settings.db_name,
        "user": settings.db_user,
        "password": settings.db_password,
        "options": f"-c search_path={settings.db_schema},public",
    }


def connect_from_settings(settings: "Settings") -> Connection:
    """Create a psycopg2 connection using the provided service settings."""

    return connect(**_connection_kwargs(settings))


def create_pool(settings: "Settings") -> ThreadedConnectionPool:
    """Create a thread-safe connection pool shared by the feed components."""

    return ThreadedConnectionPool(
        settings.db_pool_min,
        settings.db_pool_max,
        connection_factory=Connection,
        **_connection_kwargs(settings),
    )


@contextmanager
def pooled_connection(pool) -> Iterator[Connection]:
    """Borrow a connection from ``pool`` and always hand it back.

    Connections that were closed underneath us (server restart, network
    drop) are discarded instead of being returned to the pool.
    """

    conn = pool.getconn()
    try:
        yield conn
    finally:
        pool.putconn(conn, close=bool(getattr(conn, "closed", False)))


__all__ = [
    "Connection",
    "Error",
    "LogicalReplicationConnection",
    "OperationalError",
    "ThreadedConnectionPool",
    "connect",
    "connect_from_settings",
    "create_pool",
    "errors",
    "pooled_connection",
    "sql",
]
