"""SQLite connection adapter.

Wraps a raw :class:`sqlite3.Connection` to satisfy the
:class:`~jobspine.core.protocols.Connection` protocol and to be shared
safely by the poll thread and the attempt threads of one node.

Each ``execute`` runs under a lock and returns a materialised
:class:`QueryResult`, so no cursor is ever shared between threads. The
connection runs in autocommit mode: every engine mutation is a single
conditional statement, so each statement is its own transaction and
``commit()`` is kept only to satisfy the protocol.

Usage::

    from jobspine.core.connection import SqliteConnection

    conn = SqliteConnection(":memory:")
    conn.execute("CREATE TABLE t (id INTEGER)")
    conn.execute("INSERT INTO t VALUES (?)", (1,))
    row = conn.execute("SELECT * FROM t").fetchone()
    conn.close()
"""

from __future__ import annotations

import sqlite3
import threading
from typing import Any

from jobspine.core.dialect import Dialect, SQLiteDialect
from jobspine.core.errors import ConfigError


class QueryResult:
    """Rows and rowcount of one executed statement."""

    def __init__(self, rows: list[Any], rowcount: int, lastrowid: int | None = None) -> None:
        self._rows = rows
        self._pos = 0
        self.rowcount = rowcount
        self.lastrowid = lastrowid

    def fetchone(self) -> Any:
        if self._pos >= len(self._rows):
            return None
        row = self._rows[self._pos]
        self._pos += 1
        return row

    def fetchall(self) -> list:
        rows = self._rows[self._pos:]
        self._pos = len(self._rows)
        return rows


class SqliteConnection:
    """Adapter: ``sqlite3.Connection`` → ``Connection`` protocol.

    ``timeout`` is SQLite's busy timeout, which lets several nodes (each
    with its own adapter) share one database file.
    """

    def __init__(
        self,
        path: str = ":memory:",
        *,
        timeout: float = 30.0,
        row_factory: Any = None,
    ) -> None:
        self._conn = sqlite3.connect(
            path,
            timeout=timeout,
            check_same_thread=False,
            isolation_level=None,
        )
        if row_factory is not None:
            self._conn.row_factory = row_factory
        self._lock = threading.RLock()
        self._last: QueryResult | None = None
        self.path = path

    # -- Connection protocol -----------------------------------------------

    def execute(self, sql: str, params: tuple | list = ()) -> QueryResult:
        with self._lock:
            cursor = self._conn.execute(sql, tuple(params))
            rows = cursor.fetchall() if cursor.description else []
            self._last = QueryResult(rows, cursor.rowcount, cursor.lastrowid)
            return self._last

    def executemany(self, sql: str, params: list[tuple]) -> QueryResult:
        with self._lock:
            cursor = self._conn.executemany(sql, params)
            self._last = QueryResult([], cursor.rowcount, cursor.lastrowid)
            return self._last

    def executescript(self, script: str) -> None:
        with self._lock:
            self._conn.executescript(script)

    def fetchone(self) -> Any:
        return self._last.fetchone() if self._last else None

    def fetchall(self) -> list:
        return self._last.fetchall() if self._last else []

    def commit(self) -> None:
        with self._lock:
            if self._conn.in_transaction:
                self._conn.commit()

    def rollback(self) -> None:
        with self._lock:
            if self._conn.in_transaction:
                self._conn.rollback()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -- convenience -------------------------------------------------------

    @property
    def raw(self) -> sqlite3.Connection:
        """Access the underlying ``sqlite3.Connection`` (e.g. for pragmas)."""
        return self._conn

    def __repr__(self) -> str:
        return f"SqliteConnection({self.path!r})"


def open_connection(database_url: str) -> tuple[SqliteConnection, Dialect]:
    """Open the connection named by ``database_url``.

    Accepts ``sqlite:///relative.db``, ``sqlite:////abs/path.db``,
    ``sqlite://`` / ``:memory:`` and bare file paths. PostgreSQL
    deployments construct their own driver connection and pass it with
    :class:`~jobspine.core.dialect.PostgreSQLDialect`.

    Raises:
        ConfigError: For unsupported URL schemes.
    """
    url = database_url.strip()
    if url in ("sqlite://", "sqlite:///:memory:", ":memory:"):
        path = ":memory:"
    elif url.startswith("sqlite:///"):
        path = url[len("sqlite:///"):]
    elif "://" in url:
        raise ConfigError(
            f"Unsupported database URL {database_url!r}; only sqlite URLs can be opened directly"
        )
    else:
        path = url

    conn = SqliteConnection(path)
    if path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
    return conn, SQLiteDialect()
