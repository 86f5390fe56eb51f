"""
Canonical protocol definitions for jobspine.

The store and lock manager depend on the *shape* of a DB-API style
connection, not on a driver. Any object matching :class:`Connection`
works: :class:`~jobspine.core.connection.SqliteConnection`, a raw
``sqlite3.Connection`` opened with ``check_same_thread=False``, or a
psycopg connection paired with
:class:`~jobspine.core.dialect.PostgreSQLDialect`.

Tags:
    protocol, connection, database, jobspine, contracts

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Connection(Protocol):
    """
    Minimal SYNCHRONOUS connection interface for database operations.

    ``execute`` must return a cursor-like object exposing ``fetchone()``,
    ``fetchall()`` and ``rowcount``; the lock manager and the conditional
    writes of the store decide success from ``rowcount``.

    Architecture:
        ::

            Connection Protocol:
            ┌────────────────────────────────────────────────────────┐
            │ execute(sql, params)   → cursor (fetch*, rowcount)     │
            │ executemany(sql, list) → Execute for multiple params   │
            │ commit()               → Commit transaction            │
            │ rollback()             → Rollback transaction          │
            └────────────────────────────────────────────────────────┘

    Examples:
        >>> cursor = conn.execute("SELECT id FROM job WHERE id = ?", ("job-1",))
        >>> row = cursor.fetchone()
    """

    def execute(self, sql: str, params: tuple = ()) -> Any:
        """Execute SQL statement with optional parameters. SYNC."""
        ...

    def executemany(self, sql: str, params: list[tuple]) -> Any:
        """Execute SQL statement for multiple parameter sets. SYNC."""
        ...

    def commit(self) -> None:
        """Commit current transaction. SYNC."""
        ...

    def rollback(self) -> None:
        """Rollback current transaction. SYNC."""
        ...
