"""SQL dialect abstraction for the job store and lock manager.

Provides a ``Dialect`` protocol and concrete implementations for the
supported backends. The store and lock manager use ``Dialect`` methods to
generate SQL fragments (placeholders, insert-if-absent, conditional
upserts, booleans) without importing a database driver.

Manifesto:
    Every node of a deployment shares one database, and that database is
    SQLite in tests and single-host setups and PostgreSQL in production.
    The lease primitive in particular must be ONE atomic statement on
    both, so its SQL is generated here rather than hand-written twice.

    - **One interface:** Dialect protocol for all SQL generation
    - **Zero coupling:** Domain code never imports database drivers
    - **Testable:** SQLiteDialect for tests, PostgreSQLDialect for prod

Architecture::

    ┌────────────────────────────────────────────────────────────────┐
    │  sql = d.conditional_upsert("job_lock", cols, ["job_id"],      │
    │                             cols[1:], "job_lock.expires_at < ?")│
    │  conn.execute(sql, params).rowcount  → 1 acquired / 0 busy     │
    └────────────────────────────────────────────────────────────────┘
                              │
                              ▼
                 ┌──────────┐      ┌──────────────┐
                 │ SQLite   │      │ PostgreSQL   │
                 │ ?, ?, ?  │      │ %s, %s, %s   │
                 └──────────┘      └──────────────┘

Examples:
    >>> d = SQLiteDialect()
    >>> d.placeholders(3)
    '?, ?, ?'

Tags:
    dialect, sql, abstraction, portability, database, jobspine

Doc-Types:
    - API Reference
    - Database Portability Guide
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class Dialect(Protocol):
    """SQL dialect contract.

    Every method returns a **SQL fragment** (string) that is valid for
    the target database.
    """

    @property
    def name(self) -> str:
        """Human-readable dialect name (e.g. ``'sqlite'``)."""
        ...

    def placeholder(self, index: int) -> str:
        """Single positional placeholder (0-based index)."""
        ...

    def placeholders(self, count: int) -> str:
        """Comma-separated placeholder list."""
        ...

    def insert_or_ignore(self, table: str, columns: list[str]) -> str:
        """``INSERT … ON CONFLICT DO NOTHING`` (or equivalent)."""
        ...

    def conditional_upsert(
        self,
        table: str,
        columns: list[str],
        key_columns: list[str],
        update_columns: list[str],
        condition: str,
    ) -> str:
        """``INSERT … ON CONFLICT (keys) DO UPDATE SET … WHERE condition``.

        The statement affects one row when the key is absent or when the
        existing row satisfies ``condition``, and zero rows otherwise.
        Placeholders inside ``condition`` bind after the VALUES list.
        """
        ...

    def boolean_true(self) -> str:
        """Literal SQL value for boolean ``True``."""
        ...

    def boolean_false(self) -> str:
        """Literal SQL value for boolean ``False``."""
        ...

    def table_exists_query(self) -> str:
        """SQL query with one placeholder returning a row if the table exists."""
        ...


# =========================================================================
# Concrete Dialect Implementations
# =========================================================================


class SQLiteDialect:
    """SQLite dialect — ``?`` placeholders. Requires SQLite 3.24+ for upserts."""

    @property
    def name(self) -> str:
        return "sqlite"

    def placeholder(self, index: int) -> str:  # noqa: ARG002
        return "?"

    def placeholders(self, count: int) -> str:
        return ", ".join("?" for _ in range(count))

    def insert_or_ignore(self, table: str, columns: list[str]) -> str:
        cols = ", ".join(columns)
        ph = self.placeholders(len(columns))
        return f"INSERT OR IGNORE INTO {table} ({cols}) VALUES ({ph})"

    def conditional_upsert(
        self,
        table: str,
        columns: list[str],
        key_columns: list[str],
        update_columns: list[str],
        condition: str,
    ) -> str:
        cols = ", ".join(columns)
        ph = self.placeholders(len(columns))
        keys = ", ".join(key_columns)
        updates = ", ".join(f"{c} = excluded.{c}" for c in update_columns)
        return (
            f"INSERT INTO {table} ({cols}) VALUES ({ph}) "
            f"ON CONFLICT ({keys}) DO UPDATE SET {updates} "
            f"WHERE {condition}"
        )

    def boolean_true(self) -> str:
        return "1"

    def boolean_false(self) -> str:
        return "0"

    def table_exists_query(self) -> str:
        return "SELECT name FROM sqlite_master WHERE type='table' AND name = ?"


class PostgreSQLDialect:
    """PostgreSQL dialect — ``%s`` placeholders (psycopg)."""

    @property
    def name(self) -> str:
        return "postgresql"

    def placeholder(self, index: int) -> str:  # noqa: ARG002
        return "%s"

    def placeholders(self, count: int) -> str:
        return ", ".join("%s" for _ in range(count))

    def insert_or_ignore(self, table: str, columns: list[str]) -> str:
        cols = ", ".join(columns)
        ph = self.placeholders(len(columns))
        return f"INSERT INTO {table} ({cols}) VALUES ({ph}) ON CONFLICT DO NOTHING"

    def conditional_upsert(
        self,
        table: str,
        columns: list[str],
        key_columns: list[str],
        update_columns: list[str],
        condition: str,
    ) -> str:
        cols = ", ".join(columns)
        ph = self.placeholders(len(columns))
        keys = ", ".join(key_columns)
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in update_columns)
        return (
            f"INSERT INTO {table} ({cols}) VALUES ({ph}) "
            f"ON CONFLICT ({keys}) DO UPDATE SET {updates} "
            f"WHERE {condition}"
        )

    def boolean_true(self) -> str:
        return "TRUE"

    def boolean_false(self) -> str:
        return "FALSE"

    def table_exists_query(self) -> str:
        return (
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = 'public' AND table_name = %s"
        )


# =========================================================================
# Registry / Factory
# =========================================================================

_DIALECTS: dict[str, Dialect] = {
    "sqlite": SQLiteDialect(),
    "postgresql": PostgreSQLDialect(),
    "postgres": PostgreSQLDialect(),  # alias
}


def get_dialect(db_type: str) -> Dialect:
    """Get a dialect by database type name.

    Args:
        db_type: One of ``'sqlite'``, ``'postgresql'``, ``'postgres'``.

    Raises:
        ValueError: If ``db_type`` is not recognised.
    """
    key = db_type.lower()
    if key not in _DIALECTS:
        raise ValueError(
            f"Unknown dialect '{db_type}'. "
            f"Supported: {sorted(set(_DIALECTS) - {'postgres'})}"
        )
    return _DIALECTS[key]


__all__ = [
    "Dialect",
    "SQLiteDialect",
    "PostgreSQLDialect",
    "get_dialect",
]
