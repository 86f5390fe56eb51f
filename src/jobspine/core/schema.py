"""Table definitions for the job engine.

Three tables carry all cross-node state:

- ``job`` — job definitions and their current scheduling state
- ``job_execution`` — append-only audit of every attempt
- ``job_lock`` — one lease row per claimed job

Timestamps are TEXT in the fixed-width UTC format produced by
:func:`jobspine.core.timestamps.to_iso8601`, which keeps SQL string
comparison chronological on every backend.

A NULL ``max_retries`` or ``timeout_seconds`` means the node defaults
(``default_max_retries``, ``default_timeout_seconds``) apply.

Tags:
    schema, ddl, jobspine, sqlite, postgresql

Doc-Types:
    - Schema Reference
"""

from __future__ import annotations

from jobspine.core.dialect import Dialect, SQLiteDialect
from jobspine.core.protocols import Connection

JOB_TABLE = """
CREATE TABLE IF NOT EXISTS job (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    job_type TEXT NOT NULL,
    description TEXT,
    cron_expression TEXT,
    status TEXT NOT NULL DEFAULT 'SCHEDULED',
    priority INTEGER NOT NULL DEFAULT 2,
    parameters TEXT,
    next_run_time TEXT,
    last_run_time TEXT,
    last_completion_time TEXT,
    last_failure_time TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER,
    timeout_seconds INTEGER,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    lock_id TEXT,
    lock_expires_at TEXT,
    tenant_id TEXT,
    created_by TEXT,
    updated_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1
)
"""

JOB_EXECUTION_TABLE = """
CREATE TABLE IF NOT EXISTS job_execution (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES job(id),
    job_name TEXT NOT NULL,
    job_type TEXT NOT NULL,
    tenant_id TEXT,
    start_time TEXT NOT NULL,
    end_time TEXT,
    status TEXT NOT NULL,
    error_message TEXT,
    error_stack TEXT,
    parameters TEXT,
    result TEXT,
    processing_time_ms INTEGER,
    node_id TEXT NOT NULL,
    trigger TEXT NOT NULL DEFAULT 'scheduler'
)
"""

JOB_LOCK_TABLE = """
CREATE TABLE IF NOT EXISTS job_lock (
    job_id TEXT PRIMARY KEY,
    node_id TEXT NOT NULL,
    locked_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
)
"""

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_job_due ON job (status, is_active, next_run_time)",
    "CREATE INDEX IF NOT EXISTS idx_job_tenant ON job (tenant_id)",
    "CREATE INDEX IF NOT EXISTS idx_job_type ON job (job_type)",
    "CREATE INDEX IF NOT EXISTS idx_job_execution_job ON job_execution (job_id, start_time)",
    "CREATE INDEX IF NOT EXISTS idx_job_lock_node ON job_lock (node_id)",
]

TABLES: dict[str, str] = {
    "job": JOB_TABLE,
    "job_execution": JOB_EXECUTION_TABLE,
    "job_lock": JOB_LOCK_TABLE,
}


def create_tables(conn: Connection, dialect: Dialect | None = None) -> list[str]:
    """Create the engine tables and indexes if they do not exist.

    Returns:
        Names of the tables that were missing before the call.
    """
    dialect = dialect or SQLiteDialect()
    created = []
    for name, ddl in TABLES.items():
        if not table_exists(conn, name, dialect):
            created.append(name)
        conn.execute(ddl)
    for ddl in INDEXES:
        conn.execute(ddl)
    conn.commit()
    return created


def table_exists(conn: Connection, table: str, dialect: Dialect | None = None) -> bool:
    """Check whether ``table`` exists."""
    dialect = dialect or SQLiteDialect()
    cursor = conn.execute(dialect.table_exists_query(), (table,))
    return cursor.fetchone() is not None
