"""Lease manager for jobs.

Manifesto:
    Multiple nodes must never execute the same job simultaneously. A lease
    is a ``(job_id, node_id, expires_at)`` row in a shared table, claimed
    with ONE atomic "insert, or take over if expired" statement. Crashed
    nodes never cause permanent deadlocks because their leases expire.
    Lease operations never bump the job's ``version``; they are a lower
    layer than the optimistic job writes.

Tags:
    jobspine, scheduling, distributed-locks, leases, TTL, concurrency

Doc-Types:
    api-reference, architecture-diagram


    Lease Flow::

        Node A                         job_lock                    Node B
          │  acquire(X, A, ttl)           │                          │
          │──────────────────────────────►│ INSERT X → A  (1 row)    │
          │                               │   acquire(X, B, ttl)     │
          │                               │◄─────────────────────────│
          │                               │ conflict, not expired    │
          │                               │ → 0 rows → False         │
          │  refresh(X, A, ttl)           │                          │
          │──────────────────────────────►│ expires_at pushed out    │
          │  release(X, A)                │                          │
          │──────────────────────────────►│ DELETE WHERE node = A    │

        TTL: an unreleased lease simply expires and the next acquire
        takes the row over in the same single statement.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

from jobspine.core.dialect import Dialect, SQLiteDialect
from jobspine.core.logging import get_logger
from jobspine.core.protocols import Connection
from jobspine.core.timestamps import from_iso8601, to_iso8601, utc_now

from .models import JobLock

logger = get_logger(__name__)

_LOCK_COLUMNS = ["job_id", "node_id", "locked_at", "expires_at"]


class LockManager:
    """Database-backed expiring leases keyed by job id.

    Example:
        >>> locks = LockManager(conn)
        >>> if locks.acquire("job-123", "node-a", ttl_seconds=600):
        ...     try:
        ...         pass  # run the job
        ...     finally:
        ...         locks.release("job-123", "node-a")
        ... else:
        ...     print("Another node holds the lease")
    """

    def __init__(
        self,
        conn: Connection,
        dialect: Dialect | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize lease manager.

        Args:
            conn: Database connection
            dialect: SQL dialect for portable queries
            clock: Source of "now" for lease timestamps
        """
        self.conn = conn
        self.dialect: Dialect = dialect or SQLiteDialect()
        self.clock = clock

    def _ph(self) -> str:
        return self.dialect.placeholder(0)

    # === Lease operations ===

    def acquire(self, job_id: str, node_id: str, ttl_seconds: float) -> bool:
        """Claim the lease of ``job_id`` for ``node_id``.

        A single "insert or update-if-expired" statement: it succeeds when
        no row exists or the existing row has expired, and affects no row
        when a live lease exists (including one held by ``node_id`` itself).

        Returns:
            True if the lease was acquired, False on contention
        """
        now = self.clock()
        expires = now + timedelta(seconds=ttl_seconds)
        sql = self.dialect.conditional_upsert(
            "job_lock",
            _LOCK_COLUMNS,
            key_columns=["job_id"],
            update_columns=["node_id", "locked_at", "expires_at"],
            condition=f"job_lock.expires_at < {self._ph()}",
        )
        try:
            cursor = self.conn.execute(
                sql,
                (job_id, node_id, to_iso8601(now), to_iso8601(expires), to_iso8601(now)),
            )
            self.conn.commit()
        except Exception:
            logger.exception("lease_acquire_failed", job_id=job_id, node_id=node_id)
            self.conn.rollback()
            return False

        if cursor.rowcount > 0:
            logger.debug("lease_acquired", job_id=job_id, node_id=node_id, ttl_seconds=ttl_seconds)
            return True

        logger.debug("lease_busy", job_id=job_id, node_id=node_id)
        return False

    def release(self, job_id: str, node_id: str) -> bool:
        """Release the lease if ``node_id`` still owns it.

        A node whose lease expired and was taken over gets False; that is
        not an error.

        Returns:
            True if released, False if not held by ``node_id``
        """
        try:
            cursor = self.conn.execute(
                f"DELETE FROM job_lock WHERE job_id = {self._ph()} AND node_id = {self._ph()}",
                (job_id, node_id),
            )
            self.conn.commit()
        except Exception:
            logger.exception("lease_release_failed", job_id=job_id, node_id=node_id)
            self.conn.rollback()
            return False

        if cursor.rowcount > 0:
            logger.debug("lease_released", job_id=job_id, node_id=node_id)
            return True
        logger.debug("lease_release_noop", job_id=job_id, node_id=node_id)
        return False

    def refresh(self, job_id: str, node_id: str, ttl_seconds: float) -> bool:
        """Extend the expiry of a lease still owned by ``node_id``.

        Long-running workers call this periodically so the lease does not
        expire mid-execution. The expiry only ever moves forward: a TTL
        shorter than what is left keeps the current expiry.

        Returns:
            True if the lease is still ours, False otherwise
        """
        expires = to_iso8601(self.clock() + timedelta(seconds=ttl_seconds))
        try:
            cursor = self.conn.execute(
                f"UPDATE job_lock SET expires_at = "
                f"CASE WHEN expires_at < {self._ph()} THEN {self._ph()} ELSE expires_at END "
                f"WHERE job_id = {self._ph()} AND node_id = {self._ph()}",
                (expires, expires, job_id, node_id),
            )
            self.conn.commit()
        except Exception:
            logger.exception("lease_refresh_failed", job_id=job_id, node_id=node_id)
            self.conn.rollback()
            return False

        if cursor.rowcount > 0:
            logger.debug("lease_refreshed", job_id=job_id, node_id=node_id)
            return True
        logger.warning("lease_lost", job_id=job_id, node_id=node_id)
        return False

    # === Inspection ===

    def get_lock(self, job_id: str) -> JobLock | None:
        """Lease row for ``job_id`` (expired or not)."""
        cursor = self.conn.execute(
            f"SELECT job_id, node_id, locked_at, expires_at FROM job_lock WHERE job_id = {self._ph()}",
            (job_id,),
        )
        row = cursor.fetchone()
        return self._row_to_lock(row) if row else None

    def is_locked(self, job_id: str) -> bool:
        """Check if a live lease exists for ``job_id`` (held by any node)."""
        return self.get_lock_holder(job_id) is not None

    def get_lock_holder(self, job_id: str) -> str | None:
        """Node holding a live lease on ``job_id``, or None."""
        cursor = self.conn.execute(
            f"SELECT node_id FROM job_lock WHERE job_id = {self._ph()} AND expires_at >= {self._ph()}",
            (job_id, to_iso8601(self.clock())),
        )
        row = cursor.fetchone()
        return row[0] if row else None

    def list_active_locks(self) -> list[JobLock]:
        """All non-expired leases, oldest first."""
        cursor = self.conn.execute(
            f"""
            SELECT job_id, node_id, locked_at, expires_at
            FROM job_lock
            WHERE expires_at >= {self._ph()}
            ORDER BY locked_at
            """,
            (to_iso8601(self.clock()),),
        )
        return [self._row_to_lock(row) for row in cursor.fetchall()]

    # === Maintenance ===

    def cleanup_expired_locks(self) -> int:
        """Remove all expired leases.

        Returns:
            Number of leases removed
        """
        cursor = self.conn.execute(
            f"DELETE FROM job_lock WHERE expires_at < {self._ph()}",
            (to_iso8601(self.clock()),),
        )
        self.conn.commit()

        count = cursor.rowcount
        if count > 0:
            logger.info("expired_leases_removed", count=count)
        return count

    def release_all_for_node(self, node_id: str) -> int:
        """Delete every lease row held by ``node_id`` (crash recovery).

        Returns:
            Number of leases released
        """
        cursor = self.conn.execute(
            f"DELETE FROM job_lock WHERE node_id = {self._ph()}",
            (node_id,),
        )
        self.conn.commit()
        count = cursor.rowcount
        if count > 0:
            logger.warning("node_leases_released", node_id=node_id, count=count)
        return count

    @staticmethod
    def _row_to_lock(row: tuple) -> JobLock:
        job_id, node_id, locked_at, expires_at = row
        return JobLock(
            job_id=job_id,
            node_id=node_id,
            locked_at=from_iso8601(locked_at),  # type: ignore[arg-type]
            expires_at=from_iso8601(expires_at),  # type: ignore[arg-type]
        )
