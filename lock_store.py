"""
Lock Store module.

Persists exclusive leases in the ``sync_locks`` table. Exactly one row
may exist per ``lock_name`` (PRIMARY KEY), so a plain INSERT is an atomic
acquire across every replica sharing the database. Leases carry an
``expires_at`` so a holder that crashed without releasing is cleared
by the next acquire of the same name or by the periodic sweep.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg2 import errors

from distributed_lock import DistributedLock

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MINUTES = 30

_COLUMNS = ("lock_name", "lock_id", "created_at", "expires_at")


def _row_to_dict(row) -> Dict[str, Any]:
    """Convert a DB row tuple to a dict with ISO timestamps."""
    d = dict(zip(_COLUMNS, row))
    for ts_key in ("created_at", "expires_at"):
        ts = d.get(ts_key)
        if isinstance(ts, datetime):
            d[ts_key] = ts.isoformat()
    return d


class PostgresLockStore(DistributedLock):
    """Lease records in PostgreSQL, keyed by lock name."""

    def __init__(self, db=None):
        if db is None:
            from database import get_db_manager
            db = get_db_manager()
        self._db = db

    # -----------------------------------------------------------------------
    # Acquire / Release
    # -----------------------------------------------------------------------

    def acquire(
        self,
        lock_name: str,
        lock_id: str,
        timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES,
    ) -> bool:
        """Insert a lease for ``lock_name`` owned by ``lock_id``.

        An expired lease for the same name is removed in the same
        transaction first. Returns False when a live lease already
        exists; any other database error propagates.
        """
        try:
            with self._db.transaction() as conn:
                cur = conn.cursor()
                cur.execute(
                    "DELETE FROM sync_locks WHERE lock_name = %s AND expires_at < now()",
                    (lock_name,),
                )
                if cur.rowcount > 0:
                    logger.warning("Removed expired lease for '%s' before acquire", lock_name)
                cur.execute(
                    """
                    INSERT INTO sync_locks (lock_name, lock_id, created_at, expires_at)
                    VALUES (%s, %s, now(), now() + (%s * interval '1 minute'))
                    """,
                    (lock_name, lock_id, timeout_minutes),
                )
                cur.close()
        except errors.UniqueViolation:
            logger.debug("Lock '%s' is held by another process", lock_name)
            return False

        logger.debug("Acquired lock '%s' (%s)", lock_name, lock_id)
        return True

    def release(self, lock_name: str, lock_id: str) -> bool:
        """Delete the lease only if ``lock_id`` is still its holder.

        Returns True if a lease was removed. A False result means the
        lease had already expired and been replaced or swept.
        """
        with self._db.transaction() as conn:
            cur = conn.cursor()
            cur.execute(
                "DELETE FROM sync_locks WHERE lock_name = %s AND lock_id = %s",
                (lock_name, lock_id),
            )
            deleted = cur.rowcount > 0
            cur.close()

        if not deleted:
            logger.warning(
                "Lock '%s' was no longer held by %s at release", lock_name, lock_id
            )
        return deleted

    def force_release(self, lock_name: str) -> bool:
        """Delete a lease regardless of holder (admin operation)."""
        with self._db.transaction() as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM sync_locks WHERE lock_name = %s", (lock_name,))
            deleted = cur.rowcount > 0
            cur.close()
        return deleted

    # -----------------------------------------------------------------------
    # Query
    # -----------------------------------------------------------------------

    def get_lock(self, lock_name: str) -> Optional[Dict[str, Any]]:
        """Return the current lease for ``lock_name``, expired or not."""
        with self._db.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT {cols} FROM sync_locks WHERE lock_name = %s".format(
                    cols=", ".join(_COLUMNS)
                ),
                (lock_name,),
            )
            row = cur.fetchone()
            cur.close()
        return _row_to_dict(row) if row else None

    def list_locks(self) -> List[Dict[str, Any]]:
        """List every lease, with an ``expired`` flag for stale ones."""
        with self._db.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT {cols}, expires_at < now() FROM sync_locks "
                "ORDER BY created_at DESC".format(cols=", ".join(_COLUMNS))
            )
            rows = cur.fetchall()
            cur.close()

        locks = []
        for row in rows:
            d = _row_to_dict(row[:len(_COLUMNS)])
            d["expired"] = bool(row[len(_COLUMNS)])
            locks.append(d)
        return locks

    # -----------------------------------------------------------------------
    # Cleanup
    # -----------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Remove all expired leases.

        Returns:
            Number of expired leases removed.
        """
        try:
            with self._db.transaction() as conn:
                cur = conn.cursor()
                cur.execute("DELETE FROM sync_locks WHERE expires_at < now()")
                deleted = cur.rowcount
                cur.close()
        except Exception as e:
            logger.warning("Failed to purge expired locks: %s", e)
            return 0

        if deleted > 0:
            logger.info("Purged %d expired locks", deleted)
        return deleted
