"""
Entitlement Store module.

Per-user CRUD over the ``user_entitlements`` table. Each record maps a
directory object id to its roles and the scopes derived from them.

Scopes are computed here from ``roles`` on every write, so no caller can
store a scope set that disagrees with the record's roles. Mutating calls
accept the connection of an open transaction; without one they run in
their own transaction.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg2 import errors

from role_scopes import map_scopes_to_roles, validate_roles

logger = logging.getLogger(__name__)

# Page size for the list endpoint
MAX_RESULTS = 1000

_COLUMNS = (
    "user_id", "email", "display_name", "roles", "scopes",
    "created_at", "updated_at",
)

_UPDATABLE = ("email", "display_name", "roles")


class EntitlementError(Exception):
    """Base exception for entitlement store errors."""
    pass


class EntitlementNotFoundError(EntitlementError):
    """Raised when no record exists for a user id."""

    def __init__(self, user_id: str):
        super().__init__(f"User with ID '{user_id}' not found")
        self.user_id = user_id


class EntitlementAlreadyExistsError(EntitlementError):
    """Raised when creating a record for a user id that already exists."""

    def __init__(self, user_id: str):
        super().__init__(f"User with ID '{user_id}' already exists")
        self.user_id = user_id


def _row_to_dict(row) -> Dict[str, Any]:
    """Convert a DB row tuple to a dict with ISO timestamps."""
    d = dict(zip(_COLUMNS, row))
    d["roles"] = list(d.get("roles") or [])
    d["scopes"] = list(d.get("scopes") or [])
    for ts_key in ("created_at", "updated_at"):
        val = d.get(ts_key)
        if isinstance(val, datetime):
            d[ts_key] = val.isoformat()
    return d


class EntitlementStore:
    """Repository for user entitlement records."""

    def __init__(self, db=None):
        if db is None:
            from database import get_db_manager
            db = get_db_manager()
        self._db = db

    @contextmanager
    def _write_connection(self, conn):
        """Use the caller's transaction, or open one for a standalone write."""
        if conn is not None:
            yield conn
            return
        with self._db.transaction() as own:
            yield own

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get_all(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return all records, most recently updated first."""
        query = "SELECT {cols} FROM user_entitlements ORDER BY updated_at DESC".format(
            cols=", ".join(_COLUMNS)
        )
        params: list = []
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)

        with self._db.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            rows = cursor.fetchall()
            cursor.close()
        return [_row_to_dict(row) for row in rows]

    def find(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Return the record for ``user_id``, or None if there is none."""
        with self._db.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT {cols} FROM user_entitlements WHERE user_id = %s".format(
                    cols=", ".join(_COLUMNS)
                ),
                (user_id,),
            )
            row = cursor.fetchone()
            cursor.close()
        return _row_to_dict(row) if row else None

    def get(self, user_id: str) -> Dict[str, Any]:
        """Return the record for ``user_id``.

        Raises:
            EntitlementNotFoundError: If no record exists.
        """
        record = self.find(user_id)
        if record is None:
            raise EntitlementNotFoundError(user_id)
        return record

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def create(self, record: Dict[str, Any], conn=None) -> Dict[str, Any]:
        """Insert a new record. ``scopes`` is derived from ``roles``.

        Raises:
            EntitlementAlreadyExistsError: If the user id is already present.
            ValueError: If the record has no user id or an unknown role.
        """
        user_id = record.get("user_id")
        if not user_id:
            raise ValueError("user_id is required")
        roles = validate_roles(record.get("roles") or [])
        scopes = map_scopes_to_roles(roles)

        try:
            with self._write_connection(conn) as c:
                cursor = c.cursor()
                cursor.execute(
                    """
                    INSERT INTO user_entitlements (user_id, email, display_name, roles, scopes)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING {cols}
                    """.format(cols=", ".join(_COLUMNS)),
                    (user_id, record.get("email"), record.get("display_name"), roles, scopes),
                )
                row = cursor.fetchone()
                cursor.close()
        except errors.UniqueViolation as e:
            logger.info("Creating user %s failed - user already exists", user_id)
            raise EntitlementAlreadyExistsError(user_id) from e

        logger.info("User created with ID %s", user_id)
        return _row_to_dict(row)

    def update(self, user_id: str, fields: Dict[str, Any], conn=None) -> Dict[str, Any]:
        """Update ``email``, ``display_name`` and/or ``roles``.

        Passing ``roles`` replaces the role set and recomputes scopes.

        Raises:
            EntitlementNotFoundError: If no record exists.
            ValueError: On unknown fields, an explicit ``scopes`` value or
                an unknown role.
        """
        unknown = set(fields) - set(_UPDATABLE) - {"user_id"}
        if "scopes" in unknown:
            raise ValueError("scopes are derived from roles and cannot be set directly")
        if unknown:
            raise ValueError(f"Unknown fields: {', '.join(sorted(unknown))}")

        sets = []
        params: list = []
        for column in _UPDATABLE:
            if column not in fields:
                continue
            if column == "roles":
                roles = validate_roles(fields["roles"] or [])
                sets.append("roles = %s")
                params.append(roles)
                sets.append("scopes = %s")
                params.append(map_scopes_to_roles(roles))
            else:
                sets.append(f"{column} = %s")
                params.append(fields[column])

        if not sets:
            return self.get(user_id)

        sets.append("updated_at = now()")
        params.append(user_id)

        with self._write_connection(conn) as c:
            cursor = c.cursor()
            cursor.execute(
                f"UPDATE user_entitlements SET {', '.join(sets)} WHERE user_id = %s "
                f"RETURNING {', '.join(_COLUMNS)}",
                params,
            )
            row = cursor.fetchone()
            cursor.close()

        if not row:
            raise EntitlementNotFoundError(user_id)

        logger.info("User with ID %s updated", user_id)
        return _row_to_dict(row)

    def remove(self, user_id: str, conn=None) -> None:
        """Delete the record for ``user_id``.

        Raises:
            EntitlementNotFoundError: If no record was deleted.
        """
        with self._write_connection(conn) as c:
            cursor = c.cursor()
            cursor.execute("DELETE FROM user_entitlements WHERE user_id = %s", (user_id,))
            deleted = cursor.rowcount
            cursor.close()

        if deleted != 1:
            raise EntitlementNotFoundError(user_id)

        logger.info("Removed user with ID %s", user_id)
