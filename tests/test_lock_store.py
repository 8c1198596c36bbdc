"""
Tests for the PostgreSQL lock store.

Tests cover:
- Migration 002 file structure
- _row_to_dict conversion
- Acquire (insert, unique violation, expired lease cleanup)
- Compare-and-delete release
- Inspection and purge helpers
"""

import importlib.util
from contextlib import contextmanager
from datetime import datetime, timezone, timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from psycopg2 import errors

from lock_store import PostgresLockStore, _row_to_dict


def _db_for(cursor):
    """Build a DatabaseManager stand-in whose connections hand out ``cursor``."""
    conn = MagicMock(name="connection")
    conn.cursor.return_value = cursor

    @contextmanager
    def _conn():
        yield conn

    db = MagicMock(name="db")
    db.transaction.side_effect = _conn
    db.get_connection.side_effect = _conn
    return db


# ===========================================================================
# Test: Migration 002
# ===========================================================================


class TestMigration002:
    @pytest.fixture(autouse=True)
    def _load_migration(self):
        migration_path = Path(__file__).parent.parent / "alembic" / "versions" / "002_sync_locks.py"
        spec = importlib.util.spec_from_file_location("migration_002", migration_path)
        self.mod = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(self.mod)

    def test_migration_has_correct_revision(self):
        assert self.mod.revision == "002"
        assert self.mod.down_revision == "001"

    def test_migration_has_upgrade_and_downgrade(self):
        assert callable(getattr(self.mod, "upgrade", None))
        assert callable(getattr(self.mod, "downgrade", None))

    def test_lock_name_is_primary_key(self):
        source = (Path(__file__).parent.parent / "alembic" / "versions" / "002_sync_locks.py").read_text()
        assert "lock_name TEXT PRIMARY KEY" in source


# ===========================================================================
# Test: _row_to_dict
# ===========================================================================


class TestRowToDict:
    def test_basic_conversion(self):
        now = datetime(2026, 10, 18, 9, 0, 0, tzinfo=timezone.utc)
        d = _row_to_dict(("admin-user-sync", "abc", now, now + timedelta(minutes=30)))
        assert d["lock_name"] == "admin-user-sync"
        assert d["lock_id"] == "abc"
        assert d["created_at"].startswith("2026-10-18T09:00")
        assert d["expires_at"].startswith("2026-10-18T09:30")

    def test_none_timestamps(self):
        d = _row_to_dict(("n", "id", None, None))
        assert d["created_at"] is None
        assert d["expires_at"] is None


# ===========================================================================
# Test: acquire / release
# ===========================================================================


class TestAcquire:
    def test_inserts_lease_with_timeout(self):
        cursor = MagicMock(rowcount=0)
        store = PostgresLockStore(db=_db_for(cursor))

        assert store.acquire("admin-user-sync", "attempt-1", 30) is True

        delete_sql, delete_params = cursor.execute.call_args_list[0].args
        insert_sql, insert_params = cursor.execute.call_args_list[1].args
        assert "expires_at < now()" in delete_sql
        assert delete_params == ("admin-user-sync",)
        assert "INSERT INTO sync_locks" in insert_sql
        assert insert_params == ("admin-user-sync", "attempt-1", 30)

    def test_unique_violation_means_busy(self):
        cursor = MagicMock(rowcount=0)
        cursor.execute.side_effect = [None, errors.UniqueViolation("duplicate key")]
        store = PostgresLockStore(db=_db_for(cursor))

        assert store.acquire("admin-user-sync", "attempt-2") is False

    def test_other_database_errors_propagate(self):
        cursor = MagicMock(rowcount=0)
        cursor.execute.side_effect = [None, RuntimeError("connection lost")]
        store = PostgresLockStore(db=_db_for(cursor))

        with pytest.raises(RuntimeError, match="connection lost"):
            store.acquire("admin-user-sync", "attempt-3")


class TestRelease:
    def test_release_is_scoped_to_holder(self):
        cursor = MagicMock(rowcount=1)
        store = PostgresLockStore(db=_db_for(cursor))

        assert store.release("admin-user-sync", "attempt-1") is True

        sql, params = cursor.execute.call_args.args
        assert "lock_name = %s AND lock_id = %s" in sql
        assert params == ("admin-user-sync", "attempt-1")

    def test_release_of_replaced_lease_returns_false(self):
        cursor = MagicMock(rowcount=0)
        store = PostgresLockStore(db=_db_for(cursor))
        assert store.release("admin-user-sync", "stale-attempt") is False

    def test_force_release_ignores_holder(self):
        cursor = MagicMock(rowcount=1)
        store = PostgresLockStore(db=_db_for(cursor))

        assert store.force_release("admin-user-sync") is True
        sql, params = cursor.execute.call_args.args
        assert "lock_id" not in sql
        assert params == ("admin-user-sync",)


# ===========================================================================
# Test: inspection and purge
# ===========================================================================


class TestInspection:
    def test_get_lock_missing(self):
        cursor = MagicMock()
        cursor.fetchone.return_value = None
        store = PostgresLockStore(db=_db_for(cursor))
        assert store.get_lock("admin-user-sync") is None

    def test_list_locks_flags_expired(self):
        now = datetime.now(timezone.utc)
        cursor = MagicMock()
        cursor.fetchall.return_value = [
            ("admin-user-sync", "a1", now, now + timedelta(minutes=30), False),
            ("expired-lock-sweep", "a2", now - timedelta(hours=2), now - timedelta(hours=1), True),
        ]
        store = PostgresLockStore(db=_db_for(cursor))

        locks = store.list_locks()
        assert [l["lock_name"] for l in locks] == ["admin-user-sync", "expired-lock-sweep"]
        assert [l["expired"] for l in locks] == [False, True]


class TestPurgeExpired:
    def test_returns_deleted_count(self):
        cursor = MagicMock(rowcount=3)
        store = PostgresLockStore(db=_db_for(cursor))
        assert store.purge_expired() == 3

    def test_returns_zero_on_db_failure(self):
        db = MagicMock()
        db.transaction.side_effect = Exception("DB down")
        store = PostgresLockStore(db=db)
        assert store.purge_expired() == 0
