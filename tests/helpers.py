"""Shared test helpers for the Entitlement Registry test suite."""

from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from unittest.mock import MagicMock

from alembic.config import Config
from alembic.script import ScriptDirectory

from directory_client import DirectoryNotFoundError, DirectoryUser
from distributed_lock import DistributedLock
from entitlement_store import EntitlementAlreadyExistsError, EntitlementNotFoundError
from role_scopes import map_scopes_to_roles, validate_roles

_PROJECT_ROOT = Path(__file__).parent.parent


def get_alembic_head() -> str:
    """Return current Alembic head revision dynamically.

    Uses project-root-based path so it works regardless of CWD.
    """
    cfg = Config(str(_PROJECT_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    return ScriptDirectory.from_config(cfg).get_current_head()


def member(user_id: str, display_name: Optional[str] = None, email: Optional[str] = None) -> DirectoryUser:
    return DirectoryUser(
        id=user_id,
        display_name=display_name or f"User {user_id}",
        email=email or f"{user_id}@example.com",
    )


class InMemoryLock(DistributedLock):
    """Lease table kept in a dict; acquire fails while a name is present."""

    def __init__(self, fail_release: bool = False):
        self.locks: Dict[str, str] = {}
        self.fail_release = fail_release
        self.acquire_calls = 0
        self.release_calls = 0

    def acquire(self, lock_name, lock_id, timeout_minutes=30):
        self.acquire_calls += 1
        if lock_name in self.locks:
            return False
        self.locks[lock_name] = lock_id
        return True

    def release(self, lock_name, lock_id):
        self.release_calls += 1
        if self.fail_release:
            raise ConnectionError("lock store unreachable")
        if self.locks.get(lock_name) == lock_id:
            del self.locks[lock_name]
            return True
        return False


class FakeDirectory:
    """Directory returning a fixed membership and user set."""

    def __init__(self, members: Iterable[DirectoryUser] = (), users: Iterable[DirectoryUser] = ()):
        self.members = list(members)
        self.users = {u.id: u for u in users}
        self.group_calls: List[str] = []

    def get_group_members(self, group_id):
        self.group_calls.append(group_id)
        return list(self.members)

    def get_user_by_email(self, email):
        for user in self.users.values():
            if user.email == email:
                return user
        raise DirectoryNotFoundError("User not found: looking up user by email")

    def validate_user(self, user_id):
        if user_id not in self.users:
            raise DirectoryNotFoundError("User not found: validating user")
        return self.users[user_id]


class FakeDB:
    """Transaction provider whose connections record savepoint SQL."""

    def __init__(self, commit_error: Optional[Exception] = None):
        self.commit_error = commit_error
        self.transactions = 0
        self.commits = 0
        self.rollbacks = 0
        self.connection = MagicMock(name="connection")

    @contextmanager
    def transaction(self):
        self.transactions += 1
        try:
            yield self.connection
            if self.commit_error is not None:
                raise self.commit_error
            self.commits += 1
        except Exception:
            self.rollbacks += 1
            raise

    def health_check(self):
        return {"status": "healthy", "postgres_version": "PostgreSQL 16", "total_users": 0}


class InMemoryEntitlementStore:
    """Entitlement store backed by a dict, counting every write."""

    def __init__(self, records: Iterable[Dict] = (), fail_for: Iterable[str] = ()):
        self.records: Dict[str, Dict] = {}
        for r in records:
            roles = list(r["roles"])
            self.records[r["user_id"]] = {**r, "roles": roles, "scopes": map_scopes_to_roles(roles)}
        self.fail_for = set(fail_for)
        self.writes: List[tuple] = []
        self.get_all_calls = 0

    def _check(self, user_id):
        if user_id in self.fail_for:
            raise RuntimeError(f"write rejected for {user_id}")

    def get_all(self, limit=None):
        self.get_all_calls += 1
        records = [dict(r) for r in self.records.values()]
        return records[:limit] if limit is not None else records

    def find(self, user_id):
        record = self.records.get(user_id)
        return dict(record) if record else None

    def get(self, user_id):
        record = self.find(user_id)
        if record is None:
            raise EntitlementNotFoundError(user_id)
        return record

    def create(self, record, conn=None):
        user_id = record["user_id"]
        self._check(user_id)
        if user_id in self.records:
            raise EntitlementAlreadyExistsError(user_id)
        roles = validate_roles(record.get("roles") or [])
        stored = {
            "user_id": user_id,
            "email": record.get("email"),
            "display_name": record.get("display_name"),
            "roles": roles,
            "scopes": map_scopes_to_roles(roles),
        }
        self.records[user_id] = stored
        self.writes.append(("create", user_id))
        return dict(stored)

    def update(self, user_id, fields, conn=None):
        self._check(user_id)
        if user_id not in self.records:
            raise EntitlementNotFoundError(user_id)
        stored = self.records[user_id]
        for key in ("email", "display_name"):
            if key in fields:
                stored[key] = fields[key]
        if "roles" in fields:
            stored["roles"] = validate_roles(fields["roles"])
            stored["scopes"] = map_scopes_to_roles(stored["roles"])
        self.writes.append(("update", user_id))
        return dict(stored)

    def remove(self, user_id, conn=None):
        if self.records.pop(user_id, None) is None:
            raise EntitlementNotFoundError(user_id)
        self.writes.append(("remove", user_id))
