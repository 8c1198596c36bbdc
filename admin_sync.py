"""
Admin user synchronization.

Reconciles the members of the role editor directory group with the
entitlement registry: every member ends up with exactly the ``admin``
role. Runs under the ``admin-user-sync`` lease so that only one replica
reconciles at a time.

The same bulk-read / one-transaction / savepoint-per-member shape backs
the one-off migration of a directory group into the registry.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from database import savepoint
from directory_client import DirectoryConfigurationError
from distributed_lock import with_lock
from role_scopes import (
    ROLE_ADMIN,
    ROLE_FORM_CREATOR,
    is_exactly_admin,
    map_scopes_to_roles,
    validate_roles,
)

logger = logging.getLogger(__name__)

ADMIN_SYNC_LOCK_NAME = "admin-user-sync"

OUTCOME_CREATED = "created"
OUTCOME_UPDATED = "updated"
OUTCOME_UNCHANGED = "unchanged"


@dataclass
class ReconciliationResult:
    """Per-member outcomes of one reconciliation or migration run."""
    successful: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.successful) + len(self.failed) + len(self.skipped)

    def summary(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "successful": len(self.successful),
            "failed": len(self.failed),
            "skipped": len(self.skipped),
        }

    def to_dict(self, status: str = "completed") -> Dict[str, Any]:
        return {
            "status": status,
            "summary": self.summary(),
            "results": {
                "successful": self.successful,
                "failed": self.failed,
                "skipped": self.skipped,
            },
        }


def _member_entry(member, **extra) -> Dict[str, Any]:
    entry = {
        "user_id": member.id,
        "display_name": member.display_name,
        "email": member.email,
    }
    entry.update(extra)
    return entry


class AdminUserSync:
    """Keeps admin entitlements in line with the role editor group."""

    def __init__(self, directory=None, store=None, db=None, lock=None, config=None):
        if config is None:
            from config import get_config
            config = get_config()
        if db is None:
            from database import get_db_manager
            db = get_db_manager()
        if store is None:
            from entitlement_store import EntitlementStore
            store = EntitlementStore(db)
        if lock is None:
            from lock_store import PostgresLockStore
            lock = PostgresLockStore(db)
        self.config = config
        self._db = db
        self._store = store
        self._lock = lock
        self._directory = directory

    @property
    def directory(self):
        if self._directory is None:
            from directory_client import get_directory_client
            self._directory = get_directory_client()
        return self._directory

    # -----------------------------------------------------------------------
    # Per-member processing
    # -----------------------------------------------------------------------

    def process_admin_user(self, member, conn, existing_users: Dict[str, Dict[str, Any]]) -> str:
        """
        Make one group member an admin.

        Creates the record if absent and overwrites any other role set
        with exactly ``[admin]``. A record that is already admin-only is
        left untouched.

        Returns:
            One of ``created``, ``updated`` or ``unchanged``
        """
        existing = existing_users.get(member.id)

        if existing is None:
            record = self._store.create(
                {
                    "user_id": member.id,
                    "email": member.email,
                    "display_name": member.display_name,
                    "roles": [ROLE_ADMIN],
                },
                conn,
            )
            existing_users[member.id] = record
            logger.info("Created admin user: %s (%s)", member.id, member.display_name)
            return OUTCOME_CREATED

        previous = existing.get("roles") or []
        if is_exactly_admin(previous):
            logger.info("User already has correct admin privileges: %s", member.id)
            return OUTCOME_UNCHANGED

        record = self._store.update(member.id, {"roles": [ROLE_ADMIN]}, conn)
        existing_users[member.id] = record
        logger.info(
            "Updated user to admin role only: %s (previous roles: %s)",
            member.id, ", ".join(previous),
        )
        return OUTCOME_UPDATED

    def _existing_users_by_id(self) -> Dict[str, Dict[str, Any]]:
        all_users = self._store.get_all()
        logger.info("Found %d existing users in database", len(all_users))
        return {u["user_id"]: u for u in all_users if u.get("user_id")}

    def process_all_admin_users(self, group_members: List[Any]) -> ReconciliationResult:
        """
        Reconcile every group member inside a single transaction.

        A member that fails is rolled back to its savepoint, recorded in
        ``failed`` and skipped. A failure of the transaction itself
        (connection loss, commit) propagates.
        """
        existing_users = self._existing_users_by_id()
        admin_scopes = map_scopes_to_roles([ROLE_ADMIN])
        result = ReconciliationResult()

        with self._db.transaction() as conn:
            for index, member in enumerate(group_members):
                try:
                    with savepoint(conn, f"admin_sync_member_{index}"):
                        outcome = self.process_admin_user(member, conn, existing_users)
                except Exception as e:
                    logger.error("Failed to process admin user %s: %s", member.id, e)
                    result.failed.append(_member_entry(member, error=str(e)))
                    continue

                if outcome == OUTCOME_UNCHANGED:
                    result.skipped.append(
                        _member_entry(member, reason="User already has correct admin privileges")
                    )
                else:
                    result.successful.append(
                        _member_entry(member, roles=[ROLE_ADMIN], scopes=admin_scopes, action=outcome)
                    )

        return result

    # -----------------------------------------------------------------------
    # Sync entry points
    # -----------------------------------------------------------------------

    async def sync_admin_users_internal(self) -> ReconciliationResult:
        """Reconcile the role editor group. Caller must hold the sync lease."""
        group_id = self.config.role_editor_group_id

        logger.info("[AdminUserSync] Syncing admin users from role editor group: %s", group_id)

        try:
            if not group_id:
                raise DirectoryConfigurationError("ROLE_EDITOR_GROUP_ID is not configured")

            group_members = await asyncio.to_thread(self.directory.get_group_members, group_id)

            if not group_members:
                logger.warning("[AdminUserSync] No members found in role editor group")
                return ReconciliationResult()

            logger.info("[AdminUserSync] Found %d members in role editor group", len(group_members))

            result = await asyncio.to_thread(self.process_all_admin_users, group_members)
        except Exception as e:
            logger.error("[AdminUserSync] Failed to sync admin users from group: %s", e)
            raise

        logger.info(
            "[AdminUserSync] Admin user sync completed successfully "
            "(%d changed, %d unchanged, %d failed)",
            len(result.successful), len(result.skipped), len(result.failed),
        )
        return result

    async def sync_admin_users_from_group(self) -> Optional[ReconciliationResult]:
        """
        Run the admin sync under the ``admin-user-sync`` lease.

        Returns:
            The run's result, or None if another replica holds the lease
        """
        lock_id = str(uuid.uuid4())

        result = await with_lock(
            ADMIN_SYNC_LOCK_NAME,
            lock_id,
            self.sync_admin_users_internal,
            timeout_minutes=self.config.lock.timeout_minutes,
            lock=self._lock,
        )

        if result is None:
            logger.info("[AdminUserSync] Admin user sync skipped - already running on another container")
        return result

    # -----------------------------------------------------------------------
    # Group migration
    # -----------------------------------------------------------------------

    def migrate_users_from_group(self, roles: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Import every member of the migration source group.

        Members already in the registry are skipped; new members are
        created with ``roles``.

        Raises:
            ValueError: On unknown roles
            DirectoryConfigurationError: If no source group is configured
        """
        roles = validate_roles(roles if roles is not None else [ROLE_FORM_CREATOR])
        group_id = self.config.migration_source_group_id
        if not group_id:
            raise DirectoryConfigurationError("MIGRATION_SOURCE_GROUP_ID is not configured")

        logger.info("Migrating users from group %s with roles: %s", group_id, ", ".join(roles))

        group_members = self.directory.get_group_members(group_id)
        result = ReconciliationResult()
        if not group_members:
            logger.warning("No members found in migration source group")
            return result.to_dict()

        existing_users = self._existing_users_by_id()
        scopes = map_scopes_to_roles(roles)

        with self._db.transaction() as conn:
            for index, member in enumerate(group_members):
                if member.id in existing_users:
                    result.skipped.append(_member_entry(member, reason="User already exists"))
                    continue
                try:
                    with savepoint(conn, f"migration_member_{index}"):
                        record = self._store.create(
                            {
                                "user_id": member.id,
                                "email": member.email,
                                "display_name": member.display_name,
                                "roles": roles,
                            },
                            conn,
                        )
                except Exception as e:
                    logger.error("Failed to migrate user %s: %s", member.id, e)
                    result.failed.append(_member_entry(member, error=str(e)))
                    continue

                existing_users[member.id] = record
                result.successful.append(_member_entry(member, roles=roles, scopes=scopes))

        logger.info(
            "Migration completed: %d successful, %d failed, %d skipped",
            len(result.successful), len(result.failed), len(result.skipped),
        )
        return result.to_dict()

