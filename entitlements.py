"""
Entitlement service.

User-facing operations over the registry: every grant or role change is
checked against the directory first, then written in its own transaction.
"""

import logging
from typing import Any, Dict, List, Optional

from role_scopes import validate_roles

logger = logging.getLogger(__name__)


class EntitlementService:
    """Add, update, delete and read user entitlements."""

    def __init__(self, directory=None, store=None, db=None):
        if db is None:
            from database import get_db_manager
            db = get_db_manager()
        if store is None:
            from entitlement_store import EntitlementStore
            store = EntitlementStore(db)
        self._db = db
        self._store = store
        self._directory = directory

    @property
    def directory(self):
        # Built on first use so read-only calls work without Graph credentials
        if self._directory is None:
            from directory_client import get_directory_client
            self._directory = get_directory_client()
        return self._directory

    def get_all_users(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        logger.info("Getting all users")
        return self._store.get_all(limit=limit)

    def get_user(self, user_id: str) -> Dict[str, Any]:
        logger.info("Getting user with userID '%s'", user_id)
        return self._store.get(user_id)

    def add_user(self, email: str, roles: List[str]) -> Dict[str, Any]:
        """
        Grant roles to the directory user with this email address.

        Returns:
            Dict with the directory id, email and display name

        Raises:
            ValueError: On unknown roles
            DirectoryNotFoundError: If the email is unknown to the directory
            EntitlementAlreadyExistsError: If the user already has a record
        """
        logger.info("Adding user with email '%s'", email)
        roles = validate_roles(roles)

        try:
            directory_user = self.directory.get_user_by_email(email)
            logger.info("User found in Azure AD with ID: %s", directory_user.id)

            with self._db.transaction() as conn:
                self._store.create(
                    {
                        "user_id": directory_user.id,
                        "email": directory_user.email,
                        "display_name": directory_user.display_name,
                        "roles": roles,
                    },
                    conn,
                )
        except Exception as e:
            logger.error("[addUser] Failed to add user - %s", e)
            raise

        logger.info("Added user with Azure ID: %s", directory_user.id)
        return directory_user.to_dict()

    def update_user(self, user_id: str, roles: List[str]) -> Dict[str, Any]:
        """
        Replace a user's roles; scopes are recomputed from the new roles.

        Raises:
            ValueError: On unknown roles
            DirectoryNotFoundError: If the user is gone from the directory
            EntitlementNotFoundError: If the user has no record
        """
        logger.info("Updating user with userID '%s'", user_id)
        roles = validate_roles(roles)

        try:
            directory_user = self.directory.validate_user(user_id)
            logger.info("User found in Azure AD with ID: %s", directory_user.id)

            with self._db.transaction() as conn:
                self._store.update(user_id, {"roles": roles}, conn)
        except Exception as e:
            logger.error("[updateUser] Failed to update user - %s", e)
            raise

        logger.info("Updated user with userID '%s'", user_id)
        return {"id": user_id}

    def delete_user(self, user_id: str) -> Dict[str, Any]:
        """
        Remove a user's record.

        Raises:
            EntitlementNotFoundError: If the user has no record
        """
        logger.info("Deleting user with userID '%s'", user_id)

        try:
            with self._db.transaction() as conn:
                self._store.remove(user_id, conn)
        except Exception as e:
            logger.error("[deleteUser] Failed to delete user - %s", e)
            raise

        logger.info("Deleted user with userID '%s'", user_id)
        return {"id": user_id}

