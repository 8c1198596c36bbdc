"""
Bulk user migration route for the Entitlement Registry.
"""

import logging
from typing import Optional
from fastapi import APIRouter, HTTPException, Request

from api_models import MigrateUsersRequest, MigrationResponse, APIErrorResponse
from errors import ErrorCode, raise_api_error, raise_for_domain_error

logger = logging.getLogger(__name__)

migration_router = APIRouter(tags=["Migration"])


@migration_router.post(
    "/users/migrate",
    response_model=MigrationResponse,
    responses={400: {"model": APIErrorResponse}, 500: {"model": APIErrorResponse}},
)
def migrate_users(request: Request, body: Optional[MigrateUsersRequest] = None):
    """
    Import every member of the configured migration source group.

    Existing users are skipped; new users get the requested roles
    (``form-creator`` by default).
    """
    roles = (body or MigrateUsersRequest()).roles
    try:
        result = request.app.state.admin_sync.migrate_users_from_group(roles)
    except Exception as e:
        try:
            raise_for_domain_error(e)
        except HTTPException:
            raise
        except Exception:
            logger.error("User migration failed: %s", e, exc_info=True)
            raise_api_error(ErrorCode.MIGRATION_FAILED)

    return {"message": "Migration completed", **result}
