"""
User entitlement and role routes for the Entitlement Registry.
"""

import logging
from fastapi import APIRouter, Request

from api_models import (
    CreateUserRequest,
    UpdateUserRequest,
    UserListResponse,
    UserResponse,
    UserMutationResponse,
    RolesResponse,
    APIErrorResponse,
)
from entitlement_store import MAX_RESULTS
from errors import raise_for_domain_error
from role_scopes import list_roles

logger = logging.getLogger(__name__)

users_router = APIRouter(tags=["Users"])

_error_responses = {
    400: {"model": APIErrorResponse},
    404: {"model": APIErrorResponse},
    409: {"model": APIErrorResponse},
}


def _service(request: Request):
    return request.app.state.entitlements


@users_router.get("/users", response_model=UserListResponse)
def list_users(request: Request):
    """List all user entitlements, most recently updated first."""
    try:
        entities = _service(request).get_all_users(limit=MAX_RESULTS)
    except Exception as e:
        raise_for_domain_error(e)
    return {"message": "success", "entities": entities}


@users_router.get("/users/{user_id}", response_model=UserResponse, responses=_error_responses)
def get_user(user_id: str, request: Request):
    """Get one user's entitlements."""
    try:
        entity = _service(request).get_user(user_id)
    except Exception as e:
        raise_for_domain_error(e)
    return {"message": "success", "entity": entity}


@users_router.post("/users", response_model=UserMutationResponse, responses=_error_responses)
def add_user(body: CreateUserRequest, request: Request):
    """Grant roles to a directory user, looked up by email."""
    try:
        entity = _service(request).add_user(body.email, body.roles)
    except Exception as e:
        raise_for_domain_error(e)
    return {"message": "success", "entity": entity}


@users_router.put("/users/{user_id}", response_model=UserMutationResponse, responses=_error_responses)
def update_user(user_id: str, body: UpdateUserRequest, request: Request):
    """Replace a user's roles."""
    try:
        entity = _service(request).update_user(user_id, body.roles)
    except Exception as e:
        raise_for_domain_error(e)
    return {"message": "success", "entity": entity}


@users_router.delete("/users/{user_id}", response_model=UserMutationResponse, responses=_error_responses)
def delete_user(user_id: str, request: Request):
    """Remove a user's entitlements."""
    try:
        entity = _service(request).delete_user(user_id)
    except Exception as e:
        raise_for_domain_error(e)
    return {"message": "success", "entity": entity}


@users_router.get("/roles", response_model=RolesResponse)
async def get_roles():
    """List the assignable roles."""
    return {"message": "success", "roles": list_roles()}
