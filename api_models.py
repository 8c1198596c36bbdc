"""
Pydantic models for the Entitlement Registry API.

This module centralizes request and response models to be shared across
the modular routers.
"""

from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field

from role_scopes import ROLE_FORM_CREATOR


class CreateUserRequest(BaseModel):
    """Request model for granting roles to a directory user."""
    email: str = Field(..., min_length=1, description="Directory email address or UPN")
    roles: List[str] = Field(..., description="Roles to assign")


class UpdateUserRequest(BaseModel):
    """Request model for replacing a user's roles."""
    roles: List[str] = Field(..., description="New role set; scopes are recomputed")


class MigrateUsersRequest(BaseModel):
    """Request model for importing the migration source group."""
    roles: List[str] = Field(
        default_factory=lambda: [ROLE_FORM_CREATOR],
        description="Roles given to every imported user"
    )


class UserEntitlement(BaseModel):
    """A user's stored entitlements."""
    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    roles: List[str]
    scopes: List[str]
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class DirectoryUserModel(BaseModel):
    """A user as returned by the directory."""
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None


class UserListResponse(BaseModel):
    """Response model for listing users."""
    message: str = "success"
    entities: List[UserEntitlement]


class UserResponse(BaseModel):
    """Response model for a single stored user."""
    message: str = "success"
    entity: UserEntitlement


class UserMutationResponse(BaseModel):
    """Response model for create, update and delete."""
    message: str = "success"
    entity: Dict[str, Any]


class RoleModel(BaseModel):
    """Role name and description."""
    name: str
    description: str


class RolesResponse(BaseModel):
    """Response model for listing roles."""
    message: str = "success"
    roles: List[RoleModel]


class MigrationSummary(BaseModel):
    """Per-outcome counts of a migration run."""
    total: int
    successful: int
    failed: int
    skipped: int


class MigrationResponse(BaseModel):
    """Response model for a group migration."""
    message: str = "Migration completed"
    status: str
    summary: MigrationSummary
    results: Dict[str, List[Dict[str, Any]]]


class TriggerResponse(BaseModel):
    """Response model for a manual scheduler trigger."""
    status: str
    message: str


class SchedulerStatusResponse(BaseModel):
    """Response model for scheduler status."""
    enabled: bool
    started: bool = False
    tasks: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class LockInfo(BaseModel):
    """A held or expired lease."""
    lock_name: str
    lock_id: str
    created_at: Optional[str] = None
    expires_at: Optional[str] = None
    expired: bool = False


class LocksResponse(BaseModel):
    """Response model for listing leases."""
    locks: List[LockInfo]
    count: int


class HealthResponse(BaseModel):
    """Response model for health check."""
    status: str
    timestamp: str
    database: Dict[str, Any]


class APIErrorDetail(BaseModel):
    """Structured error detail for API exceptions."""
    error_code: str = Field(..., description="Unique error code (e.g., ENT_3001)")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional context")


class APIErrorResponse(BaseModel):
    """Standard error response wrapper."""
    detail: APIErrorDetail
