"""
Roles and permission scopes for the Entitlement Registry.

Roles are a small closed set of tags stored on each entitlement record.
Scopes are never assigned directly: they are always derived from the
record's roles through the static ROLE_SCOPES mapping below, and are
recomputed from scratch whenever roles change.

Scopes:
    form-delete   delete a form
    form-edit     edit a draft form
    form-read     view forms
    form-publish  publish a form to live
    user-create   grant entitlements to a new user
    user-delete   remove a user's entitlements
    user-edit     change a user's roles
"""

from typing import Dict, FrozenSet, Iterable, List, Tuple

# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------

ROLE_ADMIN = "admin"
ROLE_FORM_CREATOR = "form-creator"

ALL_ROLES: Tuple[str, ...] = (ROLE_ADMIN, ROLE_FORM_CREATOR)

ROLE_DESCRIPTIONS: Dict[str, str] = {
    ROLE_ADMIN: "Allows full access to forms and user management functions",
    ROLE_FORM_CREATOR: "Allows a user to create a form and edit it while in draft",
}

# ---------------------------------------------------------------------------
# Scopes
# ---------------------------------------------------------------------------

SCOPE_FORM_DELETE = "form-delete"
SCOPE_FORM_EDIT = "form-edit"
SCOPE_FORM_READ = "form-read"
SCOPE_FORM_PUBLISH = "form-publish"
SCOPE_USER_CREATE = "user-create"
SCOPE_USER_DELETE = "user-delete"
SCOPE_USER_EDIT = "user-edit"

# Declaration order is the order scopes are emitted in
ALL_SCOPES: Tuple[str, ...] = (
    SCOPE_FORM_DELETE,
    SCOPE_FORM_EDIT,
    SCOPE_FORM_READ,
    SCOPE_FORM_PUBLISH,
    SCOPE_USER_CREATE,
    SCOPE_USER_DELETE,
    SCOPE_USER_EDIT,
)

ROLE_SCOPES: Dict[str, FrozenSet[str]] = {
    ROLE_ADMIN: frozenset(ALL_SCOPES),
    ROLE_FORM_CREATOR: frozenset({SCOPE_FORM_READ, SCOPE_FORM_EDIT}),
}


def map_scopes_to_roles(roles: Iterable[str]) -> List[str]:
    """Return the unique scopes granted by a set of roles.

    The result is the union of each role's static scope set, listed in
    ALL_SCOPES order so the output does not depend on the order of
    ``roles``. Unknown roles contribute nothing.
    """
    granted = set()
    for role in roles:
        granted |= ROLE_SCOPES.get(role, frozenset())
    return [scope for scope in ALL_SCOPES if scope in granted]


def is_valid_role(role: str) -> bool:
    """Check if a role name is one of the known roles."""
    return role in ROLE_SCOPES


def validate_roles(roles: Iterable[str]) -> List[str]:
    """Validate and de-duplicate a role list, preserving first-seen order.

    Raises:
        ValueError: If any role is unknown.
    """
    roles = list(roles)
    invalid = sorted({r for r in roles if not is_valid_role(r)})
    if invalid:
        raise ValueError(f"Invalid roles: {', '.join(invalid)}")
    return list(dict.fromkeys(roles))


def is_exactly_admin(roles: Iterable[str]) -> bool:
    """True when a role list is exactly ``[admin]`` (the admin-sync target)."""
    roles = list(roles or [])
    return len(roles) == 1 and roles[0] == ROLE_ADMIN


def list_roles() -> List[Dict[str, str]]:
    """List all roles with their descriptions."""
    return [
        {"name": role, "description": ROLE_DESCRIPTIONS[role]}
        for role in ALL_ROLES
    ]
