"""
core/models.py -- Domain dataclasses for the authorization core.

Pattern: Data class (pure data containers). The matchers, resolver and gate
do the work; these types only own the domain shape.

Requirements are an explicit tagged union rather than loosely shaped values:

    PermissionRequirement = Public | Authenticated | RequirePermission | AnyOf | AllOf
    RoleRequirement       = RequireRole | AnyOf | AllOf

Registry authors write requirements in a compact JSON-friendly form
(None, "authenticated", "users:read:all", {"any": [...]}, {"all": [...]}).
parse_requirement() converts that form to a variant once, at load time, so
nothing downstream sniffs shapes at request time.

Layer rule: no imports from api/, auth/, or client/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

# ---------------------------------------------------------------------------
# Requirement variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Public:
    """No authentication needed."""


@dataclass(frozen=True)
class Authenticated:
    """Any logged-in principal, regardless of the permissions it holds."""


@dataclass(frozen=True)
class RequirePermission:
    key: str


@dataclass(frozen=True)
class RequireRole:
    name: str


@dataclass(frozen=True)
class AnyOf:
    """At least one item must be held. An empty tuple never matches."""

    items: tuple[str, ...]


@dataclass(frozen=True)
class AllOf:
    """Every item must be held. An empty tuple never matches."""

    items: tuple[str, ...]


PermissionRequirement = Union[Public, Authenticated, RequirePermission, AnyOf, AllOf]
RoleRequirement = Union[RequireRole, AnyOf, AllOf]

PUBLIC = Public()
AUTHENTICATED = Authenticated()

AUTHENTICATED_TOKEN = "authenticated"


def _parse_group(raw: dict, what: str) -> AnyOf | AllOf:
    if len(raw) != 1 or not ({"any", "all"} & raw.keys()):
        raise ValueError(f"{what} object must have exactly one of 'any' or 'all', got {sorted(raw)!r}")
    key, items = next(iter(raw.items()))
    if not isinstance(items, (list, tuple)) or not all(isinstance(i, str) for i in items):
        raise ValueError(f"{what} '{key}' must be a list of strings")
    return AnyOf(tuple(items)) if key == "any" else AllOf(tuple(items))


def parse_requirement(raw: Any) -> PermissionRequirement:
    """Convert the registry authoring format into a PermissionRequirement.

    Already-parsed variants pass through unchanged. Raises ValueError for
    anything else so a broken registry fails at startup, not per request.
    """
    if isinstance(raw, (Public, Authenticated, RequirePermission, AnyOf, AllOf)):
        return raw
    if raw is None:
        return PUBLIC
    if isinstance(raw, str):
        if raw == AUTHENTICATED_TOKEN:
            return AUTHENTICATED
        if not raw:
            raise ValueError("Permission requirement must not be an empty string")
        return RequirePermission(raw)
    if isinstance(raw, dict):
        return _parse_group(raw, "Permission requirement")
    raise ValueError(f"Unsupported permission requirement: {raw!r}")


def parse_role_requirement(raw: Any) -> RoleRequirement:
    """Convert "Admin" / {"any": [...]} / {"all": [...]} into a RoleRequirement."""
    if isinstance(raw, (RequireRole, AnyOf, AllOf)):
        return raw
    if isinstance(raw, str) and raw:
        return RequireRole(raw)
    if isinstance(raw, dict):
        return _parse_group(raw, "Role requirement")
    raise ValueError(f"Unsupported role requirement: {raw!r}")


def describe_requirement(requirement: PermissionRequirement | RoleRequirement) -> Any:
    """Render a requirement back into the authoring format (used in 403 bodies)."""
    if isinstance(requirement, Public):
        return None
    if isinstance(requirement, Authenticated):
        return AUTHENTICATED_TOKEN
    if isinstance(requirement, RequirePermission):
        return requirement.key
    if isinstance(requirement, RequireRole):
        return requirement.name
    if isinstance(requirement, AnyOf):
        return {"any": list(requirement.items)}
    if isinstance(requirement, AllOf):
        return {"all": list(requirement.items)}
    raise TypeError(f"Unknown requirement variant: {requirement!r}")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

HTTP_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "*"})


@dataclass(frozen=True)
class RoutePermissionEntry:
    """One row of the ordered route allowlist.

    method is an upper-case HTTP verb or "*" for any verb. path is a pattern
    understood by core.routes (":param" segments and "*" wildcards).
    """

    method: str
    path: str
    permission: PermissionRequirement
    description: str = ""


def route(method: str, path: str, permission: Any, description: str = "") -> RoutePermissionEntry:
    """Build a RoutePermissionEntry from the authoring format.

    Raises ValueError for unknown methods or malformed requirements.
    """
    method = method.upper()
    if method not in HTTP_METHODS:
        raise ValueError(f"Unsupported method {method!r} for route {path!r}")
    if not path.startswith("/"):
        raise ValueError(f"Route path must start with '/': {path!r}")
    return RoutePermissionEntry(method, path, parse_requirement(permission), description)


# ---------------------------------------------------------------------------
# Roles, assignments, grants
# ---------------------------------------------------------------------------


@dataclass
class Role:
    """A named bundle of permission strings.

    organization_id is None for global roles. is_system roles are created by
    the seed and cannot be deleted through the admin API.
    """

    name: str
    permissions: list[str] = field(default_factory=list)
    description: Optional[str] = None
    organization_id: Optional[str] = None
    is_system: bool = False
    id: Optional[int] = None
    created_at: str = ""


@dataclass
class UserRoleAssignment:
    """Links a user to a role, optionally per organization and until expires_at."""

    user_id: int
    role_id: int
    organization_id: Optional[str] = None
    expires_at: Optional[datetime] = None  # None = never expires
    id: Optional[int] = None
    created_at: str = ""


@dataclass
class DirectGrant:
    """Permission strings attached to a user without going through a role."""

    user_id: int
    permissions: list[str] = field(default_factory=list)
    organization_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    id: Optional[int] = None
    created_at: str = ""


@dataclass(frozen=True)
class ResolvedPermissions:
    """Materialized permissions for one (user, organization) pair.

    permissions is the union used for authorization decisions.
    role_permissions and direct_permissions are audit views only.
    """

    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)
    role_permissions: list[str] = field(default_factory=list)
    direct_permissions: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class AuthContext:
    """Principal attached to a request after the gate allows it."""

    user_id: int
    email: str
    organization_id: Optional[str] = None
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)
