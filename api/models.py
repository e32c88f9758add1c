"""
API request and response models for Gatekeeper REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py and
auth/models.py, which own the internal domain representation. Route handlers
map between the two.

Separation of concerns: core/ + auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import AuditLogEntry, User
from core.models import DirectGrant, Role, UserRoleAssignment

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# "*" alone, or exactly three segments where any segment may itself be "*".
PERMISSION_PATTERN = r"^(\*|[A-Za-z0-9_\-*]+:[A-Za-z0-9_\-*]+:[A-Za-z0-9_\-*]+)$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

_PermissionKey = Annotated[str, Field(pattern=PERMISSION_PATTERN, max_length=200)]


def _dedupe(values: list) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for v in values:
        s = str(v).strip()
        if s not in seen:
            seen.add(s)
            result.append(s)
    return result


# ---------------------------------------------------------------------------
# Errors / health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class ForbiddenDetail(ErrorDetail):
    """403 payload: what the route requires and which roles the caller holds."""

    required: Any = None
    your_roles: list[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Password strength rules are enforced in the route (auth.tokens.validate_password)
    so the error lists every failed rule, not just the first.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class PasswordChangeRequest(BaseModel):
    """Request body for POST /api/v1/auth/password."""

    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


class LoginResponse(BaseModel):
    """Returned by login and register. The token is also set as the session cookie."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user_id: int
    email: str


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    user_id: int
    email: str
    organization_id: Optional[str] = None


class PermissionsResponse(BaseModel):
    """Response for GET /api/v1/auth/permissions.

    token is the signed snapshot the client caches; roles and permissions are
    the same values in plain form.
    """

    token: str
    roles: list[str]
    permissions: list[str]
    organization_id: Optional[str] = None
    expires_in: int


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class RoleCreate(BaseModel):
    """Request body for POST /api/v1/roles.

    The role is created in the caller's organization scope (x-organization-id);
    without one it is global.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    permissions: list[_PermissionKey] = Field(default_factory=list, max_length=200)

    @field_validator("permissions", mode="before")
    @classmethod
    def dedupe_permissions(cls, values: list) -> list[str]:
        return _dedupe(values)


class RoleUpdate(BaseModel):
    """Request body for PUT /api/v1/roles/{id}. Omitted fields are unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    permissions: Optional[list[_PermissionKey]] = Field(default=None, max_length=200)

    @field_validator("permissions", mode="before")
    @classmethod
    def dedupe_permissions(cls, values: Optional[list]) -> Optional[list[str]]:
        return None if values is None else _dedupe(values)


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: Optional[str]
    permissions: list[str]
    organization_id: Optional[str]
    is_system: bool
    created_at: str

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            permissions=role.permissions,
            organization_id=role.organization_id,
            is_system=role.is_system,
            created_at=role.created_at,
        )


# ---------------------------------------------------------------------------
# Assignments and direct grants
# ---------------------------------------------------------------------------


class AssignmentCreate(BaseModel):
    """Request body for POST /api/v1/users/{id}/roles."""

    role_id: int
    organization_id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    expires_at: Optional[datetime] = None


class AssignmentResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    role_id: int
    role_name: Optional[str]  # None when the role has since been deleted
    organization_id: Optional[str]
    expires_at: Optional[datetime]
    created_at: str

    @classmethod
    def from_assignment(cls, a: UserRoleAssignment, role: Optional[Role]) -> "AssignmentResponse":
        return cls(
            id=a.id,
            user_id=a.user_id,
            role_id=a.role_id,
            role_name=role.name if role else None,
            organization_id=a.organization_id,
            expires_at=a.expires_at,
            created_at=a.created_at,
        )


class GrantCreate(BaseModel):
    """Request body for POST /api/v1/users/{id}/permissions."""

    permissions: list[_PermissionKey] = Field(min_length=1, max_length=200)
    organization_id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    expires_at: Optional[datetime] = None

    @field_validator("permissions", mode="before")
    @classmethod
    def dedupe_permissions(cls, values: list) -> list[str]:
        return _dedupe(values)


class GrantResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    permissions: list[str]
    organization_id: Optional[str]
    expires_at: Optional[datetime]
    created_at: str

    @classmethod
    def from_grant(cls, g: DirectGrant) -> "GrantResponse":
        return cls(
            id=g.id,
            user_id=g.user_id,
            permissions=g.permissions,
            organization_id=g.organization_id,
            expires_at=g.expires_at,
            created_at=g.created_at,
        )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: Optional[str]
    is_active: bool
    created_at: Optional[str]
    last_login: Optional[str]
    locked_until: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            is_active=user.is_active,
            created_at=user.created_at,
            last_login=user.last_login,
            locked_until=user.locked_until,
        )


class UserPermissionsResponse(BaseModel):
    """Response for GET /api/v1/users/{id}/permissions -- resolved view plus raw grants."""

    roles: list[str]
    permissions: list[str]
    role_permissions: list[str]
    direct_permissions: list[str]
    grants: list[GrantResponse]


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class DashboardResponse(BaseModel):
    """Response for GET /api/v1/admin/dashboard."""

    model_config = ConfigDict(frozen=True)

    total_users: int
    active_users: int
    locked_users: int
    total_roles: int
    system_roles: int


class AuditLogRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    event: str
    user_id: Optional[int]
    email: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    metadata: dict[str, Any]
    created_at: str

    @classmethod
    def from_entry(cls, e: AuditLogEntry) -> "AuditLogRow":
        return cls(
            id=e.id,
            event=e.event,
            user_id=e.user_id,
            email=e.email,
            ip_address=e.ip_address,
            user_agent=e.user_agent,
            metadata=e.metadata,
            created_at=e.created_at,
        )


class AuditLogPage(BaseModel):
    total: int
    items: list[AuditLogRow]


class PurgeResponse(BaseModel):
    removed: int
