"""
api/routes/v1/users.py -- Users, role assignments and direct permission grants.

Routes:
  GET    /api/v1/users                                  -- list users
  GET    /api/v1/users/{id}                             -- one user
  POST   /api/v1/users/{id}/unlock                      -- clear a lockout
  GET    /api/v1/users/{id}/roles                       -- role assignments (all, incl. expired)
  POST   /api/v1/users/{id}/roles                       -- assign a role
  DELETE /api/v1/users/{id}/roles/{assignment_id}       -- revoke an assignment
  GET    /api/v1/users/{id}/permissions                 -- resolved view + direct grants
  POST   /api/v1/users/{id}/permissions                 -- add a direct grant
  DELETE /api/v1/users/{id}/permissions/{grant_id}      -- revoke a direct grant

IDOR guard: revocations pass both the record ID and user_id to the store; the
store's WHERE clause requires both to match.

Write scope: a caller acting inside an organization (x-organization-id) only
holds its organization-scoped authority, so every assignment or grant it
creates or revokes must be scoped to exactly that organization. Global writes
need a caller acting without an organization.

Changes here are visible to the very next gated request: the gate resolves
from the store on every request. Client snapshots catch up when refreshed.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import (
    AssignmentCreate,
    AssignmentResponse,
    GrantCreate,
    GrantResponse,
    UserPermissionsResponse,
    UserResponse,
)
from auth.audit import audit_log
from auth.dependencies import get_auth_context
from auth.lockout import unlock_account
from auth.models import User
from auth.store import RoleStore, UserStore
from core.errors import DataUnavailableError
from core.gate import AuthorizationGate
from core.models import AuthContext, DirectGrant, UserRoleAssignment

router = APIRouter()


def _not_found(what: str) -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": f"{what} not found."})


def _get_user(user_store: UserStore, user_id: int) -> User:
    user = user_store.get_by_id(user_id)
    if user is None:
        raise _not_found("User")
    return user


def _future_or_none(expires_at: Optional[datetime]) -> Optional[datetime]:
    """Normalize expires_at to aware UTC and reject values already in the past."""
    if expires_at is None:
        return None
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if expires_at <= datetime.now(timezone.utc):
        raise HTTPException(
            status_code=422,
            detail={"code": "invalid_expiry", "message": "expires_at must be in the future."},
        )
    return expires_at


def _write_scope(auth: AuthContext, requested: Optional[str]) -> Optional[str]:
    """Scope for a write by auth. Organization callers are pinned to their organization."""
    if auth.organization_id is None:
        return requested
    if requested is not None and requested != auth.organization_id:
        raise _scope_violation()
    return auth.organization_id


def _check_scope(auth: AuthContext, organization_id: Optional[str]) -> None:
    if auth.organization_id is not None and organization_id != auth.organization_id:
        raise _scope_violation()


def _scope_violation() -> HTTPException:
    return HTTPException(
        status_code=403,
        detail={"code": "scope_violation", "message": "Writes are limited to the caller's organization."},
    )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[UserResponse])
def list_users(request: Request, auth: AuthContext = Depends(get_auth_context)) -> list[UserResponse]:
    user_store: UserStore = request.app.state.user_store
    return [UserResponse.from_user(u) for u in user_store.list_users()]


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: int, auth: AuthContext = Depends(get_auth_context)) -> UserResponse:
    return UserResponse.from_user(_get_user(request.app.state.user_store, user_id))


@router.post("/users/{user_id}/unlock", response_model=UserResponse)
def unlock_user(request: Request, user_id: int, auth: AuthContext = Depends(get_auth_context)) -> UserResponse:
    """Clear failed-login counters and any active lock."""
    user_store: UserStore = request.app.state.user_store
    user = _get_user(user_store, user_id)
    unlock_account(user_store, user.id)
    audit_log(
        user_store,
        "ACCOUNT_UNLOCKED",
        user_id=user.id,
        email=user.email,
        ip=request.client.host if request.client else None,
        metadata={"unlocked_by": auth.user_id},
    )
    return UserResponse.from_user(user_store.get_by_id(user.id))


# ---------------------------------------------------------------------------
# Role assignments
# ---------------------------------------------------------------------------


@router.get("/users/{user_id}/roles", response_model=list[AssignmentResponse])
def list_user_roles(
    request: Request, user_id: int, auth: AuthContext = Depends(get_auth_context)
) -> list[AssignmentResponse]:
    """Every assignment visible in the caller's scope, expired ones included."""
    role_store: RoleStore = request.app.state.role_store
    _get_user(request.app.state.user_store, user_id)
    assignments = role_store.list_role_assignments(user_id, auth.organization_id)
    roles = role_store.get_roles({a.role_id for a in assignments})
    return [AssignmentResponse.from_assignment(a, roles.get(a.role_id)) for a in assignments]


@router.post("/users/{user_id}/roles", response_model=AssignmentResponse, status_code=201)
def assign_user_role(
    request: Request,
    user_id: int,
    body: AssignmentCreate,
    auth: AuthContext = Depends(get_auth_context),
) -> AssignmentResponse:
    """Assign a role to a user.

    Inside an organization the assignment is always scoped to it, global roles
    included. Without one, the scope defaults to the role's own organization.
    A role that belongs to an organization can only be assigned within it.
    """
    role_store: RoleStore = request.app.state.role_store
    _get_user(request.app.state.user_store, user_id)

    role = role_store.get_role(body.role_id)
    if role is None or (role.organization_id is not None and role.organization_id != auth.organization_id):
        raise _not_found("Role")

    organization_id = _write_scope(auth, body.organization_id)
    if organization_id is None:
        organization_id = role.organization_id
    if role.organization_id is not None and organization_id != role.organization_id:
        raise HTTPException(
            status_code=422,
            detail={
                "code": "scope_mismatch",
                "message": "An organization role can only be assigned within its organization.",
            },
        )

    assignment = UserRoleAssignment(
        user_id=user_id,
        role_id=role.id,
        organization_id=organization_id,
        expires_at=_future_or_none(body.expires_at),
    )
    assignment_id = role_store.assign_role(assignment)
    stored = next(a for a in role_store.list_role_assignments(user_id, organization_id) if a.id == assignment_id)
    return AssignmentResponse.from_assignment(stored, role)


@router.delete("/users/{user_id}/roles/{assignment_id}", status_code=204)
def revoke_user_role(
    request: Request, user_id: int, assignment_id: int, auth: AuthContext = Depends(get_auth_context)
) -> Response:
    role_store: RoleStore = request.app.state.role_store
    if auth.organization_id is not None:
        visible = role_store.list_role_assignments(user_id, auth.organization_id)
        assignment = next((a for a in visible if a.id == assignment_id), None)
        if assignment is None:
            raise _not_found("Assignment")
        _check_scope(auth, assignment.organization_id)
    if not role_store.revoke_role(assignment_id, user_id):
        raise _not_found("Assignment")
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Direct grants
# ---------------------------------------------------------------------------


@router.get("/users/{user_id}/permissions", response_model=UserPermissionsResponse)
async def get_user_permissions(
    request: Request, user_id: int, auth: AuthContext = Depends(get_auth_context)
) -> UserPermissionsResponse:
    """Resolved permissions for the user in the caller's organization, plus raw grants."""
    role_store: RoleStore = request.app.state.role_store
    gate: AuthorizationGate = request.app.state.gate
    await asyncio.to_thread(_get_user, request.app.state.user_store, user_id)
    try:
        resolved = await gate.resolver.resolve(user_id, auth.organization_id)
    except DataUnavailableError as exc:
        raise HTTPException(
            status_code=503,
            detail={"code": "data_unavailable", "message": "Authorization data unavailable."},
        ) from exc
    grants = await asyncio.to_thread(role_store.list_direct_grants, user_id, auth.organization_id)
    return UserPermissionsResponse(
        roles=resolved.roles,
        permissions=resolved.permissions,
        role_permissions=resolved.role_permissions,
        direct_permissions=resolved.direct_permissions,
        grants=[GrantResponse.from_grant(g) for g in grants],
    )


@router.post("/users/{user_id}/permissions", response_model=GrantResponse, status_code=201)
def grant_user_permissions(
    request: Request,
    user_id: int,
    body: GrantCreate,
    auth: AuthContext = Depends(get_auth_context),
) -> GrantResponse:
    """Attach permissions to a user directly. Defaults to the caller's organization scope."""
    role_store: RoleStore = request.app.state.role_store
    _get_user(request.app.state.user_store, user_id)
    organization_id = _write_scope(auth, body.organization_id)
    grant_id = role_store.grant_permissions(
        DirectGrant(
            user_id=user_id,
            permissions=body.permissions,
            organization_id=organization_id,
            expires_at=_future_or_none(body.expires_at),
        )
    )
    stored = next(g for g in role_store.list_direct_grants(user_id, organization_id) if g.id == grant_id)
    return GrantResponse.from_grant(stored)


@router.delete("/users/{user_id}/permissions/{grant_id}", status_code=204)
def revoke_user_permissions(
    request: Request, user_id: int, grant_id: int, auth: AuthContext = Depends(get_auth_context)
) -> Response:
    role_store: RoleStore = request.app.state.role_store
    if auth.organization_id is not None:
        visible = role_store.list_direct_grants(user_id, auth.organization_id)
        grant = next((g for g in visible if g.id == grant_id), None)
        if grant is None:
            raise _not_found("Grant")
        _check_scope(auth, grant.organization_id)
    if not role_store.revoke_grant(grant_id, user_id):
        raise _not_found("Grant")
    return Response(status_code=204)
