"""
api/routes/v1/roles.py -- Role management endpoints.

Routes:
  GET    /api/v1/roles        -- global roles plus roles of the caller's organization
  POST   /api/v1/roles        -- create a custom role in the caller's organization scope
  GET    /api/v1/roles/{id}   -- one role (404 if outside the caller's scope)
  PUT    /api/v1/roles/{id}   -- rename / redescribe / replace permissions
  DELETE /api/v1/roles/{id}   -- delete a custom role

Permission checks (users:read:all / users:manage:all) happen in the gate.
System roles (seeded defaults) are read-only here: seed_default_roles() owns
their definition. A caller acting inside an organization can read global roles
but only change roles of that organization.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import RoleCreate, RoleResponse, RoleUpdate
from auth.dependencies import get_auth_context
from auth.store import DuplicateRoleError, RoleStore, SystemRoleError
from core.models import AuthContext, Role

router = APIRouter()


def _visible_role(role_store: RoleStore, role_id: int, auth: AuthContext) -> Role:
    """Return the role if it exists in the caller's scope, else raise 404."""
    role = role_store.get_role(role_id)
    if role is None or (role.organization_id is not None and role.organization_id != auth.organization_id):
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Role not found."})
    return role


def _writable_role(role_store: RoleStore, role_id: int, auth: AuthContext) -> Role:
    """Return the role if the caller may change it.

    Global roles are readable from every organization but only writable by a
    caller acting without an organization.
    """
    role = _visible_role(role_store, role_id, auth)
    if role.organization_id != auth.organization_id:
        raise HTTPException(
            status_code=403,
            detail={"code": "scope_violation", "message": "Role belongs to another scope."},
        )
    if role.is_system:
        raise _system_role_error(role)
    return role


def _system_role_error(role: Role) -> HTTPException:
    return HTTPException(
        status_code=403,
        detail={"code": "system_role", "message": f"'{role.name}' is a system role and cannot be changed."},
    )


def _duplicate_error(name: str) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"code": "conflict", "message": f"A role named '{name}' already exists in this scope."},
    )


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(request: Request, auth: AuthContext = Depends(get_auth_context)) -> list[RoleResponse]:
    role_store: RoleStore = request.app.state.role_store
    return [RoleResponse.from_role(r) for r in role_store.list_roles(auth.organization_id)]


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(
    request: Request,
    body: RoleCreate,
    auth: AuthContext = Depends(get_auth_context),
) -> RoleResponse:
    """Create a custom role. Scoped to x-organization-id when present, else global."""
    role_store: RoleStore = request.app.state.role_store
    try:
        role_id = role_store.create_role(
            Role(
                name=body.name,
                permissions=body.permissions,
                description=body.description,
                organization_id=auth.organization_id,
            )
        )
    except DuplicateRoleError as exc:
        raise _duplicate_error(body.name) from exc
    return RoleResponse.from_role(role_store.get_role(role_id))


@router.get("/roles/{role_id}", response_model=RoleResponse)
def get_role(request: Request, role_id: int, auth: AuthContext = Depends(get_auth_context)) -> RoleResponse:
    return RoleResponse.from_role(_visible_role(request.app.state.role_store, role_id, auth))


@router.put("/roles/{role_id}", response_model=RoleResponse)
def update_role(
    request: Request,
    role_id: int,
    body: RoleUpdate,
    auth: AuthContext = Depends(get_auth_context),
) -> RoleResponse:
    role_store: RoleStore = request.app.state.role_store
    _writable_role(role_store, role_id, auth)

    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail={"code": "no_changes", "message": "No fields to update."})
    try:
        role_store.update_role(role_id, **updates)
    except DuplicateRoleError as exc:
        raise _duplicate_error(updates["name"]) from exc
    return RoleResponse.from_role(role_store.get_role(role_id))


@router.delete("/roles/{role_id}", status_code=204)
def delete_role(request: Request, role_id: int, auth: AuthContext = Depends(get_auth_context)) -> Response:
    """Delete a custom role. Existing assignments stay and resolve to nothing."""
    role_store: RoleStore = request.app.state.role_store
    role = _writable_role(role_store, role_id, auth)
    try:
        role_store.delete_role(role.id)
    except SystemRoleError as exc:
        raise _system_role_error(role) from exc
    return Response(status_code=204)
