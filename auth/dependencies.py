"""
auth/dependencies.py -- FastAPI Depends() helpers for handlers behind the gate.

The authorization gate (core/gate.py, mounted as middleware in api/main.py)
runs before any /api/ handler. When it allows a request that needed a
principal it leaves an AuthContext on request.state.auth. These helpers read
that context back:

  get_auth_context()       the principal; HTTP 401 if the gate attached none
  require_role(req)        extra role check for a handler, HTTP 403 otherwise

The gate remains the only place where credentials are verified.

Layer rule: may import fastapi (part of the dependency injection system); no
imports from api/ or client/.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request

from core.matcher import satisfies_role_requirement
from core.models import AuthContext, describe_requirement, parse_role_requirement


def get_auth_context(request: Request) -> AuthContext:
    """Return the AuthContext attached by the gate. Raises HTTP 401 if absent.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(auth: AuthContext = Depends(get_auth_context)): ...
    """
    auth = getattr(request.state, "auth", None)
    if auth is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthenticated", "message": "Authentication required."},
        )
    return auth


def require_role(requirement: Any):
    """Dependency factory: the caller must satisfy a role requirement.

    requirement uses the authoring format: "Admin", {"any": [...]}, {"all": [...]}.
    The route entry must not be "authenticated" -- those contexts carry no roles.
    """
    parsed = parse_role_requirement(requirement)

    def dependency(request: Request) -> AuthContext:
        auth = get_auth_context(request)
        if not satisfies_role_requirement(auth.roles, parsed):
            raise HTTPException(
                status_code=403,
                detail={
                    "code": "forbidden",
                    "message": "Required role missing.",
                    "required": describe_requirement(parsed),
                    "your_roles": auth.roles,
                },
            )
        return auth

    return dependency

