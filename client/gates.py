"""
client/gates.py -- UI gating against a cached PermissionSnapshot.

These mirror the server gate with the very same core.matcher functions, so a
button hidden here is exactly a request the server would refuse (as of the
snapshot's issue time).

A snapshot of None means "not signed in": only Public requirements pass.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote

from client.snapshot import PermissionSnapshot
from core.matcher import satisfies_requirement, satisfies_role_requirement
from core.models import (
    AUTHENTICATED,
    AllOf,
    AnyOf,
    Authenticated,
    PermissionRequirement,
    Public,
    RequirePermission,
    RequireRole,
    RoleRequirement,
    RoutePermissionEntry,
    parse_requirement,
    parse_role_requirement,
)
from core.registry import PAGE_PERMISSIONS
from core.routes import find_route_entry

UNAUTHORIZED_PAGE = "/unauthorized"


def can(snapshot: Optional[PermissionSnapshot], requirement: Any) -> bool:
    """Evaluate a permission requirement (authoring format or variant)."""
    held = snapshot.permissions if snapshot is not None else None
    return satisfies_requirement(held, parse_requirement(requirement))


def _permission_props(
    permission: Optional[str], any_of: Optional[Sequence[str]], all_of: Optional[Sequence[str]]
) -> Optional[PermissionRequirement]:
    if permission:
        return RequirePermission(permission)
    if any_of:
        return AnyOf(tuple(any_of))
    if all_of:
        return AllOf(tuple(all_of))
    return None


def _role_props(
    role: Optional[str], any_of: Optional[Sequence[str]], all_of: Optional[Sequence[str]]
) -> Optional[RoleRequirement]:
    if role:
        return RequireRole(role)
    if any_of:
        return AnyOf(tuple(any_of))
    if all_of:
        return AllOf(tuple(all_of))
    return None


def permission_gate(
    snapshot: Optional[PermissionSnapshot],
    permission: Optional[str] = None,
    any_of: Optional[Sequence[str]] = None,
    all_of: Optional[Sequence[str]] = None,
) -> bool:
    """Should permission-gated content render?

    With no requirement given, content renders for any signed-in user.
    """
    requirement = _permission_props(permission, any_of, all_of) or AUTHENTICATED
    held = snapshot.permissions if snapshot is not None else None
    return satisfies_requirement(held, requirement)


def role_gate(
    snapshot: Optional[PermissionSnapshot],
    role: Optional[str] = None,
    any_of: Optional[Sequence[str]] = None,
    all_of: Optional[Sequence[str]] = None,
) -> bool:
    """Should role-gated content render? No requirement renders for signed-in users."""
    if snapshot is None:
        return False
    requirement = _role_props(role, any_of, all_of)
    if requirement is None:
        return True
    return satisfies_role_requirement(snapshot.roles, requirement)


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    redirect_to: Optional[str] = None


def route_guard(
    snapshot: Optional[PermissionSnapshot],
    path: str,
    page_registry: Sequence[RoutePermissionEntry] = PAGE_PERMISSIONS,
    permission_requirement: Any = None,
    role_requirement: Any = None,
    redirect_to: str = "/login",
) -> GuardDecision:
    """Decide whether a page may be shown.

    The permission requirement comes from permission_requirement when given,
    else from the page registry; pages missing from the registry default to
    "authenticated". Outcomes:
      public page                       -> allow
      not signed in                     -> redirect to redirect_to?returnTo=<path>
      role or permission unsatisfied    -> redirect to /unauthorized
      otherwise                         -> allow
    """
    if permission_requirement is not None:
        requirement = parse_requirement(permission_requirement)
    else:
        entry = find_route_entry(page_registry, "GET", path)
        requirement = entry.permission if entry is not None else AUTHENTICATED

    if isinstance(requirement, Public):
        return GuardDecision(True)

    if snapshot is None:
        return GuardDecision(False, f"{redirect_to}?returnTo={quote(path, safe='')}")

    if role_requirement is not None:
        if not satisfies_role_requirement(snapshot.roles, parse_role_requirement(role_requirement)):
            return GuardDecision(False, UNAUTHORIZED_PAGE)

    if isinstance(requirement, Authenticated):
        return GuardDecision(True)

    if not satisfies_requirement(snapshot.permissions, requirement):
        return GuardDecision(False, UNAUTHORIZED_PAGE)
    return GuardDecision(True)
