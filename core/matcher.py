"""
core/matcher.py -- Permission and role matchers.

Pure functions, no I/O. The backend gate (core/gate.py) and the client-side
mirrors (client/gates.py) both call these, so a permission means the same
thing on either side of the wire.

Permission strings are "resource:action:scope" or the bare "*". A "*" segment
in a held permission matches any value in that position:

    matches_permission("*", "projects:read:all")               -> True
    matches_permission("projects:*:all", "projects:read:all")  -> True
    matches_permission("projects:read:all", "projects:write:all") -> False
    matches_permission("a:b", "a:b:c")                         -> False

held_* arguments are Optional: None means "no authenticated principal" and
is distinct from an empty collection (authenticated, holds nothing).
"""

from __future__ import annotations

from collections.abc import Collection, Iterable
from typing import Optional

from core.models import (
    AllOf,
    AnyOf,
    Authenticated,
    PermissionRequirement,
    Public,
    RequirePermission,
    RequireRole,
    RoleRequirement,
)

WILDCARD = "*"
SEPARATOR = ":"

# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


def matches_permission(held: str, required: str) -> bool:
    """Return True if the held permission grants the required one."""
    if held == required or held == WILDCARD:
        return True

    held_parts = held.split(SEPARATOR)
    required_parts = required.split(SEPARATOR)
    if len(held_parts) != len(required_parts):
        return False

    return all(h == WILDCARD or h == r for h, r in zip(held_parts, required_parts))


def has_permission(held: Optional[Iterable[str]], required: str) -> bool:
    if not held:
        return False
    return any(matches_permission(p, required) for p in held)


def has_any_permission(held: Optional[Collection[str]], required: Iterable[str]) -> bool:
    """True if at least one of required is held. An empty required list denies."""
    required = list(required)
    if not required:
        return False
    return any(has_permission(held, r) for r in required)


def has_all_permissions(held: Optional[Collection[str]], required: Iterable[str]) -> bool:
    """True if every item of required is held. An empty required list denies."""
    required = list(required)
    if not required:
        return False
    return all(has_permission(held, r) for r in required)


def satisfies_requirement(held: Optional[Collection[str]], requirement: PermissionRequirement) -> bool:
    """Evaluate a PermissionRequirement against the caller's held permissions.

    Public always passes, even for None. Authenticated passes for any non-None
    collection, including an empty one. The remaining variants delegate to the
    has_* helpers above.
    """
    if isinstance(requirement, Public):
        return True
    if isinstance(requirement, Authenticated):
        return held is not None
    if isinstance(requirement, RequirePermission):
        return has_permission(held, requirement.key)
    if isinstance(requirement, AnyOf):
        return has_any_permission(held, requirement.items)
    if isinstance(requirement, AllOf):
        return has_all_permissions(held, requirement.items)
    raise TypeError(f"Unknown permission requirement: {requirement!r}")


# ---------------------------------------------------------------------------
# Roles -- exact name equality, no wildcards
# ---------------------------------------------------------------------------


def has_role(held: Optional[Collection[str]], required: str) -> bool:
    if not held:
        return False
    return required in held


def has_any_role(held: Optional[Collection[str]], required: Iterable[str]) -> bool:
    required = list(required)
    if not required:
        return False
    return any(has_role(held, r) for r in required)


def has_all_roles(held: Optional[Collection[str]], required: Iterable[str]) -> bool:
    required = list(required)
    if not required:
        return False
    return all(has_role(held, r) for r in required)


def satisfies_role_requirement(held: Optional[Collection[str]], requirement: RoleRequirement) -> bool:
    if not held:
        return False
    if isinstance(requirement, RequireRole):
        return has_role(held, requirement.name)
    if isinstance(requirement, AnyOf):
        return has_any_role(held, requirement.items)
    if isinstance(requirement, AllOf):
        return has_all_roles(held, requirement.items)
    raise TypeError(f"Unknown role requirement: {requirement!r}")
