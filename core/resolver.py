"""
core/resolver.py -- Resolve a user's effective permissions.

Two layers:

  resolve_permissions()  pure: takes already-fetched assignments, grants and
                         roles plus a reference "now", applies scope and
                         expiry rules, returns ResolvedPermissions.

  PermissionResolver     thin I/O wrapper: reads assignments and direct grants
                         concurrently from the store, then the referenced roles,
                         then calls the pure step.

Nothing is cached between calls. Every authorization decision recomputes from
the store, so a revoked role is gone on the very next request.

Expiry is evaluated here, at resolution time. Rows past expires_at stay in the
store and simply stop contributing.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timezone
from typing import Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError

from core.errors import DataUnavailableError
from core.models import DirectGrant, ResolvedPermissions, Role, UserRoleAssignment

logger = logging.getLogger("gatekeeper.resolver")


class RoleSource(Protocol):
    """Read side of the role store (auth.store.RoleStore implements it)."""

    def list_role_assignments(
        self, user_id: int, organization_id: Optional[str], now: datetime
    ) -> list[UserRoleAssignment]: ...

    def list_direct_grants(self, user_id: int, organization_id: Optional[str]) -> list[DirectGrant]: ...

    def get_roles(self, role_ids: Iterable[int]) -> dict[int, Role]: ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _in_scope(scope: Optional[str], organization_id: Optional[str]) -> bool:
    return scope is None or scope == organization_id


def _is_live(expires_at: Optional[datetime], now: datetime) -> bool:
    return expires_at is None or expires_at > now


def _dedupe(items: Iterable[str]) -> list[str]:
    # dict preserves first-seen order, which keeps output deterministic
    return list(dict.fromkeys(items))


def resolve_permissions(
    assignments: Iterable[UserRoleAssignment],
    grants: Iterable[DirectGrant],
    roles_by_id: Mapping[int, Role],
    organization_id: Optional[str],
    now: datetime,
) -> ResolvedPermissions:
    """Combine role assignments and direct grants into ResolvedPermissions.

    Rules:
      - an assignment or grant counts when its organization is None (global)
        or equals organization_id, and its expires_at is None or after now;
      - an assignment whose role is missing is skipped, not fatal;
      - a role counts only when the role itself is global or belongs to
        organization_id, whatever the assignment says;
      - all outputs are deduplicated.
    """
    roles: list[str] = []
    role_permissions: list[str] = []
    for a in assignments:
        if not (_in_scope(a.organization_id, organization_id) and _is_live(a.expires_at, now)):
            continue
        role = roles_by_id.get(a.role_id)
        if role is None:
            logger.debug("Skipping assignment %s: role %s no longer exists", a.id, a.role_id)
            continue
        if not _in_scope(role.organization_id, organization_id):
            continue
        roles.append(role.name)
        role_permissions.extend(role.permissions)

    direct_permissions: list[str] = []
    for g in grants:
        if not (_in_scope(g.organization_id, organization_id) and _is_live(g.expires_at, now)):
            continue
        direct_permissions.extend(g.permissions)

    return ResolvedPermissions(
        roles=_dedupe(roles),
        permissions=_dedupe(role_permissions + direct_permissions),
        role_permissions=_dedupe(role_permissions),
        direct_permissions=_dedupe(direct_permissions),
    )


class PermissionResolver:
    """Fetch roles and grants for a user and resolve them.

    Usage:
        resolver = PermissionResolver(role_store)
        resolved = await resolver.resolve(user_id=7, organization_id="acme")

    The store methods are synchronous SQLAlchemy Core calls; they run in worker
    threads so the two independent reads overlap. Reads only -- if the caller
    is cancelled mid-resolution nothing needs undoing.
    """

    def __init__(self, store: RoleSource, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self.clock = clock

    async def resolve(self, user_id: int, organization_id: Optional[str] = None) -> ResolvedPermissions:
        """Resolve permissions for user_id in organization_id (None = global only).

        Raises DataUnavailableError if the store cannot be read.
        """
        now = self.clock()
        try:
            assignments, grants = await asyncio.gather(
                asyncio.to_thread(self.store.list_role_assignments, user_id, organization_id, now),
                asyncio.to_thread(self.store.list_direct_grants, user_id, organization_id),
            )
            role_ids = {a.role_id for a in assignments}
            roles = await asyncio.to_thread(self.store.get_roles, role_ids) if role_ids else {}
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Permission resolution failed for user %s: %s", user_id, exc)
            raise DataUnavailableError("Role store unavailable") from exc

        return resolve_permissions(assignments, grants, roles, organization_id, now)
