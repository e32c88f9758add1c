"""
core/gate.py -- Authorization gate: one decision per request.

The gate composes the route matcher, the session verifier, the user loader,
the permission resolver and the permission matcher into a linear chain:

  1. find the registry entry              none       -> deny 404 (allowlist)
  2. requirement is Public                           -> allow
  3. extract credential (header > cookie) missing    -> deny 401
  4. verify credential                    invalid    -> deny 401
  5. load user by subject                 missing    -> deny 401
  6. organization scope (header > query > cookie, optional)
  7. requirement is Authenticated                    -> allow, empty roles
  8. resolve + match                      store down -> deny 503
                                          unmet      -> deny 403
                                                     -> allow, full context

No backtracking, no retries. evaluate() always returns a GateDecision; the
HTTP layer (api/main.py) turns it into a response.

Framework-agnostic: GateRequest carries only what the chain reads, so the
same gate can be driven from FastAPI middleware, a CLI check, or a test.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError

from core.errors import DataUnavailableError, DenyReason
from core.matcher import satisfies_requirement
from core.models import (
    AuthContext,
    Authenticated,
    Public,
    RoutePermissionEntry,
    describe_requirement,
)
from core.resolver import PermissionResolver
from core.routes import find_route_entry

logger = logging.getLogger("gatekeeper.gate")

SESSION_COOKIE = "session"
ORGANIZATION_HEADER = "x-organization-id"
ORGANIZATION_QUERY = "org"
ORGANIZATION_COOKIE = "organization"

_BEARER_RE = re.compile(r"^Bearer\s+(\S+)\s*$", re.IGNORECASE)


class UserLike(Protocol):
    id: Optional[int]
    email: str
    is_active: bool


class UserLoader(Protocol):
    def get_by_id(self, user_id: int) -> Optional[UserLike]: ...


@dataclass(frozen=True)
class GateRequest:
    """The parts of an HTTP request the gate looks at.

    headers must be case-insensitive for lookups or use lower-case keys.
    """

    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)
    query_params: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    entry: Optional[RoutePermissionEntry] = None
    reason: Optional[DenyReason] = None
    message: str = ""
    context: Optional[AuthContext] = None
    # Populated on FORBIDDEN so the caller can see what was missing.
    required: Any = None
    roles: list[str] = field(default_factory=list)

    @property
    def status_code(self) -> int:
        return 200 if self.allowed else self.reason.status_code

    @classmethod
    def allow(cls, entry: RoutePermissionEntry, context: Optional[AuthContext] = None) -> "GateDecision":
        return cls(allowed=True, entry=entry, context=context)

    @classmethod
    def deny(cls, reason: DenyReason, message: str, entry: Optional[RoutePermissionEntry] = None, **kw) -> "GateDecision":
        return cls(allowed=False, reason=reason, message=message, entry=entry, **kw)


def extract_credential(headers: Mapping[str, str], cookies: Mapping[str, str]) -> Optional[str]:
    """Return the bearer token from Authorization, else the session cookie."""
    auth_header = headers.get("authorization") or ""
    m = _BEARER_RE.match(auth_header)
    if m:
        return m.group(1)
    return cookies.get(SESSION_COOKIE) or None


def extract_organization(
    headers: Mapping[str, str], query_params: Mapping[str, str], cookies: Mapping[str, str]
) -> Optional[str]:
    return (
        headers.get(ORGANIZATION_HEADER)
        or query_params.get(ORGANIZATION_QUERY)
        or cookies.get(ORGANIZATION_COOKIE)
        or None
    )


class AuthorizationGate:
    """Decide whether a request may proceed.

    Collaborators:
      registry  ordered RoutePermissionEntry list (first match wins)
      verify    session token verifier: token -> claims dict or None
      users     anything with get_by_id(int) (auth.store.UserStore)
      resolver  core.resolver.PermissionResolver
    """

    def __init__(
        self,
        registry: Sequence[RoutePermissionEntry],
        verify: Callable[[str], Optional[dict]],
        users: UserLoader,
        resolver: PermissionResolver,
    ) -> None:
        self.registry = registry
        self.verify = verify
        self.users = users
        self.resolver = resolver

    async def evaluate(self, request: GateRequest) -> GateDecision:
        entry = find_route_entry(self.registry, request.method, request.path)
        if entry is None:
            logger.info("Denied %s %s: route not registered", request.method, request.path)
            return GateDecision.deny(
                DenyReason.ROUTE_NOT_REGISTERED, "Route not registered in permission registry"
            )

        if isinstance(entry.permission, Public):
            return GateDecision.allow(entry)

        token = extract_credential(request.headers, request.cookies)
        if not token:
            return GateDecision.deny(DenyReason.UNAUTHENTICATED, "Authentication required.", entry)

        claims = self.verify(token)
        user_id = _subject_to_id(claims)
        if user_id is None:
            return GateDecision.deny(DenyReason.UNAUTHENTICATED, "Invalid or expired token.", entry)

        try:
            user = await asyncio.to_thread(self.users.get_by_id, user_id)
        except (SQLAlchemyError, OSError) as exc:
            logger.error("User lookup failed for %s: %s", user_id, exc)
            return GateDecision.deny(DenyReason.DATA_UNAVAILABLE, "Authorization data unavailable.", entry)
        if user is None or not user.is_active:
            return GateDecision.deny(DenyReason.UNAUTHENTICATED, "User not found.", entry)

        organization_id = extract_organization(request.headers, request.query_params, request.cookies)

        if isinstance(entry.permission, Authenticated):
            return GateDecision.allow(entry, AuthContext(user.id, user.email, organization_id))

        try:
            resolved = await self.resolver.resolve(user.id, organization_id)
        except DataUnavailableError:
            return GateDecision.deny(DenyReason.DATA_UNAVAILABLE, "Authorization data unavailable.", entry)

        if not satisfies_requirement(resolved.permissions, entry.permission):
            logger.warning(
                "Denied %s %s for user %s (org=%s): requires %s",
                request.method,
                request.path,
                user.id,
                organization_id,
                describe_requirement(entry.permission),
            )
            return GateDecision.deny(
                DenyReason.FORBIDDEN,
                "You do not have permission to access this resource.",
                entry,
                required=describe_requirement(entry.permission),
                roles=resolved.roles,
            )

        context = AuthContext(
            user_id=user.id,
            email=user.email,
            organization_id=organization_id,
            roles=resolved.roles,
            permissions=resolved.permissions,
        )
        return GateDecision.allow(entry, context)


def _subject_to_id(claims: Optional[dict]) -> Optional[int]:
    if not claims:
        return None
    try:
        return int(claims.get("sub", ""))
    except (TypeError, ValueError):
        return None
