"""
api/routes/v1/admin.py -- Admin console endpoints.

Routes:
  GET    /api/v1/admin/dashboard   -- user and role counts
  GET    /api/v1/admin/audit-logs  -- filtered, paginated audit trail
  DELETE /api/v1/admin/purge       -- drop audit entries past AUDIT_RETENTION_DAYS

The registry puts every /api/v1/admin/* path behind admin:access:all; purge
additionally needs system:admin:all. audit-logs also requires an admin role
by name (auth.dependencies.require_role) on top of the gate's permission check.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import AuditLogPage, AuditLogRow, DashboardResponse, PurgeResponse
from auth.audit import purge_expired_audit_logs
from auth.dependencies import get_auth_context, require_role
from auth.store import RoleStore, UserStore, from_iso
from core.models import AuthContext

router = APIRouter()

AUDIT_LOG_ROLES = {"any": ["Platform Admin", "Admin"]}


@router.get("/admin/dashboard", response_model=DashboardResponse)
def dashboard(request: Request, auth: AuthContext = Depends(get_auth_context)) -> DashboardResponse:
    user_store: UserStore = request.app.state.user_store
    role_store: RoleStore = request.app.state.role_store
    now = datetime.now(timezone.utc)

    users = user_store.list_users()
    roles = role_store.list_roles(auth.organization_id)
    locked = [u for u in users if u.locked_until and from_iso(u.locked_until) > now]
    return DashboardResponse(
        total_users=len(users),
        active_users=sum(1 for u in users if u.is_active),
        locked_users=len(locked),
        total_roles=len(roles),
        system_roles=sum(1 for r in roles if r.is_system),
    )


@router.get("/admin/audit-logs", response_model=AuditLogPage)
def audit_logs(
    request: Request,
    user_id: Optional[int] = Query(default=None),
    email: Optional[str] = Query(default=None, max_length=255),
    event: Optional[str] = Query(default=None, max_length=64),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(require_role(AUDIT_LOG_ROLES)),
) -> AuditLogPage:
    """Newest first. start/end bound created_at inclusively."""
    user_store: UserStore = request.app.state.user_store
    entries, total = user_store.list_audit_logs(
        user_id=user_id,
        email=email,
        event_name=event,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    )
    return AuditLogPage(total=total, items=[AuditLogRow.from_entry(e) for e in entries])


@router.delete("/admin/purge", response_model=PurgeResponse)
def purge(request: Request, auth: AuthContext = Depends(get_auth_context)) -> PurgeResponse:
    """Apply the audit retention policy now instead of waiting for the daily task."""
    removed = purge_expired_audit_logs(request.app.state.user_store)
    return PurgeResponse(removed=removed)
