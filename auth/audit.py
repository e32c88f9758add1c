"""
auth/audit.py -- Security event audit trail.

Opt-in via AUDIT_ENABLED. AUDIT_STORAGE selects where entries go:
  database  audit_logs table through UserStore (queryable by admins)
  console   the "gatekeeper.audit" logger, one JSON line per event

Writing an audit entry never fails the request that triggered it: storage
errors are logged and swallowed.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from auth.models import AuditLogEntry
from auth.store import UserStore
from core.config import get_settings

logger = logging.getLogger("gatekeeper.audit")

AUDIT_EVENTS = frozenset(
    {
        "LOGIN_SUCCESS",
        "LOGIN_FAILED",
        "LOGOUT",
        "REGISTER",
        "PASSWORD_CHANGED",
        "ACCOUNT_LOCKED",
        "ACCOUNT_UNLOCKED",
    }
)


def audit_log(
    store: UserStore,
    event: str,
    user_id: Optional[int] = None,
    email: Optional[str] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    """Record a security event if auditing is enabled."""
    settings = get_settings()
    if not settings.audit_enabled:
        return
    if event not in AUDIT_EVENTS:
        raise ValueError(f"Unknown audit event: {event!r}")

    entry = AuditLogEntry(
        event=event,
        user_id=user_id,
        email=email,
        ip_address=ip,
        user_agent=user_agent,
        metadata=metadata or {},
    )

    if settings.audit_storage == "console":
        logger.warning("[AUDIT] %s", json.dumps(entry.__dict__, default=str))
        return

    try:
        store.add_audit_log(entry)
    except SQLAlchemyError:
        logger.exception("Failed to write audit log entry for %s", event)


def purge_expired_audit_logs(store: UserStore, now: Optional[datetime] = None) -> int:
    """Delete entries older than AUDIT_RETENTION_DAYS. 0 days keeps everything."""
    days = get_settings().audit_retention_days
    if days <= 0:
        return 0
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
    removed = store.purge_audit_logs(cutoff)
    logger.info("Purged %d audit log entries older than %s", removed, cutoff.isoformat())
    return removed
