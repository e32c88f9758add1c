"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors core/models.py
-- dataclasses own domain shape; stores and routes do the work. Role,
assignment and grant types live in core/models.py because the resolver needs
them; only identity records live here.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class User:
    """An authenticated identity.

    failed_login_attempts / locked_until back the opt-in account lockout
    (auth/lockout.py). locked_until is an ISO 8601 UTC string or None.
    """

    email: str
    id: int | None = None
    name: str | None = None
    hashed_password: str | None = None
    created_at: str | None = None
    is_active: bool = True
    failed_login_attempts: int = 0
    locked_until: str | None = None
    last_login: str | None = None


@dataclass
class AuditLogEntry:
    """Security event record. Append-only; deleted only by retention purge."""

    event: str  # one of auth.audit.AUDIT_EVENTS
    user_id: int | None = None
    email: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: int | None = None
    created_at: str | None = None
