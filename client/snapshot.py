"""
client/snapshot.py -- Decode a permission snapshot token on the client.

The client cannot verify the HS256 signature (it does not hold SECRET_KEY),
so it reads the claims with python-jose's get_unverified_claims() and only
checks shape and expiry. Tampering gains nothing: every protected request is
still authorized by the server gate from fresh store data.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from jose import JWTError, jwt


@dataclass(frozen=True)
class PermissionSnapshot:
    subject: str
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)
    organization: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return True
        return self.expires_at <= (now or datetime.now(timezone.utc))


def _ts(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _string_list(value) -> Optional[list[str]]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        return None
    return value


def decode_snapshot(token: str, now: Optional[datetime] = None) -> Optional[PermissionSnapshot]:
    """Return the snapshot carried by token, or None if malformed or expired.

    A token without an exp claim is treated as expired: snapshots must carry a
    validity window.
    """
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return None

    roles = _string_list(claims.get("roles"))
    permissions = _string_list(claims.get("permissions"))
    subject = claims.get("sub")
    if roles is None or permissions is None or not subject:
        return None

    try:
        snapshot = PermissionSnapshot(
            subject=str(subject),
            roles=roles,
            permissions=permissions,
            organization=claims.get("org"),
            issued_at=_ts(claims.get("iat")),
            expires_at=_ts(claims.get("exp")),
        )
    except (TypeError, ValueError, OverflowError):
        return None

    if snapshot.is_expired(now):
        return None
    return snapshot
