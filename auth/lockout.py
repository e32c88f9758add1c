"""
auth/lockout.py -- Account lockout after repeated failed logins.

Opt-in via LOCKOUT_ENABLED. When disabled every function reports "not locked"
and writes nothing.

State lives on the user row (failed_login_attempts, locked_until). A lock that
has run out is not cleared eagerly; the next failed attempt starts counting
from zero again and a successful login clears the counters.

Unknown emails always look like unlocked accounts with a full set of attempts,
so the lockout responses cannot be used to probe which emails exist.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from auth.store import UserStore, from_iso, to_iso
from core.config import get_settings

logger = logging.getLogger("gatekeeper.lockout")


@dataclass(frozen=True)
class LockoutStatus:
    is_locked: bool
    locked_until: Optional[datetime]
    failed_attempts: int
    remaining_attempts: Optional[int]  # None = unlimited (lockout disabled)


_UNLIMITED = LockoutStatus(False, None, 0, None)


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def check_lockout(store: UserStore, email: str, now: Optional[datetime] = None) -> LockoutStatus:
    settings = get_settings()
    if not settings.lockout_enabled:
        return _UNLIMITED
    max_attempts = settings.lockout_max_failed_attempts

    user = store.get_by_email(email)
    if user is None:
        return LockoutStatus(False, None, 0, max_attempts)

    now = _now(now)
    locked_until = from_iso(user.locked_until)
    if locked_until is not None and locked_until > now:
        return LockoutStatus(True, locked_until, user.failed_login_attempts, 0)

    failed = 0 if locked_until is not None else user.failed_login_attempts
    return LockoutStatus(False, None, failed, max(0, max_attempts - failed))


def record_failed_attempt(store: UserStore, email: str, now: Optional[datetime] = None) -> LockoutStatus:
    """Count a failed login and lock the account once the limit is reached."""
    settings = get_settings()
    if not settings.lockout_enabled:
        return _UNLIMITED
    max_attempts = settings.lockout_max_failed_attempts

    user = store.get_by_email(email)
    if user is None:
        return LockoutStatus(False, None, 0, max_attempts)

    now = _now(now)
    locked_until = from_iso(user.locked_until)
    current = 0 if locked_until is not None and locked_until <= now else user.failed_login_attempts
    attempts = current + 1

    new_lock: Optional[datetime] = None
    if attempts >= max_attempts:
        new_lock = now + timedelta(seconds=settings.lockout_duration_seconds)
        logger.warning("Account %s locked until %s after %d failed attempts", user.id, new_lock, attempts)

    store.update_user(
        user.id,
        failed_login_attempts=attempts,
        locked_until=to_iso(new_lock) if new_lock else None,
    )
    return LockoutStatus(new_lock is not None, new_lock, attempts, max(0, max_attempts - attempts))


def clear_failed_attempts(store: UserStore, user_id: int) -> None:
    """Reset counters after a successful login."""
    if not get_settings().lockout_enabled:
        return
    store.update_user(user_id, failed_login_attempts=0, locked_until=None)


def unlock_account(store: UserStore, user_id: int) -> bool:
    """Admin action: clear the lock regardless of LOCKOUT_ENABLED."""
    return store.update_user(user_id, failed_login_attempts=0, locked_until=None)
