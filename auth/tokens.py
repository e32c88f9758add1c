"""
auth/tokens.py -- JWT, password hashing, and password policy utilities.

Security design decisions:
  JWT: python-jose with HS256, signed with SECRET_KEY, fixed issuer and
       audience. Two token kinds share the key:
         session token     sub=user id, email; long-lived (SESSION_EXPIRE_SECONDS).
                           The gate verifies it on every protected request.
         permission token  sub, org, roles, permissions; short window
                           (PERMISSION_TOKEN_EXPIRE_SECONDS). A snapshot for
                           client-side UI gating only -- the backend never
                           authorizes from it.
       Verification returns None on any failure; callers turn that into 401.

  Passwords: bcrypt directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email is registered [C1].

  SECRET_KEY: sourced from core.config.get_settings(), which validates it at
       startup [M6].

Layer rule: no imports from api/ or client/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings
from core.gate import SESSION_COOKIE

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("gatekeeper.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"
TOKEN_TYPE_SESSION = "session"
TOKEN_TYPE_PERMISSIONS = "permissions"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input beyond 72 bytes; PASSWORD_MAX_LENGTH and the API
    field limits keep inputs in a sane range.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1]. Computed once at module load.
_DUMMY_HASH: str = hash_password("gatekeeper_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user


# ---------------------------------------------------------------------------
# Password policy
# ---------------------------------------------------------------------------

_SYMBOL_RE = re.compile(r"[^A-Za-z0-9]")


def password_requirements() -> list[str]:
    """Human-readable list of the active password rules."""
    s = _settings
    rules = [f"At least {s.password_min_length} characters", f"At most {s.password_max_length} characters"]
    if s.password_require_uppercase:
        rules.append("At least one uppercase letter")
    if s.password_require_lowercase:
        rules.append("At least one lowercase letter")
    if s.password_require_numbers:
        rules.append("At least one number")
    if s.password_require_symbols:
        rules.append("At least one symbol")
    return rules


def validate_password(password: str) -> list[str]:
    """Return the list of rule violations; empty means the password is acceptable."""
    s = _settings
    errors: list[str] = []
    if len(password) < s.password_min_length:
        errors.append(f"Password must be at least {s.password_min_length} characters.")
    if len(password) > s.password_max_length:
        errors.append(f"Password must be at most {s.password_max_length} characters.")
    if s.password_require_uppercase and not any(c.isupper() for c in password):
        errors.append("Password must contain an uppercase letter.")
    if s.password_require_lowercase and not any(c.islower() for c in password):
        errors.append("Password must contain a lowercase letter.")
    if s.password_require_numbers and not any(c.isdigit() for c in password):
        errors.append("Password must contain a number.")
    if s.password_require_symbols and not _SYMBOL_RE.search(password):
        errors.append("Password must contain a symbol.")
    return errors


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def _encode(claims: dict, expire_seconds: int) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        **claims,
        "iss": _settings.jwt_issuer,
        "aud": _settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=expire_seconds)).timestamp()),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def _decode(token: str, token_type: str) -> dict | None:
    try:
        payload = jwt.decode(
            token,
            _settings.secret_key,
            algorithms=[_ALGORITHM],
            audience=_settings.jwt_audience,
            issuer=_settings.jwt_issuer,
        )
    except JWTError:
        return None
    if payload.get("typ") != token_type or not payload.get("sub"):
        return None
    return payload


def create_session_token(user_id: int, email: str, expire_seconds: int = 0) -> str:
    """Encode a signed session JWT. expire_seconds=0 uses SESSION_EXPIRE_SECONDS."""
    duration = expire_seconds if expire_seconds > 0 else _settings.session_expire_seconds
    return _encode({"sub": str(user_id), "email": email, "typ": TOKEN_TYPE_SESSION}, duration)


def verify_session_token(token: str) -> dict | None:
    """Decode and verify a session JWT. Returns the claims or None on any failure.

    A permission token is rejected here even though it carries the same
    signature -- the typ claim keeps the two from being swapped.
    """
    return _decode(token, TOKEN_TYPE_SESSION)


def create_permission_token(
    user_id: int,
    roles: list[str],
    permissions: list[str],
    organization_id: Optional[str] = None,
    expire_seconds: int = 0,
) -> str:
    """Encode the client-side permission snapshot."""
    duration = expire_seconds if expire_seconds > 0 else _settings.permission_token_expire_seconds
    claims: dict = {
        "sub": str(user_id),
        "roles": list(roles),
        "permissions": list(permissions),
        "typ": TOKEN_TYPE_PERMISSIONS,
    }
    if organization_id:
        claims["org"] = organization_id
    return _encode(claims, duration)


def verify_permission_token(token: str) -> dict | None:
    return _decode(token, TOKEN_TYPE_PERMISSIONS)


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the session JWT as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the JWT expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.session_expire_seconds
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
        path="/",
    )
