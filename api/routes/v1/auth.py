"""
api/routes/v1/auth.py -- Identity and permission snapshot endpoints.

Routes:
  POST /api/v1/auth/register     -- create an account with the default role; sets session cookie
  POST /api/v1/auth/login        -- password login; sets session cookie
  POST /api/v1/auth/logout       -- clears the session cookie
  POST /api/v1/auth/password     -- change the caller's password
  GET  /api/v1/auth/me           -- current identity
  GET  /api/v1/auth/permissions  -- resolve roles/permissions now and issue a snapshot token

The authorization gate has already run for every route here; register and
login are Public in the registry, the rest "authenticated".

Security:
  [H2] register and login are rate-limited (LOGIN_RATE_LIMIT per IP).
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on responses that carry a token.
  Unknown email and wrong password return the same "bad_credentials" error.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter, login_limit
from api.models import (
    LoginRequest,
    LoginResponse,
    MeResponse,
    PasswordChangeRequest,
    PermissionsResponse,
    RegisterRequest,
)
from auth.audit import audit_log
from auth.dependencies import get_auth_context
from auth.lockout import check_lockout, clear_failed_attempts, record_failed_attempt
from auth.models import User
from auth.store import DEFAULT_USER_ROLE, RoleStore, UserStore
from auth.tokens import (
    authenticate_user,
    create_permission_token,
    create_session_token,
    hash_password,
    set_session_cookie,
    validate_password,
    verify_password,
)
from core.config import get_settings
from core.errors import DataUnavailableError
from core.gate import SESSION_COOKIE, AuthorizationGate
from core.models import AuthContext, UserRoleAssignment

router = APIRouter()


def _client_info(request: Request) -> dict:
    return {
        "ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _token_response(user: User, status_code: int = 200) -> JSONResponse:
    settings = get_settings()
    token = create_session_token(user.id, user.email)
    resp = JSONResponse(
        status_code=status_code,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=settings.session_expire_seconds,
            user_id=user.id,
            email=user.email,
        ).model_dump(),
    )
    set_session_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _error(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message, **extra}})
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=LoginResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account, assign the default role and start a session."""
    user_store: UserStore = request.app.state.user_store
    role_store: RoleStore = request.app.state.role_store

    problems = validate_password(body.password)
    if problems:
        return _error(422, "weak_password", "Password does not meet requirements.", detail="; ".join(problems))

    try:
        user_id = user_store.create_user(
            User(email=body.email, name=body.name, hashed_password=hash_password(body.password))
        )
    except IntegrityError:
        return _error(409, "conflict", "An account with that email already exists.")

    default_role = role_store.find_role(DEFAULT_USER_ROLE)
    if default_role is not None:
        role_store.assign_role(UserRoleAssignment(user_id=user_id, role_id=default_role.id))

    audit_log(user_store, "REGISTER", user_id=user_id, email=body.email, **_client_info(request))
    return _token_response(user_store.get_by_id(user_id), status_code=201)


@limiter.limit(login_limit)  # [H2]
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    With LOCKOUT_ENABLED, a locked account is refused with 423 before the
    password is checked, and each failure counts toward the lock.
    """
    settings = get_settings()
    user_store: UserStore = request.app.state.user_store
    client = _client_info(request)

    status = check_lockout(user_store, body.email)
    if status.is_locked:
        audit_log(user_store, "LOGIN_FAILED", email=body.email, metadata={"reason": "locked"}, **client)
        return _error(
            423,
            "account_locked",
            "Account is temporarily locked.",
            detail=f"Locked until {status.locked_until.isoformat()}",
        )

    user = authenticate_user(user_store, body.email, body.password)
    if user is None:
        status = record_failed_attempt(user_store, body.email)
        audit_log(user_store, "LOGIN_FAILED", email=body.email, metadata={"reason": "bad_credentials"}, **client)
        if status.is_locked:
            audit_log(user_store, "ACCOUNT_LOCKED", email=body.email, **client)
        extra = {}
        if status.remaining_attempts is not None and settings.lockout_show_remaining_attempts:
            extra["remaining_attempts"] = status.remaining_attempts
        return _error(401, "bad_credentials", "Invalid email or password.", **extra)

    clear_failed_attempts(user_store, user.id)
    user_store.update_last_login(user.id)
    audit_log(user_store, "LOGIN_SUCCESS", user_id=user.id, email=user.email, **client)
    return _token_response(user)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout")
def logout(request: Request, auth: AuthContext = Depends(get_auth_context)) -> JSONResponse:
    """Clear the session cookie. Clients should also drop their permission snapshot."""
    audit_log(request.app.state.user_store, "LOGOUT", user_id=auth.user_id, email=auth.email, **_client_info(request))
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie(SESSION_COOKIE, path="/")
    return resp


@limiter.limit(login_limit)  # [H2]
@router.post("/auth/password")
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    auth: AuthContext = Depends(get_auth_context),
) -> JSONResponse:
    """Replace the caller's password after re-checking the current one."""
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(auth.user_id)
    if user is None or not user.hashed_password or not verify_password(body.current_password, user.hashed_password):
        return _error(400, "bad_credentials", "Current password is incorrect.")

    problems = validate_password(body.new_password)
    if problems:
        return _error(422, "weak_password", "Password does not meet requirements.", detail="; ".join(problems))

    user_store.update_user(user.id, hashed_password=hash_password(body.new_password))
    audit_log(user_store, "PASSWORD_CHANGED", user_id=user.id, email=user.email, **_client_info(request))
    return JSONResponse(content={"message": "Password changed."})


@router.get("/auth/me", response_model=MeResponse)
async def me(auth: AuthContext = Depends(get_auth_context)) -> MeResponse:
    """Return identity information for the current principal."""
    return MeResponse(user_id=auth.user_id, email=auth.email, organization_id=auth.organization_id)


@router.get("/auth/permissions", response_model=PermissionsResponse)
async def permissions(request: Request, auth: AuthContext = Depends(get_auth_context)) -> JSONResponse:
    """Resolve roles and permissions for the caller's organization scope now.

    The returned token is the client-side snapshot (auth.tokens
    create_permission_token); it is never accepted by the gate.
    """
    gate: AuthorizationGate = request.app.state.gate
    try:
        resolved = await gate.resolver.resolve(auth.user_id, auth.organization_id)
    except DataUnavailableError as exc:
        raise HTTPException(
            status_code=503,
            detail={"code": "data_unavailable", "message": "Authorization data unavailable."},
        ) from exc

    token = create_permission_token(auth.user_id, resolved.roles, resolved.permissions, auth.organization_id)
    resp = JSONResponse(
        content=PermissionsResponse(
            token=token,
            roles=resolved.roles,
            permissions=resolved.permissions,
            organization_id=auth.organization_id,
            expires_in=get_settings().permission_token_expire_seconds,
        ).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
