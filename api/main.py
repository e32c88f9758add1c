"""
api/main.py -- FastAPI application entry point for Gatekeeper.

Exposes the authorization core over HTTP: identity (register/login), the
permission snapshot for clients, and the admin surface for roles, role
assignments and direct grants.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- one log line per request with status and timing
  2. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  3. CORSMiddleware        -- adds CORS headers for allowed browser origins
  4. SlowAPIMiddleware     -- enforces rate limits from api.limiter
  5. authorization gate    -- core.gate.AuthorizationGate for every /api/ path

Lifespan handles startup (stores, default roles, registry, gate, audit purge
task) and shutdown (cancel purge task, close DB connections) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, ForbiddenDetail, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.roles import router as roles_router
from api.routes.v1.users import router as users_router
from auth.audit import purge_expired_audit_logs
from auth.store import RoleStore, UserStore
from auth.tokens import verify_session_token
from core.config import get_settings
from core.errors import DenyReason
from core.gate import AuthorizationGate, GateDecision, GateRequest
from core.models import RoutePermissionEntry
from core.registry import ROUTE_PERMISSIONS
from core.resolver import PermissionResolver
from core.routes import load_registry

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatekeeper.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge audit log entries past AUDIT_RETENTION_DAYS once a day.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(24 * 60 * 60)
        await asyncio.to_thread(purge_expired_audit_logs, app.state.user_store)


def build_registry() -> list[RoutePermissionEntry]:
    """ROUTE_REGISTRY_FILE when configured, else the built-in registry."""
    if settings.route_registry_file:
        registry = load_registry(settings.route_registry_file)
        logger.info("Route registry loaded from %s (%d entries)", settings.route_registry_file, len(registry))
        return registry
    return list(ROUTE_PERMISSIONS)


def build_gate(user_store: UserStore, role_store: RoleStore, registry: list[RoutePermissionEntry]) -> AuthorizationGate:
    return AuthorizationGate(
        registry=registry,
        verify=verify_session_token,
        users=user_store,
        resolver=PermissionResolver(role_store),
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Stores first -- the gate and every route read them.
      2. Default roles -- registration assigns the "User" role by name.
      3. Registry and gate -- a bad ROUTE_REGISTRY_FILE fails startup here.
      4. Purge task last -- references app.state.user_store.
    """
    logger.info("Gatekeeper API starting up")
    app.state.user_store = UserStore(settings.database_url)
    app.state.role_store = RoleStore(settings.database_url)
    created = app.state.role_store.seed_default_roles()
    if created:
        logger.info("Seeded default roles: %s", ", ".join(created))

    app.state.registry = build_registry()
    app.state.gate = build_gate(app.state.user_store, app.state.role_store, app.state.registry)
    logger.info("Authorization gate ready (%d registry entries)", len(app.state.registry))
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.role_store.close()
    app.state.user_store.close()
    logger.info("Gatekeeper API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Gatekeeper API",
    description="Role and permission based authorization: identities, roles, grants and a route gate.",
    version=VERSION,
    lifespan=lifespan,
    # /docs and /redoc are outside the route registry and are not served.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Authorization gate middleware
#
# Every /api/ request goes through AuthorizationGate.evaluate(). The registry
# is an allowlist: an /api/ path with no entry is a 404 even if a handler
# exists. Allowed requests carry the AuthContext on request.state.auth for
# auth.dependencies.get_auth_context().
# ---------------------------------------------------------------------------


def _deny_response(decision: GateDecision) -> JSONResponse:
    if decision.reason is DenyReason.FORBIDDEN:
        detail: ErrorDetail = ForbiddenDetail(
            code=decision.reason.value,
            message=decision.message,
            required=decision.required,
            your_roles=decision.roles,
        )
    else:
        detail = ErrorDetail(code=decision.reason.value, message=decision.message)
    content = {"error": detail.model_dump(exclude_none=True)}
    return JSONResponse(status_code=decision.status_code, content=content)


async def authorization_gate(request: Request, call_next):
    if not request.url.path.startswith("/api/"):
        return await call_next(request)

    gate: AuthorizationGate = request.app.state.gate
    decision = await gate.evaluate(
        GateRequest(
            method=request.method,
            path=request.url.path,
            headers=request.headers,
            cookies=request.cookies,
            query_params=request.query_params,
        )
    )
    if not decision.allowed:
        return _deny_response(decision)
    request.state.auth = decision.context
    return await call_next(request)


# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the LAST registration is the
# OUTERMOST layer. Register innermost first: gate -> SlowAPI -> CORS ->
# TrustedHost. CORS sits outside the gate so preflight OPTIONS requests are
# answered without a registry entry.
# ---------------------------------------------------------------------------

app.add_middleware(BaseHTTPMiddleware, dispatch=authorization_gate)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Organization-Id"],
    max_age=3600,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.allowed_hosts,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log method, path, status code, and duration for every request."""
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(roles_router, prefix="/api/v1", tags=["Roles"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and a Retry-After header."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc.detail),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail ({"code", "message",
    ...}); that dict becomes the error field as-is. Anything else is wrapped.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The exception goes to the log only; the client receives a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is reachable regardless of router
# registration state. Public in the route registry.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
@limiter.exempt
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version and per-component status."""
    components = {"gate": "ok" if getattr(request.app.state, "gate", None) else "unavailable"}
    try:
        await asyncio.to_thread(request.app.state.user_store.has_users)
        components["database"] = "ok"
    except SQLAlchemyError as exc:
        logger.warning("Health check database probe failed: %s", exc)
        components["database"] = "unavailable"
    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
