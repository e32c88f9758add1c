"""
core/registry.py -- Default route and page permission registries.

This is the file integrators customize per deployment (or replace wholesale
with ROUTE_REGISTRY_FILE, see core.routes.load_registry).

Requirement values:
  None                   public, no auth
  "authenticated"        any logged-in user
  "users:read:all"       that permission (wildcards in held permissions apply)
  {"any": [...]}         at least one of these permissions
  {"all": [...]}         every one of these permissions

Ordering rule: first match wins. Specific patterns must precede the wildcard
patterns that would also match them (e.g. DELETE /admin/purge before
* /admin/*).
"""

from core.models import RoutePermissionEntry, route

ROUTE_PERMISSIONS: list[RoutePermissionEntry] = [
    # --- public -----------------------------------------------------------
    route("GET", "/api/v1/health", None, "Liveness probe"),
    route("POST", "/api/v1/auth/register", None, "Self-service registration"),
    route("POST", "/api/v1/auth/login", None, "Password login"),
    # --- authenticated, no specific permission ------------------------------
    route("GET", "/api/v1/auth/me", "authenticated"),
    route("POST", "/api/v1/auth/logout", "authenticated"),
    route("POST", "/api/v1/auth/password", "authenticated", "Change own password"),
    route("GET", "/api/v1/auth/permissions", "authenticated", "Issue permission snapshot token"),
    # --- role management ----------------------------------------------------
    route("GET", "/api/v1/roles", "users:read:all"),
    route("POST", "/api/v1/roles", "users:manage:all"),
    route("GET", "/api/v1/roles/:id", "users:read:all"),
    route("PUT", "/api/v1/roles/:id", "users:manage:all"),
    route("DELETE", "/api/v1/roles/:id", "users:manage:all"),
    # --- user role assignments and direct grants ----------------------------
    route("GET", "/api/v1/users/:id/roles", "users:read:all"),
    route("POST", "/api/v1/users/:id/roles", "users:manage:all"),
    route("DELETE", "/api/v1/users/:id/roles/:assignmentId", "users:manage:all"),
    route("GET", "/api/v1/users/:id/permissions", "users:read:all"),
    route("POST", "/api/v1/users/:id/permissions", "users:manage:all"),
    route("DELETE", "/api/v1/users/:id/permissions/:grantId", "users:manage:all"),
    route("POST", "/api/v1/users/:id/unlock", "users:manage:all"),
    # --- users --------------------------------------------------------------
    route("GET", "/api/v1/users", {"any": ["users:read:all", "admin:access:all"]}),
    route("GET", "/api/v1/users/:id", {"any": ["users:read:all", "admin:access:all"]}),
    # --- admin --------------------------------------------------------------
    route("GET", "/api/v1/admin/dashboard", "admin:access:all"),
    route("DELETE", "/api/v1/admin/purge", {"all": ["admin:access:all", "system:admin:all"]}),
    route("*", "/api/v1/admin/*", "admin:access:all"),
]

# Page routes, evaluated by client.gates.route_guard. Unlisted pages default to
# "authenticated" on the client side.
PAGE_PERMISSIONS: list[RoutePermissionEntry] = [
    route("GET", "/login", None),
    route("GET", "/register", None),
    route("GET", "/forgot-password", None),
    route("GET", "/unauthorized", None),
    route("GET", "/dashboard", "authenticated"),
    route("GET", "/settings", "authenticated"),
    route("GET", "/admin", "admin:access:all"),
    route("GET", "/admin/*", "admin:access:all"),
]
