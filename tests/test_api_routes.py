"""
tests/test_api_routes.py -- Integration tests for the Gatekeeper HTTP API.

These tests exercise the full stack: gate middleware -> FastAPI routing ->
dependency injection -> UserStore/RoleStore -> response model serialization.

Coverage:
  - Gate outcomes over HTTP: 404 unregistered, 401 unauthenticated, 403 with
    required/your_roles, cookie and bearer credentials, inactive users
  - Auth routes: register, login (incl. lockout), logout, me, permissions snapshot
  - Roles CRUD incl. organization scope, duplicates and system roles
  - Role assignments and direct grants take effect on the next request
  - Admin routes: purge needs both admin and system permissions; audit-logs
    additionally needs an admin role

Fixtures used (from conftest.py):
  - api_client: ApiEnv with seeded users admin@ (Platform Admin), dev@ (Developer),
    user@ (User); password "testpass123" for all.
"""

from __future__ import annotations

import inspect
from datetime import datetime, timedelta, timezone

import pytest

from api.limiter import limiter
from api.routes.v1 import admin as admin_routes
from api.routes.v1 import auth as auth_routes
from api.routes.v1 import roles as roles_routes
from api.routes.v1 import users as users_routes
from auth.tokens import create_session_token
from client.snapshot import decode_snapshot
from core.models import DirectGrant, UserRoleAssignment
from tests.conftest import ApiEnv, add_user, auth_headers


@pytest.fixture(autouse=True)
def _clear_cookies(api_client: ApiEnv):
    """Login and register set a session cookie on the shared client; drop it after each test."""
    yield
    api_client.client.cookies.clear()


def _new_user(env: ApiEnv, email: str, roles: tuple[str, ...] = ()) -> tuple[int, str]:
    uid = add_user(env.user_store, env.role_store, email, roles)
    return uid, create_session_token(uid, email, expire_seconds=3600)


class TestGateOverHttp:
    def test_unregistered_api_path_is_404(self, api_client: ApiEnv) -> None:
        resp = api_client.client.get("/api/v1/internal/debug", headers=auth_headers(api_client.admin_token))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "route_not_registered"

    def test_me_without_credential_is_401(self, api_client: ApiEnv) -> None:
        resp = api_client.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthenticated"

    def test_garbage_token_is_401(self, api_client: ApiEnv) -> None:
        resp = api_client.client.get("/api/v1/auth/me", headers=auth_headers("not-a-token"))
        assert resp.status_code == 401

    def test_me_with_bearer(self, api_client: ApiEnv) -> None:
        resp = api_client.client.get("/api/v1/auth/me", headers=auth_headers(api_client.user_token, "acme"))
        assert resp.status_code == 200
        assert resp.json() == {"user_id": api_client.user_id, "email": "user@example.com", "organization_id": "acme"}

    def test_forbidden_body(self, api_client: ApiEnv) -> None:
        resp = api_client.client.get("/api/v1/roles", headers=auth_headers(api_client.user_token))
        assert resp.status_code == 403
        error = resp.json()["error"]
        assert error["code"] == "forbidden"
        assert error["required"] == "users:read:all"
        assert error["your_roles"] == ["User"]

    def test_inactive_user_is_401(self, api_client: ApiEnv) -> None:
        uid, token = _new_user(api_client, "inactive@example.com", ("Viewer",))
        api_client.user_store.update_user(uid, is_active=False)
        assert api_client.client.get("/api/v1/auth/me", headers=auth_headers(token)).status_code == 401

    def test_session_cookie_authenticates(self, api_client: ApiEnv) -> None:
        api_client.client.cookies.set("session", api_client.developer_token)
        resp = api_client.client.get("/api/v1/users")
        assert resp.status_code == 200


class TestAuthRoutes:
    def test_register_assigns_default_role(self, api_client: ApiEnv) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/register", json={"email": "fresh@example.com", "password": "longenough1"}
        )
        assert resp.status_code == 201, resp.text
        assert "session" in resp.cookies
        token = resp.json()["access_token"]

        perms = api_client.client.get("/api/v1/auth/permissions", headers=auth_headers(token)).json()
        assert perms["roles"] == ["User"]
        assert perms["permissions"] == ["projects:read:all"]

    def test_register_duplicate_email(self, api_client: ApiEnv) -> None:
        resp = api_client.client.post("/api/v1/auth/register", json={"email": "user@example.com", "password": "longenough1"})
        assert resp.status_code == 409

    def test_register_weak_password(self, api_client: ApiEnv) -> None:
        resp = api_client.client.post("/api/v1/auth/register", json={"email": "weak@example.com", "password": "short"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "weak_password"

    def test_register_invalid_email(self, api_client: ApiEnv) -> None:
        resp = api_client.client.post("/api/v1/auth/register", json={"email": "not-an-email", "password": "longenough1"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_login_success(self, api_client: ApiEnv) -> None:
        resp = api_client.client.post("/api/v1/auth/login", json={"email": "dev@example.com", "password": "testpass123"})
        assert resp.status_code == 200
        assert resp.headers["Cache-Control"] == "no-store"
        assert resp.json()["user_id"] == api_client.developer_id
        assert "session" in resp.cookies

    def test_login_bad_password(self, api_client: ApiEnv) -> None:
        resp = api_client.client.post("/api/v1/auth/login", json={"email": "dev@example.com", "password": "wrong-pass"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"

    def test_login_unknown_email_same_error(self, api_client: ApiEnv) -> None:
        resp = api_client.client.post("/api/v1/auth/login", json={"email": "ghost@example.com", "password": "whatever1"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"

    def test_logout_clears_cookie(self, api_client: ApiEnv) -> None:
        resp = api_client.client.post("/api/v1/auth/logout", headers=auth_headers(api_client.user_token))
        assert resp.status_code == 200
        assert "session=" in resp.headers["set-cookie"]

    def test_permissions_snapshot(self, api_client: ApiEnv) -> None:
        resp = api_client.client.get("/api/v1/auth/permissions", headers=auth_headers(api_client.developer_token))
        assert resp.status_code == 200
        body = resp.json()
        assert body["roles"] == ["Developer"]
        snap = decode_snapshot(body["token"])
        assert snap.subject == str(api_client.developer_id)
        assert snap.permissions == body["permissions"]

    def test_lockout_flow(self, api_client: ApiEnv, settings, monkeypatch) -> None:
        monkeypatch.setattr(settings, "lockout_enabled", True)
        monkeypatch.setattr(settings, "lockout_max_failed_attempts", 2)
        uid, _ = _new_user(api_client, "lock@example.com")
        bad = {"email": "lock@example.com", "password": "wrong-pass"}
        good = {"email": "lock@example.com", "password": "testpass123"}

        first = api_client.client.post("/api/v1/auth/login", json=bad)
        assert first.json()["error"]["remaining_attempts"] == 1
        second = api_client.client.post("/api/v1/auth/login", json=bad)
        assert second.json()["error"]["remaining_attempts"] == 0

        locked = api_client.client.post("/api/v1/auth/login", json=good)
        assert locked.status_code == 423
        assert locked.json()["error"]["code"] == "account_locked"

        unlock = api_client.client.post(f"/api/v1/users/{uid}/unlock", headers=auth_headers(api_client.admin_token))
        assert unlock.status_code == 200
        assert unlock.json()["locked_until"] is None
        assert api_client.client.post("/api/v1/auth/login", json=good).status_code == 200


class TestRoleRoutes:
    def test_crud(self, api_client: ApiEnv) -> None:
        headers = auth_headers(api_client.admin_token)
        created = api_client.client.post(
            "/api/v1/roles",
            json={"name": "Auditor", "description": "Reads audit data", "permissions": ["audit:read:all", "audit:read:all"]},
            headers=headers,
        )
        assert created.status_code == 201, created.text
        role = created.json()
        assert role["permissions"] == ["audit:read:all"]
        assert role["is_system"] is False

        dup = api_client.client.post("/api/v1/roles", json={"name": "Auditor"}, headers=headers)
        assert dup.status_code == 409

        updated = api_client.client.put(
            f"/api/v1/roles/{role['id']}", json={"permissions": ["audit:*:all"]}, headers=headers
        )
        assert updated.json()["permissions"] == ["audit:*:all"]

        assert api_client.client.get(f"/api/v1/roles/{role['id']}", headers=headers).status_code == 200
        assert api_client.client.delete(f"/api/v1/roles/{role['id']}", headers=headers).status_code == 204
        assert api_client.client.get(f"/api/v1/roles/{role['id']}", headers=headers).status_code == 404

    def test_invalid_permission_string(self, api_client: ApiEnv) -> None:
        resp = api_client.client.post(
            "/api/v1/roles", json={"name": "Bad", "permissions": ["not a permission"]},
            headers=auth_headers(api_client.admin_token),
        )
        assert resp.status_code == 422

    def test_system_roles_are_read_only(self, api_client: ApiEnv) -> None:
        viewer = api_client.role_store.find_role("Viewer")
        headers = auth_headers(api_client.admin_token)
        assert api_client.client.delete(f"/api/v1/roles/{viewer.id}", headers=headers).status_code == 403
        resp = api_client.client.put(f"/api/v1/roles/{viewer.id}", json={"name": "Lurker"}, headers=headers)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "system_role"

    def test_organization_scope(self, api_client: ApiEnv) -> None:
        resp = api_client.client.post(
            "/api/v1/roles", json={"name": "Acme Ops", "permissions": ["ops:run:all"]},
            headers=auth_headers(api_client.admin_token, "acme"),
        )
        role_id = resp.json()["id"]
        assert resp.json()["organization_id"] == "acme"

        in_scope = api_client.client.get(f"/api/v1/roles/{role_id}", headers=auth_headers(api_client.admin_token, "acme"))
        assert in_scope.status_code == 200
        global_view = api_client.client.get(f"/api/v1/roles/{role_id}", headers=auth_headers(api_client.admin_token))
        assert global_view.status_code == 404

    def test_developer_can_read_not_manage(self, api_client: ApiEnv) -> None:
        headers = auth_headers(api_client.developer_token)
        assert api_client.client.get("/api/v1/roles", headers=headers).status_code == 200
        resp = api_client.client.post("/api/v1/roles", json={"name": "Sneaky"}, headers=headers)
        assert resp.status_code == 403
        assert resp.json()["error"]["required"] == "users:manage:all"


class TestAssignmentsAndGrants:
    def test_assign_and_revoke_role_takes_effect(self, api_client: ApiEnv) -> None:
        uid, token = _new_user(api_client, "promote@example.com")
        admin = auth_headers(api_client.admin_token)
        viewer = api_client.role_store.find_role("Viewer")

        assert api_client.client.get("/api/v1/users", headers=auth_headers(token)).status_code == 403

        resp = api_client.client.post(f"/api/v1/users/{uid}/roles", json={"role_id": viewer.id}, headers=admin)
        assert resp.status_code == 201, resp.text
        assignment = resp.json()
        assert assignment["role_name"] == "Viewer"

        assert api_client.client.get("/api/v1/users", headers=auth_headers(token)).status_code == 200

        listed = api_client.client.get(f"/api/v1/users/{uid}/roles", headers=admin).json()
        assert [a["id"] for a in listed] == [assignment["id"]]

        revoke = api_client.client.delete(f"/api/v1/users/{uid}/roles/{assignment['id']}", headers=admin)
        assert revoke.status_code == 204
        assert api_client.client.get("/api/v1/users", headers=auth_headers(token)).status_code == 403
        again = api_client.client.delete(f"/api/v1/users/{uid}/roles/{assignment['id']}", headers=admin)
        assert again.status_code == 404

    def test_assignment_scoped_to_organization(self, api_client: ApiEnv) -> None:
        uid, token = _new_user(api_client, "acme-only@example.com")
        admin = auth_headers(api_client.admin_token)
        viewer = api_client.role_store.find_role("Viewer")
        api_client.client.post(
            f"/api/v1/users/{uid}/roles", json={"role_id": viewer.id, "organization_id": "acme"}, headers=admin
        )
        assert api_client.client.get("/api/v1/users", headers=auth_headers(token, "acme")).status_code == 200
        assert api_client.client.get("/api/v1/users", headers=auth_headers(token, "globex")).status_code == 403
        assert api_client.client.get("/api/v1/users?org=acme", headers=auth_headers(token)).status_code == 200

    def test_past_expiry_rejected(self, api_client: ApiEnv) -> None:
        past = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
        resp = api_client.client.post(
            f"/api/v1/users/{api_client.user_id}/permissions",
            json={"permissions": ["x:y:z"], "expires_at": past},
            headers=auth_headers(api_client.admin_token),
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "invalid_expiry"

    def test_assign_unknown_role(self, api_client: ApiEnv) -> None:
        resp = api_client.client.post(
            f"/api/v1/users/{api_client.user_id}/roles", json={"role_id": 99999},
            headers=auth_headers(api_client.admin_token),
        )
        assert resp.status_code == 404

    def test_direct_grant_and_revoke(self, api_client: ApiEnv) -> None:
        uid, token = _new_user(api_client, "granted@example.com")
        admin = auth_headers(api_client.admin_token)

        resp = api_client.client.post(
            f"/api/v1/users/{uid}/permissions", json={"permissions": ["users:read:all"]}, headers=admin
        )
        assert resp.status_code == 201
        grant_id = resp.json()["id"]
        assert api_client.client.get(f"/api/v1/users/{uid}", headers=auth_headers(token)).status_code == 200

        view = api_client.client.get(f"/api/v1/users/{uid}/permissions", headers=admin).json()
        assert view["direct_permissions"] == ["users:read:all"]
        assert [g["id"] for g in view["grants"]] == [grant_id]

        assert api_client.client.delete(f"/api/v1/users/{uid}/permissions/{grant_id}", headers=admin).status_code == 204
        assert api_client.client.get(f"/api/v1/users/{uid}", headers=auth_headers(token)).status_code == 403

    def test_expired_grant_does_not_authorize(self, api_client: ApiEnv) -> None:
        uid, token = _new_user(api_client, "expired-grant@example.com")
        api_client.role_store.grant_permissions(
            DirectGrant(uid, ["users:read:all"], expires_at=datetime.now(timezone.utc) - timedelta(days=1))
        )
        assert api_client.client.get("/api/v1/users", headers=auth_headers(token)).status_code == 403

    def test_unknown_user_is_404(self, api_client: ApiEnv) -> None:
        resp = api_client.client.get("/api/v1/users/99999", headers=auth_headers(api_client.admin_token))
        assert resp.status_code == 404


class TestAdminRoutes:
    def test_dashboard(self, api_client: ApiEnv) -> None:
        resp = api_client.client.get("/api/v1/admin/dashboard", headers=auth_headers(api_client.admin_token))
        assert resp.status_code == 200
        body = resp.json()
        assert body["total_users"] >= 3
        assert body["system_roles"] == 6

    def test_purge_needs_admin_and_system(self, api_client: ApiEnv) -> None:
        _, org_admin = _new_user(api_client, "org-admin@example.com", ("Admin",))
        denied = api_client.client.delete("/api/v1/admin/purge", headers=auth_headers(org_admin))
        assert denied.status_code == 403
        assert denied.json()["error"]["required"] == {"all": ["admin:access:all", "system:admin:all"]}

        uid = api_client.user_store.get_by_email("org-admin@example.com").id
        api_client.role_store.grant_permissions(DirectGrant(uid, ["system:admin:all"]))
        allowed = api_client.client.delete("/api/v1/admin/purge", headers=auth_headers(org_admin))
        assert allowed.status_code == 200
        assert allowed.json() == {"removed": 0}

    def test_developer_cannot_reach_admin(self, api_client: ApiEnv) -> None:
        resp = api_client.client.get("/api/v1/admin/dashboard", headers=auth_headers(api_client.developer_token))
        assert resp.status_code == 403

    def test_audit_logs_require_admin_role(self, api_client: ApiEnv) -> None:
        uid, token = _new_user(api_client, "perm-only@example.com")
        api_client.role_store.grant_permissions(DirectGrant(uid, ["admin:access:all"]))

        resp = api_client.client.get("/api/v1/admin/audit-logs", headers=auth_headers(token))
        assert resp.status_code == 403
        assert resp.json()["error"]["required"] == {"any": ["Platform Admin", "Admin"]}
        assert resp.json()["error"]["your_roles"] == []

        ok = api_client.client.get("/api/v1/admin/audit-logs?limit=10", headers=auth_headers(api_client.admin_token))
        assert ok.status_code == 200
        assert set(ok.json()) == {"total", "items"}

    def test_role_assignment_in_store_is_seen_immediately(self, api_client: ApiEnv) -> None:
        uid, token = _new_user(api_client, "late-admin@example.com")
        headers = auth_headers(token)
        assert api_client.client.get("/api/v1/admin/dashboard", headers=headers).status_code == 403
        admin_role = api_client.role_store.find_role("Admin")
        api_client.role_store.assign_role(UserRoleAssignment(uid, admin_role.id))
        assert api_client.client.get("/api/v1/admin/dashboard", headers=headers).status_code == 200


def _org_admin(env: ApiEnv, email: str, organization_id: str = "acme") -> tuple[int, str]:
    uid = add_user(env.user_store, env.role_store, email, ("Admin",), organization_id=organization_id)
    return uid, create_session_token(uid, email, expire_seconds=3600)


class TestOrganizationWriteScope:
    """An organization admin's writes stay inside its organization."""

    def test_global_role_assignment_is_pinned_to_caller_org(self, api_client: ApiEnv) -> None:
        uid, token = _org_admin(api_client, "acme-admin1@example.com")
        platform_admin = api_client.role_store.find_role("Platform Admin")

        resp = api_client.client.post(
            f"/api/v1/users/{uid}/roles", json={"role_id": platform_admin.id}, headers=auth_headers(token, "acme")
        )
        assert resp.status_code == 201
        assert resp.json()["organization_id"] == "acme"

        # Still no authority outside acme.
        assert api_client.client.get("/api/v1/users", headers=auth_headers(token)).status_code == 403
        assert api_client.client.delete("/api/v1/admin/purge", headers=auth_headers(token)).status_code == 403
        assert api_client.client.get("/api/v1/users", headers=auth_headers(token, "globex")).status_code == 403

    def test_assignment_into_other_scope_is_403(self, api_client: ApiEnv) -> None:
        uid, token = _org_admin(api_client, "acme-admin2@example.com")
        viewer = api_client.role_store.find_role("Viewer")
        resp = api_client.client.post(
            f"/api/v1/users/{uid}/roles",
            json={"role_id": viewer.id, "organization_id": "globex"},
            headers=auth_headers(token, "acme"),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "scope_violation"

    def test_grant_into_other_scope_is_403(self, api_client: ApiEnv) -> None:
        uid, token = _org_admin(api_client, "acme-admin3@example.com")
        resp = api_client.client.post(
            f"/api/v1/users/{uid}/permissions",
            json={"permissions": ["*"], "organization_id": "globex"},
            headers=auth_headers(token, "acme"),
        )
        assert resp.status_code == 403
        assert api_client.role_store.list_direct_grants(uid, "globex") == []

    def test_grant_defaults_to_caller_org(self, api_client: ApiEnv) -> None:
        uid, token = _org_admin(api_client, "acme-admin4@example.com")
        resp = api_client.client.post(
            f"/api/v1/users/{uid}/permissions", json={"permissions": ["reports:export:all"]},
            headers=auth_headers(token, "acme"),
        )
        assert resp.status_code == 201
        assert resp.json()["organization_id"] == "acme"

    def test_cannot_revoke_global_assignment_or_grant(self, api_client: ApiEnv) -> None:
        _, token = _org_admin(api_client, "acme-admin5@example.com")
        target, _ = _new_user(api_client, "global-viewer@example.com", ("Viewer",))
        assignment = api_client.role_store.list_role_assignments(target)[0]
        grant_id = api_client.role_store.grant_permissions(DirectGrant(target, ["reports:read:all"]))
        headers = auth_headers(token, "acme")

        resp = api_client.client.delete(f"/api/v1/users/{target}/roles/{assignment.id}", headers=headers)
        assert resp.status_code == 403
        resp = api_client.client.delete(f"/api/v1/users/{target}/permissions/{grant_id}", headers=headers)
        assert resp.status_code == 403
        assert len(api_client.role_store.list_role_assignments(target)) == 1
        assert len(api_client.role_store.list_direct_grants(target)) == 1

    def test_can_revoke_own_org_assignment(self, api_client: ApiEnv) -> None:
        _, token = _org_admin(api_client, "acme-admin6@example.com")
        target, _ = _new_user(api_client, "acme-viewer@example.com")
        viewer = api_client.role_store.find_role("Viewer")
        assignment_id = api_client.role_store.assign_role(UserRoleAssignment(target, viewer.id, organization_id="acme"))
        resp = api_client.client.delete(
            f"/api/v1/users/{target}/roles/{assignment_id}", headers=auth_headers(token, "acme")
        )
        assert resp.status_code == 204

    def test_global_custom_role_is_read_only_from_org(self, api_client: ApiEnv) -> None:
        _, token = _org_admin(api_client, "acme-admin7@example.com")
        created = api_client.client.post(
            "/api/v1/roles", json={"name": "Global Reporter", "permissions": ["reports:read:all"]},
            headers=auth_headers(api_client.admin_token),
        )
        role_id = created.json()["id"]
        headers = auth_headers(token, "acme")

        assert api_client.client.get(f"/api/v1/roles/{role_id}", headers=headers).status_code == 200
        resp = api_client.client.put(f"/api/v1/roles/{role_id}", json={"permissions": ["*"]}, headers=headers)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "scope_violation"
        assert api_client.client.delete(f"/api/v1/roles/{role_id}", headers=headers).status_code == 403
        assert api_client.role_store.get_role(role_id).permissions == ["reports:read:all"]

    def test_org_admin_manages_own_org_roles(self, api_client: ApiEnv) -> None:
        _, token = _org_admin(api_client, "acme-admin8@example.com")
        headers = auth_headers(token, "acme")
        created = api_client.client.post("/api/v1/roles", json={"name": "Acme Reporter"}, headers=headers)
        assert created.status_code == 201
        role_id = created.json()["id"]
        resp = api_client.client.put(f"/api/v1/roles/{role_id}", json={"permissions": ["reports:read:all"]}, headers=headers)
        assert resp.status_code == 200
        assert api_client.client.delete(f"/api/v1/roles/{role_id}", headers=headers).status_code == 204


class TestPasswordChange:
    def test_change_password(self, api_client: ApiEnv, settings, monkeypatch) -> None:
        monkeypatch.setattr(settings, "audit_enabled", True)
        monkeypatch.setattr(settings, "audit_storage", "database")
        _, token = _new_user(api_client, "rotate@example.com")
        headers = auth_headers(token)

        wrong = api_client.client.post(
            "/api/v1/auth/password", json={"current_password": "nope", "new_password": "brand-new-pass"}, headers=headers
        )
        assert wrong.status_code == 400
        weak = api_client.client.post(
            "/api/v1/auth/password", json={"current_password": "testpass123", "new_password": "short"}, headers=headers
        )
        assert weak.json()["error"]["code"] == "weak_password"

        ok = api_client.client.post(
            "/api/v1/auth/password",
            json={"current_password": "testpass123", "new_password": "brand-new-pass"},
            headers=headers,
        )
        assert ok.status_code == 200

        login = {"email": "rotate@example.com"}
        assert api_client.client.post("/api/v1/auth/login", json={**login, "password": "testpass123"}).status_code == 401
        assert api_client.client.post("/api/v1/auth/login", json={**login, "password": "brand-new-pass"}).status_code == 200
        _, total = api_client.user_store.list_audit_logs(email="rotate@example.com", event_name="PASSWORD_CHANGED")
        assert total == 1

    def test_requires_authentication(self, api_client: ApiEnv) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/password", json={"current_password": "a", "new_password": "brand-new-pass"}
        )
        assert resp.status_code == 401


class TestRateLimit:
    @pytest.fixture
    def fresh_limiter(self):
        limiter.reset()
        yield limiter
        limiter.reset()

    def test_login_limit_applies(self, api_client: ApiEnv, settings, monkeypatch, fresh_limiter) -> None:
        monkeypatch.setattr(settings, "login_rate_limit", "2/minute")
        bad = {"email": "throttled@example.com", "password": "wrong-pass"}
        assert api_client.client.post("/api/v1/auth/login", json=bad).status_code == 401
        assert api_client.client.post("/api/v1/auth/login", json=bad).status_code == 401
        resp = api_client.client.post("/api/v1/auth/login", json=bad)
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"

    def test_disabled_limiter_never_throttles(self, api_client: ApiEnv, settings, monkeypatch, fresh_limiter) -> None:
        monkeypatch.setattr(settings, "login_rate_limit", "1/minute")
        monkeypatch.setattr(fresh_limiter, "enabled", False)
        bad = {"email": "unthrottled@example.com", "password": "wrong-pass"}
        for _ in range(3):
            assert api_client.client.post("/api/v1/auth/login", json=bad).status_code == 401


class TestHandlersDoNotBlockTheLoop:
    """Handlers that call the synchronous stores run in FastAPI's thread pool."""

    @pytest.mark.parametrize(
        "handler",
        [
            roles_routes.list_roles,
            roles_routes.create_role,
            roles_routes.update_role,
            roles_routes.delete_role,
            users_routes.list_users,
            users_routes.assign_user_role,
            users_routes.grant_user_permissions,
            users_routes.revoke_user_role,
            admin_routes.dashboard,
            admin_routes.audit_logs,
            admin_routes.purge,
            auth_routes.logout,
            auth_routes.change_password,
        ],
    )
    def test_store_handlers_are_sync(self, handler) -> None:
        assert not inspect.iscoroutinefunction(handler)
