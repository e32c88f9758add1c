#!/usr/bin/env python3
"""
Gatekeeper -- administration and diagnostics CLI.

Works directly against the configured database (DATABASE_URL), without the
HTTP server.

Usage:
  python main.py seed
  python main.py create-user alice@example.com --password 's3cret-pass' --role Admin
  python main.py assign-role alice@example.com Developer --org acme --expires-in 3600
  python main.py resolve alice@example.com --org acme
  python main.py check DELETE /api/v1/admin/purge --user alice@example.com
  python main.py check GET /api/v1/roles --user alice@example.com --json

Environment variables:
  DATABASE_URL        SQLAlchemy URL (default: auth/gatekeeper.db)
  SECRET_KEY          required unless DEBUG=true
  ROUTE_REGISTRY_FILE JSON registry used by `check` instead of the built-in one
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.store import DEFAULT_USER_ROLE, RoleStore, UserStore
from auth.tokens import create_session_token, hash_password, validate_password, verify_session_token
from core.config import get_settings
from core.gate import AuthorizationGate, GateRequest
from core.models import UserRoleAssignment, describe_requirement
from core.registry import ROUTE_PERMISSIONS
from core.resolver import PermissionResolver
from core.routes import load_registry


def _stores() -> tuple[UserStore, RoleStore]:
    url = get_settings().database_url
    return UserStore(url), RoleStore(url)


def _require_user(user_store: UserStore, email: str) -> User:
    user = user_store.get_by_email(email)
    if user is None:
        print(f"  [!] No user with email '{email}'.")
        sys.exit(1)
    return user


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_seed(args: argparse.Namespace) -> int:
    _, role_store = _stores()
    created = role_store.seed_default_roles()
    if created:
        print(f"  Created roles: {', '.join(created)}")
    else:
        print("  Default roles already present (definitions refreshed).")
    return 0


def cmd_create_user(args: argparse.Namespace) -> int:
    user_store, role_store = _stores()
    problems = validate_password(args.password)
    if problems:
        for p in problems:
            print(f"  [!] {p}")
        return 1

    role = role_store.find_role(args.role)
    if role is None:
        print(f"  [!] Unknown role '{args.role}'. Run `python main.py seed` first?")
        return 1

    try:
        user_id = user_store.create_user(
            User(email=args.email, name=args.name, hashed_password=hash_password(args.password))
        )
    except IntegrityError:
        print(f"  [!] A user with email '{args.email}' already exists.")
        return 1
    role_store.assign_role(UserRoleAssignment(user_id=user_id, role_id=role.id))
    print(f"  Created user {args.email} (id={user_id}) with role {role.name}.")
    return 0


def cmd_assign_role(args: argparse.Namespace) -> int:
    user_store, role_store = _stores()
    user = _require_user(user_store, args.email)
    role = role_store.find_role(args.role, args.org) or role_store.find_role(args.role)
    if role is None:
        print(f"  [!] Unknown role '{args.role}'.")
        return 1

    expires_at: Optional[datetime] = None
    if args.expires_in:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=args.expires_in)
    assignment_id = role_store.assign_role(
        UserRoleAssignment(user_id=user.id, role_id=role.id, organization_id=args.org, expires_at=expires_at)
    )
    scope = args.org or "global"
    until = f" until {expires_at.isoformat()}" if expires_at else ""
    print(f"  Assigned {role.name} to {user.email} ({scope}{until}), assignment id={assignment_id}.")
    return 0


def cmd_resolve(args: argparse.Namespace) -> int:
    user_store, role_store = _stores()
    user = _require_user(user_store, args.email)
    resolved = asyncio.run(PermissionResolver(role_store).resolve(user.id, args.org))
    if args.json:
        print(json.dumps(resolved.__dict__, indent=2))
        return 0
    print(f"\n  {user.email} @ {args.org or 'global'}")
    print("  " + "-" * 40)
    print(f"  Roles:              {', '.join(resolved.roles) or '(none)'}")
    print(f"  Role permissions:   {', '.join(resolved.role_permissions) or '(none)'}")
    print(f"  Direct permissions: {', '.join(resolved.direct_permissions) or '(none)'}")
    print(f"  Effective:          {', '.join(resolved.permissions) or '(none)'}\n")
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    """Run one request through the real gate. Exit code 0 = allowed."""
    settings = get_settings()
    user_store, role_store = _stores()
    registry = load_registry(settings.route_registry_file) if settings.route_registry_file else ROUTE_PERMISSIONS
    gate = AuthorizationGate(registry, verify_session_token, user_store, PermissionResolver(role_store))

    headers: dict[str, str] = {}
    if args.user:
        user = _require_user(user_store, args.user)
        headers["authorization"] = f"Bearer {create_session_token(user.id, user.email, expire_seconds=60)}"
    if args.org:
        headers["x-organization-id"] = args.org

    decision = asyncio.run(gate.evaluate(GateRequest(method=args.method, path=args.path, headers=headers)))
    result = {
        "allowed": decision.allowed,
        "status": decision.status_code,
        "reason": decision.reason.value if decision.reason else None,
        "route": f"{decision.entry.method} {decision.entry.path}" if decision.entry else None,
        "requires": describe_requirement(decision.entry.permission) if decision.entry else None,
        "roles": decision.context.roles if decision.context else decision.roles,
    }
    if args.json:
        print(json.dumps(result, indent=2))
    else:
        verdict = "ALLOW" if decision.allowed else "DENY"
        print(f"  {verdict} {args.method.upper()} {args.path} -> {result['status']}")
        if result["route"]:
            print(f"  matched:  {result['route']}  requires {json.dumps(result['requires'])}")
        if not decision.allowed:
            print(f"  reason:   {result['reason']} -- {decision.message}")
    return 0 if decision.allowed else 1


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gatekeeper",
        description="Administer roles and users, and dry-run authorization decisions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py seed
  python main.py create-user admin@example.com --password 'change-me-now' --role "Platform Admin"
  python main.py assign-role dev@example.com Developer --org acme
  python main.py resolve dev@example.com --org acme --json
  python main.py check POST /api/v1/roles --user dev@example.com --org acme
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    p = sub.add_parser("seed", help="Create or refresh the built-in roles")
    p.set_defaults(func=cmd_seed)

    p = sub.add_parser("create-user", help="Create a user with a password and one global role")
    p.add_argument("email")
    p.add_argument("--password", required=True)
    p.add_argument("--name", default=None)
    p.add_argument("--role", default=DEFAULT_USER_ROLE, help=f"Role name (default: {DEFAULT_USER_ROLE})")
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("assign-role", help="Assign a role to a user")
    p.add_argument("email")
    p.add_argument("role", help="Role name; an organization role of --org wins over a global one")
    p.add_argument("--org", default=None, metavar="ORG_ID", help="Organization scope (default: global)")
    p.add_argument("--expires-in", type=int, default=0, metavar="SECONDS", help="Expire the assignment")
    p.set_defaults(func=cmd_assign_role)

    p = sub.add_parser("resolve", help="Show a user's effective roles and permissions")
    p.add_argument("email")
    p.add_argument("--org", default=None, metavar="ORG_ID")
    p.add_argument("--json", action="store_true", help="Output structured JSON")
    p.set_defaults(func=cmd_resolve)

    p = sub.add_parser("check", help="Evaluate one request against the route registry")
    p.add_argument("method", metavar="METHOD")
    p.add_argument("path", metavar="PATH")
    p.add_argument("--user", default=None, metavar="EMAIL", help="Act as this user (omit for anonymous)")
    p.add_argument("--org", default=None, metavar="ORG_ID")
    p.add_argument("--json", action="store_true", help="Output structured JSON")
    p.set_defaults(func=cmd_check)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
