"""
auth/store.py -- SQLAlchemy Core persistence layer for identities and RBAC records.

Pattern: Repository + Data Mapper.
UserStore and RoleStore are the repositories; the _row_to_* functions are the
mappers. Route, gate and resolver code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Role names are unique per scope (global, or one organization). That rule is
  enforced in code rather than SQL because SQLite treats two NULL values as
  distinct in UNIQUE constraints, which would allow two global roles with the
  same name.

Storage conventions:
  Permission lists are JSON arrays serialized as TEXT.
  Timestamps are ISO 8601 UTC strings written with microsecond precision, so
  lexicographic comparison in SQL orders them correctly (expires_at > :now).

Roles are never auto-deleted. Deleting a role leaves its assignments in place;
the resolver skips assignments whose role no longer exists.

DB path: auth/gatekeeper.db unless DATABASE_URL is set.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, or_, select
from sqlalchemy.engine import Engine

from auth.models import AuditLogEntry, User
from core.models import DirectGrant, Role, UserRoleAssignment

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'gatekeeper.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255)),
    Column("hashed_password", Text),
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("last_login", String(32)),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("description", Text),
    Column("permissions", Text, nullable=False),  # JSON array serialized as text
    Column("organization_id", String(64)),  # NULL = global role
    Column("is_system", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("role_id", Integer, nullable=False),
    Column("organization_id", String(64)),  # NULL = global assignment
    Column("expires_at", String(32)),  # NULL = never
    Column("created_at", String(32), nullable=False),
)

_user_permission_maps = Table(
    "user_permission_maps",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("permissions", Text, nullable=False),  # JSON array, like roles.permissions
    Column("organization_id", String(64)),
    Column("expires_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event", String(40), nullable=False, index=True),
    Column("user_id", Integer),
    Column("email", String(255)),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("event_metadata", Text),  # JSON object
    Column("created_at", String(32), nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _make_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def to_iso(dt: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO string. Naive means UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _scope_clause(column, organization_id: Optional[str]):
    """Global rows always; organization rows only for the requested organization."""
    if organization_id is None:
        return column.is_(None)
    return or_(column.is_(None), column == organization_id)


# ---------------------------------------------------------------------------
# UserStore
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and AuditLogEntry records.

    Usage:
        store = UserStore()
        uid = store.create_user(User(email="a@example.com", hashed_password=hash_password("secret")))
        user = store.get_by_email("a@example.com")
        store.close()
    """

    _UPDATABLE: set = {
        "name",
        "hashed_password",
        "is_active",
        "failed_login_attempts",
        "locked_until",
        "last_login",
    }

    def __init__(self, db_url: str = "") -> None:
        self.engine: Engine = _make_engine(db_url or _DEFAULT_DB_URL)

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    name=user.name,
                    hashed_password=user.hashed_password,
                    created_at=_now_iso(),
                    is_active=1 if user.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by exact email (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Unknown field names raise ValueError -- column names never come from
        request data. Returns True if a row was updated.
        """
        unknown = set(fields) - self._UPDATABLE
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        self.update_user(user_id, last_login=_now_iso())

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def add_audit_log(self, entry: AuditLogEntry) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_logs.insert().values(
                    event=entry.event,
                    user_id=entry.user_id,
                    email=entry.email,
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    event_metadata=json.dumps(entry.metadata or {}),
                    created_at=entry.created_at or _now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_audit_logs(
        self,
        user_id: int | None = None,
        email: str | None = None,
        event_name: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AuditLogEntry], int]:
        """Return (page of entries newest first, total matching count)."""
        conditions = []
        if user_id is not None:
            conditions.append(_audit_logs.c.user_id == user_id)
        if email:
            conditions.append(_audit_logs.c.email == email)
        if event_name:
            conditions.append(_audit_logs.c.event == event_name)
        if start is not None:
            conditions.append(_audit_logs.c.created_at >= to_iso(start))
        if end is not None:
            conditions.append(_audit_logs.c.created_at <= to_iso(end))

        query = _audit_logs.select().where(*conditions)
        count_query = select(func.count()).select_from(_audit_logs).where(*conditions)
        with self.engine.connect() as conn:
            rows = conn.execute(
                query.order_by(_audit_logs.c.created_at.desc(), _audit_logs.c.id.desc()).limit(limit).offset(offset)
            ).fetchall()
            total = conn.execute(count_query).scalar() or 0
        return [_row_to_audit(r) for r in rows], total

    def purge_audit_logs(self, older_than: datetime) -> int:
        """Delete audit entries created before older_than. Returns rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_audit_logs.delete().where(_audit_logs.c.created_at < to_iso(older_than)))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# RoleStore
# ---------------------------------------------------------------------------


class DuplicateRoleError(ValueError):
    """A role with this name already exists in the same scope."""


class SystemRoleError(Exception):
    """System roles cannot be deleted through the admin API."""


class RoleStore:
    """Repository for roles, user-role assignments and direct permission grants.

    Read methods used by core.resolver.PermissionResolver:
      list_role_assignments(user_id, organization_id, now)
      list_direct_grants(user_id, organization_id)
      get_roles(role_ids)
    All three are side-effect free.
    """

    def __init__(self, db_url: str = "") -> None:
        self.engine: Engine = _make_engine(db_url or _DEFAULT_DB_URL)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> int:
        """Insert a role and return its ID. Raises DuplicateRoleError on a name clash in scope."""
        if self.find_role(role.name, role.organization_id) is not None:
            raise DuplicateRoleError(f"Role {role.name!r} already exists in this scope")
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.insert().values(
                    name=role.name,
                    description=role.description,
                    permissions=json.dumps(list(role.permissions)),
                    organization_id=role.organization_id,
                    is_system=1 if role.is_system else 0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_role(self, role_id: int) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_roles(self, role_ids: Iterable[int]) -> dict[int, Role]:
        """Batch lookup. Missing IDs are simply absent from the result."""
        ids = list(role_ids)
        if not ids:
            return {}
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().where(_roles.c.id.in_(ids))).fetchall()
        return {r.id: _row_to_role(r) for r in rows}

    def find_role(self, name: str, organization_id: Optional[str] = None) -> Role | None:
        """Find a role by exact name within one scope (None = global)."""
        scope = _roles.c.organization_id.is_(None) if organization_id is None else (
            _roles.c.organization_id == organization_id
        )
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where((_roles.c.name == name) & scope)).fetchone()
        return _row_to_role(row) if row is not None else None

    def list_roles(self, organization_id: Optional[str] = None) -> list[Role]:
        """Global roles plus roles of organization_id, ordered by name."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _roles.select().where(_scope_clause(_roles.c.organization_id, organization_id)).order_by(_roles.c.name)
            ).fetchall()
        return [_row_to_role(r) for r in rows]

    def update_role(self, role_id: int, **fields) -> bool:
        """Update name, description and/or permissions. Returns True if a row changed."""
        unknown = set(fields) - {"name", "description", "permissions"}
        if unknown:
            raise ValueError(f"Unknown role fields: {unknown!r}")
        if "name" in fields:
            current = self.get_role(role_id)
            if current is None:
                return False
            clash = self.find_role(fields["name"], current.organization_id)
            if clash is not None and clash.id != role_id:
                raise DuplicateRoleError(f"Role {fields['name']!r} already exists in this scope")
        if "permissions" in fields:
            fields["permissions"] = json.dumps(list(fields["permissions"]))
        with self.engine.connect() as conn:
            result = conn.execute(_roles.update().where(_roles.c.id == role_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_role(self, role_id: int) -> bool:
        """Delete a custom role. Raises SystemRoleError for system roles.

        Assignments pointing at the role are left in place; resolution skips them.
        """
        role = self.get_role(role_id)
        if role is None:
            return False
        if role.is_system:
            raise SystemRoleError(f"Role {role.name!r} is a system role")
        with self.engine.connect() as conn:
            result = conn.execute(_roles.delete().where(_roles.c.id == role_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def assign_role(self, assignment: UserRoleAssignment) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_roles.insert().values(
                    user_id=assignment.user_id,
                    role_id=assignment.role_id,
                    organization_id=assignment.organization_id,
                    expires_at=to_iso(assignment.expires_at) if assignment.expires_at else None,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_role_assignments(
        self, user_id: int, organization_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> list[UserRoleAssignment]:
        """Assignments for user_id that are global or in organization_id.

        When now is given, assignments with expires_at <= now are filtered out
        in SQL as well. Pass now=None to list every assignment (admin views).
        """
        conditions = [_user_roles.c.user_id == user_id, _scope_clause(_user_roles.c.organization_id, organization_id)]
        if now is not None:
            conditions.append(or_(_user_roles.c.expires_at.is_(None), _user_roles.c.expires_at > to_iso(now)))
        with self.engine.connect() as conn:
            rows = conn.execute(_user_roles.select().where(*conditions).order_by(_user_roles.c.id)).fetchall()
        return [_row_to_assignment(r) for r in rows]

    def revoke_role(self, assignment_id: int, user_id: int) -> bool:
        """Delete an assignment. user_id must match to prevent IDOR."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_roles.delete().where((_user_roles.c.id == assignment_id) & (_user_roles.c.user_id == user_id))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Direct grants
    # ------------------------------------------------------------------

    def grant_permissions(self, grant: DirectGrant) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_permission_maps.insert().values(
                    user_id=grant.user_id,
                    permissions=json.dumps(list(grant.permissions)),
                    organization_id=grant.organization_id,
                    expires_at=to_iso(grant.expires_at) if grant.expires_at else None,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_direct_grants(self, user_id: int, organization_id: Optional[str] = None) -> list[DirectGrant]:
        """Grants for user_id that are global or in organization_id.

        Expired grants are returned; the resolver drops them against its own now.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                _user_permission_maps.select()
                .where(
                    (_user_permission_maps.c.user_id == user_id)
                    & _scope_clause(_user_permission_maps.c.organization_id, organization_id)
                )
                .order_by(_user_permission_maps.c.id)
            ).fetchall()
        return [_row_to_grant(r) for r in rows]

    def revoke_grant(self, grant_id: int, user_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_permission_maps.delete().where(
                    (_user_permission_maps.c.id == grant_id) & (_user_permission_maps.c.user_id == user_id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Seed
    # ------------------------------------------------------------------

    def seed_default_roles(self) -> list[str]:
        """Create or refresh the built-in global roles. Idempotent.

        Existing roles keep their ID; description and permissions are
        overwritten with the defaults. Returns the names of roles created.
        """
        created: list[str] = []
        for default in DEFAULT_ROLES:
            existing = self.find_role(default.name, None)
            if existing is None:
                self.create_role(default)
                created.append(default.name)
            else:
                self.update_role(existing.id, description=default.description, permissions=default.permissions)
        return created

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

# Reference catalog: (key, display name, category). Informational -- roles may
# hold any string, including wildcards.
PERMISSION_CATALOG: list[tuple[str, str, str]] = [
    ("projects:read:all", "View Projects", "Projects"),
    ("projects:create:all", "Create Projects", "Projects"),
    ("projects:update:all", "Update Projects", "Projects"),
    ("projects:delete:all", "Delete Projects", "Projects"),
    ("users:read:all", "View Users", "Users"),
    ("users:manage:all", "Manage Users", "Users"),
    ("settings:read:all", "View Settings", "Settings"),
    ("settings:manage:all", "Manage Settings", "Settings"),
    ("admin:access:all", "Admin Access", "Admin"),
    ("system:admin:all", "System Admin", "Admin"),
]

DEFAULT_ROLES: list[Role] = [
    Role("Platform Admin", ["*"], "Full platform access across all organizations", is_system=True),
    Role(
        "Platform Support",
        ["projects:read:all", "users:read:all", "settings:read:all"],
        "Read-only access for customer support",
        is_system=True,
    ),
    Role(
        "Admin",
        [
            "projects:read:all",
            "projects:create:all",
            "projects:update:all",
            "projects:delete:all",
            "users:read:all",
            "users:manage:all",
            "settings:read:all",
            "settings:manage:all",
            "admin:access:all",
        ],
        "Organization administrator",
        is_system=True,
    ),
    Role(
        "Developer",
        ["projects:read:all", "projects:create:all", "projects:update:all", "users:read:all"],
        "Development team member",
        is_system=True,
    ),
    Role("Viewer", ["projects:read:all", "users:read:all"], "Read-only access", is_system=True),
    Role("User", ["projects:read:all"], "Default role for new users", is_system=True),
]

DEFAULT_USER_ROLE = "User"


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        created_at=row.created_at,
        is_active=bool(row.is_active),
        failed_login_attempts=row.failed_login_attempts or 0,
        locked_until=row.locked_until,
        last_login=row.last_login,
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        description=row.description,
        permissions=json.loads(row.permissions) if row.permissions else [],
        organization_id=row.organization_id,
        is_system=bool(row.is_system),
        created_at=row.created_at,
    )


def _row_to_assignment(row) -> UserRoleAssignment:
    return UserRoleAssignment(
        id=row.id,
        user_id=row.user_id,
        role_id=row.role_id,
        organization_id=row.organization_id,
        expires_at=from_iso(row.expires_at),
        created_at=row.created_at,
    )


def _row_to_grant(row) -> DirectGrant:
    return DirectGrant(
        id=row.id,
        user_id=row.user_id,
        permissions=json.loads(row.permissions) if row.permissions else [],
        organization_id=row.organization_id,
        expires_at=from_iso(row.expires_at),
        created_at=row.created_at,
    )


def _row_to_audit(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        event=row.event,
        user_id=row.user_id,
        email=row.email,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        metadata=json.loads(row.event_metadata) if row.event_metadata else {},
        created_at=row.created_at,
    )
