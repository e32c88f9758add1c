"""
tests/test_matcher.py -- Unit tests for core/matcher.py and requirement parsing.

Covers:
  - Segment-level wildcard semantics of matches_permission
  - Empty ANY/ALL lists deny, even for a holder of "*"
  - satisfies_requirement for every PermissionRequirement variant
  - Role matching is exact (no wildcards)
  - parse_requirement / describe_requirement authoring format
"""

from __future__ import annotations

import pytest

from core.matcher import (
    has_all_permissions,
    has_all_roles,
    has_any_permission,
    has_any_role,
    has_permission,
    has_role,
    matches_permission,
    satisfies_requirement,
    satisfies_role_requirement,
)
from core.models import (
    AUTHENTICATED,
    PUBLIC,
    AllOf,
    AnyOf,
    RequirePermission,
    RequireRole,
    describe_requirement,
    parse_requirement,
    parse_role_requirement,
    route,
)


class TestMatchesPermission:
    """matches_permission(held, required) -- the single matching primitive."""

    @pytest.mark.parametrize("perm", ["projects:read:all", "a:b", "x", "admin:access:all"])
    def test_bare_wildcard_matches_anything(self, perm: str) -> None:
        assert matches_permission("*", perm)

    @pytest.mark.parametrize("perm", ["projects:read:all", "a:b", "x", "*", "a:*:c"])
    def test_reflexive(self, perm: str) -> None:
        assert matches_permission(perm, perm)

    def test_segment_wildcard(self) -> None:
        assert matches_permission("projects:*:all", "projects:read:all")
        assert matches_permission("*:*:*", "users:manage:all")

    def test_different_action_does_not_match(self) -> None:
        assert not matches_permission("projects:read:all", "projects:write:all")

    def test_segment_count_mismatch(self) -> None:
        assert not matches_permission("a:b", "a:b:c")
        assert not matches_permission("a:*", "a:b:c")

    def test_wildcard_is_segment_level_not_substring(self) -> None:
        """'proj*' is a literal segment, not a prefix pattern."""
        assert not matches_permission("proj*:read:all", "projects:read:all")

    def test_wildcard_only_in_held(self) -> None:
        """A '*' in the required permission is not a wildcard."""
        assert not matches_permission("projects:read:all", "projects:*:all")


class TestPermissionSets:
    """has_permission / has_any_permission / has_all_permissions."""

    def test_has_permission(self) -> None:
        assert has_permission(["users:read:all", "projects:*:all"], "projects:delete:all")
        assert not has_permission(["users:read:all"], "users:manage:all")

    def test_none_and_empty_held_deny(self) -> None:
        assert not has_permission(None, "a:b:c")
        assert not has_permission([], "a:b:c")

    @pytest.mark.parametrize("held", [[], ["a:b:c"], ["*"]])
    def test_empty_any_and_all_deny(self, held: list[str]) -> None:
        """An empty requirement list never passes, even for a holder of '*'."""
        assert not has_any_permission(held, [])
        assert not has_all_permissions(held, [])

    def test_any(self) -> None:
        held = ["users:read:all"]
        assert has_any_permission(held, ["admin:access:all", "users:read:all"])
        assert not has_any_permission(held, ["admin:access:all", "system:admin:all"])

    def test_all(self) -> None:
        assert has_all_permissions(["admin:access:all", "system:admin:all"], ["admin:access:all", "system:admin:all"])
        assert not has_all_permissions(["admin:access:all"], ["admin:access:all", "system:admin:all"])
        assert has_all_permissions(["*"], ["admin:access:all", "system:admin:all"])


class TestSatisfiesRequirement:
    """satisfies_requirement(held, requirement) for each variant."""

    @pytest.mark.parametrize("held", [None, [], ["a:b:c"]])
    def test_public_always_passes(self, held) -> None:
        assert satisfies_requirement(held, PUBLIC)

    def test_authenticated_needs_a_principal_only(self) -> None:
        assert satisfies_requirement([], AUTHENTICATED)
        assert not satisfies_requirement(None, AUTHENTICATED)

    def test_permission_on_empty_set_denies(self) -> None:
        assert not satisfies_requirement([], RequirePermission("x:y:z"))

    def test_groups(self) -> None:
        held = ["admin:access:all"]
        assert satisfies_requirement(held, AnyOf(("system:admin:all", "admin:access:all")))
        assert not satisfies_requirement(held, AllOf(("system:admin:all", "admin:access:all")))
        assert not satisfies_requirement(held, AnyOf(()))

    def test_unknown_variant_raises(self) -> None:
        with pytest.raises(TypeError):
            satisfies_requirement(["*"], RequireRole("Admin"))


class TestRoles:
    """Role matching is exact string equality."""

    def test_exact_names(self) -> None:
        assert has_role(["Admin", "Viewer"], "Admin")
        assert not has_role(["Admin"], "admin")
        assert not has_role(["*"], "Admin")

    def test_empty_lists_deny(self) -> None:
        assert not has_any_role(["Admin"], [])
        assert not has_all_roles(["Admin"], [])

    def test_satisfies_role_requirement(self) -> None:
        roles = ["Developer", "Viewer"]
        assert satisfies_role_requirement(roles, RequireRole("Viewer"))
        assert satisfies_role_requirement(roles, AnyOf(("Admin", "Developer")))
        assert not satisfies_role_requirement(roles, AllOf(("Admin", "Developer")))
        assert not satisfies_role_requirement(None, RequireRole("Viewer"))
        assert not satisfies_role_requirement([], AnyOf(("Viewer",)))


class TestRequirementParsing:
    """Authoring format <-> variants."""

    def test_parse(self) -> None:
        assert parse_requirement(None) == PUBLIC
        assert parse_requirement("authenticated") == AUTHENTICATED
        assert parse_requirement("users:read:all") == RequirePermission("users:read:all")
        assert parse_requirement({"any": ["a:b:c", "d:e:f"]}) == AnyOf(("a:b:c", "d:e:f"))
        assert parse_requirement({"all": []}) == AllOf(())

    def test_variants_pass_through(self) -> None:
        req = AllOf(("a:b:c",))
        assert parse_requirement(req) is req

    @pytest.mark.parametrize("raw", ["", 42, ["a:b:c"], {"any": "a:b:c"}, {"any": [], "all": []}, {"some": []}])
    def test_malformed_raises(self, raw) -> None:
        with pytest.raises(ValueError):
            parse_requirement(raw)

    def test_role_requirement(self) -> None:
        assert parse_role_requirement("Admin") == RequireRole("Admin")
        assert parse_role_requirement({"all": ["Admin", "Viewer"]}) == AllOf(("Admin", "Viewer"))
        with pytest.raises(ValueError):
            parse_role_requirement(None)

    @pytest.mark.parametrize("raw", [None, "authenticated", "users:read:all", {"any": ["a:b:c"]}, {"all": ["a:b:c"]}])
    def test_describe_inverts_parse(self, raw) -> None:
        assert describe_requirement(parse_requirement(raw)) == raw

    def test_route_builder_validates(self) -> None:
        entry = route("get", "/api/v1/roles", "users:read:all")
        assert entry.method == "GET"
        assert entry.permission == RequirePermission("users:read:all")
        with pytest.raises(ValueError):
            route("FETCH", "/api/v1/roles", None)
        with pytest.raises(ValueError):
            route("GET", "api/v1/roles", None)
