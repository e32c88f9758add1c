"""
core/routes.py -- Route pattern matching against the permission registry.

Pattern language (deliberately minimal):
  /api/v1/roles/:id     ":name" matches exactly one path segment   -> [^/]+
  /api/v1/admin/*       "*" matches any remainder, slashes included -> .*

Everything else is literal. Matching is anchored at both ends -- a prefix
match is not a match.

find_route_entry() walks the registry in declared order and returns the first
entry whose method and pattern fit. None means the route is not registered,
which callers must treat as deny, never as public.
"""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from functools import lru_cache
from pathlib import Path
from typing import Optional

from core.models import RoutePermissionEntry, route

_PARAM_RE = re.compile(r":(\w+)")


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> re.Pattern:
    """Compile a registry path pattern into an anchored regex.

    /api/projects/:id -> ^/api/projects/[^/]+$
    /api/admin/*      -> ^/api/admin/.*$
    """
    out: list[str] = []
    pos = 0
    for m in _PARAM_RE.finditer(pattern):
        out.append(_escape_literal(pattern[pos : m.start()]))
        out.append("[^/]+")
        pos = m.end()
    out.append(_escape_literal(pattern[pos:]))
    return re.compile("^" + "".join(out) + "$")


def _escape_literal(text: str) -> str:
    return ".*".join(re.escape(part) for part in text.split("*"))


def _strip_query(path: str) -> str:
    return path.split("?", 1)[0]


def path_matches(pattern: str, path: str) -> bool:
    """Return True if path (query string ignored) fully matches pattern."""
    return compile_pattern(pattern).fullmatch(_strip_query(path)) is not None


def find_route_entry(
    registry: Sequence[RoutePermissionEntry], method: str, path: str
) -> Optional[RoutePermissionEntry]:
    """Return the first registry entry matching method + path, or None."""
    method = method.upper()
    path = _strip_query(path)
    for entry in registry:
        if entry.method != "*" and entry.method.upper() != method:
            continue
        if compile_pattern(entry.path).fullmatch(path):
            return entry
    return None


def load_registry(path: str | Path) -> list[RoutePermissionEntry]:
    """Load an integrator-authored registry from a JSON file.

    Expected shape (order is preserved and significant):
        [
          {"method": "GET", "path": "/api/v1/health", "permission": null},
          {"method": "*", "path": "/api/v1/admin/*", "permission": "admin:access:all"}
        ]

    Raises ValueError on malformed entries, OSError if the file is unreadable.
    """
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError("Route registry file must contain a JSON list")
    entries: list[RoutePermissionEntry] = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict) or "method" not in item or "path" not in item:
            raise ValueError(f"Registry entry #{i} must be an object with 'method' and 'path'")
        entries.append(route(item["method"], item["path"], item.get("permission"), item.get("description", "")))
    return entries
