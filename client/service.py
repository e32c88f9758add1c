"""
client/service.py -- Fetch, cache and read the permission snapshot.

PermissionClient talks to GET /api/v1/auth/permissions with requests, keeps
the returned token in a TokenStorage, and answers "which roles/permissions do
I have" from the cached token until it expires. Expired or malformed tokens
are discarded on read; ensure_fresh() re-resolves when nothing valid is
cached.

Usage:
    client = PermissionClient("http://localhost:8000", session_token=token)
    client.fetch_and_store(organization_id="acme")
    if permission_gate(client.snapshot(), permission="projects:create:all"):
        ...
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import requests

from client.snapshot import PermissionSnapshot, decode_snapshot

logger = logging.getLogger("gatekeeper.client")

PERMISSIONS_PATH = "/api/v1/auth/permissions"
_TIMEOUT = 10


class TokenStorage(Protocol):
    def get(self) -> Optional[str]: ...

    def set(self, token: str) -> None: ...

    def clear(self) -> None: ...


class MemoryTokenStorage:
    """In-process token storage. Swap for a file or keyring backend if needed."""

    def __init__(self) -> None:
        self._token: Optional[str] = None

    def get(self) -> Optional[str]:
        return self._token

    def set(self, token: str) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None


class PermissionClient:
    def __init__(
        self,
        base_url: str,
        session_token: Optional[str] = None,
        storage: Optional[TokenStorage] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session_token = session_token
        self.storage = storage or MemoryTokenStorage()
        self.session = session or requests.Session()

    def fetch_and_store(self, organization_id: Optional[str] = None) -> tuple[list[str], list[str]]:
        """Ask the server to resolve permissions now and cache the snapshot.

        Returns (roles, permissions). Any failure yields ([], []) and leaves the
        cache untouched -- the UI then shows the least-privileged view.
        """
        headers: dict[str, str] = {}
        if organization_id:
            headers["x-organization-id"] = organization_id
        if self.session_token:
            headers["Authorization"] = f"Bearer {self.session_token}"

        try:
            resp = self.session.get(f"{self.base_url}{PERMISSIONS_PATH}", headers=headers, timeout=_TIMEOUT)
        except requests.RequestException as exc:
            logger.warning("Permission fetch failed: %s", exc)
            return [], []
        if not resp.ok:
            logger.info("Permission fetch returned HTTP %d", resp.status_code)
            return [], []

        try:
            data = resp.json()
        except ValueError:
            return [], []
        token = data.get("token") or ""
        if token:
            self.storage.set(token)
        return list(data.get("roles", [])), list(data.get("permissions", []))

    def snapshot(self) -> Optional[PermissionSnapshot]:
        """Return the cached snapshot, discarding it if expired or malformed."""
        token = self.storage.get()
        if not token:
            return None
        snap = decode_snapshot(token)
        if snap is None:
            self.storage.clear()
        return snap

    def ensure_fresh(self, organization_id: Optional[str] = None) -> Optional[PermissionSnapshot]:
        """Return a valid snapshot for organization_id, re-resolving if needed."""
        snap = self.snapshot()
        if snap is not None and snap.organization == organization_id:
            return snap
        self.fetch_and_store(organization_id)
        return self.snapshot()

    def permission_keys(self) -> list[str]:
        snap = self.snapshot()
        return snap.permissions if snap else []

    def role_names(self) -> list[str]:
        snap = self.snapshot()
        return snap.roles if snap else []

    def has_cache(self) -> bool:
        return self.snapshot() is not None

    def clear(self) -> None:
        """Drop the cached snapshot (call on logout)."""
        self.storage.clear()
