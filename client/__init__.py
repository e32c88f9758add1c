"""client/ -- Client-side mirrors of the authorization core.

A UI process (or any API consumer) holds a permission snapshot token issued by
GET /api/v1/auth/permissions and evaluates the same core.matcher functions
against it to decide what to show and where to navigate, without calling the
server on every render. The snapshot is advisory: the server gate is the
authoritative check.

Layer rule: client/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or auth/ (it never holds the signing key).
"""
