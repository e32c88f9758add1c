"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply the login limit with @limiter.limit()).

A single shared instance means every route shares one in-memory counter
store; a limiter per module would keep isolated counters that never trigger.

default_limits applies API_RATE_LIMIT to every route without its own
decorator; login, register and password change use the stricter
LOGIN_RATE_LIMIT. RATE_LIMIT_ENABLED=false turns every limit off.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()


def login_limit() -> str:
    """LOGIN_RATE_LIMIT, read per request so a changed setting applies at once."""
    return get_settings().login_rate_limit


limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[_settings.api_rate_limit],
    storage_uri="memory://",
    enabled=_settings.rate_limit_enabled,
)
