"""
core/errors.py -- Error kinds for the authorization core.

The gate reports denials as GateDecision values carrying a DenyReason; it does
not raise for anything a request can cause. Exceptions are reserved for
collaborator failures (the data store) which the gate converts to a deny.
"""

from enum import Enum


class DenyReason(str, Enum):
    ROUTE_NOT_REGISTERED = "route_not_registered"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    DATA_UNAVAILABLE = "data_unavailable"

    @property
    def status_code(self) -> int:
        return _STATUS[self]


_STATUS = {
    DenyReason.ROUTE_NOT_REGISTERED: 404,
    DenyReason.UNAUTHENTICATED: 401,
    DenyReason.FORBIDDEN: 403,
    DenyReason.DATA_UNAVAILABLE: 503,
}


class GatekeeperError(Exception):
    """Base class for errors raised by the authorization core."""


class DataUnavailableError(GatekeeperError):
    """The role/grant store could not be read. Callers must fail closed."""
