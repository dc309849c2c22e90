"""
Exceptions raised by the hook router, service plugins and the OAuth flow.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of a failed handler call, inspected by the dispatch loop."""
    FAILED = "failed"
    FLOOD = "flood"


class HookRouterError(Exception):
    """Base class for all errors raised by this application."""


class ServiceError(HookRouterError):
    """
    Error raised by a service handler.

    The dispatch loop only looks at ``kind``: ``FLOOD`` aborts the remaining
    fan-out, anything else is logged and the loop moves on.
    """

    kind = ErrorKind.FAILED

    def __init__(self, message: str = "", kind: ErrorKind = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class FloodError(ServiceError):
    """The receiving side (Telegram) is rate limiting us."""

    kind = ErrorKind.FLOOD

    def __init__(self, message: str = "Too many requests"):
        super().__init__(message)


class ConfigurationError(HookRouterError):
    """A service is missing a handler or configuration needed by a code path."""


class UnknownCorrelationError(HookRouterError):
    """No live OAuth correlation record for the given id."""


class CredentialExchangeError(HookRouterError):
    """The OAuth provider refused or failed the credential exchange."""
