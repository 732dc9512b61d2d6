from __future__ import annotations


class HelpdeskError(Exception):
    """Base class for every error raised by the helpdesk core."""


class ValidationError(HelpdeskError):
    """Raised when submitted fields are missing or not allowed."""


class NotFoundError(HelpdeskError):
    """Raised when an operation references an unknown ticket or attachment."""


class PermissionDeniedError(HelpdeskError):
    """Raised when a client-role caller attempts a staff-only action."""


class RemoteAuthError(HelpdeskError):
    """Raised when a login or registration round trip cannot be completed."""
