"""
Domain exceptions. Routes translate these into HTTP status codes;
expected call outcomes (busy, no answer, dropped...) are never raised.
"""

from __future__ import annotations


class CallerError(Exception):
    """Base class for every error raised by the application."""


class ConfigurationError(CallerError):
    """The calling feature is not configured (credentials, numbers)."""

    def __init__(self, issues: list[str]):
        self.issues = issues
        super().__init__("Calling is not configured: " + "; ".join(issues))


class CaptureUnavailableError(CallerError):
    """Audio capture could not be acquired for this attempt."""


class BridgeError(CallerError):
    """The telephony provider rejected the call or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class SessionStateError(CallerError):
    """Operation is not valid for the session's current state."""


class NotFoundError(CallerError):
    """A directory entry does not exist."""


class SchemaVersionError(CallerError):
    """Persisted data has a schema version or shape this build cannot read."""

    def __init__(self, key: str, found: object, expected: int, reason: str = ""):
        self.key = key
        self.found = found
        self.expected = expected
        self.reason = reason
        if reason:
            super().__init__(f"Stored collection '{key}' {reason}")
        else:
            super().__init__(
                f"Stored collection '{key}' has schema_version={found!r}, expected {expected}"
            )


class AuthenticationError(CallerError):
    """Credentials or session token rejected."""
