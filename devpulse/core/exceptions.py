"""
DevPulse Client - Exceptions
=============================

Error taxonomy:
- TransportError: the request never produced a usable response
- ApiError: the server answered and rejected the call
- PreconditionFailed: a user action was aborted before any network call
"""

from typing import Optional


class DevPulseError(Exception):
    """Base class for every error raised by the client."""


class TransportError(DevPulseError):
    """Network failure, timeout or unreadable response."""


class ApiError(DevPulseError):
    """The remote job API returned an error response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"{self.message} (HTTP {self.status_code})"


class AuthenticationError(ApiError):
    """The session token was rejected (HTTP 401)."""


class PreconditionFailed(DevPulseError):
    """A user-initiated action cannot start."""


class NotAuthenticatedError(PreconditionFailed):
    """No usable session token is stored."""


class MissingCredentialError(PreconditionFailed):
    """No GitHub personal access token is stored."""


class MissingSelectionError(PreconditionFailed):
    """The action needs a target (repository, analysis) that was not given."""


class InvalidCredentialError(DevPulseError):
    """A personal access token is malformed or was rejected by GitHub."""
