"""Error taxonomy for talks with the remote playback service.

Only the lowest layers (``SpotifyRemote`` and ``AuthGuard``) raise these across
their boundary. Everything above them turns failures into result values.
"""
from __future__ import annotations


class CrowdtuneError(Exception):
    """Base class for every error raised by Crowdtune."""

    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ValidationError(CrowdtuneError):
    """A track reference (or other input) is malformed. Never retried."""

    user_message = "That doesn't look like a valid Spotify track."


class RemoteServiceError(CrowdtuneError):
    """The remote playback service rejected or failed a call."""

    user_message = "Could not reach Spotify. Try again in a moment."

    def __init__(
        self, message: str, status: int | None = None, details: dict | None = None
    ) -> None:
        super().__init__(message, details)
        self.status = status


class AuthExpired(RemoteServiceError):
    """The access token was rejected (HTTP 401)."""


class AuthFailure(RemoteServiceError):
    """Credentials could not be recovered by a refresh."""

    user_message = "Could not reach Spotify."


class NotFound(RemoteServiceError):
    """No search results, missing playlist, unknown track."""

    user_message = "Nothing matched that on Spotify."


class TransientError(RemoteServiceError):
    """Rate limited (429) or a 5xx from the remote service."""


class OperationTimeout(RemoteServiceError):
    """An operation ran past its category deadline."""

    user_message = "Spotify is taking too long to answer. Try again shortly."
