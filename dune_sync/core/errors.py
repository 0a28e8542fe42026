"""
Error taxonomy for dune-sync.

Configuration and credential problems are fatal for the pass. Remote
failures are raised by :class:`~dune_sync.core.dune_client.DuneClient` and
are recoverable per key: the reconciler records them and moves on.
"""
from __future__ import annotations

from typing import Optional


class ConfigurationError(Exception):
    """Raised when the desired-state document or runtime settings are invalid."""


class CredentialError(Exception):
    """Raised when no API key is available or the API rejects it."""


class UnresolvedDependencyError(Exception):
    """Raised when a materialized view is converged without a resolved source query."""


class RemoteError(Exception):
    """Base class for failures reported by (or on the way to) the Dune API.

    Attributes:
        status: HTTP status code, ``0`` for connection-level failures.
        url: Request URL.
        body: Raw (truncated) response body, if any.
    """

    def __init__(self, message: str, *, status: int = 0, url: str = "", body: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.url = url
        self.body = body

    def __str__(self) -> str:
        base = f"{type(self).__name__}(status={self.status}, url={self.url})"
        if self.message:
            base += f": {self.message}"
        return base


class RemoteNotFound(RemoteError):
    """The remote object does not exist (HTTP 404)."""


class RemoteTransportError(RemoteError):
    """Connection failure or server-side (5xx) error that survived all retries."""


class RemoteTimeout(RemoteTransportError):
    """The request did not complete within the configured timeout."""


class RemoteLogicError(RemoteError):
    """The API refused the request with a business error (non-404 4xx)."""

    @property
    def name_conflict(self) -> bool:
        """True when the API reports that the object already exists.

        ``409 Conflict`` always counts; otherwise only an explicit "already
        exists" message does, so "does not exist" is never a conflict.
        """
        if self.status == 409:
            return True
        return "already exist" in (self.message or "").lower()


def describe(exc: Optional[BaseException]) -> str:
    """Short one-line description used in report rows."""
    if exc is None:
        return ""
    if isinstance(exc, RemoteError):
        return f"{type(exc).__name__}: {exc.message}"[:200]
    return f"{type(exc).__name__}: {exc}"[:200]
