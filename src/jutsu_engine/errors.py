"""Exceptions raised by the recognition backends and catalogs."""

from __future__ import annotations

from typing import Optional


class JutsuEngineError(Exception):
    """Base class for all engine errors."""


class ModelUnavailable(JutsuEngineError):
    """No valid neural model payload could be obtained.

    Blocks the neural backend until the caller retries ``load_model()``.
    """


class TransientBackendFault(JutsuEngineError):
    """A single inference call failed. Treated as "nothing detected"."""


class UnknownJutsu(JutsuEngineError, KeyError):
    """Lookup of a jutsu or hand sign id that is not in the catalog."""

    def __str__(self) -> str:
        # KeyError would quote the message
        return str(self.args[0]) if self.args else ""


class RemoteVerificationError(JutsuEngineError):
    """Failure talking to the remote vision service."""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteRateLimited(RemoteVerificationError):
    """HTTP 429 / quota exhausted."""

    retryable = True


class RemoteServerError(RemoteVerificationError):
    """5xx, unreachable service, or an unparseable response."""

    retryable = True


class RemoteClientError(RemoteVerificationError):
    """Request rejected (4xx other than 429). Not worth retrying."""
