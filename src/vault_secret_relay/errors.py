"""Failure kinds surfaced by the secret-collection engine.

Each kind maps to one HTTP status in ``vault_secret_relay.api.app``.  Component
modules raise these directly, or wrap their own local errors in them with
``raise ... from exc`` so the original cause stays on the traceback.
"""

from __future__ import annotations

from typing import Any


class SecretRelayError(Exception):
    """Base class for all engine failures.

    Keyword arguments become ``details``, extra fields the HTTP layer adds to
    the error body.
    """

    kind = "error"

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message)
        self.details = details


class InvalidInput(SecretRelayError):
    """Raised for a malformed registration or submission payload."""

    kind = "invalid_input"


class NotFound(SecretRelayError):
    """Raised for an unknown session or a key the session never requested."""

    kind = "not_found"


class Unauthorized(SecretRelayError):
    """Raised when the caller credential is missing or invalid."""

    kind = "unauthorized"


class Forbidden(SecretRelayError):
    """Raised when an authenticated caller is not in the required team."""

    kind = "forbidden"


class AlreadyProcessed(SecretRelayError):
    """Raised when a key is submitted after it has already been completed."""

    kind = "already_processed"


class _UpstreamError(SecretRelayError):
    def __init__(self, message: str, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class StoreUnavailable(_UpstreamError):
    """Raised when the backing store is unreachable or answers with an error."""

    kind = "store_unavailable"


class UpstreamDispatchFailed(_UpstreamError):
    """Raised when the downstream workflow dispatch fails."""

    kind = "upstream_dispatch_failed"


__all__ = [
    "AlreadyProcessed",
    "Forbidden",
    "InvalidInput",
    "NotFound",
    "SecretRelayError",
    "StoreUnavailable",
    "Unauthorized",
    "UpstreamDispatchFailed",
]
