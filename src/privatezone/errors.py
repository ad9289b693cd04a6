"""Exception hierarchy shared by the token guard, provider adapters and sync core.

Status code mapping used by the API layer (see ``privatezone.api.middleware``):

- ``ReauthorizationRequiredError`` → 401 ``RECONNECT_REQUIRED``
- ``IntegrationNotFoundError`` → 401 ``INTEGRATION_NOT_FOUND``
- ``FetchFailedError`` → 502 ``FETCH_FAILED``
- ``EntityNotFoundError`` → 404 ``NOT_FOUND``

Messages are safe to log: none of these errors carries token material.
"""

from __future__ import annotations

import re


class PortalSyncError(RuntimeError):
    """Base error for the private zone sync core."""


class IntegrationNotFoundError(PortalSyncError):
    """Raised when a user has no active integration for a provider."""

    def __init__(self, user_id: str, provider: str) -> None:
        self.user_id = user_id
        self.provider = provider
        super().__init__(f"No active {provider} integration for user {user_id!r}")


class ReauthorizationRequiredError(PortalSyncError):
    """Raised when stored credentials can no longer be refreshed.

    The caller must ask the end user to reconnect the integration. This error
    is never retried.
    """

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"{provider} integration needs re-authorization: {reason}")


class FetchFailedError(PortalSyncError):
    """Raised when a provider call fails for network or HTTP reasons."""


class ProviderRequestError(FetchFailedError):
    """Raised when a provider API answers with a non-success status."""

    def __init__(self, *, provider: str, status_code: int, message: str) -> None:
        self.provider = provider
        self.status_code = status_code
        self.message = message
        super().__init__(f"{provider} API request failed ({status_code}): {message}")


class EntityNotFoundError(PortalSyncError):
    """Raised when a local entity looked up by id does not exist."""


class DuplicateEntityError(PortalSyncError):
    """Raised by a store when an insert hits the (user, provider id) unique index."""


class MalformedRecordError(PortalSyncError, ValueError):
    """Raised when one remote record cannot be stored as-is."""


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

_SECRET_KEYS = r"client_secret|refresh_token|access_token|id_token|token|code"


def redact_secrets(message: str) -> str:
    """Redact token-like values from an error message before logging it."""
    redacted = re.sub(
        rf"(?i)\b({_SECRET_KEYS})\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_SECRET_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._\-~+/]+=*", "Bearer [REDACTED]", redacted)
    return redacted
