"""Integration management endpoints: list, OAuth connect, disconnect.

The connect flow is a two-leg OAuth 2.0 authorization-code flow:

  1. GET /api/integrations/{provider}/start
     - Generates a random state token bound to the acting user and provider.
     - Stores it in an in-memory store (TTL 10 min, one-time use).
     - Redirects the browser to the provider's consent page, or returns the
       URL as JSON when ``?redirect=false``.

  2. GET /api/integrations/{provider}/callback
     - Validates and consumes the state; the user id comes from the state,
       not from request headers, because the provider redirects the browser.
     - Exchanges the code for tokens and stores the integration record
       (insert-or-replace, reactivating a previously disconnected record).

Security notes:
  - Token values are never echoed back in responses or written to logs.
  - Provider error codes are mapped to fixed user-facing messages.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Mapping
from dataclasses import dataclass

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, RedirectResponse, Response

from privatezone.api.deps import get_current_user, get_integration_store, get_oauth_clients
from privatezone.api.models import (
    ApiResponse,
    IntegrationStatus,
    OAuthCallbackError,
    OAuthCallbackSuccess,
    OAuthStartResponse,
)
from privatezone.errors import FetchFailedError, ReauthorizationRequiredError
from privatezone.integrations import IntegrationProvider, IntegrationRecord, IntegrationStore
from privatezone.oauth import OAuthClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/integrations", tags=["integrations"])

# ---------------------------------------------------------------------------
# State store
# ---------------------------------------------------------------------------

_STATE_TTL_SECONDS = 600


@dataclass(frozen=True)
class _PendingAuthorization:
    user_id: str
    provider: IntegrationProvider
    expires_at: float


# Maps state token -> pending authorization (monotonic expiry).
# NOTE: process-local; run a single worker process.
_state_store: dict[str, _PendingAuthorization] = {}


def _generate_state() -> str:
    """Generate a cryptographically random CSRF state token."""
    return secrets.token_urlsafe(32)


def _store_state(state: str, user_id: str, provider: IntegrationProvider) -> None:
    _state_store[state] = _PendingAuthorization(
        user_id=user_id,
        provider=provider,
        expires_at=time.monotonic() + _STATE_TTL_SECONDS,
    )
    _evict_expired_states()


def _validate_and_consume_state(state: str) -> _PendingAuthorization | None:
    """Consume a state token (one-time use).

    Returns the pending authorization if the state was known and unexpired,
    ``None`` otherwise.
    """
    _evict_expired_states()
    pending = _state_store.pop(state, None)
    if pending is None or time.monotonic() >= pending.expires_at:
        return None
    return pending


def _evict_expired_states() -> None:
    now = time.monotonic()
    expired = [k for k, pending in _state_store.items() if now >= pending.expires_at]
    for k in expired:
        del _state_store[k]


def _clear_state_store() -> None:
    """Clear all state entries. Used in tests."""
    _state_store.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_KNOWN_PROVIDER_ERRORS: dict[str, str] = {
    "access_denied": "Access was denied. Grant the requested permissions to connect the account.",
    "consent_required": "Consent is required. Please restart the flow and approve access.",
    "invalid_scope": "The requested permissions are not available for this account.",
    "server_error": "The provider had a temporary problem. Please try again.",
    "temporarily_unavailable": "The provider is temporarily unavailable. Please try again.",
}


def _sanitize_provider_error(error: str) -> str:
    """Convert a provider error code into a safe, actionable user message.

    Unknown error codes are replaced with a generic message.
    """
    return _KNOWN_PROVIDER_ERRORS.get(
        error,
        "The authorization failed. Please restart the connection flow.",
    )


def _callback_error(error_code: str, message: str) -> JSONResponse:
    payload = OAuthCallbackError(error_code=error_code, message=message)
    return JSONResponse(status_code=400, content=payload.model_dump())


def _require_client(
    clients: Mapping[IntegrationProvider, OAuthClient], provider: IntegrationProvider
) -> OAuthClient:
    client = clients.get(provider)
    if client is None or not client.configured:
        raise HTTPException(
            status_code=503,
            detail=f"OAuth app credentials for {provider} are not configured.",
        )
    return client


# ---------------------------------------------------------------------------
# Listing and disconnect
# ---------------------------------------------------------------------------


@router.get("")
async def list_integrations(
    user_id: str = Depends(get_current_user),
    store: IntegrationStore = Depends(get_integration_store),
) -> ApiResponse[list[IntegrationStatus]]:
    records = await store.list_for_user(user_id)
    return ApiResponse[list[IntegrationStatus]](
        data=[IntegrationStatus.from_record(record) for record in records]
    )


@router.delete("/{provider}")
async def disconnect_integration(
    provider: IntegrationProvider,
    user_id: str = Depends(get_current_user),
    store: IntegrationStore = Depends(get_integration_store),
) -> ApiResponse[IntegrationStatus]:
    """Soft-delete the user's integration; the record is kept, inactive."""
    if not await store.deactivate(user_id, provider):
        raise HTTPException(status_code=404, detail=f"No {provider} integration to disconnect")
    return ApiResponse[IntegrationStatus](
        data=IntegrationStatus(provider=provider, is_active=False)
    )


# ---------------------------------------------------------------------------
# Start endpoint
# ---------------------------------------------------------------------------


@router.get(
    "/{provider}/start",
    responses={
        200: {"model": OAuthStartResponse, "description": "JSON payload (redirect=false)"},
        302: {"description": "Redirect to the provider authorization URL"},
    },
)
async def oauth_start(
    provider: IntegrationProvider,
    redirect: bool = Query(
        default=True,
        description="If true (default), redirect to the provider. "
        "If false, return the URL as JSON for programmatic callers.",
    ),
    user_id: str = Depends(get_current_user),
    clients: Mapping[IntegrationProvider, OAuthClient] = Depends(get_oauth_clients),
) -> Response:
    client = _require_client(clients, provider)
    state = _generate_state()
    _store_state(state, user_id, provider)
    authorization_url = client.authorization_url(state)

    logger.info("OAuth flow started: provider=%s state=%s...", provider, state[:8])

    if redirect:
        return RedirectResponse(url=authorization_url, status_code=302)
    return JSONResponse(
        content=OAuthStartResponse(authorization_url=authorization_url, state=state).model_dump()
    )


# ---------------------------------------------------------------------------
# Callback endpoint
# ---------------------------------------------------------------------------


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: IntegrationProvider,
    code: str | None = Query(default=None, description="Authorization code."),
    state: str | None = Query(default=None, description="CSRF state token."),
    error: str | None = Query(default=None, description="OAuth error code from the provider."),
    clients: Mapping[IntegrationProvider, OAuthClient] = Depends(get_oauth_clients),
    store: IntegrationStore = Depends(get_integration_store),
) -> Response:
    """Complete the OAuth flow and store the integration record.

    Every failure returns ``OAuthCallbackError`` with status 400; client
    secrets and raw provider responses are never included.
    """
    if error:
        logger.warning("OAuth provider error: provider=%s error=%s", provider, error[:64])
        # A denied flow must not leave a reusable state behind.
        if state:
            _validate_and_consume_state(state)
        return _callback_error("provider_error", _sanitize_provider_error(error))

    if not code:
        return _callback_error("missing_code", "Authorization code is missing from the callback.")
    if not state:
        return _callback_error(
            "missing_state",
            "State parameter is missing from the callback. Possible CSRF attempt.",
        )

    pending = _validate_and_consume_state(state)
    if pending is None or pending.provider is not provider:
        logger.warning("OAuth callback received invalid or expired state token")
        return _callback_error(
            "invalid_state",
            "State parameter is invalid or expired. Please restart the connection flow.",
        )

    client = _require_client(clients, provider)
    try:
        grant = await client.exchange_code(code)
    except (ReauthorizationRequiredError, FetchFailedError) as exc:
        logger.warning("OAuth code exchange failed: provider=%s (%s)", provider, type(exc).__name__)
        return _callback_error(
            "token_exchange_failed",
            "Failed to exchange the authorization code for tokens. "
            "The code may have expired or already been used. Please restart the flow.",
        )

    account_info = await client.fetch_account_info(grant.access_token)

    record = await store.upsert(
        IntegrationRecord(
            user_id=pending.user_id,
            provider=provider,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at,
            scope=grant.scope,
            account_info=account_info,
        )
    )

    email = record.account_info.get("email")
    return JSONResponse(
        content=OAuthCallbackSuccess(
            provider=provider,
            scope=record.scope,
            account_email=email if isinstance(email, str) else None,
        ).model_dump(mode="json")
    )
