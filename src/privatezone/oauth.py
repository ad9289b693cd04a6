"""OAuth 2.0 clients for Google and the Microsoft identity platform.

Each client covers the three legs the portal needs:

- ``authorization_url(state)`` — where to send the browser to grant access.
- ``exchange_code(code)`` — trade the callback code for a :class:`TokenGrant`.
- ``refresh(refresh_token)`` — mint a fresh access token.

A rejected refresh token (revoked, expired, client mismatch) raises
:class:`~privatezone.errors.ReauthorizationRequiredError`; transport failures
and provider 5xx answers raise :class:`~privatezone.errors.FetchFailedError`.
Token values are never included in error messages or logs.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field

from privatezone.config import PortalConfig, ProviderAppConfig
from privatezone.errors import (
    FetchFailedError,
    ProviderRequestError,
    ReauthorizationRequiredError,
    redact_secrets,
)
from privatezone.integrations import IntegrationProvider

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Endpoints and scopes
# ---------------------------------------------------------------------------

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"

MICROSOFT_LOGIN_BASE = "https://login.microsoftonline.com"
MICROSOFT_ME_URL = "https://graph.microsoft.com/v1.0/me"

DEFAULT_TOKEN_TTL_SECONDS = 3600

_IDENTITY_SCOPES = ("openid", "email")

PROVIDER_SCOPES: dict[IntegrationProvider, tuple[str, ...]] = {
    IntegrationProvider.GOOGLE_CALENDAR: (
        *_IDENTITY_SCOPES,
        "https://www.googleapis.com/auth/calendar",
    ),
    IntegrationProvider.GMAIL: (
        *_IDENTITY_SCOPES,
        "https://www.googleapis.com/auth/gmail.readonly",
    ),
    IntegrationProvider.GOOGLE_TASKS: (
        *_IDENTITY_SCOPES,
        "https://www.googleapis.com/auth/tasks",
    ),
    IntegrationProvider.MICROSOFT: (
        "offline_access",
        "User.Read",
        "Calendars.ReadWrite",
    ),
}

# Token endpoint error codes that mean the grant itself is no longer usable.
_REAUTH_ERROR_CODES = frozenset(
    {"invalid_grant", "invalid_client", "unauthorized_client", "interaction_required"}
)


# ---------------------------------------------------------------------------
# Token grant
# ---------------------------------------------------------------------------


class TokenGrant(BaseModel):
    """Tokens returned by a token endpoint, with an absolute expiry."""

    model_config = ConfigDict(extra="forbid")

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime
    scope: str | None = None

    def __repr__(self) -> str:
        return (
            f"TokenGrant(access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at!r}, scope={self.scope!r})"
        )

    __str__ = __repr__


class OAuthClient(Protocol):
    """Per-provider OAuth client surface used by the token guard and routes."""

    provider: IntegrationProvider

    @property
    def configured(self) -> bool: ...

    def authorization_url(self, state: str) -> str: ...

    async def exchange_code(self, code: str) -> TokenGrant: ...

    async def refresh(self, refresh_token: str) -> TokenGrant: ...

    async def fetch_account_info(self, access_token: str) -> dict[str, Any]: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_TOKEN_TTL_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_TOKEN_TTL_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else DEFAULT_TOKEN_TTL_SECONDS
    return DEFAULT_TOKEN_TTL_SECONDS


def _token_error_code(response: httpx.Response) -> tuple[str | None, str]:
    """Return ``(error_code, safe_message)`` from a token endpoint error body."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        code = payload.get("error")
        description = payload.get("error_description")
        if isinstance(code, dict):
            # Google API style error envelope
            message = code.get("message")
            status = code.get("status")
            return (
                status if isinstance(status, str) else None,
                " ".join(str(message or "").split())[:200] or "request failed",
            )
        if isinstance(code, str):
            detail = description if isinstance(description, str) else code
            return code, redact_secrets(" ".join(detail.split())[:200])

    raw_text = response.text.strip()
    if raw_text:
        return None, redact_secrets(" ".join(raw_text.split())[:200])
    return None, "Request failed without an error payload"


class _TokenEndpointClient:
    """Shared token endpoint handling for both identity providers."""

    provider: IntegrationProvider
    token_url: str

    def __init__(
        self,
        app: ProviderAppConfig,
        http_client: httpx.AsyncClient,
        *,
        scopes: Sequence[str],
    ) -> None:
        self._app = app
        self._http_client = http_client
        self._scopes = tuple(scopes)

    @property
    def configured(self) -> bool:
        return self._app.configured

    @property
    def redirect_uri(self) -> str:
        # One app registration can serve several integrations via a {provider} placeholder.
        return self._app.redirect_uri.replace("{provider}", str(self.provider))

    @property
    def scope_string(self) -> str:
        return " ".join(self._scopes)

    def _refresh_payload(self, refresh_token: str) -> dict[str, str]:
        return {
            "client_id": self._app.client_id,
            "client_secret": self._app.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

    def _exchange_payload(self, code: str) -> dict[str, str]:
        return {
            "code": code,
            "client_id": self._app.client_id,
            "client_secret": self._app.client_secret,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }

    async def refresh(self, refresh_token: str) -> TokenGrant:
        if not refresh_token:
            raise ReauthorizationRequiredError(self.provider, "no refresh token stored")
        grant = await self._post_token(self._refresh_payload(refresh_token), action="refresh")
        logger.info("%s access token refreshed (expires_at=%s)", self.provider, grant.expires_at)
        return grant

    async def exchange_code(self, code: str) -> TokenGrant:
        return await self._post_token(self._exchange_payload(code), action="code exchange")

    async def _post_token(self, data: dict[str, str], *, action: str) -> TokenGrant:
        try:
            response = await self._http_client.post(
                self.token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise FetchFailedError(
                f"{self.provider} OAuth token {action} request failed: "
                f"{redact_secrets(str(exc))}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            error_code, message = _token_error_code(response)
            if response.status_code in (400, 401, 403) and (
                error_code in _REAUTH_ERROR_CODES or response.status_code == 401
            ):
                raise ReauthorizationRequiredError(
                    self.provider, f"token {action} rejected ({error_code or response.status_code})"
                )
            raise ProviderRequestError(
                provider=str(self.provider),
                status_code=response.status_code,
                message=f"OAuth token {action} failed: {message}",
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise FetchFailedError(
                f"{self.provider} OAuth token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise FetchFailedError(
                f"{self.provider} OAuth token response is missing a non-empty access_token"
            )

        expires_in_seconds = _coerce_expires_in_seconds(payload.get("expires_in"))
        refresh_token = payload.get("refresh_token")
        scope = payload.get("scope")
        return TokenGrant(
            access_token=access_token.strip(),
            refresh_token=refresh_token if isinstance(refresh_token, str) else None,
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in_seconds),
            scope=scope if isinstance(scope, str) else None,
        )

    async def _get_json(self, url: str, access_token: str) -> dict[str, Any]:
        try:
            response = await self._http_client.get(
                url, headers={"Authorization": f"Bearer {access_token}"}
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "Could not load %s account info: %s", self.provider, redact_secrets(str(exc))
            )
            return {}
        return payload if isinstance(payload, dict) else {}


# ---------------------------------------------------------------------------
# Google
# ---------------------------------------------------------------------------


class GoogleOAuthClient(_TokenEndpointClient):
    """OAuth client for one of the Google-backed integrations."""

    token_url = GOOGLE_TOKEN_URL

    def __init__(
        self,
        app: ProviderAppConfig,
        http_client: httpx.AsyncClient,
        *,
        provider: IntegrationProvider = IntegrationProvider.GOOGLE_CALENDAR,
        scopes: Sequence[str] | None = None,
    ) -> None:
        if not provider.is_google:
            raise ValueError(f"{provider} is not a Google integration")
        super().__init__(app, http_client, scopes=scopes or PROVIDER_SCOPES[provider])
        self.provider = provider

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self._app.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.scope_string,
            "access_type": "offline",
            "prompt": "consent",  # Force refresh token to be returned
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def fetch_account_info(self, access_token: str) -> dict[str, Any]:
        payload = await self._get_json(GOOGLE_USERINFO_URL, access_token)
        return {k: payload[k] for k in ("email", "name", "sub") if k in payload}


# ---------------------------------------------------------------------------
# Microsoft identity platform
# ---------------------------------------------------------------------------


class MicrosoftOAuthClient(_TokenEndpointClient):
    """OAuth client for Microsoft Graph (v2.0 endpoints)."""

    provider = IntegrationProvider.MICROSOFT

    def __init__(
        self,
        app: ProviderAppConfig,
        http_client: httpx.AsyncClient,
        *,
        scopes: Sequence[str] | None = None,
    ) -> None:
        super().__init__(
            app, http_client, scopes=scopes or PROVIDER_SCOPES[IntegrationProvider.MICROSOFT]
        )
        tenant = app.tenant or "common"
        self._authority = f"{MICROSOFT_LOGIN_BASE}/{tenant}/oauth2/v2.0"
        self.token_url = f"{self._authority}/token"

    def _refresh_payload(self, refresh_token: str) -> dict[str, str]:
        # The v2.0 endpoint requires the scope on refresh.
        return {**super()._refresh_payload(refresh_token), "scope": self.scope_string}

    def _exchange_payload(self, code: str) -> dict[str, str]:
        return {**super()._exchange_payload(code), "scope": self.scope_string}

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self._app.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "response_mode": "query",
            "scope": self.scope_string,
            "state": state,
        }
        return f"{self._authority}/authorize?{urlencode(params)}"

    async def fetch_account_info(self, access_token: str) -> dict[str, Any]:
        payload = await self._get_json(MICROSOFT_ME_URL, access_token)
        info: dict[str, Any] = {}
        email = payload.get("mail") or payload.get("userPrincipalName")
        if email:
            info["email"] = email
        if payload.get("displayName"):
            info["name"] = payload["displayName"]
        if payload.get("id"):
            info["id"] = payload["id"]
        return info


def build_oauth_clients(
    config: PortalConfig, http_client: httpx.AsyncClient
) -> Mapping[IntegrationProvider, OAuthClient]:
    """Build one OAuth client per integration provider from *config*."""
    clients: dict[IntegrationProvider, OAuthClient] = {}
    for provider in IntegrationProvider:
        if provider is IntegrationProvider.MICROSOFT:
            clients[provider] = MicrosoftOAuthClient(config.microsoft, http_client)
        else:
            clients[provider] = GoogleOAuthClient(config.google, http_client, provider=provider)
    return clients
