"""Tests for the Google and Microsoft OAuth clients (token endpoint handling)."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from privatezone.config import PortalConfig, ProviderAppConfig
from privatezone.errors import FetchFailedError, ProviderRequestError, ReauthorizationRequiredError
from privatezone.integrations import IntegrationProvider
from privatezone.oauth import (
    GOOGLE_TOKEN_URL,
    GoogleOAuthClient,
    MicrosoftOAuthClient,
    build_oauth_clients,
)

pytestmark = pytest.mark.unit

GOOGLE_APP = ProviderAppConfig(
    client_id="cid.apps.googleusercontent.com",
    client_secret="google-secret",
    redirect_uri="http://localhost:8080/api/integrations/{provider}/callback",
)
MICROSOFT_APP = ProviderAppConfig(
    client_id="ms-client",
    client_secret="ms-secret",
    redirect_uri="http://localhost:8080/api/integrations/microsoft/callback",
    tenant="contoso",
)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestAuthorizationUrl:
    def test_google_url_requests_offline_access_for_provider_scopes(self):
        client = GoogleOAuthClient(
            GOOGLE_APP, _client(lambda r: httpx.Response(500)), provider=IntegrationProvider.GMAIL
        )
        query = parse_qs(urlparse(client.authorization_url("state-123")).query)

        assert query["state"] == ["state-123"]
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert "https://www.googleapis.com/auth/gmail.readonly" in query["scope"][0]
        assert query["redirect_uri"] == [
            "http://localhost:8080/api/integrations/gmail/callback"
        ]

    def test_microsoft_url_uses_tenant_authority(self):
        client = MicrosoftOAuthClient(MICROSOFT_APP, _client(lambda r: httpx.Response(500)))
        url = urlparse(client.authorization_url("abc"))

        assert url.netloc == "login.microsoftonline.com"
        assert url.path == "/contoso/oauth2/v2.0/authorize"
        assert "offline_access" in parse_qs(url.query)["scope"][0]

    def test_google_client_rejects_microsoft_provider(self):
        with pytest.raises(ValueError):
            GoogleOAuthClient(
                GOOGLE_APP,
                _client(lambda r: httpx.Response(500)),
                provider=IntegrationProvider.MICROSOFT,
            )


class TestRefresh:
    async def test_refresh_returns_grant_with_absolute_expiry(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"access_token": "new-token", "expires_in": 3599})

        client = GoogleOAuthClient(GOOGLE_APP, _client(handler))
        before = datetime.now(UTC)
        grant = await client.refresh("refresh-abc")

        assert grant.access_token == "new-token"
        assert grant.refresh_token is None
        assert before + timedelta(seconds=3590) <= grant.expires_at
        assert str(requests[0].url) == GOOGLE_TOKEN_URL
        form = parse_qs(requests[0].content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["refresh-abc"]

    async def test_missing_expires_in_defaults_to_one_hour(self):
        client = GoogleOAuthClient(
            GOOGLE_APP,
            _client(lambda r: httpx.Response(200, json={"access_token": "t"})),
        )
        before = datetime.now(UTC)
        grant = await client.refresh("r")
        assert grant.expires_at >= before + timedelta(seconds=3590)

    async def test_microsoft_refresh_sends_scope(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={"access_token": "ms-token", "refresh_token": "rotated", "expires_in": 3600},
            )

        client = MicrosoftOAuthClient(MICROSOFT_APP, _client(handler))
        grant = await client.refresh("ms-refresh")

        assert grant.refresh_token == "rotated"
        assert requests[0].url.path == "/contoso/oauth2/v2.0/token"
        assert "Calendars.ReadWrite" in parse_qs(requests[0].content.decode())["scope"][0]

    async def test_invalid_grant_requires_reauthorization(self):
        client = GoogleOAuthClient(
            GOOGLE_APP,
            _client(
                lambda r: httpx.Response(
                    400,
                    json={"error": "invalid_grant", "error_description": "Token has been revoked"},
                )
            ),
        )
        with pytest.raises(ReauthorizationRequiredError, match="invalid_grant"):
            await client.refresh("revoked")

    async def test_server_error_is_a_fetch_failure(self):
        client = GoogleOAuthClient(
            GOOGLE_APP, _client(lambda r: httpx.Response(503, text="unavailable"))
        )
        with pytest.raises(ProviderRequestError) as exc_info:
            await client.refresh("r")
        assert exc_info.value.status_code == 503

    async def test_transport_error_is_a_fetch_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = GoogleOAuthClient(GOOGLE_APP, _client(handler))
        with pytest.raises(FetchFailedError):
            await client.refresh("r")

    async def test_error_messages_never_contain_tokens(self):
        client = GoogleOAuthClient(
            GOOGLE_APP,
            _client(lambda r: httpx.Response(500, text="refresh_token=super-secret failed")),
        )
        with pytest.raises(ProviderRequestError) as exc_info:
            await client.refresh("super-secret")
        assert "super-secret" not in str(exc_info.value)


class TestExchangeAndAccountInfo:
    async def test_exchange_code_posts_redirect_uri(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "access_token": "a",
                    "refresh_token": "r",
                    "expires_in": 3600,
                    "scope": "openid email",
                },
            )

        client = GoogleOAuthClient(GOOGLE_APP, _client(handler))
        grant = await client.exchange_code("auth-code")

        form = parse_qs(requests[0].content.decode())
        assert form["code"] == ["auth-code"]
        assert form["grant_type"] == ["authorization_code"]
        assert form["redirect_uri"] == [
            "http://localhost:8080/api/integrations/google_calendar/callback"
        ]
        assert grant.scope == "openid email"

    async def test_microsoft_account_info_prefers_mail(self):
        client = MicrosoftOAuthClient(
            MICROSOFT_APP,
            _client(
                lambda r: httpx.Response(
                    200,
                    json={"id": "42", "mail": "ada@contoso.com", "displayName": "Ada"},
                )
            ),
        )
        assert await client.fetch_account_info("t") == {
            "email": "ada@contoso.com",
            "name": "Ada",
            "id": "42",
        }

    async def test_account_info_failure_returns_empty(self):
        client = GoogleOAuthClient(GOOGLE_APP, _client(lambda r: httpx.Response(401)))
        assert await client.fetch_account_info("t") == {}


def test_build_oauth_clients_covers_every_provider():
    config = PortalConfig(google=GOOGLE_APP, microsoft=ProviderAppConfig())
    clients = build_oauth_clients(config, _client(lambda r: httpx.Response(500)))

    assert set(clients) == set(IntegrationProvider)
    assert clients[IntegrationProvider.GOOGLE_TASKS].configured is True
    assert clients[IntegrationProvider.MICROSOFT].configured is False
