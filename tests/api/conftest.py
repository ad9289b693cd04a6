"""Fixtures for portal API tests.

The app is built with :func:`create_app` and wired to the in-memory doubles
from the top-level conftest through :func:`wire_services`, the same seam the
lifespan uses in production.  ASGITransport does not run the lifespan, so no
database or network is touched.
"""

from __future__ import annotations

import httpx
import pytest
from fastapi import FastAPI

from privatezone.api.app import create_app
from privatezone.api.deps import PortalServices, wire_services
from privatezone.api.routers.integrations import _clear_state_store
from privatezone.config import PortalConfig

USER_HEADERS = {"X-User-Id": "user-1"}


@pytest.fixture(autouse=True)
def clear_states():
    """Ensure the OAuth state store is empty before and after each test."""
    _clear_state_store()
    yield
    _clear_state_store()


@pytest.fixture
async def services(
    integration_store, oauth_clients, sync_service, editor, attachment_service
) -> PortalServices:
    services = PortalServices(
        config=PortalConfig(),
        db=None,
        http_client=httpx.AsyncClient(),
        integrations=integration_store,
        oauth_clients=oauth_clients,
        sync=sync_service,
        editor=editor,
        attachments=attachment_service,
    )
    yield services
    await services.close()


@pytest.fixture
def app(services) -> FastAPI:
    app = create_app(services=services)
    wire_services(app, services)
    return app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://test", headers=USER_HEADERS
    ) as client:
        yield client


@pytest.fixture
async def anonymous_client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
