"""Service container and FastAPI dependencies for the portal API.

Provides:
- ``PortalServices``: every long-lived collaborator the routers need, built
  once in the app lifespan by :func:`build_services`.
- Dependency stubs (``get_sync_service`` and friends) that routers depend on.
  They raise until :func:`wire_services` overrides them with the live
  instances; tests override them directly through ``app.dependency_overrides``.
- ``get_current_user``: resolves the acting user from the ``X-User-Id``
  header and binds it to the log context.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

import httpx
from fastapi import FastAPI, Header, HTTPException

from privatezone.config import PortalConfig
from privatezone.core.logging import set_user_context
from privatezone.db import Database
from privatezone.integrations import IntegrationProvider, IntegrationStore, PostgresIntegrationStore
from privatezone.oauth import OAuthClient, build_oauth_clients
from privatezone.providers.base import CalendarProvider
from privatezone.providers.gmail import GmailProvider
from privatezone.providers.google_calendar import GoogleCalendarProvider
from privatezone.providers.google_tasks import GoogleTasksProvider
from privatezone.providers.microsoft_graph import MicrosoftGraphCalendarProvider
from privatezone.recurrence import EventEditor
from privatezone.sync.attachments import AttachmentService
from privatezone.sync.engine import ReconciliationEngine
from privatezone.sync.service import SyncService
from privatezone.sync.store import PostgresSyncStore
from privatezone.tokens import TokenGuard

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0


@dataclass
class PortalServices:
    """Long-lived collaborators shared by every request."""

    config: PortalConfig
    db: Database | None
    http_client: httpx.AsyncClient
    integrations: IntegrationStore
    oauth_clients: Mapping[IntegrationProvider, OAuthClient]
    sync: SyncService
    editor: EventEditor
    attachments: AttachmentService

    async def close(self) -> None:
        await self.http_client.aclose()
        if self.db is not None:
            await self.db.close()


def build_services(
    config: PortalConfig,
    db: Database,
    http_client: httpx.AsyncClient | None = None,
) -> PortalServices:
    """Wire stores, token guard, provider adapters and services together."""
    client = http_client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT_SECONDS)
    integrations = PostgresIntegrationStore(db)
    oauth_clients = build_oauth_clients(config, client)
    guard = TokenGuard(integrations, oauth_clients)
    store = PostgresSyncStore(db)
    engine = ReconciliationEngine(store)

    calendars: dict[IntegrationProvider, CalendarProvider] = {
        IntegrationProvider.GOOGLE_CALENDAR: GoogleCalendarProvider(client),
        IntegrationProvider.MICROSOFT: MicrosoftGraphCalendarProvider(client),
    }
    gmail = GmailProvider(client)
    attachments = AttachmentService(
        store,
        gmail,
        guard,
        max_inline_bytes=config.sync.attachment_max_inline_bytes,
    )
    sync = SyncService(
        guard=guard,
        store=store,
        engine=engine,
        calendars=calendars,
        messages=gmail,
        tasks=GoogleTasksProvider(client),
        attachments=attachments,
        config=config.sync,
    )
    editor = EventEditor(guard=guard, calendars=calendars, store=store, engine=engine)
    return PortalServices(
        config=config,
        db=db,
        http_client=client,
        integrations=integrations,
        oauth_clients=oauth_clients,
        sync=sync,
        editor=editor,
        attachments=attachments,
    )


# ---------------------------------------------------------------------------
# Dependency stubs (replaced at startup by wire_services)
# ---------------------------------------------------------------------------


def _not_wired(name: str) -> RuntimeError:
    return RuntimeError(f"{name} dependency is not wired; call wire_services() at startup")


def get_sync_service() -> SyncService:
    raise _not_wired("SyncService")


def get_event_editor() -> EventEditor:
    raise _not_wired("EventEditor")


def get_attachment_service() -> AttachmentService:
    raise _not_wired("AttachmentService")


def get_integration_store() -> IntegrationStore:
    raise _not_wired("IntegrationStore")


def get_oauth_clients() -> Mapping[IntegrationProvider, OAuthClient]:
    raise _not_wired("OAuth clients")


def get_database() -> Database | None:
    """Return None when no database is wired; the health check reports it."""
    return None


def wire_services(app: FastAPI, services: PortalServices) -> None:
    """Override every dependency stub with the live service instances."""
    app.dependency_overrides[get_sync_service] = lambda: services.sync
    app.dependency_overrides[get_event_editor] = lambda: services.editor
    app.dependency_overrides[get_attachment_service] = lambda: services.attachments
    app.dependency_overrides[get_integration_store] = lambda: services.integrations
    app.dependency_overrides[get_oauth_clients] = lambda: services.oauth_clients
    app.dependency_overrides[get_database] = lambda: services.db
    logger.debug("Portal services wired into API dependencies")


# ---------------------------------------------------------------------------
# Current user
# ---------------------------------------------------------------------------


async def get_current_user(x_user_id: str | None = Header(default=None)) -> str:
    """Resolve the acting user from ``X-User-Id``.

    Session handling lives in front of this service; it forwards the
    authenticated user id in this header.  Declared ``async`` so the log
    context is set in the request task rather than a threadpool copy.
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    set_user_context(user_id)
    return user_id
