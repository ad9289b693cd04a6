"""Sync entry points called by the HTTP layer and the CLI.

Each operation resolves a fresh access token through the token guard, opens
the provider listing, and hands it to the reconciliation engine.  Only a
failure of the listing itself fails the call; per-record problems show up as
``skipped`` in the returned :class:`SyncResult`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from uuid import UUID

from privatezone.config import SyncConfig
from privatezone.errors import EntityNotFoundError
from privatezone.integrations import IntegrationProvider
from privatezone.providers.base import (
    CalendarProvider,
    EventDraft,
    MessageProvider,
    NormalizedMessage,
    TaskDraft,
    TaskProvider,
)
from privatezone.sync.attachments import AttachmentService
from privatezone.sync.engine import NormalizedRecord, ReconciliationEngine, SyncResult
from privatezone.sync.store import EntityKind, Row, SyncStore
from privatezone.tokens import TokenGuard

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SyncService:
    """Per-domain sync operations plus the provider write paths that mirror locally."""

    def __init__(
        self,
        *,
        guard: TokenGuard,
        store: SyncStore,
        engine: ReconciliationEngine,
        calendars: Mapping[IntegrationProvider, CalendarProvider],
        messages: MessageProvider,
        tasks: TaskProvider,
        attachments: AttachmentService,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._guard = guard
        self._store = store
        self._engine = engine
        self._calendars = calendars
        self._messages = messages
        self._tasks = tasks
        self._attachments = attachments
        self._config = config or SyncConfig()
        self._clock = clock

    def calendar_provider(self, provider: IntegrationProvider) -> CalendarProvider:
        try:
            return self._calendars[provider]
        except KeyError:
            raise ValueError(f"{provider} is not a calendar provider") from None

    def calendar_window(self) -> tuple[datetime, datetime]:
        """Return the ``[start, end)`` listing window for calendar sync."""
        now = self._clock()
        start = now - timedelta(days=self._config.calendar_lookback_days)
        end = now + timedelta(days=self._config.calendar_window_days)
        return start, end

    # ------------------------------------------------------------------
    # Sync passes
    # ------------------------------------------------------------------

    async def sync_calendar(
        self,
        user_id: str,
        provider: IntegrationProvider = IntegrationProvider.GOOGLE_CALENDAR,
    ) -> SyncResult:
        """Mirror the user's calendar events within the configured window."""
        calendar = self.calendar_provider(provider)
        record = await self._guard.get_fresh(user_id, provider)
        start, end = self.calendar_window()
        logger.info(
            "Calendar sync started: user_id=%r provider=%s window=%s..%s",
            user_id,
            provider,
            start.date().isoformat(),
            end.date().isoformat(),
        )
        return await self._engine.reconcile(
            user_id,
            EntityKind.EVENT,
            calendar.source,
            calendar.list_events(record.access_token, start, end),
        )

    async def sync_microsoft_calendar(self, user_id: str) -> SyncResult:
        return await self.sync_calendar(user_id, IntegrationProvider.MICROSOFT)

    async def sync_messages(
        self,
        user_id: str,
        query: str | None = None,
        limit: int | None = None,
    ) -> SyncResult:
        """Mirror recent mail matching *query*, storing small attachments."""
        effective_query = self._config.message_query if query is None else query
        effective_limit = self._config.message_limit if limit is None else limit
        if effective_limit < 1:
            raise ValueError("limit must be at least 1")

        record = await self._guard.get_fresh(user_id, self._messages.integration)
        token = record.access_token

        async def store_attachments(message: NormalizedRecord, row: Row) -> None:
            if isinstance(message, NormalizedMessage) and message.attachments:
                await self._attachments.persist_new(token, row, message)

        return await self._engine.reconcile(
            user_id,
            EntityKind.MESSAGE,
            self._messages.source,
            self._messages.list_messages(token, effective_query, effective_limit),
            on_record=store_attachments,
        )

    async def sync_tasks(self, user_id: str) -> SyncResult:
        """Mirror the user's default task list."""
        record = await self._guard.get_fresh(user_id, self._tasks.integration)
        return await self._engine.reconcile(
            user_id,
            EntityKind.TASK,
            self._tasks.source,
            self._tasks.list_tasks(record.access_token),
        )

    # ------------------------------------------------------------------
    # Write paths
    # ------------------------------------------------------------------

    async def push_task(self, user_id: str, task_id: UUID) -> Row:
        """Create a locally authored task remotely and link the local row to it.

        A task that already carries a provider id is returned unchanged.
        """
        task = await self._store.get(EntityKind.TASK, user_id, task_id)
        if task is None:
            raise EntityNotFoundError(f"Task {task_id} not found")
        if task.get("provider_id"):
            logger.info("Task %s is already linked to %s", task_id, task.get("source"))
            return task

        draft = TaskDraft(
            title=task["title"],
            notes=task.get("notes"),
            due_at=task.get("due_at"),
            completed=bool(task.get("completed")),
        )
        record = await self._guard.get_fresh(user_id, self._tasks.integration)
        remote = await self._tasks.create_task(record.access_token, draft)
        row = await self._store.update(
            EntityKind.TASK,
            task["id"],
            {"provider_id": remote.provider_id, "source": self._tasks.source},
        )
        logger.info("Pushed task %s to %s as %s", task_id, self._tasks.source, remote.provider_id)
        return row

    async def create_event(
        self, user_id: str, provider: IntegrationProvider, draft: EventDraft
    ) -> Row:
        """Create an event at the provider and mirror the created event locally."""
        calendar = self.calendar_provider(provider)
        record = await self._guard.get_fresh(user_id, provider)
        created = await calendar.create_event(record.access_token, draft)
        _, row = await self._engine.upsert(EntityKind.EVENT, user_id, calendar.source, created)
        logger.info("Created %s event %s", provider, created.provider_id)
        return row
