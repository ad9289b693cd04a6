"""Shared unit-test doubles: in-memory stores, OAuth clients and provider adapters.

The doubles honour the same contracts as the Postgres stores and the HTTP
adapters (unique natural keys, compare-and-swap token writes, RecordError
markers) so the sync core can be exercised without Docker or network access.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator, Callable
from datetime import UTC, date, datetime, timedelta
from typing import Any

import pytest

from privatezone.errors import (
    DuplicateEntityError,
    FetchFailedError,
    MalformedRecordError,
)
from privatezone.integrations import IntegrationProvider, IntegrationRecord
from privatezone.oauth import TokenGrant
from privatezone.providers.base import (
    CalendarProvider,
    EventDraft,
    EventPatch,
    MessageProvider,
    NormalizedEvent,
    NormalizedMessage,
    NormalizedTask,
    RecordError,
    TaskDraft,
    TaskProvider,
)
from privatezone.providers.rrule import truncate_rrule_lines
from privatezone.recurrence import EventEditor
from privatezone.sync.attachments import AttachmentService
from privatezone.sync.engine import ReconciliationEngine
from privatezone.sync.service import SyncService
from privatezone.sync.store import ENTITY_COLUMNS, EntityKind, Row
from privatezone.tokens import TokenGuard

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
USER_ID = "user-1"


# ---------------------------------------------------------------------------
# Integration store
# ---------------------------------------------------------------------------


class InMemoryIntegrationStore:
    """Dict-backed IntegrationStore with compare-and-swap token updates."""

    def __init__(self) -> None:
        self.records: dict[tuple[str, IntegrationProvider], IntegrationRecord] = {}
        self.token_writes = 0
        # Called just before a CAS write; lets tests inject a concurrent writer.
        self.before_update: Callable[[], Any] | None = None

    def seed(self, record: IntegrationRecord) -> IntegrationRecord:
        self.records[(record.user_id, record.provider)] = record
        return record

    async def get_active(
        self, user_id: str, provider: IntegrationProvider
    ) -> IntegrationRecord | None:
        record = self.records.get((user_id, provider))
        return record if record is not None and record.is_active else None

    async def list_for_user(self, user_id: str) -> list[IntegrationRecord]:
        return sorted(
            (r for (uid, _), r in self.records.items() if uid == user_id),
            key=lambda r: str(r.provider),
        )

    async def upsert(self, record: IntegrationRecord) -> IntegrationRecord:
        previous = self.records.get((record.user_id, record.provider))
        stored = record.model_copy(
            update={
                "is_active": True,
                "refresh_token": record.refresh_token
                or (previous.refresh_token if previous else None),
                "created_at": previous.created_at if previous else NOW,
                "updated_at": NOW,
            }
        )
        self.records[(record.user_id, record.provider)] = stored
        return stored

    async def update_token(
        self,
        user_id: str,
        provider: IntegrationProvider,
        *,
        access_token: str,
        expires_at: datetime | None,
        expected_expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> bool:
        if self.before_update is not None:
            hook, self.before_update = self.before_update, None
            hook()
        current = await self.get_active(user_id, provider)
        if current is None or current.expires_at != expected_expires_at:
            return False
        updates: dict[str, Any] = {"access_token": access_token, "expires_at": expires_at}
        if refresh_token:
            updates["refresh_token"] = refresh_token
        self.records[(user_id, provider)] = current.model_copy(update=updates)
        self.token_writes += 1
        return True

    async def deactivate(self, user_id: str, provider: IntegrationProvider) -> bool:
        current = await self.get_active(user_id, provider)
        if current is None:
            return False
        self.records[(user_id, provider)] = current.model_copy(update={"is_active": False})
        return True


# ---------------------------------------------------------------------------
# OAuth client
# ---------------------------------------------------------------------------


class FakeOAuthClient:
    """OAuthClient double; refresh returns ``grant`` or raises ``error``."""

    def __init__(self, provider: IntegrationProvider) -> None:
        self.provider = provider
        self.configured = True
        self.refresh_calls = 0
        self.exchanged_codes: list[str] = []
        self.grant = TokenGrant(
            access_token=f"{provider}-fresh-token",
            refresh_token=None,
            expires_at=NOW + timedelta(hours=1),
            scope="calendar",
        )
        self.error: Exception | None = None
        self.account_info: dict[str, Any] = {"email": "ada@example.com"}

    def authorization_url(self, state: str) -> str:
        return f"https://auth.example.com/{self.provider}/authorize?state={state}"

    async def exchange_code(self, code: str) -> TokenGrant:
        self.exchanged_codes.append(code)
        if self.error is not None:
            raise self.error
        return self.grant.model_copy(update={"refresh_token": "refresh-from-code"})

    async def refresh(self, refresh_token: str) -> TokenGrant:
        self.refresh_calls += 1
        if self.error is not None:
            raise self.error
        return self.grant

    async def fetch_account_info(self, access_token: str) -> dict[str, Any]:
        return dict(self.account_info)


# ---------------------------------------------------------------------------
# Sync store
# ---------------------------------------------------------------------------


class InMemorySyncStore:
    """Dict-backed SyncStore honouring the (user, provider_id) unique key."""

    def __init__(self) -> None:
        self.rows: dict[EntityKind, dict[uuid.UUID, Row]] = {kind: {} for kind in EntityKind}
        self.attachments: dict[uuid.UUID, Row] = {}
        self.inserts = 0
        self.updates = 0
        # provider ids whose insert is rejected as malformed
        self.reject_provider_ids: set[str] = set()
        # provider id -> row a concurrent writer inserts just before ours
        self.racing_inserts: dict[str, Row] = {}

    def all(self, kind: EntityKind) -> list[Row]:
        return list(self.rows[kind].values())

    def seed(
        self,
        kind: EntityKind,
        user_id: str = USER_ID,
        *,
        provider_id: str | None = None,
        source: str = "user",
        **values: Any,
    ) -> Row:
        row = {
            "id": uuid.uuid4(),
            "user_id": user_id,
            "provider_id": provider_id,
            "source": source,
            **values,
        }
        self.rows[kind][row["id"]] = row
        return dict(row)

    async def find_by_provider_id(
        self, kind: EntityKind, user_id: str, provider_id: str
    ) -> Row | None:
        for row in self.rows[kind].values():
            if row["user_id"] == user_id and row["provider_id"] == provider_id:
                return dict(row)
        return None

    async def get(self, kind: EntityKind, user_id: str, entity_id: uuid.UUID) -> Row | None:
        row = self.rows[kind].get(entity_id)
        return dict(row) if row is not None and row["user_id"] == user_id else None

    async def insert(
        self,
        kind: EntityKind,
        user_id: str,
        *,
        provider_id: str | None,
        source: str,
        values: dict[str, Any],
    ) -> Row:
        unknown = set(values) - ENTITY_COLUMNS[kind]
        if unknown:
            raise ValueError(f"Unknown {kind} column(s): {sorted(unknown)}")
        if provider_id in self.reject_provider_ids:
            raise MalformedRecordError(f"{kind} row rejected by the database")
        if provider_id is not None and provider_id in self.racing_inserts:
            racer = self.racing_inserts.pop(provider_id)
            self.seed(kind, user_id, provider_id=provider_id, source=source, **racer)
        if provider_id is not None and await self.find_by_provider_id(kind, user_id, provider_id):
            raise DuplicateEntityError(f"{kind} row for provider id {provider_id!r} exists")
        self.inserts += 1
        return self.seed(kind, user_id, provider_id=provider_id, source=source, **values)

    async def update(self, kind: EntityKind, entity_id: uuid.UUID, changes: dict[str, Any]) -> Row:
        unknown = set(changes) - ENTITY_COLUMNS[kind] - {"provider_id", "source"}
        if unknown:
            raise ValueError(f"Unknown {kind} column(s): {sorted(unknown)}")
        row = self.rows[kind].get(entity_id)
        if row is None:
            raise LookupError(f"{kind} row {entity_id} disappeared during update")
        row.update(changes)
        self.updates += 1
        return dict(row)

    async def delete(self, kind: EntityKind, entity_id: uuid.UUID) -> bool:
        return self.rows[kind].pop(entity_id, None) is not None

    async def delete_by_provider_id(
        self, kind: EntityKind, user_id: str, provider_id: str
    ) -> bool:
        row = await self.find_by_provider_id(kind, user_id, provider_id)
        if row is None:
            return False
        del self.rows[kind][row["id"]]
        return True

    def _series_rows(self, user_id: str, series_id: str) -> list[Row]:
        return [
            row
            for row in self.rows[EntityKind.EVENT].values()
            if row["user_id"] == user_id
            and (row.get("series_id") == series_id or row["provider_id"] == series_id)
        ]

    async def update_series(self, user_id: str, series_id: str, changes: dict[str, Any]) -> int:
        if not changes:
            return 0
        rows = self._series_rows(user_id, series_id)
        for row in rows:
            row.update(changes)
        return len(rows)

    async def delete_series(
        self, user_id: str, series_id: str, *, starting_at: datetime | None = None
    ) -> int:
        if starting_at is None:
            doomed = self._series_rows(user_id, series_id)
        else:
            doomed = [
                row
                for row in self.rows[EntityKind.EVENT].values()
                if row["user_id"] == user_id
                and row.get("series_id") == series_id
                and row["starts_at"] >= starting_at
            ]
        for row in doomed:
            del self.rows[EntityKind.EVENT][row["id"]]
        return len(doomed)

    async def find_attachment(self, email_id: uuid.UUID, provider_attachment_id: str) -> Row | None:
        for row in self.attachments.values():
            if (
                row["email_id"] == email_id
                and row["provider_attachment_id"] == provider_attachment_id
            ):
                return dict(row)
        return None

    async def get_attachment(
        self, user_id: str, email_id: uuid.UUID, attachment_id: uuid.UUID
    ) -> Row | None:
        email = self.rows[EntityKind.MESSAGE].get(email_id)
        row = self.attachments.get(attachment_id)
        if email is None or row is None or email["user_id"] != user_id:
            return None
        if row["email_id"] != email_id:
            return None
        return {**row, "message_provider_id": email["provider_id"]}

    async def insert_attachment(
        self, email_id: uuid.UUID, values: dict[str, Any], data: bytes | None
    ) -> Row:
        if await self.find_attachment(email_id, values["provider_attachment_id"]):
            raise DuplicateEntityError("attachment already stored")
        row = {"id": uuid.uuid4(), "email_id": email_id, **values, "data": data}
        self.attachments[row["id"]] = row
        return dict(row)

    async def set_attachment_data(self, attachment_id: uuid.UUID, data: bytes) -> None:
        self.attachments[attachment_id]["data"] = data


# ---------------------------------------------------------------------------
# Provider adapters
# ---------------------------------------------------------------------------


async def _iterate(items: list[Any]) -> AsyncIterator[Any]:
    for item in items:
        yield item


class FakeCalendarProvider(CalendarProvider):
    """Calendar adapter over a dict of events keyed by provider id."""

    def __init__(self, integration: IntegrationProvider) -> None:
        self.integration = integration
        self.events: dict[str, NormalizedEvent] = {}
        self.listing: list[NormalizedEvent | RecordError] | None = None
        self.list_error: Exception | None = None
        self.calls: list[tuple[str, ...]] = []
        self.truncations: list[tuple[str, date]] = []
        self.continuations: list[tuple[str, date]] = []
        self.tokens: list[str] = []
        self._created = 0

    def add(self, event: NormalizedEvent) -> NormalizedEvent:
        self.events[event.provider_id] = event
        return event

    def list_events(
        self, token: str, start: datetime, end: datetime
    ) -> AsyncIterator[NormalizedEvent | RecordError]:
        self.tokens.append(token)
        self.calls.append(("list", start.isoformat(), end.isoformat()))
        if self.list_error is not None:
            raise self.list_error
        items = self.listing if self.listing is not None else list(self.events.values())
        return _iterate(list(items))

    async def get_event(self, token: str, event_id: str) -> NormalizedEvent | None:
        self.calls.append(("get", event_id))
        return self.events.get(event_id)

    async def create_event(self, token: str, draft: EventDraft) -> NormalizedEvent:
        self._created += 1
        self.calls.append(("create", draft.title))
        starts_at = draft.starts_at
        ends_at = draft.ends_at
        if not isinstance(starts_at, datetime):
            starts_at = datetime(starts_at.year, starts_at.month, starts_at.day, tzinfo=UTC)
        if not isinstance(ends_at, datetime):
            ends_at = datetime(ends_at.year, ends_at.month, ends_at.day, tzinfo=UTC)
        return self.add(
            NormalizedEvent(
                provider_id=f"created-{self._created}",
                title=draft.title,
                description=draft.description,
                location=draft.location,
                starts_at=starts_at,
                ends_at=ends_at,
                all_day=draft.all_day,
                timezone=draft.timezone,
                recurrence_rule=draft.recurrence_rule,
            )
        )

    async def update_event(self, token: str, event_id: str, patch: EventPatch) -> NormalizedEvent:
        self.calls.append(("update", event_id, ",".join(sorted(patch.changes()))))
        event = self.events[event_id]
        updated = event.model_copy(update=patch.changes())
        self.events[event_id] = updated
        return updated

    async def delete_event(self, token: str, event_id: str) -> None:
        self.calls.append(("delete", event_id))
        self.events.pop(event_id, None)

    async def truncate_series(
        self, token: str, master: NormalizedEvent, last_day: date
    ) -> NormalizedEvent:
        self.calls.append(("truncate", master.provider_id))
        self.truncations.append((master.provider_id, last_day))
        lines = truncate_rrule_lines([master.recurrence_rule or ""], last_day)
        updated = master.model_copy(update={"recurrence_rule": lines[0]})
        self.events[master.provider_id] = updated
        return updated

    async def create_continuation(
        self, token: str, master: NormalizedEvent, draft: EventDraft, first_day: date
    ) -> NormalizedEvent:
        self.calls.append(("continue", master.provider_id))
        self.continuations.append((master.provider_id, first_day))
        return await self.create_event(token, draft)


class FakeMessageProvider(MessageProvider):
    integration = IntegrationProvider.GMAIL

    def __init__(self) -> None:
        self.listing: list[NormalizedMessage | RecordError] = []
        self.blobs: dict[tuple[str, str], bytes] = {}
        self.downloads: list[tuple[str, str]] = []
        self.list_args: tuple[str, int] | None = None

    def list_messages(
        self, token: str, query: str, limit: int
    ) -> AsyncIterator[NormalizedMessage | RecordError]:
        self.list_args = (query, limit)
        return _iterate(list(self.listing))

    async def get_attachment(self, token: str, message_id: str, attachment_id: str) -> bytes:
        self.downloads.append((message_id, attachment_id))
        try:
            return self.blobs[(message_id, attachment_id)]
        except KeyError:
            raise FetchFailedError(f"No data in attachment response for {attachment_id}") from None


class FakeTaskProvider(TaskProvider):
    integration = IntegrationProvider.GOOGLE_TASKS

    def __init__(self) -> None:
        self.listing: list[NormalizedTask | RecordError] = []
        self.created: list[TaskDraft] = []

    def list_tasks(self, token: str) -> AsyncIterator[NormalizedTask | RecordError]:
        return _iterate(list(self.listing))

    async def create_task(self, token: str, draft: TaskDraft) -> NormalizedTask:
        self.created.append(draft)
        return NormalizedTask(
            provider_id=f"remote-task-{len(self.created)}",
            title=draft.title,
            notes=draft.notes,
            due_at=draft.due_at,
            completed=draft.completed,
        )


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def _make_integration(
    provider: IntegrationProvider,
    *,
    user_id: str = USER_ID,
    access_token: str | None = None,
    refresh_token: str | None = "refresh-token",
    expires_at: datetime | None = None,
) -> IntegrationRecord:
    return IntegrationRecord(
        user_id=user_id,
        provider=provider,
        access_token=access_token or f"{provider}-access-token",
        refresh_token=refresh_token,
        expires_at=expires_at if expires_at is not None else NOW + timedelta(hours=1),
        scope="calendar",
        account_info={"email": "ada@example.com"},
        created_at=NOW,
    )


def _make_event(provider_id: str, **overrides: Any) -> NormalizedEvent:
    values: dict[str, Any] = {
        "provider_id": provider_id,
        "title": "Standup",
        "starts_at": NOW,
        "ends_at": NOW + timedelta(minutes=30),
        "timezone": "UTC",
    }
    values.update(overrides)
    return NormalizedEvent(**values)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> Callable[[], datetime]:
    return lambda: NOW


@pytest.fixture
def integration_store() -> InMemoryIntegrationStore:
    return InMemoryIntegrationStore()


@pytest.fixture
def oauth_clients() -> dict[IntegrationProvider, FakeOAuthClient]:
    return {provider: FakeOAuthClient(provider) for provider in IntegrationProvider}


@pytest.fixture
def guard(integration_store, oauth_clients, clock) -> TokenGuard:
    return TokenGuard(integration_store, oauth_clients, clock=clock)


@pytest.fixture
def connected(integration_store) -> InMemoryIntegrationStore:
    """Integration store with a valid grant for every provider."""
    for provider in IntegrationProvider:
        integration_store.seed(_make_integration(provider))
    return integration_store


@pytest.fixture
def sync_store() -> InMemorySyncStore:
    return InMemorySyncStore()


@pytest.fixture
def engine(sync_store) -> ReconciliationEngine:
    return ReconciliationEngine(sync_store)


@pytest.fixture
def google_calendar() -> FakeCalendarProvider:
    return FakeCalendarProvider(IntegrationProvider.GOOGLE_CALENDAR)


@pytest.fixture
def microsoft_calendar() -> FakeCalendarProvider:
    return FakeCalendarProvider(IntegrationProvider.MICROSOFT)


@pytest.fixture
def calendars(google_calendar, microsoft_calendar) -> dict[IntegrationProvider, CalendarProvider]:
    return {
        IntegrationProvider.GOOGLE_CALENDAR: google_calendar,
        IntegrationProvider.MICROSOFT: microsoft_calendar,
    }


@pytest.fixture
def mail_provider() -> FakeMessageProvider:
    return FakeMessageProvider()


@pytest.fixture
def task_provider() -> FakeTaskProvider:
    return FakeTaskProvider()


@pytest.fixture
def attachment_service(sync_store, mail_provider, guard) -> AttachmentService:
    return AttachmentService(sync_store, mail_provider, guard, max_inline_bytes=1024)


@pytest.fixture
def sync_service(
    guard, sync_store, engine, calendars, mail_provider, task_provider, attachment_service, clock
) -> SyncService:
    return SyncService(
        guard=guard,
        store=sync_store,
        engine=engine,
        calendars=calendars,
        messages=mail_provider,
        tasks=task_provider,
        attachments=attachment_service,
        clock=clock,
    )


@pytest.fixture
def editor(guard, calendars, sync_store, engine) -> EventEditor:
    return EventEditor(guard=guard, calendars=calendars, store=sync_store, engine=engine)


@pytest.fixture
def make_integration() -> Callable[..., IntegrationRecord]:
    return _make_integration


@pytest.fixture
def make_event() -> Callable[..., NormalizedEvent]:
    return _make_event
