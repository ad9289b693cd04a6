"""Scoped edit and delete of calendar events that may belong to a recurring series.

An edit or delete addresses one event id plus an :class:`EditScope`:

- ``instance`` (default): the provider call targets the given id and nothing
  is looked up.
- ``all``: the event is loaded, and the call targets its series master, so
  every occurrence (past and future) is affected.
- ``future``: the series master is loaded and its recurrence is cut so the
  series ends the day before the addressed occurrence.  Earlier occurrences
  are untouched.  A ``future`` update splits the series: a new series built
  from the master plus the patch is created starting at the addressed
  occurrence, then the old one is cut.  A ``future`` delete only cuts.

Policy: ``future`` addressed at the series master itself has no occurrence
date to cut at, so it falls back to ``all`` (logged as a warning).  A
``future``/``all`` request on a non-recurring event acts on that event alone.

Local rows are mirrored after each provider call so the portal reflects the
change before the next sync pass.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from privatezone.errors import EntityNotFoundError
from privatezone.integrations import IntegrationProvider
from privatezone.providers.base import CalendarProvider, EventDraft, EventPatch, NormalizedEvent
from privatezone.sync.engine import ReconciliationEngine
from privatezone.sync.store import EntityKind, SyncStore
from privatezone.tokens import TokenGuard

logger = logging.getLogger(__name__)


class EditScope(enum.StrEnum):
    """Which occurrences of a recurring series an edit or delete affects."""

    INSTANCE = "instance"
    FUTURE = "future"
    ALL = "all"


@dataclass(frozen=True)
class EditTarget:
    """Resolved provider target for one scoped action."""

    scope: EditScope
    event_id: str
    instance: NormalizedEvent | None = None
    master: NormalizedEvent | None = None


@dataclass(frozen=True)
class EditResult:
    """Outcome of a scoped edit or delete."""

    scope: EditScope
    target_id: str
    event: NormalizedEvent | None
    local_rows: int


def _local_day(value: datetime | date, *, all_day: bool, timezone: str | None) -> date:
    if not isinstance(value, datetime):
        return value
    if not all_day and timezone and value.tzinfo is not None:
        try:
            value = value.astimezone(ZoneInfo(timezone))
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug("Unknown event timezone %r; using the stored offset", timezone)
    return value.date()


def series_last_day(instance: NormalizedEvent) -> date:
    """Return the last day a series may still occur on when cut before *instance*."""
    start = _local_day(instance.starts_at, all_day=instance.all_day, timezone=instance.timezone)
    return start - timedelta(days=1)


def continuation_draft(
    master: NormalizedEvent, instance: NormalizedEvent, patch: EventPatch
) -> EventDraft:
    """Build the new series that replaces *master* from *instance* on.

    Content comes from the master, boundaries from the instance, and any
    field set on *patch* wins.  Moving only the start keeps the duration.
    """
    changes = patch.changes()
    starts_at = changes.get("starts_at", instance.starts_at)
    ends_at = changes.get("ends_at")
    if ends_at is None:
        ends_at = starts_at + (instance.ends_at - instance.starts_at)
    return EventDraft(
        title=changes.get("title") or master.title,
        description=changes.get("description", master.description),
        location=changes.get("location", master.location),
        starts_at=starts_at,
        ends_at=ends_at,
        all_day=changes.get("all_day", instance.all_day),
        timezone=changes.get("timezone") or instance.timezone or master.timezone or "UTC",
        recurrence_rule=master.recurrence_rule,
    )


class EventEditor:
    """Applies scoped edits and deletes at the provider and mirrors them locally."""

    def __init__(
        self,
        *,
        guard: TokenGuard,
        calendars: Mapping[IntegrationProvider, CalendarProvider],
        store: SyncStore,
        engine: ReconciliationEngine,
    ) -> None:
        self._guard = guard
        self._calendars = calendars
        self._store = store
        self._engine = engine

    def _calendar(self, provider: IntegrationProvider) -> CalendarProvider:
        try:
            return self._calendars[provider]
        except KeyError:
            raise ValueError(f"{provider} is not a calendar provider") from None

    async def resolve(
        self,
        token: str,
        calendar: CalendarProvider,
        event_id: str,
        scope: EditScope,
    ) -> EditTarget:
        """Resolve *event_id* and *scope* to the event the provider call must target.

        Raises
        ------
        EntityNotFoundError
            If the event (or, for ``future``, its series master) does not exist.
        """
        if scope is EditScope.INSTANCE:
            return EditTarget(EditScope.INSTANCE, event_id)

        event = await calendar.get_event(token, event_id)
        if event is None:
            raise EntityNotFoundError(f"Event {event_id} not found")

        if not event.recurring:
            logger.debug("Event %s is not recurring; scope %s acts on it alone", event_id, scope)
            return EditTarget(EditScope.INSTANCE, event.provider_id, instance=event)

        if scope is EditScope.FUTURE and event.series_id is None:
            logger.warning(
                "Scope 'future' addresses series master %s; applying to the whole series",
                event.provider_id,
            )
            scope = EditScope.ALL

        if scope is EditScope.ALL:
            master_id = event.series_id or event.provider_id
            return EditTarget(EditScope.ALL, master_id, instance=event)

        assert event.series_id is not None
        master = await calendar.get_event(token, event.series_id)
        if master is None:
            raise EntityNotFoundError(f"Series master {event.series_id} not found")
        return EditTarget(EditScope.FUTURE, master.provider_id, instance=event, master=master)

    async def _truncate(
        self, token: str, calendar: CalendarProvider, user_id: str, target: EditTarget
    ) -> tuple[NormalizedEvent, int]:
        assert target.master is not None and target.instance is not None
        truncated = await calendar.truncate_series(
            token, target.master, series_last_day(target.instance)
        )
        removed = await self._store.delete_series(
            user_id, target.master.provider_id, starting_at=target.instance.starts_at
        )
        return truncated, removed

    async def update_event(
        self,
        user_id: str,
        provider: IntegrationProvider,
        event_id: str,
        patch: EventPatch,
        scope: EditScope = EditScope.INSTANCE,
    ) -> EditResult:
        """Apply *patch* to the occurrences selected by *scope*."""
        calendar = self._calendar(provider)
        record = await self._guard.get_fresh(user_id, provider)
        token = record.access_token
        target = await self.resolve(token, calendar, event_id, scope)

        if target.scope is EditScope.INSTANCE:
            updated = await calendar.update_event(token, target.event_id, patch)
            await self._engine.upsert(EntityKind.EVENT, user_id, calendar.source, updated)
            return EditResult(target.scope, target.event_id, updated, 1)

        if target.scope is EditScope.ALL:
            content = patch.without_times()
            updated = await calendar.update_event(token, target.event_id, patch)
            local_rows = await self._store.update_series(
                user_id, target.event_id, content.changes()
            )
            logger.info("Updated series %s (%d local rows)", target.event_id, local_rows)
            return EditResult(target.scope, target.event_id, updated, local_rows)

        assert target.master is not None and target.instance is not None
        draft = continuation_draft(target.master, target.instance, patch)
        first_day = _local_day(draft.starts_at, all_day=draft.all_day, timezone=draft.timezone)
        created = await calendar.create_continuation(token, target.master, draft, first_day)
        _, removed = await self._truncate(token, calendar, user_id, target)
        await self._engine.upsert(EntityKind.EVENT, user_id, calendar.source, created)
        logger.info(
            "Split series %s at %s into %s (%d local rows replaced)",
            target.event_id,
            first_day.isoformat(),
            created.provider_id,
            removed,
        )
        return EditResult(target.scope, created.provider_id, created, removed + 1)

    async def delete_event(
        self,
        user_id: str,
        provider: IntegrationProvider,
        event_id: str,
        scope: EditScope = EditScope.INSTANCE,
    ) -> EditResult:
        """Delete the occurrences selected by *scope*."""
        calendar = self._calendar(provider)
        record = await self._guard.get_fresh(user_id, provider)
        token = record.access_token
        target = await self.resolve(token, calendar, event_id, scope)

        if target.scope is EditScope.FUTURE:
            truncated, removed = await self._truncate(token, calendar, user_id, target)
            logger.info(
                "Deleted occurrences of %s from %s on (%d local rows)",
                target.event_id,
                target.instance.starts_at.isoformat() if target.instance else "?",
                removed,
            )
            return EditResult(target.scope, target.event_id, truncated, removed)

        await calendar.delete_event(token, target.event_id)
        if target.scope is EditScope.ALL:
            removed = await self._store.delete_series(user_id, target.event_id)
        else:
            removed = int(
                await self._store.delete_by_provider_id(EntityKind.EVENT, user_id, target.event_id)
            )
        logger.info("Deleted %s event %s (%d local rows)", target.scope, target.event_id, removed)
        return EditResult(target.scope, target.event_id, None, removed)
