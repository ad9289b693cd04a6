"""Google Calendar v3 adapter."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, date, datetime, tzinfo
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from privatezone.errors import FetchFailedError, ProviderRequestError
from privatezone.integrations import IntegrationProvider
from privatezone.providers.base import (
    BearerApiClient,
    CalendarProvider,
    EventDraft,
    EventPatch,
    NormalizedEvent,
    RecordError,
)
from privatezone.providers.rrule import truncate_rrule_lines

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_PAGE_SIZE = 250


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _coerce_zoneinfo(timezone: str | None) -> ZoneInfo | tzinfo:
    if not timezone:
        return UTC
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_google_event_boundary(
    payload: dict[str, Any],
    *,
    fallback_timezone: str,
) -> tuple[datetime, str, bool]:
    """Return ``(moment, timezone, is_date_only)`` for a start/end payload."""
    date_time = payload.get("dateTime")
    timezone_raw = payload.get("timeZone")
    timezone = (
        timezone_raw.strip()
        if isinstance(timezone_raw, str) and timezone_raw.strip()
        else fallback_timezone
    )

    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time), timezone, False

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed_date = date.fromisoformat(date_value)
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc

        parsed_datetime = datetime(
            parsed_date.year,
            parsed_date.month,
            parsed_date.day,
            tzinfo=_coerce_zoneinfo(timezone),
        )
        return parsed_datetime, timezone, True

    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def _recurrence_lines(payload: Any) -> list[str]:
    if not isinstance(payload, list):
        return []
    return [entry.strip() for entry in payload if isinstance(entry, str) and entry.strip()]


def google_event_to_normalized(
    payload: dict[str, Any],
    *,
    fallback_timezone: str = "UTC",
) -> NormalizedEvent | None:
    """Normalize a Google event resource.  Cancelled events return None."""
    status_raw = payload.get("status")
    if isinstance(status_raw, str) and status_raw.lower() == "cancelled":
        return None

    event_id_raw = payload.get("id")
    if not isinstance(event_id_raw, str) or not event_id_raw.strip():
        raise ValueError("Google Calendar event payload is missing a non-empty id")
    event_id = event_id_raw.strip()

    start_payload = payload.get("start")
    end_payload = payload.get("end")
    if not isinstance(start_payload, dict) or not isinstance(end_payload, dict):
        raise ValueError(f"Google Calendar event '{event_id}' is missing start/end payloads")

    starts_at, start_timezone, all_day = _parse_google_event_boundary(
        start_payload, fallback_timezone=fallback_timezone
    )
    ends_at, end_timezone, _ = _parse_google_event_boundary(
        end_payload, fallback_timezone=fallback_timezone
    )

    recurrence = _recurrence_lines(payload.get("recurrence"))
    recurrence_rule = next(
        (line for line in recurrence if line.upper().startswith("RRULE:")), None
    )

    return NormalizedEvent(
        provider_id=event_id,
        title=_normalize_optional_text(payload.get("summary")) or "No Title",
        description=_normalize_optional_text(payload.get("description")),
        location=_normalize_optional_text(payload.get("location")),
        starts_at=starts_at,
        ends_at=ends_at,
        all_day=all_day,
        timezone=start_timezone or end_timezone or fallback_timezone,
        series_id=_normalize_optional_text(payload.get("recurringEventId")),
        recurrence_rule=recurrence_rule,
        raw_recurrence=recurrence or None,
    )


def _boundary_body(value: datetime | date, *, all_day: bool, timezone: str) -> dict[str, Any]:
    if all_day:
        day = value.date() if isinstance(value, datetime) else value
        return {"date": day.isoformat()}
    if not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day, tzinfo=_coerce_zoneinfo(timezone))
    return {"dateTime": _google_rfc3339(value), "timeZone": timezone}


def _build_google_event_body(draft: EventDraft) -> dict[str, Any]:
    body: dict[str, Any] = {
        "summary": draft.title,
        "start": _boundary_body(draft.starts_at, all_day=draft.all_day, timezone=draft.timezone),
        "end": _boundary_body(draft.ends_at, all_day=draft.all_day, timezone=draft.timezone),
    }
    if draft.description is not None:
        body["description"] = draft.description
    if draft.location is not None:
        body["location"] = draft.location
    if draft.recurrence_rule:
        body["recurrence"] = [draft.recurrence_rule]
    return body


def _build_google_event_patch_body(patch: EventPatch) -> dict[str, Any]:
    changes = patch.changes()
    body: dict[str, Any] = {}
    if "title" in changes:
        body["summary"] = changes["title"]
    if "description" in changes:
        body["description"] = changes["description"]
    if "location" in changes:
        body["location"] = changes["location"]

    timezone = patch.timezone or "UTC"
    all_day = bool(patch.all_day) or (
        patch.starts_at is not None and not isinstance(patch.starts_at, datetime)
    )
    if patch.starts_at is not None:
        body["start"] = _boundary_body(patch.starts_at, all_day=all_day, timezone=timezone)
    if patch.ends_at is not None:
        body["end"] = _boundary_body(patch.ends_at, all_day=all_day, timezone=timezone)
    return body


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar adapter bound to one calendar (``primary`` by default)."""

    integration = IntegrationProvider.GOOGLE_CALENDAR

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        calendar_id: str = "primary",
        fallback_timezone: str = "UTC",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._api = BearerApiClient(
            http_client,
            provider=self.integration,
            base_url=GOOGLE_CALENDAR_API_BASE_URL,
            sleep=sleep,
        )
        self._calendar_path = f"/calendars/{quote(calendar_id, safe='')}/events"
        self._fallback_timezone = fallback_timezone

    def _event_path(self, event_id: str) -> str:
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")
        return f"{self._calendar_path}/{quote(normalized_event_id, safe='')}"

    def _normalize(self, payload: dict[str, Any]) -> NormalizedEvent:
        event = google_event_to_normalized(payload, fallback_timezone=self._fallback_timezone)
        if event is None:
            raise ProviderRequestError(
                provider=str(self.integration),
                status_code=200,
                message="Google Calendar returned a cancelled event",
            )
        return event

    async def list_events(
        self, token: str, start: datetime, end: datetime
    ) -> AsyncIterator[NormalizedEvent | RecordError]:
        params: dict[str, Any] = {
            "timeMin": _google_rfc3339(start),
            "timeMax": _google_rfc3339(end),
            "singleEvents": True,
            "showDeleted": False,
            "orderBy": "startTime",
            "maxResults": DEFAULT_PAGE_SIZE,
        }
        while True:
            payload = await self._api.request_json(
                "GET", self._calendar_path, token=token, params=params
            )
            assert payload is not None
            items = payload.get("items", [])
            if not isinstance(items, list):
                raise FetchFailedError("Google Calendar list_events response missing items array")

            for item in items:
                if not isinstance(item, dict):
                    yield RecordError(None, "event payload is not an object")
                    continue
                try:
                    event = google_event_to_normalized(
                        item, fallback_timezone=self._fallback_timezone
                    )
                except ValueError as exc:
                    yield RecordError(_normalize_optional_text(item.get("id")), str(exc))
                    continue
                if event is not None:
                    yield event

            next_page = payload.get("nextPageToken")
            if not isinstance(next_page, str) or not next_page:
                return
            params = {**params, "pageToken": next_page}

    async def get_event(self, token: str, event_id: str) -> NormalizedEvent | None:
        payload = await self._api.request_json(
            "GET", self._event_path(event_id), token=token, allow_not_found=True
        )
        if payload is None:
            return None
        return google_event_to_normalized(payload, fallback_timezone=self._fallback_timezone)

    async def create_event(self, token: str, draft: EventDraft) -> NormalizedEvent:
        payload = await self._api.request_json(
            "POST", self._calendar_path, token=token, json_body=_build_google_event_body(draft)
        )
        assert payload is not None
        return self._normalize(payload)

    async def update_event(self, token: str, event_id: str, patch: EventPatch) -> NormalizedEvent:
        payload = await self._api.request_json(
            "PATCH",
            self._event_path(event_id),
            token=token,
            json_body=_build_google_event_patch_body(patch),
        )
        assert payload is not None
        return self._normalize(payload)

    async def delete_event(self, token: str, event_id: str) -> None:
        response = await self._api.request("DELETE", self._event_path(event_id), token=token)
        # 404/410 mean the event is already gone.
        if response.status_code in (404, 410):
            logger.debug("delete_event: event %r already deleted; treating as success", event_id)
            return
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(
                provider=str(self.integration),
                status_code=response.status_code,
                message=f"Google Calendar delete failed for event {event_id!r}",
            )

    async def truncate_series(
        self, token: str, master: NormalizedEvent, last_day: date
    ) -> NormalizedEvent:
        lines = master.raw_recurrence if isinstance(master.raw_recurrence, list) else []
        if not lines and master.recurrence_rule:
            lines = [master.recurrence_rule]
        truncated = truncate_rrule_lines(
            lines,
            last_day,
            all_day=master.all_day,
            tz=_coerce_zoneinfo(master.timezone),
        )
        payload = await self._api.request_json(
            "PATCH",
            self._event_path(master.provider_id),
            token=token,
            json_body={"recurrence": truncated},
        )
        assert payload is not None
        logger.info(
            "Truncated Google series %s to end on %s", master.provider_id, last_day.isoformat()
        )
        return self._normalize(payload)

    async def create_continuation(
        self, token: str, master: NormalizedEvent, draft: EventDraft, first_day: date
    ) -> NormalizedEvent:
        lines = master.raw_recurrence if isinstance(master.raw_recurrence, list) else []
        if not lines and master.recurrence_rule:
            lines = [master.recurrence_rule]
        if not lines:
            raise ValueError(f"Google event {master.provider_id!r} has no recurrence to continue")
        body = _build_google_event_body(draft)
        # Google anchors the rule on the new start; EXDATE lines before it are inert.
        body["recurrence"] = list(lines)
        payload = await self._api.request_json(
            "POST", self._calendar_path, token=token, json_body=body
        )
        assert payload is not None
        logger.info(
            "Continued Google series %s from %s", master.provider_id, first_day.isoformat()
        )
        return self._normalize(payload)
