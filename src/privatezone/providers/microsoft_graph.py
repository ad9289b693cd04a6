"""Microsoft Graph calendar adapter (``/me/calendarView`` and ``/me/events``)."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, date, datetime
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
from privatezone.providers.rrule import (
    graph_recurrence_to_rrule,
    restart_graph_recurrence,
    truncate_graph_recurrence,
)

logger = logging.getLogger(__name__)

GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
DEFAULT_PAGE_SIZE = 100

_SELECT_FIELDS = ",".join(
    [
        "id",
        "subject",
        "body",
        "bodyPreview",
        "start",
        "end",
        "isAllDay",
        "location",
        "type",
        "seriesMasterId",
        "recurrence",
        "isCancelled",
    ]
)

# Ask Graph to express every dateTime in UTC.
_PREFER_UTC = {"Prefer": 'outlook.timezone="UTC"'}

_FRACTION_PATTERN = re.compile(r"(\.\d{6})\d+")


def _graph_datetime(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).replace(tzinfo=None).isoformat(timespec="seconds")


def _parse_graph_boundary(payload: Any) -> datetime:
    if not isinstance(payload, dict):
        raise ValueError("Graph event is missing a start/end object")
    raw = payload.get("dateTime")
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError("Graph event boundary is missing dateTime")
    normalized = _FRACTION_PATTERN.sub(r"\1", raw.strip())
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Graph returned an invalid dateTime: {raw}") from exc
    if parsed.tzinfo is None:
        timezone = payload.get("timeZone")
        try:
            tz = ZoneInfo(timezone) if isinstance(timezone, str) and timezone != "UTC" else UTC
        except (ZoneInfoNotFoundError, ValueError):
            tz = UTC
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def _text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def graph_event_to_normalized(payload: dict[str, Any]) -> NormalizedEvent | None:
    """Normalize a Graph event resource.  Cancelled events return None."""
    if payload.get("isCancelled") is True:
        return None

    event_id = _text(payload.get("id"))
    if event_id is None:
        raise ValueError("Graph event payload is missing a non-empty id")

    body = payload.get("body")
    description = _text(payload.get("bodyPreview"))
    if description is None and isinstance(body, dict):
        description = _text(body.get("content"))

    location_payload = payload.get("location")
    location = (
        _text(location_payload.get("displayName")) if isinstance(location_payload, dict) else None
    )

    recurrence = payload.get("recurrence") if isinstance(payload.get("recurrence"), dict) else None
    series_id = _text(payload.get("seriesMasterId"))
    start_payload = payload.get("start")

    return NormalizedEvent(
        provider_id=event_id,
        title=_text(payload.get("subject")) or "No Title",
        description=description,
        location=location,
        starts_at=_parse_graph_boundary(start_payload),
        ends_at=_parse_graph_boundary(payload.get("end")),
        all_day=payload.get("isAllDay") is True,
        timezone=_text(start_payload.get("timeZone")) if isinstance(start_payload, dict) else None,
        recurring=payload.get("type") in ("occurrence", "exception", "seriesMaster"),
        series_id=series_id,
        recurrence_rule=graph_recurrence_to_rrule(recurrence),
        raw_recurrence=recurrence,
    )


def _boundary_body(value: datetime | date, timezone: str) -> dict[str, str]:
    if not isinstance(value, datetime):
        return {"dateTime": f"{value.isoformat()}T00:00:00", "timeZone": timezone}
    if value.tzinfo is None:
        return {"dateTime": value.isoformat(timespec="seconds"), "timeZone": timezone}
    return {"dateTime": _graph_datetime(value), "timeZone": "UTC"}


def _build_graph_event_body(draft: EventDraft) -> dict[str, Any]:
    body: dict[str, Any] = {
        "subject": draft.title,
        "body": {"contentType": "text", "content": draft.description or ""},
        "start": _boundary_body(draft.starts_at, draft.timezone),
        "end": _boundary_body(draft.ends_at, draft.timezone),
        "isAllDay": draft.all_day,
    }
    if draft.location is not None:
        body["location"] = {"displayName": draft.location}
    return body


def _build_graph_patch_body(patch: EventPatch) -> dict[str, Any]:
    changes = patch.changes()
    timezone = patch.timezone or "UTC"
    body: dict[str, Any] = {}
    if "title" in changes:
        body["subject"] = changes["title"]
    if "description" in changes:
        body["body"] = {"contentType": "text", "content": changes["description"] or ""}
    if "location" in changes:
        body["location"] = {"displayName": changes["location"] or ""}
    if patch.starts_at is not None:
        body["start"] = _boundary_body(patch.starts_at, timezone)
    if patch.ends_at is not None:
        body["end"] = _boundary_body(patch.ends_at, timezone)
    if patch.all_day is not None:
        body["isAllDay"] = patch.all_day
    return body


class MicrosoftGraphCalendarProvider(CalendarProvider):
    """Outlook calendar adapter over Microsoft Graph."""

    integration = IntegrationProvider.MICROSOFT

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._api = BearerApiClient(
            http_client,
            provider=self.integration,
            base_url=GRAPH_API_BASE_URL,
            sleep=sleep,
        )

    @staticmethod
    def _event_path(event_id: str) -> str:
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")
        return f"/me/events/{quote(normalized_event_id, safe='')}"

    def _normalize(self, payload: dict[str, Any]) -> NormalizedEvent:
        event = graph_event_to_normalized(payload)
        if event is None:
            raise ProviderRequestError(
                provider=str(self.integration),
                status_code=200,
                message="Graph returned a cancelled event",
            )
        return event

    async def list_events(
        self, token: str, start: datetime, end: datetime
    ) -> AsyncIterator[NormalizedEvent | RecordError]:
        path: str = "/me/calendarView"
        params: dict[str, Any] | None = {
            "startDateTime": _graph_datetime(start),
            "endDateTime": _graph_datetime(end),
            "$select": _SELECT_FIELDS,
            "$orderby": "start/dateTime",
            "$top": DEFAULT_PAGE_SIZE,
        }
        while True:
            payload = await self._api.request_json(
                "GET", path, token=token, params=params, extra_headers=_PREFER_UTC
            )
            assert payload is not None
            items = payload.get("value", [])
            if not isinstance(items, list):
                raise FetchFailedError("Graph calendarView response missing value array")

            for item in items:
                if not isinstance(item, dict):
                    yield RecordError(None, "event payload is not an object")
                    continue
                try:
                    event = graph_event_to_normalized(item)
                except ValueError as exc:
                    yield RecordError(_text(item.get("id")), str(exc))
                    continue
                if event is not None:
                    yield event

            next_link = payload.get("@odata.nextLink")
            if not isinstance(next_link, str) or not next_link:
                return
            # The next link already carries every query parameter.
            path, params = next_link, None

    async def get_event(self, token: str, event_id: str) -> NormalizedEvent | None:
        payload = await self._api.request_json(
            "GET",
            self._event_path(event_id),
            token=token,
            params={"$select": _SELECT_FIELDS},
            extra_headers=_PREFER_UTC,
            allow_not_found=True,
        )
        if payload is None:
            return None
        return graph_event_to_normalized(payload)

    async def create_event(self, token: str, draft: EventDraft) -> NormalizedEvent:
        payload = await self._api.request_json(
            "POST",
            "/me/events",
            token=token,
            json_body=_build_graph_event_body(draft),
            extra_headers=_PREFER_UTC,
        )
        assert payload is not None
        return self._normalize(payload)

    async def update_event(self, token: str, event_id: str, patch: EventPatch) -> NormalizedEvent:
        payload = await self._api.request_json(
            "PATCH",
            self._event_path(event_id),
            token=token,
            json_body=_build_graph_patch_body(patch),
            extra_headers=_PREFER_UTC,
        )
        assert payload is not None
        return self._normalize(payload)

    async def delete_event(self, token: str, event_id: str) -> None:
        response = await self._api.request("DELETE", self._event_path(event_id), token=token)
        if response.status_code == 404:
            logger.debug("delete_event: event %r already deleted; treating as success", event_id)
            return
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(
                provider=str(self.integration),
                status_code=response.status_code,
                message=f"Graph delete failed for event {event_id!r}",
            )

    async def truncate_series(
        self, token: str, master: NormalizedEvent, last_day: date
    ) -> NormalizedEvent:
        if not isinstance(master.raw_recurrence, dict):
            raise ValueError(f"Graph event {master.provider_id!r} has no recurrence to truncate")
        truncated = truncate_graph_recurrence(master.raw_recurrence, last_day)
        payload = await self._api.request_json(
            "PATCH",
            self._event_path(master.provider_id),
            token=token,
            json_body={"recurrence": truncated},
            extra_headers=_PREFER_UTC,
        )
        assert payload is not None
        logger.info(
            "Truncated Graph series %s to end on %s", master.provider_id, last_day.isoformat()
        )
        return self._normalize(payload)

    async def create_continuation(
        self, token: str, master: NormalizedEvent, draft: EventDraft, first_day: date
    ) -> NormalizedEvent:
        if not isinstance(master.raw_recurrence, dict):
            raise ValueError(f"Graph event {master.provider_id!r} has no recurrence to continue")
        body = _build_graph_event_body(draft)
        body["recurrence"] = restart_graph_recurrence(master.raw_recurrence, first_day)
        payload = await self._api.request_json(
            "POST",
            "/me/events",
            token=token,
            json_body=body,
            extra_headers=_PREFER_UTC,
        )
        assert payload is not None
        logger.info("Continued Graph series %s from %s", master.provider_id, first_day.isoformat())
        return self._normalize(payload)
