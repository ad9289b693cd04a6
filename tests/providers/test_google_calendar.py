"""Tests for the Google Calendar adapter (normalization, paging, retries, writes)."""

from __future__ import annotations

import json
from datetime import UTC, date, datetime

import httpx
import pytest

from privatezone.errors import ProviderRequestError, ReauthorizationRequiredError
from privatezone.providers.base import EventDraft, EventPatch, RecordError
from privatezone.providers.google_calendar import (
    GoogleCalendarProvider,
    google_event_to_normalized,
)

pytestmark = pytest.mark.unit

EVENTS_PATH = "/calendar/v3/calendars/primary/events"
START = datetime(2026, 3, 1, tzinfo=UTC)
END = datetime(2026, 5, 30, tzinfo=UTC)


def _timed(event_id: str, **extra) -> dict:
    return {
        "id": event_id,
        "summary": "Standup",
        "start": {"dateTime": "2026-03-02T09:00:00+01:00", "timeZone": "Europe/Berlin"},
        "end": {"dateTime": "2026-03-02T09:30:00+01:00", "timeZone": "Europe/Berlin"},
        **extra,
    }


class _Recorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.delays.append(seconds)


def _provider(handler, recorder: _Recorder | None = None) -> GoogleCalendarProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleCalendarProvider(client, sleep=(recorder or _Recorder()).sleep)


async def _collect(iterator) -> list:
    return [item async for item in iterator]


class TestNormalization:
    def test_timed_event(self):
        event = google_event_to_normalized(_timed("e1", location=" Room 4 "))

        assert event is not None
        assert event.provider_id == "e1"
        assert event.starts_at == datetime(2026, 3, 2, 8, 0, tzinfo=UTC)
        assert event.location == "Room 4"
        assert event.timezone == "Europe/Berlin"
        assert event.all_day is False
        assert event.recurring is False

    def test_all_day_event_keeps_date_boundaries(self):
        event = google_event_to_normalized(
            {"id": "a1", "start": {"date": "2026-03-05"}, "end": {"date": "2026-03-06"}}
        )

        assert event is not None
        assert event.all_day is True
        assert event.starts_at.date() == date(2026, 3, 5)
        assert event.title == "No Title"

    def test_instance_of_series(self):
        event = google_event_to_normalized(_timed("e1_20260302", recurringEventId="e1"))

        assert event is not None
        assert event.series_id == "e1"
        assert event.recurring is True
        assert event.is_series_master is False

    def test_series_master(self):
        event = google_event_to_normalized(
            _timed("e1", recurrence=["RRULE:FREQ=WEEKLY;BYDAY=MO", "EXDATE:20260309T080000Z"])
        )

        assert event is not None
        assert event.recurrence_rule == "RRULE:FREQ=WEEKLY;BYDAY=MO"
        assert event.is_series_master is True
        assert event.raw_recurrence == ["RRULE:FREQ=WEEKLY;BYDAY=MO", "EXDATE:20260309T080000Z"]

    def test_cancelled_event_is_dropped(self):
        assert google_event_to_normalized(_timed("e1", status="cancelled")) is None

    def test_missing_start_is_rejected(self):
        with pytest.raises(ValueError, match="start/end"):
            google_event_to_normalized({"id": "e1"})


class TestListEvents:
    async def test_pages_through_results_and_marks_bad_records(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if "pageToken" not in request.url.params:
                return httpx.Response(
                    200,
                    json={
                        "items": [
                            _timed("e1"),
                            {"id": "broken"},
                            _timed("gone", status="cancelled"),
                        ],
                        "nextPageToken": "p2",
                    },
                )
            return httpx.Response(200, json={"items": [_timed("e2")]})

        items = await _collect(_provider(handler).list_events("tok", START, END))

        assert [getattr(i, "provider_id", None) for i in items] == ["e1", "broken", "e2"]
        assert isinstance(items[1], RecordError)
        assert requests[0].url.path == EVENTS_PATH
        assert requests[0].url.params["singleEvents"] == "true"
        assert requests[0].url.params["timeMin"] == "2026-03-01T00:00:00Z"
        assert requests[1].url.params["pageToken"] == "p2"
        assert requests[0].headers["Authorization"] == "Bearer tok"

    async def test_unauthorized_requires_reauthorization(self):
        provider = _provider(lambda r: httpx.Response(401, json={"error": {"message": "bad"}}))
        with pytest.raises(ReauthorizationRequiredError):
            await _collect(provider.list_events("tok", START, END))

    async def test_rate_limit_is_retried_with_backoff(self):
        responses = iter(
            [
                httpx.Response(429, headers={"Retry-After": "2"}),
                httpx.Response(503),
                httpx.Response(200, json={"items": [_timed("e1")]}),
            ]
        )
        recorder = _Recorder()

        items = await _collect(
            _provider(lambda r: next(responses), recorder).list_events("tok", START, END)
        )

        assert len(items) == 1
        assert recorder.delays == [2.0, 2.0]

    async def test_persistent_server_error_fails_the_listing(self):
        recorder = _Recorder()
        provider = _provider(lambda r: httpx.Response(500, text="boom"), recorder)

        with pytest.raises(ProviderRequestError) as exc_info:
            await _collect(provider.list_events("tok", START, END))
        assert exc_info.value.status_code == 500
        assert recorder.delays == [1.0, 2.0, 4.0]


class TestWrites:
    async def test_get_missing_event_returns_none(self):
        provider = _provider(lambda r: httpx.Response(404, json={"error": {"message": "nf"}}))
        assert await provider.get_event("tok", "nope") is None

    async def test_create_all_day_event_sends_dates(self):
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            bodies.append(body)
            return httpx.Response(200, json={"id": "new", **body})

        draft = EventDraft(title="Holiday", starts_at="2026-04-01", ends_at="2026-04-02")
        event = await _provider(handler).create_event("tok", draft)

        assert bodies[0]["start"] == {"date": "2026-04-01"}
        assert event.provider_id == "new"
        assert event.all_day is True

    async def test_update_sends_only_changed_fields(self):
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=_timed("e1", summary="Renamed"))

        await _provider(handler).update_event("tok", "e1", EventPatch(title="Renamed"))

        assert bodies == [{"summary": "Renamed"}]

    async def test_delete_of_gone_event_is_success(self):
        await _provider(lambda r: httpx.Response(410)).delete_event("tok", "e1")

    async def test_delete_failure_raises(self):
        with pytest.raises(ProviderRequestError):
            await _provider(lambda r: httpx.Response(403)).delete_event("tok", "e1")

    async def test_truncate_series_patches_until(self):
        master = google_event_to_normalized(
            _timed("e1", recurrence=["RRULE:FREQ=DAILY;COUNT=30"])
        )
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            bodies.append(body)
            return httpx.Response(200, json=_timed("e1", recurrence=body["recurrence"]))

        assert master is not None
        truncated = await _provider(handler).truncate_series("tok", master, date(2026, 3, 9))

        # 23:59:59 Berlin time on the last day, in UTC.
        assert bodies[0]["recurrence"] == ["RRULE:FREQ=DAILY;UNTIL=20260309T225959Z"]
        assert truncated.recurrence_rule == "RRULE:FREQ=DAILY;UNTIL=20260309T225959Z"

    async def test_create_continuation_copies_master_recurrence(self):
        master = google_event_to_normalized(
            _timed("e1", recurrence=["RRULE:FREQ=DAILY", "EXDATE:20260304T080000Z"])
        )
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            body = json.loads(request.content)
            bodies.append(body)
            return httpx.Response(200, json=_timed("e2", **body))

        assert master is not None
        draft = EventDraft(
            title="Later",
            starts_at=datetime(2026, 3, 5, 8, 0, tzinfo=UTC),
            ends_at=datetime(2026, 3, 5, 8, 30, tzinfo=UTC),
            timezone="Europe/Berlin",
            recurrence_rule=master.recurrence_rule,
        )
        created = await _provider(handler).create_continuation(
            "tok", master, draft, date(2026, 3, 5)
        )

        assert bodies[0]["summary"] == "Later"
        assert bodies[0]["recurrence"] == ["RRULE:FREQ=DAILY", "EXDATE:20260304T080000Z"]
        assert created.provider_id == "e2"
        assert created.is_series_master

    async def test_create_continuation_without_recurrence_is_rejected(self):
        event = google_event_to_normalized(_timed("e1"))
        draft = EventDraft(title="x", starts_at=START, ends_at=START)
        assert event is not None
        with pytest.raises(ValueError, match="no recurrence"):
            await _provider(lambda r: httpx.Response(200)).create_continuation(
                "tok", event, draft, date(2026, 3, 5)
            )
