"""Shared pieces for remote fetch adapters.

Adapters turn provider payloads into normalized records and yield them from
async iterators.  An iterator is consumed once; it is not restartable.  A
payload that cannot be normalized is yielded as a :class:`RecordError` so the
reconciliation engine can count it as skipped without aborting the batch.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from privatezone.errors import (
    FetchFailedError,
    ProviderRequestError,
    ReauthorizationRequiredError,
    redact_secrets,
)
from privatezone.integrations import IntegrationProvider

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
RATE_LIMIT_MAX_BACKOFF_SECONDS = 60.0


# ---------------------------------------------------------------------------
# Normalized records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RecordError:
    """A remote record that could not be normalized."""

    provider_id: str | None
    reason: str


class NormalizedEvent(BaseModel):
    """Calendar event in provider-independent form."""

    model_config = ConfigDict(extra="forbid")

    provider_id: str = Field(min_length=1)
    title: str
    description: str | None = None
    location: str | None = None
    starts_at: datetime
    ends_at: datetime
    all_day: bool = False
    timezone: str | None = None
    recurring: bool = False
    series_id: str | None = None
    recurrence_rule: str | None = None
    # Provider-native recurrence payload, needed to truncate a series master.
    raw_recurrence: Any = Field(default=None, exclude=True)

    @model_validator(mode="after")
    def _mark_recurring(self) -> NormalizedEvent:
        if self.recurrence_rule or self.series_id:
            self.recurring = True
        return self

    @property
    def is_series_master(self) -> bool:
        return self.recurring and self.series_id is None

    def stored_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude={"provider_id", "timezone"})


# Attachment ids for parts whose bytes arrive in the message body itself; the
# provider cannot serve them separately.
INLINE_PART_ID_PREFIX = "part:"


class AttachmentMeta(BaseModel):
    """Attachment metadata gathered from a MIME tree walk."""

    model_config = ConfigDict(extra="forbid")

    provider_attachment_id: str
    filename: str = "unnamed_attachment"
    mime_type: str = "application/octet-stream"
    size_bytes: int = 0
    content_id: str | None = None
    is_inline: bool = False
    # Inline body data for small parts that carry their bytes directly.
    inline_data: bytes | None = Field(default=None, exclude=True)


class NormalizedMessage(BaseModel):
    """Mail message in provider-independent form."""

    model_config = ConfigDict(extra="forbid")

    provider_id: str = Field(min_length=1)
    thread_id: str | None = None
    sender: str = ""
    to: list[str] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    subject: str = ""
    body: str = ""
    html_body: str | None = None
    snippet: str = ""
    labels: list[str] = Field(default_factory=list)
    is_read: bool = True
    is_important: bool = False
    received_at: datetime | None = None
    attachments: list[AttachmentMeta] = Field(default_factory=list)

    def stored_fields(self) -> dict[str, Any]:
        data = self.model_dump(exclude={"provider_id", "attachments"})
        # "to" is reserved in SQL; recipient lists are stored as *_addresses.
        for field_name in ("to", "cc", "bcc"):
            data[f"{field_name}_addresses"] = data.pop(field_name)
        return data


class NormalizedTask(BaseModel):
    """Task in provider-independent form."""

    model_config = ConfigDict(extra="forbid")

    provider_id: str = Field(min_length=1)
    title: str
    notes: str | None = None
    due_at: datetime | None = None
    completed: bool = False
    completed_at: datetime | None = None

    def stored_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude={"provider_id"})


# ---------------------------------------------------------------------------
# Write inputs
# ---------------------------------------------------------------------------


def _date_only(value: Any) -> Any:
    """Keep ``YYYY-MM-DD`` strings as dates so all-day boundaries stay date-only."""
    if isinstance(value, str) and len(value.strip()) == 10:
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            return value
    return value


class EventDraft(BaseModel):
    """Fields for creating a calendar event."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1)
    description: str | None = None
    location: str | None = None
    starts_at: datetime | date
    ends_at: datetime | date
    all_day: bool = False
    timezone: str = "UTC"
    recurrence_rule: str | None = None

    @field_validator("starts_at", "ends_at", mode="before")
    @classmethod
    def _parse_boundary(cls, value: Any) -> Any:
        return _date_only(value)

    @model_validator(mode="after")
    def _check_boundaries(self) -> EventDraft:
        if isinstance(self.starts_at, datetime) != isinstance(self.ends_at, datetime):
            raise ValueError("starts_at and ends_at must both be dates or both be datetimes")
        if self.ends_at < self.starts_at:  # type: ignore[operator]
            raise ValueError("ends_at must not be before starts_at")
        if not isinstance(self.starts_at, datetime):
            self.all_day = True
        if self.recurrence_rule and not self.recurrence_rule.upper().startswith("RRULE:"):
            self.recurrence_rule = f"RRULE:{self.recurrence_rule}"
        return self


class EventPatch(BaseModel):
    """Partial update of a calendar event.  Unset fields are left untouched."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    description: str | None = None
    location: str | None = None
    starts_at: datetime | date | None = None
    ends_at: datetime | date | None = None
    all_day: bool | None = None
    timezone: str | None = None

    @field_validator("starts_at", "ends_at", mode="before")
    @classmethod
    def _parse_boundary(cls, value: Any) -> Any:
        return _date_only(value)

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)

    def without_times(self) -> EventPatch:
        """Return the patch restricted to content fields."""
        content = {
            k: v
            for k, v in self.changes().items()
            if k not in {"starts_at", "ends_at", "all_day", "timezone"}
        }
        return EventPatch(**content)


class TaskDraft(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1)
    notes: str | None = None
    due_at: datetime | None = None
    completed: bool = False


# ---------------------------------------------------------------------------
# HTTP helper
# ---------------------------------------------------------------------------


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, secret-free error message from a provider response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return redact_secrets(" ".join(message.split())[:200])
        if isinstance(error_payload, str) and error_payload.strip():
            return redact_secrets(" ".join(error_payload.split())[:200])

    raw_text = response.text.strip()
    if raw_text:
        return redact_secrets(" ".join(raw_text.split())[:200])
    return "Request failed without an error payload"


def _retry_after_seconds(response: httpx.Response, default: float) -> float:
    header = response.headers.get("Retry-After")
    if header is None:
        return default
    try:
        return min(max(float(header), 0.0), RATE_LIMIT_MAX_BACKOFF_SECONDS)
    except ValueError:
        return default


class BearerApiClient:
    """Authenticated JSON requests against one provider API.

    A 401 raises :class:`ReauthorizationRequiredError`: the token was checked
    for freshness before the call, so the grant itself has been revoked.
    Transient answers (429 and 5xx gateway errors) are retried with
    exponential backoff, honouring ``Retry-After``.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        provider: IntegrationProvider,
        base_url: str,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._http_client = http_client
        self._provider = provider
        self._base_url = base_url.rstrip("/")
        self._sleep = sleep

    @property
    def provider(self) -> IntegrationProvider:
        return self._provider

    def _url(self, path: str) -> str:
        if path.startswith("https://") or path.startswith("http://"):
            return path
        normalized_path = path if path.startswith("/") else f"/{path}"
        return f"{self._base_url}{normalized_path}"

    async def request(
        self,
        method: str,
        path: str,
        *,
        token: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        url = self._url(path)
        response = await self._request_once(method, url, token, params, json_body, extra_headers)

        retry = 0
        while response.status_code in TRANSIENT_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES:
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code in (429, 503):
                backoff = _retry_after_seconds(response, backoff)
            logger.warning(
                "%s API transient failure (status=%d), retrying in %.1fs (attempt %d/%d)",
                self._provider,
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await self._sleep(backoff)
            response = await self._request_once(
                method, url, token, params, json_body, extra_headers
            )
            retry += 1

        if response.status_code == 401:
            raise ReauthorizationRequiredError(
                self._provider, f"access token rejected ({safe_error_message(response)})"
            )
        return response

    async def _request_once(
        self,
        method: str,
        url: str,
        token: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        extra_headers: dict[str, str] | None,
    ) -> httpx.Response:
        headers: dict[str, str] = {"Authorization": f"Bearer {token}"}
        if extra_headers:
            headers.update(extra_headers)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise FetchFailedError(
                f"{self._provider} request failed: {redact_secrets(str(exc))}"
            ) from exc

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        token: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
        allow_not_found: bool = False,
    ) -> dict[str, Any] | None:
        """Send a request and decode a JSON object body.

        Returns ``{}`` for 204 responses and ``None`` for 404 when
        *allow_not_found* is set.
        """
        response = await self.request(
            method,
            path,
            token=token,
            params=params,
            json_body=json_body,
            extra_headers=extra_headers,
        )
        if response.status_code == 404 and allow_not_found:
            return None
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(
                provider=str(self._provider),
                status_code=response.status_code,
                message=safe_error_message(response),
            )
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise FetchFailedError(
                f"{self._provider} API returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise FetchFailedError(f"{self._provider} API returned an unexpected JSON payload")
        return payload


# ---------------------------------------------------------------------------
# Provider interfaces
# ---------------------------------------------------------------------------


class CalendarProvider(abc.ABC):
    """Abstract calendar adapter: window listing plus event CRUD."""

    integration: IntegrationProvider

    @property
    def source(self) -> str:
        """Tag written to ``source`` on rows this provider creates."""
        return str(self.integration)

    @abc.abstractmethod
    def list_events(
        self, token: str, start: datetime, end: datetime
    ) -> AsyncIterator[NormalizedEvent | RecordError]:
        """Yield normalized events overlapping ``[start, end)``."""

    @abc.abstractmethod
    async def get_event(self, token: str, event_id: str) -> NormalizedEvent | None:
        """Return one event (instance or master), or None when it does not exist."""

    @abc.abstractmethod
    async def create_event(self, token: str, draft: EventDraft) -> NormalizedEvent: ...

    @abc.abstractmethod
    async def update_event(self, token: str, event_id: str, patch: EventPatch) -> NormalizedEvent:
        ...

    @abc.abstractmethod
    async def delete_event(self, token: str, event_id: str) -> None:
        """Delete an event.  A missing event counts as already deleted."""

    @abc.abstractmethod
    async def truncate_series(
        self, token: str, master: NormalizedEvent, last_day: date
    ) -> NormalizedEvent:
        """End the recurring series of *master* on *last_day* (inclusive)."""

    @abc.abstractmethod
    async def create_continuation(
        self, token: str, master: NormalizedEvent, draft: EventDraft, first_day: date
    ) -> NormalizedEvent:
        """Create a new series from *draft* that repeats like *master* from *first_day* on."""


class MessageProvider(abc.ABC):
    """Abstract mail adapter."""

    integration: IntegrationProvider

    @property
    def source(self) -> str:
        return str(self.integration)

    @abc.abstractmethod
    def list_messages(
        self, token: str, query: str, limit: int
    ) -> AsyncIterator[NormalizedMessage | RecordError]: ...

    @abc.abstractmethod
    async def get_attachment(self, token: str, message_id: str, attachment_id: str) -> bytes: ...


class TaskProvider(abc.ABC):
    """Abstract task-list adapter."""

    integration: IntegrationProvider

    @property
    def source(self) -> str:
        return str(self.integration)

    @abc.abstractmethod
    def list_tasks(self, token: str) -> AsyncIterator[NormalizedTask | RecordError]: ...

    @abc.abstractmethod
    async def create_task(self, token: str, draft: TaskDraft) -> NormalizedTask: ...
