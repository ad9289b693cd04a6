"""Google Tasks adapter for the user's default task list."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx

from privatezone.errors import FetchFailedError
from privatezone.integrations import IntegrationProvider
from privatezone.providers.base import (
    BearerApiClient,
    NormalizedTask,
    RecordError,
    TaskDraft,
    TaskProvider,
)

logger = logging.getLogger(__name__)

GOOGLE_TASKS_API_BASE_URL = "https://tasks.googleapis.com/tasks/v1"
DEFAULT_TASK_LIST = "@default"
DEFAULT_PAGE_SIZE = 100


def _parse_rfc3339_optional(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Tasks returned an invalid timestamp: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def google_task_to_normalized(payload: dict[str, Any]) -> NormalizedTask | None:
    """Normalize a Google task resource.  Deleted tasks return None."""
    if payload.get("deleted") is True:
        return None
    task_id = payload.get("id")
    if not isinstance(task_id, str) or not task_id.strip():
        raise ValueError("Google task payload is missing a non-empty id")

    title = payload.get("title")
    notes = payload.get("notes")
    return NormalizedTask(
        provider_id=task_id.strip(),
        title=title.strip() if isinstance(title, str) and title.strip() else "Untitled task",
        notes=notes if isinstance(notes, str) and notes else None,
        due_at=_parse_rfc3339_optional(payload.get("due")),
        completed=payload.get("status") == "completed",
        completed_at=_parse_rfc3339_optional(payload.get("completed")),
    )


class GoogleTasksProvider(TaskProvider):
    """Google Tasks REST adapter."""

    integration = IntegrationProvider.GOOGLE_TASKS

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        task_list: str = DEFAULT_TASK_LIST,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._api = BearerApiClient(
            http_client,
            provider=self.integration,
            base_url=GOOGLE_TASKS_API_BASE_URL,
            sleep=sleep,
        )
        self._tasks_path = f"/lists/{quote(task_list, safe='@')}/tasks"

    async def list_tasks(self, token: str) -> AsyncIterator[NormalizedTask | RecordError]:
        params: dict[str, Any] = {
            "showCompleted": True,
            "showHidden": True,
            "maxResults": DEFAULT_PAGE_SIZE,
        }
        while True:
            payload = await self._api.request_json(
                "GET", self._tasks_path, token=token, params=params
            )
            assert payload is not None
            items = payload.get("items", [])
            if not isinstance(items, list):
                raise FetchFailedError("Google Tasks response missing items array")

            for item in items:
                if not isinstance(item, dict):
                    yield RecordError(None, "task payload is not an object")
                    continue
                try:
                    task = google_task_to_normalized(item)
                except ValueError as exc:
                    yield RecordError(item.get("id"), str(exc))
                    continue
                if task is not None:
                    yield task

            next_page = payload.get("nextPageToken")
            if not isinstance(next_page, str) or not next_page:
                return
            params = {**params, "pageToken": next_page}

    async def create_task(self, token: str, draft: TaskDraft) -> NormalizedTask:
        body: dict[str, Any] = {
            "title": draft.title,
            "status": "completed" if draft.completed else "needsAction",
        }
        if draft.notes:
            body["notes"] = draft.notes
        if draft.due_at is not None:
            body["due"] = _rfc3339(draft.due_at)

        payload = await self._api.request_json(
            "POST", self._tasks_path, token=token, json_body=body
        )
        assert payload is not None
        task = google_task_to_normalized(payload)
        if task is None:
            raise FetchFailedError("Google Tasks returned a deleted task after create")
        logger.info("Created Google task %s", task.provider_id)
        return task
