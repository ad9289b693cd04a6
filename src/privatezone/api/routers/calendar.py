"""Calendar write endpoints: create, and scoped update/delete of events.

``event_id`` is the provider's event id.  ``scope`` selects which occurrences
of a recurring series are affected (``instance`` by default).
"""

from __future__ import annotations

import enum
import logging
from typing import Any

from fastapi import APIRouter, Depends, Query

from privatezone.api.deps import get_current_user, get_event_editor, get_sync_service
from privatezone.api.models import ApiResponse, EditResponse
from privatezone.integrations import IntegrationProvider
from privatezone.providers.base import EventDraft, EventPatch
from privatezone.recurrence import EditScope, EventEditor
from privatezone.sync.service import SyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendar", tags=["calendar"])


class CalendarProviderName(enum.StrEnum):
    GOOGLE = "google"
    MICROSOFT = "microsoft"

    @property
    def integration(self) -> IntegrationProvider:
        if self is CalendarProviderName.MICROSOFT:
            return IntegrationProvider.MICROSOFT
        return IntegrationProvider.GOOGLE_CALENDAR


@router.post("/{provider}/events", status_code=201)
async def create_event(
    provider: CalendarProviderName,
    draft: EventDraft,
    user_id: str = Depends(get_current_user),
    service: SyncService = Depends(get_sync_service),
) -> ApiResponse[dict[str, Any]]:
    """Create an event at the provider and return the mirrored local row."""
    row = await service.create_event(user_id, provider.integration, draft)
    return ApiResponse[dict[str, Any]](data=row)


@router.patch("/{provider}/events/{event_id}", response_model=EditResponse)
async def update_event(
    provider: CalendarProviderName,
    event_id: str,
    patch: EventPatch,
    scope: EditScope = Query(default=EditScope.INSTANCE),
    user_id: str = Depends(get_current_user),
    editor: EventEditor = Depends(get_event_editor),
) -> EditResponse:
    result = await editor.update_event(user_id, provider.integration, event_id, patch, scope)
    return EditResponse.from_result(result)


@router.delete("/{provider}/events/{event_id}", response_model=EditResponse)
async def delete_event(
    provider: CalendarProviderName,
    event_id: str,
    scope: EditScope = Query(default=EditScope.INSTANCE),
    user_id: str = Depends(get_current_user),
    editor: EventEditor = Depends(get_event_editor),
) -> EditResponse:
    result = await editor.delete_event(user_id, provider.integration, event_id, scope)
    return EditResponse.from_result(result)
