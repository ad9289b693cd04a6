"""Sync endpoints: one POST per provider domain.

Each call runs a full reconciliation pass for the acting user and returns the
pass summary.  Records that could not be stored are reported as ``skipped``;
only a failure to list remote records at all produces an error response.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from privatezone.api.deps import get_current_user, get_sync_service
from privatezone.api.models import SyncResponse
from privatezone.sync.service import SyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.post("/google-calendar", response_model=SyncResponse)
async def sync_google_calendar(
    user_id: str = Depends(get_current_user),
    service: SyncService = Depends(get_sync_service),
) -> SyncResponse:
    result = await service.sync_calendar(user_id)
    return SyncResponse.from_result(result)


@router.post("/microsoft-calendar", response_model=SyncResponse)
async def sync_microsoft_calendar(
    user_id: str = Depends(get_current_user),
    service: SyncService = Depends(get_sync_service),
) -> SyncResponse:
    result = await service.sync_microsoft_calendar(user_id)
    return SyncResponse.from_result(result)


@router.post("/gmail", response_model=SyncResponse)
async def sync_gmail(
    query: str | None = Query(default=None, description="Gmail search query."),
    limit: int | None = Query(default=None, ge=1, le=500, description="Maximum messages."),
    user_id: str = Depends(get_current_user),
    service: SyncService = Depends(get_sync_service),
) -> SyncResponse:
    """Mirror recent Gmail messages (and small attachments) for the user."""
    result = await service.sync_messages(user_id, query=query, limit=limit)
    return SyncResponse.from_result(result)


@router.post("/google-tasks", response_model=SyncResponse)
async def sync_google_tasks(
    user_id: str = Depends(get_current_user),
    service: SyncService = Depends(get_sync_service),
) -> SyncResponse:
    result = await service.sync_tasks(user_id)
    return SyncResponse.from_result(result)
