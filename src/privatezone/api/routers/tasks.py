"""Task endpoints."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends

from privatezone.api.deps import get_current_user, get_sync_service
from privatezone.api.models import ApiResponse
from privatezone.sync.service import SyncService

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


@router.post("/{task_id}/push")
async def push_task(
    task_id: UUID,
    user_id: str = Depends(get_current_user),
    service: SyncService = Depends(get_sync_service),
) -> ApiResponse[dict[str, Any]]:
    """Create a locally authored task in Google Tasks and link it."""
    row = await service.push_task(user_id, task_id)
    return ApiResponse[dict[str, Any]](data=row)
