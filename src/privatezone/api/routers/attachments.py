"""Attachment download endpoint.

Serves stored bytes directly; otherwise the attachment is fetched from Gmail
and, when small enough, stored for the next request.
"""

from __future__ import annotations

from urllib.parse import quote
from uuid import UUID

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from privatezone.api.deps import get_attachment_service, get_current_user
from privatezone.sync.attachments import AttachmentService

router = APIRouter(prefix="/api/emails", tags=["emails"])


@router.get("/{email_id}/attachments/{attachment_id}")
async def get_attachment(
    email_id: UUID,
    attachment_id: UUID,
    user_id: str = Depends(get_current_user),
    attachments: AttachmentService = Depends(get_attachment_service),
) -> Response:
    row = await attachments.fetch(user_id, email_id, attachment_id)
    disposition = "inline" if row.get("is_inline") else "attachment"
    filename = quote(row.get("filename") or "unnamed_attachment", safe="")
    return Response(
        content=row["data"],
        media_type=row.get("mime_type") or "application/octet-stream",
        headers={
            "Content-Disposition": f"{disposition}; filename*=UTF-8''{filename}",
            "Cache-Control": "private, max-age=3600",
        },
    )
