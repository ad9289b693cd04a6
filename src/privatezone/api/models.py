"""Pydantic request/response models for the portal API.

Successful non-sync responses follow ``{"data": T, "meta": {...}}``; sync
endpoints return a flat ``{"success": true, "synced_count": n, ...}`` body;
errors use the ``{"error": {...}}`` envelope.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from privatezone.integrations import IntegrationProvider, IntegrationRecord
from privatezone.recurrence import EditResult, EditScope
from privatezone.sync.engine import SyncResult

# ---------------------------------------------------------------------------
# Base response wrappers
# ---------------------------------------------------------------------------


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


class ApiResponse[T](BaseModel):
    """Generic API response wrapper."""

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    provider: str | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


class SyncResponse(BaseModel):
    """Outcome of one sync request; partial success still reports success."""

    success: bool = True
    kind: str
    synced_count: int
    fetched: int
    inserted: int
    updated: int
    unchanged: int
    skipped: int
    hook_failures: int = 0

    @classmethod
    def from_result(cls, result: SyncResult) -> SyncResponse:
        return cls(
            kind=str(result.kind),
            synced_count=result.synced_count,
            fetched=result.fetched,
            inserted=result.inserted,
            updated=result.updated,
            unchanged=result.unchanged,
            skipped=result.skipped,
            hook_failures=result.hook_failures,
        )


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------


class EditResponse(BaseModel):
    success: bool = True
    scope: EditScope
    target_id: str
    local_rows: int
    event: dict[str, Any] | None = None

    @classmethod
    def from_result(cls, result: EditResult) -> EditResponse:
        return cls(
            scope=result.scope,
            target_id=result.target_id,
            local_rows=result.local_rows,
            event=result.event.model_dump(mode="json") if result.event is not None else None,
        )


# ---------------------------------------------------------------------------
# Integrations
# ---------------------------------------------------------------------------


class IntegrationStatus(BaseModel):
    """Public view of an integration record; never carries token values."""

    provider: IntegrationProvider
    is_active: bool
    expires_at: datetime | None = None
    scope: str | None = None
    account_email: str | None = None
    connected_at: datetime | None = None

    @classmethod
    def from_record(cls, record: IntegrationRecord) -> IntegrationStatus:
        email = record.account_info.get("email")
        return cls(
            provider=record.provider,
            is_active=record.is_active,
            expires_at=record.expires_at,
            scope=record.scope,
            account_email=email if isinstance(email, str) else None,
            connected_at=record.created_at,
        )


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str


class OAuthCallbackSuccess(BaseModel):
    success: bool = True
    provider: IntegrationProvider
    scope: str | None = None
    account_email: str | None = None


class OAuthCallbackError(BaseModel):
    success: bool = False
    error_code: str
    message: str


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str
    database: str
