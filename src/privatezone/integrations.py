"""Integration records: one OAuth grant per (user, provider).

Records are created on the OAuth callback (insert-or-replace, which also
reactivates a disconnected record), have their access token updated in place
on refresh, and are soft-deleted on disconnect.  Rows are never hard-deleted.

Token material is never logged and is redacted from ``repr()``/``str()``.
"""

from __future__ import annotations

import enum
import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:
    from privatezone.db import Database

logger = logging.getLogger(__name__)


class IntegrationProvider(enum.StrEnum):
    """Remote account kinds a user can connect."""

    GOOGLE_CALENDAR = "google_calendar"
    GMAIL = "gmail"
    GOOGLE_TASKS = "google_tasks"
    MICROSOFT = "microsoft"

    @property
    def is_google(self) -> bool:
        return self is not IntegrationProvider.MICROSOFT


class IntegrationRecord(BaseModel):
    """Stored OAuth grant for one (user, provider) pair."""

    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    provider: IntegrationProvider
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime | None = None
    is_active: bool = True
    scope: str | None = None
    account_info: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("refresh_token", "scope")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    # ------------------------------------------------------------------
    # Safe repr
    # ------------------------------------------------------------------

    def __repr__(self) -> str:
        return (
            f"IntegrationRecord("
            f"user_id={self.user_id!r}, "
            f"provider={self.provider.value!r}, "
            f"access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at!r}, "
            f"is_active={self.is_active!r})"
        )

    # Pydantic's default __str__ would expose field values verbatim.
    __str__ = __repr__


class IntegrationStore(Protocol):
    """Persistence contract used by the token guard and the OAuth routes."""

    async def get_active(
        self, user_id: str, provider: IntegrationProvider
    ) -> IntegrationRecord | None: ...

    async def list_for_user(self, user_id: str) -> list[IntegrationRecord]: ...

    async def upsert(self, record: IntegrationRecord) -> IntegrationRecord: ...

    async def update_token(
        self,
        user_id: str,
        provider: IntegrationProvider,
        *,
        access_token: str,
        expires_at: datetime | None,
        expected_expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> bool: ...

    async def deactivate(self, user_id: str, provider: IntegrationProvider) -> bool: ...


# ---------------------------------------------------------------------------
# Postgres implementation
# ---------------------------------------------------------------------------

_COLUMNS = (
    "user_id, provider, access_token, refresh_token, expires_at, is_active, "
    "scope, account_info, created_at, updated_at"
)


def _decode_json_object(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def _row_to_record(row: Any) -> IntegrationRecord:
    data = dict(row)
    data["account_info"] = _decode_json_object(data.get("account_info"))
    return IntegrationRecord(**data)


class PostgresIntegrationStore:
    """asyncpg-backed :class:`IntegrationStore` over the ``integrations`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def get_active(
        self, user_id: str, provider: IntegrationProvider
    ) -> IntegrationRecord | None:
        row = await self._db.fetchrow(
            f"""
            SELECT {_COLUMNS}
            FROM integrations
            WHERE user_id = $1 AND provider = $2 AND is_active
            """,
            user_id,
            str(provider),
        )
        return _row_to_record(row) if row is not None else None

    async def list_for_user(self, user_id: str) -> list[IntegrationRecord]:
        rows = await self._db.fetch(
            f"SELECT {_COLUMNS} FROM integrations WHERE user_id = $1 ORDER BY provider",
            user_id,
        )
        return [_row_to_record(row) for row in rows]

    async def upsert(self, record: IntegrationRecord) -> IntegrationRecord:
        """Insert or replace the grant for (user, provider), reactivating it."""
        row = await self._db.fetchrow(
            f"""
            INSERT INTO integrations
                (user_id, provider, access_token, refresh_token, expires_at,
                 is_active, scope, account_info)
            VALUES ($1, $2, $3, $4, $5, true, $6, $7::jsonb)
            ON CONFLICT (user_id, provider) DO UPDATE SET
                access_token  = EXCLUDED.access_token,
                refresh_token = COALESCE(EXCLUDED.refresh_token, integrations.refresh_token),
                expires_at    = EXCLUDED.expires_at,
                is_active     = true,
                scope         = EXCLUDED.scope,
                account_info  = EXCLUDED.account_info,
                updated_at    = now()
            RETURNING {_COLUMNS}
            """,
            record.user_id,
            str(record.provider),
            record.access_token,
            record.refresh_token,
            record.expires_at,
            record.scope,
            json.dumps(record.account_info),
        )
        logger.info(
            "Integration connected: user_id=%r provider=%s",
            record.user_id,
            record.provider,
        )
        return _row_to_record(row)

    async def update_token(
        self,
        user_id: str,
        provider: IntegrationProvider,
        *,
        access_token: str,
        expires_at: datetime | None,
        expected_expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> bool:
        """Compare-and-swap the access token.

        The update only applies while the stored ``expires_at`` still equals
        *expected_expires_at*.  Returns ``False`` when another writer got there
        first.
        """
        status = await self._db.execute(
            """
            UPDATE integrations
            SET access_token  = $3,
                expires_at    = $4,
                refresh_token = COALESCE($6, refresh_token),
                updated_at    = now()
            WHERE user_id = $1
              AND provider = $2
              AND is_active
              AND expires_at IS NOT DISTINCT FROM $5
            """,
            user_id,
            str(provider),
            access_token,
            expires_at,
            expected_expires_at,
            refresh_token,
        )
        return status.endswith(" 1")

    async def deactivate(self, user_id: str, provider: IntegrationProvider) -> bool:
        status = await self._db.execute(
            """
            UPDATE integrations
            SET is_active = false, updated_at = now()
            WHERE user_id = $1 AND provider = $2 AND is_active
            """,
            user_id,
            str(provider),
        )
        changed = status.endswith(" 1")
        if changed:
            logger.info("Integration disconnected: user_id=%r provider=%s", user_id, provider)
        return changed
