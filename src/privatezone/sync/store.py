"""Local store contract for synced entities, with the asyncpg implementation.

Rows are plain ``dict`` objects keyed by column name.  Every synced table has
a partial unique index on ``(user_id, provider_id) WHERE provider_id IS NOT
NULL``; inserts that hit it raise :class:`DuplicateEntityError` so the engine
can re-read and update the winning row.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol
from uuid import UUID

import asyncpg

from privatezone.errors import DuplicateEntityError, MalformedRecordError

if TYPE_CHECKING:
    from privatezone.db import Database

logger = logging.getLogger(__name__)

Row = dict[str, Any]


class EntityKind(enum.StrEnum):
    """Synced entity tables."""

    EVENT = "calendar_events"
    MESSAGE = "emails"
    TASK = "tasks"


# Content columns each table accepts on insert/update.
ENTITY_COLUMNS: dict[EntityKind, frozenset[str]] = {
    EntityKind.EVENT: frozenset(
        {
            "title",
            "description",
            "location",
            "starts_at",
            "ends_at",
            "all_day",
            "recurring",
            "series_id",
            "recurrence_rule",
        }
    ),
    EntityKind.MESSAGE: frozenset(
        {
            "thread_id",
            "sender",
            "to_addresses",
            "cc_addresses",
            "bcc_addresses",
            "subject",
            "body",
            "html_body",
            "snippet",
            "labels",
            "is_read",
            "is_important",
            "received_at",
        }
    ),
    EntityKind.TASK: frozenset(
        {"title", "notes", "due_at", "completed", "completed_at", "priority"}
    ),
}

# Columns any update may touch besides content (used when a local task is pushed).
_IDENTITY_COLUMNS = frozenset({"provider_id", "source"})


def _check_columns(kind: EntityKind, columns: Iterable[str], *, allow_identity: bool) -> None:
    allowed = ENTITY_COLUMNS[kind] | (_IDENTITY_COLUMNS if allow_identity else frozenset())
    unknown = sorted(set(columns) - allowed)
    if unknown:
        raise ValueError(f"Unknown {kind} column(s): {', '.join(unknown)}")


class SyncStore(Protocol):
    """Persistence contract consumed by the reconciliation engine and services."""

    async def find_by_provider_id(
        self, kind: EntityKind, user_id: str, provider_id: str
    ) -> Row | None: ...

    async def get(self, kind: EntityKind, user_id: str, entity_id: UUID) -> Row | None: ...

    async def insert(
        self,
        kind: EntityKind,
        user_id: str,
        *,
        provider_id: str | None,
        source: str,
        values: dict[str, Any],
    ) -> Row: ...

    async def update(self, kind: EntityKind, entity_id: UUID, changes: dict[str, Any]) -> Row: ...

    async def delete(self, kind: EntityKind, entity_id: UUID) -> bool: ...

    async def delete_by_provider_id(
        self, kind: EntityKind, user_id: str, provider_id: str
    ) -> bool: ...

    async def update_series(
        self, user_id: str, series_id: str, changes: dict[str, Any]
    ) -> int: ...

    async def delete_series(
        self, user_id: str, series_id: str, *, starting_at: datetime | None = None
    ) -> int: ...

    async def find_attachment(self, email_id: UUID, provider_attachment_id: str) -> Row | None: ...

    async def get_attachment(self, user_id: str, email_id: UUID, attachment_id: UUID) -> Row | None:
        ...

    async def insert_attachment(
        self, email_id: UUID, values: dict[str, Any], data: bytes | None
    ) -> Row: ...

    async def set_attachment_data(self, attachment_id: UUID, data: bytes) -> None: ...


# ---------------------------------------------------------------------------
# Postgres implementation
# ---------------------------------------------------------------------------


class PostgresSyncStore:
    """asyncpg-backed :class:`SyncStore`."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def find_by_provider_id(
        self, kind: EntityKind, user_id: str, provider_id: str
    ) -> Row | None:
        row = await self._db.fetchrow(
            f"SELECT * FROM {kind} WHERE user_id = $1 AND provider_id = $2",
            user_id,
            provider_id,
        )
        return dict(row) if row is not None else None

    async def get(self, kind: EntityKind, user_id: str, entity_id: UUID) -> Row | None:
        row = await self._db.fetchrow(
            f"SELECT * FROM {kind} WHERE user_id = $1 AND id = $2",
            user_id,
            entity_id,
        )
        return dict(row) if row is not None else None

    async def insert(
        self,
        kind: EntityKind,
        user_id: str,
        *,
        provider_id: str | None,
        source: str,
        values: dict[str, Any],
    ) -> Row:
        _check_columns(kind, values, allow_identity=False)
        columns = ["user_id", "provider_id", "source", *values]
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        try:
            row = await self._db.fetchrow(
                f"INSERT INTO {kind} ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *",
                user_id,
                provider_id,
                source,
                *values.values(),
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateEntityError(
                f"{kind} row for provider id {provider_id!r} already exists"
            ) from exc
        except asyncpg.DataError as exc:
            raise MalformedRecordError(f"{kind} row rejected by the database: {exc}") from exc
        return dict(row)

    async def update(self, kind: EntityKind, entity_id: UUID, changes: dict[str, Any]) -> Row:
        _check_columns(kind, changes, allow_identity=True)
        if not changes:
            raise ValueError("update requires at least one changed column")
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(changes, start=2))
        try:
            row = await self._db.fetchrow(
                f"UPDATE {kind} SET {assignments}, updated_at = now() WHERE id = $1 RETURNING *",
                entity_id,
                *changes.values(),
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateEntityError(f"{kind} update collides with an existing row") from exc
        except asyncpg.DataError as exc:
            raise MalformedRecordError(f"{kind} update rejected by the database: {exc}") from exc
        if row is None:
            raise LookupError(f"{kind} row {entity_id} disappeared during update")
        return dict(row)

    async def delete(self, kind: EntityKind, entity_id: UUID) -> bool:
        status = await self._db.execute(f"DELETE FROM {kind} WHERE id = $1", entity_id)
        return status.endswith(" 1")

    async def delete_by_provider_id(
        self, kind: EntityKind, user_id: str, provider_id: str
    ) -> bool:
        status = await self._db.execute(
            f"DELETE FROM {kind} WHERE user_id = $1 AND provider_id = $2",
            user_id,
            provider_id,
        )
        return status.endswith(" 1")

    async def update_series(self, user_id: str, series_id: str, changes: dict[str, Any]) -> int:
        _check_columns(EntityKind.EVENT, changes, allow_identity=False)
        if not changes:
            return 0
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(changes, start=3))
        status = await self._db.execute(
            f"""
            UPDATE calendar_events SET {assignments}, updated_at = now()
            WHERE user_id = $1 AND (series_id = $2 OR provider_id = $2)
            """,
            user_id,
            series_id,
            *changes.values(),
        )
        return int(status.rsplit(" ", 1)[-1])

    async def delete_series(
        self, user_id: str, series_id: str, *, starting_at: datetime | None = None
    ) -> int:
        if starting_at is None:
            status = await self._db.execute(
                """
                DELETE FROM calendar_events
                WHERE user_id = $1 AND (series_id = $2 OR provider_id = $2)
                """,
                user_id,
                series_id,
            )
        else:
            status = await self._db.execute(
                """
                DELETE FROM calendar_events
                WHERE user_id = $1 AND series_id = $2 AND starts_at >= $3
                """,
                user_id,
                series_id,
                starting_at,
            )
        return int(status.rsplit(" ", 1)[-1])

    # -- Attachments -------------------------------------------------------

    async def find_attachment(self, email_id: UUID, provider_attachment_id: str) -> Row | None:
        row = await self._db.fetchrow(
            """
            SELECT * FROM email_attachments
            WHERE email_id = $1 AND provider_attachment_id = $2
            """,
            email_id,
            provider_attachment_id,
        )
        return dict(row) if row is not None else None

    async def get_attachment(self, user_id: str, email_id: UUID, attachment_id: UUID) -> Row | None:
        row = await self._db.fetchrow(
            """
            SELECT a.*, e.provider_id AS message_provider_id
            FROM email_attachments a
            JOIN emails e ON e.id = a.email_id
            WHERE e.user_id = $1 AND a.email_id = $2 AND a.id = $3
            """,
            user_id,
            email_id,
            attachment_id,
        )
        return dict(row) if row is not None else None

    async def insert_attachment(
        self, email_id: UUID, values: dict[str, Any], data: bytes | None
    ) -> Row:
        try:
            row = await self._db.fetchrow(
                """
                INSERT INTO email_attachments
                    (email_id, provider_attachment_id, filename, mime_type,
                     size_bytes, content_id, is_inline, data)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING *
                """,
                email_id,
                values["provider_attachment_id"],
                values["filename"],
                values["mime_type"],
                values["size_bytes"],
                values.get("content_id"),
                values.get("is_inline", False),
                data,
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateEntityError(
                f"attachment {values['provider_attachment_id']!r} already stored"
            ) from exc
        return dict(row)

    async def set_attachment_data(self, attachment_id: UUID, data: bytes) -> None:
        await self._db.execute(
            "UPDATE email_attachments SET data = $2, updated_at = now() WHERE id = $1",
            attachment_id,
            data,
        )
