"""Email attachment persistence.

During a mail sync every attachment gets a metadata row the first time its
message is seen.  Bytes are stored eagerly only for attachments below the
inline ceiling; larger ones are downloaded on demand by :meth:`fetch` and
backfilled into the store when they turn out to fit under the ceiling.
Parts whose bytes arrive inside the message body are always stored, since
the provider cannot serve them separately.
"""

from __future__ import annotations

import logging
from uuid import UUID

from privatezone.config import DEFAULT_ATTACHMENT_MAX_INLINE_BYTES
from privatezone.errors import (
    DuplicateEntityError,
    EntityNotFoundError,
    FetchFailedError,
    redact_secrets,
)
from privatezone.providers.base import (
    INLINE_PART_ID_PREFIX,
    AttachmentMeta,
    MessageProvider,
    NormalizedMessage,
)
from privatezone.sync.store import Row, SyncStore
from privatezone.tokens import TokenGuard

logger = logging.getLogger(__name__)


class AttachmentService:
    """Stores attachment metadata and serves attachment bytes."""

    def __init__(
        self,
        store: SyncStore,
        provider: MessageProvider,
        guard: TokenGuard,
        *,
        max_inline_bytes: int = DEFAULT_ATTACHMENT_MAX_INLINE_BYTES,
    ) -> None:
        self._store = store
        self._provider = provider
        self._guard = guard
        self._max_inline_bytes = max_inline_bytes

    def fits_inline(self, size_bytes: int) -> bool:
        return size_bytes < self._max_inline_bytes

    async def persist_new(self, token: str, email_row: Row, message: NormalizedMessage) -> int:
        """Store attachments of *message* that are not stored yet.

        Returns the number of attachment rows inserted.  A failed download
        leaves a metadata-only row; the bytes are fetched later on demand.
        """
        inserted = 0
        for meta in message.attachments:
            existing = await self._store.find_attachment(
                email_row["id"], meta.provider_attachment_id
            )
            if existing is not None:
                continue

            data = await self._initial_bytes(token, message.provider_id, meta)
            try:
                await self._store.insert_attachment(
                    email_row["id"], meta.model_dump(), data
                )
            except DuplicateEntityError:
                logger.debug(
                    "Attachment %s of message %s stored concurrently",
                    meta.provider_attachment_id,
                    message.provider_id,
                )
                continue
            inserted += 1
        return inserted

    async def _initial_bytes(
        self, token: str, message_id: str, meta: AttachmentMeta
    ) -> bytes | None:
        if meta.inline_data is not None:
            # Already in hand; the provider has no separate download for it.
            return meta.inline_data
        if not self.fits_inline(meta.size_bytes):
            return None
        try:
            return await self._provider.get_attachment(
                token, message_id, meta.provider_attachment_id
            )
        except FetchFailedError as exc:
            logger.warning(
                "Error downloading attachment %s of message %s: %s",
                meta.filename,
                message_id,
                redact_secrets(str(exc)),
            )
            return None

    async def fetch(self, user_id: str, email_id: UUID, attachment_id: UUID) -> Row:
        """Return the attachment row with its ``data`` populated.

        Stored bytes are returned directly.  Otherwise the bytes are fetched
        from the provider and, when they fit under the ceiling, written back
        so the next request is served locally.

        Raises
        ------
        EntityNotFoundError
            If the attachment does not belong to one of the user's messages, or
            it is an inline part whose bytes were never stored.
        """
        row = await self._store.get_attachment(user_id, email_id, attachment_id)
        if row is None:
            raise EntityNotFoundError(f"Attachment {attachment_id} not found")
        if row.get("data") is not None:
            return row
        if str(row["provider_attachment_id"]).startswith(INLINE_PART_ID_PREFIX):
            raise EntityNotFoundError(f"Attachment {attachment_id} has no stored content")

        record = await self._guard.get_fresh(user_id, self._provider.integration)
        data = await self._provider.get_attachment(
            record.access_token,
            row["message_provider_id"],
            row["provider_attachment_id"],
        )
        if self.fits_inline(len(data)):
            await self._store.set_attachment_data(row["id"], data)
            logger.info("Backfilled attachment %s (%d bytes)", row["id"], len(data))
        return {**row, "data": data}