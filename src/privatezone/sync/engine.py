"""Reconciliation engine: merges normalized provider records into the local store.

Records are processed sequentially.  Each one is looked up by its natural key
(user, provider id); a miss inserts a new row tagged with the provider source,
a hit updates only the provider-authoritative columns that actually differ.
Running the same batch twice therefore writes nothing the second time.

A record that cannot be stored is logged and counted as skipped; the rest of
the batch still runs.  Store failures (connection loss and similar) and
re-authorization errors are not record-level problems and propagate.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import AsyncIterable, Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, computed_field

from privatezone.errors import DuplicateEntityError, redact_secrets
from privatezone.providers.base import (
    NormalizedEvent,
    NormalizedMessage,
    NormalizedTask,
    RecordError,
)
from privatezone.sync.store import EntityKind, Row, SyncStore

logger = logging.getLogger(__name__)

NormalizedRecord = NormalizedEvent | NormalizedMessage | NormalizedTask
OnRecord = Callable[[NormalizedRecord, Row], Awaitable[None]]

# Columns the provider owns on update.  None means every stored column.
# Message content is immutable once received; only mailbox state moves.
AUTHORITATIVE_FIELDS: dict[EntityKind, frozenset[str] | None] = {
    EntityKind.EVENT: None,
    EntityKind.MESSAGE: frozenset({"is_read", "is_important", "labels", "snippet"}),
    EntityKind.TASK: None,
}

# Failures that belong to one record rather than to the whole pass.
_RECORD_ERRORS = (ValueError, TypeError, KeyError)


class UpsertOutcome(enum.StrEnum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class SyncResult(BaseModel):
    """Outcome summary from one reconciliation pass."""

    model_config = ConfigDict(extra="forbid")

    kind: EntityKind
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    # Stored records whose post-upsert hook (attachments) failed.
    hook_failures: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def synced_count(self) -> int:
        return self.inserted + self.updated + self.unchanged

    def record(self, outcome: UpsertOutcome) -> None:
        if outcome is UpsertOutcome.INSERTED:
            self.inserted += 1
        elif outcome is UpsertOutcome.UPDATED:
            self.updated += 1
        else:
            self.unchanged += 1


def diff_fields(
    existing: Row, values: dict[str, Any], authoritative: frozenset[str] | None
) -> dict[str, Any]:
    """Return the authoritative columns of *values* that differ from *existing*."""
    changes: dict[str, Any] = {}
    for column, value in values.items():
        if authoritative is not None and column not in authoritative:
            continue
        if existing.get(column) != value:
            changes[column] = value
    return changes


class ReconciliationEngine:
    """Idempotent upsert of provider records keyed by (user, provider id)."""

    def __init__(self, store: SyncStore) -> None:
        self._store = store

    async def upsert(
        self,
        kind: EntityKind,
        user_id: str,
        source: str,
        record: NormalizedRecord,
    ) -> tuple[UpsertOutcome, Row]:
        """Insert or update one record.

        Returns
        -------
        tuple[UpsertOutcome, Row]
            What happened, and the stored row after the write.

        Raises
        ------
        DuplicateEntityError
            Only if a concurrent insert won the unique index and its row
            vanished again before it could be re-read.
        """
        values = record.stored_fields()
        existing = await self._store.find_by_provider_id(kind, user_id, record.provider_id)

        if existing is None:
            try:
                row = await self._store.insert(
                    kind,
                    user_id,
                    provider_id=record.provider_id,
                    source=source,
                    values=values,
                )
            except DuplicateEntityError:
                # A concurrent sync inserted the same record first; update that row instead.
                existing = await self._store.find_by_provider_id(
                    kind, user_id, record.provider_id
                )
                if existing is None:
                    raise
                logger.info(
                    "Concurrent insert detected for %s %s; updating the stored row",
                    kind,
                    record.provider_id,
                )
            else:
                return UpsertOutcome.INSERTED, row

        changes = diff_fields(existing, values, AUTHORITATIVE_FIELDS[kind])
        if not changes:
            return UpsertOutcome.UNCHANGED, existing
        row = await self._store.update(kind, existing["id"], changes)
        logger.debug(
            "Updated %s %s: %s", kind, record.provider_id, ", ".join(sorted(changes))
        )
        return UpsertOutcome.UPDATED, row

    async def reconcile(
        self,
        user_id: str,
        kind: EntityKind,
        source: str,
        records: AsyncIterable[NormalizedRecord | RecordError],
        *,
        on_record: OnRecord | None = None,
    ) -> SyncResult:
        """Merge every record from *records* into the local store.

        Parameters
        ----------
        user_id:
            Owner of the synced rows.
        kind:
            Which entity table the records belong to.
        source:
            Provider tag written to ``source`` on inserted rows.
        records:
            Adapter output.  Errors raised by the iterator itself (a failed
            listing call) abort the pass; :class:`RecordError` markers are
            counted as skipped.
        on_record:
            Optional hook awaited after each successful upsert with the
            normalized record and the stored row (used for attachments).
            A record-level failure in the hook leaves the row counted by its
            upsert outcome and increments ``hook_failures``.
        """
        result = SyncResult(kind=kind)
        async for record in records:
            result.fetched += 1
            if isinstance(record, RecordError):
                result.skipped += 1
                logger.warning(
                    "Skipping %s record %s: %s",
                    kind,
                    record.provider_id or "<unknown>",
                    redact_secrets(record.reason),
                )
                continue

            try:
                outcome, row = await self.upsert(kind, user_id, source, record)
            except _RECORD_ERRORS as exc:
                result.skipped += 1
                logger.warning(
                    "Skipping %s record %s: %s",
                    kind,
                    record.provider_id,
                    redact_secrets(str(exc)),
                )
                continue
            result.record(outcome)

            if on_record is None:
                continue
            try:
                await on_record(record, row)
            except _RECORD_ERRORS as exc:
                result.hook_failures += 1
                logger.warning(
                    "Stored %s %s but its follow-up step failed: %s",
                    kind,
                    record.provider_id,
                    redact_secrets(str(exc)),
                )

        logger.info(
            "Reconciled %s for user_id=%r: fetched=%d inserted=%d updated=%d "
            "unchanged=%d skipped=%d hook_failures=%d",
            kind,
            user_id,
            result.fetched,
            result.inserted,
            result.updated,
            result.unchanged,
            result.skipped,
            result.hook_failures,
        )
        return result
