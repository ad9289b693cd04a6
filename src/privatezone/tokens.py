"""Token refresh guard.

Every remote call goes through :meth:`TokenGuard.ensure_fresh` (or
:meth:`TokenGuard.get_fresh`) first.  A record is refreshed only when it has
a known ``expires_at`` that is due; records with an unknown expiry are used
as-is and a later 401 from the data API surfaces as a re-authorization error.

Refreshes are serialized per (user, provider) inside the process with an
``asyncio.Lock``.  Across processes the store write is a compare-and-swap on
the ``expires_at`` that was read before refreshing: when it loses, the guard
re-reads the record and uses the token the winner persisted.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime

from privatezone.errors import IntegrationNotFoundError, ReauthorizationRequiredError
from privatezone.integrations import IntegrationProvider, IntegrationRecord, IntegrationStore
from privatezone.oauth import OAuthClient

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TokenGuard:
    """Keeps integration access tokens fresh before they are used."""

    def __init__(
        self,
        store: IntegrationStore,
        clients: Mapping[IntegrationProvider, OAuthClient],
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._clients = clients
        self._clock = clock
        self._locks: dict[tuple[str, IntegrationProvider], asyncio.Lock] = {}

    def is_expired(self, record: IntegrationRecord) -> bool:
        """Return True when the record has a known expiry that has passed."""
        if record.expires_at is None:
            return False
        return self._clock() >= record.expires_at

    async def get_fresh(self, user_id: str, provider: IntegrationProvider) -> IntegrationRecord:
        """Load the active integration for *user_id* and make sure it is usable.

        Raises
        ------
        IntegrationNotFoundError
            If the user has no active integration for *provider*.
        ReauthorizationRequiredError
            If the stored grant can no longer be refreshed.
        """
        record = await self._store.get_active(user_id, provider)
        if record is None:
            raise IntegrationNotFoundError(user_id, provider)
        return await self.ensure_fresh(record)

    async def ensure_fresh(self, record: IntegrationRecord) -> IntegrationRecord:
        """Return *record*, refreshed and persisted first when its token expired."""
        if not self.is_expired(record):
            return record

        key = (record.user_id, record.provider)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another coroutine may have refreshed while we waited for the lock.
            current = await self._store.get_active(record.user_id, record.provider)
            if current is None:
                raise IntegrationNotFoundError(record.user_id, record.provider)
            if not self.is_expired(current):
                return current
            return await self._refresh(current)

    async def _refresh(self, record: IntegrationRecord) -> IntegrationRecord:
        if not record.refresh_token:
            logger.warning(
                "Integration has no refresh token: user_id=%r provider=%s",
                record.user_id,
                record.provider,
            )
            raise ReauthorizationRequiredError(record.provider, "no refresh token stored")

        client = self._clients.get(record.provider)
        if client is None:
            raise ReauthorizationRequiredError(record.provider, "no OAuth client configured")

        try:
            grant = await client.refresh(record.refresh_token)
        except ReauthorizationRequiredError:
            logger.warning(
                "Refresh token rejected: user_id=%r provider=%s",
                record.user_id,
                record.provider,
            )
            raise

        swapped = await self._store.update_token(
            record.user_id,
            record.provider,
            access_token=grant.access_token,
            expires_at=grant.expires_at,
            expected_expires_at=record.expires_at,
            refresh_token=grant.refresh_token,
        )
        if not swapped:
            winner = await self._store.get_active(record.user_id, record.provider)
            if winner is None:
                raise IntegrationNotFoundError(record.user_id, record.provider)
            logger.info(
                "Concurrent token refresh detected; using stored token: user_id=%r provider=%s",
                record.user_id,
                record.provider,
            )
            return winner

        logger.info(
            "Token refreshed: user_id=%r provider=%s expires_at=%s",
            record.user_id,
            record.provider,
            grant.expires_at.isoformat(),
        )
        updates: dict[str, object] = {
            "access_token": grant.access_token,
            "expires_at": grant.expires_at,
        }
        if grant.refresh_token:
            updates["refresh_token"] = grant.refresh_token
        return record.model_copy(update=updates)
