"""Tests for the token refresh guard."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from privatezone.errors import IntegrationNotFoundError, ReauthorizationRequiredError
from privatezone.integrations import IntegrationProvider

pytestmark = pytest.mark.unit

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
CALENDAR = IntegrationProvider.GOOGLE_CALENDAR


class TestIsExpired:
    def test_unknown_expiry_is_never_expired(self, guard, make_integration):
        record = make_integration(CALENDAR).model_copy(update={"expires_at": None})
        assert guard.is_expired(record) is False

    def test_expiry_in_the_past_is_expired(self, guard, make_integration):
        record = make_integration(CALENDAR, expires_at=NOW - timedelta(seconds=1))
        assert guard.is_expired(record) is True

    def test_expiry_exactly_now_is_expired(self, guard, make_integration):
        record = make_integration(CALENDAR, expires_at=NOW)
        assert guard.is_expired(record) is True


class TestGetFresh:
    async def test_valid_token_is_used_without_refresh(
        self, guard, integration_store, oauth_clients, make_integration
    ):
        integration_store.seed(make_integration(CALENDAR, access_token="still-good"))

        record = await guard.get_fresh("user-1", CALENDAR)

        assert record.access_token == "still-good"
        assert oauth_clients[CALENDAR].refresh_calls == 0

    async def test_expired_token_is_refreshed_once_and_persisted(
        self, guard, integration_store, oauth_clients, make_integration
    ):
        integration_store.seed(
            make_integration(CALENDAR, expires_at=NOW - timedelta(minutes=5))
        )

        record = await guard.get_fresh("user-1", CALENDAR)

        assert record.access_token == "google_calendar-fresh-token"
        assert oauth_clients[CALENDAR].refresh_calls == 1
        stored = await integration_store.get_active("user-1", CALENDAR)
        assert stored is not None
        assert stored.access_token == "google_calendar-fresh-token"
        assert stored.expires_at == NOW + timedelta(hours=1)
        # The refresh token survives when the provider does not rotate it.
        assert stored.refresh_token == "refresh-token"

    async def test_concurrent_callers_share_one_refresh(
        self, guard, integration_store, oauth_clients, make_integration
    ):
        integration_store.seed(
            make_integration(CALENDAR, expires_at=NOW - timedelta(minutes=5))
        )

        first, second = await asyncio.gather(
            guard.get_fresh("user-1", CALENDAR),
            guard.get_fresh("user-1", CALENDAR),
        )

        assert oauth_clients[CALENDAR].refresh_calls == 1
        assert first.access_token == second.access_token == "google_calendar-fresh-token"

    async def test_lost_compare_and_swap_uses_the_winning_token(
        self, guard, integration_store, oauth_clients, make_integration
    ):
        stale = integration_store.seed(
            make_integration(CALENDAR, expires_at=NOW - timedelta(minutes=5))
        )
        winner = stale.model_copy(
            update={"access_token": "other-process-token", "expires_at": NOW + timedelta(hours=2)}
        )
        integration_store.before_update = lambda: integration_store.seed(winner)

        record = await guard.get_fresh("user-1", CALENDAR)

        assert record.access_token == "other-process-token"
        assert integration_store.token_writes == 0
        assert oauth_clients[CALENDAR].refresh_calls == 1

    async def test_revoked_refresh_token_requires_reauthorization(
        self, guard, integration_store, oauth_clients, make_integration
    ):
        integration_store.seed(
            make_integration(CALENDAR, expires_at=NOW - timedelta(minutes=5))
        )
        oauth_clients[CALENDAR].error = ReauthorizationRequiredError(CALENDAR, "invalid_grant")

        with pytest.raises(ReauthorizationRequiredError):
            await guard.get_fresh("user-1", CALENDAR)

        stored = await integration_store.get_active("user-1", CALENDAR)
        assert stored is not None
        assert stored.access_token == "google_calendar-access-token"

    async def test_missing_refresh_token_requires_reauthorization(
        self, guard, integration_store, oauth_clients, make_integration
    ):
        integration_store.seed(
            make_integration(
                CALENDAR, refresh_token=None, expires_at=NOW - timedelta(minutes=5)
            )
        )

        with pytest.raises(ReauthorizationRequiredError, match="no refresh token"):
            await guard.get_fresh("user-1", CALENDAR)
        assert oauth_clients[CALENDAR].refresh_calls == 0

    async def test_missing_integration_raises_not_found(self, guard):
        with pytest.raises(IntegrationNotFoundError):
            await guard.get_fresh("user-1", CALENDAR)

    async def test_disconnected_integration_raises_not_found(
        self, guard, integration_store, make_integration
    ):
        integration_store.seed(make_integration(CALENDAR))
        await integration_store.deactivate("user-1", CALENDAR)

        with pytest.raises(IntegrationNotFoundError):
            await guard.get_fresh("user-1", CALENDAR)
