"""
Tests for AccessTokenProvider — refresh-on-expiry and the connection lifecycle.
"""

import asyncio
from datetime import timedelta

import pytest

from connectors.token_manager import AccessTokenProvider
from utils.errors import (
    ConnectionNotFoundError,
    InvalidGrantError,
    ProviderNotRegisteredError,
    ReauthorizationRequiredError,
    TransientUpstreamError,
    UpstreamError,
)
from utils.schemas import ConnectionRecord, TokenGrant


@pytest.fixture
def tokens(connection_store, registry, clock):
    return AccessTokenProvider(connection_store, registry, clock=clock)


def _seed(store, clock, *, access_token="stored-access", expires_in=None, refresh_token="refresh-1"):
    record = ConnectionRecord(
        project_id="proj-1",
        provider="google_analytics",
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=clock.now() + expires_in if expires_in is not None else None,
    )
    store.rows[("proj-1", "google_analytics")] = record
    return record


class TestGetAccessToken:
    @pytest.mark.asyncio
    async def test_fresh_token_is_returned_without_refresh(self, tokens, connection_store, connector, clock):
        _seed(connection_store, clock, expires_in=timedelta(hours=1))

        token = await tokens.get_access_token("proj-1", "google_analytics")

        assert token == "stored-access"
        assert connector.refresh_calls == []
        assert connection_store.token_updates == 0

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_once_and_persisted(self, tokens, connection_store, connector, clock):
        _seed(connection_store, clock, expires_in=timedelta(minutes=-10))

        token = await tokens.get_access_token("proj-1", "google_analytics")

        assert token == "fresh-1"
        assert connector.refresh_calls == ["refresh-1"]
        stored = connection_store.rows[("proj-1", "google_analytics")]
        assert stored.access_token == "fresh-1"
        assert stored.expires_at == clock.now() + timedelta(hours=1)
        assert stored.refresh_token == "refresh-1"

    @pytest.mark.asyncio
    async def test_token_inside_buffer_is_refreshed(self, tokens, connection_store, connector, clock):
        _seed(connection_store, clock, expires_in=timedelta(minutes=4))

        await tokens.get_access_token("proj-1", "google_analytics")

        assert len(connector.refresh_calls) == 1

    @pytest.mark.asyncio
    async def test_token_exactly_at_buffer_is_refreshed(self, tokens, connection_store, connector, clock):
        _seed(connection_store, clock, expires_in=timedelta(minutes=5))

        await tokens.get_access_token("proj-1", "google_analytics")

        assert len(connector.refresh_calls) == 1

    @pytest.mark.asyncio
    async def test_token_just_outside_buffer_is_kept(self, tokens, connection_store, connector, clock):
        _seed(connection_store, clock, expires_in=timedelta(minutes=6))

        await tokens.get_access_token("proj-1", "google_analytics")

        assert connector.refresh_calls == []

    @pytest.mark.asyncio
    async def test_unknown_expiry_is_refreshed(self, tokens, connection_store, connector, clock):
        _seed(connection_store, clock, expires_in=None)

        assert await tokens.get_access_token("proj-1", "google_analytics") == "fresh-1"
        assert len(connector.refresh_calls) == 1

    @pytest.mark.asyncio
    async def test_missing_access_token_is_refreshed(self, tokens, connection_store, connector, clock):
        _seed(connection_store, clock, access_token=None, expires_in=timedelta(hours=1))

        assert await tokens.get_access_token("proj-1", "google_analytics") == "fresh-1"

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_is_stored(self, tokens, connection_store, connector, clock):
        _seed(connection_store, clock, expires_in=None)
        connector.rotated_refresh_token = "refresh-2"

        await tokens.get_access_token("proj-1", "google_analytics")

        assert connection_store.rows[("proj-1", "google_analytics")].refresh_token == "refresh-2"

    @pytest.mark.asyncio
    async def test_no_connection(self, tokens, connector):
        with pytest.raises(ConnectionNotFoundError):
            await tokens.get_access_token("proj-1", "google_analytics")
        assert connector.refresh_calls == []

    @pytest.mark.asyncio
    async def test_invalid_grant_requires_reauthorization(self, tokens, connection_store, connector, clock):
        _seed(connection_store, clock, expires_in=timedelta(minutes=-1))
        connector.refresh_error = InvalidGrantError("Token has been expired or revoked.")

        with pytest.raises(ReauthorizationRequiredError) as exc_info:
            await tokens.get_access_token("proj-1", "google_analytics")

        assert exc_info.value.context["provider"] == "google_analytics"
        stored = connection_store.rows[("proj-1", "google_analytics")]
        assert stored.refresh_token == "refresh-1"
        assert stored.access_token == "stored-access"
        assert connection_store.token_updates == 0

    @pytest.mark.asyncio
    async def test_transient_refresh_failure_propagates(self, tokens, connection_store, connector, clock):
        _seed(connection_store, clock, expires_in=None)
        connector.refresh_error = TransientUpstreamError(status_code=503)

        with pytest.raises(TransientUpstreamError):
            await tokens.get_access_token("proj-1", "google_analytics")
        assert connection_store.token_updates == 0

    @pytest.mark.asyncio
    async def test_unregistered_provider(self, tokens, connection_store, clock):
        connection_store.rows[("proj-1", "linkedin")] = ConnectionRecord(
            project_id="proj-1", provider="linkedin", refresh_token="r",
        )

        with pytest.raises(ProviderNotRegisteredError):
            await tokens.get_access_token("proj-1", "linkedin")

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, tokens, connection_store, connector, clock):
        _seed(connection_store, clock, expires_in=None)
        connector.refresh_delay = 0.01

        results = await asyncio.gather(
            *(tokens.get_access_token("proj-1", "google_analytics") for _ in range(5))
        )

        assert connector.refresh_calls == ["refresh-1"]
        assert set(results) == {"fresh-1"}
        assert connection_store.token_updates == 1


class TestConnectionLifecycle:
    def test_build_auth_url(self, tokens):
        assert tokens.build_auth_url("google_analytics", "abc") == (
            "https://auth.example.com/authorize?state=abc"
        )

    @pytest.mark.asyncio
    async def test_connect_stores_tokens(self, tokens, connection_store, clock):
        info = await tokens.connect("proj-1", "google_analytics", "code-1")

        stored = connection_store.rows[("proj-1", "google_analytics")]
        assert stored.refresh_token == "refresh-code-1"
        assert stored.access_token == "access-code-1"
        assert info.provider == "google_analytics"
        assert info.scopes == ["analytics.readonly"]
        assert not hasattr(info, "refresh_token")

    @pytest.mark.asyncio
    async def test_reconnect_supersedes(self, tokens, connection_store):
        await tokens.connect("proj-1", "google_analytics", "code-1")
        await tokens.connect("proj-1", "google_analytics", "code-2")

        assert len(connection_store.rows) == 1
        assert connection_store.rows[("proj-1", "google_analytics")].refresh_token == "refresh-code-2"

    @pytest.mark.asyncio
    async def test_connect_without_refresh_token(self, tokens, connector, connection_store):
        connector.exchange_grant = TokenGrant(access_token="a")

        with pytest.raises(UpstreamError):
            await tokens.connect("proj-1", "google_analytics", "code-1")
        assert connection_store.rows == {}

    @pytest.mark.asyncio
    async def test_disconnect_revokes_and_deletes(self, tokens, connection_store, connector, clock):
        _seed(connection_store, clock)

        assert await tokens.disconnect("proj-1", "google_analytics") is True
        assert connector.revoked == ["refresh-1"]
        assert connection_store.rows == {}

    @pytest.mark.asyncio
    async def test_disconnect_deletes_even_if_revoke_fails(self, tokens, connection_store, connector, clock):
        _seed(connection_store, clock)
        connector.revoke_error = TransientUpstreamError()

        assert await tokens.disconnect("proj-1", "google_analytics") is True
        assert connection_store.rows == {}

    @pytest.mark.asyncio
    async def test_disconnect_unknown(self, tokens):
        assert await tokens.disconnect("proj-1", "google_analytics") is False

    @pytest.mark.asyncio
    async def test_list_connections(self, tokens):
        await tokens.connect("proj-1", "google_analytics", "a")
        await tokens.connect("proj-2", "google_analytics", "b")

        listed = await tokens.list_connections("proj-1")

        assert [c.project_id for c in listed] == ["proj-1"]


class TestRefreshRaces:
    @pytest.mark.asyncio
    async def test_disconnect_during_refresh_stays_disconnected(self, tokens, connection_store, connector, clock):
        _seed(connection_store, clock, expires_in=None)
        connector.refresh_delay = 0.05

        task = asyncio.create_task(tokens.get_access_token("proj-1", "google_analytics"))
        await asyncio.sleep(0.01)
        assert await tokens.disconnect("proj-1", "google_analytics") is True

        with pytest.raises(ConnectionNotFoundError):
            await task
        assert await connection_store.get("proj-1", "google_analytics") is None
        assert connection_store.token_updates == 0

    @pytest.mark.asyncio
    async def test_reconnect_during_refresh_keeps_new_connection(self, tokens, connection_store, connector, clock):
        _seed(connection_store, clock, expires_in=None)
        connector.refresh_delay = 0.05

        task = asyncio.create_task(tokens.get_access_token("proj-1", "google_analytics"))
        await asyncio.sleep(0.01)
        await tokens.connect("proj-1", "google_analytics", "newcode")

        assert await task == "access-newcode"
        stored = await connection_store.get("proj-1", "google_analytics")
        assert stored.refresh_token == "refresh-newcode"
        assert stored.access_token == "access-newcode"
        assert connection_store.token_updates == 0
