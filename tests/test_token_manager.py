"""
Tests for TokenRefresher and disconnect.
"""

from datetime import timedelta

import pytest

from connectors.encryption import CredentialVault
from connectors.token_manager import TokenRefresher, disconnect, token_expired
from core.clock import FixedClock
from database.models import IntegrationAutoSync
from utils.errors import AuthExpiredError, NotFoundError
from utils.schemas import TokenData
from tests.fakes import (
    TEST_KEY,
    USER_ID,
    FakeConnector,
    InMemoryAutoSync,
    InMemoryConnections,
    InMemoryUsers,
    make_connection,
    make_registry,
)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def vault():
    return CredentialVault(TEST_KEY)


@pytest.fixture
def connector(clock):
    return FakeConnector(clock=clock)


@pytest.fixture
def connections():
    return InMemoryConnections()


@pytest.fixture
def refresher(connector, vault, connections, clock):
    return TokenRefresher(
        registry=make_registry(connector), vault=vault, connections=connections, clock=clock
    )


class TestTokenExpired:
    def test_past_expiry(self, vault, clock):
        conn = make_connection(vault, expires_at=clock.now() - timedelta(seconds=1))
        assert token_expired(conn, clock.now())

    def test_future_expiry(self, vault, clock):
        conn = make_connection(vault, expires_at=clock.now() + timedelta(hours=1))
        assert not token_expired(conn, clock.now())

    def test_no_expiry_never_expires(self, vault, clock):
        conn = make_connection(vault)
        conn.token_expires_at = None
        assert not token_expired(conn, clock.now())

    def test_skew(self, vault, clock):
        conn = make_connection(vault, expires_at=clock.now() + timedelta(seconds=30))
        assert token_expired(conn, clock.now(), skew_seconds=60)


class TestRefresh:
    @pytest.mark.asyncio
    async def test_success_persists_new_tokens(self, refresher, connector, vault, connections, clock):
        conn = make_connection(vault, expires_at=clock.now() - timedelta(hours=1))
        new_expiry = clock.now() + timedelta(hours=6)
        connector.refreshed_tokens = TokenData(
            access_token="access-2", refresh_token="refresh-2", expires_at=new_expiry
        )

        token = await refresher.refresh(conn)

        assert token == "access-2"
        assert connector.refresh_calls == ["refresh-1"]
        assert vault.decrypt(conn.access_token_encrypted) == "access-2"
        assert vault.decrypt(conn.refresh_token_encrypted) == "refresh-2"
        assert conn.token_expires_at == new_expiry
        assert connections.saves == 1

    @pytest.mark.asyncio
    async def test_keeps_old_refresh_token_when_not_rotated(self, refresher, connector, vault):
        conn = make_connection(vault)
        old_ct = conn.refresh_token_encrypted
        connector.refreshed_tokens = TokenData(access_token="access-2")
        assert await refresher.refresh(conn) == "access-2"
        assert conn.refresh_token_encrypted == old_ct

    @pytest.mark.asyncio
    async def test_no_refresh_token_raises_auth_expired(self, refresher, vault, connector):
        conn = make_connection(vault, refresh_token=None)
        with pytest.raises(AuthExpiredError):
            await refresher.refresh(conn)
        assert connector.refresh_calls == []

    @pytest.mark.asyncio
    async def test_exchange_failure_returns_none_once(self, refresher, connector, vault, connections):
        conn = make_connection(vault)
        original = conn.access_token_encrypted
        connector.refresh_error = RuntimeError("invalid_grant")

        assert await refresher.refresh(conn) is None
        assert len(connector.refresh_calls) == 1
        assert conn.access_token_encrypted == original
        assert connections.saves == 0

    @pytest.mark.asyncio
    async def test_undecryptable_refresh_token_returns_none(self, refresher, vault):
        conn = make_connection(vault)
        conn.refresh_token_encrypted = CredentialVault("ab" * 32).encrypt("refresh-1")
        assert await refresher.refresh(conn) is None

    @pytest.mark.asyncio
    async def test_unknown_provider_returns_none(self, refresher, vault):
        conn = make_connection(vault, provider="ghost")
        assert await refresher.refresh(conn) is None


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_revokes_and_deletes_with_auto_sync(self, connector, vault, connections):
        users = InMemoryUsers()
        auto_sync = InMemoryAutoSync(connections, users)
        await connections.save(make_connection(vault))
        await auto_sync.save(IntegrationAutoSync(user_id=USER_ID, provider="fakefit", is_enabled=True))

        await disconnect(
            USER_ID, "fakefit", registry=make_registry(connector), vault=vault, connections=connections
        )

        assert connector.revoked == ["access-1"]
        assert await connections.get(USER_ID, "fakefit") is None
        assert await auto_sync.get(USER_ID, "fakefit") is None

    @pytest.mark.asyncio
    async def test_revoke_failure_ignored(self, connector, vault, connections):
        connector.revoke_error = RuntimeError("provider down")
        await connections.save(make_connection(vault))
        await disconnect(
            USER_ID, "fakefit", registry=make_registry(connector), vault=vault, connections=connections
        )
        assert connections.rows == {}

    @pytest.mark.asyncio
    async def test_not_connected(self, connector, vault, connections):
        with pytest.raises(NotFoundError):
            await disconnect(
                USER_ID, "fakefit", registry=make_registry(connector), vault=vault, connections=connections
            )
