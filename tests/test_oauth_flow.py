"""
Tests for AuthorizationFlow (connect URL + callback state machine).
"""

from urllib.parse import parse_qs, urlparse

import pytest
from unittest.mock import AsyncMock

from connectors.encryption import CredentialVault
from connectors.oauth_flow import AuthorizationFlow
from connectors.state import StateSigner, code_challenge_for
from core.clock import FixedClock
from core.feature_flags import FeatureFlagCache
from utils.errors import (
    FeatureDisabledError,
    MobileOnlyProviderError,
    ProviderNotConfiguredError,
    UnknownProviderError,
)
from utils.schemas import StatePayload
from tests.fakes import (
    TEST_KEY,
    USER_ID,
    FakeConnector,
    InMemoryConnections,
    InMemoryFlags,
    make_connection,
    make_registry,
    make_settings,
)


class _Env:
    def __init__(self, *connectors, flags=None):
        self.clock = FixedClock()
        self.settings = make_settings()
        self.vault = CredentialVault(TEST_KEY)
        self.connectors = connectors or (FakeConnector(clock=self.clock),)
        self.connector = self.connectors[0]
        self.flag_store = InMemoryFlags(
            flags if flags is not None else {f"integration_{c.provider_name}": True for c in self.connectors}
        )
        self.connections = InMemoryConnections()
        self.flow = AuthorizationFlow(
            settings=self.settings,
            registry=make_registry(*self.connectors),
            flags=FeatureFlagCache(self.flag_store),
            vault=self.vault,
            connections=self.connections,
            clock=self.clock,
        )

    async def state(self, provider="fakefit"):
        request = await self.flow.get_authorization_url(USER_ID, provider)
        return request.state


def _query(url):
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class TestAuthorizationUrl:
    @pytest.mark.asyncio
    async def test_returns_signed_state(self):
        env = _Env()
        request = await env.flow.get_authorization_url(USER_ID, "fakefit")

        payload = StateSigner(env.settings.oauth_state_secret).verify(request.state)
        assert payload.user_id == USER_ID
        assert payload.provider == "fakefit"
        assert len(payload.nonce) == 32
        assert payload.issued_at == env.clock.timestamp()
        assert _query(request.auth_url)["state"] == request.state
        assert _query(request.auth_url)["redirect_uri"] == (
            "https://api.example.com/api/v1/integrations/oauth/callback/fakefit"
        )
        assert "code_challenge" not in request.auth_url

    @pytest.mark.asyncio
    async def test_nonce_differs_per_call(self):
        env = _Env()
        assert await env.state() != await env.state()

    @pytest.mark.asyncio
    async def test_unknown_provider(self):
        with pytest.raises(UnknownProviderError):
            await _Env().flow.get_authorization_url(USER_ID, "nope")

    @pytest.mark.asyncio
    async def test_disabled_flag(self):
        env = _Env(flags={})
        with pytest.raises(FeatureDisabledError):
            await env.flow.get_authorization_url(USER_ID, "fakefit")

    @pytest.mark.asyncio
    async def test_mobile_only(self):
        env = _Env(FakeConnector(mobile_only=True))
        with pytest.raises(MobileOnlyProviderError):
            await env.flow.get_authorization_url(USER_ID, "fakefit")

    @pytest.mark.asyncio
    async def test_not_configured(self):
        env = _Env(FakeConnector(configured=False))
        with pytest.raises(ProviderNotConfiguredError):
            await env.flow.get_authorization_url(USER_ID, "fakefit")

    @pytest.mark.asyncio
    async def test_flag_checked_before_mobile_only(self):
        env = _Env(FakeConnector(mobile_only=True), flags={})
        with pytest.raises(FeatureDisabledError):
            await env.flow.get_authorization_url(USER_ID, "fakefit")


class TestCallback:
    @pytest.mark.asyncio
    async def test_success_stores_encrypted_connection(self):
        env = _Env()
        state = await env.state()
        outcome = await env.flow.handle_callback("fakefit", "auth-code", state)

        assert outcome.connected is True
        assert outcome.redirect_url == "https://app.example.com/dashboard/integrations?connected=fakefit"

        conn = await env.connections.get(USER_ID, "fakefit")
        assert conn.status == "active"
        assert conn.access_token_encrypted != "access-1"
        assert env.vault.decrypt(conn.access_token_encrypted) == "access-1"
        assert env.vault.decrypt(conn.refresh_token_encrypted) == "refresh-1"
        assert conn.provider_user_id == "athlete-42"
        assert conn.token_expires_at == env.connector.tokens.expires_at
        assert env.connector.exchange_calls == [
            ("auth-code", env.settings.redirect_uri("fakefit"), None)
        ]

    @pytest.mark.asyncio
    async def test_provider_error_is_denied(self):
        env = _Env()
        outcome = await env.flow.handle_callback("fakefit", None, None, "access_denied")
        assert outcome.error == "oauth_denied"
        assert _query(outcome.redirect_url) == {"error": "oauth_denied", "provider": "fakefit"}
        assert env.connections.rows == {}

    @pytest.mark.asyncio
    async def test_missing_code(self):
        env = _Env()
        outcome = await env.flow.handle_callback("fakefit", None, await env.state())
        assert outcome.error == "invalid_callback"

    @pytest.mark.asyncio
    async def test_missing_state(self):
        outcome = await _Env().flow.handle_callback("fakefit", "code", None)
        assert outcome.error == "invalid_callback"

    @pytest.mark.asyncio
    async def test_tampered_state(self):
        env = _Env()
        state = await env.state()
        outcome = await env.flow.handle_callback("fakefit", "code", state[:-1] + ("0" if state[-1] != "0" else "1"))
        assert outcome.error == "invalid_state"
        assert env.connector.exchange_calls == []

    @pytest.mark.asyncio
    async def test_state_signed_with_other_secret(self):
        env = _Env()
        forged = StateSigner("attacker-secret").sign(
            StatePayload(user_id=USER_ID, provider="fakefit", nonce="n", issued_at=env.clock.timestamp())
        )
        outcome = await env.flow.handle_callback("fakefit", "code", forged)
        assert outcome.error == "invalid_state"

    @pytest.mark.asyncio
    async def test_state_for_other_provider(self):
        env = _Env(FakeConnector(), FakeConnector(provider="otherfit"))
        state = await env.state("otherfit")
        outcome = await env.flow.handle_callback("fakefit", "code", state)
        assert outcome.error == "state_mismatch"

    @pytest.mark.asyncio
    async def test_state_sixteen_minutes_old_is_expired(self):
        env = _Env()
        state = await env.state()
        env.clock.advance(minutes=16)
        outcome = await env.flow.handle_callback("fakefit", "code", state)
        assert outcome.error == "state_expired"
        assert env.connector.exchange_calls == []

    @pytest.mark.asyncio
    async def test_state_one_minute_old_is_accepted(self):
        env = _Env()
        state = await env.state()
        env.clock.advance(minutes=1)
        outcome = await env.flow.handle_callback("fakefit", "code", state)
        assert outcome.connected is True

    @pytest.mark.asyncio
    async def test_unknown_provider_in_valid_state(self):
        env = _Env()
        state = StateSigner(env.settings.oauth_state_secret).sign(
            StatePayload(user_id=USER_ID, provider="ghost", nonce="n", issued_at=env.clock.timestamp())
        )
        outcome = await env.flow.handle_callback("ghost", "code", state)
        assert outcome.error == "invalid_provider"

    @pytest.mark.asyncio
    async def test_token_exchange_failure(self):
        env = _Env()
        env.connector.exchange_error = RuntimeError("bad code")
        outcome = await env.flow.handle_callback("fakefit", "code", await env.state())
        assert outcome.error == "token_exchange_failed"
        assert env.connections.rows == {}

    @pytest.mark.asyncio
    async def test_profile_fetch_failure_is_not_fatal(self):
        env = _Env()
        env.connector.user_info_error = RuntimeError("profile down")
        outcome = await env.flow.handle_callback("fakefit", "code", await env.state())
        assert outcome.connected is True
        conn = await env.connections.get(USER_ID, "fakefit")
        assert conn.provider_user_id is None

    @pytest.mark.asyncio
    async def test_reconnect_updates_existing_row(self):
        env = _Env()
        existing = make_connection(env.vault, access_token="old", status="expired")
        existing.last_error = "Authorization expired"
        await env.connections.save(existing)

        outcome = await env.flow.handle_callback("fakefit", "code", await env.state())

        assert outcome.connected is True
        assert len(env.connections.rows) == 1
        conn = await env.connections.get(USER_ID, "fakefit")
        assert conn.connection_id == existing.connection_id
        assert conn.status == "active"
        assert conn.last_error is None
        assert env.vault.decrypt(conn.access_token_encrypted) == "access-1"

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_callback_error(self):
        env = _Env()
        env.connections.save = AsyncMock(side_effect=RuntimeError("db down"))
        outcome = await env.flow.handle_callback("fakefit", "code", await env.state())
        assert outcome.error == "callback_error"
        assert "error=callback_error" in outcome.redirect_url


class TestPkce:
    @pytest.mark.asyncio
    async def test_verifier_round_trip(self):
        env = _Env(FakeConnector(requires_pkce=True))
        request = await env.flow.get_authorization_url(USER_ID, "fakefit")
        params = _query(request.auth_url)
        assert params["code_challenge_method"] == "S256"

        outcome = await env.flow.handle_callback("fakefit", "code", request.state)

        assert outcome.connected is True
        _, _, verifier = env.connector.exchange_calls[0]
        assert verifier is not None and len(verifier) == 43
        assert code_challenge_for(verifier) == params["code_challenge"]

    @pytest.mark.asyncio
    async def test_verifier_is_single_use(self):
        env = _Env(FakeConnector(requires_pkce=True))
        state = await env.state()
        await env.flow.handle_callback("fakefit", "code", state)
        await env.flow.handle_callback("fakefit", "code", state)
        assert env.connector.exchange_calls[1][2] is None
