"""
AuthorizationFlow — connect a provider via the OAuth authorization-code flow.

``get_authorization_url`` validates the request, signs a CSRF state token
and (for PKCE providers) parks the code_verifier server-side keyed by the
state nonce.  ``handle_callback`` is a linear state machine whose every
branch ends in a redirect back to the frontend.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from typing import Optional
from urllib.parse import urlencode

from config.settings import Settings
from connectors.encryption import CredentialVault
from connectors.registry import ConnectorRegistry
from connectors.state import PkceVerifierStore, StateSigner, code_challenge_for, new_code_verifier
from core.clock import Clock, system_clock
from core.feature_flags import FeatureFlagCache
from database.models import IntegrationConnection
from utils.errors import (
    FeatureDisabledError,
    InvalidStateError,
    MobileOnlyProviderError,
    ProviderNotConfiguredError,
    UnknownProviderError,
)
from utils.schemas import AuthorizationRequest, CallbackOutcome, StatePayload

logger = logging.getLogger(__name__)


class AuthorizationFlow:
    def __init__(
        self,
        *,
        settings: Settings,
        registry: ConnectorRegistry,
        flags: FeatureFlagCache,
        vault: CredentialVault,
        connections,
        state_signer: Optional[StateSigner] = None,
        pkce_store: Optional[PkceVerifierStore] = None,
        clock: Clock = system_clock,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._flags = flags
        self._vault = vault
        self._connections = connections
        self._signer = state_signer or StateSigner(settings.oauth_state_secret)
        self._pkce = pkce_store or PkceVerifierStore(settings.oauth_state_ttl_seconds)
        self._clock = clock

    # ── Connect ─────────────────────────────────────────────────────────

    async def get_authorization_url(self, user_id: str, provider: str) -> AuthorizationRequest:
        connector = self._registry.get(provider)
        if connector is None:
            raise UnknownProviderError(f"Invalid provider: {provider}")
        if not await self._flags.is_integration_enabled(provider):
            raise FeatureDisabledError("This integration is currently not available")
        if connector.mobile_only:
            raise MobileOnlyProviderError("This integration requires the mobile app")
        if not connector.is_configured():
            logger.error("OAuth credentials not configured for provider: %s", provider)
            raise ProviderNotConfiguredError(
                "This integration is not properly configured. Please contact support."
            )

        payload = StatePayload(
            user_id=str(user_id),
            provider=provider,
            nonce=secrets.token_hex(16),
            issued_at=self._clock.timestamp(),
        )
        state = self._signer.sign(payload)

        code_challenge = None
        if connector.requires_pkce:
            verifier = new_code_verifier()
            self._pkce.put(payload.nonce, verifier)
            code_challenge = code_challenge_for(verifier)

        auth_url = connector.get_auth_url(
            state,
            self._settings.redirect_uri(provider),
            code_challenge=code_challenge,
        )
        return AuthorizationRequest(auth_url=auth_url, provider=provider, state=state)

    # ── Callback ────────────────────────────────────────────────────────

    def _redirect(self, provider: str, *, error: Optional[str] = None) -> CallbackOutcome:
        if error:
            query = urlencode({"error": error, "provider": provider})
        else:
            query = urlencode({"connected": provider})
        return CallbackOutcome(
            redirect_url=f"{self._settings.app_url}/dashboard/integrations?{query}",
            connected=error is None,
            error=error,
        )

    async def handle_callback(
        self,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        provider_error: Optional[str] = None,
    ) -> CallbackOutcome:
        try:
            return await self._handle_callback(provider, code, state, provider_error)
        except Exception:
            logger.exception("OAuth callback failed for %s", provider)
            return self._redirect(provider, error="callback_error")

    async def _handle_callback(
        self,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        provider_error: Optional[str],
    ) -> CallbackOutcome:
        if provider_error:
            logger.info("Provider %s denied authorization: %s", provider, provider_error)
            return self._redirect(provider, error="oauth_denied")

        if not code or not state:
            return self._redirect(provider, error="invalid_callback")

        try:
            payload = self._signer.verify(state)
        except InvalidStateError as exc:
            logger.warning("Rejected OAuth state for %s: %s", provider, exc)
            return self._redirect(provider, error="invalid_state")

        if payload.provider != provider:
            return self._redirect(provider, error="state_mismatch")

        if self._clock.timestamp() - payload.issued_at > self._settings.oauth_state_ttl_seconds:
            return self._redirect(provider, error="state_expired")

        connector = self._registry.get(provider)
        if connector is None:
            return self._redirect(provider, error="invalid_provider")

        code_verifier = self._pkce.pop(payload.nonce) if connector.requires_pkce else None
        redirect_uri = self._settings.redirect_uri(provider)
        try:
            tokens = await connector.exchange_code(code, redirect_uri, code_verifier)
        except Exception as exc:
            logger.error("Token exchange failed for %s: %s", provider, exc)
            return self._redirect(provider, error="token_exchange_failed")

        access_ct = self._vault.encrypt(tokens.access_token)
        refresh_ct = self._vault.encrypt_optional(tokens.refresh_token)

        provider_user_id = None
        try:
            info = await connector.get_user_info(tokens.access_token)
            provider_user_id = info.provider_id
        except Exception as exc:
            logger.warning("Could not fetch %s profile (continuing): %s", provider, exc)

        await self._upsert_connection(
            user_id=payload.user_id,
            provider=provider,
            access_ct=access_ct,
            refresh_ct=refresh_ct,
            expires_at=tokens.expires_at,
            provider_user_id=provider_user_id,
            scopes=tokens.scopes or list(connector.scopes),
        )
        logger.info("OAuth connected: user=%s provider=%s", payload.user_id, provider)
        return self._redirect(provider)

    async def _upsert_connection(
        self,
        *,
        user_id: str,
        provider: str,
        access_ct: str,
        refresh_ct: Optional[str],
        expires_at,
        provider_user_id: Optional[str],
        scopes,
    ) -> IntegrationConnection:
        now = self._clock.now()
        existing = await self._connections.get(user_id, provider)
        if existing is None:
            existing = IntegrationConnection(
                connection_id=uuid.uuid4(),
                user_id=user_id,
                provider=provider,
                connected_at=now,
                last_sync_at=None,
                last_successful_sync_at=None,
            )
        existing.access_token_encrypted = access_ct
        existing.refresh_token_encrypted = refresh_ct
        existing.token_expires_at = expires_at
        existing.provider_user_id = provider_user_id
        existing.scopes = list(scopes)
        existing.status = "active"
        existing.last_error = None
        existing.updated_at = now
        return await self._connections.save(existing)
