"""
Token manager — refresh expired access tokens and tear down connections.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from connectors.encryption import CredentialVault
from connectors.registry import ConnectorRegistry
from core.clock import Clock, system_clock
from database.models import IntegrationConnection
from utils.errors import AuthExpiredError, NotFoundError

logger = logging.getLogger(__name__)


def token_expired(connection: IntegrationConnection, now: datetime, *, skew_seconds: int = 0) -> bool:
    """True when the stored access token's expiry is in the past."""
    expires_at = connection.token_expires_at
    if expires_at is None:
        return False
    return expires_at < now + timedelta(seconds=skew_seconds)


class TokenRefresher:
    """
    One refresh attempt per call, no retries.

    Provider refresh tokens are commonly single-use, so a failed exchange
    yields ``None`` and the caller classifies it as AUTH_EXPIRED.
    """

    def __init__(
        self,
        *,
        registry: ConnectorRegistry,
        vault: CredentialVault,
        connections,
        clock: Clock = system_clock,
    ) -> None:
        self._registry = registry
        self._vault = vault
        self._connections = connections
        self._clock = clock

    async def refresh(self, connection: IntegrationConnection) -> Optional[str]:
        """
        Exchange the stored refresh token and persist the new tokens.

        Returns the plaintext access token, or ``None`` if the exchange
        failed.  Raises ``AuthExpiredError`` when no refresh token is stored.
        """
        provider = connection.provider
        if not connection.refresh_token_encrypted:
            raise AuthExpiredError(
                "Access token expired and no refresh token available. Please reconnect."
            )

        connector = self._registry.get(provider)
        if connector is None:
            logger.error("No connector for provider %s", provider)
            return None

        try:
            refresh_token = self._vault.decrypt(connection.refresh_token_encrypted)
            tokens = await connector.refresh_access_token(refresh_token)
        except Exception as exc:
            logger.warning(
                "Token refresh failed for %s/%s: %s", provider, connection.user_id, exc
            )
            return None

        connection.access_token_encrypted = self._vault.encrypt(tokens.access_token)
        # Some providers rotate refresh tokens; keep the old one otherwise.
        if tokens.refresh_token:
            connection.refresh_token_encrypted = self._vault.encrypt(tokens.refresh_token)
        connection.token_expires_at = tokens.expires_at
        connection.updated_at = self._clock.now()
        await self._connections.save(connection)

        logger.info("Refreshed %s token for user %s", provider, connection.user_id)
        return tokens.access_token


async def disconnect(
    user_id: str,
    provider: str,
    *,
    registry: ConnectorRegistry,
    vault: CredentialVault,
    connections,
) -> None:
    """
    Revoke at the provider (best effort) and delete the connection together
    with its auto-sync settings.  Raises ``NotFoundError`` if not connected.
    """
    conn = await connections.get(user_id, provider)
    if conn is None:
        raise NotFoundError("Connection not found")

    connector = registry.get(provider)
    if connector is not None and conn.access_token_encrypted:
        try:
            await connector.revoke_token(vault.decrypt(conn.access_token_encrypted))
        except Exception as exc:
            logger.warning("Revocation failed for %s/%s (ignored): %s", provider, user_id, exc)

    if not await connections.delete(user_id, provider):
        raise NotFoundError("Connection not found")
    logger.info("Disconnected %s for user %s", provider, user_id)
