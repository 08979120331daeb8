"""
BaseConnector — capability interface for fitness data providers.

Every provider (Strava, Fitbit, …) subclasses this and implements the OAuth
methods plus ``fetch_activities``.  The orchestration core (authorization
flow, token refresh, sync engine) only talks to this interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from connectors.rate_limiter import RateLimiter
from utils.schemas import ImportedActivity, ProviderUserInfo, TokenData


class BaseConnector(ABC):
    """Abstract base for all provider connectors."""

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique slug: 'strava', 'fitbit'."""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    @abstractmethod
    def scopes(self) -> List[str]:
        """OAuth scopes required by this connector."""
        ...

    @property
    @abstractmethod
    def supported_data_types(self) -> List[str]:
        ...

    @property
    def description(self) -> str:
        return ""

    @property
    def category(self) -> str:
        """'wearable' | 'workout' | 'scale'."""
        return "workout"

    @property
    def logo_url(self) -> str:
        return f"/images/integrations/{self.provider_name}.svg"

    @property
    def requires_pkce(self) -> bool:
        return False

    @property
    def mobile_only(self) -> bool:
        """Mobile-only providers cannot be connected through web OAuth."""
        return False

    @property
    @abstractmethod
    def rate_limiter(self) -> RateLimiter:
        """Process-wide limiter shared by every call to this provider's API."""
        ...

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    def get_auth_url(
        self,
        state: str,
        redirect_uri: str,
        code_challenge: Optional[str] = None,
    ) -> str:
        """Build the provider's authorization URL."""
        ...

    @abstractmethod
    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> TokenData:
        """Exchange an authorization code for tokens. Raises on any failure."""
        ...

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> TokenData:
        """Exchange a refresh token for a new access token. Raises on any failure."""
        ...

    @abstractmethod
    async def get_user_info(self, access_token: str) -> ProviderUserInfo:
        ...

    async def revoke_token(self, access_token: str) -> bool:
        """
        Revoke the token at the provider (optional).
        Returns True on success, False if provider doesn't support revocation.
        """
        return False

    # ── Data ────────────────────────────────────────────────────────────

    @abstractmethod
    async def fetch_activities(
        self,
        access_token: str,
        since: datetime,
    ) -> List[ImportedActivity]:
        """
        Fetch workouts started after ``since``, mapped to ``ImportedActivity``.

        Raises ``RateLimitedError`` when the limiter refuses the call and
        ``ProviderAPIError`` on a non-2xx response.
        """
        ...

    # ── Helpers ─────────────────────────────────────────────────────────

    def is_configured(self) -> bool:
        """
        Return True if this connector has all required config
        (client id and secret).
        """
        return True
