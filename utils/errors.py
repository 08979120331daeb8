"""
Error taxonomy for the integration core.

Every error carries a stable ``code`` that ends up in sync history rows,
``SyncResult.error_code`` and API responses.
"""

from __future__ import annotations

from typing import Optional


class IntegrationError(Exception):
    """Base for all integration errors."""

    code = "INTEGRATION_ERROR"

    def __init__(self, message: str = "", *, code: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code


# ── Configuration ──────────────────────────────────────────────────────────


class ConfigurationError(IntegrationError):
    """Fatal misconfiguration. Never retried."""

    code = "CONFIGURATION_ERROR"


class ProviderNotConfiguredError(ConfigurationError):
    """OAuth client id / secret missing for a provider."""

    code = "PROVIDER_NOT_CONFIGURED"


# ── Client errors ──────────────────────────────────────────────────────────


class ValidationError(IntegrationError):
    code = "VALIDATION_ERROR"


class UnknownProviderError(ValidationError):
    code = "INVALID_PROVIDER"


class MobileOnlyProviderError(ValidationError):
    code = "MOBILE_ONLY"


class EmptyInputError(ValidationError):
    code = "EMPTY_INPUT"


class FeatureDisabledError(IntegrationError):
    code = "FEATURE_DISABLED"


class SubscriptionRequiredError(IntegrationError):
    code = "SUBSCRIPTION_REQUIRED"


class NotFoundError(IntegrationError):
    code = "NOT_FOUND"


class ConnectionInactiveError(IntegrationError):
    code = "CONNECTION_INACTIVE"

    def __init__(self, status: str) -> None:
        super().__init__(f"Integration connection is not active (status={status})")
        self.status = status


# ── Credentials ────────────────────────────────────────────────────────────


class CredentialError(IntegrationError):
    code = "CREDENTIAL_ERROR"


class FormatError(CredentialError):
    """Ciphertext is not valid base64 or is too short to hold IV + tag + data."""

    code = "INVALID_FORMAT"


class DecryptionError(CredentialError):
    """Authentication tag did not verify (tamper, truncation or wrong key)."""

    code = "DECRYPTION_FAILED"


class InvalidStateError(IntegrationError):
    """OAuth state token has a bad signature or an unreadable payload."""

    code = "INVALID_STATE"


# ── Sync ───────────────────────────────────────────────────────────────────


class AuthExpiredError(IntegrationError):
    """The user has to reconnect. Not auto-retried."""

    code = "AUTH_EXPIRED"


class RateLimitedError(IntegrationError):
    code = "RATE_LIMITED"

    def __init__(self, message: str = "", *, retry_after_ms: int) -> None:
        super().__init__(
            message or f"Rate limit approaching. Retry after {-(-retry_after_ms // 1000)} seconds."
        )
        self.retry_after_ms = retry_after_ms


class SyncError(IntegrationError):
    """Catch-all provider / network failure. The scheduler may retry later."""

    code = "SYNC_ERROR"


class ProviderAPIError(SyncError):
    """Non-2xx response from a provider API."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"Provider API returned {status_code}: {message}")
        self.status_code = status_code
        self.provider_message = message
