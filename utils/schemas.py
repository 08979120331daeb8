"""
Pydantic schemas for the integration core and its API.

Wire JSON is camelCase (``recordsImported``); Python attributes stay
snake_case.  Build responses with ``model.model_dump(by_alias=True)``.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ═══════════════════════════════════════════════════════════════════════════════
# Enumerations
# ═══════════════════════════════════════════════════════════════════════════════


class DataType(str, Enum):
    workouts = "workouts"
    calories_burned = "calories_burned"
    weight = "weight"
    heart_rate = "heart_rate"
    sleep = "sleep"
    steps = "steps"


class ConnectionStatus(str, Enum):
    active = "active"
    disconnected = "disconnected"
    expired = "expired"
    error = "error"


class SyncType(str, Enum):
    manual = "manual"
    auto = "auto"


class SyncStatus(str, Enum):
    success = "success"
    partial = "partial"
    failed = "failed"


# ═══════════════════════════════════════════════════════════════════════════════
# Provider value objects
# ═══════════════════════════════════════════════════════════════════════════════


class TokenData(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: List[str] = Field(default_factory=list)


class ProviderUserInfo(BaseModel):
    provider_id: str
    email: Optional[str] = None
    name: Optional[str] = None


class ImportedActivity(BaseModel):
    """A remote workout, already mapped to our activity vocabulary."""

    external_id: str
    activity_type: str
    activity_name: str
    activity_date: date
    timezone: str = "UTC"
    calories_burned: Optional[float] = None
    activity_data: Dict[str, Any] = Field(default_factory=dict)


class ProviderInfo(_CamelModel):
    provider: str
    provider_name: str
    description: str
    category: str
    logo_url: str
    supported_data_types: List[str]
    mobile_only: bool = False
    is_enabled: bool = False
    is_connected: bool = False
    connection_status: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    last_successful_sync_at: Optional[datetime] = None
    provider_user_id: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════════
# OAuth
# ═══════════════════════════════════════════════════════════════════════════════


class StatePayload(BaseModel):
    user_id: str
    provider: str
    nonce: str
    issued_at: float  # epoch seconds


class AuthorizationRequest(_CamelModel):
    auth_url: str
    provider: str
    state: str


class CallbackOutcome(BaseModel):
    """Where the OAuth callback sends the browser."""

    redirect_url: str
    connected: bool = False
    error: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════════
# Sync
# ═══════════════════════════════════════════════════════════════════════════════


class SyncResult(_CamelModel):
    success: bool
    records_imported: int = 0
    data_types_synced: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None
    retry_after_ms: Optional[int] = None
    duration_ms: Optional[int] = None

    @classmethod
    def failed(
        cls,
        error: str,
        error_code: str,
        *,
        retry_after_ms: Optional[int] = None,
    ) -> "SyncResult":
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            retry_after_ms=retry_after_ms,
        )


class SyncRequest(_CamelModel):
    data_types: Optional[List[str]] = None


class SyncHistoryItem(_CamelModel):
    id: str
    sync_type: str
    status: str
    records_imported: int = 0
    data_types_synced: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None


class SyncHistoryPage(_CamelModel):
    history: List[SyncHistoryItem] = Field(default_factory=list)
    total: int = 0
    limit: int = 10
    offset: int = 0


# ═══════════════════════════════════════════════════════════════════════════════
# Auto-sync
# ═══════════════════════════════════════════════════════════════════════════════


class AutoSyncUpdate(_CamelModel):
    is_enabled: bool
    frequency_minutes: Optional[int] = None
    data_types: Optional[List[str]] = None


class AutoSyncView(_CamelModel):
    provider: str
    is_enabled: bool = False
    frequency_minutes: int
    data_types: List[str] = Field(default_factory=list)
    consecutive_failures: int = 0
    last_failure_at: Optional[datetime] = None
    last_failure_reason: Optional[str] = None
    disabled_due_to_failure: bool = False


# ═══════════════════════════════════════════════════════════════════════════════
# Listing / details
# ═══════════════════════════════════════════════════════════════════════════════


class IntegrationList(_CamelModel):
    integrations: List[ProviderInfo] = Field(default_factory=list)
    grouped: Dict[str, List[ProviderInfo]] = Field(default_factory=dict)
    any_enabled: bool = False


class ConnectionView(_CamelModel):
    status: str
    last_sync_at: Optional[datetime] = None
    last_successful_sync_at: Optional[datetime] = None
    provider_user_id: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    last_error: Optional[str] = None
    connected_at: Optional[datetime] = None


class IntegrationDetails(_CamelModel):
    provider: str
    provider_name: str
    description: str
    category: str
    logo_url: str
    supported_data_types: List[str]
    is_enabled: bool = False
    mobile_only: bool = False
    connection: Optional[ConnectionView] = None
    auto_sync: Optional[AutoSyncView] = None
