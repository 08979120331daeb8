"""
Integration API routes — list, connect/callback, sync, history, auto-sync,
disconnect.

Route prefix: /api/v1/integrations
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse

from api.dependencies import IntegrationServices, get_services
from auth.dependencies import get_current_user_id
from connectors.token_manager import disconnect
from utils.errors import (
    ConnectionInactiveError,
    FeatureDisabledError,
    IntegrationError,
    NotFoundError,
    ProviderNotConfiguredError,
    SubscriptionRequiredError,
    UnknownProviderError,
    ValidationError,
)
from utils.schemas import (
    AutoSyncUpdate,
    ConnectionView,
    IntegrationDetails,
    IntegrationList,
    ProviderInfo,
    SyncHistoryItem,
    SyncHistoryPage,
    SyncRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["integrations"])

CATEGORIES = ("wearable", "workout", "scale")


def _http_error(exc: IntegrationError) -> HTTPException:
    """Map a domain error onto an HTTP status."""
    if isinstance(exc, (FeatureDisabledError, SubscriptionRequiredError)):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ConnectionInactiveError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ProviderNotConfiguredError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, ValidationError):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail={"error": exc.message, "code": exc.code})


def _require_provider(services: IntegrationServices, provider: str):
    connector = services.registry.get(provider)
    if connector is None:
        raise _http_error(UnknownProviderError("Invalid provider"))
    return connector


def _provider_info(meta: Dict[str, Any], is_enabled: bool, connection) -> ProviderInfo:
    return ProviderInfo(
        **meta,
        is_enabled=is_enabled,
        is_connected=connection is not None and connection.status == "active",
        connection_status=connection.status if connection else None,
        last_sync_at=connection.last_sync_at if connection else None,
        last_successful_sync_at=connection.last_successful_sync_at if connection else None,
        provider_user_id=connection.provider_user_id if connection else None,
    )


# ── Listing ────────────────────────────────────────────────────────────


@router.get("")
async def list_integrations(
    user_id: str = Depends(get_current_user_id),
    services: IntegrationServices = Depends(get_services),
) -> Dict[str, Any]:
    """All known providers with the caller's connection state."""
    connections = {c.provider: c for c in await services.connections.list_for_user(user_id)}
    integrations = []
    for meta in services.registry.list_providers():
        provider = meta["provider"]
        enabled = await services.flags.is_integration_enabled(provider)
        integrations.append(_provider_info(meta, enabled, connections.get(provider)))

    grouped: Dict[str, list] = {category: [] for category in CATEGORIES}
    for info in integrations:
        grouped.setdefault(info.category, []).append(info)

    body = IntegrationList(
        integrations=integrations,
        grouped=grouped,
        any_enabled=any(i.is_enabled for i in integrations),
    )
    return body.model_dump(by_alias=True, mode="json")


@router.get("/oauth/callback/{provider}")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    services: IntegrationServices = Depends(get_services),
) -> RedirectResponse:
    """
    OAuth callback — the provider redirects here after consent.

    Always answers with a redirect back to the dashboard, carrying either
    ``connected=<provider>`` or ``error=<code>&provider=<provider>``.
    """
    outcome = await services.flow.handle_callback(provider, code, state, error)
    return RedirectResponse(outcome.redirect_url, status_code=status.HTTP_302_FOUND)


@router.get("/{provider}")
async def get_integration(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    services: IntegrationServices = Depends(get_services),
) -> Dict[str, Any]:
    connector = _require_provider(services, provider)
    connection = await services.connections.get(user_id, provider)

    auto_sync = None
    if await services.policy.is_subscribed(user_id):
        if await services.auto_sync.get(user_id, provider) is not None:
            auto_sync = await services.policy.get_settings(user_id, provider)

    details = IntegrationDetails(
        provider=connector.provider_name,
        provider_name=connector.display_name,
        description=connector.description,
        category=connector.category,
        logo_url=connector.logo_url,
        supported_data_types=list(connector.supported_data_types),
        is_enabled=await services.flags.is_integration_enabled(provider),
        mobile_only=connector.mobile_only,
        connection=ConnectionView(
            status=connection.status,
            last_sync_at=connection.last_sync_at,
            last_successful_sync_at=connection.last_successful_sync_at,
            provider_user_id=connection.provider_user_id,
            scopes=list(connection.scopes or []),
            last_error=connection.last_error,
            connected_at=connection.connected_at,
        )
        if connection
        else None,
        auto_sync=auto_sync,
    )
    return details.model_dump(by_alias=True, mode="json")


# ── OAuth connect ──────────────────────────────────────────────────────


@router.get("/{provider}/connect")
async def connect(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    services: IntegrationServices = Depends(get_services),
) -> Dict[str, Any]:
    """
    Get the OAuth authorization URL for a provider.

    Frontend should navigate the browser to ``authUrl``.
    """
    try:
        request = await services.flow.get_authorization_url(user_id, provider)
    except IntegrationError as exc:
        raise _http_error(exc)
    return request.model_dump(by_alias=True)


# ── Sync ───────────────────────────────────────────────────────────────


@router.post("/{provider}/sync")
async def sync_now(
    provider: str,
    body: Optional[SyncRequest] = None,
    user_id: str = Depends(get_current_user_id),
    services: IntegrationServices = Depends(get_services),
) -> Dict[str, Any]:
    """Run a manual sync. Sync failures come back as 200 with ``success=false``."""
    _require_provider(services, provider)
    if not await services.flags.is_integration_enabled(provider):
        raise _http_error(FeatureDisabledError("This integration is currently not available"))

    connection = await services.connections.get(user_id, provider)
    if connection is None:
        raise _http_error(NotFoundError("Integration not connected"))
    if connection.status != "active":
        raise _http_error(ConnectionInactiveError(connection.status))

    data_types = body.data_types if body else None
    result = await services.engine.run(user_id, provider, data_types, "manual")
    return result.model_dump(by_alias=True, exclude_none=True)


@router.get("/{provider}/sync-history")
async def sync_history(
    provider: str,
    limit: int = Query(10),
    offset: int = Query(0),
    user_id: str = Depends(get_current_user_id),
    services: IntegrationServices = Depends(get_services),
) -> Dict[str, Any]:
    _require_provider(services, provider)
    limit = max(1, min(100, limit))
    offset = max(0, offset)

    rows, total = await services.history.list_for(user_id, provider, limit=limit, offset=offset)
    page = SyncHistoryPage(
        history=[
            SyncHistoryItem(
                id=str(row.history_id),
                sync_type=row.sync_type,
                status=row.status,
                records_imported=row.records_imported or 0,
                data_types_synced=list(row.data_types_synced or []),
                error_message=row.error_message,
                error_code=row.error_code,
                started_at=row.started_at,
                completed_at=row.completed_at,
                duration_ms=row.duration_ms,
            )
            for row in rows
        ],
        total=total,
        limit=limit,
        offset=offset,
    )
    return page.model_dump(by_alias=True, mode="json")


# ── Auto-sync ──────────────────────────────────────────────────────────


@router.get("/{provider}/auto-sync")
async def get_auto_sync(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    services: IntegrationServices = Depends(get_services),
) -> Dict[str, Any]:
    try:
        view = await services.policy.get_settings(user_id, provider)
    except IntegrationError as exc:
        raise _http_error(exc)
    return view.model_dump(by_alias=True, mode="json")


@router.put("/{provider}/auto-sync")
async def update_auto_sync(
    provider: str,
    body: AutoSyncUpdate,
    user_id: str = Depends(get_current_user_id),
    services: IntegrationServices = Depends(get_services),
) -> Dict[str, Any]:
    try:
        view = await services.policy.update_settings(
            user_id,
            provider,
            body.is_enabled,
            frequency_minutes=body.frequency_minutes,
            data_types=body.data_types,
        )
    except IntegrationError as exc:
        raise _http_error(exc)
    return view.model_dump(by_alias=True, mode="json")


# ── Disconnect ─────────────────────────────────────────────────────────


@router.delete("/{provider}")
async def delete_integration(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    services: IntegrationServices = Depends(get_services),
) -> Dict[str, Any]:
    """Revoke (best effort) and delete the connection and its auto-sync settings."""
    _require_provider(services, provider)
    try:
        await disconnect(
            user_id,
            provider,
            registry=services.registry,
            vault=services.vault,
            connections=services.connections,
        )
    except IntegrationError as exc:
        raise _http_error(exc)
    return {"success": True, "message": "Integration disconnected"}
