"""
SyncEngine — one sync run for one (user, provider).

Steps
-----
1. Record a sync-history row (``started_at = now``).
2. Decrypt the access token, refreshing it first if expired.
3. Fetch remote workouts through the provider's rate-limited client.
4. Dedup against already-imported external ids and insert the rest;
   a failing insert is skipped, not fatal.
5. Finalize the history row and the connection's sync timestamps.

``run`` never raises: every failure comes back as a classified
``SyncResult``.  Runs for the same connection are serialised through
``ConnectionLocks``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional, Sequence

import httpx

from connectors.encryption import CredentialVault
from connectors.registry import ConnectorRegistry
from connectors.token_manager import TokenRefresher, token_expired
from core.clock import Clock, system_clock
from core.locks import ConnectionLocks
from database.models import IntegrationConnection, IntegrationSyncHistory
from utils.errors import (
    AuthExpiredError,
    CredentialError,
    ProviderAPIError,
    RateLimitedError,
)
from utils.schemas import SyncResult, SyncStatus

logger = logging.getLogger(__name__)

WORKOUTS = "workouts"
CALORIES_BURNED = "calories_burned"

AUTH_EXPIRED_MESSAGE = "Authorization expired. Please reconnect your account."
RATE_LIMITED_MESSAGE = "Too many requests to the provider. Please try again later."


@dataclass
class _Outcome:
    records_imported: int = 0
    skipped: int = 0
    data_types_synced: List[str] = field(default_factory=list)


class SyncEngine:
    def __init__(
        self,
        *,
        registry: ConnectorRegistry,
        vault: CredentialVault,
        refresher: TokenRefresher,
        connections,
        history,
        activities,
        locks: Optional[ConnectionLocks] = None,
        clock: Clock = system_clock,
        lookback_days: int = 30,
    ) -> None:
        self._registry = registry
        self._vault = vault
        self._refresher = refresher
        self._connections = connections
        self._history = history
        self._activities = activities
        self._locks = locks or ConnectionLocks()
        self._clock = clock
        self._lookback = timedelta(days=lookback_days)

    async def run(
        self,
        user_id: str,
        provider: str,
        requested_data_types: Optional[Sequence[str]] = None,
        sync_type: str = "manual",
    ) -> SyncResult:
        try:
            async with self._locks.hold(user_id, provider):
                return await self._run_locked(user_id, provider, requested_data_types, sync_type)
        except Exception as exc:
            logger.exception("Sync run for %s/%s crashed", provider, user_id)
            return SyncResult.failed(str(exc) or "Unknown sync error", "SYNC_ERROR")

    # ── Internals ───────────────────────────────────────────────────────

    def _resolve_data_types(self, provider: str, requested: Optional[Sequence[str]]) -> List[str]:
        supported = self._registry.supported_data_types(provider)
        if not requested:
            return supported
        # Unsupported types are dropped; nothing left means "everything".
        return [t for t in requested if t in supported] or supported

    async def _run_locked(
        self,
        user_id: str,
        provider: str,
        requested_data_types: Optional[Sequence[str]],
        sync_type: str,
    ) -> SyncResult:
        connector = self._registry.get(provider)
        if connector is None:
            return SyncResult.failed("Provider not supported", "UNSUPPORTED_PROVIDER")

        connection = await self._connections.get(user_id, provider)
        if connection is None or connection.status != "active":
            return SyncResult.failed("Integration connection is not active", "NOT_CONNECTED")

        data_types = self._resolve_data_types(provider, requested_data_types)
        started_at = self._clock.now()
        entry = await self._history.add(
            IntegrationSyncHistory(
                history_id=uuid.uuid4(),
                user_id=user_id,
                provider=provider,
                sync_type=sync_type,
                status=SyncStatus.failed.value,
                records_imported=0,
                data_types_synced=[],
                started_at=started_at,
            )
        )

        outcome = _Outcome()
        try:
            access_token = await self._access_token(connection)
            await self._sync_workouts(connector, connection, user_id, access_token, data_types, outcome)
            # calories_burned rides along inside workout records; it is never fetched on its own.
            if CALORIES_BURNED in data_types and WORKOUTS not in outcome.data_types_synced:
                outcome.data_types_synced.append(CALORIES_BURNED)
            result = SyncResult(
                success=True,
                records_imported=outcome.records_imported,
                data_types_synced=outcome.data_types_synced,
            )
        except AuthExpiredError as exc:
            logger.info("Sync %s/%s: auth expired (%s)", provider, user_id, exc)
            result = SyncResult.failed(AUTH_EXPIRED_MESSAGE, "AUTH_EXPIRED")
            connection.status = "expired"
        except RateLimitedError as exc:
            logger.info("Sync %s/%s: rate limited, retry after %d ms", provider, user_id, exc.retry_after_ms)
            result = SyncResult.failed(
                RATE_LIMITED_MESSAGE, "RATE_LIMITED", retry_after_ms=exc.retry_after_ms
            )
        except ProviderAPIError as exc:
            result = self._classify_api_error(exc, connector)
            if result.error_code == "AUTH_EXPIRED":
                connection.status = "expired"
        except CredentialError as exc:
            logger.error("Stored credentials for %s/%s unreadable: %s", provider, user_id, exc)
            result = SyncResult.failed("Stored credentials are unreadable. Please reconnect.", exc.code)
            connection.status = "error"
        except httpx.TimeoutException:
            result = SyncResult.failed("Provider request timed out", "SYNC_ERROR")
        except httpx.HTTPError as exc:
            result = SyncResult.failed(f"Network error talking to provider: {exc}", "SYNC_ERROR")
        except Exception as exc:
            logger.exception("Sync %s/%s failed", provider, user_id)
            result = SyncResult.failed(str(exc) or "Unknown sync error", "SYNC_ERROR")

        # Failures after some records were imported still count as success.
        if not result.success and outcome.records_imported > 0:
            result = SyncResult(
                success=True,
                records_imported=outcome.records_imported,
                data_types_synced=outcome.data_types_synced,
                error=result.error,
                error_code=result.error_code,
            )

        await self._finalize(entry, connection, result, outcome)
        return result

    async def _access_token(self, connection: IntegrationConnection) -> str:
        if token_expired(connection, self._clock.now()):
            token = await self._refresher.refresh(connection)
            if token is None:
                raise AuthExpiredError("Failed to refresh access token. Please reconnect.")
            return token
        return self._vault.decrypt(connection.access_token_encrypted)

    async def _sync_workouts(
        self,
        connector,
        connection: IntegrationConnection,
        user_id: str,
        access_token: str,
        data_types: List[str],
        outcome: _Outcome,
    ) -> None:
        if WORKOUTS not in data_types:
            return

        if not connector.rate_limiter.can_make_read_request():
            raise RateLimitedError(retry_after_ms=connector.rate_limiter.get_retry_after_ms())

        since = self._clock.now() - self._lookback
        remote = await connector.fetch_activities(access_token, since)

        source = connector.provider_name
        existing = await self._activities.imported_external_ids(user_id, source)
        duplicates = 0
        for activity in remote:
            if activity.external_id in existing:
                duplicates += 1
                continue
            try:
                await self._activities.insert(user_id, source, activity)
            except Exception as exc:
                outcome.skipped += 1
                logger.warning("Failed to import %s activity %s: %s", source, activity.external_id, exc)
                continue
            existing.add(activity.external_id)
            outcome.records_imported += 1

        logger.info(
            "Sync %s/%s: fetched %d, imported %d, duplicates %d, failed %d",
            source, user_id, len(remote), outcome.records_imported, duplicates, outcome.skipped,
        )
        outcome.data_types_synced.append(WORKOUTS)

    @staticmethod
    def _classify_api_error(exc: ProviderAPIError, connector) -> SyncResult:
        if exc.status_code == 401:
            return SyncResult.failed(AUTH_EXPIRED_MESSAGE, "AUTH_EXPIRED")
        if exc.status_code == 429:
            return SyncResult.failed(
                RATE_LIMITED_MESSAGE,
                "RATE_LIMITED",
                retry_after_ms=connector.rate_limiter.get_retry_after_ms(),
            )
        return SyncResult.failed(exc.provider_message or exc.message, "SYNC_ERROR")

    async def _finalize(
        self,
        entry: IntegrationSyncHistory,
        connection: IntegrationConnection,
        result: SyncResult,
        outcome: _Outcome,
    ) -> None:
        completed_at = self._clock.now()
        started_at = entry.started_at
        duration_ms = max(0, int((completed_at - started_at).total_seconds() * 1000))
        result.duration_ms = duration_ms

        if not result.success:
            status = SyncStatus.failed
        elif outcome.skipped or result.error_code:
            status = SyncStatus.partial
        else:
            status = SyncStatus.success

        entry.status = status.value
        entry.records_imported = result.records_imported
        entry.data_types_synced = list(result.data_types_synced)
        entry.error_message = result.error
        entry.error_code = result.error_code
        entry.completed_at = max(completed_at, started_at)
        entry.duration_ms = duration_ms

        connection.last_sync_at = completed_at
        connection.updated_at = completed_at
        if result.success:
            connection.last_successful_sync_at = completed_at
            connection.last_error = None
        else:
            connection.last_error = result.error

        try:
            await self._history.save(entry)
        except Exception:
            logger.exception("Could not finalize sync history %s", entry.history_id)
        try:
            await self._connections.save(connection)
        except Exception:
            logger.exception("Could not update connection %s/%s after sync", connection.provider, connection.user_id)
