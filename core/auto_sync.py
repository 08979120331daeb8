"""
Auto-sync (Pro) — per-connection schedule settings and the background worker
that turns them into ``SyncEngine`` runs.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Optional, Protocol, Sequence

from config.settings import Settings
from connectors.registry import ConnectorRegistry
from core.clock import Clock, system_clock
from core.feature_flags import FeatureFlagCache
from core.sync_engine import SyncEngine
from database.models import IntegrationAutoSync, IntegrationConnection
from utils.errors import NotFoundError, SubscriptionRequiredError, UnknownProviderError, ValidationError
from utils.schemas import AutoSyncView, SyncResult

logger = logging.getLogger(__name__)

MIN_FREQUENCY_MINUTES = 15
MAX_FREQUENCY_MINUTES = 1440


def clamp_frequency(minutes: int) -> int:
    return max(MIN_FREQUENCY_MINUTES, min(MAX_FREQUENCY_MINUTES, int(minutes)))


def friendly_error(error: str) -> str:
    """Map a raw sync error to something we can put in front of a user."""
    lowered = (error or "").lower()
    if "401" in lowered or "unauthorized" in lowered or "authorization expired" in lowered:
        return "Your authorization has expired. Please reconnect your account."
    if "403" in lowered or "forbidden" in lowered:
        return "Access was denied. You may have revoked permissions."
    if "429" in lowered or "rate limit" in lowered or "too many requests" in lowered:
        return "Too many requests. The sync will retry automatically."
    if "timeout" in lowered or "timed out" in lowered:
        return "Connection timed out. The service may be temporarily unavailable."
    if "network" in lowered:
        return "Network error. Please check your connection."
    return "An unexpected error occurred during synchronization."


class Notifier(Protocol):
    async def auto_sync_disabled(self, user, provider_name: str, reason: str) -> None: ...


class LoggingNotifier:
    """Default notifier; the email module replaces it in production wiring."""

    async def auto_sync_disabled(self, user, provider_name: str, reason: str) -> None:
        logger.warning(
            "Auto-sync for %s disabled for user %s: %s",
            provider_name,
            getattr(user, "email", None) or getattr(user, "user_id", "?"),
            reason,
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Settings policy
# ═══════════════════════════════════════════════════════════════════════════════


class AutoSyncPolicy:
    def __init__(
        self,
        *,
        settings: Settings,
        registry: ConnectorRegistry,
        connections,
        auto_sync,
        users,
        clock: Clock = system_clock,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._connections = connections
        self._store = auto_sync
        self._users = users
        self._clock = clock

    def _view(self, provider: str, setting: Optional[IntegrationAutoSync]) -> AutoSyncView:
        if setting is None:
            return AutoSyncView(
                provider=provider,
                frequency_minutes=self._settings.auto_sync_default_frequency_minutes,
                data_types=self._registry.supported_data_types(provider),
            )
        return AutoSyncView(
            provider=provider,
            is_enabled=bool(setting.is_enabled),
            frequency_minutes=setting.sync_frequency_minutes,
            data_types=list(setting.sync_data_types or []),
            consecutive_failures=setting.consecutive_failures or 0,
            last_failure_at=setting.last_failure_at,
            last_failure_reason=setting.last_failure_reason,
            disabled_due_to_failure=bool(setting.disabled_due_to_failure),
        )

    def _require_provider(self, provider: str) -> None:
        if provider not in self._registry:
            raise UnknownProviderError(f"Invalid provider: {provider}")

    async def is_subscribed(self, user_id: str) -> bool:
        user = await self._users.get(user_id)
        return bool(user and user.subscribed)

    async def get_settings(self, user_id: str, provider: str) -> AutoSyncView:
        self._require_provider(provider)
        return self._view(provider, await self._store.get(user_id, provider))

    async def update_settings(
        self,
        user_id: str,
        provider: str,
        is_enabled: bool,
        frequency_minutes: Optional[int] = None,
        data_types: Optional[Sequence[str]] = None,
    ) -> AutoSyncView:
        self._require_provider(provider)
        if not await self.is_subscribed(user_id):
            raise SubscriptionRequiredError("Auto-sync is a Pro feature")

        connection = await self._connections.get(user_id, provider)
        if connection is None:
            raise NotFoundError("Integration not connected")
        if is_enabled and connection.status != "active":
            raise ValidationError("Auto-sync requires an active connection")

        now = self._clock.now()
        setting = await self._store.get(user_id, provider)
        if setting is None:
            setting = IntegrationAutoSync(
                setting_id=uuid.uuid4(),
                user_id=user_id,
                provider=provider,
                is_enabled=False,
                sync_frequency_minutes=self._settings.auto_sync_default_frequency_minutes,
                sync_data_types=self._registry.supported_data_types(provider),
                consecutive_failures=0,
                disabled_due_to_failure=False,
                failure_notification_sent=False,
                created_at=now,
            )

        if frequency_minutes is not None:
            setting.sync_frequency_minutes = clamp_frequency(frequency_minutes)

        if data_types is not None:
            supported = self._registry.supported_data_types(provider)
            kept = [t for t in dict.fromkeys(data_types) if t in supported]
            setting.sync_data_types = kept or supported

        setting.is_enabled = bool(is_enabled)
        if is_enabled:
            setting.consecutive_failures = 0
            setting.disabled_due_to_failure = False
            setting.failure_notification_sent = False

        saved = await self._store.save(setting)
        logger.info(
            "Auto-sync for %s/%s: enabled=%s every %d min",
            provider, user_id, saved.is_enabled, saved.sync_frequency_minutes,
        )
        return self._view(provider, saved)


# ═══════════════════════════════════════════════════════════════════════════════
# Worker
# ═══════════════════════════════════════════════════════════════════════════════


def is_due(setting: IntegrationAutoSync, connection: IntegrationConnection, now) -> bool:
    if connection.last_sync_at is None:
        return True
    return connection.last_sync_at + timedelta(minutes=setting.sync_frequency_minutes) <= now


class AutoSyncWorker:
    """Runs due auto-syncs and keeps the failure counters."""

    def __init__(
        self,
        *,
        settings: Settings,
        registry: ConnectorRegistry,
        engine: SyncEngine,
        flags: FeatureFlagCache,
        auto_sync,
        notifier: Optional[Notifier] = None,
        clock: Clock = system_clock,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._engine = engine
        self._flags = flags
        self._store = auto_sync
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock
        self._max_failures = settings.auto_sync_max_consecutive_failures

    async def run_once(self) -> int:
        """Process one batch. Returns the number of sync runs started."""
        candidates = await self._store.list_enabled(limit=self._settings.auto_sync_batch_size)
        logger.info("Auto-sync: %d candidates", len(candidates))
        runs = 0
        for candidate in candidates:
            try:
                if await self._process(candidate):
                    runs += 1
            except Exception:
                logger.exception(
                    "Auto-sync job for %s/%s failed",
                    candidate.setting.provider, candidate.setting.user_id,
                )
        return runs

    async def _process(self, candidate) -> bool:
        setting, connection, user = candidate.setting, candidate.connection, candidate.user
        provider = setting.provider
        user_id = str(setting.user_id)

        if not setting.is_enabled or setting.disabled_due_to_failure:
            return False
        if connection.status != "active":
            return False
        if not await self._flags.is_integration_enabled(provider):
            logger.info("Auto-sync: %s disabled via feature flag, skipping", provider)
            return False
        if user is None or not user.subscribed:
            logger.info("Auto-sync: user %s is no longer Pro, disabling", user_id)
            setting.is_enabled = False
            await self._store.save(setting)
            return False
        if not is_due(setting, connection, self._clock.now()):
            return False

        result = await self._engine.run(user_id, provider, list(setting.sync_data_types or []), "auto")
        await self.record_outcome(setting, user, result)
        return True

    async def record_outcome(self, setting: IntegrationAutoSync, user, result: SyncResult) -> None:
        if result.success:
            setting.consecutive_failures = 0
            await self._store.save(setting)
            logger.info(
                "Auto-sync: imported %d records for %s/%s",
                result.records_imported, setting.provider, setting.user_id,
            )
            return

        if result.error_code == "RATE_LIMITED":
            # Our own budget ran out; not the user's fault.
            logger.info("Auto-sync: %s/%s deferred by rate limit", setting.provider, setting.user_id)
            return

        now = self._clock.now()
        reason = result.error or "Unknown error"
        setting.consecutive_failures = (setting.consecutive_failures or 0) + 1
        setting.last_failure_at = now
        setting.last_failure_reason = reason

        notify = False
        if setting.consecutive_failures >= self._max_failures:
            logger.warning(
                "Auto-sync: disabling %s/%s after %d failures",
                setting.provider, setting.user_id, setting.consecutive_failures,
            )
            setting.is_enabled = False
            setting.disabled_due_to_failure = True
            notify = not setting.failure_notification_sent
            setting.failure_notification_sent = True

        await self._store.save(setting)

        if notify:
            connector = self._registry.get(setting.provider)
            provider_name = connector.display_name if connector else setting.provider
            try:
                await self._notifier.auto_sync_disabled(user, provider_name, friendly_error(reason))
            except Exception as exc:
                logger.error("Auto-sync: failure notification not sent: %s", exc)


class AutoSyncScheduler:
    """Calls ``AutoSyncWorker.run_once`` on a fixed interval."""

    def __init__(self, worker: AutoSyncWorker, interval_minutes: float) -> None:
        self._worker = worker
        self._interval = interval_minutes * 60
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        while True:
            try:
                await self._worker.run_once()
            except Exception:
                logger.exception("Auto-sync worker run failed")
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self.running:
            return
        logger.info("Starting auto-sync scheduler every %.0f s", self._interval)
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Auto-sync scheduler stopped")
