"""
FeatureFlagCache — TTL-cached, read-through view of the ``feature_flags`` table.

Integration flags are keyed ``integration_<provider>``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

INTEGRATION_PREFIX = "integration_"

DEFAULT_INTEGRATION_FLAGS = {
    "strava": ("Strava Integration", "Enable Strava workout imports"),
}


class FlagSource(Protocol):
    async def load_all(self) -> Dict[str, bool]: ...

    async def set(self, flag_key: str, is_enabled: bool) -> bool: ...

    async def ensure(self, flag_key: str, flag_name: str, description: str, is_enabled: bool) -> None: ...


def integration_flag_key(provider: str) -> str:
    return f"{INTEGRATION_PREFIX}{provider}"


class FeatureFlagCache:
    """
    In-memory flag map refreshed from the store at most once per TTL.

    A refresh builds a fresh dict and swaps the reference in one assignment,
    so readers see either the old map or the new one, never a mix.
    Concurrent stale readers share a single refresh through ``_refresh_lock``.
    """

    def __init__(
        self,
        store: FlagSource,
        *,
        ttl_seconds: float = 5.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._monotonic = monotonic
        self._flags: Dict[str, bool] = {}
        self._loaded_at: Optional[float] = None
        self._refresh_lock = asyncio.Lock()

    def _is_stale(self) -> bool:
        return (
            self._loaded_at is None
            or not self._flags
            or self._monotonic() - self._loaded_at > self._ttl
        )

    async def refresh(self) -> None:
        try:
            fresh = dict(await self._store.load_all())
        except Exception as exc:
            # Keep serving the previous map; the next read tries again.
            logger.error("Feature flag refresh failed: %s", exc)
            return
        self._flags = fresh
        self._loaded_at = self._monotonic()

    async def _ensure_fresh(self) -> Dict[str, bool]:
        if self._is_stale():
            async with self._refresh_lock:
                if self._is_stale():
                    await self.refresh()
        return self._flags

    async def is_enabled(self, key: str) -> bool:
        flags = await self._ensure_fresh()
        return flags.get(key, False)

    async def is_integration_enabled(self, provider: str) -> bool:
        return await self.is_enabled(integration_flag_key(provider))

    async def enabled_integrations(self) -> List[str]:
        flags = await self._ensure_fresh()
        return [
            key[len(INTEGRATION_PREFIX):]
            for key, enabled in flags.items()
            if enabled and key.startswith(INTEGRATION_PREFIX)
        ]

    def invalidate(self) -> None:
        """Force the next read to hit the store."""
        self._loaded_at = None

    async def update_flag(self, key: str, is_enabled: bool) -> bool:
        """Admin write: persist, then invalidate."""
        updated = await self._store.set(key, is_enabled)
        if updated:
            self.invalidate()
            logger.info("Feature flag %s set to %s", key, is_enabled)
        return updated

    async def ensure_defaults(self) -> None:
        for provider, (name, description) in DEFAULT_INTEGRATION_FLAGS.items():
            await self._store.ensure(integration_flag_key(provider), name, description, True)
        self.invalidate()
