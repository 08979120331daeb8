"""
Persistence stores used by the integration core.

Each store wraps an ``async_sessionmaker`` and opens its own short session
per call, so callers never share a session across an outbound HTTP call.
Rows come back detached (``expire_on_commit=False``) and are saved back
with ``save``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import (
    ActivityRecord,
    FeatureFlag,
    IntegrationAutoSync,
    IntegrationConnection,
    IntegrationSyncHistory,
    User,
)
from utils.schemas import ImportedActivity

logger = logging.getLogger(__name__)


def _to_uuid(value: Union[str, uuid.UUID]) -> uuid.UUID:
    return uuid.UUID(value) if isinstance(value, str) else value


class _Store:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory


# ── Connections ────────────────────────────────────────────────────────────


class ConnectionStore(_Store):
    async def get(self, user_id: str, provider: str) -> Optional[IntegrationConnection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(IntegrationConnection).where(
                    IntegrationConnection.user_id == _to_uuid(user_id),
                    IntegrationConnection.provider == provider,
                )
            )
            return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str) -> List[IntegrationConnection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(IntegrationConnection).where(IntegrationConnection.user_id == _to_uuid(user_id))
            )
            return list(result.scalars().all())

    async def save(self, connection: IntegrationConnection) -> IntegrationConnection:
        async with self._session_factory() as session:
            connection.user_id = _to_uuid(connection.user_id)
            merged = await session.merge(connection)
            await session.commit()
            return merged

    async def delete(self, user_id: str, provider: str) -> bool:
        """Delete the connection and its auto-sync settings in one transaction."""
        uid = _to_uuid(user_id)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(IntegrationConnection).where(
                    IntegrationConnection.user_id == uid,
                    IntegrationConnection.provider == provider,
                )
            )
            if result.rowcount == 0:
                await session.rollback()
                return False
            await session.execute(
                delete(IntegrationAutoSync).where(
                    IntegrationAutoSync.user_id == uid,
                    IntegrationAutoSync.provider == provider,
                )
            )
            await session.commit()
            return True


# ── Sync history ───────────────────────────────────────────────────────────


class SyncHistoryStore(_Store):
    async def add(self, entry: IntegrationSyncHistory) -> IntegrationSyncHistory:
        if entry.history_id is None:
            entry.history_id = uuid.uuid4()
        async with self._session_factory() as session:
            entry.user_id = _to_uuid(entry.user_id)
            session.add(entry)
            await session.commit()
            return entry

    async def save(self, entry: IntegrationSyncHistory) -> IntegrationSyncHistory:
        async with self._session_factory() as session:
            entry.user_id = _to_uuid(entry.user_id)
            merged = await session.merge(entry)
            await session.commit()
            return merged

    async def list_for(
        self,
        user_id: str,
        provider: str,
        *,
        limit: int,
        offset: int,
    ) -> Tuple[List[IntegrationSyncHistory], int]:
        uid = _to_uuid(user_id)
        where = (
            IntegrationSyncHistory.user_id == uid,
            IntegrationSyncHistory.provider == provider,
        )
        async with self._session_factory() as session:
            rows = await session.execute(
                select(IntegrationSyncHistory)
                .where(*where)
                .order_by(IntegrationSyncHistory.started_at.desc())
                .limit(limit)
                .offset(offset)
            )
            total = await session.execute(
                select(func.count()).select_from(IntegrationSyncHistory).where(*where)
            )
            return list(rows.scalars().all()), int(total.scalar_one())


# ── Auto-sync settings ─────────────────────────────────────────────────────


@dataclass
class AutoSyncCandidate:
    setting: IntegrationAutoSync
    connection: IntegrationConnection
    user: Optional[User]


class AutoSyncStore(_Store):
    async def get(self, user_id: str, provider: str) -> Optional[IntegrationAutoSync]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(IntegrationAutoSync).where(
                    IntegrationAutoSync.user_id == _to_uuid(user_id),
                    IntegrationAutoSync.provider == provider,
                )
            )
            return result.scalar_one_or_none()

    async def save(self, setting: IntegrationAutoSync) -> IntegrationAutoSync:
        setting.updated_at = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            setting.user_id = _to_uuid(setting.user_id)
            merged = await session.merge(setting)
            await session.commit()
            return merged

    async def list_enabled(self, *, limit: int) -> List[AutoSyncCandidate]:
        """
        Enabled, not failure-disabled settings whose connection is active,
        least recently synced first.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(IntegrationAutoSync, IntegrationConnection, User)
                .join(
                    IntegrationConnection,
                    (IntegrationConnection.user_id == IntegrationAutoSync.user_id)
                    & (IntegrationConnection.provider == IntegrationAutoSync.provider),
                )
                .outerjoin(User, User.user_id == IntegrationAutoSync.user_id)
                .where(
                    IntegrationAutoSync.is_enabled.is_(True),
                    IntegrationAutoSync.disabled_due_to_failure.is_(False),
                    IntegrationConnection.status == "active",
                )
                .order_by(IntegrationConnection.last_sync_at.asc().nulls_first())
                .limit(limit)
            )
            return [AutoSyncCandidate(setting=s, connection=c, user=u) for s, c, u in result.all()]


# ── Feature flags ──────────────────────────────────────────────────────────


class FeatureFlagStore(_Store):
    async def load_all(self) -> Dict[str, bool]:
        async with self._session_factory() as session:
            result = await session.execute(select(FeatureFlag.flag_key, FeatureFlag.is_enabled))
            return {key: bool(enabled) for key, enabled in result.all()}

    async def set(self, flag_key: str, is_enabled: bool) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(FeatureFlag)
                .where(FeatureFlag.flag_key == flag_key)
                .values(is_enabled=is_enabled, updated_at=datetime.now(timezone.utc))
            )
            await session.commit()
            return result.rowcount > 0

    async def ensure(self, flag_key: str, flag_name: str, description: str, is_enabled: bool) -> None:
        """Insert a flag unless it exists; never overwrites an admin's choice."""
        async with self._session_factory() as session:
            await session.execute(
                pg_insert(FeatureFlag)
                .values(
                    flag_key=flag_key,
                    flag_name=flag_name,
                    description=description,
                    is_enabled=is_enabled,
                )
                .on_conflict_do_nothing(index_elements=["flag_key"])
            )
            await session.commit()


# ── Imported activities ────────────────────────────────────────────────────


class ActivityStore(_Store):
    async def imported_external_ids(self, user_id: str, source: str) -> Set[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ActivityRecord.external_id).where(
                    ActivityRecord.user_id == _to_uuid(user_id),
                    ActivityRecord.source == source,
                    ActivityRecord.external_id.is_not(None),
                )
            )
            return {str(row) for row in result.scalars().all()}

    async def insert(self, user_id: str, source: str, activity: ImportedActivity) -> None:
        async with self._session_factory() as session:
            session.add(
                ActivityRecord(
                    user_id=_to_uuid(user_id),
                    activity_type=activity.activity_type,
                    activity_name=activity.activity_name,
                    date=activity.activity_date,
                    timezone=activity.timezone,
                    activity_data=activity.activity_data,
                    calories_burned=activity.calories_burned,
                    source=source,
                    external_id=activity.external_id,
                )
            )
            await session.commit()


# ── Users (read-only) ──────────────────────────────────────────────────────


class UserStore(_Store):
    async def get(self, user_id: str) -> Optional[User]:
        async with self._session_factory() as session:
            result = await session.execute(select(User).where(User.user_id == _to_uuid(user_id)))
            return result.scalar_one_or_none()
