"""
SQLAlchemy ORM models for integrations, sync history and imported activities.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    """Owned by the accounts module; mapped here for joins and subscription gates."""

    __tablename__ = "users"

    user_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False)
    display_name = Column(String(128))
    subscribed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    connections = relationship("IntegrationConnection", cascade="all, delete-orphan")


class IntegrationConnection(Base):
    __tablename__ = "integration_connections"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_connection_user_provider"),)

    connection_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(32), nullable=False)
    access_token_encrypted = Column(Text, nullable=False)
    refresh_token_encrypted = Column(Text)
    token_expires_at = Column(DateTime(timezone=True))
    provider_user_id = Column(String(256))
    scopes = Column(ARRAY(Text), default=list)
    status = Column(String(16), nullable=False, default="active")
    last_error = Column(Text)
    last_sync_at = Column(DateTime(timezone=True))
    last_successful_sync_at = Column(DateTime(timezone=True))
    connected_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)

    user = relationship("User", back_populates="connections")


class IntegrationSyncHistory(Base):
    __tablename__ = "integration_sync_history"
    __table_args__ = (Index("ix_sync_history_user_provider_started", "user_id", "provider", "started_at"),)

    history_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(32), nullable=False)
    sync_type = Column(String(16), nullable=False, default="manual")
    status = Column(String(16), nullable=False, default="failed")
    records_imported = Column(Integer, nullable=False, default=0)
    data_types_synced = Column(ARRAY(Text), default=list)
    error_message = Column(Text)
    error_code = Column(String(32))
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at = Column(DateTime(timezone=True))
    duration_ms = Column(Integer)


class IntegrationAutoSync(Base):
    __tablename__ = "integration_auto_sync"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_auto_sync_user_provider"),)

    setting_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(32), nullable=False)
    is_enabled = Column(Boolean, nullable=False, default=False)
    sync_frequency_minutes = Column(Integer, nullable=False, default=720)
    sync_data_types = Column(ARRAY(Text), default=list)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    last_failure_at = Column(DateTime(timezone=True))
    last_failure_reason = Column(Text)
    disabled_due_to_failure = Column(Boolean, nullable=False, default=False)
    failure_notification_sent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class FeatureFlag(Base):
    __tablename__ = "feature_flags"

    flag_id = Column(Integer, primary_key=True, autoincrement=True)
    flag_key = Column(String(64), unique=True, nullable=False)
    flag_name = Column(String(128), nullable=False)
    description = Column(Text)
    is_enabled = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class ActivityRecord(Base):
    """Imported workout; the progress-tracking module owns the rest of this table."""

    __tablename__ = "progress_tracking"
    __table_args__ = (
        UniqueConstraint("user_id", "source", "external_id", name="uq_progress_external"),
    )

    record_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    activity_type = Column(String(64), nullable=False)
    activity_name = Column(Text)
    date = Column(Date, nullable=False)
    timezone = Column(String(64), default="UTC")
    activity_data = Column(JSONB, default=dict)
    calories_burned = Column(Float)
    source = Column(String(32))
    external_id = Column(String(64))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)
