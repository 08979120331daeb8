"""
FastAPI dependencies (shared across routes).

``IntegrationServices`` wires the integration core together once per
process.  Routes depend on ``get_services``; tests swap it through
``app.dependency_overrides``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from config.settings import Settings, config
from connectors.encryption import CredentialVault, get_vault
from connectors.oauth_flow import AuthorizationFlow
from connectors.registry import ConnectorRegistry, build_registry
from connectors.token_manager import TokenRefresher
from core.auto_sync import AutoSyncPolicy, AutoSyncWorker, Notifier
from core.clock import Clock, system_clock
from core.feature_flags import FeatureFlagCache
from core.locks import ConnectionLocks
from core.sync_engine import SyncEngine


@dataclass
class IntegrationServices:
    settings: Settings
    registry: ConnectorRegistry
    vault: CredentialVault
    flags: FeatureFlagCache
    connections: object
    history: object
    auto_sync: object
    activities: object
    users: object
    flow: AuthorizationFlow
    refresher: TokenRefresher
    engine: SyncEngine
    policy: AutoSyncPolicy
    worker: AutoSyncWorker


def assemble_services(
    *,
    settings: Settings,
    registry: ConnectorRegistry,
    vault: CredentialVault,
    flag_store,
    connections,
    history,
    auto_sync,
    activities,
    users,
    notifier: Optional[Notifier] = None,
    clock: Clock = system_clock,
) -> IntegrationServices:
    """Build the service graph over whatever stores the caller provides."""
    flags = FeatureFlagCache(flag_store, ttl_seconds=settings.feature_flag_ttl_seconds)
    flow = AuthorizationFlow(
        settings=settings,
        registry=registry,
        flags=flags,
        vault=vault,
        connections=connections,
        clock=clock,
    )
    refresher = TokenRefresher(registry=registry, vault=vault, connections=connections, clock=clock)
    engine = SyncEngine(
        registry=registry,
        vault=vault,
        refresher=refresher,
        connections=connections,
        history=history,
        activities=activities,
        locks=ConnectionLocks(),
        clock=clock,
        lookback_days=settings.sync_lookback_days,
    )
    policy = AutoSyncPolicy(
        settings=settings,
        registry=registry,
        connections=connections,
        auto_sync=auto_sync,
        users=users,
        clock=clock,
    )
    worker = AutoSyncWorker(
        settings=settings,
        registry=registry,
        engine=engine,
        flags=flags,
        auto_sync=auto_sync,
        notifier=notifier,
        clock=clock,
    )
    return IntegrationServices(
        settings=settings,
        registry=registry,
        vault=vault,
        flags=flags,
        connections=connections,
        history=history,
        auto_sync=auto_sync,
        activities=activities,
        users=users,
        flow=flow,
        refresher=refresher,
        engine=engine,
        policy=policy,
        worker=worker,
    )


_services: Optional[IntegrationServices] = None


def get_services() -> IntegrationServices:
    """Process-wide services backed by PostgreSQL."""
    global _services
    if _services is None:
        from database.session import async_session_factory
        from database.stores import (
            ActivityStore,
            AutoSyncStore,
            ConnectionStore,
            FeatureFlagStore,
            SyncHistoryStore,
            UserStore,
        )

        _services = assemble_services(
            settings=config,
            registry=build_registry(),
            vault=get_vault(),
            flag_store=FeatureFlagStore(async_session_factory),
            connections=ConnectionStore(async_session_factory),
            history=SyncHistoryStore(async_session_factory),
            auto_sync=AutoSyncStore(async_session_factory),
            activities=ActivityStore(async_session_factory),
            users=UserStore(async_session_factory),
        )
    return _services
