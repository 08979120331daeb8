"""
ConnectorRegistry — lookup table of provider connectors.

The registry is constructed explicitly (``build_registry``) rather than
living as a module global, so tests can register fakes.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from connectors.base import BaseConnector

logger = logging.getLogger(__name__)


class ConnectorRegistry:
    """Provider slug → connector."""

    def __init__(self, connectors: Iterable[BaseConnector] = ()) -> None:
        self._connectors: Dict[str, BaseConnector] = {}
        for conn in connectors:
            self.register(conn)

    def register(self, connector: BaseConnector) -> None:
        self._connectors[connector.provider_name] = connector
        if connector.is_configured():
            logger.info(
                "Connector registered: %s (%s)",
                connector.display_name,
                connector.provider_name,
            )
        else:
            logger.warning(
                "Connector %s registered but not configured (missing client_id/secret)",
                connector.provider_name,
            )

    def get(self, provider: str) -> Optional[BaseConnector]:
        return self._connectors.get(provider)

    def __contains__(self, provider: str) -> bool:
        return provider in self._connectors

    def all(self) -> List[BaseConnector]:
        return list(self._connectors.values())

    def supported_data_types(self, provider: str) -> List[str]:
        conn = self._connectors.get(provider)
        return list(conn.supported_data_types) if conn else []

    def list_providers(self) -> List[Dict[str, object]]:
        """Return static metadata about all known connectors."""
        return [
            {
                "provider": c.provider_name,
                "provider_name": c.display_name,
                "description": c.description,
                "category": c.category,
                "logo_url": c.logo_url,
                "supported_data_types": list(c.supported_data_types),
                "mobile_only": c.mobile_only,
            }
            for c in self._connectors.values()
        ]


def build_registry() -> ConnectorRegistry:
    """All known connectors — add new ones here."""
    from connectors.strava import StravaConnector

    return ConnectorRegistry(
        [
            StravaConnector(),
        ]
    )
