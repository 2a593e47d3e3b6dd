"""
Registry connectors for the identity screening engine.

Usage:
    from connectors import build_default_registry, HttpClient

    http = HttpClient(user_agent=config.connectors.user_agent)
    registry = build_default_registry(config, http)
"""

from connectors.base import (
    Capability,
    LookupResult,
    QueryMode,
    RegistryConnector,
    SearchFilters,
    SourceQuery,
    SourceScreening,
)
from connectors.errors import ConnectorError, InvalidIdentifier, RecordNotFound, SourceUnavailable
from connectors.http_client import HttpClient
from connectors.registry import ConnectorRegistry, build_default_registry

__all__ = [
    'Capability',
    'ConnectorError',
    'ConnectorRegistry',
    'HttpClient',
    'InvalidIdentifier',
    'LookupResult',
    'QueryMode',
    'RecordNotFound',
    'RegistryConnector',
    'SearchFilters',
    'SourceQuery',
    'SourceScreening',
    'SourceUnavailable',
    'build_default_registry',
]
