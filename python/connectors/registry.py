"""
Connector registry.

Holds the configured connectors and selects the ones that apply to a
request from their declared jurisdictions and entity kinds. A
jurisdiction -> connectors index keeps selection independent of the
number of registered sources; connectors declaring no jurisdiction are
global and always considered.
"""

import logging
from collections import defaultdict
from typing import Dict, Iterator, List, Optional

from config_manager import ConfigManager
from connectors.base import RegistryConnector
from connectors.brasil_api import BrasilApiCompanyConnector
from connectors.cgu import CGU_LISTS, CguSanctionsConnector
from connectors.cpf import CpfValidatorConnector
from connectors.http_client import HttpClient
from connectors.opensanctions import OpenSanctionsConnector
from screening_models import ScreeningRequest
from sources_catalogue import get_source

logger = logging.getLogger(__name__)


class ConnectorRegistry:
    """Ordered set of connectors, indexed by jurisdiction."""

    def __init__(self):
        self._connectors: Dict[str, RegistryConnector] = {}
        self._by_jurisdiction: Dict[str, List[str]] = defaultdict(list)
        self._global: List[str] = []

    def register(self, connector: RegistryConnector) -> None:
        """Add a connector.

        Raises:
            ValueError: If a connector with the same source id exists
        """
        if connector.source_id in self._connectors:
            raise ValueError(f"Connector already registered: {connector.source_id}")
        self._connectors[connector.source_id] = connector
        if connector.is_global:
            self._global.append(connector.source_id)
        for code in connector.jurisdictions:
            self._by_jurisdiction[code.upper()].append(connector.source_id)
        logger.debug("Registered connector %s", connector.source_id)

    def get(self, source_id: str) -> Optional[RegistryConnector]:
        return self._connectors.get(source_id)

    def __iter__(self) -> Iterator[RegistryConnector]:
        return iter(self._connectors.values())

    def __len__(self) -> int:
        return len(self._connectors)

    def select(self, request: ScreeningRequest) -> List[RegistryConnector]:
        """Connectors whose declared coverage matches the request.

        Result keeps registration order.
        """
        if request.screens_all_jurisdictions:
            candidate_ids = set(self._connectors)
        else:
            candidate_ids = set(self._global)
            for code in request.jurisdictions:
                candidate_ids.update(self._by_jurisdiction.get(code, ()))

        return [
            connector for source_id, connector in self._connectors.items()
            if source_id in candidate_ids and connector.applies_to(request)
        ]


def build_default_registry(config: ConfigManager, http: HttpClient) -> ConnectorRegistry:
    """Register every enabled connector from the `connectors` config section."""
    registry = ConnectorRegistry()
    sources = config.connectors

    settings = sources.get('brasil_api')
    if settings.enabled:
        registry.register(BrasilApiCompanyConnector(
            get_source("br_receita_federal"), http, settings.base_url,
            timeout=sources.timeout_for('brasil_api'),
        ))

    if sources.get('cpf_validator').enabled:
        registry.register(CpfValidatorConnector(get_source("br_cpf")))

    settings = sources.get('cgu')
    if settings.enabled:
        for code in settings.options.get('lists', list(CGU_LISTS)):
            cgu_list = CGU_LISTS.get(str(code).upper())
            if cgu_list is None:
                logger.warning("Unknown CGU list in configuration: %s", code)
                continue
            registry.register(CguSanctionsConnector(
                get_source(cgu_list.source_id), cgu_list, http, settings.base_url,
                api_key_env=settings.api_key_env,
                timeout=sources.timeout_for('cgu'),
            ))

    settings = sources.get('opensanctions')
    if settings.enabled:
        registry.register(OpenSanctionsConnector(
            get_source("opensanctions"), http, settings.base_url,
            dataset=settings.options.get('dataset', "default"),
            limit=int(settings.options.get('limit', 20)),
            api_key_env=settings.api_key_env,
            timeout=sources.timeout_for('opensanctions'),
        ))

    logger.info("Connector registry ready: %s", ", ".join(c.source_id for c in registry))
    return registry
