"""
International sanctions aggregator connector (OpenSanctions search API).

Searches by the display name and, when given, the localized name. Each
result is attributed to the underlying list it was published on through
the dataset catalogue; results from unmapped datasets keep the aggregator
as their provenance. Authority is always the aggregator's, so a national
source's copy of the same listing wins ties.
"""

import logging
import os
from typing import Any, Dict, List, Optional, Sequence

from connectors.base import Capability, RegistryConnector, SearchFilters, SourceQuery
from connectors.errors import SourceUnavailable
from connectors.http_client import HttpClient
from screening_models import (
    EntityKind,
    MatchCandidate,
    MatchTag,
    Provenance,
    ScreeningRequest,
    SourceAuthority,
    SourceDescriptor,
    SourceFamily,
)
from similarity import best_score
from sources_catalogue import map_datasets

logger = logging.getLogger(__name__)

# checked in order, first hit wins
TOPIC_TAGS = (
    ("sanction", MatchTag.SANCTIONED),
    ("debarment", MatchTag.DEBARRED),
    ("crime", MatchTag.CRIMINAL),
    ("role.pep", MatchTag.PEP),
    ("pep", MatchTag.PEP),
    ("poi", MatchTag.PERSON_OF_INTEREST),
)

SCHEMAS = {
    EntityKind.INDIVIDUAL: "Person",
    EntityKind.ORGANIZATION: "Organization",
}


def tag_for_topics(topics: Optional[Sequence[str]]) -> MatchTag:
    """Map FollowTheMoney topics to a match tag, watchlist by default."""
    topics = topics or ()
    for prefix, tag in TOPIC_TAGS:
        if any(t == prefix or t.startswith(prefix + ".") for t in topics):
            return tag
    return MatchTag.WATCHLIST


def _prop(entity: Dict[str, Any], name: str) -> List[str]:
    values = (entity.get('properties') or {}).get(name) or []
    return [str(v) for v in values if v]


def _first_prop(entity: Dict[str, Any], name: str) -> Optional[str]:
    values = _prop(entity, name)
    return values[0] if values else None


class OpenSanctionsConnector(RegistryConnector):
    """Name search against https://api.opensanctions.org"""

    family = SourceFamily.SANCTIONS_AGGREGATOR
    capabilities = frozenset({Capability.SANCTIONS_LIST_LOOKUP})
    searches_by_name = True

    def __init__(self, descriptor: SourceDescriptor, http: HttpClient, base_url: str,
                 dataset: str = "default", limit: int = 20,
                 api_key_env: Optional[str] = "OPENSANCTIONS_API_KEY",
                 timeout: Optional[float] = None):
        super().__init__(descriptor)
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.dataset = dataset
        self.limit = limit
        self.api_key_env = api_key_env
        self.timeout = timeout

    def search_by_name(self, name: str, filters: SearchFilters) -> List[Dict[str, Any]]:
        headers = {}
        api_key = os.environ.get(self.api_key_env) if self.api_key_env else None
        if api_key:
            headers['Authorization'] = f"ApiKey {api_key}"

        data = self.http.get_json(
            f"{self.base_url}/search/{self.dataset}",
            self.source_id,
            params={
                'q': name,
                'limit': filters.limit or self.limit,
                'schema': SCHEMAS[filters.entity_kind],
            },
            headers=headers,
            timeout=self.timeout,
        )
        if not isinstance(data, dict) or not isinstance(data.get('results', []), list):
            raise SourceUnavailable(self.source_id, "unexpected response shape")
        results = data.get('results') or []
        logger.debug("OpenSanctions returned %d results for dataset %s", len(results), self.dataset)
        return results

    def _provenance(self, entity: Dict[str, Any]) -> Provenance:
        listed_on = map_datasets(entity.get('datasets') or [])
        return Provenance.from_descriptor(
            listed_on or self.descriptor,
            authority=SourceAuthority.INTERNATIONAL_AGGREGATOR,
            url=_first_prop(entity, 'sourceUrl'),
        )

    def to_candidates(self, records: Sequence[Any], request: ScreeningRequest,
                      query: SourceQuery) -> List[MatchCandidate]:
        candidates = []
        for entity in records:
            names = _prop(entity, 'name')
            entity_name = entity.get('caption') or (names[0] if names else "")
            if not entity_name:
                continue
            provenance = self._provenance(entity)
            notes = _prop(entity, 'notes')
            first_seen = entity.get('first_seen') or ""

            candidates.append(MatchCandidate(
                matched_name=entity_name,
                matched_name_local=next(
                    (n for n in names if n != entity_name and not n.isascii()), None
                ),
                match_rate=best_score(request.names, [entity_name]),
                entity_kind=(EntityKind.INDIVIDUAL if entity.get('schema') == "Person"
                             else EntityKind.ORGANIZATION),
                tag=tag_for_topics(_prop(entity, 'topics')),
                provenance=provenance,
                record_key=str(entity.get('id') or ""),
                aliases=tuple(_prop(entity, 'alias')[:5]),
                nationality=_first_prop(entity, 'nationality') or _first_prop(entity, 'country'),
                id_number=_first_prop(entity, 'idNumber'),
                date_of_birth=_first_prop(entity, 'birthDate'),
                gender=_first_prop(entity, 'gender'),
                role_description=_first_prop(entity, 'position'),
                reason=(notes[0] if notes else
                        f"Subject appears in {provenance.source_name} maintained by {provenance.issuer}."),
                remark=" ".join(notes[:2]) or None,
                address=_first_prop(entity, 'address'),
                start_date=first_seen.split("T")[0] or None,
            ))
        return candidates
