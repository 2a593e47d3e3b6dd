"""
Registry Connector interface.

A connector wraps one external source family behind a small capability
surface:

- lookup_by_identifier(id) for structured registries keyed by a national ID
- search_by_name(name, filters) for candidate-returning sources

Each connector declares the jurisdictions and entity kinds it covers; the
connector registry and the orchestrator use only these declarations to
decide applicability. Every live lookup except an unavailable one is
written through to the lookup cache, negative answers with a shorter TTL.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum as PyEnum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from connectors.errors import InvalidIdentifier, RecordNotFound, SourceUnavailable
from identifiers import IdentifierScheme, validate_identifier
from lookup_cache import LookupCache
from screening_models import (
    EntityKind,
    LookupStatus,
    MatchCandidate,
    ScreeningRequest,
    SourceDescriptor,
    SourceFamily,
)
from text_utils import normalize_name

logger = logging.getLogger(__name__)

TtlPolicy = Callable[..., float]


class Capability(str, PyEnum):
    """What a connector can do"""
    NATIONAL_REGISTRY_LOOKUP = "national_registry_lookup"
    SANCTIONS_LIST_LOOKUP = "sanctions_list_lookup"
    IDENTIFIER_VALIDATOR = "identifier_validator"


class QueryMode(str, PyEnum):
    IDENTIFIER = "identifier"
    NAME = "name"


@dataclass(frozen=True)
class SourceQuery:
    """One call a connector will make for a request"""
    mode: QueryMode
    value: str
    cache_key: str


@dataclass(frozen=True)
class SearchFilters:
    """Filters passed to search_by_name"""
    entity_kind: EntityKind
    limit: Optional[int] = None


@dataclass(frozen=True)
class LookupResult:
    """Typed outcome of one query: ok, not found, invalid identifier or unavailable"""
    status: LookupStatus
    records: Tuple[Any, ...] = ()
    note: Optional[str] = None
    from_cache: bool = False

    @classmethod
    def ok(cls, records: Sequence[Any]) -> 'LookupResult':
        return cls(LookupStatus.OK, tuple(records))

    @classmethod
    def not_found(cls, note: Optional[str] = None) -> 'LookupResult':
        return cls(LookupStatus.NOT_FOUND, note=note)

    @classmethod
    def unavailable(cls, note: str) -> 'LookupResult':
        return cls(LookupStatus.UNAVAILABLE, note=note)

    @classmethod
    def invalid_identifier(cls, note: str) -> 'LookupResult':
        return cls(LookupStatus.INVALID_IDENTIFIER, note=note)

    def to_payload(self) -> Dict[str, Any]:
        return {'status': self.status.value, 'records': list(self.records), 'note': self.note}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'LookupResult':
        return cls(
            status=LookupStatus(payload['status']),
            records=tuple(payload.get('records') or ()),
            note=payload.get('note'),
            from_cache=True,
        )


@dataclass
class SourceScreening:
    """Everything one connector produced for one request"""
    status: LookupStatus
    candidates: List[MatchCandidate] = field(default_factory=list)
    note: Optional[str] = None
    from_cache: bool = False
    elapsed_ms: int = 0
    registry_data: Optional[Dict[str, Any]] = None


def combine_results(results: Sequence[LookupResult]) -> Tuple[LookupStatus, Optional[str], bool]:
    """Fold per-query outcomes into one status for the source.

    Any answered query makes the source OK; otherwise unavailability wins
    over an invalid identifier, which wins over not found.
    """
    statuses = {r.status for r in results}
    notes = [r.note for r in results if r.note and r.status != LookupStatus.OK]
    from_cache = bool(results) and all(r.from_cache for r in results)
    for status in (LookupStatus.OK, LookupStatus.UNAVAILABLE,
                   LookupStatus.INVALID_IDENTIFIER, LookupStatus.NOT_FOUND):
        if status in statuses:
            if status == LookupStatus.OK and LookupStatus.UNAVAILABLE in statuses:
                return status, "partially answered: " + "; ".join(notes), from_cache
            return status, ("; ".join(notes) or None), from_cache
    return LookupStatus.NOT_FOUND, None, from_cache


class RegistryConnector(ABC):
    """Base class for every source family connector."""

    source_id: str = ""
    family: SourceFamily = SourceFamily.SANCTIONS_AGGREGATOR
    capabilities: FrozenSet[Capability] = frozenset()
    jurisdictions: FrozenSet[str] = frozenset()
    entity_kinds: FrozenSet[EntityKind] = frozenset(EntityKind)
    identifier_scheme: Optional[IdentifierScheme] = None
    searches_by_name: bool = False
    summary_section: Optional[str] = None

    def __init__(self, descriptor: SourceDescriptor):
        self.descriptor = descriptor
        self.source_id = descriptor.source_id

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(source_id={self.source_id!r})>"

    # ----------------------------------------
    # applicability
    # ----------------------------------------

    @property
    def is_global(self) -> bool:
        return not self.jurisdictions

    def applies_to(self, request: ScreeningRequest) -> bool:
        """Declared entity kind and jurisdiction coverage match the request."""
        if request.entity_kind not in self.entity_kinds:
            return False
        if self.is_global or request.screens_all_jurisdictions:
            return True
        return bool(self.jurisdictions & request.jurisdictions)

    def scheme_for(self, kind: EntityKind) -> Optional[IdentifierScheme]:
        """Identifier scheme this source is keyed by for an entity kind."""
        return self.identifier_scheme

    def identifier_for(self, request: ScreeningRequest) -> Optional[str]:
        """Cleaned identifier this connector should look up, if any."""
        scheme = self.scheme_for(request.entity_kind)
        if scheme is None or not request.identifier:
            return None
        return validate_identifier(scheme, request.identifier).value or None

    def plan(self, request: ScreeningRequest) -> List[SourceQuery]:
        """Queries to run for a request; empty when the source cannot help."""
        queries: List[SourceQuery] = []
        identifier = self.identifier_for(request)
        if identifier:
            queries.append(SourceQuery(
                QueryMode.IDENTIFIER, identifier, f"{self.source_id}:id:{identifier}"
            ))
        if self.searches_by_name and not queries:
            seen = set()
            for name in request.names:
                normalized = normalize_name(name)
                if not normalized or normalized in seen:
                    continue
                seen.add(normalized)
                queries.append(SourceQuery(
                    QueryMode.NAME, name,
                    f"{self.source_id}:name:{request.entity_kind.value}:{normalized}"
                ))
        return queries

    def check_identifier(self, identifier: str, kind: EntityKind) -> str:
        """Validate an identifier before any network call.

        Raises:
            InvalidIdentifier: If format or check digits are wrong
        """
        scheme = self.scheme_for(kind)
        check = validate_identifier(scheme, identifier)
        if not check.valid:
            raise InvalidIdentifier(self.source_id, scheme.value, check.reason)
        return check.value

    # ----------------------------------------
    # capability surface
    # ----------------------------------------

    def lookup_by_identifier(self, identifier: str, kind: EntityKind) -> Optional[Any]:
        """Fetch the record keyed by a national identifier.

        A list return value means one identifier maps to several records.

        Raises:
            RecordNotFound, SourceUnavailable, InvalidIdentifier
        """
        raise NotImplementedError(f"{self.source_id} does not support identifier lookup")

    def search_by_name(self, name: str, filters: SearchFilters) -> List[Any]:
        """Fetch candidate records for a name; callers score them locally.

        Raises:
            SourceUnavailable
        """
        raise NotImplementedError(f"{self.source_id} does not support name search")

    @abstractmethod
    def to_candidates(self, records: Sequence[Any], request: ScreeningRequest,
                      query: SourceQuery) -> List[MatchCandidate]:
        """Turn raw records into scored match candidates."""

    def registry_data(self, result: LookupResult, request: ScreeningRequest) -> Optional[Dict[str, Any]]:
        """Registry facts reported in the summary whatever the name score.

        Only consulted when summary_section is set.
        """
        return None

    # ----------------------------------------
    # execution
    # ----------------------------------------

    def execute(self, query: SourceQuery, request: ScreeningRequest) -> LookupResult:
        """Run one live query, mapping connector errors to typed results."""
        try:
            if query.mode == QueryMode.IDENTIFIER:
                record = self.lookup_by_identifier(query.value, request.entity_kind)
                if record is None or record == []:
                    return LookupResult.not_found()
                return LookupResult.ok(record if isinstance(record, list) else [record])
            records = self.search_by_name(query.value, SearchFilters(request.entity_kind))
            if not records:
                return LookupResult.not_found()
            return LookupResult.ok(records)
        except RecordNotFound as e:
            return LookupResult.not_found(e.reason)
        except InvalidIdentifier as e:
            return LookupResult.invalid_identifier(e.reason)
        except SourceUnavailable as e:
            logger.warning("Source unavailable: %s", e)
            return LookupResult.unavailable(e.reason)

    def fetch(self, query: SourceQuery, request: ScreeningRequest, cache: LookupCache,
              ttl_policy: TtlPolicy) -> LookupResult:
        """Cache-first query with write-through of every answered lookup."""
        family = self.family.value
        cached = cache.get(family, query.cache_key)
        if cached is not None:
            logger.debug("Cache hit %s/%s (hits=%d)", family, query.cache_key, cached.hit_count)
            return LookupResult.from_payload(cached.payload)

        result = self.execute(query, request)
        if result.status != LookupStatus.UNAVAILABLE:
            ttl = ttl_policy(family, negative=result.status == LookupStatus.NOT_FOUND)
            cache.put(family, query.cache_key, result.to_payload(), ttl)
        return result

    def screen(self, request: ScreeningRequest, cache: LookupCache,
               ttl_policy: TtlPolicy) -> SourceScreening:
        """Run every planned query and convert the answers to candidates."""
        started = time.monotonic()
        results: List[LookupResult] = []
        candidates: List[MatchCandidate] = []
        registry_data: Optional[Dict[str, Any]] = None

        for query in self.plan(request):
            result = self.fetch(query, request, cache, ttl_policy)
            results.append(result)
            if self.summary_section:
                registry_data = self.registry_data(result, request) or registry_data
            if result.status == LookupStatus.OK:
                candidates.extend(self.to_candidates(result.records, request, query))

        status, note, from_cache = combine_results(results)
        return SourceScreening(
            status=status,
            candidates=candidates,
            note=note,
            from_cache=from_cache,
            elapsed_ms=int((time.monotonic() - started) * 1000),
            registry_data=registry_data,
        )
