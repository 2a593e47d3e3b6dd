"""
Screening Orchestrator

Runs one screening request end to end:

    Pending -> SourcesSelected -> SourcesQueried -> Merged -> Classified -> Persisted

or Failed when no source could be queried at all (nothing applicable, every
attempted source unavailable, or the caller cancelled).

Connector queries run concurrently on a shared thread pool; each connector
bounds its own HTTP calls with a timeout, and the orchestrator stops waiting
on a source `performance.source_wait_seconds` after its query starts. A source
that times out or fails is recorded as attempted but unavailable and never
fails its siblings. Cancelling a request drops queued queries but leaves
in-flight lookups running, so their cache writes still complete.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum as PyEnum
from typing import Dict, List, Optional, Sequence, Tuple

from connectors.base import RegistryConnector, SourceScreening
from connectors.registry import ConnectorRegistry
from lookup_cache import LookupCache
from risk_classifier import DEFAULT_POLICY, RiskPolicy, classify_risk
from screening_models import (
    LookupStatus,
    MatchCandidate,
    RequestMetadata,
    ScreenedSource,
    ScreeningOutcome,
    ScreeningRequest,
)
from text_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


class ScreeningState(str, PyEnum):
    PENDING = "pending"
    SOURCES_SELECTED = "sources_selected"
    SOURCES_QUERIED = "sources_queried"
    MERGED = "merged"
    CLASSIFIED = "classified"
    PERSISTED = "persisted"
    FAILED = "failed"


_TRANSITIONS = {
    ScreeningState.PENDING: {ScreeningState.SOURCES_SELECTED, ScreeningState.FAILED},
    ScreeningState.SOURCES_SELECTED: {ScreeningState.SOURCES_QUERIED, ScreeningState.FAILED},
    ScreeningState.SOURCES_QUERIED: {ScreeningState.MERGED, ScreeningState.FAILED},
    ScreeningState.MERGED: {ScreeningState.CLASSIFIED},
    ScreeningState.CLASSIFIED: {ScreeningState.PERSISTED, ScreeningState.FAILED},
    ScreeningState.PERSISTED: set(),
    ScreeningState.FAILED: set(),
}


class ScreeningFailed(Exception):
    """No source could be queried, or the request was cancelled"""

    def __init__(self, message: str, reason: str = "no_sources"):
        super().__init__(message)
        self.reason = reason


@dataclass
class ScreeningRun:
    """State of one request as it moves through the pipeline"""
    state: ScreeningState = ScreeningState.PENDING
    history: List[ScreeningState] = field(default_factory=lambda: [ScreeningState.PENDING])

    def advance(self, new_state: ScreeningState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal screening transition {self.state.value} -> {new_state.value}")
        logger.debug("Screening state %s -> %s", self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)


# ============================================
# MERGE
# ============================================

def passes_filters(candidate: MatchCandidate, request: ScreeningRequest) -> bool:
    """Threshold, requested category and requested jurisdiction checks."""
    if candidate.match_rate < request.threshold:
        return False
    category = candidate.tag.category
    if category is not None and category not in request.categories:
        return False
    if not request.screens_all_jurisdictions and \
            candidate.provenance.jurisdiction not in request.jurisdictions:
        return False
    return True


def rank_key(candidate: MatchCandidate) -> Tuple[int, int]:
    """Match rate descending, then source authority descending."""
    return (-candidate.match_rate, -int(candidate.provenance.authority))


def merge_candidates(
    request: ScreeningRequest,
    produced: Sequence[Tuple[str, MatchCandidate]],
    top_n: int,
) -> List[Tuple[str, MatchCandidate]]:
    """Filter, deduplicate, sort and truncate candidates.

    Args:
        request: The screening request
        produced: (connector source id, candidate) pairs in connector order
        top_n: Maximum number of matches to keep

    Returns:
        Ranked (connector source id, candidate) pairs
    """
    best: Dict[Tuple[str, str], Tuple[str, MatchCandidate]] = {}
    for origin, candidate in produced:
        if not passes_filters(candidate, request):
            continue
        key = candidate.dedup_key
        kept = best.get(key)
        if kept is None or candidate.match_rate > kept[1].match_rate:
            best[key] = (origin, candidate)

    ranked = sorted(best.values(), key=lambda pair: rank_key(pair[1]))
    return ranked[:top_n]


# ============================================
# ORCHESTRATOR
# ============================================

class ScreeningOrchestrator:
    """Selects, queries and merges sources, then hands off to the assembler."""

    def __init__(
        self,
        registry: ConnectorRegistry,
        cache: LookupCache,
        assembler,
        ttl_policy,
        risk_policy: RiskPolicy = DEFAULT_POLICY,
        top_n: int = 10,
        max_threads: int = 8,
        source_wait_seconds: float = 30,
        security_logger=None,
    ):
        """
        Args:
            registry: Connectors to select from
            cache: Lookup cache shared by every connector
            assembler: ReportAssembler persisting finished screenings
            ttl_policy: Callable (family, negative=bool) -> TTL seconds
            risk_policy: Risk thresholds and adverse tags
            top_n: Matches kept per report
            max_threads: Worker threads for concurrent source queries
            source_wait_seconds: Per-source wait, counted from when its query starts
            security_logger: SecurityLogger for rejected identifiers
        """
        self.registry = registry
        self.cache = cache
        self.assembler = assembler
        self.ttl_policy = ttl_policy
        self.risk_policy = risk_policy
        self.top_n = top_n
        self.source_wait_seconds = source_wait_seconds
        self.security_logger = security_logger
        self._executor = ThreadPoolExecutor(max_workers=max_threads, thread_name_prefix="screening")

    @classmethod
    def from_config(cls, config, registry: ConnectorRegistry, cache: LookupCache,
                    assembler, security_logger=None) -> 'ScreeningOrchestrator':
        return cls(
            registry=registry,
            cache=cache,
            assembler=assembler,
            ttl_policy=config.cache.ttl_seconds,
            risk_policy=RiskPolicy.from_config(config.risk),
            top_n=config.matching.top_n,
            max_threads=config.performance.max_threads,
            source_wait_seconds=config.performance.source_wait_seconds,
            security_logger=security_logger,
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def select_sources(self, request: ScreeningRequest) -> List[RegistryConnector]:
        """Applicable connectors that have at least one query to run."""
        return [c for c in self.registry.select(request) if c.plan(request)]

    def query_sources(
        self,
        request: ScreeningRequest,
        connectors: Sequence[RegistryConnector],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Tuple[RegistryConnector, SourceScreening]]:
        """Query every connector concurrently and collect their outcomes.

        Each source gets `source_wait_seconds` from the moment its query
        starts on a worker thread; sources still queued behind a busy pool
        are not charged for the time spent waiting for a thread.

        Raises:
            ScreeningFailed: If cancel_event is set before all sources finish
        """
        started: Dict[str, float] = {}

        def run(connector: RegistryConnector) -> SourceScreening:
            started[connector.source_id] = time.monotonic()
            return connector.screen(request, self.cache, self.ttl_policy)

        futures: Dict[Future, RegistryConnector] = {
            self._executor.submit(run, c): c for c in connectors
        }
        outcomes: Dict[str, SourceScreening] = {}
        pending = set(futures)

        while pending:
            if cancel_event is not None and cancel_event.is_set():
                # queued queries never start; running ones finish their cache writes
                for future in pending:
                    future.cancel()
                raise ScreeningFailed("Screening cancelled by caller", reason="cancelled")
            done, pending = wait(pending, timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
            for future in done:
                connector = futures[future]
                outcomes[connector.source_id] = self._collect(connector, future)

            now = time.monotonic()
            expired = {
                future for future in pending
                if now - started.get(futures[future].source_id, now) >= self.source_wait_seconds
            }
            pending -= expired
            for future in expired:
                connector = futures[future]
                logger.warning("Source %s did not answer within %ss", connector.source_id,
                               self.source_wait_seconds)
                outcomes[connector.source_id] = SourceScreening(
                    status=LookupStatus.UNAVAILABLE,
                    note=f"timed out after {self.source_wait_seconds}s",
                    elapsed_ms=int(self.source_wait_seconds * 1000),
                )

        return [(c, outcomes[c.source_id]) for c in connectors]

    def _collect(self, connector: RegistryConnector, future: Future) -> SourceScreening:
        error = future.exception()
        if error is not None:
            logger.error("Source %s failed unexpectedly: %s", connector.source_id, error,
                         exc_info=error)
            return SourceScreening(status=LookupStatus.UNAVAILABLE,
                                   note=f"internal error: {type(error).__name__}")
        screening = future.result()
        log = logger.warning if screening.status == LookupStatus.UNAVAILABLE else logger.info
        log("Source %s: %s, %d candidates in %dms%s", connector.source_id, screening.status.value,
            len(screening.candidates), screening.elapsed_ms, " (cache)" if screening.from_cache else "")
        return screening

    def screen(
        self,
        request: ScreeningRequest,
        metadata: Optional[RequestMetadata] = None,
        cancel_event: Optional[threading.Event] = None,
        run: Optional[ScreeningRun] = None,
    ) -> ScreeningOutcome:
        """Screen a subject and persist the report.

        Args:
            request: Validated screening request
            metadata: Caller IP / user agent for the audit trail
            cancel_event: Set by the caller to abandon the request
            run: Optional state holder, for callers that observe transitions

        Returns:
            ScreeningOutcome with the report id and retrieval token

        Raises:
            ScreeningFailed: If no source could be queried or the caller cancelled
            PersistenceFailure: If the report could not be stored
        """
        run = run or ScreeningRun()
        metadata = metadata or RequestMetadata()
        started = time.monotonic()
        logger.info("Screening %s (%s), jurisdictions=%s", sanitize_for_logging(request.subject_name),
                    request.entity_kind.value, ",".join(sorted(request.jurisdictions)))

        connectors = self.select_sources(request)
        if not connectors:
            run.advance(ScreeningState.FAILED)
            raise ScreeningFailed("No source applies to this request")
        run.advance(ScreeningState.SOURCES_SELECTED)

        try:
            results = self.query_sources(request, connectors, cancel_event)
        except ScreeningFailed:
            run.advance(ScreeningState.FAILED)
            raise
        if all(s.status == LookupStatus.UNAVAILABLE for _, s in results):
            run.advance(ScreeningState.FAILED)
            raise ScreeningFailed("Every selected source was unavailable", reason="all_unavailable")
        run.advance(ScreeningState.SOURCES_QUERIED)
        self._log_invalid_identifiers(request, results)

        produced = [(c.source_id, m) for c, s in results for m in s.candidates]
        ranked = merge_candidates(request, produced, self.top_n)
        matches = [m for _, m in ranked]
        run.advance(ScreeningState.MERGED)

        risk_level = classify_risk(matches, self.risk_policy)
        run.advance(ScreeningState.CLASSIFIED)

        found: Dict[str, int] = {}
        for origin, _ in ranked:
            found[origin] = found.get(origin, 0) + 1
        screened = [
            ScreenedSource(
                descriptor=c.descriptor,
                status=s.status,
                matches_found=found.get(c.source_id, 0),
                note=s.note,
                from_cache=s.from_cache,
                elapsed_ms=s.elapsed_ms,
            )
            for c, s in results
        ]
        unavailable = any(s.status == LookupStatus.UNAVAILABLE for s in screened)
        registry_data = {
            c.summary_section: s.registry_data
            for c, s in results if c.summary_section and s.registry_data is not None
        }
        answered = [s.descriptor.name for s in screened if s.status != LookupStatus.UNAVAILABLE]

        try:
            outcome = self.assembler.assemble(
                request=request,
                matches=matches,
                screened_sources=screened,
                risk_level=risk_level,
                status="partial" if unavailable else "completed",
                metadata=metadata,
                elapsed_ms=int((time.monotonic() - started) * 1000),
                sources_answered=answered,
                registry_data=registry_data,
            )
        except Exception:
            run.advance(ScreeningState.FAILED)
            raise
        run.advance(ScreeningState.PERSISTED)

        logger.info("Screening finished: %d matches, risk=%s, status=%s, %dms",
                    len(matches), risk_level.value, outcome.status, outcome.elapsed_ms)
        return outcome

    def _log_invalid_identifiers(self, request: ScreeningRequest,
                                 results: Sequence[Tuple[RegistryConnector, SourceScreening]]) -> None:
        if self.security_logger is None:
            return
        for connector, screening in results:
            if screening.status != LookupStatus.INVALID_IDENTIFIER:
                continue
            scheme = connector.scheme_for(request.entity_kind)
            self.security_logger.log_invalid_identifier(
                source_id=connector.source_id,
                scheme=scheme.value if scheme else "",
                identifier=request.identifier or "",
                reason=screening.note or "",
            )
