"""
Shared fixtures for the screening engine tests.

- db_provider: in-memory SQLite behind the regular session provider
- make_request / make_candidate: builders with sensible defaults
- StubConnector: connector whose answers are scripted per query
"""

import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

sys.path.insert(0, str(Path(__file__).parent.parent))

from connectors.base import RegistryConnector, SourceQuery
from connectors.errors import SourceUnavailable
from database.connection import DatabaseSettings, create_test_provider
from screening_models import (
    EntityKind,
    MatchCandidate,
    MatchTag,
    Provenance,
    ScreeningRequest,
    SourceAuthority,
    SourceDescriptor,
    SourceFamily,
    validate_screening_request,
)


@pytest.fixture
def db_provider():
    """Session provider on a fresh in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    provider = create_test_provider(engine=engine, settings=DatabaseSettings())
    provider.init()
    provider.create_tables()
    yield provider
    provider.drop_tables()
    engine.dispose()


class FakeClock:
    """Manually advanced UTC clock for TTL tests."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


def make_request(subject_name: str = "Maria Silva", **kwargs) -> ScreeningRequest:
    return validate_screening_request(subject_name=subject_name, **kwargs)


def make_descriptor(source_id: str = "test_list", jurisdiction: str = "BR",
                    authority: SourceAuthority = SourceAuthority.NATIONAL_GOVERNMENT,
                    list_type: str = "sanctions") -> SourceDescriptor:
    return SourceDescriptor(
        source_id=source_id,
        name=f"{source_id.upper()} List",
        issuer="Test Issuer",
        jurisdiction=jurisdiction,
        list_type=list_type,
        url=f"https://example.org/{source_id}",
        description="List used in tests",
        authority=authority,
    )


def make_candidate(
    name: str = "Maria Silva",
    rate: int = 95,
    tag: MatchTag = MatchTag.SANCTIONED,
    source_id: str = "test_list",
    jurisdiction: str = "BR",
    authority: SourceAuthority = SourceAuthority.NATIONAL_GOVERNMENT,
    record_key: str = "",
    id_number: Optional[str] = None,
    kind: EntityKind = EntityKind.INDIVIDUAL,
) -> MatchCandidate:
    return MatchCandidate(
        matched_name=name,
        match_rate=rate,
        entity_kind=kind,
        tag=tag,
        provenance=Provenance.from_descriptor(make_descriptor(source_id, jurisdiction, authority)),
        record_key=record_key,
        id_number=id_number,
    )


class StubConnector(RegistryConnector):
    """Name-searching connector returning scripted records.

    `answers` maps a searched name to a list of candidate dicts, or to an
    exception instance that is raised instead.
    """

    family = SourceFamily.GOVERNMENT_SANCTIONS
    searches_by_name = True

    def __init__(self, descriptor: SourceDescriptor, answers: Optional[Dict[str, Any]] = None,
                 jurisdictions=frozenset(), default: Any = None, delay: float = 0):
        super().__init__(descriptor)
        self.jurisdictions = frozenset(jurisdictions)
        self.answers = answers or {}
        self.default = default if default is not None else []
        self.delay = delay
        self.calls: List[str] = []

    def search_by_name(self, name, filters):
        self.calls.append(name)
        if self.delay:
            time.sleep(self.delay)
        answer = self.answers.get(name, self.default)
        if isinstance(answer, Exception):
            raise answer
        return answer

    def to_candidates(self, records: Sequence[Any], request: ScreeningRequest,
                      query: SourceQuery) -> List[MatchCandidate]:
        return [
            MatchCandidate(
                matched_name=r['name'],
                match_rate=r['rate'],
                entity_kind=request.entity_kind,
                tag=MatchTag(r.get('tag', "SAN")),
                provenance=Provenance.from_descriptor(self.descriptor),
                record_key=r.get('key', ""),
            )
            for r in records
        ]


def unavailable(source_id: str = "test_list") -> SourceUnavailable:
    return SourceUnavailable(source_id, "HTTP 503")
