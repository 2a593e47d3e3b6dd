"""
Tests for the screening orchestrator: source selection, concurrent
querying, merge rules, failure modes and the state machine.
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from config_manager import CacheConfig
from connectors.brasil_api import BrasilApiCompanyConnector
from connectors.cpf import CpfValidatorConnector
from connectors.http_client import HttpClient
from connectors.registry import ConnectorRegistry
from lookup_cache import MemoryLookupCache
from orchestrator import (
    ScreeningFailed,
    ScreeningOrchestrator,
    ScreeningRun,
    ScreeningState,
    merge_candidates,
    passes_filters,
)
from report_assembler import PersistenceFailure
from screening_models import (
    LookupStatus,
    MatchTag,
    RiskLevel,
    ScreeningOutcome,
    SourceAuthority,
)
from sources_catalogue import get_source

from conftest import StubConnector, make_candidate, make_descriptor, make_request, unavailable


class RecordingAssembler:
    """Stands in for ReportAssembler and remembers what it was given."""

    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def assemble(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return ScreeningOutcome(
            report_id="report-1",
            report_token="token-1",
            request=kwargs['request'],
            matches=kwargs['matches'],
            screened_sources=kwargs['screened_sources'],
            risk_level=kwargs['risk_level'],
            status=kwargs['status'],
            elapsed_ms=kwargs['elapsed_ms'],
            sources_answered=kwargs['sources_answered'],
            registry_data=kwargs.get('registry_data') or {},
        )


def hit(name="Maria Silva", rate=98, tag="SAN", key="1"):
    return {'name': name, 'rate': rate, 'tag': tag, 'key': key}


@pytest.fixture
def build():
    """Factory for orchestrators over stub connectors; closes them afterwards."""
    created = []

    def _build(*connectors, assembler=None, source_wait_seconds=5, max_threads=4, **kwargs):
        registry = ConnectorRegistry()
        for connector in connectors:
            registry.register(connector)
        orchestrator = ScreeningOrchestrator(
            registry=registry,
            cache=MemoryLookupCache(),
            assembler=assembler or RecordingAssembler(),
            ttl_policy=CacheConfig().ttl_seconds,
            max_threads=max_threads,
            source_wait_seconds=source_wait_seconds,
            **kwargs
        )
        created.append(orchestrator)
        return orchestrator

    yield _build
    for orchestrator in created:
        orchestrator.close()


# ============================================
# MERGE RULES
# ============================================

class TestMergeCandidates:
    """Filtering, deduplication, ordering and truncation."""

    def test_duplicates_keep_highest_rate(self):
        request = make_request()
        produced = [
            ("test_list", make_candidate(rate=85, record_key="A")),
            ("test_list", make_candidate(rate=92, record_key="A")),
            ("test_list", make_candidate(rate=88, record_key="A")),
        ]
        [(_, kept)] = merge_candidates(request, produced, top_n=10)
        assert kept.match_rate == 92

    def test_same_key_from_different_sources_kept(self):
        request = make_request()
        produced = [
            ("a", make_candidate(source_id="a", record_key="A")),
            ("b", make_candidate(source_id="b", record_key="A")),
        ]
        assert len(merge_candidates(request, produced, top_n=10)) == 2

    def test_sorted_by_rate_then_authority(self):
        request = make_request()
        aggregator = make_candidate(rate=95, source_id="agg",
                                    authority=SourceAuthority.INTERNATIONAL_AGGREGATOR)
        national = make_candidate(rate=95, source_id="gov")
        best = make_candidate(rate=99, source_id="other",
                              authority=SourceAuthority.INTERNATIONAL_AGGREGATOR)
        ranked = merge_candidates(request, [("x", aggregator), ("x", national), ("x", best)], top_n=10)
        assert [m.provenance.source_id for _, m in ranked] == ["other", "gov", "agg"]

    def test_truncated_to_top_n(self):
        request = make_request()
        produced = [("x", make_candidate(rate=70 + i, record_key=str(i))) for i in range(20)]
        ranked = merge_candidates(request, produced, top_n=5)
        assert [m.match_rate for _, m in ranked] == [89, 88, 87, 86, 85]

    def test_below_threshold_dropped(self):
        request = make_request(threshold=90)
        produced = [("x", make_candidate(rate=89, record_key="a")),
                    ("x", make_candidate(rate=90, record_key="b"))]
        assert [m.match_rate for _, m in merge_candidates(request, produced, top_n=10)] == [90]

    def test_category_filter_keeps_registry_confirmations(self):
        request = make_request(categories=["pep"])
        assert not passes_filters(make_candidate(tag=MatchTag.SANCTIONED), request)
        assert passes_filters(make_candidate(tag=MatchTag.PEP), request)
        assert passes_filters(make_candidate(tag=MatchTag.REGISTRY), request)

    def test_jurisdiction_filter(self):
        request = make_request(jurisdictions=["BR"])
        assert passes_filters(make_candidate(jurisdiction="BR"), request)
        assert not passes_filters(make_candidate(jurisdiction="US"), request)
        assert passes_filters(make_candidate(jurisdiction="US"), make_request())


# ============================================
# STATE MACHINE
# ============================================

class TestScreeningRun:
    """Legal and illegal transitions."""

    def test_starts_pending(self):
        assert ScreeningRun().state == ScreeningState.PENDING

    def test_cannot_skip_states(self):
        run = ScreeningRun()
        with pytest.raises(RuntimeError):
            run.advance(ScreeningState.MERGED)

    def test_failed_is_terminal(self):
        run = ScreeningRun()
        run.advance(ScreeningState.FAILED)
        with pytest.raises(RuntimeError):
            run.advance(ScreeningState.SOURCES_SELECTED)


# ============================================
# ORCHESTRATION
# ============================================

class TestScreen:
    """End to end through stub connectors and a recording assembler."""

    def test_completed_screening(self, build):
        source = StubConnector(make_descriptor("list_a"), answers={"Maria Silva": [hit(rate=97)]},
                               jurisdictions={"BR"})
        assembler = RecordingAssembler()
        orchestrator = build(source, assembler=assembler)
        run = ScreeningRun()

        outcome = orchestrator.screen(make_request(), run=run)

        assert outcome.status == "completed"
        assert outcome.report_token == "token-1"
        assert [m.match_rate for m in outcome.matches] == [97]
        assert outcome.risk_level == RiskLevel.CRITICAL
        [screened] = outcome.screened_sources
        assert screened.status == LookupStatus.OK
        assert screened.matches_found == 1
        assert run.history == [
            ScreeningState.PENDING,
            ScreeningState.SOURCES_SELECTED,
            ScreeningState.SOURCES_QUERIED,
            ScreeningState.MERGED,
            ScreeningState.CLASSIFIED,
            ScreeningState.PERSISTED,
        ]
        assert len(assembler.calls) == 1

    def test_no_matches_is_low_risk(self, build):
        source = StubConnector(make_descriptor("list_a"), default=[hit(rate=40)])
        outcome = build(source).screen(make_request())
        assert outcome.matches == []
        assert outcome.risk_level == RiskLevel.LOW
        assert outcome.screened_sources[0].matches_found == 0

    def test_one_source_unavailable_is_partial(self, build):
        good = StubConnector(make_descriptor("list_a"), default=[hit()])
        bad = StubConnector(make_descriptor("list_b"), default=unavailable("list_b"))
        assembler = RecordingAssembler()
        outcome = build(good, bad, assembler=assembler).screen(make_request())

        assert outcome.status == "partial"
        statuses = {s.descriptor.source_id: s.status for s in outcome.screened_sources}
        assert statuses == {"list_a": LookupStatus.OK, "list_b": LookupStatus.UNAVAILABLE}
        assert outcome.screened_sources[1].note == "HTTP 503"
        assert assembler.calls[0]['sources_answered'] == ["LIST_A List"]

    def test_all_sources_unavailable_fails(self, build):
        a = StubConnector(make_descriptor("list_a"), default=unavailable("list_a"))
        b = StubConnector(make_descriptor("list_b"), default=unavailable("list_b"))
        assembler = RecordingAssembler()
        run = ScreeningRun()

        with pytest.raises(ScreeningFailed) as exc_info:
            build(a, b, assembler=assembler).screen(make_request(), run=run)

        assert exc_info.value.reason == "all_unavailable"
        assert run.state == ScreeningState.FAILED
        assert assembler.calls == []

    def test_no_applicable_source_fails(self, build):
        source = StubConnector(make_descriptor("list_a"), jurisdictions={"BR"})
        run = ScreeningRun()
        with pytest.raises(ScreeningFailed) as exc_info:
            build(source).screen(make_request(jurisdictions=["US"]), run=run)
        assert exc_info.value.reason == "no_sources"
        assert run.history == [ScreeningState.PENDING, ScreeningState.FAILED]
        assert source.calls == []

    def test_source_without_queries_not_selected(self, build):
        cpf = CpfValidatorConnector(get_source("br_cpf"))
        names = StubConnector(make_descriptor("list_a"))
        orchestrator = build(cpf, names)
        assert orchestrator.select_sources(make_request()) == [names]

    def test_slow_source_times_out(self, build):
        fast = StubConnector(make_descriptor("fast"), default=[hit()])
        slow = StubConnector(make_descriptor("slow"), default=[hit()], delay=1.0)
        outcome = build(fast, slow, source_wait_seconds=0.2).screen(make_request())

        assert outcome.status == "partial"
        slow_result = outcome.screened_sources[1]
        assert slow_result.status == LookupStatus.UNAVAILABLE
        assert "timed out" in slow_result.note
        assert [m.provenance.source_id for m in outcome.matches] == ["fast"]

    def test_queued_source_wait_starts_when_it_runs(self, build):
        """A source waiting for a free thread is not charged for the queueing time."""
        first = StubConnector(make_descriptor("first"), default=[hit(key="1")], delay=0.2)
        second = StubConnector(make_descriptor("second"), default=[hit(key="2")], delay=0.2)
        outcome = build(first, second, source_wait_seconds=0.35, max_threads=1).screen(make_request())

        assert outcome.status == "completed"
        assert [s.status for s in outcome.screened_sources] == [LookupStatus.OK, LookupStatus.OK]
        assert {m.provenance.source_id for m in outcome.matches} == {"first", "second"}

    def test_cancellation_drops_queued_sources(self, build):
        running = StubConnector(make_descriptor("running"), default=[hit()], delay=0.3)
        queued = StubConnector(make_descriptor("queued"), default=[hit()])
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(ScreeningFailed):
            build(running, queued, max_threads=1).screen(make_request(), cancel_event=cancel)

        time.sleep(0.5)
        assert queued.calls == []

    def test_cancellation(self, build):
        slow = StubConnector(make_descriptor("slow"), default=[hit()], delay=0.5)
        assembler = RecordingAssembler()
        cancel = threading.Event()
        cancel.set()
        run = ScreeningRun()

        with pytest.raises(ScreeningFailed) as exc_info:
            build(slow, assembler=assembler).screen(make_request(), cancel_event=cancel, run=run)

        assert exc_info.value.reason == "cancelled"
        assert run.state == ScreeningState.FAILED
        assert assembler.calls == []

    def test_unexpected_connector_error_is_isolated(self, build):
        broken = StubConnector(make_descriptor("broken"), default=RuntimeError("bug"))
        good = StubConnector(make_descriptor("good"), default=[hit()])
        outcome = build(broken, good).screen(make_request())
        broken_result = outcome.screened_sources[0]
        assert broken_result.status == LookupStatus.UNAVAILABLE
        assert broken_result.note == "internal error: RuntimeError"
        assert outcome.status == "partial"

    def test_persistence_failure_fails_run(self, build):
        source = StubConnector(make_descriptor("list_a"), default=[hit()])
        run = ScreeningRun()
        orchestrator = build(source, assembler=RecordingAssembler(error=PersistenceFailure("db down")))
        with pytest.raises(PersistenceFailure):
            orchestrator.screen(make_request(), run=run)
        assert run.state == ScreeningState.FAILED

    def test_second_screening_served_from_cache(self, build):
        source = StubConnector(make_descriptor("list_a"), default=[hit()])
        orchestrator = build(source)
        orchestrator.screen(make_request())
        outcome = orchestrator.screen(make_request())
        assert source.calls == ["Maria Silva"]
        assert outcome.screened_sources[0].from_cache

    def test_both_names_searched(self, build):
        source = StubConnector(make_descriptor("list_a"),
                               answers={"Мария Силва": [hit(name="Мария Силва", key="2")]})
        outcome = build(source).screen(make_request(subject_name_local="Мария Силва"))
        assert sorted(source.calls) == sorted(["Maria Silva", "Мария Силва"])
        assert len(outcome.matches) == 1

    def test_duplicate_hits_across_names_merged(self, build):
        source = StubConnector(make_descriptor("list_a"), answers={
            "Maria Silva": [hit(rate=91, key="X")],
            "Maria da Silva": [hit(rate=96, key="X")],
        })
        outcome = build(source).screen(make_request(subject_name_local="Maria da Silva"))
        assert [m.match_rate for m in outcome.matches] == [96]
        assert outcome.screened_sources[0].matches_found == 1

    def test_invalid_identifier_logged(self, build):
        security_logger = MagicMock()
        cpf = CpfValidatorConnector(get_source("br_cpf"))
        names = StubConnector(make_descriptor("list_a"))
        outcome = build(cpf, names, security_logger=security_logger).screen(
            make_request(national_id="123.456.789-00")
        )

        statuses = {s.descriptor.source_id: s.status for s in outcome.screened_sources}
        assert statuses["br_cpf"] == LookupStatus.INVALID_IDENTIFIER
        security_logger.log_invalid_identifier.assert_called_once()
        kwargs = security_logger.log_invalid_identifier.call_args.kwargs
        assert kwargs['source_id'] == "br_cpf"
        assert kwargs['scheme'] == "cpf"
        assert kwargs['identifier'] == "123.456.789-00"

    def test_company_data_reported_below_threshold(self, build):
        """An inactive registration is visible even when the name does not match."""
        http = MagicMock(spec=HttpClient)
        http.get_json.return_value = {
            'cnpj': "11222333000181",
            'razao_social': "ACME COMERCIO LTDA",
            'descricao_situacao_cadastral': "INAPTA",
            'qsa': [{'nome_socio': "JOAO SOUZA", 'qualificacao_socio': "Sócio"}],
        }
        company = BrasilApiCompanyConnector(get_source("br_receita_federal"), http, "https://brasilapi.test/api")
        assembler = RecordingAssembler()
        outcome = build(company, assembler=assembler).screen(
            make_request("Zenith Holdings", entity_kind="organization",
                         organization_registration="11.222.333/0001-81")
        )

        assert outcome.matches == []
        summary = outcome.summary()
        assert summary['brazil_company_data']['razao_social'] == "ACME COMERCIO LTDA"
        assert summary['brazil_company_data']['ativa'] is False
        assert summary['cpf_validation'] is None
        assert summary['cache_hit'] is False
        assert assembler.calls[0]['registry_data'] == {'brazil_company_data': summary['brazil_company_data']}

    def test_cpf_validation_in_summary(self, build):
        cpf = CpfValidatorConnector(get_source("br_cpf"))
        outcome = build(cpf).screen(make_request(national_id="529.982.247-25"))
        assert outcome.summary()['cpf_validation'] == {'valid': True, 'situacao': "Regular"}
        assert outcome.summary()['brazil_company_data'] is None
