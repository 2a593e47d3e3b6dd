"""
API endpoint tests for the Identity Screening API

Uses FastAPI's TestClient with the engine globals patched on the server
module. Covers validation, screening, report retrieval/export, health and
error mapping.
"""

import threading
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from config_manager import ConfigManager
from database.repositories import ReportNotFoundError
from orchestrator import ScreeningFailed
from report_assembler import PersistenceFailure
from screening_models import (
    AssociatedEntity,
    LookupStatus,
    MatchTag,
    RequestMetadata,
    RiskLevel,
    ScreenedSource,
    ScreeningOutcome,
)

from conftest import StubConnector, make_candidate, make_descriptor, make_request


@pytest.fixture
def config(tmp_path):
    """Built-in defaults (no config file)."""
    return ConfigManager(config_path=str(tmp_path / "missing.yaml"))


@pytest.fixture
def outcome():
    match = make_candidate(rate=97, record_key="1")
    registry = make_candidate(rate=100, tag=MatchTag.REGISTRY, source_id="br_cpf", record_key="2")
    return ScreeningOutcome(
        report_id="5b0c7d0e-0000-4000-8000-000000000001",
        report_token="tok_abc123",
        request=make_request(national_id="529.982.247-25"),
        matches=[match, registry],
        screened_sources=[
            ScreenedSource(make_descriptor(), LookupStatus.OK, matches_found=1),
            ScreenedSource(make_descriptor("other"), LookupStatus.UNAVAILABLE, note="HTTP 503"),
        ],
        risk_level=RiskLevel.CRITICAL,
        status="partial",
        elapsed_ms=321,
        sources_answered=["TEST_LIST List"],
    )


@pytest.fixture
def report_payload():
    return {
        'report_id': "5b0c7d0e-0000-4000-8000-000000000001",
        'report_token': "tok_abc123",
        'created_at': "2024-01-01T12:00:00+00:00",
        'subject': {
            'name': "Maria Silva", 'name_local': None, 'entity_kind': "individual",
            'id_number': None, 'date_of_birth': None, 'country': None, 'gender': None,
            'company_name': None, 'company_registration': None,
        },
        'summary': {
            'subject_name': "Maria Silva", 'entity_kind': "individual", 'total_matches': 0,
            'total_screened_lists': 0, 'risk_level': "low", 'status': "completed",
            'match_rate_threshold': 70, 'screening_types': ["criminal", "pep", "sanctions", "watchlist"],
            'jurisdictions': ["ALL"], 'api_sources': [],
        },
        'matches': [],
        'screened_lists': [],
        'history': [
            {'action': "created", 'details': None, 'ip_address': None,
             'created_at': "2024-01-01T12:00:00+00:00"},
            {'action': "viewed", 'details': None, 'ip_address': "198.51.100.4",
             'created_at': "2024-01-01T12:05:00+00:00"},
        ],
        'elapsed_ms': 200,
        'algorithm_version': "1.0.0",
    }


@pytest.fixture
def mock_orchestrator(outcome):
    orchestrator = MagicMock()
    orchestrator.screen.return_value = outcome
    return orchestrator


@pytest.fixture
def mock_assembler(report_payload):
    assembler = MagicMock()
    assembler.get_report.return_value = report_payload
    assembler.export_report.return_value = report_payload
    return assembler


@pytest.fixture
def mock_security_logger():
    return MagicMock()


@pytest.fixture
def client(mock_orchestrator, mock_assembler, mock_security_logger, config):
    """Test client with the engine globals patched; startup does not run."""
    from api import server

    with patch.object(server, '_orchestrator', mock_orchestrator), \
            patch.object(server, '_assembler', mock_assembler), \
            patch.object(server, '_config', config), \
            patch.object(server, '_security_logger', mock_security_logger), \
            patch.object(server, '_registry', None), \
            patch.object(server, '_db_provider', None), \
            patch.object(server, '_startup_time', datetime.now(timezone.utc)), \
            patch.object(server, 'API_KEY', ""):
        yield TestClient(server.app)


# ============================================
# VALIDATION TESTS
# ============================================

class TestValidation:
    """Requests rejected before any source is contacted."""

    def test_missing_subject_name(self, client, mock_orchestrator):
        response = client.post("/api/v1/screen", json={})
        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["field"] == "subject_name"
        mock_orchestrator.screen.assert_not_called()

    def test_name_too_short(self, client, mock_orchestrator, mock_security_logger):
        response = client.post("/api/v1/screen", json={"subject_name": "A"})
        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "NAME_TOO_SHORT"
        assert error["field"] == "subject_name"
        mock_orchestrator.screen.assert_not_called()
        mock_security_logger.log_validation_failure.assert_called_once()

    def test_blocked_characters(self, client):
        response = client.post("/api/v1/screen", json={"subject_name": "Robert'); DROP TABLE--"})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "BLOCKED_CHARACTERS"

    def test_threshold_out_of_range(self, client):
        response = client.post("/api/v1/screen",
                               json={"subject_name": "Maria Silva", "match_rate_threshold": 101})
        assert response.status_code == 422
        assert response.json()["error"]["field"] == "match_rate_threshold"

    def test_unknown_entity_kind(self, client):
        response = client.post("/api/v1/screen",
                               json={"subject_name": "Maria Silva", "entity_kind": "vessel"})
        assert response.status_code == 422
        assert response.json()["error"]["field"] == "entity_kind"

    def test_unknown_category(self, client):
        response = client.post("/api/v1/screen",
                               json={"subject_name": "Maria Silva", "screening_types": ["gossip"]})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "INVALID_CATEGORY"

    def test_invalid_dob_format(self, client):
        response = client.post("/api/v1/screen",
                               json={"subject_name": "Maria Silva", "date_of_birth": "15/06/1985"})
        assert response.status_code == 422
        assert response.json()["error"]["field"] == "date_of_birth"

    @pytest.mark.parametrize("dob", ["1985", "1985-06", "1985-06-15"])
    def test_valid_dob_formats(self, client, dob):
        response = client.post("/api/v1/screen", json={"subject_name": "Maria Silva", "date_of_birth": dob})
        assert response.status_code == 200


# ============================================
# SCREENING TESTS
# ============================================

class TestScreening:
    """Successful screenings and how the request reaches the engine."""

    def test_response_shape(self, client):
        response = client.post("/api/v1/screen", json={"subject_name": "Maria Silva"})
        assert response.status_code == 200
        data = response.json()

        assert data["report_id"] == "5b0c7d0e-0000-4000-8000-000000000001"
        assert data["report_token"] == "tok_abc123"
        assert data["elapsed_ms"] == 321
        summary = data["summary"]
        assert summary["total_matches"] == 2
        assert summary["total_screened_lists"] == 2
        assert summary["risk_level"] == "critical"
        assert summary["status"] == "partial"
        assert summary["api_sources"] == ["TEST_LIST List"]
        assert summary["cache_hit"] is False
        assert summary["brazil_company_data"] is None
        assert summary["cpf_validation"] is None

    def test_registry_blocks_in_summary(self, client, mock_orchestrator, outcome):
        mock_orchestrator.screen.return_value = replace(
            outcome,
            screened_sources=[ScreenedSource(make_descriptor("br_cpf"), LookupStatus.OK, from_cache=True)],
            registry_data={
                'cpf_validation': {'valid': True, 'situacao': "Regular"},
                'brazil_company_data': {'razao_social': "ACME COMERCIO LTDA", 'ativa': False},
            },
        )
        summary = client.post("/api/v1/screen", json={"subject_name": "Maria Silva"}).json()["summary"]
        assert summary["cache_hit"] is True
        assert summary["cpf_validation"] == {'valid': True, 'situacao': "Regular"}
        assert summary["brazil_company_data"]["ativa"] is False

    def test_matches_ranked_with_provenance(self, client):
        matches = client.post("/api/v1/screen", json={"subject_name": "Maria Silva"}).json()["matches"]
        assert [m["rank"] for m in matches] == [1, 2]
        assert matches[0]["match_rate"] == 97
        assert matches[0]["tag"] == "SAN"
        assert matches[0]["source_jurisdiction"] == "BR"
        assert matches[0]["source_authority"] == "national_government"
        assert matches[1]["tag"] == "REG"

    def test_screened_lists_include_unavailable(self, client):
        lists = client.post("/api/v1/screen", json={"subject_name": "Maria Silva"}).json()["screened_lists"]
        assert [(s["source_id"], s["status"]) for s in lists] == [("test_list", "ok"), ("other", "unavailable")]
        assert lists[1]["note"] == "HTTP 503"

    def test_request_passed_to_engine(self, client, mock_orchestrator):
        client.post(
            "/api/v1/screen",
            json={
                "subject_name": "  Acme   Comercio Ltda ",
                "entity_kind": "entity",
                "organization_registration": "11.222.333/0001-81",
                "screening_types": ["sanctions"],
                "jurisdictions": ["br"],
                "match_rate_threshold": 85,
            },
            headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1", "User-Agent": "compliance-ui/2.1"},
        )
        request, metadata, cancel_event = mock_orchestrator.screen.call_args.args
        assert request.subject_name == "Acme Comercio Ltda"
        assert request.entity_kind.value == "organization"
        assert request.identifier == "11.222.333/0001-81"
        assert request.jurisdictions == frozenset({"BR"})
        assert request.threshold == 85
        assert metadata == RequestMetadata(ip_address="203.0.113.9", user_agent="compliance-ui/2.1")
        assert isinstance(cancel_event, threading.Event)
        assert not cancel_event.is_set()

    def test_default_threshold_from_config(self, client, mock_orchestrator, config):
        config.matching.default_threshold = 82
        client.post("/api/v1/screen", json={"subject_name": "Maria Silva"})
        request = mock_orchestrator.screen.call_args.args[0]
        assert request.threshold == 82

    def test_associated_entities_serialized(self, client, mock_orchestrator, outcome):
        company = make_candidate(name="ACME COMERCIO LTDA", rate=100, tag=MatchTag.REGISTRY, record_key="c")
        company = replace(company, associated_entities=(
            AssociatedEntity("JOAO SOUZA", role="Sócio-Administrador"),
        ))
        outcome.matches = [company]
        matches = client.post("/api/v1/screen", json={"subject_name": "Acme Ltda"}).json()["matches"]
        assert matches[0]["associated_entities"] == [
            {"name": "JOAO SOUZA", "registration_number": None, "role": "Sócio-Administrador"}
        ]


# ============================================
# ERROR MAPPING TESTS
# ============================================

class TestErrorHandling:
    """Engine exceptions mapped to status codes and the error body."""

    def test_screening_failed_is_503(self, client, mock_orchestrator):
        mock_orchestrator.screen.side_effect = ScreeningFailed(
            "Every selected source was unavailable", reason="all_unavailable"
        )
        response = client.post("/api/v1/screen", json={"subject_name": "Maria Silva"})
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "SCREENING_FAILED"

    def test_persistence_failure_is_500(self, client, mock_orchestrator):
        mock_orchestrator.screen.side_effect = PersistenceFailure("Report could not be stored")
        response = client.post("/api/v1/screen", json={"subject_name": "Maria Silva"})
        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "PERSISTENCE_FAILURE"
        assert "timestamp" in error

    def test_engine_not_initialized(self, client):
        from api import server

        with patch.object(server, '_orchestrator', None):
            response = client.post("/api/v1/screen", json={"subject_name": "Maria Silva"})
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "HTTP_503"

    def test_unknown_route(self, client):
        response = client.get("/api/v1/nonexistent")
        assert response.status_code == 404


# ============================================
# REPORT TESTS
# ============================================

class TestReports:
    """Token-based retrieval and export."""

    def test_get_report(self, client, mock_assembler):
        response = client.get("/api/v1/reports/tok_abc123", headers={"CF-Connecting-IP": "198.51.100.4"})
        assert response.status_code == 200
        data = response.json()
        assert data["report_token"] == "tok_abc123"
        assert data["summary"]["risk_level"] == "low"
        assert [h["action"] for h in data["history"]] == ["created", "viewed"]

        token, metadata = mock_assembler.get_report.call_args.args
        assert token == "tok_abc123"
        assert metadata.ip_address == "198.51.100.4"

    def test_unknown_token_is_404(self, client, mock_assembler):
        mock_assembler.get_report.side_effect = ReportNotFoundError("Report not found")
        response = client.get("/api/v1/reports/nope")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "REPORT_NOT_FOUND"

    def test_export(self, client, mock_assembler):
        response = client.post("/api/v1/reports/tok_abc123/export")
        assert response.status_code == 200
        mock_assembler.export_report.assert_called_once()
        mock_assembler.get_report.assert_not_called()

    def test_export_unknown_token(self, client, mock_assembler):
        mock_assembler.export_report.side_effect = ReportNotFoundError("Report not found")
        assert client.post("/api/v1/reports/nope/export").status_code == 404

    def test_read_failure_is_500(self, client, mock_assembler):
        mock_assembler.get_report.side_effect = PersistenceFailure("Report could not be read")
        assert client.get("/api/v1/reports/tok_abc123").status_code == 500

    def test_reports_do_not_need_api_key(self, client):
        from api import server

        with patch.object(server, 'API_KEY', "secret"):
            assert client.get("/api/v1/reports/tok_abc123").status_code == 200


# ============================================
# SECURITY TESTS
# ============================================

class TestApiKey:
    """Optional API key on the screen endpoint."""

    def test_missing_key(self, client):
        from api import server

        with patch.object(server, 'API_KEY', "secret"):
            response = client.post("/api/v1/screen", json={"subject_name": "Maria Silva"})
        assert response.status_code == 401

    def test_wrong_key(self, client):
        from api import server

        with patch.object(server, 'API_KEY', "secret"):
            response = client.post("/api/v1/screen", json={"subject_name": "Maria Silva"},
                                   headers={"X-API-Key": "guess"})
        assert response.status_code == 403

    def test_right_key(self, client):
        from api import server

        with patch.object(server, 'API_KEY', "secret"):
            response = client.post("/api/v1/screen", json={"subject_name": "Maria Silva"},
                                   headers={"X-API-Key": "secret"})
        assert response.status_code == 200


# ============================================
# HEALTH TESTS
# ============================================

class TestHealth:
    """Health endpoint always answers 200."""

    def test_health_without_database(self, client):
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "unknown"
        assert data["cache_backend"] == "memory"
        assert data["algorithm_version"] == "1.0.0"
        assert data["uptime_seconds"] >= 0

    def test_health_lists_sources(self, client):
        from api import server
        from connectors.registry import ConnectorRegistry

        registry = ConnectorRegistry()
        registry.register(StubConnector(make_descriptor("list_a"), jurisdictions={"BR"}))
        with patch.object(server, '_registry', registry):
            sources = client.get("/api/v1/health").json()["sources"]
        assert sources == [{
            "source_id": "list_a",
            "name": "LIST_A List",
            "family": "government_sanctions",
            "jurisdictions": ["BR"],
        }]

    def test_database_down_is_degraded(self, client):
        from api import server

        provider = MagicMock()
        provider.health_check.side_effect = OperationalError("SELECT 1", {}, Exception("down"))
        with patch.object(server, '_db_provider', provider):
            data = client.get("/api/v1/health").json()
        assert data["status"] == "degraded"
        assert data["database"] == "unavailable"


# ============================================
# MIDDLEWARE TESTS
# ============================================

class TestMiddleware:
    def test_request_id_echoed(self, client):
        response = client.get("/api/v1/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"
        assert "X-Processing-Time-MS" in response.headers

    def test_request_id_generated(self, client):
        response = client.get("/api/v1/health")
        assert response.headers["X-Request-ID"]

    def test_openapi_available(self, client):
        response = client.get("/api/openapi.json")
        assert response.status_code == 200
        assert "/api/v1/screen" in response.json()["paths"]
