"""
Report Assembler

Persists a finished screening as one all-or-nothing unit of work:

    report -> ranked matches -> screened lists -> "created" history entry -> commit

and serves the token-based read paths (view and export), each of which
appends its own history entry. A failure anywhere in the write leaves no
report and no token behind.
"""

import logging
import secrets
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from database.connection import DatabaseSessionProvider
from database.models import HistoryAction, ReportStatus
from database.repositories import (
    DuplicateReportError,
    ReportNotFoundError,
    ReportRepository,
    RepositoryError,
)
from screening_models import (
    MatchCandidate,
    RequestMetadata,
    RiskLevel,
    ScreenedSource,
    ScreeningOutcome,
    ScreeningRequest,
)

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
TOKEN_ATTEMPTS = 3


class PersistenceFailure(Exception):
    """The report could not be stored; nothing was persisted"""
    pass


def generate_report_token() -> str:
    """Random URL-safe retrieval token, unrelated to the report id."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def match_row(candidate: MatchCandidate) -> Dict[str, Any]:
    return candidate.to_dict()


def screened_list_row(source: ScreenedSource) -> Dict[str, Any]:
    data = source.to_dict()
    return {
        'source_id': data['source_id'],
        'list_name': data['name'],
        'issuer': data['issuer'],
        'issuer_description': data['issuer_description'],
        'jurisdiction': data['jurisdiction'],
        'list_type': data['type'],
        'url': data['url'],
        'matches_found': data['matches_found'],
        'lookup_status': data['status'],
        'note': data['note'],
        'from_cache': data['from_cache'],
        'elapsed_ms': source.elapsed_ms,
    }


class ReportAssembler:
    """Writes and reads screening reports through the report repository."""

    def __init__(
        self,
        db_provider: DatabaseSessionProvider,
        algorithm_version: str = "1.0.0",
        security_logger=None,
        token_factory: Callable[[], str] = generate_report_token,
    ):
        self.db = db_provider
        self.algorithm_version = algorithm_version
        self.security_logger = security_logger
        self._token_factory = token_factory

    def assemble(
        self,
        request: ScreeningRequest,
        matches: List[MatchCandidate],
        screened_sources: List[ScreenedSource],
        risk_level: RiskLevel,
        status: str,
        metadata: RequestMetadata,
        elapsed_ms: int = 0,
        sources_answered: Optional[List[str]] = None,
        registry_data: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> ScreeningOutcome:
        """Persist a screening and issue its retrieval token.

        Args:
            request: The screening request
            matches: Final ranked matches
            screened_sources: Every attempted source
            risk_level: Classified risk
            status: "completed" or "partial"
            metadata: Caller IP / user agent
            elapsed_ms: Screening time so far
            sources_answered: Names of the sources that answered
            registry_data: Registry facts keyed by summary section

        Returns:
            ScreeningOutcome carrying the new report id and token

        Raises:
            PersistenceFailure: On any database or repository error
        """
        sources_answered = list(sources_answered or [])
        registry_data = dict(registry_data or {})
        fields = {
            'subject_name': request.subject_name,
            'subject_name_local': request.subject_name_local,
            'entity_kind': request.entity_kind.value,
            'subject_id_number': request.national_id,
            'subject_date_of_birth': request.date_of_birth,
            'subject_country': request.country,
            'subject_gender': request.gender,
            'subject_company_name': request.organization_name,
            'subject_company_registration': request.organization_registration,
            'screening_types': sorted(c.value for c in request.categories),
            'jurisdictions': sorted(request.jurisdictions),
            'match_rate_threshold': request.threshold,
            'total_matches': len(matches),
            'total_screened_lists': len(screened_sources),
            'risk_level': risk_level.value,
            'status': ReportStatus(status),
            'api_sources': sources_answered,
            'registry_data': registry_data or None,
            'ip_address': metadata.ip_address,
            'user_agent': metadata.user_agent,
            'elapsed_ms': elapsed_ms,
            'algorithm_version': self.algorithm_version,
        }

        for attempt in range(1, TOKEN_ATTEMPTS + 1):
            token = self._token_factory()
            try:
                report_id = self._write(token, fields, matches, screened_sources, metadata)
                break
            except DuplicateReportError:
                logger.warning("Report token collision (attempt %d)", attempt)
                if attempt == TOKEN_ATTEMPTS:
                    raise PersistenceFailure("Could not allocate a unique report token")
            except (SQLAlchemyError, RepositoryError) as e:
                logger.error("Report persistence failed: %s", e)
                raise PersistenceFailure(f"Report could not be stored: {type(e).__name__}") from e

        logger.info("Report %s stored (%d matches, %d sources)", report_id, len(matches),
                    len(screened_sources))
        return ScreeningOutcome(
            report_id=report_id,
            report_token=token,
            request=request,
            matches=list(matches),
            screened_sources=list(screened_sources),
            risk_level=risk_level,
            status=status,
            elapsed_ms=elapsed_ms,
            sources_answered=sources_answered,
            registry_data=registry_data,
        )

    def _write(self, token: str, fields: Dict[str, Any], matches: List[MatchCandidate],
               screened_sources: List[ScreenedSource], metadata: RequestMetadata) -> str:
        with self.db.get_unit_of_work() as uow:
            repo = ReportRepository(uow.session)
            report = repo.create_report(token, **fields)
            repo.append_matches(report.id, [match_row(m) for m in matches])
            repo.append_screened_lists(report.id, [screened_list_row(s) for s in screened_sources])
            repo.append_history(
                report.id,
                HistoryAction.CREATED,
                details={'risk_level': fields['risk_level'], 'total_matches': fields['total_matches']},
                ip_address=metadata.ip_address,
                user_agent=metadata.user_agent,
            )
            uow.commit()
            return str(report.id)

    # ----------------------------------------
    # read paths
    # ----------------------------------------

    def get_report(self, token: str, metadata: Optional[RequestMetadata] = None) -> Dict[str, Any]:
        """Full report for a token; records a "viewed" history entry.

        Raises:
            ReportNotFoundError: If the token is unknown
            PersistenceFailure: On database errors
        """
        return self._read(token, HistoryAction.VIEWED, metadata or RequestMetadata())

    def export_report(self, token: str, metadata: Optional[RequestMetadata] = None) -> Dict[str, Any]:
        """Report payload for export; records an "exported" history entry.

        Raises:
            ReportNotFoundError: If the token is unknown
            PersistenceFailure: On database errors
        """
        return self._read(token, HistoryAction.EXPORTED, metadata or RequestMetadata())

    def _read(self, token: str, action: HistoryAction, metadata: RequestMetadata) -> Dict[str, Any]:
        try:
            with self.db.get_unit_of_work() as uow:
                repo = ReportRepository(uow.session)
                report = repo.get_report_by_token(token)
                if report is None:
                    self._token_miss(token, metadata)
                    raise ReportNotFoundError("Report not found")

                repo.append_history(report.id, action, ip_address=metadata.ip_address,
                                    user_agent=metadata.user_agent)
                uow.commit()
                uow.session.expire(report, ['history'])
                return report.to_dict()
        except SQLAlchemyError as e:
            logger.error("Report read failed: %s", e)
            raise PersistenceFailure(f"Report could not be read: {type(e).__name__}") from e

    def _token_miss(self, token: str, metadata: RequestMetadata) -> None:
        logger.info("Report token miss")
        if self.security_logger is not None:
            self.security_logger.log_token_miss(token, source="report_assembler",
                                                source_ip=metadata.ip_address or "")
