"""
SQLAlchemy ORM Models for the Identity Screening Engine

Schema notes:
- UUID primary keys, portable Uuid/JSON column types (JSONB on PostgreSQL)
  so the same models run on SQLite in tests
- Reports, their matches and their screened lists are written once and
  never updated; history is insert-only
- Timestamps are timezone-aware UTC

Tables:
1. screening_reports - One row per screening call, request fields denormalized
2. screening_report_matches - Ranked matches embedded in a report
3. screened_lists - Every source attempted for a report
4. screening_report_history - Append-only lifecycle events (created, viewed, exported)
5. lookup_cache - Backing store for the database lookup cache
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text,
    ForeignKey, Index, CheckConstraint, Enum,
    JSON, Uuid, event
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column

from screening_models import REGISTRY_SECTIONS

# Base class for all models
Base = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# ENUMS
# ============================================

class ReportStatus(str, PyEnum):
    """Outcome of a persisted screening"""
    COMPLETED = "completed"
    PARTIAL = "partial"  # at least one attempted source was unavailable


class HistoryAction(str, PyEnum):
    """Lifecycle event recorded against a report"""
    CREATED = "created"
    VIEWED = "viewed"
    EXPORTED = "exported"


class ImmutableRecordError(Exception):
    """Raised on an attempt to update a write-once row"""
    pass


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


# ============================================
# REPORT MODELS
# ============================================

class ScreeningReport(Base):
    """
    Persisted screening report.

    Immutable after creation; the request fields are copied in so the
    audit record survives changes to anything upstream.
    """
    __tablename__ = "screening_reports"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Capability token for unauthenticated retrieval, distinct from id
    report_token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    # Subject (denormalized request)
    subject_name: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    subject_name_local: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    entity_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    subject_id_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    subject_date_of_birth: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    subject_country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    subject_gender: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    subject_company_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    subject_company_registration: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    screening_types: Mapped[list] = mapped_column(JSONType, nullable=False)
    jurisdictions: Mapped[list] = mapped_column(JSONType, nullable=False)
    match_rate_threshold: Mapped[int] = mapped_column(Integer, nullable=False)

    # Outcome
    total_matches: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_screened_lists: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    risk_level: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    status: Mapped[ReportStatus] = mapped_column(Enum(ReportStatus), nullable=False)
    api_sources: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    registry_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Request metadata
    ip_address: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    elapsed_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    algorithm_version: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    matches: Mapped[List["ReportMatch"]] = relationship(
        "ReportMatch",
        back_populates="report",
        order_by="ReportMatch.match_rank",
        cascade="all, delete-orphan",
        lazy="selectin"
    )
    screened_lists: Mapped[List["ScreenedList"]] = relationship(
        "ScreenedList",
        back_populates="report",
        order_by="ScreenedList.position",
        cascade="all, delete-orphan",
        lazy="selectin"
    )
    history: Mapped[List["ReportHistory"]] = relationship(
        "ReportHistory",
        back_populates="report",
        order_by="ReportHistory.created_at",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    __table_args__ = (
        CheckConstraint('match_rate_threshold >= 0 AND match_rate_threshold <= 100',
                        name='ck_report_threshold_range'),
        Index('ix_screening_report_created', 'created_at'),
    )

    def summary(self) -> Dict[str, Any]:
        return {
            'subject_name': self.subject_name,
            'entity_kind': self.entity_kind,
            'total_matches': self.total_matches,
            'total_screened_lists': self.total_screened_lists,
            'risk_level': self.risk_level,
            'status': self.status.value,
            'match_rate_threshold': self.match_rate_threshold,
            'screening_types': list(self.screening_types or []),
            'jurisdictions': list(self.jurisdictions or []),
            'api_sources': list(self.api_sources or []),
            'cache_hit': any(s.from_cache for s in self.screened_lists),
            **{section: (self.registry_data or {}).get(section) for section in REGISTRY_SECTIONS},
        }

    def to_dict(self) -> Dict[str, Any]:
        """Full report: subject, summary, ranked matches, screened lists, history."""
        return {
            'report_id': str(self.id),
            'report_token': self.report_token,
            'created_at': _iso(self.created_at),
            'subject': {
                'name': self.subject_name,
                'name_local': self.subject_name_local,
                'entity_kind': self.entity_kind,
                'id_number': self.subject_id_number,
                'date_of_birth': self.subject_date_of_birth,
                'country': self.subject_country,
                'gender': self.subject_gender,
                'company_name': self.subject_company_name,
                'company_registration': self.subject_company_registration,
            },
            'summary': self.summary(),
            'matches': [m.to_dict() for m in self.matches],
            'screened_lists': [s.to_dict() for s in self.screened_lists],
            'history': [h.to_dict() for h in self.history],
            'elapsed_ms': self.elapsed_ms,
            'algorithm_version': self.algorithm_version,
        }

    def __repr__(self) -> str:
        return f"<ScreeningReport(id={self.id}, subject='{self.subject_name}', risk={self.risk_level})>"


class ReportMatch(Base):
    """One ranked match embedded in a report"""
    __tablename__ = "screening_report_matches"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    report_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("screening_reports.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    match_rank: Mapped[int] = mapped_column(Integer, nullable=False)

    matched_name: Mapped[str] = mapped_column(String(500), nullable=False)
    matched_name_local: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    match_rate: Mapped[int] = mapped_column(Integer, nullable=False)
    entity_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    tag: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    aliases: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    nationality: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    id_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    date_of_birth: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    gender: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    role_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    remark: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    start_date: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    end_date: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    associated_entities: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    # Provenance
    source_id: Mapped[str] = mapped_column(String(50), nullable=False)
    source_name: Mapped[str] = mapped_column(String(300), nullable=False)
    source_issuer: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    source_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    source_jurisdiction: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    source_authority: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    report: Mapped["ScreeningReport"] = relationship("ScreeningReport", back_populates="matches")

    __table_args__ = (
        CheckConstraint('match_rate >= 0 AND match_rate <= 100', name='ck_match_rate_range'),
        Index('ix_report_match_rank', 'report_id', 'match_rank'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rank': self.match_rank,
            'matched_name': self.matched_name,
            'matched_name_local': self.matched_name_local,
            'match_rate': self.match_rate,
            'entity_kind': self.entity_kind,
            'tag': self.tag,
            'aliases': list(self.aliases or []),
            'nationality': self.nationality,
            'id_number': self.id_number,
            'date_of_birth': self.date_of_birth,
            'gender': self.gender,
            'role_description': self.role_description,
            'reason': self.reason,
            'remark': self.remark,
            'address': self.address,
            'start_date': self.start_date,
            'end_date': self.end_date,
            'associated_entities': list(self.associated_entities or []),
            'source_id': self.source_id,
            'source_name': self.source_name,
            'source_issuer': self.source_issuer,
            'source_url': self.source_url,
            'source_jurisdiction': self.source_jurisdiction,
            'source_authority': self.source_authority,
        }

    def __repr__(self) -> str:
        return f"<ReportMatch(rank={self.match_rank}, name='{self.matched_name}', rate={self.match_rate})>"


class ScreenedList(Base):
    """A source attempted for a report, with its outcome"""
    __tablename__ = "screened_lists"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    report_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("screening_reports.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    source_id: Mapped[str] = mapped_column(String(50), nullable=False)
    list_name: Mapped[str] = mapped_column(String(300), nullable=False)
    issuer: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    issuer_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    jurisdiction: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    list_type: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    matches_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lookup_status: Mapped[str] = mapped_column(String(30), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    from_cache: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    elapsed_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    report: Mapped["ScreeningReport"] = relationship("ScreeningReport", back_populates="screened_lists")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source_id': self.source_id,
            'name': self.list_name,
            'issuer': self.issuer,
            'issuer_description': self.issuer_description,
            'jurisdiction': self.jurisdiction,
            'type': self.list_type,
            'url': self.url,
            'matches_found': self.matches_found,
            'status': self.lookup_status,
            'note': self.note,
            'from_cache': self.from_cache,
        }

    def __repr__(self) -> str:
        return f"<ScreenedList(source={self.source_id}, status={self.lookup_status})>"


class ReportHistory(Base):
    """Append-only lifecycle event for a report"""
    __tablename__ = "screening_report_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    report_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("screening_reports.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    action: Mapped[HistoryAction] = mapped_column(Enum(HistoryAction), nullable=False, index=True)
    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    report: Mapped["ScreeningReport"] = relationship("ScreeningReport", back_populates="history")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'details': self.details,
            'ip_address': self.ip_address,
            'created_at': _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<ReportHistory(report_id={self.report_id}, action={self.action})>"


# ============================================
# CACHE MODEL
# ============================================

class LookupCacheEntry(Base):
    """One cached connector answer, keyed by source family and normalized key"""
    __tablename__ = "lookup_cache"

    source_family: Mapped[str] = mapped_column(String(40), primary_key=True)
    cache_key: Mapped[str] = mapped_column(String(600), primary_key=True)
    payload: Mapped[Any] = mapped_column(JSONType, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    hit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_accessed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<LookupCacheEntry({self.source_family}:{self.cache_key}, hits={self.hit_count})>"


# ============================================
# WRITE-ONCE GUARDS
# ============================================

@event.listens_for(ScreeningReport, "before_update")
@event.listens_for(ReportMatch, "before_update")
@event.listens_for(ScreenedList, "before_update")
@event.listens_for(ReportHistory, "before_update")
def _reject_update(mapper, connection, target) -> None:
    raise ImmutableRecordError(f"{type(target).__name__} rows are write-once")
