"""
Repository Pattern for Identity Screening Database Operations

Data access for screening reports and the lookup cache. Repositories
work on a caller-supplied session and only flush; committing is the job
of the unit of work (reports) or the session scope (cache).
"""

import logging
from typing import List, Optional, Dict, Any
from uuid import UUID
from datetime import datetime

from sqlalchemy import select, update, func
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.exc import IntegrityError

from database.models import (
    ScreeningReport,
    ReportMatch,
    ScreenedList,
    ReportHistory,
    LookupCacheEntry,
    HistoryAction,
)

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class ReportNotFoundError(RepositoryError):
    """Raised when no report carries the given retrieval token."""
    pass


class DuplicateReportError(RepositoryError):
    """Raised when a report token is already taken."""
    pass


# ============================================
# REPORT REPOSITORY
# ============================================

class ReportRepository:
    """Write-once storage for screening reports and their children."""

    def __init__(self, session: Session):
        self.session = session

    def create_report(self, report_token: str, **fields: Any) -> ScreeningReport:
        """
        Insert the report row.

        Args:
            report_token: Unique retrieval token
            **fields: ScreeningReport column values

        Returns:
            Created ScreeningReport (flushed, id assigned)

        Raises:
            DuplicateReportError: If the token already exists
        """
        report = ScreeningReport(report_token=report_token, **fields)
        try:
            self.session.add(report)
            self.session.flush()
        except IntegrityError as e:
            raise DuplicateReportError(f"Report token already exists: {e.orig}")

        logger.debug(f"Created report {report.id}")
        return report

    def append_matches(self, report_id: UUID, matches: List[Dict[str, Any]]) -> List[ReportMatch]:
        """
        Insert ranked matches; list order becomes match_rank (1-based).

        Args:
            report_id: Owning report
            matches: Match column values, best first

        Returns:
            Created ReportMatch rows
        """
        rows = [
            ReportMatch(report_id=report_id, match_rank=rank, **data)
            for rank, data in enumerate(matches, start=1)
        ]
        self.session.add_all(rows)
        self.session.flush()
        return rows

    def append_screened_lists(self, report_id: UUID, lists: List[Dict[str, Any]]) -> List[ScreenedList]:
        """Insert one row per attempted source, keeping the given order."""
        rows = [
            ScreenedList(report_id=report_id, position=position, **data)
            for position, data in enumerate(lists)
        ]
        self.session.add_all(rows)
        self.session.flush()
        return rows

    def append_history(
        self,
        report_id: UUID,
        action: HistoryAction,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> ReportHistory:
        """
        Append a lifecycle event. History rows are never updated or deleted.

        Args:
            report_id: Report the event refers to
            action: created, viewed or exported
            details: Free-form event details
            ip_address: Caller IP
            user_agent: Caller user agent

        Returns:
            Created ReportHistory
        """
        entry = ReportHistory(
            report_id=report_id,
            action=action,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def get_report_by_token(self, report_token: str) -> Optional[ScreeningReport]:
        """
        Load a report with matches, screened lists and history.

        Args:
            report_token: Retrieval token

        Returns:
            ScreeningReport or None
        """
        query = (
            select(ScreeningReport)
            .where(ScreeningReport.report_token == report_token)
            .options(
                selectinload(ScreeningReport.matches),
                selectinload(ScreeningReport.screened_lists),
                selectinload(ScreeningReport.history),
            )
        )
        return self.session.execute(query).scalar_one_or_none()

    def count_history(self, report_id: UUID, action: Optional[HistoryAction] = None) -> int:
        query = select(func.count(ReportHistory.id)).where(ReportHistory.report_id == report_id)
        if action is not None:
            query = query.where(ReportHistory.action == action)
        return self.session.execute(query).scalar_one()


# ============================================
# CACHE REPOSITORY
# ============================================

class CacheRepository:
    """Rows of the lookup_cache table."""

    def __init__(self, session: Session):
        self.session = session

    def get_entry(self, source_family: str, cache_key: str) -> Optional[LookupCacheEntry]:
        return self.session.get(LookupCacheEntry, (source_family, cache_key))

    def record_hit(self, source_family: str, cache_key: str, now: datetime) -> int:
        """
        Increment the hit counter in the database and return the new value.

        The payload is not touched.
        """
        self.session.execute(
            update(LookupCacheEntry)
            .where(
                LookupCacheEntry.source_family == source_family,
                LookupCacheEntry.cache_key == cache_key,
            )
            .values(hit_count=LookupCacheEntry.hit_count + 1, last_accessed_at=now)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(
            select(LookupCacheEntry.hit_count).where(
                LookupCacheEntry.source_family == source_family,
                LookupCacheEntry.cache_key == cache_key,
            )
        ).scalar_one()

    def upsert(
        self,
        source_family: str,
        cache_key: str,
        payload: Any,
        expires_at: datetime,
        now: datetime
    ) -> LookupCacheEntry:
        """
        Replace the entry for a key, resetting its hit counter.

        Args:
            source_family: Cache partition
            cache_key: Normalized key
            payload: JSON-serializable payload
            expires_at: Absolute expiry
            now: Write time

        Returns:
            The stored entry
        """
        entry = self.get_entry(source_family, cache_key)
        if entry is None:
            entry = LookupCacheEntry(source_family=source_family, cache_key=cache_key)
            self.session.add(entry)
        entry.payload = payload
        entry.expires_at = expires_at
        entry.created_at = now
        entry.hit_count = 0
        entry.last_accessed_at = None
        self.session.flush()
        return entry

    def purge_expired(self, now: datetime) -> int:
        """Delete expired entries; returns the number removed."""
        rows = self.session.query(LookupCacheEntry).filter(LookupCacheEntry.expires_at <= now)
        count = rows.delete(synchronize_session=False)
        logger.info(f"Purged {count} expired cache entries")
        return count
