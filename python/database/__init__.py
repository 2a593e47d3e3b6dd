"""
Database Package for the Identity Screening Engine

This package provides:
- SQLAlchemy ORM models for reports, history and the lookup cache
- A session provider with scoped sessions for services and tests
- Unit of Work pattern for the all-or-nothing report write
- Repository pattern for data access
"""

from database.models import (
    Base,
    ScreeningReport,
    ReportMatch,
    ScreenedList,
    ReportHistory,
    LookupCacheEntry,
    ReportStatus,
    HistoryAction,
    ImmutableRecordError,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    UnitOfWork,
    get_db_provider,
    # Initialization
    init_db,
    close_db,
    # Testing support
    create_test_provider,
)
from database.repositories import (
    ReportRepository,
    CacheRepository,
    RepositoryError,
    ReportNotFoundError,
    DuplicateReportError,
)

__all__ = [
    # Base
    'Base',
    # Models
    'ScreeningReport',
    'ReportMatch',
    'ScreenedList',
    'ReportHistory',
    'LookupCacheEntry',
    'ReportStatus',
    'HistoryAction',
    'ImmutableRecordError',
    # Database provider
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'UnitOfWork',
    'get_db_provider',
    # Initialization
    'init_db',
    'close_db',
    # Testing support
    'create_test_provider',
    # Repositories
    'ReportRepository',
    'CacheRepository',
    'RepositoryError',
    'ReportNotFoundError',
    'DuplicateReportError',
]
