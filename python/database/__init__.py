"""
Database Package for the Sanctions & PEP Screening Core

This package provides:
- SQLAlchemy ORM models for list data, PEP records, parties and schedules
- FastAPI Dependency Injection for database sessions
- Unit of Work pattern for transaction management
- Repository pattern for data access, plus adapters for the screening contracts
- Alembic integration for migrations
- Performance monitoring and query timing
"""

from database.models import (
    Base,
    DataSource,
    SanctionedEntity,
    EntityAlias,
    PoliticallyExposedPerson,
    PepRelationship,
    ScreenedParty,
    ScreeningScheduleRecord,
    ScreeningExecutionRecord,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    get_db_provider,
    init_db,
    close_db,
    create_test_provider,
)
from database.repositories import (
    RepositoryError,
    DuplicateEntityError,
    SanctionedEntityRepository,
    PepRepository,
    DataSourceRepository,
    PartyRepository,
    DatabaseListRepository,
    DatabasePartyProvider,
    ScheduleRepository,
)
from database.monitoring import (
    query_timer,
    timed_query,
    get_db_metrics,
    get_slow_query_report,
    reset_metrics,
    configure_monitoring,
    record_screening,
    record_schedule_sweep,
    check_health,
    HealthStatus,
)

__all__ = [
    # Models
    'Base',
    'DataSource',
    'SanctionedEntity',
    'EntityAlias',
    'PoliticallyExposedPerson',
    'PepRelationship',
    'ScreenedParty',
    'ScreeningScheduleRecord',
    'ScreeningExecutionRecord',
    # Database provider
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'get_db_provider',
    'init_db',
    'close_db',
    'create_test_provider',
    # Repositories
    'RepositoryError',
    'DuplicateEntityError',
    'SanctionedEntityRepository',
    'PepRepository',
    'DataSourceRepository',
    'PartyRepository',
    'DatabaseListRepository',
    'DatabasePartyProvider',
    'ScheduleRepository',
    # Monitoring
    'query_timer',
    'timed_query',
    'get_db_metrics',
    'get_slow_query_report',
    'reset_metrics',
    'configure_monitoring',
    'record_screening',
    'record_schedule_sweep',
    'check_health',
    'HealthStatus',
]
