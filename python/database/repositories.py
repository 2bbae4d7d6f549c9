"""
Repository Pattern for Screening Core Database Operations

Two layers:
- Session-bound repositories (``SanctionedEntityRepository``, ``PepRepository``,
  ``DataSourceRepository``, ``PartyRepository``) used by ingestion jobs and
  the API, in the caller's transaction.
- Contract adapters (``DatabaseListRepository``, ``DatabasePartyProvider``,
  ``ScheduleRepository``) that plug the database into the screeners and the
  scheduler. Each call runs in its own ``session_scope``.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from rapidfuzz import fuzz
from sqlalchemy import case, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from contracts import (
    CandidateRecord, ConcurrentUpdateError, ListRepository, PartyProvider,
    ScheduleStore
)
from database.connection import DatabaseSessionProvider
from database.models import (
    DataSource,
    EntityAlias,
    PepRelationship,
    PoliticallyExposedPerson,
    SanctionedEntity,
    ScreenedParty,
    ScreeningExecutionRecord,
    ScreeningScheduleRecord
)
from database.monitoring import timed_query
from name_matching import normalize_name
from screening_models import (
    ListClass, Party, PartyType, SanctionsList, ScheduleExecution, ScheduleStatus,
    ScreeningSchedule, utc_now
)

logger = logging.getLogger(__name__)

# Percentage points below the screening threshold kept by the candidate
# pre-filter. The screener re-scores every candidate.
DEFAULT_CANDIDATE_SLACK = 15.0

# pg_trgm similarity a list entry needs to leave the database on PostgreSQL
TRIGRAM_FLOOR = 0.3

EXECUTABLE_STATUSES = [s for s in ScheduleStatus if s.is_executable]


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class DuplicateEntityError(RepositoryError):
    """Raised when attempting to create a duplicate entity."""
    pass


def prefilter_score(normalized_name: str, names: Iterable[str]) -> float:
    """Best token-set similarity (0-1) of a name against candidate names"""
    best = 0.0
    for name in names:
        if not name:
            continue
        best = max(best, fuzz.token_set_ratio(normalized_name, normalize_name(name)) / 100.0)
    return best


# ============================================
# SESSION-BOUND REPOSITORIES
# ============================================

class SanctionedEntityRepository:
    """Repository for sanctions list entries."""

    def __init__(self, session: Session, use_trigram: Optional[bool] = None):
        """
        Args:
            session: Caller's session
            use_trigram: Pre-filter candidates with pg_trgm in the database.
                Detected from the dialect when None (PostgreSQL only).
        """
        self.session = session
        if use_trigram is None:
            use_trigram = session.get_bind().dialect.name == "postgresql"
        self.use_trigram = use_trigram

    def create(self, entity_data: Dict[str, Any], aliases: Optional[List[str]] = None) -> SanctionedEntity:
        """
        Create a new sanctioned entity with its aliases.

        Args:
            entity_data: Dictionary containing entity fields
            aliases: Alternative names

        Returns:
            Created SanctionedEntity instance

        Raises:
            DuplicateEntityError: If entity with same external_id/source exists
        """
        try:
            entity_data['normalized_name'] = normalize_name(entity_data.get('primary_name', ''))
            entity = SanctionedEntity(**entity_data)
            for alias in aliases or []:
                entity.aliases.append(EntityAlias(alias_name=alias, normalized_alias=normalize_name(alias)))
            self.session.add(entity)
            self.session.flush()

            logger.debug(f"Created entity: {entity.id} ({entity.primary_name})")
            return entity

        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateEntityError(f"Entity already exists: {e}")

    def get_by_external_id(self, external_id: str, source: SanctionsList) -> Optional[SanctionedEntity]:
        query = select(SanctionedEntity).where(
            SanctionedEntity.external_id == external_id,
            SanctionedEntity.source == source,
            SanctionedEntity.is_deleted == False  # noqa: E712
        )
        return self.session.execute(query).scalar_one_or_none()

    def list_by_source(self, source: SanctionsList) -> List[SanctionedEntity]:
        query = select(SanctionedEntity).where(
            SanctionedEntity.source == source,
            SanctionedEntity.is_deleted == False  # noqa: E712
        ).order_by(SanctionedEntity.external_id)
        return list(self.session.execute(query).scalars().all())

    def search_by_name(self, normalized_name: str, source: SanctionsList,
                       threshold: float, limit: int = 200,
                       slack: float = DEFAULT_CANDIDATE_SLACK) -> List[SanctionedEntity]:
        """
        Candidates of one list whose primary name or an alias is close to the name.

        On PostgreSQL the list is first narrowed with pg_trgm in the database;
        elsewhere every entry of the list is scored here.

        Args:
            normalized_name: Normalized party name
            source: List to search
            threshold: Screening threshold (0-1); the pre-filter is looser
            limit: Maximum number of candidates
            slack: Pre-filter tolerance in percentage points

        Returns:
            Entities ordered by descending pre-filter score
        """
        floor = max(0.0, threshold - slack / 100.0)
        if self.use_trigram:
            entities = self._trigram_candidates(normalized_name, source)
        else:
            entities = self.list_by_source(source)

        scored = []
        for entity in entities:
            names = [entity.primary_name] + [a.alias_name for a in entity.aliases]
            score = prefilter_score(normalized_name, names)
            if score >= floor:
                scored.append((score, entity))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [entity for _, entity in scored[:limit]]

    def _trigram_candidates(self, normalized_name: str, source: SanctionsList) -> List[SanctionedEntity]:
        """Entries of a list whose primary name or an alias shares enough trigrams with the name"""
        alias_hits = select(EntityAlias.entity_id).where(
            func.similarity(EntityAlias.normalized_alias, normalized_name) >= TRIGRAM_FLOOR
        )
        query = select(SanctionedEntity).where(
            SanctionedEntity.source == source,
            SanctionedEntity.is_deleted == False,  # noqa: E712
            or_(
                func.similarity(SanctionedEntity.normalized_name, normalized_name) >= TRIGRAM_FLOOR,
                SanctionedEntity.id.in_(alias_hits)
            )
        ).order_by(SanctionedEntity.external_id)
        return list(self.session.execute(query).scalars().all())

    def soft_delete(self, entity_id) -> bool:
        entity = self.session.get(SanctionedEntity, entity_id)
        if entity is None:
            return False
        entity.is_deleted = True
        entity.deleted_at = utc_now()
        self.session.flush()
        return True

    def count_by_source(self) -> Dict[str, int]:
        query = select(
            SanctionedEntity.source,
            func.count(SanctionedEntity.id)
        ).where(
            SanctionedEntity.is_deleted == False  # noqa: E712
        ).group_by(SanctionedEntity.source)
        return {source.value: count for source, count in self.session.execute(query).all()}

    @staticmethod
    def to_candidate(entity: SanctionedEntity) -> CandidateRecord:
        """Candidate record handed to the screener"""
        record: CandidateRecord = {
            'id': entity.external_id,
            'name': entity.primary_name,
            'aliases': [a.alias_name for a in entity.aliases],
            'entity_type': entity.entity_type,
        }
        for key in ('nationality', 'program', 'remarks', 'listed_on'):
            value = getattr(entity, key)
            if value:
                record[key] = value
        return record


class PepRepository:
    """Repository for PEP records and their relationships."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, pep_data: Dict[str, Any]) -> PoliticallyExposedPerson:
        """
        Create a PEP record.

        Raises:
            DuplicateEntityError: If a record with the same external_id exists
        """
        try:
            pep_data['normalized_name'] = normalize_name(pep_data.get('name', ''))
            pep = PoliticallyExposedPerson(**pep_data)
            self.session.add(pep)
            self.session.flush()
            return pep
        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateEntityError(f"PEP already exists: {e}")

    def get_by_external_id(self, external_id: str) -> Optional[PoliticallyExposedPerson]:
        query = select(PoliticallyExposedPerson).where(
            PoliticallyExposedPerson.external_id == external_id,
            PoliticallyExposedPerson.is_deleted == False  # noqa: E712
        )
        return self.session.execute(query).scalar_one_or_none()

    def add_relationship(self, pep_external_id: str, related_external_id: str,
                         relationship_type: str = "associate") -> PepRelationship:
        pep = self.get_by_external_id(pep_external_id)
        related = self.get_by_external_id(related_external_id)
        if pep is None or related is None:
            raise RepositoryError(
                f"Unknown PEP in relationship {pep_external_id} -> {related_external_id}"
            )
        link = PepRelationship(pep_id=pep.id, related_pep_id=related.id,
                               relationship_type=relationship_type)
        self.session.add(link)
        self.session.flush()
        return link

    def search_by_name(self, normalized_name: str, threshold: float, limit: int = 200,
                       slack: float = DEFAULT_CANDIDATE_SLACK) -> List[PoliticallyExposedPerson]:
        floor = max(0.0, threshold - slack / 100.0)
        query = select(PoliticallyExposedPerson).where(
            PoliticallyExposedPerson.is_deleted == False  # noqa: E712
        )
        scored = []
        for pep in self.session.execute(query).scalars():
            score = prefilter_score(normalized_name, [pep.name] + list(pep.aliases or []))
            if score >= floor:
                scored.append((score, pep))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [pep for _, pep in scored[:limit]]

    @staticmethod
    def to_record(pep: PoliticallyExposedPerson) -> CandidateRecord:
        record: CandidateRecord = dict(pep.additional_info or {})
        record.update({
            'id': pep.external_id,
            'name': pep.name,
            'aliases': list(pep.aliases or []),
            'position': pep.position,
            'country': pep.country,
            'organization': pep.organization,
            'start_date': pep.start_date,
            'end_date': pep.end_date,
            'level': pep.level,
            'related_persons': [
                link.related.external_id for link in pep.relationships if not link.related.is_deleted
            ],
        })
        return record


class DataSourceRepository:
    """Repository for data source operations."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_code(self, code: SanctionsList) -> Optional[DataSource]:
        """Get data source by code."""
        query = select(DataSource).where(DataSource.code == SanctionsList(code))
        return self.session.execute(query).scalar_one_or_none()

    def list_active(self) -> List[DataSource]:
        """List all active data sources."""
        query = select(DataSource).where(
            DataSource.is_active == True  # noqa: E712
        ).order_by(DataSource.code)
        return list(self.session.execute(query).scalars().all())

    def upsert(self, code: SanctionsList, name: Optional[str] = None,
               list_class: ListClass = ListClass.BLOCKING, is_active: bool = True) -> DataSource:
        code = SanctionsList(code)
        source = self.get_by_code(code)
        if source is None:
            source = DataSource(code=code, name=name or code.value.upper())
            self.session.add(source)
        if name:
            source.name = name
        source.list_class = ListClass(list_class)
        source.is_active = is_active
        self.session.flush()
        return source

    def record_refresh(self, code: SanctionsList, status: str,
                       entity_count: Optional[int] = None) -> DataSource:
        """
        Record the outcome of a list refresh.

        A source whose last refresh status is ``failed`` is unavailable for
        screening until the next successful refresh.
        """
        source = self.get_by_code(code)
        if source is None:
            raise RepositoryError(f"Data source not found: {code}")
        source.last_update = utc_now()
        source.last_update_status = status
        if entity_count is not None:
            source.last_entity_count = entity_count
        self.session.flush()
        return source


class PartyRepository:
    """Repository for screened party snapshots."""

    def __init__(self, session: Session):
        self.session = session

    def upsert(self, party: Party) -> ScreenedParty:
        record = self.session.get(ScreenedParty, party.id)
        if record is None:
            record = ScreenedParty(id=party.id)
            self.session.add(record)
        record.name = party.name
        record.party_type = PartyType(party.party_type)
        record.aliases = list(party.aliases)
        record.risk_rating = party.risk_rating
        self.session.flush()
        return record

    def get(self, party_id: str) -> Optional[Party]:
        record = self.session.get(ScreenedParty, party_id)
        if record is None:
            return None
        return Party(
            id=record.id,
            name=record.name,
            party_type=record.party_type,
            aliases=tuple(record.aliases or ()),
            risk_rating=record.risk_rating
        )


# ============================================
# CONTRACT ADAPTERS
# ============================================

class DatabaseListRepository(ListRepository):
    """ListRepository backed by the list tables."""

    def __init__(self, provider: DatabaseSessionProvider, limit: int = 200,
                 candidate_slack: float = DEFAULT_CANDIDATE_SLACK):
        self.provider = provider
        self.limit = limit
        self.candidate_slack = candidate_slack

    @timed_query("find_candidates")
    def find_by_name(self, normalized_name, sanctions_list, threshold):
        with self.provider.session_scope() as session:
            repo = SanctionedEntityRepository(session)
            entities = repo.search_by_name(normalized_name, sanctions_list, threshold,
                                           self.limit, self.candidate_slack)
            return [repo.to_candidate(e) for e in entities]

    def is_list_available(self, sanctions_list):
        with self.provider.session_scope() as session:
            source = DataSourceRepository(session).get_by_code(sanctions_list)
            if source is None:
                logger.debug(f"No data source registered for {sanctions_list.value}")
                return False
            return source.is_available

    @timed_query("find_pep_candidates")
    def find_pep_by_name(self, name, threshold):
        with self.provider.session_scope() as session:
            repo = PepRepository(session)
            peps = repo.search_by_name(normalize_name(name), threshold, self.limit, self.candidate_slack)
            return [repo.to_record(p) for p in peps]

    def get_related_persons(self, pep_id):
        with self.provider.session_scope() as session:
            repo = PepRepository(session)
            pep = repo.get_by_external_id(pep_id)
            if pep is None:
                return []
            related = []
            for link in pep.relationships:
                if link.related.is_deleted:
                    continue
                record = repo.to_record(link.related)
                record['relationship'] = link.relationship_type
                related.append(record)
            return related


class DatabasePartyProvider(PartyProvider):
    """PartyProvider backed by the screened_parties table."""

    def __init__(self, provider: DatabaseSessionProvider):
        self.provider = provider

    def get_party(self, party_id):
        with self.provider.session_scope() as session:
            return PartyRepository(session).get(party_id)


def _to_schedule(record: ScreeningScheduleRecord) -> ScreeningSchedule:
    return ScreeningSchedule(
        schedule_id=record.id,
        party_id=record.party_id,
        frequency=record.frequency,
        next_screening_date=record.next_screening_date,
        scheduled_at=record.scheduled_at,
        lists=list(record.lists or []),
        screening_options=dict(record.screening_options or {}),
        metadata=dict(record.schedule_metadata or {}),
        status=record.status,
        priority=record.priority,
        execution_count=record.execution_count,
        last_executed_at=record.last_executed_at,
        last_execution_status=record.last_execution_status,
        failed_attempts=record.failed_attempts,
        version=record.version
    )


def _apply_schedule(record: ScreeningScheduleRecord, schedule: ScreeningSchedule) -> None:
    record.party_id = schedule.party_id
    record.frequency = schedule.frequency
    record.next_screening_date = schedule.next_screening_date
    record.scheduled_at = schedule.scheduled_at
    record.lists = list(schedule.lists)
    record.screening_options = dict(schedule.screening_options)
    record.schedule_metadata = dict(schedule.metadata)
    record.status = schedule.status
    record.priority = schedule.priority
    record.execution_count = schedule.execution_count
    record.last_executed_at = schedule.last_executed_at
    record.last_execution_status = schedule.last_execution_status
    record.failed_attempts = schedule.failed_attempts


def _to_execution(record: ScreeningExecutionRecord) -> ScheduleExecution:
    return ScheduleExecution(
        schedule_id=record.schedule_id,
        party_id=record.party_id,
        started_at=record.started_at,
        completed_at=record.completed_at,
        status=record.status,
        matches_found=record.matches_found,
        processing_time_seconds=record.processing_time_seconds,
        screening_id=record.screening_id,
        error_message=record.error_message
    )


class ScheduleRepository(ScheduleStore):
    """ScheduleStore backed by screening_schedules / screening_executions.

    The ``version`` column is the mapper's version counter, so every UPDATE
    is conditional on the version that was read.
    """

    def __init__(self, provider: DatabaseSessionProvider):
        self.provider = provider

    def add(self, schedule):
        with self.provider.session_scope() as session:
            record = ScreeningScheduleRecord(id=schedule.schedule_id)
            _apply_schedule(record, schedule)
            session.add(record)
            session.flush()
            return _to_schedule(record)

    def update(self, schedule):
        try:
            with self.provider.session_scope() as session:
                record = session.get(ScreeningScheduleRecord, schedule.schedule_id)
                if record is None or record.version != schedule.version:
                    raise ConcurrentUpdateError(schedule.schedule_id, schedule.version)
                _apply_schedule(record, schedule)
                session.flush()
                return _to_schedule(record)
        except StaleDataError as e:
            raise ConcurrentUpdateError(schedule.schedule_id, schedule.version) from e

    def get(self, schedule_id):
        with self.provider.session_scope() as session:
            record = session.get(ScreeningScheduleRecord, schedule_id)
            return _to_schedule(record) if record else None

    def find_by_party(self, party_id, include_inactive=False):
        query = select(ScreeningScheduleRecord).where(ScreeningScheduleRecord.party_id == party_id)
        if not include_inactive:
            query = query.where(ScreeningScheduleRecord.status.in_(EXECUTABLE_STATUSES))
        query = query.order_by(ScreeningScheduleRecord.scheduled_at.desc())
        with self.provider.session_scope() as session:
            return [_to_schedule(r) for r in session.execute(query).scalars()]

    @timed_query("find_due_schedules")
    def find_due(self, as_of, limit):
        query = select(ScreeningScheduleRecord).where(
            ScreeningScheduleRecord.status.in_(EXECUTABLE_STATUSES),
            ScreeningScheduleRecord.next_screening_date <= as_of
        ).order_by(
            case((ScreeningScheduleRecord.priority == 'high', 0), else_=1),
            ScreeningScheduleRecord.next_screening_date
        ).limit(limit)
        with self.provider.session_scope() as session:
            return [_to_schedule(r) for r in session.execute(query).scalars()]

    def find_retryable(self, max_attempts, limit):
        query = select(ScreeningScheduleRecord).where(
            ScreeningScheduleRecord.status.in_(EXECUTABLE_STATUSES),
            ScreeningScheduleRecord.last_execution_status == 'failed',
            ScreeningScheduleRecord.failed_attempts > 0,
            ScreeningScheduleRecord.failed_attempts < max_attempts
        ).order_by(ScreeningScheduleRecord.next_screening_date).limit(limit)
        with self.provider.session_scope() as session:
            return [_to_schedule(r) for r in session.execute(query).scalars()]

    def record_execution(self, execution):
        with self.provider.session_scope() as session:
            session.add(ScreeningExecutionRecord(
                schedule_id=execution.schedule_id,
                party_id=execution.party_id,
                started_at=execution.started_at,
                completed_at=execution.completed_at,
                status=execution.status,
                matches_found=execution.matches_found,
                processing_time_seconds=execution.processing_time_seconds,
                screening_id=execution.screening_id,
                error_message=execution.error_message
            ))

    def executions_since(self, since: Optional[datetime]):
        query = select(ScreeningExecutionRecord).order_by(ScreeningExecutionRecord.started_at)
        if since is not None:
            query = query.where(ScreeningExecutionRecord.started_at >= since)
        with self.provider.session_scope() as session:
            return [_to_execution(r) for r in session.execute(query).scalars()]

    def count_by_status(self):
        query = select(
            ScreeningScheduleRecord.status,
            func.count(ScreeningScheduleRecord.id)
        ).group_by(ScreeningScheduleRecord.status)
        with self.provider.session_scope() as session:
            return {status.value: count for status, count in session.execute(query).all()}
