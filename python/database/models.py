"""
SQLAlchemy ORM Models for the Sanctions & PEP Screening Core

Schema design:
- UUID primary keys for list data, string keys for party and schedule ids
- Portable column types (SQLite for tests, PostgreSQL in production)
- Timestamps for all records (created_at, updated_at)
- Soft delete for list data
- Optimistic locking on screening schedules (version column)

Tables:
1. data_sources - One row per sanctions list; drives list availability
2. sanctioned_entities - Sanctions list entries
3. entity_aliases - Alternative names of list entries
4. politically_exposed_persons - PEP records
5. pep_relationships - Family / associate links between PEP records
6. screened_parties - Party snapshots served to the scheduler
7. screening_schedules - Recurring screening state per party
8. screening_executions - History of schedule executions
"""

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    Boolean, DateTime, Enum, Float, ForeignKey, Index, Integer, JSON, String,
    Text, TypeDecorator, UniqueConstraint, Uuid
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship
from sqlalchemy.sql import func

from screening_models import (
    ListClass, PartyType, SanctionsList, ScheduleStatus, ScreeningFrequency
)

# Base class for all models
Base = declarative_base()


def _enum(enum_cls, name: str) -> Enum:
    """Enum column storing member values"""
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True
    )


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as UTC

    SQLite drops tzinfo; values read back are re-tagged as UTC so comparisons
    with aware datetimes keep working on every backend.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


class SoftDeleteMixin:
    """Mixin for soft delete support"""
    is_deleted: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        index=True
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True
    )


# ============================================
# LIST DATA
# ============================================

class DataSource(Base, TimestampMixin):
    """
    One row per sanctions list.

    Screening treats a list as available only when its source is active and
    its last refresh did not fail.
    """
    __tablename__ = "data_sources"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # List identifier (SanctionsList value)
    code: Mapped[SanctionsList] = mapped_column(_enum(SanctionsList, "sanctions_list"), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    list_class: Mapped[ListClass] = mapped_column(
        _enum(ListClass, "list_class"),
        nullable=False,
        default=ListClass.BLOCKING
    )

    # Is this source active?
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Last refresh information (maintained by the list ingestion process)
    last_update: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    last_update_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    last_entity_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    @property
    def is_available(self) -> bool:
        return self.is_active and (self.last_update_status or "").lower() != "failed"

    def __repr__(self) -> str:
        return f"<DataSource(code='{self.code}', name='{self.name}')>"


class SanctionedEntity(Base, TimestampMixin, SoftDeleteMixin):
    """
    Sanctions list entry (individual, organization, vessel).
    """
    __tablename__ = "sanctioned_entities"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # External ID from the list publisher
    external_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    # List the entry belongs to
    source: Mapped[SanctionsList] = mapped_column(_enum(SanctionsList, "sanctions_list"), nullable=False, index=True)

    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, default="individual")
    primary_name: Mapped[str] = mapped_column(String(500), nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(500), nullable=False, index=True)

    nationality: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    program: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    remarks: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    listed_on: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Raw data from source, passed through as match metadata
    raw_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    aliases: Mapped[List["EntityAlias"]] = relationship(
        "EntityAlias",
        back_populates="entity",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    __table_args__ = (
        UniqueConstraint('external_id', 'source', name='uq_entity_external_source'),
        Index('ix_entity_name_source', 'normalized_name', 'source'),
    )

    def __repr__(self) -> str:
        return f"<SanctionedEntity(id={self.id}, name='{self.primary_name}', source={self.source})>"


class EntityAlias(Base, TimestampMixin):
    """
    Alternative names/aliases for sanctioned entities.
    """
    __tablename__ = "entity_aliases"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("sanctioned_entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    alias_name: Mapped[str] = mapped_column(String(500), nullable=False)
    normalized_alias: Mapped[str] = mapped_column(String(500), nullable=False, index=True)

    # Type of alias (AKA, FKA, DBA, etc.)
    alias_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    entity: Mapped["SanctionedEntity"] = relationship("SanctionedEntity", back_populates="aliases")

    def __repr__(self) -> str:
        return f"<EntityAlias(entity_id={self.entity_id}, alias='{self.alias_name}')>"


# ============================================
# PEP DATA
# ============================================

class PoliticallyExposedPerson(Base, TimestampMixin, SoftDeleteMixin):
    """
    PEP record. ``level`` is optional; when empty the screener infers it.
    """
    __tablename__ = "politically_exposed_persons"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    external_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    name: Mapped[str] = mapped_column(String(500), nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    aliases: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    position: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    organization: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    start_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    end_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Explicit level override (HIGH/MEDIUM/LOW)
    level: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    additional_info: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    relationships: Mapped[List["PepRelationship"]] = relationship(
        "PepRelationship",
        foreign_keys="PepRelationship.pep_id",
        back_populates="pep",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<PoliticallyExposedPerson(external_id='{self.external_id}', name='{self.name}')>"


class PepRelationship(Base, TimestampMixin):
    """
    Directed link from a PEP to a family member or close associate.
    """
    __tablename__ = "pep_relationships"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    pep_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("politically_exposed_persons.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    related_pep_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("politically_exposed_persons.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # spouse, child, parent, sibling, associate, ...
    relationship_type: Mapped[str] = mapped_column(String(50), nullable=False, default="associate")

    pep: Mapped["PoliticallyExposedPerson"] = relationship(
        "PoliticallyExposedPerson",
        foreign_keys=[pep_id],
        back_populates="relationships"
    )
    related: Mapped["PoliticallyExposedPerson"] = relationship(
        "PoliticallyExposedPerson",
        foreign_keys=[related_pep_id],
        lazy="joined"
    )

    __table_args__ = (
        UniqueConstraint('pep_id', 'related_pep_id', name='uq_pep_relationship'),
    )


# ============================================
# PARTIES AND SCHEDULING
# ============================================

class ScreenedParty(Base, TimestampMixin):
    """
    Snapshot of a party under monitoring, as supplied by the party system.
    """
    __tablename__ = "screened_parties"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    party_type: Mapped[PartyType] = mapped_column(
        Enum(PartyType, name="party_type"),
        nullable=False,
        default=PartyType.INDIVIDUAL
    )
    aliases: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    risk_rating: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    def __repr__(self) -> str:
        return f"<ScreenedParty(id='{self.id}', name='{self.name}')>"


class ScreeningScheduleRecord(Base, TimestampMixin):
    """
    Persisted schedule. Rows are never deleted by the core; cancellation is
    a status change. ``version`` guards read-modify-write cycles.
    """
    __tablename__ = "screening_schedules"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    party_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    frequency: Mapped[ScreeningFrequency] = mapped_column(
        _enum(ScreeningFrequency, "screening_frequency"),
        nullable=False
    )
    status: Mapped[ScheduleStatus] = mapped_column(
        _enum(ScheduleStatus, "schedule_status"),
        nullable=False,
        default=ScheduleStatus.ACTIVE,
        index=True
    )
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="normal")

    next_screening_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    lists: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    screening_options: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    schedule_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    execution_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    last_execution_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Version for optimistic locking
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    executions: Mapped[List["ScreeningExecutionRecord"]] = relationship(
        "ScreeningExecutionRecord",
        back_populates="schedule",
        lazy="dynamic"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('ix_schedule_due', 'status', 'next_screening_date'),
        Index('ix_schedule_party_status', 'party_id', 'status'),
    )

    def __repr__(self) -> str:
        return f"<ScreeningSchedule(id='{self.id}', party_id='{self.party_id}', status={self.status})>"


class ScreeningExecutionRecord(Base, TimestampMixin):
    """
    One execution of a schedule (success or failure).
    """
    __tablename__ = "screening_executions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    schedule_id: Mapped[str] = mapped_column(
        String(40),
        ForeignKey("screening_schedules.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    party_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    completed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    matches_found: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processing_time_seconds: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    screening_id: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    schedule: Mapped["ScreeningScheduleRecord"] = relationship(
        "ScreeningScheduleRecord",
        back_populates="executions"
    )

    def __repr__(self) -> str:
        return f"<ScreeningExecution(schedule_id='{self.schedule_id}', status='{self.status}')>"
