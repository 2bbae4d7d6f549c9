"""Initial schema - Baseline migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-01 00:00:00.000000

Baseline migration that creates all tables of the screening core.
It corresponds to the models in database/models.py.
For existing databases, use `alembic stamp 001_initial` to mark as applied.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SANCTIONS_LISTS = (
    'ofac', 'un', 'eu', 'uk_hmt', 'au_dfat', 'ca_sema', 'ch_seco',
    'interpol', 'world_bank'
)
FREQUENCIES = ('daily', 'weekly', 'monthly', 'quarterly', 'annual', 'immediate')
SCHEDULE_STATUSES = ('active', 'pending_immediate', 'failed', 'completed', 'cancelled')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
    ]


def upgrade() -> None:
    """Create initial database schema."""
    bind = op.get_bind()

    # similarity() for the candidate pre-filter
    op.execute('CREATE EXTENSION IF NOT EXISTS "pg_trgm"')

    # Create enums
    postgresql.ENUM(*SANCTIONS_LISTS, name='sanctions_list', create_type=True).create(bind, checkfirst=True)
    postgresql.ENUM('blocking', 'advisory', name='list_class', create_type=True).create(bind, checkfirst=True)
    postgresql.ENUM('INDIVIDUAL', 'ORGANIZATION', name='party_type', create_type=True).create(bind, checkfirst=True)
    postgresql.ENUM(*FREQUENCIES, name='screening_frequency', create_type=True).create(bind, checkfirst=True)
    postgresql.ENUM(*SCHEDULE_STATUSES, name='schedule_status', create_type=True).create(bind, checkfirst=True)

    sanctions_list = postgresql.ENUM(*SANCTIONS_LISTS, name='sanctions_list', create_type=False)

    # Create data_sources table
    op.create_table(
        'data_sources',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('code', sanctions_list, nullable=False, unique=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('list_class', postgresql.ENUM('blocking', 'advisory', name='list_class', create_type=False),
                  nullable=False),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default='true'),
        sa.Column('last_update', sa.DateTime(timezone=True)),
        sa.Column('last_update_status', sa.String(50)),
        sa.Column('last_entity_count', sa.Integer),
        *_timestamps()
    )

    # Create sanctioned_entities table
    op.create_table(
        'sanctioned_entities',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('external_id', sa.String(100), nullable=False),
        sa.Column('source', sanctions_list, nullable=False),
        sa.Column('entity_type', sa.String(50), nullable=False, server_default='individual'),
        sa.Column('primary_name', sa.String(500), nullable=False),
        sa.Column('normalized_name', sa.String(500), nullable=False),
        sa.Column('nationality', sa.String(100)),
        sa.Column('program', sa.String(200)),
        sa.Column('remarks', sa.Text),
        sa.Column('listed_on', sa.String(50)),
        sa.Column('raw_data', sa.JSON),
        sa.Column('is_deleted', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('deleted_at', sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.UniqueConstraint('external_id', 'source', name='uq_entity_external_source')
    )
    op.create_index('ix_sanctioned_entities_external_id', 'sanctioned_entities', ['external_id'])
    op.create_index('ix_sanctioned_entities_source', 'sanctioned_entities', ['source'])
    op.create_index('ix_sanctioned_entities_normalized_name', 'sanctioned_entities', ['normalized_name'])
    op.create_index('ix_sanctioned_entities_is_deleted', 'sanctioned_entities', ['is_deleted'])
    op.create_index('ix_entity_name_source', 'sanctioned_entities', ['normalized_name', 'source'])

    # Create entity_aliases table
    op.create_table(
        'entity_aliases',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('entity_id', sa.Uuid,
                  sa.ForeignKey('sanctioned_entities.id', ondelete='CASCADE'), nullable=False),
        sa.Column('alias_name', sa.String(500), nullable=False),
        sa.Column('normalized_alias', sa.String(500), nullable=False),
        sa.Column('alias_type', sa.String(50)),
        *_timestamps()
    )
    op.create_index('ix_entity_aliases_entity_id', 'entity_aliases', ['entity_id'])
    op.create_index('ix_entity_aliases_normalized_alias', 'entity_aliases', ['normalized_alias'])

    # Create politically_exposed_persons table
    op.create_table(
        'politically_exposed_persons',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('external_id', sa.String(100), nullable=False, unique=True),
        sa.Column('name', sa.String(500), nullable=False),
        sa.Column('normalized_name', sa.String(500), nullable=False),
        sa.Column('aliases', sa.JSON),
        sa.Column('position', sa.String(500)),
        sa.Column('country', sa.String(100)),
        sa.Column('organization', sa.String(300)),
        sa.Column('start_date', sa.DateTime(timezone=True)),
        sa.Column('end_date', sa.DateTime(timezone=True)),
        sa.Column('level', sa.String(20)),
        sa.Column('additional_info', sa.JSON),
        sa.Column('is_deleted', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('deleted_at', sa.DateTime(timezone=True)),
        *_timestamps()
    )
    op.create_index('ix_politically_exposed_persons_normalized_name',
                    'politically_exposed_persons', ['normalized_name'])
    op.create_index('ix_politically_exposed_persons_country', 'politically_exposed_persons', ['country'])
    op.create_index('ix_politically_exposed_persons_is_deleted', 'politically_exposed_persons', ['is_deleted'])

    # Create pep_relationships table
    op.create_table(
        'pep_relationships',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('pep_id', sa.Uuid,
                  sa.ForeignKey('politically_exposed_persons.id', ondelete='CASCADE'), nullable=False),
        sa.Column('related_pep_id', sa.Uuid,
                  sa.ForeignKey('politically_exposed_persons.id', ondelete='CASCADE'), nullable=False),
        sa.Column('relationship_type', sa.String(50), nullable=False, server_default='associate'),
        *_timestamps(),
        sa.UniqueConstraint('pep_id', 'related_pep_id', name='uq_pep_relationship')
    )
    op.create_index('ix_pep_relationships_pep_id', 'pep_relationships', ['pep_id'])
    op.create_index('ix_pep_relationships_related_pep_id', 'pep_relationships', ['related_pep_id'])

    # Create screened_parties table
    op.create_table(
        'screened_parties',
        sa.Column('id', sa.String(100), primary_key=True),
        sa.Column('name', sa.String(500), nullable=False),
        sa.Column('party_type', postgresql.ENUM('INDIVIDUAL', 'ORGANIZATION', name='party_type',
                                                create_type=False), nullable=False),
        sa.Column('aliases', sa.JSON),
        sa.Column('risk_rating', sa.String(20)),
        *_timestamps()
    )

    # Create screening_schedules table
    op.create_table(
        'screening_schedules',
        sa.Column('id', sa.String(40), primary_key=True),
        sa.Column('party_id', sa.String(100), nullable=False),
        sa.Column('frequency', postgresql.ENUM(*FREQUENCIES, name='screening_frequency', create_type=False),
                  nullable=False),
        sa.Column('status', postgresql.ENUM(*SCHEDULE_STATUSES, name='schedule_status', create_type=False),
                  nullable=False),
        sa.Column('priority', sa.String(20), nullable=False, server_default='normal'),
        sa.Column('next_screening_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('lists', sa.JSON),
        sa.Column('screening_options', sa.JSON),
        sa.Column('metadata', sa.JSON),
        sa.Column('execution_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_executed_at', sa.DateTime(timezone=True)),
        sa.Column('last_execution_status', sa.String(20)),
        sa.Column('failed_attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        *_timestamps()
    )
    op.create_index('ix_screening_schedules_party_id', 'screening_schedules', ['party_id'])
    op.create_index('ix_screening_schedules_status', 'screening_schedules', ['status'])
    op.create_index('ix_schedule_due', 'screening_schedules', ['status', 'next_screening_date'])
    op.create_index('ix_schedule_party_status', 'screening_schedules', ['party_id', 'status'])

    # Create screening_executions table
    op.create_table(
        'screening_executions',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('schedule_id', sa.String(40),
                  sa.ForeignKey('screening_schedules.id', ondelete='CASCADE'), nullable=False),
        sa.Column('party_id', sa.String(100), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('matches_found', sa.Integer, nullable=False, server_default='0'),
        sa.Column('processing_time_seconds', sa.Float, nullable=False, server_default='0'),
        sa.Column('screening_id', sa.String(40)),
        sa.Column('error_message', sa.Text),
        *_timestamps()
    )
    op.create_index('ix_screening_executions_schedule_id', 'screening_executions', ['schedule_id'])
    op.create_index('ix_screening_executions_party_id', 'screening_executions', ['party_id'])
    op.create_index('ix_screening_executions_started_at', 'screening_executions', ['started_at'])


def downgrade() -> None:
    """Drop all tables and types."""
    # Drop tables in reverse order
    op.drop_table('screening_executions')
    op.drop_table('screening_schedules')
    op.drop_table('screened_parties')
    op.drop_table('pep_relationships')
    op.drop_table('politically_exposed_persons')
    op.drop_table('entity_aliases')
    op.drop_table('sanctioned_entities')
    op.drop_table('data_sources')

    # Drop enums
    op.execute('DROP TYPE IF EXISTS schedule_status')
    op.execute('DROP TYPE IF EXISTS screening_frequency')
    op.execute('DROP TYPE IF EXISTS party_type')
    op.execute('DROP TYPE IF EXISTS list_class')
    op.execute('DROP TYPE IF EXISTS sanctions_list')
