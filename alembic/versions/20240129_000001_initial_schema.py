"""Initial database schema

Revision ID: 20240129_000001
Revises:
Create Date: 2024-01-29

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '20240129_000001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create workflow_definitions table (one row per id and version)
    op.create_table(
        'workflow_definitions',
        sa.Column('id', sa.String(255), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(255), nullable=True),
        sa.Column('tags', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('tenant_id', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_draft', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('document', postgresql.JSONB(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('modified_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id', 'version'),
    )
    op.create_index('ix_workflow_definitions_category', 'workflow_definitions', ['category'])
    op.create_index('ix_workflow_definitions_tenant_id', 'workflow_definitions', ['tenant_id'])
    op.create_index('ix_workflow_definitions_published', 'workflow_definitions', ['id', 'is_active', 'is_draft'])

    # Create workflow_instances table
    op.create_table(
        'workflow_instances',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('workflow_id', sa.String(255), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('name', sa.String(512), nullable=False, server_default=''),
        sa.Column('correlation_id', sa.String(255), nullable=True),
        sa.Column('tenant_id', sa.String(255), nullable=True),
        sa.Column('state', postgresql.JSONB(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('scheduled_start_time', sa.DateTime(), nullable=True),
        sa.Column('last_updated_at', sa.DateTime(), nullable=True),
        sa.Column('lock_holder', sa.String(255), nullable=True),
        sa.Column('lock_expires_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_workflow_instances_workflow_id', 'workflow_instances', ['workflow_id'])
    op.create_index('ix_workflow_instances_status', 'workflow_instances', ['status'])
    op.create_index('ix_workflow_instances_correlation_id', 'workflow_instances', ['correlation_id'])
    op.create_index('ix_workflow_instances_tenant_id', 'workflow_instances', ['tenant_id'])
    op.create_index('ix_workflow_instances_scheduled', 'workflow_instances', ['status', 'scheduled_start_time'])

    # Create workflow_bookmarks table
    op.create_table(
        'workflow_bookmarks',
        sa.Column('instance_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(512), nullable=False),
        sa.Column('activity_id', sa.String(255), nullable=False),
        sa.Column('workflow_id', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('instance_id', 'name'),
        sa.ForeignKeyConstraint(['instance_id'], ['workflow_instances.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_workflow_bookmarks_name', 'workflow_bookmarks', ['name'])

    # Create workflow_execution_history table
    op.create_table(
        'workflow_execution_history',
        sa.Column('seq', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('record_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('instance_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('activity_id', sa.String(255), nullable=False),
        sa.Column('activity_type', sa.String(50), nullable=False),
        sa.Column('outcome', sa.String(50), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('record', postgresql.JSONB(), nullable=False),
        sa.PrimaryKeyConstraint('seq'),
        sa.UniqueConstraint('record_id'),
        sa.ForeignKeyConstraint(['instance_id'], ['workflow_instances.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_workflow_execution_history_instance_id', 'workflow_execution_history', ['instance_id'])

    # Create workflow_timers table
    op.create_table(
        'workflow_timers',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('instance_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('bookmark_name', sa.String(512), nullable=False),
        sa.Column('activity_id', sa.String(255), nullable=True),
        sa.Column('fire_at', sa.DateTime(), nullable=False),
        sa.Column('is_triggered', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('triggered_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_workflow_timers_instance_id', 'workflow_timers', ['instance_id'])
    op.create_index('ix_workflow_timers_due', 'workflow_timers', ['is_triggered', 'fire_at'])


def downgrade() -> None:
    op.drop_table('workflow_timers')
    op.drop_table('workflow_execution_history')
    op.drop_table('workflow_bookmarks')
    op.drop_table('workflow_instances')
    op.drop_table('workflow_definitions')
