"""Initial database schema

Revision ID: 20261017_000001
Revises: 
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '20261017_000001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create workflow_instances table
    op.create_table(
        'workflow_instances',
        sa.Column('id', sa.String(26), nullable=False),
        sa.Column('flow_name', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, default='RUNNING'),
        sa.Column('context', postgresql.JSONB(), nullable=False, default={}),
        sa.Column('wall_ms_total', sa.BigInteger(), nullable=False, default=0),
        sa.Column('active_ms_total', sa.BigInteger(), nullable=False, default=0),
        sa.Column('waiting_ms_total', sa.BigInteger(), nullable=False, default=0),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_workflow_instances_flow_name', 'workflow_instances', ['flow_name'])
    op.create_index('ix_workflow_instances_status', 'workflow_instances', ['status'])

    # Create workflow_node_runs table
    op.create_table(
        'workflow_node_runs',
        sa.Column('id', sa.String(26), nullable=False),
        sa.Column('instance_id', sa.String(26), nullable=False),
        sa.Column('node_id', sa.String(255), nullable=False),
        sa.Column('attempt', sa.Integer(), nullable=False, default=1),
        sa.Column('waiting', sa.Boolean(), nullable=False, default=False),
        sa.Column('status', sa.String(20), nullable=False, default='RUNNING'),
        sa.Column('duration_ms', sa.BigInteger(), nullable=True),
        sa.Column('active_ms', sa.BigInteger(), nullable=True),
        sa.Column('waiting_ms', sa.BigInteger(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['instance_id'], ['workflow_instances.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_workflow_node_runs_instance_id', 'workflow_node_runs', ['instance_id'])
    op.create_index('ix_workflow_node_runs_instance_node', 'workflow_node_runs', ['instance_id', 'node_id'])

    # Create workflow_tasks table
    op.create_table(
        'workflow_tasks',
        sa.Column('id', sa.String(26), nullable=False),
        sa.Column('instance_id', sa.String(26), nullable=False),
        sa.Column('node_id', sa.String(255), nullable=False),
        sa.Column('form_schema_ref', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, default='OPEN'),
        sa.Column('assignees', postgresql.ARRAY(sa.String(255)), nullable=False, default=[]),
        sa.Column('context', postgresql.JSONB(), nullable=False, default={}),
        sa.Column('payload', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['instance_id'], ['workflow_instances.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_workflow_tasks_instance_id', 'workflow_tasks', ['instance_id'])
    op.create_index('ix_workflow_tasks_status_expires', 'workflow_tasks', ['status', 'expires_at'])
    op.create_index('ix_workflow_tasks_assignees', 'workflow_tasks', ['assignees'], postgresql_using='gin')

    # Create workflow_barriers table
    op.create_table(
        'workflow_barriers',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('instance_id', sa.String(26), nullable=False),
        sa.Column('node_id', sa.String(255), nullable=False),
        sa.Column('correlate_key', sa.String(255), nullable=False),
        sa.Column('mode', sa.String(10), nullable=False),
        sa.Column('quorum', sa.Integer(), nullable=True),
        sa.Column('expected_topics', postgresql.ARRAY(sa.String(255)), nullable=False),
        sa.Column('emit_merged', sa.Boolean(), nullable=False, default=False),
        sa.Column('completed', sa.Boolean(), nullable=False, default=False),
        sa.Column('progress', postgresql.JSONB(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['instance_id'], ['workflow_instances.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('node_id', 'correlate_key', name='uq_workflow_barriers_node_key'),
    )
    op.create_index('ix_workflow_barriers_instance_id', 'workflow_barriers', ['instance_id'])
    op.create_index('ix_workflow_barriers_open_expiry', 'workflow_barriers', ['completed', 'expires_at'])

    # Create workflow_barrier_topics table
    op.create_table(
        'workflow_barrier_topics',
        sa.Column('id', sa.String(26), nullable=False),
        sa.Column('instance_id', sa.String(26), nullable=False),
        sa.Column('node_id', sa.String(255), nullable=False),
        sa.Column('topic', sa.String(255), nullable=False),
        sa.Column('status', sa.String(10), nullable=False),
        sa.Column('payload', postgresql.JSONB(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('duration_ms', sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['instance_id'], ['workflow_instances.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_workflow_barrier_topics_instance_id', 'workflow_barrier_topics', ['instance_id'])


def downgrade() -> None:
    op.drop_table('workflow_barrier_topics')
    op.drop_table('workflow_barriers')
    op.drop_table('workflow_tasks')
    op.drop_table('workflow_node_runs')
    op.drop_table('workflow_instances')
