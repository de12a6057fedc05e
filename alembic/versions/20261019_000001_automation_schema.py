"""Automation workflows, executions and transition log

Revision ID: 20261019_000001
Revises: 
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '20261019_000001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create automation_workflows table
    op.create_table(
        'automation_workflows',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('publication_id', sa.String(255), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.String(500), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='DRAFT'),
        sa.Column('trigger_kind', sa.String(50), nullable=False),
        sa.Column('trigger', postgresql.JSONB(), nullable=False),
        sa.Column('graph', postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('retry_config', postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_automation_workflows_match',
        'automation_workflows',
        ['publication_id', 'status', 'trigger_kind'],
    )

    # Create workflow_executions table
    op.create_table(
        'workflow_executions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('workflow_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('publication_id', sa.String(255), nullable=False),
        sa.Column('subscriber_id', sa.String(255), nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='RUNNING'),
        sa.Column('current_node_id', sa.String(255), nullable=True),
        sa.Column('context', postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('wake_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['workflow_id'], ['automation_workflows.id'], ondelete='RESTRICT'),
        sa.UniqueConstraint('workflow_id', 'event_id', name='uq_workflow_executions_workflow_event'),
    )
    op.create_index('ix_workflow_executions_due', 'workflow_executions', ['status', 'wake_at', 'id'])
    op.create_index('ix_workflow_executions_stalled', 'workflow_executions', ['status', 'updated_at', 'id'])
    op.create_index('ix_workflow_executions_workflow_status', 'workflow_executions', ['workflow_id', 'status'])
    op.create_index(
        'ix_workflow_executions_publication_status',
        'workflow_executions',
        ['publication_id', 'status'],
    )

    # Create execution_steps table
    op.create_table(
        'execution_steps',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('execution_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('from_status', sa.String(20), nullable=False),
        sa.Column('to_status', sa.String(20), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('triggered_by', sa.String(255), nullable=True),
        sa.Column('details', postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['execution_id'], ['workflow_executions.id'], ondelete='RESTRICT'),
    )
    op.create_index('ix_execution_steps_execution_id', 'execution_steps', ['execution_id'])


def downgrade() -> None:
    op.drop_table('execution_steps')
    op.drop_table('workflow_executions')
    op.drop_table('automation_workflows')
