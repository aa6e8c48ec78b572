"""Initial run ledger tables

Revision ID: 001_initial_ledger
Revises:
Create Date: 2026-10-17

Creates all tables for the run ledger:
- pipeline_runs, agent_runs
- pipeline_advances (one-time advance tokens)
- generated_files
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial_ledger'
down_revision = None
branch_labels = None
depends_on = None

PIPELINE_STATUSES = (
    'pending', 'phase_1', 'phase_2', 'phase_3', 'phase_4', 'phase_5', 'phase_6',
    'completed', 'failed', 'needs_human', 'cancelled',
)
AGENT_RUN_STATUSES = ('pending', 'running', 'completed', 'failed', 'cancelled', 'skipped')


def upgrade() -> None:
    # ==========================================================================
    # Create Enums
    # ==========================================================================

    pipeline_status_enum = postgresql.ENUM(
        *PIPELINE_STATUSES,
        name='pipelinestatus',
        create_type=False,
    )
    pipeline_status_enum.create(op.get_bind(), checkfirst=True)

    agent_run_status_enum = postgresql.ENUM(
        *AGENT_RUN_STATUSES,
        name='agentrunstatus',
        create_type=False,
    )
    agent_run_status_enum.create(op.get_bind(), checkfirst=True)

    # ==========================================================================
    # Run Ledger Tables
    # ==========================================================================

    op.create_table(
        'pipeline_runs',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('project_id', sa.String(length=100), nullable=False),
        sa.Column('correlation_id', sa.String(length=100), nullable=False),
        sa.Column('status', sa.Enum(*PIPELINE_STATUSES, name='pipelinestatus'), nullable=False, server_default='pending'),
        sa.Column('current_phase', sa.Integer(), nullable=True),
        sa.Column('current_agent', sa.String(length=100), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('total_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_cost_usd', sa.Numeric(precision=12, scale=6), nullable=False, server_default='0'),
        sa.Column('total_retries', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('quality_score', sa.Numeric(precision=4, scale=2), nullable=True),
        sa.Column('files_generated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('preview_url', sa.String(length=500), nullable=True),
        sa.Column('error_code', sa.String(length=100), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_agent', sa.String(length=100), nullable=True),
        sa.Column('input_snapshot', sa.JSON(), nullable=True),
        sa.Column('input_hash', sa.String(length=64), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_pipeline_runs_project_id', 'pipeline_runs', ['project_id'], unique=False)
    op.create_index('ix_pipeline_runs_correlation_id', 'pipeline_runs', ['correlation_id'], unique=False)
    op.create_index('ix_pipeline_runs_status', 'pipeline_runs', ['status'], unique=False)
    op.create_index('ix_pipeline_runs_input_hash', 'pipeline_runs', ['input_hash'], unique=False)

    op.create_table(
        'agent_runs',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('pipeline_run_id', sa.UUID(), nullable=False),
        sa.Column('project_id', sa.String(length=100), nullable=False),
        sa.Column('agent_name', sa.String(length=100), nullable=False),
        sa.Column('phase', sa.Integer(), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('attempt', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('status', sa.Enum(*AGENT_RUN_STATUSES, name='agentrunstatus'), nullable=False, server_default='pending'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('model_used', sa.String(length=100), nullable=True),
        sa.Column('input_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('output_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cost_usd', sa.Numeric(precision=12, scale=6), nullable=False, server_default='0'),
        sa.Column('quality_score', sa.Numeric(precision=4, scale=2), nullable=True),
        sa.Column('validation_passed', sa.Boolean(), nullable=True),
        sa.Column('validation_errors', sa.JSON(), nullable=True),
        sa.Column('error_code', sa.String(length=100), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('input_data', sa.JSON(), nullable=True),
        sa.Column('output_data', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['pipeline_run_id'], ['pipeline_runs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_agent_runs_pipeline_run_id', 'agent_runs', ['pipeline_run_id'], unique=False)
    op.create_index('ix_agent_runs_status', 'agent_runs', ['status'], unique=False)
    op.create_index(
        'ix_agent_runs_pipeline_agent', 'agent_runs', ['pipeline_run_id', 'agent_name', 'status'], unique=False
    )

    # One-time advance tokens; the unique constraint is the claim
    op.create_table(
        'pipeline_advances',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('pipeline_run_id', sa.UUID(), nullable=False),
        sa.Column('barrier_key', sa.String(length=100), nullable=False),
        sa.Column('claimed_by', sa.String(length=100), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['pipeline_run_id'], ['pipeline_runs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('pipeline_run_id', 'barrier_key', name='uq_pipeline_advance'),
    )

    op.create_table(
        'generated_files',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('project_id', sa.String(length=100), nullable=False),
        sa.Column('pipeline_run_id', sa.UUID(), nullable=True),
        sa.Column('file_path', sa.String(length=500), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('agent_name', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['pipeline_run_id'], ['pipeline_runs.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('project_id', 'file_path', name='uq_generated_file_path'),
    )
    op.create_index('ix_generated_files_project_id', 'generated_files', ['project_id'], unique=False)


def downgrade() -> None:
    # Drop tables in reverse order
    op.drop_table('generated_files')
    op.drop_table('pipeline_advances')
    op.drop_table('agent_runs')
    op.drop_table('pipeline_runs')

    # Drop enums
    op.execute("DROP TYPE IF EXISTS agentrunstatus")
    op.execute("DROP TYPE IF EXISTS pipelinestatus")
