"""generation jobs awaiting settlement

Revision ID: 0002_generation_jobs
Revises: 0001_credit_ledger
Create Date: 2026-10-18
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0002_generation_jobs'
down_revision = '0001_credit_ledger'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'generation_jobs',
        sa.Column('reservation_id', sa.String(length=64), primary_key=True),
        sa.Column('provider_job_id', sa.String(length=128), nullable=True),
        sa.Column('actor_id', sa.String(length=128), nullable=False),
        sa.Column('capability', sa.String(length=64), nullable=False),
        sa.Column('state', sa.String(length=16), nullable=False),
        sa.Column('credits_reserved', sa.Numeric(12, 3), nullable=False),
        sa.Column('credits_settled', sa.Numeric(12, 3), nullable=True),
        sa.Column('params', sa.JSON(), nullable=False),
        sa.Column('quote', sa.JSON(), nullable=True),
        sa.Column('result_urls', sa.JSON(), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('poll_attempt', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('claimed_by', sa.String(length=128), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['reservation_id'], ['credit_reservations.id']),
        sa.UniqueConstraint('provider_job_id', name='uq_generation_jobs_provider_job_id'),
    )
    op.create_index('ix_generation_jobs_actor_id', 'generation_jobs', ['actor_id'])
    op.create_index('ix_generation_jobs_state', 'generation_jobs', ['state'])
    op.create_index('ix_generation_jobs_settled_at', 'generation_jobs', ['settled_at'])


def downgrade() -> None:
    op.drop_index('ix_generation_jobs_settled_at', table_name='generation_jobs')
    op.drop_index('ix_generation_jobs_state', table_name='generation_jobs')
    op.drop_index('ix_generation_jobs_actor_id', table_name='generation_jobs')
    op.drop_table('generation_jobs')
