"""credit accounts, reservations and ledger

Revision ID: 0001_credit_ledger
Revises: 
Create Date: 2026-10-18
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_credit_ledger'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'credit_accounts',
        sa.Column('actor_id', sa.String(length=128), primary_key=True),
        sa.Column('balance_credits', sa.Numeric(12, 3), nullable=False, server_default=sa.text('0')),
        sa.Column('reserved_credits', sa.Numeric(12, 3), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'credit_reservations',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('actor_id', sa.String(length=128), nullable=False),
        sa.Column('amount_credits', sa.Numeric(12, 3), nullable=False),
        sa.Column('spent_credits', sa.Numeric(12, 3), nullable=True),
        sa.Column('reason', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='held'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['actor_id'], ['credit_accounts.actor_id']),
    )
    op.create_index('ix_credit_reservations_actor_id', 'credit_reservations', ['actor_id'])
    op.create_index('ix_credit_reservations_status', 'credit_reservations', ['status'])

    op.create_table(
        'credit_ledger',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('actor_id', sa.String(length=128), nullable=False),
        sa.Column('delta_credits', sa.Numeric(12, 3), nullable=False),
        sa.Column('reason', sa.String(length=64), nullable=False),
        sa.Column('meta', sa.JSON(), nullable=False),
        sa.Column('idempotency_key', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['actor_id'], ['credit_accounts.actor_id']),
        sa.UniqueConstraint('idempotency_key', name='uq_credit_ledger_idempotency_key'),
    )
    op.create_index('ix_credit_ledger_actor_id', 'credit_ledger', ['actor_id'])


def downgrade() -> None:
    op.drop_index('ix_credit_ledger_actor_id', table_name='credit_ledger')
    op.drop_table('credit_ledger')
    op.drop_index('ix_credit_reservations_status', table_name='credit_reservations')
    op.drop_index('ix_credit_reservations_actor_id', table_name='credit_reservations')
    op.drop_table('credit_reservations')
    op.drop_table('credit_accounts')
