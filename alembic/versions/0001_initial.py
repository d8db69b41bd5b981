"""initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


JSONB = postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    op.create_table(
        'plans',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('credits', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('monthly_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('yearly_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('stripe_monthly_price_id', sa.String(length=128), nullable=True),
        sa.Column('stripe_yearly_price_id', sa.String(length=128), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.UniqueConstraint('name', name='uq_plans_name'),
    )
    op.create_index('ix_plans_stripe_monthly_price_id', 'plans', ['stripe_monthly_price_id'])
    op.create_index('ix_plans_stripe_yearly_price_id', 'plans', ['stripe_yearly_price_id'])

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('external_id', sa.String(length=128), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('balance_credits', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('plan_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['plan_id'], ['plans.id']),
        sa.CheckConstraint('balance_credits >= 0', name='ck_users_balance_non_negative'),
    )
    op.create_index('ix_users_external_id', 'users', ['external_id'], unique=True)

    op.create_table(
        'credit_ledger',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('generation_kind', sa.String(length=32), nullable=True),
        sa.Column('generation_id', sa.Integer(), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=False),
        sa.Column('meta', JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('idempotency_key', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('idempotency_key', name='uq_credit_ledger_idempotency_key'),
    )
    op.create_index('ix_credit_ledger_user_id', 'credit_ledger', ['user_id'])
    op.create_index('ix_credit_ledger_generation_id', 'credit_ledger', ['generation_id'])

    op.create_table(
        'credit_packages',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('price_id', sa.String(length=128), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('credits', sa.Integer(), nullable=False),
        sa.Column('price_usd', sa.Numeric(12, 2), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.UniqueConstraint('price_id', name='uq_credit_packages_price_id'),
    )

    op.create_table(
        'generations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('context_ref', sa.String(length=128), nullable=True),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('prompt', sa.Text(), nullable=False, server_default=''),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('model', sa.String(length=128), nullable=False),
        sa.Column('external_handle', sa.String(length=128), nullable=True),
        sa.Column('result_url', sa.Text(), nullable=True),
        sa.Column('result_urls', JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('cost_credits', sa.Integer(), nullable=False),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        sa.Column('meta', JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_generations_user_id', 'generations', ['user_id'])
    op.create_index('ix_generations_status', 'generations', ['status'])
    op.create_index('ix_generations_external_handle', 'generations', ['external_handle'])
    op.create_index('ix_generations_created_at', 'generations', ['created_at'])

    op.create_table(
        'archived_assets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('generation_id', sa.Integer(), nullable=True),
        sa.Column('asset_type', sa.String(length=16), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('prompt', sa.Text(), nullable=False, server_default=''),
        sa.Column('original_url', sa.Text(), nullable=False),
        sa.Column('local_path', sa.String(length=512), nullable=False),
        sa.Column('file_name', sa.String(length=255), nullable=False),
        sa.Column('file_size', sa.Integer(), nullable=False),
        sa.Column('width', sa.Integer(), nullable=True),
        sa.Column('height', sa.Integer(), nullable=True),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        sa.Column('mime_type', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('generation_id', 'original_url', name='uq_archived_assets_generation_url'),
    )
    op.create_index('ix_archived_assets_user_id', 'archived_assets', ['user_id'])
    op.create_index('ix_archived_assets_generation_id', 'archived_assets', ['generation_id'])


def downgrade() -> None:
    op.drop_index('ix_archived_assets_generation_id', table_name='archived_assets')
    op.drop_index('ix_archived_assets_user_id', table_name='archived_assets')
    op.drop_table('archived_assets')
    op.drop_index('ix_generations_created_at', table_name='generations')
    op.drop_index('ix_generations_external_handle', table_name='generations')
    op.drop_index('ix_generations_status', table_name='generations')
    op.drop_index('ix_generations_user_id', table_name='generations')
    op.drop_table('generations')
    op.drop_table('credit_packages')
    op.drop_index('ix_credit_ledger_generation_id', table_name='credit_ledger')
    op.drop_index('ix_credit_ledger_user_id', table_name='credit_ledger')
    op.drop_table('credit_ledger')
    op.drop_index('ix_users_external_id', table_name='users')
    op.drop_table('users')
    op.drop_index('ix_plans_stripe_yearly_price_id', table_name='plans')
    op.drop_index('ix_plans_stripe_monthly_price_id', table_name='plans')
    op.drop_table('plans')
