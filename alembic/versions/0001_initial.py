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


def _json() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('mobile_number', sa.String(length=16), nullable=False),
        sa.Column('first_name', sa.String(length=50), nullable=False),
        sa.Column('last_name', sa.String(length=50), nullable=False),
        sa.Column('credits', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('current_plan', sa.String(length=16), nullable=True),
        sa.Column('plan_start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('plan_end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('images_generated_this_month', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('monthly_reset_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('mobile_number', name='uq_users_mobile_number'),
        sa.CheckConstraint('credits >= 0', name='ck_users_credits_non_negative'),
    )
    op.create_index('ix_users_mobile_number', 'users', ['mobile_number'])

    op.create_table(
        'credit_ledger',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('delta_credits', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(length=64), nullable=False),
        sa.Column('meta', _json(), nullable=False),
        sa.Column('idempotency_key', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_credit_ledger_user_id_users'),
        sa.UniqueConstraint('idempotency_key', name='uq_credit_ledger_idempotency_key'),
    )
    op.create_index('ix_credit_ledger_user_id', 'credit_ledger', ['user_id'])

    op.create_table(
        'tasks',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('task_id', sa.String(length=128), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('task_type', sa.String(length=16), nullable=False),
        sa.Column('mode', sa.String(length=32), nullable=False),
        sa.Column('prompt', sa.Text(), nullable=False),
        sa.Column('num_images', sa.Integer(), nullable=False),
        sa.Column('options', _json(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('images', _json(), nullable=False),
        sa.Column('videos', _json(), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('credits_reserved', sa.Integer(), nullable=False),
        sa.Column('credits_deducted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('version', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_tasks_user_id_users'),
        sa.UniqueConstraint('task_id', name='uq_tasks_task_id'),
        sa.CheckConstraint('num_images >= 1 AND num_images <= 4', name='ck_tasks_num_images_range'),
        sa.CheckConstraint('credits_reserved >= 0', name='ck_tasks_credits_reserved_non_negative'),
    )
    op.create_index('ix_tasks_user_id', 'tasks', ['user_id'])
    op.create_index('ix_tasks_task_type', 'tasks', ['task_type'])
    op.create_index('ix_tasks_status', 'tasks', ['status'])

    op.create_table(
        'history_entries',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=8), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('prompt', sa.Text(), nullable=False),
        sa.Column('task_id', sa.String(length=128), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_history_entries_user_id_users'),
        sa.UniqueConstraint('task_id', 'url', name='uq_history_entries_task_url'),
    )
    op.create_index('ix_history_entries_user_id', 'history_entries', ['user_id'])
    op.create_index('ix_history_entries_timestamp', 'history_entries', ['timestamp'])

    op.create_table(
        'billing_entries',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('plan', sa.String(length=16), nullable=True),
        sa.Column('credits', sa.Integer(), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('original_amount', sa.Integer(), nullable=True),
        sa.Column('discount_code', sa.String(length=50), nullable=True),
        sa.Column('discount_amount', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('authority', sa.String(length=64), nullable=True),
        sa.Column('ref_id', sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_billing_entries_user_id_users'),
        sa.UniqueConstraint('authority', name='uq_billing_entries_authority'),
    )
    op.create_index('ix_billing_entries_user_id', 'billing_entries', ['user_id'])
    op.create_index('ix_billing_entries_date', 'billing_entries', ['date'])

    op.create_table(
        'discounts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(length=50), nullable=False),
        sa.Column('discount_type', sa.String(length=16), nullable=False),
        sa.Column('discount_value', sa.Integer(), nullable=False),
        sa.Column('capacity', sa.Integer(), nullable=False),
        sa.Column('used_count', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('code', name='uq_discounts_code'),
        sa.CheckConstraint('used_count <= capacity', name='ck_discounts_used_within_capacity'),
    )
    op.create_index('ix_discounts_code', 'discounts', ['code'])

    op.create_table(
        'otp_codes',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('mobile_number', sa.String(length=16), nullable=False),
        sa.Column('hashed_code', sa.String(length=128), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_otp_codes_mobile_number', 'otp_codes', ['mobile_number'])


def downgrade() -> None:
    op.drop_index('ix_otp_codes_mobile_number', table_name='otp_codes')
    op.drop_table('otp_codes')
    op.drop_index('ix_discounts_code', table_name='discounts')
    op.drop_table('discounts')
    op.drop_index('ix_billing_entries_date', table_name='billing_entries')
    op.drop_index('ix_billing_entries_user_id', table_name='billing_entries')
    op.drop_table('billing_entries')
    op.drop_index('ix_history_entries_timestamp', table_name='history_entries')
    op.drop_index('ix_history_entries_user_id', table_name='history_entries')
    op.drop_table('history_entries')
    op.drop_index('ix_tasks_status', table_name='tasks')
    op.drop_index('ix_tasks_task_type', table_name='tasks')
    op.drop_index('ix_tasks_user_id', table_name='tasks')
    op.drop_table('tasks')
    op.drop_index('ix_credit_ledger_user_id', table_name='credit_ledger')
    op.drop_table('credit_ledger')
    op.drop_index('ix_users_mobile_number', table_name='users')
    op.drop_table('users')
