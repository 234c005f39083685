"""hint ledger schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create accounts, compliments and invoices."""

    # ========================================================================
    # Create accounts table
    # ========================================================================
    op.create_table(
        'accounts',
        sa.Column('account_id', sa.String(128), primary_key=True),
        sa.Column('daily_hints_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_daily_reset_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('bonus_hints', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),

        sa.CheckConstraint('daily_hints_used >= 0', name='ck_daily_hints_used_non_negative'),
        sa.CheckConstraint('bonus_hints >= 0', name='ck_bonus_hints_non_negative'),
    )

    # ========================================================================
    # Create compliments table
    # ========================================================================
    op.create_table(
        'compliments',
        sa.Column('id', sa.String(128), primary_key=True),
        sa.Column('owner_account_id', sa.String(128), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('hint_frequency', sa.String(100), nullable=False, server_default=''),
        sa.Column('hint_location', sa.String(100), nullable=False, server_default=''),
        sa.Column('hints', sa.JSON(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )

    op.create_index('idx_compliments_owner', 'compliments', ['owner_account_id'])

    # ========================================================================
    # Create invoices table
    # ========================================================================
    op.create_table(
        'invoices',
        sa.Column('local_invoice_id', sa.String(64), primary_key=True),
        sa.Column('gateway_invoice_id', sa.String(128), nullable=True),
        sa.Column('account_id', sa.String(128), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('num_hints', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('gateway_payment_ref', sa.String(128), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),

        sa.CheckConstraint('amount > 0', name='ck_invoice_amount_positive'),
        sa.CheckConstraint('num_hints > 0', name='ck_invoice_num_hints_positive'),
        sa.CheckConstraint("status IN ('PENDING', 'PAID', 'FAILED')", name='ck_invoice_status_valid'),
    )

    # Webhook lookups are always scoped to PENDING
    op.create_index('idx_invoices_gateway_status', 'invoices', ['gateway_invoice_id', 'status'])
    op.create_index('idx_invoices_account', 'invoices', ['account_id'])
    op.create_index('idx_invoices_status_created', 'invoices', ['status', 'created_at'])


def downgrade() -> None:
    """Drop the hint ledger schema."""
    op.drop_table('invoices')
    op.drop_index('idx_compliments_owner', table_name='compliments')
    op.drop_table('compliments')
    op.drop_table('accounts')
