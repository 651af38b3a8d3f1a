"""Create cycle engine schema.

Revision ID: 20261017_000001
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '20261017_000001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    ]


def upgrade() -> None:
    """Create users, groups, memberships, payments, payouts, cycles and ledger."""

    op.create_table(
        'users',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('first_name', sa.String(100), nullable=True),
        sa.Column('last_name', sa.String(100), nullable=True),
        sa.Column('payment_customer_ref', sa.String(255), nullable=True),
        sa.Column('payment_method_ref', sa.String(255), nullable=True),
        sa.Column('mandate_ref', sa.String(255), nullable=True),
        sa.Column('payment_method_verified', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('payout_account_ref', sa.String(255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )

    op.create_table(
        'groups',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('contribution_amount', sa.DECIMAL(18, 2), nullable=True),
        sa.Column('cycle_frequency', sa.String(20), nullable=True),
        sa.Column('next_cycle_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('future_cycle_dates', sa.JSON(), nullable=True, comment='One agreed date per cycle'),
        sa.Column('cycle_started', sa.Boolean(), nullable=False, server_default='false', comment='A cycle is mid-execution'),
        sa.Column('total_group_cycles_completed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('current_member_cycle_number', sa.Integer(), nullable=False, server_default='1',
                  comment="Payout-order position of the current cycle's payee"),
        sa.Column('cycles_completed', sa.Boolean(), nullable=False, server_default='false', comment='No cycles remain'),
        sa.Column('status', sa.String(20), nullable=False, server_default='Active'),
        sa.Column('pause_reason', sa.String(40), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            'contribution_amount IS NULL OR contribution_amount > 0',
            name='check_group_contribution_positive',
        ),
    )
    op.create_index('ix_groups_next_cycle_date', 'groups', ['next_cycle_date'])
    op.create_index('ix_groups_status', 'groups', ['status'])

    op.create_table(
        'group_memberships',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('group_id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('payout_order', sa.Integer(), nullable=False),
        sa.Column('has_been_paid', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('status', sa.String(20), nullable=False, server_default='Active'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['group_id'], ['groups.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('group_id', 'payout_order', name='uq_membership_group_payout_order'),
        sa.UniqueConstraint('group_id', 'user_id', name='uq_membership_group_user'),
    )
    op.create_index('ix_group_memberships_group_id', 'group_memberships', ['group_id'])
    op.create_index('ix_group_memberships_user_id', 'group_memberships', ['user_id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('group_id', sa.String(36), nullable=False),
        sa.Column('cycle_number', sa.Integer(), nullable=False),
        sa.Column('amount', sa.DECIMAL(18, 2), nullable=False),
        sa.Column('fee', sa.DECIMAL(18, 2), nullable=False, server_default='0.00',
                  comment='Processor fee of the last attempt'),
        sa.Column('status', sa.String(20), nullable=False, server_default='Pending'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('external_ref', sa.String(255), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['group_id'], ['groups.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('user_id', 'group_id', 'cycle_number', name='uq_payment_user_group_cycle'),
    )
    op.create_index('ix_payments_external_ref', 'payments', ['external_ref'], unique=True)
    op.create_index('idx_payment_group_cycle', 'payments', ['group_id', 'cycle_number'])
    op.create_index('idx_payment_status_retry', 'payments', ['status', 'retry_count'])

    op.create_table(
        'payouts',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('group_id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('cycle_number', sa.Integer(), nullable=False),
        sa.Column('payout_order', sa.Integer(), nullable=False),
        sa.Column('amount', sa.DECIMAL(18, 2), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='Pending'),
        sa.Column('external_ref', sa.String(255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['group_id'], ['groups.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('group_id', 'cycle_number', name='uq_payout_group_cycle'),
    )
    op.create_index('ix_payouts_group_id', 'payouts', ['group_id'])
    op.create_index('ix_payouts_user_id', 'payouts', ['user_id'])

    op.create_table(
        'group_cycles',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('group_id', sa.String(36), nullable=False),
        sa.Column('cycle_number', sa.Integer(), nullable=False),
        sa.Column('payee_user_id', sa.String(36), nullable=False),
        sa.Column('total_amount', sa.DECIMAL(18, 2), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('successful_payments', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_payments', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pending_payments', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_members', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cycle_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['group_id'], ['groups.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['payee_user_id'], ['users.id'], ondelete='RESTRICT'),
        sa.UniqueConstraint('group_id', 'cycle_number', name='uq_group_cycle_number'),
    )
    op.create_index('ix_group_cycles_group_id', 'group_cycles', ['group_id'])

    op.create_table(
        'transactions',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('group_id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('payment_id', sa.String(36), nullable=True),
        sa.Column('payout_id', sa.String(36), nullable=True),
        sa.Column('cycle_number', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(10), nullable=False),
        sa.Column('amount', sa.DECIMAL(18, 2), nullable=False),
        sa.Column('fee', sa.DECIMAL(18, 2), nullable=False, server_default='0.00'),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('external_ref', sa.String(255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['group_id'], ['groups.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['payout_id'], ['payouts.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_transactions_group_id', 'transactions', ['group_id'])
    op.create_index('ix_transactions_user_id', 'transactions', ['user_id'])


def downgrade() -> None:
    """Drop the cycle engine schema."""
    op.drop_table('transactions')
    op.drop_table('group_cycles')
    op.drop_table('payouts')
    op.drop_table('payments')
    op.drop_table('group_memberships')
    op.drop_table('groups')
    op.drop_table('users')
