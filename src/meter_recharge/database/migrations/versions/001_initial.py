"""Initial migration - create transactions, webhook_logs, and recovery_runs tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create transactions table
    op.create_table(
        'transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('reference', sa.String(100), nullable=False, unique=True),
        sa.Column('gateway', sa.String(20), nullable=False),
        sa.Column('meter_id', sa.String(50), nullable=False),
        sa.Column('amount_minor', sa.Integer(), nullable=False),
        sa.Column('confirmed_amount_minor', sa.Integer(), nullable=True),
        sa.Column('gateway_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('buy_type', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('sale_id', sa.String(64), nullable=True, unique=True),
        sa.Column('credit_status', sa.String(20), nullable=False, server_default='not_attempted'),
        sa.Column('pending_sale_id', sa.String(64), nullable=True),
        sa.Column('credit_claimed_at', sa.DateTime(), nullable=True),
        sa.Column('credit_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('customer_phone', sa.String(30), nullable=True),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    # Create indexes for transactions
    op.create_index('ix_transactions_gateway_status', 'transactions', ['gateway_status'])
    op.create_index('ix_transactions_created_at', 'transactions', ['created_at'])
    op.create_index('ix_transactions_meter_id', 'transactions', ['meter_id'])

    # Create webhook_logs table
    op.create_table(
        'webhook_logs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('gateway', sa.String(20), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('reference', sa.String(100), nullable=True),
        sa.Column('payload_json', sa.Text(), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    # Create indexes for webhook_logs
    op.create_index('ix_webhook_logs_reference', 'webhook_logs', ['reference'])
    op.create_index('ix_webhook_logs_created_at', 'webhook_logs', ['created_at'])

    # Create recovery_runs table
    op.create_table(
        'recovery_runs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('triggered_by', sa.String(20), nullable=False, server_default='admin'),
        sa.Column('since', sa.DateTime(), nullable=True),
        sa.Column('until', sa.DateTime(), nullable=True),
        sa.Column('candidates', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('credited', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('skipped', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
    )

    op.create_index('ix_recovery_runs_started_at', 'recovery_runs', ['started_at'])


def downgrade() -> None:
    op.drop_index('ix_recovery_runs_started_at', table_name='recovery_runs')
    op.drop_table('recovery_runs')

    op.drop_index('ix_webhook_logs_created_at', table_name='webhook_logs')
    op.drop_index('ix_webhook_logs_reference', table_name='webhook_logs')
    op.drop_table('webhook_logs')

    op.drop_index('ix_transactions_meter_id', table_name='transactions')
    op.drop_index('ix_transactions_created_at', table_name='transactions')
    op.drop_index('ix_transactions_gateway_status', table_name='transactions')
    op.drop_table('transactions')
