"""Initial migration - create gateway transaction, config, audit, reversal and fiscalization tables

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-16

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
    op.create_table(
        'gateway_transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('gateway', sa.String(20), nullable=False),
        sa.Column('order_id', sa.String(64), nullable=False, unique=True),
        sa.Column('transaction_id', sa.String(36), nullable=False),
        sa.Column('gateway_transaction_id', sa.String(255), nullable=True),
        sa.Column('gateway_payment_id', sa.String(255), nullable=True),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('amount_major', sa.Numeric(15, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='UZS'),
        sa.Column('cashbox_code', sa.String(100), nullable=True),
        sa.Column('request_payload_json', sa.Text(), nullable=False),
        sa.Column('response_payload_json', sa.Text(), nullable=True),
        sa.Column('auth_header', sa.Text(), nullable=False),
        sa.Column('auth_timestamp', sa.BigInteger(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('error_code', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('timeout_occurred', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('employee_id', sa.String(50), nullable=False),
        sa.Column('terminal_id', sa.String(100), nullable=False),
        sa.Column('pos_sale_id', sa.String(36), nullable=True),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('initiated_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_gateway_transactions_gateway_payment_id', 'gateway_transactions', ['gateway_payment_id'])
    op.create_index('ix_gateway_transactions_status', 'gateway_transactions', ['status'])
    op.create_index('ix_gateway_transactions_employee_id', 'gateway_transactions', ['employee_id'])
    op.create_index('ix_gateway_transactions_terminal_id', 'gateway_transactions', ['terminal_id'])
    op.create_index('ix_gateway_transactions_initiated_at', 'gateway_transactions', ['initiated_at'])
    op.create_index('ix_gateway_transactions_gateway', 'gateway_transactions', ['gateway'])

    op.create_table(
        'gateway_config',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('gateway', sa.String(20), nullable=False),
        sa.Column('key', sa.String(100), nullable=False),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_encrypted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('gateway', 'key', name='uq_gateway_config_gateway_key'),
    )
    op.create_index('ix_gateway_config_active', 'gateway_config', ['gateway', 'is_active'])

    op.create_table(
        'gateway_audit_log',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column(
            'transaction_id',
            sa.String(36),
            sa.ForeignKey('gateway_transactions.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('gateway', sa.String(20), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('details_json', sa.Text(), nullable=True),
        sa.Column('employee_id', sa.String(50), nullable=True),
        sa.Column('terminal_id', sa.String(100), nullable=True),
        sa.Column('http_method', sa.String(10), nullable=True),
        sa.Column('endpoint', sa.String(255), nullable=True),
        sa.Column('response_status', sa.Integer(), nullable=True),
        sa.Column('response_time_ms', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_gateway_audit_log_transaction_id', 'gateway_audit_log', ['transaction_id'])
    op.create_index('ix_gateway_audit_log_action', 'gateway_audit_log', ['action'])
    op.create_index('ix_gateway_audit_log_created_at', 'gateway_audit_log', ['created_at'])

    op.create_table(
        'gateway_reversals',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column(
            'transaction_id',
            sa.String(36),
            sa.ForeignKey('gateway_transactions.id', ondelete='CASCADE'),
            nullable=False,
            unique=True,
        ),
        sa.Column('original_order_id', sa.String(64), nullable=False),
        sa.Column('gateway_payment_id', sa.String(255), nullable=True),
        sa.Column('request_payload_json', sa.Text(), nullable=False),
        sa.Column('response_payload_json', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('error_code', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('requested_by', sa.String(50), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('requested_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_gateway_reversals_original_order_id', 'gateway_reversals', ['original_order_id'])

    op.create_table(
        'gateway_fiscalizations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column(
            'transaction_id',
            sa.String(36),
            sa.ForeignKey('gateway_transactions.id', ondelete='CASCADE'),
            nullable=False,
            unique=True,
        ),
        sa.Column('gateway_payment_id', sa.String(255), nullable=True),
        sa.Column('fiscal_url', sa.Text(), nullable=False),
        sa.Column('request_payload_json', sa.Text(), nullable=False),
        sa.Column('response_payload_json', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('error_code', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('submitted_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('gateway_fiscalizations')
    op.drop_index('ix_gateway_reversals_original_order_id', table_name='gateway_reversals')
    op.drop_table('gateway_reversals')
    op.drop_index('ix_gateway_audit_log_created_at', table_name='gateway_audit_log')
    op.drop_index('ix_gateway_audit_log_action', table_name='gateway_audit_log')
    op.drop_index('ix_gateway_audit_log_transaction_id', table_name='gateway_audit_log')
    op.drop_table('gateway_audit_log')
    op.drop_index('ix_gateway_config_active', table_name='gateway_config')
    op.drop_table('gateway_config')
    op.drop_index('ix_gateway_transactions_gateway', table_name='gateway_transactions')
    op.drop_index('ix_gateway_transactions_initiated_at', table_name='gateway_transactions')
    op.drop_index('ix_gateway_transactions_terminal_id', table_name='gateway_transactions')
    op.drop_index('ix_gateway_transactions_employee_id', table_name='gateway_transactions')
    op.drop_index('ix_gateway_transactions_status', table_name='gateway_transactions')
    op.drop_index('ix_gateway_transactions_gateway_payment_id', table_name='gateway_transactions')
    op.drop_table('gateway_transactions')
