"""001 Initial ledger schema

Revision ID: 001_initial_ledger_schema
Revises:
Create Date: 2026-10-19

Customers, bookings, payments, refunds, booking events, discount codes and
the webhook event log. Amounts are integer cents.
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial_ledger_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'customers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('first_name', sa.String(100), nullable=True),
        sa.Column('last_name', sa.String(100), nullable=True),
        sa.Column('phone', sa.String(50), nullable=True),
        sa.Column('marketing_opt_in', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('vault_customer_ref', sa.String(255), nullable=True),
        sa.Column('crm_contact_ref', sa.String(255), nullable=True),
        sa.Column('used_welcome_offer', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_seen_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_customer_vault_ref', 'customers', ['vault_customer_ref'])

    op.create_table(
        'bookings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('hold_id', sa.String(255), nullable=False, unique=True),
        sa.Column('external_scheduling_id', sa.String(255), nullable=True),
        sa.Column('customer_id', sa.String(36),
                  sa.ForeignKey('customers.id', ondelete='SET NULL'), nullable=True),
        sa.Column('service_id', sa.String(255), nullable=True),
        sa.Column('service_name', sa.String(255), nullable=True),
        sa.Column('scheduled_start', sa.DateTime(), nullable=True),
        sa.Column('scheduled_end', sa.DateTime(), nullable=True),
        sa.Column('timezone', sa.String(64), nullable=True),
        sa.Column('client_name', sa.String(255), nullable=True),
        sa.Column('client_email', sa.String(255), nullable=True),
        sa.Column('client_phone', sa.String(50), nullable=True),
        sa.Column('payment_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('payment_type', sa.String(20), nullable=False, server_default='full'),
        sa.Column('payment_provider', sa.String(20), nullable=True),
        sa.Column('external_payment_reference', sa.String(255), nullable=True),
        sa.Column('auth_code', sa.String(64), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('deposit_amount_cents', sa.Integer(), nullable=True),
        sa.Column('final_amount_cents', sa.Integer(), nullable=True),
        sa.Column('discount_code', sa.String(64), nullable=True),
        sa.Column('discount_amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('scheduling_sync_status', sa.String(20), nullable=True),
        sa.Column('scheduling_sync_error', sa.Text(), nullable=True),
        sa.Column('scheduling_synced_at', sa.DateTime(), nullable=True),
        sa.Column('calendar_event_id', sa.String(255), nullable=True),
        sa.Column('calendar_sync_status', sa.String(20), nullable=True),
        sa.Column('calendar_sync_error', sa.Text(), nullable=True),
        sa.Column('crm_sync_status', sa.String(20), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_by', sa.String(20), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column('provider_payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_booking_payment_reference', 'bookings', ['external_payment_reference'])
    op.create_index('ix_booking_customer', 'bookings', ['customer_id'])
    op.create_index('ix_booking_payment_status', 'bookings', ['payment_status'])

    op.create_table(
        'payments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36),
                  sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False, server_default='stripe'),
        sa.Column('external_charge_reference', sa.String(255), nullable=False),
        sa.Column('auth_code', sa.String(64), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('refunded_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='usd'),
        sa.Column('status', sa.String(30), nullable=False, server_default='succeeded'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('booking_id', 'external_charge_reference', name='uq_payment_booking_charge'),
        sa.CheckConstraint('amount_cents >= 0', name='ck_payment_amount_non_negative'),
        sa.CheckConstraint('refunded_cents >= 0', name='ck_payment_refunded_non_negative'),
        sa.CheckConstraint('refunded_cents <= amount_cents', name='ck_payment_refund_cap'),
    )
    op.create_index('ix_payment_charge_reference', 'payments', ['external_charge_reference'])

    op.create_table(
        'refunds',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('payment_id', sa.String(36),
                  sa.ForeignKey('payments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('booking_id', sa.String(36),
                  sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('external_refund_reference', sa.String(255), nullable=False, unique=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('requested_amount_cents', sa.Integer(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='succeeded'),
        sa.Column('request_key', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.CheckConstraint('amount_cents > 0', name='ck_refund_amount_positive'),
    )
    op.create_index('ix_refund_booking', 'refunds', ['booking_id'])
    op.create_index('ix_refund_request_key', 'refunds', ['request_key'])

    op.create_table(
        'booking_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36),
                  sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_booking_event_booking_type', 'booking_events', ['booking_id', 'type'])

    op.create_table(
        'discount_codes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('code', sa.String(64), nullable=False, unique=True),
        sa.Column('scope', sa.String(20), nullable=False, server_default='one_time'),
        sa.Column('discount_type', sa.String(20), nullable=False, server_default='percent'),
        sa.Column('discount_value', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('customer_id', sa.String(36),
                  sa.ForeignKey('customers.id', ondelete='CASCADE'), nullable=True),
        sa.Column('used', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('used_at', sa.DateTime(), nullable=True),
        sa.Column('used_by_booking_id', sa.String(36), nullable=True),
        sa.Column('usage_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_discount_code_customer', 'discount_codes', ['customer_id'])

    op.create_table(
        'webhook_event_logs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(50), nullable=False, server_default='stripe'),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=True),
        sa.Column('external_id', sa.String(255), nullable=True),
        sa.Column('payload_json', sa.Text(), nullable=False),
        sa.Column('status', sa.String(20), server_default='received'),
        sa.Column('attempts', sa.Integer(), server_default='0'),
        sa.Column('error_code', sa.String(20), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('result_action', sa.String(50), nullable=True),
        sa.Column('result_booking_id', sa.String(36), nullable=True),
        sa.Column('received_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('provider', 'event_id', name='uq_webhook_event_provider_event'),
    )
    op.create_index('ix_webhook_event_status', 'webhook_event_logs', ['status', 'received_at'])
    op.create_index('ix_webhook_event_external', 'webhook_event_logs', ['provider', 'external_id'])


def downgrade():
    op.drop_table('webhook_event_logs')
    op.drop_table('discount_codes')
    op.drop_table('booking_events')
    op.drop_table('refunds')
    op.drop_table('payments')
    op.drop_table('bookings')
    op.drop_table('customers')
