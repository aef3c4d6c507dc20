"""Create bookings, booking_timeline, payments and payment_refunds.

Revision ID: 0001_create_bookings_payments
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_create_bookings_payments'
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_STATUS_SQL = "status IN ('pending', 'processing', 'completed', 'partial_refund')"


def upgrade() -> None:
    op.create_table(
        'bookings',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('booking_number', sa.String(32), nullable=False, unique=True),
        sa.Column('customer_id', sa.Uuid(), nullable=False, index=True),
        sa.Column('provider_id', sa.Uuid(), nullable=False, index=True),
        sa.Column('service_id', sa.Uuid(), nullable=False),
        sa.Column('service_title', sa.String(200), nullable=False),
        sa.Column('service_description', sa.Text(), nullable=True),
        sa.Column('service_category', sa.String(100), nullable=True),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column('time_window_start', sa.String(5), nullable=True),
        sa.Column('time_window_end', sa.String(5), nullable=True),
        sa.Column('time_zone', sa.String(64), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, index=True),
        sa.Column('location', sa.JSON(), nullable=True),
        sa.Column('estimated_cost', sa.Numeric(10, 2), nullable=False),
        sa.Column('final_cost', sa.Numeric(10, 2), nullable=True),
        sa.Column('discount_amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('discount_reason', sa.String(200), nullable=True),
        sa.Column('tax_amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('tax_percentage', sa.Numeric(5, 2), nullable=True),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        # Payment projection
        sa.Column('payment_method', sa.String(30), nullable=False),
        sa.Column('payment_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('payment_transaction_id', sa.String(255), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refund_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('cancelled_by', sa.Uuid(), nullable=True),
        sa.Column('cancellation_reason', sa.String(500), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refund_eligible', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('previous_scheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reschedule_reason', sa.String(500), nullable=True),
        sa.Column('rescheduled_by', sa.Uuid(), nullable=True),
        sa.Column('rescheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rescheduled_from_id', sa.Uuid(), sa.ForeignKey('bookings.id'), nullable=True),
        sa.Column('rescheduled_to_id', sa.Uuid(), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('work_performed', sa.Text(), nullable=True),
        sa.Column('completion_notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
    )

    op.create_table(
        'booking_timeline',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('booking_id', sa.Uuid(),
                  sa.ForeignKey('bookings.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('is_status_change', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('note', sa.String(500), nullable=False),
        sa.Column('actor_id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('booking_id', 'sequence', name='uq_booking_timeline_sequence'),
    )

    op.create_table(
        'payments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('payment_id', sa.String(32), nullable=False, unique=True),
        sa.Column('booking_id', sa.Uuid(), sa.ForeignKey('bookings.id'),
                  nullable=False, index=True),
        sa.Column('customer_id', sa.Uuid(), nullable=False, index=True),
        sa.Column('provider_id', sa.Uuid(), nullable=False, index=True),
        sa.Column('gross_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('platform_fee', sa.Numeric(10, 2), nullable=False),
        sa.Column('processing_fee', sa.Numeric(10, 2), nullable=False),
        sa.Column('total_fees', sa.Numeric(10, 2), nullable=False),
        sa.Column('net_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('method', sa.String(30), nullable=False),
        sa.Column('method_details', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, index=True),
        sa.Column('gateway_transaction_id', sa.String(255), nullable=True, index=True),
        sa.Column('internal_transaction_id', sa.String(64), nullable=True),
        sa.Column('initiated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('processing_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_total', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('refund_reason', sa.String(500), nullable=True),
        sa.Column('refund_initiated_by', sa.Uuid(), nullable=True),
        sa.Column('refund_id', sa.String(64), nullable=True),
        sa.Column('gateway_response', sa.JSON(), nullable=True),
        sa.Column('error_code', sa.String(64), nullable=True),
        sa.Column('error_message', sa.String(500), nullable=True),
        sa.Column('request_metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
    )

    # At most one active payment per booking
    op.create_index(
        'uq_payments_active_booking',
        'payments',
        ['booking_id'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_STATUS_SQL),
    )

    op.create_table(
        'payment_refunds',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('payment_id', sa.Uuid(),
                  sa.ForeignKey('payments.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('refund_id', sa.String(64), nullable=False, unique=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('reason', sa.String(500), nullable=True),
        sa.Column('initiated_by', sa.Uuid(), nullable=False),
        sa.Column('resulting_status', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('payment_refunds')
    op.drop_index('uq_payments_active_booking', table_name='payments')
    op.drop_table('payments')
    op.drop_table('booking_timeline')
    op.drop_table('bookings')
