"""reconciliation_markers

Revision ID: 0002_reconciliation_markers
Revises: 0001_create_bookings_payments
Create Date: 2026-10-18 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0002_reconciliation_markers'
down_revision = '0001_create_bookings_payments'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column('payments', sa.Column('requires_reconciliation', sa.Boolean(),
                                        nullable=False, server_default=sa.false()))
    op.add_column('payments', sa.Column('reconciled_at', sa.DateTime(timezone=True), nullable=True))
    op.create_index('ix_payments_requires_reconciliation', 'payments', ['requires_reconciliation'])

    # Backfill from the flag previously kept only in the gateway response
    op.execute(
        "UPDATE payments SET requires_reconciliation = true "
        "WHERE (gateway_response ->> 'requires_reconciliation') = 'true'"
    )

    # Refund attempts are written before the gateway call
    op.add_column('payment_refunds', sa.Column('status', sa.String(20),
                                               nullable=False, server_default='succeeded'))
    op.add_column('payment_refunds', sa.Column('reconciled_at', sa.DateTime(timezone=True), nullable=True))
    op.alter_column('payment_refunds', 'resulting_status',
                    existing_type=sa.String(20), nullable=True)
    op.create_index('ix_payment_refunds_status', 'payment_refunds', ['status'])


def downgrade() -> None:
    op.drop_index('ix_payment_refunds_status', table_name='payment_refunds')
    op.execute("DELETE FROM payment_refunds WHERE status != 'succeeded'")
    op.alter_column('payment_refunds', 'resulting_status',
                    existing_type=sa.String(20), nullable=False)
    op.drop_column('payment_refunds', 'reconciled_at')
    op.drop_column('payment_refunds', 'status')
    op.drop_index('ix_payments_requires_reconciliation', table_name='payments')
    op.drop_column('payments', 'reconciled_at')
    op.drop_column('payments', 'requires_reconciliation')
