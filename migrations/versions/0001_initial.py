"""Initial schema for the settlement core

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None

HD_CHAINS = ('solana', 'ethereum', 'base')


def upgrade():
    # payments
    op.create_table(
        'payments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=True),
        sa.Column('subject_id', sa.Uuid(), nullable=True),
        sa.Column('invoice_id', sa.Uuid(), nullable=True),
        sa.Column('purpose', sa.String(32), nullable=False),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('support_amount_minor', sa.BigInteger(), nullable=True),
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('chain', sa.String(32), nullable=True),
        sa.Column('provider_ref', sa.String(255), nullable=True),
        sa.Column('submitted_ref', sa.String(255), nullable=True),
        sa.Column('received_amount_minor', sa.BigInteger(), nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default=sa.text("'pending'")),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('confirmed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('claimed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('stalled_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('sweep_eligible_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('sweep_started_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('swept_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('treasury_tx_hash', sa.String(255), nullable=True),
        sa.Column('destination_address', sa.String(128), nullable=True),
        sa.Column('derivation_index', sa.BigInteger(), nullable=True),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('buyer_contact', sa.String(320), nullable=True),
        sa.CheckConstraint('amount_minor > 0', name='ck_payments_amount_positive'),
    )
    # a provider reference can settle at most one payment
    op.create_index('ux_payments_provider_ref', 'payments', ['provider_ref'], unique=True, postgresql_where=sa.text('provider_ref IS NOT NULL'))
    op.create_index('idx_payments_status_created_at', 'payments', ['status', 'created_at'])
    op.create_index('idx_payments_destination_address', 'payments', ['destination_address'])
    op.create_index('idx_payments_user', 'payments', ['user_id'])
    op.create_index('idx_payments_invoice', 'payments', ['invoice_id'])

    # derivation_counters
    counters = op.create_table(
        'derivation_counters',
        sa.Column('chain', sa.String(32), primary_key=True),
        sa.Column('next_index', sa.BigInteger(), nullable=False, server_default=sa.text('0')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.bulk_insert(counters, [{'chain': chain, 'next_index': 0} for chain in HD_CHAINS])

    # invoices
    op.create_table(
        'invoices',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('invoice_number', sa.String(50), nullable=True),
        sa.Column('user_id', sa.Uuid(), nullable=True),
        sa.Column('subject_id', sa.Uuid(), nullable=True),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('amount_minor_at_settlement', sa.BigInteger(), nullable=True),
        sa.Column('state', sa.String(32), nullable=False, server_default=sa.text("'CREATED'")),
        sa.Column('issued_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('idx_invoices_state_expires_at', 'invoices', ['state', 'expires_at'])

    # refund_requests
    op.create_table(
        'refund_requests',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('payment_id', sa.Uuid(), nullable=False),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('state', sa.String(32), nullable=False, server_default=sa.text("'REQUESTED'")),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('idx_refund_requests_state', 'refund_requests', ['state'])

    # webhook_queue
    op.create_table(
        'webhook_queue',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('payment_id', sa.Uuid(), nullable=True),
        sa.Column('event_type', sa.String(64), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('headers', sa.JSON(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default=sa.text("'pending'")),
        sa.Column('idempotency_key', sa.String(128), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('next_attempt_at', sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index('idx_webhook_queue_status', 'webhook_queue', ['status'])
    op.create_index('ux_webhook_queue_idempotency_key', 'webhook_queue', ['idempotency_key'], unique=True)

    # audit_logs
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('actor', sa.String(64), nullable=True),
        sa.Column('action', sa.String(64), nullable=False),
        sa.Column('payment_id', sa.Uuid(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('idx_audit_logs_created_at', 'audit_logs', ['created_at'])
    op.create_index('idx_audit_logs_payment', 'audit_logs', ['payment_id'])

    # Append-only trigger function
    op.execute("""
    CREATE OR REPLACE FUNCTION prevent_update_delete() RETURNS trigger LANGUAGE plpgsql AS $$
    BEGIN
      RAISE EXCEPTION 'append-only table: updates/deletes are not allowed';
      RETURN NULL;
    END;
    $$;
    """)
    op.execute("CREATE TRIGGER trg_audit_prevent_update_delete BEFORE UPDATE OR DELETE ON audit_logs FOR EACH ROW EXECUTE FUNCTION prevent_update_delete();")


def downgrade():
    op.execute("DROP TRIGGER IF EXISTS trg_audit_prevent_update_delete ON audit_logs;")
    op.execute("DROP FUNCTION IF EXISTS prevent_update_delete();")

    op.drop_index('idx_audit_logs_payment', table_name='audit_logs')
    op.drop_index('idx_audit_logs_created_at', table_name='audit_logs')
    op.drop_table('audit_logs')

    op.drop_index('ux_webhook_queue_idempotency_key', table_name='webhook_queue')
    op.drop_index('idx_webhook_queue_status', table_name='webhook_queue')
    op.drop_table('webhook_queue')

    op.drop_index('idx_refund_requests_state', table_name='refund_requests')
    op.drop_table('refund_requests')

    op.drop_index('idx_invoices_state_expires_at', table_name='invoices')
    op.drop_table('invoices')

    op.drop_table('derivation_counters')

    op.drop_index('idx_payments_invoice', table_name='payments')
    op.drop_index('idx_payments_user', table_name='payments')
    op.drop_index('idx_payments_destination_address', table_name='payments')
    op.drop_index('idx_payments_status_created_at', table_name='payments')
    op.drop_index('ux_payments_provider_ref', table_name='payments')
    op.drop_table('payments')
