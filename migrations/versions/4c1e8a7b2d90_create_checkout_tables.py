"""Create orders, idempotency_claims and gateway_events tables

Revision ID: 4c1e8a7b2d90
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4c1e8a7b2d90'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('orders',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('subject_id', sa.String(length=255), nullable=False),
        sa.Column('product_id', sa.String(length=100), nullable=False),
        sa.Column('plan', sa.String(length=100), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('external_session_id', sa.String(length=255), nullable=True),
        sa.Column('external_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('external_customer_id', sa.String(length=255), nullable=True),
        sa.Column('checkout_url', sa.Text(), nullable=True),
        sa.Column('gateway_error_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('payment_method', sa.String(length=50), nullable=True),
        sa.Column('platform', sa.String(length=20), nullable=True),
        sa.Column('client_ref', sa.String(length=255), nullable=True),
        sa.Column('client_idempotency_key', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_session_id'),
        sa.UniqueConstraint('external_subscription_id')
    )
    with op.batch_alter_table('orders', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_orders_subject_id'), ['subject_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_orders_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_orders_external_customer_id'), ['external_customer_id'], unique=False)

    op.create_table('idempotency_claims',
        sa.Column('key', sa.String(length=64), nullable=False),
        sa.Column('subject_id', sa.String(length=255), nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.PrimaryKeyConstraint('key')
    )
    with op.batch_alter_table('idempotency_claims', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_idempotency_claims_subject_id'), ['subject_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_idempotency_claims_expires_at'), ['expires_at'], unique=False)

    op.create_table('gateway_events',
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=255), nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=True),
        sa.Column('outcome', sa.String(length=20), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('event_id')
    )
    with op.batch_alter_table('gateway_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_gateway_events_event_type'), ['event_type'], unique=False)
        batch_op.create_index(batch_op.f('ix_gateway_events_order_id'), ['order_id'], unique=False)


def downgrade():
    with op.batch_alter_table('gateway_events', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_gateway_events_order_id'))
        batch_op.drop_index(batch_op.f('ix_gateway_events_event_type'))
    op.drop_table('gateway_events')
    with op.batch_alter_table('idempotency_claims', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_idempotency_claims_expires_at'))
        batch_op.drop_index(batch_op.f('ix_idempotency_claims_subject_id'))
    op.drop_table('idempotency_claims')
    with op.batch_alter_table('orders', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_orders_external_customer_id'))
        batch_op.drop_index(batch_op.f('ix_orders_status'))
        batch_op.drop_index(batch_op.f('ix_orders_subject_id'))
    op.drop_table('orders')
