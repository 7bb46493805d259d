"""Create payment reconciliation tables

Revision ID: 7c2e9f41ab03
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '7c2e9f41ab03'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('users',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email')
    )
    op.create_table('purchase_transactions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('item_kind', sa.String(length=32), nullable=False),
        sa.Column('item_id', sa.String(length=64), nullable=False),
        sa.Column('artist_id', sa.String(length=64), nullable=True),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('order_id', sa.String(length=255), nullable=True),
        sa.Column('payment_id', sa.String(length=255), nullable=True),
        sa.Column('subscription_id', sa.String(length=255), nullable=True),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('invoice_number', sa.String(length=64), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('invoice_number')
    )
    op.create_index('ix_purchase_transactions_user_id', 'purchase_transactions', ['user_id'])
    op.create_index('ix_tx_provider_payment_intent', 'purchase_transactions', ['provider', 'payment_intent_id'])
    op.create_index('ix_tx_provider_order', 'purchase_transactions', ['provider', 'order_id'])
    op.create_index('ix_tx_provider_payment', 'purchase_transactions', ['provider', 'payment_id'])
    op.create_index('ix_tx_provider_subscription', 'purchase_transactions', ['provider', 'subscription_id'])

    op.create_table('user_owned_items',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('item_kind', sa.String(length=20), nullable=False),
        sa.Column('item_id', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'item_kind', 'item_id', name='uq_owned_item')
    )
    op.create_index('ix_user_owned_items_user_id', 'user_owned_items', ['user_id'])

    op.create_table('purchase_history',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('transaction_id', sa.String(length=36), nullable=False),
        sa.Column('item_kind', sa.String(length=32), nullable=False),
        sa.Column('item_id', sa.String(length=64), nullable=False),
        sa.Column('price_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('payment_ref', sa.String(length=255), nullable=True),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['transaction_id'], ['purchase_transactions.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_purchase_history_user_id', 'purchase_history', ['user_id'])

    op.create_table('artist_subscriptions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('artist_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=False),
        sa.Column('gateway', sa.String(length=20), nullable=False),
        sa.Column('external_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('transaction_id', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['transaction_id'], ['purchase_transactions.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'artist_id', name='uq_user_artist')
    )
    op.create_index('ix_artist_subscriptions_external_subscription_id', 'artist_subscriptions', ['external_subscription_id'])

    op.create_table('webhook_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=255), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'event_id', name='uq_webhook_event')
    )

    op.create_table('invoice_sequences',
        sa.Column('name', sa.String(length=50), nullable=False),
        sa.Column('value', sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint('name')
    )

    op.create_table('audit_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=True),
        sa.Column('event_id', sa.String(length=255), nullable=True),
        sa.Column('transaction_id', sa.String(length=36), nullable=True),
        sa.Column('action', sa.String(length=255), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )


def downgrade():
    op.drop_table('audit_events')
    op.drop_table('invoice_sequences')
    op.drop_table('webhook_events')
    op.drop_index('ix_artist_subscriptions_external_subscription_id', table_name='artist_subscriptions')
    op.drop_table('artist_subscriptions')
    op.drop_index('ix_purchase_history_user_id', table_name='purchase_history')
    op.drop_table('purchase_history')
    op.drop_index('ix_user_owned_items_user_id', table_name='user_owned_items')
    op.drop_table('user_owned_items')
    op.drop_index('ix_tx_provider_subscription', table_name='purchase_transactions')
    op.drop_index('ix_tx_provider_payment', table_name='purchase_transactions')
    op.drop_index('ix_tx_provider_order', table_name='purchase_transactions')
    op.drop_index('ix_tx_provider_payment_intent', table_name='purchase_transactions')
    op.drop_index('ix_purchase_transactions_user_id', table_name='purchase_transactions')
    op.drop_table('purchase_transactions')
    op.drop_table('users')
