"""Initial schema

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


pricing_model = postgresql.ENUM('free', 'one_time', name='pricingmodel', create_type=False)
confirmation_status = postgresql.ENUM('preconfirmed', 'confirmed', 'revoked', name='confirmationstatus', create_type=False)
transaction_status = postgresql.ENUM('pending', 'confirmed', 'failed', name='transactionstatus', create_type=False)
distribution_status = postgresql.ENUM('computed', 'paid', name='distributionstatus', create_type=False)
payout_status = postgresql.ENUM('pending', 'paid', name='payoutstatus', create_type=False)


def upgrade() -> None:
    # Create enum types
    op.execute("CREATE TYPE pricingmodel AS ENUM ('free', 'one_time')")
    op.execute("CREATE TYPE confirmationstatus AS ENUM ('preconfirmed', 'confirmed', 'revoked')")
    op.execute("CREATE TYPE transactionstatus AS ENUM ('pending', 'confirmed', 'failed')")
    op.execute("CREATE TYPE distributionstatus AS ENUM ('computed', 'paid')")
    op.execute("CREATE TYPE payoutstatus AS ENUM ('pending', 'paid')")

    # Sellers table
    op.create_table(
        'sellers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('display_name', sa.String(255), nullable=False),
        sa.Column('payout_address', sa.String(42), nullable=False),
        sa.Column('is_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
    )

    # Items table
    op.create_table(
        'items',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('slug', sa.String(255), nullable=False),
        sa.Column('seller_id', sa.String(36), sa.ForeignKey('sellers.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('pricing_model', pricing_model, nullable=False, server_default='one_time'),
        sa.Column('price', sa.Numeric(18, 6), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(16), nullable=False, server_default='USDC'),
        sa.Column('payout_address', sa.String(42), nullable=False),
        sa.Column('is_published', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('purchase_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_items_slug', 'items', ['slug'], unique=True)
    op.create_index('ix_items_seller_id', 'items', ['seller_id'])

    # Entitlements table
    op.create_table(
        'entitlements',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('item_id', sa.String(36), sa.ForeignKey('items.id', ondelete='CASCADE'), nullable=False),
        sa.Column('buyer_address', sa.String(42), nullable=False),
        sa.Column('token', sa.String(128), nullable=False, unique=True),
        sa.Column('pricing_model', pricing_model, nullable=False),
        sa.Column('amount_paid', sa.Numeric(18, 6), nullable=False),
        sa.Column('currency', sa.String(16), nullable=False, server_default='USDC'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('confirmation_status', confirmation_status, nullable=False, server_default='confirmed'),
        sa.Column('verification_deadline', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
    )
    # One active entitlement per (item, buyer)
    op.create_index(
        'uq_entitlements_active_item_buyer',
        'entitlements',
        ['item_id', 'buyer_address'],
        unique=True,
        postgresql_where=sa.text('is_active'),
    )
    op.create_index('ix_entitlements_buyer', 'entitlements', ['buyer_address'])
    op.create_index(
        'ix_entitlements_pending_verification',
        'entitlements',
        ['verification_deadline'],
        postgresql_where=sa.text("confirmation_status = 'preconfirmed'"),
    )

    # Transactions table
    op.create_table(
        'transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('entitlement_id', sa.String(36), sa.ForeignKey('entitlements.id', ondelete='CASCADE'),
                  nullable=False, unique=True),
        sa.Column('tx_hash', sa.String(66), nullable=False, unique=True),
        sa.Column('from_address', sa.String(42), nullable=False),
        sa.Column('to_address', sa.String(42), nullable=False),
        sa.Column('amount', sa.Numeric(18, 6), nullable=False),
        sa.Column('currency', sa.String(16), nullable=False, server_default='USDC'),
        sa.Column('platform_fee', sa.Numeric(18, 6), nullable=False),
        sa.Column('seller_amount', sa.Numeric(18, 6), nullable=False),
        sa.Column('status', transaction_status, nullable=False, server_default='pending'),
        sa.Column('block_number', sa.BigInteger(), nullable=True),
        sa.Column('confirmations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_transactions_status_created', 'transactions', ['status', 'created_at'])

    # Earn distributions table
    op.create_table(
        'earn_distributions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False, unique=True),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('total_platform_fees', sa.Numeric(18, 6), nullable=False, server_default='0'),
        sa.Column('earn_pool', sa.Numeric(18, 6), nullable=False, server_default='0'),
        sa.Column('status', distribution_status, nullable=False, server_default='computed'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Earn distribution shares table
    op.create_table(
        'earn_distribution_shares',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('distribution_id', sa.String(36), sa.ForeignKey('earn_distributions.id', ondelete='CASCADE'),
                  nullable=False),
        sa.Column('seller_id', sa.String(36), sa.ForeignKey('sellers.id'), nullable=False),
        sa.Column('seller_platform_fees', sa.Numeric(18, 6), nullable=False),
        sa.Column('share_percent', sa.Numeric(7, 4), nullable=False),
        sa.Column('earn_amount', sa.Numeric(18, 6), nullable=False),
        sa.Column('rank', sa.Integer(), nullable=False),
        sa.Column('payout_address', sa.String(42), nullable=True),
        sa.Column('payout_status', payout_status, nullable=False, server_default='pending'),
        sa.Column('payout_tx_hash', sa.String(66), nullable=True),
        sa.Column('payout_log_index', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        'uq_earn_shares_distribution_seller',
        'earn_distribution_shares',
        ['distribution_id', 'seller_id'],
        unique=True,
    )
    op.create_index('ix_earn_shares_payout_status', 'earn_distribution_shares', ['payout_status'])


def downgrade() -> None:
    op.drop_table('earn_distribution_shares')
    op.drop_table('earn_distributions')
    op.drop_table('transactions')
    op.drop_table('entitlements')
    op.drop_table('items')
    op.drop_table('sellers')

    op.execute("DROP TYPE payoutstatus")
    op.execute("DROP TYPE distributionstatus")
    op.execute("DROP TYPE transactionstatus")
    op.execute("DROP TYPE confirmationstatus")
    op.execute("DROP TYPE pricingmodel")
