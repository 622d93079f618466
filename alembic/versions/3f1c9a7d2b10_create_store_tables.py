"""create_store_tables

Revision ID: 3f1c9a7d2b10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f1c9a7d2b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONB = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

return_time_type_enum = sa.Enum(
    'hours', 'days', 'weeks', name='store_return_time_type_enum'
)
delivery_option_enum = sa.Enum('shipping', 'pickup', name='store_delivery_option_enum')
payment_status_enum = sa.Enum(
    'pending', 'paid', 'failed', 'unpaid', name='store_payment_status_enum'
)
order_status_enum = sa.Enum(
    'pending', 'confirmed', 'shipped', 'ready_for_pickup', 'delivered',
    'picked_up', 'cancelled',
    name='store_order_status_enum',
)
transaction_status_enum = sa.Enum(
    'pending', 'paid', 'failed', 'amount_mismatch',
    name='store_payment_transaction_status_enum',
)


def upgrade() -> None:
    """Upgrade schema - Create catalog, cart, order and payment log tables."""

    # Create products table
    op.create_table(
        'store_products',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('original_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('stock_quantity', sa.Integer(), nullable=True),
        sa.Column('in_stock', sa.Boolean(), nullable=False),
        sa.Column('return_time_type', return_time_type_enum, server_default='days', nullable=False),
        sa.Column('return_time_value', sa.Integer(), server_default='3', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            'stock_quantity IS NULL OR stock_quantity >= 0',
            name='ck_store_products_non_negative_stock',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_store_products'),
    )

    # Create product variants table
    op.create_table(
        'store_product_variants',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('product_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('sku', sa.String(length=100), nullable=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=True),
        sa.Column('primary_attribute', sa.String(length=100), nullable=True),
        sa.Column('primary_values', JSONB, nullable=True),
        sa.Column('multi_values', JSONB, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ['product_id'], ['store_products.id'],
            name='fk_store_product_variants_product_id_store_products',
            ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_store_product_variants'),
    )
    op.create_index(
        'ix_store_product_variants_product_id', 'store_product_variants', ['product_id']
    )

    # Create cart items table
    op.create_table(
        'store_cart_items',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('product_id', sa.Uuid(), nullable=False),
        sa.Column('variant_id', sa.String(length=255), server_default='default', nullable=False),
        sa.Column('variant_attributes', JSONB, nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('applied_discount', sa.Numeric(12, 2), server_default='0', nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('quantity > 0', name='ck_store_cart_items_positive_quantity'),
        sa.ForeignKeyConstraint(
            ['product_id'], ['store_products.id'],
            name='fk_store_cart_items_product_id_store_products',
            ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_store_cart_items'),
        sa.UniqueConstraint(
            'user_id', 'product_id', 'variant_id', name='uq_cart_user_product_variant'
        ),
    )
    op.create_index('ix_store_cart_items_user_id', 'store_cart_items', ['user_id'])

    # Create orders table
    op.create_table(
        'store_orders',
        sa.Column('id', sa.String(length=40), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=True),
        sa.Column('reference_id', sa.String(length=64), nullable=False),
        sa.Column('pickup_id', sa.String(length=64), nullable=False),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('shipping_address', JSONB, nullable=True),
        sa.Column('delivery_option', delivery_option_enum, server_default='shipping', nullable=False),
        sa.Column('payment_method', sa.String(length=50), nullable=True),
        sa.Column('payment_id', sa.String(length=255), nullable=True),
        sa.Column('payment_status', payment_status_enum, server_default='pending', nullable=False),
        sa.Column('payment_timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('status', order_status_enum, server_default='pending', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_store_orders'),
        sa.UniqueConstraint('pickup_id', name='uq_store_orders_pickup_id'),
    )
    op.create_index('ix_store_orders_user_id', 'store_orders', ['user_id'])
    op.create_index(
        'ix_store_orders_reference_id', 'store_orders', ['reference_id'], unique=True
    )
    op.create_index('ix_store_orders_payment_status', 'store_orders', ['payment_status'])
    op.create_index(
        'ix_store_orders_payment_status_created_at',
        'store_orders',
        ['payment_status', 'created_at'],
    )

    # Create order items table
    op.create_table(
        'store_order_items',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.String(length=40), nullable=False),
        sa.Column('product_id', sa.Uuid(), nullable=False),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('variant_id', sa.String(length=255), nullable=False),
        sa.Column('variant_attributes', JSONB, nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('applied_discount', sa.Numeric(12, 2), server_default='0', nullable=True),
        sa.Column('total_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('quantity > 0', name='ck_store_order_items_positive_quantity'),
        sa.ForeignKeyConstraint(
            ['order_id'], ['store_orders.id'],
            name='fk_store_order_items_order_id_store_orders',
            ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_store_order_items'),
    )
    op.create_index('ix_store_order_items_order_id', 'store_order_items', ['order_id'])
    op.create_index('ix_store_order_items_product_id', 'store_order_items', ['product_id'])

    # Create payment transactions table
    op.create_table(
        'store_payment_transactions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.String(length=40), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=True),
        sa.Column('payment_id', sa.String(length=255), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', transaction_status_enum, nullable=False),
        sa.Column('method', sa.String(length=50), nullable=True),
        sa.Column('source', sa.String(length=20), nullable=False),
        sa.Column('details', JSONB, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_store_payment_transactions'),
    )
    op.create_index(
        'ix_store_payment_transactions_order_id',
        'store_payment_transactions',
        ['order_id'],
    )


def downgrade() -> None:
    """Downgrade schema - Drop store tables and enums."""
    op.drop_table('store_payment_transactions')
    op.drop_table('store_order_items')
    op.drop_table('store_orders')
    op.drop_table('store_cart_items')
    op.drop_table('store_product_variants')
    op.drop_table('store_products')

    bind = op.get_bind()
    for enum_type in (
        transaction_status_enum,
        order_status_enum,
        payment_status_enum,
        delivery_option_enum,
        return_time_type_enum,
    ):
        enum_type.drop(bind, checkfirst=True)
