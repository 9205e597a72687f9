"""Initial stock schema: batches, stock movements, checkout queue, orders, payment groups

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19

This migration adds:
1. product_batches (JSON product list, optimistic version column)
2. stock_movements (append-only stock change log)
3. checkout_queue_items (durable reservation queue)
4. orders and order_lines
5. payment_groups
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. PRODUCT BATCHES
    # ==========================================================================
    op.create_table('product_batches',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('products', sa.JSON(), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    # ==========================================================================
    # 2. STOCK MOVEMENTS
    # ==========================================================================
    op.create_table('stock_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('batch_id', sa.String(length=64), nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('variant_size', sa.String(length=32), nullable=True),
        sa.Column('variant_color', sa.String(length=64), nullable=True),
        sa.Column('reason', sa.String(length=16), nullable=False),
        sa.Column('change', sa.Integer(), nullable=False),
        sa.Column('previous_stock', sa.Integer(), nullable=False),
        sa.Column('new_stock', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=True),
        sa.Column('queue_item_id', sa.Integer(), nullable=True),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('stock_movements', schema=None) as batch_op:
        batch_op.create_index('ix_stock_movements_product_created', ['product_id', 'created_at'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_movements_batch_id'), ['batch_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_movements_reason'), ['reason'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_movements_order_id'), ['order_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_movements_queue_item_id'), ['queue_item_id'], unique=False)

    # ==========================================================================
    # 3. CHECKOUT QUEUE
    # ==========================================================================
    op.create_table('checkout_queue_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('batch_id', sa.String(length=64), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('variant_size', sa.String(length=32), nullable=True),
        sa.Column('variant_color', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('checkout_queue_items', schema=None) as batch_op:
        batch_op.create_index('ix_checkout_queue_status_created', ['status', 'created_at'], unique=False)
        batch_op.create_index(batch_op.f('ix_checkout_queue_items_order_id'), ['order_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_checkout_queue_items_user_id'), ['user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_checkout_queue_items_status'), ['status'], unique=False)

    # ==========================================================================
    # 4. ORDERS
    # ==========================================================================
    op.create_table('orders',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('customer_role', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('final_total', sa.Integer(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expiry_notified', sa.Boolean(), nullable=False),
        sa.Column('payment_group_id', sa.String(length=64), nullable=True),
        sa.Column('group_payment_amount', sa.Integer(), nullable=True),
        sa.Column('verification_mode', sa.String(length=16), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('orders', schema=None) as batch_op:
        batch_op.create_index('ix_orders_status_expires', ['status', 'expires_at'], unique=False)
        batch_op.create_index(batch_op.f('ix_orders_user_id'), ['user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_orders_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_orders_payment_group_id'), ['payment_group_id'], unique=False)

    op.create_table('order_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('batch_id', sa.String(length=64), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('variant_size', sa.String(length=32), nullable=True),
        sa.Column('variant_color', sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('order_lines', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_order_lines_order_id'), ['order_id'], unique=False)

    # ==========================================================================
    # 5. PAYMENT GROUPS
    # ==========================================================================
    op.create_table('payment_groups',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('user_name', sa.String(length=255), nullable=True),
        sa.Column('user_email', sa.String(length=255), nullable=True),
        sa.Column('order_ids', sa.JSON(), nullable=False),
        sa.Column('original_total', sa.Integer(), nullable=False),
        sa.Column('unique_payment_code', sa.Integer(), nullable=False),
        sa.Column('exact_payment_amount', sa.Integer(), nullable=False),
        sa.Column('verification_mode', sa.String(length=16), nullable=True),
        sa.Column('original_mode', sa.String(length=16), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('mode_switched_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('payment_groups', schema=None) as batch_op:
        batch_op.create_index('ix_payment_groups_amount_status', ['exact_payment_amount', 'status'], unique=False)
        batch_op.create_index('ix_payment_groups_user_status', ['user_id', 'status'], unique=False)


def downgrade():
    with op.batch_alter_table('payment_groups', schema=None) as batch_op:
        batch_op.drop_index('ix_payment_groups_user_status')
        batch_op.drop_index('ix_payment_groups_amount_status')
    op.drop_table('payment_groups')

    with op.batch_alter_table('order_lines', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_order_lines_order_id'))
    op.drop_table('order_lines')

    with op.batch_alter_table('orders', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_orders_payment_group_id'))
        batch_op.drop_index(batch_op.f('ix_orders_status'))
        batch_op.drop_index(batch_op.f('ix_orders_user_id'))
        batch_op.drop_index('ix_orders_status_expires')
    op.drop_table('orders')

    with op.batch_alter_table('checkout_queue_items', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_checkout_queue_items_status'))
        batch_op.drop_index(batch_op.f('ix_checkout_queue_items_user_id'))
        batch_op.drop_index(batch_op.f('ix_checkout_queue_items_order_id'))
        batch_op.drop_index('ix_checkout_queue_status_created')
    op.drop_table('checkout_queue_items')

    with op.batch_alter_table('stock_movements', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_stock_movements_queue_item_id'))
        batch_op.drop_index(batch_op.f('ix_stock_movements_order_id'))
        batch_op.drop_index(batch_op.f('ix_stock_movements_reason'))
        batch_op.drop_index(batch_op.f('ix_stock_movements_batch_id'))
        batch_op.drop_index('ix_stock_movements_product_created')
    op.drop_table('stock_movements')

    op.drop_table('product_batches')
