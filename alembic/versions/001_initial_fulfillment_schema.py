"""Create fulfillment schema

Revision ID: 001_fulfillment
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB

# revision identifiers
revision = '001_fulfillment'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    """Create users, catalogue, order, delivery, fleet and notification tables"""

    # ====================
    # USERS
    # ====================
    op.create_table(
        'users',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('first_name', sa.String(100), nullable=False),
        sa.Column('last_name', sa.String(100), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(30), nullable=True),
        sa.Column('role', sa.String(50), nullable=False,
                  comment='Admin, Store Employee, Delivery Driver, Customer'),
        sa.Column('is_active', sa.Boolean, server_default='true', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_users_email', 'users', ['email'])
    op.create_index('ix_users_role', 'users', ['role'])

    # ====================
    # CATALOGUE
    # ====================
    op.create_table(
        'products',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), server_default='0', nullable=False),
        sa.Column('stock_level', sa.Integer, server_default='0', nullable=False),
        sa.Column('minimum_stock', sa.Integer, nullable=True,
                  comment='Low Stock threshold; falls back to DEFAULT_MINIMUM_STOCK'),
        sa.Column('stock_status', sa.String(50), server_default='In Stock', nullable=False,
                  comment='In Stock, Low Stock, Out of Stock'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )

    op.create_table(
        'product_variations',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('product_id', UUID(as_uuid=True), sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=True),
        sa.Column('stock_level', sa.Integer, nullable=True),
    )
    op.create_index('ix_product_variations_product_id', 'product_variations', ['product_id'])

    # ====================
    # ORDERS
    # ====================
    op.create_table(
        'orders',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('customer_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), server_default='0', nullable=False),
        sa.Column('status', sa.String(50), server_default='Pending Approval', nullable=False,
                  comment='Pending Approval, Waiting Payment, Processing, Ready, Completed, Rejected, Cancelled'),
        sa.Column('delivery_method', sa.String(50), server_default='Standard Delivery', nullable=False,
                  comment='Standard Delivery, Pick Up'),
        sa.Column('payment_method', sa.String(50), nullable=True, comment='On-Site, Cash on Delivery, GCash'),
        sa.Column('payment', sa.String(20), server_default='To Pay', nullable=False, comment='To Pay, Paid'),
        sa.Column('stock_deducted', sa.Boolean, server_default='false', nullable=False),
        sa.Column('availability_date', sa.Date, nullable=True),
        sa.Column('availability_time', sa.String(50), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_by', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('rejection_reason', sa.Text, nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_by', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('collected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('last_updated', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_created_at', 'orders', ['created_at'])
    op.create_index('ix_order_status_created', 'orders', ['status', 'created_at'])
    op.create_index('ix_order_customer_created', 'orders', ['customer_id', 'created_at'])

    op.create_table(
        'order_items',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('order_id', UUID(as_uuid=True), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', UUID(as_uuid=True), sa.ForeignKey('products.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('variation_id', UUID(as_uuid=True),
                  sa.ForeignKey('product_variations.id', ondelete='SET NULL'), nullable=True),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), server_default='0', nullable=False),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'order_availability_slots',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('order_id', UUID(as_uuid=True), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('slot_number', sa.Integer, server_default='1', nullable=False),
        sa.Column('availability_date', sa.Date, nullable=True),
        sa.Column('availability_time', sa.String(50), nullable=True),
    )
    op.create_index('ix_order_availability_slots_order_id', 'order_availability_slots', ['order_id'])

    op.create_table(
        'transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('order_id', UUID(as_uuid=True), sa.ForeignKey('orders.id', ondelete='CASCADE'),
                  unique=True, nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), server_default='0', nullable=False),
        sa.Column('payment_status', sa.String(20), server_default='Pending', nullable=False, comment='Pending, Paid'),
        sa.Column('payment_method', sa.String(50), nullable=True),
        sa.Column('proof_of_payment', sa.String(500), nullable=True, comment='Opaque reference into the file store'),
        sa.Column('proof_rejected', sa.Boolean, server_default='false', nullable=False),
        sa.Column('proof_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )

    op.create_table(
        'order_status_history',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('order_id', UUID(as_uuid=True), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('from_status', sa.String(50), nullable=True),
        sa.Column('to_status', sa.String(50), nullable=False),
        sa.Column('changed_by', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('note', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_order_status_history_order_id', 'order_status_history', ['order_id'])

    # ====================
    # FLEET & DELIVERIES
    # ====================
    op.create_table(
        'fleet',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('model', sa.String(150), nullable=False),
        sa.Column('status', sa.String(50), server_default='Available', nullable=False,
                  comment='Available, In Use, Unavailable'),
        sa.Column('capacity', sa.Numeric(12, 2), nullable=True),
        sa.Column('capacity_unit', sa.String(10), server_default='kg', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_fleet_status', 'fleet', ['status'])

    op.create_table(
        'deliveries',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('order_id', UUID(as_uuid=True), sa.ForeignKey('orders.id', ondelete='CASCADE'),
                  unique=True, nullable=False),
        sa.Column('delivery_status', sa.String(50), server_default='Pending', nullable=False,
                  comment='Pending, Preparing, Out for Delivery, Delivered, Cancelled'),
        sa.Column('delivery_details', JSONB, nullable=True, comment='Free-form details incl. proof_image reference'),
        sa.Column('cancellation_reason', sa.Text, nullable=True),
        sa.Column('internal_notes', sa.Text, nullable=True),
        sa.Column('cancelled_by', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_deliveries_delivery_status', 'deliveries', ['delivery_status'])

    op.create_table(
        'delivery_drivers',
        sa.Column('delivery_id', UUID(as_uuid=True), sa.ForeignKey('deliveries.id', ondelete='CASCADE'),
                  primary_key=True),
        sa.Column('driver_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=True),
    )

    op.create_table(
        'delivery_vehicles',
        sa.Column('delivery_id', UUID(as_uuid=True), sa.ForeignKey('deliveries.id', ondelete='CASCADE'),
                  primary_key=True),
        sa.Column('vehicle_id', UUID(as_uuid=True), sa.ForeignKey('fleet.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=True),
    )

    # ====================
    # NOTIFICATIONS
    # ====================
    op.create_table(
        'notifications',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('audience', sa.String(20), nullable=False, comment='admin, customer, driver'),
        sa.Column('recipient_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=True),
        sa.Column('activity_type', sa.String(50), nullable=False),
        sa.Column('order_id', UUID(as_uuid=True), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=True),
        sa.Column('message', sa.Text, nullable=False),
        sa.Column('is_read', sa.Boolean, server_default='false', nullable=False),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('NOW()'), nullable=False),
    )
    op.create_index('ix_notifications_recipient_id', 'notifications', ['recipient_id'])
    op.create_index('ix_notifications_activity_type', 'notifications', ['activity_type'])
    op.create_index('ix_notifications_order_id', 'notifications', ['order_id'])
    op.create_index('ix_notifications_created_at', 'notifications', ['created_at'])
    op.create_index(
        'ix_notifications_audience_recipient', 'notifications', ['audience', 'recipient_id', 'is_read']
    )


def downgrade():
    """Drop fulfillment tables"""
    op.drop_table('notifications')
    op.drop_table('delivery_vehicles')
    op.drop_table('delivery_drivers')
    op.drop_table('deliveries')
    op.drop_table('fleet')
    op.drop_table('order_status_history')
    op.drop_table('transactions')
    op.drop_table('order_availability_slots')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('product_variations')
    op.drop_table('products')
    op.drop_table('users')
