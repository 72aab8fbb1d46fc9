"""Create tenant, canonical order, staging and sync session tables

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 09:00:00.000000

WHAT:
    Creates the schema of the staging reconciliation service:
    - users, stores, operations: tenants and their business units
    - warehouse_accounts, warehouse_account_operations: carrier connections
    - orders: canonical storefront orders enriched with carrier data
    - fhb_orders, european_fulfillment_orders, elogy_orders, big_arena_orders,
      digistore_orders: per-provider staging rows
    - sync_sessions: durable per-user progress and run guard

WHY:
    Reconciliation reads staging rows written by ingestion adapters and merges
    them into canonical orders; progress must survive process restarts.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261018_000001'
down_revision = None
branch_labels = None
depends_on = None


def _uuid_pk():
    return sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    ]


def _staging_tail():
    # Columns every staging table shares
    return [
        sa.Column('raw_data', sa.JSON(), nullable=False),
        sa.Column('processed_to_orders', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    ]


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Enums
    # =========================================================================
    warehouse_status = postgresql.ENUM('pending', 'active', name='warehouseaccountstatusenum', create_type=False)
    sync_phase = postgresql.ENUM('preparing', 'syncing', 'completed', 'error', name='syncphaseenum', create_type=False)
    warehouse_status.create(op.get_bind(), checkfirst=True)
    sync_phase.create(op.get_bind(), checkfirst=True)

    # =========================================================================
    # STEP 2: Tenants
    # =========================================================================
    op.create_table(
        'users',
        _uuid_pk(),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'stores',
        _uuid_pk(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('owner_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'operations',
        _uuid_pk(),
        sa.Column('store_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('country', sa.String(), nullable=True),
        sa.Column('currency', sa.String(), nullable=False, server_default='EUR'),
        sa.Column('status', sa.String(), nullable=False, server_default='active'),
        sa.Column('order_prefix', sa.String(), nullable=True),
        sa.Column('integration_started_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )

    # =========================================================================
    # STEP 3: Warehouse accounts
    # =========================================================================
    op.create_table(
        'warehouse_accounts',
        _uuid_pk(),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('provider_key', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=True),
        sa.Column('status', warehouse_status, nullable=False, server_default='pending'),
        *_timestamps(),
    )
    op.create_index('ix_warehouse_accounts_user_id', 'warehouse_accounts', ['user_id'])

    op.create_table(
        'warehouse_account_operations',
        _uuid_pk(),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('warehouse_accounts.id'), nullable=False),
        sa.Column('operation_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('operations.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('account_id', 'operation_id', name='uq_warehouse_account_operation'),
    )

    # =========================================================================
    # STEP 4: Canonical orders
    # =========================================================================
    op.create_table(
        'orders',
        _uuid_pk(),
        sa.Column('store_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('operation_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('operations.id'), nullable=True),
        sa.Column('data_source', sa.String(), nullable=False, server_default='shopify'),
        sa.Column('shopify_order_id', sa.String(), nullable=True),
        sa.Column('shopify_order_number', sa.String(), nullable=True),
        sa.Column('customer_name', sa.String(), nullable=True),
        sa.Column('customer_email', sa.String(), nullable=True),
        sa.Column('customer_phone', sa.String(), nullable=True),
        sa.Column('customer_city', sa.String(), nullable=True),
        sa.Column('customer_country', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('total', sa.Numeric(10, 2), nullable=True),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('provider', sa.String(), nullable=True),
        sa.Column('tracking_number', sa.String(), nullable=True),
        sa.Column('carrier_imported', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('carrier_order_id', sa.String(), nullable=True),
        sa.Column('carrier_matched_at', sa.DateTime(), nullable=True),
        sa.Column('provider_data', sa.JSON(), nullable=True),
        sa.Column('shopify_data', sa.JSON(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('needs_sync', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('order_date', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_orders_operation_id', 'orders', ['operation_id'])
    op.create_index('ix_orders_operation_number', 'orders', ['operation_id', 'shopify_order_number'])

    # =========================================================================
    # STEP 5: Staging tables (one per provider)
    # =========================================================================
    recipient_staging = {
        'fhb_orders': ('fhb_order_id', 'variable_symbol', False, 'uq_fhb_order'),
        'european_fulfillment_orders': ('european_order_id', 'order_number', False, 'uq_european_fulfillment_order'),
        'elogy_orders': ('elogy_order_id', 'order_number', True, 'uq_elogy_order'),
    }
    for table, (provider_id_col, number_col, number_nullable, unique_name) in recipient_staging.items():
        op.create_table(
            table,
            _uuid_pk(),
            sa.Column('account_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('warehouse_accounts.id'), nullable=True),
            sa.Column(provider_id_col, sa.String(), nullable=False),
            sa.Column(number_col, sa.String(), nullable=number_nullable),
            sa.Column('status', sa.String(), nullable=False),
            sa.Column('tracking', sa.String(), nullable=True),
            sa.Column('value', sa.Numeric(10, 2), nullable=True),
            sa.Column('recipient', sa.JSON(), nullable=True),
            sa.Column('items', sa.JSON(), nullable=True),
            *_staging_tail(),
            sa.UniqueConstraint('account_id', provider_id_col, name=unique_name),
        )
        op.create_index(f'ix_{table}_{number_col}', table, [number_col])
        op.create_index(f'ix_{table}_unprocessed', table, ['processed_to_orders'])

    op.create_table(
        'big_arena_orders',
        _uuid_pk(),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('warehouse_accounts.id'), nullable=True),
        sa.Column('order_id', sa.String(), nullable=False),
        sa.Column('external_id', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('total', sa.Numeric(12, 2), nullable=True),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('tracking_code', sa.String(), nullable=True),
        sa.Column('tracking_url', sa.String(), nullable=True),
        sa.Column('customer_name', sa.String(), nullable=True),
        sa.Column('customer_phone', sa.String(), nullable=True),
        sa.Column('customer_email', sa.String(), nullable=True),
        sa.Column('shipping_address', sa.JSON(), nullable=True),
        sa.Column('items', sa.JSON(), nullable=True),
        sa.Column('linked_order_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('orders.id'), nullable=True),
        sa.Column('order_date', sa.DateTime(), nullable=True),
        *_staging_tail(),
        sa.UniqueConstraint('account_id', 'order_id', name='uq_big_arena_order'),
    )
    op.create_index('ix_big_arena_orders_external_id', 'big_arena_orders', ['external_id'])
    op.create_index('ix_big_arena_orders_unprocessed', 'big_arena_orders', ['processed_to_orders'])

    op.create_table(
        'digistore_orders',
        _uuid_pk(),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('warehouse_accounts.id'), nullable=True),
        sa.Column('delivery_id', sa.String(), nullable=False),
        sa.Column('purchase_id', sa.String(), nullable=False),
        sa.Column('transaction_id', sa.String(), nullable=True),
        sa.Column('delivery_type', sa.String(), nullable=False),
        sa.Column('tracking', sa.String(), nullable=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('buyer', sa.JSON(), nullable=True),
        sa.Column('linked_order_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('orders.id'), nullable=True),
        *_staging_tail(),
        sa.UniqueConstraint('account_id', 'delivery_id', name='uq_digistore_order'),
    )
    op.create_index('ix_digistore_orders_purchase_id', 'digistore_orders', ['purchase_id'])
    op.create_index('ix_digistore_orders_unprocessed', 'digistore_orders', ['processed_to_orders'])

    # =========================================================================
    # STEP 6: Sync sessions
    # =========================================================================
    op.create_table(
        'sync_sessions',
        _uuid_pk(),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False, unique=True),
        sa.Column('is_running', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('phase', sync_phase, nullable=False, server_default='preparing'),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('run_id', sa.String(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_records', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_records', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_orders', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_orders', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('skipped_records', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('percentage', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('provider_stats', sa.JSON(), nullable=True),
        sa.Column('start_time', sa.DateTime(), nullable=True),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('last_updated_at', sa.DateTime(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('sync_sessions')
    op.drop_table('digistore_orders')
    op.drop_table('big_arena_orders')
    for table in ('elogy_orders', 'european_fulfillment_orders', 'fhb_orders'):
        op.drop_table(table)
    op.drop_table('orders')
    op.drop_table('warehouse_account_operations')
    op.drop_table('warehouse_accounts')
    op.drop_table('operations')
    op.drop_table('stores')
    op.drop_table('users')
    op.execute("DROP TYPE IF EXISTS syncphaseenum")
    op.execute("DROP TYPE IF EXISTS warehouseaccountstatusenum")
