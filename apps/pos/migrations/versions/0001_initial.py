from alembic import op
import sqlalchemy as sa
import os

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _schema():
    return os.getenv('DB_SCHEMA')


def upgrade() -> None:
    schema = _schema()
    now = sa.text('CURRENT_TIMESTAMP')
    op.create_table(
        'tables',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('name', sa.String(length=50), nullable=False),
        sa.Column('number', sa.Integer(), nullable=True),
        sa.Column('capacity', sa.Integer(), nullable=False, server_default='2'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='free'),
        schema=schema
    )
    op.create_table(
        'table_sessions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('table_id', sa.String(length=36), nullable=False),
        sa.Column('session_token', sa.String(length=64), nullable=False, unique=True),
        sa.Column('customer_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=now),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        schema=schema
    )
    op.create_index('ix_table_sessions_table_id', 'table_sessions', ['table_id'], schema=schema)
    op.create_table(
        'orders',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('table_id', sa.String(length=36), nullable=True),
        sa.Column('table_session_id', sa.String(length=36), nullable=True),
        sa.Column('customer_id', sa.String(length=36), nullable=True),
        sa.Column('order_type', sa.String(length=16), nullable=False, server_default='dine_in'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='open'),
        sa.Column('note', sa.String(length=500), nullable=True),
        sa.Column('total_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('source_local_id', sa.String(length=64), nullable=True, unique=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=now),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        schema=schema
    )
    op.create_index('ix_orders_table_id', 'orders', ['table_id'], schema=schema)
    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('order_id', sa.String(length=36), nullable=False),
        sa.Column('product_id', sa.String(length=36), nullable=True),
        sa.Column('name', sa.String(length=120), nullable=True),
        sa.Column('qty', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('price_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('note', sa.String(length=200), nullable=True),
        schema=schema
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'], schema=schema)
    op.create_table(
        'offline_sync_queue',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('local_id', sa.String(length=64), nullable=False, unique=True),
        sa.Column('target_entity', sa.String(length=64), nullable=False),
        sa.Column('operation', sa.String(length=16), nullable=False),
        sa.Column('payload_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.String(length=1000), nullable=True),
        sa.Column('resolution', sa.String(length=16), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=now),
        sa.Column('synced_at', sa.DateTime(timezone=True), nullable=True),
        schema=schema
    )
    op.create_index(
        'ix_offline_sync_queue_status_created',
        'offline_sync_queue',
        ['status', 'created_at'],
        schema=schema,
    )


def downgrade() -> None:
    schema = _schema()
    op.drop_index('ix_offline_sync_queue_status_created', table_name='offline_sync_queue', schema=schema)
    op.drop_table('offline_sync_queue', schema=schema)
    op.drop_index('ix_order_items_order_id', table_name='order_items', schema=schema)
    op.drop_table('order_items', schema=schema)
    op.drop_index('ix_orders_table_id', table_name='orders', schema=schema)
    op.drop_table('orders', schema=schema)
    op.drop_index('ix_table_sessions_table_id', table_name='table_sessions', schema=schema)
    op.drop_table('table_sessions', schema=schema)
    op.drop_table('tables', schema=schema)
