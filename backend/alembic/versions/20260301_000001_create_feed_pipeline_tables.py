"""Create feed pipeline tables (organizations, connectors, products, feeds, runs, webhooks, notifications)

Revision ID: 20260301_000001
Revises:
Create Date: 2026-03-01 09:00:00.000000

WHAT:
    Initial schema of the feed pipeline:
    - organizations: tenant + settings document
    - connectors: Shopify / WooCommerce / CSV sources (encrypted credentials)
    - products: normalized catalog, unique per (connector_id, external_id)
    - inventory_levels: per-location stock from inventory webhooks
    - product_feeds: channel + format + filter definitions
    - feed_schedules: interval schedule with failure backoff
    - feed_webhooks / webhook_deliveries: outbound subscribers and audit rows
    - feed_generation_history: one row per regeneration run
    - notifications: UI projection of pipeline events

WHY:
    The (connector_id, external_id) unique constraint is what makes webhook
    redelivery and repeated pull syncs idempotent upserts.

REFERENCES:
    - backend/feedpipe/models.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20260301_000001'
down_revision = None
branch_labels = None
depends_on = None


ENUMS = {
    'connectorkindenum': ('shopify', 'woocommerce', 'csv'),
    'connectorstatusenum': ('active', 'pending', 'inactive'),
    'productstatusenum': ('active', 'inactive', 'out_of_stock', 'archived', 'draft'),
    'feedformatenum': ('xml', 'csv', 'json'),
    'feedstatusenum': ('active', 'inactive', 'generating', 'error', 'paused'),
    'schedulestatusenum': ('active', 'paused', 'failed'),
    'runstatusenum': ('started', 'completed', 'failed'),
    'runtriggerenum': ('manual', 'scheduled', 'webhook'),
    'notificationtypeenum': ('feed_generated', 'feed_failed', 'feed_scheduled', 'system_alert', 'info'),
    'notificationpriorityenum': ('low', 'normal', 'high', 'urgent'),
}


def _enum(name):
    return sa.Enum(*ENUMS[name], name=name)


def _uuid_pk():
    return sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), onupdate=sa.func.now()),
    ]


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Tenants and sources
    # =========================================================================
    op.create_table(
        'organizations',
        _uuid_pk(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('settings', sa.JSON(), nullable=False, server_default='{}'),
        *_timestamps(),
    )

    op.create_table(
        'connectors',
        _uuid_pk(),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('kind', _enum('connectorkindenum'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('shop_domain', sa.String(), nullable=True),
        sa.Column('credentials_enc', sa.Text(), nullable=True),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('status', _enum('connectorstatusenum'), nullable=False, server_default='pending'),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('last_sync_error', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_connectors_shop_domain', 'connectors', ['shop_domain'])

    # =========================================================================
    # STEP 2: Product store
    # =========================================================================
    # WHAT: Canonical products; status soft-deletes, rows are never removed
    op.create_table(
        'products',
        _uuid_pk(),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('connector_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('connectors.id'), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=True),
        sa.Column('currency', sa.String(), nullable=False, server_default='USD'),
        sa.Column('sku', sa.String(), nullable=True),
        sa.Column('brand', sa.String(), nullable=True),
        sa.Column('category', sa.String(), nullable=True),
        sa.Column('images', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('variants', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('metadata', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('inventory_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', _enum('productstatusenum'), nullable=False, server_default='active'),
        *_timestamps(),
        sa.UniqueConstraint('connector_id', 'external_id', name='uq_products_connector_external'),
    )
    op.create_index('ix_products_org_created', 'products', ['organization_id', 'created_at'])

    op.create_table(
        'inventory_levels',
        _uuid_pk(),
        sa.Column('connector_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('connectors.id'), nullable=False),
        sa.Column('inventory_item_id', sa.String(), nullable=False),
        sa.Column('location_id', sa.String(), nullable=False),
        sa.Column('available_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_updated', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('connector_id', 'inventory_item_id', 'location_id', name='uq_inventory_level'),
    )

    # =========================================================================
    # STEP 3: Feeds, schedules, runs
    # =========================================================================
    op.create_table(
        'product_feeds',
        _uuid_pk(),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('connector_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('connectors.id'), nullable=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('channel', sa.String(), nullable=False),
        sa.Column('format', _enum('feedformatenum'), nullable=False),
        sa.Column('settings', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('status', _enum('feedstatusenum'), nullable=False, server_default='active'),
        sa.Column('products_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_generated', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('organization_id', 'name', name='uq_product_feeds_org_name'),
    )

    op.create_table(
        'feed_schedules',
        _uuid_pk(),
        sa.Column('feed_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('product_feeds.id'), nullable=False, unique=True),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('interval_hours', sa.Integer(), nullable=False, server_default='24'),
        sa.Column('next_run_at', sa.DateTime(), nullable=True),
        sa.Column('last_run_at', sa.DateTime(), nullable=True),
        sa.Column('status', _enum('schedulestatusenum'), nullable=False, server_default='active'),
        sa.Column('consecutive_failures', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        *_timestamps(),
    )
    # WHY: the scheduler tick selects by next_run_at
    op.create_index('ix_feed_schedules_next_run_at', 'feed_schedules', ['next_run_at'])

    op.create_table(
        'feed_generation_history',
        _uuid_pk(),
        sa.Column('feed_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('product_feeds.id'), nullable=False),
        sa.Column('status', _enum('runstatusenum'), nullable=False, server_default='started'),
        sa.Column('trigger', _enum('runtriggerenum'), nullable=False, server_default='manual'),
        sa.Column('products_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('products_included', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('products_excluded', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('validation_error_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('validation_errors', sa.JSON(), nullable=True),
        sa.Column('generation_time_ms', sa.Integer(), nullable=True),
        sa.Column('file_size_bytes', sa.Integer(), nullable=True),
        sa.Column('file_url', sa.String(), nullable=True),
        sa.Column('file_format', sa.String(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_feed_generation_history_feed_id', 'feed_generation_history', ['feed_id'])
    op.create_index('ix_feed_generation_history_started_at', 'feed_generation_history', ['started_at'])

    # =========================================================================
    # STEP 4: Outbound webhooks
    # =========================================================================
    op.create_table(
        'feed_webhooks',
        _uuid_pk(),
        sa.Column('feed_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('product_feeds.id'), nullable=False),
        sa.Column('url', sa.String(), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('events', sa.JSON(), nullable=False),
        sa.Column('secret', sa.String(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('timeout_seconds', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('last_triggered_at', sa.DateTime(), nullable=True),
        sa.Column('total_deliveries', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('successful_deliveries', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_deliveries', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
    )
    op.create_index('ix_feed_webhooks_feed_id', 'feed_webhooks', ['feed_id'])

    op.create_table(
        'webhook_deliveries',
        _uuid_pk(),
        sa.Column('webhook_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('feed_webhooks.id'), nullable=False),
        sa.Column('feed_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('product_feeds.id'), nullable=False),
        sa.Column('event', sa.String(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status_code', sa.Integer(), nullable=True),
        sa.Column('response_body', sa.Text(), nullable=True),
        sa.Column('response_time_ms', sa.Integer(), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_attempt', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('delivered_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_webhook_deliveries_webhook_id', 'webhook_deliveries', ['webhook_id'])
    op.create_index('ix_webhook_deliveries_feed_id', 'webhook_deliveries', ['feed_id'])

    # =========================================================================
    # STEP 5: Notifications
    # =========================================================================
    op.create_table(
        'notifications',
        _uuid_pk(),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('type', _enum('notificationtypeenum'), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('priority', _enum('notificationpriorityenum'), nullable=False, server_default='normal'),
        sa.Column('entity_type', sa.String(), nullable=True),
        sa.Column('entity_id', sa.String(), nullable=True),
        sa.Column('entity_name', sa.String(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_notifications_org_created', 'notifications', ['organization_id', 'created_at'])


def downgrade() -> None:
    # Drop tables in reverse order (respect foreign keys)
    op.drop_table('notifications')
    op.drop_table('webhook_deliveries')
    op.drop_table('feed_webhooks')
    op.drop_table('feed_generation_history')
    op.drop_table('feed_schedules')
    op.drop_table('product_feeds')
    op.drop_table('inventory_levels')
    op.drop_table('products')
    op.drop_table('connectors')
    op.drop_table('organizations')

    for name in ENUMS:
        op.execute(f'DROP TYPE IF EXISTS {name}')
