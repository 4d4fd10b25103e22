"""SQLAlchemy ORM models and enums.

This module defines the feed pipeline schema using UUID primary keys and explicit
relationships. Every row is scoped by `organization_id` either directly or through
its parent (connector or feed).
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, ForeignKey, Numeric, JSON, Text, Boolean, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


# Enums ---------------------------------------------------------

class ConnectorKindEnum(str, enum.Enum):
    shopify = "shopify"
    woocommerce = "woocommerce"
    csv = "csv"


class ConnectorStatusEnum(str, enum.Enum):
    active = "active"
    pending = "pending"
    inactive = "inactive"


class ProductStatusEnum(str, enum.Enum):
    """Lifecycle of a normalized product.

    Soft-delete is `inactive`; rows are never removed so run history stays
    meaningful. `out_of_stock`, `archived` and `draft` are excluded from feeds.
    """
    active = "active"
    inactive = "inactive"
    out_of_stock = "out_of_stock"
    archived = "archived"
    draft = "draft"


class FeedFormatEnum(str, enum.Enum):
    xml = "xml"
    csv = "csv"
    json = "json"


class FeedStatusEnum(str, enum.Enum):
    active = "active"
    inactive = "inactive"
    generating = "generating"  # advisory lock: one run in flight
    error = "error"
    paused = "paused"


class ScheduleStatusEnum(str, enum.Enum):
    active = "active"
    paused = "paused"
    failed = "failed"


class RunStatusEnum(str, enum.Enum):
    started = "started"
    completed = "completed"
    failed = "failed"


class RunTriggerEnum(str, enum.Enum):
    manual = "manual"
    scheduled = "scheduled"
    webhook = "webhook"


class NotificationTypeEnum(str, enum.Enum):
    feed_generated = "feed_generated"
    feed_failed = "feed_failed"
    feed_scheduled = "feed_scheduled"
    system_alert = "system_alert"
    info = "info"


class NotificationPriorityEnum(str, enum.Enum):
    low = "low"
    normal = "normal"
    high = "high"
    urgent = "urgent"


# Outbound webhook event names
FEED_GENERATED_EVENT = "feed.generated"
FEED_FAILED_EVENT = "feed.failed"
WEBHOOK_EVENTS = (FEED_GENERATED_EVENT, FEED_FAILED_EVENT)


# Organizations & connectors ------------------------------------

class Organization(Base):
    """Top-level tenant.

    WHAT: Owns connectors, products, feeds and notifications
    WHY: All data is isolated per organization; `settings` is a read-mostly
         document (e.g. `storefront_base_url`) mutated by the settings endpoint
    """
    __tablename__ = "organizations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    settings = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    connectors = relationship("Connector", back_populates="organization")
    feeds = relationship("Feed", back_populates="organization")

    def __str__(self):
        return self.name


class Connector(Base):
    """A configured link to one external product source.

    Lifecycle: created on install (pending) -> active after the credential
    check -> inactive on uninstall, which cascades its products to inactive.
    Credentials are an opaque, Fernet-encrypted JSON document.
    """
    __tablename__ = "connectors"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)

    kind = Column(Enum(ConnectorKindEnum, values_callable=_enum_values), nullable=False)
    name = Column(String, nullable=False)
    shop_domain = Column(String, nullable=True, index=True)  # e.g. "demo.myshopify.com" or WooCommerce store URL
    credentials_enc = Column(Text, nullable=True)
    currency = Column(String, nullable=True)  # Shop currency, applied to products that carry none
    status = Column(
        Enum(ConnectorStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=ConnectorStatusEnum.pending,
    )

    # Sync tracking
    last_sync_at = Column(DateTime, nullable=True)
    last_sync_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    organization = relationship("Organization", back_populates="connectors")
    products = relationship("Product", back_populates="connector")

    def __str__(self):
        return f"{self.name} ({self.kind.value})"


# Product store --------------------------------------------------

class Product(Base):
    """Normalized product.

    WHAT: Canonical product shared by every source kind
    WHY: Feeds render from one schema regardless of where the product came from
    NOTE: `variants` keeps the source's variant records (id, title, price, sku,
          inventory_quantity, inventory_management, inventory_policy, ...).
          `metadata` holds handle, tags, collections, seo fields and raw extras.
    """
    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("connector_id", "external_id", name="uq_products_connector_external"),
        Index("ix_products_org_created", "organization_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    connector_id = Column(UUID(as_uuid=True), ForeignKey("connectors.id"), nullable=False)
    external_id = Column(String, nullable=False)

    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(12, 2), nullable=True)
    currency = Column(String, nullable=False, default="USD")
    sku = Column(String, nullable=True)
    brand = Column(String, nullable=True)
    category = Column(String, nullable=True)
    images = Column(JSON, nullable=False, default=list)
    variants = Column(JSON, nullable=False, default=list)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    inventory_quantity = Column(Integer, nullable=False, default=0)  # Sum across variants
    status = Column(
        Enum(ProductStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=ProductStatusEnum.active,
    )

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    connector = relationship("Connector", back_populates="products")

    def __str__(self):
        return f"{self.title} ({self.external_id})"


class InventoryLevel(Base):
    """Per-location stock for one inventory item."""
    __tablename__ = "inventory_levels"
    __table_args__ = (
        UniqueConstraint("connector_id", "inventory_item_id", "location_id", name="uq_inventory_level"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    connector_id = Column(UUID(as_uuid=True), ForeignKey("connectors.id"), nullable=False)
    inventory_item_id = Column(String, nullable=False)
    location_id = Column(String, nullable=False)
    available_quantity = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Feeds -----------------------------------------------------------

class Feed(Base):
    """Output definition: channel + format + filter (in `settings`) + connector scope.

    `connector_id` NULL means products from any connector of the organization.
    """
    __tablename__ = "product_feeds"
    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_product_feeds_org_name"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    connector_id = Column(UUID(as_uuid=True), ForeignKey("connectors.id"), nullable=True)

    name = Column(String, nullable=False)
    channel = Column(String, nullable=False)
    format = Column(Enum(FeedFormatEnum, values_callable=_enum_values), nullable=False)
    settings = Column(JSON, nullable=False, default=dict)
    status = Column(
        Enum(FeedStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=FeedStatusEnum.active,
    )

    products_count = Column(Integer, nullable=False, default=0)
    last_generated = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    organization = relationship("Organization", back_populates="feeds")
    connector = relationship("Connector")
    schedule = relationship("FeedSchedule", back_populates="feed", uselist=False, cascade="all, delete-orphan")
    webhooks = relationship("FeedWebhook", back_populates="feed", cascade="all, delete-orphan")
    runs = relationship("GenerationRun", back_populates="feed", cascade="all, delete-orphan")
    deliveries = relationship("WebhookDelivery", back_populates="feed", cascade="all, delete-orphan")

    def __str__(self):
        return f"{self.name} ({self.channel}/{self.format.value})"


class FeedSchedule(Base):
    """Auto-regeneration policy for one feed.

    WHAT: interval-based schedule with failure backoff state
    WHY: `next_run_at` is recomputed on every terminal run; after
         SCHEDULE_MAX_FAILURES consecutive failures the status becomes `failed`
         and the scheduler stops selecting it
    """
    __tablename__ = "feed_schedules"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    feed_id = Column(UUID(as_uuid=True), ForeignKey("product_feeds.id"), nullable=False, unique=True)

    enabled = Column(Boolean, nullable=False, default=False)
    interval_hours = Column(Integer, nullable=False, default=24)
    next_run_at = Column(DateTime, nullable=True, index=True)
    last_run_at = Column(DateTime, nullable=True)
    status = Column(
        Enum(ScheduleStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=ScheduleStatusEnum.active,
    )
    consecutive_failures = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    feed = relationship("Feed", back_populates="schedule")


class FeedWebhook(Base):
    """Outbound subscriber notified about regeneration outcomes."""
    __tablename__ = "feed_webhooks"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    feed_id = Column(UUID(as_uuid=True), ForeignKey("product_feeds.id"), nullable=False, index=True)

    url = Column(String, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    events = Column(JSON, nullable=False, default=lambda: list(WEBHOOK_EVENTS))
    secret = Column(String, nullable=True)  # Enables X-Webhook-Signature when set
    retry_count = Column(Integer, nullable=False, default=3)
    timeout_seconds = Column(Integer, nullable=False, default=30)

    # Delivery counters (incremented with SQL expressions, never read-modify-write)
    last_triggered_at = Column(DateTime, nullable=True)
    total_deliveries = Column(Integer, nullable=False, default=0)
    successful_deliveries = Column(Integer, nullable=False, default=0)
    failed_deliveries = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    feed = relationship("Feed", back_populates="webhooks")
    deliveries = relationship("WebhookDelivery", back_populates="webhook", cascade="all, delete-orphan")


class WebhookDelivery(Base):
    """Audit row for one delivery attempt."""
    __tablename__ = "webhook_deliveries"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    webhook_id = Column(UUID(as_uuid=True), ForeignKey("feed_webhooks.id"), nullable=False, index=True)
    feed_id = Column(UUID(as_uuid=True), ForeignKey("product_feeds.id"), nullable=False, index=True)

    event = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    status_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)  # Truncated excerpt
    response_time_ms = Column(Integer, nullable=True)
    success = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)
    retry_attempt = Column(Integer, nullable=False, default=0)
    delivered_at = Column(DateTime, default=datetime.utcnow)

    webhook = relationship("FeedWebhook", back_populates="deliveries")
    feed = relationship("Feed", back_populates="deliveries")


class GenerationRun(Base):
    """One regeneration attempt.

    Created in `started` before rendering begins and moved exactly once to
    `completed` or `failed`.
    """
    __tablename__ = "feed_generation_history"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    feed_id = Column(UUID(as_uuid=True), ForeignKey("product_feeds.id"), nullable=False, index=True)

    status = Column(
        Enum(RunStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=RunStatusEnum.started,
    )
    trigger = Column(
        Enum(RunTriggerEnum, values_callable=_enum_values),
        nullable=False,
        default=RunTriggerEnum.manual,
    )

    products_processed = Column(Integer, nullable=False, default=0)
    products_included = Column(Integer, nullable=False, default=0)
    products_excluded = Column(Integer, nullable=False, default=0)
    validation_error_count = Column(Integer, nullable=False, default=0)
    validation_errors = Column(JSON, nullable=True)

    generation_time_ms = Column(Integer, nullable=True)
    file_size_bytes = Column(Integer, nullable=True)
    file_url = Column(String, nullable=True)
    file_format = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)

    feed = relationship("Feed", back_populates="runs")


# Notifications ---------------------------------------------------

class Notification(Base):
    """UI projection of pipeline events."""
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_org_created", "organization_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)

    type = Column(Enum(NotificationTypeEnum, values_callable=_enum_values), nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    priority = Column(
        Enum(NotificationPriorityEnum, values_callable=_enum_values),
        nullable=False,
        default=NotificationPriorityEnum.normal,
    )

    # Entity reference, e.g. {"feed", <id>, <name>}
    entity_type = Column(String, nullable=True)
    entity_id = Column(String, nullable=True)
    entity_name = Column(String, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=True)

    def __str__(self):
        return self.title
