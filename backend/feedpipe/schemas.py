"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field

from .models import (
    WEBHOOK_EVENTS,
    ConnectorKindEnum,
    ConnectorStatusEnum,
    FeedFormatEnum,
    FeedStatusEnum,
    NotificationPriorityEnum,
    NotificationTypeEnum,
    ProductStatusEnum,
    RunStatusEnum,
    RunTriggerEnum,
    ScheduleStatusEnum,
)


# =============================================================================
# HEALTH & ERRORS
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])

    model_config = {
        "json_schema_extra": {
            "example": {"status": "ok"}
        }
    }


class ErrorResponse(BaseModel):
    """Body of every non-2xx response."""

    error: str = Field(description="Error kind", examples=["NotFound"])
    message: str = Field(description="Human-readable reason")
    details: Optional[Any] = Field(default=None, description="Structured context, if any")


# =============================================================================
# CONNECTORS
# =============================================================================

class ConnectorCreate(BaseModel):
    """Payload for installing a connector.

    Credentials by kind:
    - shopify: {"access_token": "shpat_..."}
    - woocommerce: {"consumer_key": "ck_...", "consumer_secret": "cs_..."}
    - csv: none
    """

    kind: ConnectorKindEnum = Field(description="Source kind")
    name: str = Field(min_length=1, description="Display name", examples=["Demo Store"])
    shop_domain: Optional[str] = Field(
        default=None,
        description="Shopify shop domain or WooCommerce store URL",
        examples=["demo.myshopify.com"],
    )
    credentials: Optional[Dict[str, str]] = Field(default=None, description="Source credentials (stored encrypted)")
    currency: Optional[str] = Field(default=None, description="Store currency if known", examples=["USD"])


class ConnectorOut(BaseModel):
    """Connector as returned by the API (credentials are never echoed)."""

    id: UUID
    kind: ConnectorKindEnum
    name: str
    shop_domain: Optional[str] = None
    currency: Optional[str] = None
    status: ConnectorStatusEnum
    last_sync_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SyncStatsOut(BaseModel):
    """Statistics from one ingestion run."""

    created: int = Field(default=0, description="New products added")
    updated: int = Field(default=0, description="Existing products updated")
    failed: int = Field(default=0, description="Products that could not be normalized or stored")
    pages: int = Field(default=0, description="Source pages fetched")
    truncated: bool = Field(default=False, description="Stopped at the page cap with more pages left")
    duration_seconds: float = Field(default=0.0, description="Wall-clock duration")


class SyncResultOut(BaseModel):
    """API response for ingestion endpoints."""

    success: bool = Field(description="Whether the run completed")
    stats: SyncStatsOut = Field(description="Run statistics")
    errors: List[str] = Field(default_factory=list, description="Per-item or fatal error messages")
    message: str = Field(default="", description="Summary message")


class SyncAcceptedResponse(BaseModel):
    connector_id: UUID
    status: str = Field(default="syncing")


# =============================================================================
# PRODUCTS
# =============================================================================

class ProductOut(BaseModel):
    """Normalized product."""

    id: UUID
    connector_id: UUID
    external_id: str
    title: str
    description: Optional[str] = None
    price: Optional[float] = None
    currency: str
    sku: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    variants: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("metadata_", "metadata"),
    )
    inventory_quantity: int = 0
    status: ProductStatusEnum
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ProductListResponse(BaseModel):
    items: List[ProductOut]
    total: int
    page: int
    limit: int


# =============================================================================
# FEEDS
# =============================================================================

class FeedFilterSchema(BaseModel):
    """Declarative include/exclude rules. Zero prices and empty lists mean unset."""

    min_price: Optional[float] = Field(default=None, ge=0, description="Inclusive lower bound")
    max_price: Optional[float] = Field(default=None, ge=0, description="Inclusive upper bound")
    brands: List[str] = Field(default_factory=list, description="Exact brand names (any)")
    categories: List[str] = Field(default_factory=list, description="Exact categories (any)")
    include_tags: List[str] = Field(default_factory=list, description="Product must carry any of these tags")
    exclude_tags: List[str] = Field(default_factory=list, description="Product must carry none of these tags")
    include_collections: List[str] = Field(default_factory=list)
    exclude_collections: List[str] = Field(default_factory=list)
    exclude_product_ids: List[str] = Field(default_factory=list, description="Product UUIDs or external ids")


class FeedCreate(BaseModel):
    """Payload for creating a feed."""

    name: str = Field(min_length=1, description="Unique feed name", examples=["G1"])
    channel: str = Field(description="Target channel", examples=["Google Shopping"])
    format: FeedFormatEnum = Field(description="Output format")
    connector_id: Optional[UUID] = Field(default=None, description="Restrict to one connector; null means any")
    filter: Optional[FeedFilterSchema] = None
    settings: Optional[Dict[str, Any]] = Field(default=None, description="Extra channel settings")

    model_config = {
        "json_schema_extra": {
            "example": {
                "name": "G1",
                "channel": "Google Shopping",
                "format": "xml",
                "filter": {"min_price": 10},
            }
        }
    }


class FeedUpdate(BaseModel):
    """Partial feed update; omitted fields are left unchanged."""

    name: Optional[str] = None
    channel: Optional[str] = None
    format: Optional[FeedFormatEnum] = None
    connector_id: Optional[UUID] = None
    filter: Optional[FeedFilterSchema] = None
    settings: Optional[Dict[str, Any]] = None
    status: Optional[FeedStatusEnum] = None


class FeedOut(BaseModel):
    id: UUID
    name: str
    channel: str
    format: FeedFormatEnum
    connector_id: Optional[UUID] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
    status: FeedStatusEnum
    products_count: int = 0
    last_generated: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class FeedListResponse(BaseModel):
    items: List[FeedOut]
    total: int
    page: int
    limit: int


class RegenerateResponse(BaseModel):
    run_id: UUID = Field(description="GenerationRun created for this request")
    status: str = Field(default="generating")


class GenerationRunOut(BaseModel):
    id: UUID
    feed_id: UUID
    status: RunStatusEnum
    trigger: RunTriggerEnum
    products_processed: int = 0
    products_included: int = 0
    products_excluded: int = 0
    validation_error_count: int = 0
    validation_errors: Optional[List[Dict[str, Any]]] = None
    generation_time_ms: Optional[int] = None
    file_size_bytes: Optional[int] = None
    file_url: Optional[str] = None
    file_format: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RunHistoryResponse(BaseModel):
    items: List[GenerationRunOut]
    total: int
    page: int
    limit: int


class FeedPreviewResponse(BaseModel):
    feed_id: UUID
    format: FeedFormatEnum
    content_type: str
    product_count: int
    content: str
    validation_errors: List[Dict[str, Any]] = Field(default_factory=list)


class FeedAnalyticsResponse(BaseModel):
    feed_id: UUID
    total_runs: int
    completed_runs: int
    failed_runs: int
    success_rate: float = Field(description="Completed share of finished runs, percent")
    average_generation_time_ms: Optional[int] = None
    average_products_included: Optional[float] = None
    products_count: int
    last_generated: Optional[datetime] = None
    last_run_status: Optional[RunStatusEnum] = None
    last_run_at: Optional[datetime] = None
    webhook_deliveries: int = 0


# =============================================================================
# SCHEDULES
# =============================================================================

class ScheduleUpdate(BaseModel):
    enabled: bool = Field(description="Whether the feed regenerates automatically")
    interval_hours: int = Field(ge=1, description="Hours between runs", examples=[6])


class ScheduleOut(BaseModel):
    feed_id: UUID
    enabled: bool = False
    interval_hours: int = 24
    status: ScheduleStatusEnum = ScheduleStatusEnum.active
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None

    model_config = {"from_attributes": True}


class TickResponse(BaseModel):
    selected: int
    completed: int
    failed: int
    skipped: int
    reaped: int


# =============================================================================
# OUTBOUND WEBHOOKS
# =============================================================================

class WebhookUpdate(BaseModel):
    url: str = Field(description="Subscriber URL", examples=["https://sink.example/hook"])
    enabled: bool = True
    events: List[str] = Field(default_factory=lambda: list(WEBHOOK_EVENTS), description="Subset of feed.generated, feed.failed")
    secret: Optional[str] = Field(default=None, description="Enables X-Webhook-Signature; empty string clears it")
    retry_count: Optional[int] = Field(default=None, ge=0, le=10)
    timeout_seconds: Optional[int] = Field(default=None, ge=1, le=120)


class WebhookOut(BaseModel):
    id: UUID
    feed_id: UUID
    url: str
    enabled: bool
    events: List[str]
    has_secret: bool = False
    retry_count: int
    timeout_seconds: int
    last_triggered_at: Optional[datetime] = None
    total_deliveries: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0


class WebhookDeliveryOut(BaseModel):
    id: UUID
    webhook_id: UUID
    feed_id: UUID
    event: str
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    response_time_ms: Optional[int] = None
    success: bool
    error_message: Optional[str] = None
    retry_attempt: int
    delivered_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# =============================================================================
# NOTIFICATIONS & SETTINGS
# =============================================================================

class NotificationOut(BaseModel):
    id: UUID
    type: NotificationTypeEnum
    title: str
    message: str
    priority: NotificationPriorityEnum
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    entity_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("metadata_", "metadata"),
    )
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class NotificationListResponse(BaseModel):
    items: List[NotificationOut]
    unread_count: int


class SettingsPayload(BaseModel):
    """Organization settings document (e.g. storefront_base_url)."""

    settings: Dict[str, Any] = Field(default_factory=dict)
