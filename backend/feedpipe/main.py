"""FastAPI application entrypoint.

Configures Sentry, CORS, domain error handlers, includes routers, mounts the
read-only admin panel and exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqladmin import Admin, ModelView
from sqlalchemy import text

from .database import engine
from .deps import get_settings
from .errors import register_exception_handlers
from .routers import connectors as connectors_router
from .routers import feeds as feeds_router
from .routers import notifications as notifications_router
from .routers import products as products_router
from .routers import settings as settings_router
from .routers import shopify_webhooks as shopify_webhooks_router
from .telemetry import init_sentry
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401

logging.basicConfig(level=get_settings().LOG_LEVEL.upper())
logger = logging.getLogger(__name__)


# SQLAdmin ModelView classes for each model
# Display names come from the __str__ methods in models.py.
# Views are read-only: every mutation goes through the services.

class _ReadOnlyView(ModelView):
    can_create = False
    can_edit = False
    can_delete = False


class ConnectorAdmin(_ReadOnlyView, model=models.Connector):
    column_list = [models.Connector.id, models.Connector.kind, models.Connector.name, models.Connector.shop_domain, models.Connector.status, models.Connector.last_sync_at]
    # Credentials never leave the database
    column_details_exclude_list = [models.Connector.credentials_enc]
    column_searchable_list = ["name", "shop_domain"]
    column_sortable_list = ["kind", "name", "status", "last_sync_at"]
    name = "Connector"
    name_plural = "Connectors"
    icon = "fa-solid fa-plug"


class ProductAdmin(_ReadOnlyView, model=models.Product):
    column_list = [models.Product.id, models.Product.external_id, models.Product.title, models.Product.price, models.Product.currency, models.Product.inventory_quantity, models.Product.status, models.Product.connector]
    column_searchable_list = ["title", "external_id", "sku", "brand"]
    column_sortable_list = ["title", "price", "inventory_quantity", "status", "created_at"]
    name = "Product"
    name_plural = "Products"
    icon = "fa-solid fa-box"


class FeedAdmin(_ReadOnlyView, model=models.Feed):
    column_list = [models.Feed.id, models.Feed.name, models.Feed.channel, models.Feed.format, models.Feed.status, models.Feed.products_count, models.Feed.last_generated]
    column_searchable_list = ["name", "channel"]
    column_sortable_list = ["name", "channel", "status", "last_generated"]
    name = "Feed"
    name_plural = "Feeds"
    icon = "fa-solid fa-rss"


class GenerationRunAdmin(_ReadOnlyView, model=models.GenerationRun):
    """Run history; `validation_errors` is visible in the detail view."""
    column_list = [models.GenerationRun.id, models.GenerationRun.feed, models.GenerationRun.status, models.GenerationRun.trigger, models.GenerationRun.products_included, models.GenerationRun.generation_time_ms, models.GenerationRun.started_at]
    column_searchable_list = ["error_message"]
    column_sortable_list = ["status", "trigger", "started_at", "generation_time_ms"]
    name = "Generation Run"
    name_plural = "Generation Runs"
    icon = "fa-solid fa-gears"


class WebhookDeliveryAdmin(_ReadOnlyView, model=models.WebhookDelivery):
    column_list = [models.WebhookDelivery.id, models.WebhookDelivery.feed, models.WebhookDelivery.event, models.WebhookDelivery.status_code, models.WebhookDelivery.success, models.WebhookDelivery.retry_attempt, models.WebhookDelivery.delivered_at]
    column_sortable_list = ["event", "status_code", "success", "delivered_at"]
    name = "Webhook Delivery"
    name_plural = "Webhook Deliveries"
    icon = "fa-solid fa-paper-plane"


class NotificationAdmin(_ReadOnlyView, model=models.Notification):
    column_list = [models.Notification.id, models.Notification.type, models.Notification.priority, models.Notification.title, models.Notification.is_read, models.Notification.created_at]
    column_searchable_list = ["title", "message"]
    column_sortable_list = ["type", "priority", "is_read", "created_at"]
    name = "Notification"
    name_plural = "Notifications"
    icon = "fa-solid fa-bell"


def create_app() -> FastAPI:
    settings = get_settings()
    init_sentry()

    app = FastAPI(
        title="Feed Pipeline API",
        description="""
        Product catalog ingestion and channel feed generation.

        This API provides endpoints for:
        - Connectors: Shopify, WooCommerce and CSV product sources
        - Inbound Shopify webhooks keeping products fresh
        - Feeds: Google Shopping XML, Facebook CSV, Instagram JSON
        - Regeneration runs, schedules, history and analytics
        - Outbound webhooks and in-app notifications

        ## Errors
        Every non-2xx response carries `{error, message, details?}`.
        """,
        version="1.0.0",
    )

    # CORS configuration
    cors_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # Include all API routers
    app.include_router(connectors_router.router)
    app.include_router(products_router.router)
    app.include_router(feeds_router.router)
    app.include_router(notifications_router.router)
    app.include_router(settings_router.router)
    app.include_router(shopify_webhooks_router.router)  # Inbound catalog webhooks

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="""
        Simple health check endpoint to verify the API is running.

        This endpoint:
        - Does not require authentication
        - Returns basic service status
        - Can be used for load balancer health checks
        """,
    )
    def health():
        return schemas.HealthResponse(status="ok")

    @app.on_event("startup")
    async def startup_event():
        """Fail fast when the database cannot be opened."""
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        logger.info("[STARTUP] Database connection OK (%s)", settings.ENVIRONMENT)

    # Initialize SQLAdmin (read-only views)
    admin = Admin(app, engine, title="Feed Pipeline Admin")
    admin.add_view(ConnectorAdmin)
    admin.add_view(ProductAdmin)
    admin.add_view(FeedAdmin)
    admin.add_view(GenerationRunAdmin)
    admin.add_view(WebhookDeliveryAdmin)
    admin.add_view(NotificationAdmin)

    return app


app = create_app()
