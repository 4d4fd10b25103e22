"""Product ingestion service functions.

WHAT:
    - Pull sync: page through a connector's source and upsert every product
    - CSV import: the same loop over an uploaded document
    - Webhook application: one parsed inbound event -> one store mutation
    - Connector install: persist and run the credential check

WHY:
    - HTTP endpoints and arq jobs share the same logic
    - Keeps routers thin (request parsing) while services handle business logic

REFERENCES:
    - feedpipe/services/ingestors.py (sources)
    - feedpipe/services/product_store.py (upsert)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from feedpipe import database
from feedpipe.errors import (
    BadPayloadError,
    FeedPipelineError,
    NotFoundConnector,
    StorageError,
    UnauthorizedError,
    UpstreamUnavailableError,
)
from feedpipe.models import Connector, ConnectorKindEnum, ConnectorStatusEnum
from feedpipe.security import encrypt_credentials
from feedpipe.services import product_store
from feedpipe.services.ingestors import (
    CsvIngestor,
    Ingestor,
    WebhookEvent,
    WebhookEventKind,
    build_ingestor,
)
from feedpipe.services.shopify_client import normalize_shop_domain
from feedpipe.telemetry import capture_exception

logger = logging.getLogger(__name__)

# Hard cap per run to bound latency; larger catalogs are truncated
MAX_PAGES = 10


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

@dataclass
class SyncStats:
    """Statistics from one ingestion run."""
    created: int = 0
    updated: int = 0
    failed: int = 0
    pages: int = 0
    truncated: bool = False
    duration_seconds: float = 0.0


@dataclass
class SyncResult:
    """Response from an ingestion run."""
    success: bool
    stats: SyncStats
    errors: List[str] = field(default_factory=list)
    message: str = ""


# =============================================================================
# CONNECTORS
# =============================================================================

def get_connector(db: Session, organization_id: UUID, connector_id: UUID) -> Connector:
    connector = (
        db.query(Connector)
        .filter(Connector.id == connector_id, Connector.organization_id == organization_id)
        .first()
    )
    if connector is None:
        raise NotFoundConnector(f"Connector {connector_id} not found")
    return connector


def find_shopify_connector(db: Session, shop_domain: str) -> Connector:
    """Resolve the connector for an inbound Shopify webhook.

    Raises:
        NotFoundConnector: shop is not connected
    """
    domain = normalize_shop_domain(shop_domain)
    connector = (
        db.query(Connector)
        .filter(Connector.kind == ConnectorKindEnum.shopify, Connector.shop_domain == domain)
        .order_by(Connector.created_at.desc())
        .first()
    )
    if connector is None:
        raise NotFoundConnector(f"Shop {domain} is not connected")
    return connector


async def install_connector(
    db: Session,
    organization_id: UUID,
    *,
    kind: ConnectorKindEnum,
    name: str,
    shop_domain: Optional[str] = None,
    credentials: Optional[Dict[str, Any]] = None,
    currency: Optional[str] = None,
    ingestor: Optional[Ingestor] = None,
) -> Connector:
    """Create a connector and run its credential check.

    WHAT:
        Persists the connector as `pending`, then moves it to `active` when the
        source accepts the credentials. A failed check keeps it `pending` with
        `last_sync_error` set; the caller still gets the record.

    Raises:
        BadPayloadError: missing shop domain or credentials for remote sources
    """
    if kind != ConnectorKindEnum.csv:
        if not shop_domain:
            raise BadPayloadError("shop_domain is required for remote connectors")
        if not credentials:
            raise BadPayloadError("credentials are required for remote connectors")

    if kind == ConnectorKindEnum.shopify:
        shop_domain = normalize_shop_domain(shop_domain)

    context = f"{kind.value}:{shop_domain or name}"
    connector = Connector(
        organization_id=organization_id,
        kind=kind,
        name=name,
        shop_domain=shop_domain,
        credentials_enc=encrypt_credentials(credentials or {}, context=context),
        currency=currency,
        status=ConnectorStatusEnum.pending,
    )
    db.add(connector)
    db.commit()
    db.refresh(connector)

    if kind == ConnectorKindEnum.csv:
        connector.status = ConnectorStatusEnum.active
        db.commit()
        return connector

    try:
        ingestor = ingestor or build_ingestor(connector)
        info = await ingestor.verify()
        if info.get("currency"):
            connector.currency = info["currency"]
        connector.status = ConnectorStatusEnum.active
        connector.last_sync_error = None
        logger.info("[INGEST] Connector %s (%s) verified", connector.id, context)
    except (UpstreamUnavailableError, UnauthorizedError) as e:
        connector.last_sync_error = e.message
        logger.warning("[INGEST] Credential check failed for %s: %s", context, e.message)

    db.commit()
    db.refresh(connector)
    return connector


# =============================================================================
# PULL SYNC
# =============================================================================

async def _run_ingest(
    db: Session,
    connector: Connector,
    ingestor: Ingestor,
    *,
    verify: bool,
) -> SyncResult:
    """Shared page loop for pull sync and CSV import."""
    start = time.time()
    stats = SyncStats()
    errors: List[str] = []

    try:
        if verify:
            info = await ingestor.verify()
            if info.get("currency"):
                connector.currency = info["currency"]
            connector.status = ConnectorStatusEnum.active
            db.commit()

        cursor: Optional[str] = None
        while True:
            batch, next_cursor = await ingestor.fetch_page(cursor)
            stats.pages += 1

            for product in batch:
                try:
                    result = product_store.upsert_product(db, connector, product)
                    db.commit()
                except StorageError as e:
                    stats.failed += 1
                    errors.append(e.message)
                    logger.error("[INGEST] %s", e.message)
                    continue
                if result.created:
                    stats.created += 1
                else:
                    stats.updated += 1

            if not next_cursor:
                break
            if stats.pages >= MAX_PAGES:
                stats.truncated = True
                logger.warning(
                    "[INGEST] Page cap (%d) reached for connector %s; remaining products not synced",
                    MAX_PAGES, connector.id,
                )
                break
            cursor = next_cursor

    except FeedPipelineError as e:
        stats.duration_seconds = time.time() - start
        connector.last_sync_error = e.message
        db.commit()
        logger.error("[INGEST] Sync failed for connector %s: %s", connector.id, e.message)
        return SyncResult(
            success=False,
            stats=stats,
            errors=errors + ingestor.errors + [e.message],
            message=f"Sync failed: {e.message}",
        )

    stats.failed += len(ingestor.errors)
    errors.extend(ingestor.errors)
    stats.duration_seconds = time.time() - start

    connector.last_sync_at = datetime.utcnow()
    connector.last_sync_error = "; ".join(errors[:3]) if errors else None
    db.commit()

    message = f"Synced {stats.created + stats.updated} products ({stats.created} new, {stats.updated} updated)"
    if stats.truncated:
        message += f"; stopped after {MAX_PAGES} pages"
    logger.info("[INGEST] Connector %s: %s", connector.id, message)
    return SyncResult(success=True, stats=stats, errors=errors, message=message)


async def sync_connector_products(
    db: Session,
    organization_id: UUID,
    connector_id: UUID,
    *,
    ingestor: Optional[Ingestor] = None,
) -> SyncResult:
    """Pull every product page from a remote connector into the store.

    Args:
        db: Database session
        organization_id: Owning organization
        connector_id: Connector to sync
        ingestor: Pre-built ingestor (tests); built from the connector otherwise

    Returns:
        SyncResult; upstream failures come back as success=False, not raised

    Raises:
        NotFoundConnector: unknown connector
        BadPayloadError: CSV connector or inactive connector
    """
    connector = get_connector(db, organization_id, connector_id)
    if connector.kind == ConnectorKindEnum.csv:
        raise BadPayloadError("CSV connectors are populated through the import endpoint")
    if connector.status == ConnectorStatusEnum.inactive:
        raise BadPayloadError("Connector is inactive; reinstall it before syncing")

    ingestor = ingestor or build_ingestor(connector)
    logger.info("[INGEST] Starting pull sync for connector %s (%s)", connector.id, connector.kind.value)
    return await _run_ingest(db, connector, ingestor, verify=True)


async def import_csv(db: Session, organization_id: UUID, connector_id: UUID, csv_text: str) -> SyncResult:
    """Import an uploaded CSV document into a CSV connector.

    Raises:
        NotFoundConnector: unknown connector
        BadPayloadError: not a CSV connector, or required headers missing
    """
    connector = get_connector(db, organization_id, connector_id)
    if connector.kind != ConnectorKindEnum.csv:
        raise BadPayloadError("CSV import requires a csv connector")

    ingestor = CsvIngestor(csv_text)
    # Header problems reject the whole document
    await ingestor.fetch_page(None)
    ingestor.errors.clear()
    return await _run_ingest(db, connector, ingestor, verify=False)


async def sync_connector_detached(organization_id: UUID, connector_id: UUID) -> Optional[SyncResult]:
    """Pull sync in a session of its own (background tasks, arq jobs).

    Never raises; failures are logged and captured.
    """
    with database.get_sync_session() as db:
        try:
            return await sync_connector_products(db, organization_id, connector_id)
        except FeedPipelineError as e:
            logger.error("[INGEST] Background sync of connector %s rejected: %s", connector_id, e.message)
        except Exception as e:
            db.rollback()
            logger.error("[INGEST] Background sync of connector %s crashed: %s", connector_id, e)
            capture_exception(e, extra={"operation": "connector_sync", "connector_id": str(connector_id)})
    return None


# =============================================================================
# INBOUND WEBHOOKS
# =============================================================================

def apply_webhook_event(db: Session, connector: Connector, event: WebhookEvent) -> Dict[str, Any]:
    """Apply one parsed inbound webhook to the store and commit.

    Returns:
        Small result dict echoed in the webhook response
    """
    if event.kind == WebhookEventKind.product_upsert:
        result = product_store.upsert_product(
            db, connector, event.product, merge_inventory=event.merge_inventory,
        )
        db.commit()
        return {
            "action": "created" if result.created else "updated",
            "product_id": str(result.product_id),
            "external_id": event.product.external_id,
        }

    if event.kind == WebhookEventKind.product_delete:
        found = product_store.mark_product_inactive(db, connector, event.external_id)
        db.commit()
        return {"action": "deactivated" if found else "ignored", "external_id": event.external_id}

    if event.kind == WebhookEventKind.inventory_update:
        updated = product_store.apply_inventory_level(
            db, connector, event.inventory_item_id, event.location_id, event.available,
        )
        db.commit()
        return {"action": "inventory_updated", "products_updated": updated}

    if event.kind == WebhookEventKind.uninstall:
        count = product_store.deactivate_connector(db, connector)
        db.commit()
        return {"action": "uninstalled", "products_deactivated": count}

    raise BadPayloadError(f"Unhandled webhook event {event.kind}")
