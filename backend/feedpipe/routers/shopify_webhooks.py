"""Inbound Shopify webhooks for catalog changes.

WHAT:
    Receives Shopify product, inventory and app webhooks and applies each one
    to the product store:
    1. products/create, products/update - upsert (update preserves inventory
       when the payload drops inventory_management)
    2. products/delete - soft delete (status -> inactive)
    3. inventory_levels/update - per-location stock, totals pushed to variants
    4. app/uninstalled - connector and all its products -> inactive

WHY:
    - Keeps products fresh between pull syncs
    - Redelivered webhooks are harmless: every mutation is an idempotent upsert
    - Feeds built from the connector are queued for a `webhook` regeneration
      after every catalog change (one queued job per feed)

SECURITY:
    Every request is verified against `X-Shopify-Hmac-Sha256` over the raw body
    before anything is parsed. The secret is SHOPIFY_WEBHOOK_SECRET, falling back
    to SHOPIFY_CLIENT_SECRET. With neither configured (development) verification
    is skipped with a warning.

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks
    - feedpipe/services/ingestors.py (ShopifyIngestor.parse_webhook)
    - feedpipe/services/product_sync_service.py (apply_webhook_event)
"""

import json
import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import get_settings
from ..errors import BadPayloadError, UnauthorizedError
from ..models import RunTriggerEnum
from ..security import verify_hmac_signature
from ..services import feed_manager, product_sync_service
from ..services.ingestors import build_ingestor
from ..workers.arq_enqueue import enqueue_feed_regeneration

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/shopify", tags=["Shopify Webhooks"])

SUPPORTED_RESOURCES = ("products", "inventory_levels", "app")


# =============================================================================
# HMAC VERIFICATION
# =============================================================================

def _webhook_secret() -> Optional[str]:
    settings = get_settings()
    return settings.SHOPIFY_WEBHOOK_SECRET or settings.SHOPIFY_CLIENT_SECRET


def verify_shopify_webhook(request_body: bytes, hmac_header: Optional[str]) -> bool:
    """Verify that webhook request came from Shopify using HMAC.

    WHAT: Validates webhook signature using shared secret
    WHY: Prevent unauthorized webhook calls from mutating the catalog

    Args:
        request_body: Raw request body bytes
        hmac_header: X-Shopify-Hmac-Sha256 header value

    Returns:
        True if signature is valid (or no secret is configured), False otherwise
    """
    secret = _webhook_secret()
    if not secret:
        logger.warning("[SHOPIFY_WEBHOOK] No webhook secret configured; skipping verification")
        return True

    if not hmac_header:
        logger.warning("[SHOPIFY_WEBHOOK] Missing HMAC header")
        return False

    is_valid = verify_hmac_signature(secret, request_body, hmac_header)
    if not is_valid:
        logger.warning("[SHOPIFY_WEBHOOK] Invalid HMAC signature")
    return is_valid


# =============================================================================
# FEED REFRESH
# =============================================================================

def _catalog_changed(result: Dict[str, Any]) -> bool:
    action = result.get("action")
    if action == "ignored":
        return False
    if action == "inventory_updated":
        return result.get("products_updated", 0) > 0
    return True


async def _enqueue_feed_refresh(organization_id: UUID, feed_ids: List[UUID]) -> None:
    """Queue one webhook-triggered regeneration per feed.

    A feed already queued is skipped by its job id. With Redis unavailable the
    feeds wait for their next manual or scheduled run.
    """
    try:
        for feed_id in feed_ids:
            await enqueue_feed_regeneration(organization_id, feed_id, trigger=RunTriggerEnum.webhook.value)
    except Exception as e:
        logger.warning("[SHOPIFY_WEBHOOK] Could not enqueue feed regeneration: %s", e)


# =============================================================================
# ENDPOINT
# =============================================================================

@router.post("/{resource}/{action}")
async def receive_shopify_webhook(
    resource: str,
    action: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Apply one Shopify webhook.

    Headers:
        X-Shopify-Hmac-Sha256: base64 HMAC-SHA256 of the raw body
        X-Shopify-Shop-Domain: shop the event belongs to
        X-Shopify-Topic: e.g. products/update (defaults to the path)

    Returns:
        {"status": "ok", "topic": ..., "action": ..., ...}
    """
    body = await request.body()

    if not verify_shopify_webhook(body, request.headers.get("X-Shopify-Hmac-Sha256")):
        raise UnauthorizedError("Invalid webhook signature")

    if resource not in SUPPORTED_RESOURCES:
        raise BadPayloadError(f"Unsupported webhook resource '{resource}'")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise BadPayloadError("Webhook body is not valid JSON")
    if not isinstance(payload, dict):
        raise BadPayloadError("Webhook body must be a JSON object")

    shop_domain = request.headers.get("X-Shopify-Shop-Domain") or payload.get("domain") or ""
    if not shop_domain:
        raise BadPayloadError("Missing X-Shopify-Shop-Domain header")

    topic = request.headers.get("X-Shopify-Topic") or f"{resource}/{action}"
    logger.info("[SHOPIFY_WEBHOOK] %s from %s", topic, shop_domain)

    connector = product_sync_service.find_shopify_connector(db, shop_domain)
    event = build_ingestor(connector).parse_webhook(topic, payload)
    result = product_sync_service.apply_webhook_event(db, connector, event)

    if _catalog_changed(result):
        feed_ids = [feed.id for feed in feed_manager.feeds_for_connector(db, connector)]
        if feed_ids:
            background_tasks.add_task(_enqueue_feed_refresh, connector.organization_id, feed_ids)
            result["feeds_queued"] = len(feed_ids)

    logger.info("[SHOPIFY_WEBHOOK] %s applied for connector %s: %s", topic, connector.id, result.get("action"))
    return {"status": "ok", "topic": topic, **result}
