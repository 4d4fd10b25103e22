"""Per-source ingestors.

WHAT:
    One ingestor per connector kind, all exposing the same capability:
    - `verify()`: credential check, returns source info (e.g. shop currency)
    - `fetch_page(cursor)`: `(canonical products, next_cursor or None)`
    - `parse_webhook(topic, body)`: `WebhookEvent`

WHY:
    Pull sync and inbound webhooks produce the same upsert; the sync loop and
    the webhook router only talk to this interface, never to source payloads.

REFERENCES:
    - feedpipe/services/product_normalizer.py
    - feedpipe/services/product_sync_service.py (consumer)
"""

from __future__ import annotations

import csv
import enum
import io
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx

from feedpipe.errors import BadPayloadError, UnauthorizedError
from feedpipe.models import Connector, ConnectorKindEnum
from feedpipe.security import decrypt_credentials
from feedpipe.services.product_normalizer import (
    CanonicalProduct,
    normalize_csv_row,
    normalize_shopify_product,
    normalize_woocommerce_product,
)
from feedpipe.services.shopify_client import ShopifyClient
from feedpipe.services.woocommerce_client import WooCommerceClient

logger = logging.getLogger(__name__)


class WebhookEventKind(str, enum.Enum):
    product_upsert = "product_upsert"
    product_delete = "product_delete"
    inventory_update = "inventory_update"
    uninstall = "uninstall"


@dataclass
class WebhookEvent:
    """Parsed inbound webhook, independent of the source."""
    kind: WebhookEventKind
    topic: str
    product: Optional[CanonicalProduct] = None
    external_id: Optional[str] = None
    merge_inventory: bool = False
    inventory_item_id: Optional[str] = None
    location_id: Optional[str] = None
    available: Optional[int] = None


class Ingestor(ABC):
    """Common interface of every product source."""

    kind: ConnectorKindEnum

    def __init__(self) -> None:
        # Per-item normalization failures collected during fetch_page
        self.errors: List[str] = []

    async def verify(self) -> Dict[str, Any]:
        """Check credentials; returns source details. Sources without credentials pass."""
        return {}

    @abstractmethod
    async def fetch_page(self, cursor: Optional[str] = None) -> Tuple[List[CanonicalProduct], Optional[str]]:
        ...

    def parse_webhook(self, topic: str, body: Dict[str, Any]) -> WebhookEvent:
        raise BadPayloadError(f"{self.kind.value} connectors do not accept webhooks")


# =============================================================================
# SHOPIFY
# =============================================================================

class ShopifyIngestor(Ingestor):
    kind = ConnectorKindEnum.shopify

    def __init__(self, client: ShopifyClient, currency: Optional[str] = None):
        super().__init__()
        self.client = client
        self.currency = currency

    async def verify(self) -> Dict[str, Any]:
        shop = await self.client.get_shop()
        if shop.get("currency"):
            self.currency = shop["currency"]
        return {"currency": self.currency, "name": shop.get("name")}

    async def fetch_page(self, cursor: Optional[str] = None) -> Tuple[List[CanonicalProduct], Optional[str]]:
        raw_products, next_cursor = await self.client.get_products(cursor)
        batch = []
        for raw in raw_products:
            try:
                batch.append(normalize_shopify_product(raw, self.currency))
            except BadPayloadError as e:
                logger.warning("[INGEST] Skipping Shopify product: %s", e.message)
                self.errors.append(e.message)
        return batch, next_cursor

    def parse_webhook(self, topic: str, body: Dict[str, Any]) -> WebhookEvent:
        if topic in ("products/create", "products/update"):
            return WebhookEvent(
                kind=WebhookEventKind.product_upsert,
                topic=topic,
                product=normalize_shopify_product(body, self.currency),
                merge_inventory=topic == "products/update",
            )
        if topic == "products/delete":
            if body.get("id") in (None, ""):
                raise BadPayloadError("products/delete payload has no id")
            return WebhookEvent(kind=WebhookEventKind.product_delete, topic=topic, external_id=str(body["id"]))
        if topic in ("inventory_levels/update", "inventory_levels/connect"):
            if body.get("inventory_item_id") is None or body.get("location_id") is None:
                raise BadPayloadError("inventory level payload requires inventory_item_id and location_id")
            try:
                available = int(body.get("available") or 0)
            except (TypeError, ValueError):
                raise BadPayloadError("inventory level 'available' is not an integer")
            return WebhookEvent(
                kind=WebhookEventKind.inventory_update,
                topic=topic,
                inventory_item_id=str(body["inventory_item_id"]),
                location_id=str(body["location_id"]),
                available=available,
            )
        if topic == "app/uninstalled":
            return WebhookEvent(kind=WebhookEventKind.uninstall, topic=topic)
        raise BadPayloadError(f"Unsupported Shopify topic '{topic}'")


# =============================================================================
# WOOCOMMERCE
# =============================================================================

class WooCommerceIngestor(Ingestor):
    kind = ConnectorKindEnum.woocommerce

    def __init__(self, client: WooCommerceClient, currency: Optional[str] = None):
        super().__init__()
        self.client = client
        self.currency = currency

    async def verify(self) -> Dict[str, Any]:
        if not await self.client.validate_credentials():
            raise UnauthorizedError("WooCommerce rejected the consumer key/secret")
        return {"currency": self.currency}

    async def fetch_page(self, cursor: Optional[str] = None) -> Tuple[List[CanonicalProduct], Optional[str]]:
        raw_products, next_cursor = await self.client.get_products(cursor)
        batch = []
        for raw in raw_products:
            try:
                batch.append(normalize_woocommerce_product(raw, self.currency))
            except BadPayloadError as e:
                logger.warning("[INGEST] Skipping WooCommerce product: %s", e.message)
                self.errors.append(e.message)
        return batch, next_cursor

    def parse_webhook(self, topic: str, body: Dict[str, Any]) -> WebhookEvent:
        if topic in ("product.created", "product.updated"):
            return WebhookEvent(
                kind=WebhookEventKind.product_upsert,
                topic=topic,
                product=normalize_woocommerce_product(body, self.currency),
                merge_inventory=topic == "product.updated",
            )
        if topic == "product.deleted":
            if body.get("id") in (None, ""):
                raise BadPayloadError("product.deleted payload has no id")
            return WebhookEvent(kind=WebhookEventKind.product_delete, topic=topic, external_id=str(body["id"]))
        raise BadPayloadError(f"Unsupported WooCommerce topic '{topic}'")


# =============================================================================
# CSV
# =============================================================================

REQUIRED_CSV_HEADERS = ("title", "price")


class CsvIngestor(Ingestor):
    """Single-page ingestor over an uploaded CSV document.

    Row errors are collected in `errors` (``Row N: ...``) and never abort
    the import.
    """

    kind = ConnectorKindEnum.csv

    def __init__(self, csv_text: str, timestamp: Optional[int] = None):
        super().__init__()
        self.csv_text = csv_text
        self.timestamp = timestamp or int(time.time())

    async def fetch_page(self, cursor: Optional[str] = None) -> Tuple[List[CanonicalProduct], Optional[str]]:
        reader = csv.DictReader(io.StringIO(self.csv_text.lstrip("\ufeff")))
        headers = [h.strip().lower() for h in (reader.fieldnames or [])]
        missing = [h for h in REQUIRED_CSV_HEADERS if h not in headers]
        if missing:
            raise BadPayloadError(
                f"CSV is missing required columns: {', '.join(missing)}",
                details={"found_headers": headers},
            )

        batch = []
        for row_number, row in enumerate(reader, start=1):
            normalized = {
                (key or "").strip().lower(): (value or "")
                for key, value in row.items()
                if key is not None
            }
            try:
                batch.append(normalize_csv_row(normalized, row_number, self.timestamp))
            except BadPayloadError as e:
                self.errors.append(e.message)
        return batch, None


# =============================================================================
# FACTORY
# =============================================================================

def build_ingestor(
    connector: Connector,
    *,
    csv_text: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Ingestor:
    """Create the ingestor matching a connector's kind."""
    context = f"{connector.kind.value}:{connector.shop_domain or connector.id}"

    if connector.kind == ConnectorKindEnum.shopify:
        credentials = decrypt_credentials(connector.credentials_enc, context=context)
        client = ShopifyClient(
            shop_domain=connector.shop_domain or "",
            access_token=credentials.get("access_token", ""),
            transport=transport,
        )
        return ShopifyIngestor(client, currency=connector.currency)

    if connector.kind == ConnectorKindEnum.woocommerce:
        credentials = decrypt_credentials(connector.credentials_enc, context=context)
        client = WooCommerceClient(
            store_url=connector.shop_domain or "",
            consumer_key=credentials.get("consumer_key", ""),
            consumer_secret=credentials.get("consumer_secret", ""),
            transport=transport,
        )
        return WooCommerceIngestor(client, currency=connector.currency)

    if csv_text is None:
        raise BadPayloadError("CSV connectors ingest through the import endpoint")
    return CsvIngestor(csv_text)
