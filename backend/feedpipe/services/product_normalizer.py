"""Source payload -> canonical product normalization.

WHAT:
    Pure functions turning Shopify, WooCommerce and CSV records into
    `CanonicalProduct`, plus the variant inventory merge policy applied on
    update webhooks.

WHY:
    - Pull sync and inbound webhooks must produce the same upsert, so the
      mapping lives in one place shared by every ingestor
    - No I/O here: everything is unit-testable without a database

REFERENCES:
    - https://shopify.dev/docs/api/admin-rest/2023-10/resources/product
    - https://woocommerce.github.io/woocommerce-rest-api-docs/#product-properties
    - feedpipe/services/product_store.py (consumer)
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from feedpipe.errors import BadPayloadError
from feedpipe.models import ProductStatusEnum


DEFAULT_CURRENCY = "USD"
NOT_MANAGED = "not_managed"

_GTIN_RE = re.compile(r"^\d{12,14}$")


# =============================================================================
# CANONICAL MODEL
# =============================================================================

@dataclass
class CanonicalProduct:
    """Source-independent product record ready for the Product Store."""
    external_id: str
    title: str
    description: str = ""
    price: Optional[Decimal] = None
    currency: Optional[str] = None
    sku: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    images: List[str] = field(default_factory=list)
    variants: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: ProductStatusEnum = ProductStatusEnum.active

    @property
    def inventory_quantity(self) -> int:
        return total_inventory(self.variants)


# =============================================================================
# HELPERS
# =============================================================================

def parse_price(value: Any) -> Optional[Decimal]:
    """Parse a price from a string or number; empty or invalid gives None."""
    if value is None or value == "":
        return None
    try:
        price = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not price.is_finite():
        return None
    return price.quantize(Decimal("0.01"))


def split_tags(raw: Any) -> List[str]:
    """Split a comma-separated tag string (or pass a list through), trimming blanks."""
    if not raw:
        return []
    if isinstance(raw, list):
        items = raw
    else:
        items = str(raw).split(",")
    return [str(tag).strip() for tag in items if str(tag).strip()]


def extract_gtin(variants: List[Dict[str, Any]]) -> Optional[str]:
    """First variant barcode that is 12-14 digits."""
    for variant in variants:
        barcode = str(variant.get("barcode") or "").strip()
        if _GTIN_RE.match(barcode):
            return barcode
    return None


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def total_inventory(variants: List[Dict[str, Any]]) -> int:
    """Summed stock across variants; oversold (negative) variants count as zero."""
    return sum(max(_as_int(v.get("inventory_quantity")), 0) for v in variants)


def primary_variant(variants: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Variant at position 1, else the first one."""
    if not variants:
        return None
    for variant in variants:
        if _as_int(variant.get("position")) == 1:
            return variant
    return variants[0]


def build_fallback_seo(title: str, description: str, category: str, vendor: str) -> Dict[str, Any]:
    """Rule-based SEO fields stored on every ingest.

    These are not AI enhancements; `seo_enhanced` stays False until the
    optimization collaborator rewrites them.
    """
    title = title or ""
    description = description or ""
    category = category or ""
    vendor = vendor or ""

    seo_title = title if len(title) <= 60 else title[:57] + "..."

    if not description:
        seo_description = (
            f"Shop {title} online. High-quality {category} from {vendor}. "
            "Fast shipping and great customer service."
        )
    elif len(description) > 160:
        seo_description = description[:157] + "..."
    else:
        seo_description = description

    keywords = [title.lower(), category.lower(), vendor.lower(), "online shopping", "buy online"]
    if category:
        keywords.append(f"{category.lower()} for sale")
    keywords = [k for k in keywords if k]

    return {
        "seo_title": seo_title,
        "seo_description": seo_description,
        "keywords": keywords,
        "meta_keywords": ", ".join(keywords),
        "alt_text": f"{title} - {category} product from {vendor}",
        "schema_markup": {
            "@context": "https://schema.org",
            "@type": "Product",
            "name": title,
            "description": description,
            "brand": {"@type": "Brand", "name": vendor},
            "category": category,
        },
        "seo_enhanced": False,
    }


# =============================================================================
# INVENTORY MERGE POLICY
# =============================================================================

def merge_variant_inventory(
    new_variants: List[Dict[str, Any]],
    existing_variants: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """Merge stored inventory into an incoming variant list.

    WHAT:
        For each incoming variant matched by id to a stored one:
        1. empty `inventory_management` inherits the stored management and policy
        2. effective management empty or `not_managed`, or a payload that
           did not declare management itself, keeps the stored quantity
           when it is > 0
        3. otherwise the incoming quantity wins (including 0)

    WHY:
        products/update webhooks often omit inventory fields; trusting them
        would zero out stock on metadata-only edits.

    Args:
        new_variants: Variants from the incoming payload
        existing_variants: Variants currently stored for the product

    Returns:
        New list of variant dicts (inputs are not mutated)
    """
    existing_by_id = {
        str(v.get("id")): v for v in existing_variants if v.get("id") is not None
    }

    merged: List[Dict[str, Any]] = []
    for variant in new_variants:
        result = copy.deepcopy(variant)
        existing = existing_by_id.get(str(variant.get("id")))
        if existing is None:
            merged.append(result)
            continue

        incoming_management = result.get("inventory_management") or ""
        if not incoming_management:
            result["inventory_management"] = existing.get("inventory_management") or ""
        if not result.get("inventory_policy") and existing.get("inventory_policy"):
            result["inventory_policy"] = existing.get("inventory_policy")

        effective_management = result.get("inventory_management") or ""
        existing_quantity = _as_int(existing.get("inventory_quantity"))
        # The incoming quantity is only authoritative when the payload itself
        # declares managed inventory and carries a quantity.
        untrusted = (
            effective_management in ("", NOT_MANAGED)
            or not incoming_management
            or result.get("inventory_quantity") is None
        )
        if untrusted:
            if existing_quantity > 0 or result.get("inventory_quantity") is None:
                result["inventory_quantity"] = existing_quantity

        merged.append(result)

    return merged


# =============================================================================
# SHOPIFY
# =============================================================================

_SHOPIFY_STATUS_MAP = {
    "active": ProductStatusEnum.active,
    "archived": ProductStatusEnum.archived,
    "draft": ProductStatusEnum.draft,
}


def normalize_shopify_product(payload: Dict[str, Any], shop_currency: Optional[str] = None) -> CanonicalProduct:
    """Map a Shopify REST product (sync page item or webhook body) to the canonical model.

    Raises:
        BadPayloadError: if the payload has no product id
    """
    if not isinstance(payload, dict) or payload.get("id") in (None, ""):
        raise BadPayloadError("Shopify product payload has no id")

    title = payload.get("title") or ""
    description = payload.get("body_html") or ""
    vendor = payload.get("vendor") or ""
    product_type = payload.get("product_type") or ""

    images_raw = payload.get("images") or []
    images_sorted = sorted(
        (img for img in images_raw if isinstance(img, dict) and img.get("src")),
        key=lambda img: _as_int(img.get("position")) or 0,
    )
    images = [img["src"] for img in images_sorted]
    if not images and isinstance(payload.get("image"), dict) and payload["image"].get("src"):
        images = [payload["image"]["src"]]

    variants = [copy.deepcopy(v) for v in (payload.get("variants") or []) if isinstance(v, dict)]
    primary = primary_variant(variants)

    tags = split_tags(payload.get("tags"))
    metadata = {
        "handle": payload.get("handle") or "",
        "tags": tags,
        "collections": split_tags(payload.get("collections")),
        "product_type": product_type,
        "shopify_status": payload.get("status") or "",
        "gtin": extract_gtin(variants),
        "source": "shopify",
    }
    metadata.update(build_fallback_seo(title, description, product_type, vendor))

    return CanonicalProduct(
        external_id=str(payload["id"]),
        title=title,
        description=description,
        price=parse_price(primary.get("price")) if primary else None,
        currency=shop_currency,
        sku=(primary.get("sku") or None) if primary else None,
        brand=vendor or None,
        category=product_type or None,
        images=images,
        variants=variants,
        metadata=metadata,
        status=_SHOPIFY_STATUS_MAP.get((payload.get("status") or "active").lower(), ProductStatusEnum.active),
    )


# =============================================================================
# WOOCOMMERCE
# =============================================================================

_WOO_STATUS_MAP = {
    "publish": ProductStatusEnum.active,
    "draft": ProductStatusEnum.draft,
    "pending": ProductStatusEnum.draft,
}


def normalize_woocommerce_product(payload: Dict[str, Any], store_currency: Optional[str] = None) -> CanonicalProduct:
    """Map a WooCommerce v3 product to the canonical model."""
    if not isinstance(payload, dict) or payload.get("id") in (None, ""):
        raise BadPayloadError("WooCommerce product payload has no id")

    title = payload.get("name") or ""
    description = payload.get("description") or payload.get("short_description") or ""
    categories = [c.get("name") for c in (payload.get("categories") or []) if isinstance(c, dict) and c.get("name")]
    category = categories[0] if categories else ""
    tags = [t.get("name") for t in (payload.get("tags") or []) if isinstance(t, dict) and t.get("name")]
    brand = ""
    for attribute in payload.get("attributes") or []:
        if isinstance(attribute, dict) and str(attribute.get("name", "")).lower() == "brand":
            options = attribute.get("options") or []
            brand = options[0] if options else ""
            break

    stock_quantity = payload.get("stock_quantity")
    manage_stock = bool(payload.get("manage_stock"))
    variant = {
        "id": payload["id"],
        "title": title,
        "price": payload.get("price") or "",
        "sku": payload.get("sku") or "",
        "inventory_quantity": _as_int(stock_quantity) if stock_quantity is not None else 0,
        "inventory_management": "woocommerce" if manage_stock else NOT_MANAGED,
        "inventory_policy": "continue" if payload.get("backorders_allowed") else "deny",
        "position": 1,
    }

    status = _WOO_STATUS_MAP.get(payload.get("status") or "", ProductStatusEnum.inactive)
    if payload.get("stock_status") == "outofstock" and status == ProductStatusEnum.active:
        status = ProductStatusEnum.out_of_stock

    metadata = {
        "handle": payload.get("slug") or "",
        "permalink": payload.get("permalink") or "",
        "tags": tags,
        "collections": categories,
        "product_type": payload.get("type") or "",
        "source": "woocommerce",
    }
    metadata.update(build_fallback_seo(title, description, category, brand))

    return CanonicalProduct(
        external_id=str(payload["id"]),
        title=title,
        description=description,
        price=parse_price(payload.get("price")),
        currency=store_currency,
        sku=payload.get("sku") or None,
        brand=brand or None,
        category=category or None,
        images=[img["src"] for img in (payload.get("images") or []) if isinstance(img, dict) and img.get("src")],
        variants=[variant],
        metadata=metadata,
        status=status,
    )


# =============================================================================
# CSV
# =============================================================================

_CSV_STATUSES = {s.value for s in ProductStatusEnum}


def normalize_csv_row(row: Dict[str, str], row_number: int, timestamp: int) -> CanonicalProduct:
    """Map one CSV row (keys already lower-cased) to the canonical model.

    Args:
        row: Header -> value mapping with lower-case headers
        row_number: 1-based data row number, used for generated ids and errors
        timestamp: Unix timestamp of the import, used for generated ids

    Raises:
        BadPayloadError: missing title or unparseable price
    """
    title = (row.get("title") or "").strip()
    if not title:
        raise BadPayloadError(f"Row {row_number}: title is required")

    raw_price = (row.get("price") or "").strip()
    price = parse_price(raw_price)
    if price is None:
        raise BadPayloadError(f"Row {row_number}: invalid price '{raw_price}'")

    external_id = (row.get("id") or "").strip() or f"csv-{timestamp}-{row_number}"
    status_value = (row.get("status") or "active").strip().lower()
    status = ProductStatusEnum(status_value) if status_value in _CSV_STATUSES else ProductStatusEnum.active

    raw_tags = row.get("tags") or ""
    tags = split_tags(raw_tags.replace("|", ","))
    quantity = _as_int((row.get("quantity") or "").strip())
    sku = (row.get("sku") or "").strip()
    brand = (row.get("brand") or "").strip()
    category = (row.get("category") or "").strip()
    description = (row.get("description") or "").strip()
    image_url = (row.get("image_url") or "").strip()

    metadata = {
        "handle": (row.get("handle") or "").strip(),
        "tags": tags,
        "collections": [],
        "source": "csv",
    }
    metadata.update(build_fallback_seo(title, description, category, brand))

    return CanonicalProduct(
        external_id=external_id,
        title=title,
        description=description,
        price=price,
        currency=(row.get("currency") or "").strip().upper() or DEFAULT_CURRENCY,
        sku=sku or None,
        brand=brand or None,
        category=category or None,
        images=[image_url] if image_url else [],
        variants=[{
            "id": external_id,
            "title": title,
            "price": str(price),
            "sku": sku,
            "inventory_quantity": quantity,
            "inventory_management": "csv" if row.get("quantity") else NOT_MANAGED,
            "inventory_policy": "deny",
            "position": 1,
        }],
        metadata=metadata,
        status=status,
    )
