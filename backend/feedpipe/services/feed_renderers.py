"""Feed renderers: product set -> Google XML, Facebook CSV, Instagram JSON.

WHAT:
    - `build_feed_items`: flatten stored products into `FeedItem`s
      (availability, link, image_link, price string) for one storefront
    - `render_xml` / `render_csv` / `render_json`: pure serializers returning bytes
    - `validate_items`: per-product structural issues for a channel

WHY:
    Rendering is CPU-bound and must be reproducible: the same product list
    always renders to the same bytes (no timestamps in the output), so
    renders are stable across retries and downloads.

FORMATS:
    - XML: RSS 2.0 with xmlns:g, free text in CDATA, price "<amount> <currency>",
      at most 10 g:additional_image_link
    - CSV: fixed Facebook header, csv-module quoting (fields with `,`, `"` or
      newlines are quoted, `"` doubled), `\\n` line endings
    - JSON: {"version": "1.0", "products": [...]}

REFERENCES:
    - https://support.google.com/merchants/answer/7052112 (product data attributes)
    - https://www.facebook.com/business/help/120325381656392 (catalog fields)
    - feedpipe/services/feed_manager.py (consumer)
"""

from __future__ import annotations

import csv
import html
import io
import json
import re
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional
from xml.sax.saxutils import escape

from feedpipe.errors import RenderError
from feedpipe.models import FeedFormatEnum, ProductStatusEnum
from feedpipe.services.product_normalizer import DEFAULT_CURRENCY, total_inventory

GOOGLE_NAMESPACE = "http://base.google.com/ns/1.0"
DEFAULT_STOREFRONT_BASE_URL = "https://example.com"
DEFAULT_PLACEHOLDER_IMAGE_URL = "https://via.placeholder.com/600x600.png?text=No+Image"
MAX_ADDITIONAL_IMAGES = 10

FACEBOOK_CSV_HEADER = [
    "id",
    "title",
    "description",
    "availability",
    "condition",
    "price",
    "link",
    "image_link",
    "brand",
    "google_product_category",
    "fb_product_category",
    "quantity_to_sell_on_facebook",
    "sale_price",
    "sale_price_effective_date",
    "item_group_id",
    "gender",
    "color",
    "size",
    "age_group",
    "material",
    "pattern",
    "shipping",
    "shipping_weight",
    "additional_image_link",
]

CONTENT_TYPES = {
    FeedFormatEnum.xml: "application/xml",
    FeedFormatEnum.csv: "text/csv",
    FeedFormatEnum.json: "application/json",
}

_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")
_SLUG_RE = re.compile(r"[^a-z0-9]+")
# Characters not allowed in XML 1.0 documents
_XML_INVALID_RE = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f]")


@dataclass
class RenderContext:
    """Storefront-specific inputs of a render."""
    storefront_base_url: str = DEFAULT_STOREFRONT_BASE_URL
    placeholder_image_url: str = DEFAULT_PLACEHOLDER_IMAGE_URL
    feed_title: str = "Product Feed"


@dataclass
class FeedItem:
    """One rendered product row, shared by all three formats."""
    id: str
    title: str
    description: str
    availability: str
    condition: str
    price: str
    link: str
    image_link: str
    uses_placeholder_image: bool = False
    additional_image_links: List[str] = field(default_factory=list)
    brand: str = ""
    gtin: str = ""
    mpn: str = ""
    product_type: str = ""
    google_product_category: str = ""
    fb_product_category: str = ""
    quantity: int = 0
    item_group_id: str = ""
    gender: str = ""
    color: str = ""
    size: str = ""
    age_group: str = ""
    material: str = ""
    pattern: str = ""
    shipping_weight: str = ""


# =============================================================================
# SHARED HELPERS
# =============================================================================

def slugify(text: str) -> str:
    """Lowercase, dash-separated slug used when a product has no handle."""
    return _SLUG_RE.sub("-", (text or "").lower()).strip("-")


def plain_text(value: Optional[str]) -> str:
    """Strip HTML tags and collapse whitespace."""
    if not value:
        return ""
    text = html.unescape(_TAG_RE.sub(" ", value))
    return _WHITESPACE_RE.sub(" ", text).strip()


def format_price(amount: Any, currency: Optional[str]) -> str:
    """Format as `"<amount> <currency>"` with two decimals."""
    value = Decimal(str(amount)) if amount not in (None, "") else Decimal("0")
    value = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"{value} {currency or DEFAULT_CURRENCY}"


def _status_value(status: Any) -> str:
    return status.value if isinstance(status, ProductStatusEnum) else str(status or "")


def stock_of(product: Any) -> int:
    if getattr(product, "inventory_quantity", None) is not None:
        return int(product.inventory_quantity)
    return total_inventory(product.variants or [])


def availability_of(product: Any) -> str:
    """`in stock` only for active products with stock above zero."""
    if _status_value(product.status) == ProductStatusEnum.active.value and stock_of(product) > 0:
        return "in stock"
    return "out of stock"


def product_link(product: Any, storefront_base_url: str) -> str:
    metadata = product.metadata_ or {}
    handle = metadata.get("handle") or slugify(product.title)
    return f"{storefront_base_url.rstrip('/')}/products/{handle}"


def build_feed_items(products: Iterable[Any], context: Optional[RenderContext] = None) -> List[FeedItem]:
    """Flatten stored products into feed rows, preserving order."""
    context = context or RenderContext()
    items = []
    for product in products:
        metadata = product.metadata_ or {}
        images = [url for url in (product.images or []) if url]
        variants = product.variants or []

        items.append(FeedItem(
            id=str(product.external_id),
            title=plain_text(product.title),
            description=plain_text(product.description),
            availability=availability_of(product),
            condition=metadata.get("condition") or "new",
            price=format_price(product.price, product.currency),
            link=product_link(product, context.storefront_base_url),
            image_link=images[0] if images else context.placeholder_image_url,
            uses_placeholder_image=not images,
            additional_image_links=images[1:1 + MAX_ADDITIONAL_IMAGES],
            brand=product.brand or "",
            gtin=metadata.get("gtin") or "",
            mpn=product.sku or "",
            product_type=product.category or "",
            google_product_category=str(metadata.get("google_product_category") or ""),
            fb_product_category=str(metadata.get("fb_product_category") or ""),
            quantity=max(stock_of(product), 0),
            item_group_id=str(product.external_id) if len(variants) > 1 else "",
            gender=metadata.get("gender") or "",
            color=metadata.get("color") or "",
            size=metadata.get("size") or "",
            age_group=metadata.get("age_group") or "",
            material=metadata.get("material") or "",
            pattern=metadata.get("pattern") or "",
            shipping_weight=metadata.get("shipping_weight") or "",
        ))
    return items


# =============================================================================
# GOOGLE SHOPPING XML
# =============================================================================

def _cdata(value: str) -> str:
    value = _XML_INVALID_RE.sub("", value or "")
    # A literal "]]>" must be split across two sections
    return "<![CDATA[" + value.replace("]]>", "]]]]><![CDATA[>") + "]]>"


def _text(value: str) -> str:
    return escape(_XML_INVALID_RE.sub("", value or ""))


def render_xml(items: List[FeedItem], context: Optional[RenderContext] = None) -> bytes:
    """Render a Google Shopping RSS 2.0 document."""
    context = context or RenderContext()
    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<rss version="2.0" xmlns:g="{GOOGLE_NAMESPACE}">',
        "  <channel>",
        f"    <title>{_cdata(context.feed_title)}</title>",
        f"    <link>{_text(context.storefront_base_url)}</link>",
        f"    <description>{_cdata(context.feed_title + ' product feed')}</description>",
    ]

    for item in items:
        lines.append("    <item>")
        lines.append(f"      <g:id>{_text(item.id)}</g:id>")
        lines.append(f"      <g:title>{_cdata(item.title)}</g:title>")
        lines.append(f"      <g:description>{_cdata(item.description)}</g:description>")
        lines.append(f"      <g:link>{_text(item.link)}</g:link>")
        lines.append(f"      <g:image_link>{_text(item.image_link)}</g:image_link>")
        lines.append(f"      <g:condition>{_text(item.condition)}</g:condition>")
        lines.append(f"      <g:availability>{_text(item.availability)}</g:availability>")
        lines.append(f"      <g:price>{_text(item.price)}</g:price>")
        if item.brand:
            lines.append(f"      <g:brand>{_cdata(item.brand)}</g:brand>")
        if item.gtin:
            lines.append(f"      <g:gtin>{_text(item.gtin)}</g:gtin>")
        if item.mpn:
            lines.append(f"      <g:mpn>{_text(item.mpn)}</g:mpn>")
        if item.google_product_category:
            lines.append(
                f"      <g:google_product_category>{_cdata(item.google_product_category)}</g:google_product_category>"
            )
        if item.product_type:
            lines.append(f"      <g:product_type>{_cdata(item.product_type)}</g:product_type>")
        for url in item.additional_image_links:
            lines.append(f"      <g:additional_image_link>{_text(url)}</g:additional_image_link>")
        lines.append("    </item>")

    lines.append("  </channel>")
    lines.append("</rss>")
    return ("\n".join(lines) + "\n").encode("utf-8")


# =============================================================================
# FACEBOOK CSV
# =============================================================================

def _facebook_row(item: FeedItem) -> List[Any]:
    return [
        item.id,
        item.title,
        item.description,
        item.availability,
        item.condition,
        item.price,
        item.link,
        item.image_link,
        item.brand,
        item.google_product_category,
        item.fb_product_category,
        item.quantity,
        "",  # sale_price
        "",  # sale_price_effective_date
        item.item_group_id,
        item.gender,
        item.color,
        item.size,
        item.age_group,
        item.material,
        item.pattern,
        "",  # shipping
        item.shipping_weight,
        ",".join(item.additional_image_links),
    ]


def render_csv(items: List[FeedItem]) -> bytes:
    """Render the Facebook catalog CSV."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(FACEBOOK_CSV_HEADER)
    for item in items:
        writer.writerow(_facebook_row(item))
    return buffer.getvalue().encode("utf-8")


# =============================================================================
# INSTAGRAM JSON
# =============================================================================

def _instagram_product(item: FeedItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "title": item.title,
        "description": item.description,
        "availability": item.availability,
        "condition": item.condition,
        "price": item.price,
        "link": item.link,
        "image_link": item.image_link,
        "brand": item.brand,
        "additional_image_link": list(item.additional_image_links),
        "google_product_category": item.google_product_category,
        "gender": item.gender,
        "color": item.color,
        "size": item.size,
        "age_group": item.age_group,
    }


def render_json(items: List[FeedItem]) -> bytes:
    """Render the Instagram shopping JSON document."""
    document = {
        "version": "1.0",
        "products": [_instagram_product(item) for item in items],
    }
    return json.dumps(document, ensure_ascii=False, indent=2).encode("utf-8")


def render(feed_format: FeedFormatEnum, items: List[FeedItem], context: Optional[RenderContext] = None) -> bytes:
    """Dispatch to the serializer for `feed_format`.

    Raises:
        RenderError: unknown format or serializer failure
    """
    try:
        if feed_format == FeedFormatEnum.xml:
            return render_xml(items, context)
        if feed_format == FeedFormatEnum.csv:
            return render_csv(items)
        if feed_format == FeedFormatEnum.json:
            return render_json(items)
    except (ValueError, TypeError) as e:
        raise RenderError(f"Failed to render {feed_format} feed: {e}") from e
    raise RenderError(f"Unsupported feed format '{feed_format}'")


# =============================================================================
# VALIDATION
# =============================================================================

# Per-channel title/description limits (characters)
_CHANNEL_LIMITS = {
    "google": (150, 5000),
    "facebook": (200, 9999),
    "instagram": (200, 9999),
}


def channel_key(channel: str) -> str:
    """First word of the channel name, lowercased ("Google Shopping" -> "google")."""
    return (channel or "").strip().lower().split(" ")[0]


def validate_items(items: List[FeedItem], channel: str) -> List[Dict[str, Any]]:
    """Structural issues per product for a channel.

    Returns:
        One entry `{product_id, title, errors[]}` per product with issues;
        products without issues are omitted. Never raises for bad data.
    """
    key = channel_key(channel)
    title_limit, description_limit = _CHANNEL_LIMITS.get(key, (150, 5000))
    report = []

    for item in items:
        errors = []
        if not item.title:
            errors.append("Missing title")
        elif len(item.title) > title_limit:
            errors.append(f"Title exceeds {title_limit} characters")
        if not item.description:
            errors.append("Missing description")
        elif len(item.description) > description_limit:
            errors.append(f"Description exceeds {description_limit} characters")
        if item.price.startswith("0.00 "):
            errors.append("Missing or zero price")
        if item.uses_placeholder_image:
            errors.append("Missing image (placeholder used)")

        if key == "google" and not (item.brand or item.gtin or item.mpn):
            errors.append("Missing product identifier (brand, gtin or mpn)")
        if key in ("facebook", "instagram") and not item.brand:
            errors.append("Missing brand")

        if errors:
            report.append({"product_id": item.id, "title": item.title, "errors": errors})
    return report
