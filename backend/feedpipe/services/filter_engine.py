"""Filter Engine: declarative feed filter -> parameterized WHERE over products.

WHAT:
    `FeedFilter` is the filter document stored in `Feed.settings["filter"]`.
    `build_filter_clauses` turns it into SQLAlchemy boolean clauses (bound
    parameters only) and `select_products` runs them with the one ordering
    renderers rely on: `created_at DESC`, then `id`.

SEMANTICS:
    - min_price / max_price: inclusive, 0 means unset
    - brands / categories: equality against any listed value, empty means any
    - include_tags / include_collections: ANY listed name present
    - exclude_tags / exclude_collections: NONE of the listed names present
    - exclude_product_ids: hard deny by product UUID or external id
    - hard default: status not in (out_of_stock, archived, draft, inactive)

TAG MATCHING:
    Tag and collection names are matched as a substring of the serialized
    `metadata.tags` (or `metadata.collections`) list with the name JSON-quoted (`"clearance"`), so
    `clearance` never matches `clearance-2024`. Names are serialized with
    `json.dumps` so the needle carries the same escaping as stored text.

REFERENCES:
    - feedpipe/services/feed_manager.py (consumer)
    - tests_unit/test_filter_engine.py
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import String, and_, cast, func, not_, or_
from sqlalchemy.orm import Session

from feedpipe.errors import BadPayloadError
from feedpipe.models import Product, ProductStatusEnum

# Never rendered into a feed
EXCLUDED_STATUSES = (
    ProductStatusEnum.out_of_stock,
    ProductStatusEnum.archived,
    ProductStatusEnum.draft,
    ProductStatusEnum.inactive,
)

_LIST_FIELDS = (
    "brands",
    "categories",
    "include_tags",
    "exclude_tags",
    "include_collections",
    "exclude_collections",
    "exclude_product_ids",
)


def _as_decimal(name: str, value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise BadPayloadError(f"Filter field '{name}' must be a number", details={"value": value})
    if amount < 0:
        raise BadPayloadError(f"Filter field '{name}' must not be negative", details={"value": value})
    # Zero means unset
    return amount if amount > 0 else None


def _as_str_list(name: str, value: Any) -> List[str]:
    if value in (None, ""):
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise BadPayloadError(f"Filter field '{name}' must be a list", details={"value": value})
    return [str(item).strip() for item in value if str(item).strip()]


@dataclass
class FeedFilter:
    """Declarative include/exclude rules of one feed."""
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None
    brands: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    include_tags: List[str] = field(default_factory=list)
    exclude_tags: List[str] = field(default_factory=list)
    include_collections: List[str] = field(default_factory=list)
    exclude_collections: List[str] = field(default_factory=list)
    exclude_product_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FeedFilter":
        """Parse a filter document; unknown keys are ignored.

        Raises:
            BadPayloadError: wrong types, negative prices or min > max
        """
        data = data or {}
        if not isinstance(data, dict):
            raise BadPayloadError("Filter must be an object")

        parsed = cls(
            min_price=_as_decimal("min_price", data.get("min_price")),
            max_price=_as_decimal("max_price", data.get("max_price")),
            **{name: _as_str_list(name, data.get(name)) for name in _LIST_FIELDS},
        )
        if parsed.min_price is not None and parsed.max_price is not None and parsed.min_price > parsed.max_price:
            raise BadPayloadError("Filter min_price is greater than max_price")
        return parsed

    @classmethod
    def from_settings(cls, settings: Optional[Dict[str, Any]]) -> "FeedFilter":
        return cls.from_dict((settings or {}).get("filter"))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {name: list(getattr(self, name)) for name in _LIST_FIELDS}
        data["min_price"] = float(self.min_price) if self.min_price is not None else None
        data["max_price"] = float(self.max_price) if self.max_price is not None else None
        return data


def _metadata_list_contains(key: str, name: str):
    """Clause: the serialized `metadata[key]` list contains the JSON-quoted name.

    Only the list itself is searched; titles, SEO keywords and `source` live
    elsewhere in the document and must never match. A missing list is "".
    """
    serialized = func.coalesce(cast(Product.metadata_[key], String), "")
    return serialized.contains(json.dumps(name), autoescape=True)


def build_filter_clauses(
    feed_filter: FeedFilter,
    organization_id: UUID,
    connector_id: Optional[UUID] = None,
) -> List[Any]:
    """Translate a filter into WHERE clauses over `products`.

    Args:
        feed_filter: Parsed filter
        organization_id: Organization scope (always applied)
        connector_id: Feed's connector scope; None means any connector

    Returns:
        List of clauses to AND together
    """
    clauses: List[Any] = [
        Product.organization_id == organization_id,
        Product.status.notin_(EXCLUDED_STATUSES),
    ]
    if connector_id is not None:
        clauses.append(Product.connector_id == connector_id)

    if feed_filter.min_price is not None:
        clauses.append(Product.price >= feed_filter.min_price)
    if feed_filter.max_price is not None:
        clauses.append(Product.price <= feed_filter.max_price)

    if feed_filter.brands:
        clauses.append(Product.brand.in_(feed_filter.brands))
    if feed_filter.categories:
        clauses.append(Product.category.in_(feed_filter.categories))

    if feed_filter.include_tags:
        clauses.append(or_(*[_metadata_list_contains("tags", tag) for tag in feed_filter.include_tags]))
    if feed_filter.include_collections:
        clauses.append(or_(*[_metadata_list_contains("collections", name) for name in feed_filter.include_collections]))

    for name in feed_filter.exclude_tags:
        clauses.append(not_(_metadata_list_contains("tags", name)))
    for name in feed_filter.exclude_collections:
        clauses.append(not_(_metadata_list_contains("collections", name)))

    if feed_filter.exclude_product_ids:
        uuids = []
        for ref in feed_filter.exclude_product_ids:
            try:
                uuids.append(UUID(ref))
            except ValueError:
                continue
        deny = Product.external_id.in_(feed_filter.exclude_product_ids)
        if uuids:
            deny = or_(deny, Product.id.in_(uuids))
        clauses.append(not_(deny))

    return clauses


def select_products(
    db: Session,
    feed_filter: FeedFilter,
    organization_id: UUID,
    connector_id: Optional[UUID] = None,
    limit: Optional[int] = None,
) -> List[Product]:
    """Products matching the filter, newest first."""
    query = (
        db.query(Product)
        .filter(and_(*build_filter_clauses(feed_filter, organization_id, connector_id)))
        .order_by(Product.created_at.desc(), Product.id)
    )
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def count_candidates(db: Session, organization_id: UUID, connector_id: Optional[UUID] = None) -> int:
    """Products in the feed's scope before filtering (run `products_processed`)."""
    query = db.query(Product).filter(Product.organization_id == organization_id)
    if connector_id is not None:
        query = query.filter(Product.connector_id == connector_id)
    return query.count()
