"""Product Store: persistence for normalized products.

WHAT:
    - Idempotent product upsert keyed by (connector_id, external_id)
    - Soft-delete (status=inactive) for single products and whole connectors
    - Per-location inventory levels rolled up into variant quantities
    - Process-wide organization id resolution

WHY:
    Every ingestion path (pull sync, inbound webhook, CSV) funnels through
    `upsert_product`, so repeat ingestion of the same payload always lands
    on one row whose fields equal the last payload.

UPSERT STRATEGY:
    INSERT ... ON CONFLICT (connector_id, external_id) DO UPDATE where the
    dialect supports it. When the database lacks the unique constraint
    (legacy schemas) we fall back to read-check-write for the rest of the
    process lifetime; an occasional race duplicate is reconciled on the
    next ingest.

REFERENCES:
    - feedpipe/services/product_normalizer.py (CanonicalProduct)
    - https://docs.sqlalchemy.org/en/20/dialects/postgresql.html#insert-on-conflict-upsert
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import String, cast
from sqlalchemy.exc import OperationalError, ProgrammingError, SQLAlchemyError
from sqlalchemy.orm import Session

from feedpipe.errors import NotFoundError, StorageError
from feedpipe.models import (
    Connector,
    ConnectorStatusEnum,
    InventoryLevel,
    Organization,
    Product,
    ProductStatusEnum,
)
from feedpipe.services.product_normalizer import (
    DEFAULT_CURRENCY,
    CanonicalProduct,
    merge_variant_inventory,
    total_inventory,
)

logger = logging.getLogger(__name__)

DEFAULT_ORGANIZATION_NAME = "Default Organization"

# Columns overwritten when an existing product is ingested again
_UPDATABLE_COLUMNS = (
    "title",
    "description",
    "price",
    "currency",
    "sku",
    "brand",
    "category",
    "images",
    "variants",
    "metadata",
    "inventory_quantity",
    "status",
    "updated_at",
)

_MISSING_CONSTRAINT_MARKERS = (
    "no unique or exclusion constraint",           # PostgreSQL
    "does not match any primary key or unique",    # SQLite
)

_on_conflict_supported = True
_organization_id_cache: Optional[UUID] = None


@dataclass
class UpsertResult:
    """Outcome of a single product upsert."""
    product_id: UUID
    created: bool


# =============================================================================
# ORGANIZATION
# =============================================================================

def get_or_create_organization_id(db: Session) -> UUID:
    """Return the process-wide organization id.

    Resolution order: in-process cache, first organization in the database,
    then a freshly created "Default Organization". Established once per
    process and never changes afterwards.
    """
    global _organization_id_cache

    if _organization_id_cache is not None:
        return _organization_id_cache

    organization = db.query(Organization).order_by(Organization.created_at).first()
    if organization is None:
        organization = Organization(name=DEFAULT_ORGANIZATION_NAME, settings={})
        db.add(organization)
        db.commit()
        logger.info("[INGEST] Created default organization %s", organization.id)

    _organization_id_cache = organization.id
    return organization.id


def reset_organization_cache() -> None:
    """Forget the cached organization id (database re-created)."""
    global _organization_id_cache
    _organization_id_cache = None


# =============================================================================
# UPSERT
# =============================================================================

def _product_values(connector: Connector, product: CanonicalProduct, variants: List[Dict[str, Any]]) -> Dict[str, Any]:
    now = datetime.utcnow()
    return {
        "organization_id": connector.organization_id,
        "connector_id": connector.id,
        "external_id": product.external_id,
        "title": product.title,
        "description": product.description,
        "price": product.price,
        "currency": product.currency or connector.currency or DEFAULT_CURRENCY,
        "sku": product.sku,
        "brand": product.brand,
        "category": product.category,
        "images": list(product.images),
        "variants": variants,
        "metadata": dict(product.metadata),
        "inventory_quantity": total_inventory(variants),
        "status": product.status,
        "updated_at": now,
    }


def _is_missing_constraint_error(exc: SQLAlchemyError) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in _MISSING_CONSTRAINT_MARKERS)


def _insert_on_conflict(db: Session, values: Dict[str, Any]) -> None:
    """Single-statement upsert for dialects that support ON CONFLICT."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(dialect)

    table = Product.__table__
    stmt = insert(table).values(id=uuid.uuid4(), created_at=values["updated_at"], **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["connector_id", "external_id"],
        set_={column: stmt.excluded[column] for column in _UPDATABLE_COLUMNS},
    )
    db.execute(stmt)


def _read_check_write(db: Session, values: Dict[str, Any]) -> None:
    """Fallback upsert: look the row up, then update or insert."""
    existing = (
        db.query(Product)
        .filter(
            Product.connector_id == values["connector_id"],
            Product.external_id == values["external_id"],
        )
        .first()
    )
    if existing is None:
        fields = dict(values)
        fields["metadata_"] = fields.pop("metadata")
        db.add(Product(**fields))
    else:
        for column in _UPDATABLE_COLUMNS:
            attribute = "metadata_" if column == "metadata" else column
            setattr(existing, attribute, values[column])
    db.flush()


def upsert_product(
    db: Session,
    connector: Connector,
    product: CanonicalProduct,
    *,
    merge_inventory: bool = False,
) -> UpsertResult:
    """Insert or update one product for a connector.

    WHAT:
        Writes `product` under (connector.id, product.external_id). With
        `merge_inventory`, stored variant inventory is merged into the
        incoming variants first (update webhooks).

    WHY:
        Inbound webhook duplicates are expected; the upsert makes them harmless.

    Args:
        db: Database session (caller commits)
        connector: Owning connector
        product: Normalized product
        merge_inventory: Apply the variant inventory merge policy

    Returns:
        UpsertResult with the product id and whether a row was created

    Raises:
        StorageError: on database failure
    """
    global _on_conflict_supported

    existing = (
        db.query(Product)
        .filter(Product.connector_id == connector.id, Product.external_id == product.external_id)
        .first()
    )

    variants = list(product.variants)
    if merge_inventory and existing is not None:
        variants = merge_variant_inventory(variants, existing.variants or [])

    values = _product_values(connector, product, variants)

    try:
        if _on_conflict_supported:
            try:
                _insert_on_conflict(db, values)
            except NotImplementedError:
                _read_check_write(db, values)
            except (ProgrammingError, OperationalError) as exc:
                if not _is_missing_constraint_error(exc):
                    raise
                logger.warning(
                    "[INGEST] Unique constraint on (connector_id, external_id) missing; "
                    "falling back to read-check-write"
                )
                db.rollback()
                _on_conflict_supported = False
                _read_check_write(db, values)
        else:
            _read_check_write(db, values)
    except SQLAlchemyError as exc:
        db.rollback()
        raise StorageError(f"Failed to upsert product {product.external_id}: {exc}") from exc

    if existing is not None:
        # Core statements bypass the identity map
        db.expire(existing)

    stored = (
        db.query(Product.id)
        .filter(Product.connector_id == connector.id, Product.external_id == product.external_id)
        .one()
    )
    return UpsertResult(product_id=stored.id, created=existing is None)


# =============================================================================
# SOFT DELETE
# =============================================================================

def mark_product_inactive(db: Session, connector: Connector, external_id: str) -> bool:
    """Soft-delete one product. Unknown ids are a warning, not an error.

    Returns:
        True if a product was found and marked inactive
    """
    product = (
        db.query(Product)
        .filter(Product.connector_id == connector.id, Product.external_id == str(external_id))
        .first()
    )
    if product is None:
        logger.warning(
            "[INGEST] Delete for unknown product %s on connector %s ignored",
            external_id, connector.id,
        )
        return False

    product.status = ProductStatusEnum.inactive
    product.updated_at = datetime.utcnow()
    db.flush()
    return True


def deactivate_connector(db: Session, connector: Connector) -> int:
    """Mark a connector inactive and cascade its products to inactive.

    Returns:
        Number of products deactivated
    """
    connector.status = ConnectorStatusEnum.inactive
    count = (
        db.query(Product)
        .filter(Product.connector_id == connector.id, Product.status != ProductStatusEnum.inactive)
        .update(
            {Product.status: ProductStatusEnum.inactive, Product.updated_at: datetime.utcnow()},
            synchronize_session=False,
        )
    )
    db.flush()
    logger.info("[INGEST] Connector %s deactivated; %d products set inactive", connector.id, count)
    return count


# =============================================================================
# INVENTORY LEVELS
# =============================================================================

def apply_inventory_level(
    db: Session,
    connector: Connector,
    inventory_item_id: str,
    location_id: str,
    available: int,
) -> int:
    """Record per-location stock and roll it up into matching variants.

    WHAT:
        Upserts the InventoryLevel row, then sets `inventory_quantity` on every
        stored variant whose `inventory_item_id` matches to the item's total
        across locations.

    Returns:
        Number of products whose variants were updated
    """
    inventory_item_id = str(inventory_item_id)
    location_id = str(location_id)

    level = (
        db.query(InventoryLevel)
        .filter(
            InventoryLevel.connector_id == connector.id,
            InventoryLevel.inventory_item_id == inventory_item_id,
            InventoryLevel.location_id == location_id,
        )
        .first()
    )
    if level is None:
        level = InventoryLevel(
            connector_id=connector.id,
            inventory_item_id=inventory_item_id,
            location_id=location_id,
        )
        db.add(level)
    level.available_quantity = int(available)
    level.last_updated = datetime.utcnow()
    db.flush()

    item_total = sum(
        row.available_quantity
        for row in db.query(InventoryLevel).filter(
            InventoryLevel.connector_id == connector.id,
            InventoryLevel.inventory_item_id == inventory_item_id,
        )
    )

    # Substring prefilter, exact match below
    candidates = (
        db.query(Product)
        .filter(
            Product.connector_id == connector.id,
            cast(Product.variants, String).like(f"%{inventory_item_id}%"),
        )
        .all()
    )

    updated = 0
    for product in candidates:
        changed = False
        variants = []
        for variant in product.variants or []:
            variant = dict(variant)
            if str(variant.get("inventory_item_id")) == inventory_item_id:
                variant["inventory_quantity"] = item_total
                changed = True
            variants.append(variant)
        if changed:
            product.variants = variants
            product.inventory_quantity = total_inventory(variants)
            product.updated_at = datetime.utcnow()
            updated += 1

    db.flush()
    return updated


# =============================================================================
# READS
# =============================================================================

def get_product(db: Session, organization_id: UUID, ref: str) -> Product:
    """Fetch a product by UUID or, failing that, by external id.

    Raises:
        NotFoundError: if no product matches
    """
    product = None
    try:
        product_id = UUID(str(ref))
    except ValueError:
        product_id = None

    query = db.query(Product).filter(Product.organization_id == organization_id)
    if product_id is not None:
        product = query.filter(Product.id == product_id).first()
    if product is None:
        product = query.filter(Product.external_id == str(ref)).order_by(Product.updated_at.desc()).first()
    if product is None:
        raise NotFoundError(f"Product {ref} not found")
    return product


def list_products(
    db: Session,
    organization_id: UUID,
    *,
    status: Optional[ProductStatusEnum] = None,
    connector_id: Optional[UUID] = None,
    page: int = 1,
    limit: int = 50,
) -> Tuple[List[Product], int]:
    """Page through products, newest first."""
    query = db.query(Product).filter(Product.organization_id == organization_id)
    if status is not None:
        query = query.filter(Product.status == status)
    if connector_id is not None:
        query = query.filter(Product.connector_id == connector_id)

    total = query.count()
    items = (
        query.order_by(Product.created_at.desc(), Product.id)
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total
