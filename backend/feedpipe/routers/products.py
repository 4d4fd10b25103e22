"""Product read endpoints."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_organization_id
from ..models import ProductStatusEnum
from ..services import product_store

router = APIRouter(prefix="/api/v1/products", tags=["Products"])


@router.get("", response_model=schemas.ProductListResponse)
def list_products(
    status: Optional[ProductStatusEnum] = Query(default=None),
    connector_id: Optional[UUID] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=250),
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    items, total = product_store.list_products(
        db, organization_id, status=status, connector_id=connector_id, page=page, limit=limit,
    )
    return {"items": items, "total": total, "page": page, "limit": limit}


@router.get("/{product_ref}", response_model=schemas.ProductOut)
def get_product(
    product_ref: str,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    """Fetch by product UUID or by the source's external id (e.g. Shopify id)."""
    return product_store.get_product(db, organization_id, product_ref)
