"""Connector endpoints: install, list, pull sync and CSV import.

WHAT:
    - POST /api/v1/connectors: persist a connector and check its credentials
    - POST /api/v1/connectors/{id}/sync: pull sync in the background
    - POST /api/v1/connectors/{id}/import-csv: synchronous import of a raw
      text/csv body

WHY:
    Pull sync can take minutes (10 pages x 250 products); the request returns
    immediately and the outcome is visible on the connector
    (`last_sync_at`, `last_sync_error`). CSV imports are small and return the
    full SyncResult.

REFERENCES:
    - feedpipe/services/product_sync_service.py
"""

import logging
from dataclasses import asdict
from typing import List
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_organization_id
from ..errors import BadPayloadError, ConflictUniquenessError
from ..models import Connector, ConnectorKindEnum, ConnectorStatusEnum
from ..services import product_sync_service
from ..services.product_sync_service import SyncResult
from ..services.shopify_client import normalize_shop_domain
from ..workers.arq_enqueue import enqueue_connector_sync

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/connectors", tags=["Connectors"])


# =============================================================================
# HELPERS
# =============================================================================

def _to_api_response(result: SyncResult) -> schemas.SyncResultOut:
    """Convert service result to API response model."""
    return schemas.SyncResultOut(
        success=result.success,
        stats=schemas.SyncStatsOut(**asdict(result.stats)),
        errors=result.errors,
        message=result.message,
    )


async def _enqueue_initial_sync(organization_id: UUID, connector_id: UUID) -> None:
    """First pull sync on the worker (non-blocking).

    With Redis unavailable the catalog arrives through webhooks or a manual
    `/sync` call instead.
    """
    try:
        await enqueue_connector_sync(organization_id, connector_id)
    except Exception as e:
        logger.warning("[INGEST] Could not enqueue initial sync for connector %s: %s", connector_id, e)


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=schemas.ConnectorOut, status_code=201)
async def install_connector(
    payload: schemas.ConnectorCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    """Install a connector.

    A failed credential check still creates the connector; it stays `pending`
    with `last_sync_error` explaining why. A verified Shopify or WooCommerce
    connector gets its first pull sync queued on the worker.
    """
    if payload.kind == ConnectorKindEnum.shopify and payload.shop_domain:
        existing = (
            db.query(Connector)
            .filter(
                Connector.organization_id == organization_id,
                Connector.kind == ConnectorKindEnum.shopify,
                Connector.shop_domain == normalize_shop_domain(payload.shop_domain),
                Connector.status != ConnectorStatusEnum.inactive,
            )
            .first()
        )
        if existing is not None:
            raise ConflictUniquenessError(
                f"Shop {existing.shop_domain} is already connected",
                details={"connector_id": str(existing.id)},
            )

    connector = await product_sync_service.install_connector(
        db,
        organization_id,
        kind=payload.kind,
        name=payload.name,
        shop_domain=payload.shop_domain,
        credentials=payload.credentials,
        currency=payload.currency,
    )
    if connector.kind != ConnectorKindEnum.csv and connector.status == ConnectorStatusEnum.active:
        background_tasks.add_task(_enqueue_initial_sync, organization_id, connector.id)
    return connector


@router.get("", response_model=List[schemas.ConnectorOut])
def list_connectors(
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    return (
        db.query(Connector)
        .filter(Connector.organization_id == organization_id)
        .order_by(Connector.created_at.desc())
        .all()
    )


@router.get("/{connector_id}", response_model=schemas.ConnectorOut)
def get_connector(
    connector_id: UUID,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    return product_sync_service.get_connector(db, organization_id, connector_id)


@router.post("/{connector_id}/sync", response_model=schemas.SyncAcceptedResponse, status_code=202)
def sync_connector(
    connector_id: UUID,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    """Start a pull sync; rejected up front for csv or inactive connectors."""
    connector = product_sync_service.get_connector(db, organization_id, connector_id)
    if connector.kind == ConnectorKindEnum.csv:
        raise BadPayloadError("CSV connectors are populated through the import endpoint")
    if connector.status == ConnectorStatusEnum.inactive:
        raise BadPayloadError("Connector is inactive; reinstall it before syncing")

    background_tasks.add_task(product_sync_service.sync_connector_detached, organization_id, connector.id)
    logger.info("[INGEST] Queued pull sync for connector %s", connector.id)
    return schemas.SyncAcceptedResponse(connector_id=connector.id)


@router.post("/{connector_id}/import-csv", response_model=schemas.SyncResultOut)
async def import_csv(
    connector_id: UUID,
    request: Request,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    """Import a raw text/csv body into a csv connector."""
    body = await request.body()
    try:
        csv_text = body.decode("utf-8")
    except UnicodeDecodeError:
        raise BadPayloadError("CSV body must be UTF-8 encoded")
    if not csv_text.strip():
        raise BadPayloadError("CSV body is empty")

    result = await product_sync_service.import_csv(db, organization_id, connector_id, csv_text)
    return _to_api_response(result)
