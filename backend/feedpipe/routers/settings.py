"""Organization settings endpoints.

The settings document is read-mostly; PUT merges keys into it (a null value
removes the key). `storefront_base_url` overrides STOREFRONT_BASE_URL when
feeds build product links.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_organization_id
from ..errors import BadPayloadError, NotFoundError
from ..models import Organization

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/settings", tags=["Settings"])


def _get_organization(db: Session, organization_id: UUID) -> Organization:
    organization = db.query(Organization).filter(Organization.id == organization_id).first()
    if organization is None:
        raise NotFoundError(f"Organization {organization_id} not found")
    return organization


@router.get("", response_model=schemas.SettingsPayload)
def get_settings_document(
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    organization = _get_organization(db, organization_id)
    return {"settings": organization.settings or {}}


@router.put("", response_model=schemas.SettingsPayload)
def update_settings_document(
    payload: schemas.SettingsPayload,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    storefront = payload.settings.get("storefront_base_url")
    if storefront is not None and not str(storefront).startswith(("http://", "https://")):
        raise BadPayloadError("storefront_base_url must start with http:// or https://")

    organization = _get_organization(db, organization_id)
    merged = dict(organization.settings or {})
    for key, value in payload.settings.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    # Reassign so the JSON column is flagged dirty
    organization.settings = merged
    db.commit()
    db.refresh(organization)

    logger.info("[API] Organization settings updated: %s", sorted(payload.settings))
    return {"settings": organization.settings}
