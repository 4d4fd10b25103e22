"""Notification endpoints for the UI bell.

WHAT:
    List live notifications, mark one or all as read.

WHY:
    Reading starts the 30-day expiry clock; expired rows are hidden here and
    deleted by the worker's purge job.

REFERENCES:
    - feedpipe/services/notification_projector.py
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_organization_id
from ..services import notification_projector

router = APIRouter(prefix="/api/v1/notifications", tags=["Notifications"])


@router.get("", response_model=schemas.NotificationListResponse)
def list_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    items = notification_projector.list_notifications(
        db, organization_id, unread_only=unread_only, limit=limit,
    )
    return {
        "items": items,
        "unread_count": notification_projector.count_unread(db, organization_id),
    }


@router.post("/read-all")
def mark_all_read(
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    count = notification_projector.mark_all_read(db, organization_id)
    return {"marked_read": count}


@router.post("/{notification_id}/read", response_model=schemas.NotificationOut)
def mark_read(
    notification_id: UUID,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    return notification_projector.mark_read(db, organization_id, notification_id)
