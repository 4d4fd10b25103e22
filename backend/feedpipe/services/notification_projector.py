"""Notification projector: pipeline events -> UI notification rows.

WHAT:
    Turns `feed.generated` / `feed.failed` webhook payloads (and scheduler
    alerts) into short human messages, and manages read/expiry state.

WHY:
    The UI reads notifications, never raw run or delivery rows. The same
    projection serves the loopback webhook shortcut and the receiver endpoint.

EXPIRY:
    - feed_generated: expires 7 days after creation unless read
    - any notification: expires 30 days after it is read
    - everything else stays until read

REFERENCES:
    - feedpipe/services/webhook_dispatcher.py (loopback shortcut)
    - feedpipe/routers/notifications.py
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from feedpipe.errors import BadPayloadError, NotFoundError
from feedpipe.models import (
    FEED_FAILED_EVENT,
    FEED_GENERATED_EVENT,
    Notification,
    NotificationPriorityEnum,
    NotificationTypeEnum,
)

logger = logging.getLogger(__name__)

UNREAD_GENERATED_TTL = timedelta(days=7)
READ_TTL = timedelta(days=30)


def _format_seconds(generation_time_ms: Any) -> str:
    try:
        return f"{int(generation_time_ms) / 1000:.1f}"
    except (TypeError, ValueError):
        return "0.0"


def project_feed_event(db: Session, organization_id: UUID, payload: Dict[str, Any]) -> Notification:
    """Write the notification for one feed webhook payload (caller commits).

    Raises:
        BadPayloadError: unknown event or missing feed_id
    """
    event = payload.get("event")
    feed_id = payload.get("feed_id")
    if not feed_id:
        raise BadPayloadError("Webhook payload has no feed_id")
    feed_name = payload.get("feed_name") or "Feed"
    now = datetime.utcnow()

    if event == FEED_GENERATED_EVENT:
        included = payload.get("products_included", 0)
        notification = Notification(
            organization_id=organization_id,
            type=NotificationTypeEnum.feed_generated,
            title=f"Feed '{feed_name}' generated",
            message=(
                f"Successfully generated {included} products in "
                f"{_format_seconds(payload.get('generation_time_ms'))} s"
            ),
            priority=NotificationPriorityEnum.normal,
            expires_at=now + UNREAD_GENERATED_TTL,
        )
    elif event == FEED_FAILED_EVENT:
        notification = Notification(
            organization_id=organization_id,
            type=NotificationTypeEnum.feed_failed,
            title=f"Feed '{feed_name}' failed",
            message=f"Feed generation failed: {payload.get('error') or 'unknown error'}",
            priority=NotificationPriorityEnum.high,
        )
    else:
        raise BadPayloadError(f"Unsupported webhook event '{event}'")

    notification.entity_type = "feed"
    notification.entity_id = str(feed_id)
    notification.entity_name = feed_name
    notification.metadata_ = {
        key: value for key, value in payload.items() if key not in ("event", "feed_id", "feed_name")
    }
    notification.created_at = now
    db.add(notification)
    db.flush()

    logger.info("[NOTIFY] %s notification for feed %s", event, feed_id)
    return notification


def project_system_alert(
    db: Session,
    organization_id: UUID,
    *,
    title: str,
    message: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    entity_name: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Notification:
    """Urgent system alert (e.g. a schedule auto-paused). Caller commits."""
    notification = Notification(
        organization_id=organization_id,
        type=NotificationTypeEnum.system_alert,
        title=title,
        message=message,
        priority=NotificationPriorityEnum.urgent,
        entity_type=entity_type,
        entity_id=entity_id,
        entity_name=entity_name,
        metadata_=metadata or {},
        created_at=datetime.utcnow(),
    )
    db.add(notification)
    db.flush()
    logger.warning("[NOTIFY] System alert: %s", title)
    return notification


def list_notifications(
    db: Session,
    organization_id: UUID,
    *,
    unread_only: bool = False,
    limit: int = 50,
) -> List[Notification]:
    """Live notifications, newest first; expired rows are hidden."""
    now = datetime.utcnow()
    query = db.query(Notification).filter(
        Notification.organization_id == organization_id,
        (Notification.expires_at.is_(None)) | (Notification.expires_at > now),
    )
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return query.order_by(Notification.created_at.desc()).limit(limit).all()


def count_unread(db: Session, organization_id: UUID) -> int:
    now = datetime.utcnow()
    return (
        db.query(Notification)
        .filter(
            Notification.organization_id == organization_id,
            Notification.is_read.is_(False),
            (Notification.expires_at.is_(None)) | (Notification.expires_at > now),
        )
        .count()
    )


def mark_read(db: Session, organization_id: UUID, notification_id: UUID) -> Notification:
    """Mark one notification read; it then expires after 30 days."""
    notification = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.organization_id == organization_id)
        .first()
    )
    if notification is None:
        raise NotFoundError(f"Notification {notification_id} not found")

    if not notification.is_read:
        now = datetime.utcnow()
        notification.is_read = True
        notification.read_at = now
        notification.expires_at = now + READ_TTL
        db.commit()
        db.refresh(notification)
    return notification


def mark_all_read(db: Session, organization_id: UUID) -> int:
    now = datetime.utcnow()
    count = (
        db.query(Notification)
        .filter(Notification.organization_id == organization_id, Notification.is_read.is_(False))
        .update(
            {
                Notification.is_read: True,
                Notification.read_at: now,
                Notification.expires_at: now + READ_TTL,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return count


def purge_expired(db: Session, now: Optional[datetime] = None) -> int:
    """Delete notifications past their expiry."""
    now = now or datetime.utcnow()
    count = (
        db.query(Notification)
        .filter(Notification.expires_at.isnot(None), Notification.expires_at <= now)
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info("[NOTIFY] Purged %d expired notifications", count)
    return count
