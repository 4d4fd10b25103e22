"""Feed endpoints: definitions, regeneration, downloads, schedules, webhooks.

WHAT:
    HTTP surface of the Feed Manager, the Scheduler and the outbound webhook
    configuration. Also hosts the loopback notification receiver and the
    scheduler tick endpoint.

WHY:
    Routers only parse requests and shape responses; every rule lives in
    feedpipe/services. Regeneration returns as soon as the run is claimed and
    finishes in a background task.

ROUTE ORDER:
    Static paths (/run-scheduled, /webhook-receiver) are declared before the
    /{feed_id} routes so they are never captured as an id.

REFERENCES:
    - feedpipe/services/feed_manager.py
    - feedpipe/services/feed_scheduler.py
    - feedpipe/services/notification_projector.py
"""

import logging
from dataclasses import asdict
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Query, Response
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_organization_id
from ..models import FeedFormatEnum, FeedWebhook, RunStatusEnum, RunTriggerEnum
from ..services import feed_manager, feed_scheduler, notification_projector

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/feeds", tags=["Feeds"])


def _webhook_out(webhook: FeedWebhook) -> schemas.WebhookOut:
    """Never echo the secret; report whether one is set."""
    return schemas.WebhookOut(
        id=webhook.id,
        feed_id=webhook.feed_id,
        url=webhook.url,
        enabled=webhook.enabled,
        events=list(webhook.events or []),
        has_secret=bool(webhook.secret),
        retry_count=webhook.retry_count,
        timeout_seconds=webhook.timeout_seconds,
        last_triggered_at=webhook.last_triggered_at,
        total_deliveries=webhook.total_deliveries,
        successful_deliveries=webhook.successful_deliveries,
        failed_deliveries=webhook.failed_deliveries,
    )


# =============================================================================
# SCHEDULER TICK & LOOPBACK RECEIVER
# =============================================================================

@router.post("/run-scheduled", response_model=schemas.TickResponse)
async def run_scheduled():
    """Run one scheduler tick now. Safe to call repeatedly."""
    result = await feed_scheduler.run_scheduled_tick()
    return schemas.TickResponse(**asdict(result))


@router.post("/webhook-receiver")
def webhook_receiver(
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    """Turn a feed webhook payload into a UI notification."""
    notification = notification_projector.project_feed_event(db, organization_id, payload)
    db.commit()
    return {"status": "received", "notification_id": str(notification.id)}


# =============================================================================
# CRUD
# =============================================================================

@router.post("", response_model=schemas.FeedOut, status_code=201)
def create_feed(
    payload: schemas.FeedCreate,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    return feed_manager.create_feed(
        db,
        organization_id,
        name=payload.name,
        channel=payload.channel,
        format=payload.format,
        connector_id=payload.connector_id,
        filter=payload.filter.model_dump() if payload.filter else None,
        settings=payload.settings,
    )


@router.get("", response_model=schemas.FeedListResponse)
def list_feeds(
    channel: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    feeds, total = feed_manager.list_feeds(db, organization_id, channel=channel, page=page, limit=limit)
    return {"items": feeds, "total": total, "page": page, "limit": limit}


@router.get("/{feed_id}", response_model=schemas.FeedOut)
def get_feed(
    feed_id: UUID,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    return feed_manager.get_feed(db, organization_id, feed_id)


@router.put("/{feed_id}", response_model=schemas.FeedOut)
def update_feed(
    feed_id: UUID,
    payload: schemas.FeedUpdate,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    changes = payload.model_dump(exclude_unset=True)
    return feed_manager.update_feed(db, organization_id, feed_id, changes)


@router.delete("/{feed_id}", status_code=204)
def delete_feed(
    feed_id: UUID,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    feed_manager.delete_feed(db, organization_id, feed_id)
    return Response(status_code=204)


# =============================================================================
# REGENERATION & OUTPUT
# =============================================================================

@router.post("/{feed_id}/regenerate", response_model=schemas.RegenerateResponse)
def regenerate_feed(
    feed_id: UUID,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    """Claim the feed and render it in the background.

    Returns 409 ConcurrentRun while another run of the same feed is in flight.
    """
    run = feed_manager.start_regeneration(db, organization_id, feed_id, trigger=RunTriggerEnum.manual)
    background_tasks.add_task(feed_manager.execute_generation, run.id)
    return schemas.RegenerateResponse(run_id=run.id, status="generating")


@router.get("/{feed_id}/download")
def download_feed(
    feed_id: UUID,
    format: Optional[FeedFormatEnum] = Query(default=None),
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    content, content_type, filename = feed_manager.download(db, organization_id, feed_id, format=format)
    return Response(
        content=content,
        media_type=content_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/{feed_id}/preview", response_model=schemas.FeedPreviewResponse)
def preview_feed(
    feed_id: UUID,
    limit: int = Query(default=feed_manager.DEFAULT_PREVIEW_LIMIT, ge=1, le=feed_manager.MAX_PREVIEW_LIMIT),
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    return feed_manager.preview(db, organization_id, feed_id, limit=limit)


@router.get("/{feed_id}/history", response_model=schemas.RunHistoryResponse)
def feed_history(
    feed_id: UUID,
    status: Optional[RunStatusEnum] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    runs, total = feed_manager.history(db, organization_id, feed_id, page=page, limit=limit, status=status)
    return {"items": runs, "total": total, "page": page, "limit": limit}


@router.get("/{feed_id}/analytics", response_model=schemas.FeedAnalyticsResponse)
def feed_analytics(
    feed_id: UUID,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    return feed_manager.analytics(db, organization_id, feed_id)


# =============================================================================
# SCHEDULE
# =============================================================================

@router.get("/{feed_id}/schedule", response_model=schemas.ScheduleOut)
def get_schedule(
    feed_id: UUID,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    schedule = feed_scheduler.get_schedule(db, organization_id, feed_id)
    if schedule is None:
        return schemas.ScheduleOut(feed_id=feed_id)
    return schedule


@router.put("/{feed_id}/schedule", response_model=schemas.ScheduleOut)
def put_schedule(
    feed_id: UUID,
    payload: schemas.ScheduleUpdate,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    return feed_scheduler.upsert_schedule(
        db,
        organization_id,
        feed_id,
        enabled=payload.enabled,
        interval_hours=payload.interval_hours,
    )


# =============================================================================
# OUTBOUND WEBHOOK
# =============================================================================

@router.get("/{feed_id}/webhook", response_model=Optional[schemas.WebhookOut])
def get_webhook(
    feed_id: UUID,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    webhook = feed_manager.get_webhook(db, organization_id, feed_id)
    return _webhook_out(webhook) if webhook else None


@router.put("/{feed_id}/webhook", response_model=schemas.WebhookOut)
def put_webhook(
    feed_id: UUID,
    payload: schemas.WebhookUpdate,
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    webhook = feed_manager.upsert_webhook(
        db,
        organization_id,
        feed_id,
        url=payload.url,
        enabled=payload.enabled,
        events=payload.events,
        secret=payload.secret,
        retry_count=payload.retry_count,
        timeout_seconds=payload.timeout_seconds,
    )
    return _webhook_out(webhook)


@router.get("/{feed_id}/webhook/deliveries", response_model=list[schemas.WebhookDeliveryOut])
def webhook_deliveries(
    feed_id: UUID,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    organization_id: UUID = Depends(get_organization_id),
):
    return feed_manager.list_deliveries(db, organization_id, feed_id, limit=limit)
