"""Feed Manager: feed definitions, regeneration runs, downloads.

WHAT:
    - CRUD for `Feed` records (name, channel, format, connector scope, filter)
    - Regeneration in two halves:
        `start_regeneration`  claims the feed (status -> generating) and creates
                              the `started` GenerationRun; called in the request
        `execute_generation`  filter + render + validate in its own session,
                              moves the run to its terminal state exactly once,
                              then notifies the scheduler and webhook dispatcher
    - Download / preview (rendered synchronously, never persisted)
    - Run history, analytics and the stale-run reaper
    - Outbound webhook configuration of a feed

WHY:
    `status = generating` is the advisory lock guaranteeing at most one run
    per feed. The claim is a single conditional UPDATE, so two near-simultaneous
    requests cannot both win: the loser gets `ConcurrentRunError`.

REFERENCES:
    - feedpipe/services/filter_engine.py
    - feedpipe/services/feed_renderers.py
    - feedpipe/services/feed_scheduler.py (record_run_outcome)
    - feedpipe/services/webhook_dispatcher.py
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from feedpipe import database
from feedpipe.deps import get_settings
from feedpipe.errors import (
    BadPayloadError,
    ConcurrentRunError,
    ConflictUniquenessError,
    FeedPipelineError,
    NotFoundConnector,
    NotFoundError,
)
from feedpipe.models import (
    WEBHOOK_EVENTS,
    Connector,
    Feed,
    FeedFormatEnum,
    FeedStatusEnum,
    FeedWebhook,
    GenerationRun,
    Organization,
    RunStatusEnum,
    RunTriggerEnum,
    WebhookDelivery,
)
from feedpipe.services import feed_renderers, webhook_dispatcher
from feedpipe.services.filter_engine import FeedFilter, count_candidates, select_products
from feedpipe.telemetry import capture_exception

logger = logging.getLogger(__name__)

CHANNELS = (
    "Google Shopping",
    "Facebook",
    "Instagram",
    "Amazon",
    "eBay",
    "Pinterest",
    "TikTok Shop",
    "Snapchat",
)

FILE_EXTENSIONS = {
    FeedFormatEnum.xml: "xml",
    FeedFormatEnum.csv: "csv",
    FeedFormatEnum.json: "json",
}

DEFAULT_PREVIEW_LIMIT = 10
MAX_PREVIEW_LIMIT = 100
MAX_VALIDATION_ERRORS_STORED = 100

# Statuses set by the user that keep a feed out of every regeneration path
HELD_STATUSES = (FeedStatusEnum.paused, FeedStatusEnum.inactive)

_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]+")

_UPDATABLE_FIELDS = ("name", "channel", "format", "connector_id", "filter", "settings", "status")


# =============================================================================
# VALIDATION HELPERS
# =============================================================================

def normalize_channel(channel: str) -> str:
    """Return the canonical channel name.

    Matches case-insensitively on the full name or its first word
    ("google" -> "Google Shopping").

    Raises:
        BadPayloadError: unsupported channel
    """
    wanted = (channel or "").strip().lower()
    for known in CHANNELS:
        if wanted in (known.lower(), feed_renderers.channel_key(known)):
            return known
    raise BadPayloadError(
        f"Unsupported channel '{channel}'",
        details={"supported_channels": list(CHANNELS)},
    )


def parse_format(value: Any) -> FeedFormatEnum:
    if isinstance(value, FeedFormatEnum):
        return value
    try:
        return FeedFormatEnum(str(value).lower())
    except ValueError:
        raise BadPayloadError(
            f"Unsupported format '{value}'",
            details={"supported_formats": [f.value for f in FeedFormatEnum]},
        )


def _check_connector(db: Session, organization_id: UUID, connector_id: Optional[UUID]) -> None:
    if connector_id is None:
        return
    exists = (
        db.query(Connector.id)
        .filter(Connector.id == connector_id, Connector.organization_id == organization_id)
        .first()
    )
    if exists is None:
        raise NotFoundConnector(f"Connector {connector_id} not found")


def _check_name_available(db: Session, organization_id: UUID, name: str, exclude_id: Optional[UUID] = None) -> None:
    query = db.query(Feed.id).filter(Feed.organization_id == organization_id, Feed.name == name)
    if exclude_id is not None:
        query = query.filter(Feed.id != exclude_id)
    if query.first() is not None:
        raise ConflictUniquenessError(f"A feed named '{name}' already exists")


def _clean_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise BadPayloadError("Feed name is required")
    return name


# =============================================================================
# CRUD
# =============================================================================

def get_feed(db: Session, organization_id: UUID, feed_id: UUID) -> Feed:
    feed = (
        db.query(Feed)
        .filter(Feed.id == feed_id, Feed.organization_id == organization_id)
        .first()
    )
    if feed is None:
        raise NotFoundError(f"Feed {feed_id} not found")
    return feed


def feeds_for_connector(db: Session, connector: Connector) -> List[Feed]:
    """Feeds whose output depends on `connector`: scoped to it or to any connector.

    Paused and inactive feeds are left out; they are never regenerated.
    """
    return (
        db.query(Feed)
        .filter(
            Feed.organization_id == connector.organization_id,
            or_(Feed.connector_id == connector.id, Feed.connector_id.is_(None)),
            Feed.status.notin_(HELD_STATUSES),
        )
        .order_by(Feed.created_at, Feed.id)
        .all()
    )


def list_feeds(
    db: Session,
    organization_id: UUID,
    *,
    channel: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Feed], int]:
    query = db.query(Feed).filter(Feed.organization_id == organization_id)
    if channel:
        query = query.filter(Feed.channel == normalize_channel(channel))
    total = query.count()
    feeds = (
        query.order_by(Feed.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return feeds, total


def create_feed(
    db: Session,
    organization_id: UUID,
    *,
    name: str,
    channel: str,
    format: Any,
    connector_id: Optional[UUID] = None,
    filter: Optional[Dict[str, Any]] = None,
    settings: Optional[Dict[str, Any]] = None,
) -> Feed:
    """Create a feed definition.

    Raises:
        BadPayloadError: bad name, channel, format or filter
        NotFoundConnector: connector_id not in this organization
        ConflictUniquenessError: name already used
    """
    name = _clean_name(name)
    channel = normalize_channel(channel)
    feed_format = parse_format(format)
    feed_filter = FeedFilter.from_dict(filter)
    _check_connector(db, organization_id, connector_id)
    _check_name_available(db, organization_id, name)

    feed_settings = dict(settings or {})
    feed_settings["filter"] = feed_filter.to_dict()

    feed = Feed(
        organization_id=organization_id,
        connector_id=connector_id,
        name=name,
        channel=channel,
        format=feed_format,
        settings=feed_settings,
        status=FeedStatusEnum.active,
    )
    db.add(feed)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictUniquenessError(f"A feed named '{name}' already exists")
    db.refresh(feed)

    logger.info("[FEED_MANAGER] Created feed %s (%s/%s)", feed.id, channel, feed_format.value)
    return feed


def update_feed(db: Session, organization_id: UUID, feed_id: UUID, changes: Dict[str, Any]) -> Feed:
    """Apply a partial update; keys absent from `changes` are left alone.

    Raises:
        NotFoundError, BadPayloadError, NotFoundConnector, ConflictUniquenessError
    """
    feed = get_feed(db, organization_id, feed_id)
    unknown = set(changes) - set(_UPDATABLE_FIELDS)
    if unknown:
        raise BadPayloadError(f"Unknown feed fields: {', '.join(sorted(unknown))}")

    if "name" in changes:
        name = _clean_name(changes["name"])
        _check_name_available(db, organization_id, name, exclude_id=feed.id)
        feed.name = name
    if "channel" in changes:
        feed.channel = normalize_channel(changes["channel"])
    if "format" in changes:
        feed.format = parse_format(changes["format"])
    if "connector_id" in changes:
        _check_connector(db, organization_id, changes["connector_id"])
        feed.connector_id = changes["connector_id"]

    settings = dict(feed.settings or {})
    if changes.get("settings") is not None:
        settings.update({k: v for k, v in changes["settings"].items() if k != "filter"})
    if "filter" in changes:
        settings["filter"] = FeedFilter.from_dict(changes["filter"]).to_dict()
    feed.settings = settings

    if changes.get("status") is not None:
        new_status = FeedStatusEnum(changes["status"])
        if new_status == FeedStatusEnum.generating:
            raise BadPayloadError("Status 'generating' is set by regeneration only")
        if feed.status == FeedStatusEnum.generating:
            raise ConcurrentRunError("Feed is generating; try again when the run finishes")
        feed.status = new_status

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictUniquenessError(f"A feed named '{feed.name}' already exists")
    db.refresh(feed)
    return feed


def delete_feed(db: Session, organization_id: UUID, feed_id: UUID) -> None:
    feed = get_feed(db, organization_id, feed_id)
    db.delete(feed)
    db.commit()
    logger.info("[FEED_MANAGER] Deleted feed %s", feed_id)


# =============================================================================
# RENDERING
# =============================================================================

def render_context(db: Session, feed: Feed) -> feed_renderers.RenderContext:
    """Storefront inputs: organization setting first, then configuration."""
    settings = get_settings()
    organization = db.query(Organization).filter(Organization.id == feed.organization_id).first()
    org_settings = (organization.settings if organization else None) or {}
    return feed_renderers.RenderContext(
        storefront_base_url=org_settings.get("storefront_base_url") or settings.STOREFRONT_BASE_URL,
        placeholder_image_url=settings.PLACEHOLDER_IMAGE_URL,
        feed_title=feed.name,
    )


def _render_feed(
    db: Session,
    feed: Feed,
    feed_format: FeedFormatEnum,
    limit: Optional[int] = None,
) -> Tuple[bytes, List[feed_renderers.FeedItem]]:
    products = select_products(
        db,
        FeedFilter.from_settings(feed.settings),
        feed.organization_id,
        feed.connector_id,
        limit=limit,
    )
    context = render_context(db, feed)
    items = feed_renderers.build_feed_items(products, context)
    return feed_renderers.render(feed_format, items, context), items


def download_filename(feed: Feed, feed_format: FeedFormatEnum) -> str:
    stem = _FILENAME_RE.sub("_", feed.name).strip("_") or "feed"
    return f"{stem}.{FILE_EXTENSIONS[feed_format]}"


def download(
    db: Session,
    organization_id: UUID,
    feed_id: UUID,
    *,
    format: Any = None,
    limit: Optional[int] = None,
) -> Tuple[bytes, str, str]:
    """Render the current feed output synchronously.

    Returns:
        (content, content_type, filename)
    """
    feed = get_feed(db, organization_id, feed_id)
    feed_format = parse_format(format) if format else feed.format
    if limit is not None and limit < 1:
        raise BadPayloadError("limit must be positive")

    content, _ = _render_feed(db, feed, feed_format, limit=limit)
    return content, feed_renderers.CONTENT_TYPES[feed_format], download_filename(feed, feed_format)


def preview(db: Session, organization_id: UUID, feed_id: UUID, limit: int = DEFAULT_PREVIEW_LIMIT) -> Dict[str, Any]:
    """Render a small slice plus its validation issues."""
    feed = get_feed(db, organization_id, feed_id)
    limit = max(1, min(int(limit or DEFAULT_PREVIEW_LIMIT), MAX_PREVIEW_LIMIT))
    content, items = _render_feed(db, feed, feed.format, limit=limit)
    return {
        "feed_id": str(feed.id),
        "format": feed.format.value,
        "content_type": feed_renderers.CONTENT_TYPES[feed.format],
        "product_count": len(items),
        "content": content.decode("utf-8"),
        "validation_errors": feed_renderers.validate_items(items, feed.channel),
    }


# =============================================================================
# REGENERATION
# =============================================================================

def start_regeneration(
    db: Session,
    organization_id: UUID,
    feed_id: UUID,
    trigger: RunTriggerEnum = RunTriggerEnum.manual,
) -> GenerationRun:
    """Claim the feed and create its `started` run.

    Raises:
        NotFoundError: unknown feed
        BadPayloadError: the feed is paused or inactive
        ConcurrentRunError: a run is already in flight for this feed
    """
    feed = get_feed(db, organization_id, feed_id)

    claimed = (
        db.query(Feed)
        .filter(Feed.id == feed.id, Feed.status.notin_((FeedStatusEnum.generating,) + HELD_STATUSES))
        .update({Feed.status: FeedStatusEnum.generating}, synchronize_session=False)
    )
    if claimed == 0:
        db.rollback()
        if feed.status in HELD_STATUSES:
            raise BadPayloadError(
                f"Feed {feed_id} is {feed.status.value}; activate it before regenerating",
                details={"feed_id": str(feed_id), "status": feed.status.value},
            )
        raise ConcurrentRunError(
            f"Feed {feed_id} is already generating",
            details={"feed_id": str(feed_id)},
        )

    run = GenerationRun(
        feed_id=feed.id,
        status=RunStatusEnum.started,
        trigger=trigger,
        file_format=feed.format.value,
        started_at=datetime.utcnow(),
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    db.refresh(feed)

    logger.info("[FEED_MANAGER] Run %s started for feed %s (%s)", run.id, feed.id, trigger.value)
    return run


def _complete_run(db: Session, feed: Feed, run: GenerationRun, started: float) -> None:
    feed_filter = FeedFilter.from_settings(feed.settings)
    processed = count_candidates(db, feed.organization_id, feed.connector_id)
    products = select_products(db, feed_filter, feed.organization_id, feed.connector_id)

    context = render_context(db, feed)
    items = feed_renderers.build_feed_items(products, context)
    content = feed_renderers.render(feed.format, items, context)
    validation_errors = feed_renderers.validate_items(items, feed.channel)

    now = datetime.utcnow()
    run.status = RunStatusEnum.completed
    run.products_processed = processed
    run.products_included = len(items)
    run.products_excluded = max(processed - len(items), 0)
    run.validation_error_count = len(validation_errors)
    run.validation_errors = validation_errors[:MAX_VALIDATION_ERRORS_STORED]
    run.generation_time_ms = int((time.time() - started) * 1000)
    run.file_size_bytes = len(content)
    run.file_url = f"/api/v1/feeds/{feed.id}/download"
    run.file_format = feed.format.value
    run.completed_at = now

    # Release the lock only; a status set by the user mid-run stays
    db.query(Feed).filter(Feed.id == feed.id, Feed.status == FeedStatusEnum.generating).update(
        {Feed.status: FeedStatusEnum.active}, synchronize_session=False,
    )
    feed.products_count = len(items)
    feed.last_generated = now


def _fail_run(db: Session, run_id: UUID, error_message: str) -> Tuple[Optional[Feed], Optional[GenerationRun]]:
    """Move a still-started run to failed and release its feed (if still locked) to `error`."""
    run = db.query(GenerationRun).filter(GenerationRun.id == run_id).first()
    if run is None or run.status != RunStatusEnum.started:
        return None, None
    feed = db.query(Feed).filter(Feed.id == run.feed_id).first()

    run.status = RunStatusEnum.failed
    run.error_message = error_message
    run.completed_at = datetime.utcnow()
    db.query(Feed).filter(Feed.id == run.feed_id, Feed.status == FeedStatusEnum.generating).update(
        {Feed.status: FeedStatusEnum.error}, synchronize_session=False,
    )
    db.commit()
    if feed is not None:
        db.refresh(feed)
    return feed, run


async def execute_generation(run_id: UUID, now: Optional[datetime] = None) -> Optional[RunStatusEnum]:
    """Run filter + render for a started run and publish the outcome.

    Opens its own session: this outlives the request that created the run.
    Never raises; failures are recorded on the run, captured to Sentry and
    published as `feed.failed`.

    Args:
        run_id: A run created by `start_regeneration`
        now: Tick time for schedule bookkeeping (scheduler passes its own)

    Returns:
        Terminal status, or None if the run was not in `started`
    """
    from feedpipe.services import feed_scheduler

    db = database.SessionLocal()
    started = time.time()
    try:
        run = db.query(GenerationRun).filter(GenerationRun.id == run_id).first()
        if run is None or run.status != RunStatusEnum.started:
            logger.warning("[FEED_MANAGER] Run %s is not pending; skipping", run_id)
            return None
        feed = db.query(Feed).filter(Feed.id == run.feed_id).first()
        feed_id = feed.id

        error_message: Optional[str] = None
        try:
            _complete_run(db, feed, run, started)
            db.commit()
        except FeedPipelineError as e:
            db.rollback()
            error_message = e.message
        except Exception as e:
            db.rollback()
            error_message = f"Unexpected error: {e}"
            capture_exception(e, extra={
                "operation": "feed_generation",
                "run_id": str(run_id),
                "feed_id": str(feed_id),
            })

        if error_message is None:
            db.refresh(run)
            db.refresh(feed)
            logger.info(
                "[FEED_MANAGER] Run %s completed: %d products in %dms",
                run.id, run.products_included, run.generation_time_ms,
            )
            payload = webhook_dispatcher.generated_payload(feed, run)
            event = payload["event"]
        else:
            feed, run = _fail_run(db, run_id, error_message)
            if run is None:
                return None
            logger.error("[FEED_MANAGER] Run %s failed: %s", run_id, error_message)
            payload = webhook_dispatcher.failed_payload(feed, run, error_message)
            event = payload["event"]

        success = error_message is None
        feed_scheduler.record_run_outcome(db, feed_id, success=success, error=error_message, now=now)

        try:
            await webhook_dispatcher.dispatch_event(db, feed, event, payload)
        except Exception as e:
            db.rollback()
            logger.error("[FEED_MANAGER] Webhook dispatch for run %s failed: %s", run_id, e)
            capture_exception(e, extra={"operation": "webhook_dispatch", "run_id": str(run_id)})

        return RunStatusEnum.completed if success else RunStatusEnum.failed

    except Exception as e:
        # Last resort: never leave the feed locked
        db.rollback()
        logger.error("[FEED_MANAGER] Generation %s crashed: %s", run_id, e)
        capture_exception(e, extra={"operation": "feed_generation", "run_id": str(run_id)})
        _fail_run(db, run_id, f"Unexpected error: {e}")
        return RunStatusEnum.failed
    finally:
        db.close()


def reap_stale_runs(db: Session, now: Optional[datetime] = None, stale_minutes: Optional[int] = None) -> int:
    """Fail runs stuck in `started` and release their feeds.

    A crashed process leaves its feed in `generating` forever; this sweep is
    the recovery path. Returns the number of runs reaped.
    """
    now = now or datetime.utcnow()
    stale_minutes = stale_minutes or get_settings().STALE_RUN_MINUTES
    cutoff = now - timedelta(minutes=stale_minutes)

    stale = (
        db.query(GenerationRun)
        .filter(GenerationRun.status == RunStatusEnum.started, GenerationRun.started_at < cutoff)
        .all()
    )
    for run in stale:
        run.status = RunStatusEnum.failed
        run.error_message = "Generation timed out"
        run.completed_at = now
        db.query(Feed).filter(
            Feed.id == run.feed_id, Feed.status == FeedStatusEnum.generating,
        ).update({Feed.status: FeedStatusEnum.error}, synchronize_session=False)
        logger.warning("[FEED_MANAGER] Reaped stale run %s of feed %s", run.id, run.feed_id)

    if stale:
        db.commit()
    return len(stale)


# =============================================================================
# HISTORY & ANALYTICS
# =============================================================================

def history(
    db: Session,
    organization_id: UUID,
    feed_id: UUID,
    *,
    page: int = 1,
    limit: int = 20,
    status: Optional[RunStatusEnum] = None,
) -> Tuple[List[GenerationRun], int]:
    """Runs of a feed, newest first."""
    get_feed(db, organization_id, feed_id)
    query = db.query(GenerationRun).filter(GenerationRun.feed_id == feed_id)
    if status is not None:
        query = query.filter(GenerationRun.status == status)
    total = query.count()
    runs = (
        query.order_by(GenerationRun.started_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return runs, total


def analytics(db: Session, organization_id: UUID, feed_id: UUID) -> Dict[str, Any]:
    feed = get_feed(db, organization_id, feed_id)

    counts = dict(
        db.query(GenerationRun.status, func.count(GenerationRun.id))
        .filter(GenerationRun.feed_id == feed.id)
        .group_by(GenerationRun.status)
        .all()
    )
    completed = counts.get(RunStatusEnum.completed, 0)
    failed = counts.get(RunStatusEnum.failed, 0)
    total = sum(counts.values())
    finished = completed + failed

    averages = (
        db.query(
            func.avg(GenerationRun.generation_time_ms),
            func.avg(GenerationRun.products_included),
        )
        .filter(GenerationRun.feed_id == feed.id, GenerationRun.status == RunStatusEnum.completed)
        .one()
    )
    last_run = (
        db.query(GenerationRun)
        .filter(GenerationRun.feed_id == feed.id)
        .order_by(GenerationRun.started_at.desc())
        .first()
    )
    deliveries = (
        db.query(func.count(WebhookDelivery.id))
        .filter(WebhookDelivery.feed_id == feed.id)
        .scalar()
    )

    return {
        "feed_id": str(feed.id),
        "total_runs": total,
        "completed_runs": completed,
        "failed_runs": failed,
        "success_rate": round(completed / finished * 100, 1) if finished else 0.0,
        "average_generation_time_ms": int(averages[0]) if averages[0] is not None else None,
        "average_products_included": round(float(averages[1]), 1) if averages[1] is not None else None,
        "products_count": feed.products_count,
        "last_generated": feed.last_generated,
        "last_run_status": last_run.status.value if last_run else None,
        "last_run_at": last_run.started_at if last_run else None,
        "webhook_deliveries": deliveries or 0,
    }


# =============================================================================
# WEBHOOK CONFIGURATION
# =============================================================================

def get_webhook(db: Session, organization_id: UUID, feed_id: UUID) -> Optional[FeedWebhook]:
    feed = get_feed(db, organization_id, feed_id)
    return (
        db.query(FeedWebhook)
        .filter(FeedWebhook.feed_id == feed.id)
        .order_by(FeedWebhook.created_at)
        .first()
    )


def upsert_webhook(
    db: Session,
    organization_id: UUID,
    feed_id: UUID,
    *,
    url: str,
    enabled: bool = True,
    events: Optional[List[str]] = None,
    secret: Optional[str] = None,
    retry_count: Optional[int] = None,
    timeout_seconds: Optional[int] = None,
) -> FeedWebhook:
    """Create or replace the feed's outbound webhook.

    Raises:
        BadPayloadError: bad URL, unknown events, or out-of-range retry/timeout
    """
    feed = get_feed(db, organization_id, feed_id)

    url = (url or "").strip()
    if not url.startswith(("http://", "https://")):
        raise BadPayloadError("Webhook url must start with http:// or https://")
    events = list(events) if events is not None else list(WEBHOOK_EVENTS)
    unknown = [e for e in events if e not in WEBHOOK_EVENTS]
    if unknown or not events:
        raise BadPayloadError(
            "Webhook events must be a non-empty subset of the supported events",
            details={"supported_events": list(WEBHOOK_EVENTS), "unknown": unknown},
        )
    if retry_count is not None and not 0 <= retry_count <= 10:
        raise BadPayloadError("retry_count must be between 0 and 10")
    if timeout_seconds is not None and not 1 <= timeout_seconds <= 120:
        raise BadPayloadError("timeout_seconds must be between 1 and 120")

    webhook = get_webhook(db, organization_id, feed.id)
    if webhook is None:
        webhook = FeedWebhook(feed_id=feed.id)
        db.add(webhook)

    webhook.url = url
    webhook.enabled = enabled
    webhook.events = events
    if secret is not None:
        webhook.secret = secret or None
    if retry_count is not None:
        webhook.retry_count = retry_count
    if timeout_seconds is not None:
        webhook.timeout_seconds = timeout_seconds

    db.commit()
    db.refresh(webhook)
    return webhook


def list_deliveries(
    db: Session,
    organization_id: UUID,
    feed_id: UUID,
    limit: int = 50,
) -> List[WebhookDelivery]:
    feed = get_feed(db, organization_id, feed_id)
    return (
        db.query(WebhookDelivery)
        .filter(WebhookDelivery.feed_id == feed.id)
        .order_by(WebhookDelivery.delivered_at.desc())
        .limit(limit)
        .all()
    )
