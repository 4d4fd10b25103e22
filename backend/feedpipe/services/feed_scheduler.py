"""Feed regeneration scheduler.

WHAT:
    Interval-based auto-regeneration of feeds:
    - `upsert_schedule`: enable/disable a feed's schedule, bounded by
      MAX_ACTIVE_SCHEDULES
    - `run_scheduled_tick`: select due schedules and regenerate each one
    - `record_run_outcome`: schedule bookkeeping after every terminal run

WHY:
    - Single-process and tick-driven: the arq cron job (every minute) and
      `POST /api/v1/feeds/run-scheduled` both call `run_scheduled_tick`
    - Overlapping ticks are harmless: the feed's `generating` status lets only
      one of them start a run
    - Missed windows are not coalesced; the next tick runs the feed once

SELECTION:
    enabled AND status = 'active' AND next_run_at <= now
    ORDER BY next_run_at LIMIT SCHEDULER_BATCH_LIMIT (50)

BACKOFF:
    Every terminal run sets last_run_at = now and next_run_at = now + interval.
    Failures increment consecutive_failures; at SCHEDULE_MAX_FAILURES (3) the
    schedule becomes `failed` and is no longer selected. A success resets it.

REFERENCES:
    - feedpipe/services/feed_manager.py
    - feedpipe/workers/arq_worker.py (cron registration)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from feedpipe.database import SessionLocal
from feedpipe.deps import get_settings
from feedpipe.errors import BadPayloadError, ConcurrentRunError, FeedPipelineError, ScheduleCapacityError
from feedpipe.models import Feed, FeedSchedule, FeedStatusEnum, RunStatusEnum, RunTriggerEnum, ScheduleStatusEnum
from feedpipe.services import notification_projector
from feedpipe.telemetry import capture_exception, capture_message

logger = logging.getLogger(__name__)

MIN_INTERVAL_HOURS = 1
MAX_INTERVAL_HOURS = 24 * 30


@dataclass
class TickResult:
    """Outcome of one scheduler tick."""
    selected: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    reaped: int = 0


# =============================================================================
# SCHEDULE CONFIGURATION
# =============================================================================

def get_schedule(db: Session, organization_id: UUID, feed_id: UUID) -> Optional[FeedSchedule]:
    from feedpipe.services.feed_manager import get_feed

    feed = get_feed(db, organization_id, feed_id)
    return db.query(FeedSchedule).filter(FeedSchedule.feed_id == feed.id).first()


def upsert_schedule(
    db: Session,
    organization_id: UUID,
    feed_id: UUID,
    *,
    enabled: bool,
    interval_hours: int,
    now: Optional[datetime] = None,
) -> FeedSchedule:
    """Create or update a feed's schedule.

    Enabling (or re-enabling a failed schedule) resets the failure state and
    sets the first run one interval from now.

    Raises:
        NotFoundError: unknown feed
        BadPayloadError: interval out of range
        ScheduleCapacityError: too many enabled schedules
    """
    from feedpipe.services.feed_manager import get_feed

    if not MIN_INTERVAL_HOURS <= int(interval_hours) <= MAX_INTERVAL_HOURS:
        raise BadPayloadError(
            f"interval_hours must be between {MIN_INTERVAL_HOURS} and {MAX_INTERVAL_HOURS}"
        )

    now = now or datetime.utcnow()
    feed = get_feed(db, organization_id, feed_id)
    schedule = db.query(FeedSchedule).filter(FeedSchedule.feed_id == feed.id).first()
    was_enabled = bool(schedule and schedule.enabled and schedule.status == ScheduleStatusEnum.active)

    if enabled and not was_enabled:
        active_count = (
            db.query(FeedSchedule)
            .filter(FeedSchedule.enabled.is_(True), FeedSchedule.status == ScheduleStatusEnum.active)
            .count()
        )
        limit = get_settings().MAX_ACTIVE_SCHEDULES
        if active_count >= limit:
            raise ScheduleCapacityError(
                f"At most {limit} schedules may be active",
                details={"active_schedules": active_count},
            )

    if schedule is None:
        schedule = FeedSchedule(feed_id=feed.id)
        db.add(schedule)

    interval_changed = schedule.interval_hours != int(interval_hours)
    schedule.enabled = enabled
    schedule.interval_hours = int(interval_hours)

    if enabled and (not was_enabled or interval_changed or schedule.next_run_at is None):
        schedule.status = ScheduleStatusEnum.active
        schedule.consecutive_failures = 0
        schedule.last_error = None
        schedule.next_run_at = now + timedelta(hours=schedule.interval_hours)
    elif not enabled:
        schedule.status = ScheduleStatusEnum.paused

    db.commit()
    db.refresh(schedule)
    logger.info(
        "[SCHEDULER] Schedule for feed %s: enabled=%s interval=%dh next=%s",
        feed.id, schedule.enabled, schedule.interval_hours, schedule.next_run_at,
    )
    return schedule


# =============================================================================
# RUN BOOKKEEPING
# =============================================================================

def record_run_outcome(
    db: Session,
    feed_id: UUID,
    *,
    success: bool,
    error: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[FeedSchedule]:
    """Advance the feed's schedule after a terminal run (no-op without one)."""
    schedule = db.query(FeedSchedule).filter(FeedSchedule.feed_id == feed_id).first()
    if schedule is None or not schedule.enabled:
        return schedule

    now = now or datetime.utcnow()
    schedule.last_run_at = now
    schedule.next_run_at = now + timedelta(hours=schedule.interval_hours)

    if success:
        schedule.consecutive_failures = 0
        schedule.last_error = None
        db.commit()
        return schedule

    schedule.consecutive_failures = (schedule.consecutive_failures or 0) + 1
    schedule.last_error = error
    max_failures = get_settings().SCHEDULE_MAX_FAILURES

    if schedule.consecutive_failures >= max_failures and schedule.status != ScheduleStatusEnum.failed:
        schedule.status = ScheduleStatusEnum.failed
        feed = db.query(Feed).filter(Feed.id == feed_id).first()
        logger.warning(
            "[SCHEDULER] Schedule for feed %s paused after %d consecutive failures",
            feed_id, schedule.consecutive_failures,
        )
        if feed is not None:
            notification_projector.project_system_alert(
                db,
                feed.organization_id,
                title=f"Schedule paused for '{feed.name}'",
                message=(
                    f"Automatic regeneration stopped after {schedule.consecutive_failures} "
                    f"consecutive failures. Last error: {error or 'unknown'}"
                ),
                entity_type="feed",
                entity_id=str(feed.id),
                entity_name=feed.name,
                metadata={"consecutive_failures": schedule.consecutive_failures},
            )
        capture_message(
            "Feed schedule auto-paused after repeated failures",
            level="warning",
            extra={"feed_id": str(feed_id), "last_error": error},
        )

    db.commit()
    return schedule


def _advance_window(db: Session, feed_id: UUID, now: datetime) -> None:
    """Move next_run_at on without touching the failure state."""
    schedule = db.query(FeedSchedule).filter(FeedSchedule.feed_id == feed_id).first()
    if schedule is not None:
        schedule.next_run_at = now + timedelta(hours=schedule.interval_hours)
        db.commit()


# =============================================================================
# TICK
# =============================================================================

def due_schedules(db: Session, now: datetime, limit: Optional[int] = None):
    """Enabled, active schedules whose window has opened; paused or inactive feeds never qualify."""
    limit = limit or get_settings().SCHEDULER_BATCH_LIMIT
    return (
        db.query(FeedSchedule)
        .join(Feed, Feed.id == FeedSchedule.feed_id)
        .filter(
            FeedSchedule.enabled.is_(True),
            FeedSchedule.status == ScheduleStatusEnum.active,
            Feed.status.notin_((FeedStatusEnum.paused, FeedStatusEnum.inactive)),
            FeedSchedule.next_run_at.isnot(None),
            FeedSchedule.next_run_at <= now,
        )
        .order_by(FeedSchedule.next_run_at)
        .limit(limit)
        .all()
    )


async def run_scheduled_tick(now: Optional[datetime] = None) -> TickResult:
    """Regenerate every due feed once.

    Idempotent per window: a regenerated schedule moves its next_run_at one
    interval past `now`, so a repeated tick at the same time selects nothing.
    """
    from feedpipe.services import feed_manager

    now = now or datetime.utcnow()
    result = TickResult()

    db: Session = SessionLocal()
    try:
        result.reaped = feed_manager.reap_stale_runs(db, now=now)

        due = [(s.feed_id, s.feed.organization_id) for s in due_schedules(db, now)]
        result.selected = len(due)
        logger.info("[SCHEDULER] Tick at %s: %d due schedules", now.isoformat(), len(due))

        for feed_id, organization_id in due:
            try:
                run = feed_manager.start_regeneration(
                    db, organization_id, feed_id, trigger=RunTriggerEnum.scheduled,
                )
            except ConcurrentRunError:
                # Another run already owns the feed; move the window on
                result.skipped += 1
                _advance_window(db, feed_id, now)
                continue
            except FeedPipelineError as e:
                result.failed += 1
                record_run_outcome(db, feed_id, success=False, error=e.message, now=now)
                continue

            status = await feed_manager.execute_generation(run.id, now=now)
            db.expire_all()
            if status == RunStatusEnum.completed:
                result.completed += 1
            else:
                result.failed += 1

    except Exception as e:
        db.rollback()
        logger.error("[SCHEDULER] Tick failed: %s", e)
        capture_exception(e, extra={"operation": "scheduler_tick", "now": now.isoformat()})
    finally:
        db.close()

    logger.info(
        "[SCHEDULER] Tick complete: selected=%d completed=%d failed=%d skipped=%d reaped=%d",
        result.selected, result.completed, result.failed, result.skipped, result.reaped,
    )
    return result
