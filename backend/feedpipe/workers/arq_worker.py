"""ARQ async worker - background jobs and cron for the feed pipeline.

WHAT:
    Single async worker for:
    - regenerate_feed_job: claim + render one feed (queued regenerations)
    - sync_connector_job: pull sync one connector
    - scheduler_tick_job: cron, every minute - due schedules
    - reap_stale_runs_job: cron, every 15 minutes - release stuck feeds
    - purge_notifications_job: cron, daily - delete expired notifications

WHY:
    - The services own all logic; jobs only open sessions and translate
      arguments (ARQ passes strings)
    - Overlapping ticks are safe: the feed's `generating` status admits one run

USAGE:
    # Start worker
    arq feedpipe.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m feedpipe.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - feedpipe/services/feed_scheduler.py
    - feedpipe/services/feed_manager.py
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict
from uuid import UUID

from arq import cron, func

from feedpipe import database
from feedpipe.errors import FeedPipelineError
from feedpipe.models import RunTriggerEnum
from feedpipe.services import feed_manager, feed_scheduler, notification_projector, product_sync_service
from feedpipe.telemetry import capture_exception, init_sentry
from feedpipe.workers.arq_enqueue import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)


# =============================================================================
# JOBS
# =============================================================================

async def regenerate_feed_job(ctx: Dict, organization_id: str, feed_id: str, trigger: str = "webhook") -> Dict:
    """Regenerate one feed.

    Returns:
        {"success": bool, "run_id"?, "status"?, "error"?}
    """
    logger.info("[ARQ] Regenerating feed %s (%s)", feed_id, trigger)

    with database.get_sync_session() as db:
        try:
            run = feed_manager.start_regeneration(
                db, UUID(organization_id), UUID(feed_id), trigger=RunTriggerEnum(trigger),
            )
        except FeedPipelineError as e:
            logger.warning("[ARQ] Feed %s not regenerated: %s", feed_id, e.message)
            return {"success": False, "error": e.error, "message": e.message}
        run_id = run.id

    status = await feed_manager.execute_generation(run_id)
    return {
        "success": status is not None and status.value == "completed",
        "run_id": str(run_id),
        "status": status.value if status else None,
    }


async def sync_connector_job(ctx: Dict, organization_id: str, connector_id: str) -> Dict:
    """Pull sync one connector."""
    logger.info("[ARQ] Syncing connector %s", connector_id)
    result = await product_sync_service.sync_connector_detached(UUID(organization_id), UUID(connector_id))
    if result is None:
        return {"success": False}
    return {
        "success": result.success,
        "created": result.stats.created,
        "updated": result.stats.updated,
        "failed": result.stats.failed,
        "truncated": result.stats.truncated,
        "errors": result.errors[:10],
    }


async def scheduler_tick_job(ctx: Dict) -> Dict:
    result = await feed_scheduler.run_scheduled_tick()
    return {
        "selected": result.selected,
        "completed": result.completed,
        "failed": result.failed,
        "skipped": result.skipped,
        "reaped": result.reaped,
    }


async def reap_stale_runs_job(ctx: Dict) -> Dict:
    with database.get_sync_session() as db:
        try:
            reaped = feed_manager.reap_stale_runs(db, now=datetime.utcnow())
        except Exception as e:
            db.rollback()
            logger.error("[ARQ] Stale run reaper failed: %s", e)
            capture_exception(e, extra={"operation": "reap_stale_runs"})
            return {"success": False, "error": str(e)}
    return {"success": True, "reaped": reaped}


async def purge_notifications_job(ctx: Dict) -> Dict:
    with database.get_sync_session() as db:
        try:
            purged = notification_projector.purge_expired(db)
        except Exception as e:
            db.rollback()
            logger.error("[ARQ] Notification purge failed: %s", e)
            capture_exception(e, extra={"operation": "purge_notifications"})
            return {"success": False, "error": str(e)}
    return {"success": True, "purged": purged}


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize Sentry and log config."""
    import platform

    init_sentry()
    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up")
    logger.info("[ARQ] Python: %s", platform.python_version())
    logger.info("[ARQ] Host: %s", platform.node())
    logger.info("[ARQ] Queue: %s", QUEUE_NAME)
    logger.info("=" * 60)

    ctx["startup_time"] = datetime.utcnow()
    ctx["jobs_processed"] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - log stats."""
    uptime = datetime.utcnow() - ctx.get("startup_time", datetime.utcnow())
    logger.info("[ARQ] Worker shutting down: jobs=%d uptime=%s", ctx.get("jobs_processed", 0), uptime)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    Runs the queued jobs and the cron schedule. Only one worker process should
    carry cron_jobs; extra workers for throughput can reuse `functions` alone.

    - max_jobs=10: concurrent jobs
    - job_timeout=600: 10 minutes per job (pull sync of 10 pages)
    - max_tries=3: queued jobs retry on transient failures
    """

    # No stored result: the `regenerate:<feed>` job id must be free again once a run ends
    functions = [
        func(regenerate_feed_job, keep_result=0),
        sync_connector_job,
        scheduler_tick_job,
        reap_stale_runs_job,
        purge_notifications_job,
    ]

    cron_jobs = [
        cron(scheduler_tick_job, second=0, run_at_startup=False, unique=True),
        cron(reap_stale_runs_job, minute={0, 15, 30, 45}, second=30, unique=True),
        cron(purge_notifications_job, hour=3, minute=0, unique=True),
    ]

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    # Redis connection
    redis_settings = get_redis_settings()

    # Performance settings
    max_jobs = 10
    job_timeout = 600
    keep_result = 3600
    retry_jobs = True
    max_tries = 3
    health_check_interval = 30

    queue_name = QUEUE_NAME
