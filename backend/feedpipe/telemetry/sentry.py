"""
Sentry Error Tracking
=====================

Centralized error tracking for the API process and the arq worker.

Related files:
- feedpipe/main.py: Initializes Sentry in create_app()
- feedpipe/workers/arq_worker.py: Initializes Sentry on worker startup
- feedpipe/services/feed_manager.py: Captures background regeneration failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled without it)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

_initialized = False


def init_sentry() -> bool:
    """
    Initialize Sentry SDK.

    Returns:
        True if Sentry was initialized, False when no DSN is configured
        or initialization failed.
    """
    global _initialized

    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        logger.debug("[SENTRY] SENTRY_DSN not set - error tracking disabled")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
        _initialized = True
        logger.debug("[SENTRY] Initialized for %s environment", environment)
        return True

    except Exception as e:
        logger.error("[SENTRY] Failed to initialize: %s", e)
        return False


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Capture a handled exception.

    Use this for exceptions that are caught at a task boundary (background
    regenerations, worker jobs) but should still be tracked.

    Example:
        try:
            await execute_generation(run_id)
        except Exception as e:
            capture_exception(e, extra={"operation": "regenerate", "run_id": run_id})
    """
    if not _initialized:
        logger.error("Exception (Sentry disabled): %s", exception)
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture exception: %s", e)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """
    Capture a message that is not an exception.

    Example:
        capture_message(
            "Schedule auto-paused after repeated failures",
            level="warning",
            extra={"feed_id": str(feed.id)},
        )
    """
    if not _initialized:
        logger.log(
            logging.getLevelName(level.upper()),
            "Message (Sentry disabled): %s",
            message,
        )
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture message: %s", e)
