"""Outbound webhook dispatcher.

WHAT:
    Delivers a regeneration outcome (`feed.generated` / `feed.failed`) to every
    enabled webhook of the feed subscribed to that event:
    - Up to `retry_count + 1` POST attempts, per-attempt `timeout_seconds`
    - Linear backoff between attempts (`attempt * 1s`)
    - One `WebhookDelivery` audit row per attempt
    - Aggregate counters incremented with SQL expressions
    - Optional `X-Webhook-Signature: sha256=<base64 hmac>` when a secret is set

WHY:
    Delivery is at-least-once; consumers must be idempotent. The audit rows give
    exactly-once observation of every attempt.

LOOPBACK:
    A webhook pointed at this service's own receiver path never goes over HTTP.
    The projector is invoked directly and one successful delivery is recorded,
    so a short timeout cannot make the service wait on itself.

REFERENCES:
    - feedpipe/security.py (signature algorithm shared with inbound verification)
    - feedpipe/services/notification_projector.py
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx
from sqlalchemy.orm import Session

from feedpipe.deps import get_settings
from feedpipe.models import FEED_FAILED_EVENT, FEED_GENERATED_EVENT, Feed, FeedWebhook, WebhookDelivery
from feedpipe.security import compute_hmac_signature
from feedpipe.services import notification_projector

logger = logging.getLogger(__name__)

RECEIVER_PATH = "/api/v1/feeds/webhook-receiver"
LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "0.0.0.0", "::1"}
RESPONSE_EXCERPT_CHARS = 1000
BACKOFF_STEP_SECONDS = 1.0


@dataclass
class DeliveryOutcome:
    """Result of delivering one event to one webhook."""
    webhook_id: str
    url: str
    success: bool
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None
    loopback: bool = False


def _http_client(timeout: float) -> httpx.AsyncClient:
    """Client for one delivery attempt (replaced in tests)."""
    return httpx.AsyncClient(timeout=timeout)


async def _backoff_sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def is_loopback_url(url: str) -> bool:
    """True when `url` targets this service's notification receiver."""
    parsed = urlparse(url or "")
    if parsed.path.rstrip("/") != RECEIVER_PATH:
        return False
    host = (parsed.hostname or "").lower()
    if host in LOOPBACK_HOSTS:
        return True
    public_host = (urlparse(get_settings().PUBLIC_BASE_URL).hostname or "").lower()
    return bool(public_host) and host == public_host


def build_headers(webhook: FeedWebhook, event: str, feed_id: str, body: bytes) -> Dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "X-Webhook-Event": event,
        "X-Feed-ID": feed_id,
    }
    if webhook.secret:
        headers["X-Webhook-Signature"] = f"sha256={compute_hmac_signature(webhook.secret, body)}"
    return headers


def _record_attempt(
    db: Session,
    webhook: FeedWebhook,
    event: str,
    payload: Dict[str, Any],
    *,
    attempt: int,
    success: bool,
    status_code: Optional[int] = None,
    response_body: Optional[str] = None,
    response_time_ms: Optional[int] = None,
    error: Optional[str] = None,
) -> None:
    db.add(WebhookDelivery(
        webhook_id=webhook.id,
        feed_id=webhook.feed_id,
        event=event,
        payload=payload,
        status_code=status_code,
        response_body=(response_body or "")[:RESPONSE_EXCERPT_CHARS] or None,
        response_time_ms=response_time_ms,
        success=success,
        error_message=error,
        retry_attempt=attempt,
        delivered_at=datetime.utcnow(),
    ))

    counters = {
        FeedWebhook.total_deliveries: FeedWebhook.total_deliveries + 1,
        FeedWebhook.last_triggered_at: datetime.utcnow(),
    }
    if success:
        counters[FeedWebhook.successful_deliveries] = FeedWebhook.successful_deliveries + 1
    else:
        counters[FeedWebhook.failed_deliveries] = FeedWebhook.failed_deliveries + 1
    db.query(FeedWebhook).filter(FeedWebhook.id == webhook.id).update(counters, synchronize_session=False)
    db.commit()


async def deliver(
    db: Session,
    webhook: FeedWebhook,
    organization_id,
    event: str,
    payload: Dict[str, Any],
) -> DeliveryOutcome:
    """Deliver one event to one webhook, retrying on failure."""
    feed_id = str(payload.get("feed_id") or webhook.feed_id)

    if is_loopback_url(webhook.url):
        started = time.time()
        notification_projector.project_feed_event(db, organization_id, payload)
        _record_attempt(
            db, webhook, event, payload,
            attempt=0,
            success=True,
            status_code=200,
            response_body="delivered in-process",
            response_time_ms=int((time.time() - started) * 1000),
        )
        logger.info("[WEBHOOK_DISPATCH] Loopback delivery of %s for feed %s", event, feed_id)
        return DeliveryOutcome(
            webhook_id=str(webhook.id), url=webhook.url, success=True, attempts=1, status_code=200, loopback=True,
        )

    body = json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")
    headers = build_headers(webhook, event, feed_id, body)
    max_attempts = max(webhook.retry_count or 0, 0) + 1
    timeout = float(webhook.timeout_seconds or 30)

    status_code: Optional[int] = None
    error: Optional[str] = None

    for attempt in range(max_attempts):
        if attempt > 0:
            await _backoff_sleep(attempt * BACKOFF_STEP_SECONDS)

        started = time.time()
        status_code = None
        response_text = None
        try:
            async with _http_client(timeout) as client:
                response = await client.post(webhook.url, content=body, headers=headers)
            status_code = response.status_code
            response_text = response.text
            success = 200 <= status_code < 300
            error = None if success else f"HTTP {status_code}"
        except httpx.TimeoutException:
            success = False
            error = f"Timeout after {timeout:g}s"
        except httpx.RequestError as e:
            success = False
            error = f"Request error: {e}"
        elapsed_ms = int((time.time() - started) * 1000)

        _record_attempt(
            db, webhook, event, payload,
            attempt=attempt,
            success=success,
            status_code=status_code,
            response_body=response_text,
            response_time_ms=elapsed_ms,
            error=error,
        )

        if success:
            logger.info(
                "[WEBHOOK_DISPATCH] %s delivered to %s (attempt %d/%d, %dms)",
                event, webhook.url, attempt + 1, max_attempts, elapsed_ms,
            )
            return DeliveryOutcome(
                webhook_id=str(webhook.id), url=webhook.url, success=True,
                attempts=attempt + 1, status_code=status_code,
            )

        logger.warning(
            "[WEBHOOK_DISPATCH] %s to %s failed (attempt %d/%d): %s",
            event, webhook.url, attempt + 1, max_attempts, error,
        )

    logger.error("[WEBHOOK_DISPATCH] Giving up on %s after %d attempts", webhook.url, max_attempts)
    return DeliveryOutcome(
        webhook_id=str(webhook.id), url=webhook.url, success=False,
        attempts=max_attempts, status_code=status_code, error=error,
    )


async def dispatch_event(db: Session, feed: Feed, event: str, payload: Dict[str, Any]) -> List[DeliveryOutcome]:
    """Deliver `payload` to every enabled webhook of `feed` subscribed to `event`.

    Never raises for delivery failures; they are recorded per attempt.
    """
    webhooks = (
        db.query(FeedWebhook)
        .filter(FeedWebhook.feed_id == feed.id, FeedWebhook.enabled.is_(True))
        .order_by(FeedWebhook.created_at)
        .all()
    )
    subscribed = [w for w in webhooks if event in (w.events or [])]
    if not subscribed:
        return []

    outcomes = []
    for webhook in subscribed:
        outcomes.append(await deliver(db, webhook, feed.organization_id, event, payload))
    return outcomes


# =============================================================================
# PAYLOADS
# =============================================================================

def generated_payload(feed: Feed, run) -> Dict[str, Any]:
    return {
        "event": FEED_GENERATED_EVENT,
        "feed_id": str(feed.id),
        "feed_name": feed.name,
        "channel": feed.channel,
        "format": feed.format.value,
        "run_id": str(run.id),
        "products_included": run.products_included,
        "products_excluded": run.products_excluded,
        "generation_time_ms": run.generation_time_ms,
        "file_size_bytes": run.file_size_bytes,
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }


def failed_payload(feed: Feed, run, error: str) -> Dict[str, Any]:
    return {
        "event": FEED_FAILED_EVENT,
        "feed_id": str(feed.id),
        "feed_name": feed.name,
        "channel": feed.channel,
        "run_id": str(run.id),
        "error": error,
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }
