"""
Telemetry Module
================

Observability for the feed pipeline.

Components:
- sentry.py: Error tracking for the API and the arq worker

Environment Variables:
- SENTRY_DSN: Sentry project DSN

Usage:
    from feedpipe.telemetry import init_sentry, capture_exception

    init_sentry()
    capture_exception(e, extra={"operation": "regenerate"})
"""

from feedpipe.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]
