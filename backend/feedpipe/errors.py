"""Domain errors for the feed pipeline.

WHAT:
    One exception class per error kind, each carrying the HTTP status it maps to.
    `register_exception_handlers` renders them as `{error, message, details?}`.

WHY:
    - Services raise domain errors without importing FastAPI
    - Routers stay thin; the closest matching status is chosen in one place
    - Background runs catch `FeedPipelineError` and record `message` on the run

REFERENCES:
    - feedpipe/services/shopify_client.py (ShopifyAPIError extends UpstreamUnavailableError)
    - feedpipe/main.py (handler registration)
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class FeedPipelineError(Exception):
    """Base class for all domain errors."""

    error = "FeedPipelineError"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.error, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class BadPayloadError(FeedPipelineError):
    error = "BadPayload"
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(FeedPipelineError):
    error = "NotFound"
    status_code = status.HTTP_404_NOT_FOUND


class NotFoundConnector(NotFoundError):
    """Shop or connector is not connected to this service."""
    error = "NotFoundConnector"


class UnauthorizedError(FeedPipelineError):
    error = "Unauthorized"
    status_code = status.HTTP_401_UNAUTHORIZED


class ConflictUniquenessError(FeedPipelineError):
    error = "ConflictUniqueness"
    status_code = status.HTTP_409_CONFLICT


class ConcurrentRunError(FeedPipelineError):
    error = "ConcurrentRun"
    status_code = status.HTTP_409_CONFLICT


class ScheduleCapacityError(FeedPipelineError):
    error = "ScheduleCapacity"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS


class UpstreamUnavailableError(FeedPipelineError):
    error = "UpstreamUnavailable"
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[Any] = None):
        super().__init__(message, details=details)
        # HTTP status returned by the upstream, not ours
        self.upstream_status = status_code


class StorageError(FeedPipelineError):
    error = "StorageError"


class RenderError(FeedPipelineError):
    error = "RenderError"


def register_exception_handlers(app: FastAPI) -> None:
    """Attach JSON renderers for domain and validation errors."""

    @app.exception_handler(FeedPipelineError)
    async def _feed_pipeline_error_handler(request: Request, exc: FeedPipelineError):
        if exc.status_code >= 500:
            logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", [])), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "BadPayload", "message": "Request validation failed", "details": errors},
        )
