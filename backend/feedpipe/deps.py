"""Dependency providers and settings management."""

import logging
from functools import lru_cache
from typing import Optional
from uuid import UUID

from fastapi import Depends
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Redis Configuration (arq worker + enqueue)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Shopify app credentials
    SHOPIFY_CLIENT_ID: Optional[str] = None
    SHOPIFY_CLIENT_SECRET: Optional[str] = None
    # Shared secret for inbound webhook HMAC; unset disables verification (development)
    SHOPIFY_WEBHOOK_SECRET: Optional[str] = None

    # AI provider key used by the SEO optimization collaborator
    OPENAI_API_KEY: Optional[str] = None

    # Feed rendering
    STOREFRONT_BASE_URL: str = "https://example.com"
    PLACEHOLDER_IMAGE_URL: str = "https://via.placeholder.com/600x600.png?text=No+Image"

    # This service's own origin; webhooks pointed at it short-circuit to the projector
    PUBLIC_BASE_URL: str = "http://localhost:8000"

    # Fernet key for connector credentials
    TOKEN_ENCRYPTION_KEY: Optional[str] = None

    # Scheduler
    SCHEDULER_BATCH_LIMIT: int = 50
    SCHEDULE_MAX_FAILURES: int = 3
    MAX_ACTIVE_SCHEDULES: int = 500
    STALE_RUN_MINUTES: int = 60

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_organization_id(db: Session = Depends(get_db)) -> UUID:
    """Resolve the process-wide organization for the request.

    There is no user authentication; every request acts on the single
    organization established by `get_or_create_organization_id`.
    """
    from .services.product_store import get_or_create_organization_id

    return get_or_create_organization_id(db)
