"""Pytest configuration for feed pipeline integration tests

WHAT: Shared fixtures for HTTP endpoint and service-level tests
WHY: Background regenerations and scheduler ticks open their own sessions,
     so tests run against a real SQLite file that every session can see.
     Tables are recreated per test for isolation.
REFERENCES:
    - feedpipe/main.py: FastAPI application
    - feedpipe/database.py: Engine and session factory
    - feedpipe/services/product_store.py: Organization cache
"""

import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment (before any feedpipe import)
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite:///{Path(tempfile.gettempdir()) / f'feedpipe_test_{os.getpid()}.db'}",
)
# Must be URL-safe base64-encoded 32-byte string
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("SHOPIFY_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("STOREFRONT_BASE_URL", "https://shop.example.com")
os.environ.setdefault("PUBLIC_BASE_URL", "http://testserver")
os.environ.pop("SENTRY_DSN", None)

from feedpipe import database  # noqa: E402
from feedpipe.models import Base, ConnectorKindEnum  # noqa: E402
from feedpipe.security import compute_hmac_signature  # noqa: E402
from feedpipe.services import product_store  # noqa: E402
from feedpipe.services.ingestors import Ingestor  # noqa: E402
from feedpipe.services.product_normalizer import CanonicalProduct  # noqa: E402


WEBHOOK_SECRET = os.environ["SHOPIFY_WEBHOOK_SECRET"]
SHOP_DOMAIN = "demo.myshopify.com"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def fresh_database():
    """Recreate every table and forget the cached organization."""
    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    product_store.reset_organization_cache()
    yield
    product_store.reset_organization_cache()


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    """Session for arranging and asserting; call expire_all() after background work."""
    session = database.SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def organization_id(db_session):
    return product_store.get_or_create_organization_id(db_session)


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app():
    """FastAPI app; each request gets its own session from the shared engine."""
    from feedpipe.main import create_app

    application = create_app()

    def override_get_db():
        session = database.SessionLocal()
        try:
            yield session
        finally:
            session.close()

    application.dependency_overrides[database.get_db] = override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as test_client:
        yield test_client


# ============================================================================
# Queue Fixtures
# ============================================================================

class RecordedJob:
    def __init__(self, job_id):
        self.job_id = job_id


class RecordingArqPool:
    """Stands in for ArqRedis: remembers job ids, refuses duplicates."""

    def __init__(self):
        self.calls = []

    async def enqueue_job(self, function, *args, _job_id=None, _queue_name=None):
        if any(call[2] == _job_id for call in self.calls):
            return None
        self.calls.append((function, args, _job_id, _queue_name))
        return RecordedJob(_job_id)


@pytest.fixture(autouse=True)
def arq_pool(monkeypatch) -> RecordingArqPool:
    """Every enqueue lands here; tests never need Redis."""
    from feedpipe.workers import arq_enqueue

    pool = RecordingArqPool()
    monkeypatch.setattr(arq_enqueue, "_arq_pool", pool)
    return pool


# ============================================================================
# Ingestion Helpers
# ============================================================================

class StaticIngestor(Ingestor):
    """In-memory source: verify succeeds, pages are served from a list."""

    kind = ConnectorKindEnum.shopify

    def __init__(self, pages: Optional[List[List[CanonicalProduct]]] = None, currency: str = "USD"):
        super().__init__()
        self.pages = pages or [[]]
        self.currency = currency

    async def verify(self) -> Dict[str, Any]:
        return {"currency": self.currency, "name": "Demo Shop"}

    async def fetch_page(self, cursor: Optional[str] = None) -> Tuple[List[CanonicalProduct], Optional[str]]:
        index = int(cursor or 0)
        next_cursor = str(index + 1) if index + 1 < len(self.pages) else None
        return self.pages[index], next_cursor


@pytest.fixture
def shopify_connector(db_session, organization_id):
    """Active Shopify connector for SHOP_DOMAIN with USD currency."""
    import asyncio

    from feedpipe.services import product_sync_service

    return asyncio.run(product_sync_service.install_connector(
        db_session,
        organization_id,
        kind=ConnectorKindEnum.shopify,
        name="Demo Shop",
        shop_domain=SHOP_DOMAIN,
        credentials={"access_token": "shpat_test"},
        ingestor=StaticIngestor(),
    ))


def shopify_product_payload(
    product_id: int = 100,
    title: str = "Red Shirt",
    price: str = "19.99",
    quantity: int = 5,
    tags: str = "",
    **extra: Any,
) -> Dict[str, Any]:
    """Minimal Shopify product webhook body."""
    payload = {
        "id": product_id,
        "title": title,
        "body_html": f"<p>{title} in soft cotton</p>",
        "vendor": "Acme",
        "product_type": "Shirts",
        "handle": title.lower().replace(" ", "-"),
        "status": "active",
        "tags": tags,
        "variants": [
            {
                "id": product_id * 10,
                "title": "Default",
                "price": price,
                "sku": f"SKU-{product_id}",
                "position": 1,
                "inventory_quantity": quantity,
                "inventory_management": "shopify",
                "inventory_item_id": product_id * 100,
                "barcode": "012345678905",
            }
        ],
        "images": [{"src": f"https://cdn.example.com/{product_id}.jpg", "position": 1}],
    }
    payload.update(extra)
    return payload


def post_shopify_webhook(
    client: TestClient,
    topic: str,
    payload: Dict[str, Any],
    *,
    secret: str = WEBHOOK_SECRET,
    shop_domain: str = SHOP_DOMAIN,
):
    """Sign and send an inbound Shopify webhook."""
    import json

    body = json.dumps(payload).encode("utf-8")
    return client.post(
        f"/webhooks/shopify/{topic}",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Shopify-Topic": topic,
            "X-Shopify-Shop-Domain": shop_domain,
            "X-Shopify-Hmac-Sha256": compute_hmac_signature(secret, body),
        },
    )


def seed_product(db: Session, connector, external_id: str, **fields: Any):
    """Upsert one canonical product for `connector` and commit."""
    from decimal import Decimal

    values: Dict[str, Any] = {
        "title": f"Product {external_id}",
        "description": f"Description of product {external_id}",
        "price": Decimal("25.00"),
        "currency": "USD",
        "brand": "Acme",
        "sku": f"SKU-{external_id}",
        "images": [f"https://cdn.example.com/{external_id}.jpg"],
        "variants": [{"id": external_id, "inventory_quantity": 3, "inventory_management": "shopify"}],
        "metadata": {"tags": []},
    }
    values.update(fields)
    if values["price"] is not None and not isinstance(values["price"], Decimal):
        values["price"] = Decimal(str(values["price"]))

    result = product_store.upsert_product(db, connector, CanonicalProduct(external_id=external_id, **values))
    db.commit()
    return result.product_id
