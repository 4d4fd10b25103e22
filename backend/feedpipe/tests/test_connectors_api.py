"""Integration tests for connectors, pull sync, CSV import, products and settings.

WHAT: Connector install rules, page-capped pull sync, row-tolerant CSV
      import, product reads and the organization settings document
WHY: Ingestion is the only writer of the catalog; bad rows and flaky
     upstreams must be reported, never silently dropped or fatal
REFERENCES:
    - feedpipe/routers/connectors.py
    - feedpipe/services/product_sync_service.py
    - feedpipe/routers/products.py
    - feedpipe/routers/settings.py
"""

import asyncio
from decimal import Decimal

import pytest

from feedpipe.errors import BadPayloadError, UpstreamUnavailableError
from feedpipe.models import Connector, ConnectorKindEnum, ConnectorStatusEnum, Product, ProductStatusEnum
from feedpipe.services import product_sync_service
from feedpipe.services.product_normalizer import CanonicalProduct

from conftest import SHOP_DOMAIN, StaticIngestor, seed_product


def _page(*ids):
    return [
        CanonicalProduct(external_id=str(i), title=f"Product {i}", price=Decimal("10.00"), brand="Acme")
        for i in ids
    ]


@pytest.fixture
def csv_connector(client):
    response = client.post("/api/v1/connectors", json={"kind": "csv", "name": "Spreadsheet"})
    assert response.status_code == 201, response.text
    return response.json()


class TestInstall:

    def test_csv_connector_is_active_immediately(self, csv_connector):
        assert csv_connector["kind"] == "csv"
        assert csv_connector["status"] == "active"
        assert "credentials" not in csv_connector
        assert "credentials_enc" not in csv_connector

    def test_duplicate_shopify_install_conflicts(self, client, shopify_connector):
        response = client.post(
            "/api/v1/connectors",
            json={
                "kind": "shopify",
                "name": "Again",
                "shop_domain": "https://Demo.myshopify.com/",
                "credentials": {"access_token": "shpat_other"},
            },
        )

        assert response.status_code == 409
        assert response.json()["details"]["connector_id"] == str(shopify_connector.id)

    def test_verified_install_queues_first_sync(self, client, arq_pool, monkeypatch):
        monkeypatch.setattr(product_sync_service, "build_ingestor", lambda connector: StaticIngestor())

        response = client.post(
            "/api/v1/connectors",
            json={
                "kind": "shopify",
                "name": "Fresh",
                "shop_domain": "fresh.myshopify.com",
                "credentials": {"access_token": "shpat_fresh"},
            },
        )

        assert response.status_code == 201, response.text
        connector_id = response.json()["id"]
        assert [(call[0], call[2]) for call in arq_pool.calls] == [
            ("sync_connector_job", f"sync:{connector_id}"),
        ]

    def test_csv_install_queues_nothing(self, arq_pool, csv_connector):
        assert arq_pool.calls == []

    def test_remote_connector_requires_credentials(self, client):
        response = client.post(
            "/api/v1/connectors",
            json={"kind": "woocommerce", "name": "Woo", "shop_domain": "https://woo.example.com"},
        )
        assert response.status_code == 400

    def test_failed_verification_leaves_pending(self, db_session, organization_id):
        class RejectingIngestor(StaticIngestor):
            async def verify(self):
                raise UpstreamUnavailableError("Shopify API unavailable", status_code=503)

        connector = asyncio.run(product_sync_service.install_connector(
            db_session,
            organization_id,
            kind=ConnectorKindEnum.shopify,
            name="Flaky",
            shop_domain="flaky.myshopify.com",
            credentials={"access_token": "shpat_x"},
            ingestor=RejectingIngestor(),
        ))

        assert connector.status == ConnectorStatusEnum.pending
        assert connector.last_sync_error == "Shopify API unavailable"

    def test_credentials_are_encrypted_at_rest(self, db_session, shopify_connector):
        stored = db_session.query(Connector).filter(Connector.id == shopify_connector.id).one()
        assert stored.credentials_enc
        assert "shpat_test" not in stored.credentials_enc
        assert stored.currency == "USD"
        assert stored.shop_domain == SHOP_DOMAIN


class TestPullSync:

    def test_pages_are_upserted(self, db_session, organization_id, shopify_connector):
        ingestor = StaticIngestor(pages=[_page(1, 2), _page(3)])

        result = asyncio.run(product_sync_service.sync_connector_products(
            db_session, organization_id, shopify_connector.id, ingestor=ingestor,
        ))

        assert result.success is True
        assert result.stats.created == 3
        assert result.stats.pages == 2
        assert result.stats.truncated is False
        assert db_session.query(Product).count() == 3

    def test_resync_updates_instead_of_duplicating(self, db_session, organization_id, shopify_connector):
        for _ in range(2):
            result = asyncio.run(product_sync_service.sync_connector_products(
                db_session, organization_id, shopify_connector.id, ingestor=StaticIngestor(pages=[_page(1, 2)]),
            ))

        assert result.stats.created == 0
        assert result.stats.updated == 2
        assert db_session.query(Product).count() == 2

    def test_page_cap_truncates(self, db_session, organization_id, shopify_connector):
        pages = [_page(n) for n in range(product_sync_service.MAX_PAGES + 2)]

        result = asyncio.run(product_sync_service.sync_connector_products(
            db_session, organization_id, shopify_connector.id, ingestor=StaticIngestor(pages=pages),
        ))

        assert result.stats.truncated is True
        assert result.stats.pages == product_sync_service.MAX_PAGES
        assert db_session.query(Product).count() == product_sync_service.MAX_PAGES

    def test_upstream_failure_is_reported_not_raised(self, db_session, organization_id, shopify_connector):
        class FailingIngestor(StaticIngestor):
            async def fetch_page(self, cursor=None):
                raise UpstreamUnavailableError("Shopify API returned 502", status_code=502)

        result = asyncio.run(product_sync_service.sync_connector_products(
            db_session, organization_id, shopify_connector.id, ingestor=FailingIngestor(),
        ))

        assert result.success is False
        assert "Shopify API returned 502" in result.errors
        db_session.refresh(shopify_connector)
        assert shopify_connector.last_sync_error == "Shopify API returned 502"

    def test_sync_rejected_for_csv_connector(self, client, csv_connector):
        response = client.post(f"/api/v1/connectors/{csv_connector['id']}/sync")
        assert response.status_code == 400

    def test_sync_rejected_for_inactive_connector(self, db_session, organization_id, shopify_connector):
        shopify_connector.status = ConnectorStatusEnum.inactive
        db_session.commit()

        with pytest.raises(BadPayloadError):
            asyncio.run(product_sync_service.sync_connector_products(
                db_session, organization_id, shopify_connector.id, ingestor=StaticIngestor(),
            ))


class TestCsvImport:

    def test_good_rows_imported_bad_rows_reported(self, client, db_session, csv_connector):
        document = (
            "id,title,price,brand,tags,quantity,image_url\n"
            "sku-1,Blue Mug,12.50,Acme,kitchen|gift,4,https://cdn.example.com/mug.jpg\n"
            ",Nameless Price,abc,Acme,,1,\n"
            "sku-3,,9.99,Acme,,1,\n"
            "sku-4,Green Mug,15,Acme,kitchen,0,\n"
        )

        response = client.post(
            f"/api/v1/connectors/{csv_connector['id']}/import-csv",
            content=document.encode("utf-8"),
            headers={"Content-Type": "text/csv"},
        )

        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["stats"]["created"] == 2
        assert body["stats"]["failed"] == 2
        assert "Row 2: invalid price 'abc'" in body["errors"]
        assert "Row 3: title is required" in body["errors"]

        mug = db_session.query(Product).filter(Product.external_id == "sku-1").one()
        assert mug.price == Decimal("12.50")
        assert mug.metadata_["tags"] == ["kitchen", "gift"]
        assert mug.images == ["https://cdn.example.com/mug.jpg"]

    def test_missing_required_headers_rejects_document(self, client, db_session, csv_connector):
        response = client.post(
            f"/api/v1/connectors/{csv_connector['id']}/import-csv",
            content=b"name,cost\nMug,12\n",
            headers={"Content-Type": "text/csv"},
        )

        assert response.status_code == 400
        assert db_session.query(Product).count() == 0

    def test_empty_body_is_bad_payload(self, client, csv_connector):
        response = client.post(
            f"/api/v1/connectors/{csv_connector['id']}/import-csv",
            content=b"   ",
            headers={"Content-Type": "text/csv"},
        )
        assert response.status_code == 400

    def test_import_into_shopify_connector_is_rejected(self, client, shopify_connector):
        response = client.post(
            f"/api/v1/connectors/{shopify_connector.id}/import-csv",
            content=b"title,price\nMug,12\n",
            headers={"Content-Type": "text/csv"},
        )
        assert response.status_code == 400


class TestProducts:

    def test_list_filters_by_status(self, client, db_session, shopify_connector):
        seed_product(db_session, shopify_connector, "a")
        seed_product(db_session, shopify_connector, "b", status=ProductStatusEnum.draft)

        body = client.get("/api/v1/products", params={"status": "draft"}).json()

        assert body["total"] == 1
        assert body["items"][0]["external_id"] == "b"

    def test_get_by_uuid_or_external_id(self, client, db_session, shopify_connector):
        product_id = seed_product(db_session, shopify_connector, "ext-9")

        by_uuid = client.get(f"/api/v1/products/{product_id}").json()
        by_external = client.get("/api/v1/products/ext-9").json()

        assert by_uuid["id"] == by_external["id"] == str(product_id)

    def test_unknown_product_is_404(self, client):
        response = client.get("/api/v1/products/nope")
        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"


class TestSettings:

    def test_put_merges_and_null_removes(self, client):
        client.put("/api/v1/settings", json={"settings": {"storefront_base_url": "https://store.example", "theme": "dark"}})

        response = client.put("/api/v1/settings", json={"settings": {"theme": None, "locale": "en"}})

        assert response.json()["settings"] == {"storefront_base_url": "https://store.example", "locale": "en"}
        assert client.get("/api/v1/settings").json() == response.json()

    def test_bad_storefront_url_is_rejected(self, client):
        response = client.put("/api/v1/settings", json={"settings": {"storefront_base_url": "store.example"}})
        assert response.status_code == 400

    def test_storefront_setting_drives_feed_links(self, client, db_session, shopify_connector):
        seed_product(db_session, shopify_connector, "p1", metadata={"tags": [], "handle": "blue-mug"})
        client.put("/api/v1/settings", json={"settings": {"storefront_base_url": "https://store.example"}})
        feed = client.post("/api/v1/feeds", json={"name": "G1", "channel": "Google Shopping", "format": "xml"}).json()

        xml = client.get(f"/api/v1/feeds/{feed['id']}/download").text

        assert "<g:link>https://store.example/products/blue-mug</g:link>" in xml


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
