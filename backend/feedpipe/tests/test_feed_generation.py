"""Integration tests for feed definitions, filtering and regeneration.

WHAT: Feed CRUD, filter selection, the three renderers end to end, the
      one-run-per-feed lock, history and analytics
WHY: A feed is only useful if the same catalog always yields the same
     bytes, and two regenerations never race on one feed
REFERENCES:
    - feedpipe/services/feed_manager.py
    - feedpipe/services/filter_engine.py
    - feedpipe/services/feed_renderers.py
    - feedpipe/routers/feeds.py
"""

import asyncio
import csv
import io
import json
from uuid import UUID

import pytest

from feedpipe import database
from feedpipe.errors import ConcurrentRunError
from feedpipe.models import Feed, FeedStatusEnum, GenerationRun, ProductStatusEnum, RunStatusEnum
from feedpipe.services import feed_manager
from feedpipe.services.filter_engine import FeedFilter, select_products

from conftest import SHOP_DOMAIN, post_shopify_webhook, seed_product, shopify_product_payload


def _create_feed(client, name="G1", channel="Google Shopping", format="xml", **extra):
    response = client.post("/api/v1/feeds", json={"name": name, "channel": channel, "format": format, **extra})
    assert response.status_code == 201, response.text
    return response.json()


class TestFeedCrud:

    def test_create_normalizes_channel_and_stores_filter(self, client):
        feed = _create_feed(client, channel="google", filter={"min_price": 10})

        assert feed["channel"] == "Google Shopping"
        assert feed["status"] == "active"
        assert feed["settings"]["filter"]["min_price"] == 10.0
        assert feed["settings"]["filter"]["max_price"] is None

    def test_duplicate_name_conflicts(self, client):
        _create_feed(client)
        response = client.post("/api/v1/feeds", json={"name": "G1", "channel": "Facebook", "format": "csv"})

        assert response.status_code == 409
        assert response.json()["error"] == "ConflictUniqueness"

    def test_unknown_channel_is_bad_payload(self, client):
        response = client.post("/api/v1/feeds", json={"name": "X", "channel": "Myspace", "format": "xml"})

        assert response.status_code == 400
        assert "supported_channels" in response.json()["details"]

    def test_min_above_max_is_bad_payload(self, client):
        response = client.post(
            "/api/v1/feeds",
            json={"name": "X", "channel": "Facebook", "format": "csv", "filter": {"min_price": 50, "max_price": 10}},
        )
        assert response.status_code == 400

    def test_unknown_connector_is_rejected(self, client):
        response = client.post(
            "/api/v1/feeds",
            json={
                "name": "X",
                "channel": "Facebook",
                "format": "csv",
                "connector_id": "00000000-0000-0000-0000-000000000001",
            },
        )
        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundConnector"

    def test_partial_update_keeps_other_fields(self, client):
        feed = _create_feed(client, filter={"min_price": 10})

        response = client.put(f"/api/v1/feeds/{feed['id']}", json={"name": "G1 renamed"})

        body = response.json()
        assert body["name"] == "G1 renamed"
        assert body["format"] == "xml"
        assert body["settings"]["filter"]["min_price"] == 10.0

    def test_list_filters_by_channel(self, client):
        _create_feed(client, name="G1")
        _create_feed(client, name="F1", channel="Facebook", format="csv")

        body = client.get("/api/v1/feeds", params={"channel": "Facebook"}).json()

        assert body["total"] == 1
        assert body["items"][0]["name"] == "F1"

    def test_delete_then_404(self, client):
        feed = _create_feed(client)

        assert client.delete(f"/api/v1/feeds/{feed['id']}").status_code == 204
        assert client.get(f"/api/v1/feeds/{feed['id']}").status_code == 404


class TestFilterSelection:
    """Price bounds, brand, tag exclusion and status gate combine with AND."""

    @pytest.fixture
    def catalog(self, db_session, shopify_connector):
        seed_product(db_session, shopify_connector, "in-plain", price=50)
        seed_product(db_session, shopify_connector, "in-lower-bound", price=10)
        seed_product(db_session, shopify_connector, "in-upper-bound", price=100)
        seed_product(db_session, shopify_connector, "in-similar-tag", price=50, metadata={"tags": ["clearance-2024"]})
        seed_product(db_session, shopify_connector, "out-tagged", price=50, metadata={"tags": ["sale", "clearance"]})
        seed_product(db_session, shopify_connector, "out-cheap", price=5)
        seed_product(db_session, shopify_connector, "out-expensive", price=150)
        seed_product(db_session, shopify_connector, "out-brand", price=50, brand="Other")
        seed_product(db_session, shopify_connector, "out-draft", price=50, status=ProductStatusEnum.draft)
        seed_product(db_session, shopify_connector, "out-stock", price=50, status=ProductStatusEnum.out_of_stock)
        seed_product(db_session, shopify_connector, "out-archived", price=50, status=ProductStatusEnum.archived)
        seed_product(db_session, shopify_connector, "out-inactive", price=50, status=ProductStatusEnum.inactive)
        return shopify_connector

    def test_selected_set_matches_rules(self, db_session, organization_id, catalog):
        feed_filter = FeedFilter.from_dict({
            "min_price": 10,
            "max_price": 100,
            "exclude_tags": ["clearance"],
            "brands": ["Acme"],
        })

        selected = {p.external_id for p in select_products(db_session, feed_filter, organization_id)}

        assert selected == {"in-plain", "in-lower-bound", "in-upper-bound", "in-similar-tag"}

    def test_include_tags_match_whole_tags_only(self, db_session, organization_id, catalog):
        feed_filter = FeedFilter.from_dict({"include_tags": ["clearance"]})

        selected = {p.external_id for p in select_products(db_session, feed_filter, organization_id)}

        assert selected == {"out-tagged"}

    def test_tag_rules_ignore_title_vendor_and_source(self, client, db_session, organization_id, shopify_connector):
        post_shopify_webhook(client, "products/create", shopify_product_payload(1, title="Clearance", price="50.00"))
        post_shopify_webhook(
            client, "products/create", shopify_product_payload(2, title="Beach Towel", price="50.00", tags="summer"),
        )

        def selected(document):
            feed_filter = FeedFilter.from_dict(document)
            return {p.external_id for p in select_products(db_session, feed_filter, organization_id)}

        # Title, handle and SEO keywords say "clearance"; the tag list does not.
        assert selected({
            "min_price": 10,
            "max_price": 100,
            "exclude_tags": ["clearance"],
            "brands": ["Acme"],
        }) == {"1", "2"}
        assert selected({"include_tags": ["shopify"]}) == set()
        assert selected({"include_tags": ["acme"]}) == set()
        assert selected({"include_tags": ["summer"]}) == {"2"}
        assert selected({"exclude_collections": ["clearance"]}) == {"1", "2"}

    def test_exclude_product_ids_accepts_external_ids(self, db_session, organization_id, catalog):
        feed_filter = FeedFilter.from_dict({"exclude_product_ids": ["in-plain"], "min_price": 10, "max_price": 100})

        selected = {p.external_id for p in select_products(db_session, feed_filter, organization_id)}

        assert "in-plain" not in selected
        assert "in-lower-bound" in selected

    def test_empty_filter_applies_status_gate_only(self, db_session, organization_id, catalog):
        selected = select_products(db_session, FeedFilter(), organization_id, connector_id=catalog.id)

        assert len(selected) == 8
        assert not any(p.external_id.startswith(("out-draft", "out-stock", "out-archived", "out-inactive")) for p in selected)


class TestRendering:

    @pytest.fixture
    def curated(self, db_session, shopify_connector):
        seed_product(
            db_session, shopify_connector, "two-images",
            images=["https://cdn.example.com/a.jpg", "https://cdn.example.com/b.jpg"],
        )
        seed_product(db_session, shopify_connector, "no-images", images=[])
        seed_product(
            db_session, shopify_connector, "handled",
            title="Red Shirt", metadata={"tags": [], "handle": "red-shirt"},
        )
        return shopify_connector

    def test_xml_round_trip(self, client, curated):
        feed = _create_feed(client)

        xml = client.get(f"/api/v1/feeds/{feed['id']}/download").text

        assert xml.count("<item>") == 3
        assert xml.count("via.placeholder.com") == 1
        assert "<g:link>https://shop.example.com/products/red-shirt</g:link>" in xml
        assert "<g:additional_image_link>https://cdn.example.com/b.jpg</g:additional_image_link>" in xml

    def test_download_headers(self, client, curated):
        feed = _create_feed(client, name="Google main")

        response = client.get(f"/api/v1/feeds/{feed['id']}/download")

        assert response.headers["content-type"].startswith("application/xml")
        assert response.headers["content-disposition"] == 'attachment; filename="Google_main.xml"'

    def test_csv_rows_match_products(self, client, curated):
        feed = _create_feed(client, name="F1", channel="Facebook", format="csv")

        content = client.get(f"/api/v1/feeds/{feed['id']}/download").text
        rows = list(csv.reader(io.StringIO(content)))

        assert rows[0][0] == "id"
        assert len(rows) == 4

    def test_json_format_override(self, client, curated):
        feed = _create_feed(client)

        response = client.get(f"/api/v1/feeds/{feed['id']}/download", params={"format": "json"})
        document = json.loads(response.text)

        assert document["version"] == "1.0"
        assert {p["id"] for p in document["products"]} == {"two-images", "no-images", "handled"}

    def test_two_renders_are_byte_identical(self, client, curated):
        feed = _create_feed(client)

        first = client.get(f"/api/v1/feeds/{feed['id']}/download").content
        second = client.get(f"/api/v1/feeds/{feed['id']}/download").content

        assert first == second

    def test_preview_reports_validation_errors(self, client, curated):
        feed = _create_feed(client)

        preview = client.get(f"/api/v1/feeds/{feed['id']}/preview", params={"limit": 5}).json()

        assert preview["product_count"] == 3
        flagged = {entry["product_id"]: entry["errors"] for entry in preview["validation_errors"]}
        assert flagged == {"no-images": ["Missing image (placeholder used)"]}


class TestRegeneration:

    def test_shopify_product_reaches_xml(self, client, shopify_connector):
        variant = {"id": 1, "price": "19.99", "sku": "RS-1", "inventory_quantity": 5, "inventory_management": "shopify"}
        post_shopify_webhook(client, "products/create", shopify_product_payload(variants=[variant]))
        updated = dict(variant, price="24.99", inventory_management="")
        updated.pop("inventory_quantity")
        post_shopify_webhook(client, "products/update", shopify_product_payload(variants=[updated]))
        feed = _create_feed(client, channel="Google", filter={"min_price": 10})

        response = client.post(f"/api/v1/feeds/{feed['id']}/regenerate")
        assert response.status_code == 200
        assert response.json()["status"] == "generating"

        xml = client.get(f"/api/v1/feeds/{feed['id']}/download").text
        assert "<g:title><![CDATA[Red Shirt]]></g:title>" in xml
        assert "<g:price>24.99 USD</g:price>" in xml
        assert "<g:availability>in stock</g:availability>" in xml

        history = client.get(f"/api/v1/feeds/{feed['id']}/history").json()
        assert history["total"] == 1
        run = history["items"][0]
        assert run["status"] == "completed"
        assert run["trigger"] == "manual"
        assert run["products_included"] == 1
        assert run["file_size_bytes"] == len(xml.encode("utf-8"))

        refreshed = client.get(f"/api/v1/feeds/{feed['id']}").json()
        assert refreshed["status"] == "active"
        assert refreshed["products_count"] == 1
        assert refreshed["last_generated"] is not None

    def test_uninstalled_shop_yields_empty_feed(self, client, shopify_connector):
        post_shopify_webhook(client, "products/create", shopify_product_payload())
        feed = _create_feed(client)

        post_shopify_webhook(client, "app/uninstalled", {"domain": SHOP_DOMAIN})
        client.post(f"/api/v1/feeds/{feed['id']}/regenerate")

        run = client.get(f"/api/v1/feeds/{feed['id']}/history").json()["items"][0]
        assert run["status"] == "completed"
        assert run["products_included"] == 0
        assert run["products_excluded"] == 1
        xml = client.get(f"/api/v1/feeds/{feed['id']}/download").text
        assert "<item>" not in xml

    @pytest.mark.parametrize("held_status", ["paused", "inactive"])
    def test_held_feed_is_not_regenerated(self, client, shopify_connector, held_status):
        feed = _create_feed(client)
        client.put(f"/api/v1/feeds/{feed['id']}", json={"status": held_status})

        response = client.post(f"/api/v1/feeds/{feed['id']}/regenerate")

        assert response.status_code == 400
        assert response.json()["error"] == "BadPayload"
        assert client.get(f"/api/v1/feeds/{feed['id']}").json()["status"] == held_status
        assert client.get(f"/api/v1/feeds/{feed['id']}/history").json()["total"] == 0

    def test_status_changed_mid_run_survives_completion(self, db_session, organization_id, shopify_connector):
        seed_product(db_session, shopify_connector, "p1")
        feed = feed_manager.create_feed(
            db_session, organization_id, name="G1", channel="Google Shopping", format="xml",
        )
        run = feed_manager.start_regeneration(db_session, organization_id, feed.id)
        db_session.query(Feed).filter(Feed.id == feed.id).update({Feed.status: FeedStatusEnum.paused})
        db_session.commit()

        assert asyncio.run(feed_manager.execute_generation(run.id)) == RunStatusEnum.completed

        db_session.expire_all()
        stored = db_session.query(Feed).filter(Feed.id == feed.id).one()
        assert stored.status == FeedStatusEnum.paused
        assert stored.products_count == 1

    def test_second_claim_is_concurrent_run(self, db_session, organization_id, shopify_connector):
        seed_product(db_session, shopify_connector, "p1")
        feed = feed_manager.create_feed(
            db_session, organization_id, name="G1", channel="Google Shopping", format="xml",
        )

        first_session = database.SessionLocal()
        second_session = database.SessionLocal()
        try:
            run = feed_manager.start_regeneration(first_session, organization_id, feed.id)
            with pytest.raises(ConcurrentRunError):
                feed_manager.start_regeneration(second_session, organization_id, feed.id)
        finally:
            first_session.close()
            second_session.close()

        status = asyncio.run(feed_manager.execute_generation(run.id))

        assert status == RunStatusEnum.completed
        db_session.expire_all()
        runs = db_session.query(GenerationRun).filter(GenerationRun.feed_id == feed.id).all()
        assert [r.status for r in runs] == [RunStatusEnum.completed]
        assert feed_manager.get_feed(db_session, organization_id, feed.id).status == FeedStatusEnum.active

    def test_regenerate_while_generating_returns_409(self, client, db_session, organization_id):
        feed = _create_feed(client)
        feed_manager.start_regeneration(db_session, organization_id, UUID(feed["id"]))

        response = client.post(f"/api/v1/feeds/{feed['id']}/regenerate")

        assert response.status_code == 409
        assert response.json()["error"] == "ConcurrentRun"

    def test_render_failure_marks_run_failed(self, client, monkeypatch):
        from feedpipe.errors import RenderError
        from feedpipe.services import feed_renderers

        def broken_render(*args, **kwargs):
            raise RenderError("serializer exploded")

        monkeypatch.setattr(feed_renderers, "render", broken_render)
        feed = _create_feed(client)

        client.post(f"/api/v1/feeds/{feed['id']}/regenerate")

        run = client.get(f"/api/v1/feeds/{feed['id']}/history").json()["items"][0]
        assert run["status"] == "failed"
        assert run["error_message"] == "serializer exploded"
        assert client.get(f"/api/v1/feeds/{feed['id']}").json()["status"] == "error"

    def test_stale_run_is_reaped(self, db_session, organization_id):
        from datetime import datetime, timedelta

        feed = feed_manager.create_feed(
            db_session, organization_id, name="G1", channel="Google Shopping", format="xml",
        )
        run = feed_manager.start_regeneration(db_session, organization_id, feed.id)

        reaped = feed_manager.reap_stale_runs(db_session, now=datetime.utcnow() + timedelta(hours=2))

        assert reaped == 1
        db_session.expire_all()
        assert db_session.get(GenerationRun, run.id).status == RunStatusEnum.failed
        assert feed_manager.get_feed(db_session, organization_id, feed.id).status == FeedStatusEnum.error


class TestAnalytics:

    def test_counts_completed_and_failed_runs(self, client, monkeypatch):
        from feedpipe.errors import RenderError
        from feedpipe.services import feed_renderers

        feed = _create_feed(client)
        client.post(f"/api/v1/feeds/{feed['id']}/regenerate")

        def broken_render(*args, **kwargs):
            raise RenderError("boom")

        monkeypatch.setattr(feed_renderers, "render", broken_render)
        client.post(f"/api/v1/feeds/{feed['id']}/regenerate")

        analytics = client.get(f"/api/v1/feeds/{feed['id']}/analytics").json()

        assert analytics["total_runs"] == 2
        assert analytics["completed_runs"] == 1
        assert analytics["failed_runs"] == 1
        assert analytics["success_rate"] == 50.0
        assert analytics["last_run_status"] == "failed"

        failed_only = client.get(f"/api/v1/feeds/{feed['id']}/history", params={"status": "failed"}).json()
        assert failed_only["total"] == 1
